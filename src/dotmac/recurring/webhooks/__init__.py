"""
Outbound webhook delivery.

Deliveries are retried with exponential backoff and jitter, isolated per
endpoint by a circuit breaker, and de-duplicated on (event id, event type,
endpoint) within a configurable window.
"""

from dotmac.recurring.webhooks.models import (
    DeliveryStatus,
    EmitResult,
    HttpMethod,
    RetryStatistics,
    WebhookDelivery,
    WebhookEventType,
)

__all__ = [
    "DeliveryStatus",
    "EmitResult",
    "HttpMethod",
    "RetryStatistics",
    "WebhookDelivery",
    "WebhookEventType",
]
