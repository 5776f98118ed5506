"""
Webhook delivery models.

A ``WebhookDelivery`` is created once per outbound event and endpoint and is
only mutated by the delivery engine.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import Field

from dotmac.recurring.billing.models import AppBaseModel, utcnow


class DeliveryStatus(str, Enum):
    """Delivery states."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


class HttpMethod(str, Enum):
    """Methods allowed for outbound webhooks."""

    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"


class WebhookEventType(str, Enum):
    """Every event type this service can send. Unknown values fail validation."""

    # Invoice events
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_RETRY_SCHEDULED = "invoice.payment_retry_scheduled"
    INVOICE_RETRY_SUCCEEDED = "invoice.payment_retry_succeeded"

    # Subscription events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_TRIAL_ENDED = "subscription.trial_ended"

    # Payment transaction events
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_VOIDED = "payment.voided"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_PARTIALLY_REFUNDED = "payment.partially_refunded"


class WebhookDelivery(AppBaseModel):
    """One outbound event bound for one endpoint."""

    delivery_id: str = Field(default_factory=lambda: str(uuid4()))
    endpoint_url: str = Field(min_length=1, max_length=2048)
    http_method: HttpMethod = HttpMethod.POST
    event_type: WebhookEventType
    event_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    correlation_id: str | None = None

    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = Field(0, ge=0)
    max_attempts: int = Field(5, ge=1)
    scheduled_at: datetime = Field(default_factory=utcnow)
    next_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    delivered_at: datetime | None = None
    last_response_code: int | None = None
    last_response_body: str | None = None
    last_error: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    def mark_processing(self, now: datetime) -> None:
        self.status = DeliveryStatus.PROCESSING
        self.attempt_count += 1
        self.last_attempt_at = now
        self.updated_at = now

    def record_response(self, status_code: int | None, body: str | None) -> None:
        self.last_response_code = status_code
        self.last_response_body = body

    def mark_delivered(self, now: datetime) -> None:
        self.status = DeliveryStatus.DELIVERED
        self.delivered_at = now
        self.next_attempt_at = None
        self.last_error = None
        self.updated_at = now

    def schedule_retry(self, next_attempt_at: datetime, error: str | None, now: datetime) -> None:
        self.status = DeliveryStatus.RETRYING
        self.next_attempt_at = next_attempt_at
        self.last_error = error
        self.updated_at = now

    def mark_failed(self, error: str | None, now: datetime) -> None:
        self.status = DeliveryStatus.FAILED
        self.next_attempt_at = None
        self.last_error = error
        self.updated_at = now


class EmitResult(AppBaseModel):
    """Outcome of ``WebhookDeliveryService.emit``."""

    delivery: WebhookDelivery
    duplicate: bool = False


class CircuitSnapshot(AppBaseModel):
    """Point-in-time view of one endpoint's breaker."""

    endpoint: str
    state: str
    consecutive_failures: int
    opened_at: datetime | None = None


class RetryStatistics(AppBaseModel):
    """Aggregate delivery health."""

    by_status: dict[DeliveryStatus, int] = Field(default_factory=dict)
    total: int = 0
    pending_retries: int = 0
    circuits: list[CircuitSnapshot] = Field(default_factory=list)

    @property
    def open_circuits(self) -> list[CircuitSnapshot]:
        return [circuit for circuit in self.circuits if circuit.state == "OPEN"]


__all__ = [
    "CircuitSnapshot",
    "DeliveryStatus",
    "EmitResult",
    "HttpMethod",
    "RetryStatistics",
    "WebhookDelivery",
    "WebhookEventType",
]
