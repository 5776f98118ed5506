"""Storage for plans, subscriptions, invoices and webhook deliveries."""

from dotmac.recurring.persistence.base import (
    InvoiceRepository,
    PlanRepository,
    SubscriptionRepository,
    WebhookDeliveryRepository,
)
from dotmac.recurring.persistence.memory import (
    InMemoryInvoiceRepository,
    InMemoryPlanRepository,
    InMemorySubscriptionRepository,
    InMemoryWebhookDeliveryRepository,
)
from dotmac.recurring.persistence.sql import (
    SQLInvoiceRepository,
    SQLPlanRepository,
    SQLSubscriptionRepository,
    SQLWebhookDeliveryRepository,
)

__all__ = [
    "InMemoryInvoiceRepository",
    "InMemoryPlanRepository",
    "InMemorySubscriptionRepository",
    "InMemoryWebhookDeliveryRepository",
    "InvoiceRepository",
    "PlanRepository",
    "SQLInvoiceRepository",
    "SQLPlanRepository",
    "SQLSubscriptionRepository",
    "SQLWebhookDeliveryRepository",
    "SubscriptionRepository",
    "WebhookDeliveryRepository",
]
