"""
Billing event types and event construction helpers.

Events are handed to a ``BillingNotifier``; delivery (email, webhooks, ...)
happens outside the billing engine.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import Field

from dotmac.recurring.billing.models import AppBaseModel, Invoice, Subscription, utcnow


class BillingEventType(str, Enum):
    """Billing event types."""

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


class BillingEvent(AppBaseModel):
    """Something that happened to a subscription or invoice."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: BillingEventType
    occurred_at: datetime = Field(default_factory=utcnow)
    subscription_id: str
    customer_id: str
    invoice_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


def subscription_event(
    event_type: BillingEventType,
    subscription: Subscription,
    now: datetime,
    **payload: Any,
) -> BillingEvent:
    return BillingEvent(
        event_type=event_type,
        occurred_at=now,
        subscription_id=subscription.subscription_id,
        customer_id=subscription.customer_id,
        payload={
            "status": subscription.status.value,
            "plan_id": subscription.plan_id,
            **payload,
        },
    )


def invoice_event(
    event_type: BillingEventType,
    subscription: Subscription,
    invoice: Invoice,
    now: datetime,
    **payload: Any,
) -> BillingEvent:
    return BillingEvent(
        event_type=event_type,
        occurred_at=now,
        subscription_id=subscription.subscription_id,
        customer_id=subscription.customer_id,
        invoice_id=invoice.invoice_id,
        payload={
            "invoice_number": invoice.invoice_number,
            "amount": str(invoice.amount),
            "currency": invoice.currency,
            "status": invoice.status.value,
            "attempt_count": invoice.attempt_count,
            "period_start": invoice.period_start.isoformat(),
            "period_end": invoice.period_end.isoformat(),
            **payload,
        },
    )


__all__ = ["BillingEvent", "BillingEventType", "invoice_event", "subscription_event"]
