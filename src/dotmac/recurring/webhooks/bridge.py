"""
Bridges billing events and payment transactions to webhook event types.

Both mappings are exhaustive matches over closed enums; adding a member
without a mapping fails type checking and raises at runtime.
"""

from collections.abc import Sequence
from typing import assert_never

import structlog

from dotmac.recurring.billing.enums import TransactionType
from dotmac.recurring.billing.events import BillingEvent, BillingEventType
from dotmac.recurring.webhooks.delivery import WebhookDeliveryService
from dotmac.recurring.webhooks.models import WebhookEventType

logger = structlog.get_logger(__name__)


def webhook_event_for_billing(event_type: BillingEventType) -> WebhookEventType:
    match event_type:
        case BillingEventType.INVOICE_PAID:
            return WebhookEventType.INVOICE_PAID
        case BillingEventType.INVOICE_PAYMENT_FAILED:
            return WebhookEventType.INVOICE_PAYMENT_FAILED
        case BillingEventType.INVOICE_RETRY_SCHEDULED:
            return WebhookEventType.INVOICE_RETRY_SCHEDULED
        case BillingEventType.INVOICE_RETRY_SUCCEEDED:
            return WebhookEventType.INVOICE_RETRY_SUCCEEDED
        case BillingEventType.SUBSCRIPTION_CREATED:
            return WebhookEventType.SUBSCRIPTION_CREATED
        case BillingEventType.SUBSCRIPTION_PLAN_CHANGED:
            return WebhookEventType.SUBSCRIPTION_PLAN_CHANGED
        case BillingEventType.SUBSCRIPTION_PAUSED:
            return WebhookEventType.SUBSCRIPTION_PAUSED
        case BillingEventType.SUBSCRIPTION_RESUMED:
            return WebhookEventType.SUBSCRIPTION_RESUMED
        case BillingEventType.SUBSCRIPTION_CANCELLED:
            return WebhookEventType.SUBSCRIPTION_CANCELLED
        case BillingEventType.SUBSCRIPTION_TRIAL_ENDED:
            return WebhookEventType.SUBSCRIPTION_TRIAL_ENDED
        case _:
            assert_never(event_type)


def webhook_event_for_transaction(transaction_type: TransactionType) -> WebhookEventType:
    match transaction_type:
        case TransactionType.PURCHASE:
            return WebhookEventType.PAYMENT_COMPLETED
        case TransactionType.AUTHORIZE:
            return WebhookEventType.PAYMENT_AUTHORIZED
        case TransactionType.CAPTURE:
            return WebhookEventType.PAYMENT_CAPTURED
        case TransactionType.VOID:
            return WebhookEventType.PAYMENT_VOIDED
        case TransactionType.REFUND:
            return WebhookEventType.PAYMENT_REFUNDED
        case TransactionType.PARTIAL_REFUND:
            return WebhookEventType.PAYMENT_PARTIALLY_REFUNDED
        case _:
            assert_never(transaction_type)


class BillingWebhookNotifier:
    """``BillingNotifier`` that fans billing events out to webhook endpoints.

    Deliveries are only recorded here; the webhook retry sweep sends them, so a
    slow receiver never holds up a billing sweep.
    """

    def __init__(
        self,
        service: WebhookDeliveryService,
        endpoints: Sequence[str],
        *,
        deliver_now: bool = False,
    ) -> None:
        self.service = service
        self.endpoints = list(endpoints)
        self.deliver_now = deliver_now

    async def notify(self, event: BillingEvent) -> None:
        webhook_type = webhook_event_for_billing(event.event_type)
        body = {
            "id": event.event_id,
            "type": webhook_type.value,
            "occurred_at": event.occurred_at.isoformat(),
            "data": {
                "subscription_id": event.subscription_id,
                "customer_id": event.customer_id,
                "invoice_id": event.invoice_id,
                **event.payload,
            },
        }
        for endpoint in self.endpoints:
            await self.service.emit(
                endpoint,
                webhook_type,
                event.event_id,
                body,
                deliver_now=self.deliver_now,
                now=event.occurred_at,
            )
            # Payment settled: also announce the transaction itself
            transaction_type = event.payload.get("transaction_type")
            if transaction_type:
                payment_type = webhook_event_for_transaction(TransactionType(transaction_type))
                await self.service.emit(
                    endpoint,
                    payment_type,
                    event.event_id,
                    {**body, "type": payment_type.value},
                    deliver_now=self.deliver_now,
                    now=event.occurred_at,
                )
        logger.debug(
            "webhook.billing_event.queued",
            event_id=event.event_id,
            event_type=webhook_type.value,
            endpoints=len(self.endpoints),
        )


__all__ = [
    "BillingWebhookNotifier",
    "webhook_event_for_billing",
    "webhook_event_for_transaction",
]
