"""In-memory repositories for tests, local runs and single-process deployments."""

import asyncio
from collections.abc import Callable
from datetime import datetime

from dotmac.recurring.billing.enums import (
    InvoiceKind,
    InvoiceStatus,
    PendingChangeKind,
    SubscriptionStatus,
)
from dotmac.recurring.billing.models import Invoice, Plan, Subscription
from dotmac.recurring.webhooks.models import DeliveryStatus, WebhookDelivery, WebhookEventType

_CLAIMABLE_INVOICE = frozenset({InvoiceStatus.PENDING, InvoiceStatus.FAILED})
_CLAIMABLE_DELIVERY = frozenset({DeliveryStatus.PENDING, DeliveryStatus.RETRYING})


class InMemoryPlanRepository:
    def __init__(self) -> None:
        self._plans: dict[str, Plan] = {}

    async def get(self, plan_id: str) -> Plan | None:
        plan = self._plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def get_by_code(self, code: str) -> Plan | None:
        for plan in self._plans.values():
            if plan.code == code:
                return plan.model_copy(deep=True)
        return None

    async def save(self, plan: Plan) -> Plan:
        self._plans[plan.plan_id] = plan.model_copy(deep=True)
        return plan

    async def list_active(self) -> list[Plan]:
        return [plan.model_copy(deep=True) for plan in self._plans.values() if plan.is_active]


class InMemorySubscriptionRepository:
    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    def _select(self, predicate: Callable[[Subscription], bool]) -> list[Subscription]:
        return [
            subscription.model_copy(deep=True)
            for subscription in self._subscriptions.values()
            if predicate(subscription)
        ]

    async def get(self, subscription_id: str) -> Subscription | None:
        subscription = self._subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def get_by_idempotency_key(self, key: str) -> Subscription | None:
        matches = self._select(lambda s: s.idempotency_key == key)
        return matches[0] if matches else None

    async def save(self, subscription: Subscription) -> Subscription:
        self._subscriptions[subscription.subscription_id] = subscription.model_copy(deep=True)
        return subscription

    async def list_due_for_billing(self, before: datetime) -> list[Subscription]:
        return self._select(
            lambda s: s.status == SubscriptionStatus.ACTIVE
            and s.next_billing_date is not None
            and s.next_billing_date <= before
        )

    async def list_trials_ending(self, before: datetime) -> list[Subscription]:
        return self._select(
            lambda s: s.status == SubscriptionStatus.ACTIVE
            and s.trial_end is not None
            and s.trial_end <= before
            and s.in_trial_period()
        )

    async def list_by_status(self, status: SubscriptionStatus) -> list[Subscription]:
        return self._select(lambda s: s.status == status)

    async def list_pending_changes(
        self, kind: PendingChangeKind, before: datetime
    ) -> list[Subscription]:
        return self._select(
            lambda s: not s.status.is_terminal
            and s.pending_change is not None
            and s.pending_change.kind == kind.value
            and s.pending_change.effective_at <= before
        )

    async def count_for_plan(self, plan_id: str, statuses: set[SubscriptionStatus]) -> int:
        return len(self._select(lambda s: s.plan_id == plan_id and s.status in statuses))


class InMemoryInvoiceRepository:
    def __init__(self) -> None:
        self._invoices: dict[str, Invoice] = {}
        self._lock = asyncio.Lock()

    def _find_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> Invoice | None:
        for invoice in self._invoices.values():
            if (
                invoice.subscription_id == subscription_id
                and invoice.kind == InvoiceKind.SUBSCRIPTION
                and invoice.status != InvoiceStatus.CANCELLED
                and invoice.covers(period_start, period_end)
            ):
                return invoice
        return None

    async def get(self, invoice_id: str) -> Invoice | None:
        invoice = self._invoices.get(invoice_id)
        return invoice.model_copy(deep=True) if invoice else None

    async def save(self, invoice: Invoice) -> Invoice:
        self._invoices[invoice.invoice_id] = invoice.model_copy(deep=True)
        return invoice

    async def create_if_absent(self, invoice: Invoice) -> tuple[Invoice, bool]:
        async with self._lock:
            if invoice.kind == InvoiceKind.SUBSCRIPTION:
                existing = self._find_period(
                    invoice.subscription_id, invoice.period_start, invoice.period_end
                )
                if existing is not None:
                    return existing.model_copy(deep=True), False
            self._invoices[invoice.invoice_id] = invoice.model_copy(deep=True)
            return invoice, True

    async def find_for_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> Invoice | None:
        invoice = self._find_period(subscription_id, period_start, period_end)
        return invoice.model_copy(deep=True) if invoice else None

    async def latest_for_subscription(self, subscription_id: str) -> Invoice | None:
        invoices = await self.list_for_subscription(subscription_id)
        return invoices[-1] if invoices else None

    async def list_for_subscription(self, subscription_id: str) -> list[Invoice]:
        invoices = [
            invoice.model_copy(deep=True)
            for invoice in self._invoices.values()
            if invoice.subscription_id == subscription_id
        ]
        return sorted(invoices, key=lambda invoice: invoice.created_at)

    async def list_due_for_retry(self, before: datetime, max_attempts: int) -> list[Invoice]:
        return [
            invoice.model_copy(deep=True)
            for invoice in self._invoices.values()
            if invoice.status == InvoiceStatus.FAILED
            and invoice.next_payment_attempt is not None
            and invoice.next_payment_attempt <= before
            and invoice.attempt_count < max_attempts
        ]

    async def list_awaiting_payment(self, before: datetime) -> list[Invoice]:
        invoices = [
            invoice.model_copy(deep=True)
            for invoice in self._invoices.values()
            if invoice.status == InvoiceStatus.PENDING and invoice.created_at <= before
        ]
        return sorted(invoices, key=lambda invoice: invoice.created_at)

    async def list_stale_processing(self, before: datetime) -> list[Invoice]:
        return [
            invoice.model_copy(deep=True)
            for invoice in self._invoices.values()
            if invoice.status == InvoiceStatus.PROCESSING
            and (invoice.last_attempt_at is None or invoice.last_attempt_at < before)
        ]

    async def claim_for_payment(self, invoice_id: str, now: datetime) -> Invoice | None:
        async with self._lock:
            invoice = self._invoices.get(invoice_id)
            if invoice is None or invoice.status not in _CLAIMABLE_INVOICE:
                return None
            invoice.mark_processing(now)
            return invoice.model_copy(deep=True)


class InMemoryWebhookDeliveryRepository:
    def __init__(self) -> None:
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._lock = asyncio.Lock()

    async def get(self, delivery_id: str) -> WebhookDelivery | None:
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def save(self, delivery: WebhookDelivery) -> WebhookDelivery:
        self._deliveries[delivery.delivery_id] = delivery.model_copy(deep=True)
        return delivery

    async def find_recent(
        self,
        event_id: str,
        event_type: WebhookEventType,
        endpoint_url: str,
        since: datetime,
    ) -> WebhookDelivery | None:
        for delivery in self._deliveries.values():
            if (
                delivery.event_id == event_id
                and delivery.event_type == event_type
                and delivery.endpoint_url == endpoint_url
                and delivery.created_at >= since
            ):
                return delivery.model_copy(deep=True)
        return None

    async def claim(self, delivery_id: str, now: datetime) -> WebhookDelivery | None:
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None or delivery.status not in _CLAIMABLE_DELIVERY:
                return None
            delivery.mark_processing(now)
            return delivery.model_copy(deep=True)

    async def list_ready_for_retry(
        self, now: datetime, limit: int | None = None
    ) -> list[WebhookDelivery]:
        ready = sorted(
            (
                delivery
                for delivery in self._deliveries.values()
                if delivery.status in _CLAIMABLE_DELIVERY
                and delivery.next_attempt_at is not None
                and delivery.next_attempt_at <= now
            ),
            key=lambda delivery: delivery.next_attempt_at or now,
        )
        if limit is not None:
            ready = ready[:limit]
        return [delivery.model_copy(deep=True) for delivery in ready]

    async def list_stale_processing(self, before: datetime) -> list[WebhookDelivery]:
        return [
            delivery.model_copy(deep=True)
            for delivery in self._deliveries.values()
            if delivery.status == DeliveryStatus.PROCESSING
            and (delivery.last_attempt_at is None or delivery.last_attempt_at < before)
        ]

    async def delete_terminal_before(
        self, delivered_before: datetime, failed_before: datetime
    ) -> int:
        async with self._lock:
            expired = [
                delivery_id
                for delivery_id, delivery in self._deliveries.items()
                if (
                    delivery.status == DeliveryStatus.DELIVERED
                    and (delivery.updated_at or delivery.created_at) < delivered_before
                )
                or (
                    delivery.status == DeliveryStatus.FAILED
                    and (delivery.updated_at or delivery.created_at) < failed_before
                )
            ]
            for delivery_id in expired:
                del self._deliveries[delivery_id]
            return len(expired)

    async def count_by_status(self) -> dict[DeliveryStatus, int]:
        counts: dict[DeliveryStatus, int] = {}
        for delivery in self._deliveries.values():
            counts[delivery.status] = counts.get(delivery.status, 0) + 1
        return counts


__all__ = [
    "InMemoryInvoiceRepository",
    "InMemoryPlanRepository",
    "InMemorySubscriptionRepository",
    "InMemoryWebhookDeliveryRepository",
]
