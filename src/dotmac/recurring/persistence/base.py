"""
Persistence collaborator contracts.

Repositories hand out copies: mutating a returned model has no effect until it
is passed back to ``save``. Every write is committed on its own so an
interrupted sweep leaves finished entities in their new state.
"""

from datetime import datetime
from typing import Protocol

from dotmac.recurring.billing.enums import PendingChangeKind, SubscriptionStatus
from dotmac.recurring.billing.models import Invoice, Plan, Subscription
from dotmac.recurring.webhooks.models import DeliveryStatus, WebhookDelivery, WebhookEventType


class PlanRepository(Protocol):
    async def get(self, plan_id: str) -> Plan | None: ...

    async def get_by_code(self, code: str) -> Plan | None: ...

    async def save(self, plan: Plan) -> Plan: ...

    async def list_active(self) -> list[Plan]: ...


class SubscriptionRepository(Protocol):
    async def get(self, subscription_id: str) -> Subscription | None: ...

    async def get_by_idempotency_key(self, key: str) -> Subscription | None: ...

    async def save(self, subscription: Subscription) -> Subscription: ...

    async def list_due_for_billing(self, before: datetime) -> list[Subscription]:
        """ACTIVE subscriptions whose next billing date is at or before ``before``."""
        ...

    async def list_trials_ending(self, before: datetime) -> list[Subscription]:
        """ACTIVE subscriptions still in a trial period that ends at or before ``before``."""
        ...

    async def list_by_status(self, status: SubscriptionStatus) -> list[Subscription]: ...

    async def list_pending_changes(
        self, kind: PendingChangeKind, before: datetime
    ) -> list[Subscription]:
        """Non-terminal subscriptions with a directive of ``kind`` effective by ``before``."""
        ...

    async def count_for_plan(self, plan_id: str, statuses: set[SubscriptionStatus]) -> int: ...


class InvoiceRepository(Protocol):
    async def get(self, invoice_id: str) -> Invoice | None: ...

    async def save(self, invoice: Invoice) -> Invoice: ...

    async def create_if_absent(self, invoice: Invoice) -> tuple[Invoice, bool]:
        """Insert a SUBSCRIPTION invoice unless a non-cancelled one exists for its period.

        Returns the stored invoice and whether it was created by this call.
        """
        ...

    async def find_for_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> Invoice | None:
        """The non-cancelled SUBSCRIPTION invoice for the period, if any."""
        ...

    async def latest_for_subscription(self, subscription_id: str) -> Invoice | None: ...

    async def list_for_subscription(self, subscription_id: str) -> list[Invoice]: ...

    async def list_due_for_retry(self, before: datetime, max_attempts: int) -> list[Invoice]:
        """FAILED invoices with a next attempt at or before ``before`` and attempts left."""
        ...

    async def list_awaiting_payment(self, before: datetime) -> list[Invoice]:
        """PENDING invoices created at or before ``before``, oldest first."""
        ...

    async def list_stale_processing(self, before: datetime) -> list[Invoice]:
        """PROCESSING invoices whose last attempt started before ``before``."""
        ...

    async def claim_for_payment(self, invoice_id: str, now: datetime) -> Invoice | None:
        """Atomically move PENDING/FAILED to PROCESSING and count the attempt.

        Returns the claimed invoice, or None when another worker got there first.
        """
        ...


class WebhookDeliveryRepository(Protocol):
    async def get(self, delivery_id: str) -> WebhookDelivery | None: ...

    async def save(self, delivery: WebhookDelivery) -> WebhookDelivery: ...

    async def find_recent(
        self,
        event_id: str,
        event_type: WebhookEventType,
        endpoint_url: str,
        since: datetime,
    ) -> WebhookDelivery | None: ...

    async def claim(self, delivery_id: str, now: datetime) -> WebhookDelivery | None:
        """Atomically move PENDING/RETRYING to PROCESSING and count the attempt."""
        ...

    async def list_ready_for_retry(
        self, now: datetime, limit: int | None = None
    ) -> list[WebhookDelivery]:
        """PENDING/RETRYING deliveries whose next attempt is due."""
        ...

    async def list_stale_processing(self, before: datetime) -> list[WebhookDelivery]: ...

    async def delete_terminal_before(
        self, delivered_before: datetime, failed_before: datetime
    ) -> int:
        """Delete DELIVERED rows older than ``delivered_before`` and FAILED rows older
        than ``failed_before``; returns the number removed."""
        ...

    async def count_by_status(self) -> dict[DeliveryStatus, int]: ...


__all__ = [
    "InvoiceRepository",
    "PlanRepository",
    "SubscriptionRepository",
    "WebhookDeliveryRepository",
]
