"""
SQLAlchemy 2.0 async repositories.

Every public call opens its own session and commits before returning, so an
interrupted sweep keeps whatever it already finished. Claims are conditional
UPDATEs: only one worker can move an invoice or delivery into PROCESSING.
"""

from datetime import datetime

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dotmac.recurring.billing.enums import (
    InvoiceKind,
    InvoiceStatus,
    PendingChangeKind,
    SubscriptionStatus,
)
from dotmac.recurring.billing.models import Invoice, Plan, Subscription
from dotmac.recurring.db import get_session_factory
from dotmac.recurring.persistence.tables import (
    InvoiceTable,
    PlanTable,
    SubscriptionTable,
    WebhookDeliveryTable,
)
from dotmac.recurring.webhooks.models import DeliveryStatus, WebhookDelivery, WebhookEventType

logger = structlog.get_logger(__name__)

_CLAIMABLE_INVOICE = (InvoiceStatus.PENDING.value, InvoiceStatus.FAILED.value)
_CLAIMABLE_DELIVERY = (DeliveryStatus.PENDING.value, DeliveryStatus.RETRYING.value)
_TERMINAL_SUBSCRIPTION = (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value)


class _SQLRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or get_session_factory()


class SQLPlanRepository(_SQLRepository):
    async def get(self, plan_id: str) -> Plan | None:
        async with self._session_factory() as session:
            row = await session.get(PlanTable, plan_id)
            return row.to_model() if row else None

    async def get_by_code(self, code: str) -> Plan | None:
        async with self._session_factory() as session:
            row = await session.scalar(select(PlanTable).where(PlanTable.code == code))
            return row.to_model() if row else None

    async def save(self, plan: Plan) -> Plan:
        async with self._session_factory() as session:
            await session.merge(PlanTable.from_model(plan))
            await session.commit()
        return plan

    async def list_active(self) -> list[Plan]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(PlanTable).where(PlanTable.is_active.is_(True)).order_by(PlanTable.code)
            )
            return [row.to_model() for row in rows]


class SQLSubscriptionRepository(_SQLRepository):
    async def _select(self, *criteria) -> list[Subscription]:  # type: ignore[no-untyped-def]
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(SubscriptionTable)
                .where(*criteria)
                .order_by(SubscriptionTable.created_at)
            )
            return [row.to_model() for row in rows]

    async def get(self, subscription_id: str) -> Subscription | None:
        async with self._session_factory() as session:
            row = await session.get(SubscriptionTable, subscription_id)
            return row.to_model() if row else None

    async def get_by_idempotency_key(self, key: str) -> Subscription | None:
        matches = await self._select(SubscriptionTable.idempotency_key == key)
        return matches[0] if matches else None

    async def save(self, subscription: Subscription) -> Subscription:
        async with self._session_factory() as session:
            await session.merge(SubscriptionTable.from_model(subscription))
            await session.commit()
        return subscription

    async def list_due_for_billing(self, before: datetime) -> list[Subscription]:
        return await self._select(
            SubscriptionTable.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionTable.next_billing_date.is_not(None),
            SubscriptionTable.next_billing_date <= before,
        )

    async def list_trials_ending(self, before: datetime) -> list[Subscription]:
        return await self._select(
            SubscriptionTable.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionTable.trial_end.is_not(None),
            SubscriptionTable.trial_end <= before,
            SubscriptionTable.current_period_end <= SubscriptionTable.trial_end,
        )

    async def list_by_status(self, status: SubscriptionStatus) -> list[Subscription]:
        return await self._select(SubscriptionTable.status == status.value)

    async def list_pending_changes(
        self, kind: PendingChangeKind, before: datetime
    ) -> list[Subscription]:
        return await self._select(
            SubscriptionTable.status.not_in(_TERMINAL_SUBSCRIPTION),
            SubscriptionTable.pending_change_kind == kind.value,
            SubscriptionTable.pending_change_effective_at <= before,
        )

    async def count_for_plan(self, plan_id: str, statuses: set[SubscriptionStatus]) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(SubscriptionTable)
                .where(
                    SubscriptionTable.plan_id == plan_id,
                    SubscriptionTable.status.in_([status.value for status in statuses]),
                )
            )
            return int(count or 0)


class SQLInvoiceRepository(_SQLRepository):
    @staticmethod
    def _live_period(subscription_id: str, period_start: datetime, period_end: datetime):  # type: ignore[no-untyped-def]
        return and_(
            InvoiceTable.subscription_id == subscription_id,
            InvoiceTable.kind == InvoiceKind.SUBSCRIPTION.value,
            InvoiceTable.status != InvoiceStatus.CANCELLED.value,
            InvoiceTable.period_start == period_start,
            InvoiceTable.period_end == period_end,
        )

    async def get(self, invoice_id: str) -> Invoice | None:
        async with self._session_factory() as session:
            row = await session.get(InvoiceTable, invoice_id)
            return row.to_model() if row else None

    async def save(self, invoice: Invoice) -> Invoice:
        async with self._session_factory() as session:
            await session.merge(InvoiceTable.from_model(invoice))
            await session.commit()
        return invoice

    async def create_if_absent(self, invoice: Invoice) -> tuple[Invoice, bool]:
        if invoice.kind == InvoiceKind.SUBSCRIPTION:
            existing = await self.find_for_period(
                invoice.subscription_id, invoice.period_start, invoice.period_end
            )
            if existing is not None:
                return existing, False
        async with self._session_factory() as session:
            session.add(InvoiceTable.from_model(invoice))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "billing.invoice.create_conflict",
                    subscription_id=invoice.subscription_id,
                    period_start=invoice.period_start.isoformat(),
                )
                existing = await self.find_for_period(
                    invoice.subscription_id, invoice.period_start, invoice.period_end
                )
                if existing is None:
                    raise
                return existing, False
        return invoice, True

    async def find_for_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> Invoice | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(InvoiceTable).where(
                    self._live_period(subscription_id, period_start, period_end)
                )
            )
            return row.to_model() if row else None

    async def latest_for_subscription(self, subscription_id: str) -> Invoice | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(InvoiceTable)
                .where(InvoiceTable.subscription_id == subscription_id)
                .order_by(InvoiceTable.created_at.desc())
                .limit(1)
            )
            return row.to_model() if row else None

    async def list_for_subscription(self, subscription_id: str) -> list[Invoice]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(InvoiceTable)
                .where(InvoiceTable.subscription_id == subscription_id)
                .order_by(InvoiceTable.created_at)
            )
            return [row.to_model() for row in rows]

    async def list_due_for_retry(self, before: datetime, max_attempts: int) -> list[Invoice]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(InvoiceTable)
                .where(
                    InvoiceTable.status == InvoiceStatus.FAILED.value,
                    InvoiceTable.next_payment_attempt.is_not(None),
                    InvoiceTable.next_payment_attempt <= before,
                    InvoiceTable.attempt_count < max_attempts,
                )
                .order_by(InvoiceTable.next_payment_attempt)
            )
            return [row.to_model() for row in rows]

    async def list_awaiting_payment(self, before: datetime) -> list[Invoice]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(InvoiceTable)
                .where(
                    InvoiceTable.status == InvoiceStatus.PENDING.value,
                    InvoiceTable.created_at <= before,
                )
                .order_by(InvoiceTable.created_at)
            )
            return [row.to_model() for row in rows]

    async def list_stale_processing(self, before: datetime) -> list[Invoice]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(InvoiceTable).where(
                    InvoiceTable.status == InvoiceStatus.PROCESSING.value,
                    or_(
                        InvoiceTable.last_attempt_at.is_(None),
                        InvoiceTable.last_attempt_at < before,
                    ),
                )
            )
            return [row.to_model() for row in rows]

    async def claim_for_payment(self, invoice_id: str, now: datetime) -> Invoice | None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(InvoiceTable)
                .where(
                    InvoiceTable.invoice_id == invoice_id,
                    InvoiceTable.status.in_(_CLAIMABLE_INVOICE),
                )
                .values(
                    status=InvoiceStatus.PROCESSING.value,
                    attempt_count=InvoiceTable.attempt_count + 1,
                    last_attempt_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:  # type: ignore[attr-defined]
                return None
            row = await session.get(InvoiceTable, invoice_id, populate_existing=True)
            return row.to_model() if row else None


class SQLWebhookDeliveryRepository(_SQLRepository):
    async def get(self, delivery_id: str) -> WebhookDelivery | None:
        async with self._session_factory() as session:
            row = await session.get(WebhookDeliveryTable, delivery_id)
            return row.to_model() if row else None

    async def save(self, delivery: WebhookDelivery) -> WebhookDelivery:
        async with self._session_factory() as session:
            await session.merge(WebhookDeliveryTable.from_model(delivery))
            await session.commit()
        return delivery

    async def find_recent(
        self,
        event_id: str,
        event_type: WebhookEventType,
        endpoint_url: str,
        since: datetime,
    ) -> WebhookDelivery | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(WebhookDeliveryTable)
                .where(
                    WebhookDeliveryTable.event_id == event_id,
                    WebhookDeliveryTable.event_type == event_type.value,
                    WebhookDeliveryTable.endpoint_url == endpoint_url,
                    WebhookDeliveryTable.created_at >= since,
                )
                .order_by(WebhookDeliveryTable.created_at.desc())
                .limit(1)
            )
            return row.to_model() if row else None

    async def claim(self, delivery_id: str, now: datetime) -> WebhookDelivery | None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(WebhookDeliveryTable)
                .where(
                    WebhookDeliveryTable.delivery_id == delivery_id,
                    WebhookDeliveryTable.status.in_(_CLAIMABLE_DELIVERY),
                )
                .values(
                    status=DeliveryStatus.PROCESSING.value,
                    attempt_count=WebhookDeliveryTable.attempt_count + 1,
                    last_attempt_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:  # type: ignore[attr-defined]
                return None
            row = await session.get(WebhookDeliveryTable, delivery_id, populate_existing=True)
            return row.to_model() if row else None

    async def list_ready_for_retry(
        self, now: datetime, limit: int | None = None
    ) -> list[WebhookDelivery]:
        stmt = (
            select(WebhookDeliveryTable)
            .where(
                WebhookDeliveryTable.status.in_(_CLAIMABLE_DELIVERY),
                WebhookDeliveryTable.next_attempt_at.is_not(None),
                WebhookDeliveryTable.next_attempt_at <= now,
            )
            .order_by(WebhookDeliveryTable.next_attempt_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            rows = await session.scalars(stmt)
            return [row.to_model() for row in rows]

    async def list_stale_processing(self, before: datetime) -> list[WebhookDelivery]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(WebhookDeliveryTable).where(
                    WebhookDeliveryTable.status == DeliveryStatus.PROCESSING.value,
                    or_(
                        WebhookDeliveryTable.last_attempt_at.is_(None),
                        WebhookDeliveryTable.last_attempt_at < before,
                    ),
                )
            )
            return [row.to_model() for row in rows]

    async def delete_terminal_before(
        self, delivered_before: datetime, failed_before: datetime
    ) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(WebhookDeliveryTable).where(
                    or_(
                        and_(
                            WebhookDeliveryTable.status == DeliveryStatus.DELIVERED.value,
                            WebhookDeliveryTable.updated_at < delivered_before,
                        ),
                        and_(
                            WebhookDeliveryTable.status == DeliveryStatus.FAILED.value,
                            WebhookDeliveryTable.updated_at < failed_before,
                        ),
                    )
                )
            )
            await session.commit()
            return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def count_by_status(self) -> dict[DeliveryStatus, int]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(WebhookDeliveryTable.status, func.count()).group_by(
                    WebhookDeliveryTable.status
                )
            )
            return {DeliveryStatus(status): int(count) for status, count in rows.all()}


__all__ = [
    "SQLInvoiceRepository",
    "SQLPlanRepository",
    "SQLSubscriptionRepository",
    "SQLWebhookDeliveryRepository",
]
