"""Tests for the subscription and plan services."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from dotmac.recurring.billing.engine import subscription_lock_key
from dotmac.recurring.billing.enums import (
    ChangeTiming,
    IntervalUnit,
    InvoiceKind,
    InvoiceStatus,
    SubscriptionStatus,
)
from dotmac.recurring.billing.exceptions import (
    DuplicatePlanError,
    PlanInactiveError,
    PlanIntervalChangeError,
    PlanNotFoundError,
    ProrationError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from dotmac.recurring.billing.models import PendingCancellation, PendingPlanChange

pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 1, tzinfo=UTC)
PERIOD_END = NOW + timedelta(days=30)
MID_PERIOD = NOW + timedelta(days=10)


@pytest_asyncio.fixture
async def basic(plan_service, plan_factory):
    return await plan_service.create_plan(
        plan_factory(code="basic", amount=Decimal("100"), interval_unit=IntervalUnit.DAY, interval_count=30)
    )


@pytest_asyncio.fixture
async def pro(plan_service, plan_factory):
    return await plan_service.create_plan(
        plan_factory(
            code="pro",
            name="Pro",
            amount=Decimal("200"),
            interval_unit=IntervalUnit.DAY,
            interval_count=30,
        )
    )


@pytest_asyncio.fixture
async def subscription(subscription_service, basic):
    return await subscription_service.create_subscription("cus_1", plan_id=basic.plan_id)


@pytest.mark.asyncio
class TestPlanService:
    async def test_duplicate_code_rejected(self, plan_service, plan_factory, basic):
        with pytest.raises(DuplicatePlanError):
            await plan_service.create_plan(plan_factory(code="basic"))

    async def test_get_missing_plan(self, plan_service):
        with pytest.raises(PlanNotFoundError):
            await plan_service.get_plan("missing")

    async def test_update_price(self, plan_service, basic):
        updated = await plan_service.update_plan(basic.plan_id, amount=Decimal("120"))

        assert updated.amount == Decimal("120")
        assert updated.updated_at == NOW
        assert (await plan_service.get_plan(basic.plan_id)).amount == Decimal("120")

    async def test_interval_change_blocked_while_in_use(self, plan_service, basic, subscription):
        with pytest.raises(PlanIntervalChangeError) as exc_info:
            await plan_service.update_plan(basic.plan_id, interval_count=60)

        assert exc_info.value.context["active_subscriptions"] == 1

    async def test_interval_change_allowed_without_subscribers(self, plan_service, basic):
        updated = await plan_service.update_plan(
            basic.plan_id, interval_unit=IntervalUnit.MONTH, interval_count=1
        )

        assert updated.interval_unit == IntervalUnit.MONTH

    async def test_renaming_to_existing_code(self, plan_service, basic, pro):
        with pytest.raises(DuplicatePlanError):
            await plan_service.update_plan(basic.plan_id, code="pro")

    async def test_deactivate(self, plan_service, basic, pro):
        await plan_service.deactivate_plan(basic.plan_id)

        active = await plan_service.list_active_plans()
        assert [plan.code for plan in active] == ["pro"]

    async def test_interval_limits(self, plan_factory):
        with pytest.raises(ValueError):
            plan_factory(interval_unit=IntervalUnit.MONTH, interval_count=13)


@pytest.mark.asyncio
class TestCreateSubscription:
    async def test_create_activates_and_anchors(self, subscription_service, basic, notifier):
        subscription = await subscription_service.create_subscription(
            "cus_1", plan_code="basic", metadata={"source": "signup"}
        )

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.billing_cycle_anchor == NOW
        assert subscription.current_period_end == PERIOD_END
        assert subscription.next_billing_date == PERIOD_END
        assert subscription.metadata == {"source": "signup"}
        assert notifier.types() == ["subscription.created"]

    async def test_idempotency_key_replays(self, subscription_service, subscriptions, basic):
        first = await subscription_service.create_subscription(
            "cus_1", plan_id=basic.plan_id, idempotency_key="signup-1"
        )
        second = await subscription_service.create_subscription(
            "cus_1", plan_id=basic.plan_id, idempotency_key="signup-1"
        )

        assert second.subscription_id == first.subscription_id
        assert len(await subscriptions.list_by_status(SubscriptionStatus.ACTIVE)) == 1

    async def test_inactive_plan_rejected(self, subscription_service, plan_service, basic):
        await plan_service.deactivate_plan(basic.plan_id)

        with pytest.raises(PlanInactiveError):
            await subscription_service.create_subscription("cus_1", plan_id=basic.plan_id)

    async def test_plan_reference_required(self, subscription_service):
        with pytest.raises(SubscriptionError):
            await subscription_service.create_subscription("cus_1")

    async def test_unknown_plan_code(self, subscription_service):
        with pytest.raises(PlanNotFoundError):
            await subscription_service.create_subscription("cus_1", plan_code="nope")

    async def test_trial_can_be_skipped(self, subscription_service, plan_service, plan_factory):
        plan = await plan_service.create_plan(plan_factory(code="trial", trial_days=14))

        with_trial = await subscription_service.create_subscription("cus_1", plan_id=plan.plan_id)
        without = await subscription_service.create_subscription(
            "cus_2", plan_id=plan.plan_id, trial=False
        )

        assert with_trial.in_trial_period()
        assert with_trial.next_billing_date == NOW + timedelta(days=14)
        assert not without.in_trial_period()
        assert without.next_billing_date == datetime(2024, 2, 1, tzinfo=UTC)

    async def test_setup_fee_invoice(self, subscription_service, plan_service, plan_factory, invoices):
        plan = await plan_service.create_plan(
            plan_factory(code="setup", setup_fee=Decimal("25"))
        )

        subscription = await subscription_service.create_subscription("cus_1", plan_id=plan.plan_id)

        [invoice] = await invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.kind == InvoiceKind.SETUP_FEE
        assert invoice.amount == Decimal("25")
        assert invoice.status == InvoiceStatus.PENDING

    async def test_get_missing_subscription(self, subscription_service):
        with pytest.raises(SubscriptionNotFoundError):
            await subscription_service.get_subscription("missing")


@pytest.mark.asyncio
class TestChangePlan:
    async def test_immediate_upgrade_raises_proration_invoice(
        self, subscription_service, subscription, pro, invoices, notifier
    ):
        updated, result = await subscription_service.change_plan(
            subscription.subscription_id, pro.plan_id, now=MID_PERIOD
        )

        assert updated.plan_id == pro.plan_id
        assert result.net_amount == Decimal("66.67")
        [invoice] = await invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.kind == InvoiceKind.PRORATION
        assert invoice.amount == Decimal("66.67")
        assert invoice.period_start == MID_PERIOD
        assert invoice.period_end == PERIOD_END
        assert notifier.types()[-1] == "subscription.plan_changed"

    async def test_immediate_downgrade_credits_balance(
        self, subscription_service, basic, pro, invoices
    ):
        subscription = await subscription_service.create_subscription("cus_1", plan_id=pro.plan_id)

        updated, result = await subscription_service.change_plan(
            subscription.subscription_id, basic.plan_id, now=MID_PERIOD
        )

        assert result.net_amount == Decimal("-66.67")
        assert updated.credit_balance == Decimal("66.67")
        assert await invoices.list_for_subscription(subscription.subscription_id) == []

    async def test_without_proration(self, subscription_service, subscription, pro, invoices):
        updated, result = await subscription_service.change_plan(
            subscription.subscription_id, pro.plan_id, prorate=False, now=MID_PERIOD
        )

        assert result is None
        assert updated.plan_id == pro.plan_id
        assert await invoices.list_for_subscription(subscription.subscription_id) == []

    async def test_end_of_period_change_is_scheduled(self, subscription_service, subscription, pro):
        updated, result = await subscription_service.change_plan(
            subscription.subscription_id, pro.plan_id, timing=ChangeTiming.END_OF_PERIOD
        )

        assert result is None
        assert updated.plan_id == subscription.plan_id
        assert isinstance(updated.pending_change, PendingPlanChange)
        assert updated.pending_change.effective_at == PERIOD_END

    async def test_preview_does_not_apply(self, subscription_service, subscription, pro):
        result = await subscription_service.preview_plan_change(
            subscription.subscription_id, pro.plan_id, now=MID_PERIOD
        )

        assert result.net_amount == Decimal("66.67")
        stored = await subscription_service.get_subscription(subscription.subscription_id)
        assert stored.plan_id == subscription.plan_id

    async def test_same_plan_rejected(self, subscription_service, subscription, basic):
        with pytest.raises(SubscriptionError):
            await subscription_service.change_plan(subscription.subscription_id, basic.plan_id)

    async def test_only_active_subscriptions(self, subscription_service, subscription, pro):
        await subscription_service.pause_subscription(subscription.subscription_id)

        with pytest.raises(SubscriptionStateError):
            await subscription_service.change_plan(subscription.subscription_id, pro.plan_id)

    async def test_inactive_target_plan(self, subscription_service, plan_service, subscription, pro):
        await plan_service.deactivate_plan(pro.plan_id)

        with pytest.raises(PlanInactiveError):
            await subscription_service.change_plan(subscription.subscription_id, pro.plan_id)

    async def test_proration_over_ceiling_is_rejected(
        self, subscription_service, plan_service, plan_factory, subscription
    ):
        huge = await plan_service.create_plan(
            plan_factory(
                code="enterprise",
                amount=Decimal("50000"),
                interval_unit=IntervalUnit.DAY,
                interval_count=30,
            )
        )

        with pytest.raises(ProrationError):
            await subscription_service.change_plan(
                subscription.subscription_id, huge.plan_id, now=MID_PERIOD
            )

        stored = await subscription_service.get_subscription(subscription.subscription_id)
        assert stored.plan_id == subscription.plan_id

    async def test_concurrent_modification_fails_fast(
        self, subscription_service, subscription, pro, locks
    ):
        async with locks.hold(subscription_lock_key(subscription.subscription_id)):
            with pytest.raises(SubscriptionError, match="being modified"):
                await subscription_service.change_plan(subscription.subscription_id, pro.plan_id)


@pytest.mark.asyncio
class TestPauseResumeCancel:
    async def test_pause_and_resume_keep_period(self, subscription_service, subscription, notifier):
        paused = await subscription_service.pause_subscription(subscription.subscription_id)
        resumed = await subscription_service.resume_subscription(subscription.subscription_id)

        assert paused.status == SubscriptionStatus.PAUSED
        assert resumed.status == SubscriptionStatus.ACTIVE
        assert resumed.current_period_end == subscription.current_period_end
        assert notifier.types()[-2:] == ["subscription.paused", "subscription.resumed"]

    async def test_immediate_cancel(self, subscription_service, subscription):
        cancelled = await subscription_service.cancel_subscription(
            subscription.subscription_id, reason="no longer needed"
        )

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert cancelled.next_billing_date is None

    async def test_cancel_with_refund_credits_unused_days(
        self, subscription_service, subscription
    ):
        cancelled = await subscription_service.cancel_subscription(
            subscription.subscription_id, refund_unused=True, now=MID_PERIOD
        )

        assert cancelled.credit_balance == Decimal("66.67")

    async def test_cancel_at_period_end_is_scheduled(self, subscription_service, subscription):
        scheduled = await subscription_service.cancel_subscription(
            subscription.subscription_id, reason="budget", at_period_end=True
        )

        assert scheduled.status == SubscriptionStatus.ACTIVE
        assert isinstance(scheduled.pending_change, PendingCancellation)
        assert scheduled.pending_change.effective_at == PERIOD_END

        cleared = await subscription_service.clear_pending_change(subscription.subscription_id)
        assert cleared.pending_change is None

    async def test_cancelling_twice_is_a_no_op(self, subscription_service, subscription, notifier):
        first = await subscription_service.cancel_subscription(subscription.subscription_id)
        second = await subscription_service.cancel_subscription(
            subscription.subscription_id, reason="again"
        )

        assert second.cancelled_at == first.cancelled_at
        assert second.cancellation_reason is None
        assert notifier.types().count("subscription.cancelled") == 1

    async def test_add_credit_must_be_positive(self, subscription_service, subscription):
        with pytest.raises(SubscriptionError):
            await subscription_service.add_credit(subscription.subscription_id, Decimal("0"))
