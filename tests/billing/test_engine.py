"""Tests for the billing engine sweeps."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from dotmac.recurring.billing.config import BillingConfig, ChargeConfig
from dotmac.recurring.billing.engine import (
    NONPAYMENT_REASON,
    BillingEngine,
    subscription_lock_key,
)
from dotmac.recurring.billing.enums import (
    ChangeTiming,
    IntervalUnit,
    InvoiceKind,
    InvoiceStatus,
    SubscriptionStatus,
)
from dotmac.recurring.billing.exceptions import PaymentError
from dotmac.recurring.billing.gateway import ChargeResult
from dotmac.recurring.billing.models import Invoice
from dotmac.recurring.sweeps import EntityOutcome

pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 1, tzinfo=UTC)
FEB_1 = datetime(2024, 2, 1, tzinfo=UTC)
MAR_1 = datetime(2024, 3, 1, tzinfo=UTC)


@pytest_asyncio.fixture
async def plan(plans, plan_factory):
    plan = plan_factory()
    await plans.save(plan)
    return plan


@pytest_asyncio.fixture
async def subscription(subscription_service, plan):
    return await subscription_service.create_subscription(
        "cus_1", plan_id=plan.plan_id, payment_method_ref="pm_1"
    )


async def _only_invoice(invoices, subscription_id):
    found = await invoices.list_for_subscription(subscription_id)
    assert len(found) == 1
    return found[0]


class SlowGateway:
    async def charge(self, amount, currency, payment_method_ref, idempotency_key):
        await asyncio.sleep(1)
        return ChargeResult.succeeded("ch_late")


@pytest.mark.asyncio
class TestDueBilling:
    async def test_charges_due_subscription_and_advances_cycle(
        self, engine, subscription, subscriptions, invoices, gateway, notifier
    ):
        report = await engine.process_due_billing(FEB_1)

        assert report.processed == 1
        assert report.succeeded == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.kind == InvoiceKind.SUBSCRIPTION
        assert invoice.period_start == NOW
        assert invoice.period_end == FEB_1
        assert invoice.due_date == FEB_1 + timedelta(days=3)
        assert invoice.invoice_number.startswith("INV-20240201-")
        assert gateway.calls == [
            {
                "amount": Decimal("100.00"),
                "currency": "USD",
                "payment_method_ref": "pm_1",
                "idempotency_key": f"inv_{invoice.invoice_id}_0",
            }
        ]

        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.current_period_start == FEB_1
        assert stored.next_billing_date == MAR_1
        assert "invoice.paid" in notifier.types()

    async def test_not_due_yet(self, engine, subscription, gateway):
        report = await engine.process_due_billing(NOW + timedelta(days=15))

        assert report.processed == 0
        assert gateway.calls == []

    async def test_repeated_sweep_does_not_double_bill(self, engine, subscription, invoices, gateway):
        await engine.process_due_billing(FEB_1)
        second = await engine.process_due_billing(FEB_1)

        assert second.processed == 0
        assert len(gateway.calls) == 1
        await _only_invoice(invoices, subscription.subscription_id)

    async def test_concurrent_sweeps_charge_once(self, engine, subscription, invoices, gateway):
        await asyncio.gather(engine.process_due_billing(FEB_1), engine.process_due_billing(FEB_1))

        assert len(gateway.calls) == 1
        await _only_invoice(invoices, subscription.subscription_id)

    async def test_locked_subscription_is_skipped(self, engine, subscription, locks, gateway):
        async with locks.hold(subscription_lock_key(subscription.subscription_id)):
            outcome = await engine.bill_subscription(subscription.subscription_id, FEB_1)

        assert outcome == EntityOutcome.SKIPPED
        assert gateway.calls == []

    async def test_decline_marks_past_due_and_schedules_retry(
        self, engine, subscription, subscriptions, invoices, gateway, notifier
    ):
        gateway.queue(ChargeResult.declined("card_declined"))

        report = await engine.process_due_billing(FEB_1)

        assert report.failed == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.FAILED
        assert invoice.attempt_count == 1
        assert invoice.charge_sequence == 1
        assert invoice.next_payment_attempt == FEB_1 + timedelta(days=1)
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.next_billing_date == FEB_1
        assert "invoice.payment_failed" in notifier.types()

    async def test_timeout_keeps_idempotency_key(
        self, plans, subscriptions, invoices, subscription, gateway, locks
    ):
        slow = BillingEngine(
            plans=plans,
            subscriptions=subscriptions,
            invoices=invoices,
            gateway=SlowGateway(),
            locks=locks,
            config=BillingConfig(charge=ChargeConfig(timeout_seconds=0.01)),
        )

        await slow.process_due_billing(FEB_1)

        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.FAILED
        assert invoice.failure_code == "timeout"
        assert invoice.charge_sequence == 0

        retry_engine = BillingEngine(
            plans=plans, subscriptions=subscriptions, invoices=invoices, gateway=gateway, locks=locks
        )
        await retry_engine.process_payment_retries(FEB_1 + timedelta(days=1))

        assert gateway.calls[0]["idempotency_key"] == f"inv_{invoice.invoice_id}_0"

    async def test_gateway_exception_is_an_unknown_outcome(
        self, engine, subscription, invoices, gateway
    ):
        gateway.queue(ConnectionError("processor unreachable"))

        report = await engine.process_due_billing(FEB_1)

        assert report.failed == 1
        assert report.errors == 0
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.failure_code == "gateway_error"
        assert invoice.charge_sequence == 0

    async def test_one_broken_subscription_does_not_stop_the_sweep(
        self, engine, plans, plan_factory, subscription_service, subscription, gateway
    ):
        orphan_plan = plan_factory(code="orphan")
        await plans.save(orphan_plan)
        await subscription_service.create_subscription("cus_2", plan_id=orphan_plan.plan_id)
        plans._plans.pop(orphan_plan.plan_id)

        report = await engine.process_due_billing(FEB_1)

        assert report.processed == 2
        assert report.succeeded == 1
        assert report.errors == 1
        assert len(gateway.calls) == 1

    async def test_credit_reduces_invoice(
        self, engine, subscription_service, subscription, subscriptions, invoices, gateway
    ):
        await subscription_service.add_credit(subscription.subscription_id, Decimal("30"))

        await engine.process_due_billing(FEB_1)

        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.amount == Decimal("70.00")
        assert invoice.credit_applied == Decimal("30")
        assert gateway.calls[0]["amount"] == Decimal("70.00")
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.credit_balance == 0

    async def test_fully_covered_invoice_skips_gateway(
        self, engine, subscription_service, subscription, subscriptions, invoices, gateway
    ):
        await subscription_service.add_credit(subscription.subscription_id, Decimal("150"))

        report = await engine.process_due_billing(FEB_1)

        assert report.succeeded == 1
        assert gateway.calls == []
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.PAID
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.credit_balance == Decimal("50")
        assert stored.next_billing_date == MAR_1

    async def test_paid_invoice_with_unadvanced_cycle_is_repaired(
        self, engine, subscription, subscriptions, invoices, gateway
    ):
        await engine.process_due_billing(FEB_1)
        # Simulate a crash between marking the invoice paid and advancing the cycle
        stored = await subscriptions.get(subscription.subscription_id)
        stored.current_period_start = NOW
        stored.current_period_end = FEB_1
        stored.next_billing_date = FEB_1
        await subscriptions.save(stored)

        outcome = await engine.bill_subscription(subscription.subscription_id, FEB_1)

        assert outcome == EntityOutcome.SKIPPED
        assert len(gateway.calls) == 1
        repaired = await subscriptions.get(subscription.subscription_id)
        assert repaired.next_billing_date == MAR_1


@pytest.mark.asyncio
class TestPaymentRetries:
    async def test_retry_schedule_and_cancellation_after_five_attempts(
        self, engine, subscription, subscriptions, invoices, gateway, notifier
    ):
        gateway.queue(*[ChargeResult.declined("insufficient_funds") for _ in range(5)])
        await engine.process_due_billing(FEB_1)
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.next_payment_attempt == FEB_1 + timedelta(days=1)

        second_try = FEB_1 + timedelta(days=1)
        await engine.process_payment_retries(second_try)
        invoice = await invoices.get(invoice.invoice_id)
        assert invoice.attempt_count == 2
        assert invoice.next_payment_attempt == second_try + timedelta(days=3)

        for _ in range(3):
            await engine.process_payment_retries(invoice.next_payment_attempt)
            invoice = await invoices.get(invoice.invoice_id)

        assert invoice.attempt_count == 5
        assert invoice.next_payment_attempt is None
        assert len(gateway.calls) == 5
        assert len({call["idempotency_key"] for call in gateway.calls}) == 5

        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.cancellation_reason == NONPAYMENT_REASON
        assert notifier.types().count("invoice.payment_retry_scheduled") == 3
        assert notifier.types()[-1] == "subscription.cancelled"

    async def test_retry_not_due_yet(self, engine, subscription, invoices, gateway):
        gateway.queue(ChargeResult.declined("card_declined"))
        await engine.process_due_billing(FEB_1)

        report = await engine.process_payment_retries(FEB_1 + timedelta(hours=12))

        assert report.processed == 0
        assert len(gateway.calls) == 1

    async def test_successful_retry_reactivates_and_advances(
        self, engine, subscription, subscriptions, invoices, gateway, notifier
    ):
        gateway.queue(ChargeResult.declined("card_declined"))
        await engine.process_due_billing(FEB_1)

        report = await engine.process_payment_retries(FEB_1 + timedelta(days=1))

        assert report.succeeded == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.PAID
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.current_period_start == FEB_1
        assert stored.next_billing_date == MAR_1
        assert "invoice.payment_retry_succeeded" in notifier.types()

    async def test_retry_for_cancelled_subscription_cancels_invoice(
        self, engine, subscription_service, subscription, invoices, gateway
    ):
        gateway.queue(ChargeResult.declined("card_declined"))
        await engine.process_due_billing(FEB_1)
        await subscription_service.cancel_subscription(
            subscription.subscription_id, reason="moved away", now=FEB_1
        )

        report = await engine.process_payment_retries(FEB_1 + timedelta(days=1))

        assert report.skipped == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.CANCELLED
        assert len(gateway.calls) == 1

    async def test_stale_processing_invoice_is_recovered_with_same_key(
        self, engine, subscription, invoices, gateway
    ):
        gateway.queue(ChargeResult.declined("card_declined"))
        await engine.process_due_billing(FEB_1)
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        retry_at = FEB_1 + timedelta(days=1)
        # A worker claimed the invoice and died before recording the outcome
        await invoices.claim_for_payment(invoice.invoice_id, retry_at - timedelta(hours=2))

        report = await engine.process_payment_retries(retry_at)

        assert report.succeeded == 1
        keys = [call["idempotency_key"] for call in gateway.calls]
        assert keys == [f"inv_{invoice.invoice_id}_0", f"inv_{invoice.invoice_id}_1"]
        recovered = await invoices.get(invoice.invoice_id)
        assert recovered.status == InvoiceStatus.PAID
        assert recovered.attempt_count == 3


@pytest.mark.asyncio
class TestLifecycle:
    async def test_trial_end_bills_first_period(
        self, engine, plans, plan_factory, subscription_service, subscriptions, invoices, gateway, notifier
    ):
        plan = plan_factory(code="trial", trial_days=14)
        await plans.save(plan)
        subscription = await subscription_service.create_subscription("cus_1", plan_id=plan.plan_id)
        trial_end = NOW + timedelta(days=14)

        assert (await engine.process_due_billing(trial_end)).processed == 1
        assert gateway.calls == []

        report = await engine.process_lifecycle(trial_end)

        assert report.passes["trial_end"].succeeded == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.period_start == trial_end
        assert invoice.status == InvoiceStatus.PAID
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.next_billing_date == datetime(2024, 3, 15, tzinfo=UTC)
        assert "subscription.trial_ended" in notifier.types()

    async def test_permanent_decline_escalates_past_due(
        self, engine, subscription, subscriptions, gateway
    ):
        gateway.queue(ChargeResult.declined("card_stolen", permanent=True))
        await engine.process_due_billing(FEB_1)

        report = await engine.process_lifecycle(FEB_1 + timedelta(hours=1))

        assert report.passes["past_due"].succeeded == 1
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.cancellation_reason == NONPAYMENT_REASON

    async def test_past_due_with_retries_left_is_kept(
        self, engine, subscription, subscriptions, gateway
    ):
        gateway.queue(ChargeResult.declined("card_declined"))
        await engine.process_due_billing(FEB_1)

        report = await engine.process_lifecycle(FEB_1 + timedelta(hours=1))

        assert report.passes["past_due"].skipped == 1
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.PAST_DUE

    async def test_scheduled_cancellation(
        self, engine, subscription_service, subscription, subscriptions
    ):
        await subscription_service.cancel_subscription(
            subscription.subscription_id, reason="too expensive", at_period_end=True
        )

        early = await engine.process_lifecycle(NOW + timedelta(days=10))
        assert early.passes["scheduled_cancellation"].processed == 0

        report = await engine.process_lifecycle(FEB_1)

        assert report.passes["scheduled_cancellation"].succeeded == 1
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.cancellation_reason == "too expensive"

    async def test_scheduled_plan_change(
        self, engine, plans, plan_factory, subscription_service, subscription, subscriptions
    ):
        pro = plan_factory(code="pro", amount=Decimal("200"))
        await plans.save(pro)
        await subscription_service.change_plan(
            subscription.subscription_id, pro.plan_id, timing=ChangeTiming.END_OF_PERIOD
        )

        report = await engine.process_lifecycle(FEB_1)

        assert report.passes["scheduled_plan_change"].succeeded == 1
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.plan_id == pro.plan_id
        assert stored.pending_change is None

    async def test_scheduled_change_to_missing_plan_is_dropped(
        self, engine, plans, plan_factory, subscription_service, subscription, subscriptions
    ):
        pro = plan_factory(code="pro", amount=Decimal("200"), interval_unit=IntervalUnit.MONTH)
        await plans.save(pro)
        await subscription_service.change_plan(
            subscription.subscription_id, pro.plan_id, timing=ChangeTiming.END_OF_PERIOD
        )
        plans._plans.pop(pro.plan_id)

        report = await engine.process_lifecycle(FEB_1)

        assert report.passes["scheduled_plan_change"].failed == 1
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.plan_id == subscription.plan_id
        assert stored.pending_change is None

    async def test_failing_pass_does_not_stop_the_others(
        self, engine, subscription_service, subscription, subscriptions, monkeypatch
    ):
        await subscription_service.cancel_subscription(
            subscription.subscription_id, at_period_end=True
        )

        async def broken(_now):
            raise RuntimeError("listing failed")

        monkeypatch.setattr(engine.subscriptions, "list_trials_ending", broken)

        report = await engine.process_lifecycle(FEB_1)

        assert report.errors == 1
        assert "trial_end" not in report.passes
        assert report.passes["scheduled_cancellation"].succeeded == 1


def _interrupted_period_invoice(subscription, amount=Decimal("100.00")) -> Invoice:
    """Period invoice as left by a run that stopped between raising and charging it."""
    return Invoice(
        subscription_id=subscription.subscription_id,
        customer_id=subscription.customer_id,
        amount=amount,
        period_start=subscription.current_period_start,
        period_end=subscription.current_period_end,
        due_date=FEB_1 + timedelta(days=3),
        created_at=FEB_1,
    )


@pytest.mark.asyncio
class TestUnchargedInvoices:
    async def test_due_billing_charges_invoice_left_pending(
        self, engine, subscription, subscriptions, invoices, gateway, notifier
    ):
        pending, _ = await invoices.create_if_absent(_interrupted_period_invoice(subscription))

        outcome = await engine.bill_subscription(subscription.subscription_id, FEB_1)

        assert outcome == EntityOutcome.SUCCEEDED
        assert gateway.calls[0]["idempotency_key"] == f"inv_{pending.invoice_id}_0"
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.invoice_id == pending.invoice_id
        assert invoice.status == InvoiceStatus.PAID
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.next_billing_date == MAR_1
        assert "invoice.paid" in notifier.types()

    async def test_retry_sweep_charges_invoice_left_pending(
        self, engine, subscription, subscriptions, invoices, gateway
    ):
        await invoices.create_if_absent(_interrupted_period_invoice(subscription))

        report = await engine.process_payment_retries(FEB_1)

        assert report.succeeded == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.PAID
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.current_period_start == FEB_1
        assert stored.next_billing_date == MAR_1
        assert (await engine.process_due_billing(FEB_1)).processed == 0
        assert len(gateway.calls) == 1

    async def test_setup_fee_is_collected(
        self, engine, plans, plan_factory, subscription_service, invoices, gateway, notifier
    ):
        plan = plan_factory(code="setup", setup_fee=Decimal("25"))
        await plans.save(plan)
        subscription = await subscription_service.create_subscription(
            "cus_1", plan_id=plan.plan_id, payment_method_ref="pm_1"
        )

        report = await engine.process_payment_retries(NOW)

        assert report.succeeded == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.kind == InvoiceKind.SETUP_FEE
        assert invoice.status == InvoiceStatus.PAID
        assert gateway.calls == [
            {
                "amount": Decimal("25"),
                "currency": "USD",
                "payment_method_ref": "pm_1",
                "idempotency_key": f"inv_{invoice.invoice_id}_0",
            }
        ]
        assert notifier.types()[-1] == "invoice.paid"

    async def test_declined_setup_fee_enters_dunning(
        self, engine, plans, plan_factory, subscription_service, subscriptions, invoices, gateway, notifier
    ):
        plan = plan_factory(code="setup", setup_fee=Decimal("25"))
        await plans.save(plan)
        subscription = await subscription_service.create_subscription(
            "cus_1", plan_id=plan.plan_id, payment_method_ref="pm_1"
        )
        gateway.queue(ChargeResult.declined("card_declined"))

        first = await engine.process_payment_retries(NOW)

        assert first.failed == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.FAILED
        assert invoice.next_payment_attempt == NOW + timedelta(days=1)
        assert (await subscriptions.get(subscription.subscription_id)).status == (
            SubscriptionStatus.PAST_DUE
        )
        assert notifier.types()[-1] == "invoice.payment_failed"

        second = await engine.process_payment_retries(NOW + timedelta(days=1))

        assert second.succeeded == 1
        assert (await invoices.get(invoice.invoice_id)).status == InvoiceStatus.PAID
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.next_billing_date == FEB_1
        assert notifier.types()[-1] == "invoice.payment_retry_succeeded"

    async def test_pending_invoice_of_cancelled_subscription_is_cancelled(
        self, engine, plans, plan_factory, subscription_service, invoices, gateway
    ):
        plan = plan_factory(code="setup", setup_fee=Decimal("25"))
        await plans.save(plan)
        subscription = await subscription_service.create_subscription("cus_1", plan_id=plan.plan_id)
        await subscription_service.cancel_subscription(subscription.subscription_id)

        report = await engine.process_payment_retries(NOW)

        assert report.skipped == 1
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.CANCELLED
        assert gateway.calls == []

    async def test_other_failed_invoice_keeps_subscription_past_due(
        self, engine, subscription, subscriptions, invoices, gateway
    ):
        gateway.queue(ChargeResult.declined("card_declined"))
        await engine.process_due_billing(FEB_1)
        await invoices.save(
            Invoice(
                subscription_id=subscription.subscription_id,
                customer_id=subscription.customer_id,
                kind=InvoiceKind.PRORATION,
                amount=Decimal("40"),
                status=InvoiceStatus.FAILED,
                attempt_count=1,
                next_payment_attempt=FEB_1 + timedelta(days=10),
                period_start=NOW + timedelta(days=20),
                period_end=FEB_1,
                due_date=FEB_1,
                created_at=NOW + timedelta(days=20),
            )
        )

        report = await engine.process_payment_retries(FEB_1 + timedelta(days=1))

        assert report.succeeded == 1
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.next_billing_date == MAR_1


@pytest.mark.asyncio
class TestPlanChangeBilling:
    @pytest_asyncio.fixture
    async def basic(self, plans, plan_factory):
        plan = plan_factory(
            code="basic30", amount=Decimal("100"), interval_unit=IntervalUnit.DAY, interval_count=30
        )
        await plans.save(plan)
        return plan

    @pytest_asyncio.fixture
    async def pro(self, plans, plan_factory):
        plan = plan_factory(
            code="pro30",
            name="Pro",
            amount=Decimal("200"),
            interval_unit=IntervalUnit.DAY,
            interval_count=30,
        )
        await plans.save(plan)
        return plan

    async def test_upgrade_collects_old_price_plus_proration(
        self, engine, subscription_service, subscriptions, invoices, gateway, basic, pro
    ):
        period_end = NOW + timedelta(days=30)
        subscription = await subscription_service.create_subscription(
            "cus_1", plan_id=basic.plan_id, payment_method_ref="pm_1"
        )
        await subscription_service.change_plan(
            subscription.subscription_id, pro.plan_id, now=NOW + timedelta(days=10)
        )

        await engine.process_payment_retries(NOW + timedelta(days=10))
        await engine.process_due_billing(period_end)

        paid = await invoices.list_for_subscription(subscription.subscription_id)
        assert [(invoice.kind, invoice.amount) for invoice in paid] == [
            (InvoiceKind.PRORATION, Decimal("66.67")),
            (InvoiceKind.SUBSCRIPTION, Decimal("100")),
        ]
        assert all(invoice.status == InvoiceStatus.PAID for invoice in paid)
        assert sum(call["amount"] for call in gateway.calls) == Decimal("166.67")
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.period_plan_id == pro.plan_id
        assert stored.next_billing_date == period_end + timedelta(days=30)

    async def test_next_period_is_billed_at_new_plan(
        self, engine, subscription_service, invoices, gateway, basic, pro
    ):
        period_end = NOW + timedelta(days=30)
        subscription = await subscription_service.create_subscription(
            "cus_1", plan_id=basic.plan_id, payment_method_ref="pm_1"
        )
        await subscription_service.change_plan(
            subscription.subscription_id, pro.plan_id, prorate=False, now=NOW + timedelta(days=10)
        )

        await engine.process_due_billing(period_end)
        await engine.process_due_billing(period_end + timedelta(days=30))

        charged = [call["amount"] for call in gateway.calls]
        assert charged == [Decimal("100"), Decimal("200")]

    async def test_downgrade_collects_old_price_less_credit(
        self, engine, subscription_service, subscriptions, invoices, gateway, basic, pro
    ):
        period_end = NOW + timedelta(days=30)
        subscription = await subscription_service.create_subscription(
            "cus_1", plan_id=pro.plan_id, payment_method_ref="pm_1"
        )
        await subscription_service.change_plan(
            subscription.subscription_id, basic.plan_id, now=NOW + timedelta(days=10)
        )

        await engine.process_payment_retries(NOW + timedelta(days=10))
        await engine.process_due_billing(period_end)

        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.amount == Decimal("133.33")
        assert invoice.credit_applied == Decimal("66.67")
        assert sum(call["amount"] for call in gateway.calls) == Decimal("133.33")
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.credit_balance == 0
        assert stored.period_plan_id == basic.plan_id


@pytest.mark.asyncio
class TestCreditSettlement:
    async def test_credit_is_kept_until_invoice_is_paid(
        self, engine, subscription_service, subscription, subscriptions, invoices, gateway
    ):
        await subscription_service.add_credit(subscription.subscription_id, Decimal("30"))
        gateway.queue(ChargeResult.declined("card_declined"))

        await engine.process_due_billing(FEB_1)

        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.credit_applied == Decimal("30")
        assert (await subscriptions.get(subscription.subscription_id)).credit_balance == Decimal("30")

        await engine.process_payment_retries(FEB_1 + timedelta(days=1))

        assert (await invoices.get(invoice.invoice_id)).status == InvoiceStatus.PAID
        assert (await subscriptions.get(subscription.subscription_id)).credit_balance == 0

    async def test_cancelled_invoice_leaves_credit_on_the_subscription(
        self, engine, subscription_service, subscription, subscriptions, invoices, gateway
    ):
        await subscription_service.add_credit(subscription.subscription_id, Decimal("30"))
        gateway.queue(ChargeResult.declined("card_declined"))
        await engine.process_due_billing(FEB_1)
        await subscription_service.cancel_subscription(subscription.subscription_id, now=FEB_1)

        await engine.process_payment_retries(FEB_1 + timedelta(days=1))

        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.CANCELLED
        stored = await subscriptions.get(subscription.subscription_id)
        assert stored.credit_balance == Decimal("30")


@pytest.mark.asyncio
class TestGatewayErrors:
    async def test_payment_error_is_recorded_as_decline(
        self, engine, subscription, invoices, gateway
    ):
        gateway.queue(PaymentError("Card expired", failure_code="expired_card", permanent=True))

        report = await engine.process_due_billing(FEB_1)

        assert report.failed == 1
        assert report.errors == 0
        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.status == InvoiceStatus.FAILED
        assert invoice.failure_code == "expired_card"
        assert invoice.charge_sequence == 1
        assert invoice.next_payment_attempt is None

    async def test_transient_payment_error_is_retried(
        self, engine, subscription, invoices, gateway
    ):
        gateway.queue(PaymentError("Processor busy"))

        await engine.process_due_billing(FEB_1)

        invoice = await _only_invoice(invoices, subscription.subscription_id)
        assert invoice.failure_code == "payment_error"
        assert invoice.next_payment_attempt == FEB_1 + timedelta(days=1)
