"""
Recurring billing engine.

Three periodic sweeps drive subscriptions through their billing life:

* ``process_due_billing`` raises the invoice for every subscription whose
  period has ended and charges it.
* ``process_payment_retries`` charges PENDING invoices (setup fees,
  prorations, interrupted period invoices), re-attempts failed ones on the
  dunning schedule and cancels subscriptions once retries are exhausted.
* ``process_lifecycle`` ends trials, escalates past-due subscriptions and
  executes scheduled cancellations and plan changes.

Every subscription is handled under its advisory lock and in isolation: an
unexpected error is logged and counted, and the sweep moves on.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog

from dotmac.recurring.billing.config import BillingConfig, get_billing_config
from dotmac.recurring.billing.dunning import next_payment_attempt
from dotmac.recurring.billing.enums import (
    InvoiceKind,
    InvoiceStatus,
    PendingChangeKind,
    SubscriptionStatus,
)
from dotmac.recurring.billing.events import (
    BillingEvent,
    BillingEventType,
    invoice_event,
    subscription_event,
)
from dotmac.recurring.billing.exceptions import (
    InvoiceNotFoundError,
    PaymentError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from dotmac.recurring.billing.gateway import ChargeGateway, ChargeResult
from dotmac.recurring.billing.lifecycle import SubscriptionStateMachine
from dotmac.recurring.billing.metrics import BillingMetrics, get_billing_metrics
from dotmac.recurring.billing.models import (
    Invoice,
    Plan,
    Subscription,
    generate_invoice_number,
    invoice_due_date,
    utcnow,
)
from dotmac.recurring.billing.notifications import BillingNotifier, dispatch_event
from dotmac.recurring.locks import InMemoryLockManager, LockManager
from dotmac.recurring.logging import bound_context
from dotmac.recurring.persistence.base import (
    InvoiceRepository,
    PlanRepository,
    SubscriptionRepository,
)
from dotmac.recurring.sweeps import EntityOutcome, SweepReport, run_isolated

logger = structlog.get_logger(__name__)

NONPAYMENT_REASON = "payment retries exhausted"
SCHEDULED_CANCELLATION_REASON = "scheduled cancellation"

SWEEP_DUE_BILLING = "due_billing"
SWEEP_PAYMENT_RETRY = "payment_retry"
SWEEP_LIFECYCLE = "lifecycle"


def subscription_lock_key(subscription_id: str) -> str:
    return f"subscription:{subscription_id}"


class BillingEngine:
    """Orchestrates invoicing, charging and lifecycle sweeps."""

    def __init__(
        self,
        *,
        plans: PlanRepository,
        subscriptions: SubscriptionRepository,
        invoices: InvoiceRepository,
        gateway: ChargeGateway,
        notifier: BillingNotifier | None = None,
        metrics: BillingMetrics | None = None,
        locks: LockManager | None = None,
        config: BillingConfig | None = None,
        state_machine: SubscriptionStateMachine | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.plans = plans
        self.subscriptions = subscriptions
        self.invoices = invoices
        self.gateway = gateway
        self.notifier = notifier
        self.metrics = metrics or get_billing_metrics()
        self.locks = locks or InMemoryLockManager()
        self.config = config or get_billing_config()
        self.state_machine = state_machine or SubscriptionStateMachine()
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # Due billing
    # ------------------------------------------------------------------

    async def process_due_billing(self, now: datetime | None = None) -> SweepReport:
        """Invoice and charge every ACTIVE subscription whose billing date has passed."""
        now = now or self._clock()
        report = SweepReport(SWEEP_DUE_BILLING, now)
        with bound_context(sweep=SWEEP_DUE_BILLING), self.metrics.trace_operation(
            "sweep.due_billing"
        ):
            due = await self.subscriptions.list_due_for_billing(now)
            await run_isolated(
                report,
                [subscription.subscription_id for subscription in due],
                lambda subscription_id: self.bill_subscription(subscription_id, now),
                concurrency=self.config.charge.max_concurrency,
                on_error=self._error_recorder(SWEEP_DUE_BILLING),
            )
            logger.info("billing.sweep.completed", **report.as_dict())
        return report

    async def bill_subscription(
        self, subscription_id: str, now: datetime | None = None
    ) -> EntityOutcome:
        """Bill one subscription's current period if it is due."""
        now = now or self._clock()
        async with self.locks.hold(subscription_lock_key(subscription_id)) as acquired:
            if not acquired:
                logger.debug("billing.subscription.locked", subscription_id=subscription_id)
                return EntityOutcome.SKIPPED
            subscription = await self._require_subscription(subscription_id)
            return await self._bill_locked(subscription, now, sweep=SWEEP_DUE_BILLING)

    async def _bill_locked(
        self,
        subscription: Subscription,
        now: datetime,
        *,
        sweep: str,
        force: bool = False,
    ) -> EntityOutcome:
        if subscription.status != SubscriptionStatus.ACTIVE:
            return EntityOutcome.SKIPPED
        if not force and (
            subscription.next_billing_date is None
            or subscription.next_billing_date > now
            or subscription.in_trial_period()
        ):
            return EntityOutcome.SKIPPED

        period_start = subscription.current_period_start
        period_end = subscription.current_period_end
        if period_start is None or period_end is None:
            logger.warning(
                "billing.subscription.missing_period",
                subscription_id=subscription.subscription_id,
            )
            return EntityOutcome.SKIPPED

        plan = await self._require_plan(subscription.plan_id)

        existing = await self.invoices.find_for_period(
            subscription.subscription_id, period_start, period_end
        )
        if existing is not None and existing.status != InvoiceStatus.PENDING:
            await self._repair_unadvanced_cycle(subscription, plan, existing, now)
            return EntityOutcome.SKIPPED

        if existing is not None:
            # Raised by an earlier run that stopped before charging.
            invoice = existing
            logger.info(
                "billing.invoice.resumed",
                subscription_id=subscription.subscription_id,
                invoice_id=invoice.invoice_id,
                amount=str(invoice.amount),
            )
        else:
            period_plan = await self._period_plan(subscription, plan)
            invoice, created = await self.invoices.create_if_absent(
                self._new_period_invoice(subscription, period_plan, now)
            )
            if not created:
                return EntityOutcome.SKIPPED
            logger.info(
                "billing.invoice.created",
                subscription_id=subscription.subscription_id,
                invoice_id=invoice.invoice_id,
                plan_id=period_plan.plan_id,
                amount=str(invoice.amount),
                credit_applied=str(invoice.credit_applied),
                period_start=period_start.isoformat(),
                period_end=period_end.isoformat(),
            )

        if invoice.amount == 0:
            invoice.mark_paid(None, now)
            await self.invoices.save(invoice)
            await self._complete_period(subscription, plan, invoice, now)
            return EntityOutcome.SUCCEEDED

        charged = await self._charge(invoice, subscription, now)
        if charged is None:
            return EntityOutcome.SKIPPED
        invoice, result = charged

        if result.success:
            invoice.mark_paid(result.charge_ref, now)
            await self.invoices.save(invoice)
            self.metrics.record_charge_succeeded(invoice.amount, invoice.currency, sweep)
            await self._complete_period(subscription, plan, invoice, now, result)
            return EntityOutcome.SUCCEEDED

        invoice = await self._record_failure(invoice, result, now)
        if subscription.status == SubscriptionStatus.ACTIVE:
            self.state_machine.mark_past_due(subscription, now)
            await self.subscriptions.save(subscription)
        self.metrics.record_charge_failed(result.failure_code, sweep)
        await self._notify(
            invoice_event(
                BillingEventType.INVOICE_PAYMENT_FAILED,
                subscription,
                invoice,
                now,
                failure_code=result.failure_code,
                next_payment_attempt=(
                    invoice.next_payment_attempt.isoformat()
                    if invoice.next_payment_attempt
                    else None
                ),
            )
        )
        return EntityOutcome.FAILED

    async def _complete_period(
        self,
        subscription: Subscription,
        plan: Plan,
        invoice: Invoice,
        now: datetime,
        result: ChargeResult | None = None,
    ) -> None:
        self._consume_credit(subscription, invoice, now)
        self.state_machine.advance_billing_cycle(subscription, plan, now)
        await self.subscriptions.save(subscription)
        logger.info(
            "billing.charge.succeeded",
            subscription_id=subscription.subscription_id,
            invoice_id=invoice.invoice_id,
            charge_ref=invoice.charge_ref,
            next_billing_date=(
                subscription.next_billing_date.isoformat()
                if subscription.next_billing_date
                else None
            ),
        )
        await self._notify(
            invoice_event(
                BillingEventType.INVOICE_PAID,
                subscription,
                invoice,
                now,
                charge_ref=invoice.charge_ref,
                transaction_type=result.transaction_type.value if result else None,
            )
        )

    async def _repair_unadvanced_cycle(
        self, subscription: Subscription, plan: Plan, invoice: Invoice, now: datetime
    ) -> None:
        """A PAID invoice whose period is still current means the advance was lost."""
        if (
            invoice.status != InvoiceStatus.PAID
            or subscription.next_billing_date != invoice.period_end
        ):
            return
        self._consume_credit(subscription, invoice, now)
        self.state_machine.advance_billing_cycle(subscription, plan, now)
        await self.subscriptions.save(subscription)
        logger.warning(
            "billing.cycle.repaired",
            subscription_id=subscription.subscription_id,
            invoice_id=invoice.invoice_id,
        )

    async def _period_plan(self, subscription: Subscription, plan: Plan) -> Plan:
        """Plan the current period was opened under.

        An immediate plan change is settled by proration, so the period invoice
        keeps the price the period started with.
        """
        period_plan_id = subscription.period_plan_id
        if period_plan_id is None or period_plan_id == plan.plan_id:
            return plan
        period_plan = await self.plans.get(period_plan_id)
        if period_plan is None:
            logger.warning(
                "billing.period_plan.missing",
                subscription_id=subscription.subscription_id,
                period_plan_id=period_plan_id,
            )
            return plan
        return period_plan

    def _consume_credit(self, subscription: Subscription, invoice: Invoice, now: datetime) -> None:
        """Draw the credit an invoice applied once that invoice is paid."""
        used = min(invoice.credit_applied, subscription.credit_balance)
        if used <= 0:
            return
        subscription.credit_balance -= used
        subscription.touch(now)
        logger.info(
            "billing.credit.applied",
            subscription_id=subscription.subscription_id,
            invoice_id=invoice.invoice_id,
            amount=str(used),
            credit_balance=str(subscription.credit_balance),
        )

    def _new_period_invoice(self, subscription: Subscription, plan: Plan, now: datetime) -> Invoice:
        assert subscription.current_period_start is not None
        assert subscription.current_period_end is not None
        credit = min(subscription.credit_balance, plan.amount)
        return Invoice(
            invoice_number=generate_invoice_number(now),
            subscription_id=subscription.subscription_id,
            customer_id=subscription.customer_id,
            kind=InvoiceKind.SUBSCRIPTION,
            amount=plan.amount - credit,
            credit_applied=credit,
            currency=plan.currency,
            description=(
                f"{plan.name} {subscription.current_period_start:%Y-%m-%d} to "
                f"{subscription.current_period_end:%Y-%m-%d}"
            ),
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            due_date=invoice_due_date(now, self.config.grace_period_days),
            created_at=now,
        )

    # ------------------------------------------------------------------
    # Payment retries
    # ------------------------------------------------------------------

    async def process_payment_retries(self, now: datetime | None = None) -> SweepReport:
        """Collect PENDING invoices and re-attempt FAILED ones whose next attempt has arrived.

        PENDING invoices are the setup fee and proration invoices raised by the
        subscription service, plus period invoices left uncharged by an
        interrupted due-billing run.
        """
        now = now or self._clock()
        report = SweepReport(SWEEP_PAYMENT_RETRY, now)
        with bound_context(sweep=SWEEP_PAYMENT_RETRY), self.metrics.trace_operation(
            "sweep.payment_retry"
        ):
            await self._recover_stale_invoices(now)
            awaiting = await self.invoices.list_awaiting_payment(now)
            due = await self.invoices.list_due_for_retry(
                now, self.config.payment_retry.max_attempts
            )
            invoice_ids = list(dict.fromkeys(invoice.invoice_id for invoice in [*awaiting, *due]))
            await run_isolated(
                report,
                invoice_ids,
                lambda invoice_id: self.retry_invoice(invoice_id, now),
                concurrency=self.config.charge.max_concurrency,
                on_error=self._error_recorder(SWEEP_PAYMENT_RETRY),
            )
            logger.info("billing.sweep.completed", **report.as_dict())
        return report

    async def retry_invoice(self, invoice_id: str, now: datetime | None = None) -> EntityOutcome:
        """Charge one PENDING invoice, or re-attempt one FAILED invoice that is due."""
        now = now or self._clock()
        invoice = await self._require_invoice(invoice_id)
        async with self.locks.hold(subscription_lock_key(invoice.subscription_id)) as acquired:
            if not acquired:
                return EntityOutcome.SKIPPED
            invoice = await self._require_invoice(invoice_id)
            if invoice.status == InvoiceStatus.PENDING:
                return await self._collect_locked(invoice, now)
            if (
                invoice.status != InvoiceStatus.FAILED
                or invoice.next_payment_attempt is None
                or invoice.next_payment_attempt > now
            ):
                return EntityOutcome.SKIPPED

            subscription = await self._require_subscription(invoice.subscription_id)
            if subscription.status.is_terminal:
                invoice.mark_cancelled(now)
                await self.invoices.save(invoice)
                logger.info(
                    "billing.invoice.cancelled",
                    invoice_id=invoice.invoice_id,
                    subscription_status=subscription.status.value,
                )
                return EntityOutcome.SKIPPED

            max_attempts = self.config.payment_retry.max_attempts
            if invoice.attempt_count >= max_attempts:
                await self._cancel_for_nonpayment(subscription, invoice, now)
                return EntityOutcome.FAILED

            charged = await self._charge(invoice, subscription, now)
            if charged is None:
                return EntityOutcome.SKIPPED
            invoice, result = charged

            if result.success:
                invoice.mark_paid(result.charge_ref, now)
                await self.invoices.save(invoice)
                self._consume_credit(subscription, invoice, now)
                await self._settle_subscription(subscription, invoice, now)
                self.metrics.record_retry(True, invoice.attempt_count)
                self.metrics.record_charge_succeeded(
                    invoice.amount, invoice.currency, SWEEP_PAYMENT_RETRY
                )
                logger.info(
                    "billing.retry.succeeded",
                    invoice_id=invoice.invoice_id,
                    subscription_id=subscription.subscription_id,
                    attempt=invoice.attempt_count,
                )
                await self._notify(
                    invoice_event(
                        BillingEventType.INVOICE_RETRY_SUCCEEDED,
                        subscription,
                        invoice,
                        now,
                        charge_ref=invoice.charge_ref,
                        transaction_type=result.transaction_type.value,
                    )
                )
                return EntityOutcome.SUCCEEDED

            invoice = await self._record_failure(invoice, result, now)
            self.metrics.record_retry(False, invoice.attempt_count)
            self.metrics.record_charge_failed(result.failure_code, SWEEP_PAYMENT_RETRY)
            if invoice.retries_exhausted(max_attempts):
                await self._cancel_for_nonpayment(subscription, invoice, now)
            else:
                await self._notify(
                    invoice_event(
                        BillingEventType.INVOICE_RETRY_SCHEDULED,
                        subscription,
                        invoice,
                        now,
                        failure_code=result.failure_code,
                        next_payment_attempt=(
                            invoice.next_payment_attempt.isoformat()
                            if invoice.next_payment_attempt
                            else None
                        ),
                    )
                )
            return EntityOutcome.FAILED

    async def _collect_locked(self, invoice: Invoice, now: datetime) -> EntityOutcome:
        """First charge of a PENDING invoice; failures enter the dunning schedule."""
        subscription = await self._require_subscription(invoice.subscription_id)
        if subscription.status.is_terminal:
            invoice.mark_cancelled(now)
            await self.invoices.save(invoice)
            logger.info(
                "billing.invoice.cancelled",
                invoice_id=invoice.invoice_id,
                subscription_status=subscription.status.value,
            )
            return EntityOutcome.SKIPPED

        result: ChargeResult | None = None
        if invoice.amount == 0:
            invoice.mark_paid(None, now)
            await self.invoices.save(invoice)
        else:
            charged = await self._charge(invoice, subscription, now)
            if charged is None:
                return EntityOutcome.SKIPPED
            invoice, result = charged
            if result.success:
                invoice.mark_paid(result.charge_ref, now)
                await self.invoices.save(invoice)
                self.metrics.record_charge_succeeded(
                    invoice.amount, invoice.currency, SWEEP_PAYMENT_RETRY
                )

        if result is None or result.success:
            self._consume_credit(subscription, invoice, now)
            await self._settle_subscription(subscription, invoice, now)
            logger.info(
                "billing.invoice.collected",
                invoice_id=invoice.invoice_id,
                subscription_id=subscription.subscription_id,
                kind=invoice.kind.value,
                charge_ref=invoice.charge_ref,
            )
            await self._notify(
                invoice_event(
                    BillingEventType.INVOICE_PAID,
                    subscription,
                    invoice,
                    now,
                    charge_ref=invoice.charge_ref,
                    transaction_type=result.transaction_type.value if result else None,
                )
            )
            return EntityOutcome.SUCCEEDED

        invoice = await self._record_failure(invoice, result, now)
        if subscription.status == SubscriptionStatus.ACTIVE:
            self.state_machine.mark_past_due(subscription, now)
            await self.subscriptions.save(subscription)
        self.metrics.record_charge_failed(result.failure_code, SWEEP_PAYMENT_RETRY)
        await self._notify(
            invoice_event(
                BillingEventType.INVOICE_PAYMENT_FAILED,
                subscription,
                invoice,
                now,
                failure_code=result.failure_code,
                next_payment_attempt=(
                    invoice.next_payment_attempt.isoformat()
                    if invoice.next_payment_attempt
                    else None
                ),
            )
        )
        return EntityOutcome.FAILED

    async def _settle_subscription(
        self, subscription: Subscription, invoice: Invoice, now: datetime
    ) -> None:
        """Bring a subscription up to date once an overdue invoice is paid.

        A PAST_DUE subscription is reactivated only when no other invoice of
        it is still FAILED.
        """
        if subscription.status == SubscriptionStatus.PAST_DUE and not await self._has_open_failure(
            subscription.subscription_id, exclude=invoice.invoice_id
        ):
            self.state_machine.reactivate(subscription, now)
        if (
            invoice.kind == InvoiceKind.SUBSCRIPTION
            and subscription.current_period_start == invoice.period_start
            and subscription.current_period_end == invoice.period_end
        ):
            plan = await self._require_plan(subscription.plan_id)
            self.state_machine.advance_billing_cycle(subscription, plan, now)
        await self.subscriptions.save(subscription)

    async def _has_open_failure(self, subscription_id: str, *, exclude: str) -> bool:
        return any(
            invoice.status == InvoiceStatus.FAILED and invoice.invoice_id != exclude
            for invoice in await self.invoices.list_for_subscription(subscription_id)
        )

    async def _recover_stale_invoices(self, now: datetime) -> None:
        """Return invoices stuck in PROCESSING to FAILED with an immediate retry.

        The charge sequence is left alone so the retry replays the same
        idempotency key.
        """
        cutoff = now - timedelta(minutes=self.config.charge.stale_processing_minutes)
        for invoice in await self.invoices.list_stale_processing(cutoff):
            invoice.mark_failed("processing_interrupted", now, now, definitive=False)
            await self.invoices.save(invoice)
            logger.warning(
                "billing.invoice.recovered",
                invoice_id=invoice.invoice_id,
                last_attempt_at=(
                    invoice.last_attempt_at.isoformat() if invoice.last_attempt_at else None
                ),
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def process_lifecycle(self, now: datetime | None = None) -> SweepReport:
        """Run the four lifecycle passes; one failing pass does not stop the others."""
        now = now or self._clock()
        report = SweepReport(SWEEP_LIFECYCLE, now)
        passes = (
            ("trial_end", self._process_trial_endings),
            ("past_due", self._process_past_due),
            ("scheduled_cancellation", self._process_scheduled_cancellations),
            ("scheduled_plan_change", self._process_scheduled_plan_changes),
        )
        with bound_context(sweep=SWEEP_LIFECYCLE), self.metrics.trace_operation("sweep.lifecycle"):
            for name, run_pass in passes:
                try:
                    pass_report = await run_pass(now)
                except Exception as exc:
                    logger.error(
                        "billing.lifecycle.pass_failed",
                        pass_name=name,
                        error=str(exc),
                        exc_info=True,
                    )
                    self.metrics.record_billing_error(f"{SWEEP_LIFECYCLE}.{name}", type(exc).__name__)
                    report.errors += 1
                    continue
                report.add_pass(name, pass_report)
            logger.info("billing.sweep.completed", **report.as_dict())
        return report

    async def _run_lifecycle_pass(
        self,
        name: str,
        subscriptions: list[Subscription],
        handler: Callable[[Subscription, datetime], Awaitable[EntityOutcome]],
        now: datetime,
    ) -> SweepReport:
        report = SweepReport(f"{SWEEP_LIFECYCLE}.{name}", now)

        async def locked(subscription_id: str) -> EntityOutcome:
            async with self.locks.hold(subscription_lock_key(subscription_id)) as acquired:
                if not acquired:
                    return EntityOutcome.SKIPPED
                subscription = await self._require_subscription(subscription_id)
                return await handler(subscription, now)

        await run_isolated(
            report,
            [subscription.subscription_id for subscription in subscriptions],
            locked,
            concurrency=self.config.charge.max_concurrency,
            on_error=self._error_recorder(report.sweep),
        )
        return report

    async def _process_trial_endings(self, now: datetime) -> SweepReport:
        return await self._run_lifecycle_pass(
            "trial_end", await self.subscriptions.list_trials_ending(now), self._end_trial, now
        )

    async def _end_trial(self, subscription: Subscription, now: datetime) -> EntityOutcome:
        if not (
            subscription.status == SubscriptionStatus.ACTIVE
            and subscription.in_trial_period()
            and subscription.trial_end is not None
            and subscription.trial_end <= now
        ):
            return EntityOutcome.SKIPPED
        plan = await self._require_plan(subscription.plan_id)
        self.state_machine.end_trial(subscription, plan, now)
        await self.subscriptions.save(subscription)
        logger.info("billing.trial.ended", subscription_id=subscription.subscription_id)
        await self._notify(
            subscription_event(
                BillingEventType.SUBSCRIPTION_TRIAL_ENDED,
                subscription,
                now,
                trial_end=subscription.trial_end.isoformat() if subscription.trial_end else None,
            )
        )
        return await self._bill_locked(subscription, now, sweep=SWEEP_LIFECYCLE, force=True)

    async def _process_past_due(self, now: datetime) -> SweepReport:
        return await self._run_lifecycle_pass(
            "past_due",
            await self.subscriptions.list_by_status(SubscriptionStatus.PAST_DUE),
            self._escalate_past_due,
            now,
        )

    async def _escalate_past_due(self, subscription: Subscription, now: datetime) -> EntityOutcome:
        if subscription.status != SubscriptionStatus.PAST_DUE:
            return EntityOutcome.SKIPPED
        latest = await self.invoices.latest_for_subscription(subscription.subscription_id)
        if latest is None or not latest.retries_exhausted(self.config.payment_retry.max_attempts):
            return EntityOutcome.SKIPPED
        await self._cancel_for_nonpayment(subscription, latest, now)
        return EntityOutcome.SUCCEEDED

    async def _process_scheduled_cancellations(self, now: datetime) -> SweepReport:
        return await self._run_lifecycle_pass(
            "scheduled_cancellation",
            await self.subscriptions.list_pending_changes(PendingChangeKind.CANCELLATION, now),
            self._execute_scheduled_cancellation,
            now,
        )

    async def _execute_scheduled_cancellation(
        self, subscription: Subscription, now: datetime
    ) -> EntityOutcome:
        pending = subscription.pending_cancellation()
        if pending is None or pending.effective_at > now or subscription.status.is_terminal:
            return EntityOutcome.SKIPPED
        reason = pending.reason or SCHEDULED_CANCELLATION_REASON
        self.state_machine.cancel(subscription, reason, now)
        await self.subscriptions.save(subscription)
        logger.info(
            "billing.subscription.cancelled",
            subscription_id=subscription.subscription_id,
            reason=reason,
            scheduled=True,
        )
        await self._notify(
            subscription_event(
                BillingEventType.SUBSCRIPTION_CANCELLED, subscription, now, reason=reason
            )
        )
        return EntityOutcome.SUCCEEDED

    async def _process_scheduled_plan_changes(self, now: datetime) -> SweepReport:
        return await self._run_lifecycle_pass(
            "scheduled_plan_change",
            await self.subscriptions.list_pending_changes(PendingChangeKind.PLAN_CHANGE, now),
            self._execute_scheduled_plan_change,
            now,
        )

    async def _execute_scheduled_plan_change(
        self, subscription: Subscription, now: datetime
    ) -> EntityOutcome:
        pending = subscription.pending_plan_change()
        if pending is None or pending.effective_at > now or subscription.status.is_terminal:
            return EntityOutcome.SKIPPED

        new_plan = await self.plans.get(pending.new_plan_id)
        if new_plan is None or not new_plan.is_active:
            subscription.pending_change = None
            subscription.touch(now)
            await self.subscriptions.save(subscription)
            logger.warning(
                "billing.plan_change.dropped",
                subscription_id=subscription.subscription_id,
                new_plan_id=pending.new_plan_id,
                reason="plan missing" if new_plan is None else "plan inactive",
            )
            return EntityOutcome.FAILED

        previous_plan_id = subscription.plan_id
        subscription.plan_id = new_plan.plan_id
        subscription.pending_change = None
        subscription.touch(now)
        await self.subscriptions.save(subscription)
        logger.info(
            "billing.plan_change.applied",
            subscription_id=subscription.subscription_id,
            from_plan_id=previous_plan_id,
            to_plan_id=new_plan.plan_id,
        )
        await self._notify(
            subscription_event(
                BillingEventType.SUBSCRIPTION_PLAN_CHANGED,
                subscription,
                now,
                previous_plan_id=previous_plan_id,
                scheduled=True,
            )
        )
        return EntityOutcome.SUCCEEDED

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _charge(
        self, invoice: Invoice, subscription: Subscription, now: datetime
    ) -> tuple[Invoice, ChargeResult] | None:
        """Claim the invoice and call the gateway under the configured timeout."""
        claimed = await self.invoices.claim_for_payment(invoice.invoice_id, now)
        if claimed is None:
            logger.info("billing.charge.claim_lost", invoice_id=invoice.invoice_id)
            return None

        timeout = self.config.charge.timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.gateway.charge(
                    claimed.amount,
                    claimed.currency,
                    subscription.payment_method_ref,
                    claimed.idempotency_key,
                ),
                timeout=timeout,
            )
        except TimeoutError:
            result = ChargeResult.unknown("timeout", f"Charge timed out after {timeout}s")
        except PaymentError as exc:
            result = ChargeResult.declined(
                exc.failure_code, permanent=exc.permanent, message=exc.message
            )
        except Exception as exc:
            logger.warning(
                "billing.charge.gateway_error",
                invoice_id=claimed.invoice_id,
                error=str(exc),
                exc_info=True,
            )
            result = ChargeResult.unknown("gateway_error", str(exc))
        return claimed, result

    async def _record_failure(
        self, invoice: Invoice, result: ChargeResult, now: datetime
    ) -> Invoice:
        if result.is_permanent_failure:
            next_attempt = None
        else:
            next_attempt = next_payment_attempt(
                self.config.payment_retry, invoice.attempt_count, now
            )
        invoice.mark_failed(result.failure_code, next_attempt, now, definitive=result.is_definitive)
        await self.invoices.save(invoice)
        logger.warning(
            "billing.charge.failed",
            invoice_id=invoice.invoice_id,
            subscription_id=invoice.subscription_id,
            attempt=invoice.attempt_count,
            failure_code=result.failure_code,
            permanent=result.is_permanent_failure,
            next_payment_attempt=next_attempt.isoformat() if next_attempt else None,
        )
        return invoice

    async def _cancel_for_nonpayment(
        self, subscription: Subscription, invoice: Invoice, now: datetime
    ) -> None:
        if invoice.next_payment_attempt is not None:
            invoice.next_payment_attempt = None
            invoice.updated_at = now
            await self.invoices.save(invoice)
        if subscription.status.is_terminal:
            return
        self.state_machine.cancel(subscription, NONPAYMENT_REASON, now)
        await self.subscriptions.save(subscription)
        self.metrics.record_nonpayment_cancellation()
        logger.warning(
            "billing.subscription.cancelled",
            subscription_id=subscription.subscription_id,
            invoice_id=invoice.invoice_id,
            reason=NONPAYMENT_REASON,
            attempts=invoice.attempt_count,
        )
        await self._notify(
            subscription_event(
                BillingEventType.SUBSCRIPTION_CANCELLED,
                subscription,
                now,
                reason=NONPAYMENT_REASON,
                invoice_id=invoice.invoice_id,
            )
        )

    async def _notify(self, event: BillingEvent) -> None:
        await dispatch_event(self.notifier, event)

    def _error_recorder(self, sweep: str) -> Callable[[object, Exception], None]:
        def record(_: object, exc: Exception) -> None:
            self.metrics.record_billing_error(sweep, type(exc).__name__)

        return record

    async def _require_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    async def _require_plan(self, plan_id: str) -> Plan:
        plan = await self.plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    async def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice


__all__ = [
    "BillingEngine",
    "NONPAYMENT_REASON",
    "SWEEP_DUE_BILLING",
    "SWEEP_LIFECYCLE",
    "SWEEP_PAYMENT_RETRY",
    "subscription_lock_key",
]
