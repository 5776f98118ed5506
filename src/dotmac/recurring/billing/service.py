"""
Subscription and plan services.

Public operations behind a caller-facing API: create, change, pause, resume and
cancel subscriptions, and manage the plan catalogue. Domain errors surface
synchronously; nothing here is retried automatically.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog

from dotmac.recurring.billing.config import BillingConfig, get_billing_config
from dotmac.recurring.billing.engine import subscription_lock_key
from dotmac.recurring.billing.enums import (
    ChangeTiming,
    IntervalUnit,
    InvoiceKind,
    SubscriptionStatus,
)
from dotmac.recurring.billing.events import (
    BillingEventType,
    subscription_event,
)
from dotmac.recurring.billing.exceptions import (
    DuplicatePlanError,
    PlanInactiveError,
    PlanIntervalChangeError,
    PlanNotFoundError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from dotmac.recurring.billing.lifecycle import SubscriptionStateMachine
from dotmac.recurring.billing.metrics import BillingMetrics, get_billing_metrics
from dotmac.recurring.billing.models import (
    Invoice,
    PendingCancellation,
    PendingPlanChange,
    Plan,
    ProrationResult,
    Subscription,
    generate_invoice_number,
    invoice_due_date,
    utcnow,
)
from dotmac.recurring.billing.notifications import BillingNotifier, dispatch_event
from dotmac.recurring.billing.proration import ProrationCalculator
from dotmac.recurring.locks import InMemoryLockManager, LockManager
from dotmac.recurring.persistence.base import (
    InvoiceRepository,
    PlanRepository,
    SubscriptionRepository,
)

logger = structlog.get_logger(__name__)

# Statuses that keep a plan's billing interval in use
DEPENDENT_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.PAUSED}
)


class PlanService:
    """Plan catalogue management."""

    def __init__(
        self,
        plans: PlanRepository,
        subscriptions: SubscriptionRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.plans = plans
        self.subscriptions = subscriptions
        self._clock = clock or utcnow

    async def create_plan(self, plan: Plan) -> Plan:
        """Store a new plan. Plan codes are unique."""
        if await self.plans.get_by_code(plan.code) is not None:
            raise DuplicatePlanError(f"Plan code {plan.code!r} already exists", code=plan.code)
        await self.plans.save(plan)
        logger.info("billing.plan.created", plan_id=plan.plan_id, code=plan.code)
        return plan

    async def get_plan(self, plan_id: str) -> Plan:
        plan = await self.plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    async def update_plan(self, plan_id: str, **changes: Any) -> Plan:
        """
        Apply field changes to a plan.

        Args:
            plan_id: Plan to update
            **changes: Plan fields and their new values

        Returns:
            The updated plan

        Raises:
            PlanIntervalChangeError: interval unit or count changes while
                subscriptions still bill on the plan
        """
        plan = await self.get_plan(plan_id)

        interval_changed = (
            "interval_unit" in changes
            and IntervalUnit(changes["interval_unit"]) != plan.interval_unit
        ) or ("interval_count" in changes and changes["interval_count"] != plan.interval_count)
        if interval_changed:
            dependents = await self.subscriptions.count_for_plan(plan_id, set(DEPENDENT_STATUSES))
            if dependents:
                raise PlanIntervalChangeError(
                    f"Cannot change the billing interval of plan {plan.code} "
                    f"while {dependents} subscriptions use it",
                    plan_id=plan_id,
                    active_subscriptions=dependents,
                )

        if "code" in changes and changes["code"] != plan.code:
            if await self.plans.get_by_code(changes["code"]) is not None:
                raise DuplicatePlanError(
                    f"Plan code {changes['code']!r} already exists", code=changes["code"]
                )

        updated = Plan.model_validate(
            {**plan.model_dump(), **changes, "updated_at": self._clock()}
        )
        await self.plans.save(updated)
        logger.info("billing.plan.updated", plan_id=plan_id, fields=sorted(changes))
        return updated

    async def deactivate_plan(self, plan_id: str) -> Plan:
        """Stop new subscriptions on a plan. Existing subscriptions keep billing."""
        plan = await self.get_plan(plan_id)
        if not plan.is_active:
            return plan
        plan.is_active = False
        plan.updated_at = self._clock()
        await self.plans.save(plan)
        logger.info("billing.plan.deactivated", plan_id=plan_id)
        return plan

    async def list_active_plans(self) -> list[Plan]:
        return await self.plans.list_active()


class SubscriptionService:
    """Caller-facing subscription operations."""

    def __init__(
        self,
        *,
        plans: PlanRepository,
        subscriptions: SubscriptionRepository,
        invoices: InvoiceRepository,
        notifier: BillingNotifier | None = None,
        metrics: BillingMetrics | None = None,
        locks: LockManager | None = None,
        config: BillingConfig | None = None,
        state_machine: SubscriptionStateMachine | None = None,
        proration: ProrationCalculator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.plans = plans
        self.subscriptions = subscriptions
        self.invoices = invoices
        self.notifier = notifier
        self.metrics = metrics or get_billing_metrics()
        self.locks = locks or InMemoryLockManager()
        self.config = config or get_billing_config()
        self.state_machine = state_machine or SubscriptionStateMachine()
        self.proration = proration or ProrationCalculator(self.config.proration)
        self._clock = clock or utcnow

    # ==================== Creation ====================

    async def create_subscription(
        self,
        customer_id: str,
        *,
        plan_id: str | None = None,
        plan_code: str | None = None,
        payment_method_ref: str | None = None,
        trial: bool | None = None,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Create and activate a subscription.

        Args:
            customer_id: Customer being subscribed
            plan_id: Plan to subscribe to (or ``plan_code``)
            plan_code: Plan code, used when ``plan_id`` is not given
            payment_method_ref: Opaque reference to the payment instrument
            trial: Force (True) or skip (False) the plan's trial; None follows the plan
            metadata: Free-form caller data stored on the subscription
            idempotency_key: Repeated calls with the same key return the first result
            now: Creation instant, defaults to the service clock

        Returns:
            The ACTIVE subscription
        """
        now = now or self._clock()

        if idempotency_key:
            existing = await self.subscriptions.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "billing.subscription.idempotent_replay",
                    subscription_id=existing.subscription_id,
                    idempotency_key=idempotency_key,
                )
                return existing

        plan = await self._resolve_plan(plan_id, plan_code)
        if not plan.is_active:
            raise PlanInactiveError(f"Plan {plan.code} is not active", plan_id=plan.plan_id)

        subscription = Subscription(
            customer_id=customer_id,
            plan_id=plan.plan_id,
            payment_method_ref=payment_method_ref,
            billing_cycle_anchor=now,
            idempotency_key=idempotency_key,
            metadata=metadata or {},
            created_at=now,
        )

        use_trial = plan.has_trial if trial is None else trial and plan.has_trial
        if use_trial:
            self.state_machine.start_trial(subscription, plan, now)
        self.state_machine.activate(subscription, plan, now)
        await self.subscriptions.save(subscription)

        logger.info(
            "billing.subscription.created",
            subscription_id=subscription.subscription_id,
            customer_id=customer_id,
            plan_id=plan.plan_id,
            trial=use_trial,
            next_billing_date=(
                subscription.next_billing_date.isoformat()
                if subscription.next_billing_date
                else None
            ),
        )

        if plan.has_setup_fee:
            await self._raise_setup_fee(subscription, plan, now)

        await dispatch_event(
            self.notifier,
            subscription_event(
                BillingEventType.SUBSCRIPTION_CREATED, subscription, now, trial=use_trial
            ),
        )
        return subscription

    async def _raise_setup_fee(self, subscription: Subscription, plan: Plan, now: datetime) -> Invoice:
        assert plan.setup_fee is not None
        assert subscription.current_period_start is not None
        assert subscription.current_period_end is not None
        invoice = Invoice(
            invoice_number=generate_invoice_number(now),
            subscription_id=subscription.subscription_id,
            customer_id=subscription.customer_id,
            kind=InvoiceKind.SETUP_FEE,
            amount=plan.setup_fee,
            currency=plan.currency,
            description=f"{plan.name} setup fee",
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            due_date=invoice_due_date(now, self.config.grace_period_days),
            created_at=now,
        )
        invoice, _ = await self.invoices.create_if_absent(invoice)
        logger.info(
            "billing.invoice.created",
            subscription_id=subscription.subscription_id,
            invoice_id=invoice.invoice_id,
            kind=invoice.kind.value,
            amount=str(invoice.amount),
        )
        return invoice

    # ==================== Queries ====================

    async def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    async def preview_plan_change(
        self, subscription_id: str, new_plan_id: str, now: datetime | None = None
    ) -> ProrationResult:
        """Proration a plan change would produce right now, without applying it."""
        now = now or self._clock()
        subscription = await self.get_subscription(subscription_id)
        current_plan = await self._get_plan(subscription.plan_id)
        new_plan = await self._get_plan(new_plan_id)
        return self.proration.calculate_proration(subscription, current_plan, new_plan, now)

    # ==================== Plan changes ====================

    async def change_plan(
        self,
        subscription_id: str,
        new_plan_id: str,
        *,
        timing: ChangeTiming = ChangeTiming.IMMEDIATE,
        prorate: bool = True,
        now: datetime | None = None,
    ) -> tuple[Subscription, ProrationResult | None]:
        """
        Move an ACTIVE subscription to another plan.

        An immediate change prorates the rest of the current period: a charge
        raises a PRORATION invoice, a credit is added to the credit balance.
        An end-of-period change is stored as a pending plan change and applied
        by the lifecycle sweep.

        Returns:
            The subscription and the proration applied (None when scheduled or
            not prorated)
        """
        now = now or self._clock()
        async with self._locked(subscription_id):
            subscription = await self.get_subscription(subscription_id)
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise SubscriptionStateError(
                    f"Only active subscriptions can change plan; {subscription_id} "
                    f"is {subscription.status.value}",
                    current_state=subscription.status.value,
                    requested_state=SubscriptionStatus.ACTIVE.value,
                )
            if new_plan_id == subscription.plan_id:
                raise SubscriptionError(
                    "Subscription is already on this plan",
                    context={"subscription_id": subscription_id, "plan_id": new_plan_id},
                )

            current_plan = await self._get_plan(subscription.plan_id)
            new_plan = await self._get_plan(new_plan_id)
            if not new_plan.is_active:
                raise PlanInactiveError(f"Plan {new_plan.code} is not active", plan_id=new_plan_id)

            if timing == ChangeTiming.END_OF_PERIOD:
                effective_at = subscription.current_period_end or now
                subscription.pending_change = PendingPlanChange(
                    kind="PLAN_CHANGE",
                    effective_at=effective_at,
                    new_plan_id=new_plan_id,
                    requested_at=now,
                )
                subscription.touch(now)
                await self.subscriptions.save(subscription)
                logger.info(
                    "billing.plan_change.scheduled",
                    subscription_id=subscription_id,
                    new_plan_id=new_plan_id,
                    effective_at=effective_at.isoformat(),
                )
                return subscription, None

            result: ProrationResult | None = None
            if prorate:
                result = self.proration.ensure_valid(
                    self.proration.calculate_proration(subscription, current_plan, new_plan, now)
                )
                if result.applies:
                    await self._apply_proration(subscription, result, now, new_plan.name)

            previous_plan_id = subscription.plan_id
            subscription.plan_id = new_plan_id
            subscription.pending_change = None
            subscription.touch(now)
            await self.subscriptions.save(subscription)

        logger.info(
            "billing.plan_change.applied",
            subscription_id=subscription_id,
            from_plan_id=previous_plan_id,
            to_plan_id=new_plan_id,
            net_amount=str(result.net_amount) if result else None,
        )
        await dispatch_event(
            self.notifier,
            subscription_event(
                BillingEventType.SUBSCRIPTION_PLAN_CHANGED,
                subscription,
                now,
                previous_plan_id=previous_plan_id,
                net_amount=str(result.net_amount) if result else None,
            ),
        )
        return subscription, result

    async def _apply_proration(
        self,
        subscription: Subscription,
        result: ProrationResult,
        now: datetime,
        label: str,
    ) -> Invoice | None:
        """Charge or credit a proration's net amount."""
        if result.is_credit:
            subscription.credit_balance += -result.net_amount
            self.metrics.record_proration(result.net_amount, result.currency, "credit")
            logger.info(
                "billing.credit.added",
                subscription_id=subscription.subscription_id,
                amount=str(-result.net_amount),
                credit_balance=str(subscription.credit_balance),
            )
            return None
        if not result.is_charge:
            return None

        assert result.period_start is not None and result.period_end is not None
        invoice = Invoice(
            invoice_number=generate_invoice_number(now),
            subscription_id=subscription.subscription_id,
            customer_id=subscription.customer_id,
            kind=InvoiceKind.PRORATION,
            amount=result.net_amount,
            currency=result.currency,
            description=f"Proration to {label}: {result.explanation}",
            period_start=result.effective_at or now,
            period_end=result.period_end,
            due_date=invoice_due_date(now, self.config.grace_period_days),
            created_at=now,
        )
        invoice, _ = await self.invoices.create_if_absent(invoice)
        self.metrics.record_proration(result.net_amount, result.currency, "charge")
        logger.info(
            "billing.invoice.created",
            subscription_id=subscription.subscription_id,
            invoice_id=invoice.invoice_id,
            kind=invoice.kind.value,
            amount=str(invoice.amount),
        )
        return invoice

    # ==================== Pause / resume ====================

    async def pause_subscription(
        self, subscription_id: str, now: datetime | None = None
    ) -> Subscription:
        now = now or self._clock()
        async with self._locked(subscription_id):
            subscription = await self.get_subscription(subscription_id)
            self.state_machine.pause(subscription, now)
            await self.subscriptions.save(subscription)
        await dispatch_event(
            self.notifier,
            subscription_event(BillingEventType.SUBSCRIPTION_PAUSED, subscription, now),
        )
        return subscription

    async def resume_subscription(
        self, subscription_id: str, now: datetime | None = None
    ) -> Subscription:
        """PAUSED -> ACTIVE. The billing period is left as it was."""
        now = now or self._clock()
        async with self._locked(subscription_id):
            subscription = await self.get_subscription(subscription_id)
            self.state_machine.resume(subscription, now)
            await self.subscriptions.save(subscription)
        await dispatch_event(
            self.notifier,
            subscription_event(BillingEventType.SUBSCRIPTION_RESUMED, subscription, now),
        )
        return subscription

    # ==================== Cancellation ====================

    async def cancel_subscription(
        self,
        subscription_id: str,
        *,
        reason: str | None = None,
        at_period_end: bool = False,
        refund_unused: bool = False,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Cancel now, or schedule cancellation at the end of the current period.

        Args:
            subscription_id: Subscription to cancel
            reason: Stored on the subscription as the cancellation reason
            at_period_end: Schedule instead of cancelling immediately
            refund_unused: On immediate cancellation, credit the unused part of
                the period to the subscription's credit balance
            now: Cancellation instant, defaults to the service clock

        Returns:
            The subscription; cancelling a cancelled subscription returns it unchanged
        """
        now = now or self._clock()
        async with self._locked(subscription_id):
            subscription = await self.get_subscription(subscription_id)
            if subscription.status == SubscriptionStatus.CANCELLED:
                return subscription

            if at_period_end and subscription.current_period_end is not None:
                if subscription.status.is_terminal:
                    raise SubscriptionStateError(
                        f"Subscription {subscription_id} is {subscription.status.value}",
                        current_state=subscription.status.value,
                        requested_state=SubscriptionStatus.CANCELLED.value,
                    )
                subscription.pending_change = PendingCancellation(
                    kind="CANCELLATION",
                    effective_at=subscription.current_period_end,
                    reason=reason,
                    requested_at=now,
                )
                subscription.touch(now)
                await self.subscriptions.save(subscription)
                logger.info(
                    "billing.cancellation.scheduled",
                    subscription_id=subscription_id,
                    effective_at=subscription.current_period_end.isoformat(),
                )
                return subscription

            refund: ProrationResult | None = None
            if refund_unused and not subscription.in_trial_period():
                plan = await self._get_plan(subscription.plan_id)
                refund = self.proration.ensure_valid(
                    self.proration.calculate_refund_proration(subscription, plan, now)
                )

            self.state_machine.cancel(subscription, reason, now)
            if refund is not None and refund.is_credit:
                subscription.credit_balance += -refund.net_amount
                self.metrics.record_proration(refund.net_amount, refund.currency, "refund")
            await self.subscriptions.save(subscription)

        logger.info(
            "billing.subscription.cancelled",
            subscription_id=subscription_id,
            reason=reason,
            refund=str(refund.net_amount) if refund else None,
        )
        await dispatch_event(
            self.notifier,
            subscription_event(
                BillingEventType.SUBSCRIPTION_CANCELLED,
                subscription,
                now,
                reason=reason,
                refund_amount=str(-refund.net_amount) if refund and refund.applies else None,
            ),
        )
        return subscription

    async def clear_pending_change(
        self, subscription_id: str, now: datetime | None = None
    ) -> Subscription:
        """Withdraw a scheduled cancellation or plan change."""
        now = now or self._clock()
        async with self._locked(subscription_id):
            subscription = await self.get_subscription(subscription_id)
            if subscription.pending_change is None:
                return subscription
            kind = subscription.pending_change.kind
            subscription.pending_change = None
            subscription.touch(now)
            await self.subscriptions.save(subscription)
        logger.info("billing.pending_change.cleared", subscription_id=subscription_id, kind=kind)
        return subscription

    async def add_credit(
        self, subscription_id: str, amount: Decimal, now: datetime | None = None
    ) -> Subscription:
        """Add a manual credit applied to the next period invoice."""
        now = now or self._clock()
        if amount <= 0:
            raise SubscriptionError("Credit amount must be positive", context={"amount": str(amount)})
        async with self._locked(subscription_id):
            subscription = await self.get_subscription(subscription_id)
            subscription.credit_balance += amount
            subscription.touch(now)
            await self.subscriptions.save(subscription)
        logger.info(
            "billing.credit.added",
            subscription_id=subscription_id,
            amount=str(amount),
            credit_balance=str(subscription.credit_balance),
        )
        return subscription

    # ==================== Helpers ====================

    @asynccontextmanager
    async def _locked(self, subscription_id: str) -> AsyncIterator[None]:
        """Hold the subscription lock or fail fast when another operation owns it."""
        async with self.locks.hold(subscription_lock_key(subscription_id)) as acquired:
            if not acquired:
                raise SubscriptionError(
                    "Subscription is being modified by another operation",
                    context={"subscription_id": subscription_id},
                    recovery_hint="Retry the request shortly",
                )
            yield

    async def _resolve_plan(self, plan_id: str | None, plan_code: str | None) -> Plan:
        if plan_id:
            return await self._get_plan(plan_id)
        if plan_code:
            plan = await self.plans.get_by_code(plan_code)
            if plan is None:
                raise PlanNotFoundError(f"Plan {plan_code!r} not found")
            return plan
        raise SubscriptionError("Either plan_id or plan_code is required")

    async def _get_plan(self, plan_id: str) -> Plan:
        plan = await self.plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan


__all__ = ["DEPENDENT_STATUSES", "PlanService", "SubscriptionService"]
