"""
Subscription state machine.

Every status change goes through ``SubscriptionStateMachine`` so that illegal
transitions raise ``SubscriptionStateError`` and the period fields stay in step
with the status.
"""

from datetime import datetime

import structlog

from dotmac.recurring.billing.cycle import apply_next_billing_cycle, start_trial
from dotmac.recurring.billing.enums import SubscriptionStatus
from dotmac.recurring.billing.exceptions import SubscriptionStateError
from dotmac.recurring.billing.models import Plan, Subscription

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.PAUSED: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.EXPIRED: frozenset(),
}


class SubscriptionStateMachine:
    """Applies legal status transitions and their side effects."""

    @staticmethod
    def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[current]

    def _require(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        allowed_from: frozenset[SubscriptionStatus] | None = None,
    ) -> None:
        current = subscription.status
        legal = self.can_transition(current, target)
        if allowed_from is not None:
            legal = legal and current in allowed_from
        if not legal:
            raise SubscriptionStateError(
                f"Cannot move subscription {subscription.subscription_id} "
                f"from {current.value} to {target.value}",
                current_state=current.value,
                requested_state=target.value,
            )

    def _set_status(
        self, subscription: Subscription, target: SubscriptionStatus, now: datetime
    ) -> None:
        previous = subscription.status
        subscription.status = target
        subscription.touch(now)
        logger.info(
            "subscription.status.changed",
            subscription_id=subscription.subscription_id,
            from_status=previous.value,
            to_status=target.value,
        )

    def activate(self, subscription: Subscription, plan: Plan, now: datetime) -> Subscription:
        """PENDING -> ACTIVE; opens the first period unless a trial already did."""
        self._require(
            subscription,
            SubscriptionStatus.ACTIVE,
            allowed_from=frozenset({SubscriptionStatus.PENDING}),
        )
        if not subscription.in_trial_period():
            apply_next_billing_cycle(subscription, plan, now)
        self._set_status(subscription, SubscriptionStatus.ACTIVE, now)
        return subscription

    def start_trial(self, subscription: Subscription, plan: Plan, now: datetime) -> bool:
        """Open a trial period on a PENDING subscription when the plan has one."""
        if subscription.status != SubscriptionStatus.PENDING:
            raise SubscriptionStateError(
                "Trials can only start before activation",
                current_state=subscription.status.value,
                requested_state=SubscriptionStatus.ACTIVE.value,
            )
        return start_trial(subscription, plan, now)

    def pause(self, subscription: Subscription, now: datetime) -> Subscription:
        self._require(
            subscription,
            SubscriptionStatus.PAUSED,
            allowed_from=frozenset({SubscriptionStatus.ACTIVE}),
        )
        self._set_status(subscription, SubscriptionStatus.PAUSED, now)
        return subscription

    def resume(self, subscription: Subscription, now: datetime) -> Subscription:
        self._require(
            subscription,
            SubscriptionStatus.ACTIVE,
            allowed_from=frozenset({SubscriptionStatus.PAUSED}),
        )
        self._set_status(subscription, SubscriptionStatus.ACTIVE, now)
        return subscription

    def reactivate(self, subscription: Subscription, now: datetime) -> Subscription:
        """PAST_DUE -> ACTIVE after an outstanding invoice is settled."""
        self._require(
            subscription,
            SubscriptionStatus.ACTIVE,
            allowed_from=frozenset({SubscriptionStatus.PAST_DUE}),
        )
        self._set_status(subscription, SubscriptionStatus.ACTIVE, now)
        return subscription

    def mark_past_due(self, subscription: Subscription, now: datetime) -> Subscription:
        self._require(subscription, SubscriptionStatus.PAST_DUE)
        self._set_status(subscription, SubscriptionStatus.PAST_DUE, now)
        return subscription

    def cancel(self, subscription: Subscription, reason: str | None, now: datetime) -> Subscription:
        self._require(subscription, SubscriptionStatus.CANCELLED)
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason
        subscription.next_billing_date = None
        subscription.pending_change = None
        self._set_status(subscription, SubscriptionStatus.CANCELLED, now)
        return subscription

    def expire(self, subscription: Subscription, now: datetime) -> Subscription:
        self._require(subscription, SubscriptionStatus.EXPIRED)
        subscription.next_billing_date = None
        subscription.pending_change = None
        self._set_status(subscription, SubscriptionStatus.EXPIRED, now)
        return subscription

    def advance_billing_cycle(
        self, subscription: Subscription, plan: Plan, now: datetime
    ) -> Subscription:
        """Start the next period where the current one ends."""
        if subscription.status.is_terminal:
            raise SubscriptionStateError(
                "Cannot advance the billing cycle of a closed subscription",
                current_state=subscription.status.value,
                requested_state=subscription.status.value,
            )
        if subscription.current_period_end is not None:
            subscription.current_period_start = subscription.current_period_end
        apply_next_billing_cycle(subscription, plan, now)
        subscription.touch(now)
        return subscription

    def end_trial(self, subscription: Subscription, plan: Plan, now: datetime) -> Subscription:
        """Replace the trial period with the first paid period, starting at trial end."""
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise SubscriptionStateError(
                "Only active subscriptions can leave their trial",
                current_state=subscription.status.value,
                requested_state=SubscriptionStatus.ACTIVE.value,
            )
        subscription.current_period_start = subscription.trial_end or now
        subscription.current_period_end = None
        apply_next_billing_cycle(subscription, plan, now)
        subscription.touch(now)
        return subscription


__all__ = ["ALLOWED_TRANSITIONS", "SubscriptionStateMachine"]
