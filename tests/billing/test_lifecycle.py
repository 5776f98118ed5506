"""Tests for the subscription state machine."""

from datetime import UTC, datetime, timedelta

import pytest

from dotmac.recurring.billing.enums import IntervalUnit, SubscriptionStatus
from dotmac.recurring.billing.exceptions import SubscriptionStateError
from dotmac.recurring.billing.lifecycle import ALLOWED_TRANSITIONS, SubscriptionStateMachine
from dotmac.recurring.billing.models import PendingCancellation, Subscription

pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 1, tzinfo=UTC)


@pytest.fixture
def machine():
    return SubscriptionStateMachine()


@pytest.fixture
def plan(plan_factory):
    return plan_factory()


@pytest.fixture
def active(machine, plan):
    subscription = Subscription(customer_id="cus_1", plan_id=plan.plan_id)
    return machine.activate(subscription, plan, NOW)


class TestTransitions:
    def test_activate_opens_first_period(self, active):
        assert active.status == SubscriptionStatus.ACTIVE
        assert active.current_period_start == NOW
        assert active.current_period_end == datetime(2024, 2, 1, tzinfo=UTC)
        assert active.next_billing_date == active.current_period_end

    def test_activate_keeps_trial_period(self, machine, plan_factory):
        plan = plan_factory(trial_days=7)
        subscription = Subscription(customer_id="cus_1", plan_id=plan.plan_id)

        machine.start_trial(subscription, plan, NOW)
        machine.activate(subscription, plan, NOW)

        assert subscription.current_period_end == NOW + timedelta(days=7)
        assert subscription.in_trial_period()

    def test_pause_and_resume(self, machine, active):
        machine.pause(active, NOW)
        assert active.status == SubscriptionStatus.PAUSED

        machine.resume(active, NOW)
        assert active.status == SubscriptionStatus.ACTIVE

    def test_past_due_and_reactivate(self, machine, active):
        machine.mark_past_due(active, NOW)
        assert active.status == SubscriptionStatus.PAST_DUE

        machine.reactivate(active, NOW)
        assert active.status == SubscriptionStatus.ACTIVE

    def test_cancel_clears_schedule(self, machine, active):
        active.pending_change = PendingCancellation(effective_at=NOW + timedelta(days=3))

        machine.cancel(active, "customer request", NOW)

        assert active.status == SubscriptionStatus.CANCELLED
        assert active.cancelled_at == NOW
        assert active.cancellation_reason == "customer request"
        assert active.next_billing_date is None
        assert active.pending_change is None

    def test_expire(self, machine, active):
        machine.expire(active, NOW)

        assert active.status == SubscriptionStatus.EXPIRED
        assert active.next_billing_date is None

    @pytest.mark.parametrize("terminal", [SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED])
    def test_terminal_states_are_final(self, machine, active, terminal):
        active.status = terminal

        with pytest.raises(SubscriptionStateError) as exc_info:
            machine.pause(active, NOW)

        assert exc_info.value.context["current_state"] == terminal.value
        for target in SubscriptionStatus:
            assert not machine.can_transition(terminal, target)

    def test_resume_requires_paused(self, machine, active):
        with pytest.raises(SubscriptionStateError):
            machine.resume(active, NOW)

    def test_past_due_cannot_pause(self, machine, active):
        machine.mark_past_due(active, NOW)

        with pytest.raises(SubscriptionStateError):
            machine.pause(active, NOW)

    def test_paused_cannot_become_past_due(self, machine, active):
        machine.pause(active, NOW)

        with pytest.raises(SubscriptionStateError):
            machine.mark_past_due(active, NOW)

    def test_every_state_has_a_rule(self):
        assert set(ALLOWED_TRANSITIONS) == set(SubscriptionStatus)


class TestCycle:
    @pytest.mark.parametrize(
        ("unit", "expected_ends"),
        [
            (IntervalUnit.DAY, [datetime(2024, 1, day, tzinfo=UTC) for day in (2, 3, 4, 5, 6)]),
            (IntervalUnit.WEEK, [NOW + timedelta(weeks=count) for count in range(1, 6)]),
            (IntervalUnit.MONTH, [datetime(2024, month, 1, tzinfo=UTC) for month in (2, 3, 4, 5, 6)]),
            (IntervalUnit.YEAR, [datetime(year, 1, 1, tzinfo=UTC) for year in range(2025, 2030)]),
        ],
    )
    def test_advance_starts_next_period_at_previous_end(
        self, machine, plan_factory, unit, expected_ends
    ):
        plan = plan_factory(interval_unit=unit)
        subscription = machine.activate(
            Subscription(customer_id="cus_1", plan_id=plan.plan_id), plan, NOW
        )
        assert subscription.current_period_end == expected_ends[0]

        for previous_end, expected_end in zip(expected_ends, expected_ends[1:]):
            machine.advance_billing_cycle(subscription, plan, NOW)

            assert subscription.current_period_start == previous_end
            assert subscription.current_period_end == expected_end
            assert subscription.next_billing_date == subscription.current_period_end
            assert subscription.period_plan_id == plan.plan_id

    def test_advance_rejects_closed_subscription(self, machine, active, plan):
        machine.cancel(active, None, NOW)

        with pytest.raises(SubscriptionStateError):
            machine.advance_billing_cycle(active, plan, NOW)

    def test_end_trial_opens_first_paid_period(self, machine, plan_factory):
        plan = plan_factory(trial_days=14)
        subscription = Subscription(customer_id="cus_1", plan_id=plan.plan_id)
        machine.start_trial(subscription, plan, NOW)
        machine.activate(subscription, plan, NOW)
        trial_end = subscription.trial_end

        machine.end_trial(subscription, plan, trial_end)

        assert subscription.current_period_start == trial_end
        assert subscription.current_period_end == datetime(2024, 2, 15, tzinfo=UTC)
        assert not subscription.in_trial_period()
