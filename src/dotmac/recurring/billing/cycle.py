"""
Billing cycle calculations.

Pure functions over plan interval metadata. Month and year arithmetic clamps
to the last day of the target month (Jan 31 + 1 month = Feb 28/29).
"""

import calendar
from datetime import datetime, timedelta

import structlog

from dotmac.recurring.billing.enums import IntervalUnit
from dotmac.recurring.billing.models import Plan, Subscription

logger = structlog.get_logger(__name__)


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_interval(start: datetime, unit: IntervalUnit | str, count: int) -> datetime:
    """Add ``count`` interval units to ``start``.

    Unknown units fall back to a single month.
    """
    try:
        resolved = unit if isinstance(unit, IntervalUnit) else IntervalUnit(str(unit).upper())
    except ValueError:
        logger.warning("billing.cycle.unknown_interval_unit", unit=str(unit))
        return _add_months(start, 1)

    match resolved:
        case IntervalUnit.DAY:
            return start + timedelta(days=count)
        case IntervalUnit.WEEK:
            return start + timedelta(weeks=count)
        case IntervalUnit.MONTH:
            return _add_months(start, count)
        case IntervalUnit.YEAR:
            return _add_months(start, 12 * count)


def compute_period_end(subscription: Subscription, plan: Plan, now: datetime) -> datetime:
    """Period end for the subscription's current period start (or ``now``)."""
    start = subscription.current_period_start or now
    return add_interval(start, plan.interval_unit, plan.interval_count)


def apply_next_billing_cycle(subscription: Subscription, plan: Plan, now: datetime) -> None:
    """Recompute the current period end and align the next billing date with it."""
    if subscription.current_period_start is None:
        subscription.current_period_start = now
    period_end = compute_period_end(subscription, plan, now)
    subscription.current_period_end = period_end
    subscription.next_billing_date = period_end
    subscription.period_plan_id = plan.plan_id


def start_trial(subscription: Subscription, plan: Plan, now: datetime) -> bool:
    """Start the plan's trial, deferring the first charge to its end.

    Returns False (and changes nothing) when the plan has no trial.
    """
    if not plan.has_trial:
        return False
    assert plan.trial_days is not None
    trial_end = now + timedelta(days=plan.trial_days)
    subscription.trial_start = now
    subscription.trial_end = trial_end
    subscription.current_period_start = now
    subscription.current_period_end = trial_end
    subscription.next_billing_date = trial_end
    subscription.period_plan_id = plan.plan_id
    return True


def period_days(start: datetime, end: datetime) -> int:
    """Whole days between two instants, truncated toward zero."""
    seconds = (end - start).total_seconds()
    days = int(abs(seconds) // 86400)
    return days if seconds >= 0 else -days


__all__ = [
    "add_interval",
    "apply_next_billing_cycle",
    "compute_period_end",
    "period_days",
    "start_trial",
]
