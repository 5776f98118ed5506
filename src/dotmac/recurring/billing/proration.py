"""
Proration calculations for plan changes, cancellations and manual adjustments.

Day counts are whole days. Unused and prorated figures are kept at four decimal
places; the net amount is rounded half-up to cents. A positive net amount is a
charge, a negative one a credit.
"""

from datetime import datetime
from decimal import Decimal

import structlog

from dotmac.recurring.billing.config import ProrationConfig, get_billing_config
from dotmac.recurring.billing.cycle import period_days
from dotmac.recurring.billing.exceptions import ProrationError
from dotmac.recurring.billing.models import Plan, ProrationResult, Subscription
from dotmac.recurring.billing.money import (
    ZERO,
    format_amount,
    quantize_intermediate,
    round_amount,
    to_decimal,
)

logger = structlog.get_logger(__name__)


def _clean_zero(amount: Decimal) -> Decimal:
    return ZERO if amount == 0 else amount


class ProrationCalculator:
    """Computes ``ProrationResult`` values. Holds no state besides its limits."""

    def __init__(self, config: ProrationConfig | None = None) -> None:
        self.config = config or get_billing_config().proration

    def calculate_proration(
        self,
        subscription: Subscription,
        current_plan: Plan,
        new_plan: Plan,
        change_at: datetime,
    ) -> ProrationResult:
        """Prorate a switch from ``current_plan`` to ``new_plan`` at ``change_at``."""
        start = subscription.current_period_start
        end = subscription.current_period_end
        currency = current_plan.currency

        if start is None or end is None:
            return ProrationResult.not_applicable("Subscription has no current billing period", currency)
        if change_at == start or change_at == end:
            return ProrationResult.not_applicable("Change falls on a billing period boundary", currency)
        if current_plan.amount == new_plan.amount:
            return ProrationResult.not_applicable("Plan amounts are equal", currency)
        if new_plan.currency != currency:
            raise ProrationError(
                "Cannot prorate between plans in different currencies",
                context={"current_currency": currency, "new_currency": new_plan.currency},
            )
        if not start < change_at < end:
            return ProrationResult.not_applicable(
                "Change falls outside the current billing period", currency
            )

        total_days = period_days(start, end)
        if total_days <= 0:
            return ProrationResult.not_applicable("Billing period is shorter than one day", currency)

        days_used = max(period_days(start, change_at), 0)
        days_remaining = max(total_days - days_used, 0)

        unused = quantize_intermediate(current_plan.amount * days_remaining / total_days)
        prorated = quantize_intermediate(new_plan.amount * days_remaining / total_days)
        net = _clean_zero(round_amount(prorated - unused))

        old_label = format_amount(current_plan.amount, currency)
        new_label = format_amount(new_plan.amount, currency)
        if net > 0:
            explanation = (
                f"Upgrade from {current_plan.name} ({old_label}) to {new_plan.name} ({new_label}): "
                f"charge {format_amount(net, currency)} for {days_remaining} of {total_days} days remaining"
            )
        elif net < 0:
            explanation = (
                f"Downgrade from {current_plan.name} ({old_label}) to {new_plan.name} ({new_label}): "
                f"credit {format_amount(-net, currency)} for {days_remaining} of {total_days} days remaining"
            )
        else:
            explanation = (
                f"Plan change from {current_plan.name} to {new_plan.name}: no amount due "
                f"for {days_remaining} of {total_days} days remaining"
            )

        return ProrationResult(
            applies=True,
            currency=currency,
            original_amount=current_plan.amount,
            new_amount=new_plan.amount,
            days_used=days_used,
            days_remaining=days_remaining,
            total_days=total_days,
            unused_amount=unused,
            prorated_amount=prorated,
            net_amount=net,
            explanation=explanation,
            period_start=start,
            period_end=end,
            effective_at=change_at,
        )

    def calculate_refund_proration(
        self, subscription: Subscription, plan: Plan, cancel_at: datetime
    ) -> ProrationResult:
        """Credit for the unused part of the period when cancelling at ``cancel_at``."""
        start = subscription.current_period_start
        end = subscription.current_period_end
        currency = plan.currency

        if start is None or end is None:
            return ProrationResult.not_applicable("Subscription has no current billing period", currency)
        if cancel_at >= end:
            return ProrationResult.not_applicable(
                "Cancellation is at or after the end of the billing period", currency
            )

        total_days = period_days(start, end)
        if total_days <= 0:
            return ProrationResult.not_applicable("Billing period is shorter than one day", currency)

        days_used = max(period_days(start, cancel_at), 0)
        days_remaining = total_days - days_used
        if days_remaining < 1:
            return ProrationResult.not_applicable("Less than one day remains in the period", currency)

        unused = quantize_intermediate(plan.amount * days_remaining / total_days)
        net = _clean_zero(round_amount(-unused))

        return ProrationResult(
            applies=True,
            currency=currency,
            original_amount=plan.amount,
            new_amount=ZERO,
            days_used=days_used,
            days_remaining=days_remaining,
            total_days=total_days,
            unused_amount=unused,
            prorated_amount=ZERO,
            net_amount=net,
            explanation=(
                f"Cancellation of {plan.name}: credit {format_amount(-net, currency)} "
                f"for {days_remaining} unused of {total_days} days"
            ),
            period_start=start,
            period_end=end,
            effective_at=cancel_at,
        )

    def calculate_adjustment_proration(
        self,
        subscription: Subscription,
        amount: Decimal | int | str,
        start: datetime,
        end: datetime,
        currency: str = "USD",
    ) -> ProrationResult:
        """Flat adjustment (e.g. a manual credit) over an arbitrary sub-period."""
        if end <= start:
            return ProrationResult.not_applicable(
                "Adjustment period end must be after its start", currency
            )
        days = period_days(start, end)
        if days <= 0:
            return ProrationResult.not_applicable("Adjustment period is shorter than one day", currency)

        value = to_decimal(amount)
        net = _clean_zero(round_amount(value))
        direction = "charge" if net >= 0 else "credit"
        return ProrationResult(
            applies=True,
            currency=currency,
            original_amount=value,
            new_amount=value,
            days_used=0,
            days_remaining=days,
            total_days=days,
            unused_amount=ZERO,
            prorated_amount=quantize_intermediate(value),
            net_amount=net,
            explanation=(
                f"Manual adjustment for subscription {subscription.subscription_id}: "
                f"{direction} {format_amount(abs(net), currency)} over {days} days"
            ),
            period_start=start,
            period_end=end,
            effective_at=start,
        )

    def validate_proration(self, result: ProrationResult) -> bool:
        """Sanity-check a result before money moves. Non-applicable results pass."""
        if not result.applies:
            return True

        problem: str | None = None
        if abs(result.net_amount) > self.config.max_net_amount:
            problem = "net_amount_exceeds_ceiling"
        elif result.total_days < 1 or result.total_days > self.config.max_period_days:
            problem = "total_days_out_of_range"
        elif result.days_remaining < 0 or result.days_used < 0:
            problem = "negative_day_count"

        if problem:
            logger.warning(
                "billing.proration.rejected",
                problem=problem,
                net_amount=str(result.net_amount),
                total_days=result.total_days,
                days_used=result.days_used,
                days_remaining=result.days_remaining,
            )
            return False
        return True

    def ensure_valid(self, result: ProrationResult) -> ProrationResult:
        """Return ``result`` or raise ``ProrationError`` when it fails validation."""
        if not self.validate_proration(result):
            raise ProrationError(
                "Proration failed validation",
                context={
                    "net_amount": str(result.net_amount),
                    "total_days": result.total_days,
                    "days_remaining": result.days_remaining,
                },
            )
        return result


def format_proration_summary(result: ProrationResult) -> str:
    """Multi-line human readable summary of a proration result."""
    if not result.applies:
        return f"No proration applied: {result.reason}"

    currency = result.currency
    if result.net_amount > 0:
        outcome = f"Amount to charge: {format_amount(result.net_amount, currency)}"
    elif result.net_amount < 0:
        outcome = f"Credit to issue: {format_amount(-result.net_amount, currency)}"
    else:
        outcome = "No amount due"

    lines = [
        "Proration summary",
        f"  Original amount: {format_amount(result.original_amount, currency)}",
        f"  New amount: {format_amount(result.new_amount, currency)}",
        f"  Days used: {result.days_used} of {result.total_days}",
        f"  Days remaining: {result.days_remaining}",
        f"  Unused credit: {format_amount(result.unused_amount, currency)}",
        f"  Prorated charge: {format_amount(result.prorated_amount, currency)}",
        f"  {outcome}",
        f"  {result.explanation}",
    ]
    return "\n".join(lines)


__all__ = ["ProrationCalculator", "format_proration_summary"]
