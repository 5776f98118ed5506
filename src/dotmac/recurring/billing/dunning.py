"""Payment retry schedule for failed invoices."""

from datetime import datetime, timedelta

from dotmac.recurring.billing.config import PaymentRetryConfig


def next_payment_attempt(
    config: PaymentRetryConfig, attempt_count: int, now: datetime
) -> datetime | None:
    """When to retry after ``attempt_count`` failed attempts, or None once exhausted.

    The schedule is indexed by the failed attempt number; attempts past the end of
    the table reuse its last entry.
    """
    if attempt_count >= config.max_attempts:
        return None
    schedule = config.retry_schedule_days
    index = min(max(attempt_count, 1), len(schedule)) - 1
    return now + timedelta(days=schedule[index])


def attempts_remaining(config: PaymentRetryConfig, attempt_count: int) -> int:
    return max(config.max_attempts - attempt_count, 0)
