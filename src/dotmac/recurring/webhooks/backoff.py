"""
Exponential backoff with bounded jitter for webhook retries.

``delay = min(max_delay, initial_delay * multiplier ** attempt)``; jitter moves
the delay by up to ``jitter_ratio`` either way and never below the initial delay.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from dotmac.recurring.settings import Settings, settings


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits and delay curve for one delivery service."""

    max_attempts: int = 5
    initial_delay_seconds: float = 60.0
    max_delay_seconds: float = 86400.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    jitter_ratio: float = 0.1
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    @classmethod
    def from_settings(cls, config: Settings.WebhookSettings.RetrySettings | None = None) -> "RetryPolicy":
        config = config or settings.webhooks.retry
        return cls(
            max_attempts=config.max_attempts,
            initial_delay_seconds=config.initial_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            backoff_multiplier=config.backoff_multiplier,
            jitter_enabled=config.jitter_enabled,
            jitter_ratio=config.jitter_ratio,
        )

    def base_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` without jitter."""
        try:
            raw = self.initial_delay_seconds * self.backoff_multiplier ** max(attempt, 0)
        except OverflowError:
            return self.max_delay_seconds
        return min(self.max_delay_seconds, raw)

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay(attempt)
        if self.jitter_enabled and self.jitter_ratio > 0:
            delay += delay * self.rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(self.initial_delay_seconds, min(self.max_delay_seconds, delay))

    def next_attempt_at(self, attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempt))

    def exhausted(self, attempt_count: int, max_attempts: int | None = None) -> bool:
        return attempt_count >= (max_attempts or self.max_attempts)


__all__ = ["RetryPolicy"]
