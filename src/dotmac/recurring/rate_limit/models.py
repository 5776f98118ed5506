"""Rate limiting value objects."""

from dataclasses import dataclass
from datetime import UTC, datetime


@dataclass(frozen=True)
class WindowState:
    """Counts held by a backend for one identifier's window and burst window."""

    window_count: int
    window_reset_at: float
    burst_count: int
    burst_reset_at: float


@dataclass(frozen=True)
class ConsumeResult:
    """Backend answer to a consume call; counters only move when ``allowed``."""

    allowed: bool
    state: WindowState


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    identifier: str
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int | None = None  # Seconds until retry
    reason: str | None = None


@dataclass
class RateLimitStatus:
    """Current usage for one identifier without consuming a request."""

    identifier: str
    window_count: int
    window_limit: int
    window_remaining: int
    window_reset_at: datetime | None
    burst_count: int
    burst_limit: int
    burst_reset_at: datetime | None

    def as_dict(self) -> dict[str, object]:
        return {
            "identifier": self.identifier,
            "window_count": self.window_count,
            "window_limit": self.window_limit,
            "window_remaining": self.window_remaining,
            "window_reset_at": self.window_reset_at.isoformat() if self.window_reset_at else None,
            "burst_count": self.burst_count,
            "burst_limit": self.burst_limit,
            "burst_reset_at": self.burst_reset_at.isoformat() if self.burst_reset_at else None,
        }


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=UTC)


__all__ = [
    "ConsumeResult",
    "RateLimitResult",
    "RateLimitStatus",
    "WindowState",
    "from_timestamp",
]
