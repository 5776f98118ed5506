"""
Request rate limiting.

Each identifier gets a fixed window (``requests_per_window`` per
``window_seconds``) and a short burst window. A request is allowed only when
both have room. Backend failures fail open: an unavailable store must not take
inbound traffic down with it.
"""

import math
import time
from collections.abc import Callable

import structlog

from dotmac.recurring.rate_limit.backends import RateLimitBackend
from dotmac.recurring.rate_limit.models import RateLimitResult, RateLimitStatus, from_timestamp
from dotmac.recurring.settings import Settings, settings

logger = structlog.get_logger(__name__)

IP_PREFIX = "ip"
USER_PREFIX = "user"
API_KEY_PREFIX = "api"


class RateLimitService:
    """Fixed-window plus burst limiter over a pluggable backend."""

    def __init__(
        self,
        backend: RateLimitBackend,
        config: Settings.RateLimitSettings | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or settings.rate_limit
        self._clock = clock

    def _keys(self, identifier: str) -> tuple[str, str]:
        base = f"{self.config.key_prefix}:{identifier}"
        return f"{base}:window", f"{base}:burst"

    def _now(self) -> float:
        return self._clock() if self._clock is not None else time.time()

    async def is_allowed(
        self,
        identifier: str,
        limit: int | None = None,
        burst: int | None = None,
    ) -> RateLimitResult:
        """
        Count one request for ``identifier`` if it is within limits.

        Args:
            identifier: Caller key, usually prefixed (``ip:``, ``user:``, ``api:``)
            limit: Requests per window, defaults to configuration
            burst: Requests per burst window, defaults to configuration

        Returns:
            RateLimitResult; denied results carry ``retry_after`` seconds
        """
        limit = limit or self.config.requests_per_window
        burst = burst or self.config.burst_limit
        now = self._now()

        if not self.config.enabled:
            return RateLimitResult(
                allowed=True,
                identifier=identifier,
                limit=limit,
                remaining=limit,
                reset_at=from_timestamp(now + self.config.window_seconds),
                reason="disabled",
            )

        if not identifier or not identifier.strip():
            logger.warning("rate_limit.identifier.missing")
            return RateLimitResult(
                allowed=False,
                identifier=identifier,
                limit=limit,
                remaining=0,
                reset_at=from_timestamp(now),
                reason="missing identifier",
            )

        window_key, burst_key = self._keys(identifier)
        try:
            result = await self.backend.consume(
                window_key,
                limit,
                self.config.window_seconds,
                burst_key,
                burst,
                self.config.burst_window_seconds,
            )
        except Exception as exc:
            logger.error(
                "rate_limit.backend.error",
                identifier=identifier,
                error=str(exc),
                exc_info=True,
            )
            return RateLimitResult(
                allowed=True,
                identifier=identifier,
                limit=limit,
                remaining=limit,
                reset_at=from_timestamp(now + self.config.window_seconds),
                reason="backend unavailable",
            )

        state = result.state
        remaining = max(limit - state.window_count, 0)
        if result.allowed:
            return RateLimitResult(
                allowed=True,
                identifier=identifier,
                limit=limit,
                remaining=remaining,
                reset_at=from_timestamp(state.window_reset_at),
            )

        if state.window_count >= limit:
            blocked_until, reason = state.window_reset_at, "window limit exceeded"
        else:
            blocked_until, reason = state.burst_reset_at, "burst limit exceeded"
        retry_after = max(math.ceil(blocked_until - now), 1)
        logger.info(
            "rate_limit.exceeded",
            identifier=identifier,
            reason=reason,
            retry_after=retry_after,
        )
        return RateLimitResult(
            allowed=False,
            identifier=identifier,
            limit=limit,
            remaining=remaining,
            reset_at=from_timestamp(state.window_reset_at),
            retry_after=retry_after,
            reason=reason,
        )

    async def is_allowed_by_ip(self, ip_address: str, limit: int | None = None) -> RateLimitResult:
        return await self.is_allowed(_prefixed(IP_PREFIX, ip_address), limit)

    async def is_allowed_by_user(self, user_id: str, limit: int | None = None) -> RateLimitResult:
        return await self.is_allowed(_prefixed(USER_PREFIX, user_id), limit)

    async def is_allowed_by_api_key(self, api_key: str, limit: int | None = None) -> RateLimitResult:
        return await self.is_allowed(_prefixed(API_KEY_PREFIX, api_key), limit)

    async def reset(self, identifier: str) -> None:
        """Forget all counts for ``identifier``."""
        await self.backend.delete(*self._keys(identifier))
        logger.info("rate_limit.reset", identifier=identifier)

    async def get_status(self, identifier: str, limit: int | None = None) -> RateLimitStatus:
        limit = limit or self.config.requests_per_window
        state = await self.backend.peek(*self._keys(identifier))
        return RateLimitStatus(
            identifier=identifier,
            window_count=state.window_count,
            window_limit=limit,
            window_remaining=max(limit - state.window_count, 0),
            window_reset_at=from_timestamp(state.window_reset_at) if state.window_count else None,
            burst_count=state.burst_count,
            burst_limit=self.config.burst_limit,
            burst_reset_at=from_timestamp(state.burst_reset_at) if state.burst_count else None,
        )


def _prefixed(prefix: str, value: str) -> str:
    # An empty value stays empty so it is rejected as a missing identifier
    return f"{prefix}:{value}" if value else ""


__all__ = ["API_KEY_PREFIX", "IP_PREFIX", "RateLimitService", "USER_PREFIX"]
