"""Request rate limiting with pluggable counter storage."""

from dotmac.recurring.rate_limit.backends import (
    InMemoryRateLimitBackend,
    RateLimitBackend,
    RedisRateLimitBackend,
    build_rate_limit_backend,
)
from dotmac.recurring.rate_limit.models import RateLimitResult, RateLimitStatus
from dotmac.recurring.rate_limit.service import RateLimitService

__all__ = [
    "InMemoryRateLimitBackend",
    "RateLimitBackend",
    "RateLimitResult",
    "RateLimitService",
    "RateLimitStatus",
    "RedisRateLimitBackend",
    "build_rate_limit_backend",
]
