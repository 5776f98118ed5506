"""
Tests for the fixed window plus burst rate limiter.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dotmac.recurring.rate_limit import (
    InMemoryRateLimitBackend,
    RateLimitService,
    RedisRateLimitBackend,
    build_rate_limit_backend,
)
from dotmac.recurring.rate_limit.backends import CONSUME_SCRIPT
from dotmac.recurring.rate_limit.models import from_timestamp
from dotmac.recurring.settings import RateLimitBackendKind, Settings

T0 = 1_700_000_000.0


class Clock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def limits():
    return Settings.RateLimitSettings(
        requests_per_window=5,
        window_seconds=60,
        burst_limit=3,
        burst_window_seconds=1,
    )


@pytest.fixture
def backend(clock):
    return InMemoryRateLimitBackend(clock=clock)


@pytest.fixture
def limiter(backend, limits, clock):
    return RateLimitService(backend, limits, clock=clock)


@pytest.mark.unit
@pytest.mark.asyncio
class TestRateLimitService:
    async def test_allows_within_limits(self, limiter):
        result = await limiter.is_allowed("user:1")

        assert result.allowed
        assert result.limit == 5
        assert result.remaining == 4
        assert result.retry_after is None
        assert result.reset_at == from_timestamp(T0 + 60)

    async def test_burst_limit(self, limiter):
        for _ in range(3):
            assert (await limiter.is_allowed("user:1")).allowed

        denied = await limiter.is_allowed("user:1")

        assert not denied.allowed
        assert denied.reason == "burst limit exceeded"
        assert denied.retry_after == 1
        assert denied.remaining == 2

    async def test_window_limit_after_burst_resets(self, limiter, clock):
        for _ in range(3):
            await limiter.is_allowed("user:1")
        clock.advance(1)
        for _ in range(2):
            assert (await limiter.is_allowed("user:1")).allowed

        denied = await limiter.is_allowed("user:1")

        assert not denied.allowed
        assert denied.reason == "window limit exceeded"
        assert denied.remaining == 0
        assert denied.retry_after == 59

    async def test_denied_requests_are_not_counted(self, limiter, clock):
        for _ in range(4):
            await limiter.is_allowed("user:1")

        status = await limiter.get_status("user:1")

        assert status.window_count == 3
        assert status.burst_count == 3

    async def test_window_expires(self, limiter, clock):
        for _ in range(3):
            await limiter.is_allowed("user:1")
        clock.advance(1)
        for _ in range(2):
            await limiter.is_allowed("user:1")
        clock.advance(60)

        result = await limiter.is_allowed("user:1")

        assert result.allowed
        assert result.remaining == 4

    async def test_identifiers_are_independent(self, limiter):
        for _ in range(3):
            await limiter.is_allowed("user:1")

        assert (await limiter.is_allowed("user:2")).allowed

    async def test_explicit_limits_override_configuration(self, limiter):
        assert (await limiter.is_allowed("api:k", limit=1, burst=10)).allowed

        denied = await limiter.is_allowed("api:k", limit=1, burst=10)

        assert denied.reason == "window limit exceeded"

    async def test_disabled(self, backend, clock):
        limiter = RateLimitService(
            backend, Settings.RateLimitSettings(enabled=False), clock=clock
        )

        for _ in range(100):
            result = await limiter.is_allowed("user:1")

        assert result.allowed
        assert result.reason == "disabled"
        assert len(backend) == 0

    @pytest.mark.parametrize("identifier", ["", "   "])
    async def test_missing_identifier_is_rejected(self, limiter, identifier):
        result = await limiter.is_allowed(identifier)

        assert not result.allowed
        assert result.reason == "missing identifier"

    async def test_prefixed_helpers(self, limiter):
        assert (await limiter.is_allowed_by_ip("10.0.0.1")).identifier == "ip:10.0.0.1"
        assert (await limiter.is_allowed_by_user("42")).identifier == "user:42"
        assert (await limiter.is_allowed_by_api_key("key")).identifier == "api:key"
        assert not (await limiter.is_allowed_by_ip("")).allowed

    async def test_backend_failure_fails_open(self, limits, clock):
        backend = MagicMock()
        backend.consume = AsyncMock(side_effect=ConnectionError("redis down"))
        limiter = RateLimitService(backend, limits, clock=clock)

        result = await limiter.is_allowed("user:1")

        assert result.allowed
        assert result.reason == "backend unavailable"

    async def test_status_and_reset(self, limiter):
        await limiter.is_allowed("user:1")
        await limiter.is_allowed("user:1")

        status = await limiter.get_status("user:1")
        assert status.window_count == 2
        assert status.window_remaining == 3
        assert status.window_reset_at == from_timestamp(T0 + 60)
        assert status.as_dict()["window_reset_at"] == from_timestamp(T0 + 60).isoformat()

        await limiter.reset("user:1")

        status = await limiter.get_status("user:1")
        assert status.window_count == 0
        assert status.window_reset_at is None
        assert status.as_dict()["burst_reset_at"] is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_memory_backend_is_bounded(clock):
    backend = InMemoryRateLimitBackend(maxsize=4, clock=clock)
    limiter = RateLimitService(backend, Settings.RateLimitSettings(), clock=clock)

    for user in range(10):
        await limiter.is_allowed(f"user:{user}")

    assert len(backend) <= 4


@pytest.mark.unit
@pytest.mark.asyncio
class TestRedisBackend:
    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.register_script.return_value = AsyncMock(return_value=[1, 1, 60000, 1, 1000])
        client.mget = AsyncMock(return_value=["2", None])
        client.pttl = AsyncMock(side_effect=[30000, -2])
        client.delete = AsyncMock()
        return client

    async def test_consume_runs_script_atomically(self, client, clock):
        backend = RedisRateLimitBackend(client, clock=clock)

        result = await backend.consume("w", 5, 60, "b", 3, 1)

        client.register_script.assert_called_once_with(CONSUME_SCRIPT)
        client.register_script.return_value.assert_awaited_once_with(
            keys=["w", "b"], args=[5, 60000, 3, 1000]
        )
        assert result.allowed
        assert result.state.window_count == 1
        assert result.state.window_reset_at == T0 + 60
        assert result.state.burst_reset_at == T0 + 1

    async def test_denied_consume(self, client, clock):
        client.register_script.return_value = AsyncMock(return_value=[0, 5, 20000, 2, 500])
        backend = RedisRateLimitBackend(client, clock=clock)
        limiter = RateLimitService(
            backend, Settings.RateLimitSettings(requests_per_window=5), clock=clock
        )

        result = await limiter.is_allowed("user:1")

        assert not result.allowed
        assert result.reason == "window limit exceeded"
        assert result.retry_after == 20

    async def test_peek_handles_missing_keys(self, client, clock):
        backend = RedisRateLimitBackend(client, clock=clock)

        state = await backend.peek("w", "b")

        assert state.window_count == 2
        assert state.window_reset_at == T0 + 30
        assert state.burst_count == 0
        assert state.burst_reset_at == T0

    async def test_delete(self, client, clock):
        backend = RedisRateLimitBackend(client, clock=clock)

        await backend.delete("w", "b")
        await backend.delete()

        client.delete.assert_awaited_once_with("w", "b")


@pytest.mark.unit
def test_build_backend_from_configuration():
    memory = build_rate_limit_backend(Settings.RateLimitSettings(backend=RateLimitBackendKind.MEMORY))
    assert isinstance(memory, InMemoryRateLimitBackend)

    client = MagicMock()
    redis_backend = build_rate_limit_backend(
        Settings.RateLimitSettings(backend=RateLimitBackendKind.REDIS), redis_client=client
    )
    assert isinstance(redis_backend, RedisRateLimitBackend)
    client.register_script.assert_called_once()


@pytest.mark.unit
def test_redis_backend_uses_given_redis_configuration():
    redis_config = Settings.RedisSettings(host="cache.internal", port=6380, db=3)

    with patch("dotmac.recurring.rate_limit.backends.Redis") as redis_cls:
        backend = build_rate_limit_backend(
            Settings.RateLimitSettings(backend=RateLimitBackendKind.REDIS),
            redis_config=redis_config,
        )

    assert isinstance(backend, RedisRateLimitBackend)
    redis_cls.from_url.assert_called_once_with(
        "redis://cache.internal:6380/3", decode_responses=True
    )
