"""
Tests for runtime wiring.
"""

from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from dotmac.recurring.billing.exceptions import BillingConfigurationError
from dotmac.recurring.billing.notifications import CompositeNotifier, LoggingNotifier
from dotmac.recurring.db import create_all_tables, create_engine_from_url
from dotmac.recurring.locks import InMemoryLockManager, RedisLockManager
from dotmac.recurring.persistence import (
    InMemoryPlanRepository,
    SQLPlanRepository,
    SQLWebhookDeliveryRepository,
)
from dotmac.recurring.rate_limit import InMemoryRateLimitBackend, RedisRateLimitBackend
from dotmac.recurring.runtime import (
    SWEEP_NAMES,
    build_runtime,
    configure_gateway,
    resolve_gateway,
)
from dotmac.recurring.settings import Settings
from dotmac.recurring.webhooks.bridge import BillingWebhookNotifier


@pytest.fixture(autouse=True)
def clear_gateway():
    configure_gateway(None)
    yield
    configure_gateway(None)


@pytest.fixture
def config():
    return Settings()


@pytest_asyncio.fixture
async def runtime(config):
    runtime = build_runtime(config, in_memory=True)
    yield runtime
    await runtime.aclose()


@pytest.mark.unit
class TestGatewayResolution:
    def test_installed_gateway_wins(self, gateway, config):
        configure_gateway(gateway)

        assert resolve_gateway(config) is gateway

    def test_missing_gateway(self, config):
        with pytest.raises(BillingConfigurationError) as exc_info:
            resolve_gateway(config)

        assert exc_info.value.context["config_key"] == "billing.gateway_factory"

    def test_factory_path_is_imported_and_called(self):
        config = Settings(billing={"gateway_factory": "unittest.mock:MagicMock"})

        assert isinstance(resolve_gateway(config), MagicMock)

    @pytest.mark.parametrize(
        "path",
        ["no_colon_here", "module_only:", "dotmac.recurring.missing:factory", "unittest.mock:Nope"],
    )
    def test_bad_factory_path(self, path):
        config = Settings(billing={"gateway_factory": path})

        with pytest.raises(BillingConfigurationError):
            resolve_gateway(config)


@pytest.mark.unit
@pytest.mark.asyncio
class TestRuntime:
    async def test_in_memory_wiring(self, runtime):
        assert isinstance(runtime.plans, InMemoryPlanRepository)
        assert isinstance(runtime.subscription_service.locks, InMemoryLockManager)
        assert isinstance(runtime.subscription_service.notifier, LoggingNotifier)
        assert isinstance(runtime.rate_limiter.backend, InMemoryRateLimitBackend)
        assert runtime.engine is None
        assert runtime.db_engine is None

    async def test_billing_sweeps_need_a_gateway(self, runtime):
        with pytest.raises(BillingConfigurationError):
            await runtime.run_sweep("due_billing")

    async def test_webhook_sweeps_run_without_gateway(self, runtime):
        retry = await runtime.run_sweep("webhook_retry")
        cleanup = await runtime.run_sweep("webhook_cleanup")

        assert retry["sweep"] == "webhook_retry"
        assert retry["processed"] == 0
        assert cleanup == {"sweep": "webhook_cleanup", "deleted": 0}

    async def test_unknown_sweep(self, runtime):
        with pytest.raises(ValueError, match="Unknown sweep"):
            await runtime.run_sweep("everything")

    @pytest.mark.parametrize("name", ["due_billing", "payment_retry", "lifecycle"])
    async def test_billing_sweeps_with_gateway(self, config, gateway, name):
        runtime = build_runtime(config, in_memory=True, gateway=gateway)
        try:
            report = await runtime.run_sweep(name)
        finally:
            await runtime.aclose()

        assert report["sweep"] == name
        assert report["processed"] == 0

    async def test_installed_gateway_is_used(self, config, gateway):
        configure_gateway(gateway)

        runtime = build_runtime(config, in_memory=True)
        try:
            assert runtime.engine is not None
            assert runtime.engine.gateway is gateway
        finally:
            await runtime.aclose()

    async def test_webhook_endpoints_add_bridge_notifier(self):
        config = Settings(webhooks={"endpoints": ["https://hooks.example.com"]})

        runtime = build_runtime(config, in_memory=True)
        try:
            notifier = runtime.subscription_service.notifier
            assert isinstance(notifier, CompositeNotifier)
            assert isinstance(notifier.notifiers[1], BillingWebhookNotifier)
            assert notifier.notifiers[1].endpoints == ["https://hooks.example.com"]
        finally:
            await runtime.aclose()

    async def test_redis_client_used_for_locks_and_limits(self):
        config = Settings(redis={"locks_enabled": True}, rate_limit={"backend": "redis"})
        redis_client = MagicMock()

        runtime = build_runtime(config, in_memory=True, redis_client=redis_client)
        try:
            assert isinstance(runtime.subscription_service.locks, RedisLockManager)
            assert isinstance(runtime.rate_limiter.backend, RedisRateLimitBackend)
        finally:
            await runtime.aclose()

    async def test_aclose_releases_owned_resources(self, config):
        runtime = build_runtime(config, in_memory=True)
        client = runtime.webhooks._client

        await runtime.aclose()

        assert client.is_closed
        assert runtime._closeables == []

    async def test_sweep_names(self):
        assert SWEEP_NAMES == (
            "due_billing",
            "payment_retry",
            "lifecycle",
            "webhook_retry",
            "webhook_cleanup",
        )


@pytest.mark.integration
@pytest.mark.asyncio
class TestDatabaseRuntime:
    async def test_sql_repositories_share_engine(self, config, tmp_path, plan_factory):
        engine = create_engine_from_url(f"sqlite+aiosqlite:///{tmp_path / 'runtime.db'}")
        await create_all_tables(engine)

        runtime = build_runtime(config, db_engine=engine)
        try:
            assert isinstance(runtime.plans, SQLPlanRepository)
            assert isinstance(runtime.deliveries, SQLWebhookDeliveryRepository)
            assert runtime.db_engine is None

            plan = await runtime.plans.save(plan_factory())
            assert (await runtime.plans.get_by_code("basic")).plan_id == plan.plan_id
            stats = await runtime.webhooks.get_retry_statistics()
            assert stats.total == 0
        finally:
            await runtime.aclose()
            await engine.dispose()

    async def test_owned_engine_is_disposed(self, tmp_path):
        config = Settings(database={"url": f"sqlite+aiosqlite:///{tmp_path / 'owned.db'}"})

        runtime = build_runtime(config)

        assert runtime.db_engine is not None
        await runtime.aclose()
