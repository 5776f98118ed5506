"""
Component wiring for workers and the CLI.

Builds repositories, services and sweeps from ``Settings``. Each Celery task and
CLI command builds its own runtime inside its event loop and closes it afterwards,
so database and Redis connections never outlive the loop that opened them.
"""

import importlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from dotmac.recurring.billing.config import get_billing_config
from dotmac.recurring.billing.engine import (
    SWEEP_DUE_BILLING,
    SWEEP_LIFECYCLE,
    SWEEP_PAYMENT_RETRY,
    BillingEngine,
)
from dotmac.recurring.billing.exceptions import BillingConfigurationError
from dotmac.recurring.billing.gateway import ChargeGateway
from dotmac.recurring.billing.notifications import BillingNotifier, CompositeNotifier, LoggingNotifier
from dotmac.recurring.billing.service import PlanService, SubscriptionService
from dotmac.recurring.db import create_engine_from_url, create_session_factory
from dotmac.recurring.locks import InMemoryLockManager, LockManager, RedisLockManager
from dotmac.recurring.persistence import (
    InMemoryInvoiceRepository,
    InMemoryPlanRepository,
    InMemorySubscriptionRepository,
    InMemoryWebhookDeliveryRepository,
    InvoiceRepository,
    PlanRepository,
    SQLInvoiceRepository,
    SQLPlanRepository,
    SQLSubscriptionRepository,
    SQLWebhookDeliveryRepository,
    SubscriptionRepository,
    WebhookDeliveryRepository,
)
from dotmac.recurring.rate_limit.backends import build_rate_limit_backend
from dotmac.recurring.rate_limit.service import RateLimitService
from dotmac.recurring.settings import RateLimitBackendKind, Settings, settings
from dotmac.recurring.webhooks.bridge import BillingWebhookNotifier
from dotmac.recurring.webhooks.delivery import SWEEP_WEBHOOK_RETRY, WebhookDeliveryService

logger = structlog.get_logger(__name__)

SWEEP_WEBHOOK_CLEANUP = "webhook_cleanup"

SWEEP_NAMES = (
    SWEEP_DUE_BILLING,
    SWEEP_PAYMENT_RETRY,
    SWEEP_LIFECYCLE,
    SWEEP_WEBHOOK_RETRY,
    SWEEP_WEBHOOK_CLEANUP,
)

_gateway: ChargeGateway | None = None


def configure_gateway(gateway: ChargeGateway | None) -> None:
    """Install the process-wide charge gateway (None clears it)."""
    global _gateway
    _gateway = gateway


def resolve_gateway(config: Settings | None = None) -> ChargeGateway:
    """Return the installed gateway, or build one from ``billing.gateway_factory``."""
    if _gateway is not None:
        return _gateway

    cfg = config or settings
    path = cfg.billing.gateway_factory
    if not path:
        raise BillingConfigurationError(
            "No charge gateway configured", config_key="billing.gateway_factory"
        )
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise BillingConfigurationError(
            f"Gateway factory must look like 'module:callable', got {path!r}",
            config_key="billing.gateway_factory",
        )
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise BillingConfigurationError(
            f"Cannot load gateway factory {path!r}: {exc}", config_key="billing.gateway_factory"
        ) from exc
    return factory()


@dataclass
class Runtime:
    """Everything a sweep or command needs, wired together."""

    plans: PlanRepository
    subscriptions: SubscriptionRepository
    invoices: InvoiceRepository
    deliveries: WebhookDeliveryRepository
    engine: BillingEngine | None
    plan_service: PlanService
    subscription_service: SubscriptionService
    webhooks: WebhookDeliveryService
    rate_limiter: RateLimitService
    db_engine: AsyncEngine | None = None
    _closeables: list[Any] = field(default_factory=list)

    @property
    def billing_engine(self) -> BillingEngine:
        if self.engine is None:
            raise BillingConfigurationError(
                "Billing sweeps need a charge gateway", config_key="billing.gateway_factory"
            )
        return self.engine

    async def run_sweep(self, name: str, now: datetime | None = None) -> dict[str, Any]:
        """Run one named sweep and return its report as a plain dict."""
        match name:
            case "due_billing":
                report = await self.billing_engine.process_due_billing(now)
            case "payment_retry":
                report = await self.billing_engine.process_payment_retries(now)
            case "lifecycle":
                report = await self.billing_engine.process_lifecycle(now)
            case "webhook_retry":
                report = await self.webhooks.process_pending_retries(now)
            case "webhook_cleanup":
                deleted = await self.webhooks.cleanup(now)
                return {"sweep": SWEEP_WEBHOOK_CLEANUP, "deleted": deleted}
            case _:
                raise ValueError(f"Unknown sweep {name!r}; expected one of {', '.join(SWEEP_NAMES)}")
        return report.as_dict()

    async def aclose(self) -> None:
        for resource in self._closeables:
            await resource.aclose()
        self._closeables.clear()
        if self.db_engine is not None:
            await self.db_engine.dispose()


def build_runtime(
    config: Settings | None = None,
    *,
    gateway: ChargeGateway | None = None,
    in_memory: bool = False,
    db_engine: AsyncEngine | None = None,
    redis_client: Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Runtime:
    """
    Wire a runtime from settings.

    Args:
        config: Settings to read, defaults to the global settings
        gateway: Charge gateway; falls back to ``resolve_gateway``. Without one the
            runtime still serves webhooks and rate limits but cannot run billing sweeps
        in_memory: Use process-local repositories instead of the database
        db_engine: Engine to reuse; a dedicated one is created (and disposed on close) otherwise
        redis_client: Client for Redis locks and the Redis rate-limit backend
        http_client: Shared client for webhook deliveries

    Returns:
        The wired runtime; call ``aclose`` when done
    """
    cfg = config or settings
    closeables: list[Any] = []
    owned_engine: AsyncEngine | None = None

    if in_memory:
        plans: PlanRepository = InMemoryPlanRepository()
        subscriptions: SubscriptionRepository = InMemorySubscriptionRepository()
        invoices: InvoiceRepository = InMemoryInvoiceRepository()
        deliveries: WebhookDeliveryRepository = InMemoryWebhookDeliveryRepository()
    else:
        if db_engine is None:
            owned_engine = create_engine_from_url(cfg.database.url, echo=cfg.database.echo)
        session_factory = create_session_factory(db_engine or owned_engine)  # type: ignore[arg-type]
        plans = SQLPlanRepository(session_factory)
        subscriptions = SQLSubscriptionRepository(session_factory)
        invoices = SQLInvoiceRepository(session_factory)
        deliveries = SQLWebhookDeliveryRepository(session_factory)

    needs_redis = cfg.redis.locks_enabled or cfg.rate_limit.backend == RateLimitBackendKind.REDIS
    if redis_client is None and needs_redis:
        redis_client = Redis.from_url(cfg.redis.redis_url, decode_responses=cfg.redis.decode_responses)
        closeables.append(redis_client)

    locks: LockManager
    if cfg.redis.locks_enabled and redis_client is not None:
        locks = RedisLockManager(
            redis_client, prefix=cfg.redis.lock_prefix, timeout=cfg.redis.lock_timeout_seconds
        )
    else:
        locks = InMemoryLockManager()

    if http_client is None:
        http_client = httpx.AsyncClient(timeout=cfg.webhooks.timeout_seconds)
        closeables.append(http_client)

    webhooks = WebhookDeliveryService(deliveries, config=cfg.webhooks, http_client=http_client)

    notifier: BillingNotifier = LoggingNotifier()
    if cfg.webhooks.endpoints:
        notifier = CompositeNotifier(
            [notifier, BillingWebhookNotifier(webhooks, cfg.webhooks.endpoints)]
        )

    billing_config = get_billing_config()
    if gateway is None and (_gateway is not None or cfg.billing.gateway_factory):
        gateway = resolve_gateway(cfg)
    engine = None
    if gateway is not None:
        engine = BillingEngine(
            plans=plans,
            subscriptions=subscriptions,
            invoices=invoices,
            gateway=gateway,
            notifier=notifier,
            locks=locks,
            config=billing_config,
        )
    subscription_service = SubscriptionService(
        plans=plans,
        subscriptions=subscriptions,
        invoices=invoices,
        notifier=notifier,
        locks=locks,
        config=billing_config,
    )
    rate_limit_backend = build_rate_limit_backend(
        cfg.rate_limit, redis_client=redis_client, redis_config=cfg.redis
    )
    rate_limiter = RateLimitService(rate_limit_backend, cfg.rate_limit)

    logger.debug(
        "runtime.built",
        in_memory=in_memory,
        redis_locks=cfg.redis.locks_enabled,
        webhook_endpoints=len(cfg.webhooks.endpoints),
    )
    return Runtime(
        plans=plans,
        subscriptions=subscriptions,
        invoices=invoices,
        deliveries=deliveries,
        engine=engine,
        plan_service=PlanService(plans, subscriptions),
        subscription_service=subscription_service,
        webhooks=webhooks,
        rate_limiter=rate_limiter,
        db_engine=owned_engine,
        _closeables=closeables,
    )


__all__ = [
    "SWEEP_NAMES",
    "SWEEP_WEBHOOK_CLEANUP",
    "Runtime",
    "build_runtime",
    "configure_gateway",
    "resolve_gateway",
]
