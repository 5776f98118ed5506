"""
Global pytest configuration and fixtures for the recurring billing tests.
"""

import os

# Settings are read once at import time; keep tests off Redis and real databases
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT__BACKEND", "memory")
os.environ.setdefault("REDIS__LOCKS_ENABLED", "false")
os.environ.setdefault("OBSERVABILITY__OTEL_ENABLED", "false")

from datetime import UTC, datetime  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from dotmac.recurring.billing.config import BillingConfig, set_billing_config  # noqa: E402
from dotmac.recurring.billing.engine import BillingEngine  # noqa: E402
from dotmac.recurring.billing.enums import IntervalUnit  # noqa: E402
from dotmac.recurring.billing.events import BillingEvent  # noqa: E402
from dotmac.recurring.billing.gateway import ChargeResult  # noqa: E402
from dotmac.recurring.billing.models import Plan  # noqa: E402
from dotmac.recurring.billing.service import PlanService, SubscriptionService  # noqa: E402
from dotmac.recurring.locks import InMemoryLockManager  # noqa: E402
from dotmac.recurring.persistence import (  # noqa: E402
    InMemoryInvoiceRepository,
    InMemoryPlanRepository,
    InMemorySubscriptionRepository,
)

NOW = datetime(2024, 1, 1, tzinfo=UTC)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests that exercise the database layer")


class FakeGateway:
    """Charge gateway returning scripted results and recording every call."""

    def __init__(self, *results: ChargeResult | BaseException) -> None:
        self.results = list(results)
        self.calls: list[dict] = []

    def queue(self, *results: ChargeResult | BaseException) -> None:
        self.results.extend(results)

    async def charge(self, amount, currency, payment_method_ref, idempotency_key):
        self.calls.append(
            {
                "amount": amount,
                "currency": currency,
                "payment_method_ref": payment_method_ref,
                "idempotency_key": idempotency_key,
            }
        )
        result = self.results.pop(0) if self.results else ChargeResult.succeeded(
            f"ch_{len(self.calls)}"
        )
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingNotifier:
    """Notifier that keeps the events it receives."""

    def __init__(self) -> None:
        self.events: list[BillingEvent] = []

    async def notify(self, event: BillingEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.event_type.value for event in self.events]


def make_plan(**overrides) -> Plan:
    values = {
        "code": "basic",
        "name": "Basic",
        "amount": Decimal("100.00"),
        "currency": "USD",
        "interval_unit": IntervalUnit.MONTH,
        "interval_count": 1,
        "created_at": NOW,
    }
    values.update(overrides)
    return Plan(**values)


@pytest.fixture(autouse=True)
def billing_config():
    """Default billing configuration, reset after each test."""
    config = BillingConfig()
    set_billing_config(config)
    yield config
    set_billing_config(None)


@pytest.fixture
def plans():
    return InMemoryPlanRepository()


@pytest.fixture
def subscriptions():
    return InMemorySubscriptionRepository()


@pytest.fixture
def invoices():
    return InMemoryInvoiceRepository()


@pytest.fixture
def locks():
    return InMemoryLockManager()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(plans, subscriptions, invoices, gateway, notifier, locks, billing_config):
    return BillingEngine(
        plans=plans,
        subscriptions=subscriptions,
        invoices=invoices,
        gateway=gateway,
        notifier=notifier,
        locks=locks,
        config=billing_config,
        clock=lambda: NOW,
    )


@pytest.fixture
def subscription_service(plans, subscriptions, invoices, notifier, locks, billing_config):
    return SubscriptionService(
        plans=plans,
        subscriptions=subscriptions,
        invoices=invoices,
        notifier=notifier,
        locks=locks,
        config=billing_config,
        clock=lambda: NOW,
    )


@pytest.fixture
def plan_service(plans, subscriptions):
    return PlanService(plans, subscriptions, clock=lambda: NOW)


@pytest.fixture
def plan_factory():
    return make_plan
