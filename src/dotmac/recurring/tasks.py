"""
Celery tasks wrapping the billing and webhook sweeps.

Each task runs its sweep in a fresh event loop with a freshly built runtime and
returns the sweep report as JSON-serialisable data.
"""

import asyncio
from typing import Any

import structlog

from dotmac.recurring.billing.engine import SWEEP_DUE_BILLING, SWEEP_LIFECYCLE, SWEEP_PAYMENT_RETRY
from dotmac.recurring.celery_app import celery_app
from dotmac.recurring.logging import bound_context, new_correlation_id
from dotmac.recurring.runtime import SWEEP_WEBHOOK_CLEANUP, build_runtime
from dotmac.recurring.webhooks.delivery import SWEEP_WEBHOOK_RETRY

logger = structlog.get_logger(__name__)


async def run_sweep(name: str) -> dict[str, Any]:
    """Build a runtime, run one sweep and release its connections."""
    runtime = build_runtime()
    try:
        with bound_context(correlation_id=new_correlation_id(), task=name):
            return await runtime.run_sweep(name)
    finally:
        await runtime.aclose()


def _run(name: str) -> dict[str, Any]:
    result = asyncio.run(run_sweep(name))
    logger.info("celery.sweep.finished", sweep=name, processed=result.get("processed"))
    return result


@celery_app.task(name="recurring.process_due_billing")
def process_due_billing_task() -> dict[str, Any]:
    """Invoice and charge subscriptions whose billing date has passed."""
    return _run(SWEEP_DUE_BILLING)


@celery_app.task(name="recurring.process_payment_retries")
def process_payment_retries_task() -> dict[str, Any]:
    """Retry failed invoice charges that are due."""
    return _run(SWEEP_PAYMENT_RETRY)


@celery_app.task(name="recurring.process_lifecycle")
def process_lifecycle_task() -> dict[str, Any]:
    """Trial endings, past-due escalation and scheduled changes."""
    return _run(SWEEP_LIFECYCLE)


@celery_app.task(name="recurring.process_webhook_retries")
def process_webhook_retries_task() -> dict[str, Any]:
    return _run(SWEEP_WEBHOOK_RETRY)


@celery_app.task(name="recurring.cleanup_webhook_deliveries")
def cleanup_webhook_deliveries_task() -> dict[str, Any]:
    return _run(SWEEP_WEBHOOK_CLEANUP)


__all__ = [
    "cleanup_webhook_deliveries_task",
    "process_due_billing_task",
    "process_lifecycle_task",
    "process_payment_retries_task",
    "process_webhook_retries_task",
    "run_sweep",
]
