"""
Celery application and beat schedule for the billing sweeps.

Every sweep is idempotent and takes per-entity locks, so overlapping runs on
several workers are safe.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from dotmac.recurring.settings import settings

celery_app = Celery(
    "dotmac_recurring",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["dotmac.recurring.tasks"],
)

celery_app.conf.update(
    task_routes={
        "recurring.*": {"queue": "billing"},
    },
    task_default_queue="billing",
    task_queues=(Queue("billing", routing_key="billing"),),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@celery_app.on_after_configure.connect  # type: ignore[misc]
def setup_worker_observability(sender: Any, **kwargs: Any) -> None:
    """Configure structured logging and OpenTelemetry for workers."""
    from dotmac.recurring.logging import setup_logging
    from dotmac.recurring.telemetry import setup_telemetry

    setup_logging()
    try:
        setup_telemetry()
    except Exception as e:
        # Workers still run without exporters
        structlog.get_logger(__name__).warning("celery.telemetry.failed", error=str(e))


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the beat entry for every sweep."""
    from dotmac.recurring.tasks import (
        cleanup_webhook_deliveries_task,
        process_due_billing_task,
        process_lifecycle_task,
        process_payment_retries_task,
        process_webhook_retries_task,
    )

    intervals = settings.celery
    sender.add_periodic_task(
        intervals.due_billing_interval,
        process_due_billing_task.s(),
        name="recurring-due-billing",
    )
    sender.add_periodic_task(
        intervals.payment_retry_interval,
        process_payment_retries_task.s(),
        name="recurring-payment-retries",
    )
    sender.add_periodic_task(
        intervals.lifecycle_interval,
        process_lifecycle_task.s(),
        name="recurring-lifecycle",
    )
    sender.add_periodic_task(
        intervals.webhook_retry_interval,
        process_webhook_retries_task.s(),
        name="recurring-webhook-retries",
    )
    if settings.webhooks.cleanup.enabled:
        sender.add_periodic_task(
            intervals.webhook_cleanup_interval,
            cleanup_webhook_deliveries_task.s(),
            name="recurring-webhook-cleanup",
        )

    structlog.get_logger(__name__).info("celery.beat.configured")


__all__ = ["celery_app"]
