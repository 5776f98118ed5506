"""
Notification collaborator contract.

Notifications are fire-and-forget from the engine's point of view: a failing
notifier is logged and never undoes a billing transaction.
"""

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import structlog

from dotmac.recurring.billing.events import BillingEvent

logger = structlog.get_logger(__name__)


@runtime_checkable
class BillingNotifier(Protocol):
    """Receives billing events."""

    async def notify(self, event: BillingEvent) -> None: ...  # pragma: no cover - protocol


class LoggingNotifier:
    """Default notifier: records each event as a structured log line."""

    async def notify(self, event: BillingEvent) -> None:
        logger.info(
            "billing.event",
            event_type=event.event_type.value,
            event_id=event.event_id,
            subscription_id=event.subscription_id,
            invoice_id=event.invoice_id,
        )


class CompositeNotifier:
    """Fans an event out to several notifiers; one failing does not stop the rest."""

    def __init__(self, notifiers: Sequence[BillingNotifier]) -> None:
        self.notifiers = list(notifiers)

    async def notify(self, event: BillingEvent) -> None:
        for notifier in self.notifiers:
            await dispatch_event(notifier, event)


async def dispatch_event(notifier: BillingNotifier | None, event: BillingEvent) -> bool:
    """Deliver ``event`` and report whether the notifier accepted it."""
    if notifier is None:
        return False
    try:
        await notifier.notify(event)
    except Exception as exc:
        logger.warning(
            "billing.notification.failed",
            notifier=type(notifier).__name__,
            event_type=event.event_type.value,
            subscription_id=event.subscription_id,
            error=str(exc),
            exc_info=True,
        )
        return False
    return True


__all__ = ["BillingNotifier", "CompositeNotifier", "LoggingNotifier", "dispatch_event"]
