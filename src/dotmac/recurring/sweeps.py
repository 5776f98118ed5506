"""
Shared plumbing for periodic sweeps.

A sweep processes many entities concurrently; each entity is isolated so an
unexpected error is logged, counted and recorded without stopping the batch.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class EntityOutcome(str, Enum):
    """What happened to one entity during a sweep."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class SweepReport:
    """Counts for one sweep run."""

    sweep: str
    started_at: datetime
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    passes: dict[str, "SweepReport"] = field(default_factory=dict)

    def record(self, outcome: EntityOutcome) -> None:
        self.processed += 1
        match outcome:
            case EntityOutcome.SUCCEEDED:
                self.succeeded += 1
            case EntityOutcome.FAILED:
                self.failed += 1
            case EntityOutcome.SKIPPED:
                self.skipped += 1
            case EntityOutcome.ERROR:
                self.errors += 1

    def add_pass(self, name: str, report: "SweepReport") -> None:
        self.passes[name] = report
        self.processed += report.processed
        self.succeeded += report.succeeded
        self.failed += report.failed
        self.skipped += report.skipped
        self.errors += report.errors

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sweep": self.sweep,
            "started_at": self.started_at.isoformat(),
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }
        if self.passes:
            data["passes"] = {name: report.as_dict() for name, report in self.passes.items()}
        return data


async def run_isolated(
    report: SweepReport,
    items: Iterable[T],
    handler: Callable[[T], Awaitable[EntityOutcome]],
    *,
    concurrency: int,
    on_error: Callable[[T, Exception], None] | None = None,
) -> None:
    """Run ``handler`` for every item with at most ``concurrency`` in flight."""
    semaphore = asyncio.Semaphore(concurrency)

    async def run(item: T) -> None:
        async with semaphore:
            try:
                outcome = await handler(item)
            except Exception as exc:
                logger.error(
                    "sweep.entity.failed",
                    sweep=report.sweep,
                    entity=str(item),
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                if on_error is not None:
                    on_error(item, exc)
                outcome = EntityOutcome.ERROR
            report.record(outcome)

    await asyncio.gather(*(run(item) for item in items))


__all__ = ["EntityOutcome", "SweepReport", "run_isolated"]
