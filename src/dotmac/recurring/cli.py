#!/usr/bin/env python
"""
CLI management commands for the recurring billing service.
"""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import click

from dotmac.recurring.db import check_database_health, create_all_tables
from dotmac.recurring.logging import setup_logging
from dotmac.recurring.runtime import SWEEP_NAMES, Runtime, build_runtime


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    init_db: Callable[[], Awaitable[None]]
    runtime_factory: Callable[[], Runtime]
    check_db: Callable[[], Awaitable[bool]]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        init_db=create_all_tables,
        runtime_factory=build_runtime,
        check_db=check_database_health,
    )


def _with_runtime(deps: CLIDependencies, action: Callable[[Runtime], Awaitable[Any]]) -> Any:
    async def _run() -> Any:
        runtime = deps.runtime_factory()
        try:
            return await action(runtime)
        finally:
            await runtime.aclose()

    return asyncio.run(_run())


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, default=str, indent=2, sort_keys=True))


@click.group()
def cli() -> None:
    """DotMac recurring billing CLI."""
    # stdout carries command output
    setup_logging(stream=sys.stderr)


@cli.command()
def init_database() -> None:
    """Create the billing tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    asyncio.run(deps.init_db())
    click.echo("Database initialized successfully!")


@cli.command()
def check_database() -> None:
    """Check database connectivity; exits non-zero when unreachable."""
    deps = _get_cli_dependencies()
    if asyncio.run(deps.check_db()):
        click.echo("database       healthy")
        return
    click.echo("database       unhealthy", err=True)
    sys.exit(1)


@cli.command()
@click.argument("name", type=click.Choice(SWEEP_NAMES))
def run_sweep(name: str) -> None:
    """Run one sweep immediately and print its report."""
    deps = _get_cli_dependencies()
    report = _with_runtime(deps, lambda runtime: runtime.run_sweep(name))
    _echo_json(report)


@cli.command()
def webhook_stats() -> None:
    """Show webhook delivery counts and circuit breaker states."""
    deps = _get_cli_dependencies()
    stats = _with_runtime(deps, lambda runtime: runtime.webhooks.get_retry_statistics())
    _echo_json(
        {
            "total": stats.total,
            "pending_retries": stats.pending_retries,
            "by_status": {status.value: count for status, count in stats.by_status.items()},
            "open_circuits": [circuit.endpoint for circuit in stats.open_circuits],
        }
    )


@cli.command()
@click.argument("identifier")
def rate_limit_status(identifier: str) -> None:
    """Show the current rate-limit window for IDENTIFIER."""
    deps = _get_cli_dependencies()
    status = _with_runtime(deps, lambda runtime: runtime.rate_limiter.get_status(identifier))
    _echo_json(status.as_dict())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
