"""Command-line entry point for calsync."""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from datetime import timedelta
from pathlib import Path

import click

from calsync import __version__
from calsync.calendar.errors import CalendarError, sanitize_error_message
from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.core.metrics import init_metrics
from calsync.db import Database
from calsync.migrations import DEFAULT_CHAIN, run_migrations
from calsync.runtime import open_runtime

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> CalsyncConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        service_name=config.name,
    )
    return config


def _fail(exc: CalendarError) -> None:
    click.echo(f"Error: {sanitize_error_message(exc)}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to $CALSYNC_CONFIG, then ./calsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Mirror Google calendars into PostgreSQL."""
    ctx.obj = config_path


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", type=int, default=None, help="Port (defaults to calsync.port)")
@click.pass_obj
def serve(config_path: Path | None, host: str, port: int | None) -> None:
    """Run the webhook and API server."""
    import uvicorn

    from calsync.api.app import create_app

    config = _load(config_path)
    uvicorn.run(
        create_app(config),
        host=host,
        port=port or config.port,
        log_config=None,
        timeout_graceful_shutdown=5,
    )


@cli.command()
@click.option("--chain", default=DEFAULT_CHAIN, show_default=True, help="Migration chain or 'all'")
@click.pass_obj
def migrate(config_path: Path | None, chain: str) -> None:
    """Create the database if needed and upgrade the schema to head."""
    config = _load(config_path)
    db = Database.from_config(config)

    async def _migrate() -> None:
        await db.provision()
        await run_migrations(db.dsn, chain=chain, schema=config.db_schema)

    asyncio.run(_migrate())
    click.echo(f"Migrated {config.db_name} ({chain}) to head")


@cli.command()
@click.argument("source_id", type=click.UUID)
@click.pass_obj
def sync(config_path: Path | None, source_id: uuid.UUID) -> None:
    """Synchronize one source now."""
    config = _load(config_path)

    async def _sync():
        async with open_runtime(config) as runtime:
            return await runtime.service.sync_now(source_id)

    try:
        outcome = asyncio.run(_sync())
    except CalendarError as exc:
        _fail(exc)
        return
    if outcome.skipped:
        click.echo(f"Source {source_id} is being synced elsewhere; skipped")
        return
    resync = " (full resync)" if outcome.full_resync else ""
    click.echo(
        f"Synced {source_id}{resync}: {outcome.upserted} upserted, {outcome.deleted} deleted"
    )


@cli.command()
@click.pass_obj
def renew(config_path: Path | None) -> None:
    """Renew push subscriptions that are missing or about to expire."""
    config = _load(config_path)
    init_metrics(config.name)

    async def _renew():
        async with open_runtime(config) as runtime:
            return await runtime.service.renew_subscriptions()

    report = asyncio.run(_renew())
    click.echo(
        f"Checked {report.checked} source(s): "
        f"{len(report.renewed)} renewed, {len(report.failed)} failed"
    )
    for source_id in report.failed:
        click.echo(f"  failed: {source_id}")
    if report.failed:
        sys.exit(1)


@cli.command()
@click.argument("provider_id", type=click.UUID)
@click.pass_obj
def calendars(config_path: Path | None, provider_id: uuid.UUID) -> None:
    """List a provider account's calendars and whether each is linked."""
    config = _load(config_path)

    async def _list():
        async with open_runtime(config) as runtime:
            return await runtime.service.list_calendars(provider_id)

    try:
        summaries = asyncio.run(_list())
    except CalendarError as exc:
        _fail(exc)
        return

    click.echo(f"{'Linked':<8} {'Calendar ID':<50} {'Name'}")
    click.echo("-" * 80)
    for summary in summaries:
        linked = "yes" if summary.linked else ""
        name = f"{summary.name} (primary)" if summary.primary else summary.name
        click.echo(f"{linked:<8} {summary.calendar_id:<50} {name}")


@cli.command("prune-subscriptions")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=1),
    default=30,
    show_default=True,
    help="Delete leases that expired more than this many days ago",
)
@click.pass_obj
def prune_subscriptions(config_path: Path | None, older_than_days: int) -> None:
    """Delete long-expired subscription rows, keeping each source's latest."""
    config = _load(config_path)

    async def _prune() -> int:
        async with open_runtime(config) as runtime:
            return await runtime.service.prune_subscriptions(timedelta(days=older_than_days))

    deleted = asyncio.run(_prune())
    click.echo(f"Pruned {deleted} subscription row(s)")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
