"""CLI for calsync: run the service and operate on its state."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from calsync.config import CalsyncConfig, load_config
from calsync.core.logging import configure_logging
from calsync.core.workflow import RunOutcome
from calsync.errors import ConfigError, ExternalCalendarNotFoundError

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> CalsyncConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(2)
    configure_logging(config.logging.level, config.logging.format)
    return config


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to $CALSYNC_CONFIG or ./calsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: bidirectional calendar sync service."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.option("--no-scheduler", is_flag=True, help="Do not run the fallback scheduler")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, no_scheduler: bool) -> None:
    """Serve the HTTP API (webhooks, OAuth, sync-now) with the scheduler."""
    import uvicorn

    from calsync.api.app import create_app

    config = _load(ctx.obj["config_path"])
    app = create_app(config=config, run_scheduler=not no_scheduler)
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.command()
@click.option("--revision", default="core@head", show_default=True)
@click.pass_context
def migrate(ctx: click.Context, revision: str) -> None:
    """Apply database migrations."""
    from calsync.migrations import run_migrations

    config = _load(ctx.obj["config_path"])
    if config.database.backend != "postgres" or config.database.url is None:
        click.echo("Migrations require the postgres backend", err=True)
        sys.exit(2)
    run_migrations(config.database.url, revision)
    click.echo(f"Database migrated to {revision}")


@cli.command()
@click.option("--mapping-id", required=True, help="External calendar mapping to sync")
@click.pass_context
def sync(ctx: click.Context, mapping_id: str) -> None:
    """Run one inbound sync for a mapping and wait for it to finish.

    The run goes through the orchestrator, so it records its run id and any
    failure on the mapping the same way a webhook-triggered run does.
    """
    config = _load(ctx.obj["config_path"])
    try:
        outcome = asyncio.run(_sync_once(config, mapping_id))
    except ExternalCalendarNotFoundError as exc:
        click.echo(str(exc), err=True)
        sys.exit(2)
    if outcome.status == "failed":
        click.echo(
            f"Sync of {mapping_id} failed after {outcome.attempts} attempt(s): {outcome.error}",
            err=True,
        )
        sys.exit(1)
    result = outcome.result
    click.echo(
        f"{result.mode} sync of {mapping_id}: fetched={result.fetched} "
        f"upserted={result.upserted} deleted={result.deleted} skipped={result.skipped}"
    )


@cli.command("renew-channels")
@click.pass_context
def renew_channels(ctx: click.Context) -> None:
    """Renew every push channel expiring within the renewal window."""
    config = _load(ctx.obj["config_path"])
    report = asyncio.run(_renew_once(config))
    click.echo(f"Renewed {len(report.renewed)} channel(s), {len(report.failed)} failure(s)")
    for mapping_id, reason in sorted(report.failed.items()):
        click.echo(f"  failed: {mapping_id}: {reason}")
    if report.failed:
        sys.exit(1)


async def _sync_once(config: CalsyncConfig, mapping_id: str) -> RunOutcome:
    from calsync.runtime import Runtime

    runtime = Runtime.from_config(config)
    await runtime.start(run_scheduler=False)
    try:
        run_id = await runtime.orchestrator.enqueue_calendar_sync(mapping_id)
        outcome = await runtime.workflows.wait(run_id)
        assert outcome is not None
        return outcome
    finally:
        await runtime.stop()


async def _renew_once(config: CalsyncConfig):
    from calsync.runtime import Runtime

    runtime = Runtime.from_config(config)
    await runtime.start(run_scheduler=False)
    try:
        return await runtime.channels.renew_expiring()
    finally:
        await runtime.stop()
