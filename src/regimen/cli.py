"""CLI for the regimen engine: migrate the database and compose schedules."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import date, datetime
from pathlib import Path

import click
from pydantic import ValidationError

from regimen.composer import entry_display
from regimen.config import CONFIG_FILENAME, ConfigError, RegimenSettings, load_config
from regimen.core.logging import configure_logging
from regimen.core.telemetry import init_telemetry
from regimen.db import Database
from regimen.migrations import run_migrations
from regimen.models import CareConfig, ScheduleResult
from regimen.pipeline import RegimenEngine
from regimen.reconciler import wait_for_reschedules
from regimen.stores.postgres import StateConfigSource, postgres_stores

logger = logging.getLogger(__name__)

SERVICE_NAME = "regimen-cli"


def _load_settings(config_dir: Path) -> RegimenSettings:
    if not (config_dir / CONFIG_FILENAME).exists():
        return RegimenSettings()
    return load_config(config_dir)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    help=f"Directory containing {CONFIG_FILENAME}",
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Path) -> None:
    """Expand care regimens into tracked daily schedules."""
    try:
        settings = _load_settings(config_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_root=Path(settings.logging.log_root) if settings.logging.log_root else None,
        service_name=SERVICE_NAME,
    )
    init_telemetry(SERVICE_NAME)
    ctx.obj = settings


@cli.command()
@click.pass_obj
def migrate(settings: RegimenSettings) -> None:
    """Create the database if needed and run the regimen migrations."""
    asyncio.run(_migrate(settings))
    click.echo(f"Database {settings.db_name} is up to date")


@cli.command()
@click.option("--patient", "patient_id", required=True, help="Patient identifier")
@click.option(
    "--date",
    "day",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Day to compose (YYYY-MM-DD, default today)",
)
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
@click.pass_obj
def schedule(
    settings: RegimenSettings, patient_id: str, day: datetime | None, as_json: bool
) -> None:
    """Ensure instances exist for a day and print its schedule."""
    target = day.date() if day is not None else datetime.now(settings.tzinfo).date()
    result = asyncio.run(_schedule(settings, patient_id, target))
    if as_json:
        click.echo(result.model_dump_json(indent=2))
        return
    _print_schedule(result)


@cli.command("import-config")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def import_config(settings: RegimenSettings, path: Path) -> None:
    """Store a care config (JSON) for the patient it names."""
    try:
        config = CareConfig.model_validate(json.loads(path.read_text()))
    except (json.JSONDecodeError, ValidationError) as exc:
        click.echo(f"Invalid care config in {path}: {exc}")
        sys.exit(1)
    version = asyncio.run(_save_config(settings, config))
    click.echo(f"Stored care config for {config.patient_id} (version {version})")


def _print_schedule(result: ScheduleResult) -> None:
    click.echo(f"Schedule for {result.date.isoformat()}")
    if not result.entries:
        click.echo("  (nothing scheduled)")
    for entry in result.entries:
        display = entry_display(entry)
        click.echo(
            f"  {display.time_text:>8}  {entry.emoji or ' '} {entry.title:<30} "
            f"{display.status_text}"
        )
    for conflict in result.conflicts:
        click.echo(f"  ! {conflict.message}. {conflict.suggestion}.")
    if result.warnings:
        click.echo(f"Warnings: {', '.join(result.warnings)}")
    stats = result.stats
    click.echo(
        f"{stats.total} item(s), {stats.needs_attention} need attention, "
        f"{stats.completed} completed"
    )


async def _migrate(settings: RegimenSettings) -> None:
    db = Database.from_env(settings.db_name)
    await db.provision()
    await run_migrations(db.url)


async def _schedule(settings: RegimenSettings, patient_id: str, day: date) -> ScheduleResult:
    db = Database.from_env(settings.db_name)
    pool = await db.connect()
    try:
        engine = RegimenEngine(postgres_stores(pool), settings)
        return await engine.ensure_schedule(patient_id, day)
    finally:
        await wait_for_reschedules()
        await db.close()


async def _save_config(settings: RegimenSettings, config: CareConfig) -> int:
    db = Database.from_env(settings.db_name)
    pool = await db.connect()
    try:
        return await StateConfigSource(pool).save_config(config)
    finally:
        await db.close()
