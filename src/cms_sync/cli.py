"""
CMS Sync CLI - Command Line Interface.

Two-way sync between a local SQLite store and a headless CMS.

Commands:
    sync    Pull remote changes, then push local edits
    reset   Wipe the local store and sync from scratch
    status  Show local store status
    config  Manage configuration
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from cms_sync import __version__
from cms_sync.config import ContentMode, Settings, load_settings
from cms_sync.connectors.store import LocalStore, LocalStoreError
from cms_sync.core.coordinator import SyncCoordinator, SyncReport, SyncStatus
from cms_sync.core.dirty import DirtyTracker
from cms_sync.utils.display import (
    SyncStatusDisplay,
    print_error,
    print_info,
    print_store_status,
    print_success,
    print_summary,
    print_warning,
)
from cms_sync.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="cms-sync",
    help="Two-way sync between a local SQLite store and a headless CMS.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]cms-sync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """CMS Sync - two-way sync between SQLite and a headless CMS."""
    pass


# Shared options
ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
    dir_okay=False,
)
DatabaseOption = typer.Option(
    None,
    "--database",
    "-d",
    help="Path to the local SQLite store (overrides config).",
)
SpaceOption = typer.Option(
    None,
    "--space-id",
    help="Space ID (overrides config).",
)
ModeOption = typer.Option(
    None,
    "--preview/--delivery",
    help="Pull drafts from the preview API or published content from the delivery API.",
)
QuietOption = typer.Option(
    False,
    "--quiet",
    "-q",
    help="Minimal output.",
)


# =============================================================================
# SYNC Command
# =============================================================================
@app.command()
def sync(
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    space_id: Optional[str] = SpaceOption,
    preview: Optional[bool] = ModeOption,
    quiet: bool = QuietOption,
) -> None:
    """
    Pull remote changes, then push local edits.

    Example:
        cms-sync sync --config config.toml
    """
    settings = _prepare(config_file, database, space_id, preview, quiet)
    report = asyncio.run(_run(settings, reset=False, quiet=quiet))
    _finish(report, quiet)


# =============================================================================
# RESET Command
# =============================================================================
@app.command()
def reset(
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    space_id: Optional[str] = SpaceOption,
    preview: Optional[bool] = ModeOption,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation.",
    ),
    quiet: bool = QuietOption,
) -> None:
    """
    Delete every local record and the sync cursor, then sync from scratch.

    Unpushed local edits are lost.
    """
    settings = _prepare(config_file, database, space_id, preview, quiet)

    if not yes:
        with LocalStore(settings.database_path, settings) as store:
            pending = store.count_dirty()
        if pending:
            print_warning(f"{pending} local edit(s) have not been pushed and will be lost.")
        typer.confirm("Wipe the local store and sync from scratch?", abort=True)

    report = asyncio.run(_run(settings, reset=True, quiet=quiet))
    _finish(report, quiet)


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
) -> None:
    """Show record counts, pending edits and the sync cursor."""
    settings = _build_settings(config_file, database=database)

    if not settings.database_path.exists():
        print_info(f"No local store at {settings.database_path}. Run a sync first.")
        raise typer.Exit(0)

    try:
        with LocalStore(settings.database_path, settings) as store:
            summary = store.get_summary()
    except LocalStoreError as e:
        print_error(str(e))
        raise typer.Exit(1)

    print_store_status(summary)


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with default values.",
    ),
    config_file: Optional[Path] = ConfigOption,
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
) -> None:
    """Manage configuration."""
    if init:
        if output.exists():
            print_error(f"{output} already exists")
            raise typer.Exit(1)
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = _build_settings(config_file)
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("Space ID", settings.space_id or "[dim]not set[/dim]")
        table.add_row("Environment", settings.environment_id)
        table.add_row("Content Mode", settings.content_mode.value)
        table.add_row("Management Token", _mask(settings.management_token.get_secret_value()))
        table.add_row("Read Token", _mask(settings.read_token))
        table.add_row("Database", str(settings.database_path))
        table.add_row("Locale", settings.locale)
        table.add_row("Auto Publish", "yes" if settings.auto_publish else "no")
        table.add_row("Conflicts", settings.sync.conflict_resolution.value)
        table.add_row("Concurrency", str(settings.sync.max_concurrency))

        console.print(table)
        return

    # Default: show help
    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
async def _run(settings: Settings, reset: bool, quiet: bool) -> SyncReport:
    """Run one sync (or reset) against the configured store."""
    with LocalStore(settings.database_path, settings) as store:
        DirtyTracker.install(store)
        async with SyncCoordinator(store, settings) as coordinator:
            with SyncStatusDisplay(coordinator, enabled=not quiet):
                if reset:
                    return await coordinator.reset_and_sync()
                return await coordinator.sync()


def _prepare(
    config_file: Path | None,
    database: Path | None,
    space_id: str | None,
    preview: bool | None,
    quiet: bool,
) -> Settings:
    """Build settings, check credentials and set up logging."""
    try:
        settings = _build_settings(
            config_file,
            database=database,
            space_id=space_id,
            preview=preview,
        )
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    errors = settings.validate_credentials()
    if errors:
        for err in errors:
            print_error(err)
        print_info("Use --help for configuration options.")
        raise typer.Exit(1)

    setup_logging(settings.logging, level="WARNING" if quiet else None)
    return settings


def _build_settings(config_file: Path | None = None, **overrides: Any) -> Settings:
    """Build settings from config file and CLI overrides."""
    values: dict[str, Any] = {}
    if overrides.get("database"):
        values["database_path"] = overrides["database"]
    if overrides.get("space_id"):
        values["space_id"] = overrides["space_id"]
    if overrides.get("preview") is not None:
        values["content_mode"] = (
            ContentMode.PREVIEW if overrides["preview"] else ContentMode.DELIVERY
        )
    return load_settings(config_file, **values)


def _finish(report: SyncReport, quiet: bool) -> None:
    if not quiet:
        console.print()
        print_summary(report)

    if report.status == SyncStatus.FAILED:
        print_error(f"Sync failed: {report.error}")
        raise typer.Exit(1)
    if report.status == SyncStatus.PARTIAL:
        print_warning("Some records could not be pushed; they will be retried next sync.")
    elif not quiet:
        print_success("Sync completed successfully!")


def _mask(secret: str) -> str:
    if not secret:
        return "[dim]not set[/dim]"
    return f"{secret[:4]}{'*' * 8}"


if __name__ == "__main__":
    app()
