"""
Rich Terminal Display Components.

Provides console UI for:
- A live status line while a sync runs
- Sync summary tables
- Local store status tables
- Status messages
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from rich.console import Console
from rich.status import Status
from rich.table import Table

if TYPE_CHECKING:
    from cms_sync.core.coordinator import SyncCoordinator, SyncReport


console = Console()


class SyncStatusDisplay:
    """
    Live status line bound to a coordinator's state notifications.

    Example:
        with SyncStatusDisplay(coordinator):
            report = await coordinator.sync()
    """

    def __init__(self, coordinator: "SyncCoordinator", enabled: bool = True) -> None:
        self.coordinator = coordinator
        self.enabled = enabled
        self._status: Status | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def start(self) -> None:
        if not self.enabled:
            return
        self._status = console.status(self._describe(), spinner="dots")
        self._status.start()
        self._unsubscribe = self.coordinator.subscribe(lambda _: self.refresh())

    def refresh(self) -> None:
        if self._status is not None:
            self._status.update(self._describe())

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._status is not None:
            self._status.stop()
            self._status = None

    def _describe(self) -> str:
        state = self.coordinator.state.value
        pending = self.coordinator.pending_push_count
        return f"[bold blue]{state.capitalize()}[/bold blue] [dim]({pending} pending)[/dim]"

    def __enter__(self) -> "SyncStatusDisplay":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


def print_summary(report: "SyncReport") -> None:
    """Print a summary table after a sync completes."""
    border = "green" if report.ok else "red"
    table = Table(title="Sync Summary", border_style=border)

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Operation", "reset + sync" if report.reset else "sync")
    table.add_row("Status", report.status.value)
    table.add_row("Duration", f"{report.duration_seconds:.1f}s")

    if report.pull is not None:
        pull = report.pull
        table.add_row("Pull", "full snapshot" if pull.full_snapshot else "delta")
        table.add_row("Records Fetched", f"{pull.fetched:,}")
        table.add_row("Records Updated", f"{pull.upserted:,}")
        table.add_row("Records Deleted", f"{pull.deleted + pull.orphans_removed:,}")
        table.add_row("Dirty Kept", f"{pull.skipped_dirty:,}")
        if pull.malformed:
            table.add_row("Malformed", f"{len(pull.malformed):,}")

    if report.push is not None:
        push = report.push
        table.add_row("Pushed", f"{push.settled:,}/{push.total:,}")
        unsettled = push.total - push.settled
        if unsettled:
            table.add_row("Left Dirty", f"[yellow]{unsettled:,}[/yellow]")

    if report.error:
        table.add_row("Error", f"[red]{report.error}[/red]")

    console.print(table)


def print_store_status(summary: dict[str, Any]) -> None:
    """Print record counts and cursor state of the local store."""
    table = Table(title="Local Store", border_style="blue")
    table.add_column("Table", style="cyan")
    table.add_column("Records", justify="right")
    table.add_column("Dirty", justify="right")
    table.add_column("Deleted", justify="right")

    for name, counts in summary["tables"].items():
        dirty = counts["dirty"]
        table.add_row(
            name,
            f"{counts['total']:,}",
            f"[yellow]{dirty:,}[/yellow]" if dirty else "0",
            f"{counts['deleted']:,}",
        )

    console.print(table)
    console.print(f"  [dim]Database:[/dim] {summary['database']}")
    token = summary.get("sync_token")
    if summary.get("cursor_valid"):
        console.print(f"  [dim]Sync cursor:[/dim] {shorten(token)}")
    else:
        console.print("  [dim]Sync cursor:[/dim] none (next sync fetches everything)")


def shorten(text: str | None, width: int = 24) -> str:
    """Abbreviate long opaque tokens."""
    if not text:
        return ""
    if len(text) <= width:
        return text
    return f"{text[: width - 3]}..."


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
