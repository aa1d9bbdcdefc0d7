"""Rich output formatting for the fleet-migrate CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that the JSON summary on *stdout* is never polluted
with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from rich.console import Console

    from fleet_core.models.migration import AttemptRow, MigrationRunResult


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "ok": "green",
    "failed": "red",
    "skipped": "dim",
    "closed": "green",
    "open": "red",
    "half_open": "yellow",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status.upper()}[/{colour}]"


def _tenants_cell(tenant_ids: list[str], limit: int = 5) -> str:
    if not tenant_ids:
        return "[dim](none)[/dim]"
    shown = ", ".join(tenant_ids[:limit])
    if len(tenant_ids) > limit:
        shown += f" (+{len(tenant_ids) - limit} more)"
    return escape(shown)


# ---------------------------------------------------------------------------
# Attempt rows
# ---------------------------------------------------------------------------


def display_attempt_rows(console: Console, rows: list[AttemptRow], title: str = "Migration Results") -> None:
    """Render one table row per endpoint group attempt.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    rows:
        Attempt rows in the order they were processed.
    title:
        Table title.
    """
    if not rows:
        console.print("[dim]No endpoint groups were processed.[/dim]")
        return

    table = Table(title=title, show_lines=False, pad_edge=True, expand=False)
    table.add_column("Endpoint", style="bold")
    table.add_column("Tenants")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Error", overflow="fold")

    for row in rows:
        table.add_row(
            row.endpoint_fingerprint,
            _tenants_cell(row.tenants_covered),
            _coloured_status(row.status.value),
            f"{row.duration_ms / 1000:.2f}s",
            escape(row.error) if row.error else "",
        )

    console.print(table)


def display_run_summary(console: Console, result: MigrationRunResult, *, dry_run: bool = False) -> None:
    """Print a one-panel summary of a finished run."""
    failed = sum(1 for row in result.rows if row.status.value == "failed")
    skipped = sum(1 for row in result.rows if row.status.value == "skipped")
    lines = [
        f"[bold]Mode:[/bold]      {'dry run' if dry_run else 'migrate'}",
        f"[bold]Endpoints:[/bold] {len(result.rows) - skipped} processed, {failed} failed, {skipped} skipped",
        f"[bold]Waves:[/bold]     {result.waves_completed}/{result.waves_total} completed",
    ]
    if result.halted:
        lines.append("[red]Run halted on first failure.[/red]")
    border = "red" if result.had_failure else "green"
    console.print(Panel("\n".join(lines), title="Fleet Migration", border_style=border))


# ---------------------------------------------------------------------------
# Circuit breakers
# ---------------------------------------------------------------------------


def display_breakers(console: Console, snapshot: dict[str, dict[str, Any]]) -> None:
    """Render the circuit-breaker registry snapshot."""
    if not snapshot:
        console.print("[dim]No circuit breakers registered.[/dim]")
        return

    table = Table(title="Circuit Breakers", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Key", style="bold")
    table.add_column("State")
    table.add_column("Failures", justify="right")

    for key in sorted(snapshot):
        entry = snapshot[key]
        table.add_row(escape(key), _coloured_status(str(entry["state"])), str(entry["consecutive_failures"]))

    console.print(table)
