"""fleet-migrate CLI application -- Typer-based operator interface.

Provides commands to roll schema migrations across the tenant fleet, to
audit tenant-isolation policies without migrating, and to inspect circuit
breakers.  Human-readable output goes to *stderr* via Rich; the optional
JSON summary goes to *stdout* so that pipelines can compose cleanly.

Exit codes: 0 on full success, 1 when any endpoint failed, 2 when the run
could not start (missing configuration or an invalid filter).
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from fleet_cli.display import display_attempt_rows, display_breakers, display_run_summary
from fleet_core.config import load_settings
from fleet_core.errors import ConfigError, FilterSyntaxError
from fleet_core.filters import parse_tenant_list, parse_where_clause
from fleet_core.models.migration import MigrationFlags, MigrationRunResult
from fleet_core.orchestrator import MigrationOrchestrator
from fleet_core.resilience.circuit_breaker import get_registry
from fleet_core.telemetry.logging import configure_logging
from fleet_core.telemetry.redaction import redact_error_message

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="fleet-migrate",
    help="Roll schema migrations across the tenant fleet and verify row-level security.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit a JSON summary to stdout in addition to the human-readable table.",
    ),
    log_json: bool = typer.Option(
        False,
        "--log-json",
        help="Write structured JSON log lines to stderr.",
        envvar="FLEET_STRUCTURED_LOGGING",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode
    configure_logging(structured=log_json)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail(message: str, code: int) -> typer.Exit:
    console.print(f"[red]{escape(message)}[/red]")
    return typer.Exit(code=code)


def _build_orchestrator() -> MigrationOrchestrator:
    try:
        settings = load_settings()
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
    return MigrationOrchestrator.from_settings(settings)


def _summary(result: MigrationRunResult) -> dict[str, Any]:
    return {
        "exitCode": result.exit_code,
        "hadFailure": result.had_failure,
        "halted": result.halted,
        "wavesTotal": result.waves_total,
        "wavesCompleted": result.waves_completed,
        "rows": [row.model_dump(mode="json", by_alias=True) for row in result.rows],
    }


def _finish(result: MigrationRunResult, *, title: str, dry_run: bool = False) -> None:
    display_attempt_rows(console, result.rows, title=title)
    display_run_summary(console, result, dry_run=dry_run)
    if _json_output:
        sys.stdout.write(json.dumps(_summary(result), indent=2) + "\n")
    raise typer.Exit(code=result.exit_code)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def run(
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Skip the migration tool; still verify policies on every endpoint.",
    ),
    stop_on_failure: bool = typer.Option(
        True,
        "--stop-on-failure/--no-stop-on-failure",
        help="Halt the whole run on the first failed endpoint.",
    ),
    where: str | None = typer.Option(
        None,
        "--where",
        help="Tenant filter: status='active|pending|suspended' [AND dedicated=true|false].",
    ),
    tenants: str | None = typer.Option(
        None,
        "--tenants",
        help="Comma-separated tenant IDs to intersect with --where.",
    ),
    report: Path | None = typer.Option(
        None,
        "--report",
        help="Write <path>.json and <path>.csv run reports.",
    ),
    wave_size: int | None = typer.Option(
        None,
        "--wave-size",
        help="Endpoint groups per wave (default: a single wave).",
    ),
    promote: bool = typer.Option(
        False,
        "--promote",
        help="Log a promotion marker after each clean wave.",
    ),
) -> None:
    """Migrate and verify every endpoint serving the selected tenants."""
    try:
        flags = MigrationFlags(
            dry_run=dry_run,
            stop_on_failure=stop_on_failure,
            selection=parse_where_clause(where),
            tenant_allow_list=parse_tenant_list(tenants),
            report_path=report,
            wave_size=wave_size,
            promote=promote,
        )
        orchestrator = _build_orchestrator()
        result = asyncio.run(orchestrator.run(flags))
    except (ConfigError, FilterSyntaxError) as exc:
        raise _fail(redact_error_message(exc), code=2) from exc
    except Exception as exc:
        raise _fail(f"Migration run failed: {redact_error_message(exc)}", code=1) from exc

    _finish(result, title="Migration Results", dry_run=dry_run)


@app.command()
def verify(
    where: str | None = typer.Option(
        None,
        "--where",
        help="Tenant filter: status='active|pending|suspended' [AND dedicated=true|false].",
    ),
    tenants: str | None = typer.Option(
        None,
        "--tenants",
        help="Comma-separated tenant IDs to intersect with --where.",
    ),
    report: Path | None = typer.Option(
        None,
        "--report",
        help="Write <path>.json and <path>.csv audit reports.",
    ),
) -> None:
    """Audit tenant-isolation policies on every endpoint without migrating."""
    try:
        selection = parse_where_clause(where)
        allow_list = parse_tenant_list(tenants)
        orchestrator = _build_orchestrator()
        result = asyncio.run(orchestrator.audit_policies(selection, allow_list, report))
    except (ConfigError, FilterSyntaxError) as exc:
        raise _fail(redact_error_message(exc), code=2) from exc
    except Exception as exc:
        raise _fail(f"Policy audit failed: {redact_error_message(exc)}", code=1) from exc

    _finish(result, title="Policy Audit", dry_run=True)


@app.command()
def breakers() -> None:
    """Show the state of every circuit breaker in this process."""
    snapshot = get_registry().snapshot()
    display_breakers(console, snapshot)
    if _json_output:
        sys.stdout.write(json.dumps(snapshot, indent=2, default=str) + "\n")
