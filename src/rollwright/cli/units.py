"""Operator commands: status, sync-now, rollback, clear, trigger, events.

Each command talks to a running server through the operator API and exits
with a code that distinguishes the unit outcome:

    0 success, 1 error (or a failed release), 2 in progress, 3 fatal
"""

from __future__ import annotations

from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from rollwright.cli.client import (
    EXIT_ERROR,
    EXIT_FATAL,
    EXIT_IN_PROGRESS,
    EXIT_SUCCESS,
    ApiError,
    RollwrightApiClient,
    exit_code_for,
)

console = Console()

OUTCOME_STYLES = {
    "success": "green",
    "in_progress": "yellow",
    "failed": "red",
    "fatal": "bold red",
}


def _client() -> RollwrightApiClient:
    from rollwright.main import get_app_context

    ctx = get_app_context()
    return RollwrightApiClient(
        ctx.api_url,
        webhook_secret=ctx.config.web.webhook_secret,
    )


def _fail(error: ApiError) -> typer.Exit:
    label = f"HTTP {error.status_code}" if error.status_code else "Error"
    console.print(f"[red]{label}:[/red] {error}")
    return typer.Exit(code=EXIT_ERROR)


def render_status(status: dict[str, Any]) -> Table:
    """Two-column table for one unit status."""
    outcome = status["outcome"]
    style = OUTCOME_STYLES.get(outcome, "white")
    table = Table(title=f"Unit {status['unit']}", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")

    table.add_row("Outcome", f"[{style}]{outcome}[/{style}]")
    table.add_row("State", status.get("state") or "-")
    table.add_row("Release", status.get("release_id") or "-")
    table.add_row("Commit", status.get("commit_id") or "-")
    table.add_row("Revision", str(status.get("revision_seq") or "-"))
    table.add_row("Manifest head", str(status.get("head_seq") or "-"))
    table.add_row("Health", status.get("last_health") or "-")
    table.add_row("Reconciler", status.get("reconcile_phase") or "-")
    table.add_row("Queued", str(status.get("queued", 0)))
    if status.get("blocked"):
        table.add_row("Blocked", "[bold red]yes[/bold red] (run `rollwright clear`)")
    if status.get("last_error"):
        table.add_row("Last error", f"[red]{status['last_error']}[/red]")
    return table


def _finish(status: dict[str, Any]) -> None:
    console.print(render_status(status))
    code = exit_code_for(status["outcome"])
    if code != EXIT_SUCCESS:
        raise typer.Exit(code=code)


def status(
    unit: Annotated[Optional[str], typer.Argument(help="Unit name (all units if omitted)")] = None,
) -> None:
    """Show the current release state of a unit."""
    with _client() as client:
        try:
            if unit is not None:
                _finish(client.unit_status(unit))
                return
            units = client.list_units()
        except ApiError as e:
            raise _fail(e)

    table = Table(title="Units")
    table.add_column("Unit", style="bold cyan")
    table.add_column("Outcome")
    table.add_column("State")
    table.add_column("Commit")
    table.add_column("Revision", justify="right")
    table.add_column("Last error")
    for row in units:
        style = OUTCOME_STYLES.get(row["outcome"], "white")
        table.add_row(
            row["unit"],
            f"[{style}]{row['outcome']}[/{style}]",
            row.get("state") or "-",
            row.get("commit_id") or "-",
            str(row.get("revision_seq") or "-"),
            row.get("last_error") or "",
        )
    console.print(table)

    codes = {exit_code_for(row["outcome"]) for row in units}
    for code in (EXIT_FATAL, EXIT_ERROR, EXIT_IN_PROGRESS):
        if code in codes:
            raise typer.Exit(code=code)


def sync_now(
    unit: Annotated[str, typer.Argument(help="Unit name")],
) -> None:
    """Run an immediate reconciliation pass."""
    with _client() as client:
        try:
            result = client.sync_now(unit)
        except ApiError as e:
            raise _fail(e)

    operation = result["operation"]
    changes = operation.get("changes") or []
    if changes:
        for change in changes:
            ref = change["ref"]
            console.print(f"  [cyan]{change['action']}[/cyan] {ref['kind']}/{ref['name']}")
    else:
        console.print("[dim]No changes; cluster already matches the manifest head[/dim]")
    console.print(
        f"Sync {operation['outcome']} at seq {operation.get('target_seq')} "
        f"({operation.get('unchanged', 0)} unchanged)"
    )
    _finish(result["status"])


def rollback(
    unit: Annotated[str, typer.Argument(help="Unit name")],
) -> None:
    """Roll a unit back to its last healthy release."""
    console.print(f"[yellow]Rolling back {unit}...[/yellow]")
    with _client() as client:
        try:
            result = client.rollback(unit)
        except ApiError as e:
            raise _fail(e)
    _finish(result)


def clear(
    unit: Annotated[str, typer.Argument(help="Unit name")],
) -> None:
    """Lift a fatal block so automatic triggers are accepted again."""
    with _client() as client:
        try:
            result = client.clear(unit)
        except ApiError as e:
            raise _fail(e)
    console.print(f"[green]Cleared {unit}[/green]")
    _finish(result)


def trigger(
    commit_id: Annotated[str, typer.Argument(help="Commit id (content hash)")],
    units: Annotated[list[str], typer.Argument(help="Changed units (unit or unit/component)")],
    author: Annotated[Optional[str], typer.Option("--author", "-a", help="Commit author")] = None,
    message: Annotated[
        Optional[str], typer.Option("--message", "-m", help="Commit message")
    ] = None,
) -> None:
    """Queue releases for a commit, as the webhook would."""
    with _client() as client:
        try:
            result = client.trigger(commit_id, units, author=author, message=message)
        except ApiError as e:
            raise _fail(e)

    table = Table(title=f"Commit {result['commit_id']}")
    table.add_column("Unit", style="bold cyan")
    table.add_column("Result")
    for unit, outcome in result["units"].items():
        style = {"queued": "green", "duplicate": "dim", "blocked": "bold red"}.get(outcome, "white")
        table.add_row(unit, f"[{style}]{outcome}[/{style}]")
    console.print(table)

    outcomes = set(result["units"].values())
    if "queued" in outcomes:
        raise typer.Exit(code=EXIT_IN_PROGRESS)
    if "blocked" in outcomes:
        raise typer.Exit(code=EXIT_FATAL)


def events(
    unit: Annotated[str, typer.Argument(help="Unit name")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of events")] = 50,
) -> None:
    """Show the release event log of a unit."""
    with _client() as client:
        try:
            rows = client.events(unit, limit=limit)
        except ApiError as e:
            raise _fail(e)

    table = Table(title=f"Release events: {unit}")
    table.add_column("Time", style="dim")
    table.add_column("Release")
    table.add_column("Commit")
    table.add_column("Seq", justify="right")
    table.add_column("Transition")
    table.add_column("Error")
    for row in rows:
        previous = row.get("previous_state") or "-"
        label = f"{previous} -> {row['state']}"
        if row.get("is_rollback"):
            label += " [magenta](rollback)[/magenta]"
        table.add_row(
            row["occurred_at"],
            row["release_id"],
            row["commit_id"],
            str(row.get("revision_seq") or "-"),
            label,
            row.get("error") or "",
        )
    console.print(table)
