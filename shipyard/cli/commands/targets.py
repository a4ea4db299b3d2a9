"""``shipyard targets`` — register, list, remove and drain deploy targets."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from shipyard.cli.context import ledger_option, open_controller, state_option
from shipyard.core.errors import ConflictError, UnknownTargetError
from shipyard.core.state_store import StateStore
from shipyard.core.target_registry import TargetRegistry
from shipyard.models.targets import Target, TargetStatus

console = Console()

targets_app = typer.Typer(no_args_is_help=True)

_STATUS_STYLES = {
    TargetStatus.HEALTHY: "green",
    TargetStatus.UNHEALTHY: "bold red",
    TargetStatus.UNKNOWN: "yellow",
    TargetStatus.DRAINING: "dim",
}


@targets_app.command("add")
def add_cmd(
    name: str = typer.Argument(..., help="Unique target name."),
    address: str = typer.Argument(..., help="Host or user@host reachable over SSH."),
    credential: str = typer.Option("", "--credential", "-c", help="Credential handle."),
    capacity_tag: str = typer.Option("default", "--tag", "-t", help="Capacity tag."),
    weight: int = typer.Option(None, "--weight", "-w", help="Lower weights roll out first."),
    health_url: str = typer.Option(None, "--health-url", help="Readiness probe URL."),
    state_db: str = state_option(),
) -> None:
    """Register a target, or update the connection fields of an existing one."""
    registry = TargetRegistry(StateStore(state_db))
    target = registry.register(Target(
        name=name,
        address=address,
        credential_ref=credential,
        capacity_tag=capacity_tag,
        weight=weight,
        health_url=health_url,
    ))
    console.print(
        f"[green]Registered[/green] [bold]{target.name}[/bold] "
        f"({target.address}) at position {target.position}"
    )


@targets_app.command("list")
def list_cmd(
    capacity_tag: str = typer.Option(None, "--tag", "-t", help="Filter by capacity tag."),
    state_db: str = state_option(),
) -> None:
    """List registered targets in registry order."""
    targets = TargetRegistry(StateStore(state_db)).list(capacity_tag)
    if not targets:
        console.print("[dim]No targets registered.[/dim]")
        return

    table = Table(title="Deploy Targets", header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Address")
    table.add_column("Tag")
    table.add_column("Weight", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Current Artifact")
    for t in targets:
        style = _STATUS_STYLES.get(t.status, "")
        table.add_row(
            t.name,
            t.address,
            t.capacity_tag,
            "-" if t.weight is None else str(t.weight),
            f"[{style}]{t.status.value}[/{style}]",
            t.current_artifact[:19] if t.current_artifact else "[dim]-[/dim]",
        )
    console.print(table)


@targets_app.command("remove")
def remove_cmd(
    name: str = typer.Argument(..., help="Target to remove."),
    state_db: str = state_option(),
) -> None:
    """Remove a target from the registry."""
    try:
        TargetRegistry(StateStore(state_db)).remove(name)
    except UnknownTargetError as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1)
    console.print(f"Removed [bold]{name}[/bold]")


@targets_app.command("drain")
def drain_cmd(
    name: str = typer.Argument(..., help="Target to drain."),
    state_db: str = state_option(),
    ledger_db: str = ledger_option(),
) -> None:
    """Take a target out of rotation and stop its service container."""
    controller = open_controller(state_db, ledger_db)
    try:
        outcome = asyncio.run(controller.drain(name))
    except (UnknownTargetError, ConflictError) as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1)

    if outcome.success:
        console.print(f"[green]Drained[/green] [bold]{name}[/bold]")
    else:
        console.print(
            f"[bold red]Drain of {name} failed[/bold red] "
            f"({outcome.failure_kind.value if outcome.failure_kind else 'error'}): {outcome.error}"
        )
        raise typer.Exit(code=1)
