"""Rich terminal renderer for rollout plans.

Turns ``PlanSnapshot`` into Rich renderables, with color-coded step states
and an optional continuous ``Rich.Live`` mode.

Color scheme
------------
- green     : COMMITTED / SUCCEEDED
- red       : FAILED
- yellow    : APPLYING / VERIFYING / IN_PROGRESS
- dim       : PENDING / SKIPPED
- magenta   : ROLLED_BACK / rollback steps
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from shipyard.models.rollout import PlanState, RolloutPlan, StepKind, StepState

if TYPE_CHECKING:
    from shipyard.monitor.projection import PlanProjection, PlanSnapshot


_STEP_ICONS: dict[StepState, str] = {
    StepState.PENDING: "[dim]PENDING[/dim]",
    StepState.APPLYING: "[yellow]APPLYING[/yellow]",
    StepState.VERIFYING: "[yellow]VERIFYING[/yellow]",
    StepState.COMMITTED: "[green]COMMITTED[/green]",
    StepState.FAILED: "[bold red]FAILED[/bold red]",
    StepState.SKIPPED: "[dim]SKIPPED[/dim]",
}

_PLAN_STYLES: dict[PlanState, str] = {
    PlanState.PENDING: "dim",
    PlanState.IN_PROGRESS: "bold yellow",
    PlanState.SUCCEEDED: "bold green",
    PlanState.FAILED: "bold red",
    PlanState.PARTIALLY_FAILED: "bold red",
    PlanState.ROLLED_BACK: "bold magenta",
    PlanState.ABORTED: "bold yellow",
    PlanState.ABORTED_ON_RESTART: "bold yellow",
}


def plan_state_markup(state: PlanState) -> str:
    style = _PLAN_STYLES.get(state, "")
    return f"[{style}]{state.value}[/{style}]"


class PlanRenderer:
    """Renders ``PlanSnapshot`` as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render_snapshot(self, snapshot: PlanSnapshot) -> Panel:
        plan = snapshot.plan
        table = self._build_step_table(snapshot)

        chain_status = (
            "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        )
        summary = "  |  ".join([
            f"[bold]Plan:[/bold] {plan.plan_id}",
            f"[bold]Revision:[/bold] {plan.revision_id}",
            f"[bold]State:[/bold] {plan_state_markup(plan.state)}",
            f"[bold]Committed:[/bold] {snapshot.committed_count}/{snapshot.total_targets}",
            f"[bold]Policy:[/bold] {plan.policy.mode.value} x{plan.policy.max_parallel}",
            f"[bold]Ledger:[/bold] {snapshot.ledger_entries} entries, {chain_status}",
        ])
        parts = [table, Text(""), Text.from_markup(summary)]
        if plan.reason:
            parts.append(Text(f"Reason: {plan.reason}", style="dim"))

        return Panel(
            Group(*parts),
            title="[bold]Shipyard Rollout[/bold]",
            subtitle=f"Artifact {plan.artifact_id[:19]}",
            border_style="blue",
            padding=(1, 2),
        )

    def _build_step_table(self, snapshot: PlanSnapshot) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Target", min_width=14)
        table.add_column("Kind", width=9)
        table.add_column("State", min_width=12, justify="center")
        table.add_column("Retries", justify="right", width=7)
        table.add_column("Details", min_width=20)

        for i, step in enumerate(snapshot.steps):
            kind = (
                "[magenta]rollback[/magenta]" if step.kind == StepKind.ROLLBACK else "deploy"
            )
            details: list[str] = []
            if step.failure_kind is not None:
                details.append(f"[red]{step.failure_kind.value}[/red]")
            if step.reason:
                details.append(step.reason)
            target = snapshot.targets.get(step.target_name)
            if target is not None:
                details.append(f"[dim]{target.address}[/dim]")
            table.add_row(
                str(i),
                step.target_name,
                kind,
                _STEP_ICONS.get(step.state, step.state.value),
                str(step.attempts),
                " | ".join(details) if details else "[dim]-[/dim]",
            )
        return table

    def render_plan_list(self, plans: list[RolloutPlan]) -> Table:
        table = Table(title="Rollout Plans", header_style="bold cyan")
        table.add_column("Plan", style="cyan")
        table.add_column("Revision")
        table.add_column("State", justify="center")
        table.add_column("Targets", justify="right")
        table.add_column("Created")
        for plan in plans:
            table.add_row(
                plan.plan_id,
                plan.revision_id,
                plan_state_markup(plan.state),
                str(len(plan.target_names)),
                plan.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        return table

    # ------------------------------------------------------------------
    # Continuous live rendering
    # ------------------------------------------------------------------

    def render_live(
        self,
        plan_id: str,
        projection: PlanProjection,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Re-render the plan until it is terminal or Ctrl+C is pressed."""
        interval = 1.0 / max(refresh_hz, 0.1)
        with Live(console=self.console, refresh_per_second=refresh_hz) as live:
            try:
                while True:
                    snapshot = projection.snapshot(plan_id, verify_chain=False)
                    live.update(self.render_snapshot(snapshot))
                    if snapshot.plan.is_terminal:
                        break
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(projection.snapshot(plan_id)))

    def print_snapshot(self, snapshot: PlanSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def print_chain_verification(self, plan_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for plan {plan_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for plan {plan_id} is BROKEN![/bold red]")
