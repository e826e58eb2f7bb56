"""Rich formatting helpers for buildloop CLI output.

Each function accepts domain objects (sessions, batch results, agents) and
returns a Rich renderable (Table, Panel, Group, etc.).
"""

from __future__ import annotations

from typing import Any, Sequence

from rich.console import Group
from rich.panel import Panel
from rich.table import Table

from buildloop.agents import Agent
from buildloop.batch import BatchSummary, PlannedAction
from buildloop.cost import format_cost, format_tokens
from buildloop.loop import LoopStats
from buildloop.plan import current_task
from buildloop.progress import format_duration
from buildloop.session import Session
from buildloop.validation import ValidationCommand


# ---------------------------------------------------------------------------
# Common helpers
# ---------------------------------------------------------------------------

def short_id(uuid_str: str | None, length: int = 8) -> str:
    """Return the first *length* characters of an identifier."""
    if not uuid_str:
        return "-"
    return str(uuid_str)[:length]


_STATUS_COLORS: dict[str, str] = {
    # sessions
    "pending": "yellow",
    "running": "bold cyan",
    "paused": "bold yellow",
    "completed": "green",
    "failed": "bold red",
    # exit reasons
    "success": "green",
    "max-iterations": "yellow",
    "circuit-breaker": "bold red",
    "rate-limit": "yellow",
    "cost-limit": "bold red",
    "blocked": "bold yellow",
    # validation
    "passed": "green",
    "skipped": "dim",
}


def status_color(status: str | None) -> str:
    """Wrap *status* in Rich markup colour."""
    if not status:
        return "-"
    colour = _STATUS_COLORS.get(status.lower(), "")
    if colour:
        return f"[{colour}]{status}[/{colour}]"
    return status


def truncate(text: str | None, max_len: int = 80) -> str:
    """Safely truncate text with an ellipsis."""
    if not text:
        return ""
    text = str(text).replace("\n", " ").strip()
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


def _timestamp(value: Any) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def format_session(session: Session) -> Group:
    """Status panel plus per-iteration history for one session."""
    info_lines = [
        f"[bold]Session:[/bold]    {session.id}",
        f"[bold]Status:[/bold]     {status_color(session.status.value)}",
        f"[bold]Task:[/bold]       {truncate(session.task, 100)}",
        f"[bold]Agent:[/bold]      {session.agent}",
        f"[bold]Progress:[/bold]   {session.iterations_completed}/{session.max_iterations} iterations",
        f"[bold]Created:[/bold]    {_timestamp(session.created_at)}",
        f"[bold]Updated:[/bold]    {_timestamp(session.updated_at)}",
    ]
    if session.exit_reason:
        info_lines.append(f"[bold]Exit:[/bold]       {status_color(session.exit_reason.value)}")
    if session.pause_reason:
        info_lines.append(f"[bold]Paused:[/bold]     {session.pause_reason}")
    if session.error:
        info_lines.append(f"[bold]Error:[/bold]      [red]{truncate(session.error, 120)}[/red]")
    if session.commits:
        info_lines.append(f"[bold]Commits:[/bold]    {len(session.commits)}")
    if session.pr_url:
        info_lines.append(f"[bold]PR:[/bold]         {session.pr_url}")
    plan_task = current_task(session.working_directory)
    if plan_task is not None and session.status.value in ("pending", "running", "paused"):
        info_lines.append(f"[bold]Plan task:[/bold]  {plan_task.index}. {truncate(plan_task.name, 80)}")
    breaker = session.circuit_breaker_state
    if breaker.consecutive_failures or breaker.is_open:
        state = "[red]open[/red]" if breaker.is_open else "closed"
        info_lines.append(
            f"[bold]Breaker:[/bold]    {state} ({breaker.consecutive_failures} consecutive failures)"
        )
    border = "green" if session.status.value == "completed" else "cyan"
    panels: list[Any] = [Panel("\n".join(info_lines), title="Build Loop Session", border_style=border)]
    if session.history:
        panels.append(format_history(session))
    return Group(*panels)


def format_history(session: Session, limit: int = 10) -> Table:
    """Table of the most recent iterations."""
    table = Table(title="Iterations")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Exit", justify="right")
    table.add_column("Validation")
    table.add_column("Commit", style="dim")
    table.add_column("Duration", justify="right")
    table.add_column("Notes", max_width=50)
    for outcome in session.history[-limit:]:
        if outcome.validation is None:
            validation = status_color("skipped")
        elif outcome.validation.passed:
            validation = status_color("passed")
        else:
            validation = status_color("failed")
        exit_code = str(outcome.agent_exit_code)
        if outcome.agent_exit_code != 0:
            exit_code = f"[red]{exit_code}[/red]"
        notes = outcome.completion_reason if outcome.completion_signal_seen else ""
        if outcome.warnings:
            notes = "; ".join(filter(None, [notes, *outcome.warnings]))
        table.add_row(
            str(outcome.index),
            exit_code,
            validation,
            short_id(outcome.commit_sha, 7),
            format_duration(outcome.duration_s),
            truncate(notes, 50),
        )
    return table


def format_loop_stats(stats: LoopStats) -> Panel:
    """Duration, validation, breaker and estimated cost totals for a run."""
    cost = stats.cost
    lines = [
        f"[bold]Duration:[/bold]     {format_duration(stats.total_duration_s)} "
        f"({format_duration(stats.avg_iteration_s)} avg)",
        f"[bold]Validation:[/bold]   {stats.validation_failures} failed runs",
        f"[bold]Breaker:[/bold]      {stats.breaker.total_failures} failures, "
        f"{stats.breaker.unique_errors} distinct errors",
        f"[bold]Tokens:[/bold]       {format_tokens(cost.tokens.total)} "
        f"({format_tokens(cost.tokens.input_tokens)} in / "
        f"{format_tokens(cost.tokens.output_tokens)} out, estimated)",
        f"[bold]Cost:[/bold]         {format_cost(cost.cost.total)}",
    ]
    if cost.projected_cost is not None:
        lines.append(f"[bold]Projected:[/bold]    {format_cost(cost.projected_cost)}")
    return Panel("\n".join(lines), title="Run Stats", border_style="dim")


# ---------------------------------------------------------------------------
# Agents and validation
# ---------------------------------------------------------------------------

def format_agents(agents: Sequence[Agent], preferred: Agent | None = None) -> Table:
    table = Table(title="Coding Agents")
    table.add_column("Agent", style="bold")
    table.add_column("Command", style="cyan")
    table.add_column("Available")
    for agent in agents:
        name = agent.name
        if preferred is not None and agent.type is preferred.type:
            name = f"{name} [green](default)[/green]"
        available = "[green]yes[/green]" if agent.available else "[dim]no[/dim]"
        table.add_row(name, agent.command, available)
    return table


def format_validation_commands(commands: Sequence[ValidationCommand]) -> Table:
    table = Table(title="Validation Commands")
    table.add_column("Name", style="bold")
    table.add_column("Command", style="cyan")
    if not commands:
        table.add_row("-", "No validation commands detected")
        return table
    for command in commands:
        table.add_row(command.name, command.display)
    return table


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

def format_batch_plan(actions: Sequence[PlannedAction]) -> Table:
    """Dry-run preview of what a batch would do."""
    table = Table(title="Planned Tasks", show_lines=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Task", style="bold")
    table.add_column("Branch", style="cyan")
    table.add_column("Base")
    table.add_column("Commit / PR", max_width=50)
    if not actions:
        table.add_row("-", "No tasks", "", "", "")
        return table
    for index, action in enumerate(actions, start=1):
        commit = action.commit_message.splitlines()[0] if action.commit_message else "-"
        table.add_row(
            str(index),
            f"{action.task.source}#{action.task.id} {truncate(action.task.title, 50)}",
            action.branch,
            action.base,
            f"{commit}\n{action.pr_title or '(no PR)'}",
        )
    return table


def format_batch_summary(summary: BatchSummary) -> Group:
    table = Table(title="Batch Results")
    table.add_column("Task", style="bold")
    table.add_column("Result")
    table.add_column("Iterations", justify="right")
    table.add_column("Branch", style="cyan")
    table.add_column("PR / Error", max_width=60)
    for result in summary.results:
        if result.paused:
            outcome = status_color("paused")
        else:
            outcome = status_color("completed") if result.success else status_color("failed")
        detail = result.pr_url or truncate(result.error, 60) or "-"
        table.add_row(
            f"{result.task.source}#{result.task.id}",
            outcome,
            str(result.iterations),
            result.branch or "-",
            detail,
        )
    for task in summary.not_started:
        table.add_row(f"{task.source}#{task.id}", status_color("pending"), "0", "-", "not started")
    total = len(summary.results) + len(summary.not_started)
    totals = (
        f"[green]{summary.successful} succeeded[/green], "
        f"[red]{summary.failed} failed[/red] of {total} tasks"
    )
    if summary.paused is not None:
        totals += f", [yellow]paused on {summary.paused.task.source}#{summary.paused.task.id}[/yellow]"
    return Group(table, Panel(totals, title="Summary", border_style="cyan"))
