from __future__ import annotations

import json
import logging
import os
import signal
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from buildloop.agents import (
    Agent,
    AgentNotFoundError,
    AgentRunner,
    detect_available_agents,
    detect_best_agent,
    find_agent,
)
from buildloop.batch import BatchSequencer, load_tasks
from buildloop.cli_format import (
    format_agents,
    format_batch_plan,
    format_batch_summary,
    format_loop_stats,
    format_session,
    format_validation_commands,
)
from buildloop.config import AppConfig, LoopOptions, Paths, load_config, load_paths
from buildloop.gitops import GitError, GitRepo
from buildloop.integrations import GitHubOrigin, LinearOrigin
from buildloop.judge import CompletionJudge, load_criteria
from buildloop.llm import build_llm_client
from buildloop.locks import LockTimeoutError
from buildloop.loop import LoopController, LoopResult
from buildloop.plan import calculate_optimal_iterations, parse_plan_tasks
from buildloop.progress import ActivityLog
from buildloop.session import (
    InvalidTransitionError,
    Session,
    SessionConflictError,
    SessionNotFoundError,
    SessionStatus,
    SessionStore,
    is_live,
)
from buildloop.validation import ValidationGate

app = typer.Typer(help="Autonomous coding-agent build loop")
console = Console()

_STORE_ERRORS = (
    SessionConflictError,
    InvalidTransitionError,
    SessionNotFoundError,
    LockTimeoutError,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _paths(directory: Optional[Path]) -> Paths:
    paths = load_paths(directory)
    if not paths.working_dir.is_dir():
        typer.echo(f"Not a directory: {paths.working_dir}")
        raise typer.Exit(code=1)
    return paths


def _load_app_config(paths: Paths) -> AppConfig:
    try:
        return load_config(paths.config_path, os.environ)
    except (json.JSONDecodeError, KeyError, ValueError) as exc:
        typer.echo(f"Invalid config at {paths.config_path}: {exc}")
        raise typer.Exit(code=1)


def _resolve_agent(name: Optional[str], config: AppConfig) -> Agent:
    name = name or config.agent.name
    if name:
        try:
            return find_agent(name)
        except AgentNotFoundError as exc:
            typer.echo(str(exc))
            raise typer.Exit(code=1)
    agent = detect_best_agent()
    if agent is None:
        typer.echo("No coding agent found. Install one of: claude, cursor, codex, opencode.")
        raise typer.Exit(code=1)
    return agent


def _iteration_budget(paths: Paths, config: AppConfig) -> int:
    if parse_plan_tasks(paths.working_dir).total == 0:
        return config.agent.max_iterations
    iterations, reason = calculate_optimal_iterations(paths.working_dir)
    console.print(f"Using {iterations} iterations ({reason})")
    return iterations


def _git_for(paths: Paths, options: LoopOptions) -> GitRepo | None:
    if not (options.commit or options.push or options.pr or options.judge or options.branch):
        return None
    git = GitRepo(paths.working_dir)
    if not git.is_repo():
        typer.echo(f"{paths.working_dir} is not a git repository.")
        raise typer.Exit(code=1)
    return git


def _build_judge(paths: Paths, config: AppConfig, options: LoopOptions) -> CompletionJudge | None:
    if not options.judge:
        return None
    if config.llm is None:
        typer.echo("The quality judge needs an `llm` section in the buildloop config.")
        raise typer.Exit(code=1)
    try:
        llm = build_llm_client(config.llm)
    except ValueError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    return CompletionJudge(llm, load_criteria(paths.working_dir))


def _build_controller(
    paths: Paths,
    config: AppConfig,
    agent: Agent,
    options: LoopOptions,
    store: SessionStore,
    git: GitRepo | None,
) -> LoopController:
    runner = AgentRunner(
        agent,
        auto_approve=options.auto_approve,
        max_turns=options.max_turns,
        timeout_s=config.agent.timeout_s,
    )
    return LoopController(
        runner,
        store,
        gate=ValidationGate(options.validation_commands),
        git=git,
        judge=_build_judge(paths, config, options),
    )


def _run_interruptible(controller: LoopController, session: Session) -> LoopResult:
    """Run the loop; the first Ctrl-C pauses at the next iteration boundary."""

    def _on_interrupt(signum, frame) -> None:
        console.print("\n[yellow]Pausing after the current iteration (Ctrl-C again to abort)...[/yellow]")
        controller.request_pause("Interrupted by operator")
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        return controller.run(session)
    finally:
        signal.signal(signal.SIGINT, previous)


def _report(result: LoopResult, store: SessionStore, paths: Paths) -> None:
    session = store.load(paths.working_dir)
    if session is not None:
        console.print(format_session(session))
    if result.stats is not None and result.stats.cost.iterations:
        console.print(format_loop_stats(result.stats))
    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    if result.status is SessionStatus.COMPLETED:
        console.print("[green]Task completed.[/green]")
        return
    if result.status is SessionStatus.PAUSED:
        console.print(f"Session paused. Resume with: buildloop resume --dir {paths.working_dir}")
        return
    console.print(f"[red]Session failed:[/red] {result.error or 'unknown error'}")
    if result.exit_reason is not None and result.exit_reason.value == "circuit-breaker":
        console.print(f"Retry with: buildloop resume --force --dir {paths.working_dir}")
    raise typer.Exit(code=1)


@app.command()
def run(
    task: str = typer.Argument(..., help="Task description passed to the agent."),
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Working directory."),
    agent_name: Optional[str] = typer.Option(None, "--agent", "-a", help="Agent to use."),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-n", min=1),
    validate: Optional[bool] = typer.Option(None, "--validate/--no-validate"),
    commit: Optional[bool] = typer.Option(None, "--commit/--no-commit"),
    push: Optional[bool] = typer.Option(None, "--push/--no-push"),
    pr: Optional[bool] = typer.Option(None, "--pr/--no-pr"),
    pr_title: Optional[str] = typer.Option(None, "--pr-title"),
    pr_base: Optional[str] = typer.Option(None, "--pr-base"),
    branch: Optional[str] = typer.Option(None, "--branch", help="Work on this branch."),
    rate_limit: Optional[int] = typer.Option(None, "--rate-limit", help="Max agent calls per hour."),
    completion_promise: Optional[str] = typer.Option(None, "--completion-promise"),
    require_exit_signal: Optional[bool] = typer.Option(
        None, "--require-exit-signal/--no-require-exit-signal"
    ),
    judge: Optional[bool] = typer.Option(None, "--judge/--no-judge", help="Review work with an LLM."),
    max_cost: Optional[float] = typer.Option(
        None, "--max-cost", min=0, help="Stop once the estimated cost reaches this many USD."
    ),
    cost_model: Optional[str] = typer.Option(None, "--cost-model", help="Pricing table for estimates."),
) -> None:
    """Run the build loop for a task in a working directory."""
    paths = _paths(directory)
    config = _load_app_config(paths)
    overrides = {
        "validate": validate,
        "commit": commit,
        "push": push,
        "pr": pr,
        "pr_title": pr_title,
        "pr_base": pr_base,
        "branch": branch,
        "rate_limit": rate_limit,
        "completion_promise": completion_promise,
        "require_exit_signal": require_exit_signal,
        "judge": judge,
        "max_cost": max_cost,
        "cost_model": cost_model,
    }
    options = replace(config.loop, **{k: v for k, v in overrides.items() if v is not None})
    # Pushing or opening a pull request implies committing.
    if options.push or options.pr:
        options = replace(options, commit=True)
    agent = _resolve_agent(agent_name, config)
    git = _git_for(paths, options)
    store = SessionStore()
    controller = _build_controller(paths, config, agent, options, store, git)
    if options.validate:
        console.print(format_validation_commands(controller.gate.detect(paths.working_dir)))
    try:
        # Claims the working directory before the branch is touched.
        session = store.create(
            task,
            paths.working_dir,
            options,
            max_iterations or _iteration_budget(paths, config),
            agent.type.value,
        )
    except _STORE_ERRORS as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    if git is not None and options.branch:
        try:
            git.create_branch(options.branch)
        except GitError as exc:
            store.delete(paths.working_dir)
            typer.echo(f"Could not switch to branch {options.branch}: {exc}")
            raise typer.Exit(code=1)
    try:
        console.print(f"Started session [bold]{session.id[:8]}[/bold] with {agent.name}")
        result = _run_interruptible(controller, session)
    except _STORE_ERRORS as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    _report(result, store, paths)


@app.command()
def resume(
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Working directory."),
    force: bool = typer.Option(False, "--force", help="Resume a failed session."),
) -> None:
    """Resume a paused (or, with --force, failed) session."""
    paths = _paths(directory)
    config = _load_app_config(paths)
    store = SessionStore()
    existing = store.load(paths.working_dir)
    if existing is None:
        typer.echo(f"No session found for {paths.working_dir}")
        raise typer.Exit(code=1)
    agent = _resolve_agent(existing.agent, config)
    git = _git_for(paths, existing.options)
    controller = _build_controller(paths, config, agent, existing.options, store, git)
    try:
        session = store.resume(paths.working_dir, force=force)
        console.print(
            f"Resuming session [bold]{session.id[:8]}[/bold] "
            f"({session.remaining_iterations} iterations remaining)"
        )
        result = _run_interruptible(controller, session)
    except _STORE_ERRORS as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    _report(result, store, paths)


@app.command()
def pause(
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Working directory."),
    reason: Optional[str] = typer.Option(None, "--reason", help="Recorded pause reason."),
) -> None:
    """Pause the running session at its next iteration boundary."""
    paths = _paths(directory)
    try:
        session = SessionStore().pause(paths.working_dir, reason=reason)
    except _STORE_ERRORS as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    if session.status is SessionStatus.PAUSED:
        typer.echo(f"Session {session.id[:8]} paused.")
    else:
        typer.echo(f"Pause requested; session {session.id[:8]} stops after its current iteration.")


@app.command()
def status(
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Working directory."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw session record."),
) -> None:
    """Show the session for a working directory."""
    paths = _paths(directory)
    session = SessionStore().load(paths.working_dir)
    if session is None:
        typer.echo(f"No session found for {paths.working_dir}")
        raise typer.Exit(code=1)
    if as_json:
        typer.echo(json.dumps(session.to_dict(), indent=2))
        return
    console.print(format_session(session))


def _origins(config: AppConfig) -> dict[str, GitHubOrigin | LinearOrigin]:
    origins: dict[str, GitHubOrigin | LinearOrigin] = {}
    if config.integrations.github_token:
        origins["github"] = GitHubOrigin(
            token=config.integrations.github_token, api_url=config.integrations.github_api_url
        )
    if config.integrations.linear_api_key:
        origins["linear"] = LinearOrigin(
            api_key=config.integrations.linear_api_key, api_url=config.integrations.linear_api_url
        )
    return origins


@app.command()
def auto(
    tasks_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON task list."),
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Working directory."),
    agent_name: Optional[str] = typer.Option(None, "--agent", "-a", help="Agent to use."),
    max_iterations: int = typer.Option(15, "--max-iterations", "-n", min=1),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Run at most N tasks."),
    validate: bool = typer.Option(True, "--validate/--no-validate"),
    push: bool = typer.Option(True, "--push/--no-push"),
    pr: bool = typer.Option(True, "--pr/--no-pr"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without running it."),
) -> None:
    """Work through a list of tasks, one branch and pull request each."""
    paths = _paths(directory)
    config = _load_app_config(paths)
    try:
        tasks = load_tasks(tasks_file)
    except (json.JSONDecodeError, KeyError, ValueError) as exc:
        typer.echo(f"Invalid task file {tasks_file}: {exc}")
        raise typer.Exit(code=1)
    if limit:
        tasks = tasks[:limit]
    if not tasks:
        typer.echo("No tasks to run.")
        return
    options = replace(config.loop, validate=validate, commit=True, push=push, pr=pr)
    agent = _resolve_agent(agent_name, config)
    git = GitRepo(paths.working_dir)
    if not git.is_repo():
        typer.echo(f"{paths.working_dir} is not a git repository.")
        raise typer.Exit(code=1)
    store = SessionStore()
    origins = _origins(config)
    sequencer = BatchSequencer(
        store,
        git,
        lambda: _build_controller(paths, config, agent, options, store, git),
        agent,
        paths.working_dir,
        options,
        max_iterations=max_iterations,
        origins=origins,
        on_task_start=lambda task, index: console.print(
            f"[bold][{index + 1}/{len(tasks)}][/bold] {task.source}#{task.id}: {task.title}"
        ),
    )
    try:
        if dry_run:
            console.print(format_batch_plan(sequencer.plan(tasks)))
            return
        summary = sequencer.run(tasks)
    except _STORE_ERRORS as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    finally:
        for origin in origins.values():
            origin.close()
    console.print(format_batch_summary(summary))
    if summary.paused is not None:
        console.print(
            f"Batch paused on {summary.paused.task.source}#{summary.paused.task.id}. "
            f"Resume with: buildloop resume --dir {paths.working_dir}"
        )
        if summary.not_started:
            remaining = ", ".join(f"{t.source}#{t.id}" for t in summary.not_started)
            console.print(f"Not started: {remaining}")
    if summary.failed:
        raise typer.Exit(code=1)


@app.command()
def agents() -> None:
    """List supported coding agents and whether they are installed."""
    found = detect_available_agents()
    console.print(format_agents(found, detect_best_agent(found)))


@app.command()
def clear(
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Working directory."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete the session record and activity log for a working directory."""
    paths = _paths(directory)
    store = SessionStore()
    session = store.load(paths.working_dir)
    if session is not None and is_live(session):
        typer.echo("A session is still running; pause it first.")
        raise typer.Exit(code=1)
    if not yes and not typer.confirm(f"Delete buildloop state for {paths.working_dir}?"):
        raise typer.Exit(code=1)
    removed = store.delete(paths.working_dir)
    ActivityLog(paths.activity_path, "").clear()
    typer.echo("Session cleared." if removed else "No session to clear.")
