"""Sequential execution of externally sourced tasks.

Each task gets its own ``auto/<source>-<id>`` branch cut from the previous
task's branch, so pull requests cascade: the first targets the branch the
batch started on and every later one targets its predecessor.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence

from buildloop.agents import Agent, build_agent_args
from buildloop.config import LoopOptions
from buildloop.gitops import GitError, GitRepo
from buildloop.loop import LoopController, LoopResult
from buildloop.session import SessionConflictError, SessionStatus, SessionStore, is_live

logger = logging.getLogger(__name__)

DEFAULT_TASK_ITERATIONS = 15
_DESCRIPTION_LIMIT = 500
_TYPE_PREFIX = re.compile(r"^\[(feat|fix|docs|refactor|test|chore)\]\s*", re.IGNORECASE)
_TYPE_COLON = re.compile(r"^(feat|fix|docs|refactor|test|chore):\s*", re.IGNORECASE)


@dataclass(frozen=True)
class BatchTask:
    id: str
    title: str
    description: str
    source: str
    url: str = ""
    labels: tuple[str, ...] = ()
    priority: int | None = None
    project: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> BatchTask:
        priority = payload.get("priority")
        return cls(
            id=str(payload["id"]),
            title=str(payload["title"]),
            description=str(payload.get("description") or ""),
            source=str(payload.get("source") or "github"),
            url=str(payload.get("url") or ""),
            labels=tuple(str(label) for label in payload.get("labels") or ()),
            priority=int(priority) if priority is not None else None,
            project=payload.get("project"),
        )


@dataclass(frozen=True)
class BatchExecutionResult:
    task: BatchTask
    success: bool
    branch: str | None = None
    pr_url: str | None = None
    error: str | None = None
    commits: tuple[str, ...] = ()
    iterations: int = 0
    warnings: tuple[str, ...] = ()
    paused: bool = False


@dataclass(frozen=True)
class BatchSummary:
    results: tuple[BatchExecutionResult, ...]
    not_started: tuple[BatchTask, ...] = ()

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success and not result.paused)

    @property
    def paused(self) -> BatchExecutionResult | None:
        return next((result for result in self.results if result.paused), None)

    @property
    def pr_urls(self) -> list[str]:
        return [result.pr_url for result in self.results if result.pr_url]


@dataclass(frozen=True)
class PlannedAction:
    task: BatchTask
    branch: str
    base: str
    agent_command: tuple[str, ...]
    commit_message: str | None
    pr_title: str | None


class OriginClient(Protocol):
    def claim_task(self, task: BatchTask) -> None:
        ...

    def complete_task(self, task: BatchTask, result: BatchExecutionResult) -> None:
        ...

    def skip_task(self, task: BatchTask, reason: str) -> None:
        ...


def branch_name_for(task: BatchTask) -> str:
    return f"auto/{task.source}-{task.id}"


def build_task_prompt(task: BatchTask) -> str:
    lines = [
        f"# Task: {task.title}",
        "",
        "## CRITICAL INSTRUCTIONS",
        "",
        "**ONLY implement what is described in this task. Do NOT:**",
        "- Add unrelated features or improvements",
        "- Implement items from IMPLEMENTATION_PLAN.md or other planning files",
        "- Make changes beyond the scope of this specific issue",
        "",
    ]
    if task.url:
        lines.extend([f"Source: {task.url}", ""])
    if task.labels:
        lines.extend([f"Labels: {', '.join(task.labels)}", ""])
    lines.extend(
        [
            "## Task Description",
            "",
            task.description or "*No description provided*",
            "",
            "## Implementation Guidelines",
            "",
            "1. Read and understand the task requirements above",
            "2. Implement ONLY what is described in this task",
            "3. Follow existing code patterns and conventions",
            "4. Ensure the build passes",
            "",
            "When complete, the changes will be committed and a PR will be created.",
        ]
    )
    return "\n".join(lines)


def commit_type_for(task: BatchTask) -> str:
    title = task.title.lower()
    labels = {label.lower() for label in task.labels}
    if "bug" in labels or "fix" in title or "bug" in title:
        return "fix"
    if "docs" in labels or "doc" in title:
        return "docs"
    if "refactor" in labels or "refactor" in title:
        return "refactor"
    if "test" in labels or "test" in title:
        return "test"
    if "chore" in labels or "chore" in title:
        return "chore"
    return "feat"


def build_commit_message(task: BatchTask) -> str:
    title = _TYPE_COLON.sub("", _TYPE_PREFIX.sub("", task.title)).strip()
    return (
        f"{commit_type_for(task)}: {title}\n\n"
        f"Closes {task.source}#{task.id}\n\n"
        "Generated by buildloop auto mode"
    )


def build_pr_title(task: BatchTask) -> str:
    return build_commit_message(task).splitlines()[0]


def build_pr_body(task: BatchTask, base: str, iterations: int | None = None) -> str:
    lines = ["## Summary", ""]
    lines.append(f"Automated implementation for: {task.url or f'{task.source}#{task.id}'}")
    lines.append("")
    if task.description:
        lines.extend(["## Original Task", "", task.description[:_DESCRIPTION_LIMIT]])
        if len(task.description) > _DESCRIPTION_LIMIT:
            lines.append("...")
        lines.append("")
    lines.extend(["## Execution Details", ""])
    lines.append(f"- Iterations: {iterations if iterations is not None else 'N/A'}")
    lines.append(f"- Base branch: `{base}`")
    lines.append("")
    if base.startswith("auto/"):
        lines.extend(
            [
                "## Merge Instructions",
                "",
                f"This PR is part of a cascade. Merge the base PR first: `{base}`",
                "",
            ]
        )
    lines.extend(["---", "", "*Generated by buildloop auto mode*"])
    return "\n".join(lines)


def load_tasks(path: Path) -> list[BatchTask]:
    """Read ``{"tasks": [...]}`` (or a bare list) and order by priority."""
    payload = json.loads(path.read_text(encoding="utf-8"))
    items = payload.get("tasks", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise ValueError(f"{path} must contain a list of tasks")
    tasks = [BatchTask.from_dict(item) for item in items]
    # Stable: tasks without a priority keep file order after prioritised ones.
    return sorted(tasks, key=lambda t: (t.priority is None, t.priority or 0))


class BatchSequencer:
    def __init__(
        self,
        store: SessionStore,
        git: GitRepo,
        controller_factory: Callable[[], LoopController],
        agent: Agent,
        working_dir: Path,
        options: LoopOptions,
        max_iterations: int = DEFAULT_TASK_ITERATIONS,
        origins: Mapping[str, OriginClient] | None = None,
        on_task_start: Callable[[BatchTask, int], None] | None = None,
        on_task_complete: Callable[[BatchTask, BatchExecutionResult, int], None] | None = None,
    ) -> None:
        self.store = store
        self.git = git
        self.controller_factory = controller_factory
        self.agent = agent
        self.working_dir = working_dir
        self.options = options
        self.max_iterations = max_iterations
        self.origins = dict(origins or {})
        self.on_task_start = on_task_start
        self.on_task_complete = on_task_complete

    def _task_options(self, task: BatchTask, base: str) -> LoopOptions:
        return replace(
            self.options,
            branch=branch_name_for(task),
            commit_message=build_commit_message(task),
            pr_title=build_pr_title(task),
            pr_base=base,
            check_file_completion=False,
            plan_completion=False,
        )

    def plan(self, tasks: Sequence[BatchTask], base_branch: str | None = None) -> list[PlannedAction]:
        base = base_branch or self.git.current_branch()
        actions = []
        for task in tasks:
            options = self._task_options(task, base)
            args = build_agent_args(
                self.agent.type,
                build_task_prompt(task),
                auto_approve=options.auto_approve,
                max_turns=options.max_turns,
            )
            actions.append(
                PlannedAction(
                    task=task,
                    branch=branch_name_for(task),
                    base=base,
                    agent_command=(self.agent.command, *args),
                    commit_message=options.commit_message if options.commit else None,
                    pr_title=options.pr_title if options.pr else None,
                )
            )
            base = branch_name_for(task)
        return actions

    def run(self, tasks: Sequence[BatchTask]) -> BatchSummary:
        existing = self.store.load(self.working_dir)
        if existing is not None and is_live(existing):
            raise SessionConflictError(
                f"Session {existing.id} is already running in {existing.working_directory} "
                f"(pid {existing.owner_pid})"
            )
        original = self.git.current_branch()
        previous = original
        results = []
        not_started: tuple[BatchTask, ...] = ()
        for index, task in enumerate(tasks):
            if self.on_task_start:
                self.on_task_start(task, index)
            result = self._run_task(task, previous)
            results.append(result)
            if result.branch:
                previous = result.branch
            if self.on_task_complete:
                self.on_task_complete(task, result, index)
            if result.paused:
                # The paused session resumes on its own branch.
                not_started = tuple(tasks[index + 1 :])
                break
        else:
            try:
                self.git.checkout(original)
            except GitError as exc:
                logger.warning("Could not return to %s: %s", original, exc)
        summary = BatchSummary(results=tuple(results), not_started=not_started)
        if summary.paused is not None:
            logger.info(
                "Batch paused on %s#%s with %d task(s) not started",
                summary.paused.task.source,
                summary.paused.task.id,
                len(not_started),
            )
        else:
            logger.info(
                "Batch finished: %d succeeded, %d failed", summary.successful, summary.failed
            )
        return summary

    def _run_task(self, task: BatchTask, base: str) -> BatchExecutionResult:
        warnings: list[str] = []
        origin = self.origins.get(task.source)
        options = self._task_options(task, base)
        # Raises SessionConflictError before anything touches git or the origin.
        session = self.store.create(
            build_task_prompt(task),
            self.working_dir,
            options,
            self.max_iterations,
            self.agent.type.value,
        )
        self._best_effort(warnings, "claim", lambda: origin.claim_task(task) if origin else None)

        branch = branch_name_for(task)
        try:
            self.git.create_branch(branch)
        except GitError as exc:
            self.store.delete(self.working_dir)
            return self._failed(task, None, f"branch {branch}: {exc}", warnings, origin)

        try:
            loop_result: LoopResult = self.controller_factory().run(
                session,
                pr_body=lambda s: build_pr_body(task, base, s.iterations_completed),
            )
        except SessionConflictError:
            raise
        except Exception as exc:
            logger.exception("Task %s#%s crashed", task.source, task.id)
            return self._failed(task, branch, str(exc), warnings, origin)

        warnings.extend(loop_result.warnings)
        if loop_result.status is SessionStatus.PAUSED:
            logger.warning("Task %s#%s paused: %s", task.source, task.id, loop_result.error)
            return BatchExecutionResult(
                task=task,
                success=False,
                branch=branch,
                error=loop_result.error or "paused",
                commits=loop_result.commits,
                iterations=loop_result.iterations,
                warnings=tuple(warnings),
                paused=True,
            )
        if not loop_result.success:
            reason = loop_result.error or (
                loop_result.exit_reason.value if loop_result.exit_reason else "unknown"
            )
            return self._failed(
                task,
                branch,
                reason,
                warnings,
                origin,
                commits=loop_result.commits,
                iterations=loop_result.iterations,
            )

        result = BatchExecutionResult(
            task=task,
            success=True,
            branch=branch,
            pr_url=loop_result.pr_url,
            commits=loop_result.commits,
            iterations=loop_result.iterations,
            warnings=tuple(warnings),
        )
        if origin is not None:
            self._best_effort(warnings, "complete", lambda: origin.complete_task(task, result))
            result = replace(result, warnings=tuple(warnings))
        return result

    def _failed(
        self,
        task: BatchTask,
        branch: str | None,
        error: str,
        warnings: list[str],
        origin: OriginClient | None,
        commits: tuple[str, ...] = (),
        iterations: int = 0,
    ) -> BatchExecutionResult:
        logger.warning("Task %s#%s failed: %s", task.source, task.id, error)
        if origin is not None:
            self._best_effort(warnings, "skip", lambda: origin.skip_task(task, error))
        return BatchExecutionResult(
            task=task,
            success=False,
            branch=branch,
            error=error,
            commits=commits,
            iterations=iterations,
            warnings=tuple(warnings),
        )

    @staticmethod
    def _best_effort(warnings: list[str], action: str, call: Callable[[], object]) -> None:
        try:
            call()
        except Exception as exc:
            logger.warning("Origin %s failed: %s", action, exc)
            warnings.append(f"origin {action} failed: {exc}")
