"""IMPLEMENTATION_PLAN.md parsing and file-based completion markers."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from pathlib import Path

from buildloop.config import STATE_DIR_NAME

PLAN_FILE = "IMPLEMENTATION_PLAN.md"
COMPLETE_FILE = "BUILDLOOP_COMPLETE"
DONE_MARKER = "done"

_SECTION_HEADER = re.compile(r"^#{2,3}\s*(?:Phase|Task)\s*\d+[:\s-]+(.+)", re.IGNORECASE)
_ANY_HEADING = re.compile(r"^#{1,6}\s+")
_NESTED_CHECKBOX = re.compile(r"^\s*[-*]\s*\[([xX ])\]\s*(.+)")
_FLAT_CHECKBOX = re.compile(r"^[-*]\s*\[([xX ])\]\s*(.+)", re.MULTILINE)
_UNCHECKED = re.compile(r"- \[ \]")
_CHECKED = re.compile(r"- \[x\]", re.IGNORECASE)


@dataclass(frozen=True)
class PlanSubtask:
    name: str
    completed: bool


@dataclass
class PlanTask:
    name: str
    index: int
    completed: bool = False
    subtasks: list[PlanSubtask] = field(default_factory=list)


@dataclass(frozen=True)
class PlanCount:
    total: int
    completed: int
    pending: int
    tasks: tuple[PlanTask, ...] = ()


@dataclass(frozen=True)
class FileCompletion:
    completed: bool
    reason: str | None = None


def parse_plan_text(content: str) -> PlanCount:
    tasks: list[PlanTask] = []
    current: PlanTask | None = None
    has_headers = False

    for line in content.splitlines():
        header = _SECTION_HEADER.match(line)
        if header:
            has_headers = True
            if current is not None:
                tasks.append(current)
            name = header.group(1).strip() or f"Task {len(tasks) + 1}"
            current = PlanTask(name=name, index=len(tasks))
            continue
        if _ANY_HEADING.match(line) and current is not None:
            tasks.append(current)
            current = None
            continue
        if current is not None:
            checkbox = _NESTED_CHECKBOX.match(line)
            if checkbox:
                current.subtasks.append(
                    PlanSubtask(
                        name=checkbox.group(2).strip(),
                        completed=checkbox.group(1).lower() == "x",
                    )
                )
    if current is not None:
        tasks.append(current)

    if has_headers:
        for task in tasks:
            task.completed = bool(task.subtasks) and all(st.completed for st in task.subtasks)
    else:
        tasks = [
            PlanTask(name=match.group(2).strip(), index=i, completed=match.group(1).lower() == "x")
            for i, match in enumerate(_FLAT_CHECKBOX.finditer(content))
        ]

    completed = sum(1 for task in tasks if task.completed)
    return PlanCount(
        total=len(tasks),
        completed=completed,
        pending=len(tasks) - completed,
        tasks=tuple(tasks),
    )


def parse_plan_tasks(working_dir: Path) -> PlanCount:
    plan_path = working_dir / PLAN_FILE
    try:
        content = plan_path.read_text(encoding="utf-8")
    except (FileNotFoundError, UnicodeDecodeError):
        return PlanCount(total=0, completed=0, pending=0)
    return parse_plan_text(content)


def current_task(working_dir: Path) -> PlanTask | None:
    for task in parse_plan_tasks(working_dir).tasks:
        if not task.completed:
            return task
    return None


def calculate_optimal_iterations(working_dir: Path) -> tuple[int, str]:
    """Suggest a loop budget from the plan: pending tasks plus a retry buffer."""
    count = parse_plan_tasks(working_dir)
    if count.total == 0:
        return 7, "No plan found, using default"
    if count.pending == 0:
        return 3, "All tasks completed, minimal iterations for verification"
    buffer = max(2, math.ceil(count.pending * 0.3))
    iterations = min(25, max(3, count.pending + buffer))
    return iterations, f"{count.pending} pending tasks + {buffer} buffer"


def check_file_based_completion(working_dir: Path) -> FileCompletion:
    if (working_dir / COMPLETE_FILE).exists():
        return FileCompletion(True, f"{COMPLETE_FILE} file found")
    if (working_dir / STATE_DIR_NAME / DONE_MARKER).exists():
        return FileCompletion(True, f"{STATE_DIR_NAME}/{DONE_MARKER} marker found")
    plan_path = working_dir / PLAN_FILE
    if plan_path.exists():
        content = plan_path.read_text(encoding="utf-8", errors="replace")
        checked = len(_CHECKED.findall(content))
        if checked and not _UNCHECKED.search(content):
            return FileCompletion(True, f"All {checked} tasks in {PLAN_FILE} completed")
    return FileCompletion(False)
