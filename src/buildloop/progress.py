from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

EntryStatus = Literal["started", "completed", "failed", "blocked", "validation_failed"]

_STATUS_BADGES: dict[str, str] = {
    "started": "Started",
    "completed": "Completed",
    "failed": "Failed",
    "blocked": "Blocked",
    "validation_failed": "Validation Failed",
}


@dataclass(frozen=True)
class ProgressEntry:
    iteration: int
    status: EntryStatus
    summary: str = ""
    duration_s: float | None = None
    commit_sha: str | None = None
    validation: tuple[tuple[str, bool], ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def format_duration(seconds: float) -> str:
    ms = int(seconds * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    return f"{ms // 60_000}m {(ms % 60_000) // 1000}s"


def format_entry(entry: ProgressEntry) -> str:
    lines = [
        f"### Iteration {entry.iteration} - {entry.timestamp.isoformat()}",
        "",
        f"**Status:** {_STATUS_BADGES.get(entry.status, entry.status)}",
    ]
    if entry.summary:
        lines.append(f"**Summary:** {entry.summary}")
    if entry.duration_s is not None:
        lines.append(f"**Duration:** {format_duration(entry.duration_s)}")
    if entry.commit_sha:
        lines.append(f"**Commit:** `{entry.commit_sha[:7]}`")
    if entry.validation:
        lines.extend(["", "**Validation:**"])
        for command, ok in entry.validation:
            lines.append(f"- [{'x' if ok else ' '}] {command}")
    lines.extend(["", "---", ""])
    return "\n".join(lines)


class ActivityLog:
    """Append-only markdown log of loop iterations."""

    def __init__(self, path: Path, task: str) -> None:
        self.path = path
        self.task = task

    def _header(self) -> str:
        task = self.task[:100] + ("..." if len(self.task) > 100 else "")
        started = datetime.now(timezone.utc).isoformat()
        return f"# Build Loop Activity Log\n\n**Task:** {task}\n**Started:** {started}\n\n---\n\n"

    def _write(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text(self._header(), encoding="utf-8")
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(text)

    def append(self, entry: ProgressEntry) -> None:
        self._write(format_entry(entry))

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def append_text(self, text: str) -> None:
        self._write(text.rstrip("\n") + "\n\n")
