"""Durable, file-backed session state for pause/resume across restarts.

One record per working directory lives at
``<working_dir>/.buildloop/sessions/<key>.json``. Writes are atomic
(temp file + ``os.replace``) and the read-check-write of ``create`` and
``resume`` runs under a short-lived lock file so two processes cannot both
start a loop over the same tree.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from buildloop.circuit_breaker import CircuitBreakerState
from buildloop.config import (
    LoopOptions,
    Paths,
    ensure_state_dir,
    loop_options_from_dict,
    loop_options_to_dict,
)
from buildloop.locks import locked, pid_alive

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class ExitReason(str, Enum):
    SUCCESS = "success"
    MAX_ITERATIONS = "max-iterations"
    CIRCUIT_BREAKER = "circuit-breaker"
    RATE_LIMIT = "rate-limit"
    BLOCKED = "blocked"
    COST_LIMIT = "cost-limit"
    PAUSED = "paused"


class SessionConflictError(RuntimeError):
    pass


class InvalidTransitionError(RuntimeError):
    pass


class SessionNotFoundError(LookupError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ValidationOutcome:
    passed: bool
    diagnostic: str = ""
    commands: tuple[str, ...] = ()


@dataclass(frozen=True)
class IterationOutcome:
    index: int
    agent_exit_code: int
    agent_output: str
    validation: ValidationOutcome | None = None
    committed: bool = False
    commit_sha: str | None = None
    completion_signal_seen: bool = False
    completion_reason: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    duration_s: float = 0.0
    warnings: tuple[str, ...] = ()
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        validation = None
        if self.validation is not None:
            validation = {
                "passed": self.validation.passed,
                "diagnostic": self.validation.diagnostic,
                "commands": list(self.validation.commands),
            }
        return {
            "index": self.index,
            "agent_exit_code": self.agent_exit_code,
            "agent_output": self.agent_output,
            "validation": validation,
            "committed": self.committed,
            "commit_sha": self.commit_sha,
            "completion_signal_seen": self.completion_signal_seen,
            "completion_reason": self.completion_reason,
            "started_at": self.started_at.isoformat(),
            "duration_s": self.duration_s,
            "warnings": list(self.warnings),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IterationOutcome:
        raw_validation = payload.get("validation")
        validation = None
        if raw_validation is not None:
            validation = ValidationOutcome(
                passed=bool(raw_validation["passed"]),
                diagnostic=str(raw_validation.get("diagnostic", "")),
                commands=tuple(raw_validation.get("commands") or ()),
            )
        return cls(
            index=int(payload["index"]),
            agent_exit_code=int(payload["agent_exit_code"]),
            agent_output=str(payload.get("agent_output", "")),
            validation=validation,
            committed=bool(payload.get("committed", False)),
            commit_sha=payload.get("commit_sha"),
            completion_signal_seen=bool(payload.get("completion_signal_seen", False)),
            completion_reason=payload.get("completion_reason"),
            started_at=datetime.fromisoformat(payload["started_at"]),
            duration_s=float(payload.get("duration_s", 0.0)),
            warnings=tuple(payload.get("warnings") or ()),
            input_tokens=int(payload.get("input_tokens", 0)),
            output_tokens=int(payload.get("output_tokens", 0)),
        )


@dataclass
class Session:
    id: str
    task: str
    working_directory: Path
    agent: str
    status: SessionStatus
    max_iterations: int
    options: LoopOptions
    circuit_breaker_state: CircuitBreakerState = field(default_factory=CircuitBreakerState)
    history: list[IterationOutcome] = field(default_factory=list)
    iterations_completed: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    pause_reason: str | None = None
    exit_reason: ExitReason | None = None
    error: str | None = None
    commits: list[str] = field(default_factory=list)
    pr_url: str | None = None
    pending_feedback: str | None = None
    owner_pid: int | None = None

    @property
    def remaining_iterations(self) -> int:
        return max(0, self.max_iterations - self.iterations_completed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "id": self.id,
            "task": self.task,
            "working_directory": str(self.working_directory),
            "agent": self.agent,
            "status": self.status.value,
            "max_iterations": self.max_iterations,
            "iterations_completed": self.iterations_completed,
            "options": loop_options_to_dict(self.options),
            "circuit_breaker_state": self.circuit_breaker_state.to_dict(),
            "history": [outcome.to_dict() for outcome in self.history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "paused_at": _iso(self.paused_at),
            "resumed_at": _iso(self.resumed_at),
            "pause_reason": self.pause_reason,
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
            "error": self.error,
            "commits": list(self.commits),
            "pr_url": self.pr_url,
            "pending_feedback": self.pending_feedback,
            "owner_pid": self.owner_pid,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        exit_reason = payload.get("exit_reason")
        return cls(
            id=str(payload["id"]),
            task=str(payload["task"]),
            working_directory=Path(payload["working_directory"]),
            agent=str(payload["agent"]),
            status=SessionStatus(payload["status"]),
            max_iterations=int(payload["max_iterations"]),
            iterations_completed=int(payload.get("iterations_completed", 0)),
            options=loop_options_from_dict(payload.get("options")),
            circuit_breaker_state=CircuitBreakerState.from_dict(
                payload.get("circuit_breaker_state")
            ),
            history=[IterationOutcome.from_dict(item) for item in payload.get("history") or []],
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
            paused_at=_dt(payload.get("paused_at")),
            resumed_at=_dt(payload.get("resumed_at")),
            pause_reason=payload.get("pause_reason"),
            exit_reason=ExitReason(exit_reason) if exit_reason else None,
            error=payload.get("error"),
            commits=list(payload.get("commits") or []),
            pr_url=payload.get("pr_url"),
            pending_feedback=payload.get("pending_feedback"),
            owner_pid=payload.get("owner_pid"),
        )


def _owner_alive(session: Session) -> bool:
    return session.owner_pid is not None and pid_alive(session.owner_pid)


def is_live(session: Session) -> bool:
    """True when ``session`` is running and its owning process still exists."""
    return session.status is SessionStatus.RUNNING and _owner_alive(session)


def can_resume(session: Session, force: bool = False) -> bool:
    if session.iterations_completed >= session.max_iterations:
        return False
    if session.status is SessionStatus.PAUSED:
        return True
    if session.status is SessionStatus.FAILED:
        return force
    if session.status is SessionStatus.RUNNING:
        return not _owner_alive(session)
    return False


def format_session_summary(session: Session) -> str:
    task = session.task[:60] + ("..." if len(session.task) > 60 else "")
    lines = [
        f"Session: {session.id}",
        f"Status: {session.status.value}",
        f"Task: {task}",
        f"Progress: {session.iterations_completed}/{session.max_iterations} iterations",
        f"Agent: {session.agent}",
    ]
    if session.commits:
        lines.append(f"Commits: {len(session.commits)}")
    total_s = sum(outcome.duration_s for outcome in session.history)
    if total_s > 0:
        lines.append(f"Duration: {int(total_s // 60)}m {int(total_s % 60)}s")
    if session.pr_url:
        lines.append(f"Pull request: {session.pr_url}")
    if session.pause_reason:
        lines.append(f"Pause reason: {session.pause_reason}")
    if session.exit_reason:
        lines.append(f"Exit reason: {session.exit_reason.value}")
    if session.error:
        lines.append(f"Error: {session.error}")
    return "\n".join(lines)


class SessionStore:
    def __init__(self, lock_timeout_s: float = 5.0) -> None:
        self.lock_timeout_s = lock_timeout_s

    def _paths(self, working_directory: Path) -> Paths:
        return Paths(working_dir=Path(working_directory).resolve())

    def _pause_marker(self, paths: Paths) -> Path:
        return paths.sessions_dir / f"{paths.session_key}.pause"

    def _write(self, session: Session) -> None:
        paths = self._paths(session.working_directory)
        target = paths.session_path
        ensure_state_dir(paths)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=str(target.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(session.to_dict(), handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, target)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def load(self, working_directory: Path) -> Session | None:
        path = self._paths(working_directory).session_path
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Session.from_dict(json.loads(text))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable session record %s: %s", path, exc)
            return None

    def checkpoint(self, session: Session) -> None:
        session.updated_at = _utcnow()
        self._write(session)
        logger.debug(
            "Checkpointed session %s (%s, %d/%d)",
            session.id,
            session.status.value,
            session.iterations_completed,
            session.max_iterations,
        )

    def create(
        self,
        task: str,
        working_directory: Path,
        options: LoopOptions,
        max_iterations: int,
        agent: str,
    ) -> Session:
        paths = self._paths(working_directory)
        with locked(paths.session_lock_path, timeout_s=self.lock_timeout_s):
            existing = self.load(paths.working_dir)
            if existing is not None and is_live(existing):
                raise SessionConflictError(
                    f"Session {existing.id} is already running in {paths.working_dir} "
                    f"(pid {existing.owner_pid})"
                )
            now = _utcnow()
            session = Session(
                id=uuid.uuid4().hex,
                task=task,
                working_directory=paths.working_dir,
                agent=agent,
                status=SessionStatus.PENDING,
                max_iterations=max_iterations,
                options=options,
                created_at=now,
                updated_at=now,
            )
            self._pause_marker(paths).unlink(missing_ok=True)
            self._write(session)
        logger.info("Created session %s for %s", session.id, paths.working_dir)
        return session

    def mark_running(self, session: Session) -> Session:
        paths = self._paths(session.working_directory)
        with locked(paths.session_lock_path, timeout_s=self.lock_timeout_s):
            current = self.load(paths.working_dir)
            if current is not None and current.id != session.id and is_live(current):
                raise SessionConflictError(
                    f"Session {current.id} is already running in {paths.working_dir}"
                )
            if session.status not in (SessionStatus.PENDING, SessionStatus.RUNNING):
                raise InvalidTransitionError(
                    f"Cannot start session in status {session.status.value}"
                )
            session.status = SessionStatus.RUNNING
            session.owner_pid = os.getpid()
            self.checkpoint(session)
        return session

    def pause(self, working_directory: Path, reason: str | None = None) -> Session:
        paths = self._paths(working_directory)
        with locked(paths.session_lock_path, timeout_s=self.lock_timeout_s):
            session = self.load(paths.working_dir)
            if session is None:
                raise SessionNotFoundError(f"No session found for {paths.working_dir}")
            if session.status is not SessionStatus.RUNNING:
                raise InvalidTransitionError(
                    f"Can only pause a running session (status: {session.status.value})"
                )
            marker = self._pause_marker(paths)
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.write_text(reason or "", encoding="utf-8")
            if session.owner_pid != os.getpid() and _owner_alive(session):
                # Another process owns the loop; it honours the marker at the
                # next iteration boundary and persists the paused state itself.
                logger.info("Pause requested for session %s", session.id)
                return session
            apply_pause(session, reason)
            self.checkpoint(session)
        logger.info("Paused session %s", session.id)
        return session

    def pause_requested(self, session: Session) -> bool:
        return self._pause_marker(self._paths(session.working_directory)).exists()

    def consume_pause_request(self, session: Session) -> str | None:
        marker = self._pause_marker(self._paths(session.working_directory))
        try:
            reason = marker.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        marker.unlink(missing_ok=True)
        return reason or None

    def resume(self, working_directory: Path, force: bool = False) -> Session:
        paths = self._paths(working_directory)
        with locked(paths.session_lock_path, timeout_s=self.lock_timeout_s):
            session = self.load(paths.working_dir)
            if session is None:
                raise SessionNotFoundError(f"No session found for {paths.working_dir}")
            if is_live(session):
                raise SessionConflictError(
                    f"Session {session.id} is already running (pid {session.owner_pid})"
                )
            if not can_resume(session, force=force):
                hint = " (use --force)" if session.status is SessionStatus.FAILED else ""
                raise InvalidTransitionError(
                    f"Session {session.id} cannot be resumed from status "
                    f"{session.status.value} with {session.remaining_iterations} "
                    f"iterations remaining{hint}"
                )
            if session.status is SessionStatus.RUNNING:
                logger.warning(
                    "Recovering stale session %s (owner pid %s is gone)",
                    session.id,
                    session.owner_pid,
                )
            session.status = SessionStatus.RUNNING
            session.resumed_at = _utcnow()
            session.owner_pid = os.getpid()
            session.pause_reason = None
            session.exit_reason = None
            session.error = None
            self._pause_marker(paths).unlink(missing_ok=True)
            self.checkpoint(session)
        logger.info("Resumed session %s", session.id)
        return session

    def can_resume(self, session: Session, force: bool = False) -> bool:
        return can_resume(session, force=force)

    def delete(self, working_directory: Path) -> bool:
        paths = self._paths(working_directory)
        self._pause_marker(paths).unlink(missing_ok=True)
        try:
            paths.session_path.unlink()
        except FileNotFoundError:
            return False
        return True


def apply_pause(session: Session, reason: str | None) -> None:
    session.status = SessionStatus.PAUSED
    session.paused_at = _utcnow()
    session.pause_reason = reason
    session.exit_reason = ExitReason.PAUSED
