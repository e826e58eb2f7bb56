from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)


class LockTimeoutError(RuntimeError):
    def __init__(self, path: Path, timeout_s: float) -> None:
        super().__init__(f"Timed out after {timeout_s:.1f}s waiting for lock {path}")
        self.path = path
        self.timeout_s = timeout_s


@dataclass(frozen=True)
class LockInfo:
    pid: int | None
    created_at: datetime | None
    raw: dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False


def parse_lock_payload(text: str) -> LockInfo:
    text = text.strip()
    if not text:
        return LockInfo(pid=None, created_at=None, raw={})
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        if text.isdigit():
            return LockInfo(pid=int(text), created_at=None, raw={"pid": int(text)})
        return LockInfo(pid=None, created_at=None, raw={})
    if isinstance(payload, int):
        return LockInfo(pid=payload, created_at=None, raw={"pid": payload})
    if not isinstance(payload, dict):
        return LockInfo(pid=None, created_at=None, raw={})

    pid = payload.get("pid")
    if isinstance(pid, str) and pid.isdigit():
        pid = int(pid)
    if not isinstance(pid, int):
        pid = None
    created_at = None
    created_raw = payload.get("created_at")
    if isinstance(created_raw, str):
        try:
            created_at = datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
        except ValueError:
            created_at = None
    return LockInfo(pid=pid, created_at=created_at, raw=payload)


@dataclass
class FileLock:
    """Exclusive lock file guarding a short read-check-write section."""

    path: Path
    stale_after_s: float | None = 60.0
    poll_interval_s: float = 0.05
    sleep: Callable[[float], None] = time.sleep
    _fd: int | None = None

    def acquire(self, timeout_s: float = 5.0) -> None:
        deadline = time.monotonic() + timeout_s
        while True:
            if self._try_acquire():
                return
            if self._clear_stale() and self._try_acquire():
                return
            if time.monotonic() >= deadline:
                raise LockTimeoutError(self.path, timeout_s)
            self.sleep(self.poll_interval_s)

    def release(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            finally:
                self._fd = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _try_acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        payload = {"pid": os.getpid(), "created_at": _utcnow().isoformat()}
        os.write(self._fd, json.dumps(payload).encode("utf-8"))
        return True

    def _clear_stale(self) -> bool:
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError:
            return False
        info = parse_lock_payload(content)
        if not self._is_stale(info):
            return False
        logger.warning("Removing stale lock %s (pid=%s)", self.path, info.pid)
        try:
            self.path.unlink()
            return True
        except OSError:
            return False

    def _is_stale(self, info: LockInfo) -> bool:
        if info.pid is None or not pid_alive(info.pid):
            return True
        if self.stale_after_s is None or info.created_at is None:
            return False
        age_s = (_utcnow() - info.created_at).total_seconds()
        return age_s >= self.stale_after_s


@contextmanager
def locked(path: Path, timeout_s: float = 5.0) -> Iterator[FileLock]:
    lock = FileLock(path)
    lock.acquire(timeout_s=timeout_s)
    try:
        yield lock
    finally:
        lock.release()
