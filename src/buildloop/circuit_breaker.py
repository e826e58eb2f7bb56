"""Failure isolation for the build loop.

The breaker counts consecutive failures and fingerprints each failure message
so that the same underlying error repeating (even with successes in between)
eventually stops the loop.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from buildloop.config import CircuitBreakerConfig

logger = logging.getLogger(__name__)

MAX_NORMALIZED_LENGTH = 500

# Applied in order; timestamps must go before the bare :line:col rule.
_NORMALIZERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"0x[a-fA-F0-9]+"), "HEX"),
    (re.compile(r"at\s+\S+\s+\(\S+:\d+:\d+\)"), "STACK"),
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}"), "TIMESTAMP"),
    (re.compile(r":\d+:\d+"), ":N:N"),
    (re.compile(r"\bline \d+", re.IGNORECASE), "line N"),
)


def normalize_error(message: str) -> str:
    text = message
    for pattern, replacement in _NORMALIZERS:
        text = pattern.sub(replacement, text)
    return text.lower().strip()[:MAX_NORMALIZED_LENGTH]


def error_fingerprint(message: str) -> str:
    normalized = normalize_error(message)
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()[:8]


@dataclass
class CircuitBreakerState:
    consecutive_failures: int = 0
    total_failures: int = 0
    error_fingerprints: dict[str, int] = field(default_factory=dict)
    is_open: bool = False
    last_failure_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "error_fingerprints": dict(self.error_fingerprints),
            "is_open": self.is_open,
            "last_failure_at": (
                self.last_failure_at.isoformat() if self.last_failure_at else None
            ),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> CircuitBreakerState:
        payload = payload or {}
        last_raw = payload.get("last_failure_at")
        return cls(
            consecutive_failures=int(payload.get("consecutive_failures", 0)),
            total_failures=int(payload.get("total_failures", 0)),
            error_fingerprints={
                str(key): int(value)
                for key, value in (payload.get("error_fingerprints") or {}).items()
            },
            is_open=bool(payload.get("is_open", False)),
            last_failure_at=datetime.fromisoformat(last_raw) if last_raw else None,
        )


@dataclass(frozen=True)
class CircuitBreakerStats:
    consecutive_failures: int
    total_failures: int
    unique_errors: int
    is_open: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreaker:
    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        state: CircuitBreakerState | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.state = state if state is not None else CircuitBreakerState()
        self._clock = clock

    def record_success(self) -> None:
        self.state.consecutive_failures = 0

    def record_failure(self, message: str) -> bool:
        state = self.state
        now = self._clock()
        state.consecutive_failures += 1
        state.total_failures += 1
        state.last_failure_at = now
        fingerprint = error_fingerprint(message)
        count = state.error_fingerprints.get(fingerprint, 0) + 1
        state.error_fingerprints[fingerprint] = count

        if state.consecutive_failures >= self.config.max_consecutive_failures:
            state.is_open = True
        elif count >= self.config.max_same_error_count:
            state.is_open = True
        if state.is_open:
            logger.warning("Circuit breaker tripped: %s", self.trip_reason())
        else:
            logger.debug(
                "Recorded failure %s (consecutive=%d, fingerprint count=%d)",
                fingerprint,
                state.consecutive_failures,
                count,
            )
        return state.is_open

    def is_tripped(self) -> bool:
        state = self.state
        if not state.is_open:
            return False
        if state.last_failure_at is not None:
            elapsed_ms = (self._clock() - state.last_failure_at).total_seconds() * 1000
            if elapsed_ms >= self.config.cooldown_ms:
                logger.info("Circuit breaker cooldown elapsed; allowing one retry")
                state.is_open = False
                return False
        return True

    def reset(self) -> None:
        # In place: the session keeps a reference to this state object.
        self.state.consecutive_failures = 0
        self.state.total_failures = 0
        self.state.error_fingerprints.clear()
        self.state.is_open = False
        self.state.last_failure_at = None

    def trip_reason(self) -> str | None:
        state = self.state
        if not state.is_open:
            return None
        if state.consecutive_failures >= self.config.max_consecutive_failures:
            return (
                f"{state.consecutive_failures} consecutive failures "
                f"(threshold: {self.config.max_consecutive_failures})"
            )
        worst = max(state.error_fingerprints.values(), default=0)
        if worst >= self.config.max_same_error_count:
            return (
                f"Same error repeated {worst} times "
                f"(threshold: {self.config.max_same_error_count})"
            )
        return "Circuit breaker tripped"

    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            consecutive_failures=self.state.consecutive_failures,
            total_failures=self.state.total_failures,
            unique_errors=len(self.state.error_fingerprints),
            is_open=self.state.is_open,
        )
