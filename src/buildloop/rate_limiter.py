from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
_WAIT_BUFFER_MS = 100


@dataclass(frozen=True)
class RateLimiterConfig:
    max_calls_per_hour: int = 100
    max_calls_per_minute: int = 10
    warning_threshold: float = 0.8


@dataclass(frozen=True)
class RateLimiterStats:
    calls_this_minute: int
    calls_this_hour: int
    minute_limit: int
    hour_limit: int
    is_warning: bool
    is_blocked: bool
    wait_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Sliding-window limiter for agent invocations (per minute and per hour)."""

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or RateLimiterConfig()
        self._clock = clock
        self._sleep = sleep
        self._calls: list[int] = []

    @classmethod
    def per_hour(cls, calls_per_hour: int, **kwargs) -> RateLimiter:
        return cls(RateLimiterConfig(max_calls_per_hour=calls_per_hour), **kwargs)

    def _cleanup(self) -> None:
        cutoff = self._clock() - HOUR_MS
        self._calls = [ts for ts in self._calls if ts > cutoff]

    def _calls_in_window(self, window_ms: int) -> list[int]:
        start = self._clock() - window_ms
        return [ts for ts in self._calls if ts > start]

    def can_make_call(self) -> bool:
        self._cleanup()
        return (
            len(self._calls_in_window(MINUTE_MS)) < self.config.max_calls_per_minute
            and len(self._calls_in_window(HOUR_MS)) < self.config.max_calls_per_hour
        )

    def record_call(self) -> None:
        self._calls.append(self._clock())
        self._cleanup()

    def try_acquire(self) -> bool:
        if not self.can_make_call():
            return False
        self.record_call()
        return True

    def wait_and_acquire(self, max_wait_ms: int = 5 * MINUTE_MS) -> bool:
        started = self._clock()
        while self._clock() - started < max_wait_ms:
            if self.try_acquire():
                return True
            wait_ms = min(self.wait_time(), 5000)
            logger.debug("Rate limited; sleeping %dms", wait_ms)
            self._sleep(max(wait_ms, 1) / 1000)
        return False

    def wait_time(self) -> int:
        """Milliseconds until the next call is allowed (0 when one is allowed now)."""
        self._cleanup()
        now = self._clock()
        minute_calls = self._calls_in_window(MINUTE_MS)
        if len(minute_calls) >= self.config.max_calls_per_minute:
            return min(minute_calls) + MINUTE_MS - now + _WAIT_BUFFER_MS
        hour_calls = self._calls_in_window(HOUR_MS)
        if len(hour_calls) >= self.config.max_calls_per_hour:
            return min(hour_calls) + HOUR_MS - now + _WAIT_BUFFER_MS
        return 0

    def stats(self) -> RateLimiterStats:
        self._cleanup()
        minute = len(self._calls_in_window(MINUTE_MS))
        hour = len(self._calls_in_window(HOUR_MS))
        threshold = self.config.warning_threshold
        is_warning = (
            minute / self.config.max_calls_per_minute >= threshold
            or hour / self.config.max_calls_per_hour >= threshold
        )
        return RateLimiterStats(
            calls_this_minute=minute,
            calls_this_hour=hour,
            minute_limit=self.config.max_calls_per_minute,
            hour_limit=self.config.max_calls_per_hour,
            is_warning=is_warning,
            is_blocked=not self.can_make_call(),
            wait_ms=self.wait_time(),
        )

    def format_stats(self) -> str:
        stats = self.stats()
        parts = [
            f"Minute: {stats.calls_this_minute}/{stats.minute_limit} "
            f"({round(stats.calls_this_minute / stats.minute_limit * 100)}%)",
            f"Hour: {stats.calls_this_hour}/{stats.hour_limit} "
            f"({round(stats.calls_this_hour / stats.hour_limit * 100)}%)",
        ]
        if stats.is_blocked and stats.wait_ms > 0:
            parts.append(f"Blocked - retry in {math.ceil(stats.wait_ms / 1000)}s")
        elif stats.is_warning:
            parts.append("Warning: Approaching rate limit")
        return " | ".join(parts)

    def reset(self) -> None:
        self._calls = []
