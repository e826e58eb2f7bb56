"""Interpret agent output: did it finish, get stuck, or should the loop continue?

Two layers are combined. The semantic analyzer scores natural-language
completion and stuck phrases by weight; the marker layer looks for explicit
signals (a configured completion promise, ``<promise>COMPLETE</promise>``,
``EXIT_SIGNAL: true``) and older fixed markers such as ``<TASK_DONE>``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

Confidence = Literal["high", "medium", "low"]
CompletionStatus = Literal["done", "blocked", "continue"]

_Weighted = tuple[tuple[re.Pattern[str], float], ...]


def _weighted(*pairs: tuple[str, float]) -> _Weighted:
    return tuple((re.compile(pattern, re.IGNORECASE), weight) for pattern, weight in pairs)


COMPLETION_PATTERNS = _weighted(
    (r"<promise>COMPLETE</promise>", 1.0),
    (r"EXIT_SIGNAL:\s*true", 1.0),
    (r"<TASK_DONE>", 1.0),
    (r"<TASK_COMPLETE>", 1.0),
    (r"all\s+tasks?\s+(are\s+)?completed?", 0.9),
    (r"implementation\s+(is\s+)?complete", 0.9),
    (r"feature\s+(is\s+)?ready", 0.8),
    (r"successfully\s+(implemented|completed|finished)", 0.9),
    (r"no\s+more\s+tasks?\s+(remaining|left)", 0.9),
    (r"everything\s+(is\s+)?(done|working|complete)", 0.7),
    (r"all\s+tests?\s+pass(ing|ed)?", 0.6),
    (r"build\s+succeed(s|ed)?", 0.5),
    (r"ready\s+(for|to)\s+(review|merge|deploy)", 0.8),
    (r"task\s+(has\s+been\s+)?completed", 0.7),
    (r"finished\s+(implementing|coding|writing)", 0.5),
    (r"changes?\s+(have\s+been\s+)?committed", 0.3),
    (r"pushed\s+to\s+(remote|origin)", 0.3),
)

STUCK_PATTERNS = _weighted(
    (r"<TASK_BLOCKED>", 1.0),
    (r"TASK\s+BLOCKED", 1.0),
    (r"cannot\s+proceed", 0.9),
    (r"blocked\s+by", 0.9),
    (r"waiting\s+for\s+(human|user|manual)", 0.9),
    (r"need(s)?\s+(your\s+)?clarification", 0.8),
    (r"require(s)?\s+(human|manual)\s+intervention", 0.9),
    (r"same\s+error\s+again", 0.7),
    (r"stuck\s+(on|at|in)", 0.8),
    (r"unable\s+to\s+(proceed|continue|resolve)", 0.8),
    (r"can'?t\s+(figure\s+out|solve|fix)", 0.6),
    (r"infinite\s+loop", 0.9),
    (r"not\s+sure\s+(how|what)", 0.4),
    (r"need(s)?\s+more\s+(information|context)", 0.5),
    (r"missing\s+(dependency|file|configuration)", 0.6),
    (r"permission\s+denied", 0.7),
    (r"authentication\s+(failed|required)", 0.7),
)

COMPLETION_MARKERS = (
    "<TASK_DONE>",
    "<TASK_COMPLETE>",
    "TASK COMPLETED",
    "All tasks completed",
    "Successfully completed",
)

BLOCKED_MARKERS = (
    "<TASK_BLOCKED>",
    "TASK BLOCKED",
    "Cannot proceed",
    "Blocked:",
)

_PROMISE_TAG = re.compile(r"<promise>COMPLETE</promise>", re.IGNORECASE)
_EXIT_SIGNAL = re.compile(r"EXIT_SIGNAL:\s*true", re.IGNORECASE)


@dataclass(frozen=True)
class AnalysisResult:
    completion_score: float
    stuck_score: float
    confidence: Confidence
    completion_indicators: tuple[str, ...]
    stuck_indicators: tuple[str, ...]


@dataclass(frozen=True)
class CompletionDecision:
    status: CompletionStatus
    reason: str | None = None


def _match(text: str, patterns: _Weighted) -> tuple[float, tuple[str, ...]]:
    total = 0.0
    matches: list[str] = []
    for pattern, weight in patterns:
        found = pattern.search(text)
        if found:
            total += weight
            matches.append(found.group(0))
    return min(total, 1.0), tuple(matches)


def _confidence(completion: float, stuck: float) -> Confidence:
    if completion >= 0.8 and stuck < 0.2:
        return "high"
    if stuck >= 0.8 and completion < 0.2:
        return "high"
    if completion >= 0.5 and stuck >= 0.5:
        return "low"
    if completion < 0.3 and stuck < 0.3:
        return "low"
    return "medium"


def analyze_response(output: str) -> AnalysisResult:
    completion_score, completion = _match(output, COMPLETION_PATTERNS)
    stuck_score, stuck = _match(output, STUCK_PATTERNS)
    return AnalysisResult(
        completion_score=completion_score,
        stuck_score=stuck_score,
        confidence=_confidence(completion_score, stuck_score),
        completion_indicators=completion,
        stuck_indicators=stuck,
    )


def has_exit_signal(output: str) -> bool:
    return bool(_EXIT_SIGNAL.search(output) or _PROMISE_TAG.search(output))


def detect_completion(
    output: str,
    *,
    completion_promise: str | None = None,
    require_exit_signal: bool = False,
    min_completion_indicators: int = 1,
) -> CompletionDecision:
    if completion_promise and completion_promise in output:
        return CompletionDecision("done", "completion promise")
    if _PROMISE_TAG.search(output):
        return CompletionDecision("done", "promise tag")

    analysis = analyze_response(output)
    if analysis.stuck_score >= 0.7 and analysis.confidence != "low":
        return CompletionDecision("blocked", ", ".join(analysis.stuck_indicators))

    upper = output.upper()
    for marker in BLOCKED_MARKERS:
        if marker.upper() in upper:
            return CompletionDecision("blocked", marker)

    explicit = has_exit_signal(output)
    if require_exit_signal:
        if not explicit:
            return CompletionDecision("continue")
        if len(analysis.completion_indicators) >= min_completion_indicators:
            return CompletionDecision("done", "exit signal")

    if (
        analysis.completion_score >= 0.7
        and len(analysis.completion_indicators) >= min_completion_indicators
    ):
        return CompletionDecision("done", "completion indicators")
    if explicit:
        return CompletionDecision("done", "exit signal")

    for marker in COMPLETION_MARKERS:
        if marker.upper() in upper:
            return CompletionDecision("done", marker)
    return CompletionDecision("continue")


def summarize_changes(output: str) -> str:
    lines = [line for line in output.splitlines() if line.strip()]
    for line in lines:
        if "Created" in line or "Added" in line or "Updated" in line:
            return line[:50].strip()
    if lines:
        return lines[0][:50].strip()
    return "Update from build loop"
