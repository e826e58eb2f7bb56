"""LLM quality judge for completed work.

When the loop believes a task is finished, the judge can score the working
tree diff against review criteria. Each criterion yields a 1-10 score; all must
reach their threshold for the verdict to pass.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import httpx

from buildloop.llm import LLMClient

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 6
DEFAULT_WEIGHT = 5
MAX_DIFF_CHARS = 8000
MAX_GUIDELINES_CHARS = 2000
GUIDELINE_FILES = ("CODING_GUIDELINES.md", "CONTRIBUTING.md", ".github/CONTRIBUTING.md", "AGENTS.md")

CRITERION_PROMPTS: dict[str, str] = {
    "code-quality": (
        "Evaluate the overall code quality.\n"
        "Consider clean code principles, duplication, abstraction levels and code smells."
    ),
    "readability": (
        "Evaluate readability.\n"
        "Consider naming, formatting, logical organization and control flow."
    ),
    "error-handling": (
        "Evaluate error handling.\n"
        "Consider meaningful messages, propagation and swallowed errors."
    ),
    "security": (
        "Evaluate security.\n"
        "Consider input validation, hardcoded secrets and injection risks."
    ),
    "test-coverage": (
        "Evaluate tests.\n"
        "Consider critical paths, edge cases and meaningful assertions."
    ),
}

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_SCORE_TEXT = re.compile(r"score[:\s]+(\d+)", re.IGNORECASE)
_CRITERION_LINE = re.compile(
    r"- (code-quality|readability|error-handling|security|test-coverage)(?:\s*\((\d+)\))?",
    re.IGNORECASE,
)
_JUDGE_SECTION = re.compile(r"## LLM Judge.*?(?=\n## |\Z)", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class JudgeCriterion:
    name: str
    description: str
    threshold: int = DEFAULT_THRESHOLD
    weight: int = DEFAULT_WEIGHT
    prompt: str | None = None


DEFAULT_CRITERIA = (
    JudgeCriterion("code-quality", "Code quality"),
    JudgeCriterion("readability", "Readability"),
)


@dataclass(frozen=True)
class CriterionResult:
    criterion: JudgeCriterion
    score: int
    passed: bool
    explanation: str
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True)
class JudgeVerdict:
    passed: bool
    overall_score: float
    results: tuple[CriterionResult, ...] = field(default_factory=tuple)


def load_criteria(working_dir: Path) -> tuple[JudgeCriterion, ...]:
    agents_md = working_dir / "AGENTS.md"
    if not agents_md.exists():
        return DEFAULT_CRITERIA
    section = _JUDGE_SECTION.search(agents_md.read_text(encoding="utf-8", errors="replace"))
    if not section:
        return DEFAULT_CRITERIA
    criteria = tuple(
        JudgeCriterion(
            name=match.group(1).lower(),
            description=match.group(1).lower().replace("-", " "),
            threshold=int(match.group(2)) if match.group(2) else DEFAULT_THRESHOLD,
        )
        for match in _CRITERION_LINE.finditer(section.group(0))
    )
    return criteria or DEFAULT_CRITERIA


def load_guidelines(working_dir: Path) -> str | None:
    for name in GUIDELINE_FILES:
        path = working_dir / name
        if path.exists():
            return path.read_text(encoding="utf-8", errors="replace")[:MAX_GUIDELINES_CHARS]
    return None


def build_evaluation_prompt(
    criterion: JudgeCriterion,
    diff: str,
    task: str,
    guidelines: str | None = None,
) -> str:
    body = criterion.prompt or CRITERION_PROMPTS.get(criterion.name, criterion.description)
    parts = ["You are an expert code reviewer evaluating a change.", f"TASK:\n{task}"]
    if guidelines:
        parts.append(f"PROJECT GUIDELINES:\n{guidelines}")
    parts.extend(
        [
            f"EVALUATION CRITERION: {criterion.description}\n{body}",
            f"CHANGE TO EVALUATE:\n```\n{diff}\n```",
            "Respond ONLY with a JSON object of the form "
            '{"score": <1-10>, "explanation": "<why>", "suggestions": ["<fix>"]}.',
        ]
    )
    return "\n\n".join(parts)


def parse_evaluation(text: str) -> tuple[int, str, tuple[str, ...]]:
    match = _JSON_OBJECT.search(text)
    if match:
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            try:
                score = int(float(payload.get("score") or 5))
            except (TypeError, ValueError):
                score = 5
            suggestions = payload.get("suggestions")
            if not isinstance(suggestions, list):
                suggestions = []
            return (
                max(1, min(10, score)),
                str(payload.get("explanation") or "No explanation provided"),
                tuple(str(item) for item in suggestions),
            )
    score_match = _SCORE_TEXT.search(text)
    score = int(score_match.group(1)) if score_match else 5
    return max(1, min(10, score)), text[:500], ()


class CompletionJudge:
    def __init__(
        self,
        llm: LLMClient,
        criteria: Sequence[JudgeCriterion] = DEFAULT_CRITERIA,
    ) -> None:
        self.llm = llm
        self.criteria = tuple(criteria) or DEFAULT_CRITERIA

    def evaluate(self, task: str, diff: str, working_dir: Path | None = None) -> JudgeVerdict:
        if not diff.strip():
            return JudgeVerdict(passed=True, overall_score=10.0)
        guidelines = load_guidelines(working_dir) if working_dir else None
        results = []
        for criterion in self.criteria:
            prompt = build_evaluation_prompt(criterion, diff[:MAX_DIFF_CHARS], task, guidelines)
            try:
                response = self.llm.generate(prompt)
            except httpx.HTTPError as exc:
                logger.warning("Judge request for %s failed: %s", criterion.name, exc)
                results.append(
                    CriterionResult(criterion, 0, False, f"LLM request failed: {exc}")
                )
                continue
            score, explanation, suggestions = parse_evaluation(response.content)
            results.append(
                CriterionResult(
                    criterion=criterion,
                    score=score,
                    passed=score >= criterion.threshold,
                    explanation=explanation,
                    suggestions=suggestions,
                )
            )
        total_weight = sum(r.criterion.weight for r in results)
        weighted = sum(r.score * r.criterion.weight for r in results)
        overall = round(weighted / total_weight, 1) if total_weight else 0.0
        return JudgeVerdict(
            passed=all(r.passed for r in results),
            overall_score=overall,
            results=tuple(results),
        )


def format_judge_feedback(verdict: JudgeVerdict) -> str:
    status = "PASSED" if verdict.passed else "NEEDS IMPROVEMENT"
    lines = ["## Quality Review", "", f"Overall Score: {verdict.overall_score}/10 - {status}", ""]
    for result in verdict.results:
        mark = "PASS" if result.passed else "FAIL"
        lines.append(
            f"### {result.criterion.description}: {result.score}/10 "
            f"(threshold {result.criterion.threshold}) {mark}"
        )
        lines.append(result.explanation)
        for suggestion in result.suggestions:
            lines.append(f"- {suggestion}")
        lines.append("")
    if not verdict.passed:
        lines.append("Please address the review feedback above before finishing.")
    return "\n".join(lines).rstrip()
