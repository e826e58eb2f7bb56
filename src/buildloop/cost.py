"""Token and cost accounting for loop iterations.

Agent CLIs do not report usage uniformly, so token counts are estimated from
the prompt and output text unless real usage numbers are supplied.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class ModelPricing:
    name: str
    input_per_million: float
    output_per_million: float
    cache_read_per_million: float | None = None


# USD per million tokens; approximate list prices.
MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-opus": ModelPricing("Claude Opus", 15.0, 75.0, 1.5),
    "claude-sonnet": ModelPricing("Claude Sonnet", 3.0, 15.0, 0.3),
    "claude-haiku": ModelPricing("Claude Haiku", 0.25, 1.25, 0.025),
    "gpt-4": ModelPricing("GPT-4", 30.0, 60.0),
    "gpt-4-turbo": ModelPricing("GPT-4 Turbo", 10.0, 30.0),
    "default": ModelPricing("Default", 3.0, 15.0),
}

_CODE_HINT = re.compile(r"```|function|const |let |var |import |export |class |def |async |await ")


@dataclass(frozen=True)
class TokenCount:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class CostEstimate:
    input_cost: float = 0.0
    output_cost: float = 0.0

    @property
    def total(self) -> float:
        return self.input_cost + self.output_cost


@dataclass(frozen=True)
class IterationCost:
    iteration: int
    tokens: TokenCount
    cost: CostEstimate
    cache_savings: float = 0.0
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class CostStats:
    iterations: int
    tokens: TokenCount
    cost: CostEstimate
    avg_tokens_per_iteration: int
    avg_cost_per_iteration: float
    projected_cost: float | None = None
    cache_savings: float = 0.0


def estimate_tokens(text: str) -> int:
    """Rough token count: ~4 chars per token for prose, ~3.5 for code."""
    if not text:
        return 0
    chars_per_token = 3.5 if _CODE_HINT.search(text) else 4.0
    return math.ceil(len(text) / chars_per_token)


def pricing_for(model: str) -> ModelPricing:
    return MODEL_PRICING.get(model, MODEL_PRICING["default"])


def calculate_cost(tokens: TokenCount, pricing: ModelPricing) -> CostEstimate:
    return CostEstimate(
        input_cost=tokens.input_tokens / 1_000_000 * pricing.input_per_million,
        output_cost=tokens.output_tokens / 1_000_000 * pricing.output_per_million,
    )


def format_cost(cost: float) -> str:
    if cost < 0.01:
        return f"{cost * 100:.2f}¢"
    if cost < 1:
        return f"${cost:.3f}"
    return f"${cost:.2f}"


def format_tokens(tokens: int) -> str:
    if tokens < 1000:
        return str(tokens)
    if tokens < 1_000_000:
        return f"{tokens / 1000:.1f}K"
    return f"{tokens / 1_000_000:.2f}M"


class CostTracker:
    def __init__(
        self,
        model: str = "default",
        max_iterations: int | None = None,
        max_cost: float | None = None,
    ) -> None:
        self.model = model
        self.pricing = pricing_for(model)
        self.max_iterations = max_iterations
        self.max_cost = max_cost
        self.iterations: list[IterationCost] = []

    def record_iteration(self, prompt: str, output: str) -> IterationCost:
        return self.record_usage(estimate_tokens(prompt), estimate_tokens(output))

    def record_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_read_tokens: int = 0,
    ) -> IterationCost:
        tokens = TokenCount(input_tokens, output_tokens)
        savings = 0.0
        if cache_read_tokens and self.pricing.cache_read_per_million is not None:
            full = cache_read_tokens / 1_000_000 * self.pricing.input_per_million
            cached = cache_read_tokens / 1_000_000 * self.pricing.cache_read_per_million
            savings = full - cached
        entry = IterationCost(
            iteration=len(self.iterations) + 1,
            tokens=tokens,
            cost=calculate_cost(tokens, self.pricing),
            cache_savings=savings,
        )
        self.iterations.append(entry)
        return entry

    @property
    def total_cost(self) -> float:
        return sum(entry.cost.total for entry in self.iterations)

    def stats(self) -> CostStats:
        count = len(self.iterations)
        if count == 0:
            return CostStats(0, TokenCount(), CostEstimate(), 0, 0.0)
        tokens = TokenCount(
            sum(e.tokens.input_tokens for e in self.iterations),
            sum(e.tokens.output_tokens for e in self.iterations),
        )
        cost = CostEstimate(
            sum(e.cost.input_cost for e in self.iterations),
            sum(e.cost.output_cost for e in self.iterations),
        )
        avg_cost = cost.total / count
        projected = None
        # Projection needs a few samples before it means anything.
        if self.max_iterations and count >= 3 and self.max_iterations > count:
            projected = cost.total + avg_cost * (self.max_iterations - count)
        return CostStats(
            iterations=count,
            tokens=tokens,
            cost=cost,
            avg_tokens_per_iteration=round(tokens.total / count),
            avg_cost_per_iteration=avg_cost,
            projected_cost=projected,
            cache_savings=sum(e.cache_savings for e in self.iterations),
        )

    def format_stats(self) -> str:
        stats = self.stats()
        if stats.iterations == 0:
            return "No iterations recorded"
        lines = [
            f"Tokens: {format_tokens(stats.tokens.total)} "
            f"({format_tokens(stats.tokens.input_tokens)} in / "
            f"{format_tokens(stats.tokens.output_tokens)} out)",
            f"Cost: {format_cost(stats.cost.total)} "
            f"({format_cost(stats.avg_cost_per_iteration)}/iteration avg)",
        ]
        if stats.cache_savings > 0:
            lines.append(f"Cache savings: {format_cost(stats.cache_savings)}")
        if stats.projected_cost is not None:
            lines.append(f"Projected max cost: {format_cost(stats.projected_cost)}")
        return "\n".join(lines)

    def format_summary(self) -> str:
        """Markdown table for the activity log."""
        stats = self.stats()
        if stats.iterations == 0:
            return ""
        rows = [
            ("Total Iterations", str(stats.iterations)),
            ("Total Tokens", format_tokens(stats.tokens.total)),
            ("Input Tokens", format_tokens(stats.tokens.input_tokens)),
            ("Output Tokens", format_tokens(stats.tokens.output_tokens)),
            ("Total Cost", format_cost(stats.cost.total)),
            ("Avg Cost/Iteration", format_cost(stats.avg_cost_per_iteration)),
        ]
        if stats.cache_savings > 0:
            rows.append(("Cache Savings", format_cost(stats.cache_savings)))
        if stats.projected_cost is not None:
            rows.append(("Projected Max Cost", format_cost(stats.projected_cost)))
        lines = ["## Cost Summary", "", "| Metric | Value |", "|--------|-------|"]
        lines.extend(f"| {name} | {value} |" for name, value in rows)
        return "\n".join(lines) + "\n"

    def is_over_budget(self) -> bool:
        if not self.max_cost or self.max_cost <= 0:
            return False
        return self.total_cost >= self.max_cost

    def last(self) -> IterationCost | None:
        return self.iterations[-1] if self.iterations else None

    def reset(self) -> None:
        self.iterations = []
