from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping

STATE_DIR_NAME = ".buildloop"


@dataclass(frozen=True)
class Paths:
    working_dir: Path

    @property
    def state_dir(self) -> Path:
        return self.working_dir / STATE_DIR_NAME

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def activity_path(self) -> Path:
        return self.state_dir / "activity.md"

    @property
    def config_path(self) -> Path:
        return self.state_dir / "config.json"

    @property
    def session_key(self) -> str:
        resolved = str(self.working_dir.resolve())
        return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]

    @property
    def session_path(self) -> Path:
        return self.sessions_dir / f"{self.session_key}.json"

    @property
    def session_lock_path(self) -> Path:
        return self.locks_dir / f"{self.session_key}.lock"


def load_paths(working_dir: Path | None = None) -> Paths:
    resolved = (working_dir or Path.cwd()).resolve()
    return Paths(working_dir=resolved)


def ensure_state_dir(paths: Paths) -> Path:
    """Create the state directory and keep its contents out of version control."""
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    ignore = paths.state_dir / ".gitignore"
    if not ignore.exists():
        ignore.write_text("*\n", encoding="utf-8")
    return paths.state_dir


@dataclass(frozen=True)
class CircuitBreakerConfig:
    max_consecutive_failures: int = 3
    max_same_error_count: int = 5
    cooldown_ms: int = 30_000


@dataclass(frozen=True)
class LoopOptions:
    """Immutable per-session configuration snapshot."""

    validate: bool = False
    commit: bool = False
    push: bool = False
    pr: bool = False
    pr_title: str | None = None
    pr_base: str | None = None
    pr_labels: tuple[str, ...] = ()
    branch: str | None = None
    commit_message: str | None = None
    rate_limit: int | None = None
    completion_promise: str | None = None
    require_exit_signal: bool = False
    min_completion_indicators: int = 1
    check_file_completion: bool = True
    plan_completion: bool = True
    judge: bool = False
    track_progress: bool = True
    auto_approve: bool = True
    max_turns: int | None = 10
    validation_commands: tuple[str, ...] = ()
    iteration_delay_s: float = 1.0
    cost_model: str = "default"
    max_cost: float | None = None
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)


LLMProvider = Literal["openai", "ollama"]


@dataclass(frozen=True)
class LLMSettings:
    provider: LLMProvider
    model: str
    base_url: str
    api_key: str | None = None


@dataclass(frozen=True)
class AgentSettings:
    name: str | None = None
    timeout_s: float | None = 1800.0
    max_iterations: int = 50


@dataclass(frozen=True)
class IntegrationSettings:
    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    linear_api_key: str | None = None
    linear_api_url: str = "https://api.linear.app/graphql"


@dataclass(frozen=True)
class AppConfig:
    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopOptions = field(default_factory=LoopOptions)
    integrations: IntegrationSettings = field(default_factory=IntegrationSettings)
    llm: LLMSettings | None = None


def circuit_breaker_from_dict(payload: Mapping[str, Any] | None) -> CircuitBreakerConfig:
    payload = payload or {}
    return CircuitBreakerConfig(
        max_consecutive_failures=int(payload.get("max_consecutive_failures", 3)),
        max_same_error_count=int(payload.get("max_same_error_count", 5)),
        cooldown_ms=int(payload.get("cooldown_ms", 30_000)),
    )


def circuit_breaker_to_dict(config: CircuitBreakerConfig) -> dict[str, Any]:
    return {
        "max_consecutive_failures": config.max_consecutive_failures,
        "max_same_error_count": config.max_same_error_count,
        "cooldown_ms": config.cooldown_ms,
    }


def loop_options_from_dict(payload: Mapping[str, Any] | None) -> LoopOptions:
    payload = payload or {}
    rate_limit = payload.get("rate_limit")
    max_turns = payload.get("max_turns", 10)
    max_cost = payload.get("max_cost")
    return LoopOptions(
        validate=bool(payload.get("validate", False)),
        commit=bool(payload.get("commit", False)),
        push=bool(payload.get("push", False)),
        pr=bool(payload.get("pr", False)),
        pr_title=payload.get("pr_title"),
        pr_base=payload.get("pr_base"),
        pr_labels=tuple(payload.get("pr_labels") or ()),
        branch=payload.get("branch"),
        commit_message=payload.get("commit_message"),
        rate_limit=int(rate_limit) if rate_limit is not None else None,
        completion_promise=payload.get("completion_promise"),
        require_exit_signal=bool(payload.get("require_exit_signal", False)),
        min_completion_indicators=int(payload.get("min_completion_indicators", 1)),
        check_file_completion=bool(payload.get("check_file_completion", True)),
        plan_completion=bool(payload.get("plan_completion", True)),
        judge=bool(payload.get("judge", False)),
        track_progress=bool(payload.get("track_progress", True)),
        auto_approve=bool(payload.get("auto_approve", True)),
        max_turns=int(max_turns) if max_turns is not None else None,
        validation_commands=tuple(payload.get("validation_commands") or ()),
        iteration_delay_s=float(payload.get("iteration_delay_s", 1.0)),
        cost_model=str(payload.get("cost_model") or "default"),
        max_cost=float(max_cost) if max_cost is not None else None,
        circuit_breaker=circuit_breaker_from_dict(payload.get("circuit_breaker")),
    )


def loop_options_to_dict(options: LoopOptions) -> dict[str, Any]:
    return {
        "validate": options.validate,
        "commit": options.commit,
        "push": options.push,
        "pr": options.pr,
        "pr_title": options.pr_title,
        "pr_base": options.pr_base,
        "pr_labels": list(options.pr_labels),
        "branch": options.branch,
        "commit_message": options.commit_message,
        "rate_limit": options.rate_limit,
        "completion_promise": options.completion_promise,
        "require_exit_signal": options.require_exit_signal,
        "min_completion_indicators": options.min_completion_indicators,
        "check_file_completion": options.check_file_completion,
        "plan_completion": options.plan_completion,
        "judge": options.judge,
        "track_progress": options.track_progress,
        "auto_approve": options.auto_approve,
        "max_turns": options.max_turns,
        "validation_commands": list(options.validation_commands),
        "iteration_delay_s": options.iteration_delay_s,
        "cost_model": options.cost_model,
        "max_cost": options.max_cost,
        "circuit_breaker": circuit_breaker_to_dict(options.circuit_breaker),
    }


def load_config(path: Path, env: Mapping[str, str] | None = None) -> AppConfig:
    """Build the application config from ``path`` (optional) and ``env``.

    Environment values only fill secrets that the file leaves empty; this is
    the single place where the process environment is consulted.
    """
    payload: dict[str, Any] = {}
    if path.exists():
        payload = json.loads(path.read_text(encoding="utf-8"))
    env = env or {}
    agent = payload.get("agent", {})
    integrations = payload.get("integrations", {})
    llm = payload.get("llm")
    timeout_s = agent.get("timeout_s", 1800.0)
    llm_settings: LLMSettings | None = None
    if llm:
        llm_settings = LLMSettings(
            provider=llm["provider"],
            model=llm["model"],
            base_url=llm["base_url"],
            api_key=llm.get("api_key") or env.get("OPENAI_API_KEY"),
        )
    return AppConfig(
        agent=AgentSettings(
            name=agent.get("name"),
            timeout_s=float(timeout_s) if timeout_s is not None else None,
            max_iterations=int(agent.get("max_iterations", 50)),
        ),
        loop=loop_options_from_dict(payload.get("loop")),
        integrations=IntegrationSettings(
            github_token=integrations.get("github_token") or env.get("GITHUB_TOKEN"),
            github_api_url=str(integrations.get("github_api_url", "https://api.github.com")),
            linear_api_key=integrations.get("linear_api_key") or env.get("LINEAR_API_KEY"),
            linear_api_url=str(
                integrations.get("linear_api_url", "https://api.linear.app/graphql")
            ),
        ),
        llm=llm_settings,
    )


def save_config(path: Path, config: AppConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload: dict[str, Any] = {
        "agent": {
            "name": config.agent.name,
            "timeout_s": config.agent.timeout_s,
            "max_iterations": config.agent.max_iterations,
        },
        "loop": loop_options_to_dict(config.loop),
        "integrations": {
            "github_api_url": config.integrations.github_api_url,
            "linear_api_url": config.integrations.linear_api_url,
        },
    }
    if config.llm is not None:
        payload["llm"] = {
            "provider": config.llm.provider,
            "model": config.llm.model,
            "base_url": config.llm.base_url,
        }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
