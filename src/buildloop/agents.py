from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
MAX_OUTPUT_CHARS = 50_000

_RATE_LIMIT_PATTERNS = (
    re.compile(r"rate[\s_-]?limit", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"usage limit", re.IGNORECASE),
    re.compile(r"quota exceeded", re.IGNORECASE),
)
_RETRY_AFTER = re.compile(
    r"(?:reset|retry)(?:s|ing)?\s+in\s+(\d+)\s*(minute|second|hour)s?", re.IGNORECASE
)
_UNIT_SECONDS = {"second": 1, "minute": 60, "hour": 3600}


class AgentType(str, Enum):
    CLAUDE_CODE = "claude-code"
    CURSOR = "cursor"
    CODEX = "codex"
    OPENCODE = "opencode"


class AgentNotFoundError(RuntimeError):
    pass


@dataclass(frozen=True)
class Agent:
    type: AgentType
    name: str
    command: str
    available: bool = False


AGENTS: dict[AgentType, Agent] = {
    AgentType.CLAUDE_CODE: Agent(AgentType.CLAUDE_CODE, "Claude Code", "claude"),
    AgentType.CURSOR: Agent(AgentType.CURSOR, "Cursor", "cursor"),
    AgentType.CODEX: Agent(AgentType.CODEX, "Codex CLI", "codex"),
    AgentType.OPENCODE: Agent(AgentType.OPENCODE, "OpenCode", "opencode"),
}

PREFERENCE_ORDER = (
    AgentType.CLAUDE_CODE,
    AgentType.CURSOR,
    AgentType.CODEX,
    AgentType.OPENCODE,
)


@dataclass(frozen=True)
class AgentResult:
    exit_code: int
    output: str
    rate_limited: bool = False
    retry_after_s: int | None = None


class AgentInvoker(Protocol):
    def invoke(self, prompt: str, working_dir: Path) -> AgentResult:
        ...


def build_agent_args(
    agent_type: AgentType,
    prompt: str,
    *,
    auto_approve: bool = False,
    max_turns: int | None = None,
) -> list[str]:
    if agent_type is AgentType.CLAUDE_CODE:
        args = ["-p", prompt]
        if auto_approve:
            args.append("--dangerously-skip-permissions")
        if max_turns:
            args.extend(["--max-turns", str(max_turns)])
        return args
    if agent_type is AgentType.CURSOR:
        return ["--agent", prompt]
    if agent_type is AgentType.CODEX:
        return ["-p", prompt, *(["--auto-approve"] if auto_approve else [])]
    if agent_type is AgentType.OPENCODE:
        return ["-p", prompt, *(["--auto"] if auto_approve else [])]
    raise AgentNotFoundError(f"Unknown agent type: {agent_type}")


def detect_rate_limit(output: str) -> tuple[bool, int | None]:
    if not any(pattern.search(output) for pattern in _RATE_LIMIT_PATTERNS):
        return False, None
    match = _RETRY_AFTER.search(output)
    if not match:
        return True, None
    return True, int(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()]


def check_agent_available(agent_type: AgentType) -> bool:
    command = AGENTS[agent_type].command
    if shutil.which(command) is None:
        return False
    try:
        result = subprocess.run(
            [command, "--version"], capture_output=True, text=True, timeout=15
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


def detect_available_agents() -> list[Agent]:
    return [
        Agent(agent.type, agent.name, agent.command, check_agent_available(agent.type))
        for agent in AGENTS.values()
    ]


def detect_best_agent(agents: list[Agent] | None = None) -> Agent | None:
    agents = agents if agents is not None else detect_available_agents()
    available = {agent.type: agent for agent in agents if agent.available}
    for agent_type in PREFERENCE_ORDER:
        if agent_type in available:
            return available[agent_type]
    return None


def find_agent(name: str) -> Agent:
    try:
        agent_type = AgentType(name)
    except ValueError as exc:
        known = ", ".join(t.value for t in AgentType)
        raise AgentNotFoundError(f"Unknown agent '{name}'. Expected one of: {known}") from exc
    if not check_agent_available(agent_type):
        raise AgentNotFoundError(f"Agent '{name}' is not installed or not on PATH")
    template = AGENTS[agent_type]
    return Agent(template.type, template.name, template.command, True)


@dataclass(frozen=True)
class AgentRunner:
    """Runs one agent invocation per loop iteration as a subprocess."""

    agent: Agent
    auto_approve: bool = True
    max_turns: int | None = 10
    timeout_s: float | None = 1800.0

    def invoke(self, prompt: str, working_dir: Path) -> AgentResult:
        args = build_agent_args(
            self.agent.type,
            prompt,
            auto_approve=self.auto_approve,
            max_turns=self.max_turns,
        )
        logger.debug("Invoking %s in %s", self.agent.command, working_dir)
        try:
            result = subprocess.run(
                [self.agent.command, *args],
                cwd=str(working_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                start_new_session=True,
            )
        except subprocess.TimeoutExpired as exc:
            partial = _coerce_text(exc.stdout) + _coerce_text(exc.stderr)
            message = f"{self.agent.name} timed out after {self.timeout_s:.0f}s"
            return AgentResult(exit_code=TIMEOUT_EXIT_CODE, output=_tail(f"{partial}\n{message}"))
        except OSError as exc:
            return AgentResult(exit_code=1, output=str(exc))

        output = _tail((result.stdout or "") + (result.stderr or ""))
        rate_limited = False
        retry_after_s = None
        if result.returncode != 0:
            rate_limited, retry_after_s = detect_rate_limit(output)
        return AgentResult(
            exit_code=result.returncode,
            output=output,
            rate_limited=rate_limited,
            retry_after_s=retry_after_s,
        )


def _coerce_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _tail(text: str) -> str:
    return text[-MAX_OUTPUT_CHARS:]
