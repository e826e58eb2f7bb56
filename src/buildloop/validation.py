from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)

VALIDATION_TIMEOUT_S = 300.0
NPM_DEFAULT_TEST_SCRIPT = 'echo "Error: no test specified" && exit 1'
_SUMMARY_SNIPPET = 200


@dataclass(frozen=True)
class ValidationCommand:
    name: str
    command: str
    args: tuple[str, ...] = ()

    @property
    def display(self) -> str:
        return " ".join((self.command, *self.args))

    @classmethod
    def parse(cls, name: str, text: str) -> ValidationCommand:
        parts = shlex.split(text.strip())
        if not parts:
            raise ValueError(f"Empty validation command for {name!r}")
        return cls(name=name, command=parts[0], args=tuple(parts[1:]))


@dataclass(frozen=True)
class ValidationResult:
    success: bool
    command: str
    output: str
    error: str | None = None


def _agents_md_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"[-*]\s*\*?\*?{name}\*?\*?[:\s]+`([^`]+)`", re.IGNORECASE)


def detect_package_manager(working_dir: Path) -> str:
    if (working_dir / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (working_dir / "yarn.lock").exists():
        return "yarn"
    if (working_dir / "bun.lockb").exists() or (working_dir / "bun.lock").exists():
        return "bun"
    package_json = working_dir / "package.json"
    if package_json.exists():
        try:
            payload = json.loads(package_json.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return "npm"
        declared = str(payload.get("packageManager") or "").split("@")[0]
        if declared in {"pnpm", "yarn", "bun"}:
            return declared
    return "npm"


def run_script_command(manager: str, script: str) -> ValidationCommand:
    if script == "test":
        return ValidationCommand(name=script, command=manager, args=("test",))
    return ValidationCommand(name=script, command=manager, args=("run", script))


def detect_validation_commands(working_dir: Path) -> list[ValidationCommand]:
    """Discover test/lint/build commands from AGENTS.md, else package.json scripts."""
    commands: list[ValidationCommand] = []
    agents_md = working_dir / "AGENTS.md"
    if agents_md.exists():
        content = agents_md.read_text(encoding="utf-8", errors="replace")
        for name in ("test", "lint", "build"):
            match = _agents_md_pattern(name).search(content)
            if match:
                commands.append(ValidationCommand.parse(name, match.group(1)))
    if commands:
        return commands

    package_json = working_dir / "package.json"
    if not package_json.exists():
        return commands
    try:
        payload = json.loads(package_json.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring invalid package.json in %s", working_dir)
        return commands
    scripts = payload.get("scripts") or {}
    manager = detect_package_manager(working_dir)
    if scripts.get("test") and scripts["test"] != NPM_DEFAULT_TEST_SCRIPT:
        commands.append(run_script_command(manager, "test"))
    for script in ("lint", "build", "typecheck"):
        if scripts.get(script):
            commands.append(run_script_command(manager, script))
    return commands


def run_validation(
    working_dir: Path,
    command: ValidationCommand,
    timeout_s: float = VALIDATION_TIMEOUT_S,
) -> ValidationResult:
    logger.debug("Running validation %s in %s", command.display, working_dir)
    try:
        result = subprocess.run(
            [command.command, *command.args],
            cwd=str(working_dir),
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired:
        return ValidationResult(
            success=False,
            command=command.display,
            output="",
            error=f"{command.display} timed out after {timeout_s:.0f}s",
        )
    except OSError as exc:
        return ValidationResult(success=False, command=command.display, output="", error=str(exc))
    if result.returncode == 0:
        return ValidationResult(success=True, command=command.display, output=result.stdout)
    return ValidationResult(
        success=False,
        command=command.display,
        output=result.stdout,
        error=result.stderr or result.stdout,
    )


def run_all_validations(
    working_dir: Path,
    commands: Sequence[ValidationCommand],
    timeout_s: float = VALIDATION_TIMEOUT_S,
) -> list[ValidationResult]:
    results: list[ValidationResult] = []
    for command in commands:
        result = run_validation(working_dir, command, timeout_s=timeout_s)
        results.append(result)
        if not result.success:
            break
    return results


def all_passed(results: Sequence[ValidationResult]) -> bool:
    return all(result.success for result in results)


def format_validation_feedback(results: Sequence[ValidationResult]) -> str:
    failed = [result for result in results if not result.success]
    if not failed:
        return ""
    lines = ["## Validation Failed\n"]
    for result in failed:
        lines.append(f"### {result.command}")
        lines.append("```")
        lines.append(result.error or result.output)
        lines.append("```\n")
    lines.append("Please fix the above issues before continuing.")
    return "\n".join(lines)


def failure_summary(results: Sequence[ValidationResult]) -> str:
    """Short failure text fed to the circuit breaker for fingerprinting."""
    snippets = [
        (result.error or "")[:_SUMMARY_SNIPPET]
        or (result.output or "")[:_SUMMARY_SNIPPET]
        or result.command
        for result in results
        if not result.success
    ]
    return "\n".join(snippets)


class ValidationGate:
    """Runs check commands for a working directory.

    Explicit ``commands`` override discovery from AGENTS.md / package.json.
    """

    def __init__(
        self,
        commands: Sequence[str] = (),
        timeout_s: float = VALIDATION_TIMEOUT_S,
    ) -> None:
        self.explicit = tuple(
            ValidationCommand.parse(f"check{i + 1}", text) for i, text in enumerate(commands)
        )
        self.timeout_s = timeout_s

    def detect(self, working_dir: Path) -> list[ValidationCommand]:
        if self.explicit:
            return list(self.explicit)
        return detect_validation_commands(working_dir)

    def run(
        self,
        working_dir: Path,
        commands: Sequence[ValidationCommand] | None = None,
    ) -> list[ValidationResult]:
        if commands is None:
            commands = self.detect(working_dir)
        return run_all_validations(working_dir, commands, timeout_s=self.timeout_s)
