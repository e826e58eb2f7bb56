import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from buildloop.agents import (
    AGENTS,
    Agent,
    AgentNotFoundError,
    AgentRunner,
    AgentType,
    build_agent_args,
    detect_best_agent,
    detect_rate_limit,
    find_agent,
)


def _completed(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class AgentArgsTests(unittest.TestCase):
    def test_claude_args(self) -> None:
        args = build_agent_args(AgentType.CLAUDE_CODE, "do it", auto_approve=True, max_turns=5)
        self.assertEqual(
            args, ["-p", "do it", "--dangerously-skip-permissions", "--max-turns", "5"]
        )

    def test_other_variants(self) -> None:
        self.assertEqual(build_agent_args(AgentType.CURSOR, "x"), ["--agent", "x"])
        self.assertEqual(
            build_agent_args(AgentType.CODEX, "x", auto_approve=True), ["-p", "x", "--auto-approve"]
        )
        self.assertEqual(build_agent_args(AgentType.OPENCODE, "x"), ["-p", "x"])


class DetectionTests(unittest.TestCase):
    def test_rate_limit_with_retry_hint(self) -> None:
        self.assertEqual(
            detect_rate_limit("Error 429: rate limit hit, retry in 2 minutes"), (True, 120)
        )
        self.assertEqual(detect_rate_limit("Too Many Requests"), (True, None))
        self.assertEqual(detect_rate_limit("compilation failed"), (False, None))

    def test_best_agent_follows_preference(self) -> None:
        agents = [
            Agent(AgentType.CODEX, "Codex CLI", "codex", True),
            Agent(AgentType.CURSOR, "Cursor", "cursor", True),
            Agent(AgentType.CLAUDE_CODE, "Claude Code", "claude", False),
        ]
        self.assertEqual(detect_best_agent(agents).type, AgentType.CURSOR)
        self.assertIsNone(detect_best_agent([]))

    def test_find_agent(self) -> None:
        with (
            patch("buildloop.agents.shutil.which", return_value="/usr/bin/codex"),
            patch("buildloop.agents.subprocess.run", return_value=_completed(0, "1.0")),
        ):
            agent = find_agent("codex")
        self.assertTrue(agent.available)
        self.assertEqual(agent.command, "codex")
        with self.assertRaises(AgentNotFoundError):
            find_agent("vim")
        with patch("buildloop.agents.shutil.which", return_value=None):
            with self.assertRaises(AgentNotFoundError):
                find_agent("cursor")


class AgentRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.runner = AgentRunner(AGENTS[AgentType.CLAUDE_CODE], max_turns=3, timeout_s=10)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_successful_invocation(self) -> None:
        with patch(
            "buildloop.agents.subprocess.run", return_value=_completed(0, "done\n", "warn\n")
        ) as run:
            result = self.runner.invoke("build it", self.root)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.output, "done\nwarn\n")
        self.assertFalse(result.rate_limited)
        args = run.call_args.args[0]
        self.assertEqual(args[0], "claude")
        self.assertIn("--max-turns", args)
        self.assertEqual(run.call_args.kwargs["cwd"], str(self.root))

    def test_rate_limit_only_on_failure(self) -> None:
        with patch(
            "buildloop.agents.subprocess.run",
            return_value=_completed(0, "I read about rate limit handling"),
        ):
            self.assertFalse(self.runner.invoke("x", self.root).rate_limited)
        with patch(
            "buildloop.agents.subprocess.run",
            return_value=_completed(1, "", "usage limit reached, resets in 30 seconds"),
        ):
            result = self.runner.invoke("x", self.root)
        self.assertTrue(result.rate_limited)
        self.assertEqual(result.retry_after_s, 30)

    def test_timeout_maps_to_exit_124(self) -> None:
        with patch(
            "buildloop.agents.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="claude", timeout=10, output=b"partial"),
        ):
            result = self.runner.invoke("x", self.root)
        self.assertEqual(result.exit_code, 124)
        self.assertIn("partial", result.output)
        self.assertIn("timed out", result.output)

    def test_missing_binary(self) -> None:
        with patch("buildloop.agents.subprocess.run", side_effect=FileNotFoundError("claude")):
            result = self.runner.invoke("x", self.root)
        self.assertEqual(result.exit_code, 1)

    def test_output_is_tail_capped(self) -> None:
        with patch(
            "buildloop.agents.subprocess.run", return_value=_completed(0, "a" * 60_000 + "END")
        ):
            result = self.runner.invoke("x", self.root)
        self.assertEqual(len(result.output), 50_000)
        self.assertTrue(result.output.endswith("END"))


if __name__ == "__main__":
    unittest.main()
