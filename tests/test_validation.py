import json
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from buildloop.validation import (
    ValidationCommand,
    ValidationGate,
    all_passed,
    detect_package_manager,
    detect_validation_commands,
    failure_summary,
    format_validation_feedback,
    run_all_validations,
)


def _python(name: str, code: str) -> ValidationCommand:
    return ValidationCommand(name=name, command=sys.executable, args=("-c", code))


class DetectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_agents_md_commands(self) -> None:
        (self.root / "AGENTS.md").write_text(
            "# Agents\n\n- **test**: `pytest -q`\n- lint: `ruff check .`\n", encoding="utf-8"
        )
        commands = detect_validation_commands(self.root)
        self.assertEqual([c.name for c in commands], ["test", "lint"])
        self.assertEqual(commands[0].display, "pytest -q")

    def test_package_json_scripts(self) -> None:
        (self.root / "package.json").write_text(
            json.dumps(
                {
                    "scripts": {
                        "test": "vitest",
                        "lint": "eslint .",
                        "build": "tsc",
                    }
                }
            ),
            encoding="utf-8",
        )
        (self.root / "pnpm-lock.yaml").write_text("", encoding="utf-8")
        commands = detect_validation_commands(self.root)
        self.assertEqual(
            [c.display for c in commands], ["pnpm test", "pnpm run lint", "pnpm run build"]
        )

    def test_npm_placeholder_test_script_is_ignored(self) -> None:
        (self.root / "package.json").write_text(
            json.dumps({"scripts": {"test": 'echo "Error: no test specified" && exit 1'}}),
            encoding="utf-8",
        )
        self.assertEqual(detect_validation_commands(self.root), [])
        self.assertEqual(detect_package_manager(self.root), "npm")

    def test_explicit_commands_override_detection(self) -> None:
        (self.root / "AGENTS.md").write_text("- test: `pytest`\n", encoding="utf-8")
        gate = ValidationGate(["make check"])
        self.assertEqual([c.display for c in gate.detect(self.root)], ["make check"])


class RunTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_stops_at_first_failure(self) -> None:
        commands = [
            _python("ok", "print('fine')"),
            _python("bad", "import sys; sys.stderr.write('broken at line 3'); sys.exit(2)"),
            _python("never", "print('unreachable')"),
        ]
        results = run_all_validations(self.root, commands)
        self.assertEqual(len(results), 2)
        self.assertTrue(results[0].success)
        self.assertFalse(all_passed(results))
        self.assertIn("broken at line 3", results[1].error)
        self.assertIn("broken at line 3", failure_summary(results))
        feedback = format_validation_feedback(results)
        self.assertIn("## Validation Failed", feedback)
        self.assertIn("broken at line 3", feedback)

    def test_missing_binary_is_a_failure(self) -> None:
        gate = ValidationGate()
        results = gate.run(
            self.root, [ValidationCommand("test", "definitely-not-a-real-binary-xyz")]
        )
        self.assertFalse(results[0].success)
        self.assertTrue(results[0].error)

    def test_timeout_is_a_failure(self) -> None:
        gate = ValidationGate(timeout_s=0.5)
        results = gate.run(self.root, [_python("slow", "import time; time.sleep(5)")])
        self.assertFalse(results[0].success)
        self.assertIn("timed out", results[0].error)

    def test_all_pass_has_empty_feedback(self) -> None:
        results = run_all_validations(self.root, [_python("ok", "pass")])
        self.assertTrue(all_passed(results))
        self.assertEqual(format_validation_feedback(results), "")

    def test_parse_rejects_empty(self) -> None:
        with self.assertRaises(ValueError):
            ValidationCommand.parse("test", "   ")


if __name__ == "__main__":
    unittest.main()
