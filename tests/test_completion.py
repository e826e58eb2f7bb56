import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from buildloop.completion import (
    analyze_response,
    detect_completion,
    has_exit_signal,
    summarize_changes,
)


class CompletionDetectionTests(unittest.TestCase):
    def test_configured_promise(self) -> None:
        decision = detect_completion("work... SHIP_IT", completion_promise="SHIP_IT")
        self.assertEqual(decision.status, "done")
        self.assertEqual(decision.reason, "completion promise")

    def test_promise_tag(self) -> None:
        self.assertEqual(detect_completion("<promise>COMPLETE</promise>").status, "done")

    def test_blocked_output(self) -> None:
        decision = detect_completion("I cannot proceed, blocked by missing credentials.")
        self.assertEqual(decision.status, "blocked")

    def test_natural_language_completion(self) -> None:
        decision = detect_completion("Implementation complete and all tests pass.")
        self.assertEqual(decision.status, "done")
        self.assertEqual(decision.reason, "completion indicators")

    def test_require_exit_signal(self) -> None:
        self.assertEqual(
            detect_completion("All tasks completed", require_exit_signal=True).status, "continue"
        )
        decision = detect_completion(
            "All tasks completed\nEXIT_SIGNAL: true", require_exit_signal=True
        )
        self.assertEqual(decision.status, "done")
        self.assertEqual(decision.reason, "exit signal")

    def test_plain_progress_continues(self) -> None:
        self.assertEqual(detect_completion("Edited two files, more to do").status, "continue")

    def test_exit_signal_helper(self) -> None:
        self.assertTrue(has_exit_signal("EXIT_SIGNAL: TRUE"))
        self.assertFalse(has_exit_signal("EXIT_SIGNAL: false"))


class AnalysisTests(unittest.TestCase):
    def test_scores_are_capped(self) -> None:
        result = analyze_response("All tasks completed. Implementation complete. Feature is ready.")
        self.assertEqual(result.completion_score, 1.0)
        self.assertEqual(result.confidence, "high")
        self.assertGreaterEqual(len(result.completion_indicators), 3)

    def test_mixed_signals_are_low_confidence(self) -> None:
        result = analyze_response("Implementation complete but I cannot proceed with deploy")
        self.assertEqual(result.confidence, "low")

    def test_summarize_changes(self) -> None:
        self.assertEqual(
            summarize_changes("\nthinking\nCreated src/app.py\n"), "Created src/app.py"
        )
        self.assertEqual(summarize_changes("first line\nsecond"), "first line")
        self.assertEqual(summarize_changes(""), "Update from build loop")


if __name__ == "__main__":
    unittest.main()
