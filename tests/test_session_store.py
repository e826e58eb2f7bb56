import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from buildloop.config import LoopOptions, Paths
from buildloop.session import (
    ExitReason,
    InvalidTransitionError,
    IterationOutcome,
    SessionConflictError,
    SessionNotFoundError,
    SessionStatus,
    SessionStore,
    ValidationOutcome,
    can_resume,
    format_session_summary,
)

DEAD_PID = 999_999


class SessionStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name).resolve()
        self.store = SessionStore(lock_timeout_s=1.0)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _create(self, max_iterations: int = 5):
        return self.store.create(
            "Add a login page", self.root, LoopOptions(validate=True), max_iterations, "claude-code"
        )

    def test_create_persists_pending_session(self) -> None:
        session = self._create()
        self.assertEqual(session.status, SessionStatus.PENDING)
        self.assertEqual(session.history, [])
        self.assertTrue(Paths(self.root).session_path.exists())
        self.assertEqual(self.store.load(self.root), session)

    def test_checkpoint_round_trip_with_history(self) -> None:
        session = self._create()
        self.store.mark_running(session)
        session.history.append(
            IterationOutcome(
                index=1,
                agent_exit_code=0,
                agent_output="did things",
                validation=ValidationOutcome(False, "lint failed", ("npm run lint",)),
                warnings=("push failed: no remote",),
            )
        )
        session.iterations_completed = 1
        session.circuit_breaker_state.consecutive_failures = 1
        session.circuit_breaker_state.error_fingerprints["abcd1234"] = 1
        self.store.checkpoint(session)
        self.assertEqual(self.store.load(self.root), session)

    def test_live_running_session_blocks_create(self) -> None:
        session = self._create()
        self.store.mark_running(session)
        self.assertEqual(session.owner_pid, os.getpid())
        with self.assertRaises(SessionConflictError):
            self._create()
        with self.assertRaises(SessionConflictError):
            self.store.resume(self.root)

    def test_stale_running_session_can_be_replaced_or_resumed(self) -> None:
        session = self._create()
        self.store.mark_running(session)
        session.owner_pid = DEAD_PID
        self.store.checkpoint(session)
        with patch("buildloop.session.pid_alive", return_value=False):
            resumed = self.store.resume(self.root)
        self.assertEqual(resumed.status, SessionStatus.RUNNING)
        self.assertEqual(resumed.owner_pid, os.getpid())

    def test_pause_and_resume(self) -> None:
        session = self._create()
        with self.assertRaises(InvalidTransitionError):
            self.store.pause(self.root)
        self.store.mark_running(session)
        paused = self.store.pause(self.root, reason="lunch")
        self.assertEqual(paused.status, SessionStatus.PAUSED)
        self.assertEqual(paused.pause_reason, "lunch")
        self.assertEqual(paused.exit_reason, ExitReason.PAUSED)
        self.assertTrue(self.store.can_resume(paused))

        resumed = self.store.resume(self.root)
        self.assertEqual(resumed.status, SessionStatus.RUNNING)
        self.assertIsNotNone(resumed.resumed_at)
        self.assertIsNone(resumed.pause_reason)
        self.assertIsNone(resumed.exit_reason)
        self.assertFalse(self.store.pause_requested(resumed))

    def test_pause_of_foreign_live_session_leaves_marker(self) -> None:
        session = self._create()
        self.store.mark_running(session)
        session.owner_pid = DEAD_PID
        self.store.checkpoint(session)
        with patch("buildloop.session.pid_alive", return_value=True):
            result = self.store.pause(self.root, reason="operator")
        self.assertEqual(result.status, SessionStatus.RUNNING)
        self.assertEqual(self.store.load(self.root).status, SessionStatus.RUNNING)
        self.assertTrue(self.store.pause_requested(session))
        self.assertEqual(self.store.consume_pause_request(session), "operator")
        self.assertFalse(self.store.pause_requested(session))

    def test_failed_session_needs_force(self) -> None:
        session = self._create()
        self.store.mark_running(session)
        session.status = SessionStatus.FAILED
        session.exit_reason = ExitReason.CIRCUIT_BREAKER
        session.circuit_breaker_state.consecutive_failures = 3
        session.circuit_breaker_state.is_open = True
        session.iterations_completed = 3
        self.store.checkpoint(session)
        with self.assertRaises(InvalidTransitionError) as ctx:
            self.store.resume(self.root)
        self.assertIn("--force", str(ctx.exception))
        resumed = self.store.resume(self.root, force=True)
        self.assertEqual(resumed.status, SessionStatus.RUNNING)
        self.assertEqual(resumed.circuit_breaker_state.consecutive_failures, 3)
        self.assertTrue(resumed.circuit_breaker_state.is_open)

    def test_can_resume_rules(self) -> None:
        session = self._create(max_iterations=2)
        session.status = SessionStatus.COMPLETED
        self.assertFalse(can_resume(session, force=True))
        session.status = SessionStatus.PAUSED
        self.assertTrue(can_resume(session))
        session.iterations_completed = 2
        self.assertFalse(can_resume(session))

    def test_missing_and_corrupt_records(self) -> None:
        self.assertIsNone(self.store.load(self.root))
        with self.assertRaises(SessionNotFoundError):
            self.store.resume(self.root)
        path = Paths(self.root).session_path
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("buildloop.session", level="WARNING"):
            self.assertIsNone(self.store.load(self.root))

    def test_delete(self) -> None:
        self._create()
        self.assertTrue(self.store.delete(self.root))
        self.assertFalse(self.store.delete(self.root))
        self.assertIsNone(self.store.load(self.root))

    def test_record_is_json_with_schema_version(self) -> None:
        session = self._create()
        payload = json.loads(Paths(self.root).session_path.read_text(encoding="utf-8"))
        self.assertEqual(payload["id"], session.id)
        self.assertEqual(payload["schema_version"], 1)
        self.assertTrue(payload["options"]["validate"])

    def test_summary_text(self) -> None:
        session = self._create()
        text = format_session_summary(session)
        self.assertIn("Status: pending", text)
        self.assertIn("Progress: 0/5 iterations", text)


if __name__ == "__main__":
    unittest.main()
