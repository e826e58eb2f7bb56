import json
import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from buildloop.locks import FileLock, LockTimeoutError, locked, parse_lock_payload


class LockTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.temp_dir.name) / "locks" / "session.lock"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_locked_context_creates_and_removes(self) -> None:
        with locked(self.path) as lock:
            self.assertTrue(lock.held)
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            self.assertEqual(payload["pid"], os.getpid())
        self.assertFalse(self.path.exists())

    def test_live_lock_times_out(self) -> None:
        holder = FileLock(self.path)
        holder.acquire()
        try:
            with self.assertRaises(LockTimeoutError):
                FileLock(self.path, sleep=lambda _s: None).acquire(timeout_s=0)
        finally:
            holder.release()

    def test_dead_owner_lock_is_cleared(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"pid": 999_999}), encoding="utf-8")
        lock = FileLock(self.path)
        with patch("buildloop.locks.pid_alive", return_value=False):
            lock.acquire(timeout_s=0)
        self.assertTrue(lock.held)
        lock.release()

    def test_old_lock_is_stale(self) -> None:
        self.path.parent.mkdir(parents=True)
        created = datetime.now(timezone.utc) - timedelta(minutes=5)
        self.path.write_text(
            json.dumps({"pid": os.getpid(), "created_at": created.isoformat()}), encoding="utf-8"
        )
        lock = FileLock(self.path, stale_after_s=60)
        lock.acquire(timeout_s=0)
        self.assertTrue(lock.held)
        lock.release()

    def test_parse_lock_payload_variants(self) -> None:
        self.assertEqual(parse_lock_payload("123").pid, 123)
        self.assertEqual(parse_lock_payload('{"pid": "45"}').pid, 45)
        self.assertIsNone(parse_lock_payload("garbage").pid)
        info = parse_lock_payload('{"pid": 7, "created_at": "2026-01-01T00:00:00Z"}')
        self.assertEqual(info.created_at.tzinfo, timezone.utc)


if __name__ == "__main__":
    unittest.main()
