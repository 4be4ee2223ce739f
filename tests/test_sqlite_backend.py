import os
import sqlite3
import tempfile
import unittest

from anonbridge.errors import NotFound, Unavailable
from anonbridge.sessions import SQLiteSessionStore
from anonbridge.sqlite_backend import SCHEMA_VERSION, SQLiteBackend

from tests.bridge_util import FakeClock


class SQLiteBackendTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "nested", "bridge.db")
        self.backend = SQLiteBackend(self.db_path, timeout_s=0.05, retries=1)

    def tearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    def test_schema_version_is_recorded_and_reopen_is_stable(self):
        version = self.backend.read(lambda conn: conn.execute("PRAGMA user_version").fetchone()[0])
        self.assertEqual(version, SCHEMA_VERSION)

        reopened = SQLiteBackend(self.db_path)
        try:
            tables = reopened.read(
                lambda conn: {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            )
        finally:
            reopened.close()
        self.assertTrue({"actors", "threads", "messages", "reports", "sessions"} <= tables)

    def test_unknown_schema_version_is_rejected(self):
        self.backend.connection.execute("PRAGMA user_version = 99")

        with self.assertRaises(ValueError):
            SQLiteBackend(self.db_path).close()

    def test_failed_write_rolls_back(self):
        def write_then_fail(cursor: sqlite3.Cursor) -> None:
            cursor.execute("INSERT INTO handles (handle, role, reserved_at_ms) VALUES ('Student#1', 'requester', 1)")
            raise NotFound("nothing")

        with self.assertRaises(NotFound):
            self.backend.write(write_then_fail)

        count = self.backend.read(lambda conn: conn.execute("SELECT COUNT(*) FROM handles").fetchone()[0])
        self.assertEqual(count, 0)

    def test_held_lock_surfaces_unavailable(self):
        self.backend.lock.acquire()
        try:
            with self.assertLogs("anonbridge.sqlite_backend", level="WARNING"):
                with self.assertRaises(Unavailable) as ctx:
                    self.backend.read(lambda conn: conn.execute("SELECT 1").fetchone())
        finally:
            self.backend.lock.release()
        self.assertTrue(ctx.exception.retryable)

    def test_locked_database_surfaces_unavailable(self):
        other = sqlite3.connect(self.db_path, isolation_level=None)
        other.execute("BEGIN EXCLUSIVE")
        try:
            with self.assertRaises(Unavailable):
                self.backend.write(lambda cursor: cursor.execute("DELETE FROM sessions"))
        finally:
            other.execute("ROLLBACK")
            other.close()

    def test_in_memory_store(self):
        backend = SQLiteBackend(":memory:")
        try:
            self.assertEqual(backend.read(lambda conn: conn.execute("SELECT COUNT(*) FROM threads").fetchone()[0]), 0)
        finally:
            backend.close()


class SQLiteSessionStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.backend = SQLiteBackend(os.path.join(self.tmpdir.name, "bridge.db"))
        self.clock = FakeClock()
        self.sessions = SQLiteSessionStore(self.backend, ttl_ms=60_000, now_func=self.clock.now)

    def tearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    def test_sessions_expire(self):
        session = self.sessions.create("ac_1")

        self.assertEqual(self.sessions.get_by_session(session.session_token), session)
        self.clock.advance(61)
        self.assertIsNone(self.sessions.get_by_session(session.session_token))
        self.assertIsNone(self.sessions.get_by_session("st_unknown"))

    def test_invalidate_and_purge(self):
        kept = self.sessions.create("ac_1")
        dropped = self.sessions.create("ac_2")
        self.sessions.invalidate(dropped)
        self.clock.advance(30)
        self.sessions.create("ac_3")
        self.clock.advance(31)

        self.assertEqual(self.sessions.purge_expired(), 1)
        self.assertIsNone(self.sessions.get_by_session(dropped.session_token))
        self.assertIsNone(self.sessions.get_by_session(kept.session_token))


if __name__ == "__main__":
    unittest.main()
