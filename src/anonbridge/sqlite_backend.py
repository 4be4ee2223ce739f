from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from .errors import Unavailable


logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1
RETRY_BACKOFF_S = 0.05

_V1_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS handles (
        handle TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        reserved_at_ms INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS actors (
        actor_id TEXT PRIMARY KEY,
        role TEXT NOT NULL CHECK (role IN ('requester', 'responder', 'moderator')),
        department TEXT NOT NULL,
        cohort_year INTEGER,
        handle TEXT NOT NULL UNIQUE REFERENCES handles(handle),
        created_at_ms INTEGER NOT NULL,
        last_active_ms INTEGER NOT NULL,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS threads (
        thread_id TEXT PRIMARY KEY,
        requester_id TEXT NOT NULL REFERENCES actors(actor_id),
        responder_id TEXT REFERENCES actors(actor_id),
        subject TEXT NOT NULL,
        department TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('active', 'waiting', 'resolved', 'archived')),
        requester_unread INTEGER NOT NULL DEFAULT 0 CHECK (requester_unread >= 0),
        responder_unread INTEGER NOT NULL DEFAULT 0 CHECK (responder_unread >= 0),
        next_seq INTEGER NOT NULL DEFAULT 1,
        version INTEGER NOT NULL DEFAULT 1,
        created_at_ms INTEGER NOT NULL,
        updated_at_ms INTEGER NOT NULL,
        last_message_at_ms INTEGER
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS threads_live_pair
    ON threads (requester_id, responder_id) WHERE status != 'archived'
    """,
    "CREATE INDEX IF NOT EXISTS threads_by_requester ON threads (requester_id, created_at_ms)",
    "CREATE INDEX IF NOT EXISTS threads_by_responder ON threads (responder_id, created_at_ms)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        message_id TEXT PRIMARY KEY,
        thread_id TEXT NOT NULL REFERENCES threads(thread_id),
        seq INTEGER NOT NULL,
        sender TEXT NOT NULL CHECK (sender IN ('requester', 'responder')),
        text TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('text', 'file', 'image', 'system')),
        ts_ms INTEGER NOT NULL,
        delivery_status TEXT NOT NULL DEFAULT 'sent'
            CHECK (delivery_status IN ('sent', 'delivered', 'read')),
        UNIQUE (thread_id, seq)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reports (
        report_id TEXT PRIMARY KEY,
        reason TEXT NOT NULL,
        reported_by_handle TEXT NOT NULL,
        comment TEXT,
        subject_message_id TEXT,
        subject_thread_id TEXT,
        created_at_ms INTEGER NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        resolved_by TEXT,
        resolved_at_ms INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS moderator_grants (
        actor_id TEXT PRIMARY KEY REFERENCES actors(actor_id),
        granted_by TEXT NOT NULL,
        granted_at_ms INTEGER NOT NULL,
        revoked_at_ms INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS moderation_audit (
        audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
        moderator_id TEXT NOT NULL,
        action TEXT NOT NULL,
        target_id TEXT,
        ts_ms INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_token TEXT PRIMARY KEY,
        actor_id TEXT NOT NULL REFERENCES actors(actor_id),
        expires_at_ms INTEGER NOT NULL
    )
    """,
)


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


class SQLiteBackend:
    """Owns a shared SQLite connection and applies the bridge migrations.

    Every store call goes through :meth:`read` or :meth:`write`. Both bound the
    time spent waiting for the connection lock and for SQLite's own write lock
    by ``timeout_s`` and raise :class:`Unavailable` instead of blocking. Writes
    run in ``BEGIN IMMEDIATE`` transactions so the read-modify-write of a
    thread row is serialized across threads and processes alike.
    """

    def __init__(self, db_path: str, *, timeout_s: float = 5.0, retries: int = 2) -> None:
        self._lock = threading.Lock()
        self._timeout_s = timeout_s
        self._retries = retries
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None, timeout=timeout_s
        )
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    def close(self) -> None:
        self._conn.close()

    def write(self, fn: Callable[[sqlite3.Cursor], T]) -> T:
        """Run ``fn`` in an immediate transaction, retrying when the store is busy.

        ``fn`` may raise a :class:`~anonbridge.errors.BridgeError` to abort;
        the transaction is rolled back and the error propagates untouched.
        """

        return self._with_retries(lambda: self._run_transaction(fn))

    def read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return self._with_retries(lambda: self._run_read(fn))

    @contextmanager
    def _locked(self) -> Iterator[sqlite3.Connection]:
        if not self._lock.acquire(timeout=self._timeout_s):
            raise Unavailable("store timed out")
        try:
            yield self._conn
        finally:
            self._lock.release()

    def _run_transaction(self, fn: Callable[[sqlite3.Cursor], T]) -> T:
        with self._locked() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                result = fn(cursor)
                conn.commit()
                return result
            except sqlite3.OperationalError as exc:
                conn.rollback()
                if _is_busy(exc):
                    raise Unavailable("store busy") from exc
                raise
            except BaseException:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _run_read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._locked() as conn:
            try:
                return fn(conn)
            except sqlite3.OperationalError as exc:
                if _is_busy(exc):
                    raise Unavailable("store busy") from exc
                raise

    def _with_retries(self, call: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return call()
            except Unavailable:
                if attempt >= self._retries:
                    raise
                attempt += 1
                logger.warning("store unavailable, retrying (%d/%d)", attempt, self._retries)
                time.sleep(RETRY_BACKOFF_S * attempt)

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(self._timeout_s * 1000)}")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        for statement in _V1_SCHEMA:
            self._conn.execute(statement)
