from __future__ import annotations

import secrets
import sqlite3
from dataclasses import dataclass
from typing import Callable

from .models import _now_ms
from .sqlite_backend import SQLiteBackend


@dataclass
class Session:
    actor_id: str
    session_token: str
    expires_at_ms: int


class SQLiteSessionStore:
    """Durable bearer sessions bound to an actor id."""

    def __init__(
        self,
        backend: SQLiteBackend,
        ttl_ms: int = 60 * 60 * 1000,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._ttl_ms = ttl_ms
        self._now = now_func

    def create(self, actor_id: str) -> Session:
        session = Session(
            actor_id=actor_id,
            session_token=f"st_{secrets.token_urlsafe(16)}",
            expires_at_ms=self._now() + self._ttl_ms,
        )
        self._backend.write(
            lambda cursor: cursor.execute(
                "INSERT INTO sessions (session_token, actor_id, expires_at_ms) VALUES (?, ?, ?)",
                (session.session_token, session.actor_id, session.expires_at_ms),
            )
        )
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        row = self._backend.read(
            lambda conn: conn.execute(
                "SELECT session_token, actor_id, expires_at_ms FROM sessions WHERE session_token=?",
                (session_token,),
            ).fetchone()
        )
        if row is None:
            return None
        session = Session(actor_id=row["actor_id"], session_token=row["session_token"], expires_at_ms=row["expires_at_ms"])
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._backend.write(
            lambda cursor: cursor.execute("DELETE FROM sessions WHERE session_token=?", (session.session_token,))
        )

    def purge_expired(self) -> int:
        def purge(cursor: sqlite3.Cursor) -> int:
            return cursor.execute("DELETE FROM sessions WHERE expires_at_ms<=?", (self._now(),)).rowcount

        return self._backend.write(purge)
