from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Optional

from .errors import InvalidParticipant, NotFound, ThreadAlreadyExists, ValidationError
from .identity import ACTOR_COLUMNS, actor_from_row, clean_department
from .messages import clean_text, participant_role
from .models import (
    MAX_SUBJECT_CHARS,
    Message,
    MessageKind,
    Role,
    Thread,
    ThreadStats,
    ThreadStatus,
    _now_ms,
    new_id,
)
from .presence import AvailableResponder, availability_tier
from .records import THREAD_SELECT, insert_message, load_thread, thread_from_row
from .sqlite_backend import SQLiteBackend


logger = logging.getLogger(__name__)

DEFAULT_FIRST_MESSAGE = "Hello, I have a question and would appreciate your guidance."
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
MAX_SEARCH_TERM_CHARS = 200
DAY_MS = 24 * 60 * 60 * 1000

ORDER_COLUMNS = {
    "created_at": "t.created_at_ms",
    "updated_at": "t.updated_at_ms",
    "last_message_at": "t.last_message_at_ms",
}


def _participant_column(role: Role) -> str:
    return "t.requester_id" if role is Role.REQUESTER else "t.responder_id"


def _check_page(limit: int, offset: int, max_limit: int = MAX_PAGE_SIZE) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError("offset must be non-negative")


class ThreadDirectory:
    """Creates and looks up threads, one live thread per requester/responder pair.

    The pair rule is enforced twice: a lookup inside the creating transaction
    and a partial unique index over non-archived threads, which catches a
    writer on another connection.
    """

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create_thread(
        self,
        requester_id: str,
        responder_id: str,
        subject: str,
        department: Optional[str] = None,
        first_message: Optional[str] = None,
    ) -> Thread:
        subject = _clean_subject(subject)
        if department is not None:
            department = clean_department(department)
        seed_text = DEFAULT_FIRST_MESSAGE if first_message is None else clean_text(first_message)

        def create(cursor: sqlite3.Cursor) -> Thread:
            self._require_participant(cursor, requester_id, Role.REQUESTER)
            responder = self._require_participant(cursor, responder_id, Role.RESPONDER)
            existing = self._live_thread_id(cursor, requester_id, responder_id)
            if existing is not None:
                raise ThreadAlreadyExists(existing)

            now_ms = self._now()
            thread_id = new_id("th")
            cursor.execute(
                """
                INSERT INTO threads (
                    thread_id, requester_id, responder_id, subject, department, status,
                    requester_unread, responder_unread, next_seq, version,
                    created_at_ms, updated_at_ms, last_message_at_ms
                ) VALUES (?, ?, ?, ?, ?, ?, 0, 1, 2, 1, ?, ?, ?)
                """,
                (
                    thread_id,
                    requester_id,
                    responder_id,
                    subject,
                    department or responder.department,
                    ThreadStatus.WAITING.value,
                    now_ms,
                    now_ms,
                    now_ms,
                ),
            )
            insert_message(
                cursor,
                Message(
                    message_id=new_id("msg"),
                    thread_id=thread_id,
                    seq=1,
                    sender=Role.REQUESTER,
                    text=seed_text,
                    kind=MessageKind.TEXT,
                    ts_ms=now_ms,
                ),
            )
            return load_thread(cursor, thread_id, include_messages=True)

        try:
            thread = self._backend.write(create)
        except ThreadAlreadyExists as exc:
            logger.debug("thread already exists for pair, existing %s", exc.existing_id)
            raise
        except sqlite3.IntegrityError:
            existing = self._backend.read(lambda conn: self._live_thread_id(conn, requester_id, responder_id))
            if existing is None:
                raise
            logger.debug("lost thread creation race, existing %s", existing)
            raise ThreadAlreadyExists(existing) from None
        logger.info("created thread %s", thread.thread_id)
        return thread

    def get_thread(self, thread_id: str, *, include_messages: bool = True) -> Thread:
        thread = self._backend.read(lambda conn: load_thread(conn, thread_id, include_messages=include_messages))
        if thread is None:
            raise NotFound("thread not found")
        return thread

    def list_threads(
        self,
        actor_id: str,
        role: Role | str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        order_by: str = "created_at",
        ascending: bool = False,
    ) -> list[Thread]:
        role = participant_role(role, "role")
        _check_page(limit, offset)
        order_column = ORDER_COLUMNS.get(order_by)
        if order_column is None:
            raise ValidationError(f"order_by must be one of: {', '.join(ORDER_COLUMNS)}")
        direction = "ASC" if ascending else "DESC"
        query = (
            THREAD_SELECT
            + f" WHERE {_participant_column(role)}=?"
            + f" ORDER BY {order_column} {direction}, t.thread_id {direction} LIMIT ? OFFSET ?"
        )
        rows = self._backend.read(lambda conn: conn.execute(query, (actor_id, limit, offset)).fetchall())
        return [thread_from_row(row) for row in rows]

    def list_available_responders(self, department: Optional[str] = None) -> list[AvailableResponder]:
        query = f"SELECT {ACTOR_COLUMNS} FROM actors WHERE role=? AND active=1"
        params: list[object] = [Role.RESPONDER.value]
        if department is not None:
            query += " AND department=?"
            params.append(clean_department(department))
        query += " ORDER BY last_active_ms DESC, actor_id ASC"
        rows = self._backend.read(lambda conn: conn.execute(query, params).fetchall())
        now_ms = self._now()
        return [
            AvailableResponder(actor=actor, availability=availability_tier(actor.last_active_ms, now_ms))
            for actor in map(actor_from_row, rows)
        ]

    def thread_stats(self, actor_id: str, role: Role | str) -> ThreadStats:
        role = participant_role(role, "role")
        column = _participant_column(role)
        unread = "t.requester_unread" if role is Role.REQUESTER else "t.responder_unread"
        now_ms = self._now()

        def collect(conn: sqlite3.Connection) -> ThreadStats:
            stats = ThreadStats(by_status={status.value: 0 for status in ThreadStatus})
            rows = conn.execute(
                f"""
                SELECT t.status AS status, COUNT(*) AS total, SUM({unread}) AS unread,
                       SUM(CASE WHEN t.created_at_ms >= ? THEN 1 ELSE 0 END) AS week,
                       SUM(CASE WHEN t.created_at_ms >= ? THEN 1 ELSE 0 END) AS month
                FROM threads t WHERE {column}=? GROUP BY t.status
                """,
                (now_ms - 7 * DAY_MS, now_ms - 30 * DAY_MS, actor_id),
            ).fetchall()
            for row in rows:
                stats.by_status[row["status"]] = row["total"]
                stats.total += row["total"]
                stats.unread += row["unread"] or 0
                stats.created_last_7_days += row["week"] or 0
                stats.created_last_30_days += row["month"] or 0
            return stats

        return self._backend.read(collect)

    def search_threads(self, actor_id: str, role: Role | str, term: str, *, limit: int = 20) -> list[Thread]:
        """Return the actor's threads that have a message containing ``term``."""

        role = participant_role(role, "role")
        if not isinstance(term, str) or not term.strip():
            raise ValidationError("search term must not be empty")
        term = term.strip()
        if len(term) > MAX_SEARCH_TERM_CHARS:
            raise ValidationError(f"search term must be at most {MAX_SEARCH_TERM_CHARS} characters")
        _check_page(limit, 0, max_limit=DEFAULT_PAGE_SIZE)
        query = (
            THREAD_SELECT
            + f" WHERE {_participant_column(role)}=?"
            + " AND EXISTS (SELECT 1 FROM messages s WHERE s.thread_id = t.thread_id"
            + " AND instr(lower(s.text), lower(?)) > 0)"
            + " ORDER BY t.last_message_at_ms DESC, t.thread_id DESC LIMIT ?"
        )
        rows = self._backend.read(lambda conn: conn.execute(query, (actor_id, term, limit)).fetchall())
        return [thread_from_row(row) for row in rows]

    @staticmethod
    def _live_thread_id(executor, requester_id: str, responder_id: str) -> Optional[str]:
        row = executor.execute(
            "SELECT thread_id FROM threads WHERE requester_id=? AND responder_id=? AND status != ?",
            (requester_id, responder_id, ThreadStatus.ARCHIVED.value),
        ).fetchone()
        return None if row is None else row["thread_id"]

    @staticmethod
    def _require_participant(cursor: sqlite3.Cursor, actor_id: str, role: Role):
        row = cursor.execute(f"SELECT {ACTOR_COLUMNS} FROM actors WHERE actor_id=?", (actor_id,)).fetchone()
        if row is None:
            raise InvalidParticipant(f"{role.value} not found")
        actor = actor_from_row(row)
        if actor.role is not role or not actor.active:
            raise InvalidParticipant(f"actor is not an active {role.value}")
        return actor


def _clean_subject(subject: object) -> str:
    if not isinstance(subject, str) or not subject.strip():
        raise ValidationError("subject is required")
    subject = subject.strip()
    if len(subject) > MAX_SUBJECT_CHARS:
        raise ValidationError(f"subject must be at most {MAX_SUBJECT_CHARS} characters")
    return subject


