from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Iterable, Iterator, Optional

from .errors import NotFound, ThreadArchived, ValidationError
from .models import (
    MAX_MESSAGE_CHARS,
    DeliveryStatus,
    Message,
    MessageKind,
    ReadReceipt,
    Role,
    Thread,
    ThreadChange,
    ThreadStatus,
    _now_ms,
    new_id,
    parse_enum,
)
from .notifier import ChangeNotifier
from .records import MESSAGE_COLUMNS, insert_message, load_thread, message_from_row
from .sqlite_backend import SQLiteBackend


logger = logging.getLogger(__name__)

MAX_MARK_READ_IDS = 500

# Explicit transitions. waiting -> active also happens implicitly on the first
# responder append.
STATUS_TRANSITIONS = {
    ThreadStatus.WAITING: {ThreadStatus.ACTIVE, ThreadStatus.RESOLVED, ThreadStatus.ARCHIVED},
    ThreadStatus.ACTIVE: {ThreadStatus.RESOLVED, ThreadStatus.ARCHIVED},
    ThreadStatus.RESOLVED: {ThreadStatus.ARCHIVED},
    ThreadStatus.ARCHIVED: set(),
}


def clean_text(text: object) -> str:
    if not isinstance(text, str):
        raise ValidationError("text must be a string")
    text = text.strip()
    if not text:
        raise ValidationError("text must not be empty")
    if len(text) > MAX_MESSAGE_CHARS:
        raise ValidationError(f"text must be at most {MAX_MESSAGE_CHARS} characters")
    return text


def participant_role(raw: Role | str, field_name: str = "from") -> Role:
    role = parse_enum(Role, raw, field_name)
    if role is Role.MODERATOR:
        raise ValidationError(f"{field_name} must be requester or responder")
    return role


def _unread_column(role: Role) -> str:
    return "requester_unread" if role is Role.REQUESTER else "responder_unread"


class MessageView:
    """A finite, restartable, lazily filtered view over one thread's messages.

    Nothing touches the store until the view is iterated, and every iteration
    reads afresh. Messages come oldest first. ``filter`` and ``page`` return
    narrowed copies.
    """

    def __init__(
        self,
        backend: SQLiteBackend,
        thread_id: str,
        *,
        kinds: Optional[frozenset[MessageKind]] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> None:
        self._backend = backend
        self.thread_id = thread_id
        self.kinds = kinds
        self.from_ms = from_ms
        self.to_ms = to_ms
        self.limit = limit
        self.offset = offset

    def filter(
        self,
        *,
        kind: MessageKind | str | Iterable[MessageKind | str] | None = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
    ) -> "MessageView":
        kinds = self.kinds
        if kind is not None:
            raw_kinds = [kind] if isinstance(kind, (str, MessageKind)) else list(kind)
            wanted = frozenset(parse_enum(MessageKind, raw, "kind") for raw in raw_kinds)
            kinds = wanted if kinds is None else kinds & wanted
        if from_ms is not None and self.from_ms is not None:
            from_ms = max(from_ms, self.from_ms)
        if to_ms is not None and self.to_ms is not None:
            to_ms = min(to_ms, self.to_ms)
        return MessageView(
            self._backend,
            self.thread_id,
            kinds=kinds,
            from_ms=self.from_ms if from_ms is None else from_ms,
            to_ms=self.to_ms if to_ms is None else to_ms,
            limit=self.limit,
            offset=self.offset,
        )

    def page(self, limit: Optional[int], offset: int = 0) -> "MessageView":
        if limit is not None and limit < 0:
            raise ValidationError("limit must be non-negative")
        if offset < 0:
            raise ValidationError("offset must be non-negative")
        return MessageView(
            self._backend,
            self.thread_id,
            kinds=self.kinds,
            from_ms=self.from_ms,
            to_ms=self.to_ms,
            limit=limit,
            offset=offset,
        )

    def __iter__(self) -> Iterator[Message]:
        where, params = self._where()
        query = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE {where} ORDER BY seq ASC LIMIT ? OFFSET ?"
        params.extend([-1 if self.limit is None else self.limit, self.offset])
        rows = self._backend.read(lambda conn: conn.execute(query, params).fetchall())
        return (message_from_row(row) for row in rows)

    def __len__(self) -> int:
        where, params = self._where()
        total = self._backend.read(
            lambda conn: conn.execute(f"SELECT COUNT(*) FROM messages WHERE {where}", params).fetchone()[0]
        )
        remaining = max(0, total - self.offset)
        return remaining if self.limit is None else min(remaining, self.limit)

    def _where(self) -> tuple[str, list[object]]:
        clauses = ["thread_id=?"]
        params: list[object] = [self.thread_id]
        if self.kinds is not None:
            if not self.kinds:
                clauses.append("0")
            else:
                clauses.append(f"kind IN ({', '.join('?' for _ in self.kinds)})")
                params.extend(sorted(kind.value for kind in self.kinds))
        if self.from_ms is not None:
            clauses.append("ts_ms>=?")
            params.append(self.from_ms)
        if self.to_ms is not None:
            clauses.append("ts_ms<=?")
            params.append(self.to_ms)
        return " AND ".join(clauses), params


class MessageLog:
    """Append-only message storage with unread counters and the status machine.

    Each mutation is one immediate transaction on the thread row: the sequence
    number and the unread counters are advanced in SQL, so concurrent appends
    to one thread are serialized by the store and none of them is lost.
    """

    def __init__(
        self,
        backend: SQLiteBackend,
        notifier: ChangeNotifier | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._notifier = notifier
        self._now = now_func

    def append_message(
        self,
        thread_id: str,
        sender: Role | str,
        text: str,
        kind: MessageKind | str = MessageKind.TEXT,
        *,
        actor_id: Optional[str] = None,
    ) -> Message:
        """Append one message, recording ``actor_id`` as active in the same transaction."""

        sender = participant_role(sender)
        text = clean_text(text)
        kind = parse_enum(MessageKind, kind, "kind")

        def append(cursor: sqlite3.Cursor) -> tuple[Message, int, ThreadStatus]:
            row = cursor.execute(
                "SELECT status, next_seq, version FROM threads WHERE thread_id=?", (thread_id,)
            ).fetchone()
            if row is None:
                raise NotFound("thread not found")
            status = ThreadStatus(row["status"])
            if status is ThreadStatus.ARCHIVED:
                raise ThreadArchived("thread is archived")
            if status is ThreadStatus.WAITING and sender is Role.RESPONDER:
                status = ThreadStatus.ACTIVE

            now_ms = self._now()
            message = Message(
                message_id=new_id("msg"),
                thread_id=thread_id,
                seq=row["next_seq"],
                sender=sender,
                text=text,
                kind=kind,
                ts_ms=now_ms,
            )
            unread = _unread_column(sender.other)
            cursor.execute(
                f"""
                UPDATE threads
                SET next_seq = next_seq + 1,
                    {unread} = {unread} + 1,
                    status = ?,
                    version = version + 1,
                    updated_at_ms = ?,
                    last_message_at_ms = ?
                WHERE thread_id = ?
                """,
                (status.value, now_ms, now_ms, thread_id),
            )
            insert_message(cursor, message)
            if actor_id is not None:
                cursor.execute(
                    "UPDATE actors SET last_active_ms=? WHERE actor_id=? AND last_active_ms<?",
                    (now_ms, actor_id, now_ms),
                )
            return message, row["version"] + 1, status

        message, version, status = self._backend.write(append)
        self._publish(
            ThreadChange(
                thread_id=thread_id,
                change="message",
                version=version,
                ts_ms=message.ts_ms,
                seq=message.seq,
                status=status,
            )
        )
        return message

    def get_messages(
        self,
        thread_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        kind: MessageKind | str | Iterable[MessageKind | str] | None = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
    ) -> MessageView:
        self._require_thread(thread_id)
        view = MessageView(self._backend, thread_id)
        return view.filter(kind=kind, from_ms=from_ms, to_ms=to_ms).page(limit, offset)

    def mark_read(
        self,
        thread_id: str,
        role: Role | str,
        message_ids: Optional[Iterable[str]] = None,
    ) -> ReadReceipt:
        """Reset ``role``'s unread counter and flip the other side's messages to read.

        Calling it again with nothing new to acknowledge is a no-op that
        returns ``reset_count == 0``.
        """

        role = participant_role(role, "role")
        ids: list[str] = []
        if message_ids is not None:
            if isinstance(message_ids, str):
                raise ValidationError("message_ids must be a list")
            raw_ids = list(message_ids)
            if any(not isinstance(message_id, str) for message_id in raw_ids):
                raise ValidationError("message_ids must be strings")
            ids = sorted(set(raw_ids))
            if len(ids) > MAX_MARK_READ_IDS:
                raise ValidationError(f"at most {MAX_MARK_READ_IDS} message_ids per call")

        def mark(cursor: sqlite3.Cursor) -> tuple[ReadReceipt, Optional[int]]:
            unread = _unread_column(role)
            row = cursor.execute(
                f"SELECT {unread} AS unread, version FROM threads WHERE thread_id=?", (thread_id,)
            ).fetchone()
            if row is None:
                raise NotFound("thread not found")
            reset_count = row["unread"]
            marked = 0
            if ids:
                placeholders = ", ".join("?" for _ in ids)
                marked = cursor.execute(
                    f"""
                    UPDATE messages SET delivery_status = ?
                    WHERE thread_id = ? AND sender = ? AND delivery_status != ?
                      AND message_id IN ({placeholders})
                    """,
                    (DeliveryStatus.READ.value, thread_id, role.other.value, DeliveryStatus.READ.value, *ids),
                ).rowcount
            if not reset_count and not marked:
                return ReadReceipt(reset_count=0, messages_marked=0), None
            cursor.execute(
                f"UPDATE threads SET {unread} = 0, version = version + 1, updated_at_ms = ? WHERE thread_id = ?",
                (self._now(), thread_id),
            )
            return ReadReceipt(reset_count=reset_count, messages_marked=marked), row["version"] + 1

        receipt, version = self._backend.write(mark)
        if version is not None:
            self._publish(ThreadChange(thread_id=thread_id, change="read", version=version, ts_ms=self._now()))
        return receipt

    def update_status(self, thread_id: str, status: ThreadStatus | str) -> Thread:
        target = parse_enum(ThreadStatus, status, "status")

        def transition(cursor: sqlite3.Cursor) -> tuple[Thread, bool]:
            row = cursor.execute("SELECT status FROM threads WHERE thread_id=?", (thread_id,)).fetchone()
            if row is None:
                raise NotFound("thread not found")
            current = ThreadStatus(row["status"])
            if current is target:
                return load_thread(cursor, thread_id), False
            if current is ThreadStatus.ARCHIVED:
                raise ThreadArchived("thread is archived")
            if target not in STATUS_TRANSITIONS[current]:
                raise ValidationError(f"cannot move a {current.value} thread to {target.value}")
            cursor.execute(
                "UPDATE threads SET status = ?, version = version + 1, updated_at_ms = ? WHERE thread_id = ?",
                (target.value, self._now(), thread_id),
            )
            return load_thread(cursor, thread_id), True

        thread, changed = self._backend.write(transition)
        if changed:
            logger.info("thread %s moved to %s", thread_id, target.value)
            self._publish(
                ThreadChange(
                    thread_id=thread_id,
                    change="status",
                    version=thread.version,
                    ts_ms=thread.updated_at_ms,
                    status=thread.status,
                )
            )
        return thread

    def find_message(self, message_id: str) -> Message:
        row = self._backend.read(
            lambda conn: conn.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE message_id=?", (message_id,)
            ).fetchone()
        )
        if row is None:
            raise NotFound("message not found")
        return message_from_row(row)

    def _require_thread(self, thread_id: str) -> None:
        row = self._backend.read(
            lambda conn: conn.execute("SELECT 1 FROM threads WHERE thread_id=?", (thread_id,)).fetchone()
        )
        if row is None:
            raise NotFound("thread not found")

    def _publish(self, change: ThreadChange) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.publish(change)
        except Exception:
            logger.warning("change notification failed for thread %s", change.thread_id, exc_info=True)
