"""Row mapping shared by the thread directory and the message log."""

from __future__ import annotations

import sqlite3
from typing import Iterable, Optional, Union

from .models import DeliveryStatus, Message, MessageKind, Role, Thread, ThreadStatus


Executor = Union[sqlite3.Connection, sqlite3.Cursor]

MESSAGE_COLUMNS = "message_id, thread_id, seq, sender, text, kind, ts_ms, delivery_status"

# The last message sits at next_seq - 1 because seq is gap-free per thread.
THREAD_SELECT = """
    SELECT t.thread_id, t.requester_id, t.responder_id, t.subject, t.department, t.status,
           t.requester_unread, t.responder_unread, t.next_seq, t.version,
           t.created_at_ms, t.updated_at_ms, t.last_message_at_ms,
           m.message_id AS lm_message_id, m.seq AS lm_seq, m.sender AS lm_sender,
           m.text AS lm_text, m.kind AS lm_kind, m.ts_ms AS lm_ts_ms,
           m.delivery_status AS lm_delivery_status
    FROM threads t
    LEFT JOIN messages m ON m.thread_id = t.thread_id AND m.seq = t.next_seq - 1
"""


def message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        message_id=row["message_id"],
        thread_id=row["thread_id"],
        seq=row["seq"],
        sender=Role(row["sender"]),
        text=row["text"],
        kind=MessageKind(row["kind"]),
        ts_ms=row["ts_ms"],
        delivery_status=DeliveryStatus(row["delivery_status"]),
    )


def thread_from_row(row: sqlite3.Row, messages: Iterable[Message] = ()) -> Thread:
    last_message: Optional[Message] = None
    if row["lm_message_id"] is not None:
        last_message = Message(
            message_id=row["lm_message_id"],
            thread_id=row["thread_id"],
            seq=row["lm_seq"],
            sender=Role(row["lm_sender"]),
            text=row["lm_text"],
            kind=MessageKind(row["lm_kind"]),
            ts_ms=row["lm_ts_ms"],
            delivery_status=DeliveryStatus(row["lm_delivery_status"]),
        )
    return Thread(
        thread_id=row["thread_id"],
        requester_id=row["requester_id"],
        responder_id=row["responder_id"],
        subject=row["subject"],
        department=row["department"],
        status=ThreadStatus(row["status"]),
        requester_unread=row["requester_unread"],
        responder_unread=row["responder_unread"],
        message_count=row["next_seq"] - 1,
        created_at_ms=row["created_at_ms"],
        updated_at_ms=row["updated_at_ms"],
        last_message_at_ms=row["last_message_at_ms"],
        version=row["version"],
        last_message=last_message,
        messages=tuple(messages),
    )


def load_thread(executor: Executor, thread_id: str, *, include_messages: bool = False) -> Optional[Thread]:
    row = executor.execute(THREAD_SELECT + " WHERE t.thread_id=?", (thread_id,)).fetchone()
    if row is None:
        return None
    messages: list[Message] = []
    if include_messages:
        messages = [
            message_from_row(message_row)
            for message_row in executor.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE thread_id=? ORDER BY seq ASC",
                (thread_id,),
            ).fetchall()
        ]
    return thread_from_row(row, messages)


def insert_message(cursor: sqlite3.Cursor, message: Message) -> None:
    cursor.execute(
        f"INSERT INTO messages ({MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (
            message.message_id,
            message.thread_id,
            message.seq,
            message.sender.value,
            message.text,
            message.kind.value,
            message.ts_ms,
            message.delivery_status.value,
        ),
    )
