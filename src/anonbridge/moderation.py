from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import Forbidden, NotFound, RateLimited, ValidationError
from .models import MAX_COMMENT_CHARS, ReasonCode, Report, _now_ms, new_id, parse_enum
from .presence import FixedWindowRateLimiter
from .sqlite_backend import SQLiteBackend


logger = logging.getLogger(__name__)

REPORT_COLUMNS = (
    "report_id, reason, reported_by_handle, comment, subject_message_id, subject_thread_id, "
    "created_at_ms, resolved, resolved_by, resolved_at_ms"
)


@dataclass(frozen=True)
class AuditEntry:
    audit_id: int
    moderator_id: str
    action: str
    target_id: Optional[str]
    ts_ms: int


def _report_from_row(row: sqlite3.Row) -> Report:
    return Report(
        report_id=row["report_id"],
        reason=ReasonCode(row["reason"]),
        reported_by_handle=row["reported_by_handle"],
        comment=row["comment"],
        subject_message_id=row["subject_message_id"],
        subject_thread_id=row["subject_thread_id"],
        created_at_ms=row["created_at_ms"],
        resolved=bool(row["resolved"]),
        resolved_by=row["resolved_by"],
        resolved_at_ms=row["resolved_at_ms"],
    )


class ModerationSink:
    """Append-only issue reports plus the moderator capability and its audit trail.

    Reports carry no uniqueness constraint: several people reporting the same
    message is signal. The only mutation is resolution, which needs an active
    moderator grant and is recorded in the audit trail.
    """

    def __init__(
        self,
        backend: SQLiteBackend,
        *,
        reports_per_min: int = 10,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._now = now_func
        self._report_limits = FixedWindowRateLimiter(reports_per_min)

    def file_report(
        self,
        reason: ReasonCode | str,
        reporter_handle: str,
        comment: Optional[str] = None,
        subject_message_id: Optional[str] = None,
        subject_thread_id: Optional[str] = None,
    ) -> Report:
        reason = parse_enum(ReasonCode, reason, "reason")
        if not isinstance(reporter_handle, str) or not reporter_handle:
            raise ValidationError("reporter handle is required")
        if comment is not None:
            if not isinstance(comment, str):
                raise ValidationError("comment must be a string")
            comment = comment.strip() or None
            if comment is not None and len(comment) > MAX_COMMENT_CHARS:
                raise ValidationError(f"comment must be at most {MAX_COMMENT_CHARS} characters")
        for name, value in (("message_id", subject_message_id), ("thread_id", subject_thread_id)):
            if value is not None and (not isinstance(value, str) or not value):
                raise ValidationError(f"{name} must be a non-empty string")

        now_ms = self._now()
        if not self._report_limits.allow(reporter_handle, now_ms):
            raise RateLimited("report rate limit exceeded")

        report = Report(
            report_id=new_id("rp"),
            reason=reason,
            reported_by_handle=reporter_handle,
            comment=comment,
            subject_message_id=subject_message_id,
            subject_thread_id=subject_thread_id,
            created_at_ms=now_ms,
        )
        self._backend.write(
            lambda cursor: cursor.execute(
                f"INSERT INTO reports ({REPORT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, NULL)",
                (
                    report.report_id,
                    report.reason.value,
                    report.reported_by_handle,
                    report.comment,
                    report.subject_message_id,
                    report.subject_thread_id,
                    report.created_at_ms,
                ),
            )
        )
        logger.info("report %s filed (%s)", report.report_id, reason.value)
        return report

    def resolve_report(self, report_id: str, moderator_id: str) -> Report:
        """Close a report. Resolving twice keeps the first resolution."""

        if not self.is_moderator(moderator_id):
            raise Forbidden("moderator capability required")
        now_ms = self._now()

        def resolve(cursor: sqlite3.Cursor) -> Report:
            cursor.execute(
                """
                UPDATE reports SET resolved = 1, resolved_by = ?, resolved_at_ms = ?
                WHERE report_id = ? AND resolved = 0
                """,
                (moderator_id, now_ms, report_id),
            )
            row = cursor.execute(f"SELECT {REPORT_COLUMNS} FROM reports WHERE report_id=?", (report_id,)).fetchone()
            if row is None:
                raise NotFound("report not found")
            self._insert_audit(cursor, moderator_id, "resolve_report", report_id, now_ms)
            return _report_from_row(row)

        report = self._backend.write(resolve)
        logger.info("report %s resolved by moderator %s", report_id, moderator_id)
        return report

    def list_reports(self, *, limit: int = 50, offset: int = 0, include_resolved: bool = True) -> list[Report]:
        if not 1 <= limit <= 200:
            raise ValidationError("limit must be between 1 and 200")
        if offset < 0:
            raise ValidationError("offset must be non-negative")
        query = f"SELECT {REPORT_COLUMNS} FROM reports"
        if not include_resolved:
            query += " WHERE resolved = 0"
        query += " ORDER BY created_at_ms DESC, report_id DESC LIMIT ? OFFSET ?"
        rows = self._backend.read(lambda conn: conn.execute(query, (limit, offset)).fetchall())
        return [_report_from_row(row) for row in rows]

    def get_report(self, report_id: str) -> Report:
        row = self._backend.read(
            lambda conn: conn.execute(f"SELECT {REPORT_COLUMNS} FROM reports WHERE report_id=?", (report_id,)).fetchone()
        )
        if row is None:
            raise NotFound("report not found")
        return _report_from_row(row)

    def grant_moderator(self, actor_id: str, granted_by: str) -> None:
        now_ms = self._now()

        def grant(cursor: sqlite3.Cursor) -> None:
            if cursor.execute("SELECT 1 FROM actors WHERE actor_id=?", (actor_id,)).fetchone() is None:
                raise NotFound("actor not found")
            cursor.execute(
                """
                INSERT INTO moderator_grants (actor_id, granted_by, granted_at_ms, revoked_at_ms)
                VALUES (?, ?, ?, NULL)
                ON CONFLICT(actor_id) DO UPDATE SET
                    granted_by = excluded.granted_by,
                    granted_at_ms = excluded.granted_at_ms,
                    revoked_at_ms = NULL
                """,
                (actor_id, granted_by, now_ms),
            )
            self._insert_audit(cursor, granted_by, "grant_moderator", actor_id, now_ms)

        self._backend.write(grant)
        logger.info("moderator capability granted to %s by %s", actor_id, granted_by)

    def revoke_moderator(self, actor_id: str, revoked_by: str) -> None:
        now_ms = self._now()

        def revoke(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                "UPDATE moderator_grants SET revoked_at_ms=? WHERE actor_id=? AND revoked_at_ms IS NULL",
                (now_ms, actor_id),
            )
            self._insert_audit(cursor, revoked_by, "revoke_moderator", actor_id, now_ms)

        self._backend.write(revoke)
        logger.info("moderator capability revoked from %s by %s", actor_id, revoked_by)

    def is_moderator(self, actor_id: str) -> bool:
        row = self._backend.read(
            lambda conn: conn.execute(
                """
                SELECT 1 FROM moderator_grants g JOIN actors a ON a.actor_id = g.actor_id
                WHERE g.actor_id=? AND g.revoked_at_ms IS NULL AND a.active = 1
                """,
                (actor_id,),
            ).fetchone()
        )
        return row is not None

    def record_audit(self, moderator_id: str, action: str, target_id: Optional[str] = None) -> None:
        now_ms = self._now()
        self._backend.write(lambda cursor: self._insert_audit(cursor, moderator_id, action, target_id, now_ms))
        logger.info("moderator %s: %s %s", moderator_id, action, target_id or "")

    def audit_trail(self, *, limit: int = 100) -> list[AuditEntry]:
        rows = self._backend.read(
            lambda conn: conn.execute(
                "SELECT audit_id, moderator_id, action, target_id, ts_ms FROM moderation_audit"
                " ORDER BY audit_id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        )
        return [
            AuditEntry(
                audit_id=row["audit_id"],
                moderator_id=row["moderator_id"],
                action=row["action"],
                target_id=row["target_id"],
                ts_ms=row["ts_ms"],
            )
            for row in rows
        ]

    @staticmethod
    def _insert_audit(
        cursor: sqlite3.Cursor, moderator_id: str, action: str, target_id: Optional[str], ts_ms: int
    ) -> None:
        cursor.execute(
            "INSERT INTO moderation_audit (moderator_id, action, target_id, ts_ms) VALUES (?, ?, ?, ?)",
            (moderator_id, action, target_id, ts_ms),
        )
