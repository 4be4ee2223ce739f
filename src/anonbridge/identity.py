from __future__ import annotations

import logging
import random
import sqlite3
from typing import Callable, Optional, TypeVar

from .errors import HandleSpaceExhausted, NotFound, ValidationError
from .models import MAX_DEPARTMENT_CHARS, Actor, Role, _now_ms, new_id, parse_enum
from .sqlite_backend import SQLiteBackend


logger = logging.getLogger(__name__)

T = TypeVar("T")

HANDLE_PREFIXES = {
    Role.REQUESTER: "Student",
    Role.RESPONDER: "Faculty",
    Role.MODERATOR: "Moderator",
}
MAX_COHORT_YEAR = 10

ACTOR_COLUMNS = "actor_id, role, department, cohort_year, handle, created_at_ms, last_active_ms, active"


def actor_from_row(row: sqlite3.Row) -> Actor:
    return Actor(
        actor_id=row["actor_id"],
        role=Role(row["role"]),
        department=row["department"],
        cohort_year=row["cohort_year"],
        handle=row["handle"],
        created_at_ms=row["created_at_ms"],
        last_active_ms=row["last_active_ms"],
        active=bool(row["active"]),
    )


class IdentityIssuer:
    """Issues pseudonymous handles and owns the actor registry.

    Handles look like ``Student#417``: a role prefix plus a number drawn from a
    small bounded range. A handle is reserved by inserting it into a table keyed
    on the handle, so the uniqueness check and the reservation are one atomic
    store operation; a collision just draws again, up to ``max_attempts``.
    """

    def __init__(
        self,
        backend: SQLiteBackend,
        *,
        handle_min: int = 100,
        handle_max: int = 998,
        max_attempts: int = 1000,
        rng: random.Random | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        if handle_max < handle_min:
            raise ValueError("handle_max must not be below handle_min")
        self._backend = backend
        self._handle_min = handle_min
        self._handle_max = handle_max
        self._max_attempts = max_attempts
        self._rng = rng or random.SystemRandom()
        self._now = now_func

    def issue_handle(self, role: Role | str) -> str:
        role = parse_enum(Role, role, "role")
        return self._issue(role, lambda cursor, handle: handle)

    def register(self, role: Role | str, department: str, cohort_year: Optional[int] = None) -> Actor:
        """Register an actor; the handle is reserved in the same transaction as the actor row."""

        role = parse_enum(Role, role, "role")
        department = clean_department(department)
        if role is Role.REQUESTER and cohort_year is not None:
            if isinstance(cohort_year, bool) or not isinstance(cohort_year, int):
                raise ValidationError("cohort_year must be an integer")
            if not 1 <= cohort_year <= MAX_COHORT_YEAR:
                raise ValidationError(f"cohort_year must be between 1 and {MAX_COHORT_YEAR}")
        else:
            cohort_year = None

        now_ms = self._now()
        actor_id = new_id("ac")

        def insert(cursor: sqlite3.Cursor, handle: str) -> Actor:
            actor = Actor(
                actor_id=actor_id,
                role=role,
                department=department,
                cohort_year=cohort_year,
                handle=handle,
                created_at_ms=now_ms,
                last_active_ms=now_ms,
            )
            cursor.execute(
                f"INSERT INTO actors ({ACTOR_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, 1)",
                (
                    actor.actor_id,
                    actor.role.value,
                    actor.department,
                    actor.cohort_year,
                    actor.handle,
                    actor.created_at_ms,
                    actor.last_active_ms,
                ),
            )
            return actor

        actor = self._issue(role, insert)
        logger.info("registered %s actor %s", role.value, actor.actor_id)
        return actor

    def get(self, actor_id: str) -> Actor:
        row = self._backend.read(
            lambda conn: conn.execute(
                f"SELECT {ACTOR_COLUMNS} FROM actors WHERE actor_id=?", (actor_id,)
            ).fetchone()
        )
        if row is None:
            raise NotFound("actor not found")
        return actor_from_row(row)

    def touch(self, actor_id: str) -> None:
        now_ms = self._now()
        self._backend.write(
            lambda cursor: cursor.execute(
                "UPDATE actors SET last_active_ms=? WHERE actor_id=? AND last_active_ms<?",
                (now_ms, actor_id, now_ms),
            )
        )

    def deactivate(self, actor_id: str) -> None:
        def update(cursor: sqlite3.Cursor) -> int:
            return cursor.execute("UPDATE actors SET active=0 WHERE actor_id=?", (actor_id,)).rowcount

        if self._backend.write(update) == 0:
            raise NotFound("actor not found")
        logger.info("deactivated actor %s", actor_id)

    def _issue(self, role: Role, claim: Callable[[sqlite3.Cursor, str], T]) -> T:
        prefix = HANDLE_PREFIXES[role]
        for _ in range(self._max_attempts):
            candidate = f"{prefix}#{self._rng.randint(self._handle_min, self._handle_max)}"

            def reserve(cursor: sqlite3.Cursor) -> Optional[T]:
                if not self._reserve(cursor, candidate, role):
                    return None
                return claim(cursor, candidate)

            claimed = self._backend.write(reserve)
            if claimed is not None:
                return claimed
        logger.error("handle space exhausted for role %s after %d attempts", role.value, self._max_attempts)
        raise HandleSpaceExhausted("no free handle could be issued")

    def _reserve(self, cursor: sqlite3.Cursor, handle: str, role: Role) -> bool:
        cursor.execute(
            "INSERT OR IGNORE INTO handles (handle, role, reserved_at_ms) VALUES (?, ?, ?)",
            (handle, role.value, self._now()),
        )
        return cursor.rowcount == 1


def clean_department(department: object) -> str:
    if not isinstance(department, str) or not department.strip():
        raise ValidationError("department is required")
    department = department.strip()
    if len(department) > MAX_DEPARTMENT_CHARS:
        raise ValidationError(f"department must be at most {MAX_DEPARTMENT_CHARS} characters")
    return department
