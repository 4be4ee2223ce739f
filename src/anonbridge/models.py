from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple

from .errors import ValidationError


MAX_MESSAGE_CHARS = 2000
MAX_SUBJECT_CHARS = 200
MAX_DEPARTMENT_CHARS = 100
MAX_COMMENT_CHARS = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


class Role(str, Enum):
    REQUESTER = "requester"
    RESPONDER = "responder"
    MODERATOR = "moderator"

    @property
    def other(self) -> "Role":
        if self is Role.REQUESTER:
            return Role.RESPONDER
        if self is Role.RESPONDER:
            return Role.REQUESTER
        raise ValueError("moderators are not thread participants")


PARTICIPANT_ROLES = (Role.REQUESTER, Role.RESPONDER)


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class MessageKind(str, Enum):
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ReasonCode(str, Enum):
    HARASSMENT = "harassment"
    SPAM = "spam"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    IDENTITY_DISCLOSURE = "identity_disclosure"
    TECHNICAL_ISSUE = "technical_issue"
    OTHER = "other"


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: Role
    department: str
    handle: str
    created_at_ms: int
    last_active_ms: int
    cohort_year: Optional[int] = None
    active: bool = True

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "handle": self.handle,
            "role": self.role.value,
            "department": self.department,
            "cohort_year": self.cohort_year,
        }


@dataclass(frozen=True)
class Message:
    """An immutable entry of a thread's log; only ``delivery_status`` changes later."""

    message_id: str
    thread_id: str
    seq: int
    sender: Role
    text: str
    kind: MessageKind
    ts_ms: int
    delivery_status: DeliveryStatus = DeliveryStatus.SENT

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "seq": self.seq,
            "from": self.sender.value,
            "text": self.text,
            "kind": self.kind.value,
            "ts_ms": self.ts_ms,
            "delivery_status": self.delivery_status.value,
        }


@dataclass(frozen=True)
class Thread:
    thread_id: str
    requester_id: str
    responder_id: Optional[str]
    subject: str
    department: str
    status: ThreadStatus
    requester_unread: int
    responder_unread: int
    message_count: int
    created_at_ms: int
    updated_at_ms: int
    last_message_at_ms: Optional[int]
    version: int
    last_message: Optional[Message] = None
    messages: Tuple[Message, ...] = ()

    def unread_for(self, role: Role) -> int:
        if role is Role.REQUESTER:
            return self.requester_unread
        if role is Role.RESPONDER:
            return self.responder_unread
        return 0

    def to_api_dict(self, role: Role) -> dict[str, Any]:
        """Shape a thread for one side of the conversation.

        Participant ids are never exposed; each side only sees its own unread
        counter.
        """

        body: dict[str, Any] = {
            "thread_id": self.thread_id,
            "subject": self.subject,
            "department": self.department,
            "status": self.status.value,
            "unread": self.unread_for(role),
            "message_count": self.message_count,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "last_message_at_ms": self.last_message_at_ms,
            "version": self.version,
            "last_message": self.last_message.to_api_dict() if self.last_message else None,
        }
        if self.messages:
            body["messages"] = [message.to_api_dict() for message in self.messages]
        return body


@dataclass(frozen=True)
class Report:
    report_id: str
    reason: ReasonCode
    reported_by_handle: str
    created_at_ms: int
    comment: Optional[str] = None
    subject_message_id: Optional[str] = None
    subject_thread_id: Optional[str] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at_ms: Optional[int] = None

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "reason": self.reason.value,
            "reported_by": self.reported_by_handle,
            "comment": self.comment,
            "message_id": self.subject_message_id,
            "thread_id": self.subject_thread_id,
            "created_at_ms": self.created_at_ms,
            "resolved": self.resolved,
            "resolved_by": self.resolved_by,
            "resolved_at_ms": self.resolved_at_ms,
        }


@dataclass(frozen=True)
class ThreadChange:
    """Pushed to subscribers after a thread mutation is committed."""

    thread_id: str
    change: str
    version: int
    ts_ms: int
    seq: Optional[int] = None
    status: Optional[ThreadStatus] = None

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "change": self.change,
            "version": self.version,
            "ts_ms": self.ts_ms,
            "seq": self.seq,
            "status": self.status.value if self.status else None,
        }


@dataclass(frozen=True)
class ReadReceipt:
    reset_count: int
    messages_marked: int = 0


@dataclass
class ThreadStats:
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    unread: int = 0
    created_last_7_days: int = 0
    created_last_30_days: int = 0

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "unread": self.unread,
            "created_last_7_days": self.created_last_7_days,
            "created_last_30_days": self.created_last_30_days,
        }


def parse_enum(enum_cls, raw: Any, field_name: str):
    """Parse ``raw`` into ``enum_cls`` or raise the taxonomy ValidationError."""

    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}") from None
