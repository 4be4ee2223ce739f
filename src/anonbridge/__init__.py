"""Anonymous requester/responder threads: identity, directory, log and moderation."""

from .access import AccessControl, Principal
from .errors import (
    BridgeError,
    Forbidden,
    HandleSpaceExhausted,
    InvalidParticipant,
    NotFound,
    RateLimited,
    ThreadAlreadyExists,
    ThreadArchived,
    Unavailable,
    ValidationError,
)
from .identity import IdentityIssuer
from .messages import MessageLog, MessageView
from .models import Actor, Message, MessageKind, ReasonCode, Report, Role, Thread, ThreadChange, ThreadStatus
from .moderation import ModerationSink
from .notifier import ChangeNotifier, Subscription
from .sqlite_backend import SQLiteBackend
from .threads import ThreadDirectory

__all__ = [
    "AccessControl",
    "Actor",
    "BridgeError",
    "ChangeNotifier",
    "Forbidden",
    "HandleSpaceExhausted",
    "IdentityIssuer",
    "InvalidParticipant",
    "Message",
    "MessageKind",
    "MessageLog",
    "MessageView",
    "ModerationSink",
    "NotFound",
    "Principal",
    "RateLimited",
    "ReasonCode",
    "Report",
    "Role",
    "SQLiteBackend",
    "Subscription",
    "Thread",
    "ThreadAlreadyExists",
    "ThreadArchived",
    "ThreadChange",
    "ThreadDirectory",
    "ThreadStatus",
    "Unavailable",
    "ValidationError",
]
