from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import Forbidden, NotFound
from .identity import IdentityIssuer
from .messages import MessageLog, MessageView
from .models import Message, MessageKind, ReadReceipt, ReasonCode, Report, Role, Thread, ThreadStats, ThreadStatus
from .moderation import ModerationSink
from .presence import AvailableResponder
from .threads import ThreadDirectory


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """The caller of one request, resolved from the store for that request only."""

    actor_id: str
    role: Role
    handle: str
    is_moderator: bool = False

    def participates_in(self, thread: Thread) -> bool:
        if self.role is Role.REQUESTER:
            return thread.requester_id == self.actor_id
        if self.role is Role.RESPONDER:
            return thread.responder_id == self.actor_id
        return False


class AccessControl:
    """Per-call, attribute based authorization over the directory and the log.

    Participants only ever see their own threads. A thread someone cannot see
    raises :class:`NotFound`, exactly like a thread that does not exist. The
    moderator capability comes from an explicit grant, not from a role string,
    and every cross-thread access it makes lands in the audit trail.
    """

    def __init__(
        self,
        identity: IdentityIssuer,
        directory: ThreadDirectory,
        log: MessageLog,
        moderation: ModerationSink,
    ) -> None:
        self._identity = identity
        self._directory = directory
        self._log = log
        self._moderation = moderation

    def principal(self, actor_id: str) -> Principal:
        actor = self._identity.get(actor_id)
        if not actor.active:
            raise NotFound("actor not found")
        return Principal(
            actor_id=actor.actor_id,
            role=actor.role,
            handle=actor.handle,
            is_moderator=self._moderation.is_moderator(actor.actor_id),
        )

    def create_thread(
        self,
        principal: Principal,
        responder_id: str,
        subject: str,
        department: Optional[str] = None,
        first_message: Optional[str] = None,
    ) -> Thread:
        if principal.role is not Role.REQUESTER:
            raise Forbidden("only requesters may open threads")
        return self._directory.create_thread(
            principal.actor_id, responder_id, subject, department=department, first_message=first_message
        )

    def list_threads(self, principal: Principal, **options) -> list[Thread]:
        self._require_participant_role(principal)
        return self._directory.list_threads(principal.actor_id, principal.role, **options)

    def thread_stats(self, principal: Principal) -> ThreadStats:
        self._require_participant_role(principal)
        return self._directory.thread_stats(principal.actor_id, principal.role)

    def search_threads(self, principal: Principal, term: str, *, limit: int = 20) -> list[Thread]:
        self._require_participant_role(principal)
        return self._directory.search_threads(principal.actor_id, principal.role, term, limit=limit)

    def list_available_responders(
        self, principal: Principal, department: Optional[str] = None
    ) -> list[AvailableResponder]:
        return self._directory.list_available_responders(department)

    def get_thread(self, principal: Principal, thread_id: str, *, include_messages: bool = True) -> Thread:
        return self._visible_thread(principal, thread_id, "read_thread", include_messages=include_messages)

    def get_messages(self, principal: Principal, thread_id: str, **filters) -> MessageView:
        self._visible_thread(principal, thread_id, "read_messages")
        return self._log.get_messages(thread_id, **filters)

    def append_message(
        self,
        principal: Principal,
        thread_id: str,
        text: str,
        kind: MessageKind | str = MessageKind.TEXT,
    ) -> Message:
        self._participant_thread(principal, thread_id)
        return self._log.append_message(thread_id, principal.role, text, kind, actor_id=principal.actor_id)

    def mark_read(
        self, principal: Principal, thread_id: str, message_ids: Optional[Iterable[str]] = None
    ) -> ReadReceipt:
        self._participant_thread(principal, thread_id)
        return self._log.mark_read(thread_id, principal.role, message_ids)

    def update_status(self, principal: Principal, thread_id: str, status: ThreadStatus | str) -> Thread:
        thread = self._visible_thread(principal, thread_id, "update_status", include_messages=False)
        if principal.participates_in(thread) and principal.role is not Role.RESPONDER:
            raise Forbidden("only the responder may change thread status")
        return self._log.update_status(thread_id, status)

    def file_report(
        self,
        principal: Principal,
        reason: ReasonCode | str,
        comment: Optional[str] = None,
        message_id: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> Report:
        """File a report as ``principal``; referenced content must be visible to them."""

        if message_id is not None:
            try:
                message = self._log.find_message(message_id)
            except NotFound:
                raise NotFound("message not found") from None
            if thread_id is not None and thread_id != message.thread_id:
                raise NotFound("message not found")
            thread_id = message.thread_id
        if thread_id is not None:
            self._visible_thread(principal, thread_id, "report", include_messages=False)
        return self._moderation.file_report(
            reason,
            principal.handle,
            comment=comment,
            subject_message_id=message_id,
            subject_thread_id=thread_id,
        )

    def list_reports(self, principal: Principal, **options) -> list[Report]:
        self._require_moderator(principal)
        self._moderation.record_audit(principal.actor_id, "list_reports")
        return self._moderation.list_reports(**options)

    def resolve_report(self, principal: Principal, report_id: str) -> Report:
        self._require_moderator(principal)
        return self._moderation.resolve_report(report_id, principal.actor_id)

    def _visible_thread(
        self, principal: Principal, thread_id: str, action: str, *, include_messages: bool = False
    ) -> Thread:
        try:
            thread = self._directory.get_thread(thread_id, include_messages=include_messages)
        except NotFound:
            raise NotFound("thread not found") from None
        if principal.participates_in(thread):
            return thread
        if principal.is_moderator:
            self._moderation.record_audit(principal.actor_id, action, thread_id)
            return thread
        logger.debug("actor %s denied %s on a thread it does not participate in", principal.actor_id, action)
        raise NotFound("thread not found")

    def _participant_thread(self, principal: Principal, thread_id: str) -> Thread:
        try:
            thread = self._directory.get_thread(thread_id, include_messages=False)
        except NotFound:
            raise NotFound("thread not found") from None
        if principal.participates_in(thread):
            return thread
        if principal.is_moderator:
            raise Forbidden("moderators cannot write to threads they do not participate in")
        raise NotFound("thread not found")

    @staticmethod
    def _require_participant_role(principal: Principal) -> None:
        if principal.role not in (Role.REQUESTER, Role.RESPONDER):
            raise Forbidden("only requesters and responders have threads")

    @staticmethod
    def _require_moderator(principal: Principal) -> None:
        if not principal.is_moderator:
            raise Forbidden("moderator capability required")
