import tempfile
import unittest
from unittest import mock

from anonbridge.errors import Forbidden, NotFound, ThreadArchived, Unavailable
from anonbridge.models import ThreadStatus

from tests.bridge_util import FakeClock, open_runtime, register_pair


class AccessControlTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.runtime = open_runtime(self.tmpdir.name, self.clock)
        self.access = self.runtime.access
        self.requester, self.responder = register_pair(self.runtime)
        self.outsider, self.other_responder = register_pair(self.runtime)
        self.thread = self.access.create_thread(self.requester, self.responder.actor_id, "Help")

    def tearDown(self) -> None:
        self.runtime.backend.close()
        self.tmpdir.cleanup()

    def _moderator(self):
        actor = self.runtime.identity.register("moderator", "Student services")
        self.runtime.moderation.grant_moderator(actor.actor_id, "admin")
        return self.access.principal(actor.actor_id)

    def test_participants_see_their_thread(self):
        as_requester = self.access.get_thread(self.requester, self.thread.thread_id)
        as_responder = self.access.get_thread(self.responder, self.thread.thread_id)

        self.assertEqual(as_requester.thread_id, self.thread.thread_id)
        self.assertEqual(as_responder.message_count, 1)
        self.assertEqual([t.thread_id for t in self.access.list_threads(self.responder)], [self.thread.thread_id])

    def test_non_participants_cannot_tell_threads_apart_from_missing_ones(self):
        for principal in (self.outsider, self.other_responder):
            for thread_id in (self.thread.thread_id, "th_missing"):
                with self.subTest(actor=principal.handle, thread_id=thread_id):
                    with self.assertRaises(NotFound) as ctx:
                        self.access.get_messages(principal, thread_id)
                    self.assertEqual(ctx.exception.message, "thread not found")
                    with self.assertRaises(NotFound):
                        self.access.append_message(principal, thread_id, "let me in")
                    with self.assertRaises(NotFound):
                        self.access.mark_read(principal, thread_id)
                    with self.assertRaises(NotFound):
                        self.access.update_status(principal, thread_id, "archived")

        self.assertEqual(self.access.list_threads(self.outsider), [])
        self.assertEqual(self.runtime.directory.get_thread(self.thread.thread_id).message_count, 1)

    def test_role_restrictions(self):
        with self.assertRaises(Forbidden):
            self.access.create_thread(self.responder, self.other_responder.actor_id, "Q")
        with self.assertRaises(Forbidden):
            self.access.update_status(self.requester, self.thread.thread_id, "resolved")

        thread = self.access.update_status(self.responder, self.thread.thread_id, "resolved")
        self.assertEqual(thread.status, ThreadStatus.RESOLVED)

    def test_append_uses_the_principal_side_and_touches_actor(self):
        self.clock.advance(120)

        message = self.access.append_message(self.responder, self.thread.thread_id, "Go on")

        self.assertEqual(message.sender.value, "responder")
        self.assertEqual(self.runtime.identity.get(self.responder.actor_id).last_active_ms, self.clock.now())
        receipt = self.access.mark_read(self.requester, self.thread.thread_id)
        self.assertEqual(receipt.reset_count, 1)

    def test_append_records_activity_without_a_second_store_call(self):
        self.clock.advance(120)

        with mock.patch.object(self.runtime.identity, "touch", side_effect=Unavailable("store timed out")) as touch:
            message = self.access.append_message(self.responder, self.thread.thread_id, "Go on")

        touch.assert_not_called()
        self.assertEqual(message.seq, 2)
        self.assertEqual(self.runtime.directory.get_thread(self.thread.thread_id).message_count, 2)
        self.assertEqual(self.runtime.identity.get(self.responder.actor_id).last_active_ms, self.clock.now())

    def test_refused_append_leaves_activity_untouched(self):
        before = self.runtime.identity.get(self.requester.actor_id).last_active_ms
        self.access.update_status(self.responder, self.thread.thread_id, "archived")
        self.clock.advance(120)

        with self.assertRaises(ThreadArchived):
            self.access.append_message(self.requester, self.thread.thread_id, "hello?")

        self.assertEqual(self.runtime.identity.get(self.requester.actor_id).last_active_ms, before)

    def test_moderator_reads_are_audited_but_writes_are_refused(self):
        moderator = self._moderator()

        thread = self.access.get_thread(moderator, self.thread.thread_id)
        messages = list(self.access.get_messages(moderator, self.thread.thread_id))
        with self.assertRaises(Forbidden):
            self.access.append_message(moderator, self.thread.thread_id, "hello")
        with self.assertLogs("anonbridge.moderation", level="INFO"):
            self.access.update_status(moderator, self.thread.thread_id, "archived")
        with self.assertRaises(ThreadArchived):
            self.access.append_message(self.requester, self.thread.thread_id, "hello?")

        self.assertEqual(thread.thread_id, self.thread.thread_id)
        self.assertEqual(len(messages), 1)
        actions = [
            (entry.moderator_id, entry.action, entry.target_id)
            for entry in reversed(self.runtime.moderation.audit_trail())
        ]
        self.assertEqual(
            actions[1:],
            [
                (moderator.actor_id, "read_thread", self.thread.thread_id),
                (moderator.actor_id, "read_messages", self.thread.thread_id),
                (moderator.actor_id, "update_status", self.thread.thread_id),
            ],
        )

    def test_moderator_role_without_grant_has_no_reach(self):
        actor = self.runtime.identity.register("moderator", "Student services")
        principal = self.access.principal(actor.actor_id)

        self.assertFalse(principal.is_moderator)
        with self.assertRaises(NotFound):
            self.access.get_thread(principal, self.thread.thread_id)
        with self.assertRaises(Forbidden):
            self.access.list_reports(principal)
        with self.assertRaises(Forbidden):
            self.access.list_threads(principal)

    def test_revoked_grant_removes_capability(self):
        moderator = self._moderator()
        self.runtime.moderation.revoke_moderator(moderator.actor_id, "admin")

        with self.assertRaises(NotFound):
            self.access.get_thread(self.access.principal(moderator.actor_id), self.thread.thread_id)

    def test_deactivated_actor_has_no_principal(self):
        self.runtime.identity.deactivate(self.outsider.actor_id)

        with self.assertRaises(NotFound):
            self.access.principal(self.outsider.actor_id)

    def test_report_flow(self):
        moderator = self._moderator()
        reply = self.access.append_message(self.responder, self.thread.thread_id, "rude reply")

        report = self.access.file_report(self.requester, "harassment", "not ok", message_id=reply.message_id)
        with self.assertRaises(NotFound):
            self.access.file_report(self.outsider, "spam", message_id=reply.message_id)
        with self.assertRaises(NotFound):
            self.access.file_report(self.outsider, "spam", thread_id=self.thread.thread_id)
        with self.assertRaises(NotFound):
            self.access.file_report(self.requester, "spam", message_id="msg_missing")
        general = self.access.file_report(self.outsider, "technical_issue", "page hangs")
        with self.assertRaises(Forbidden):
            self.access.list_reports(self.requester)

        self.assertEqual(report.reported_by_handle, self.requester.handle)
        self.assertEqual(report.subject_thread_id, self.thread.thread_id)
        self.assertIsNone(general.subject_thread_id)
        listed = self.access.list_reports(moderator)
        self.assertEqual({r.report_id for r in listed}, {report.report_id, general.report_id})

        resolved = self.access.resolve_report(moderator, report.report_id)
        self.assertTrue(resolved.resolved)
        self.assertEqual(resolved.resolved_by, moderator.actor_id)
        open_reports = self.access.list_reports(moderator, include_resolved=False)
        self.assertEqual([r.report_id for r in open_reports], [general.report_id])


if __name__ == "__main__":
    unittest.main()
