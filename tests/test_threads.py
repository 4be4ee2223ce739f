import os
import tempfile
import threading
import unittest
from unittest import mock

from anonbridge.errors import InvalidParticipant, NotFound, ThreadAlreadyExists, ValidationError
from anonbridge.models import Role, ThreadStatus
from anonbridge.presence import Availability
from anonbridge.sqlite_backend import SQLiteBackend
from anonbridge.threads import DEFAULT_FIRST_MESSAGE, ThreadDirectory

from tests.bridge_util import FakeClock, open_runtime


class ThreadDirectoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.runtime = open_runtime(self.tmpdir.name, self.clock)
        self.directory = self.runtime.directory
        self.requester = self.runtime.identity.register("requester", "Physics", 1)
        self.responder = self.runtime.identity.register("responder", "Physics")

    def tearDown(self) -> None:
        self.runtime.backend.close()
        self.tmpdir.cleanup()

    def test_create_seeds_waiting_thread_and_dedups_pair(self):
        thread = self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Help")

        self.assertEqual(thread.status, ThreadStatus.WAITING)
        self.assertEqual(thread.message_count, 1)
        self.assertEqual(len(thread.messages), 1)
        self.assertEqual(thread.messages[0].text, DEFAULT_FIRST_MESSAGE)
        self.assertEqual(thread.messages[0].sender, Role.REQUESTER)
        self.assertEqual(thread.responder_unread, 1)
        self.assertEqual(thread.requester_unread, 0)
        self.assertEqual(thread.department, "Physics")

        with self.assertRaises(ThreadAlreadyExists) as ctx:
            self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Again")
        self.assertEqual(ctx.exception.existing_id, thread.thread_id)

    def test_concurrent_creators_on_separate_connections_get_one_thread(self):
        other_backend = SQLiteBackend(os.path.join(self.tmpdir.name, "bridge.db"))
        self.addCleanup(other_backend.close)
        directories = [self.directory, ThreadDirectory(other_backend, now_func=self.clock.now)]
        barrier = threading.Barrier(len(directories))
        created = []
        duplicates = []
        errors = []

        def create(directory: ThreadDirectory) -> None:
            barrier.wait()
            try:
                created.append(directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Help"))
            except ThreadAlreadyExists as exc:
                duplicates.append(exc.existing_id)
            except Exception as exc:
                errors.append(exc)

        workers = [threading.Thread(target=create, args=(directory,)) for directory in directories]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(created), 1)
        self.assertEqual(duplicates, [created[0].thread_id])
        listed = self.directory.list_threads(self.requester.actor_id, Role.REQUESTER)
        self.assertEqual([thread.thread_id for thread in listed], [created[0].thread_id])

    def test_unique_index_reports_a_creator_the_lookup_missed(self):
        first = self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Help")

        with mock.patch.object(self.directory, "_live_thread_id", side_effect=[None, first.thread_id]) as lookup:
            with self.assertRaises(ThreadAlreadyExists) as ctx:
                self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Again")

        self.assertEqual(ctx.exception.existing_id, first.thread_id)
        self.assertEqual(lookup.call_count, 2)
        listed = self.directory.list_threads(self.requester.actor_id, Role.REQUESTER)
        self.assertEqual([thread.thread_id for thread in listed], [first.thread_id])

    def test_custom_first_message_and_department(self):
        thread = self.directory.create_thread(
            self.requester.actor_id,
            self.responder.actor_id,
            "Lab safety",
            department="Chemistry",
            first_message="  Is the lab open on Sunday?  ",
        )

        self.assertEqual(thread.department, "Chemistry")
        self.assertEqual(thread.last_message.text, "Is the lab open on Sunday?")

    def test_create_rejects_invalid_participants(self):
        other_requester = self.runtime.identity.register("requester", "Physics")

        with self.assertRaises(InvalidParticipant):
            self.directory.create_thread(self.requester.actor_id, "ac_missing", "Help")
        with self.assertRaises(InvalidParticipant):
            self.directory.create_thread(self.requester.actor_id, other_requester.actor_id, "Help")
        self.runtime.identity.deactivate(self.responder.actor_id)
        with self.assertRaises(InvalidParticipant):
            self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Help")

    def test_create_validates_subject_and_first_message(self):
        with self.assertRaises(ValidationError):
            self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "  ")
        with self.assertRaises(ValidationError):
            self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "x" * 201)
        with self.assertRaises(ValidationError):
            self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Help", first_message="")

    def test_archived_thread_frees_the_pair(self):
        first = self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Help")
        self.runtime.log.update_status(first.thread_id, ThreadStatus.ARCHIVED)

        second = self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Help again")

        self.assertNotEqual(first.thread_id, second.thread_id)
        live = [
            thread
            for thread in self.directory.list_threads(self.requester.actor_id, Role.REQUESTER)
            if thread.status is not ThreadStatus.ARCHIVED
        ]
        self.assertEqual([thread.thread_id for thread in live], [second.thread_id])

    def test_get_thread_missing_raises(self):
        with self.assertRaises(NotFound):
            self.directory.get_thread("th_missing")

    def test_list_threads_orders_and_pages(self):
        responders = [self.runtime.identity.register("responder", "Physics") for _ in range(3)]
        created = []
        for responder in responders:
            created.append(self.directory.create_thread(self.requester.actor_id, responder.actor_id, "Q"))
            self.clock.advance(1)

        newest_first = self.directory.list_threads(self.requester.actor_id, Role.REQUESTER)
        oldest_first = self.directory.list_threads(
            self.requester.actor_id, Role.REQUESTER, order_by="created_at", ascending=True
        )
        second_page = self.directory.list_threads(self.requester.actor_id, Role.REQUESTER, limit=2, offset=2)

        self.assertEqual([t.thread_id for t in newest_first], [t.thread_id for t in reversed(created)])
        self.assertEqual([t.thread_id for t in oldest_first], [t.thread_id for t in created])
        self.assertEqual([t.thread_id for t in second_page], [created[0].thread_id])
        self.assertEqual(newest_first[0].messages, ())
        self.assertIsNotNone(newest_first[0].last_message)

        as_responder = self.directory.list_threads(responders[0].actor_id, Role.RESPONDER)
        self.assertEqual([t.thread_id for t in as_responder], [created[0].thread_id])

    def test_list_threads_rejects_bad_options(self):
        with self.assertRaises(ValidationError):
            self.directory.list_threads(self.requester.actor_id, Role.REQUESTER, order_by="subject")
        with self.assertRaises(ValidationError):
            self.directory.list_threads(self.requester.actor_id, Role.REQUESTER, limit=0)
        with self.assertRaises(ValidationError):
            self.directory.list_threads(self.requester.actor_id, Role.REQUESTER, offset=-1)
        with self.assertRaises(ValidationError):
            self.directory.list_threads(self.requester.actor_id, Role.MODERATOR)

    def test_available_responders_report_availability(self):
        idle = self.runtime.identity.register("responder", "Physics")
        self.runtime.identity.register("responder", "Music")
        self.clock.advance(10 * 60)
        self.runtime.identity.touch(self.responder.actor_id)

        responders = self.directory.list_available_responders("Physics")

        by_id = {entry.actor.actor_id: entry.availability for entry in responders}
        self.assertEqual(by_id, {self.responder.actor_id: Availability.ONLINE, idle.actor_id: Availability.RECENTLY_ACTIVE})
        self.assertEqual(responders[0].actor.actor_id, self.responder.actor_id)
        body = responders[0].to_api_dict()
        self.assertEqual(body["responder_id"], self.responder.actor_id)
        self.assertEqual(body["availability"], "online")

    def test_thread_stats(self):
        other = self.runtime.identity.register("responder", "Physics")
        first = self.directory.create_thread(self.requester.actor_id, self.responder.actor_id, "Q1")
        self.clock.advance(10 * 24 * 60 * 60)
        self.directory.create_thread(self.requester.actor_id, other.actor_id, "Q2")
        self.runtime.log.append_message(first.thread_id, Role.RESPONDER, "Answer")

        stats = self.directory.thread_stats(self.requester.actor_id, Role.REQUESTER)

        self.assertEqual(stats.total, 2)
        self.assertEqual(stats.by_status["active"], 1)
        self.assertEqual(stats.by_status["waiting"], 1)
        self.assertEqual(stats.by_status["archived"], 0)
        self.assertEqual(stats.unread, 1)
        self.assertEqual(stats.created_last_7_days, 1)
        self.assertEqual(stats.created_last_30_days, 2)

    def test_search_threads_matches_message_text(self):
        other = self.runtime.identity.register("responder", "Physics")
        first = self.directory.create_thread(
            self.requester.actor_id, self.responder.actor_id, "Q1", first_message="About the Midterm"
        )
        self.directory.create_thread(self.requester.actor_id, other.actor_id, "Q2", first_message="Office hours")

        found = self.directory.search_threads(self.requester.actor_id, Role.REQUESTER, "midterm")

        self.assertEqual([thread.thread_id for thread in found], [first.thread_id])
        self.assertEqual(self.directory.search_threads(other.actor_id, Role.RESPONDER, "midterm"), [])
        with self.assertRaises(ValidationError):
            self.directory.search_threads(self.requester.actor_id, Role.REQUESTER, " ")


if __name__ == "__main__":
    unittest.main()
