import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from fakes import FakeTransport, vtodo

from docket.caldav_client import CalDAVService
from docket.errors import NotFoundError
from docket.models import RemoteObject, SyncReport, TaskListAccount, TaskSyncLink
from docket.repair import OrphanRepairer
from docket.state_store import StateStore
from docket.task_sync import TaskSynchronizer


class TaskSyncTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.transport = FakeTransport()
        self.account = TaskListAccount(account_id="tasks", server_url="https://dav.example.com/")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _sync(self, transport: FakeTransport | None = None) -> SyncReport:
        report = SyncReport()
        TaskSynchronizer(self.store, transport or self.transport).sync(self.account, report)
        return report

    def test_new_local_task_is_pushed_and_rerun_writes_nothing(self) -> None:
        task = self.store.create_task("Buy milk")

        first = self._sync()
        self.assertEqual(first.created_remote, 1)
        link = self.store.get_link(task.task_id, "tasks")
        self.assertIsNotNone(link)
        self.assertIsNotNone(self.transport.get_remote(link.remote_uid))

        writes_before = len(self.transport.writes)
        updated_before = self.store.get_task(task.task_id).updated_at
        second = self._sync()
        self.assertEqual(second.changes_applied, 0)
        self.assertEqual(second.errors, [])
        self.assertEqual(len(self.transport.writes), writes_before)
        self.assertEqual(self.store.get_task(task.task_id).updated_at, updated_before)
        self.assertEqual(self.store.get_link(task.task_id, "tasks"), link)

    def test_round_trip_keeps_fields(self) -> None:
        due = datetime(2024, 3, 1, tzinfo=timezone.utc)
        task = self.store.create_task("Pay rent", status="todo", due_date=due)

        self._sync()
        self._sync()

        after = self.store.get_task(task.task_id)
        self.assertEqual(after.content, "Pay rent")
        self.assertEqual(after.status, "todo")
        self.assertEqual(after.due_date, due)

    def test_push_without_etag_feedback_adopts_remote_etag_next_run(self) -> None:
        transport = FakeTransport(return_etags=False)
        task = self.store.create_task("Water plants")

        self._sync(transport)
        self.assertIsNone(self.store.get_link(task.task_id, "tasks").remote_etag)

        report = self._sync(transport)
        link = self.store.get_link(task.task_id, "tasks")
        self.assertEqual(report.changes_applied, 0)
        self.assertEqual(link.remote_etag, transport.get_remote(link.remote_uid).etag)
        self.assertEqual(self._sync(transport).changes_applied, 0)

    def test_remote_change_is_pulled(self) -> None:
        task = self.store.create_task("Draft report")
        self._sync()
        link = self.store.get_link(task.task_id, "tasks")

        self.transport.put_remote(
            link.remote_uid,
            vtodo(link.remote_uid, "Draft report v2", status="COMPLETED"),
        )
        report = self._sync()

        self.assertEqual(report.updated_local, 1)
        pulled = self.store.get_task(task.task_id)
        self.assertEqual(pulled.content, "Draft report v2")
        self.assertEqual(pulled.status, "done")
        relinked = self.store.get_link(task.task_id, "tasks")
        self.assertEqual(relinked.remote_etag, self.transport.get_remote(link.remote_uid).etag)
        self.assertEqual(relinked.last_synced_at, pulled.updated_at)
        self.assertEqual(self._sync().changes_applied, 0)

    def test_local_edit_wins_over_remote_edit_guarded_by_stored_etag(self) -> None:
        task = self.store.create_task("Local edit")
        synced_at = task.updated_at - timedelta(seconds=10)
        remote = self.transport.put_remote("remote-1", vtodo("remote-1", "Remote edit"), etag="etag-new")
        self.store.upsert_link(
            TaskSyncLink(
                task_id=task.task_id,
                account_id="tasks",
                remote_uid="remote-1",
                remote_etag="etag-old",
                last_synced_at=synced_at,
            )
        )

        first = self._sync()

        self.assertEqual(self.transport.writes, [("update", remote.href, "etag-old")])
        self.assertEqual(self.store.get_task(task.task_id).content, "Local edit")
        self.assertEqual(first.updated_local, 0)
        self.assertEqual(first.conflicts, 1)
        self.assertEqual(len(first.errors), 1)
        link = self.store.get_link(task.task_id, "tasks")
        self.assertEqual(link.remote_etag, "etag-new")
        self.assertEqual(link.last_synced_at, synced_at)

        second = self._sync()
        self.assertEqual(second.updated_remote, 1)
        self.assertEqual(second.errors, [])
        self.assertIn("SUMMARY:Local edit", self.transport.get_remote("remote-1").data)

    def test_local_edit_overwrites_remote_when_server_accepts(self) -> None:
        transport = FakeTransport(enforce_if_match=False)
        task = self.store.create_task("Local edit")
        transport.put_remote("remote-1", vtodo("remote-1", "Remote edit"), etag="etag-new")
        self.store.upsert_link(
            TaskSyncLink(
                task_id=task.task_id,
                account_id="tasks",
                remote_uid="remote-1",
                remote_etag="etag-old",
                last_synced_at=task.updated_at - timedelta(seconds=10),
            )
        )

        report = self._sync(transport)

        self.assertEqual(report.updated_remote, 1)
        self.assertEqual(report.conflicts, 1)
        self.assertIn("SUMMARY:Local edit", transport.get_remote("remote-1").data)
        self.assertEqual(self.store.get_task(task.task_id).content, "Local edit")

    def test_remote_task_is_created_locally(self) -> None:
        self.transport.put_remote("r-1", vtodo("r-1", "From phone", due=datetime(2024, 5, 2).date()))
        self.transport.put_remote("r-2", vtodo("r-2", ""))

        report = self._sync()

        self.assertEqual(report.created_local, 1)
        tasks = self.store.list_tasks()
        self.assertEqual([task.content for task in tasks], ["From phone"])
        self.assertEqual(tasks[0].due_date, datetime(2024, 5, 2, tzinfo=timezone.utc))
        self.assertEqual(self.store.get_link_by_remote_uid("tasks", "r-1").task_id, tasks[0].task_id)
        self.assertEqual(self._sync().changes_applied, 0)

    def test_cancelled_and_blank_local_tasks_are_not_pushed(self) -> None:
        self.store.create_task("Dropped", status="cancelled")
        self.store.create_task("   ")

        report = self._sync()

        self.assertEqual(report.created_remote, 0)
        self.assertEqual(self.transport.objects, {})

    def test_unparseable_remote_object_is_skipped(self) -> None:
        self.transport.put_remote("ok", vtodo("ok", "Fine"))
        broken = RemoteObject(href="https://dav.example.com/broken.ics", data="BEGIN:VTODO\r\nnot ical", etag="x")
        self.transport.objects[broken.href] = broken

        report = self._sync()

        self.assertEqual(report.created_local, 1)
        self.assertEqual(report.errors, [])

    def test_local_delete_propagates_through_tombstone(self) -> None:
        task = self.store.create_task("Temporary")
        self._sync()
        uid = self.store.get_link(task.task_id, "tasks").remote_uid

        self.assertTrue(self.store.delete_task(task.task_id))
        self.assertEqual(self.store.list_tombstones("tasks"), {uid})

        report = self._sync()

        self.assertEqual(report.deleted_remote, 1)
        self.assertIsNone(self.transport.get_remote(uid))
        self.assertEqual(self.store.list_tombstones("tasks"), set())
        self.assertEqual(self.store.list_tasks(), [])

    def test_tombstone_cleared_when_remote_already_gone(self) -> None:
        task = self.store.create_task("Temporary")
        self._sync()
        uid = self.store.get_link(task.task_id, "tasks").remote_uid
        self.store.delete_task(task.task_id)
        self.transport.remove_remote(uid)

        report = self._sync()

        self.assertEqual(report.errors, [])
        self.assertEqual(report.deleted_remote, 0)
        self.assertEqual(self.store.list_tombstones("tasks"), set())

    def test_repair_then_sync_pushes_under_new_uid(self) -> None:
        task = self.store.create_task("Survivor")
        self._sync()
        old_uid = self.store.get_link(task.task_id, "tasks").remote_uid
        self.transport.remove_remote(old_uid)

        result = OrphanRepairer(self.store, self.transport).repair(self.account)

        self.assertEqual(result.scanned_remote, 0)
        self.assertEqual(result.scanned_local_links, 1)
        self.assertEqual(result.orphans_found, 1)
        self.assertEqual(result.repaired_task_ids, [task.task_id])
        self.assertIsNone(self.store.get_link(task.task_id, "tasks"))

        report = self._sync()

        self.assertEqual(report.created_remote, 1)
        new_uid = self.store.get_link(task.task_id, "tasks").remote_uid
        self.assertNotEqual(new_uid, old_uid)
        self.assertIsNotNone(self.transport.get_remote(new_uid))

    def test_repair_aborts_when_no_collection_resolves(self) -> None:
        task = self.store.create_task("Keep my link")
        self._sync()
        link = self.store.get_link(task.task_id, "tasks")
        service = CalDAVService(self.account)

        with mock.patch.object(service, "list_collections", return_value=[]):
            with self.assertRaises(NotFoundError):
                OrphanRepairer(self.store, service).repair(self.account)

        self.assertEqual(self.store.get_link(task.task_id, "tasks"), link)
        actions = [event["action"] for event in self.store.recent_audit_events(account_id="tasks")]
        self.assertNotIn("repair_orphan", actions)

    def test_links_are_scoped_per_account(self) -> None:
        task = self.store.create_task("Shared")
        other_account = TaskListAccount(account_id="work", server_url="https://work.example.com/")
        other_transport = FakeTransport(collection_url="https://work.example.com/tasks/")

        self._sync()
        report = SyncReport()
        TaskSynchronizer(self.store, other_transport).sync(other_account, report)

        self.assertEqual(report.created_remote, 1)
        self.assertIsNotNone(self.store.get_link(task.task_id, "tasks"))
        self.assertIsNotNone(self.store.get_link(task.task_id, "work"))
        self.assertEqual(self._sync().changes_applied, 0)


if __name__ == "__main__":
    unittest.main()
