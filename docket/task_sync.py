from __future__ import annotations

import logging
import uuid
from typing import Any

from docket.errors import AccountConnectionError, ConflictWriteError, NotFoundError, SyncError
from docket.ical_codec import local_status, parse_task, serialize_task
from docket.models import (
    AccountConfig,
    Deadline,
    LocalTask,
    RemoteObject,
    SyncReport,
    TaskFields,
    TaskSyncLink,
    utc_now,
)
from docket.reconciler import ADOPT_ETAG, PULL, PUSH, decide
from docket.state_store import StateStore

logger = logging.getLogger(__name__)

SKIPPED_LOCAL_STATUSES = {"cancelled"}


class TaskSynchronizer:
    def __init__(self, state_store: StateStore, transport: Any, run_id: int | None = None) -> None:
        self.state_store = state_store
        self.transport = transport
        self.run_id = run_id

    def _checkpoint(self, deadline: Deadline | None) -> None:
        if deadline is not None:
            deadline.check()

    def _audit(self, account: AccountConfig, uid: str, action: str, **details: Any) -> None:
        self.state_store.record_audit_event(
            account_id=account.account_id,
            uid=uid,
            action=action,
            details=details,
            run_id=self.run_id,
        )

    def _record_error(self, account: AccountConfig, report: SyncReport, uid: str, exc: Exception) -> None:
        message = f"{account.account_id}: task {uid}: {exc}"
        logger.warning(message)
        report.errors.append(message)
        self._audit(account, uid, "error", error=f"{type(exc).__name__}: {exc}")

    def sync(self, account: AccountConfig, report: SyncReport, deadline: Deadline | None = None) -> None:
        account_id = account.account_id
        self._checkpoint(deadline)
        tombstones = self.state_store.list_tombstones(account_id)
        remote_objects = self.transport.fetch_objects("VTODO")
        self._checkpoint(deadline)

        mapped: dict[str, tuple[LocalTask, TaskSyncLink]] = {}
        unmapped: list[LocalTask] = []
        for task, link in self.state_store.tasks_with_links(account_id):
            if link is None:
                unmapped.append(task)
            else:
                mapped[link.remote_uid] = (task, link)

        seen_uids: set[str] = set()
        for remote in remote_objects:
            fields = parse_task(remote.data)
            if fields is None:
                logger.warning("Skipping unparseable VTODO %s on %s", remote.href, account_id)
                continue
            if fields.uid in seen_uids:
                logger.warning("Skipping duplicate VTODO uid %s at %s", fields.uid, remote.href)
                continue
            seen_uids.add(fields.uid)

            if fields.uid in tombstones:
                self._checkpoint(deadline)
                self._delete_remote(account, report, remote, fields.uid)
                continue

            pair = mapped.get(fields.uid)
            if pair is None:
                self._create_local(account, report, remote, fields)
                continue
            task, link = pair
            self._checkpoint(deadline)
            self._reconcile(account, report, remote, fields, task, link)

        for uid in tombstones - seen_uids:
            self.state_store.remove_tombstone(account_id, uid)
            logger.debug("Cleared tombstone %s on %s: remote object already gone", uid, account_id)

        for task in unmapped:
            if task.status in SKIPPED_LOCAL_STATUSES or not task.content.strip():
                continue
            self._checkpoint(deadline)
            self._push_new(account, report, task)

    def _delete_remote(self, account: AccountConfig, report: SyncReport, remote: RemoteObject, uid: str) -> None:
        try:
            self.transport.delete_object(remote.href, remote.etag)
        except NotFoundError:
            pass
        except AccountConnectionError:
            raise
        except SyncError as exc:
            self._record_error(account, report, uid, exc)
            return
        self.state_store.remove_tombstone(account.account_id, uid)
        report.deleted_remote += 1
        self._audit(account, uid, "delete_remote", href=remote.href)

    def _create_local(
        self,
        account: AccountConfig,
        report: SyncReport,
        remote: RemoteObject,
        fields: TaskFields,
    ) -> None:
        if not fields.summary.strip():
            logger.debug("Skipping VTODO %s without summary", fields.uid)
            return
        task = self.state_store.insert_task_with_link(
            account_id=account.account_id,
            remote_uid=fields.uid,
            remote_etag=remote.etag,
            content=fields.summary,
            status=local_status(fields.status),
            due_date=fields.due,
            synced_at=utc_now(),
        )
        report.created_local += 1
        self._audit(account, fields.uid, "create_local", task_id=task.task_id)

    def _reconcile(
        self,
        account: AccountConfig,
        report: SyncReport,
        remote: RemoteObject,
        fields: TaskFields,
        task: LocalTask,
        link: TaskSyncLink,
    ) -> None:
        account_id = account.account_id
        outcome = decide(task, link, remote.etag)
        if outcome.conflicted:
            report.conflicts += 1
        if outcome.action == PUSH:
            data = serialize_task(link.remote_uid, task.content, task.status, task.due_date)
            pushed_at = utc_now()
            try:
                written = self.transport.update_object(remote.href, data, link.remote_etag)
            except ConflictWriteError as exc:
                if not outcome.conflicted:
                    report.conflicts += 1
                # Keep last_synced_at so the local edit is pushed again against the observed etag.
                self.state_store.set_link_etag(task.task_id, account_id, remote.etag)
                self._record_error(account, report, fields.uid, exc)
                return
            except AccountConnectionError:
                raise
            except SyncError as exc:
                self._record_error(account, report, fields.uid, exc)
                return
            self.state_store.mark_link_synced(
                task.task_id,
                account_id,
                synced_at=pushed_at,
                remote_etag=written.etag,
            )
            report.updated_remote += 1
            self._audit(account, fields.uid, "push", task_id=task.task_id, reason=outcome.reason)
        elif outcome.action == PULL:
            self.state_store.apply_remote_task(
                task_id=task.task_id,
                account_id=account_id,
                content=fields.summary,
                status=local_status(fields.status),
                due_date=fields.due,
                remote_etag=remote.etag,
                synced_at=utc_now(),
            )
            report.updated_local += 1
            self._audit(account, fields.uid, "pull", task_id=task.task_id)
        elif outcome.action == ADOPT_ETAG:
            self.state_store.set_link_etag(task.task_id, account_id, remote.etag)

    def _push_new(self, account: AccountConfig, report: SyncReport, task: LocalTask) -> None:
        uid = str(uuid.uuid4())
        data = serialize_task(uid, task.content, task.status, task.due_date)
        try:
            created = self.transport.create_object(uid, data)
        except AccountConnectionError:
            raise
        except SyncError as exc:
            self._record_error(account, report, uid, exc)
            return
        self.state_store.upsert_link(
            TaskSyncLink(
                task_id=task.task_id,
                account_id=account.account_id,
                remote_uid=uid,
                remote_etag=created.etag,
                last_synced_at=utc_now(),
            )
        )
        report.created_remote += 1
        self._audit(account, uid, "create_remote", task_id=task.task_id, href=created.href)
