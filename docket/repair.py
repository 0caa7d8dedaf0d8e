from __future__ import annotations

import logging
from typing import Any

from docket.ical_codec import parse_task
from docket.models import AccountConfig, RepairResult
from docket.state_store import StateStore

logger = logging.getLogger(__name__)


class OrphanRepairer:
    """Drops sync links whose remote object disappeared outside the tombstone flow.

    The demoted tasks are pushed again under a fresh uid by the next ordinary sync.
    """

    def __init__(self, state_store: StateStore, transport: Any, run_id: int | None = None) -> None:
        self.state_store = state_store
        self.transport = transport
        self.run_id = run_id

    def repair(self, account: AccountConfig) -> RepairResult:
        account_id = account.account_id
        remote_objects = self.transport.fetch_objects("VTODO")
        live_uids: set[str] = set()
        for remote in remote_objects:
            fields = parse_task(remote.data)
            if fields is not None:
                live_uids.add(fields.uid)

        links = self.state_store.list_links(account_id)
        result = RepairResult(
            account_id=account_id,
            scanned_remote=len(remote_objects),
            scanned_local_links=len(links),
        )
        for link in links:
            if link.remote_uid in live_uids:
                continue
            result.orphans_found += 1
            if self.state_store.delete_link(link.task_id, account_id):
                result.repaired_task_ids.append(link.task_id)
                self.state_store.record_audit_event(
                    account_id=account_id,
                    uid=link.remote_uid,
                    action="repair_orphan",
                    details={"task_id": link.task_id},
                    run_id=self.run_id,
                )
        logger.info(
            "Repair of %s: %d remote objects, %d links, %d orphans",
            account_id,
            result.scanned_remote,
            result.scanned_local_links,
            result.orphans_found,
        )
        return result
