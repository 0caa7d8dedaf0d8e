from __future__ import annotations

from dataclasses import dataclass

from docket.models import LocalTask, TaskSyncLink

PUSH = "push"
PULL = "pull"
ADOPT_ETAG = "adopt_etag"
NOOP = "noop"


@dataclass
class ReconcileOutcome:
    action: str
    reason: str
    conflicted: bool = False


def local_changed(task: LocalTask, link: TaskSyncLink) -> bool:
    if link.last_synced_at is None:
        return True
    if task.updated_at is None:
        return False
    return task.updated_at > link.last_synced_at


def decide(task: LocalTask, link: TaskSyncLink, remote_etag: str | None) -> ReconcileOutcome:
    """Whole-record last-write-wins: a local edit since the last sync beats any remote change."""
    remote_changed = bool(link.remote_etag) and remote_etag != link.remote_etag
    if local_changed(task, link):
        return ReconcileOutcome(
            action=PUSH,
            reason="local_and_remote_modified" if remote_changed else "local_modified",
            conflicted=remote_changed,
        )
    if not link.remote_etag:
        if remote_etag:
            return ReconcileOutcome(action=ADOPT_ETAG, reason="etag_unknown")
        return ReconcileOutcome(action=NOOP, reason="no_etag")
    if remote_changed:
        return ReconcileOutcome(action=PULL, reason="remote_modified")
    return ReconcileOutcome(action=NOOP, reason="unchanged")
