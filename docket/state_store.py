from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from docket.models import EventRecord, LocalTask, TaskSyncLink, parse_iso_datetime

TASK_FIELDS = ("content", "status", "due_date", "recurrence_rule")


def _to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utc_now() -> str:
    return _to_db(datetime.now(timezone.utc))


def _row_to_task(row: sqlite3.Row) -> LocalTask:
    return LocalTask(
        task_id=int(row["id"]),
        content=str(row["content"] or ""),
        status=str(row["status"] or "todo"),
        due_date=parse_iso_datetime(row["due_date"]),
        recurrence_rule=str(row["recurrence_rule"] or ""),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _row_to_link(row: sqlite3.Row) -> TaskSyncLink:
    return TaskSyncLink(
        task_id=int(row["task_id"]),
        account_id=str(row["account_id"]),
        remote_uid=str(row["remote_uid"]),
        remote_etag=row["remote_etag"],
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        uid=str(row["uid"]),
        account_id=str(row["account_id"]),
        title=str(row["title"] or ""),
        description=str(row["description"] or ""),
        location=str(row["location"] or ""),
        status=str(row["status"] or ""),
        start=parse_iso_datetime(row["start_time"]),
        end=parse_iso_datetime(row["end_time"]),
        all_day=bool(row["is_all_day"]),
        rrule=str(row["rrule"] or ""),
        etag=str(row["etag"] or ""),
        raw_data=str(row["raw_data"] or ""),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            content TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'todo',
            due_date TEXT,
            recurrence_rule TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS task_sync_links (
            task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            account_id TEXT NOT NULL,
            remote_uid TEXT NOT NULL,
            remote_etag TEXT,
            last_synced_at TEXT,
            PRIMARY KEY (task_id, account_id),
            UNIQUE (account_id, remote_uid)
        );

        CREATE TABLE IF NOT EXISTS deleted_task_tombstones (
            account_id TEXT NOT NULL,
            remote_uid TEXT NOT NULL,
            deleted_at TEXT NOT NULL,
            PRIMARY KEY (account_id, remote_uid)
        );

        CREATE TABLE IF NOT EXISTS calendar_events (
            uid TEXT NOT NULL,
            account_id TEXT NOT NULL,
            title TEXT,
            description TEXT,
            start_time TEXT,
            end_time TEXT,
            is_all_day INTEGER NOT NULL DEFAULT 0,
            location TEXT,
            status TEXT,
            rrule TEXT,
            etag TEXT,
            raw_data TEXT,
            last_synced_at TEXT,
            PRIMARY KEY (uid, account_id)
        );

        CREATE INDEX IF NOT EXISTS idx_calendar_events_range ON calendar_events(start_time, end_time);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            changes_applied INTEGER NOT NULL,
            conflicts INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            account_id TEXT NOT NULL,
            uid TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Tasks

    def create_task(
        self,
        content: str,
        status: str = "todo",
        due_date: datetime | None = None,
        recurrence_rule: str = "",
    ) -> LocalTask:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO tasks(content, status, due_date, recurrence_rule, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (content, status, _to_db(due_date), recurrence_rule or None, now, now),
                )
                task_id = int(cursor.lastrowid)
        task = self.get_task(task_id)
        assert task is not None
        return task

    def get_task(self, task_id: int) -> LocalTask | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),)).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(self) -> list[LocalTask]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM tasks ORDER BY id").fetchall()
        return [_row_to_task(row) for row in rows]

    def update_task(self, task_id: int, **changes: Any) -> LocalTask | None:
        unknown = set(changes) - set(TASK_FIELDS)
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        assignments: list[str] = []
        params: list[Any] = []
        for key in TASK_FIELDS:
            if key not in changes:
                continue
            value = changes[key]
            if key == "due_date":
                value = _to_db(parse_iso_datetime(value))
            assignments.append(f"{key} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(_utc_now())
        params.append(int(task_id))
        with self._lock:
            with self._connect() as conn:
                conn.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params)  # nosec B608
        return self.get_task(task_id)

    def delete_task(self, task_id: int) -> bool:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                links = conn.execute(
                    "SELECT account_id, remote_uid FROM task_sync_links WHERE task_id = ?",
                    (int(task_id),),
                ).fetchall()
                for link in links:
                    conn.execute(
                        """
                        INSERT INTO deleted_task_tombstones(account_id, remote_uid, deleted_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(account_id, remote_uid) DO NOTHING
                        """,
                        (link["account_id"], link["remote_uid"], now),
                    )
                conn.execute("DELETE FROM task_sync_links WHERE task_id = ?", (int(task_id),))
                cursor = conn.execute("DELETE FROM tasks WHERE id = ?", (int(task_id),))
                return cursor.rowcount > 0

    def tasks_with_links(self, account_id: str) -> list[tuple[LocalTask, TaskSyncLink | None]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT t.*, l.task_id AS link_task_id, l.account_id, l.remote_uid,
                           l.remote_etag, l.last_synced_at
                    FROM tasks t
                    LEFT JOIN task_sync_links l ON l.task_id = t.id AND l.account_id = ?
                    ORDER BY t.id
                    """,
                    (account_id,),
                ).fetchall()
        output: list[tuple[LocalTask, TaskSyncLink | None]] = []
        for row in rows:
            link = None
            if row["link_task_id"] is not None:
                link = TaskSyncLink(
                    task_id=int(row["link_task_id"]),
                    account_id=str(row["account_id"]),
                    remote_uid=str(row["remote_uid"]),
                    remote_etag=row["remote_etag"],
                    last_synced_at=parse_iso_datetime(row["last_synced_at"]),
                )
            output.append((_row_to_task(row), link))
        return output

    def insert_task_with_link(
        self,
        *,
        account_id: str,
        remote_uid: str,
        remote_etag: str | None,
        content: str,
        status: str,
        due_date: datetime | None,
        synced_at: datetime,
    ) -> LocalTask:
        synced_text = _to_db(synced_at)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO tasks(content, status, due_date, recurrence_rule, created_at, updated_at)
                    VALUES (?, ?, ?, NULL, ?, ?)
                    """,
                    (content, status, _to_db(due_date), synced_text, synced_text),
                )
                task_id = int(cursor.lastrowid)
                conn.execute(
                    """
                    INSERT INTO task_sync_links(task_id, account_id, remote_uid, remote_etag, last_synced_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (task_id, account_id, remote_uid, remote_etag, synced_text),
                )
        task = self.get_task(task_id)
        assert task is not None
        return task

    def apply_remote_task(
        self,
        *,
        task_id: int,
        account_id: str,
        content: str,
        status: str,
        due_date: datetime | None,
        remote_etag: str | None,
        synced_at: datetime,
    ) -> None:
        synced_text = _to_db(synced_at)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE tasks SET content = ?, status = ?, due_date = ?, updated_at = ? WHERE id = ?",
                    (content, status, _to_db(due_date), synced_text, int(task_id)),
                )
                conn.execute(
                    """
                    UPDATE task_sync_links SET remote_etag = ?, last_synced_at = ?
                    WHERE task_id = ? AND account_id = ?
                    """,
                    (remote_etag, synced_text, int(task_id), account_id),
                )

    # Sync links

    def upsert_link(self, link: TaskSyncLink) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO task_sync_links(task_id, account_id, remote_uid, remote_etag, last_synced_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(task_id, account_id) DO UPDATE SET
                        remote_uid = excluded.remote_uid,
                        remote_etag = excluded.remote_etag,
                        last_synced_at = excluded.last_synced_at
                    """,
                    (
                        int(link.task_id),
                        link.account_id,
                        link.remote_uid,
                        link.remote_etag,
                        _to_db(link.last_synced_at),
                    ),
                )

    def get_link(self, task_id: int, account_id: str) -> TaskSyncLink | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM task_sync_links WHERE task_id = ? AND account_id = ?",
                    (int(task_id), account_id),
                ).fetchone()
        return _row_to_link(row) if row else None

    def get_link_by_remote_uid(self, account_id: str, remote_uid: str) -> TaskSyncLink | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM task_sync_links WHERE account_id = ? AND remote_uid = ?",
                    (account_id, remote_uid),
                ).fetchone()
        return _row_to_link(row) if row else None

    def list_links(self, account_id: str) -> list[TaskSyncLink]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM task_sync_links WHERE account_id = ? ORDER BY task_id",
                    (account_id,),
                ).fetchall()
        return [_row_to_link(row) for row in rows]

    def mark_link_synced(
        self,
        task_id: int,
        account_id: str,
        *,
        synced_at: datetime,
        remote_etag: str | None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE task_sync_links SET last_synced_at = ?, remote_etag = ?
                    WHERE task_id = ? AND account_id = ?
                    """,
                    (_to_db(synced_at), remote_etag, int(task_id), account_id),
                )

    def set_link_etag(self, task_id: int, account_id: str, remote_etag: str | None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE task_sync_links SET remote_etag = ? WHERE task_id = ? AND account_id = ?",
                    (remote_etag, int(task_id), account_id),
                )

    def delete_link(self, task_id: int, account_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM task_sync_links WHERE task_id = ? AND account_id = ?",
                    (int(task_id), account_id),
                )
                return cursor.rowcount > 0

    # Tombstones

    def add_tombstone(self, account_id: str, remote_uid: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO deleted_task_tombstones(account_id, remote_uid, deleted_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(account_id, remote_uid) DO NOTHING
                    """,
                    (account_id, remote_uid, _utc_now()),
                )

    def list_tombstones(self, account_id: str) -> set[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT remote_uid FROM deleted_task_tombstones WHERE account_id = ?",
                    (account_id,),
                ).fetchall()
        return {str(row["remote_uid"]) for row in rows}

    def remove_tombstone(self, account_id: str, remote_uid: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM deleted_task_tombstones WHERE account_id = ? AND remote_uid = ?",
                    (account_id, remote_uid),
                )

    # Mirrored events

    def get_event(self, uid: str, account_id: str) -> EventRecord | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM calendar_events WHERE uid = ? AND account_id = ?",
                    (uid, account_id),
                ).fetchone()
        return _row_to_event(row) if row else None

    def upsert_event(self, event: EventRecord) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_events(
                        uid, account_id, title, description, start_time, end_time, is_all_day,
                        location, status, rrule, etag, raw_data, last_synced_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(uid, account_id) DO UPDATE SET
                        title = excluded.title,
                        description = excluded.description,
                        start_time = excluded.start_time,
                        end_time = excluded.end_time,
                        is_all_day = excluded.is_all_day,
                        location = excluded.location,
                        status = excluded.status,
                        rrule = excluded.rrule,
                        etag = excluded.etag,
                        raw_data = excluded.raw_data,
                        last_synced_at = excluded.last_synced_at
                    """,
                    (
                        event.uid,
                        event.account_id,
                        event.title,
                        event.description,
                        _to_db(event.start),
                        _to_db(event.end),
                        1 if event.all_day else 0,
                        event.location,
                        event.status,
                        event.rrule or None,
                        event.etag,
                        event.raw_data,
                        _to_db(event.last_synced_at) or _utc_now(),
                    ),
                )

    def delete_event(self, uid: str, account_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM calendar_events WHERE uid = ? AND account_id = ?",
                    (uid, account_id),
                )
                return cursor.rowcount > 0

    def list_events(self, account_id: str) -> list[EventRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM calendar_events WHERE account_id = ? ORDER BY start_time",
                    (account_id,),
                ).fetchall()
        return [_row_to_event(row) for row in rows]

    def events_for_window(
        self,
        start: datetime,
        end: datetime,
        account_ids: Iterable[str] | None = None,
    ) -> list[EventRecord]:
        sql = """
            SELECT * FROM calendar_events
            WHERE ((rrule IS NOT NULL AND rrule != '') OR (start_time <= ? AND end_time >= ?))
        """
        params: list[Any] = [_to_db(end), _to_db(start)]
        if account_ids is not None:
            ids = [str(item) for item in account_ids]
            if not ids:
                return []
            sql += f" AND account_id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        sql += " ORDER BY start_time"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()  # nosec B608
        return [_row_to_event(row) for row in rows]

    # Run log and audit trail

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, changes_applied, conflicts)
                    VALUES (?, ?, 'running', ?, 0, 0, 0)
                    """,
                    (_utc_now(), trigger, message),
                )
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        conflicts: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, conflicts = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(changes_applied),
                        int(conflicts),
                        int(run_id),
                    ),
                )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, changes_applied, conflicts
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        account_id: str,
        uid: str,
        action: str,
        details: dict[str, Any] | None = None,
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, account_id, uid, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), account_id, uid, action, json.dumps(details or {}, ensure_ascii=False)),
                )

    def recent_audit_events(
        self,
        limit: int = 100,
        run_id: int | None = None,
        account_id: str | None = None,
    ) -> list[dict[str, Any]]:
        sql = "SELECT id, run_id, created_at, account_id, uid, action, details_json FROM audit_events"
        clauses: list[str] = []
        params: list[Any] = []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(int(run_id))
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()  # nosec B608
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
