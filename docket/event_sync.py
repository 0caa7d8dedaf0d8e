from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from docket.caldav_client import HASH_ETAG_PREFIX
from docket.ical_codec import content_hash, iter_events, parse_event
from docket.models import (
    Deadline,
    EventCalendarAccount,
    EventFields,
    EventRecord,
    SyncReport,
    event_window,
    utc_now,
)
from docket.recurrence import has_occurrence
from docket.state_store import StateStore

logger = logging.getLogger(__name__)


def _to_record(account_id: str, fields: EventFields, etag: str, synced_at: datetime) -> EventRecord:
    return EventRecord(
        uid=fields.uid,
        account_id=account_id,
        title=fields.title,
        description=fields.description,
        location=fields.location,
        status=fields.status,
        start=fields.start,
        end=fields.end,
        all_day=fields.all_day,
        rrule=fields.rrule,
        etag=etag,
        raw_data=fields.raw_data,
        last_synced_at=synced_at,
    )


def _overlaps(event: EventRecord, window_start: datetime, window_end: datetime) -> bool:
    if event.start is None:
        return False
    end = event.end or event.start
    if not event.is_recurring:
        return event.start <= window_end and end >= window_start
    # Time-range queries match a series by its occurrences, not by its first one.
    try:
        return has_occurrence(event.start, end - event.start, event.rrule, window_start, window_end)
    except Exception as exc:
        logger.warning("Cannot expand recurrence of %s (%r): %s", event.uid, event.rrule, exc)
        return True


class EventIngestor:
    def __init__(
        self,
        state_store: StateStore,
        transport: Any,
        past_days: int = 30,
        future_days: int = 180,
        run_id: int | None = None,
    ) -> None:
        self.state_store = state_store
        self.transport = transport
        self.past_days = past_days
        self.future_days = future_days
        self.run_id = run_id

    def sync(
        self,
        account: EventCalendarAccount,
        report: SyncReport,
        deadline: Deadline | None = None,
        now: datetime | None = None,
    ) -> None:
        now = now or utc_now()
        if deadline is not None:
            deadline.check()
        if account.is_feed:
            fetched = self._fetch_feed(account)
            window = None
        else:
            window = event_window(now, self.past_days, self.future_days)
            fetched = self._fetch_collection(window, deadline)
        if deadline is not None:
            deadline.check()
        self._apply(account, report, fetched, window, now)

    def _fetch_collection(
        self,
        window: tuple[datetime, datetime],
        deadline: Deadline | None,
    ) -> list[tuple[EventFields, str]]:
        window_start, window_end = window
        objects = self.transport.fetch_objects("VEVENT", window_start, window_end)
        if not objects:
            # Some servers ignore or mishandle time-range filters on certain collections.
            if deadline is not None:
                deadline.check()
            logger.debug("Time-range query returned nothing; retrying unfiltered")
            objects = self.transport.fetch_objects("VEVENT")
        fetched: list[tuple[EventFields, str]] = []
        for remote in objects:
            fields = parse_event(remote.data)
            if fields is None:
                logger.warning("Skipping unparseable VEVENT %s", remote.href)
                continue
            fetched.append((fields, remote.etag or HASH_ETAG_PREFIX + content_hash(fields.raw_data)))
        return fetched

    def _fetch_feed(self, account: EventCalendarAccount) -> list[tuple[EventFields, str]]:
        raw = self.transport.fetch_feed(account.feed_url)
        return [(fields, HASH_ETAG_PREFIX + content_hash(fields.raw_data)) for fields in iter_events(raw)]

    def _apply(
        self,
        account: EventCalendarAccount,
        report: SyncReport,
        fetched: list[tuple[EventFields, str]],
        window: tuple[datetime, datetime] | None,
        now: datetime,
    ) -> None:
        account_id = account.account_id
        stored = {event.uid: event for event in self.state_store.list_events(account_id)}
        observed: set[str] = set()
        for fields, etag in fetched:
            if fields.uid in observed:
                continue
            observed.add(fields.uid)
            existing = stored.get(fields.uid)
            if existing is not None and existing.etag == etag and existing.raw_data == fields.raw_data:
                continue
            self.state_store.upsert_event(_to_record(account_id, fields, etag, now))
            if existing is None:
                report.created_local += 1
            else:
                report.updated_local += 1

        for uid, event in stored.items():
            if uid in observed:
                continue
            # Collections only own the synced horizon; a feed owns the whole account.
            if window is not None and not _overlaps(event, *window):
                continue
            self.state_store.delete_event(uid, account_id)
            report.deleted_local += 1
            self.state_store.record_audit_event(
                account_id=account_id,
                uid=uid,
                action="delete_local_event",
                details={"bounded": window is not None},
                run_id=self.run_id,
            )
        logger.info(
            "Mirrored %d events for %s (%s)",
            len(observed),
            account_id,
            "feed" if window is None else "caldav",
        )
