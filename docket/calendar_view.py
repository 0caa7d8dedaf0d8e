from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from docket.models import EventRecord, parse_iso_datetime
from docket.recurrence import expand_event
from docket.state_store import StateStore

_MIN = datetime.min.replace(tzinfo=timezone.utc)


def events_in_window(
    state_store: StateStore,
    start: datetime | str,
    end: datetime | str,
    account_ids: Iterable[str] | None = None,
) -> list[EventRecord]:
    """Stored events overlapping [start, end], with recurring series expanded into virtual instances."""
    window_start = parse_iso_datetime(start)
    window_end = parse_iso_datetime(end)
    if window_start is None or window_end is None:
        raise ValueError("Both window bounds are required")
    if window_end < window_start:
        raise ValueError("Window end is before window start")
    output: list[EventRecord] = []
    for event in state_store.events_for_window(window_start, window_end, account_ids):
        output.extend(expand_event(event, window_start, window_end))
    output.sort(key=lambda item: (item.start or _MIN, item.uid))
    return output
