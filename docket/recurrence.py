from __future__ import annotations

import logging
from datetime import datetime, timedelta

from dateutil.rrule import rrulestr

from docket.models import EventRecord, parse_iso_datetime

logger = logging.getLogger(__name__)

MAX_OCCURRENCES = 10000


def occurrence_id(base_uid: str, occurrence: datetime) -> str:
    return f"{base_uid}_{round(occurrence.timestamp() * 1000)}"


def expand_occurrences(
    anchor: datetime,
    duration: timedelta,
    rule_text: str,
    window_start: datetime,
    window_end: datetime,
    max_occurrences: int = MAX_OCCURRENCES,
) -> list[tuple[datetime, datetime]]:
    anchor = parse_iso_datetime(anchor)
    window_start = parse_iso_datetime(window_start)
    window_end = parse_iso_datetime(window_end)
    rule = rrulestr(rule_text.strip(), dtstart=anchor)
    spans: list[tuple[datetime, datetime]] = []
    # xafter walks the rule from its anchor internally; only emitted occurrences count against the cap.
    for occurrence in rule.xafter(window_start, inc=True):
        if occurrence > window_end:
            break
        if len(spans) >= max_occurrences:
            logger.warning("Recurrence %r stopped after %d occurrences", rule_text, max_occurrences)
            break
        spans.append((occurrence, occurrence + duration))
    return spans


def has_occurrence(
    anchor: datetime,
    duration: timedelta,
    rule_text: str,
    window_start: datetime,
    window_end: datetime,
) -> bool:
    """True when some occurrence of the rule overlaps [window_start, window_end]."""
    anchor = parse_iso_datetime(anchor)
    rule = rrulestr(rule_text.strip(), dtstart=anchor)
    first = next(iter(rule.xafter(parse_iso_datetime(window_start) - duration, inc=True)), None)
    return first is not None and first <= parse_iso_datetime(window_end)


def _overlaps(event: EventRecord, window_start: datetime, window_end: datetime) -> bool:
    if event.start is None:
        return False
    end = event.end or event.start
    return event.start <= window_end and end >= window_start


def expand_event(event: EventRecord, window_start: datetime, window_end: datetime) -> list[EventRecord]:
    if not event.is_recurring or event.start is None:
        return [event.clone()] if _overlaps(event, window_start, window_end) else []
    duration = (event.end or event.start) - event.start
    try:
        spans = expand_occurrences(event.start, duration, event.rrule, window_start, window_end)
    except Exception as exc:
        logger.warning("Cannot expand recurrence of %s (%r): %s", event.uid, event.rrule, exc)
        return [event.clone()] if _overlaps(event, window_start, window_end) else []
    return [
        event.with_updates(
            uid=occurrence_id(event.uid, start),
            start=start,
            end=end,
            instance_of=event.uid,
        )
        for start, end in spans
    ]
