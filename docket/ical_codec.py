from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Todo as ICTodo

from docket.models import EventFields, TaskFields, date_to_datetime, utc_now

logger = logging.getLogger(__name__)

PRODID = "-//Docket//Task Sync//EN"
UNTITLED_EVENT = "Untitled Event"


def content_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data or "")


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return date_to_datetime(value)
    return None


def _decoded(component: Any, name: str) -> Any:
    if component.get(name) is None:
        return None
    return component.decoded(name)


def _text(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _rrule_text(component: Any) -> str:
    value = component.get("RRULE")
    if value is None:
        return ""
    if isinstance(value, list):
        value = value[0] if value else None
        if value is None:
            return ""
    return decode_raw_ical(value.to_ical()).strip()


def _load(raw_data: Any) -> ICalendar:
    return ICalendar.from_ical(decode_raw_ical(raw_data))


def local_status(ical_status: str | None) -> str:
    if str(ical_status or "").strip().upper() == "COMPLETED":
        return "done"
    return "todo"


def parse_task(raw_data: Any) -> TaskFields | None:
    try:
        calendar_obj = _load(raw_data)
        vtodo = next(iter(calendar_obj.walk("VTODO")), None)
        if vtodo is None:
            return None
        uid = _text(vtodo, "UID")
        if not uid:
            return None
        return TaskFields(
            uid=uid,
            summary=_text(vtodo, "SUMMARY"),
            status=(_text(vtodo, "STATUS") or "NEEDS-ACTION").upper(),
            due=_coerce_datetime(_decoded(vtodo, "DUE")),
            last_modified=_coerce_datetime(_decoded(vtodo, "LAST-MODIFIED")),
        )
    except Exception as exc:
        logger.debug("Unparseable VTODO document: %s", exc)
        return None


def _event_fields(vevent: Any) -> EventFields | None:
    uid = _text(vevent, "UID")
    dtstart_raw = _decoded(vevent, "DTSTART")
    if not uid or dtstart_raw is None:
        return None
    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    start = _coerce_datetime(dtstart_raw)
    end = _coerce_datetime(_decoded(vevent, "DTEND"))
    if end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
        elif all_day:
            end = start + timedelta(days=1)
        else:
            end = start + timedelta(hours=1)
    return EventFields(
        uid=uid,
        title=_text(vevent, "SUMMARY") or UNTITLED_EVENT,
        description=_text(vevent, "DESCRIPTION"),
        location=_text(vevent, "LOCATION"),
        status=(_text(vevent, "STATUS") or "CONFIRMED").upper(),
        start=start,
        end=end,
        all_day=all_day,
        rrule=_rrule_text(vevent),
        raw_data=decode_raw_ical(vevent.to_ical()),
    )


def iter_events(raw_data: Any) -> list[EventFields]:
    try:
        calendar_obj = _load(raw_data)
    except Exception as exc:
        logger.debug("Unparseable calendar document: %s", exc)
        return []
    events: list[EventFields] = []
    for vevent in calendar_obj.walk("VEVENT"):
        # Overrides of a single occurrence belong to their parent series.
        if vevent.get("RECURRENCE-ID") is not None:
            continue
        try:
            fields = _event_fields(vevent)
        except Exception as exc:
            logger.warning("Skipping malformed VEVENT %s: %s", _text(vevent, "UID") or "<no uid>", exc)
            continue
        if fields is not None:
            events.append(fields)
    return events


def parse_event(raw_data: Any) -> EventFields | None:
    events = iter_events(raw_data)
    if not events:
        return None
    parsed = events[0]
    parsed.raw_data = decode_raw_ical(raw_data)
    return parsed


def serialize_task(uid: str, content: str, status: str, due_date: datetime | date | None) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    vtodo = ICTodo()
    vtodo.add("UID", uid)
    vtodo.add("SUMMARY", content or "")
    vtodo.add("STATUS", "COMPLETED" if status == "done" else "NEEDS-ACTION")
    if due_date is not None:
        # DATE-only so the due day survives timezone conversion on either side.
        if isinstance(due_date, datetime):
            due_value = _coerce_datetime(due_date).date()
        else:
            due_value = due_date
        vtodo.add("DUE", due_value)
    vtodo.add("DTSTAMP", utc_now())
    calendar_obj.add_component(vtodo)
    return calendar_obj.to_ical().decode("utf-8")
