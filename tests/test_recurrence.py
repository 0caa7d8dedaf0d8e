import unittest
from datetime import datetime, timedelta, timezone

from docket.models import EventRecord
from docket.recurrence import expand_event, expand_occurrences, has_occurrence, occurrence_id

FEB_START = datetime(2024, 2, 1, tzinfo=timezone.utc)
FEB_END = datetime(2024, 2, 29, tzinfo=timezone.utc)


def _standup(anchor: datetime, rrule: str = "FREQ=WEEKLY;BYDAY=MO") -> EventRecord:
    return EventRecord(
        uid="standup",
        account_id="work",
        title="Standup",
        location="Room 4",
        start=anchor,
        end=anchor + timedelta(hours=1),
        rrule=rrule,
        etag="e1",
    )


class RecurrenceTests(unittest.TestCase):
    def test_weekly_mondays_in_february_2024(self) -> None:
        instances = expand_event(_standup(datetime(2024, 1, 1, 9, tzinfo=timezone.utc)), FEB_START, FEB_END)

        starts = [item.start for item in instances]
        self.assertEqual(
            starts,
            [datetime(2024, 2, day, 9, tzinfo=timezone.utc) for day in (5, 12, 19, 26)],
        )
        first = instances[0]
        expected_ms = int(datetime(2024, 2, 5, 9, tzinfo=timezone.utc).timestamp() * 1000)
        self.assertEqual(first.uid, f"standup_{expected_ms}")
        self.assertEqual(first.end, first.start + timedelta(hours=1))
        self.assertEqual(first.title, "Standup")
        self.assertEqual(first.location, "Room 4")
        self.assertEqual(first.instance_of, "standup")

    def test_anchor_far_in_the_past_still_reaches_window(self) -> None:
        instances = expand_event(_standup(datetime(2000, 1, 3, 9, tzinfo=timezone.utc)), FEB_START, FEB_END)
        self.assertEqual(len(instances), 4)

    def test_invalid_rule_falls_back_to_single_instance(self) -> None:
        inside = _standup(datetime(2024, 2, 7, 9, tzinfo=timezone.utc), rrule="FREQ=SOMETIMES")
        outside = _standup(datetime(2023, 2, 7, 9, tzinfo=timezone.utc), rrule="FREQ=SOMETIMES")

        self.assertEqual([item.uid for item in expand_event(inside, FEB_START, FEB_END)], ["standup"])
        self.assertEqual(expand_event(outside, FEB_START, FEB_END), [])

    def test_non_recurring_event_passes_through_when_overlapping(self) -> None:
        event = _standup(datetime(2024, 1, 31, 23, 30, tzinfo=timezone.utc), rrule="")
        self.assertEqual(expand_event(event, FEB_START, FEB_END), [event])
        self.assertEqual(expand_event(event, FEB_END, FEB_END + timedelta(days=1)), [])

    def test_until_bounds_series(self) -> None:
        event = _standup(
            datetime(2024, 1, 1, 9, tzinfo=timezone.utc),
            rrule="FREQ=WEEKLY;BYDAY=MO;UNTIL=20240207T000000Z",
        )
        self.assertEqual(len(expand_event(event, FEB_START, FEB_END)), 1)

    def test_hourly_series_anchored_years_back_fills_window(self) -> None:
        window_start = datetime(2024, 2, 1, tzinfo=timezone.utc)
        window_end = datetime(2024, 2, 1, 23, tzinfo=timezone.utc)
        spans = expand_occurrences(
            datetime(2022, 1, 1, tzinfo=timezone.utc),
            timedelta(minutes=30),
            "FREQ=HOURLY",
            window_start,
            window_end,
        )
        self.assertEqual(len(spans), 24)
        self.assertEqual(spans[0][0], window_start)
        self.assertEqual(spans[-1][0], window_end)

    def test_occurrence_cap_counts_only_emitted_instances(self) -> None:
        spans = expand_occurrences(
            datetime(2020, 1, 1, tzinfo=timezone.utc),
            timedelta(hours=1),
            "FREQ=DAILY",
            FEB_START,
            FEB_END,
            max_occurrences=3,
        )
        self.assertEqual(len(spans), 3)
        self.assertEqual(spans[0][0], FEB_START)

    def test_has_occurrence_matches_series_by_later_instances(self) -> None:
        anchor = datetime(2023, 1, 2, 9, tzinfo=timezone.utc)
        self.assertTrue(has_occurrence(anchor, timedelta(hours=1), "FREQ=WEEKLY;BYDAY=MO", FEB_START, FEB_END))
        self.assertFalse(
            has_occurrence(anchor, timedelta(hours=1), "FREQ=WEEKLY;UNTIL=20230301T000000Z", FEB_START, FEB_END)
        )
        # An instance that started before the window but is still running counts.
        late = datetime(2024, 1, 31, 23, tzinfo=timezone.utc)
        self.assertTrue(has_occurrence(late, timedelta(hours=2), "FREQ=YEARLY", FEB_START, FEB_END))

    def test_occurrence_id_uses_epoch_milliseconds(self) -> None:
        self.assertEqual(occurrence_id("abc", datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)), "abc_1000")


if __name__ == "__main__":
    unittest.main()
