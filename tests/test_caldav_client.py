import unittest
from datetime import datetime, timezone
from unittest import mock

import requests

from docket.caldav_client import CalDAVService, RawFetchStrategy, parse_multistatus
from docket.errors import AccountConnectionError, ConflictWriteError, NotFoundError, ParseError
from docket.models import CalendarInfo, RemoteObject, TaskListAccount

COLLECTION = "https://dav.example.com/calendars/tester/tasks/"

TODO = "BEGIN:VCALENDAR\r\nBEGIN:VTODO\r\nUID:t-1\r\nSUMMARY:Milk\r\nEND:VTODO\r\nEND:VCALENDAR\r\n"

REPORT_BODY = f"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/calendars/tester/tasks/t-1.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"abc"</d:getetag>
        <c:calendar-data>{TODO}</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""

MEMBERS_LISTING = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/calendars/tester/tasks/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/tester/tasks/t-1.ics</d:href>
    <d:propstat>
      <d:prop><d:getetag>W/"w-1"</d:getetag><d:resourcetype/></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""


def _response(status_code: int, content: str = "", headers: dict | None = None) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.content = content.encode("utf-8")
    response.text = content
    response.headers = headers or {}
    return response


class _Strategy:
    def __init__(self, name: str, result=None, error: Exception | None = None) -> None:
        self.name = name
        self.result = result or []
        self.error = error
        self.calls = 0

    def fetch(self, collection_url, component, start, end):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.result)


class CalDAVServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.account = TaskListAccount(
            account_id="tasks",
            server_url="https://dav.example.com/",
            username="tester",
            password="secret",
            calendar_url=COLLECTION,
        )
        self.service = CalDAVService(self.account, timeout_seconds=7)

    def test_parse_multistatus(self) -> None:
        [entry] = parse_multistatus(REPORT_BODY)
        self.assertEqual(entry["href"], "/calendars/tester/tasks/t-1.ics")
        self.assertEqual(entry["etag"], "abc")
        self.assertIn("UID:t-1", entry["calendar_data"])
        with self.assertRaises(ParseError):
            parse_multistatus("<not-xml")

    def test_first_non_empty_strategy_wins(self) -> None:
        remote = RemoteObject(href=COLLECTION + "t-1.ics", data=TODO, etag="abc")
        failing = _Strategy("failing", error=RuntimeError("library broke"))
        empty = _Strategy("empty")
        good = _Strategy("good", result=[remote, remote])
        unused = _Strategy("unused", result=[remote])
        self.service.strategies = [failing, empty, good, unused]

        self.assertEqual(self.service.fetch_objects("VTODO"), [remote])
        self.assertEqual((failing.calls, empty.calls, good.calls, unused.calls), (1, 1, 1, 0))

    def test_all_strategies_failing_raises(self) -> None:
        self.service.strategies = [
            _Strategy("a", error=RuntimeError("first")),
            _Strategy("b", error=AccountConnectionError("second")),
        ]
        with self.assertRaises(AccountConnectionError):
            self.service.fetch_objects("VTODO")

    def test_empty_after_partial_failure_is_empty(self) -> None:
        self.service.strategies = [_Strategy("a", error=RuntimeError("first")), _Strategy("b")]
        self.assertEqual(self.service.fetch_objects("VTODO"), [])

    def test_raw_strategy_falls_back_to_member_listing(self) -> None:
        def request(method, url, headers=None, data=None):
            if method == "REPORT":
                return _response(207, '<d:multistatus xmlns:d="DAV:"/>')
            if method == "PROPFIND":
                return _response(207, MEMBERS_LISTING)
            return _response(200, TODO)

        with mock.patch.object(self.service, "request", side_effect=request) as patched:
            objects = RawFetchStrategy(self.service).fetch(COLLECTION, "VTODO", None, None)

        self.assertEqual([call.args[0] for call in patched.call_args_list], ["REPORT", "PROPFIND", "GET"])
        self.assertEqual(objects, [RemoteObject(href=COLLECTION + "t-1.ics", data=TODO, etag="w-1")])

    def test_raw_strategy_report_with_time_range(self) -> None:
        with mock.patch.object(self.service, "request", return_value=_response(207, REPORT_BODY)) as patched:
            objects = RawFetchStrategy(self.service).fetch(
                COLLECTION,
                "VTODO",
                datetime(2024, 1, 1, tzinfo=timezone.utc),
                datetime(2024, 2, 1, tzinfo=timezone.utc),
            )

        body = patched.call_args.kwargs["data"].decode("utf-8")
        self.assertIn('start="20240101T000000Z"', body)
        self.assertEqual(objects[0].etag, "abc")

    def test_etagless_objects_get_content_hash(self) -> None:
        def request(method, url, headers=None, data=None):
            if method == "REPORT":
                return _response(207, REPORT_BODY.replace('<d:getetag>"abc"</d:getetag>', ""))
            raise AssertionError(method)

        with mock.patch.object(self.service, "request", side_effect=request):
            [remote] = RawFetchStrategy(self.service).fetch(COLLECTION, "VTODO", None, None)
        self.assertTrue(remote.etag.startswith("hash:"))

    def test_create_object_uses_if_none_match_and_oc_etag(self) -> None:
        response = _response(201, headers={"OC-ETag": '"oc-1"'})
        with mock.patch.object(self.service, "request", return_value=response) as patched:
            created = self.service.create_object("uid-1", TODO)

        args = patched.call_args
        self.assertEqual(args.args[:2], ("PUT", COLLECTION + "uid-1.ics"))
        self.assertEqual(args.kwargs["headers"]["If-None-Match"], "*")
        self.assertEqual(created.etag, "oc-1")

    def test_update_object_precondition_failed(self) -> None:
        with mock.patch.object(self.service, "request", return_value=_response(412)) as patched:
            with self.assertRaises(ConflictWriteError):
                self.service.update_object(COLLECTION + "t-1.ics", TODO, "abc")
        self.assertEqual(patched.call_args.kwargs["headers"]["If-Match"], '"abc"')

    def test_update_object_without_guard_for_hash_etag(self) -> None:
        response = _response(204, headers={"ETag": '"new"'})
        with mock.patch.object(self.service, "request", return_value=response) as patched:
            updated = self.service.update_object(COLLECTION + "t-1.ics", TODO, "hash:123")
        self.assertNotIn("If-Match", patched.call_args.kwargs["headers"])
        self.assertEqual(updated.etag, "new")

    def test_delete_missing_object(self) -> None:
        with mock.patch.object(self.service, "request", return_value=_response(404)):
            with self.assertRaises(NotFoundError):
                self.service.delete_object(COLLECTION + "gone.ics")

    def test_request_errors_become_connection_errors(self) -> None:
        session = mock.Mock()
        self.service._session = session

        session.request.side_effect = requests.Timeout("slow")
        with self.assertRaises(AccountConnectionError):
            self.service.request("GET", COLLECTION)
        self.assertEqual(session.request.call_args.kwargs["timeout"], 7)

        session.request.side_effect = None
        session.request.return_value = _response(401)
        with self.assertRaises(AccountConnectionError):
            self.service.request("GET", COLLECTION)

    def test_discovery_probes_fallback_paths(self) -> None:
        account = TaskListAccount(account_id="nc", server_url="https://cloud.example.com", username="ann")
        service = CalDAVService(account)
        self.assertEqual(
            service._probe_urls(),
            [
                "https://cloud.example.com",
                "https://cloud.example.com/remote.php/dav/calendars/ann/",
                "https://cloud.example.com/calendars/ann/",
            ],
        )

    def test_resolve_collection_prefers_component_support(self) -> None:
        account = TaskListAccount(account_id="nc", server_url="https://cloud.example.com/", username="ann")
        service = CalDAVService(account)
        service._collections = [
            CalendarInfo(calendar_id="e", name="Events", url="https://cloud.example.com/e/", components=["VEVENT"]),
            CalendarInfo(calendar_id="t", name="Tasks", url="https://cloud.example.com/t/", components=["VTODO"]),
        ]
        self.assertEqual(service.resolve_collection("VTODO"), "https://cloud.example.com/t/")
        service._collections = []
        with self.assertRaises(NotFoundError):
            service.fetch_objects("VTODO")


if __name__ == "__main__":
    unittest.main()
