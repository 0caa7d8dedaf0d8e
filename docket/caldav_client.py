from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any, Protocol
from urllib.parse import quote, unquote, urljoin, urlparse

import caldav
import requests
from caldav.elements import dav

from docket.errors import (
    AccountConnectionError,
    ConflictWriteError,
    NotFoundError,
    ParseError,
    SyncError,
)
from docket.ical_codec import content_hash, decode_raw_ical
from docket.models import AccountConfig, CalendarInfo, RemoteObject

logger = logging.getLogger(__name__)

NS_DAV = "DAV:"
NS_CALDAV = "urn:ietf:params:xml:ns:caldav"

# Content hashes stand in for servers that omit ETags; they cannot guard a write.
HASH_ETAG_PREFIX = "hash:"

DISCOVERY_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:resourcetype/>
    <d:displayname/>
    <c:supported-calendar-component-set/>
  </d:prop>
</d:propfind>"""

MEMBERS_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:getetag/>
    <d:resourcetype/>
  </d:prop>
</d:propfind>"""

REPORT_TEMPLATE = """<?xml version="1.0" encoding="utf-8" ?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="{component}">{time_range}</c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _same_resource(left: str, right: str) -> bool:
    return unquote(urlparse(_normalize_calendar_id(left)).path) == unquote(
        urlparse(_normalize_calendar_id(right)).path
    )


def _unquote_etag(value: Any) -> str | None:
    text = str(value or "").strip()
    if not text:
        return None
    if text.startswith("W/"):
        text = text[2:]
    return text.strip('"') or None


def _ical_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _with_etag(href: str, data: str, etag: Any) -> RemoteObject:
    server_etag = _unquote_etag(etag)
    return RemoteObject(
        href=href,
        data=data,
        etag=server_etag or f"{HASH_ETAG_PREFIX}{content_hash(data)}",
    )


def _contains_component(data: str, component: str) -> bool:
    return f"BEGIN:{component.upper()}" in data.upper()


def _response_etag(response: Any) -> str | None:
    headers = getattr(response, "headers", None) or {}
    return _unquote_etag(headers.get("ETag") or headers.get("OC-ETag"))


def parse_multistatus(payload: Any) -> list[dict[str, Any]]:
    try:
        root = ET.fromstring(payload)
    except ET.ParseError:
        raise ParseError("CalDAV multistatus response is invalid.") from None
    entries: list[dict[str, Any]] = []
    for response in root.iter(f"{{{NS_DAV}}}response"):
        href = (response.findtext(f"{{{NS_DAV}}}href") or "").strip()
        if not href:
            continue
        entry: dict[str, Any] = {
            "href": href,
            "etag": None,
            "calendar_data": None,
            "is_collection": False,
            "is_calendar": False,
            "displayname": "",
            "components": [],
        }
        for propstat in response.findall(f"{{{NS_DAV}}}propstat"):
            status = (propstat.findtext(f"{{{NS_DAV}}}status") or "").strip()
            if status and " 200 " not in f"{status} ":
                continue
            prop = propstat.find(f"{{{NS_DAV}}}prop")
            if prop is None:
                continue
            etag = prop.findtext(f"{{{NS_DAV}}}getetag")
            if etag:
                entry["etag"] = _unquote_etag(etag)
            calendar_data = prop.findtext(f"{{{NS_CALDAV}}}calendar-data")
            if calendar_data:
                entry["calendar_data"] = calendar_data
            resource_type = prop.find(f"{{{NS_DAV}}}resourcetype")
            if resource_type is not None:
                entry["is_collection"] = resource_type.find(f"{{{NS_DAV}}}collection") is not None
                entry["is_calendar"] = resource_type.find(f"{{{NS_CALDAV}}}calendar") is not None
            name = prop.findtext(f"{{{NS_DAV}}}displayname")
            if name:
                entry["displayname"] = name.strip()
            supported = prop.find(f"{{{NS_CALDAV}}}supported-calendar-component-set")
            if supported is not None:
                entry["components"] = [
                    (comp.attrib.get("name") or "").upper()
                    for comp in supported.findall(f"{{{NS_CALDAV}}}comp")
                    if comp.attrib.get("name")
                ]
        entries.append(entry)
    return entries


class FetchStrategy(Protocol):
    name: str

    def fetch(
        self,
        collection_url: str,
        component: str,
        start: datetime | None,
        end: datetime | None,
    ) -> list[RemoteObject]: ...


class LibraryFetchStrategy:
    name = "caldav-library"

    def __init__(self, service: "CalDAVService") -> None:
        self.service = service

    def fetch(
        self,
        collection_url: str,
        component: str,
        start: datetime | None,
        end: datetime | None,
    ) -> list[RemoteObject]:
        calendar = self.service.library_calendar(collection_url)
        search_args: dict[str, Any] = {"props": [dav.GetEtag()]}
        if component == "VTODO":
            search_args.update(todo=True, include_completed=True)
        else:
            search_args["event"] = True
        if start is not None and end is not None:
            search_args.update(start=start, end=end, expand=False)
        objects: list[RemoteObject] = []
        for resource in calendar.search(**search_args):
            data = decode_raw_ical(getattr(resource, "data", ""))
            if not data or not _contains_component(data, component):
                continue
            props = getattr(resource, "props", None) or {}
            href = str(getattr(resource, "url", "") or "")
            objects.append(_with_etag(href, data, props.get(dav.GetEtag.tag)))
        return objects


class RawFetchStrategy:
    name = "raw-http"

    def __init__(self, service: "CalDAVService") -> None:
        self.service = service

    def fetch(
        self,
        collection_url: str,
        component: str,
        start: datetime | None,
        end: datetime | None,
    ) -> list[RemoteObject]:
        objects = self._report(collection_url, component, start, end)
        if objects:
            return objects
        logger.info("REPORT on %s returned nothing, listing collection members", collection_url)
        return self._list_and_get(collection_url, component)

    def _report(
        self,
        collection_url: str,
        component: str,
        start: datetime | None,
        end: datetime | None,
    ) -> list[RemoteObject]:
        time_range = ""
        if start is not None and end is not None:
            time_range = f'<c:time-range start="{_ical_utc(start)}" end="{_ical_utc(end)}"/>'
        body = REPORT_TEMPLATE.format(component=component.upper(), time_range=time_range)
        response = self.service.request(
            "REPORT",
            collection_url,
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
            data=body.encode("utf-8"),
        )
        if response.status_code == 404:
            raise NotFoundError(f"Collection not found: {collection_url}")
        if response.status_code != 207:
            logger.info("REPORT on %s answered HTTP %s", collection_url, response.status_code)
            return []
        objects: list[RemoteObject] = []
        for entry in parse_multistatus(response.content):
            data = entry["calendar_data"]
            if not data or not _contains_component(data, component):
                continue
            href = urljoin(collection_url, entry["href"])
            objects.append(_with_etag(href, data, entry["etag"]))
        return objects

    def _list_and_get(self, collection_url: str, component: str) -> list[RemoteObject]:
        response = self.service.request(
            "PROPFIND",
            collection_url,
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
            data=MEMBERS_BODY.encode("utf-8"),
        )
        if response.status_code == 404:
            raise NotFoundError(f"Collection not found: {collection_url}")
        if response.status_code != 207:
            raise SyncError(f"PROPFIND on {collection_url} failed: HTTP {response.status_code}")
        objects: list[RemoteObject] = []
        for entry in parse_multistatus(response.content):
            href = urljoin(collection_url, entry["href"])
            if entry["is_collection"] or _same_resource(href, collection_url):
                continue
            member = self.service.request("GET", href)
            if member.status_code != 200:
                logger.warning("GET %s answered HTTP %s, skipping", href, member.status_code)
                continue
            data = member.text
            if not _contains_component(data, component):
                continue
            objects.append(_with_etag(href, data, entry["etag"] or _response_etag(member)))
        return objects


class CalDAVService:
    def __init__(self, account: AccountConfig, timeout_seconds: float = 30) -> None:
        self.account = account
        self.timeout_seconds = timeout_seconds
        self._client: Any = None
        self._session: requests.Session | None = None
        self._collections: list[CalendarInfo] | None = None
        self.strategies: list[FetchStrategy] = [LibraryFetchStrategy(self), RawFetchStrategy(self)]

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            if self.account.username:
                session.auth = (self.account.username, self.account.password)
            self._session = session
        return self._session

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        data: bytes | None = None,
    ) -> requests.Response:
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                data=data,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise AccountConnectionError(
                f"{method} {url} timed out after {self.timeout_seconds}s"
            ) from exc
        except requests.RequestException as exc:
            raise AccountConnectionError(f"{method} {url} failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise AccountConnectionError(
                f"Authentication failed for account {self.account.display_name} (HTTP {response.status_code})"
            )
        return response

    def _connect(self) -> Any:
        if self._client is not None:
            return self._client
        if not self.account.server_url:
            raise AccountConnectionError(f"Account {self.account.display_name} has no server_url.")
        self._client = caldav.DAVClient(
            url=self.account.server_url,
            username=self.account.username or None,
            password=self.account.password or None,
            timeout=self.timeout_seconds,
        )
        return self._client

    def library_calendar(self, collection_url: str) -> Any:
        return self._connect().calendar(url=collection_url)

    def _library_collections(self) -> list[CalendarInfo]:
        principal = self._connect().principal()
        calendars: list[CalendarInfo] = []
        for calendar in principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            try:
                components = [str(item).upper() for item in calendar.get_supported_components()]
            except Exception:
                components = []
            calendars.append(
                CalendarInfo(calendar_id=calendar_id, name=name, url=calendar_id, components=components)
            )
        return calendars

    def _probe_urls(self) -> list[str]:
        server_url = self.account.server_url
        base = server_url if server_url.endswith("/") else f"{server_url}/"
        username = quote(self.account.username)
        candidates = [server_url]
        if "remote.php/dav" in server_url and "calendars" not in server_url:
            candidates.append(f"{server_url.split('remote.php/dav')[0]}remote.php/dav/calendars/{username}/")
        candidates.append(f"{base}remote.php/dav/calendars/{username}/")
        candidates.append(f"{base}calendars/{username}/")
        unique: list[str] = []
        for url in candidates:
            if url and url not in unique:
                unique.append(url)
        return unique

    def _raw_collections(self) -> list[CalendarInfo]:
        for url in self._probe_urls():
            logger.debug("Probing %s for calendar collections", url)
            response = self.request(
                "PROPFIND",
                url,
                headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
                data=DISCOVERY_BODY.encode("utf-8"),
            )
            if response.status_code != 207:
                continue
            try:
                entries = parse_multistatus(response.content)
            except ParseError:
                continue
            found = [
                CalendarInfo(
                    calendar_id=urljoin(url, entry["href"]),
                    name=entry["displayname"] or "Untitled",
                    url=urljoin(url, entry["href"]),
                    components=entry["components"],
                )
                for entry in entries
                if entry["is_calendar"]
            ]
            if found:
                return found
        return []

    def list_collections(self) -> list[CalendarInfo]:
        if self._collections is not None:
            return self._collections
        try:
            calendars = self._library_collections()
        except AccountConnectionError:
            raise
        except Exception as exc:
            logger.warning("Library discovery failed for %s: %s", self.account.display_name, exc)
            calendars = []
        if not calendars:
            calendars = self._raw_collections()
        self._collections = calendars
        return calendars

    def resolve_collection(self, component: str) -> str:
        if self.account.calendar_url:
            return self.account.calendar_url
        calendars = self.list_collections()
        if not calendars:
            raise NotFoundError(f"No calendar collection found for account {self.account.display_name}")
        for calendar in calendars:
            if component.upper() in calendar.components:
                return calendar.url
        return calendars[0].url

    def fetch_objects(
        self,
        component: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[RemoteObject]:
        # A missing collection must not read as an empty one.
        collection_url = self.resolve_collection(component)
        last_error: Exception | None = None
        failures = 0
        for strategy in self.strategies:
            try:
                objects = strategy.fetch(collection_url, component, start, end)
            except NotFoundError:
                objects = []
            except Exception as exc:
                logger.warning(
                    "Fetch via %s failed for %s: %s", strategy.name, self.account.display_name, exc
                )
                last_error = exc
                failures += 1
                continue
            if objects:
                logger.debug(
                    "Fetched %d %s objects via %s for %s",
                    len(objects),
                    component,
                    strategy.name,
                    self.account.display_name,
                )
                return self._dedupe(objects)
            logger.info("Strategy %s returned no %s objects for %s", strategy.name, component, collection_url)
        if last_error is not None and failures == len(self.strategies):
            if isinstance(last_error, SyncError):
                raise last_error
            raise AccountConnectionError(str(last_error)) from last_error
        return []

    @staticmethod
    def _dedupe(objects: list[RemoteObject]) -> list[RemoteObject]:
        seen: set[str] = set()
        unique: list[RemoteObject] = []
        for item in objects:
            key = _normalize_calendar_id(item.href) or item.data
            if key in seen:
                continue
            seen.add(key)
            unique.append(item)
        return unique

    def fetch_feed(self, url: str) -> str:
        response = self.request("GET", url)
        if response.status_code == 404:
            raise NotFoundError(f"Feed not found: {url}")
        if not 200 <= response.status_code < 300:
            raise SyncError(f"Feed {url} answered HTTP {response.status_code}")
        return response.text

    def create_object(self, uid: str, data: str, component: str = "VTODO") -> RemoteObject:
        collection_url = self.resolve_collection(component)
        href = urljoin(collection_url.rstrip("/") + "/", quote(f"{uid}.ics"))
        response = self.request(
            "PUT",
            href,
            headers={"Content-Type": "text/calendar; charset=utf-8", "If-None-Match": "*"},
            data=data.encode("utf-8"),
        )
        if response.status_code == 412:
            raise ConflictWriteError(href, None)
        if response.status_code == 404:
            raise NotFoundError(f"Collection not found: {collection_url}")
        if response.status_code not in (200, 201, 204):
            raise SyncError(f"Create {href} failed: HTTP {response.status_code}")
        return RemoteObject(href=href, data=data, etag=_response_etag(response))

    def update_object(self, href: str, data: str, etag: str | None) -> RemoteObject:
        headers = {"Content-Type": "text/calendar; charset=utf-8"}
        if etag and not etag.startswith(HASH_ETAG_PREFIX):
            headers["If-Match"] = f'"{etag}"'
        response = self.request("PUT", href, headers=headers, data=data.encode("utf-8"))
        if response.status_code == 412:
            raise ConflictWriteError(href, etag)
        if response.status_code in (404, 410):
            raise NotFoundError(f"Remote object not found: {href}")
        if response.status_code not in (200, 201, 204):
            raise SyncError(f"Update {href} failed: HTTP {response.status_code}")
        return RemoteObject(href=href, data=data, etag=_response_etag(response))

    def delete_object(self, href: str, etag: str | None = None) -> None:
        headers: dict[str, str] = {}
        if etag and not etag.startswith(HASH_ETAG_PREFIX):
            headers["If-Match"] = f'"{etag}"'
        response = self.request("DELETE", href, headers=headers)
        if response.status_code in (404, 410):
            raise NotFoundError(f"Remote object not found: {href}")
        if response.status_code == 412:
            raise ConflictWriteError(href, etag)
        if response.status_code not in (200, 202, 204):
            raise SyncError(f"Delete {href} failed: HTTP {response.status_code}")

