from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from time import monotonic
from typing import Any

from docket.errors import SyncTimeoutError


TASK_LIST = "task_list"
EVENT_CALENDAR = "event_calendar"
RESOURCE_TYPES = (TASK_LIST, EVENT_CALENDAR)
EVENT_SOURCES = ("auto", "caldav", "feed")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass
class AccountConfig:
    account_id: str
    name: str = ""
    server_url: str = ""
    username: str = ""
    password: str = ""
    calendar_url: str = ""
    enabled: bool = True

    resource_type = ""

    @property
    def display_name(self) -> str:
        return self.name or self.account_id

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["id"] = payload.pop("account_id")
        payload["resource_type"] = self.resource_type
        return payload


@dataclass
class TaskListAccount(AccountConfig):
    resource_type = TASK_LIST


@dataclass
class EventCalendarAccount(AccountConfig):
    source: str = "auto"

    resource_type = EVENT_CALENDAR

    @property
    def feed_url(self) -> str:
        url = self.calendar_url or self.server_url
        if url.lower().startswith("webcal://"):
            return "https://" + url[len("webcal://") :]
        return url

    @property
    def is_feed(self) -> bool:
        if self.source == "feed":
            return True
        if self.source == "caldav":
            return False
        candidates = [self.calendar_url.lower(), self.server_url.lower()]
        for url in candidates:
            if not url:
                continue
            if url.startswith("webcal://") or "/ical/" in url or url.split("?", 1)[0].endswith(".ics"):
                return True
        return False

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["source"] = self.source
        return payload


def account_from_dict(data: dict[str, Any]) -> AccountConfig | None:
    account_id = str(data.get("id", data.get("account_id", ""))).strip()
    if not account_id:
        return None
    resource_type = str(data.get("resource_type", TASK_LIST)).strip().lower()
    if resource_type not in RESOURCE_TYPES:
        resource_type = TASK_LIST
    common = {
        "account_id": account_id,
        "name": str(data.get("name", "") or "").strip(),
        "server_url": str(data.get("server_url", "") or "").strip(),
        "username": str(data.get("username", "") or "").strip(),
        "password": str(data.get("password", "") or "").strip(),
        "calendar_url": str(data.get("calendar_url", "") or "").strip(),
        "enabled": _as_bool(data.get("enabled"), True),
    }
    if resource_type == EVENT_CALENDAR:
        source = str(data.get("source", "auto") or "auto").strip().lower()
        if source not in EVENT_SOURCES:
            source = "auto"
        return EventCalendarAccount(source=source, **common)
    return TaskListAccount(**common)


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    request_timeout_seconds: int = 30
    account_timeout_seconds: int = 300
    event_window_past_days: int = 30
    event_window_future_days: int = 180

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            request_timeout_seconds=max(1, int(data.get("request_timeout_seconds", 30))),
            account_timeout_seconds=max(1, int(data.get("account_timeout_seconds", 300))),
            event_window_past_days=max(0, int(data.get("event_window_past_days", 30))),
            event_window_future_days=max(1, int(data.get("event_window_future_days", 180))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper() or "INFO"
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level, log_dir=str(data.get("log_dir", "") or "").strip())


@dataclass
class AppConfig:
    accounts: list[AccountConfig] = field(default_factory=list)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        accounts: list[AccountConfig] = []
        seen_ids: set[str] = set()
        raw_accounts = data.get("accounts", [])
        if isinstance(raw_accounts, list):
            for item in raw_accounts:
                if not isinstance(item, dict):
                    continue
                account = account_from_dict(item)
                if account is None or account.account_id in seen_ids:
                    continue
                seen_ids.add(account.account_id)
                accounts.append(account)
        return cls(
            accounts=accounts,
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "accounts": [account.to_dict() for account in self.accounts],
            "sync": asdict(self.sync),
            "logging": asdict(self.logging),
        }

    def enabled_accounts(self) -> list[AccountConfig]:
        return [account for account in self.accounts if account.enabled]

    def get_account(self, account_id: str) -> AccountConfig | None:
        for account in self.accounts:
            if account.account_id == account_id:
                return account
        return None


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str
    components: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RemoteObject:
    href: str
    data: str
    etag: str | None = None


@dataclass
class TaskFields:
    uid: str
    summary: str = ""
    status: str = "NEEDS-ACTION"
    due: datetime | None = None
    last_modified: datetime | None = None


@dataclass
class EventFields:
    uid: str
    title: str
    description: str = ""
    location: str = ""
    status: str = "CONFIRMED"
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    rrule: str = ""
    raw_data: str = ""


@dataclass
class LocalTask:
    task_id: int
    content: str
    status: str = "todo"
    due_date: datetime | None = None
    recurrence_rule: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskSyncLink:
    task_id: int
    account_id: str
    remote_uid: str
    remote_etag: str | None = None
    last_synced_at: datetime | None = None


@dataclass
class EventRecord:
    uid: str
    account_id: str
    title: str = ""
    description: str = ""
    location: str = ""
    status: str = "CONFIRMED"
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    rrule: str = ""
    etag: str = ""
    raw_data: str = ""
    last_synced_at: datetime | None = None
    instance_of: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["last_synced_at"] = serialize_datetime(self.last_synced_at)
        payload.pop("raw_data", None)
        return payload

    def clone(self) -> "EventRecord":
        return EventRecord(**{key: getattr(self, key) for key in self.__dataclass_fields__})

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    @property
    def is_recurring(self) -> bool:
        return bool(self.rrule.strip())


@dataclass
class SyncReport:
    trigger: str = "manual"
    created_remote: int = 0
    created_local: int = 0
    updated_remote: int = 0
    updated_local: int = 0
    deleted_remote: int = 0
    deleted_local: int = 0
    conflicts: int = 0
    accounts_synced: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    run_at: datetime = field(default_factory=utc_now)

    @property
    def changes_applied(self) -> int:
        return (
            self.created_remote
            + self.created_local
            + self.updated_remote
            + self.updated_local
            + self.deleted_remote
            + self.deleted_local
        )

    @property
    def status(self) -> str:
        if not self.errors:
            return "success"
        if self.accounts_synced:
            return "partial"
        return "failed"

    def merge(self, other: "SyncReport") -> None:
        self.created_remote += other.created_remote
        self.created_local += other.created_local
        self.updated_remote += other.updated_remote
        self.updated_local += other.updated_local
        self.deleted_remote += other.deleted_remote
        self.deleted_local += other.deleted_local
        self.conflicts += other.conflicts
        self.accounts_synced += other.accounts_synced
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "trigger": self.trigger,
            "created_remote": self.created_remote,
            "created_local": self.created_local,
            "updated_remote": self.updated_remote,
            "updated_local": self.updated_local,
            "deleted_remote": self.deleted_remote,
            "deleted_local": self.deleted_local,
            "conflicts": self.conflicts,
            "accounts_synced": self.accounts_synced,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class RepairResult:
    account_id: str
    scanned_remote: int = 0
    scanned_local_links: int = 0
    orphans_found: int = 0
    repaired_task_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


def event_window(now: datetime, past_days: int, future_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    start = datetime.combine(now_utc.date(), time.min, tzinfo=timezone.utc) - timedelta(days=max(0, past_days))
    end_date = now_utc.date() + timedelta(days=max(1, future_days))
    end = datetime.combine(end_date, time.max, tzinfo=timezone.utc)
    return start, end


@dataclass
class Deadline:
    account_id: str
    seconds: float
    started: float = field(default_factory=monotonic)

    @property
    def remaining(self) -> float:
        return self.seconds - (monotonic() - self.started)

    def check(self) -> None:
        if self.remaining <= 0:
            raise SyncTimeoutError(f"Account {self.account_id} exceeded its {self.seconds:g}s sync deadline")
