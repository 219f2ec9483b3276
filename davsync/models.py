from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any


CALDAV_PROVIDER_TYPES = ("caldav", "apple")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


@dataclass
class DatabaseConfig:
    path: str = "data/davsync.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DatabaseConfig":
        data = data or {}
        return cls(path=str(data.get("path", "data/davsync.db")).strip() or "data/davsync.db")


@dataclass
class SecretsConfig:
    encryption_key: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SecretsConfig":
        data = data or {}
        return cls(encryption_key=str(data.get("encryption_key", "")).strip())


@dataclass
class SyncConfig:
    enable_new_calendars: bool = True
    request_timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            enable_new_calendars=bool(data.get("enable_new_calendars", True)),
            request_timeout_seconds=max(5, int(data.get("request_timeout_seconds", 30))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(
            level=level,
            format=str(data.get("format", cls.format)).strip() or cls.format,
        )


@dataclass
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            database=DatabaseConfig.from_dict(data.get("database")),
            secrets=SecretsConfig.from_dict(data.get("secrets")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


class CalendarSyncState(str, enum.Enum):
    UNSYNCED = "unsynced"
    FULL_SYNC_IN_FLIGHT = "full_sync_in_flight"
    INCREMENTAL_SYNC_IN_FLIGHT = "incremental_sync_in_flight"
    SYNCED = "synced"
    FAILED = "failed"

    @property
    def in_flight(self) -> bool:
        return self in {
            CalendarSyncState.FULL_SYNC_IN_FLIGHT,
            CalendarSyncState.INCREMENTAL_SYNC_IN_FLIGHT,
        }


class SyncMode(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class EncryptedSecret:
    ciphertext: str
    iv: str
    tag: str


@dataclass
class CalendarRef:
    calendar_id: str
    display_name: str = ""
    sync_enabled: bool = True
    ctag: str | None = None
    sync_token: str | None = None
    color: str | None = None
    is_primary: bool = False
    sync_state: CalendarSyncState = CalendarSyncState.UNSYNCED
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["sync_state"] = self.sync_state.value
        return payload


@dataclass
class ProviderConnection:
    provider_id: str
    provider_type: str
    username: str
    server_url: str
    credential: EncryptedSecret
    calendars: list[CalendarRef] = field(default_factory=list)
    needs_reauth: bool = False
    last_sync_at: datetime | None = None

    def enabled_calendars(self) -> list[CalendarRef]:
        return [cal for cal in self.calendars if cal.sync_enabled]

    def calendar(self, calendar_id: str) -> CalendarRef | None:
        for cal in self.calendars:
            if cal.calendar_id == calendar_id:
                return cal
        return None

    def to_dict(self) -> dict[str, Any]:
        # Never expose the encrypted credential.
        return {
            "provider_id": self.provider_id,
            "provider_type": self.provider_type,
            "username": self.username,
            "server_url": self.server_url,
            "needs_reauth": self.needs_reauth,
            "last_sync_at": serialize_datetime(self.last_sync_at),
            "calendars": [cal.to_dict() for cal in self.calendars],
        }


@dataclass
class RemoteCalendar:
    calendar_id: str
    display_name: str = ""
    color: str | None = None
    ctag: str | None = None
    sync_token: str | None = None


@dataclass
class RemoteObject:
    href: str
    data: str
    etag: str = ""


@dataclass
class ChangeReport:
    added: list[RemoteObject] = field(default_factory=list)
    modified: list[RemoteObject] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    new_sync_token: str | None = None


@dataclass
class Recurrence:
    rule: str
    exceptions: list[datetime] = field(default_factory=list)


@dataclass
class Reminder:
    type: str
    minutes_before: int


@dataclass
class Attendee:
    email: str
    name: str | None = None
    status: str = "needsAction"
    optional: bool = False


@dataclass
class Organizer:
    email: str
    name: str | None = None


@dataclass
class EventMetadata:
    calendar_id: str
    calendar_name: str = ""
    remote_url: str = ""


@dataclass
class CanonicalEvent:
    provider_event_id: str
    start: datetime
    end: datetime
    metadata: EventMetadata
    series_id: str = ""
    title: str | None = None
    description: str | None = None
    all_day: bool = False
    location: str | None = None
    status: str | None = None
    recurrence: Recurrence | None = None
    recurrence_id: datetime | None = None
    reminders: list[Reminder] = field(default_factory=list)
    attendees: list[Attendee] = field(default_factory=list)
    organizer: Organizer | None = None
    transparency: str | None = None
    etag: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["recurrence_id"] = serialize_datetime(self.recurrence_id)
        if self.recurrence is not None:
            payload["recurrence"]["exceptions"] = [
                serialize_datetime(value) for value in self.recurrence.exceptions
            ]
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanonicalEvent":
        recurrence = None
        raw_recurrence = data.get("recurrence")
        if isinstance(raw_recurrence, dict):
            recurrence = Recurrence(
                rule=str(raw_recurrence.get("rule", "")),
                exceptions=[parse_iso_datetime(x) for x in raw_recurrence.get("exceptions", [])],
            )
        organizer = None
        if isinstance(data.get("organizer"), dict):
            organizer = Organizer(**data["organizer"])
        return cls(
            provider_event_id=str(data["provider_event_id"]),
            start=parse_iso_datetime(data["start"]),
            end=parse_iso_datetime(data["end"]),
            metadata=EventMetadata(**data.get("metadata", {})),
            series_id=str(data.get("series_id", "")),
            title=data.get("title"),
            description=data.get("description"),
            all_day=bool(data.get("all_day", False)),
            location=data.get("location"),
            status=data.get("status"),
            recurrence=recurrence,
            recurrence_id=parse_iso_datetime(data.get("recurrence_id")),
            reminders=[Reminder(**item) for item in data.get("reminders", [])],
            attendees=[Attendee(**item) for item in data.get("attendees", [])],
            organizer=organizer,
            transparency=data.get("transparency"),
            etag=str(data.get("etag", "")),
        )


@dataclass
class ChangeEntry:
    action: str
    provider_event_id: str
    event: CanonicalEvent | None = None

    @classmethod
    def upsert(cls, event: CanonicalEvent) -> "ChangeEntry":
        return cls(action="upsert", provider_event_id=event.provider_event_id, event=event)

    @classmethod
    def delete(cls, provider_event_id: str) -> "ChangeEntry":
        return cls(action="delete", provider_event_id=provider_event_id)


@dataclass
class SyncCursor:
    calendar_id: str
    ctag: str | None = None
    sync_token: str | None = None


@dataclass
class EventDraft:
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    provider_event_id: str | None = None
    description: str | None = None
    location: str | None = None
    calendar_id: str | None = None


@dataclass
class SyncResult:
    status: str
    message: str
    mode: str
    duration_ms: int = 0
    changes_applied: int = 0
    parse_skips: int = 0
    calendars: dict[str, str] = field(default_factory=dict)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "mode": self.mode,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "parse_skips": self.parse_skips,
            "calendars": dict(self.calendars),
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class OutboundResult:
    ok: bool
    message: str
    provider_event_id: str = ""
    calendar_id: str = ""
    remote_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
