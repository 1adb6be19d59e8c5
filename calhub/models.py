from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from calhub.errors import SyncError


CALENDAR_TYPES = ("google", "ical")
DEFAULT_TIMEZONE = "Asia/Tokyo"
DEFAULT_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_GOOGLE_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


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
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def to_storage_time(value: datetime) -> str:
    # Fixed precision keeps lexical order equal to chronological order in SQL.
    return _ensure_tz(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def date_to_datetime(
    value: datetime | date | None, is_end: bool = False, tz: tzinfo = timezone.utc
) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=tz)
    return datetime.combine(value, time.min, tzinfo=tz)


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(str(name or DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


# Service configuration


@dataclass
class StorageConfig:
    database_path: str = "data/calhub.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(
            database_path=str(data.get("database_path", "data/calhub.db")).strip() or "data/calhub.db",
        )


@dataclass
class SecurityConfig:
    encryption_key: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SecurityConfig":
        data = data or {}
        return cls(encryption_key=str(data.get("encryption_key", "") or "").strip())


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    token_url: str = DEFAULT_GOOGLE_TOKEN_URL
    api_base_url: str = DEFAULT_GOOGLE_API_BASE_URL

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "") or "").strip(),
            client_secret=str(data.get("client_secret", "") or "").strip(),
            token_url=str(data.get("token_url", "") or "").strip() or DEFAULT_GOOGLE_TOKEN_URL,
            api_base_url=str(data.get("api_base_url", "") or "").strip().rstrip("/")
            or DEFAULT_GOOGLE_API_BASE_URL,
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class SyncConfig:
    lookback_days: int = 30
    lookahead_days: int = 30
    token_refresh_buffer_seconds: int = 300
    max_concurrency: int = 8
    http_timeout_seconds: float = 30.0
    timezone: str = DEFAULT_TIMEZONE

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            lookback_days=max(0, int(data.get("lookback_days", 30))),
            lookahead_days=max(0, int(data.get("lookahead_days", 30))),
            token_refresh_buffer_seconds=max(0, int(data.get("token_refresh_buffer_seconds", 300))),
            max_concurrency=max(1, int(data.get("max_concurrency", 8))),
            http_timeout_seconds=max(1.0, float(data.get("http_timeout_seconds", 30.0))),
            timezone=str(data.get("timezone", DEFAULT_TIMEZONE)).strip() or DEFAULT_TIMEZONE,
        )

    @property
    def token_refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self.token_refresh_buffer_seconds)


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            security=SecurityConfig.from_dict(data.get("security")),
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


# Calendar domain


class CalendarConfig(BaseModel):
    """One user-registered calendar, validated at the Config Store boundary."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    type: str
    name: str = ""
    enabled: bool = True
    color: str | None = None
    google_account_email: str | None = Field(default=None, alias="googleAccountEmail")
    google_calendar_id: str | None = Field(default=None, alias="googleCalendarId")
    ical_url: str | None = Field(default=None, alias="icalUrl")

    _parse_error: str | None = PrivateAttr(default=None)

    @classmethod
    def unreadable(cls, calendar_id: str, raw: str, error: str) -> "CalendarConfig":
        """Placeholder for a stored row that no longer validates."""
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            data = {}
        config = cls(
            id=calendar_id,
            type="",
            name=data.get("name") if isinstance(data.get("name"), str) else "",
            enabled=data.get("enabled") is not False,
        )
        config._parse_error = error
        return config

    @property
    def parse_error(self) -> str | None:
        return self._parse_error

    @field_validator("id", "name", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return str(value if value is not None else "").strip()

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        return str(value if value is not None else "").strip().lower()

    @field_validator("color", "google_account_email", "google_calendar_id", "ical_url", mode="before")
    @classmethod
    def _empty_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def missing_fields(self) -> list[str]:
        if self._parse_error is not None:
            return ["config"]
        if self.type == "google":
            return [
                name
                for name in ("google_account_email", "google_calendar_id")
                if not getattr(self, name)
            ]
        if self.type == "ical":
            return [] if self.ical_url else ["ical_url"]
        return ["type"]

    def is_complete(self) -> bool:
        return self.type in CALENDAR_TYPES and not self.missing_fields()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_dict(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude_none=True)
        if self._parse_error is not None:
            payload["error"] = self._parse_error
        return payload


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _ensure_tz(self.start).astimezone(timezone.utc))
        object.__setattr__(self, "end", _ensure_tz(self.end).astimezone(timezone.utc))
        if self.end < self.start:
            raise ValueError("TimeRange end must not be earlier than start")

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return _ensure_tz(start) <= self.end and _ensure_tz(end) >= self.start


@dataclass(frozen=True)
class EventSource:
    type: str
    calendar_name: str = ""
    account_email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "calendarName": self.calendar_name}
        if self.account_email:
            payload["accountEmail"] = self.account_email
        return payload


@dataclass
class CalendarEvent:
    id: str
    calendar_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    description: str | None = None
    source: EventSource = field(default_factory=lambda: EventSource(type="ical"))

    def __post_init__(self) -> None:
        self.start = _ensure_tz(self.start).astimezone(timezone.utc)
        self.end = _ensure_tz(self.end).astimezone(timezone.utc)
        if self.end < self.start:
            raise ValueError(f"Event {self.id} ends before it starts")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "calendarId": self.calendar_id,
            "title": self.title,
            "startTime": serialize_datetime(self.start),
            "endTime": serialize_datetime(self.end),
            "isAllDay": self.all_day,
            "location": self.location,
            "description": self.description,
            "source": self.source.to_dict(),
        }

    def with_updates(self, **kwargs: Any) -> "CalendarEvent":
        return replace(self, **kwargs)


@dataclass(frozen=True)
class ProviderCalendar:
    id: str
    name: str
    primary: bool = False
    color: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime

    def is_expired(self, now: datetime, buffer: timedelta) -> bool:
        return _ensure_tz(now) + buffer >= _ensure_tz(self.expires_at)

    def to_json(self) -> str:
        return json.dumps(
            {
                "accessToken": self.access_token,
                "refreshToken": self.refresh_token,
                "expiresAt": serialize_datetime(self.expires_at),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "OAuthTokens":
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("Stored OAuth tokens must be a JSON object")
        expires_at = parse_iso_datetime(payload.get("expiresAt"))
        if expires_at is None:
            raise ValueError("Stored OAuth tokens are missing expiresAt")
        return cls(
            access_token=str(payload.get("accessToken", "")),
            refresh_token=str(payload.get("refreshToken", "")),
            expires_at=expires_at,
        )


# Sync reporting


@dataclass
class SyncResult:
    calendar_id: str
    event_count: int
    synced_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendarId": self.calendar_id,
            "eventCount": self.event_count,
            "syncedAt": serialize_datetime(self.synced_at),
        }


@dataclass
class ErrorCalendarInfo:
    calendar_id: str
    name: str
    error: SyncError

    def to_dict(self) -> dict[str, Any]:
        return {"calendarId": self.calendar_id, "name": self.name, "error": self.error.to_dict()}


@dataclass
class SyncAllResult:
    success_count: int
    total_count: int
    synced_at: datetime
    error_calendars: list[ErrorCalendarInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "successCount": self.success_count,
            "totalCount": self.total_count,
            "syncedAt": serialize_datetime(self.synced_at),
            "errorCalendars": [item.to_dict() for item in self.error_calendars],
        }


def sync_window(now: datetime, lookback_days: int, lookahead_days: int, tz: tzinfo) -> TimeRange:
    local_now = _ensure_tz(now).astimezone(tz)
    start_date = local_now.date() - timedelta(days=max(0, lookback_days))
    end_date = local_now.date() + timedelta(days=max(0, lookahead_days))
    start = datetime.combine(start_date, time.min, tzinfo=tz)
    end = datetime.combine(end_date, time.max, tzinfo=tz)
    return TimeRange(start=start, end=end)


def day_window(now: datetime, tz: tzinfo, days: int = 1) -> TimeRange:
    """Local-midnight aligned window of ``days`` days, inclusive end one microsecond before the next midnight."""
    local_today = _ensure_tz(now).astimezone(tz).date()
    start = datetime.combine(local_today, time.min, tzinfo=tz)
    next_midnight = datetime.combine(local_today + timedelta(days=max(1, days)), time.min, tzinfo=tz)
    return TimeRange(start=start, end=next_midnight - timedelta(microseconds=1))
