from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any


DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_FEED_BYTES = 5 * 1024 * 1024
DEFAULT_BATCH_SIZE = 500
DEFAULT_BULK_DELETE_THRESHOLD = 2000
DEFAULT_SAFETY_MIN_EVENTS = 5
DEFAULT_SAFETY_MAX_DELETE_RATIO = 0.5

DEFAULT_EVENT_TYPE = "training"
DEFAULT_BOAT_SIZE = "standard"

SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_ERROR = "error"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_utc_millis(value: datetime | date) -> datetime:
    """Normalize to an aware UTC datetime truncated to millisecond precision."""
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min, tzinfo=timezone.utc)
    value = _ensure_tz(value).astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


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
    return to_utc_millis(value).isoformat(timespec="milliseconds")


@dataclass
class SyncConfig:
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    max_feed_bytes: int = DEFAULT_MAX_FEED_BYTES
    batch_size: int = DEFAULT_BATCH_SIZE
    bulk_delete_threshold: int = DEFAULT_BULK_DELETE_THRESHOLD
    safety_min_events: int = DEFAULT_SAFETY_MIN_EVENTS
    safety_max_delete_ratio: float = DEFAULT_SAFETY_MAX_DELETE_RATIO

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        ratio = float(data.get("safety_max_delete_ratio", DEFAULT_SAFETY_MAX_DELETE_RATIO))
        return cls(
            fetch_timeout_seconds=max(
                1.0, float(data.get("fetch_timeout_seconds", DEFAULT_FETCH_TIMEOUT_SECONDS))
            ),
            max_feed_bytes=max(1, int(data.get("max_feed_bytes", DEFAULT_MAX_FEED_BYTES))),
            batch_size=max(1, int(data.get("batch_size", DEFAULT_BATCH_SIZE))),
            bulk_delete_threshold=max(
                1, int(data.get("bulk_delete_threshold", DEFAULT_BULK_DELETE_THRESHOLD))
            ),
            safety_min_events=max(0, int(data.get("safety_min_events", DEFAULT_SAFETY_MIN_EVENTS))),
            safety_max_delete_ratio=min(1.0, max(0.0, ratio)),
        )


@dataclass
class SchedulerConfig:
    enabled: bool = False
    interval_seconds: int = 3600

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SchedulerConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            interval_seconds=max(60, int(data.get("interval_seconds", 3600))),
        )


@dataclass
class CronConfig:
    secret: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CronConfig":
        data = data or {}
        return cls(secret=str(data.get("secret", "") or "").strip())


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    cron: CronConfig = field(default_factory=CronConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            scheduler=SchedulerConfig.from_dict(data.get("scheduler")),
            cron=CronConfig.from_dict(data.get("cron")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Team:
    team_id: str
    name: str = ""
    ical_url: str | None = None


@dataclass
class ManagedEvent:
    event_id: str
    team_id: str
    title: str
    start: datetime
    external_uid: str | None = None
    event_type: str = DEFAULT_EVENT_TYPE
    boat_size: str = DEFAULT_BOAT_SIZE

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        return payload


@dataclass(frozen=True)
class ParsedFeedEvent:
    uid: str
    title: str
    start: datetime


@dataclass
class SyncLogEntry:
    team_id: str
    status: str
    created_count: int = 0
    updated_count: int = 0
    deleted_count: int = 0
    details: list[str] = field(default_factory=list)
    error: str | None = None
    log_id: int | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


@dataclass
class SyncResult:
    created: int
    updated: int
    deleted: int
    success: bool = True
    details: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "count": self.count,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
        }


@dataclass
class TeamSyncReport:
    team_id: str
    team_name: str
    success: bool
    result: SyncResult | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"team": self.team_name, "team_id": self.team_id}
        if self.result is not None:
            payload.update(self.result.to_dict())
        else:
            payload["success"] = self.success
            payload["error"] = self.error
        return payload
