from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


DEFAULT_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_RENEWAL_INTERVAL_SECONDS = 60 * 60 * 23
MIN_RENEWAL_INTERVAL_SECONDS = 60
DEFAULT_NEW_EVENT_THRESHOLD_MS = 2000

CHANNEL_ID_HEADER = "x-goog-channel-id"
RESOURCE_STATE_HEADER = "x-goog-resource-state"


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
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def to_millis(value: str | datetime | None) -> int | None:
    try:
        parsed = parse_iso_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    return int(round(parsed.timestamp() * 1000))


def now_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _clean_ids(values: Any) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    cleaned: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


@dataclass
class GoogleConfig:
    base_url: str = DEFAULT_API_BASE_URL
    access_token: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", DEFAULT_API_BASE_URL)).strip() or DEFAULT_API_BASE_URL,
            access_token=str(data.get("access_token", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class WatchConfig:
    calendar_ids: list[str] = field(default_factory=list)
    new_only: bool = False
    callback_url: str = ""
    renewal_interval_seconds: int = DEFAULT_RENEWAL_INTERVAL_SECONDS
    new_event_threshold_ms: int = DEFAULT_NEW_EVENT_THRESHOLD_MS

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "WatchConfig":
        data = data or {}
        return cls(
            calendar_ids=_clean_ids(data.get("calendar_ids", [])),
            new_only=bool(data.get("new_only", False)),
            callback_url=str(data.get("callback_url", "")).strip(),
            renewal_interval_seconds=max(
                MIN_RENEWAL_INTERVAL_SECONDS,
                int(data.get("renewal_interval_seconds", DEFAULT_RENEWAL_INTERVAL_SECONDS)),
            ),
            new_event_threshold_ms=max(
                0, int(data.get("new_event_threshold_ms", DEFAULT_NEW_EVENT_THRESHOLD_MS))
            ),
        )


@dataclass
class SinkConfig:
    forward_url: str = ""
    timeout_seconds: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SinkConfig":
        data = data or {}
        return cls(
            forward_url=str(data.get("forward_url", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 10))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            watch=WatchConfig.from_dict(data.get("watch")),
            sink=SinkConfig.from_dict(data.get("sink")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class WatchSnapshot:
    """Watch settings captured once per invocation."""

    calendar_ids: tuple[str, ...]
    new_only: bool = False
    callback_url: str = ""
    renewal_interval_seconds: int = DEFAULT_RENEWAL_INTERVAL_SECONDS
    new_event_threshold_ms: int = DEFAULT_NEW_EVENT_THRESHOLD_MS

    @classmethod
    def from_config(cls, config: AppConfig) -> "WatchSnapshot":
        return cls(
            calendar_ids=tuple(config.watch.calendar_ids),
            new_only=config.watch.new_only,
            callback_url=config.watch.callback_url,
            renewal_interval_seconds=config.watch.renewal_interval_seconds,
            new_event_threshold_ms=config.watch.new_event_threshold_ms,
        )


@dataclass
class WatchedResource:
    resource_id: str
    channel_id: str | None = None
    channel_resource_id: str | None = None
    expiration: int | None = None
    sync_token: str | None = None
    version: int = 0

    @property
    def has_channel(self) -> bool:
        return bool(self.channel_id and self.channel_resource_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    calendar_id: str
    summary: str
    primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WatchResponse:
    channel_id: str
    channel_resource_id: str
    expiration: int | None


@dataclass
class EventPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None
    status_code: int = 200


@dataclass
class EventMeta:
    dedupe_id: str
    summary: str
    ts: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EmittedEvent:
    payload: dict[str, Any]
    metadata: EventMeta


@dataclass
class PushNotification:
    headers: dict[str, str]

    def __post_init__(self) -> None:
        # Header names are case-insensitive on the wire.
        self.headers = {str(key).lower(): str(value) for key, value in (self.headers or {}).items()}

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "PushNotification":
        return cls(headers=dict(headers.items()))

    @property
    def channel_id(self) -> str:
        return str(self.headers.get(CHANNEL_ID_HEADER, "") or "").strip()

    @property
    def resource_state(self) -> str:
        return str(self.headers.get(RESOURCE_STATE_HEADER, "") or "").strip()


@dataclass
class TimerTick:
    interval_seconds: int

    @property
    def interval_millis(self) -> int:
        return int(self.interval_seconds) * 1000


@dataclass
class RunResult:
    trigger: str
    decision: str = ""
    emitted: int = 0
    skipped: int = 0
    renewed: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "decision": self.decision,
            "emitted": self.emitted,
            "skipped": self.skipped,
            "renewed": list(self.renewed),
            "run_at": _ensure_tz(self.run_at).isoformat(),
        }
