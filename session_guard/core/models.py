from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so every timestamp in the package is comparable."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------


class SessionState(str, Enum):
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"
    BUFFERING = "buffering"


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


class ConditionField(str, Enum):
    """Every field a rule condition may test, grouped by family."""

    # Session behaviour
    CONCURRENT_STREAMS = "concurrent_streams"
    ACTIVE_SESSION_DISTANCE_KM = "active_session_distance_km"
    TRAVEL_SPEED_KMH = "travel_speed_kmh"
    UNIQUE_IPS_IN_WINDOW = "unique_ips_in_window"
    UNIQUE_DEVICES_IN_WINDOW = "unique_devices_in_window"
    INACTIVE_DAYS = "inactive_days"

    # Stream quality
    SOURCE_RESOLUTION = "source_resolution"
    OUTPUT_RESOLUTION = "output_resolution"
    IS_TRANSCODING = "is_transcoding"
    IS_TRANSCODE_DOWNGRADE = "is_transcode_downgrade"
    SOURCE_BITRATE_MBPS = "source_bitrate_mbps"

    # User attributes
    USER_ID = "user_id"
    TRUST_SCORE = "trust_score"
    ACCOUNT_AGE_DAYS = "account_age_days"

    # Device / client
    DEVICE_TYPE = "device_type"
    CLIENT_NAME = "client_name"
    PLATFORM = "platform"

    # Network / location
    IS_LOCAL_NETWORK = "is_local_network"
    COUNTRY = "country"
    IP_IN_RANGE = "ip_in_range"

    # Scope
    SERVER_ID = "server_id"
    LIBRARY_ID = "library_id"
    MEDIA_TYPE = "media_type"


class VideoResolution(str, Enum):
    UHD_4K = "4K"
    FHD_1080P = "1080p"
    HD_720P = "720p"
    SD_480P = "480p"
    SD = "SD"
    UNKNOWN = "unknown"


class DeviceType(str, Enum):
    TV = "tv"
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    BROWSER = "browser"
    UNKNOWN = "unknown"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    WINDOWS = "windows"
    MACOS = "macos"
    LINUX = "linux"
    TVOS = "tvos"
    ANDROIDTV = "androidtv"
    ROKU = "roku"
    WEBOS = "webos"
    TIZEN = "tizen"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Sessions and users
# ---------------------------------------------------------------------------


class Session(BaseModel):
    """One playback attempt as reported by a media server."""

    id: str
    server_user_id: str
    server_id: str
    state: SessionState = SessionState.PLAYING
    media_type: Optional[str] = None
    rating_key: Optional[str] = None
    library_id: Optional[str] = None

    started_at: datetime
    stopped_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    progress_ms: Optional[int] = None
    total_duration_ms: Optional[int] = None
    duration_ms: Optional[int] = None
    last_paused_at: Optional[datetime] = None
    paused_duration_ms: int = Field(default=0, ge=0)

    reference_id: Optional[str] = None
    watched: bool = False
    short_session: bool = False
    force_stopped: bool = False

    ip_address: str = ""
    geo_lat: Optional[float] = None
    geo_lon: Optional[float] = None
    geo_city: Optional[str] = None
    geo_country: Optional[str] = None

    device: Optional[str] = None
    platform: Optional[str] = None
    product: Optional[str] = None
    device_id: Optional[str] = None
    player_name: Optional[str] = None

    source_video_width: Optional[int] = None
    source_video_height: Optional[int] = None
    source_bitrate: Optional[int] = None
    stream_video_width: Optional[int] = None
    stream_video_height: Optional[int] = None
    bitrate: Optional[int] = None
    is_transcode: bool = False

    @field_validator("started_at", "stopped_at", "last_seen_at", "last_paused_at")
    @classmethod
    def naive_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode="after")
    def clamp_progress_to_duration(self) -> "Session":
        # Servers occasionally report a position past the end of the item.
        if (
            self.progress_ms is not None
            and self.total_duration_ms
            and self.progress_ms > self.total_duration_ms
        ):
            self.progress_ms = self.total_duration_ms
        return self


class ServerUser(BaseModel):
    """A user identity on one media server. Mutated elsewhere; read-only here."""

    id: str
    username: Optional[str] = None
    trust_score: int = Field(default=100, ge=0, le=100)
    created_at: datetime
    last_activity_at: Optional[datetime] = None

    @field_validator("created_at", "last_activity_at")
    @classmethod
    def naive_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class Server(BaseModel):
    id: str
    name: str = ""
    type: Optional[str] = None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

ConditionValue = Union[bool, int, float, str, List[Union[int, float, str]]]


class ConditionParams(BaseModel):
    window_hours: Optional[int] = Field(default=None, gt=0)


class Condition(BaseModel):
    """
    A single test of one field against a value.

    ``field`` and ``operator`` stay plain strings: an unknown field or operator
    must reach the engine and fail to match instead of failing validation.
    """

    field: str
    operator: str
    value: ConditionValue
    params: Optional[ConditionParams] = None

    @field_validator("field", "operator", mode="before")
    @classmethod
    def enum_to_plain_string(cls, v: Any) -> Any:
        if isinstance(v, Enum):
            return v.value
        return v


class ConditionGroup(BaseModel):
    """Conditions inside a group are OR'd."""

    conditions: List[Condition] = Field(default_factory=list)


class RuleConditions(BaseModel):
    """Groups are AND'd together."""

    groups: List[ConditionGroup] = Field(default_factory=list)


class CreateViolationAction(BaseModel):
    type: Literal["create_violation"] = "create_violation"
    severity: Literal["low", "warning", "high"]
    cooldown_minutes: Optional[int] = Field(default=None, gt=0)


class LogOnlyAction(BaseModel):
    type: Literal["log_only"] = "log_only"
    message: Optional[str] = Field(default=None, max_length=500)


class NotifyAction(BaseModel):
    type: Literal["notify"] = "notify"
    channels: List[Literal["push", "discord", "email", "webhook"]] = Field(min_length=1)
    cooldown_minutes: Optional[int] = Field(default=None, gt=0)


class AdjustTrustAction(BaseModel):
    type: Literal["adjust_trust"] = "adjust_trust"
    amount: int = Field(ge=-100, le=100)


class SetTrustAction(BaseModel):
    type: Literal["set_trust"] = "set_trust"
    value: int = Field(ge=0, le=100)


class ResetTrustAction(BaseModel):
    type: Literal["reset_trust"] = "reset_trust"


class KillStreamAction(BaseModel):
    type: Literal["kill_stream"] = "kill_stream"
    delay_seconds: Optional[int] = Field(default=None, ge=0, le=300)
    require_confirmation: Optional[bool] = None
    cooldown_minutes: Optional[int] = Field(default=None, gt=0)


class MessageClientAction(BaseModel):
    type: Literal["message_client"] = "message_client"
    message: str = Field(min_length=1, max_length=500)


Action = Annotated[
    Union[
        CreateViolationAction,
        LogOnlyAction,
        NotifyAction,
        AdjustTrustAction,
        SetTrustAction,
        ResetTrustAction,
        KillStreamAction,
        MessageClientAction,
    ],
    Field(discriminator="type"),
]


class RuleActions(BaseModel):
    actions: List[Action] = Field(default_factory=list)


class Rule(BaseModel):
    """
    A V2 rule. ``conditions`` is None for legacy rules that were never
    converted; such rules are never matched by the engine.
    """

    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    server_id: Optional[str] = None
    conditions: Optional[RuleConditions] = None
    actions: Optional[RuleActions] = None

    # Legacy definition, kept only so unconverted rules can be represented.
    type: Optional[str] = None
    params: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class SessionContext(BaseModel):
    """
    Everything needed to evaluate rules for one session, minus the rule itself.

    ``active_sessions`` spans the whole deployment; ``recent_sessions`` is the
    bounded history of the same user. Both are read-only snapshots.
    """

    session: Session
    server_user: ServerUser
    server: Server
    active_sessions: List[Session] = Field(default_factory=list)
    recent_sessions: List[Session] = Field(default_factory=list)
    now: datetime = Field(default_factory=utc_now)

    @field_validator("now")
    @classmethod
    def naive_as_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class EvaluationContext(SessionContext):
    rule: Rule


class EvaluationResult(BaseModel):
    rule_id: str
    rule_name: str
    matched: bool
    matched_groups: List[int] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Session state tracker results
# ---------------------------------------------------------------------------


class PauseAccumulation(BaseModel):
    last_paused_at: Optional[datetime] = None
    paused_duration_ms: int = 0

    @field_validator("last_paused_at")
    @classmethod
    def naive_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class StopDuration(BaseModel):
    duration_ms: int
    final_paused_duration_ms: int


class SessionStopResult(BaseModel):
    session: Session
    duration_ms: int
    watched: bool
    short_session: bool


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class SessionLimits(BaseModel):
    """Thresholds consumed by the session state tracker."""

    stale_session_timeout_seconds: int = 300  # 5 minutes
    min_play_time_ms: int = 120_000  # 2 minutes
    watch_completion_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    continued_session_threshold_ms: int = 60_000
    max_group_gap_hours: int = 24  # hard cap on resume grouping


SESSION_LIMITS = SessionLimits()


class MonitorConfig(BaseModel):
    """Dependency-injected configuration for SessionMonitor."""

    limits: SessionLimits = Field(default_factory=SessionLimits)
    # Per media type override of limits.watch_completion_threshold
    watch_thresholds: Dict[str, float] = Field(default_factory=dict)
    sweep_interval_seconds: float = 30.0
    recent_history_hours: int = 24
    max_recent_sessions: int = 50
    circuit_breaker_threshold: int = 5  # consecutive dispatch failures before opening
    circuit_breaker_cooldown_seconds: float = 60.0
