"""
Field evaluators: one function per condition field.

Each evaluator derives a comparable value from the evaluation context and
hands it to ``compare``. Missing data falls back to a neutral value (zero
distance, empty string, ``unknown``) so a partially populated session never
aborts evaluation; the comparator then decides the outcome.
"""

from __future__ import annotations

import ipaddress
import math
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .comparisons import compare
from .models import (
    Condition,
    ConditionField,
    DeviceType,
    EvaluationContext,
    Operator,
    Platform,
    Session,
)
from .resolution import get_resolution, resolution_to_number

ConditionEvaluator = Callable[
    [EvaluationContext, Condition], Union[bool, Awaitable[bool]]
]

EARTH_RADIUS_KM = 6371.0
DEFAULT_WINDOW_HOURS = 24
_DAY = timedelta(days=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def calculate_distance_km(
    lat1: Optional[float],
    lon1: Optional[float],
    lat2: Optional[float],
    lon2: Optional[float],
) -> Optional[float]:
    """Great-circle (haversine) distance in km, or None if any coordinate is missing."""
    if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
        return None

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def normalize_device_type(device: Optional[str], platform: Optional[str]) -> str:
    """Classify a client into tv / mobile / tablet / desktop / browser / unknown."""
    device_lower = (device or "").lower()
    platform_lower = (platform or "").lower()

    if "tv" in device_lower or any(
        marker in platform_lower
        for marker in ("tv", "roku", "webos", "tizen", "firetv", "chromecast", "androidtv")
    ):
        return DeviceType.TV.value

    is_tablet = "ipad" in device_lower or "tablet" in device_lower

    if (
        "iphone" in device_lower
        or "phone" in device_lower
        or platform_lower in ("ios", "android")
    ):
        return DeviceType.TABLET.value if is_tablet else DeviceType.MOBILE.value

    if is_tablet:
        return DeviceType.TABLET.value

    if any(marker in platform_lower for marker in ("windows", "macos", "linux")):
        return DeviceType.DESKTOP.value

    if any(
        marker in device_lower
        for marker in ("browser", "chrome", "firefox", "safari", "edge")
    ):
        return DeviceType.BROWSER.value

    return DeviceType.UNKNOWN.value


def normalize_platform(platform: Optional[str]) -> str:
    """Map a free-form platform string onto the Platform vocabulary."""
    if not platform:
        return Platform.UNKNOWN.value

    lower = platform.lower()

    if "ios" in lower or lower in ("iphone", "ipad"):
        return Platform.IOS.value
    if "android" in lower:
        return Platform.ANDROIDTV.value if "tv" in lower else Platform.ANDROID.value
    if "windows" in lower:
        return Platform.WINDOWS.value
    if "macos" in lower or "mac os" in lower or lower == "darwin":
        return Platform.MACOS.value
    if "linux" in lower:
        return Platform.LINUX.value
    if "tvos" in lower or "apple tv" in lower:
        return Platform.TVOS.value
    if "roku" in lower:
        return Platform.ROKU.value
    if "webos" in lower:
        return Platform.WEBOS.value
    if "tizen" in lower:
        return Platform.TIZEN.value

    return Platform.UNKNOWN.value


def is_private_ip(ip: Optional[str]) -> bool:
    """True for private, loopback and link-local addresses; False for anything unparseable."""
    ip = (ip or "").strip()
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return bool(addr.is_private or addr.is_loopback or addr.is_link_local)


def is_ip_in_cidr(ip: str, cidr: str) -> bool:
    """
    IPv4 CIDR containment.

    IPv6 addresses, a CIDR without a prefix length and malformed input are
    all non-matching.
    """
    if "/" not in cidr:
        return False
    try:
        address = ipaddress.IPv4Address(ip)
        network = ipaddress.IPv4Network(cidr, strict=False)
    except ValueError:
        return False
    return address in network


def _window_hours(condition: Condition) -> int:
    if condition.params and condition.params.window_hours:
        return condition.params.window_hours
    return DEFAULT_WINDOW_HOURS


def _user_sessions_in_window(context: EvaluationContext, condition: Condition) -> List[Session]:
    cutoff = context.session.started_at - timedelta(hours=_window_hours(condition))
    return [
        s for s in context.recent_sessions
        if s.server_user_id == context.server_user.id and s.started_at >= cutoff
    ]


def _whole_days_since(moment: datetime, now: datetime) -> int:
    return math.floor((now - moment) / _DAY)


def _compare_resolution(resolution: str, condition: Condition) -> bool:
    # Set operators test label identity; everything else orders by tier.
    if condition.operator in (Operator.IN.value, Operator.NOT_IN.value):
        return compare(resolution, condition.operator, condition.value)

    target = condition.value
    if isinstance(target, str):
        target = resolution_to_number(target)
    return compare(resolution_to_number(resolution), condition.operator, target)


# ---------------------------------------------------------------------------
# Session behaviour
# ---------------------------------------------------------------------------


def evaluate_concurrent_streams(context: EvaluationContext, condition: Condition) -> bool:
    count = sum(1 for s in context.active_sessions if s.server_user_id == context.server_user.id)
    return compare(count, condition.operator, condition.value)


def evaluate_active_session_distance_km(context: EvaluationContext, condition: Condition) -> bool:
    session = context.session
    max_distance = 0.0
    for other in context.active_sessions:
        if other.server_user_id != context.server_user.id or other.id == session.id:
            continue
        distance = calculate_distance_km(session.geo_lat, session.geo_lon, other.geo_lat, other.geo_lon)
        if distance is not None and distance > max_distance:
            max_distance = distance
    return compare(max_distance, condition.operator, condition.value)


def evaluate_travel_speed_kmh(context: EvaluationContext, condition: Condition) -> bool:
    session = context.session
    previous_sessions = [
        s for s in context.recent_sessions
        if s.server_user_id == context.server_user.id and s.id != session.id
    ]
    if not previous_sessions:
        return compare(0, condition.operator, condition.value)

    previous = max(previous_sessions, key=lambda s: s.started_at)
    distance = calculate_distance_km(session.geo_lat, session.geo_lon, previous.geo_lat, previous.geo_lon)
    if distance is None:
        return compare(0, condition.operator, condition.value)

    hours = (session.started_at - previous.started_at) / timedelta(hours=1)
    if hours <= 0:
        # Two places at the same instant
        speed = math.inf if distance > 0 else 0
        return compare(speed, condition.operator, condition.value)

    return compare(distance / hours, condition.operator, condition.value)


def evaluate_unique_ips_in_window(context: EvaluationContext, condition: Condition) -> bool:
    ips = {context.session.ip_address}
    ips.update(s.ip_address for s in _user_sessions_in_window(context, condition))
    return compare(len(ips), condition.operator, condition.value)


def evaluate_unique_devices_in_window(context: EvaluationContext, condition: Condition) -> bool:
    def identifier(s: Session) -> str:
        if s.device_id is not None:
            return s.device_id
        if s.player_name is not None:
            return s.player_name
        return "unknown"

    devices = {identifier(context.session)}
    devices.update(identifier(s) for s in _user_sessions_in_window(context, condition))
    return compare(len(devices), condition.operator, condition.value)


def evaluate_inactive_days(context: EvaluationContext, condition: Condition) -> bool:
    user = context.server_user
    # Never active: the whole account age counts as inactivity
    since = user.last_activity_at or user.created_at
    return compare(_whole_days_since(since, context.now), condition.operator, condition.value)


# ---------------------------------------------------------------------------
# Stream quality
# ---------------------------------------------------------------------------


def evaluate_source_resolution(context: EvaluationContext, condition: Condition) -> bool:
    session = context.session
    resolution = get_resolution(session.source_video_width, session.source_video_height)
    return _compare_resolution(resolution, condition)


def evaluate_output_resolution(context: EvaluationContext, condition: Condition) -> bool:
    session = context.session
    resolution = get_resolution(session.stream_video_width, session.stream_video_height)
    return _compare_resolution(resolution, condition)


def evaluate_is_transcoding(context: EvaluationContext, condition: Condition) -> bool:
    return compare(context.session.is_transcode, condition.operator, condition.value)


def evaluate_is_transcode_downgrade(context: EvaluationContext, condition: Condition) -> bool:
    session = context.session
    if not session.is_transcode:
        return compare(False, condition.operator, condition.value)

    source = get_resolution(session.source_video_width, session.source_video_height)
    output = get_resolution(session.stream_video_width, session.stream_video_height)
    is_downgrade = resolution_to_number(output) < resolution_to_number(source)
    return compare(is_downgrade, condition.operator, condition.value)


def evaluate_source_bitrate_mbps(context: EvaluationContext, condition: Condition) -> bool:
    session = context.session
    if session.source_bitrate is not None:
        bitrate_bps = session.source_bitrate
    elif session.bitrate is not None:
        bitrate_bps = session.bitrate
    else:
        bitrate_bps = 0
    return compare(bitrate_bps / 1_000_000, condition.operator, condition.value)


# ---------------------------------------------------------------------------
# User attributes
# ---------------------------------------------------------------------------


def evaluate_user_id(context: EvaluationContext, condition: Condition) -> bool:
    return compare(context.server_user.id, condition.operator, condition.value)


def evaluate_trust_score(context: EvaluationContext, condition: Condition) -> bool:
    return compare(context.server_user.trust_score, condition.operator, condition.value)


def evaluate_account_age_days(context: EvaluationContext, condition: Condition) -> bool:
    age_days = _whole_days_since(context.server_user.created_at, context.now)
    return compare(age_days, condition.operator, condition.value)


# ---------------------------------------------------------------------------
# Device / client
# ---------------------------------------------------------------------------


def evaluate_device_type(context: EvaluationContext, condition: Condition) -> bool:
    device_type = normalize_device_type(context.session.device, context.session.platform)
    return compare(device_type, condition.operator, condition.value)


def evaluate_client_name(context: EvaluationContext, condition: Condition) -> bool:
    session = context.session
    # product carries the client name ("Plex for iOS", "Plex Web")
    if session.product is not None:
        client_name = session.product
    elif session.player_name is not None:
        client_name = session.player_name
    else:
        client_name = ""
    return compare(client_name, condition.operator, condition.value)


def evaluate_platform(context: EvaluationContext, condition: Condition) -> bool:
    return compare(normalize_platform(context.session.platform), condition.operator, condition.value)


# ---------------------------------------------------------------------------
# Network / location
# ---------------------------------------------------------------------------


def evaluate_is_local_network(context: EvaluationContext, condition: Condition) -> bool:
    return compare(is_private_ip(context.session.ip_address), condition.operator, condition.value)


def evaluate_country(context: EvaluationContext, condition: Condition) -> bool:
    return compare(context.session.geo_country or "", condition.operator, condition.value)


def evaluate_ip_in_range(context: EvaluationContext, condition: Condition) -> bool:
    ip = context.session.ip_address
    if not ip:
        return False

    operator, value = condition.operator, condition.value

    if operator in (Operator.IN.value, Operator.NOT_IN.value):
        if not isinstance(value, list):
            return False
        in_range = any(isinstance(cidr, str) and is_ip_in_cidr(ip, cidr) for cidr in value)
        return in_range if operator == Operator.IN.value else not in_range

    if operator == Operator.EQ.value and isinstance(value, str):
        return is_ip_in_cidr(ip, value)

    if operator == Operator.NEQ.value and isinstance(value, str):
        return not is_ip_in_cidr(ip, value)

    return False


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------


def evaluate_server_id(context: EvaluationContext, condition: Condition) -> bool:
    return compare(context.server.id, condition.operator, condition.value)


def evaluate_library_id(context: EvaluationContext, condition: Condition) -> bool:
    # Media servers rarely report the library on a live session; absent means "".
    return compare(context.session.library_id or "", condition.operator, condition.value)


def evaluate_media_type(context: EvaluationContext, condition: Condition) -> bool:
    return compare(context.session.media_type, condition.operator, condition.value)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

EVALUATOR_REGISTRY: Dict[str, ConditionEvaluator] = {
    # Session behaviour
    ConditionField.CONCURRENT_STREAMS.value: evaluate_concurrent_streams,
    ConditionField.ACTIVE_SESSION_DISTANCE_KM.value: evaluate_active_session_distance_km,
    ConditionField.TRAVEL_SPEED_KMH.value: evaluate_travel_speed_kmh,
    ConditionField.UNIQUE_IPS_IN_WINDOW.value: evaluate_unique_ips_in_window,
    ConditionField.UNIQUE_DEVICES_IN_WINDOW.value: evaluate_unique_devices_in_window,
    ConditionField.INACTIVE_DAYS.value: evaluate_inactive_days,
    # Stream quality
    ConditionField.SOURCE_RESOLUTION.value: evaluate_source_resolution,
    ConditionField.OUTPUT_RESOLUTION.value: evaluate_output_resolution,
    ConditionField.IS_TRANSCODING.value: evaluate_is_transcoding,
    ConditionField.IS_TRANSCODE_DOWNGRADE.value: evaluate_is_transcode_downgrade,
    ConditionField.SOURCE_BITRATE_MBPS.value: evaluate_source_bitrate_mbps,
    # User attributes
    ConditionField.USER_ID.value: evaluate_user_id,
    ConditionField.TRUST_SCORE.value: evaluate_trust_score,
    ConditionField.ACCOUNT_AGE_DAYS.value: evaluate_account_age_days,
    # Device / client
    ConditionField.DEVICE_TYPE.value: evaluate_device_type,
    ConditionField.CLIENT_NAME.value: evaluate_client_name,
    ConditionField.PLATFORM.value: evaluate_platform,
    # Network / location
    ConditionField.IS_LOCAL_NETWORK.value: evaluate_is_local_network,
    ConditionField.COUNTRY.value: evaluate_country,
    ConditionField.IP_IN_RANGE.value: evaluate_ip_in_range,
    # Scope
    ConditionField.SERVER_ID.value: evaluate_server_id,
    ConditionField.LIBRARY_ID.value: evaluate_library_id,
    ConditionField.MEDIA_TYPE.value: evaluate_media_type,
}
