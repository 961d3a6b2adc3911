"""
Session state tracking.

Pure functions that turn noisy playback telemetry into session lifecycle facts:
pause accounting, stop duration, stale-session detection, minimum play time,
watch completion and resume grouping. Every input, including the clock, is an
argument; nothing is cached between calls. Callers serialise updates per
session id.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from ..core.models import (
    SESSION_LIMITS,
    PauseAccumulation,
    Session,
    SessionLimits,
    SessionState,
    SessionStopResult,
    StopDuration,
    ensure_utc,
    utc_now,
)

_MS = timedelta(milliseconds=1)


class PauseData(Protocol):
    last_paused_at: Optional[datetime]
    paused_duration_ms: int


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return (end - start) // _MS


def _state_value(state) -> str:
    return state.value if isinstance(state, SessionState) else str(state)


# ---------------------------------------------------------------------------
# Pause tracking
# ---------------------------------------------------------------------------


def calculate_pause_accumulation(
    previous_state: SessionState | str,
    new_state: SessionState | str,
    existing: PauseData,
    now: datetime,
) -> PauseAccumulation:
    """
    Pause bookkeeping for one state transition.

    ``playing -> paused`` opens a pause interval at ``now``; ``paused -> playing``
    closes it and adds its length to ``paused_duration_ms``. Any other
    transition leaves the data unchanged.
    """
    now = ensure_utc(now)
    previous, new = _state_value(previous_state), _state_value(new_state)
    last_paused_at = ensure_utc(existing.last_paused_at)
    paused_duration_ms = existing.paused_duration_ms or 0

    if previous == SessionState.PLAYING.value and new == SessionState.PAUSED.value:
        last_paused_at = now
    elif previous == SessionState.PAUSED.value and new == SessionState.PLAYING.value:
        if last_paused_at is not None:
            paused_duration_ms += _elapsed_ms(last_paused_at, now)
        last_paused_at = None

    return PauseAccumulation(last_paused_at=last_paused_at, paused_duration_ms=paused_duration_ms)


def calculate_stop_duration(session: Session, stopped_at: datetime) -> StopDuration:
    """
    Watch time of a stopping session, excluding every paused interval.

    A session stopped while paused has its open interval closed at
    ``stopped_at``. The watch duration is clamped at zero so clock skew can
    never produce a negative value.
    """
    stopped_at = ensure_utc(stopped_at)
    total_elapsed_ms = _elapsed_ms(session.started_at, stopped_at)

    final_paused_ms = session.paused_duration_ms or 0
    if session.last_paused_at is not None:
        final_paused_ms += _elapsed_ms(session.last_paused_at, stopped_at)

    return StopDuration(
        duration_ms=max(0, total_elapsed_ms - final_paused_ms),
        final_paused_duration_ms=final_paused_ms,
    )


# ---------------------------------------------------------------------------
# Stale sessions, minimum play time, completion
# ---------------------------------------------------------------------------


def should_force_stop_stale_session(
    last_seen_at: Optional[datetime],
    timeout_seconds: int = SESSION_LIMITS.stale_session_timeout_seconds,
    now: Optional[datetime] = None,
) -> bool:
    """True once no telemetry has arrived for strictly longer than the timeout."""
    if last_seen_at is None:
        return False
    now = ensure_utc(now) if now else utc_now()
    return (now - ensure_utc(last_seen_at)) > timedelta(seconds=timeout_seconds)


def should_record_session(
    duration_ms: Optional[int],
    min_play_time_ms: int = SESSION_LIMITS.min_play_time_ms,
) -> bool:
    if min_play_time_ms == 0:
        return True
    if duration_ms is None:
        return False
    return duration_ms >= min_play_time_ms


def check_watch_completion(
    progress_ms: Optional[int],
    total_duration_ms: Optional[int],
    threshold: float = SESSION_LIMITS.watch_completion_threshold,
) -> bool:
    """True when at least ``threshold`` of the item was played (inclusive)."""
    if not progress_ms or not total_duration_ms:
        return False
    return progress_ms / total_duration_ms >= threshold


# ---------------------------------------------------------------------------
# Resume grouping
# ---------------------------------------------------------------------------


def should_group_with_previous_session(
    previous_session: Session,
    new_progress_ms: int,
    continued_threshold_ms: Optional[int] = None,
    now: Optional[datetime] = None,
    limits: SessionLimits = SESSION_LIMITS,
) -> Optional[str]:
    """
    Reference id linking a new session to the chain of a previous one, or None.

    All of the following must hold: the previous session has stopped, less
    than ``max_group_gap_hours`` ago, within ``continued_threshold_ms``; it
    was not fully watched; the new session resumes at or after its position.
    The returned id is always the chain root, so chains stay one level deep.
    """
    stopped_at = ensure_utc(previous_session.stopped_at)
    if stopped_at is None:
        return None

    now = ensure_utc(now) if now else utc_now()
    if stopped_at < now - timedelta(hours=limits.max_group_gap_hours):
        return None

    if continued_threshold_ms is None:
        continued_threshold_ms = limits.continued_session_threshold_ms
    if _elapsed_ms(stopped_at, now) > continued_threshold_ms:
        return None

    if previous_session.watched:
        return None

    if new_progress_ms < (previous_session.progress_ms or 0):
        return None

    return previous_session.reference_id or previous_session.id


# ---------------------------------------------------------------------------
# Snapshot transforms
# ---------------------------------------------------------------------------


def apply_state_change(
    session: Session,
    new_state: SessionState | str,
    now: datetime,
    progress_ms: Optional[int] = None,
) -> Session:
    """Return a new snapshot with pause accounting, state and last-seen applied."""
    now = ensure_utc(now)
    pause = calculate_pause_accumulation(session.state, new_state, session, now)
    update = {
        "state": SessionState(_state_value(new_state)),
        "last_seen_at": now,
        "last_paused_at": pause.last_paused_at,
        "paused_duration_ms": pause.paused_duration_ms,
    }
    if progress_ms is not None:
        total = session.total_duration_ms
        update["progress_ms"] = min(progress_ms, total) if total else progress_ms
    return session.model_copy(update=update)


def stop_session(
    session: Session,
    stopped_at: datetime,
    force_stopped: bool = False,
    preserve_watched: bool = False,
    limits: SessionLimits = SESSION_LIMITS,
    watch_threshold: Optional[float] = None,
) -> SessionStopResult:
    """
    Close a session and derive its final facts.

    ``watched`` is decided on actual watch time rather than the reported
    position, which some clients get wrong for transcoded streams.
    ``preserve_watched`` keeps the incoming flag for quality-change restarts.
    """
    stopped_at = ensure_utc(stopped_at)
    stop = calculate_stop_duration(session, stopped_at)

    if preserve_watched:
        watched = session.watched
    else:
        threshold = watch_threshold if watch_threshold is not None else limits.watch_completion_threshold
        watched = session.watched or check_watch_completion(
            stop.duration_ms, session.total_duration_ms, threshold
        )

    short_session = not should_record_session(stop.duration_ms, limits.min_play_time_ms)

    stopped = session.model_copy(
        update={
            "state": SessionState.STOPPED,
            "stopped_at": stopped_at,
            "duration_ms": stop.duration_ms,
            "paused_duration_ms": stop.final_paused_duration_ms,
            "last_paused_at": None,
            "watched": watched,
            "short_session": short_session,
            "force_stopped": session.force_stopped or force_stopped,
        }
    )
    return SessionStopResult(
        session=stopped,
        duration_ms=stop.duration_ms,
        watched=watched,
        short_session=short_session,
    )
