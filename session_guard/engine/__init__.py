"""Engine: session state tracker, circuit breaker and session monitor."""

from .circuit_breaker import CircuitBreaker
from .monitor import SessionMonitor
from .state_tracker import (
    apply_state_change,
    calculate_pause_accumulation,
    calculate_stop_duration,
    check_watch_completion,
    should_force_stop_stale_session,
    should_group_with_previous_session,
    should_record_session,
    stop_session,
)

__all__ = [
    "CircuitBreaker",
    "SessionMonitor",
    "apply_state_change",
    "calculate_pause_accumulation",
    "calculate_stop_duration",
    "check_watch_completion",
    "should_force_stop_stale_session",
    "should_group_with_previous_session",
    "should_record_session",
    "stop_session",
]
