"""
session-guard: public API.

Importing from ``session_guard`` gives access to all stable interfaces:

    from session_guard import RuleEngine, SessionMonitor, Session, Rule
"""

from .core import (
    SESSION_LIMITS,
    Condition,
    ConditionField,
    ConditionGroup,
    EvaluationContext,
    EvaluationResult,
    MonitorConfig,
    Operator,
    Rule,
    RuleActions,
    RuleConditions,
    RuleEngine,
    Server,
    ServerUser,
    Session,
    SessionContext,
    SessionLimits,
    SessionState,
    compare,
)
from .demo import main, run_main, run_simulation
from .engine import (
    CircuitBreaker,
    SessionMonitor,
    apply_state_change,
    calculate_pause_accumulation,
    calculate_stop_duration,
    check_watch_completion,
    should_force_stop_stale_session,
    should_group_with_previous_session,
    should_record_session,
    stop_session,
)
from .logging_config import configure_logging, get_logger

__all__ = [
    "CircuitBreaker",
    "Condition",
    "ConditionField",
    "ConditionGroup",
    "EvaluationContext",
    "EvaluationResult",
    "MonitorConfig",
    "Operator",
    "Rule",
    "RuleActions",
    "RuleConditions",
    "RuleEngine",
    "SESSION_LIMITS",
    "Server",
    "ServerUser",
    "Session",
    "SessionContext",
    "SessionLimits",
    "SessionMonitor",
    "SessionState",
    "apply_state_change",
    "calculate_pause_accumulation",
    "calculate_stop_duration",
    "check_watch_completion",
    "compare",
    "configure_logging",
    "get_logger",
    "main",
    "run_main",
    "run_simulation",
    "should_force_stop_stale_session",
    "should_group_with_previous_session",
    "should_record_session",
    "stop_session",
]
