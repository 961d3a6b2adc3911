"""Core domain: models, comparator, field evaluators and rule engine."""

from .comparisons import compare
from .evaluators import EVALUATOR_REGISTRY, calculate_distance_km
from .models import (
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
    Server,
    ServerUser,
    Session,
    SessionContext,
    SessionLimits,
    SessionState,
)
from .resolution import normalize_resolution
from .rules import RuleEngine

__all__ = [
    "Condition",
    "ConditionField",
    "ConditionGroup",
    "EVALUATOR_REGISTRY",
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
    "SessionState",
    "calculate_distance_km",
    "compare",
    "normalize_resolution",
]
