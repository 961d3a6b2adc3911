"""
Shared pytest fixtures and factories used across the modular test suite.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from session_guard.core.models import (
    Condition,
    ConditionGroup,
    EvaluationContext,
    MonitorConfig,
    Rule,
    RuleActions,
    RuleConditions,
    Server,
    ServerUser,
    Session,
)
from session_guard.core.rules import RuleEngine

NOW = datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc)

DEFAULT_ACTIONS: List[Dict[str, Any]] = [{"type": "create_violation", "severity": "warning"}]


def make_session(**overrides: Any) -> Session:
    """A 1080p direct-play movie session from a public IP in London."""
    fields: Dict[str, Any] = {
        "id": "sess-1",
        "server_user_id": "user-1",
        "server_id": "server-1",
        "media_type": "movie",
        "rating_key": "item-42",
        "started_at": NOW - timedelta(minutes=10),
        "ip_address": "81.2.69.160",
        "geo_lat": 51.5074,
        "geo_lon": -0.1278,
        "geo_country": "GB",
        "device": "Living Room TV",
        "platform": "Roku",
        "product": "Plex for Roku",
        "device_id": "device-1",
        "player_name": "Living Room",
        "source_video_width": 1920,
        "source_video_height": 1080,
        "total_duration_ms": 6_000_000,
    }
    fields.update(overrides)
    return Session(**fields)


def make_user(**overrides: Any) -> ServerUser:
    fields: Dict[str, Any] = {
        "id": "user-1",
        "username": "alice",
        "trust_score": 100,
        "created_at": NOW - timedelta(days=365),
        "last_activity_at": NOW - timedelta(days=1),
    }
    fields.update(overrides)
    return ServerUser(**fields)


def make_server(**overrides: Any) -> Server:
    fields: Dict[str, Any] = {"id": "server-1", "name": "Home Plex", "type": "plex"}
    fields.update(overrides)
    return Server(**fields)


def cond(field: str, operator: str, value: Any, window_hours: Optional[int] = None) -> Condition:
    params = {"window_hours": window_hours} if window_hours is not None else None
    return Condition(field=field, operator=operator, value=value, params=params)


def make_rule(
    groups: Optional[List[List[Condition]]] = None,
    actions: Optional[List[Dict[str, Any]]] = None,
    **overrides: Any,
) -> Rule:
    """Build a V2 rule from a list of groups, each a list of conditions."""
    fields: Dict[str, Any] = {
        "id": "rule-1",
        "name": "Test rule",
        "conditions": RuleConditions(
            groups=[ConditionGroup(conditions=g) for g in (groups or [])]
        ),
        "actions": RuleActions(actions=actions if actions is not None else DEFAULT_ACTIONS),
    }
    fields.update(overrides)
    return Rule(**fields)


def make_context(
    condition_or_rule: Condition | Rule | None = None,
    session: Optional[Session] = None,
    server_user: Optional[ServerUser] = None,
    server: Optional[Server] = None,
    active_sessions: Optional[List[Session]] = None,
    recent_sessions: Optional[List[Session]] = None,
    now: datetime = NOW,
) -> EvaluationContext:
    if isinstance(condition_or_rule, Rule):
        rule = condition_or_rule
    elif isinstance(condition_or_rule, Condition):
        rule = make_rule([[condition_or_rule]])
    else:
        rule = make_rule()
    session = session or make_session()
    return EvaluationContext(
        session=session,
        server_user=server_user or make_user(),
        server=server or make_server(),
        active_sessions=active_sessions if active_sessions is not None else [session],
        recent_sessions=recent_sessions or [],
        rule=rule,
        now=now,
    )


def make_mock_callback() -> AsyncMock:
    return AsyncMock(return_value=None)


def make_failing_callback() -> AsyncMock:
    return AsyncMock(side_effect=Exception("dispatcher unavailable"))


@pytest.fixture
def engine() -> RuleEngine:
    return RuleEngine()


@pytest.fixture
def server() -> Server:
    return make_server()


@pytest.fixture
def config() -> MonitorConfig:
    """Small intervals so tests run fast."""
    return MonitorConfig(
        sweep_interval_seconds=0.1,
        recent_history_hours=24,
        max_recent_sessions=5,
        circuit_breaker_threshold=3,
        circuit_breaker_cooldown_seconds=60.0,
    )
