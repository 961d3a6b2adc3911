"""Tests for the rule engine (session_guard.core.rules)."""

from __future__ import annotations

from typing import List

import pytest
from structlog.testing import capture_logs

from session_guard.core.evaluators import EVALUATOR_REGISTRY
from session_guard.core.models import (
    Condition,
    ConditionField,
    ConditionGroup,
    Operator,
    Rule,
    RuleConditions,
    SessionContext,
)
from session_guard.core.rules import RuleEngine
from ..conftest import cond, make_context, make_rule, make_server, make_session, make_user


# Fixture-like helpers: a registry of stub evaluators that record every call
def make_recording_engine(calls: List[str]) -> RuleEngine:
    def stub(result):
        def evaluator(ctx, condition):
            calls.append(f"{condition.field}:{condition.value}")
            return result
        return evaluator

    def boom(ctx, condition):
        calls.append(f"boom:{condition.value}")
        raise RuntimeError("geo lookup failed")

    async def slow_yes(ctx, condition):
        calls.append(f"async:{condition.value}")
        return True

    return RuleEngine(registry={"yes": stub(True), "no": stub(False), "boom": boom, "async": slow_yes})


YES = cond("yes", "eq", 1)
NO = cond("no", "eq", 1)


def base_context(**overrides) -> SessionContext:
    fields = {
        "session": make_session(),
        "server_user": make_user(),
        "server": make_server(),
    }
    fields.update(overrides)
    fields.setdefault("active_sessions", [fields["session"]])
    return SessionContext(**fields)


# ---------------------------------------------------------------------------
# Single conditions
# ---------------------------------------------------------------------------


class TestEvaluateCondition:
    def test_dispatches_to_registered_evaluator(self, engine: RuleEngine):
        condition = cond("country", "eq", "GB")
        assert engine.evaluate_condition(make_context(condition), condition) is True

    def test_enum_condition_uses_registry(self, engine: RuleEngine):
        condition = Condition(field=ConditionField.COUNTRY, operator=Operator.EQ, value="GB")
        assert engine.evaluate_condition(make_context(condition), condition) is True

    def test_unknown_field_is_false_and_logged(self, engine: RuleEngine):
        condition = cond("moon_phase", "eq", "full")
        with capture_logs() as logs:
            assert engine.evaluate_condition(make_context(condition), condition) is False
        assert logs == [
            {"event": "No evaluator found for condition field", "field": "moon_phase", "log_level": "warning"}
        ]

    def test_unknown_operator_is_false(self, engine: RuleEngine):
        condition = cond("country", "approximately", "GB")
        assert engine.evaluate_condition(make_context(condition), condition) is False

    def test_raising_evaluator_is_false_and_logged(self):
        engine = make_recording_engine([])
        condition = cond("boom", "eq", 1)
        with capture_logs() as logs:
            assert engine.evaluate_condition(make_context(condition), condition) is False
        assert logs[0]["event"] == "Error evaluating condition"
        assert logs[0]["log_level"] == "error"
        assert logs[0]["field"] == "boom"
        assert logs[0]["rule_id"] == "rule-1"
        assert logs[0]["session_id"] == "sess-1"
        assert logs[0]["error"] == "geo lookup failed"

    def test_async_evaluator_on_sync_path_is_false(self):
        engine = make_recording_engine([])
        condition = cond("async", "eq", 1)
        with capture_logs() as logs:
            assert engine.evaluate_condition(make_context(condition), condition) is False
        assert logs[0]["event"] == "Async evaluator called synchronously"
        assert logs[0]["field"] == "async"


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


class TestGroups:
    def test_group_is_or(self):
        engine = make_recording_engine([])
        ctx = make_context()
        assert engine.evaluate_condition_group(ctx, ConditionGroup(conditions=[NO, YES])) is True
        assert engine.evaluate_condition_group(ctx, ConditionGroup(conditions=[NO, NO])) is False

    def test_empty_group_matches(self, engine: RuleEngine):
        assert engine.evaluate_condition_group(make_context(), ConditionGroup()) is True

    def test_raising_condition_does_not_stop_the_group(self):
        calls: List[str] = []
        engine = make_recording_engine(calls)
        group = ConditionGroup(conditions=[cond("boom", "eq", 1), YES])
        assert engine.evaluate_condition_group(make_context(), group) is True
        assert calls == ["boom:1", "yes:1"]

    def test_groups_are_and_with_matched_indices(self):
        engine = make_recording_engine([])
        conditions = RuleConditions(groups=[
            ConditionGroup(conditions=[YES]),
            ConditionGroup(conditions=[NO, YES]),
        ])
        assert engine.evaluate_all_groups(make_context(), conditions) == [0, 1]

    def test_first_failing_group_short_circuits(self):
        calls: List[str] = []
        engine = make_recording_engine(calls)
        conditions = RuleConditions(groups=[
            ConditionGroup(conditions=[NO]),
            ConditionGroup(conditions=[cond("yes", "eq", 2)]),
        ])
        assert engine.evaluate_all_groups(make_context(), conditions) is None
        assert "yes:2" not in calls

    def test_no_groups_is_vacuous_match(self, engine: RuleEngine):
        assert engine.evaluate_all_groups(make_context(), RuleConditions()) == []


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestEvaluateRule:
    def test_matched_rule_carries_actions(self, engine: RuleEngine):
        rule = make_rule(
            [[cond("country", "eq", "GB")], [cond("trust_score", "gte", 50)]],
            actions=[{"type": "notify", "channels": ["discord"]}],
        )
        result = engine.evaluate_rule(make_context(rule))
        assert result.matched is True
        assert result.rule_id == "rule-1"
        assert result.rule_name == "Test rule"
        assert result.matched_groups == [0, 1]
        assert [a.type for a in result.actions] == ["notify"]

    def test_unmatched_rule_has_no_actions(self, engine: RuleEngine):
        rule = make_rule([[cond("country", "eq", "US")]])
        result = engine.evaluate_rule(make_context(rule))
        assert result.matched is False
        assert result.matched_groups == []
        assert result.actions == []

    def test_rule_without_groups_always_matches(self, engine: RuleEngine):
        result = engine.evaluate_rule(make_context(make_rule([])))
        assert result.matched is True
        assert result.matched_groups == []

    def test_legacy_rule_never_matches(self, engine: RuleEngine):
        rule = Rule(id="legacy", name="Legacy", type="concurrent_streams", params={"max_streams": 1})
        result = engine.evaluate_rule(make_context(rule))
        assert result.matched is False

    def test_matched_rule_without_actions(self, engine: RuleEngine):
        rule = make_rule([[cond("country", "eq", "GB")]]).model_copy(update={"actions": None})
        result = engine.evaluate_rule(make_context(rule))
        assert result.matched is True
        assert result.actions == []


class TestEvaluateRules:
    def test_returns_only_matches_in_rule_order(self, engine: RuleEngine):
        rules = [
            make_rule([[cond("country", "eq", "GB")]], id="a", name="A"),
            make_rule([[cond("country", "eq", "US")]], id="b", name="B"),
            make_rule([[cond("media_type", "eq", "movie")]], id="c", name="C"),
        ]
        results = engine.evaluate_rules(base_context(), rules)
        assert [r.rule_id for r in results] == ["a", "c"]

    def test_inactive_rules_skipped(self, engine: RuleEngine):
        rules = [make_rule([], id="off", is_active=False), make_rule([], id="on")]
        assert [r.rule_id for r in engine.evaluate_rules(base_context(), rules)] == ["on"]

    def test_server_scoping(self, engine: RuleEngine):
        rules = [
            make_rule([], id="global", server_id=None),
            make_rule([], id="mine", server_id="server-1"),
            make_rule([], id="other", server_id="server-2"),
        ]
        results = engine.evaluate_rules(base_context(), rules)
        assert [r.rule_id for r in results] == ["global", "mine"]

    def test_accepts_evaluation_context_as_base(self, engine: RuleEngine):
        ctx = make_context(make_rule([], id="ignored"))
        results = engine.evaluate_rules(ctx, [make_rule([], id="real")])
        assert [r.rule_id for r in results] == ["real"]

    def test_no_rules(self, engine: RuleEngine):
        assert engine.evaluate_rules(base_context(), []) == []

    def test_concurrent_streams_scenario(self, engine: RuleEngine):
        session = make_session()
        active = [session, make_session(id="sess-2"), make_session(id="sess-3")]
        rule = make_rule([[cond("concurrent_streams", "gt", 2)]], actions=[{"type": "kill_stream"}])
        results = engine.evaluate_rules(base_context(session=session, active_sessions=active), [rule])
        assert len(results) == 1
        assert results[0].actions[0].type == "kill_stream"


# ---------------------------------------------------------------------------
# Async path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAsyncPath:
    async def test_async_evaluator_is_awaited(self):
        engine = make_recording_engine([])
        condition = cond("async", "eq", 1)
        assert await engine.evaluate_condition_async(make_context(condition), condition) is True

    async def test_sync_evaluators_work_on_async_path(self, engine: RuleEngine):
        condition = cond("country", "eq", "GB")
        assert await engine.evaluate_condition_async(make_context(condition), condition) is True

    async def test_raising_condition_logged(self):
        engine = make_recording_engine([])
        condition = cond("boom", "eq", 1)
        with capture_logs() as logs:
            assert await engine.evaluate_condition_async(make_context(condition), condition) is False
        assert logs[0]["event"] == "Error evaluating condition"

    async def test_group_evaluates_every_condition(self):
        calls: List[str] = []
        engine = make_recording_engine(calls)
        group = ConditionGroup(conditions=[cond("boom", "eq", 1), cond("async", "eq", 2), NO])
        assert await engine.evaluate_condition_group_async(make_context(), group) is True
        assert sorted(calls) == ["async:2", "boom:1", "no:1"]

    async def test_empty_group_matches(self, engine: RuleEngine):
        assert await engine.evaluate_condition_group_async(make_context(), ConditionGroup()) is True

    async def test_first_failing_group_short_circuits(self):
        calls: List[str] = []
        engine = make_recording_engine(calls)
        conditions = RuleConditions(groups=[
            ConditionGroup(conditions=[NO]),
            ConditionGroup(conditions=[cond("async", "eq", 9)]),
        ])
        assert await engine.evaluate_all_groups_async(make_context(), conditions) is None
        assert "async:9" not in calls

    async def test_rule_with_async_condition_matches(self):
        engine = make_recording_engine([])
        rule = make_rule([[cond("async", "eq", 1)], [YES]])
        result = await engine.evaluate_rule_async(make_context(rule))
        assert result.matched is True
        assert result.matched_groups == [0, 1]

    async def test_sync_and_async_agree_for_sync_registry(self, engine: RuleEngine):
        rules = [
            make_rule([[cond("country", "in", ["GB"])], [cond("is_local_network", "eq", False)]], id="a"),
            make_rule([[cond("trust_score", "lt", 10)]], id="b"),
            make_rule([], id="c", server_id="server-9"),
        ]
        ctx = base_context()
        sync_ids = [r.rule_id for r in engine.evaluate_rules(ctx, rules)]
        async_ids = [r.rule_id for r in await engine.evaluate_rules_async(ctx, rules)]
        assert sync_ids == async_ids == ["a"]


def test_default_registry_is_shared(engine: RuleEngine):
    assert engine._registry is EVALUATOR_REGISTRY


class TestRuleScenarios:
    def session_1080p(self, **overrides):
        fields = {"source_video_width": 1920, "source_video_height": 1080, "is_transcode": True}
        fields.update(overrides)
        return make_session(**fields)

    def test_transcoding_rule_against_direct_play(self, engine: RuleEngine):
        rule = make_rule([[cond("is_transcoding", "eq", True)]])
        result = engine.evaluate_rule(make_context(rule, session=self.session_1080p(is_transcode=False)))
        assert result.matched is False
        assert result.actions == []

    def test_or_matches_via_second_condition(self, engine: RuleEngine):
        rule = make_rule([[cond("source_resolution", "eq", "4K"), cond("source_resolution", "eq", "1080p")]])
        assert engine.evaluate_rule(make_context(rule, session=self.session_1080p())).matched is True

    def three_group_rule(self):
        return make_rule([
            [cond("source_resolution", "eq", "4K"), cond("source_resolution", "eq", "1080p")],
            [cond("is_transcoding", "eq", True)],
            [cond("trust_score", "lt", 70)],
        ])

    def test_and_across_three_groups(self, engine: RuleEngine):
        ctx = make_context(self.three_group_rule(), session=self.session_1080p(), server_user=make_user(trust_score=50))
        result = engine.evaluate_rule(ctx)
        assert result.matched is True
        assert result.matched_groups == [0, 1, 2]

    @pytest.mark.parametrize(
        "session_overrides,trust",
        [
            ({"source_video_width": 1280, "source_video_height": 720}, 50),
            ({"is_transcode": False}, 50),
            ({}, 90),
        ],
    )
    def test_any_false_group_fails_the_rule(self, engine: RuleEngine, session_overrides, trust):
        session = self.session_1080p(**session_overrides)
        ctx = make_context(self.three_group_rule(), session=session, server_user=make_user(trust_score=trust))
        assert engine.evaluate_rule(ctx).matched is False
