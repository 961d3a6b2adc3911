from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Iterator, List, Mapping, Optional

from ..logging_config import get_logger
from .evaluators import EVALUATOR_REGISTRY, ConditionEvaluator
from .models import (
    Condition,
    ConditionGroup,
    EvaluationContext,
    EvaluationResult,
    Rule,
    RuleConditions,
    SessionContext,
)

logger = get_logger("session_guard.rules")


class RuleEngine:
    """
    Decides whether V2 rules match a session and which actions they declare.

    Conditions inside a group are OR'd, groups are AND'd with an early exit on
    the first failing group. Intentionally stateless apart from the evaluator
    registry: every input arrives in the EvaluationContext, so one engine can
    serve any number of concurrent evaluations.

    Nothing here raises on bad data. An unknown field, an evaluator that
    blows up, or an async evaluator reached from the sync path all count as
    "condition did not match" and are logged with the field name.
    """

    def __init__(self, registry: Optional[Mapping[str, ConditionEvaluator]] = None) -> None:
        self._registry = registry if registry is not None else EVALUATOR_REGISTRY

    # ------------------------------------------------------------------
    # Synchronous path
    # ------------------------------------------------------------------

    def evaluate_condition(self, context: EvaluationContext, condition: Condition) -> bool:
        evaluator = self._lookup(condition)
        if evaluator is None:
            return False

        try:
            result = evaluator(context, condition)
        except Exception as exc:
            self._log_failure(context, condition, exc)
            return False

        if inspect.isawaitable(result):
            logger.warning(
                "Async evaluator called synchronously",
                field=condition.field,
                rule_id=context.rule.id,
            )
            _discard(result)
            return False

        return bool(result)

    def evaluate_condition_group(self, context: EvaluationContext, group: ConditionGroup) -> bool:
        """OR: any condition matching makes the group match. Empty groups match."""
        if not group.conditions:
            return True
        return any(self.evaluate_condition(context, c) for c in group.conditions)

    def evaluate_all_groups(
        self, context: EvaluationContext, conditions: RuleConditions
    ) -> Optional[List[int]]:
        """
        AND across groups.

        Returns the indices of the matched groups, or None as soon as one group
        fails. No groups at all is a vacuous match (``[]``).
        """
        matched_groups: List[int] = []
        for index, group in enumerate(conditions.groups):
            if not self.evaluate_condition_group(context, group):
                return None
            matched_groups.append(index)
        return matched_groups

    def evaluate_rule(self, context: EvaluationContext) -> EvaluationResult:
        rule = context.rule
        if not _has_v2_conditions(rule):
            return _build_result(rule, None)
        return _build_result(rule, self.evaluate_all_groups(context, rule.conditions))

    def evaluate_rules(self, base_context: SessionContext, rules: List[Rule]) -> List[EvaluationResult]:
        """Evaluate every applicable rule, returning only the matches in rule order."""
        results: List[EvaluationResult] = []
        for context in _contexts_for(base_context, rules):
            result = self.evaluate_rule(context)
            if result.matched:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    # Asynchronous path
    # ------------------------------------------------------------------

    async def evaluate_condition_async(self, context: EvaluationContext, condition: Condition) -> bool:
        evaluator = self._lookup(condition)
        if evaluator is None:
            return False

        try:
            result = evaluator(context, condition)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            self._log_failure(context, condition, exc)
            return False

        return bool(result)

    async def evaluate_condition_group_async(
        self, context: EvaluationContext, group: ConditionGroup
    ) -> bool:
        """OR with every condition of the group in flight at once."""
        if not group.conditions:
            return True
        results = await asyncio.gather(
            *(self.evaluate_condition_async(context, c) for c in group.conditions)
        )
        return any(results)

    async def evaluate_all_groups_async(
        self, context: EvaluationContext, conditions: RuleConditions
    ) -> Optional[List[int]]:
        # Groups stay sequential: the AND chain must stop at the first failure.
        matched_groups: List[int] = []
        for index, group in enumerate(conditions.groups):
            if not await self.evaluate_condition_group_async(context, group):
                return None
            matched_groups.append(index)
        return matched_groups

    async def evaluate_rule_async(self, context: EvaluationContext) -> EvaluationResult:
        rule = context.rule
        if not _has_v2_conditions(rule):
            return _build_result(rule, None)
        return _build_result(rule, await self.evaluate_all_groups_async(context, rule.conditions))

    async def evaluate_rules_async(
        self, base_context: SessionContext, rules: List[Rule]
    ) -> List[EvaluationResult]:
        results: List[EvaluationResult] = []
        for context in _contexts_for(base_context, rules):
            result = await self.evaluate_rule_async(context)
            if result.matched:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, condition: Condition) -> Optional[ConditionEvaluator]:
        evaluator = self._registry.get(condition.field)
        if evaluator is None:
            logger.warning("No evaluator found for condition field", field=condition.field)
        return evaluator

    @staticmethod
    def _log_failure(context: EvaluationContext, condition: Condition, exc: Exception) -> None:
        logger.error(
            "Error evaluating condition",
            field=condition.field,
            operator=condition.operator,
            rule_id=context.rule.id,
            session_id=context.session.id,
            error=str(exc),
        )


def _has_v2_conditions(rule: Rule) -> bool:
    return rule.conditions is not None and rule.conditions.groups is not None


def _build_result(rule: Rule, matched_groups: Optional[List[int]]) -> EvaluationResult:
    matched = matched_groups is not None
    actions = rule.actions.actions if (matched and rule.actions is not None) else []
    return EvaluationResult(
        rule_id=rule.id,
        rule_name=rule.name,
        matched=matched,
        matched_groups=matched_groups or [],
        actions=list(actions),
    )


def _is_applicable(rule: Rule, server_id: str) -> bool:
    if not rule.is_active:
        return False
    # server_id None means the rule applies to every server
    return rule.server_id is None or rule.server_id == server_id


def _contexts_for(base_context: SessionContext, rules: List[Rule]) -> Iterator[EvaluationContext]:
    fields = dict(base_context)
    fields.pop("rule", None)
    for rule in rules:
        if _is_applicable(rule, base_context.server.id):
            yield EvaluationContext(**fields, rule=rule)


def _discard(awaitable: Awaitable[Any]) -> None:
    # Close un-awaited coroutines so they do not warn on garbage collection.
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()
