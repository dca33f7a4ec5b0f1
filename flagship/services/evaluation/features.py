from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flagship.domain.rules import (
    FEATURE_TYPE_PERCENTAGE,
    FEATURE_TYPE_PLAN,
    RULE_TYPE_OVERRIDE,
    RULE_TYPE_PERCENTAGE,
    RULE_TYPE_PLAN_GATE,
    FeatureWithRules,
    OverrideRuleValue,
    PercentageRuleValue,
    PlanGateRuleValue,
)
from flagship.persistence.db import SessionLocal
from flagship.persistence.repos import features as features_repo
from flagship.services.bucketing import in_rollout
from flagship.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

REASON_NOT_FOUND = "feature_not_found"
REASON_DISABLED = "feature_disabled"
REASON_OVERRIDE = "override_rule"
REASON_PLAN_ACCESS = "plan_access"
REASON_PLAN_NOT_INCLUDED = "plan_not_included"
REASON_PERCENTAGE_INCLUDED = "percentage_included"
REASON_PERCENTAGE_EXCLUDED = "percentage_excluded"
REASON_DEFAULT = "default_value"


@dataclass(frozen=True)
class FeatureEvaluationContext:
    project_id: str
    environment_id: str
    org_id: str
    plan_id: str | None = None
    context: dict[str, Any] | None = None
    debug: bool = False


@dataclass(frozen=True)
class FeatureResult:
    value: bool
    # Only populated for debug requests.
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"value": self.value}
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True)
class Decision:
    value: bool
    reason: str


@dataclass(frozen=True)
class FeatureInput:
    # Everything a decision step may look at; no step performs I/O.
    feature: FeatureWithRules
    ctx: FeatureEvaluationContext
    plan_entitled: bool = False


def _values_equal(expected: Any, actual: Any) -> bool:
    # Strict equality: booleans never match numbers (True != 1).
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(expected, bool) and isinstance(actual, bool) and expected is actual
    return expected == actual


def matches_conditions(conditions: dict[str, Any] | None, context: dict[str, Any] | None) -> bool:
    if not conditions:
        return True
    if context is None:
        return False
    for key, expected in conditions.items():
        if key not in context or not _values_equal(expected, context[key]):
            return False
    return True


def _identifier_text(value: Any) -> str:
    # Render JSON scalars the way JavaScript would, so SDK-side bucketing agrees.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def rollout_identifier(ctx: FeatureEvaluationContext) -> str:
    # Bucket per user when the caller provides one, otherwise per organization.
    user_id = (ctx.context or {}).get("userId")
    if user_id:
        return _identifier_text(user_id)
    return ctx.org_id


def decide_disabled(inp: FeatureInput) -> Decision | None:
    if not inp.feature.enabled:
        return Decision(False, REASON_DISABLED)
    return None


def decide_override(inp: FeatureInput) -> Decision | None:
    for rule in inp.feature.rules_of(RULE_TYPE_OVERRIDE):
        value = rule.value
        if isinstance(value, OverrideRuleValue) and matches_conditions(value.conditions, inp.ctx.context):
            return Decision(value.enabled, REASON_OVERRIDE)
    return None


def decide_plan_gate(inp: FeatureInput) -> Decision | None:
    if inp.feature.type != FEATURE_TYPE_PLAN:
        return None
    gates = [
        rule.value
        for rule in inp.feature.rules_of(RULE_TYPE_PLAN_GATE)
        if isinstance(rule.value, PlanGateRuleValue)
    ]
    plan_id = inp.ctx.plan_id
    if not plan_id:
        # Without a plan there is nothing to gate on; later steps decide.
        return None
    if gates:
        included = any(plan_id in gate.plans for gate in gates)
    else:
        # No plan_gate rule in this environment: fall back to plan entitlements.
        included = inp.plan_entitled
    return Decision(included, REASON_PLAN_ACCESS if included else REASON_PLAN_NOT_INCLUDED)


def decide_percentage(inp: FeatureInput) -> Decision | None:
    if inp.feature.type != FEATURE_TYPE_PERCENTAGE:
        return None
    for rule in inp.feature.rules_of(RULE_TYPE_PERCENTAGE):
        value = rule.value
        if isinstance(value, PercentageRuleValue):
            included = in_rollout(inp.feature.key, rollout_identifier(inp.ctx), value.percentage)
            return Decision(
                included,
                REASON_PERCENTAGE_INCLUDED if included else REASON_PERCENTAGE_EXCLUDED,
            )
    return None


def decide_default(inp: FeatureInput) -> Decision:
    return Decision(inp.feature.default_value, REASON_DEFAULT)


DecisionStep = Callable[[FeatureInput], "Decision | None"]

# Precedence order; the first step returning a decision wins.
DECISION_CHAIN: tuple[DecisionStep, ...] = (
    decide_disabled,
    decide_override,
    decide_plan_gate,
    decide_percentage,
    decide_default,
)


def decide(inp: FeatureInput) -> Decision:
    for step in DECISION_CHAIN:
        decision = step(inp)
        if decision is not None:
            return decision
    return decide_default(inp)


class FeatureEvaluator:
    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def evaluate_features(
        self,
        keys: list[str],
        ctx: FeatureEvaluationContext,
    ) -> dict[str, FeatureResult]:
        # Evaluate every requested key; unknown keys resolve to disabled.
        if not keys:
            return {}

        async with self._session_factory() as session:
            features = await features_repo.find_features_with_rules(
                session,
                project_id=ctx.project_id,
                environment_id=ctx.environment_id,
                keys=keys,
            )
            entitled: set[str] = set()
            if ctx.plan_id:
                fallback_ids = [
                    feature.id
                    for feature in features.values()
                    if feature.enabled
                    and feature.type == FEATURE_TYPE_PLAN
                    and not feature.rules_of(RULE_TYPE_PLAN_GATE)
                ]
                entitled = await features_repo.list_entitled_feature_ids(
                    session, plan_id=ctx.plan_id, feature_ids=fallback_ids
                )

        results: dict[str, FeatureResult] = {}
        for key in keys:
            feature = features.get(key)
            if feature is None:
                decision = Decision(False, REASON_NOT_FOUND)
            else:
                decision = decide(
                    FeatureInput(feature=feature, ctx=ctx, plan_entitled=feature.id in entitled)
                )
            results[key] = FeatureResult(
                value=decision.value,
                reason=decision.reason if ctx.debug else None,
            )
        increment_counter("evaluation_features_total", len(keys))
        logger.debug(
            "features_evaluated environment_id=%s requested=%s found=%s",
            ctx.environment_id,
            len(keys),
            len(features),
        )
        return results


_feature_evaluator: FeatureEvaluator | None = None


def get_feature_evaluator() -> FeatureEvaluator:
    # Cache the evaluator for reuse across requests.
    global _feature_evaluator
    if _feature_evaluator is None:
        _feature_evaluator = FeatureEvaluator()
    return _feature_evaluator


def reset_feature_evaluator() -> None:
    # Reset cached evaluator for deterministic tests.
    global _feature_evaluator
    _feature_evaluator = None
