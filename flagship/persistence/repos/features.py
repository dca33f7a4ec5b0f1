from __future__ import annotations

import logging

from pydantic import ValidationError
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from flagship.domain.models import Feature, FeatureRule, PlanFeature
from flagship.domain.rules import EvaluationRule, FeatureWithRules, parse_rule_value


logger = logging.getLogger(__name__)


async def find_features_with_rules(
    session: AsyncSession,
    *,
    project_id: str,
    environment_id: str,
    keys: list[str],
) -> dict[str, FeatureWithRules]:
    # Fetch features and their enabled environment rules in a single joined query.
    if not keys:
        return {}
    stmt = (
        select(Feature, FeatureRule)
        .outerjoin(
            FeatureRule,
            and_(
                FeatureRule.feature_id == Feature.id,
                FeatureRule.environment_id == environment_id,
                FeatureRule.enabled.is_(True),
            ),
        )
        .where(Feature.project_id == project_id, Feature.key.in_(set(keys)))
        .order_by(Feature.id, FeatureRule.priority.desc(), FeatureRule.id)
    )
    result = await session.execute(stmt)

    features: dict[str, Feature] = {}
    rules_by_feature: dict[str, list[EvaluationRule]] = {}
    for feature, rule in result.all():
        features.setdefault(feature.id, feature)
        bucket = rules_by_feature.setdefault(feature.id, [])
        if rule is None:
            continue
        parsed = _to_evaluation_rule(rule)
        if parsed is not None:
            bucket.append(parsed)

    return {
        feature.key: FeatureWithRules(
            id=feature.id,
            key=feature.key,
            type=feature.type,
            default_value=bool(feature.default_value),
            enabled=bool(feature.enabled),
            rules=tuple(rules_by_feature.get(feature_id, [])),
        )
        for feature_id, feature in features.items()
    }


def _to_evaluation_rule(rule: FeatureRule) -> EvaluationRule | None:
    # Drop malformed payloads here so the evaluator only sees typed rule values.
    try:
        value = parse_rule_value(rule.rule_type, rule.value_json)
    except ValidationError as exc:
        logger.warning(
            "feature_rule_invalid_value rule_id=%s rule_type=%s errors=%s",
            rule.id,
            rule.rule_type,
            exc.error_count(),
        )
        return None
    return EvaluationRule(
        id=rule.id,
        rule_type=rule.rule_type,
        priority=int(rule.priority or 0),
        value=value,
    )


async def list_entitled_feature_ids(
    session: AsyncSession,
    *,
    plan_id: str,
    feature_ids: list[str],
) -> set[str]:
    # Resolve plan entitlements for several features in one query.
    if not feature_ids:
        return set()
    result = await session.execute(
        select(PlanFeature.feature_id).where(
            PlanFeature.plan_id == plan_id,
            PlanFeature.feature_id.in_(feature_ids),
            PlanFeature.enabled.is_(True),
        )
    )
    return set(result.scalars().all())
