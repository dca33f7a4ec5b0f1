from __future__ import annotations

import asyncio
from dataclasses import dataclass

from sqlalchemy import select

from flagship.domain.models import Feature, FeatureRule, PlanFeature, UsageLimit
from flagship.domain.rules import (
    FEATURE_TYPE_BOOLEAN,
    FEATURE_TYPE_PERCENTAGE,
    FEATURE_TYPE_PLAN,
    RULE_TYPE_OVERRIDE,
    RULE_TYPE_PERCENTAGE,
    RULE_TYPE_PLAN_GATE,
)
from flagship.persistence.db import SessionLocal


DEMO_PROJECT_ID = "proj_demo"
DEMO_ENVIRONMENT_ID = "env_demo"


@dataclass(frozen=True)
class DemoFeature:
    key: str
    type: str
    default_value: bool
    rules: tuple[tuple[str, dict], ...] = ()
    plans: tuple[str, ...] = ()


def build_demo_features() -> tuple[DemoFeature, ...]:
    # One feature per decision path so /v1/evaluate with debug=true shows every reason.
    return (
        DemoFeature(key="new_dashboard", type=FEATURE_TYPE_BOOLEAN, default_value=True),
        DemoFeature(
            key="beta_search",
            type=FEATURE_TYPE_BOOLEAN,
            default_value=False,
            rules=((RULE_TYPE_OVERRIDE, {"enabled": True, "conditions": {"userId": "usr_beta"}}),),
        ),
        DemoFeature(
            key="ai_chat",
            type=FEATURE_TYPE_PERCENTAGE,
            default_value=False,
            rules=((RULE_TYPE_PERCENTAGE, {"percentage": 25}),),
        ),
        DemoFeature(
            key="sso",
            type=FEATURE_TYPE_PLAN,
            default_value=False,
            rules=((RULE_TYPE_PLAN_GATE, {"plans": ["plan_enterprise"]}),),
        ),
        DemoFeature(key="audit_export", type=FEATURE_TYPE_PLAN, default_value=False, plans=("plan_pro",)),
    )


async def seed() -> None:
    async with SessionLocal() as session:
        created = 0
        for demo in build_demo_features():
            existing = await session.scalar(
                select(Feature).where(Feature.project_id == DEMO_PROJECT_ID, Feature.key == demo.key)
            )
            if existing is not None:
                continue
            feature = Feature(
                project_id=DEMO_PROJECT_ID,
                key=demo.key,
                name=demo.key.replace("_", " ").title(),
                type=demo.type,
                default_value=demo.default_value,
                enabled=True,
            )
            session.add(feature)
            await session.flush()
            for priority, (rule_type, value) in enumerate(demo.rules):
                session.add(
                    FeatureRule(
                        feature_id=feature.id,
                        environment_id=DEMO_ENVIRONMENT_ID,
                        rule_type=rule_type,
                        value_json=value,
                        priority=priority,
                    )
                )
            for plan_id in demo.plans:
                session.add(PlanFeature(plan_id=plan_id, feature_id=feature.id))
            created += 1

        limits = await session.scalars(
            select(UsageLimit).where(UsageLimit.environment_id == DEMO_ENVIRONMENT_ID)
        )
        if not limits.first():
            session.add(
                UsageLimit(
                    environment_id=DEMO_ENVIRONMENT_ID,
                    metric_key="api_calls",
                    limit_value=1000,
                    enforcement="hard",
                )
            )
            session.add(
                UsageLimit(
                    environment_id=DEMO_ENVIRONMENT_ID,
                    plan_id="plan_pro",
                    metric_key="api_calls",
                    limit_value=100000,
                    enforcement="soft",
                    warning_threshold=80,
                )
            )
        await session.commit()
        print(f"seeded_features={created} project_id={DEMO_PROJECT_ID} environment_id={DEMO_ENVIRONMENT_ID}")


if __name__ == "__main__":
    asyncio.run(seed())
