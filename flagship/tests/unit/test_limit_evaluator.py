from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from flagship.domain.models import UsageLimit, UsageMetric
from flagship.services.evaluation.limits import (
    LimitEvaluationContext,
    LimitEvaluator,
    evaluate_single_limit,
)
from flagship.tests.utils.seed import ENVIRONMENT_ID, ORG_ID, seed_limit, seed_usage


def _ctx(**overrides) -> LimitEvaluationContext:
    values = {"environment_id": ENVIRONMENT_ID, "org_id": ORG_ID, "debug": True}
    values.update(overrides)
    return LimitEvaluationContext(**values)


def _usage(value: int) -> UsageMetric:
    return UsageMetric(metric_key="api_calls", current_value=value)


def _limit(value: int, enforcement: str) -> UsageLimit:
    return UsageLimit(metric_key="api_calls", limit_value=value, enforcement=enforcement)


def test_no_limit_is_unlimited() -> None:
    result = evaluate_single_limit(_usage(42), None, debug=True)
    assert result.to_dict() == {
        "allowed": True,
        "current": 42,
        "limit": -1,
        "remaining": -1,
        "reason": "no_limit_defined",
    }


@pytest.mark.parametrize(
    ("current", "limit", "allowed", "remaining", "reason"),
    [
        (0, 10, True, 10, "within_hard_limit"),
        (9, 10, True, 1, "within_hard_limit"),
        (10, 10, False, 0, "hard_limit_exceeded"),
        (15, 10, False, 0, "hard_limit_exceeded"),
    ],
)
def test_hard_limit_allows_only_below_limit(current, limit, allowed, remaining, reason) -> None:
    result = evaluate_single_limit(_usage(current), _limit(limit, "hard"), debug=True)
    assert (result.allowed, result.remaining, result.reason) == (allowed, remaining, reason)
    assert result.allowed == (current < limit)


@pytest.mark.parametrize(("current", "reason"), [(5, "within_soft_limit"), (10, "soft_limit_exceeded"), (50, "soft_limit_exceeded")])
def test_soft_limit_always_allows(current, reason) -> None:
    result = evaluate_single_limit(_usage(current), _limit(10, "soft"), debug=True)
    assert result.allowed is True
    assert result.reason == reason
    assert result.remaining == max(0, 10 - current)


def test_reason_omitted_without_debug() -> None:
    result = evaluate_single_limit(None, _limit(10, "hard"))
    assert result.to_dict() == {"allowed": True, "current": 0, "limit": 10, "remaining": 10}


@pytest.mark.asyncio
async def test_evaluate_limits_reads_current_period_and_plan_limits(session_factory) -> None:
    now = datetime.now(timezone.utc)
    await seed_usage(session_factory, metric_key="api_calls", value=150, at=now)
    # Last month's counter must not count toward this month.
    await seed_usage(session_factory, metric_key="seats", value=999, at=now - timedelta(days=40))
    await seed_limit(session_factory, metric_key="api_calls", limit_value=100)
    await seed_limit(session_factory, metric_key="api_calls", limit_value=1000, plan_id="plan_pro")
    await seed_limit(session_factory, metric_key="seats", limit_value=5)

    evaluator = LimitEvaluator(session_factory=session_factory)

    default_plan = await evaluator.evaluate_limits(["api_calls", "seats", "storage"], _ctx())
    assert default_plan["api_calls"].to_dict() == {
        "allowed": False,
        "current": 150,
        "limit": 100,
        "remaining": 0,
        "reason": "hard_limit_exceeded",
    }
    assert default_plan["seats"].current == 0
    assert default_plan["seats"].allowed is True
    assert default_plan["storage"].limit == -1

    pro_plan = await evaluator.evaluate_limits(["api_calls"], _ctx(plan_id="plan_pro"))
    assert pro_plan["api_calls"].to_dict() == {
        "allowed": True,
        "current": 150,
        "limit": 1000,
        "remaining": 850,
        "reason": "within_hard_limit",
    }


@pytest.mark.asyncio
async def test_evaluate_limits_scoped_to_org(session_factory) -> None:
    now = datetime.now(timezone.utc)
    await seed_usage(session_factory, metric_key="api_calls", value=7, at=now, org_id="org_other")
    evaluator = LimitEvaluator(session_factory=session_factory)
    results = await evaluator.evaluate_limits(["api_calls"], _ctx())
    assert results["api_calls"].current == 0


@pytest.mark.asyncio
async def test_empty_keys_return_empty() -> None:
    evaluator = LimitEvaluator(session_factory=lambda: None)
    assert await evaluator.evaluate_limits([], _ctx()) == {}
