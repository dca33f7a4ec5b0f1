from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from flagship.services.evaluation.features import FeatureEvaluator, FeatureResult
from flagship.services.evaluation.limits import LimitEvaluator, LimitResult
from flagship.services.evaluation.service import EvaluateRequest, EvaluationContext, EvaluationService
from flagship.tests.utils.seed import ENVIRONMENT_ID, ORG_ID, PROJECT_ID, seed_feature


CTX = EvaluationContext(project_id=PROJECT_ID, environment_id=ENVIRONMENT_ID, org_id=ORG_ID, plan_id="plan_pro")


class _StubFeatures:
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], object]] = []
        self.started = asyncio.Event()
        self.wait_for: asyncio.Event | None = None

    async def evaluate_features(self, keys, ctx):
        self.calls.append((keys, ctx))
        self.started.set()
        if self.wait_for is not None:
            await asyncio.wait_for(self.wait_for.wait(), timeout=1)
        return {key: FeatureResult(value=True) for key in keys}


class _StubLimits:
    def __init__(self, features: _StubFeatures | None = None, error: Exception | None = None) -> None:
        self.calls: list[tuple[list[str], object]] = []
        self._features = features
        self._error = error
        self.started = asyncio.Event()

    async def evaluate_limits(self, keys, ctx):
        self.calls.append((keys, ctx))
        self.started.set()
        if self._features is not None:
            # Each branch waits for the other to start; only completes when run concurrently.
            await asyncio.wait_for(self._features.started.wait(), timeout=1)
        if self._error is not None:
            raise self._error
        return {key: LimitResult(allowed=True, current=0, limit=-1, remaining=-1) for key in keys}


@pytest.mark.asyncio
async def test_evaluate_runs_both_branches_concurrently() -> None:
    features = _StubFeatures()
    limits = _StubLimits(features)
    features.wait_for = limits.started
    service = EvaluationService(feature_evaluator=features, limit_evaluator=limits)

    response = await service.evaluate(
        EvaluateRequest(features=["f1"], limits=["api_calls"], context={"userId": "u1"}, debug=True),
        CTX,
    )

    body = response.to_dict()
    assert body["features"] == {"f1": {"value": True}}
    assert body["limits"]["api_calls"]["limit"] == -1
    feature_ctx = features.calls[0][1]
    assert feature_ctx.plan_id == "plan_pro"
    assert feature_ctx.context == {"userId": "u1"}
    assert feature_ctx.debug is True
    assert limits.calls[0][1].org_id == ORG_ID


@pytest.mark.asyncio
async def test_empty_lists_skip_evaluators() -> None:
    features = _StubFeatures()
    limits = _StubLimits()
    service = EvaluationService(feature_evaluator=features, limit_evaluator=limits)

    response = await service.evaluate(EvaluateRequest(features=[], limits=None), CTX)

    assert response.features == {}
    assert response.limits == {}
    assert features.calls == []
    assert limits.calls == []


@pytest.mark.asyncio
async def test_request_ids_and_timestamps_are_fresh() -> None:
    service = EvaluationService(feature_evaluator=_StubFeatures(), limit_evaluator=_StubLimits())
    first = await service.evaluate(EvaluateRequest(), CTX)
    second = await service.evaluate(EvaluateRequest(), CTX)
    assert first.request_id != second.request_id
    assert first.evaluated_at.endswith("Z")
    datetime.fromisoformat(first.evaluated_at.replace("Z", "+00:00"))


@pytest.mark.asyncio
async def test_branch_failure_fails_the_call() -> None:
    service = EvaluationService(
        feature_evaluator=_StubFeatures(),
        limit_evaluator=_StubLimits(error=RuntimeError("limits down")),
    )
    with pytest.raises(RuntimeError, match="limits down"):
        await service.evaluate(EvaluateRequest(features=["f1"], limits=["api_calls"]), CTX)


@pytest.mark.asyncio
async def test_boolean_feature_end_to_end(session_factory) -> None:
    await seed_feature(session_factory, key="f1", default_value=True)
    service = EvaluationService(
        feature_evaluator=FeatureEvaluator(session_factory=session_factory),
        limit_evaluator=LimitEvaluator(session_factory=session_factory),
    )
    response = await service.evaluate(EvaluateRequest(features=["f1"]), CTX)
    assert response.to_dict()["features"] == {"f1": {"value": True}}
