from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from flagship.domain.schemas import CamelModel
from flagship.services.evaluation.features import (
    FeatureEvaluationContext,
    FeatureEvaluator,
    FeatureResult,
    get_feature_evaluator,
)
from flagship.services.evaluation.limits import (
    LimitEvaluationContext,
    LimitEvaluator,
    LimitResult,
    get_limit_evaluator,
)
from flagship.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class EvaluateRequest(CamelModel):
    features: list[str] | None = None
    limits: list[str] | None = None
    # Free-form attributes, e.g. {"userId": "usr_1"} for percentage rollouts.
    context: dict[str, Any] | None = None
    debug: bool = False


@dataclass(frozen=True)
class EvaluationContext:
    # Environment scope resolved upstream of the evaluation engine.
    project_id: str
    environment_id: str
    org_id: str
    plan_id: str | None = None


@dataclass(frozen=True)
class EvaluateResponse:
    request_id: str
    evaluated_at: str
    features: dict[str, FeatureResult] = field(default_factory=dict)
    limits: dict[str, LimitResult] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "evaluatedAt": self.evaluated_at,
            "features": {key: result.to_dict() for key, result in self.features.items()},
            "limits": {key: result.to_dict() for key, result in self.limits.items()},
        }


def _utc_iso(now: datetime) -> str:
    # Millisecond precision with a Z suffix, matching SDK expectations.
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


async def _no_results() -> dict[str, Any]:
    return {}


class EvaluationService:
    def __init__(
        self,
        *,
        feature_evaluator: FeatureEvaluator | None = None,
        limit_evaluator: LimitEvaluator | None = None,
    ) -> None:
        self._feature_evaluator = feature_evaluator or get_feature_evaluator()
        self._limit_evaluator = limit_evaluator or get_limit_evaluator()

    async def evaluate(self, request: EvaluateRequest, ctx: EvaluationContext) -> EvaluateResponse:
        request_id = str(uuid4())
        started = time.monotonic()
        feature_keys = request.features or []
        limit_keys = request.limits or []

        feature_ctx = FeatureEvaluationContext(
            project_id=ctx.project_id,
            environment_id=ctx.environment_id,
            org_id=ctx.org_id,
            plan_id=ctx.plan_id,
            context=request.context,
            debug=request.debug,
        )
        limit_ctx = LimitEvaluationContext(
            environment_id=ctx.environment_id,
            org_id=ctx.org_id,
            plan_id=ctx.plan_id,
            debug=request.debug,
        )

        # Both branches run concurrently on their own sessions; either failing fails the call.
        features, limits = await asyncio.gather(
            self._feature_evaluator.evaluate_features(feature_keys, feature_ctx)
            if feature_keys
            else _no_results(),
            self._limit_evaluator.evaluate_limits(limit_keys, limit_ctx)
            if limit_keys
            else _no_results(),
        )

        increment_counter("evaluation_requests_total")
        logger.debug(
            "evaluation_completed request_id=%s features=%s limits=%s duration_ms=%.1f",
            request_id,
            len(feature_keys),
            len(limit_keys),
            (time.monotonic() - started) * 1000,
        )
        return EvaluateResponse(
            request_id=request_id,
            evaluated_at=_utc_iso(datetime.now(timezone.utc)),
            features=features,
            limits=limits,
        )


_evaluation_service: EvaluationService | None = None


def get_evaluation_service() -> EvaluationService:
    # Cache the orchestrator for reuse across requests.
    global _evaluation_service
    if _evaluation_service is None:
        _evaluation_service = EvaluationService()
    return _evaluation_service


def reset_evaluation_service() -> None:
    global _evaluation_service
    _evaluation_service = None
