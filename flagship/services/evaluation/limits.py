from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flagship.domain.models import UsageLimit, UsageMetric
from flagship.persistence.db import SessionLocal
from flagship.persistence.repos import usage as usage_repo
from flagship.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Sentinel for "no limit configured" in both limit and remaining.
UNLIMITED = -1

ENFORCEMENT_SOFT = "soft"
ENFORCEMENT_HARD = "hard"


@dataclass(frozen=True)
class LimitEvaluationContext:
    environment_id: str
    org_id: str
    plan_id: str | None = None
    debug: bool = False


@dataclass(frozen=True)
class LimitResult:
    allowed: bool
    current: int
    limit: int
    remaining: int
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


def evaluate_single_limit(
    usage: UsageMetric | None,
    limit: UsageLimit | None,
    *,
    debug: bool = False,
) -> LimitResult:
    current = int(usage.current_value) if usage is not None else 0
    if limit is None:
        return LimitResult(
            allowed=True,
            current=current,
            limit=UNLIMITED,
            remaining=UNLIMITED,
            reason="no_limit_defined" if debug else None,
        )

    limit_value = int(limit.limit_value)
    remaining = max(0, limit_value - current)
    within = current < limit_value
    if limit.enforcement == ENFORCEMENT_SOFT:
        # Soft limits only report; they never block.
        return LimitResult(
            allowed=True,
            current=current,
            limit=limit_value,
            remaining=remaining,
            reason=("within_soft_limit" if within else "soft_limit_exceeded") if debug else None,
        )
    return LimitResult(
        allowed=within,
        current=current,
        limit=limit_value,
        remaining=remaining,
        reason=("within_hard_limit" if within else "hard_limit_exceeded") if debug else None,
    )


class LimitEvaluator:
    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def evaluate_limits(
        self,
        keys: list[str],
        ctx: LimitEvaluationContext,
    ) -> dict[str, LimitResult]:
        if not keys:
            return {}

        # Two round trips: current-period usage, then plan-aware limits.
        async with self._session_factory() as session:
            usage_by_key = await usage_repo.get_current_usage_multiple(
                session,
                environment_id=ctx.environment_id,
                org_id=ctx.org_id,
                metric_keys=keys,
            )
            limits_by_key = await usage_repo.get_limits_multiple(
                session,
                environment_id=ctx.environment_id,
                metric_keys=keys,
                plan_id=ctx.plan_id,
            )

        results = {
            key: evaluate_single_limit(
                usage_by_key.get(key),
                limits_by_key.get(key),
                debug=ctx.debug,
            )
            for key in keys
        }
        blocked = sum(1 for result in results.values() if not result.allowed)
        increment_counter("evaluation_limits_total", len(keys))
        if blocked:
            increment_counter("evaluation_limits_blocked_total", blocked)
            logger.info(
                "usage_limits_blocked environment_id=%s org_id=%s blocked=%s",
                ctx.environment_id,
                ctx.org_id,
                blocked,
            )
        return results


_limit_evaluator: LimitEvaluator | None = None


def get_limit_evaluator() -> LimitEvaluator:
    # Cache the evaluator for reuse across requests.
    global _limit_evaluator
    if _limit_evaluator is None:
        _limit_evaluator = LimitEvaluator()
    return _limit_evaluator


def reset_limit_evaluator() -> None:
    # Reset cached evaluator for deterministic tests.
    global _limit_evaluator
    _limit_evaluator = None
