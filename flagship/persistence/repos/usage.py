from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from flagship.domain.models import UsageLimit, UsageMetric
from flagship.services.periods import calculate_period_boundaries, to_utc


_COUNTER_KEY = (
    UsageMetric.environment_id,
    UsageMetric.org_id,
    UsageMetric.metric_key,
    UsageMetric.period_start,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_current_usage_multiple(
    session: AsyncSession,
    *,
    environment_id: str,
    org_id: str,
    metric_keys: list[str],
    now: datetime | None = None,
) -> dict[str, UsageMetric]:
    # Select the counters whose period contains "now"; missing keys mean zero usage.
    if not metric_keys:
        return {}
    current = to_utc(now or _utc_now())
    result = await session.execute(
        select(UsageMetric).where(
            UsageMetric.environment_id == environment_id,
            UsageMetric.org_id == org_id,
            UsageMetric.metric_key.in_(set(metric_keys)),
            UsageMetric.period_start <= current,
            UsageMetric.period_end >= current,
        )
    )
    return {row.metric_key: row for row in result.scalars().all()}


async def get_limits_multiple(
    session: AsyncSession,
    *,
    environment_id: str,
    metric_keys: list[str],
    plan_id: str | None = None,
) -> dict[str, UsageLimit]:
    # Prefer plan-specific limits and fall back to the plan-less default per metric.
    if not metric_keys:
        return {}
    plan_filter = UsageLimit.plan_id.is_(None)
    if plan_id:
        plan_filter = or_(plan_filter, UsageLimit.plan_id == plan_id)
    result = await session.execute(
        select(UsageLimit).where(
            UsageLimit.environment_id == environment_id,
            UsageLimit.metric_key.in_(set(metric_keys)),
            plan_filter,
        )
    )
    limits: dict[str, UsageLimit] = {}
    for row in result.scalars().all():
        existing = limits.get(row.metric_key)
        if existing is None or (row.plan_id is not None and existing.plan_id is None):
            limits[row.metric_key] = row
    return limits


async def get_limit(
    session: AsyncSession,
    *,
    environment_id: str,
    metric_key: str,
    plan_id: str | None = None,
) -> UsageLimit | None:
    limits = await get_limits_multiple(
        session,
        environment_id=environment_id,
        metric_keys=[metric_key],
        plan_id=plan_id,
    )
    return limits.get(metric_key)


async def increment_usage(
    session: AsyncSession,
    *,
    environment_id: str,
    org_id: str,
    metric_key: str,
    delta: int,
    timestamp: datetime,
    now: datetime | None = None,
) -> int:
    """Atomically apply ``delta`` to the monthly counter and return the new value.

    A single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING`` keyed by the
    counter's unique (environment, org, metric, period_start) constraint, so
    concurrent writers never lose updates. New rows are seeded with
    ``max(0, delta)``. The caller owns the transaction.
    """
    boundaries = calculate_period_boundaries(timestamp)
    touched_at = now or _utc_now()
    dialect = session.get_bind().dialect.name
    insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = (
        insert_fn(UsageMetric)
        .values(
            id=uuid4().hex,
            environment_id=environment_id,
            org_id=org_id,
            metric_key=metric_key,
            current_value=max(0, int(delta)),
            period_start=boundaries.period_start,
            period_end=boundaries.period_end,
            last_updated_at=touched_at,
        )
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=list(_COUNTER_KEY),
        set_={
            "current_value": UsageMetric.current_value + int(delta),
            "last_updated_at": touched_at,
        },
    ).returning(UsageMetric.current_value)
    result = await session.execute(stmt)
    return int(result.scalar_one())
