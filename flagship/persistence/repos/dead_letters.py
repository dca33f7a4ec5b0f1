from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flagship.domain.models import UsageIngestDeadLetter


async def create(
    session: AsyncSession,
    *,
    job_id: str,
    request_id: str,
    environment_id: str,
    org_id: str,
    payload_json: dict[str, Any],
    reason: str,
    last_error: str | None,
    attempts: int,
) -> UsageIngestDeadLetter:
    row = UsageIngestDeadLetter(
        job_id=job_id,
        request_id=request_id,
        environment_id=environment_id,
        org_id=org_id,
        payload_json=payload_json,
        reason=reason,
        last_error=last_error,
        attempts=attempts,
    )
    session.add(row)
    await session.flush()
    return row


async def get(session: AsyncSession, dead_letter_id: str) -> UsageIngestDeadLetter | None:
    return await session.get(UsageIngestDeadLetter, dead_letter_id)


async def list_recent(
    session: AsyncSession,
    *,
    environment_id: str | None = None,
    limit: int = 50,
) -> list[UsageIngestDeadLetter]:
    # Newest first; replayed rows stay listed so operators can audit them.
    stmt = select(UsageIngestDeadLetter)
    if environment_id:
        stmt = stmt.where(UsageIngestDeadLetter.environment_id == environment_id)
    stmt = stmt.order_by(UsageIngestDeadLetter.created_at.desc(), UsageIngestDeadLetter.id.desc()).limit(
        max(1, limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def claim_replay(
    session: AsyncSession,
    dead_letter_id: str,
    *,
    replay_job_id: str,
    replayed_at: datetime,
) -> bool:
    # Conditional update so only one concurrent replay can stamp the row.
    result = await session.execute(
        update(UsageIngestDeadLetter)
        .where(
            UsageIngestDeadLetter.id == dead_letter_id,
            UsageIngestDeadLetter.replayed_at.is_(None),
        )
        .values(replayed_at=replayed_at, replay_job_id=replay_job_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_replay(session: AsyncSession, dead_letter_id: str, *, replay_job_id: str) -> None:
    # Undo a claim whose enqueue failed; leaves newer claims untouched.
    await session.execute(
        update(UsageIngestDeadLetter)
        .where(
            UsageIngestDeadLetter.id == dead_letter_id,
            UsageIngestDeadLetter.replay_job_id == replay_job_id,
        )
        .values(replayed_at=None, replay_job_id=None)
        .execution_options(synchronize_session=False)
    )
