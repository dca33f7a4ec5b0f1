from __future__ import annotations

import asyncio
import json
import logging
import random
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Deque
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flagship.core.config import get_settings
from flagship.core.errors import (
    DeadLetterNotFoundError,
    DeadLetterReplayError,
    QueueUnavailableError,
    UsageStoreUnavailableError,
)
from flagship.domain.models import UsageIngestDeadLetter
from flagship.persistence.db import SessionLocal
from flagship.persistence.repos import dead_letters as dead_letters_repo
from flagship.services.telemetry import increment_counter
from flagship.services.usage.ingestion import (
    IngestionContext,
    IngestionService,
    IngestResult,
    UsageEvent,
    get_ingestion_service,
)


logger = logging.getLogger(__name__)

INGEST_JOB_FUNCTION = "ingest_usage"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Inline mode has no Redis, so completed summaries stay in process.
_inline_completed: Deque[dict[str, Any]] = deque(maxlen=get_settings().usage_ingest_keep_completed)


def _heartbeat_key() -> str:
    return f"{get_settings().usage_ingest_redis_prefix}:worker:heartbeat"


def _completed_key() -> str:
    return f"{get_settings().usage_ingest_redis_prefix}:completed"


def _is_inline() -> bool:
    return get_settings().usage_ingest_execution_mode.lower() == "inline"


class UsageIngestJobPayload(BaseModel):
    # Job schema shared by the API enqueue path and the worker.
    request_id: str
    environment_id: str
    org_id: str
    project_id: str
    plan_id: str | None = None
    events: list[UsageEvent]
    queued_at: str
    # Jittered base delay drawn once per job; retry n waits backoff_ms * 2**(n-1).
    backoff_ms: int

    def ingestion_context(self) -> IngestionContext:
        return IngestionContext(
            environment_id=self.environment_id,
            org_id=self.org_id,
            project_id=self.project_id,
            plan_id=self.plan_id,
        )


@dataclass(frozen=True)
class EnqueueResult:
    job_id: str
    queued_at: str


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def draw_backoff_ms() -> int:
    settings = get_settings()
    jitter = 0
    if settings.usage_ingest_backoff_jitter_ms > 0:
        jitter = random.randrange(settings.usage_ingest_backoff_jitter_ms)
    return settings.usage_ingest_backoff_base_ms + jitter


def retry_delay_ms(backoff_ms: int, attempt: int) -> int:
    # Delay before retry number `attempt` (1-based).
    return backoff_ms * 2 ** (max(1, attempt) - 1)


async def get_redis_pool():
    # Cache the arq pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.usage_ingest_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


def build_job_payload(
    ctx: IngestionContext,
    events: list[UsageEvent],
    request_id: str,
) -> UsageIngestJobPayload:
    return UsageIngestJobPayload(
        request_id=request_id,
        environment_id=ctx.environment_id,
        org_id=ctx.org_id,
        project_id=ctx.project_id,
        plan_id=ctx.plan_id,
        events=events,
        queued_at=_iso(_utc_now()),
        backoff_ms=draw_backoff_ms(),
    )


async def submit_job(payload: UsageIngestJobPayload, *, job_id: str) -> str:
    # Single hand-off point to the queue (or the inline runner).
    settings = get_settings()
    if _is_inline():
        await _run_inline_job(payload, job_id=job_id, max_tries=settings.usage_ingest_max_tries)
        return job_id
    try:
        redis = await get_redis_pool()
        job = await redis.enqueue_job(
            INGEST_JOB_FUNCTION,
            payload.model_dump(mode="json"),
            _job_id=job_id,
            _queue_name=settings.usage_ingest_queue_name,
        )
    except Exception as exc:
        increment_counter("usage_ingest_enqueue_failed_total")
        logger.exception("usage_ingest_enqueue_failed job_id=%s", job_id)
        raise QueueUnavailableError("usage ingestion queue unavailable") from exc
    increment_counter("usage_ingest_enqueued_total")
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else job_id


async def enqueue_usage_job(
    ctx: IngestionContext,
    events: list[UsageEvent],
    request_id: str,
) -> EnqueueResult:
    # One job per request; the request id doubles as the job id for tracing.
    payload = build_job_payload(ctx, events, request_id)
    job_id = await submit_job(payload, job_id=request_id)
    return EnqueueResult(job_id=job_id, queued_at=payload.queued_at)


async def process_usage_job(
    payload: UsageIngestJobPayload,
    *,
    job_id: str,
    attempt: int,
    max_tries: int,
    ingestion: IngestionService | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> IngestResult:
    # Centralize job execution so the worker and inline mode share behavior.
    service = ingestion or get_ingestion_service()
    try:
        result = await asyncio.wait_for(
            service.ingest(
                payload.events,
                payload.ingestion_context(),
                request_id=payload.request_id,
            ),
            timeout=get_settings().usage_ingest_job_timeout_s,
        )
    except Exception as exc:
        if attempt < max_tries:
            delay_ms = retry_delay_ms(payload.backoff_ms, attempt)
            increment_counter("usage_ingest_job_retries_total")
            logger.warning(
                "usage_ingest_job_retry job_id=%s attempt=%s delay_ms=%s error=%s",
                job_id,
                attempt,
                delay_ms,
                type(exc).__name__,
            )
            raise Retry(defer=timedelta(milliseconds=delay_ms)) from exc
        logger.exception("usage_ingest_job_failed job_id=%s attempts=%s", job_id, attempt)
        await _dead_letter(payload, job_id=job_id, attempts=attempt, exc=exc, session_factory=session_factory)
        raise

    await _record_completed(job_id, payload, result)
    increment_counter("usage_ingest_jobs_completed_total")
    return result


async def _run_inline_job(payload: UsageIngestJobPayload, *, job_id: str, max_tries: int) -> None:
    # Inline mode mimics worker retries without requiring Redis.
    attempt = 1
    while True:
        try:
            await process_usage_job(payload, job_id=job_id, attempt=attempt, max_tries=max_tries)
            return
        except Retry:
            attempt += 1
            continue
        except Exception:  # noqa: BLE001 - already dead-lettered, mirror a failed arq job
            logger.warning("usage_ingest_inline_job_dead_lettered job_id=%s", job_id)
            return


def _failure_reason(exc: BaseException) -> str:
    # Short operator-facing reason; full detail goes to last_error.
    if isinstance(exc, UsageStoreUnavailableError):
        return "usage_store_unavailable"
    if isinstance(exc, TimeoutError):
        return "job_timeout"
    return "ingestion_failed"


async def _dead_letter(
    payload: UsageIngestJobPayload,
    *,
    job_id: str,
    attempts: int,
    exc: BaseException,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    factory = session_factory or SessionLocal
    increment_counter("usage_ingest_dead_letters_total")
    try:
        async with factory() as session:
            await dead_letters_repo.create(
                session,
                job_id=job_id,
                request_id=payload.request_id,
                environment_id=payload.environment_id,
                org_id=payload.org_id,
                payload_json=payload.model_dump(mode="json"),
                reason=_failure_reason(exc),
                last_error=f"{type(exc).__name__}: {exc}"[:2000],
                attempts=attempts,
            )
            await session.commit()
    except Exception:  # noqa: BLE001 - the original failure is re-raised by the caller
        logger.exception("usage_ingest_dead_letter_write_failed job_id=%s", job_id)


async def _record_completed(job_id: str, payload: UsageIngestJobPayload, result: IngestResult) -> None:
    entry = {
        "job_id": job_id,
        "request_id": payload.request_id,
        "environment_id": payload.environment_id,
        "accepted": result.accepted,
        "rejected": result.rejected,
        "duplicates": result.duplicates,
        "completed_at": _iso(_utc_now()),
    }
    if _is_inline():
        _inline_completed.appendleft(entry)
        return
    keep = get_settings().usage_ingest_keep_completed
    try:
        redis = await get_redis_pool()
        await redis.lpush(_completed_key(), json.dumps(entry))
        await redis.ltrim(_completed_key(), 0, keep - 1)
    except Exception:  # noqa: BLE001 - bookkeeping must not fail an applied job
        logger.warning("usage_ingest_completed_record_failed job_id=%s", job_id, exc_info=True)


async def list_completed_jobs(limit: int = 20) -> list[dict[str, Any]]:
    # Newest first; returns an empty list when Redis is unavailable.
    if _is_inline():
        return list(_inline_completed)[:limit]
    try:
        redis = await get_redis_pool()
        raw_entries = await redis.lrange(_completed_key(), 0, max(0, limit - 1))
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return []
    entries: list[dict[str, Any]] = []
    for raw in raw_entries:
        value = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
        try:
            entries.append(json.loads(value))
        except ValueError:
            continue
    return entries


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    if _is_inline():
        # Inline mode bypasses Redis, so queue depth is always zero.
        return 0
    try:
        redis = await get_redis_pool()
        # arq keeps pending jobs in a sorted set named after the queue.
        depth = await redis.zcard(get_settings().usage_ingest_queue_name)
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    # Persist a heartbeat for the ops endpoint.
    if _is_inline():
        return
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(_heartbeat_key(), heartbeat_time.isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if _is_inline():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(_heartbeat_key())
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def list_dead_letters(
    session: AsyncSession,
    *,
    environment_id: str | None = None,
    limit: int = 50,
) -> list[UsageIngestDeadLetter]:
    return await dead_letters_repo.list_recent(session, environment_id=environment_id, limit=limit)


async def replay_dead_letter(session: AsyncSession, dead_letter_id: str) -> EnqueueResult:
    """Re-enqueue a dead-lettered job under a fresh job id.

    The row is claimed with a conditional update before anything is enqueued,
    so of several concurrent replays exactly one submits a job and the rest get
    ``DeadLetterReplayError``. A failed enqueue gives the claim back. Events
    applied before the original failure keep their idempotency claims, so
    replaying does not double count them.
    """
    row = await dead_letters_repo.get(session, dead_letter_id)
    if row is None:
        raise DeadLetterNotFoundError(f"dead letter {dead_letter_id} not found")

    original = UsageIngestJobPayload.model_validate(row.payload_json)
    payload = original.model_copy(
        update={"queued_at": _iso(_utc_now()), "backoff_ms": draw_backoff_ms()}
    )
    replay_job_id = str(uuid4())
    claimed = await dead_letters_repo.claim_replay(
        session, dead_letter_id, replay_job_id=replay_job_id, replayed_at=_utc_now()
    )
    await session.commit()
    if not claimed:
        await session.refresh(row)
        raise DeadLetterReplayError(f"dead letter {dead_letter_id} already replayed as {row.replay_job_id}")

    try:
        job_id = await submit_job(payload, job_id=replay_job_id)
    except QueueUnavailableError:
        await dead_letters_repo.release_replay(session, dead_letter_id, replay_job_id=replay_job_id)
        await session.commit()
        raise
    finally:
        await session.refresh(row)

    increment_counter("usage_ingest_dead_letters_replayed_total")
    logger.info("usage_ingest_dead_letter_replayed dead_letter_id=%s job_id=%s", dead_letter_id, job_id)
    return EnqueueResult(job_id=job_id, queued_at=payload.queued_at)


def reset_queue_state() -> None:
    # Reset cached pool and inline bookkeeping for deterministic tests.
    global _redis_pool, _redis_pool_loop
    _redis_pool = None
    _redis_pool_loop = None
    _inline_completed.clear()
