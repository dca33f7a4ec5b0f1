from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest
from arq import Retry
from sqlalchemy import select

from flagship.core.config import get_settings
from flagship.core.errors import (
    DeadLetterNotFoundError,
    DeadLetterReplayError,
    QueueUnavailableError,
    UsageStoreUnavailableError,
)
from flagship.domain.models import UsageIngestDeadLetter, UsageMetric
from flagship.services.usage import queue
from flagship.services.usage.idempotency import IdempotencyStore
from flagship.services.usage.ingestion import IngestionContext, IngestionService, IngestResult, UsageEvent
from flagship.tests.utils.redis import StubArqPool, StubRedis
from flagship.tests.utils.seed import ENVIRONMENT_ID, ORG_ID, PROJECT_ID
from flagship.workers import usage_worker


CTX = IngestionContext(environment_id=ENVIRONMENT_ID, org_id=ORG_ID, project_id=PROJECT_ID, plan_id="plan_pro")
EVENTS = [UsageEvent(metric="api_calls", delta=2, idempotency_key="evt_1")]


class _FailingIngestion:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def ingest(self, events, ctx, *, include_summary=False, request_id=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise UsageStoreUnavailableError("usage store unavailable")
        return IngestResult(request_id=request_id, processed_at="now", accepted=len(events), rejected=0)


def _apply_env(monkeypatch, **overrides: str) -> None:
    for key, value in overrides.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()


def _use_pool(monkeypatch, pool) -> None:
    async def _pool():
        return pool

    monkeypatch.setattr(queue, "get_redis_pool", _pool)


def test_retry_delays_double_from_drawn_backoff() -> None:
    assert [queue.retry_delay_ms(1100, attempt) for attempt in (1, 2, 3)] == [1100, 2200, 4400]


def test_backoff_draw_includes_bounded_jitter() -> None:
    draws = {queue.draw_backoff_ms() for _ in range(200)}
    assert all(1000 <= draw < 1200 for draw in draws)
    assert len(draws) > 1


@pytest.mark.asyncio
async def test_enqueue_uses_request_id_as_job_id(monkeypatch) -> None:
    pool = StubArqPool()
    _use_pool(monkeypatch, pool)

    result = await queue.enqueue_usage_job(CTX, EVENTS, "req-1")

    assert result.job_id == "req-1"
    job = pool.jobs[0]
    assert job["function"] == "ingest_usage"
    assert job["_queue_name"] == get_settings().usage_ingest_queue_name
    payload = queue.UsageIngestJobPayload.model_validate(job["args"][0])
    assert payload.request_id == "req-1"
    assert payload.plan_id == "plan_pro"
    assert payload.events[0].idempotency_key == "evt_1"
    assert 1000 <= payload.backoff_ms < 1200
    assert payload.queued_at == result.queued_at


@pytest.mark.asyncio
async def test_enqueue_failure_raises_queue_unavailable(monkeypatch) -> None:
    async def _down():
        raise ConnectionError("redis down")

    monkeypatch.setattr(queue, "get_redis_pool", _down)
    with pytest.raises(QueueUnavailableError):
        await queue.enqueue_usage_job(CTX, EVENTS, "req-1")


@pytest.mark.asyncio
async def test_failure_with_tries_left_defers_retry(session_factory) -> None:
    payload = queue.build_job_payload(CTX, EVENTS, "req-1")
    with pytest.raises(Retry) as exc_info:
        await queue.process_usage_job(
            payload,
            job_id="req-1",
            attempt=2,
            max_tries=3,
            ingestion=_FailingIngestion(failures=1),
            session_factory=session_factory,
        )
    assert exc_info.value.defer_score == payload.backoff_ms * 2
    async with session_factory() as session:
        assert (await session.scalars(select(UsageIngestDeadLetter))).all() == []


@pytest.mark.asyncio
async def test_final_failure_is_dead_lettered(session_factory) -> None:
    payload = queue.build_job_payload(CTX, EVENTS, "req-1")
    with pytest.raises(UsageStoreUnavailableError):
        await queue.process_usage_job(
            payload,
            job_id="req-1",
            attempt=3,
            max_tries=3,
            ingestion=_FailingIngestion(failures=3),
            session_factory=session_factory,
        )
    async with session_factory() as session:
        rows = await queue.list_dead_letters(session, environment_id=ENVIRONMENT_ID)
    assert len(rows) == 1
    row = rows[0]
    assert (row.job_id, row.request_id, row.attempts) == ("req-1", "req-1", 3)
    assert row.reason == "usage_store_unavailable"
    assert row.payload_json["events"][0]["metric"] == "api_calls"
    assert row.replayed_at is None


@pytest.mark.asyncio
async def test_completed_jobs_are_capped(monkeypatch) -> None:
    _apply_env(monkeypatch, USAGE_INGEST_KEEP_COMPLETED=2)
    pool = StubArqPool()
    _use_pool(monkeypatch, pool)

    for index in range(3):
        payload = queue.build_job_payload(CTX, EVENTS, f"req-{index}")
        await queue.process_usage_job(
            payload, job_id=f"req-{index}", attempt=1, max_tries=3, ingestion=_FailingIngestion(failures=0)
        )

    completed = await queue.list_completed_jobs(limit=10)
    assert [entry["job_id"] for entry in completed] == ["req-2", "req-1"]
    assert completed[0]["accepted"] == 1


@pytest.mark.asyncio
async def test_inline_mode_retries_then_applies(monkeypatch, session_factory) -> None:
    _apply_env(monkeypatch, USAGE_INGEST_EXECUTION_MODE="inline")
    flaky = _FailingIngestion(failures=2)
    monkeypatch.setattr(queue, "get_ingestion_service", lambda: flaky)
    monkeypatch.setattr(queue, "SessionLocal", session_factory)

    result = await queue.enqueue_usage_job(CTX, EVENTS, "req-inline")

    assert result.job_id == "req-inline"
    assert flaky.calls == 3
    assert (await queue.list_completed_jobs())[0]["job_id"] == "req-inline"
    assert await queue.get_queue_depth() == 0


@pytest.mark.asyncio
async def test_inline_mode_applies_events_through_pipeline(monkeypatch, session_factory) -> None:
    _apply_env(monkeypatch, USAGE_INGEST_EXECUTION_MODE="inline")
    service = IngestionService(session_factory=session_factory, idempotency=IdempotencyStore(redis=StubRedis()))
    monkeypatch.setattr(queue, "get_ingestion_service", lambda: service)

    await queue.enqueue_usage_job(CTX, EVENTS + EVENTS, "req-inline")

    async with session_factory() as session:
        value = await session.scalar(select(UsageMetric.current_value))
    assert value == 2


@pytest.mark.asyncio
async def test_replay_dead_letter(monkeypatch, session_factory) -> None:
    pool = StubArqPool()
    _use_pool(monkeypatch, pool)
    payload = queue.build_job_payload(CTX, EVENTS, "req-1")
    with pytest.raises(UsageStoreUnavailableError):
        await queue.process_usage_job(
            payload,
            job_id="req-1",
            attempt=3,
            max_tries=3,
            ingestion=_FailingIngestion(failures=3),
            session_factory=session_factory,
        )

    async with session_factory() as session:
        row = (await queue.list_dead_letters(session))[0]
        result = await queue.replay_dead_letter(session, row.id)
        assert result.job_id != "req-1"
        assert pool.jobs[0]["job_id"] == result.job_id
        replayed = queue.UsageIngestJobPayload.model_validate(pool.jobs[0]["args"][0])
        assert replayed.request_id == "req-1"

        with pytest.raises(DeadLetterReplayError):
            await queue.replay_dead_letter(session, row.id)
        with pytest.raises(DeadLetterNotFoundError):
            await queue.replay_dead_letter(session, "missing")

    async with session_factory() as session:
        stored = await session.get(UsageIngestDeadLetter, row.id)
    assert stored.replay_job_id == result.job_id
    assert stored.replayed_at is not None


@pytest.mark.asyncio
async def test_heartbeat_and_depth(monkeypatch) -> None:
    pool = StubArqPool()
    _use_pool(monkeypatch, pool)
    beat = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

    await queue.set_worker_heartbeat(timestamp=beat)
    pool.lists[get_settings().usage_ingest_queue_name] = ["job-a", "job-b"]

    assert await queue.get_worker_heartbeat() == beat
    assert await queue.get_queue_depth() == 2


@pytest.mark.asyncio
async def test_ops_reads_degrade_when_redis_is_down(monkeypatch) -> None:
    async def _down():
        raise ConnectionError("redis down")

    monkeypatch.setattr(queue, "get_redis_pool", _down)
    assert await queue.get_queue_depth() is None
    assert await queue.get_worker_heartbeat() is None
    assert await queue.list_completed_jobs() == []


@pytest.mark.asyncio
async def test_worker_entrypoint_passes_job_try(monkeypatch) -> None:
    seen: dict[str, object] = {}

    async def _process(payload, *, job_id, attempt, max_tries):
        seen.update(job_id=job_id, attempt=attempt, max_tries=max_tries, request_id=payload.request_id)
        return IngestResult(request_id=payload.request_id, processed_at="now", accepted=1, rejected=0)

    monkeypatch.setattr(usage_worker, "process_usage_job", _process)
    payload = queue.build_job_payload(CTX, EVENTS, "req-9").model_dump(mode="json")

    result = await usage_worker.ingest_usage({"job_id": "req-9", "job_try": 2}, json.loads(json.dumps(payload)))

    assert seen == {"job_id": "req-9", "attempt": 2, "max_tries": 3, "request_id": "req-9"}
    assert result["accepted"] == 1


def test_worker_settings_follow_config() -> None:
    settings = get_settings()
    assert usage_worker.WorkerSettings.queue_name == settings.usage_ingest_queue_name
    assert usage_worker.WorkerSettings.max_tries == 3
    assert usage_worker.ingest_usage in usage_worker.WorkerSettings.functions



async def _dead_letter_one(session_factory) -> str:
    payload = queue.build_job_payload(CTX, EVENTS, "req-dlq")
    with pytest.raises(UsageStoreUnavailableError):
        await queue.process_usage_job(
            payload,
            job_id="req-dlq",
            attempt=3,
            max_tries=3,
            ingestion=_FailingIngestion(failures=3),
            session_factory=session_factory,
        )
    async with session_factory() as session:
        return (await queue.list_dead_letters(session))[0].id


@pytest.mark.asyncio
async def test_concurrent_replays_enqueue_once(monkeypatch, session_factory) -> None:
    pool = StubArqPool()
    _use_pool(monkeypatch, pool)
    dead_letter_id = await _dead_letter_one(session_factory)

    async def _replay():
        async with session_factory() as session:
            return await queue.replay_dead_letter(session, dead_letter_id)

    results = await asyncio.gather(_replay(), _replay(), _replay(), return_exceptions=True)

    replayed = [result for result in results if isinstance(result, queue.EnqueueResult)]
    refused = [result for result in results if isinstance(result, DeadLetterReplayError)]
    assert len(replayed) == 1
    assert len(refused) == 2
    assert len(pool.jobs) == 1
    async with session_factory() as session:
        stored = await session.get(UsageIngestDeadLetter, dead_letter_id)
    assert stored.replay_job_id == replayed[0].job_id


@pytest.mark.asyncio
async def test_failed_replay_enqueue_releases_claim(monkeypatch, session_factory) -> None:
    dead_letter_id = await _dead_letter_one(session_factory)

    async def _down():
        raise ConnectionError("redis down")

    monkeypatch.setattr(queue, "get_redis_pool", _down)
    async with session_factory() as session:
        with pytest.raises(QueueUnavailableError):
            await queue.replay_dead_letter(session, dead_letter_id)
        row = await session.get(UsageIngestDeadLetter, dead_letter_id)
        assert row.replayed_at is None
        assert row.replay_job_id is None

    pool = StubArqPool()
    _use_pool(monkeypatch, pool)
    async with session_factory() as session:
        result = await queue.replay_dead_letter(session, dead_letter_id)
    assert pool.jobs[0]["job_id"] == result.job_id


class _SlowIngestion:
    async def ingest(self, events, ctx, *, include_summary=False, request_id=None):
        await asyncio.sleep(10)


@pytest.mark.asyncio
async def test_timed_out_batch_retries_then_dead_letters(monkeypatch, session_factory) -> None:
    _apply_env(monkeypatch, USAGE_INGEST_JOB_TIMEOUT_S="0.05")
    payload = queue.build_job_payload(CTX, EVENTS, "req-slow")

    with pytest.raises(Retry):
        await queue.process_usage_job(
            payload, job_id="req-slow", attempt=1, max_tries=3, ingestion=_SlowIngestion()
        )
    with pytest.raises(TimeoutError):
        await queue.process_usage_job(
            payload,
            job_id="req-slow",
            attempt=3,
            max_tries=3,
            ingestion=_SlowIngestion(),
            session_factory=session_factory,
        )

    async with session_factory() as session:
        rows = await queue.list_dead_letters(session)
    assert [row.reason for row in rows] == ["job_timeout"]


def test_worker_timeout_leaves_room_for_in_job_timeout() -> None:
    settings = get_settings()
    assert usage_worker.WorkerSettings.job_timeout > settings.usage_ingest_job_timeout_s
