from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from flagship.core.config import get_settings
from flagship.core.logging import configure_logging
from flagship.services.usage.queue import (
    UsageIngestJobPayload,
    process_usage_job,
    set_worker_heartbeat,
)


logger = logging.getLogger(__name__)


async def ingest_usage(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = UsageIngestJobPayload.model_validate(payload)
    settings = get_settings()
    job_id = ctx.get("job_id") or job_payload.request_id
    attempt = ctx.get("job_try", 1)
    result = await process_usage_job(
        job_payload,
        job_id=job_id,
        attempt=attempt,
        max_tries=settings.usage_ingest_max_tries,
    )
    return result.to_dict()


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - a missed beat surfaces as a stale heartbeat
            logger.warning("usage_worker_heartbeat_failed", exc_info=True)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    logger.info("usage_worker_started queue=%s", get_settings().usage_ingest_queue_name)


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.usage_ingest_queue_name
    max_tries = settings.usage_ingest_max_tries
    # Headroom over the in-job timeout so a slow batch is retried or dead-lettered
    # by process_usage_job before arq cancels it.
    job_timeout = settings.usage_ingest_job_timeout_s + 30
    functions = [ingest_usage]
    on_startup = _startup
    on_shutdown = _shutdown
