from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from flagship.apps.api.deps import get_db
from flagship.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flagship.core.config import get_settings
from flagship.core.errors import DeadLetterNotFoundError, DeadLetterReplayError
from flagship.domain.models import UsageIngestDeadLetter
from flagship.services.telemetry import counters_snapshot, p95_latency
from flagship.services.usage import queue as usage_queue


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dead_letter_payload(row: UsageIngestDeadLetter) -> dict[str, Any]:
    return {
        "id": row.id,
        "jobId": row.job_id,
        "requestId": row.request_id,
        "environmentId": row.environment_id,
        "orgId": row.org_id,
        "eventCount": len((row.payload_json or {}).get("events") or []),
        "reason": row.reason,
        "lastError": row.last_error,
        "attempts": row.attempts,
        "createdAt": _iso(row.created_at),
        "replayedAt": _iso(row.replayed_at),
        "replayJobId": row.replay_job_id,
    }


@router.get("/usage-ingest")
async def usage_ingest_status(
    limit: int = Query(default=20, ge=1, le=100),
) -> dict[str, Any]:
    # Summarize queue depth, worker liveness and recent job outcomes.
    settings = get_settings()
    depth = await usage_queue.get_queue_depth()
    heartbeat = await usage_queue.get_worker_heartbeat()
    heartbeat_age_s = None
    if heartbeat is not None:
        heartbeat_age_s = (datetime.now(timezone.utc) - heartbeat).total_seconds()
    worker_alive = heartbeat_age_s is not None and heartbeat_age_s <= settings.worker_heartbeat_stale_after_s
    counters = counters_snapshot()
    return {
        "executionMode": settings.usage_ingest_execution_mode,
        "queueName": settings.usage_ingest_queue_name,
        "queueDepth": depth,
        "workerHeartbeatAt": _iso(heartbeat),
        "workerHeartbeatAgeS": heartbeat_age_s,
        "workerAlive": worker_alive,
        "recentJobs": await usage_queue.list_completed_jobs(limit),
        "counters": {key: value for key, value in counters.items() if key.startswith(("usage_", "idempotency_"))},
        "ingestP95LatencyMs": p95_latency(300, path_prefix="/v1/usage"),
    }


@router.get("/usage-ingest/dead-letters")
async def list_usage_dead_letters(
    environment_id: str | None = Query(default=None, alias="environmentId"),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await usage_queue.list_dead_letters(db, environment_id=environment_id, limit=limit)
    return {"items": [_dead_letter_payload(row) for row in rows]}


@router.post("/usage-ingest/dead-letters/{dead_letter_id}/replay", status_code=202)
async def replay_usage_dead_letter(
    dead_letter_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        result = await usage_queue.replay_dead_letter(db, dead_letter_id)
    except DeadLetterNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "DEAD_LETTER_NOT_FOUND", "message": str(exc)}) from exc
    except DeadLetterReplayError as exc:
        raise HTTPException(
            status_code=409, detail={"code": "DEAD_LETTER_ALREADY_REPLAYED", "message": str(exc)}
        ) from exc
    return {"deadLetterId": dead_letter_id, "jobId": result.job_id, "queuedAt": result.queued_at}
