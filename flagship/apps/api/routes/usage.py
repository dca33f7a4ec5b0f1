from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, Query, status

from flagship.apps.api.deps import FlagshipRequestContext, get_request_context
from flagship.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flagship.services.usage import queue as usage_queue
from flagship.services.usage.ingestion import (
    IngestionContext,
    IngestionService,
    IngestRequest,
    get_ingestion_service,
)


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/usage", tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


def _ingestion_context(ctx: FlagshipRequestContext) -> IngestionContext:
    return IngestionContext(
        environment_id=ctx.environment_id,
        org_id=ctx.org_id,
        project_id=ctx.project_id,
        plan_id=ctx.plan_id,
    )


@router.post("/ingest", status_code=status.HTTP_202_ACCEPTED)
async def ingest_async(
    body: IngestRequest,
    ctx: FlagshipRequestContext = Depends(get_request_context),
) -> dict[str, Any]:
    # Queue the batch; the worker applies it through the same pipeline as /ingest/sync.
    request_id = str(uuid4())
    result = await usage_queue.enqueue_usage_job(_ingestion_context(ctx), body.events, request_id)
    logger.info(
        "usage_ingest_queued request_id=%s environment_id=%s events=%s job_id=%s",
        request_id,
        ctx.environment_id,
        len(body.events),
        result.job_id,
    )
    return {
        "requestId": request_id,
        "status": "queued",
        "queuedAt": result.queued_at,
        "eventCount": len(body.events),
        "jobId": result.job_id,
    }


@router.post("/ingest/sync")
async def ingest_sync(
    body: IngestRequest,
    include_summary: bool = Query(default=False, alias="includeSummary"),
    ctx: FlagshipRequestContext = Depends(get_request_context),
    service: IngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    result = await service.ingest(
        body.events,
        _ingestion_context(ctx),
        include_summary=include_summary,
    )
    return result.to_dict()
