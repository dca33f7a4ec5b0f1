from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from flagship.apps.api.deps import FlagshipRequestContext, get_request_context
from flagship.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flagship.services.evaluation.service import (
    EvaluateRequest,
    EvaluationContext,
    EvaluationService,
    get_evaluation_service,
)


logger = logging.getLogger(__name__)
router = APIRouter(tags=["evaluation"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/evaluate")
async def evaluate(
    body: EvaluateRequest,
    ctx: FlagshipRequestContext = Depends(get_request_context),
    service: EvaluationService = Depends(get_evaluation_service),
) -> dict[str, Any]:
    # Evaluate requested features and limits for the caller's environment.
    response = await service.evaluate(
        body,
        EvaluationContext(
            project_id=ctx.project_id,
            environment_id=ctx.environment_id,
            org_id=ctx.org_id,
            plan_id=ctx.plan_id,
        ),
    )
    return response.to_dict()
