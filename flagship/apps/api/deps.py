from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from flagship.persistence.db import get_session


PROJECT_HEADER = "X-Flagship-Project-Id"
ENVIRONMENT_HEADER = "X-Flagship-Environment-Id"
ORG_HEADER = "X-Flagship-Org-Id"
PLAN_HEADER = "X-Flagship-Plan-Id"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


@dataclass(frozen=True)
class FlagshipRequestContext:
    # Environment scope resolved by the upstream gateway and forwarded as trusted headers.
    project_id: str
    environment_id: str
    org_id: str
    plan_id: str | None = None


def _context_missing(header: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "code": "FLAGSHIP_CONTEXT_MISSING",
            "message": f"Missing required header {header}",
            "header": header,
        },
    )


async def get_request_context(
    project_id: str | None = Header(default=None, alias=PROJECT_HEADER),
    environment_id: str | None = Header(default=None, alias=ENVIRONMENT_HEADER),
    org_id: str | None = Header(default=None, alias=ORG_HEADER),
    plan_id: str | None = Header(default=None, alias=PLAN_HEADER),
) -> FlagshipRequestContext:
    # Validate headers ourselves so missing context is a 400, not a generic 422.
    for header, value in (
        (PROJECT_HEADER, project_id),
        (ENVIRONMENT_HEADER, environment_id),
        (ORG_HEADER, org_id),
    ):
        if not value or not value.strip():
            raise _context_missing(header)
    return FlagshipRequestContext(
        project_id=project_id.strip(),
        environment_id=environment_id.strip(),
        org_id=org_id.strip(),
        plan_id=plan_id.strip() if plan_id and plan_id.strip() else None,
    )
