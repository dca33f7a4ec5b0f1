from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from flagship.core.errors import QueueUnavailableError, UsageStoreUnavailableError


logger = logging.getLogger(__name__)

API_VERSION = "v1"


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorEnvelope(BaseModel):
    # Every /v1 failure has this shape so SDKs can branch on error.code.
    error: ErrorBody
    meta: ErrorMeta


def _request_id(request: Request) -> str:
    # The middleware normally assigns one; handlers can run before it on early failures.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def _is_api_route(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


def error_envelope(
    request: Request,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    envelope = ErrorEnvelope(
        error=ErrorBody(code=code, message=message, details=details),
        meta=ErrorMeta(request_id=_request_id(request)),
    )
    return envelope.model_dump(exclude_none=True)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Normalize HTTP exceptions into the shared error envelope for v1 routes.
    if not _is_api_route(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_envelope(request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for SDK parsing.
    errors = jsonable_encoder(exc.errors())
    if not _is_api_route(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_envelope(
        request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def usage_store_unavailable_handler(request: Request, exc: UsageStoreUnavailableError) -> JSONResponse:
    # The whole batch is safe to resend once the store is back.
    payload = error_envelope(
        request,
        code="USAGE_STORE_UNAVAILABLE",
        message="Usage store unavailable; retry the request",
    )
    return JSONResponse(content=payload, status_code=503, headers={"Retry-After": "1"})


async def queue_unavailable_handler(request: Request, exc: QueueUnavailableError) -> JSONResponse:
    payload = error_envelope(
        request,
        code="QUEUE_UNAVAILABLE",
        message="Usage ingestion queue unavailable; retry the request",
    )
    return JSONResponse(content=payload, status_code=503, headers={"Retry-After": "1"})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not _is_api_route(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_envelope(
        request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
