from __future__ import annotations

from typing import Any

from flagship.apps.api.errors import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {
        "model": ErrorEnvelope,
        "description": "Missing environment context",
        "content": {
            "application/json": {
                "example": _error_example(
                    code="FLAGSHIP_CONTEXT_MISSING",
                    message="Missing required header X-Flagship-Environment-Id",
                ),
            }
        },
    },
    422: {
        "model": ErrorEnvelope,
        "description": "Validation error",
        "content": {
            "application/json": {
                "example": _error_example(
                    code="REQUEST_VALIDATION_ERROR",
                    message="Validation error",
                ),
            }
        },
    },
    500: {
        "model": ErrorEnvelope,
        "description": "Internal server error",
        "content": {
            "application/json": {
                "example": _error_example(code="INTERNAL_ERROR", message="Internal server error"),
            }
        },
    },
    503: {
        "model": ErrorEnvelope,
        "description": "Service unavailable",
        "content": {
            "application/json": {
                "example": _error_example(
                    code="USAGE_STORE_UNAVAILABLE",
                    message="Usage store unavailable; retry the request",
                ),
            }
        },
    },
}
