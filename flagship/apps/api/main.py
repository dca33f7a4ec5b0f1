from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from flagship.apps.api.errors import (
    API_VERSION,
    http_exception_handler,
    queue_unavailable_handler,
    unhandled_exception_handler,
    usage_store_unavailable_handler,
    validation_exception_handler,
)
from flagship.apps.api.routes.evaluate import router as evaluate_router
from flagship.apps.api.routes.health import router as health_router
from flagship.apps.api.routes.ops import router as ops_router
from flagship.apps.api.routes.usage import router as usage_router
from flagship.core.config import get_settings
from flagship.core.errors import QueueUnavailableError, UsageStoreUnavailableError
from flagship.core.logging import configure_logging
from flagship.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="FlagShip API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(UsageStoreUnavailableError, usage_store_unavailable_handler)
    app.add_exception_handler(QueueUnavailableError, queue_unavailable_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(evaluate_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    # Expose ops endpoints for ingestion observability and dead-letter replay.
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    app.state.settings = get_settings()
    return app


app = create_app()
