from __future__ import annotations

from typing import Iterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from flagship.core.config import get_settings
from flagship.domain.models import Base
from flagship.services.evaluation.features import reset_feature_evaluator
from flagship.services.evaluation.limits import reset_limit_evaluator
from flagship.services.evaluation.service import reset_evaluation_service
from flagship.services.telemetry import reset_telemetry
from flagship.services.usage.idempotency import reset_idempotency_store
from flagship.services.usage.ingestion import reset_ingestion_service
from flagship.services.usage.queue import reset_queue_state


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    # File-backed SQLite so concurrent sessions get their own connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'flagship.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_cached_services() -> Iterator[None]:
    # Clear settings and service singletons between tests to avoid env leakage.
    yield
    get_settings.cache_clear()
    reset_feature_evaluator()
    reset_limit_evaluator()
    reset_evaluation_service()
    reset_idempotency_store()
    reset_ingestion_service()
    reset_queue_state()
    reset_telemetry()
