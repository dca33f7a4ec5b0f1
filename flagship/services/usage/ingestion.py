from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from pydantic import Field, field_validator
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flagship.core.config import get_settings
from flagship.core.errors import UsageStoreUnavailableError
from flagship.domain.schemas import CamelModel
from flagship.persistence.db import SessionLocal
from flagship.persistence.repos import usage as usage_repo
from flagship.services.evaluation.limits import UNLIMITED
from flagship.services.periods import to_utc
from flagship.services.telemetry import increment_counter
from flagship.services.usage.idempotency import IdempotencyStore, get_idempotency_store


logger = logging.getLogger(__name__)

REASON_PROCESSING_FAILED = "processing_failed"


class UsageEvent(CamelModel):
    metric: str = Field(min_length=1, max_length=100)
    # Positive increments, negative decrements.
    delta: int
    timestamp: datetime | None = None
    idempotency_key: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None


class IngestRequest(CamelModel):
    events: list[UsageEvent] = Field(min_length=1)

    @field_validator("events")
    @classmethod
    def _cap_batch_size(cls, events: list[UsageEvent]) -> list[UsageEvent]:
        max_events = get_settings().usage_max_events_per_request
        if len(events) > max_events:
            raise ValueError(f"at most {max_events} events per request")
        return events


@dataclass(frozen=True)
class IngestionContext:
    environment_id: str
    org_id: str
    project_id: str
    plan_id: str | None = None


@dataclass(frozen=True)
class IngestError:
    index: int
    metric: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "metric": self.metric, "reason": self.reason}


@dataclass(frozen=True)
class UsageSummary:
    current: int
    limit: int
    remaining: int

    def to_dict(self) -> dict[str, Any]:
        return {"current": self.current, "limit": self.limit, "remaining": self.remaining}


@dataclass
class IngestResult:
    request_id: str
    processed_at: str
    accepted: int
    rejected: int
    duplicates: int = 0
    errors: list[IngestError] = field(default_factory=list)
    summary: dict[str, UsageSummary] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "requestId": self.request_id,
            "processedAt": self.processed_at,
            "accepted": self.accepted,
            "rejected": self.rejected,
        }
        if self.errors:
            payload["errors"] = [error.to_dict() for error in self.errors]
        if self.summary is not None:
            payload["summary"] = {key: value.to_dict() for key, value in self.summary.items()}
        return payload


def is_store_unavailable(exc: BaseException) -> bool:
    # Connectivity failures are retryable as a whole batch; data errors are per-event.
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (OSError, TimeoutError))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class IngestionService:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        idempotency: IdempotencyStore | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._idempotency = idempotency
        # Allow time injection for deterministic timestamp-window tests.
        self._time_provider = time_provider or _utc_now

    @property
    def idempotency(self) -> IdempotencyStore:
        if self._idempotency is None:
            self._idempotency = get_idempotency_store()
        return self._idempotency

    def validate_timestamp(self, timestamp: datetime | None, now: datetime) -> str | None:
        # Missing timestamps mean "now" and are always valid.
        if timestamp is None:
            return None
        settings = get_settings()
        ts = to_utc(timestamp)
        if ts > now + timedelta(hours=settings.usage_max_future_hours):
            return f"Timestamp too far in future (max {settings.usage_max_future_hours} hour)"
        if ts < now - timedelta(days=settings.usage_max_past_days):
            return f"Timestamp too far in past (max {settings.usage_max_past_days} days)"
        return None

    async def ingest(
        self,
        events: list[UsageEvent],
        ctx: IngestionContext,
        *,
        include_summary: bool = False,
        request_id: str | None = None,
    ) -> IngestResult:
        """Apply a batch of usage events in input order.

        Duplicates (by idempotency key) are skipped and counted in neither
        ``accepted`` nor ``rejected``. Out-of-window timestamps and unexpected
        per-event write failures become entries in ``errors`` and the batch
        continues. A usage store outage releases the current event's claim and
        raises ``UsageStoreUnavailableError`` so the whole batch can be retried;
        events applied before the outage keep their claims and are skipped on
        retry.
        """
        request_id = request_id or str(uuid4())
        now = to_utc(self._time_provider())
        errors: list[IngestError] = []
        processed: dict[str, int] = {}
        duplicates = 0

        async with self._session_factory() as session:
            for index, event in enumerate(events):
                if event.idempotency_key:
                    if await self.idempotency.check_and_set(ctx.environment_id, event.idempotency_key):
                        logger.debug(
                            "usage_event_duplicate_skipped request_id=%s index=%s",
                            request_id,
                            index,
                        )
                        duplicates += 1
                        continue

                reason = self.validate_timestamp(event.timestamp, now)
                if reason is not None:
                    errors.append(IngestError(index=index, metric=event.metric, reason=reason))
                    continue

                try:
                    async with session.begin():
                        processed[event.metric] = await usage_repo.increment_usage(
                            session,
                            environment_id=ctx.environment_id,
                            org_id=ctx.org_id,
                            metric_key=event.metric,
                            delta=event.delta,
                            timestamp=event.timestamp or now,
                            now=now,
                        )
                except asyncio.CancelledError:
                    # Cancelled before the write committed; free the claim for the retry.
                    if event.idempotency_key:
                        await self.idempotency.release(ctx.environment_id, event.idempotency_key)
                    raise
                except Exception as exc:
                    if is_store_unavailable(exc):
                        if event.idempotency_key:
                            await self.idempotency.release(ctx.environment_id, event.idempotency_key)
                        increment_counter("usage_ingest_store_unavailable_total")
                        logger.error(
                            "usage_store_unavailable request_id=%s index=%s",
                            request_id,
                            index,
                        )
                        raise UsageStoreUnavailableError("usage store unavailable") from exc
                    logger.exception(
                        "usage_event_processing_failed request_id=%s index=%s metric=%s",
                        request_id,
                        index,
                        event.metric,
                    )
                    errors.append(
                        IngestError(index=index, metric=event.metric, reason=REASON_PROCESSING_FAILED)
                    )

            summary = None
            if include_summary and processed:
                summary = await self._build_summary(session, ctx, list(processed), now)

        accepted = len(events) - len(errors) - duplicates
        increment_counter("usage_events_accepted_total", accepted)
        if errors:
            increment_counter("usage_events_rejected_total", len(errors))
        if duplicates:
            increment_counter("usage_events_duplicate_total", duplicates)
        logger.info(
            "usage_ingested request_id=%s environment_id=%s org_id=%s accepted=%s rejected=%s duplicates=%s",
            request_id,
            ctx.environment_id,
            ctx.org_id,
            accepted,
            len(errors),
            duplicates,
        )
        return IngestResult(
            request_id=request_id,
            processed_at=_iso(now),
            accepted=accepted,
            rejected=len(errors),
            duplicates=duplicates,
            errors=errors,
            summary=summary,
        )

    async def _build_summary(
        self,
        session: AsyncSession,
        ctx: IngestionContext,
        metric_keys: list[str],
        now: datetime,
    ) -> dict[str, UsageSummary]:
        # Backdated events can land in the previous period; report the current one.
        counters = await usage_repo.get_current_usage_multiple(
            session,
            environment_id=ctx.environment_id,
            org_id=ctx.org_id,
            metric_keys=metric_keys,
            now=now,
        )
        limits = await usage_repo.get_limits_multiple(
            session,
            environment_id=ctx.environment_id,
            metric_keys=metric_keys,
            plan_id=ctx.plan_id,
        )
        summary: dict[str, UsageSummary] = {}
        for metric in metric_keys:
            counter = counters.get(metric)
            current = int(counter.current_value) if counter is not None else 0
            limit = limits.get(metric)
            if limit is None or int(limit.limit_value) == UNLIMITED:
                summary[metric] = UsageSummary(current=current, limit=UNLIMITED, remaining=UNLIMITED)
            else:
                limit_value = int(limit.limit_value)
                summary[metric] = UsageSummary(
                    current=current,
                    limit=limit_value,
                    remaining=max(0, limit_value - current),
                )
        return summary


_ingestion_service: IngestionService | None = None


def get_ingestion_service() -> IngestionService:
    global _ingestion_service
    if _ingestion_service is None:
        _ingestion_service = IngestionService()
    return _ingestion_service


def reset_ingestion_service() -> None:
    global _ingestion_service
    _ingestion_service = None
