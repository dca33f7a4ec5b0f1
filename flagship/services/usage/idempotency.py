from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from redis.asyncio import Redis

from flagship.core.config import get_settings
from flagship.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_idempotency_redis() -> Redis | None:
    # Reuse a shared Redis connection per event loop for idempotency markers.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("idempotency_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


class IdempotencyStore:
    """Exclusive, TTL-bound claims on ``(scope, key)`` pairs backed by Redis.

    A claim is a single ``SET key <claimed-at> NX EX ttl``: of any number of
    concurrent callers exactly one sees the write applied. The store fails
    open. When Redis is missing, disabled, or raising, every call reports
    "not a duplicate" so ingestion keeps flowing at the cost of possible
    double counting during the outage.
    """

    def __init__(self, *, redis: Any | None = None, ttl_seconds: int | None = None) -> None:
        settings = get_settings()
        self._redis = redis
        self._ttl_seconds = ttl_seconds or settings.idempotency_ttl_seconds
        self._prefix = settings.idempotency_key_prefix
        self._enabled = settings.idempotency_enabled

    def key_for(self, scope_id: str, key: str) -> str:
        return f"{self._prefix}:{scope_id}:{key}"

    async def _client(self) -> Any | None:
        if not self._enabled:
            return None
        if self._redis is not None:
            return self._redis
        return await get_idempotency_redis()

    async def check_and_set(self, scope_id: str, key: str) -> bool:
        # Returns True when the key was already claimed (duplicate).
        redis_key = self.key_for(scope_id, key)
        try:
            client = await self._client()
            if client is None:
                increment_counter("idempotency_fail_open_total")
                return False
            claimed_at = datetime.now(timezone.utc).isoformat()
            applied = await client.set(redis_key, claimed_at, nx=True, ex=self._ttl_seconds)
        except Exception:  # noqa: BLE001 - fail open on any store error
            logger.exception("idempotency_check_failed key=%s", redis_key)
            increment_counter("idempotency_fail_open_total")
            return False
        if applied:
            increment_counter("idempotency_claims_total")
            return False
        increment_counter("idempotency_duplicates_total")
        return True

    async def is_processed(self, scope_id: str, key: str) -> bool:
        # Read-only lookup; never claims the key.
        redis_key = self.key_for(scope_id, key)
        try:
            client = await self._client()
            if client is None:
                return False
            return bool(await client.exists(redis_key))
        except Exception:  # noqa: BLE001 - fail open on any store error
            logger.exception("idempotency_lookup_failed key=%s", redis_key)
            return False

    async def release(self, scope_id: str, key: str) -> None:
        # Drop a claim whose event was never applied so a retry can re-apply it.
        redis_key = self.key_for(scope_id, key)
        try:
            client = await self._client()
            if client is None:
                return
            await client.delete(redis_key)
            increment_counter("idempotency_released_total")
        except Exception:  # noqa: BLE001 - best effort; the claim expires with its TTL
            logger.exception("idempotency_release_failed key=%s", redis_key)


_idempotency_store: IdempotencyStore | None = None


def get_idempotency_store() -> IdempotencyStore:
    global _idempotency_store
    if _idempotency_store is None:
        _idempotency_store = IdempotencyStore()
    return _idempotency_store


def reset_idempotency_store() -> None:
    # Reset cached store and connection for deterministic tests.
    global _idempotency_store, _redis_pool, _redis_loop
    _idempotency_store = None
    _redis_pool = None
    _redis_loop = None
