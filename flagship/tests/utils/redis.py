from __future__ import annotations

import asyncio
from typing import Any


class StubRedis:
    # In-memory stand-in for the handful of Redis commands the services issue.
    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.lists: dict[str, list[Any]] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key: str, value: Any, *, nx: bool = False, ex: int | None = None) -> bool | None:
        # Check and write without yielding, matching Redis' single-command atomicity.
        if nx and key in self.values:
            await asyncio.sleep(0)
            return None
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        await asyncio.sleep(0)
        return True

    async def get(self, key: str) -> Any:
        return self.values.get(key)

    async def exists(self, key: str) -> int:
        return 1 if key in self.values else 0

    async def delete(self, key: str) -> int:
        self.ttls.pop(key, None)
        return 1 if self.values.pop(key, None) is not None else 0

    async def lpush(self, key: str, value: Any) -> int:
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        self.lists[key] = self.lists.get(key, [])[start : end + 1]
        return True

    async def lrange(self, key: str, start: int, end: int) -> list[Any]:
        return self.lists.get(key, [])[start : end + 1]

    async def zcard(self, key: str) -> int:
        return len(self.lists.get(key, []))


class RecordingRedis(StubRedis):
    # Logs every command so tests can assert on the exact calls issued.
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def set(self, key: str, value: Any, **kwargs: Any) -> bool | None:
        self.calls.append(("set", (key,), kwargs))
        return await super().set(key, value, **kwargs)

    async def get(self, key: str) -> Any:
        self.calls.append(("get", (key,), {}))
        return await super().get(key)

    async def exists(self, key: str) -> int:
        self.calls.append(("exists", (key,), {}))
        return await super().exists(key)

    async def delete(self, key: str) -> int:
        self.calls.append(("delete", (key,), {}))
        return await super().delete(key)


class FailingRedis:
    # Every command raises, as a dropped connection would.
    async def set(self, *_args: Any, **_kwargs: Any) -> None:
        raise ConnectionError("redis down")

    async def exists(self, *_args: Any, **_kwargs: Any) -> None:
        raise ConnectionError("redis down")

    async def delete(self, *_args: Any, **_kwargs: Any) -> None:
        raise ConnectionError("redis down")


class StubArqPool(StubRedis):
    # Records enqueued jobs the way arq's ArqRedis.enqueue_job is called.
    def __init__(self) -> None:
        super().__init__()
        self.jobs: list[dict[str, Any]] = []

    async def enqueue_job(self, function: str, *args: Any, _job_id: str | None = None, **kwargs: Any):
        if any(job["job_id"] == _job_id for job in self.jobs):
            return None
        self.jobs.append({"function": function, "args": args, "job_id": _job_id, **kwargs})

        class _Job:
            job_id = _job_id

        return _Job()
