import asyncio

import pytest

from assistant.limits.concurrency import (
    ConcurrencyBackendError,
    ConcurrencyLimiter,
    RedisConcurrencyLimiter,
    SlotUnavailableError,
)


def test_fourth_acquire_fails_until_a_release() -> None:
    limiter = ConcurrencyLimiter(max_concurrent=3)
    for actor in ("user-1", "user-2"):
        assert [limiter.acquire(actor) for _ in range(3)] == [True, True, True]
        assert limiter.acquire(actor) is False
        limiter.release(actor)
        assert limiter.acquire(actor) is True
        assert limiter.active(actor) == 3


def test_release_without_acquire_does_not_go_negative() -> None:
    limiter = ConcurrencyLimiter()
    limiter.release("user-1")
    assert limiter.active("user-1") == 0
    assert limiter.acquire("user-1") is True


def test_slot_context_releases_on_error() -> None:
    limiter = ConcurrencyLimiter(max_concurrent=1)

    async def run() -> None:
        with pytest.raises(RuntimeError):
            async with limiter.slot("user-1"):
                assert limiter.active("user-1") == 1
                raise RuntimeError("boom")

    asyncio.run(run())
    assert limiter.active("user-1") == 0


def test_slot_context_raises_when_full() -> None:
    limiter = ConcurrencyLimiter(max_concurrent=1)
    assert limiter.acquire("user-1") is True

    async def run() -> None:
        async with limiter.slot("user-1"):
            pass

    with pytest.raises(SlotUnavailableError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.limit == 1
    assert limiter.active("user-1") == 1


class _FakePipeline:
    def __init__(self, client: "_FakeRedis") -> None:
        self._client = client
        self._ops: list[tuple[str, tuple[object, ...]]] = []

    def incr(self, key: str) -> "_FakePipeline":
        self._ops.append(("incr", (key,)))
        return self

    def expire(self, key: str, ttl_seconds: int) -> "_FakePipeline":
        self._ops.append(("expire", (key, ttl_seconds)))
        return self

    def execute(self) -> list[object]:
        return [getattr(self._client, op)(*args) for op, args in self._ops]


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    def pipeline(self) -> _FakePipeline:
        return _FakePipeline(self)

    def incr(self, key: str) -> int:
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def decr(self, key: str) -> int:
        self.values[key] = self.values.get(key, 0) - 1
        return self.values[key]

    def expire(self, key: str, ttl_seconds: int) -> bool:
        self.ttls[key] = ttl_seconds
        return True

    def delete(self, key: str) -> int:
        return 1 if self.values.pop(key, None) is not None else 0

    def get(self, key: str) -> str | None:
        value = self.values.get(key)
        return None if value is None else str(value)


def test_redis_limiter_enforces_shared_cap() -> None:
    fake = _FakeRedis()
    first = RedisConcurrencyLimiter("redis://unused", max_concurrent=2, client=fake)
    second = RedisConcurrencyLimiter("redis://unused", max_concurrent=2, client=fake)

    assert first.acquire("user-1") is True
    assert second.acquire("user-1") is True
    assert first.acquire("user-1") is False
    assert second.active("user-1") == 2
    assert fake.ttls["aia:slots:user-1"] == 300

    first.release("user-1")
    first.release("user-1")
    assert "aia:slots:user-1" not in fake.values
    assert second.active("user-1") == 0


def test_redis_limiter_wraps_backend_failures() -> None:
    class _Broken(_FakeRedis):
        def pipeline(self) -> _FakePipeline:
            raise ConnectionError("down")

    limiter = RedisConcurrencyLimiter("redis://unused", client=_Broken())
    with pytest.raises(ConcurrencyBackendError):
        limiter.acquire("user-1")
