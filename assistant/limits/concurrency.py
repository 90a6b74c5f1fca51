"""Per-actor in-flight request slots.

``ConcurrencyLimiter`` keeps its counters in process memory and is only
correct for a single worker.  ``RedisConcurrencyLimiter`` shares the same
interface over a Redis counter so several replicas enforce one cap.

Callers must pair every successful ``acquire`` with a ``release``; the
``slot`` context manager does this on every exit path, including
cancellation.
"""

import logging
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol

try:  # pragma: no cover - optional dependency at runtime
    import redis  # type: ignore[import-not-found,import-untyped]
except Exception:  # pragma: no cover - optional dependency at runtime
    redis = None

logger = logging.getLogger("aia.limits")


class ConcurrencyBackendError(Exception):
    """Raised when the slot backend is unavailable or misconfigured."""


class SlotUnavailableError(Exception):
    def __init__(self, actor_id: str, active: int, limit: int):
        super().__init__(f"Concurrency limit reached for {actor_id}: {active}/{limit}")
        self.actor_id = actor_id
        self.active = active
        self.limit = limit


class SlotLimiter(Protocol):
    @property
    def max_concurrent(self) -> int: ...

    def acquire(self, actor_id: str) -> bool:
        """Take a slot; return False when the actor is already at the cap."""

    def release(self, actor_id: str) -> None:
        """Return a slot taken by ``acquire``."""

    def active(self, actor_id: str) -> int: ...


class _SlotMixin:
    max_concurrent: int

    def acquire(self, actor_id: str) -> bool:  # pragma: no cover - overridden
        raise NotImplementedError

    def release(self, actor_id: str) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    def active(self, actor_id: str) -> int:  # pragma: no cover - overridden
        raise NotImplementedError

    @asynccontextmanager
    async def slot(self, actor_id: str) -> AsyncIterator[None]:
        if not self.acquire(actor_id):
            raise SlotUnavailableError(actor_id, self.active(actor_id), self.max_concurrent)
        try:
            yield
        finally:
            self.release(actor_id)


class ConcurrencyLimiter(_SlotMixin):
    def __init__(self, max_concurrent: int = 3) -> None:
        self.max_concurrent = max_concurrent
        self._active: dict[str, int] = {}
        self._lock = threading.Lock()

    def acquire(self, actor_id: str) -> bool:
        with self._lock:
            current = self._active.get(actor_id, 0)
            if current >= self.max_concurrent:
                return False
            self._active[actor_id] = current + 1
            return True

    def release(self, actor_id: str) -> None:
        with self._lock:
            current = self._active.get(actor_id, 0)
            if current <= 1:
                self._active.pop(actor_id, None)
            else:
                self._active[actor_id] = current - 1

    def active(self, actor_id: str) -> int:
        with self._lock:
            return self._active.get(actor_id, 0)

    def reset(self) -> None:
        with self._lock:
            self._active.clear()


class RedisConcurrencyLimiter(_SlotMixin):
    """Shared slot counter; keys expire so a crashed worker cannot leak slots forever."""

    def __init__(
        self,
        redis_url: str,
        max_concurrent: int = 3,
        key_prefix: str = "aia:slots",
        ttl_seconds: int = 300,
        client: Any | None = None,
    ) -> None:
        self.max_concurrent = max_concurrent
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds
        if client is not None:
            self._client = client
            return
        if redis is None:  # pragma: no cover - runtime dependency gate
            raise ConcurrencyBackendError(
                "Redis concurrency backend selected but redis package is not installed"
            )
        try:
            self._client = redis.Redis.from_url(redis_url, decode_responses=True)
            self._client.ping()
        except Exception as exc:  # pragma: no cover - runtime guard
            raise ConcurrencyBackendError(
                f"Failed to initialize Redis concurrency backend: {exc}"
            ) from exc

    def _key(self, actor_id: str) -> str:
        return f"{self._key_prefix}:{actor_id}"

    def acquire(self, actor_id: str) -> bool:
        key = self._key(actor_id)
        try:
            pipe = self._client.pipeline()
            pipe.incr(key)
            pipe.expire(key, self._ttl_seconds)
            current, _ = pipe.execute()
            if int(current) > self.max_concurrent:
                self._client.decr(key)
                return False
        except Exception as exc:
            raise ConcurrencyBackendError(f"Redis slot acquire failed: {exc}") from exc
        return True

    def release(self, actor_id: str) -> None:
        key = self._key(actor_id)
        try:
            remaining = int(self._client.decr(key))
            if remaining <= 0:
                self._client.delete(key)
        except Exception:
            logger.exception("concurrency slot release failed", extra={"actor_id": actor_id})

    def active(self, actor_id: str) -> int:
        try:
            raw = self._client.get(self._key(actor_id))
        except Exception as exc:
            raise ConcurrencyBackendError(f"Redis read failed: {exc}") from exc
        return max(int(raw), 0) if raw is not None else 0
