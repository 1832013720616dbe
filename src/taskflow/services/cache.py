"""Cache store with Redis (production) or in-process memory backend.

The cache only ever holds derived copies of authoritative store state.
It is an optimization and never a dependency for correctness: when the
backend is unreachable every operation degrades to a miss or a no-op
and callers fall back to the repository.

Backends raise CacheUnavailableError on infrastructure failure;
CacheService absorbs it, logs a warning and returns the degraded value.

Usage:
    backend = create_cache_backend(settings.redis)
    cache = CacheService(backend, settings.cache)
    await cache.startup()

    stats = await cache.get_or_compute(
        project_stats_key(project_id),
        ttl=1800,
        compute=lambda: load_stats(project_id),
    )
"""

from __future__ import annotations

import fnmatch
import inspect
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from taskflow.core.config import CacheSettings
from taskflow.services.cache_keys import (
    api_response_key,
    project_key,
    rate_limit_key,
    session_key,
    user_key,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from taskflow.core.config import RedisSettings

logger = logging.getLogger(__name__)


class CacheUnavailableError(Exception):
    """Raised by a backend when the underlying store cannot be reached."""

    pass


# =============================================================================
# Backends
# =============================================================================


class CacheBackend(ABC):
    """Raw key/value operations on serialized string values."""

    async def startup(self) -> None:  # noqa: B027 - optional hook
        """Open connections. Backends without connections do nothing."""

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release connections."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (``*`` wildcard)."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool: ...

    @abstractmethod
    async def increment(self, key: str, by: int, ttl: int | None) -> int:
        """Atomically add ``by``; ``ttl`` is applied when the key is created."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds, -1 without expiry, -2 if missing."""


class RedisCacheBackend(CacheBackend):
    """Backend on redis-py's asyncio client."""

    def __init__(self, settings: RedisSettings) -> None:
        self.settings = settings
        self.client: redis.Redis | None = None

    async def startup(self) -> None:
        self.client = redis.from_url(
            self.settings.url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=self.settings.socket_timeout,
            socket_connect_timeout=self.settings.socket_timeout,
            retry_on_timeout=True,
        )
        try:
            await self.client.ping()
            logger.info("Redis cache connected: url=%s", self.settings.url)
        except (RedisError, OSError) as e:
            # Stay usable: every call degrades until Redis comes back
            logger.warning("Redis not reachable at startup: %s", e)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None
            logger.info("Redis cache disconnected")

    def _client(self) -> redis.Redis:
        if self.client is None:
            msg = "Redis client not started"
            raise CacheUnavailableError(msg)
        return self.client

    def _key(self, key: str) -> str:
        return f"{self.settings.key_prefix}{key}"

    async def get(self, key: str) -> str | None:
        try:
            return await self._client().get(self._key(key))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(str(e)) from e

    async def set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._client().set(self._key(key), value, ex=ttl)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(str(e)) from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._client().delete(*(self._key(k) for k in keys))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(str(e)) from e

    async def delete_pattern(self, pattern: str) -> int:
        client = self._client()
        deleted = 0
        try:
            batch: list[str] = []
            async for key in client.scan_iter(match=self._key(pattern), count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(str(e)) from e
        return deleted

    async def exists(self, key: str) -> bool:
        try:
            return await self._client().exists(self._key(key)) > 0
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(str(e)) from e

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        try:
            # SET NX EX is a single atomic command
            acquired = await self._client().set(self._key(key), value, nx=True, ex=ttl)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(str(e)) from e
        return bool(acquired)

    async def increment(self, key: str, by: int, ttl: int | None) -> int:
        client = self._client()
        full_key = self._key(key)
        try:
            count = await client.incrby(full_key, by)
            if ttl is not None and count == by:
                await client.expire(full_key, ttl)
            return int(count)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(str(e)) from e

    async def ttl(self, key: str) -> int:
        try:
            return int(await self._client().ttl(self._key(key)))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(str(e)) from e


class MemoryCacheBackend(CacheBackend):
    """In-process backend for development, single-process deployments and tests.

    Entries expire lazily on access. A threading lock keeps every
    operation atomic when request threads and the worker share a process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, *keys: str) -> int:
        with self._lock:
            deleted = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._entries[key]
                    deleted += 1
            return deleted

    async def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in matched:
                del self._entries[key]
            return len(matched)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, self._clock() + ttl)
            return True

    async def increment(self, key: str, by: int, ttl: int | None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                expires_at = self._clock() + ttl if ttl is not None else None
                count = by
            else:
                try:
                    count = int(entry[0]) + by
                except ValueError as e:
                    msg = f"Value at {key} is not an integer"
                    raise CacheUnavailableError(msg) from e
                expires_at = entry[1]
            self._entries[key] = (str(count), expires_at)
            return count

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, int(entry[1] - self._clock()))


def create_cache_backend(settings: RedisSettings) -> CacheBackend:
    """Pick the backend configured by the Redis settings."""
    if settings.enabled:
        return RedisCacheBackend(settings)
    logger.info("Redis disabled, using in-process memory cache")
    return MemoryCacheBackend()


# =============================================================================
# Service
# =============================================================================


@dataclass(frozen=True)
class RateLimitStatus:
    """Outcome of a fixed-window rate limit check."""

    count: int
    limit: int
    remaining: int
    reset_seconds: int

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit


class CacheService:
    """JSON cache over a backend, degrading to misses on backend failure.

    Attributes:
        backend: The raw key/value backend.
        settings: TTLs for entity, list and session caches.
    """

    def __init__(self, backend: CacheBackend, settings: CacheSettings | None = None) -> None:
        self.backend = backend
        self.settings = settings or CacheSettings()

    async def startup(self) -> None:
        await self.backend.startup()

    async def close(self) -> None:
        await self.backend.close()

    # -------------------------------------------------------------------------
    # Core contract
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Return the cached value or None on miss or backend failure."""
        try:
            raw = await self.backend.get(key)
        except CacheUnavailableError as e:
            logger.warning("Cache get degraded to miss: key=%s, error=%s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable cache entry: key=%s", key)
            await self.delete(key)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store a JSON-serializable value. Returns False if not stored."""
        if value is None:
            return False
        try:
            await self.backend.set(key, _dumps(value), ttl or self.settings.entity_ttl)
            return True
        except CacheUnavailableError as e:
            logger.warning("Cache set skipped: key=%s, error=%s", key, e)
            return False

    async def delete(self, *keys: str) -> bool:
        """Delete keys. Returns False if the backend could not be reached."""
        try:
            await self.backend.delete(*keys)
            return True
        except CacheUnavailableError as e:
            logger.warning("Cache delete failed: keys=%s, error=%s", keys, e)
            return False

    async def delete_pattern(self, pattern: str) -> bool:
        try:
            await self.backend.delete_pattern(pattern)
            return True
        except CacheUnavailableError as e:
            logger.warning("Cache pattern delete failed: pattern=%s, error=%s", pattern, e)
            return False

    async def exists(self, key: str) -> bool:
        try:
            return await self.backend.exists(key)
        except CacheUnavailableError as e:
            logger.warning("Cache exists degraded to miss: key=%s, error=%s", key, e)
            return False

    async def set_if_absent(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Atomically create ``key`` if missing. False when present or unreachable."""
        try:
            return await self.backend.set_if_absent(
                key, _dumps(value), ttl or self.settings.entity_ttl
            )
        except CacheUnavailableError as e:
            logger.warning("Cache set_if_absent failed: key=%s, error=%s", key, e)
            return False

    async def increment(self, key: str, by: int = 1, ttl: int | None = None) -> int | None:
        """Atomically add ``by`` to a counter. None when unreachable."""
        try:
            return await self.backend.increment(key, by, ttl)
        except CacheUnavailableError as e:
            logger.warning("Cache increment failed: key=%s, error=%s", key, e)
            return None

    async def get_or_compute(
        self,
        key: str,
        ttl: int | None,
        compute: Callable[[], Any | Awaitable[Any]],
    ) -> Any:
        """Return the cached value, or compute, store and return it.

        ``compute`` may be a plain or async callable. Empty results (None)
        are returned but not stored. Cache failures never hide the
        computed value; errors raised by ``compute`` propagate.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = compute()
        if inspect.isawaitable(value):
            value = await value

        if value is not None:
            await self.set(key, value, ttl)
        return value

    # -------------------------------------------------------------------------
    # Sessions (separate lifetime from entity caches)
    # -------------------------------------------------------------------------

    async def set_user_session(self, user_id: object, session_data: dict[str, Any]) -> bool:
        return await self.set(session_key(user_id), session_data, self.settings.session_ttl)

    async def get_user_session(self, user_id: object) -> dict[str, Any] | None:
        return await self.get(session_key(user_id))

    async def delete_user_session(self, user_id: object) -> bool:
        return await self.delete(session_key(user_id))

    # -------------------------------------------------------------------------
    # Entity and API response caches
    # -------------------------------------------------------------------------

    async def set_project_cache(self, project_id: object, data: dict[str, Any]) -> bool:
        return await self.set(project_key(project_id), data, self.settings.entity_ttl)

    async def get_project_cache(self, project_id: object) -> dict[str, Any] | None:
        return await self.get(project_key(project_id))

    async def set_user_cache(self, user_id: object, data: dict[str, Any]) -> bool:
        return await self.set(user_key(user_id), data, self.settings.entity_ttl)

    async def get_user_cache(self, user_id: object) -> dict[str, Any] | None:
        return await self.get(user_key(user_id))

    async def set_api_response(
        self, endpoint: str, params: dict[str, Any] | None, response: Any
    ) -> bool:
        return await self.set(api_response_key(endpoint, params), response, self.settings.list_ttl)

    async def get_api_response(self, endpoint: str, params: dict[str, Any] | None) -> Any | None:
        return await self.get(api_response_key(endpoint, params))

    # -------------------------------------------------------------------------
    # Rate limiting
    # -------------------------------------------------------------------------

    async def check_rate_limit(
        self, scope: str, identifier: object, limit: int, window: int
    ) -> RateLimitStatus:
        """Count a hit in a fixed window of ``window`` seconds.

        When the cache is unreachable the request is allowed, since the
        limiter is advisory.
        """
        key = rate_limit_key(scope, identifier)
        count = await self.increment(key, 1, ttl=window)
        if count is None:
            return RateLimitStatus(count=0, limit=limit, remaining=limit, reset_seconds=0)

        try:
            reset = await self.backend.ttl(key)
        except CacheUnavailableError:
            reset = window
        return RateLimitStatus(
            count=count,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=max(0, reset),
        )


def _dumps(value: Any) -> str:
    # UUIDs and datetimes appear in cached entity dicts
    return json.dumps(value, default=str)
