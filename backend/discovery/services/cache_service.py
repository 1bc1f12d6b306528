"""Cache layer shared by the search engine and the geocode provider chain.

Values are opaque strings (callers serialize). Keys are produced only by
:func:`compute_key` so two semantically identical queries always collide.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from decimal import Decimal
from enum import Enum
from fnmatch import fnmatchcase
from threading import Lock
from typing import Any, Callable, Mapping, Protocol, TypeVar

import pydantic
import redis
from cachetools import TLRUCache

from ..config import Settings, settings
from ..errors import DiscoveryError
from ..telemetry import get_current_trace, timed_stage

logger = logging.getLogger(__name__)

SEARCH_NAMESPACE = "search:products"
NEARBY_NAMESPACE = "geolocation:nearby"
BOUNDS_NAMESPACE = "geolocation:bounds"
GEOCODE_FORWARD_NAMESPACE = "geocode:forward"
GEOCODE_REVERSE_NAMESPACE = "geocode:reverse"

SEARCH_PATTERN = "search:*"
GEOLOCATION_PATTERN = "geolocation:*"

_CACHE_FAILURES: tuple[type[BaseException], ...] = (redis.exceptions.RedisError, OSError)

M = TypeVar("M", bound=pydantic.BaseModel)


class CacheUnavailable(DiscoveryError):
    code = "CACHE_UNAVAILABLE"


class CacheBackend(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete_pattern(self, pattern: str) -> int: ...

    def close(self) -> None: ...


def _canonical_value(value: Any, precision: int) -> Any:
    if isinstance(value, Enum):
        return _canonical_value(value.value, precision)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            return str(number)
        # + 0.0 folds -0.0 into 0.0
        return f"{round(number, precision) + 0.0:.{precision}f}"
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return {
            str(key): _canonical_value(item, precision)
            for key, item in value.items()
            if item is not None
        }
    if isinstance(value, (list, tuple)):
        return [_canonical_value(item, precision) for item in value]
    return str(value)


def canonical_params(params: Mapping[str, Any], precision: int | None = None) -> str:
    digits = settings.cache_key_precision if precision is None else precision
    canonical = _canonical_value(params, digits)
    return json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_key(namespace: str, params: Mapping[str, Any], precision: int | None = None) -> str:
    """Deterministic cache key: parameters sorted by name, None dropped, numbers fixed-precision."""
    digest = hashlib.sha256(canonical_params(params, precision).encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class MemoryCacheBackend:
    """In-process backend with per-entry TTL and glob invalidation."""

    def __init__(self, maxsize: int = 10_000, timer: Callable[[], float] = time.monotonic) -> None:
        self._data: TLRUCache = TLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, entry, now: now + entry[1],
            timer=timer,
        )
        self._lock = Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._data.get(key)
        if entry is None:
            return None
        return entry[0]

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, ttl_seconds)

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            self._data.expire()
            doomed = [key for key in list(self._data.keys()) if fnmatchcase(key, pattern)]
            for key in doomed:
                self._data.pop(key, None)
        return len(doomed)

    def close(self) -> None:
        with self._lock:
            self._data.clear()


class RedisCacheBackend:
    def __init__(self, client: redis.Redis, scan_count: int = 500) -> None:
        self._client = client
        self._scan_count = scan_count

    @classmethod
    def from_url(cls, url: str, socket_timeout: float) -> "RedisCacheBackend":
        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        return cls(client)

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._client.set(key, value, ex=ttl_seconds)

    def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        for key in self._client.scan_iter(match=pattern, count=self._scan_count):
            batch.append(key)
            if len(batch) >= self._scan_count:
                deleted += self._client.delete(*batch)
                batch = []
        if batch:
            deleted += self._client.delete(*batch)
        return deleted

    def close(self) -> None:
        self._client.close()


class Cache:
    """Cache-aside facade.

    Reads and writes degrade to a miss / no-op when the backend fails.
    Invalidation does not: a failed invalidation raises ``CacheUnavailable`` so
    the write that triggered it is not acknowledged over stale entries.
    """

    def __init__(self, backend: CacheBackend, precision: int | None = None) -> None:
        self.backend = backend
        self.precision = settings.cache_key_precision if precision is None else precision

    def compute_key(self, namespace: str, params: Mapping[str, Any]) -> str:
        return compute_key(namespace, params, self.precision)

    @staticmethod
    def _degraded(operation: str, key: str, exc: BaseException) -> None:
        trace = get_current_trace()
        if trace is not None:
            trace.mark_cache_degraded()
        logger.warning("Cache %s degraded for key=%s: %s", operation, key, exc)

    def get(self, key: str) -> str | None:
        with timed_stage("cache"):
            try:
                return self.backend.get(key)
            except _CACHE_FAILURES as exc:
                self._degraded("get", key, exc)
                return None

    def get_model(self, key: str, model: type[M]) -> M | None:
        """``get`` parsed into ``model``; an unreadable payload counts as a miss."""
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except pydantic.ValidationError as exc:
            logger.warning("Ignoring unreadable cache entry key=%s (%s errors)", key, exc.error_count())
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        with timed_stage("cache"):
            try:
                self.backend.set(key, value, ttl_seconds)
                return True
            except _CACHE_FAILURES as exc:
                self._degraded("set", key, exc)
                return False

    def invalidate(self, pattern: str) -> int:
        with timed_stage("cache"):
            try:
                deleted = self.backend.delete_pattern(pattern)
            except _CACHE_FAILURES as exc:
                logger.error("Cache invalidation failed for pattern=%s: %s", pattern, exc)
                raise CacheUnavailable(
                    "Cache invalidation failed",
                    details={"pattern": pattern},
                ) from exc
        logger.debug("Invalidated %s cache entries matching %s", deleted, pattern)
        return deleted

    def close(self) -> None:
        try:
            self.backend.close()
        except _CACHE_FAILURES as exc:
            logger.warning("Cache close failed: %s", exc)


def build_cache(config: Settings | None = None) -> Cache:
    config = config or settings
    if config.cache_backend == "memory":
        backend: CacheBackend = MemoryCacheBackend()
    else:
        backend = RedisCacheBackend.from_url(config.redis_url, config.cache_socket_timeout_seconds)
    return Cache(backend, precision=config.cache_key_precision)
