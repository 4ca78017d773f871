"""TTL (Time-To-Live) cache decorator for caching provider metadata lookups."""

import asyncio
import functools
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000


class TTLCache:
    """Bounded in-process TTL cache.

    Entries older than `ttl` seconds are treated as absent. When `max_entries` is reached the
    oldest entry is evicted. `clock` is injectable for tests.
    """

    def __init__(
        self,
        ttl: float,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock
        self.cache: dict[tuple, tuple[float, Any]] = {}
        self.lock = asyncio.Lock()
        # Sync callers run in worker threads (asyncio.to_thread), so dict access is guarded here too
        self.sync_lock = threading.Lock()

    def get_nowait(self, key: tuple) -> tuple[bool, Any]:
        """Return (hit, value). Expired entries are dropped on read."""
        with self.sync_lock:
            entry = self.cache.get(key)
            if entry is None:
                return False, None
            stored_at, value = entry
            if self.clock() - stored_at < self.ttl:
                return True, value
            self.cache.pop(key, None)
            return False, None

    def set_nowait(self, key: tuple, value: Any) -> None:
        with self.sync_lock:
            if key not in self.cache and len(self.cache) >= self.max_entries:
                oldest = min(self.cache, key=lambda k: self.cache[k][0])
                self.cache.pop(oldest, None)
            self.cache[key] = (self.clock(), value)

    async def get(self, key: tuple) -> Any | None:
        async with self.lock:
            _, value = self.get_nowait(key)
            return value

    async def set(self, key: tuple, value: Any) -> None:
        async with self.lock:
            self.set_nowait(key, value)

    async def clear(self) -> None:
        async with self.lock:
            with self.sync_lock:
                self.cache.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries and return how many were removed."""
        async with self.lock:
            with self.sync_lock:
                now = self.clock()
                expired = [key for key, (ts, _) in self.cache.items() if now - ts >= self.ttl]
                for key in expired:
                    del self.cache[key]
                return len(expired)


def _owner_namespace(owner: Any) -> Any:
    # Instances may share cached results across objects (e.g. one per token) via cache_namespace
    return getattr(owner, "cache_namespace", None) or id(owner)


def ttl_cache(ttl: float, max_entries: int = DEFAULT_MAX_ENTRIES) -> Callable:
    """Decorator caching method results for `ttl` seconds.

    The cache key is (owner namespace, method name, args, kwargs). The owner namespace is the
    instance's `cache_namespace` attribute when set, else its id. None results are not cached.
    """
    cache = TTLCache(ttl=ttl, max_entries=max_entries)

    def decorator(func: Callable) -> Callable:
        def _key(owner: Any, args: tuple, kwargs: dict) -> tuple:
            return (_owner_namespace(owner), func.__name__, args, tuple(sorted(kwargs.items())))

        @functools.wraps(func)
        def sync_wrapper(self, *args, **kwargs):
            key = _key(self, args, kwargs)
            hit, value = cache.get_nowait(key)
            if hit:
                logger.debug(f"Cache hit for {func.__name__} with args {args}")
                return value

            result = func(self, *args, **kwargs)
            if result is not None:
                cache.set_nowait(key, result)
            return result

        @functools.wraps(func)
        async def async_wrapper(self, *args, **kwargs):
            key = _key(self, args, kwargs)
            cached_value = await cache.get(key)
            if cached_value is not None:
                logger.debug(f"Cache hit for {func.__name__} with args {args}")
                return cached_value

            result = await func(self, *args, **kwargs)
            if result is not None:
                await cache.set(key, result)
            return result

        wrapper = async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper
        wrapper.cache = cache  # type: ignore[attr-defined]
        return wrapper

    return decorator
