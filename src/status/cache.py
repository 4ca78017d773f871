"""Short-TTL cache of per-source connection status.

Entries live under status_cache:{tenant_id}:{source_type} and carry their own expires_at, which
is checked on every read: an entry is a hit strictly before expires_at and a miss from then on.
Successful probes are cached for the success TTL, failed or timed-out probes for the shorter
failure TTL so they are re-checked sooner.

The cache is an optimization only. Read failures count as misses and write failures are logged.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from connectors.base.utils.timestamp import utcnow
from src.database.kv_store import KeyValueStore
from src.integrations.exceptions import StoreUnavailable
from src.integrations.models import SourceStatus, SourceType, StatusCacheEntry
from src.utils.config import get_status_cache_failure_ttl, get_status_cache_ttl
from src.utils.logging import get_logger

logger = get_logger(__name__)

STATUS_CACHE_PREFIX = "status_cache:"
# Extra lifetime given to the backing record so the store reclaims it after it is stale
STORE_TTL_GRACE_SECONDS = 60


def status_cache_key(tenant_id: str, source_type: SourceType) -> str:
    return f"{STATUS_CACHE_PREFIX}{tenant_id}:{source_type.value}"


class StatusCache:
    def __init__(
        self,
        store: KeyValueStore,
        success_ttl: float | None = None,
        failure_ttl: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self.success_ttl = success_ttl if success_ttl is not None else get_status_cache_ttl()
        self.failure_ttl = failure_ttl if failure_ttl is not None else get_status_cache_failure_ttl()
        if self.failure_ttl > self.success_ttl:
            raise ValueError("Failure TTL must not exceed success TTL")
        self._clock = clock

    async def get(self, tenant_id: str, source_type: SourceType) -> SourceStatus | None:
        try:
            raw = await self._store.get(status_cache_key(tenant_id, source_type))
        except StoreUnavailable as e:
            logger.warning(f"Status cache read failed, treating as miss: {e}", tenant_id=tenant_id)
            return None
        if raw is None:
            return None

        entry = StatusCacheEntry.model_validate(raw)
        if self._clock() >= entry.expires_at:
            return None
        return entry.payload.model_copy(update={"from_cache": True})

    async def put(
        self, tenant_id: str, source_type: SourceType, status: SourceStatus, is_failure: bool
    ) -> StatusCacheEntry | None:
        ttl = self.failure_ttl if is_failure else self.success_ttl
        entry = StatusCacheEntry(
            payload=status.model_copy(update={"from_cache": False}),
            expires_at=self._clock() + timedelta(seconds=ttl),
            is_failure=is_failure,
        )
        try:
            await self._store.put(
                status_cache_key(tenant_id, source_type),
                entry.model_dump(mode="json"),
                ttl_seconds=ttl + STORE_TTL_GRACE_SECONDS,
            )
        except StoreUnavailable as e:
            logger.warning(f"Status cache write failed: {e}", tenant_id=tenant_id)
            return None
        return entry

    async def invalidate(
        self, tenant_id: str, source_type: SourceType | None = None
    ) -> list[SourceType]:
        """Delete one cached source, or every cached source of the tenant.

        Unlike reads, invalidation failures propagate: a caller that just disconnected must not
        believe stale "connected" entries are gone when they are not.
        """
        if source_type is not None:
            await self._store.delete(status_cache_key(tenant_id, source_type))
            return [source_type]

        removed: list[SourceType] = []
        prefix = f"{STATUS_CACHE_PREFIX}{tenant_id}:"
        for key, _ in await self._store.scan_prefix(prefix):
            if await self._store.delete(key):
                try:
                    removed.append(SourceType(key[len(prefix) :]))
                except ValueError:
                    logger.warning(f"Removed status cache entry with unknown source: {key}")
        return removed

    async def purge_stale(self) -> int:
        """Delete every entry past its expires_at (for backends without native expiry)."""
        now = self._clock()
        removed = 0
        for key, value in await self._store.scan_prefix(STATUS_CACHE_PREFIX):
            entry = StatusCacheEntry.model_validate(value)
            if now >= entry.expires_at and await self._store.compare_and_delete(key, value):
                removed += 1
        return removed

    async def stats(self, tenant_id: str | None = None) -> dict[str, int]:
        prefix = f"{STATUS_CACHE_PREFIX}{tenant_id}:" if tenant_id else STATUS_CACHE_PREFIX
        now = self._clock()
        entries = [
            StatusCacheEntry.model_validate(value)
            for _, value in await self._store.scan_prefix(prefix)
        ]
        live = sum(1 for e in entries if now < e.expires_at)
        return {"total": len(entries), "live": live, "stale": len(entries) - live}
