"""Connection state for sources without a full installation record.

One record per (tenant, source type) under connection:{tenant_id}:{source_type}. Absence means
disconnected. Every call refreshes last_activity; records idle longer than the inactivity horizon
are reclaimed by sweep().
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from connectors.base.utils.timestamp import utcnow
from src.database.kv_store import JsonObject, KeyValueStore
from src.integrations.models import ConnectionState, SourceType
from src.utils.logging import get_logger

logger = get_logger(__name__)

CONNECTION_PREFIX = "connection:"
DEFAULT_MAX_IDLE = timedelta(hours=24)


def connection_key(tenant_id: str, source_type: SourceType) -> str:
    return f"{CONNECTION_PREFIX}{tenant_id}:{source_type.value}"


class ConnectionStateStore:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = utcnow,
        max_idle: timedelta = DEFAULT_MAX_IDLE,
    ):
        self._store = store
        self._clock = clock
        self.max_idle = max_idle

    async def mark_connected(self, tenant_id: str, source_type: SourceType) -> ConnectionState:
        now = self._clock()
        raw = await self._store.upsert(
            connection_key(tenant_id, source_type),
            {
                "tenant_id": tenant_id,
                "source_type": source_type.value,
                "connected": True,
                "connected_at": now.isoformat(),
                "disconnected_at": None,
                "last_activity": now.isoformat(),
            },
        )
        logger.info("Source connected", tenant_id=tenant_id, source=source_type.value)
        return ConnectionState.model_validate(raw)

    async def mark_disconnected(self, tenant_id: str, source_type: SourceType) -> ConnectionState:
        now = self._clock()
        raw = await self._store.upsert(
            connection_key(tenant_id, source_type),
            {
                "tenant_id": tenant_id,
                "source_type": source_type.value,
                "connected": False,
                "disconnected_at": now.isoformat(),
                "last_activity": now.isoformat(),
            },
        )
        logger.info("Source disconnected", tenant_id=tenant_id, source=source_type.value)
        return ConnectionState.model_validate(raw)

    async def details(self, tenant_id: str, source_type: SourceType) -> ConnectionState | None:
        """Return the record, refreshing its last_activity. Never creates one."""
        now = self._clock()

        def _touch(current: JsonObject | None) -> JsonObject | None:
            if current is None:
                return None
            return {**current, "last_activity": now.isoformat()}

        raw = await self._store.update(connection_key(tenant_id, source_type), _touch)
        return ConnectionState.model_validate(raw) if raw else None

    async def is_connected(self, tenant_id: str, source_type: SourceType) -> bool:
        state = await self.details(tenant_id, source_type)
        return bool(state and state.connected)

    async def list_for_tenant(self, tenant_id: str) -> list[ConnectionState]:
        return [
            ConnectionState.model_validate(value)
            for _, value in await self._store.scan_prefix(f"{CONNECTION_PREFIX}{tenant_id}:")
        ]

    async def sweep(self, now: datetime | None = None) -> int:
        """Delete records whose last_activity is older than max_idle.

        Works on a snapshot of the records and deletes each one only if it is unchanged since the
        snapshot, so a record touched while the sweep runs survives and callers are never blocked.
        """
        cutoff = (now or self._clock()) - self.max_idle
        removed = 0
        for key, value in await self._store.scan_prefix(CONNECTION_PREFIX):
            state = ConnectionState.model_validate(value)
            if state.last_activity >= cutoff:
                continue
            if await self._store.compare_and_delete(key, value):
                removed += 1
            else:
                logger.debug(f"Connection record {key} changed during sweep, keeping it")
        if removed:
            logger.info(f"Swept {removed} idle connection state record(s)")
        return removed
