"""Per-tenant channel allow-lists and the synced channel catalog."""

from collections.abc import Callable, Iterable
from datetime import datetime

from connectors.base.utils.timestamp import utcnow
from src.database.kv_store import JsonObject, KeyValueStore
from src.integrations.models import ChannelCatalog, ChannelInfo, ChannelScope

CHANNEL_SCOPE_PREFIX = "channel_scope:"
CHANNEL_CATALOG_PREFIX = "channel_catalog:"


def channel_scope_key(tenant_id: str) -> str:
    return f"{CHANNEL_SCOPE_PREFIX}{tenant_id}"


def channel_catalog_key(tenant_id: str) -> str:
    return f"{CHANNEL_CATALOG_PREFIX}{tenant_id}"


class ChannelScopeStore:
    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    async def get(self, tenant_id: str) -> ChannelScope | None:
        raw = await self._store.get(channel_scope_key(tenant_id))
        return ChannelScope.model_validate(raw) if raw else None

    async def replace(self, tenant_id: str, sub_resource_ids: Iterable[str]) -> ChannelScope:
        """Replace the tenant's allow-list wholesale. An empty list means allow all."""
        scope = ChannelScope(
            tenant_id=tenant_id,
            selected_sub_resource_ids={i for i in sub_resource_ids if i},
            last_configured_at=self._clock(),
        )
        await self._store.put(channel_scope_key(tenant_id), scope.model_dump(mode="json"))
        return scope

    async def clear(self, tenant_id: str) -> bool:
        return await self._store.delete(channel_scope_key(tenant_id))

    async def get_catalog(self, tenant_id: str) -> ChannelCatalog | None:
        raw = await self._store.get(channel_catalog_key(tenant_id))
        return ChannelCatalog.model_validate(raw) if raw else None

    async def save_catalog(self, tenant_id: str, channels: Iterable[ChannelInfo]) -> ChannelCatalog:
        catalog = ChannelCatalog(
            tenant_id=tenant_id,
            channels=sorted(channels, key=lambda c: c.name),
            synced_at=self._clock(),
        )
        await self._store.put(channel_catalog_key(tenant_id), catalog.model_dump(mode="json"))
        return catalog

    async def upsert_catalog_channel(self, tenant_id: str, channel: ChannelInfo) -> ChannelCatalog:
        """Add or rename one channel in the catalog (channel_created / channel_rename events)."""
        now = self._clock()

        def _mutate(current: JsonObject | None) -> JsonObject:
            catalog = (
                ChannelCatalog.model_validate(current)
                if current
                else ChannelCatalog(tenant_id=tenant_id, synced_at=now)
            )
            channels = {c.id: c for c in catalog.channels}
            channels[channel.id] = channel
            catalog.channels = sorted(channels.values(), key=lambda c: c.name)
            return catalog.model_dump(mode="json")

        raw = await self._store.update(channel_catalog_key(tenant_id), _mutate)
        return ChannelCatalog.model_validate(raw)
