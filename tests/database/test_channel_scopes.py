"""Tests for channel scopes and the channel catalog."""

from datetime import UTC, datetime

import pytest

from src.database.channel_scopes import ChannelScopeStore
from src.database.kv_store import InMemoryKeyValueStore
from src.integrations.models import ChannelInfo


@pytest.fixture
def scopes():
    return ChannelScopeStore(
        InMemoryKeyValueStore(), clock=lambda: datetime(2024, 5, 1, tzinfo=UTC)
    )


class TestChannelScopeStore:
    @pytest.mark.asyncio
    async def test_replace_overwrites_previous_selection(self, scopes):
        await scopes.replace("ctx-2", ["C100", "C200"])
        scope = await scopes.replace("ctx-2", ["C100", ""])

        assert scope.selected_sub_resource_ids == {"C100"}
        stored = await scopes.get("ctx-2")
        assert stored.selected_sub_resource_ids == {"C100"}
        assert stored.last_configured_at == datetime(2024, 5, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_clear(self, scopes):
        await scopes.replace("ctx-2", ["C100"])

        assert await scopes.clear("ctx-2") is True
        assert await scopes.get("ctx-2") is None
        assert await scopes.clear("ctx-2") is False


class TestChannelCatalog:
    @pytest.mark.asyncio
    async def test_save_catalog_sorts_by_name(self, scopes):
        await scopes.save_catalog(
            "ctx-1",
            [ChannelInfo(id="C2", name="random"), ChannelInfo(id="C1", name="general")],
        )

        catalog = await scopes.get_catalog("ctx-1")

        assert [c.name for c in catalog.channels] == ["general", "random"]

    @pytest.mark.asyncio
    async def test_upsert_renames_existing_channel(self, scopes):
        await scopes.save_catalog("ctx-1", [ChannelInfo(id="C1", name="general")])

        catalog = await scopes.upsert_catalog_channel("ctx-1", ChannelInfo(id="C1", name="lobby"))

        assert [(c.id, c.name) for c in catalog.channels] == [("C1", "lobby")]

    @pytest.mark.asyncio
    async def test_upsert_creates_missing_catalog(self, scopes):
        catalog = await scopes.upsert_catalog_channel("ctx-1", ChannelInfo(id="C9", name="new"))

        assert catalog.tenant_id == "ctx-1"
        assert [c.id for c in catalog.channels] == ["C9"]
