"""Tests for webhook tenant routing."""

from datetime import UTC, datetime, timedelta

import pytest

from src.database.installations import InstallationStore, team_index_key
from src.database.kv_store import InMemoryKeyValueStore
from src.ingest.gatekeeper.tenant_router import WebhookTenantRouter
from src.integrations.models import Provider


class SteppingClock:
    def __init__(self, start: datetime = datetime(2024, 5, 1, tzinfo=UTC)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def installations(kv):
    return InstallationStore(kv, clock=SteppingClock())


@pytest.fixture
def router(installations):
    return WebhookTenantRouter(installations)


class TestWebhookTenantRouter:
    @pytest.mark.asyncio
    async def test_routes_through_index(self, router, installations):
        await installations.upsert("ctx-1", Provider.SLACK, "T1", "Acme", "blob")

        result = await router.resolve(Provider.SLACK, "T1")

        assert result.tenant_id == "ctx-1"
        assert result.reason == "index"

    @pytest.mark.asyncio
    async def test_missing_team_id(self, router):
        result = await router.resolve(Provider.SLACK, None)

        assert result.tenant_id is None
        assert result.reason == "missing_team_id"

    @pytest.mark.asyncio
    async def test_unknown_team_is_dropped(self, router):
        result = await router.resolve(Provider.SLACK, "T404")

        assert result.tenant_id is None
        assert result.reason == "no_active_installation"

    @pytest.mark.asyncio
    async def test_missing_index_entry_is_rebuilt(self, router, installations, kv):
        await installations.upsert("ctx-1", Provider.SLACK, "T1", "Acme", "blob")
        await kv.delete(team_index_key(Provider.SLACK, "T1"))

        result = await router.resolve(Provider.SLACK, "T1")

        assert result.tenant_id == "ctx-1"
        assert result.reason == "rebuilt"
        assert (await installations.get_team_index(Provider.SLACK, "T1")).tenant_id == "ctx-1"

    @pytest.mark.asyncio
    async def test_stale_index_entry_is_rebuilt(self, router, installations, kv):
        await installations.upsert("ctx-1", Provider.SLACK, "T1", "Acme", "blob")
        await installations.upsert("ctx-2", Provider.SLACK, "T1", "Acme", "blob")
        await installations.revoke("ctx-2", Provider.SLACK)
        # Leftover entry pointing at the revoked tenant
        await kv.put(
            team_index_key(Provider.SLACK, "T1"),
            {"tenant_id": "ctx-2", "updated_at": datetime(2024, 5, 2, tzinfo=UTC).isoformat()},
        )

        result = await router.resolve(Provider.SLACK, "T1")

        assert result.tenant_id == "ctx-1"
        assert result.reason == "rebuilt"

    @pytest.mark.asyncio
    async def test_conflict_routes_to_newest_installation(self, router, installations, kv):
        await installations.upsert("ctx-a", Provider.SLACK, "T1", "Acme", "blob")
        await installations.upsert("ctx-b", Provider.SLACK, "T1", "Acme", "blob")
        await kv.delete(team_index_key(Provider.SLACK, "T1"))

        result = await router.resolve(Provider.SLACK, "T1")

        assert result.tenant_id == "ctx-b"
        assert result.conflicting_tenant_ids == ["ctx-a"]

    @pytest.mark.asyncio
    async def test_rebuild_index(self, router, installations, kv):
        await installations.upsert("ctx-1", Provider.SLACK, "T1", "Acme", "blob")
        await installations.upsert("ctx-2", Provider.SLACK, "T2", "Other", "blob")
        await installations.upsert("ctx-3", Provider.GOOGLE, "acme.com", None, "blob")
        for team in ("T1", "T2"):
            await kv.delete(team_index_key(Provider.SLACK, team))

        owners = await router.rebuild_index(Provider.SLACK)

        assert owners == {"T1": "ctx-1", "T2": "ctx-2"}
        assert (await router.resolve(Provider.SLACK, "T2")).reason == "index"

    @pytest.mark.asyncio
    async def test_credential_refresh_does_not_move_ownership(self, router, installations, kv):
        await installations.upsert("ctx-a", Provider.SLACK, "T1", "Acme", "blob")
        await installations.upsert("ctx-b", Provider.SLACK, "T1", "Acme", "blob")

        await installations.update_credentials("ctx-a", Provider.SLACK, "refreshed")

        assert (await router.resolve(Provider.SLACK, "T1")).tenant_id == "ctx-b"
        await kv.delete(team_index_key(Provider.SLACK, "T1"))
        rebuilt = await router.resolve(Provider.SLACK, "T1")
        assert rebuilt.tenant_id == "ctx-b"
        assert rebuilt.conflicting_tenant_ids == ["ctx-a"]

    @pytest.mark.asyncio
    async def test_index_entry_out_of_date_with_installation_is_rebuilt(
        self, router, installations, kv
    ):
        await installations.upsert("ctx-a", Provider.SLACK, "T1", "Acme", "blob")
        await installations.upsert("ctx-b", Provider.SLACK, "T1", "Acme", "blob")
        # Entry written for ctx-a before ctx-b took over, with ctx-a's old ownership time
        await kv.put(
            team_index_key(Provider.SLACK, "T1"),
            {"tenant_id": "ctx-a", "updated_at": datetime(2024, 4, 1, tzinfo=UTC).isoformat()},
        )

        result = await router.resolve(Provider.SLACK, "T1")

        assert result.tenant_id == "ctx-b"
        assert result.reason == "rebuilt"
