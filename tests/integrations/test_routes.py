"""Tests for the OAuth, disconnect, channel scope and connection endpoints."""

from datetime import UTC, datetime
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from connectors.base.utils.timestamp import parse_slack_ts
from src.database.installations import team_index_key
from src.database.kv_store import InMemoryKeyValueStore
from src.ingest.gatekeeper.app import create_app
from src.ingest.gatekeeper.verification import VerificationResult
from src.integrations.credential_cipher import CredentialCipher
from src.integrations.exceptions import StoreUnavailable
from src.integrations.models import (
    CanonicalMessage,
    ChannelInfo,
    CredentialBundle,
    Provider,
    SourceType,
)
from src.integrations.services import build_services

NOW = datetime(2024, 5, 1, 12, tzinfo=UTC)


class AcceptAllVerifier:
    async def verify(self, headers, body):
        return VerificationResult(success=True)


class FakeSlackClient:
    def __init__(self, token):
        self.token = token

    async def alist_channels(self):
        return [{"id": "C100", "name": "general"}]

    async def arevoke(self):
        return True


class DummyResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


class DummyAsyncClient:
    response: DummyResponse | None = None

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def post(self, url, **kwargs):
        return DummyAsyncClient.response


@pytest.fixture(autouse=True)
def oauth_env(monkeypatch):
    monkeypatch.setenv("SLACK_CLIENT_ID", "slack-client")
    monkeypatch.setenv("SLACK_CLIENT_SECRET", "slack-secret")
    monkeypatch.setenv("APP_BASE_URL", "https://app.example.com")
    monkeypatch.setattr("src.integrations.oauth_installer.httpx.AsyncClient", DummyAsyncClient)


@pytest.fixture
def services():
    return build_services(
        InMemoryKeyValueStore(),
        CredentialCipher([CredentialCipher.generate_key()]),
        slack_client_factory=FakeSlackClient,
        clock=lambda: NOW,
        connection_sources=[SourceType.SLACK_MCP, SourceType.JIRA_MCP],
        probe_timeout=1,
        status_cache_ttls=(30, 10),
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services, AcceptAllVerifier()), follow_redirects=False)


def query_of(response) -> dict[str, list[str]]:
    return parse_qs(urlparse(response.headers["location"]).query)


class TestOAuthInstall:
    def test_install_redirects_to_provider(self, client):
        response = client.get("/oauth/slack/install", params={"tenant_id": "ctx-1"})

        assert response.status_code == 307
        location = response.headers["location"]
        assert location.startswith("https://slack.com/oauth/v2/authorize?")
        assert query_of(response)["state"][0].startswith("ctx-1:")

    def test_unknown_provider(self, client):
        response = client.get("/oauth/myspace/install", params={"tenant_id": "ctx-1"})

        assert response.status_code == 404

    def test_invalid_tenant(self, client):
        response = client.get("/oauth/slack/install", params={"tenant_id": "bad tenant"})

        assert response.status_code == 400

    def test_unconfigured_provider(self, client, monkeypatch):
        monkeypatch.delenv("SLACK_CLIENT_SECRET")

        response = client.get("/oauth/slack/install", params={"tenant_id": "ctx-1"})

        assert response.status_code == 503


class TestOAuthCallback:
    @pytest.mark.asyncio
    async def test_success_redirects_to_tenant(self, client, services):
        await services.installer.remember_nonce("ctx-1", Provider.SLACK, "abc123")
        DummyAsyncClient.response = DummyResponse(
            200,
            {"ok": True, "access_token": "xoxb-1", "team": {"id": "T1", "name": "Acme"}},
        )

        response = client.get("/oauth/slack/callback", params={"code": "c", "state": "ctx-1:abc123"})

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://app.example.com/contexts/ctx-1?")
        assert query_of(response) == {"slack_success": ["true"], "team": ["Acme"]}
        assert await services.installations.get_active("ctx-1", Provider.SLACK) is not None

    def test_invalid_state_redirects_with_error(self, client):
        response = client.get("/oauth/slack/callback", params={"code": "c", "state": "ctx-1:nope"})

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://app.example.com/contexts/ctx-1?")
        assert query_of(response) == {"slack_error": ["invalid_state"]}

    def test_malformed_state_redirects_to_app_root(self, client):
        response = client.get("/oauth/slack/callback", params={"code": "c", "state": "garbage"})

        assert response.headers["location"] == "https://app.example.com?slack_error=invalid_state"

    @pytest.mark.asyncio
    async def test_provider_rejection(self, client, services):
        await services.installer.remember_nonce("ctx-1", Provider.SLACK, "abc123")
        DummyAsyncClient.response = DummyResponse(200, {"ok": False, "error": "invalid_code"})

        response = client.get("/oauth/slack/callback", params={"code": "c", "state": "ctx-1:abc123"})

        assert query_of(response) == {"slack_error": ["invalid_code"]}

    @pytest.mark.asyncio
    async def test_denied_consent_burns_nonce(self, client, services):
        await services.installer.remember_nonce("ctx-1", Provider.SLACK, "abc123")

        response = client.get(
            "/oauth/slack/callback", params={"error": "access_denied", "state": "ctx-1:abc123"}
        )

        assert query_of(response) == {"slack_error": ["access_denied"]}
        retry = client.get("/oauth/slack/callback", params={"code": "c", "state": "ctx-1:abc123"})
        assert query_of(retry) == {"slack_error": ["invalid_state"]}


class TestDisconnectEndpoints:
    @pytest.mark.asyncio
    async def test_disconnect_and_read_back(self, client, services):
        bundle = CredentialBundle(access_token="xoxb-1")
        await services.installations.upsert(
            "ctx-1", Provider.SLACK, "T1", "Acme", services.cipher.encrypt(bundle)
        )

        response = client.post("/tenants/ctx-1/integrations/slack/disconnect", params={"mode": "hard"})

        body = response.json()
        assert response.status_code == 200
        assert body["mode"] == "hard"
        assert body["was_installed"] is True
        assert body["provider_revoked"] is True
        assert body["installation"]["status"] == "revoked"
        assert body["installation"]["has_credentials"] is False
        assert "encrypted_credential_bundle" not in body["installation"]

        integration = client.get("/tenants/ctx-1/integrations/slack").json()
        assert integration["status"] == "revoked"

    def test_delete_method_is_accepted(self, client):
        response = client.delete("/tenants/ctx-1/integrations/google/disconnect")

        assert response.status_code == 200
        assert response.json()["was_installed"] is False

    def test_missing_integration(self, client):
        assert client.get("/tenants/ctx-1/integrations/slack").status_code == 404

    def test_invalid_mode(self, client):
        response = client.post("/tenants/ctx-1/integrations/slack/disconnect", params={"mode": "nuke"})

        assert response.status_code == 422


class TestChannelScopeEndpoints:
    def test_default_scope_allows_all(self, client):
        body = client.get("/tenants/ctx-2/channel-scope").json()

        assert body == {
            "tenant_id": "ctx-2",
            "channel_ids": [],
            "allow_all": True,
            "last_configured_at": None,
        }

    def test_replace_scope(self, client):
        response = client.put("/tenants/ctx-2/channel-scope", json={"channel_ids": ["C200", "C100"]})

        assert response.json()["channel_ids"] == ["C100", "C200"]
        assert client.get("/tenants/ctx-2/channel-scope").json()["allow_all"] is False

    @pytest.mark.asyncio
    async def test_channel_catalog(self, client, services):
        assert client.get("/tenants/ctx-1/channels").json()["channels"] == []

        await services.channel_scopes.save_catalog("ctx-1", [ChannelInfo(id="C100", name="general")])

        channels = client.get("/tenants/ctx-1/channels").json()["channels"]
        assert [c["id"] for c in channels] == ["C100"]


class TestConnectionEndpoints:
    def test_connect_disconnect_round(self, client):
        assert client.get("/tenants/ctx-1/connections/slack-mcp").json()["connected"] is False

        connected = client.post("/tenants/ctx-1/connections/slack-mcp/connect").json()
        assert connected["connected"] is True
        assert client.get("/tenants/ctx-1/connections/slack-mcp").json()["connected"] is True

        client.post("/tenants/ctx-1/connections/slack-mcp/disconnect")
        assert client.get("/tenants/ctx-1/connections/slack-mcp").json()["connected"] is False

    def test_connect_invalidates_cached_status(self, client):
        first = client.get("/status", params={"tenant_id": "ctx-1", "sources": "jira-mcp"}).json()
        assert first["statuses"]["jira-mcp"]["state"] == "disconnected"

        client.post("/tenants/ctx-1/connections/jira-mcp/connect")

        second = client.get("/status", params={"tenant_id": "ctx-1", "sources": "jira-mcp"}).json()
        assert second["from_cache"] is False
        assert second["statuses"]["jira-mcp"]["state"] == "connected"

    def test_unknown_source_type(self, client):
        assert client.post("/tenants/ctx-1/connections/myspace/connect").status_code == 404

    def test_list_connections(self, client):
        assert client.get("/tenants/ctx-1/connections").json()["connections"] == []

        client.post("/tenants/ctx-1/connections/slack-mcp/connect")
        client.post("/tenants/ctx-1/connections/jira-mcp/connect")
        client.post("/tenants/ctx-1/connections/jira-mcp/disconnect")
        client.post("/tenants/ctx-2/connections/slack-mcp/connect")

        body = client.get("/tenants/ctx-1/connections").json()
        assert [(c["source_type"], c["connected"]) for c in body["connections"]] == [
            ("jira-mcp", False),
            ("slack-mcp", True),
        ]


class TestMessageEndpoints:
    @pytest.mark.asyncio
    async def test_list_channel_messages(self, client, services):
        for ts, text in [("1712345678.000200", "second"), ("1712345678.000100", "first")]:
            await services.messages.save(
                CanonicalMessage(
                    event_id=f"Ev{ts}",
                    tenant_id="ctx-1",
                    provider=Provider.SLACK,
                    channel_id="C100",
                    channel_name="general",
                    user_id="U1",
                    user_name="alice",
                    text=text,
                    raw_text=text,
                    ts=ts,
                    sent_at=parse_slack_ts(ts),
                )
            )

        body = client.get("/tenants/ctx-1/channels/C100/messages").json()

        assert [m["text"] for m in body["messages"]] == ["first", "second"]
        assert client.get("/tenants/ctx-2/channels/C100/messages").json()["messages"] == []

    def test_invalid_tenant(self, client):
        assert client.get("/tenants/bad tenant/channels/C100/messages").status_code == 400


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_rebuild_team_index(self, client, services):
        await services.installations.upsert("ctx-1", Provider.SLACK, "T1", "Acme", "blob")
        await services.installations.upsert("ctx-2", Provider.SLACK, "T2", "Other", "blob")
        await services.store.delete(team_index_key(Provider.SLACK, "T1"))

        body = client.post("/admin/team-index/slack/rebuild").json()

        assert body == {"provider": "slack", "owners": {"T1": "ctx-1", "T2": "ctx-2"}}
        entry = await services.installations.get_team_index(Provider.SLACK, "T1")
        assert entry.tenant_id == "ctx-1"

    def test_rebuild_unknown_provider(self, client):
        assert client.post("/admin/team-index/myspace/rebuild").status_code == 404


class TestAppErrors:
    def test_store_unavailable_maps_to_503(self, services):
        async def broken_get(key):
            raise StoreUnavailable("connection refused")

        services.store.get = broken_get
        client = TestClient(create_app(services, AcceptAllVerifier()))

        response = client.get("/tenants/ctx-1/channel-scope")

        assert response.status_code == 503

    def test_health_endpoints(self, client):
        assert client.get("/health/live").json()["status"] == "alive"
        ready = client.get("/health/ready").json()
        assert ready == {"status": "ready", "components": {"store": True}}
