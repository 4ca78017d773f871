"""Tests for tenant-initiated disconnect."""

from dataclasses import replace
from datetime import UTC, datetime

import httpx
import pytest
from slack_sdk.errors import SlackApiError

from src.database.kv_store import InMemoryKeyValueStore
from src.integrations.credential_cipher import CredentialCipher
from src.integrations.disconnect import DisconnectMode
from src.integrations.models import CredentialBundle, Provider, SourceStatus, SourceType
from src.integrations.providers import get_provider_config
from src.integrations.services import build_services

NOW = datetime(2024, 5, 1, 12, tzinfo=UTC)


class FakeSlackClient:
    revoked_tokens: list = []
    fail_revoke = False

    def __init__(self, token):
        self.token = token

    async def arevoke(self):
        if FakeSlackClient.fail_revoke:
            raise SlackApiError("revoke failed", {"ok": False, "error": "invalid_auth"})
        FakeSlackClient.revoked_tokens.append(self.token)
        return True


class RevokeResponse:
    status_code = 200


class DummyAsyncClient:
    posted: list = []

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def post(self, url, **kwargs):
        DummyAsyncClient.posted.append((url, kwargs))
        return RevokeResponse()


@pytest.fixture(autouse=True)
def reset_fakes(monkeypatch):
    FakeSlackClient.revoked_tokens = []
    FakeSlackClient.fail_revoke = False
    DummyAsyncClient.posted = []
    monkeypatch.setattr("src.integrations.disconnect.httpx.AsyncClient", DummyAsyncClient)


@pytest.fixture
def services():
    cipher = CredentialCipher([CredentialCipher.generate_key()])
    return build_services(
        InMemoryKeyValueStore(),
        cipher,
        slack_client_factory=FakeSlackClient,
        clock=lambda: NOW,
        connection_sources=[SourceType.GOOGLE_WORKSPACE_MCP],
        probe_timeout=1,
        status_cache_ttls=(30, 10),
    )


async def install_google(services, tenant_id="ctx-3"):
    bundle = CredentialBundle(
        access_token="ya29.token",
        refresh_token="1//refresh",
        scopes=["https://www.googleapis.com/auth/gmail.readonly"],
    )
    return await services.installations.upsert(
        tenant_id, Provider.GOOGLE, "acme.com", "acme.com", services.cipher.encrypt(bundle)
    )


class TestSoftDisconnect:
    @pytest.mark.asyncio
    async def test_cached_connected_status_is_not_served_after_disconnect(self, services):
        await install_google(services)
        await services.status_cache.put(
            "ctx-3", SourceType.GMAIL, SourceStatus.connected_now(SourceType.GMAIL), is_failure=False
        )
        assert (await services.aggregator.get_status("ctx-3", [SourceType.GMAIL])).from_cache

        result = await services.disconnects.disconnect("ctx-3", Provider.GOOGLE, DisconnectMode.SOFT)

        assert result.was_installed is True
        assert result.provider_revoked is False
        assert SourceType.GMAIL in result.invalidated_sources
        report = await services.aggregator.get_status("ctx-3", [SourceType.GMAIL])
        gmail = report.statuses[SourceType.GMAIL]
        assert report.from_cache is False
        assert gmail.state == "disconnected"
        assert gmail.reason == "not_installed"

    @pytest.mark.asyncio
    async def test_soft_disconnect_keeps_credentials(self, services):
        await install_google(services)

        result = await services.disconnects.disconnect("ctx-3", Provider.GOOGLE)

        assert result.installation.encrypted_credential_bundle is not None
        assert not result.installation.is_active
        assert DummyAsyncClient.posted == []

    @pytest.mark.asyncio
    async def test_marks_provider_sources_disconnected(self, services):
        await install_google(services)
        await services.connection_state.mark_connected("ctx-3", SourceType.GOOGLE_WORKSPACE_MCP)

        await services.disconnects.disconnect("ctx-3", Provider.GOOGLE)

        assert not await services.connection_state.is_connected(
            "ctx-3", SourceType.GOOGLE_WORKSPACE_MCP
        )

    @pytest.mark.asyncio
    async def test_disconnect_without_installation(self, services):
        result = await services.disconnects.disconnect("ctx-9", Provider.SLACK)

        assert result.was_installed is False
        assert result.installation is None
        assert result.invalidated_sources == [SourceType.SLACK, SourceType.SLACK_MCP]


class TestHardDisconnect:
    @pytest.mark.asyncio
    async def test_google_hard_disconnect_revokes_and_erases(self, services):
        await install_google(services)

        result = await services.disconnects.disconnect("ctx-3", Provider.GOOGLE, DisconnectMode.HARD)

        assert result.provider_revoked is True
        assert DummyAsyncClient.posted[0][1]["data"] == {"token": "1//refresh"}
        stored = await services.installations.get("ctx-3", Provider.GOOGLE)
        assert stored.encrypted_credential_bundle is None
        assert await services.installer.get_credentials("ctx-3", Provider.GOOGLE) is None

    @pytest.mark.asyncio
    async def test_slack_hard_disconnect_calls_auth_revoke(self, services):
        bundle = CredentialBundle(access_token="xoxb-1")
        await services.installations.upsert(
            "ctx-1", Provider.SLACK, "T1", "Acme", services.cipher.encrypt(bundle)
        )

        result = await services.disconnects.disconnect("ctx-1", Provider.SLACK, DisconnectMode.HARD)

        assert result.provider_revoked is True
        assert FakeSlackClient.revoked_tokens == ["xoxb-1"]
        assert await services.installations.get_team_index(Provider.SLACK, "T1") is None

    @pytest.mark.asyncio
    async def test_provider_revoke_failure_still_erases(self, services):
        FakeSlackClient.fail_revoke = True
        bundle = CredentialBundle(access_token="xoxb-1")
        await services.installations.upsert(
            "ctx-1", Provider.SLACK, "T1", "Acme", services.cipher.encrypt(bundle)
        )

        result = await services.disconnects.disconnect("ctx-1", Provider.SLACK, DisconnectMode.HARD)

        assert result.provider_revoked is False
        assert result.installation.encrypted_credential_bundle is None

    @pytest.mark.asyncio
    async def test_unreadable_credentials_skip_provider_revoke(self, services):
        await services.installations.upsert("ctx-1", Provider.SLACK, "T1", "Acme", "garbage")

        result = await services.disconnects.disconnect("ctx-1", Provider.SLACK, DisconnectMode.HARD)

        assert result.provider_revoked is False
        assert FakeSlackClient.revoked_tokens == []
        assert result.installation.encrypted_credential_bundle is None

    @pytest.mark.asyncio
    async def test_missing_revoke_endpoint_still_erases(self, services, monkeypatch):
        google = replace(get_provider_config(Provider.GOOGLE), revoke_url=None)
        monkeypatch.setattr("src.integrations.disconnect.get_provider_config", lambda provider: google)
        await install_google(services)

        result = await services.disconnects.disconnect("ctx-3", Provider.GOOGLE, DisconnectMode.HARD)

        assert result.provider_revoked is False
        assert DummyAsyncClient.posted == []
        assert result.installation.encrypted_credential_bundle is None
