"""Tests for the status endpoints."""

from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from src.database.kv_store import InMemoryKeyValueStore
from src.ingest.gatekeeper.app import create_app
from src.ingest.gatekeeper.verification import VerificationResult
from src.integrations.credential_cipher import CredentialCipher
from src.integrations.models import SourceStatus, SourceType
from src.integrations.services import build_services
from src.status.routes import parse_sources


class AcceptAllVerifier:
    async def verify(self, headers, body):
        return VerificationResult(success=True)


class StaticProbe:
    def __init__(self, source: SourceType):
        self.source = source

    async def probe(self, tenant_id):
        return SourceStatus.connected_now(self.source)


@pytest.fixture
def services():
    return build_services(
        InMemoryKeyValueStore(),
        CredentialCipher([CredentialCipher.generate_key()]),
        clock=lambda: datetime(2024, 5, 1, 12, tzinfo=UTC),
        probes={s: StaticProbe(s) for s in (SourceType.SLACK, SourceType.GMAIL)},
        probe_timeout=1,
        status_cache_ttls=(30, 10),
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services, AcceptAllVerifier()))


class TestStatusRoutes:
    def test_get_status(self, client):
        body = client.get("/status", params={"tenant_id": "ctx-1"}).json()

        assert body["tenant_id"] == "ctx-1"
        assert body["success"] is True
        assert body["from_cache"] is False
        assert set(body["statuses"]) == {"slack", "gmail"}
        assert body["summary"]["connected"] == 2

    def test_second_call_is_cached(self, client):
        client.get("/status", params={"tenant_id": "ctx-1"})

        body = client.get("/status", params={"tenant_id": "ctx-1"}).json()

        assert body["from_cache"] is True

    def test_source_filter(self, client):
        body = client.get("/status", params={"tenant_id": "ctx-1", "sources": "gmail"}).json()

        assert list(body["statuses"]) == ["gmail"]

    def test_invalid_requests(self, client):
        assert client.get("/status", params={"tenant_id": "bad tenant"}).status_code == 400
        assert client.get("/status", params={"tenant_id": "ctx-1", "sources": "myspace"}).status_code == 400
        assert client.get("/status").status_code == 422

    def test_invalidate(self, client):
        client.get("/status", params={"tenant_id": "ctx-1"})

        body = client.delete("/status", params={"tenant_id": "ctx-1"}).json()

        assert sorted(body["invalidated"]) == ["gmail", "slack"]
        assert client.get("/status", params={"tenant_id": "ctx-1"}).json()["from_cache"] is False

    def test_invalidate_one_source(self, client):
        client.get("/status", params={"tenant_id": "ctx-1"})

        body = client.delete("/status", params={"tenant_id": "ctx-1", "source": "slack"}).json()

        assert body["invalidated"] == ["slack"]

    def test_cache_stats(self, client):
        client.get("/status", params={"tenant_id": "ctx-1"})
        client.get("/status", params={"tenant_id": "ctx-2", "sources": "gmail"})

        assert client.get("/status/cache-stats").json() == {"total": 3, "live": 3, "stale": 0}
        assert client.get("/status/cache-stats", params={"tenant_id": "ctx-2"}).json() == {
            "total": 1,
            "live": 1,
            "stale": 0,
        }
        assert client.get("/status/cache-stats", params={"tenant_id": "bad tenant"}).status_code == 400


class TestParseSources:
    def test_empty(self):
        assert parse_sources(None) is None
        assert parse_sources("") is None

    def test_list(self):
        assert parse_sources("slack, gmail") == [SourceType.SLACK, SourceType.GMAIL]

