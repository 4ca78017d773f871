"""Repository for provider installations and the team-id routing index.

Records:
- installation:{tenant_id}:{provider}      -> Installation
- team_index:{provider}:{provider_team_id} -> TeamIndexEntry

An installation is never physically deleted. Disconnect flips it to revoked, and a hard
disconnect additionally erases the credential blob.
"""

from collections.abc import Callable
from datetime import datetime

from connectors.base.utils.timestamp import utcnow
from src.database.kv_store import JsonObject, KeyValueStore
from src.integrations.models import (
    Installation,
    InstallationStatus,
    Provider,
    TeamIndexEntry,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)

INSTALLATION_PREFIX = "installation:"
TEAM_INDEX_PREFIX = "team_index:"


def installation_key(tenant_id: str, provider: Provider) -> str:
    return f"{INSTALLATION_PREFIX}{tenant_id}:{provider.value}"


def team_index_key(provider: Provider, team_id: str) -> str:
    return f"{TEAM_INDEX_PREFIX}{provider.value}:{team_id}"


class InstallationStore:
    """CRUD for installations on top of a KeyValueStore."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    async def get(self, tenant_id: str, provider: Provider) -> Installation | None:
        raw = await self._store.get(installation_key(tenant_id, provider))
        return Installation.model_validate(raw) if raw else None

    async def get_active(self, tenant_id: str, provider: Provider) -> Installation | None:
        installation = await self.get(tenant_id, provider)
        return installation if installation and installation.is_active else None

    async def upsert(
        self,
        tenant_id: str,
        provider: Provider,
        provider_team_id: str,
        provider_team_name: str | None,
        encrypted_credential_bundle: str,
        scopes: list[str] | None = None,
    ) -> Installation:
        """Create or supersede the installation for (tenant, provider).

        A re-install overwrites the previous record in place, so there is never more than one
        record (and never more than one active record) per key. installed_at survives a re-install
        of an active installation and is reset when reactivating a revoked one.
        """
        now = self._clock()
        superseded: Installation | None = None

        def _mutate(current: JsonObject | None) -> JsonObject:
            nonlocal superseded
            existing = Installation.model_validate(current) if current else None
            superseded = existing
            installed_at = existing.installed_at if existing and existing.is_active else now
            return Installation(
                tenant_id=tenant_id,
                provider=provider,
                provider_team_id=provider_team_id,
                provider_team_name=provider_team_name,
                encrypted_credential_bundle=encrypted_credential_bundle,
                status=InstallationStatus.ACTIVE,
                scopes=list(scopes or []),
                installed_at=installed_at,
                updated_at=now,
            ).model_dump(mode="json")

        raw = await self._store.update(installation_key(tenant_id, provider), _mutate)
        installation = Installation.model_validate(raw)

        if superseded and superseded.provider_team_id != provider_team_id:
            # The tenant moved to a different team; the old team no longer routes here
            await self.clear_team_index(superseded)
        await self.set_team_index(installation)

        logger.info(
            "Installation stored",
            tenant_id=tenant_id,
            provider=provider.value,
            provider_team_id=provider_team_id,
            reinstall=superseded is not None,
        )
        return installation

    async def update_credentials(
        self, tenant_id: str, provider: Provider, encrypted_credential_bundle: str
    ) -> Installation | None:
        """Swap the credential blob of an active installation (after a token refresh).

        Revoked installations are left untouched so a late refresh never reactivates them. A refresh
        does not move `updated_at`, so it never changes which tenant owns a contested team.
        """
        now = self._clock()

        def _mutate(current: JsonObject | None) -> JsonObject | None:
            if current is None:
                return None
            existing = Installation.model_validate(current)
            if not existing.is_active:
                return current
            return existing.model_copy(
                update={
                    "encrypted_credential_bundle": encrypted_credential_bundle,
                    "credentials_refreshed_at": now,
                }
            ).model_dump(mode="json")

        raw = await self._store.update(installation_key(tenant_id, provider), _mutate)
        return Installation.model_validate(raw) if raw else None

    async def rewrap_credentials(
        self, tenant_id: str, provider: Provider, rewrap: Callable[[str], str]
    ) -> bool:
        """Re-encrypt the stored blob in place, revoked installations included."""
        rewrapped = False

        def _mutate(current: JsonObject | None) -> JsonObject | None:
            nonlocal rewrapped
            if current is None or not current.get("encrypted_credential_bundle"):
                return current
            rewrapped = True
            blob = rewrap(current["encrypted_credential_bundle"])
            return {**current, "encrypted_credential_bundle": blob}

        await self._store.update(installation_key(tenant_id, provider), _mutate)
        return rewrapped

    async def revoke(
        self, tenant_id: str, provider: Provider, erase_credentials: bool = False
    ) -> Installation | None:
        """Soft-revoke the installation. With erase_credentials the blob is dropped for good."""
        now = self._clock()

        def _mutate(current: JsonObject | None) -> JsonObject | None:
            if current is None:
                return None
            existing = Installation.model_validate(current)
            update: dict = {"status": InstallationStatus.REVOKED, "updated_at": now}
            if erase_credentials:
                update["encrypted_credential_bundle"] = None
            return existing.model_copy(update=update).model_dump(mode="json")

        raw = await self._store.update(installation_key(tenant_id, provider), _mutate)
        if raw is None:
            return None

        installation = Installation.model_validate(raw)
        await self.clear_team_index(installation)
        logger.info(
            "Installation revoked",
            tenant_id=tenant_id,
            provider=provider.value,
            erased=erase_credentials,
        )
        return installation

    async def list_all(self, provider: Provider | None = None) -> list[Installation]:
        installations = [
            Installation.model_validate(value)
            for _, value in await self._store.scan_prefix(INSTALLATION_PREFIX)
        ]
        if provider is not None:
            installations = [i for i in installations if i.provider == provider]
        return installations

    async def list_active_by_team(self, provider: Provider, team_id: str) -> list[Installation]:
        return [
            i
            for i in await self.list_all(provider)
            if i.is_active and i.provider_team_id == team_id
        ]

    # Team index

    async def get_team_index(self, provider: Provider, team_id: str) -> TeamIndexEntry | None:
        raw = await self._store.get(team_index_key(provider, team_id))
        return TeamIndexEntry.model_validate(raw) if raw else None

    async def set_team_index(self, installation: Installation) -> None:
        entry = TeamIndexEntry(tenant_id=installation.tenant_id, updated_at=installation.updated_at)
        await self._store.put(
            team_index_key(installation.provider, installation.provider_team_id),
            entry.model_dump(mode="json"),
        )

    async def clear_team_index(self, installation: Installation) -> None:
        """Remove the index entry for this installation's team if it still points at its tenant."""
        key = team_index_key(installation.provider, installation.provider_team_id)
        raw = await self._store.get(key)
        if raw and raw.get("tenant_id") == installation.tenant_id:
            await self._store.compare_and_delete(key, raw)
