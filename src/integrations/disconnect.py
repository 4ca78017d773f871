"""Tenant-initiated disconnect of a provider integration."""

from dataclasses import dataclass, field
from enum import Enum

import httpx
from slack_sdk.errors import SlackApiError

from src.clients.slack import SlackClient, slack_error_code
from src.database.connection_state import ConnectionStateStore
from src.database.installations import InstallationStore
from src.integrations.credential_cipher import CredentialCipher
from src.integrations.exceptions import CredentialCorrupt
from src.integrations.models import CredentialBundle, Installation, Provider, SourceType
from src.integrations.oauth_installer import SlackClientFactory
from src.integrations.providers import get_provider_config
from src.status.cache import StatusCache
from src.utils.config import get_oauth_http_timeout
from src.utils.logging import get_logger

logger = get_logger(__name__)


class DisconnectMode(str, Enum):
    SOFT = "soft"  # revoke, keep the credential blob for reconnect
    HARD = "hard"  # revoke and erase the credential blob permanently


@dataclass
class DisconnectResult:
    tenant_id: str
    provider: Provider
    mode: DisconnectMode
    was_installed: bool
    provider_revoked: bool = False
    invalidated_sources: list[SourceType] = field(default_factory=list)
    installation: Installation | None = None


class DisconnectService:
    def __init__(
        self,
        installations: InstallationStore,
        cipher: CredentialCipher,
        connection_state: ConnectionStateStore,
        status_cache: StatusCache,
        slack_client_factory: SlackClientFactory = SlackClient,
        http_timeout: float | None = None,
    ):
        self._installations = installations
        self._cipher = cipher
        self._connection_state = connection_state
        self._status_cache = status_cache
        self._slack_client_factory = slack_client_factory
        self._http_timeout = http_timeout if http_timeout is not None else get_oauth_http_timeout()

    async def disconnect(
        self, tenant_id: str, provider: Provider, mode: DisconnectMode = DisconnectMode.SOFT
    ) -> DisconnectResult:
        """Revoke the tenant's installation, then clear derived state.

        The installation write happens first and the status cache is invalidated last, so a
        status poll racing the disconnect cannot re-cache a stale "connected" entry after the
        invalidation. Disconnecting an absent installation still clears derived state.
        """
        existing = await self._installations.get(tenant_id, provider)
        result = DisconnectResult(
            tenant_id=tenant_id,
            provider=provider,
            mode=mode,
            was_installed=existing is not None and existing.is_active,
        )

        if mode == DisconnectMode.HARD and existing and existing.encrypted_credential_bundle:
            result.provider_revoked = await self._revoke_at_provider(existing)

        if existing is not None:
            result.installation = await self._installations.revoke(
                tenant_id, provider, erase_credentials=mode == DisconnectMode.HARD
            )

        source_types = get_provider_config(provider).source_types
        for source_type in source_types:
            await self._connection_state.mark_disconnected(tenant_id, source_type)
        for source_type in source_types:
            await self._status_cache.invalidate(tenant_id, source_type)
        result.invalidated_sources = list(source_types)

        logger.info(
            "Integration disconnected",
            tenant_id=tenant_id,
            provider=provider.value,
            mode=mode.value,
            was_installed=result.was_installed,
        )
        return result

    async def _revoke_at_provider(self, installation: Installation) -> bool:
        """Best-effort token revocation at the provider. Never raises."""
        try:
            bundle = self._cipher.decrypt(installation.encrypted_credential_bundle or "")
        except CredentialCorrupt:
            logger.warning(
                "Skipping provider revoke, stored credentials are unreadable",
                tenant_id=installation.tenant_id,
                provider=installation.provider.value,
            )
            return False

        try:
            if installation.provider == Provider.SLACK:
                return await self._slack_client_factory(bundle.access_token).arevoke()
            return await self._revoke_google(bundle)
        except SlackApiError as e:
            logger.warning(f"Slack auth.revoke failed: {slack_error_code(e)}", tenant_id=installation.tenant_id)
        except httpx.HTTPError as e:
            logger.warning(f"Google token revoke failed: {e}", tenant_id=installation.tenant_id)
        return False

    async def _revoke_google(self, bundle: CredentialBundle) -> bool:
        revoke_url = get_provider_config(Provider.GOOGLE).revoke_url
        if not revoke_url:
            logger.warning("No token revoke endpoint configured for google")
            return False
        # Revoking the refresh token also invalidates its access tokens
        token = bundle.refresh_token or bundle.access_token
        async with httpx.AsyncClient(timeout=self._http_timeout) as client:
            response = await client.post(revoke_url, data={"token": token})
        return response.status_code == 200
