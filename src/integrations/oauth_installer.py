"""
OAuth installation flow for provider integrations.

Flow (InstallPhase):
    NOT_STARTED -> AUTHORIZATION_REQUESTED -> CODE_RECEIVED -> TOKEN_EXCHANGED -> STORED
                                              (any failure after CODE_RECEIVED -> FAILED)

The OAuth `state` parameter is "{tenant_id}:{nonce}". The nonce is remembered server-side for ten
minutes and consumed exactly once by the callback, which rejects unknown, expired and replayed
states as well as states bound to a different provider.
"""

import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from connectors.base.utils.timestamp import utcnow
from src.clients.slack import SlackClient
from src.database.channel_scopes import ChannelScopeStore
from src.database.installations import InstallationStore
from src.database.kv_store import KeyValueStore
from src.integrations.credential_cipher import CredentialCipher
from src.integrations.exceptions import InvalidState, ProviderAuthError
from src.integrations.models import (
    ChannelInfo,
    CredentialBundle,
    Installation,
    InstallPhase,
    Provider,
)
from src.integrations.providers import GOOGLE_USERINFO_URL, ProviderConfig, get_provider_config
from src.utils.config import get_oauth_http_timeout
from src.utils.logging import get_logger

logger = get_logger(__name__)

OAUTH_NONCE_PREFIX = "oauth_nonce:"
OAUTH_NONCE_TTL_SECONDS = 600
TOKEN_REFRESH_WINDOW = timedelta(minutes=5)
GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"
GRANT_TYPE_REFRESH = "refresh_token"

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
NONCE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,256}$")


def is_valid_tenant_id(tenant_id: str | None) -> bool:
    return bool(tenant_id) and TENANT_ID_PATTERN.match(tenant_id) is not None


def oauth_nonce_key(tenant_id: str, nonce: str) -> str:
    return f"{OAUTH_NONCE_PREFIX}{tenant_id}:{nonce}"


def build_state(tenant_id: str, nonce: str) -> str:
    return f"{tenant_id}:{nonce}"


def parse_state(state: str | None) -> tuple[str, str]:
    """Split a callback state into (tenant_id, nonce).

    Raises:
        InvalidState: unless the state is exactly two non-empty, well-formed parts
    """
    if not state:
        raise InvalidState("Missing OAuth state")
    parts = state.split(":")
    if len(parts) != 2:
        raise InvalidState("OAuth state must be tenant_id:nonce")
    tenant_id, nonce = parts
    if not is_valid_tenant_id(tenant_id) or not NONCE_PATTERN.match(nonce):
        raise InvalidState("OAuth state is malformed")
    return tenant_id, nonce


@dataclass
class InstallAttempt:
    """Tracks one pass through the installation state machine."""

    provider: Provider
    tenant_id: str | None = None
    phase: InstallPhase = InstallPhase.NOT_STARTED
    error_code: str | None = None

    def advance(self, phase: InstallPhase) -> None:
        logger.info(
            f"OAuth install {self.phase.value} -> {phase.value}",
            tenant_id=self.tenant_id,
            provider=self.provider.value,
        )
        self.phase = phase

    def fail(self, error_code: str) -> None:
        self.error_code = error_code
        self.advance(InstallPhase.FAILED)


@dataclass
class TokenExchangeResult:
    bundle: CredentialBundle
    team_id: str
    team_name: str | None


@dataclass
class InstallResult:
    installation: Installation
    attempt: InstallAttempt


SlackClientFactory = Callable[[str], SlackClient]


class OAuthInstaller:
    """Builds authorization URLs, completes callbacks, and serves decrypted credentials."""

    def __init__(
        self,
        store: KeyValueStore,
        installations: InstallationStore,
        channel_scopes: ChannelScopeStore,
        cipher: CredentialCipher,
        slack_client_factory: SlackClientFactory = SlackClient,
        http_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._installations = installations
        self._channel_scopes = channel_scopes
        self._cipher = cipher
        self._slack_client_factory = slack_client_factory
        self._http_timeout = http_timeout if http_timeout is not None else get_oauth_http_timeout()
        self._clock = clock

    # Authorization

    async def remember_nonce(self, tenant_id: str, provider: Provider, nonce: str) -> None:
        created = await self._store.insert_if_absent(
            oauth_nonce_key(tenant_id, nonce),
            {"provider": provider.value, "issued_at": self._clock().isoformat()},
            ttl_seconds=OAUTH_NONCE_TTL_SECONDS,
        )
        if not created:
            raise InvalidState("OAuth nonce collision")

    async def build_authorization_url(self, tenant_id: str, provider: Provider) -> str:
        if not is_valid_tenant_id(tenant_id):
            raise InvalidState(f"Invalid tenant id: {tenant_id!r}")

        config = get_provider_config(provider)
        client_id, _ = config.client_credentials()
        attempt = InstallAttempt(provider=provider, tenant_id=tenant_id)

        nonce = secrets.token_urlsafe(24)
        await self.remember_nonce(tenant_id, provider, nonce)

        params = {
            "client_id": client_id,
            "scope": config.scope_separator.join(config.scopes),
            "redirect_uri": config.redirect_uri(),
            "state": build_state(tenant_id, nonce),
            **config.extra_authorize_params,
        }
        attempt.advance(InstallPhase.AUTHORIZATION_REQUESTED)
        return f"{config.authorize_url}?{urlencode(params)}"

    async def consume_state(self, provider: Provider, state: str | None) -> str:
        """Validate and burn the callback state. Returns the tenant id."""
        tenant_id, nonce = parse_state(state)
        remembered = await self._store.pop(oauth_nonce_key(tenant_id, nonce))
        if remembered is None:
            raise InvalidState("OAuth state is unknown, expired or already used")
        if remembered.get("provider") != provider.value:
            raise InvalidState("OAuth state was issued for a different provider")
        return tenant_id

    # Callback

    async def complete_installation(
        self, provider: Provider, code: str, state: str | None
    ) -> InstallResult:
        """Exchange the authorization code and persist the encrypted installation.

        Raises:
            InvalidState: bad, unknown or replayed state; nothing is installed
            ProviderAuthError: the provider rejected the code or was unreachable
        """
        attempt = InstallAttempt(provider=provider)
        tenant_id = await self.consume_state(provider, state)
        attempt.tenant_id = tenant_id
        attempt.advance(InstallPhase.CODE_RECEIVED)

        config = get_provider_config(provider)
        try:
            exchanged = await self._exchange_code(config, code)
            attempt.advance(InstallPhase.TOKEN_EXCHANGED)

            installation = await self._installations.upsert(
                tenant_id=tenant_id,
                provider=provider,
                provider_team_id=exchanged.team_id,
                provider_team_name=exchanged.team_name,
                encrypted_credential_bundle=self._cipher.encrypt(exchanged.bundle),
                scopes=exchanged.bundle.scopes,
            )
        except ProviderAuthError as e:
            attempt.fail(e.error_code)
            raise
        except Exception:
            attempt.fail("internal_error")
            raise
        attempt.advance(InstallPhase.STORED)

        if provider == Provider.SLACK:
            await self.sync_channels(tenant_id, exchanged.bundle)

        return InstallResult(installation=installation, attempt=attempt)

    async def sync_channels(self, tenant_id: str, bundle: CredentialBundle) -> bool:
        """Best-effort refresh of the tenant's channel catalog. Never raises."""
        try:
            client = self._slack_client_factory(bundle.access_token)
            raw_channels = await client.alist_channels()
            channels = [
                ChannelInfo(
                    id=c["id"],
                    name=c.get("name") or c["id"],
                    is_private=bool(c.get("is_private")),
                    is_archived=bool(c.get("is_archived")),
                    num_members=c.get("num_members"),
                )
                for c in raw_channels
                if c.get("id")
            ]
            await self._channel_scopes.save_catalog(tenant_id, channels)
            logger.info(f"Synced {len(channels)} Slack channels", tenant_id=tenant_id)
            return True
        except Exception as e:
            logger.warning(f"Slack channel sync failed after install: {e}", tenant_id=tenant_id)
            return False

    async def _post_token_endpoint(
        self, config: ProviderConfig, data: dict[str, str]
    ) -> dict[str, Any]:
        provider = config.provider.value
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                response = await client.post(
                    config.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            logger.error(f"{provider} token endpoint timed out", provider=provider)
            raise ProviderAuthError(provider, "timeout", str(e)) from e
        except httpx.HTTPError as e:
            logger.error(f"{provider} token endpoint unreachable: {e}", provider=provider)
            raise ProviderAuthError(provider, "network_error", str(e)) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            # Non-object bodies carry no tokens
            payload = {}

        if response.status_code != 200:
            error_code = payload.get("error") or f"http_{response.status_code}"
            logger.error(
                f"{provider} token endpoint returned {response.status_code}",
                provider=provider,
                error_code=error_code,
            )
            raise ProviderAuthError(provider, str(error_code), payload.get("error_description"))

        # Slack reports failures with HTTP 200 and ok=false
        if payload.get("ok") is False or payload.get("error"):
            error_code = payload.get("error") or "unknown_error"
            logger.error(f"{provider} token exchange rejected", provider=provider, error_code=error_code)
            raise ProviderAuthError(provider, str(error_code), payload.get("error_description"))

        return payload

    async def _exchange_code(self, config: ProviderConfig, code: str) -> TokenExchangeResult:
        if not code:
            raise ProviderAuthError(config.provider.value, "missing_code")
        client_id, client_secret = config.client_credentials()
        payload = await self._post_token_endpoint(
            config,
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": config.redirect_uri(),
                "grant_type": GRANT_TYPE_AUTHORIZATION_CODE,
            },
        )
        if config.provider == Provider.SLACK:
            return self._parse_slack_token_response(payload)
        bundle = self._bundle_from_google_payload(payload)
        return await self._resolve_google_identity(bundle)

    def _parse_slack_token_response(self, payload: dict[str, Any]) -> TokenExchangeResult:
        team = payload.get("team") or {}
        if not isinstance(team, dict) or not team.get("id"):
            raise ProviderAuthError("slack", "invalid_token_response")
        bundle = self._bundle_from_slack_payload(payload)
        return TokenExchangeResult(bundle=bundle, team_id=team["id"], team_name=team.get("name"))

    def _bundle_from_slack_payload(self, payload: dict[str, Any]) -> CredentialBundle:
        access_token = payload.get("access_token")
        if not access_token:
            raise ProviderAuthError("slack", "invalid_token_response")

        expires_at = None
        if payload.get("expires_in"):
            expires_at = self._clock() + timedelta(seconds=int(payload["expires_in"]))

        extra = {
            key: str(value)
            for key, value in {
                "bot_user_id": payload.get("bot_user_id"),
                "app_id": payload.get("app_id"),
                "authed_user_id": (payload.get("authed_user") or {}).get("id"),
            }.items()
            if value
        }
        return CredentialBundle(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            scopes=[s for s in (payload.get("scope") or "").split(",") if s],
            account_id=payload.get("bot_user_id"),
            token_type=payload.get("token_type") or "bot",
            extra=extra,
        )

    def _bundle_from_google_payload(
        self, payload: dict[str, Any], previous: CredentialBundle | None = None
    ) -> CredentialBundle:
        access_token = payload.get("access_token")
        if not access_token:
            raise ProviderAuthError("google", "invalid_token_response")
        expires_at = None
        if payload.get("expires_in"):
            expires_at = self._clock() + timedelta(seconds=int(payload["expires_in"]))
        scopes = [s for s in (payload.get("scope") or "").split(" ") if s]
        return CredentialBundle(
            access_token=access_token,
            # Google omits the refresh token on refresh responses
            refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=expires_at,
            scopes=scopes or (previous.scopes if previous else []),
            account_id=previous.account_id if previous else None,
            token_type=payload.get("token_type") or "Bearer",
            extra=dict(previous.extra) if previous else {},
        )

    async def _resolve_google_identity(self, bundle: CredentialBundle) -> TokenExchangeResult:
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {bundle.access_token}"},
                )
        except httpx.HTTPError as e:
            raise ProviderAuthError("google", "network_error", str(e)) from e
        if response.status_code != 200:
            raise ProviderAuthError("google", f"userinfo_http_{response.status_code}")

        try:
            info = response.json()
        except ValueError as e:
            raise ProviderAuthError("google", "invalid_userinfo_response") from e
        if not isinstance(info, dict):
            raise ProviderAuthError("google", "invalid_userinfo_response")
        email = info.get("email")
        if not email:
            raise ProviderAuthError("google", "missing_email_scope")
        # Workspace accounts share a hosted domain; personal accounts are their own team
        hosted_domain = info.get("hd")
        bundle = bundle.model_copy(
            update={"account_id": info.get("sub") or email, "extra": {**bundle.extra, "email": email}}
        )
        return TokenExchangeResult(
            bundle=bundle,
            team_id=hosted_domain or email,
            team_name=hosted_domain or email,
        )

    # Credentials for other components

    async def get_credentials(
        self, tenant_id: str, provider: Provider, now: datetime | None = None
    ) -> CredentialBundle | None:
        """Decrypted credentials of the active installation, refreshed when about to expire.

        Returns None when there is no active installation.

        Raises:
            CredentialCorrupt: stored blob cannot be decrypted; the caller treats the tenant as
                needing re-authorization
            ProviderAuthError: refresh was needed and the provider refused it
        """
        installation = await self._installations.get_active(tenant_id, provider)
        if installation is None or installation.encrypted_credential_bundle is None:
            return None

        bundle = self._cipher.decrypt(installation.encrypted_credential_bundle)
        if bundle.refresh_token and bundle.expires_within(TOKEN_REFRESH_WINDOW, now or self._clock()):
            bundle = await self.refresh_credentials(tenant_id, provider, bundle)
        return bundle

    async def refresh_credentials(
        self, tenant_id: str, provider: Provider, bundle: CredentialBundle
    ) -> CredentialBundle:
        if not bundle.refresh_token:
            raise ProviderAuthError(provider.value, "missing_refresh_token")

        config = get_provider_config(provider)
        client_id, client_secret = config.client_credentials()
        logger.info("Refreshing provider access token", tenant_id=tenant_id, provider=provider.value)
        payload = await self._post_token_endpoint(
            config,
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": GRANT_TYPE_REFRESH,
                "refresh_token": bundle.refresh_token,
            },
        )

        if provider == Provider.SLACK:
            refreshed = self._bundle_from_slack_payload(payload)
            refreshed = refreshed.model_copy(
                update={
                    "refresh_token": refreshed.refresh_token or bundle.refresh_token,
                    "account_id": refreshed.account_id or bundle.account_id,
                    "extra": {**bundle.extra, **refreshed.extra},
                    "scopes": refreshed.scopes or bundle.scopes,
                }
            )
        else:
            refreshed = self._bundle_from_google_payload(payload, previous=bundle)

        # Last write wins if two workers refresh concurrently; both tokens are valid
        await self._installations.update_credentials(
            tenant_id, provider, self._cipher.encrypt(refreshed)
        )
        return refreshed
