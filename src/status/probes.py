"""Per-source connectivity probes used by the status aggregator.

A probe returns a SourceStatus when it could determine the state (connected, or disconnected with
a reason such as "not_installed" or "token_invalid"). It raises ProbeFailure when the upstream
could not be checked; the aggregator turns that into a short-lived "error" status.
"""

from collections.abc import Callable
from typing import Protocol

import httpx
from slack_sdk.errors import SlackApiError

from src.clients.slack import SLACK_INVALID_TOKEN_ERRORS, SlackClient, slack_error_code
from src.database.connection_state import ConnectionStateStore
from src.integrations.exceptions import CredentialCorrupt, ProbeFailure, ProviderAuthError
from src.integrations.models import CredentialBundle, Provider, SourceStatus, SourceType
from src.integrations.oauth_installer import OAuthInstaller
from src.integrations.providers import CALENDAR_SCOPE, DRIVE_SCOPE, GMAIL_SCOPE
from src.utils.logging import get_logger

logger = get_logger(__name__)

REAUTH_REASON = "credentials unreadable, re-authorization required"
PROBE_HTTP_TIMEOUT_SECONDS = 10.0


class StatusProbe(Protocol):
    source: SourceType

    async def probe(self, tenant_id: str) -> SourceStatus: ...


async def _load_credentials(
    installer: OAuthInstaller, tenant_id: str, provider: Provider, source: SourceType
) -> CredentialBundle | SourceStatus:
    """Credentials for a probe, or the disconnected status explaining why there are none."""
    try:
        bundle = await installer.get_credentials(tenant_id, provider)
    except CredentialCorrupt:
        logger.warning("Stored credentials are corrupt", tenant_id=tenant_id, source=source.value)
        return SourceStatus.disconnected(source, REAUTH_REASON)
    except ProviderAuthError as e:
        if e.error_code in ("timeout", "network_error"):
            raise ProbeFailure(source.value, f"token refresh failed: {e.error_code}") from e
        return SourceStatus.disconnected(source, f"token refresh rejected: {e.error_code}")
    if bundle is None:
        return SourceStatus.disconnected(source, "not_installed")
    return bundle


class SlackProbe:
    """auth.test against the tenant's installed bot token."""

    source = SourceType.SLACK

    def __init__(
        self, installer: OAuthInstaller, slack_client_factory: Callable[[str], SlackClient] = SlackClient
    ):
        self._installer = installer
        self._slack_client_factory = slack_client_factory

    async def probe(self, tenant_id: str) -> SourceStatus:
        credentials = await _load_credentials(self._installer, tenant_id, Provider.SLACK, self.source)
        if isinstance(credentials, SourceStatus):
            return credentials

        try:
            auth = await self._slack_client_factory(credentials.access_token).aauth_test()
        except SlackApiError as e:
            code = slack_error_code(e)
            if code in SLACK_INVALID_TOKEN_ERRORS:
                return SourceStatus.disconnected(self.source, "token_invalid", error=code)
            raise ProbeFailure(self.source.value, code) from e

        return SourceStatus.connected_now(
            self.source, team=auth.get("team"), team_id=auth.get("team_id"), bot_user_id=auth.get("user_id")
        )


class GoogleApiProbe:
    """Cheap authenticated GET against one Google API with the tenant's token."""

    def __init__(self, source: SourceType, url: str, required_scope: str, installer: OAuthInstaller):
        self.source = source
        self._url = url
        self._required_scope = required_scope
        self._installer = installer

    async def probe(self, tenant_id: str) -> SourceStatus:
        credentials = await _load_credentials(self._installer, tenant_id, Provider.GOOGLE, self.source)
        if isinstance(credentials, SourceStatus):
            return credentials
        if credentials.scopes and self._required_scope not in credentials.scopes:
            return SourceStatus.disconnected(self.source, "missing_scope")

        try:
            async with httpx.AsyncClient(timeout=PROBE_HTTP_TIMEOUT_SECONDS) as client:
                response = await client.get(
                    self._url, headers={"Authorization": f"Bearer {credentials.access_token}"}
                )
        except httpx.HTTPError as e:
            raise ProbeFailure(self.source.value, f"request failed: {e}") from e

        if response.status_code == 200:
            return SourceStatus.connected_now(self.source, account=credentials.extra.get("email"))
        if response.status_code in (401, 403):
            return SourceStatus.disconnected(self.source, "token_invalid", http_status=response.status_code)
        raise ProbeFailure(self.source.value, f"http_{response.status_code}")


class ConnectionStateProbe:
    """Status of sources that only report connect/disconnect (no installation record)."""

    def __init__(self, source: SourceType, connection_state: ConnectionStateStore):
        self.source = source
        self._connection_state = connection_state

    async def probe(self, tenant_id: str) -> SourceStatus:
        state = await self._connection_state.details(tenant_id, self.source)
        if state is None:
            return SourceStatus.disconnected(self.source, "not_connected")
        if not state.connected:
            return SourceStatus.disconnected(self.source, "disconnected")
        return SourceStatus.connected_now(
            self.source, connected_at=state.connected_at.isoformat() if state.connected_at else None
        )


def build_default_probes(
    installer: OAuthInstaller,
    connection_state: ConnectionStateStore,
    connection_sources: list[SourceType],
    slack_client_factory: Callable[[str], SlackClient] = SlackClient,
) -> dict[SourceType, StatusProbe]:
    probes: dict[SourceType, StatusProbe] = {
        SourceType.SLACK: SlackProbe(installer, slack_client_factory),
        SourceType.GMAIL: GoogleApiProbe(
            SourceType.GMAIL,
            "https://gmail.googleapis.com/gmail/v1/users/me/profile",
            GMAIL_SCOPE,
            installer,
        ),
        SourceType.GOOGLE_DRIVE: GoogleApiProbe(
            SourceType.GOOGLE_DRIVE,
            "https://www.googleapis.com/drive/v3/about?fields=user",
            DRIVE_SCOPE,
            installer,
        ),
        SourceType.GOOGLE_CALENDAR: GoogleApiProbe(
            SourceType.GOOGLE_CALENDAR,
            "https://www.googleapis.com/calendar/v3/users/me/calendarList?maxResults=1",
            CALENDAR_SCOPE,
            installer,
        ),
    }
    for source in connection_sources:
        probes[source] = ConnectionStateProbe(source, connection_state)
    return probes
