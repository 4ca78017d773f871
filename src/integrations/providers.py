"""OAuth provider registry."""

from dataclasses import dataclass, field

from src.integrations.exceptions import UnknownProvider
from src.integrations.models import Provider, SourceType
from src.utils.config import get_app_base_url, require_config_value

SLACK_SCOPES = (
    "channels:read",
    "groups:read",
    "users:read",
    "chat:write",
    "channels:history",
    "groups:history",
    "team:read",
)

GMAIL_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive.readonly"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"

GOOGLE_SCOPES = (
    "openid",
    "email",
    "profile",
    GMAIL_SCOPE,
    DRIVE_SCOPE,
    CALENDAR_SCOPE,
)


@dataclass(frozen=True)
class ProviderConfig:
    provider: Provider
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...]
    client_id_env: str
    client_secret_env: str
    scope_separator: str
    # Status/connection sources backed by this provider's installation
    source_types: tuple[SourceType, ...]
    revoke_url: str | None = None
    extra_authorize_params: dict[str, str] = field(default_factory=dict)

    def client_credentials(self) -> tuple[str, str]:
        """Client id and secret from the environment. Raises ValueError when unset."""
        return require_config_value(self.client_id_env), require_config_value(self.client_secret_env)

    def redirect_uri(self) -> str:
        return f"{get_app_base_url()}/oauth/{self.provider.value}/callback"


PROVIDERS: dict[Provider, ProviderConfig] = {
    Provider.SLACK: ProviderConfig(
        provider=Provider.SLACK,
        authorize_url="https://slack.com/oauth/v2/authorize",
        token_url="https://slack.com/api/oauth.v2.access",
        scopes=SLACK_SCOPES,
        client_id_env="SLACK_CLIENT_ID",
        client_secret_env="SLACK_CLIENT_SECRET",
        scope_separator=",",
        source_types=(SourceType.SLACK, SourceType.SLACK_MCP),
    ),
    Provider.GOOGLE: ProviderConfig(
        provider=Provider.GOOGLE,
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scopes=GOOGLE_SCOPES,
        client_id_env="GOOGLE_CLIENT_ID",
        client_secret_env="GOOGLE_CLIENT_SECRET",
        scope_separator=" ",
        source_types=(
            SourceType.GMAIL,
            SourceType.GOOGLE_DRIVE,
            SourceType.GOOGLE_CALENDAR,
            SourceType.GOOGLE_WORKSPACE_MCP,
        ),
        revoke_url="https://oauth2.googleapis.com/revoke",
        extra_authorize_params={
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        },
    ),
}

GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


def get_provider_config(provider: Provider | str) -> ProviderConfig:
    try:
        return PROVIDERS[Provider(provider)]
    except (ValueError, KeyError):
        raise UnknownProvider(str(provider))


def parse_provider(provider: str) -> Provider:
    try:
        return Provider(provider)
    except ValueError:
        raise UnknownProvider(provider)
