"""Exception taxonomy for the integration gateway."""


class GatewayError(Exception):
    """Base class for gateway errors."""


class UnknownProvider(GatewayError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class ProviderAuthError(GatewayError):
    """Authorization or token exchange failed at the provider.

    `error_code` is the provider's raw error code (e.g. Slack's `invalid_code`, Google's
    `invalid_grant`), or a local code such as `network_error` when the provider was unreachable.
    """

    def __init__(self, provider: str, error_code: str, detail: str | None = None):
        self.provider = provider
        self.error_code = error_code
        self.detail = detail
        message = f"{provider} authorization failed: {error_code}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidState(GatewayError):
    """OAuth callback state did not parse, or its nonce was unknown, expired or already used."""


class CredentialCorrupt(GatewayError):
    """A stored credential blob could not be decrypted or decoded."""


class CipherConfigurationError(GatewayError):
    """The credential cipher has no usable key. The process must not start."""


class NoTenantForEvent(GatewayError):
    def __init__(self, provider: str, team_id: str | None):
        self.provider = provider
        self.team_id = team_id
        super().__init__(f"No tenant owns {provider} team {team_id}")


class ScopeRejected(GatewayError):
    def __init__(self, tenant_id: str, sub_resource_id: str):
        self.tenant_id = tenant_id
        self.sub_resource_id = sub_resource_id
        super().__init__(f"{sub_resource_id} is outside the channel scope of tenant {tenant_id}")


class ProbeFailure(GatewayError):
    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} probe failed: {reason}")


class ProbeTimeout(ProbeFailure):
    def __init__(self, source: str, timeout: float):
        self.timeout = timeout
        super().__init__(source, f"timed out after {timeout:g}s")


class StoreUnavailable(GatewayError):
    """Durable storage I/O failed."""
