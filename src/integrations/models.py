"""Pydantic models for gateway records.

Every persisted record is stored as `model_dump(mode="json")` in the key-value store and loaded
back with `model_validate`. Timestamps are aware UTC datetimes.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from connectors.base.utils.timestamp import utcnow


class Provider(str, Enum):
    """External providers with a full OAuth installation."""

    SLACK = "slack"
    GOOGLE = "google"


class SourceType(str, Enum):
    """Keys for status reporting and connection state."""

    SLACK = "slack"
    GMAIL = "gmail"
    GOOGLE_DRIVE = "google-drive"
    GOOGLE_CALENDAR = "google-calendar"
    SLACK_MCP = "slack-mcp"
    GOOGLE_WORKSPACE_MCP = "google-workspace-mcp"
    JIRA_MCP = "jira-mcp"


class InstallationStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class InstallPhase(str, Enum):
    NOT_STARTED = "not_started"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CODE_RECEIVED = "code_received"
    TOKEN_EXCHANGED = "token_exchanged"
    STORED = "stored"
    FAILED = "failed"


class CredentialBundle(BaseModel):
    """Decrypted provider credentials. Lives in memory for a single operation only."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    account_id: str | None = None
    token_type: str = "bearer"
    extra: dict[str, str] = Field(default_factory=dict)

    def expires_within(self, window: timedelta, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - (now or utcnow()) <= window

    def __repr__(self) -> str:
        return f"CredentialBundle(account_id={self.account_id!r}, scopes={self.scopes!r})"

    __str__ = __repr__


class Installation(BaseModel):
    tenant_id: str
    provider: Provider
    provider_team_id: str
    provider_team_name: str | None = None
    encrypted_credential_bundle: str | None = None
    status: InstallationStatus = InstallationStatus.ACTIVE
    scopes: list[str] = Field(default_factory=list)
    installed_at: datetime
    # Ownership time used for routing; token refreshes only move credentials_refreshed_at
    updated_at: datetime
    credentials_refreshed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == InstallationStatus.ACTIVE

    def to_public_dict(self) -> dict[str, Any]:
        """Installation fields that are safe to return to API callers."""
        return self.model_dump(mode="json", exclude={"encrypted_credential_bundle"}) | {
            "has_credentials": self.encrypted_credential_bundle is not None
        }


class TeamIndexEntry(BaseModel):
    tenant_id: str
    updated_at: datetime


class ChannelScope(BaseModel):
    tenant_id: str
    selected_sub_resource_ids: set[str] = Field(default_factory=set)
    last_configured_at: datetime


class ChannelInfo(BaseModel):
    id: str
    name: str
    is_private: bool = False
    is_archived: bool = False
    num_members: int | None = None


class ChannelCatalog(BaseModel):
    """Channels visible to the installed app, synced after install for the scope picker."""

    tenant_id: str
    channels: list[ChannelInfo] = Field(default_factory=list)
    synced_at: datetime


class ConnectionState(BaseModel):
    tenant_id: str
    source_type: SourceType
    connected: bool = False
    connected_at: datetime | None = None
    disconnected_at: datetime | None = None
    last_activity: datetime


SourceState = Literal["connected", "disconnected", "error"]


class SourceStatus(BaseModel):
    source: SourceType
    connected: bool
    state: SourceState
    reason: str | None = None
    checked_at: datetime
    from_cache: bool = False
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def connected_now(cls, source: SourceType, **details: Any) -> "SourceStatus":
        return cls(source=source, connected=True, state="connected", checked_at=utcnow(), details=details)

    @classmethod
    def disconnected(cls, source: SourceType, reason: str, **details: Any) -> "SourceStatus":
        return cls(
            source=source,
            connected=False,
            state="disconnected",
            reason=reason,
            checked_at=utcnow(),
            details=details,
        )

    @classmethod
    def errored(cls, source: SourceType, reason: str) -> "SourceStatus":
        return cls(source=source, connected=False, state="error", reason=reason, checked_at=utcnow())


class StatusCacheEntry(BaseModel):
    payload: SourceStatus
    expires_at: datetime
    is_failure: bool = False


class StatusSummary(BaseModel):
    total: int
    connected: int
    disconnected: int
    erroring: int


class StatusTiming(BaseModel):
    duration_ms: float
    checked_sources: list[SourceType]
    cached_sources: list[SourceType]


class StatusReport(BaseModel):
    tenant_id: str
    success: bool = True
    from_cache: bool
    statuses: dict[SourceType, SourceStatus]
    summary: StatusSummary
    timing: StatusTiming


class CanonicalMessage(BaseModel):
    """Provider-neutral message record handed to message storage."""

    event_id: str
    tenant_id: str
    provider: Provider
    channel_id: str
    channel_name: str
    user_id: str
    user_name: str
    text: str
    raw_text: str
    mentioned_user_ids: list[str] = Field(default_factory=list)
    mentioned_channel_ids: list[str] = Field(default_factory=list)
    ts: str
    sent_at: datetime
    thread_ts: str | None = None
    is_thread_reply: bool = False
    edited: bool = False
