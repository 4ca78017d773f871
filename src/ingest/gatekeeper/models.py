"""Pydantic models for the gatekeeper service."""

from enum import Enum

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Immediate acknowledgement returned to the provider."""

    ok: bool = True
    message: str | None = None


class EventOutcome(str, Enum):
    """What happened to one webhook event after acknowledgement."""

    STORED = "stored"
    EDITED = "edited"
    DELETED = "deleted"
    CATALOG_UPDATED = "catalog_updated"
    DUPLICATE = "duplicate"
    NO_TENANT = "no_tenant"
    OUT_OF_SCOPE = "out_of_scope"
    SUPERSEDED = "superseded"
    IGNORED = "ignored"


class RoutingResult(BaseModel):
    """Tenant resolved for a provider team id, or None with the reason."""

    tenant_id: str | None
    reason: str
    conflicting_tenant_ids: list[str] = []
