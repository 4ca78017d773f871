"""OAuth install/callback, disconnect, channel scope, stored message, connection-state and admin
endpoints."""

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from src.integrations.disconnect import DisconnectMode
from src.integrations.exceptions import InvalidState, ProviderAuthError
from src.integrations.models import Provider, SourceType
from src.integrations.oauth_installer import is_valid_tenant_id, parse_state
from src.integrations.providers import parse_provider
from src.integrations.services import GatewayServices, services_from_request
from src.utils.config import get_app_base_url
from src.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

router = APIRouter()


class ChannelScopeUpdate(BaseModel):
    channel_ids: list[str] = Field(default_factory=list)


def require_tenant_id(tenant_id: str) -> str:
    if not is_valid_tenant_id(tenant_id):
        raise HTTPException(status_code=400, detail="Invalid tenant_id")
    return tenant_id


def parse_source_type(source_type: str) -> SourceType:
    try:
        return SourceType(source_type)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown source type: {source_type}")


def tenant_redirect(tenant_id: str | None, params: dict[str, str]) -> RedirectResponse:
    """Redirect back to the tenant's page in the web app, or the app root if unknown."""
    base_url = get_app_base_url()
    target = f"{base_url}/contexts/{tenant_id}" if tenant_id else base_url
    return RedirectResponse(f"{target}?{urlencode(params)}", status_code=302)


def tenant_from_state(state: str | None) -> str | None:
    try:
        return parse_state(state)[0]
    except InvalidState:
        return None


# OAuth


@router.get("/oauth/{provider}/install")
async def oauth_install(
    provider: str,
    tenant_id: str = Query(...),
    services: GatewayServices = Depends(services_from_request),
):
    """Start an install: redirect the browser to the provider's consent screen."""
    resolved = parse_provider(provider)
    require_tenant_id(tenant_id)
    with LogContext(tenant_id=tenant_id, provider=resolved.value):
        try:
            url = await services.installer.build_authorization_url(tenant_id, resolved)
        except ValueError as e:
            logger.error(f"OAuth app is not configured: {e}")
            raise HTTPException(status_code=503, detail=f"{resolved.value} OAuth is not configured")
    return RedirectResponse(url, status_code=307)


@router.get("/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    services: GatewayServices = Depends(services_from_request),
):
    """Provider redirect target. Always ends in a redirect back to the web app."""
    resolved = parse_provider(provider)
    error_param = f"{resolved.value}_error"

    if error:
        # Burn the nonce so the state cannot be replayed with a code later
        try:
            tenant_id = await services.installer.consume_state(resolved, state)
        except InvalidState:
            tenant_id = None
        logger.warning(
            "OAuth authorization denied at provider",
            tenant_id=tenant_id,
            provider=resolved.value,
            error_code=error,
        )
        return tenant_redirect(tenant_id, {error_param: error})

    try:
        result = await services.installer.complete_installation(resolved, code or "", state)
    except InvalidState as e:
        logger.warning(f"Rejected OAuth callback: {e}", provider=resolved.value)
        return tenant_redirect(tenant_from_state(state), {error_param: "invalid_state"})
    except ProviderAuthError as e:
        return tenant_redirect(tenant_from_state(state), {error_param: e.error_code})

    installation = result.installation
    return tenant_redirect(
        installation.tenant_id,
        {
            f"{resolved.value}_success": "true",
            "team": installation.provider_team_name or installation.provider_team_id,
        },
    )


# Disconnect


@router.api_route("/tenants/{tenant_id}/integrations/{provider}/disconnect", methods=["POST", "DELETE"])
async def disconnect_integration(
    tenant_id: str,
    provider: str,
    mode: DisconnectMode = DisconnectMode.SOFT,
    services: GatewayServices = Depends(services_from_request),
):
    require_tenant_id(tenant_id)
    resolved = parse_provider(provider)
    with LogContext(tenant_id=tenant_id, provider=resolved.value):
        result = await services.disconnects.disconnect(tenant_id, resolved, mode)
    return {
        "success": True,
        "tenant_id": tenant_id,
        "provider": resolved.value,
        "mode": result.mode.value,
        "was_installed": result.was_installed,
        "provider_revoked": result.provider_revoked,
        "invalidated_sources": [s.value for s in result.invalidated_sources],
        "installation": result.installation.to_public_dict() if result.installation else None,
    }


@router.get("/tenants/{tenant_id}/integrations/{provider}")
async def get_integration(
    tenant_id: str,
    provider: str,
    services: GatewayServices = Depends(services_from_request),
):
    require_tenant_id(tenant_id)
    installation = await services.installations.get(tenant_id, parse_provider(provider))
    if installation is None:
        raise HTTPException(status_code=404, detail="No installation")
    return installation.to_public_dict()


# Channel scope


@router.get("/tenants/{tenant_id}/channel-scope")
async def get_channel_scope(
    tenant_id: str, services: GatewayServices = Depends(services_from_request)
):
    require_tenant_id(tenant_id)
    scope = await services.channel_scopes.get(tenant_id)
    return {
        "tenant_id": tenant_id,
        "channel_ids": sorted(scope.selected_sub_resource_ids) if scope else [],
        "allow_all": scope is None or not scope.selected_sub_resource_ids,
        "last_configured_at": scope.last_configured_at.isoformat() if scope else None,
    }


@router.put("/tenants/{tenant_id}/channel-scope")
async def put_channel_scope(
    tenant_id: str,
    update: ChannelScopeUpdate,
    services: GatewayServices = Depends(services_from_request),
):
    require_tenant_id(tenant_id)
    scope = await services.channel_scopes.replace(tenant_id, update.channel_ids)
    logger.info(
        f"Channel scope replaced with {len(scope.selected_sub_resource_ids)} channel(s)",
        tenant_id=tenant_id,
    )
    return {
        "tenant_id": tenant_id,
        "channel_ids": sorted(scope.selected_sub_resource_ids),
        "allow_all": not scope.selected_sub_resource_ids,
        "last_configured_at": scope.last_configured_at.isoformat(),
    }


@router.get("/tenants/{tenant_id}/channels")
async def list_channels(tenant_id: str, services: GatewayServices = Depends(services_from_request)):
    require_tenant_id(tenant_id)
    catalog = await services.channel_scopes.get_catalog(tenant_id)
    if catalog is None:
        return {"tenant_id": tenant_id, "channels": [], "synced_at": None}
    return catalog.model_dump(mode="json")


@router.get("/tenants/{tenant_id}/channels/{channel_id}/messages")
async def list_channel_messages(
    tenant_id: str, channel_id: str, services: GatewayServices = Depends(services_from_request)
):
    """Stored messages of one channel, oldest first."""
    require_tenant_id(tenant_id)
    messages = await services.messages.list_channel(tenant_id, channel_id)
    return {
        "tenant_id": tenant_id,
        "channel_id": channel_id,
        "messages": [m.model_dump(mode="json") for m in messages],
    }


# Connection state


@router.get("/tenants/{tenant_id}/connections")
async def list_connections(
    tenant_id: str, services: GatewayServices = Depends(services_from_request)
):
    require_tenant_id(tenant_id)
    states = await services.connection_state.list_for_tenant(tenant_id)
    return {
        "tenant_id": tenant_id,
        "connections": [
            s.model_dump(mode="json") for s in sorted(states, key=lambda s: s.source_type.value)
        ],
    }


@router.post("/tenants/{tenant_id}/connections/{source_type}/connect")
async def connect_source(
    tenant_id: str, source_type: str, services: GatewayServices = Depends(services_from_request)
):
    require_tenant_id(tenant_id)
    source = parse_source_type(source_type)
    state = await services.connection_state.mark_connected(tenant_id, source)
    await services.status_cache.invalidate(tenant_id, source)
    return state.model_dump(mode="json")


@router.post("/tenants/{tenant_id}/connections/{source_type}/disconnect")
async def disconnect_source(
    tenant_id: str, source_type: str, services: GatewayServices = Depends(services_from_request)
):
    require_tenant_id(tenant_id)
    source = parse_source_type(source_type)
    state = await services.connection_state.mark_disconnected(tenant_id, source)
    await services.status_cache.invalidate(tenant_id, source)
    return state.model_dump(mode="json")


@router.get("/tenants/{tenant_id}/connections/{source_type}")
async def get_connection(
    tenant_id: str, source_type: str, services: GatewayServices = Depends(services_from_request)
):
    require_tenant_id(tenant_id)
    source = parse_source_type(source_type)
    state = await services.connection_state.details(tenant_id, source)
    if state is None:
        return {"tenant_id": tenant_id, "source_type": source.value, "connected": False}
    return state.model_dump(mode="json")


# Admin


@router.post("/admin/team-index/{provider}/rebuild")
async def rebuild_team_index(
    provider: str, services: GatewayServices = Depends(services_from_request)
):
    """Rewrite the webhook routing index for one provider from the installation records."""
    resolved = parse_provider(provider)
    owners = await services.router.rebuild_index(resolved)
    return {"provider": resolved.value, "owners": owners}
