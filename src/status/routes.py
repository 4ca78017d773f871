"""Status endpoints for the web app's integrations page."""

from fastapi import APIRouter, Depends, HTTPException, Query

from src.integrations.models import SourceType, StatusReport
from src.integrations.oauth_installer import is_valid_tenant_id
from src.integrations.services import GatewayServices, services_from_request
from src.utils.logging import LogContext

router = APIRouter()


def parse_sources(raw: str | None) -> list[SourceType] | None:
    if not raw:
        return None
    try:
        return [SourceType(item.strip()) for item in raw.split(",") if item.strip()]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/status", response_model=StatusReport)
async def get_status(
    tenant_id: str = Query(...),
    sources: str | None = Query(None, description="Comma-separated source types"),
    services: GatewayServices = Depends(services_from_request),
):
    if not is_valid_tenant_id(tenant_id):
        raise HTTPException(status_code=400, detail="Invalid tenant_id")
    with LogContext(tenant_id=tenant_id):
        return await services.aggregator.get_status(tenant_id, parse_sources(sources))


@router.delete("/status")
async def invalidate_status(
    tenant_id: str = Query(...),
    source: str | None = Query(None),
    services: GatewayServices = Depends(services_from_request),
):
    if not is_valid_tenant_id(tenant_id):
        raise HTTPException(status_code=400, detail="Invalid tenant_id")
    selected = parse_sources(source)
    if selected and len(selected) > 1:
        raise HTTPException(status_code=400, detail="Invalidate one source or all of them")
    removed = await services.aggregator.invalidate(tenant_id, selected[0] if selected else None)
    return {"success": True, "tenant_id": tenant_id, "invalidated": [s.value for s in removed]}


@router.get("/status/cache-stats")
async def status_cache_stats(
    tenant_id: str | None = Query(None),
    services: GatewayServices = Depends(services_from_request),
):
    """Live and stale status cache entry counts, overall or for one tenant."""
    if tenant_id is not None and not is_valid_tenant_id(tenant_id):
        raise HTTPException(status_code=400, detail="Invalid tenant_id")
    return await services.status_cache.stats(tenant_id)
