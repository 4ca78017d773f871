"""FastAPI application factory for the integration gateway."""

import datetime
from contextlib import asynccontextmanager

import newrelic.agent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from connectors.slack.slack_webhook_handler import SlackWebhookVerifier
from src.cron import discover_and_register_jobs, setup_scheduler
from src.ingest.gatekeeper.routes import router as webhook_router
from src.ingest.gatekeeper.verification import WebhookVerifier
from src.integrations.exceptions import StoreUnavailable, UnknownProvider
from src.integrations.routes import router as integrations_router
from src.integrations.services import (
    GatewayServices,
    create_services_from_config,
    set_services,
)
from src.status.routes import router as status_router
from src.utils.config import get_scheduler_enabled, get_webhook_validation_disabled
from src.utils.logging import get_logger

logger = get_logger(__name__)


def create_app(
    services: GatewayServices | None = None,
    slack_verifier: WebhookVerifier | None = None,
) -> FastAPI:
    """Build the app. Services passed in are used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting integration gateway...")
        if get_webhook_validation_disabled():
            logger.warning(
                "⚠️ DANGEROUSLY_DISABLE_WEBHOOK_VALIDATION is enabled. "
                "Webhook signatures will NOT be verified!"
            )

        owns_services = services is None
        # CipherConfigurationError propagates here and aborts startup
        active = services if services is not None else await create_services_from_config()
        app.state.services = active
        set_services(active)

        scheduler: AsyncIOScheduler | None = None
        if get_scheduler_enabled():
            discover_and_register_jobs()
            scheduler = AsyncIOScheduler()
            setup_scheduler(scheduler)
            scheduler.start()

        logger.info("✅ Integration gateway startup complete")

        yield

        logger.info("🛑 Shutting down integration gateway...")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        set_services(None)
        if owns_services:
            await active.close()
        logger.info("✅ Integration gateway shutdown complete")

    app = FastAPI(
        title="Integration Gateway",
        description="Multi-tenant OAuth installation, webhook routing and connection status",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services
    app.state.slack_verifier = slack_verifier or SlackWebhookVerifier()

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        newrelic.agent.notice_error()
        logger.error(f"Store unavailable on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})

    @app.exception_handler(UnknownProvider)
    async def unknown_provider_handler(request: Request, exc: UnknownProvider):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/health/live")
    async def liveness_check():
        """Liveness probe endpoint - checks if the application is alive."""
        return {"status": "alive", "timestamp": datetime.datetime.now(datetime.UTC).isoformat()}

    @app.get("/health/ready")
    async def readiness_check(request: Request):
        """Readiness probe endpoint - checks that the stores are reachable."""
        active: GatewayServices | None = getattr(request.app.state, "services", None)
        if active is None:
            raise HTTPException(status_code=503, detail={"status": "not_ready", "error": "starting"})

        components = await active.ping()
        if not all(components.values()):
            logger.error("Readiness check failed", **components)
            raise HTTPException(
                status_code=503, detail={"status": "not_ready", "components": components}
            )
        return {"status": "ready", "components": components}

    app.include_router(webhook_router)
    app.include_router(integrations_router)
    app.include_router(status_router)
    return app
