"""Route definitions for gatekeeper service."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response

from connectors.slack.slack_webhook_handler import extract_slack_webhook_metadata
from src.ingest.gatekeeper.event_processor import SlackEventProcessor
from src.ingest.gatekeeper.models import WebhookResponse
from src.ingest.gatekeeper.utils import (
    check_slack_url_verification,
    normalize_headers,
    parse_slack_payload,
)
from src.ingest.gatekeeper.verification import WebhookVerifier
from src.integrations.services import GatewayServices, services_from_request
from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


async def process_slack_envelope(processor: SlackEventProcessor, envelope: dict) -> None:
    """Background task: process one acknowledged envelope, never raising."""
    counter = await processor.process_batch([envelope])
    if counter.get("failed"):
        logger.warning("Slack event processing failed", event_id=envelope.get("event_id"))


@router.post("/webhooks/slack", response_model=WebhookResponse, response_model_exclude_none=True)
async def slack_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: GatewayServices = Depends(services_from_request),
):
    """Verify, acknowledge and enqueue a Slack Events API delivery.

    The signature is checked first, including for url_verification challenges. Processing runs
    after the 200 is sent so Slack's three-second delivery deadline is never at risk.
    """
    body = await request.body()
    headers = normalize_headers(request.headers)
    body_str = body.decode("utf-8", errors="replace")

    verifier: WebhookVerifier = request.app.state.slack_verifier
    verification = await verifier.verify(headers, body)
    if not verification.success:
        logger.warning(f"Slack webhook rejected: {verification.error}")
        raise HTTPException(status_code=401, detail="Invalid Slack signature")

    if (challenge := check_slack_url_verification(body_str)) is not None:
        return Response(content=challenge, media_type="text/plain")

    payload = parse_slack_payload(body_str)
    if payload is None:
        raise HTTPException(status_code=400, detail="Unparseable Slack payload")

    metadata = extract_slack_webhook_metadata(headers, body_str)
    logger.info("Slack webhook received", **metadata)

    if payload.get("type") == "event_callback":
        background_tasks.add_task(process_slack_envelope, services.event_processor, payload)
    else:
        logger.info(f"Ignoring Slack payload type {payload.get('type')}")

    return WebhookResponse(ok=True)
