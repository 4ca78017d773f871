"""
Slack webhook signature verification and observability metadata.
"""

import hashlib
import hmac
import json
import time

from src.ingest.gatekeeper.verification import BaseSigningSecretVerifier
from src.utils.config import get_slack_signing_secret
from src.utils.logging import get_logger

logger = get_logger(__name__)

SLACK_SIGNATURE_VERSION = "v0"
SLACK_REPLAY_WINDOW_SECONDS = 60 * 5


class SlackWebhookVerifier(BaseSigningSecretVerifier):
    """Verifier for Slack webhooks using HMAC-SHA256 signatures."""

    source_type = "slack"
    verify_func = staticmethod(lambda h, b, s: verify_slack_webhook(h, b, s))
    get_secret = staticmethod(get_slack_signing_secret)


def verify_slack_webhook(
    headers: dict[str, str], body: bytes, secret: str, now: float | None = None
) -> None:
    """Verify Slack webhook signature and timestamp.

    Raises:
        ValueError: missing secret or headers, stale timestamp, or signature mismatch
    """
    if not secret:
        raise ValueError("Slack signing secret is not configured")

    timestamp = headers.get("x-slack-request-timestamp")
    slack_signature = headers.get("x-slack-signature")

    if not timestamp or not slack_signature:
        raise ValueError("Missing required Slack signature headers")

    try:
        request_time = int(timestamp)
    except ValueError:
        raise ValueError("Invalid timestamp format in Slack request")

    # Reject requests outside the replay window in either direction
    current = time.time() if now is None else now
    if abs(current - request_time) > SLACK_REPLAY_WINDOW_SECONDS:
        raise ValueError("Slack request timestamp too old - potential replay attack")

    # Signature base string: version:timestamp:body
    sig_basestring = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode() + body

    expected_signature = (
        f"{SLACK_SIGNATURE_VERSION}="
        + hmac.new(secret.encode("utf-8"), sig_basestring, hashlib.sha256).hexdigest()
    )

    if not hmac.compare_digest(expected_signature, slack_signature):
        raise ValueError("Slack webhook signature verification failed")


def sign_slack_request(body: bytes, secret: str, timestamp: int) -> dict[str, str]:
    """Headers Slack would send for `body`. Used by local tooling and tests."""
    basestring = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode() + body
    digest = hmac.new(secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
    return {
        "x-slack-request-timestamp": str(timestamp),
        "x-slack-signature": f"{SLACK_SIGNATURE_VERSION}={digest}",
    }


def extract_slack_webhook_metadata(
    headers: dict[str, str], body_str: str
) -> dict[str, str | int | bool]:
    """Extract metadata from Slack webhook for observability.

    Safely extracts key information without failing webhook processing.

    Args:
        headers: Webhook headers
        body_str: Webhook body as string

    Returns:
        Dictionary containing extracted metadata with at least payload_size
    """
    metadata: dict[str, str | int | bool] = {"payload_size": len(body_str)}

    # Slack sets these when redelivering an event it considers unacknowledged
    if retry_num := headers.get("x-slack-retry-num"):
        metadata["retry_num"] = retry_num
    if retry_reason := headers.get("x-slack-retry-reason"):
        metadata["retry_reason"] = retry_reason

    try:
        payload = json.loads(body_str)
    except ValueError:
        metadata["parse_error"] = "Failed to parse JSON"
        return metadata
    if not isinstance(payload, dict):
        metadata["parse_error"] = "Payload is not an object"
        return metadata

    metadata["team_id"] = payload.get("team_id", "")
    metadata["api_app_id"] = payload.get("api_app_id", "")
    metadata["type"] = payload.get("type", "unknown")
    metadata["event_id"] = payload.get("event_id", "")
    metadata["event_time"] = payload.get("event_time", 0)

    if payload.get("type") == "url_verification":
        # The challenge token is not logged
        metadata["entity_type"] = "url_verification"
        return metadata

    if isinstance(event := payload.get("event"), dict):
        metadata["entity_type"] = event.get("type", "unknown")
        if subtype := event.get("subtype"):
            metadata["entity_subtype"] = subtype
        metadata["event_ts"] = event.get("event_ts", "")
        metadata["ts"] = event.get("ts", "")
        if user := event.get("user"):
            metadata["user"] = user
        if channel := event.get("channel"):
            # channel_created/channel_rename carry a channel object instead of an id
            metadata["entity_id"] = channel.get("id", "") if isinstance(channel, dict) else channel

    return metadata
