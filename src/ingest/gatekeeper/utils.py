"""Utility functions for gatekeeper service."""

import json
import urllib.parse
from typing import Any

from src.utils.logging import get_logger

logger = get_logger(__name__)


def check_slack_url_verification(body_str: str) -> str | None:
    """Check if Slack webhook is a URL verification challenge.

    Args:
        body_str: Webhook body as string

    Returns:
        Challenge string if this is a URL verification, None otherwise
    """
    try:
        payload = json.loads(body_str)
    except ValueError:
        return None
    if isinstance(payload, dict) and payload.get("type") == "url_verification":
        logger.info("Slack URL verification challenge received")
        return str(payload.get("challenge", ""))
    return None


def parse_slack_payload(body_str: str) -> dict[str, Any] | None:
    """Parse Slack webhook payload from JSON or form-encoded format.

    Args:
        body_str: Webhook body as string (may be JSON or form-encoded)

    Returns:
        Parsed payload dict, or None if parsing fails
    """
    try:
        if body_str.startswith("payload="):
            form_data = urllib.parse.parse_qs(body_str)
            payload = json.loads(form_data["payload"][0])
        else:
            payload = json.loads(body_str)
    except (ValueError, KeyError, IndexError):
        return None
    return payload if isinstance(payload, dict) else None


def extract_slack_team_id(payload: dict[str, Any]) -> str | None:
    """Workspace id of an Events API envelope or interactive payload."""
    team = payload.get("team")
    if isinstance(team, dict) and team.get("id"):
        return team["id"]
    if payload.get("team_id"):
        return payload["team_id"]
    # Org-wide installs list the receiving workspace under authorizations
    for authorization in payload.get("authorizations") or []:
        if authorization.get("team_id"):
            return authorization["team_id"]
    return None


def normalize_headers(headers: Any) -> dict[str, str]:
    """Lower-cased header dict for case-insensitive lookups."""
    return {str(key).lower(): str(value) for key, value in dict(headers).items()}
