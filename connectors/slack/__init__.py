# Message text
from connectors.slack.slack_message_utils import convert_mrkdwn, extract_mentions

# Normalization
from connectors.slack.slack_normalizer import SlackEventNormalizer

# Webhooks
from connectors.slack.slack_webhook_handler import (
    SlackWebhookVerifier,
    extract_slack_webhook_metadata,
    sign_slack_request,
    verify_slack_webhook,
)

__all__ = [
    "SlackEventNormalizer",
    "SlackWebhookVerifier",
    "convert_mrkdwn",
    "extract_mentions",
    "extract_slack_webhook_metadata",
    "sign_slack_request",
    "verify_slack_webhook",
]
