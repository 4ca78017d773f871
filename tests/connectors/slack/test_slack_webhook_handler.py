"""Tests for Slack webhook signature verification."""

import json
import time

import pytest

from connectors.slack.slack_webhook_handler import (
    SlackWebhookVerifier,
    extract_slack_webhook_metadata,
    sign_slack_request,
    verify_slack_webhook,
)
from src.ingest.gatekeeper.verification import BaseSigningSecretVerifier

SECRET = "8f742231b10e8888abcd99yyyzzz85a5"
BODY = b'{"type":"event_callback","event_id":"Ev1"}'


class TestVerifySlackWebhook:
    def test_valid_signature(self):
        headers = sign_slack_request(BODY, SECRET, 1_700_000_000)

        verify_slack_webhook(headers, BODY, SECRET, now=1_700_000_010)

    def test_tampered_body(self):
        headers = sign_slack_request(BODY, SECRET, 1_700_000_000)

        with pytest.raises(ValueError, match="signature verification failed"):
            verify_slack_webhook(headers, BODY + b" ", SECRET, now=1_700_000_000)

    def test_wrong_secret(self):
        headers = sign_slack_request(BODY, "other-secret", 1_700_000_000)

        with pytest.raises(ValueError):
            verify_slack_webhook(headers, BODY, SECRET, now=1_700_000_000)

    @pytest.mark.parametrize("skew", [301, -301])
    def test_stale_or_future_timestamp(self, skew):
        headers = sign_slack_request(BODY, SECRET, 1_700_000_000)

        with pytest.raises(ValueError, match="too old"):
            verify_slack_webhook(headers, BODY, SECRET, now=1_700_000_000 + skew)

    def test_edge_of_replay_window(self):
        headers = sign_slack_request(BODY, SECRET, 1_700_000_000)

        verify_slack_webhook(headers, BODY, SECRET, now=1_700_000_300)

    def test_missing_headers(self):
        with pytest.raises(ValueError, match="Missing required"):
            verify_slack_webhook({}, BODY, SECRET)

    def test_invalid_timestamp(self):
        headers = {"x-slack-request-timestamp": "soon", "x-slack-signature": "v0=abc"}

        with pytest.raises(ValueError, match="Invalid timestamp format"):
            verify_slack_webhook(headers, BODY, SECRET)

    def test_missing_secret(self):
        headers = sign_slack_request(BODY, SECRET, int(time.time()))

        with pytest.raises(ValueError, match="not configured"):
            verify_slack_webhook(headers, BODY, "")


class TestSlackWebhookVerifier:
    @pytest.mark.asyncio
    async def test_accepts_current_signature(self):
        headers = sign_slack_request(BODY, SECRET, int(time.time()))

        result = await SlackWebhookVerifier(secret=SECRET, validation_disabled=False).verify(
            headers, BODY
        )

        assert result.success is True
        assert result.error is None

    @pytest.mark.asyncio
    async def test_fails_closed_without_secret(self, monkeypatch):
        monkeypatch.delenv("SLACK_SIGNING_SECRET", raising=False)
        headers = sign_slack_request(BODY, SECRET, int(time.time()))

        result = await SlackWebhookVerifier(validation_disabled=False).verify(headers, BODY)

        assert result.success is False
        assert "signing secret" in result.error

    @pytest.mark.asyncio
    async def test_reads_secret_from_environment(self, monkeypatch):
        monkeypatch.setenv("SLACK_SIGNING_SECRET", SECRET)
        headers = sign_slack_request(BODY, SECRET, int(time.time()))

        result = await SlackWebhookVerifier(validation_disabled=False).verify(headers, BODY)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_validation_can_be_disabled(self):
        result = await SlackWebhookVerifier(validation_disabled=True).verify({}, BODY)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_verify_func_errors_become_failures(self):
        def failing_verify(headers, body, secret):
            raise ValueError("Signature mismatch")

        class FailingVerifier(BaseSigningSecretVerifier):
            source_type = "test_source"
            verify_func = staticmethod(failing_verify)
            get_secret = staticmethod(lambda: "secret")

        result = await FailingVerifier(validation_disabled=False).verify({}, b"")

        assert result.success is False
        assert result.error == "Signature mismatch"


class TestExtractSlackWebhookMetadata:
    def test_event_callback(self):
        body = json.dumps(
            {
                "type": "event_callback",
                "team_id": "T1",
                "event_id": "Ev1",
                "event": {"type": "message", "channel": "C100", "user": "U1", "ts": "1.000100"},
            }
        )

        metadata = extract_slack_webhook_metadata({"x-slack-retry-num": "1"}, body)

        assert metadata["team_id"] == "T1"
        assert metadata["entity_type"] == "message"
        assert metadata["entity_id"] == "C100"
        assert metadata["retry_num"] == "1"

    def test_url_verification_hides_challenge(self):
        body = json.dumps({"type": "url_verification", "challenge": "secret-challenge"})

        metadata = extract_slack_webhook_metadata({}, body)

        assert metadata["entity_type"] == "url_verification"
        assert "secret-challenge" not in str(metadata)

    def test_unparseable_body(self):
        metadata = extract_slack_webhook_metadata({}, "payload=%7B")

        assert metadata["parse_error"] == "Failed to parse JSON"
        assert metadata["payload_size"] == len("payload=%7B")
