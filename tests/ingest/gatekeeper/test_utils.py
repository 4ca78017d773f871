"""Tests for gatekeeper utility functions."""

import json
import urllib.parse

from src.ingest.gatekeeper.utils import (
    check_slack_url_verification,
    extract_slack_team_id,
    normalize_headers,
    parse_slack_payload,
)


class TestCheckSlackUrlVerification:
    def test_returns_challenge(self):
        body = json.dumps({"type": "url_verification", "challenge": "3eZbrw1aBm2rZgRNFdxV2595E9CY"})

        assert check_slack_url_verification(body) == "3eZbrw1aBm2rZgRNFdxV2595E9CY"

    def test_other_payloads(self):
        assert check_slack_url_verification(json.dumps({"type": "event_callback"})) is None
        assert check_slack_url_verification("not json") is None
        assert check_slack_url_verification("[1, 2]") is None


class TestParseSlackPayload:
    def test_json_body(self):
        assert parse_slack_payload('{"type": "event_callback"}') == {"type": "event_callback"}

    def test_form_encoded_body(self):
        body = "payload=" + urllib.parse.quote(json.dumps({"type": "block_actions"}))

        assert parse_slack_payload(body) == {"type": "block_actions"}

    def test_invalid_bodies(self):
        assert parse_slack_payload("{broken") is None
        assert parse_slack_payload("payload=") is None
        assert parse_slack_payload('"just a string"') is None


class TestExtractSlackTeamId:
    def test_team_object(self):
        assert extract_slack_team_id({"team": {"id": "T1"}, "team_id": "T2"}) == "T1"

    def test_team_id_field(self):
        assert extract_slack_team_id({"team_id": "T2"}) == "T2"

    def test_authorizations(self):
        payload = {"authorizations": [{"enterprise_id": "E1", "team_id": "T3"}]}

        assert extract_slack_team_id(payload) == "T3"

    def test_missing(self):
        assert extract_slack_team_id({"type": "event_callback"}) is None


class TestNormalizeHeaders:
    def test_lower_cases_keys(self):
        headers = normalize_headers({"X-Slack-Signature": "v0=abc", "Content-Type": "application/json"})

        assert headers == {"x-slack-signature": "v0=abc", "content-type": "application/json"}
