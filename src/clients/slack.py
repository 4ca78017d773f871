"""Slack client utility for the Slack Web API calls the gateway makes."""

import asyncio
import hashlib
from typing import Any

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_handlers import RateLimitErrorRetryHandler

from src.utils.logging import get_logger
from src.utils.ttl_cache import ttl_cache

logger = get_logger(__name__)

SLACK_HTTP_TIMEOUT_SECONDS = 10
# Errors meaning the stored token will never work again
SLACK_INVALID_TOKEN_ERRORS = frozenset(
    {
        "invalid_auth",
        "not_authed",
        "token_revoked",
        "token_expired",
        "account_inactive",
        "app_uninstalled",
    }
)


def slack_error_code(error: SlackApiError) -> str:
    return str(error.response.get("error", "unknown_error"))


class SlackClient:
    """A client for the Slack API bound to one bot token.

    Methods are synchronous like slack_sdk's WebClient; async callers go through the `a*`
    wrappers, which run the call in a worker thread. Lookups are cached per token for 15 minutes.
    """

    def __init__(self, token: str, timeout: int = SLACK_HTTP_TIMEOUT_SECONDS):
        if not token:
            raise ValueError("Slack token is required and cannot be empty")

        self.client = WebClient(token=token, timeout=timeout)
        self.client.retry_handlers.append(RateLimitErrorRetryHandler(max_retry_count=1))
        self.cache_namespace = hashlib.sha256(token.encode()).hexdigest()[:16]

    def auth_test(self) -> dict[str, Any]:
        """Test authentication. Raises SlackApiError when the token is not usable."""
        response = self.client.auth_test()
        return dict(response.data)  # type: ignore[arg-type]

    def revoke(self) -> bool:
        """Revoke the token at Slack (auth.revoke)."""
        response = self.client.auth_revoke()
        return bool(response.get("revoked"))

    @ttl_cache(ttl=900)
    def get_user_info(self, user_id: str) -> dict[str, Any] | None:
        """User object, or None when Slack cannot resolve the id."""
        try:
            return self.client.users_info(user=user_id).get("user")
        except SlackApiError as e:
            if slack_error_code(e) in ("user_not_found", "user_not_visible"):
                return None
            raise

    @ttl_cache(ttl=900)
    def get_channel_info(self, channel_id: str) -> dict[str, Any] | None:
        """Channel object, or None when Slack cannot resolve the id."""
        try:
            return self.client.conversations_info(channel=channel_id).get("channel")
        except SlackApiError as e:
            if slack_error_code(e) == "channel_not_found":
                return None
            raise

    def list_channels(
        self, types: str = "public_channel,private_channel", exclude_archived: bool = True
    ) -> list[dict[str, Any]]:
        """All channels visible to the bot, following cursor pagination."""
        channels: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            response = self.client.conversations_list(
                types=types, exclude_archived=exclude_archived, limit=200, cursor=cursor
            )
            channels.extend(response.get("channels", []))
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return channels

    async def aauth_test(self) -> dict[str, Any]:
        return await asyncio.to_thread(self.auth_test)

    async def arevoke(self) -> bool:
        return await asyncio.to_thread(self.revoke)

    async def aget_user_info(self, user_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self.get_user_info, user_id)

    async def aget_channel_info(self, channel_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self.get_channel_info, channel_id)

    async def alist_channels(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.list_channels)


def user_display_name(user: dict[str, Any]) -> str | None:
    profile = user.get("profile") or {}
    return (
        profile.get("display_name")
        or profile.get("real_name")
        or user.get("real_name")
        or user.get("name")
        or None
    )
