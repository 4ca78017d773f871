"""Normalize Slack message events into CanonicalMessage records."""

import asyncio
from collections.abc import Iterable
from typing import Any

import newrelic.agent
from slack_sdk.errors import SlackApiError

from connectors.base.utils.timestamp import parse_slack_ts
from connectors.slack.slack_message_utils import convert_mrkdwn, extract_mentions
from src.clients.slack import SlackClient, slack_error_code, user_display_name
from src.integrations.exceptions import CredentialCorrupt, ProviderAuthError
from src.integrations.models import CanonicalMessage, Provider
from src.integrations.oauth_installer import OAuthInstaller, SlackClientFactory
from src.utils.config import get_slack_lookup_timeout
from src.utils.logging import get_logger
from src.utils.timeout import TimeoutError, with_timeout

logger = get_logger(__name__)


class SlackEventNormalizer:
    """Turns a Slack `message` event into a CanonicalMessage.

    User and channel names come from best-effort Slack lookups with the tenant's bot token. Each
    lookup has its own timeout; a failed, slow or unauthorized lookup falls back to the raw id and
    never fails the event.
    """

    def __init__(
        self,
        installer: OAuthInstaller,
        slack_client_factory: SlackClientFactory = SlackClient,
        lookup_timeout: float | None = None,
    ):
        self._installer = installer
        self._slack_client_factory = slack_client_factory
        self.lookup_timeout = lookup_timeout if lookup_timeout is not None else get_slack_lookup_timeout()

    async def normalize(
        self, tenant_id: str, event_id: str, event: dict[str, Any], edited: bool = False
    ) -> CanonicalMessage:
        """Build the canonical record for one message event.

        Raises:
            ValueError: the event has no channel or an invalid ts
        """
        channel_id = event.get("channel")
        ts = event.get("ts")
        if not channel_id or not ts:
            raise ValueError("Slack message event is missing channel or ts")

        raw_text = event.get("text") or ""
        user_id = event.get("user") or event.get("bot_id") or "unknown"
        mentioned_users, mentioned_channels = extract_mentions(raw_text)

        client = await self._client_for(tenant_id)
        user_names = await self._lookup_users(client, [user_id, *mentioned_users])
        channel_names = await self._lookup_channels(client, [channel_id, *mentioned_channels])

        thread_ts = event.get("thread_ts")
        return CanonicalMessage(
            event_id=event_id,
            tenant_id=tenant_id,
            provider=Provider.SLACK,
            channel_id=channel_id,
            channel_name=channel_names.get(channel_id, channel_id),
            user_id=user_id,
            user_name=user_names.get(user_id) or event.get("username") or user_id,
            text=convert_mrkdwn(raw_text, user_names, channel_names),
            raw_text=raw_text,
            mentioned_user_ids=mentioned_users,
            mentioned_channel_ids=mentioned_channels,
            ts=ts,
            sent_at=parse_slack_ts(ts),
            thread_ts=thread_ts,
            is_thread_reply=bool(thread_ts) and thread_ts != ts,
            edited=edited or bool(event.get("edited")),
        )

    async def _client_for(self, tenant_id: str) -> SlackClient | None:
        try:
            credentials = await self._installer.get_credentials(tenant_id, Provider.SLACK)
        except (CredentialCorrupt, ProviderAuthError) as e:
            logger.warning(f"No usable Slack credentials for lookups: {e}", tenant_id=tenant_id)
            return None
        if credentials is None:
            return None
        return self._slack_client_factory(credentials.access_token)

    async def _lookup_users(self, client: SlackClient | None, user_ids: Iterable[str]) -> dict[str, str]:
        if client is None:
            return {}
        ids = [i for i in dict.fromkeys(user_ids) if i != "unknown"]
        users = await asyncio.gather(
            *(self._lookup(client.aget_user_info, user_id, "users.info") for user_id in ids)
        )
        names: dict[str, str] = {}
        for user_id, user in zip(ids, users, strict=True):
            if user and (name := user_display_name(user)):
                names[user_id] = name
        return names

    async def _lookup_channels(
        self, client: SlackClient | None, channel_ids: Iterable[str]
    ) -> dict[str, str]:
        if client is None:
            return {}
        ids = list(dict.fromkeys(channel_ids))
        channels = await asyncio.gather(
            *(self._lookup(client.aget_channel_info, channel_id, "conversations.info") for channel_id in ids)
        )
        return {
            channel_id: channel["name"]
            for channel_id, channel in zip(ids, channels, strict=True)
            if channel and channel.get("name")
        }

    async def _lookup(self, method, resource_id: str, operation: str) -> dict[str, Any] | None:
        try:
            return await with_timeout(method, self.lookup_timeout, f"slack {operation}", resource_id)
        except TimeoutError:
            return None
        except SlackApiError as e:
            logger.warning(f"Slack {operation} failed for {resource_id}: {slack_error_code(e)}")
            return None
        except OSError as e:
            logger.warning(f"Slack {operation} unreachable for {resource_id}: {e}")
            return None
        except Exception as e:
            newrelic.agent.record_exception()
            logger.warning(f"Slack {operation} lookup error for {resource_id}: {e!r}")
            return None
