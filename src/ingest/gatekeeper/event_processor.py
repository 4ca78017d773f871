"""Post-acknowledgement processing of Slack Events API envelopes.

Pipeline per event: route to a tenant, apply the tenant's channel scope, dedupe by event id,
normalize, store. Routing misses and out-of-scope events are dropped before anything is written.
Every event is handled independently; a failure in one never affects another, and nothing here is
reported back to Slack (the delivery was already acknowledged).
"""

from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from connectors.base.utils.timestamp import utcnow
from connectors.slack.slack_normalizer import SlackEventNormalizer
from src.database.channel_scopes import ChannelScopeStore
from src.database.kv_store import KeyValueStore
from src.database.message_store import MessageStore
from src.ingest.channel_scope import ChannelScopeFilter
from src.ingest.gatekeeper.models import EventOutcome
from src.ingest.gatekeeper.tenant_router import WebhookTenantRouter
from src.ingest.gatekeeper.utils import extract_slack_team_id
from src.integrations.exceptions import NoTenantForEvent, ScopeRejected
from src.integrations.models import ChannelInfo, Provider
from src.utils.error_handling import ErrorCounter, record_exception_and_ignore
from src.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

PROCESSED_EVENT_PREFIX = "processed_event:"
PROCESSED_EVENT_TTL_SECONDS = 3600

# Message subtypes that carry user content; everything else (joins, topic changes, ...) is skipped
CONTENT_MESSAGE_SUBTYPES = frozenset({None, "thread_broadcast", "file_share", "me_message"})


def processed_event_key(provider: Provider, event_id: str) -> str:
    return f"{PROCESSED_EVENT_PREFIX}{provider.value}:{event_id}"


class SlackEventProcessor:
    def __init__(
        self,
        store: KeyValueStore,
        router: WebhookTenantRouter,
        scope_filter: ChannelScopeFilter,
        normalizer: SlackEventNormalizer,
        messages: MessageStore,
        channel_scopes: ChannelScopeStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._router = router
        self._scope_filter = scope_filter
        self._normalizer = normalizer
        self._messages = messages
        self._channel_scopes = channel_scopes
        self._clock = clock
        self.outcomes: Counter[EventOutcome] = Counter()

    async def process_envelope(self, envelope: dict[str, Any]) -> EventOutcome:
        """Process one `event_callback` envelope.

        The dedupe marker is claimed once the event is routed and in scope, and released again if
        processing raises, so a redelivery of a failed event is retried while a redelivery of a
        handled one is dropped.
        """
        event_id = envelope.get("event_id")
        if not event_id:
            raise ValueError("Slack envelope has no event_id")

        with LogContext(provider=Provider.SLACK.value, event_id=event_id):
            team_id = extract_slack_team_id(envelope)
            routing = await self._router.resolve(Provider.SLACK, team_id)
            if routing.tenant_id is None:
                diagnostic = NoTenantForEvent(Provider.SLACK.value, team_id)
                logger.info(f"Dropping event: {diagnostic}", team_id=team_id, reason=routing.reason)
                return self._count(EventOutcome.NO_TENANT)

            tenant_id = routing.tenant_id
            event = envelope.get("event") or {}
            with LogContext(tenant_id=tenant_id):
                if not await self._in_scope(tenant_id, event):
                    return self._count(EventOutcome.OUT_OF_SCOPE)

                key = processed_event_key(Provider.SLACK, event_id)
                claimed = await self._store.insert_if_absent(
                    key,
                    {"processed_at": self._clock().isoformat()},
                    ttl_seconds=PROCESSED_EVENT_TTL_SECONDS,
                )
                if not claimed:
                    logger.info("Duplicate Slack event delivery dropped")
                    return self._count(EventOutcome.DUPLICATE)

                try:
                    outcome = await self._handle_event(tenant_id, event_id, event)
                except Exception:
                    await self._store.delete(key)
                    raise
                return self._count(outcome)

    async def process_batch(self, envelopes: Iterable[dict[str, Any]]) -> ErrorCounter:
        counter: ErrorCounter = {}
        for envelope in envelopes:
            event_id = envelope.get("event_id", "unknown")
            with record_exception_and_ignore(
                logger, f"Failed to process Slack event {event_id}", counter
            ):
                await self.process_envelope(envelope)
        return counter

    async def _handle_event(
        self, tenant_id: str, event_id: str, event: dict[str, Any]
    ) -> EventOutcome:
        event_type = event.get("type")
        if event_type == "message":
            return await self._handle_message(tenant_id, event_id, event)
        if event_type in ("channel_created", "channel_rename"):
            return await self._handle_channel_change(tenant_id, event)
        if event_type == "member_joined_channel":
            logger.info(
                "Member joined channel", channel_id=event.get("channel"), user_id=event.get("user")
            )
            return EventOutcome.IGNORED

        logger.debug(f"Ignoring Slack event type {event_type}")
        return EventOutcome.IGNORED

    async def _handle_message(
        self, tenant_id: str, event_id: str, event: dict[str, Any]
    ) -> EventOutcome:
        subtype = event.get("subtype")
        channel_id = event.get("channel") or ""

        if subtype == "message_deleted":
            deleted_ts = event.get("deleted_ts") or (event.get("previous_message") or {}).get("ts")
            if deleted_ts:
                await self._messages.delete(tenant_id, channel_id, deleted_ts)
            return EventOutcome.DELETED

        if subtype == "message_changed":
            edited = {**(event.get("message") or {}), "channel": channel_id}
            if edited.get("bot_id"):
                return EventOutcome.IGNORED
            message = await self._normalizer.normalize(tenant_id, event_id, edited, edited=True)
            if not await self._messages.save(message):
                return EventOutcome.SUPERSEDED
            return EventOutcome.EDITED

        if subtype == "bot_message" or event.get("bot_id"):
            return EventOutcome.IGNORED
        if subtype not in CONTENT_MESSAGE_SUBTYPES:
            logger.debug(f"Ignoring message subtype {subtype}")
            return EventOutcome.IGNORED

        message = await self._normalizer.normalize(tenant_id, event_id, event)
        if not await self._messages.save(message):
            return EventOutcome.SUPERSEDED
        logger.info("Slack message stored", channel_id=channel_id, ts=message.ts)
        return EventOutcome.STORED

    async def _handle_channel_change(self, tenant_id: str, event: dict[str, Any]) -> EventOutcome:
        channel = event.get("channel") or {}
        if not isinstance(channel, dict) or not channel.get("id"):
            return EventOutcome.IGNORED
        await self._channel_scopes.upsert_catalog_channel(
            tenant_id,
            ChannelInfo(
                id=channel["id"],
                name=channel.get("name") or channel["id"],
                is_private=bool(channel.get("is_private")),
            ),
        )
        return EventOutcome.CATALOG_UPDATED

    async def _in_scope(self, tenant_id: str, event: dict[str, Any]) -> bool:
        """Channel scope applies to message events; other event types pass."""
        if event.get("type") != "message":
            return True
        try:
            await self._scope_filter.check(tenant_id, event.get("channel") or "")
        except ScopeRejected as e:
            logger.debug(f"Dropping event: {e}")
            return False
        return True

    def _count(self, outcome: EventOutcome) -> EventOutcome:
        self.outcomes[outcome] += 1
        return outcome
