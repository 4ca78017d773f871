"""Idempotent sink for canonical messages.

Messages are keyed by (tenant, channel, ts), so a redelivered or edited event lands on the same
record instead of appending a duplicate. Slack does not guarantee delivery order, so writes are
monotonic: an unedited copy never replaces an edited one, and a deleted ts leaves a tombstone that
keeps a late original from bringing the message back.
"""

from connectors.base.utils.timestamp import slack_ts_to_decimal
from src.database.kv_store import JsonObject, KeyValueStore
from src.integrations.models import CanonicalMessage
from src.utils.logging import get_logger

logger = get_logger(__name__)

MESSAGE_PREFIX = "message:"
MESSAGE_TOMBSTONE_PREFIX = "message_tombstone:"
TOMBSTONE_TTL_SECONDS = 24 * 3600


def message_key(tenant_id: str, channel_id: str, ts: str) -> str:
    return f"{MESSAGE_PREFIX}{tenant_id}:{channel_id}:{ts}"


def tombstone_key(tenant_id: str, channel_id: str, ts: str) -> str:
    return f"{MESSAGE_TOMBSTONE_PREFIX}{tenant_id}:{channel_id}:{ts}"


def supersedes(incoming: CanonicalMessage, current: JsonObject | None) -> bool:
    """Whether `incoming` may replace the stored record."""
    if current is None:
        return True
    return incoming.edited or not current.get("edited", False)


class MessageStore:
    def __init__(self, store: KeyValueStore):
        self._store = store

    async def save(self, message: CanonicalMessage) -> bool:
        """Store the message. Returns False when a newer state (edit or delete) already won."""
        if await self._store.get(tombstone_key(message.tenant_id, message.channel_id, message.ts)):
            logger.info("Skipping message deleted earlier", channel_id=message.channel_id, ts=message.ts)
            return False

        incoming = message.model_dump(mode="json")
        written = False

        def _apply(current: JsonObject | None) -> JsonObject | None:
            nonlocal written
            written = supersedes(message, current)
            return incoming if written else current

        await self._store.update(message_key(message.tenant_id, message.channel_id, message.ts), _apply)
        if not written:
            logger.info("Keeping edited message over late original", channel_id=message.channel_id, ts=message.ts)
        return written

    async def get(self, tenant_id: str, channel_id: str, ts: str) -> CanonicalMessage | None:
        raw = await self._store.get(message_key(tenant_id, channel_id, ts))
        return CanonicalMessage.model_validate(raw) if raw else None

    async def delete(self, tenant_id: str, channel_id: str, ts: str) -> bool:
        await self._store.put(
            tombstone_key(tenant_id, channel_id, ts),
            {"deleted": True},
            ttl_seconds=TOMBSTONE_TTL_SECONDS,
        )
        return await self._store.delete(message_key(tenant_id, channel_id, ts))

    async def list_channel(self, tenant_id: str, channel_id: str) -> list[CanonicalMessage]:
        """All stored messages of a channel in exact ts order."""
        messages = [
            CanonicalMessage.model_validate(value)
            for _, value in await self._store.scan_prefix(
                f"{MESSAGE_PREFIX}{tenant_id}:{channel_id}:"
            )
        ]
        return sorted(messages, key=lambda m: slack_ts_to_decimal(m.ts))
