"""Process-wide wiring of gateway components.

`build_services` assembles every component over one durable store (and optionally a separate
store for the status cache). The FastAPI app and cron jobs share the instance registered with
`set_services`.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Request

from connectors.base.utils.timestamp import utcnow
from connectors.slack.slack_normalizer import SlackEventNormalizer
from src.clients.slack import SlackClient
from src.database.channel_scopes import ChannelScopeStore
from src.database.connection_state import ConnectionStateStore
from src.database.installations import InstallationStore
from src.database.kv_store import KeyValueStore, PostgresKeyValueStore, build_store
from src.database.message_store import MessageStore
from src.ingest.channel_scope import ChannelScopeFilter
from src.ingest.gatekeeper.event_processor import SlackEventProcessor
from src.ingest.gatekeeper.tenant_router import WebhookTenantRouter
from src.integrations.credential_cipher import CredentialCipher, get_credential_cipher
from src.integrations.disconnect import DisconnectService
from src.integrations.models import SourceType
from src.integrations.oauth_installer import OAuthInstaller, SlackClientFactory
from src.status.aggregator import StatusAggregator
from src.status.cache import StatusCache
from src.status.probes import StatusProbe, build_default_probes
from src.utils.config import (
    get_connection_state_max_idle_hours,
    get_status_cache_backend,
    get_status_connection_sources,
    get_store_backend,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class GatewayServices:
    store: KeyValueStore
    cache_store: KeyValueStore
    cipher: CredentialCipher
    installations: InstallationStore
    channel_scopes: ChannelScopeStore
    connection_state: ConnectionStateStore
    messages: MessageStore
    installer: OAuthInstaller
    router: WebhookTenantRouter
    scope_filter: ChannelScopeFilter
    normalizer: SlackEventNormalizer
    event_processor: SlackEventProcessor
    status_cache: StatusCache
    aggregator: StatusAggregator
    disconnects: DisconnectService

    async def ping(self) -> dict[str, bool]:
        stores = {"store": await self.store.ping()}
        if self.cache_store is not self.store:
            stores["cache_store"] = await self.cache_store.ping()
        return stores

    async def close(self) -> None:
        await self.store.close()
        if self.cache_store is not self.store:
            await self.cache_store.close()


def build_services(
    store: KeyValueStore,
    cipher: CredentialCipher,
    cache_store: KeyValueStore | None = None,
    slack_client_factory: SlackClientFactory = SlackClient,
    clock: Callable[[], datetime] = utcnow,
    probes: dict[SourceType, StatusProbe] | None = None,
    connection_sources: list[SourceType] | None = None,
    probe_timeout: float | None = None,
    status_cache_ttls: tuple[float, float] | None = None,
    max_idle: timedelta | None = None,
) -> GatewayServices:
    cache_store = cache_store if cache_store is not None else store
    installations = InstallationStore(store, clock=clock)
    channel_scopes = ChannelScopeStore(store, clock=clock)
    connection_state = ConnectionStateStore(
        store,
        clock=clock,
        max_idle=max_idle or timedelta(hours=get_connection_state_max_idle_hours()),
    )
    messages = MessageStore(store)
    installer = OAuthInstaller(
        store, installations, channel_scopes, cipher, slack_client_factory=slack_client_factory, clock=clock
    )
    router = WebhookTenantRouter(installations)
    scope_filter = ChannelScopeFilter(channel_scopes)
    normalizer = SlackEventNormalizer(installer, slack_client_factory=slack_client_factory)
    event_processor = SlackEventProcessor(
        store, router, scope_filter, normalizer, messages, channel_scopes, clock=clock
    )

    success_ttl, failure_ttl = status_cache_ttls or (None, None)
    status_cache = StatusCache(cache_store, success_ttl, failure_ttl, clock=clock)
    if connection_sources is None:
        connection_sources = [SourceType(s) for s in get_status_connection_sources()]
    if probes is None:
        probes = build_default_probes(installer, connection_state, connection_sources, slack_client_factory)
    aggregator = StatusAggregator(probes, status_cache, connection_state, probe_timeout=probe_timeout)
    disconnects = DisconnectService(
        installations, cipher, connection_state, status_cache, slack_client_factory=slack_client_factory
    )

    return GatewayServices(
        store=store,
        cache_store=cache_store,
        cipher=cipher,
        installations=installations,
        channel_scopes=channel_scopes,
        connection_state=connection_state,
        messages=messages,
        installer=installer,
        router=router,
        scope_filter=scope_filter,
        normalizer=normalizer,
        event_processor=event_processor,
        status_cache=status_cache,
        aggregator=aggregator,
        disconnects=disconnects,
    )


async def create_services_from_config() -> GatewayServices:
    """Build services from environment configuration.

    Raises:
        CipherConfigurationError: no usable credential key; startup must abort
    """
    cipher = get_credential_cipher()
    store_backend = get_store_backend()
    cache_backend = get_status_cache_backend()

    store = build_store(store_backend)
    cache_store = store if cache_backend == store_backend else build_store(cache_backend)
    for backend in {id(store): store, id(cache_store): cache_store}.values():
        if isinstance(backend, PostgresKeyValueStore):
            await backend.initialize()

    logger.info(
        "Gateway services configured",
        store_backend=store_backend,
        status_cache_backend=cache_backend,
        cipher_keys=cipher.key_count,
    )
    return build_services(store, cipher, cache_store=cache_store)


_services: GatewayServices | None = None


def set_services(services: GatewayServices | None) -> None:
    global _services
    _services = services


def get_services() -> GatewayServices:
    if _services is None:
        raise RuntimeError("Gateway services are not initialized")
    return _services


def services_from_request(request: Request) -> GatewayServices:
    """FastAPI dependency returning the services attached to the running app."""
    return request.app.state.services
