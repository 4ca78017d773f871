"""
Status cache and expiring record sweep.

Removes stale status cache entries, then lets each store reclaim records past their TTL (OAuth
nonces, processed event markers). Redis expires keys natively, so there it only finds stale cache
entries that were written without a TTL.
"""

from __future__ import annotations

from src.cron import cron
from src.integrations.services import get_services
from src.utils.error_handling import ErrorCounter, record_exception_and_ignore
from src.utils.logging import get_logger

logger = get_logger(__name__)


@cron(id="status_cache_sweep", crontab="*/10 * * * *", tags=["maintenance"])
async def status_cache_sweep() -> None:
    services = get_services()
    counter: ErrorCounter = {}
    stale_entries = 0
    expired_records = 0

    with record_exception_and_ignore(logger, "Failed to purge stale status cache entries", counter):
        stale_entries = await services.status_cache.purge_stale()

    stores = {id(services.store): services.store, id(services.cache_store): services.cache_store}
    for store in stores.values():
        with record_exception_and_ignore(
            logger, f"Failed to purge expired records from {type(store).__name__}", counter
        ):
            expired_records += await store.purge_expired()

    logger.info(
        "Status cache sweep complete",
        stale_entries=stale_entries,
        expired_records=expired_records,
        failed=counter.get("failed", 0),
    )
