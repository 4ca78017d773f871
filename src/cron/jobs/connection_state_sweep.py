"""
Connection state sweep.

Deletes connection records whose last_activity is older than CONNECTION_STATE_MAX_IDLE_HOURS.
Records touched while the sweep runs are kept.
"""

from __future__ import annotations

from src.cron import cron
from src.integrations.services import get_services
from src.utils.logging import get_logger

logger = get_logger(__name__)


@cron(id="connection_state_sweep", crontab="0 * * * *", tags=["maintenance"])
async def connection_state_sweep() -> None:
    services = get_services()
    removed = await services.connection_state.sweep()
    logger.info(
        "Connection state sweep complete",
        removed=removed,
        max_idle_hours=services.connection_state.max_idle.total_seconds() / 3600,
    )
