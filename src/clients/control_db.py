"""asyncpg connection pool for the control database."""

import asyncio
import json

import asyncpg

from src.utils.config import get_control_database_url
from src.utils.logging import get_logger

logger = get_logger(__name__)


async def init_connection(conn: asyncpg.Connection) -> None:
    """Run on every new pooled connection."""
    await conn.set_type_codec(
        "jsonb",
        # Call sites always json.dumps() explicitly, so encoding is a no-op here to rule out
        # double-encoding.
        encoder=lambda x: x,
        decoder=json.loads,
        schema="pg_catalog",
    )


class ControlDBPool:
    """Lazily created, process-wide pool for the control database."""

    def __init__(self, dsn: str | None = None, min_size: int = 0, max_size: int = 5):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None
        # Locks are lazily initialized to avoid binding to the wrong event loop
        self._lock: asyncio.Lock | None = None

    @property
    def _pool_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                logger.info("Creating control database pool")
                self._pool = await asyncpg.create_pool(
                    self._dsn or get_control_database_url(),
                    min_size=self._min_size,
                    max_size=self._max_size,
                    timeout=30,
                    command_timeout=10,
                    init=init_connection,
                )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
