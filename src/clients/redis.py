"""Redis client wrapper for the integration gateway.

Configuration comes from the REDIS_PRIMARY_ENDPOINT environment variable. The client is created
lazily and shared by the redis-backed key-value stores.
"""

import logging

import redis.asyncio as redis

from src.utils.config import get_redis_endpoint

logger = logging.getLogger(__name__)


class RedisClient:
    """Centralized Redis client manager."""

    def __init__(self, endpoint: str | None = None):
        self._client: redis.Redis | None = None
        self._endpoint = endpoint
        self._connection_url: str | None = None

    @property
    def connection_url(self) -> str:
        if not self._connection_url:
            endpoint = self._endpoint or get_redis_endpoint()
            if not endpoint.startswith(("redis://", "rediss://", "unix://")):
                endpoint = f"redis://{endpoint}"
            self._connection_url = endpoint
        return self._connection_url

    def get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self.connection_url,
                decode_responses=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                retry_on_timeout=True,
                health_check_interval=30,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
        return self._client

    async def ping(self) -> bool:
        """Health check. Returns False instead of raising when Redis is unreachable."""
        try:
            return bool(await self.get_client().ping())
        except (redis.RedisError, OSError) as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
