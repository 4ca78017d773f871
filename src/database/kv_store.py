"""Key-value persistence for gateway records.

All gateway state (installations, channel scopes, connection state, status cache entries, OAuth
nonces, processed event ids, messages) lives behind the KeyValueStore protocol. Values are JSON
objects. Every operation is atomic for a single key; nothing locks across keys.

Backends:
- InMemoryKeyValueStore: single process, per-key asyncio locks. Tests and local development.
- PostgresKeyValueStore: one `gateway_kv` table in the control database (asyncpg).
- RedisKeyValueStore: JSON strings under the key, optimistic WATCH/MULTI for read-modify-write.
"""

import asyncio
import json
import re
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import asyncpg
import redis.asyncio as redis
from redis.exceptions import WatchError

from src.clients.control_db import ControlDBPool
from src.clients.redis import RedisClient
from src.integrations.exceptions import StoreUnavailable
from src.utils.logging import get_logger

logger = get_logger(__name__)

JsonObject = dict[str, Any]
Mutator = Callable[[JsonObject | None], JsonObject | None]

MAX_UPDATE_ATTEMPTS = 10


class KeyValueStore(Protocol):
    """Per-key atomic JSON record store."""

    async def get(self, key: str) -> JsonObject | None: ...

    async def put(self, key: str, value: JsonObject, ttl_seconds: float | None = None) -> None: ...

    async def upsert(
        self, key: str, fields: JsonObject, ttl_seconds: float | None = None
    ) -> JsonObject:
        """Merge `fields` into the stored object (creating it if absent) and return the result."""
        ...

    async def update(self, key: str, mutate: Mutator) -> JsonObject | None:
        """Atomically replace the value with mutate(current).

        Returning None deletes the key (a no-op when it was absent). The existing TTL is kept.
        """
        ...

    async def insert_if_absent(
        self, key: str, value: JsonObject, ttl_seconds: float | None = None
    ) -> bool: ...

    async def pop(self, key: str) -> JsonObject | None:
        """Atomically read and delete."""
        ...

    async def delete(self, key: str) -> bool: ...

    async def compare_and_delete(self, key: str, expected: JsonObject) -> bool:
        """Delete the key only if its current value equals `expected`."""
        ...

    async def scan_prefix(self, prefix: str) -> list[tuple[str, JsonObject]]: ...

    async def purge_expired(self) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def _normalize(value: JsonObject) -> JsonObject:
    """Round-trip through JSON so every backend stores and returns the same shapes."""
    return json.loads(json.dumps(value))


class InMemoryKeyValueStore:
    """Process-local store. Writes to one key are serialized by that key's lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[JsonObject, float | None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _expires(self, ttl_seconds: float | None) -> float | None:
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    def _read(self, key: str) -> tuple[JsonObject, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> JsonObject | None:
        entry = self._read(key)
        return _normalize(entry[0]) if entry else None

    async def put(self, key: str, value: JsonObject, ttl_seconds: float | None = None) -> None:
        async with self._lock(key):
            self._data[key] = (_normalize(value), self._expires(ttl_seconds))

    async def upsert(
        self, key: str, fields: JsonObject, ttl_seconds: float | None = None
    ) -> JsonObject:
        async with self._lock(key):
            entry = self._read(key)
            current, expires_at = entry if entry else ({}, None)
            merged = {**current, **_normalize(fields)}
            if ttl_seconds is not None:
                expires_at = self._expires(ttl_seconds)
            self._data[key] = (merged, expires_at)
            return _normalize(merged)

    async def update(self, key: str, mutate: Mutator) -> JsonObject | None:
        async with self._lock(key):
            entry = self._read(key)
            current, expires_at = entry if entry else (None, None)
            new_value = mutate(_normalize(current) if current is not None else None)
            if new_value is None:
                self._data.pop(key, None)
                return None
            self._data[key] = (_normalize(new_value), expires_at)
            return _normalize(new_value)

    async def insert_if_absent(
        self, key: str, value: JsonObject, ttl_seconds: float | None = None
    ) -> bool:
        async with self._lock(key):
            if self._read(key) is not None:
                return False
            self._data[key] = (_normalize(value), self._expires(ttl_seconds))
            return True

    async def pop(self, key: str) -> JsonObject | None:
        async with self._lock(key):
            entry = self._read(key)
            if entry is None:
                return None
            del self._data[key]
            return entry[0]

    async def delete(self, key: str) -> bool:
        async with self._lock(key):
            return self._data.pop(key, None) is not None

    async def compare_and_delete(self, key: str, expected: JsonObject) -> bool:
        async with self._lock(key):
            entry = self._read(key)
            if entry is None or entry[0] != _normalize(expected):
                return False
            del self._data[key]
            return True

    async def scan_prefix(self, prefix: str) -> list[tuple[str, JsonObject]]:
        # Snapshot first so writers are never blocked by a long scan
        keys = sorted(k for k in list(self._data) if k.startswith(prefix))
        results = []
        for key in keys:
            entry = self._read(key)
            if entry is not None:
                results.append((key, _normalize(entry[0])))
        return results

    async def purge_expired(self) -> int:
        before = len(self._data)
        for key in list(self._data):
            self._read(key)
        return before - len(self._data)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
        self._locks.clear()


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS gateway_kv (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    expires_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

CREATE_PREFIX_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS gateway_kv_key_prefix_idx ON gateway_kv (key text_pattern_ops)
"""

CREATE_EXPIRY_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS gateway_kv_expires_at_idx ON gateway_kv (expires_at)
WHERE expires_at IS NOT NULL
"""

LIVE = "(expires_at IS NULL OR expires_at > NOW())"


def escape_like(prefix: str) -> str:
    """Escape LIKE wildcards so a prefix matches literally (ESCAPE '\\')."""
    return re.sub(r"([\\%_])", r"\\\1", prefix)


def _expiry(ttl_seconds: float | None) -> datetime | None:
    return None if ttl_seconds is None else datetime.now(UTC) + timedelta(seconds=ttl_seconds)


class PostgresKeyValueStore:
    """gateway_kv table in the control database.

    Single-statement upserts (INSERT ... ON CONFLICT) give per-key atomicity; read-modify-write
    goes through SELECT ... FOR UPDATE in a transaction.
    """

    def __init__(self, pool: ControlDBPool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            pool = await self._pool.get_pool()
            async with pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            logger.error(f"Control database operation failed: {e}")
            raise StoreUnavailable(str(e)) from e

    async def initialize(self) -> None:
        async with self._connection() as conn:
            await conn.execute(CREATE_TABLE_SQL)
            await conn.execute(CREATE_PREFIX_INDEX_SQL)
            await conn.execute(CREATE_EXPIRY_INDEX_SQL)

    async def get(self, key: str) -> JsonObject | None:
        async with self._connection() as conn:
            return await conn.fetchval(
                f"SELECT value FROM gateway_kv WHERE key = $1 AND {LIVE}",
                key,
            )

    async def put(self, key: str, value: JsonObject, ttl_seconds: float | None = None) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO gateway_kv (key, value, expires_at, updated_at)
                VALUES ($1, $2::jsonb, $3, NOW())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = NOW()
                """,
                key,
                json.dumps(value),
                _expiry(ttl_seconds),
            )

    async def upsert(
        self, key: str, fields: JsonObject, ttl_seconds: float | None = None
    ) -> JsonObject:
        async with self._connection() as conn:
            return await conn.fetchval(
                """
                INSERT INTO gateway_kv (key, value, expires_at, updated_at)
                VALUES ($1, $2::jsonb, $3, NOW())
                ON CONFLICT (key) DO UPDATE
                SET value = CASE
                        WHEN gateway_kv.expires_at IS NOT NULL AND gateway_kv.expires_at <= NOW()
                        THEN EXCLUDED.value
                        ELSE gateway_kv.value || EXCLUDED.value
                    END,
                    expires_at = COALESCE(EXCLUDED.expires_at, gateway_kv.expires_at),
                    updated_at = NOW()
                RETURNING value
                """,
                key,
                json.dumps(fields),
                _expiry(ttl_seconds),
            )

    async def update(self, key: str, mutate: Mutator) -> JsonObject | None:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            async with self._connection() as conn, conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT value FROM gateway_kv WHERE key = $1 AND {LIVE} FOR UPDATE",
                    key,
                )
                if row is not None:
                    new_value = mutate(row["value"])
                    if new_value is None:
                        await conn.execute("DELETE FROM gateway_kv WHERE key = $1", key)
                        return None
                    await conn.execute(
                        "UPDATE gateway_kv SET value = $2::jsonb, updated_at = NOW() WHERE key = $1",
                        key,
                        json.dumps(new_value),
                    )
                    return _normalize(new_value)

                new_value = mutate(None)
                if new_value is None:
                    return None
                # A missing row cannot be locked, so a concurrent creator makes this insert a
                # no-op and the loop retries against the row it created.
                inserted = await conn.fetchval(
                    """
                    INSERT INTO gateway_kv (key, value, expires_at, updated_at)
                    VALUES ($1, $2::jsonb, NULL, NOW())
                    ON CONFLICT (key) DO UPDATE
                    SET value = EXCLUDED.value, expires_at = NULL, updated_at = NOW()
                    WHERE gateway_kv.expires_at IS NOT NULL AND gateway_kv.expires_at <= NOW()
                    RETURNING key
                    """,
                    key,
                    json.dumps(new_value),
                )
                if inserted is not None:
                    return _normalize(new_value)
        raise StoreUnavailable(f"Could not update {key} after {MAX_UPDATE_ATTEMPTS} attempts")

    async def insert_if_absent(
        self, key: str, value: JsonObject, ttl_seconds: float | None = None
    ) -> bool:
        async with self._connection() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO gateway_kv (key, value, expires_at, updated_at)
                VALUES ($1, $2::jsonb, $3, NOW())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at, updated_at = NOW()
                WHERE gateway_kv.expires_at IS NOT NULL AND gateway_kv.expires_at <= NOW()
                RETURNING key
                """,
                key,
                json.dumps(value),
                _expiry(ttl_seconds),
            )
            return inserted is not None

    async def pop(self, key: str) -> JsonObject | None:
        async with self._connection() as conn:
            return await conn.fetchval(
                f"DELETE FROM gateway_kv WHERE key = $1 AND {LIVE} RETURNING value",
                key,
            )

    async def delete(self, key: str) -> bool:
        async with self._connection() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM gateway_kv WHERE key = $1 RETURNING key",
                key,
            )
            return deleted is not None

    async def compare_and_delete(self, key: str, expected: JsonObject) -> bool:
        async with self._connection() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM gateway_kv WHERE key = $1 AND value = $2::jsonb RETURNING key",
                key,
                json.dumps(expected),
            )
            return deleted is not None

    async def scan_prefix(self, prefix: str) -> list[tuple[str, JsonObject]]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT key, value FROM gateway_kv
                WHERE key LIKE $1 ESCAPE '\\' AND {LIVE}
                ORDER BY key
                """,
                escape_like(prefix) + "%",
            )
            return [(row["key"], row["value"]) for row in rows]

    async def purge_expired(self) -> int:
        async with self._connection() as conn:
            result = await conn.execute(
                "DELETE FROM gateway_kv WHERE expires_at IS NOT NULL AND expires_at <= NOW()"
            )
            # asyncpg returns the command tag, e.g. "DELETE 3"
            return int(result.split()[-1])

    async def ping(self) -> bool:
        try:
            async with self._connection() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        await self._pool.close()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


def escape_glob(prefix: str) -> str:
    """Escape redis MATCH glob characters so a prefix matches literally."""
    return re.sub(r"([\\*?\[\]])", r"\\\1", prefix)


def _ttl_ms(ttl_seconds: float | None) -> int | None:
    return None if ttl_seconds is None else max(1, int(ttl_seconds * 1000))


class RedisKeyValueStore:
    """JSON values under plain redis keys, with native expiry."""

    def __init__(self, client: RedisClient, namespace: str = "gateway:"):
        self._client = client
        self._namespace = namespace

    def _k(self, key: str) -> str:
        return f"{self._namespace}{key}"

    @property
    def _redis(self) -> redis.Redis:
        return self._client.get_client()

    @asynccontextmanager
    async def _errors(self) -> AsyncIterator[None]:
        try:
            yield
        except (redis.RedisError, OSError) as e:
            logger.error(f"Redis operation failed: {e}")
            raise StoreUnavailable(str(e)) from e

    async def get(self, key: str) -> JsonObject | None:
        async with self._errors():
            raw = await self._redis.get(self._k(key))
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: JsonObject, ttl_seconds: float | None = None) -> None:
        async with self._errors():
            await self._redis.set(self._k(key), json.dumps(value), px=_ttl_ms(ttl_seconds))

    async def _watch_loop(
        self, key: str, mutate: Mutator, ttl_seconds: float | None = None
    ) -> JsonObject | None:
        full_key = self._k(key)
        async with self._errors(), self._redis.pipeline(transaction=True) as pipe:
            for _ in range(MAX_UPDATE_ATTEMPTS):
                try:
                    await pipe.watch(full_key)
                    raw = await pipe.get(full_key)
                    remaining_ms = await pipe.pttl(full_key)
                    new_value = mutate(json.loads(raw) if raw is not None else None)
                    pipe.multi()
                    if new_value is None:
                        pipe.delete(full_key)
                    else:
                        if ttl_seconds is not None:
                            px = _ttl_ms(ttl_seconds)
                        else:
                            px = remaining_ms if remaining_ms and remaining_ms > 0 else None
                        pipe.set(full_key, json.dumps(new_value), px=px)
                    await pipe.execute()
                    return new_value
                except WatchError:
                    logger.debug(f"Concurrent write on {key}, retrying")
                    continue
                finally:
                    await pipe.reset()
        raise StoreUnavailable(f"Could not update {key} after {MAX_UPDATE_ATTEMPTS} attempts")

    async def upsert(
        self, key: str, fields: JsonObject, ttl_seconds: float | None = None
    ) -> JsonObject:
        merged = await self._watch_loop(
            key, lambda current: {**(current or {}), **_normalize(fields)}, ttl_seconds
        )
        return merged or {}

    async def update(self, key: str, mutate: Mutator) -> JsonObject | None:
        return await self._watch_loop(key, mutate)

    async def insert_if_absent(
        self, key: str, value: JsonObject, ttl_seconds: float | None = None
    ) -> bool:
        async with self._errors():
            result = await self._redis.set(
                self._k(key), json.dumps(value), nx=True, px=_ttl_ms(ttl_seconds)
            )
        return bool(result)

    async def pop(self, key: str) -> JsonObject | None:
        async with self._errors():
            raw = await self._redis.getdel(self._k(key))
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> bool:
        async with self._errors():
            return bool(await self._redis.delete(self._k(key)))

    async def compare_and_delete(self, key: str, expected: JsonObject) -> bool:
        deleted = False

        def _mutate(current: JsonObject | None) -> JsonObject | None:
            nonlocal deleted
            deleted = current is not None and current == _normalize(expected)
            return None if deleted else current

        await self._watch_loop(key, _mutate)
        return deleted

    async def scan_prefix(self, prefix: str) -> list[tuple[str, JsonObject]]:
        strip = len(self._namespace)
        results: list[tuple[str, JsonObject]] = []
        async with self._errors():
            keys = [k async for k in self._redis.scan_iter(match=escape_glob(self._k(prefix)) + "*")]
            if not keys:
                return results
            values = await self._redis.mget(keys)
        for full_key, raw in zip(keys, values):
            # Keys can expire between SCAN and MGET
            if raw is not None:
                results.append((full_key[strip:], json.loads(raw)))
        results.sort(key=lambda item: item[0])
        return results

    async def purge_expired(self) -> int:
        # Redis expires keys natively
        return 0

    async def ping(self) -> bool:
        return await self._client.ping()

    async def close(self) -> None:
        await self._client.close()


def build_store(backend: str) -> KeyValueStore:
    """Create a store for a configured backend name: postgres, redis or memory."""
    if backend == "postgres":
        return PostgresKeyValueStore(ControlDBPool())
    if backend == "redis":
        return RedisKeyValueStore(RedisClient())
    if backend == "memory":
        return InMemoryKeyValueStore()
    raise ValueError(f"Unknown store backend: {backend}")
