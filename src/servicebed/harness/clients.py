"""Client connections opened from a service handle.

Thin async wrappers around ``redis.asyncio`` and ``asyncpg`` that open a
connection to a running service, map client failures onto the harness
error taxonomy, and close the connection on every exit path. Connections
must be closed before the handle they were opened from is stopped, which
the context-manager form guarantees when nested inside the service scope::

    async with ephemeral_service(POSTGRES) as pg:
        async with postgres_connection(pg) as conn:
            assert await query_scalar(conn, "SELECT 1 AS result") == 1

Key Concepts:
    redis_client(): Scoped ``redis.asyncio.Redis`` client (verified with PING).
    postgres_connection() / postgres_pool(): Scoped asyncpg connection / pool.
    kv_roundtrip(): SET then GET, returning what the server gave back.
    query_scalar(): Single-row, single-column query helper.
    redis_ping() / postgres_probe(): Probes for ``WaitFor.probe``.

Architecture Decisions:
    - Connection errors -> ``ConnectionFailure``; errors after the
      connection is up -> ``QueryFailure``. The client exception is
      chained as ``cause``.
    - No retries: readiness is the harness's job, a client failure after
      ``start()`` returned is a real failure.

Tags:
    clients, redis, postgres, asyncpg, connection, probe
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import asyncpg
import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from servicebed.core.errors import ConnectionFailure, QueryFailure
from servicebed.framework.logging import get_logger
from servicebed.harness.service import ServiceHandle

logger = get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0

_PG_CONNECT_ERRORS = (OSError, TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@asynccontextmanager
async def redis_client(
    handle: ServiceHandle,
    *,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    **client_kwargs: Any,
) -> AsyncIterator[aioredis.Redis]:
    """Open a redis client to ``handle`` and verify it with PING."""
    url = handle.url()
    client = aioredis.from_url(url, socket_connect_timeout=connect_timeout, **client_kwargs)
    try:
        try:
            await client.ping()
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            raise ConnectionFailure(
                f"Cannot connect to redis at {_redact(url)}: {exc}",
                cause=exc,
            ).with_context(service=handle.name, container=handle.container_name) from exc
        logger.debug("client.connected", service=handle.name, url=_redact(url))
        yield client
    finally:
        await client.aclose()


async def kv_roundtrip(client: aioredis.Redis, key: str, value: str | bytes) -> bytes:
    """SET ``key`` to ``value`` and GET it back; returns the stored bytes."""
    try:
        await client.set(key, value)
        stored = await client.get(key)
    except RedisError as exc:
        raise QueryFailure(f"SET/GET of {key!r} failed: {exc}", cause=exc) from exc
    if stored is None:
        raise QueryFailure(f"GET {key!r} returned nothing after SET")
    return stored.encode() if isinstance(stored, str) else stored


async def redis_ping(host: str, port: int) -> bool:
    """Readiness probe: a fresh connection answers PING."""
    client = aioredis.Redis(host=host, port=port, socket_connect_timeout=2.0)
    try:
        return bool(await client.ping())
    finally:
        await client.aclose()


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


@asynccontextmanager
async def postgres_connection(
    handle: ServiceHandle,
    *,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> AsyncIterator[asyncpg.Connection]:
    """Open a single asyncpg connection to ``handle``."""
    dsn = handle.url()
    try:
        conn = await asyncpg.connect(dsn=dsn, timeout=connect_timeout)
    except _PG_CONNECT_ERRORS as exc:
        raise ConnectionFailure(
            f"Cannot connect to postgres at {_redact(dsn)}: {exc}",
            cause=exc,
        ).with_context(service=handle.name, container=handle.container_name) from exc
    logger.debug("client.connected", service=handle.name, url=_redact(dsn))
    try:
        yield conn
    finally:
        await conn.close()


@asynccontextmanager
async def postgres_pool(
    handle: ServiceHandle,
    *,
    min_size: int = 1,
    max_size: int = 4,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> AsyncIterator[asyncpg.Pool]:
    """Open an asyncpg pool to ``handle``; the pool is shared by tasks in scope."""
    dsn = handle.url()
    try:
        pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=connect_timeout,
        )
    except _PG_CONNECT_ERRORS as exc:
        raise ConnectionFailure(
            f"Cannot create postgres pool for {_redact(dsn)}: {exc}",
            cause=exc,
        ).with_context(service=handle.name, container=handle.container_name) from exc
    try:
        yield pool
    finally:
        await pool.close()


async def query_scalar(executor: asyncpg.Connection | asyncpg.Pool, sql: str, *args: Any) -> Any:
    """Run ``sql`` and return the single value of its single row.

    Raises ``QueryFailure`` if the query fails or does not return exactly
    one row with exactly one column.
    """
    try:
        rows = await executor.fetch(sql, *args)
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise QueryFailure(f"Query failed: {sql!r}: {exc}", cause=exc) from exc
    if len(rows) != 1:
        raise QueryFailure(f"Expected exactly one row from {sql!r}, got {len(rows)}")
    row = rows[0]
    if len(row) != 1:
        raise QueryFailure(f"Expected exactly one column from {sql!r}, got {len(row)}")
    return row[0]


def postgres_probe(
    user: str = "postgres",
    password: str = "password",
    database: str = "postgres",
) -> Callable[[str, int], Awaitable[bool]]:
    """Build a readiness probe that succeeds once ``SELECT 1`` answers."""

    async def select_one(host: str, port: int) -> bool:
        conn = await asyncpg.connect(
            host=host,
            port=port,
            user=user,
            password=password,
            database=database,
            timeout=2.0,
        )
        try:
            return await conn.fetchval("SELECT 1") == 1
        finally:
            await conn.close()

    return select_one


def _redact(url: str) -> str:
    """Hide the password part of a connection URL."""
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest:
        return url
    credentials, _, location = rest.rpartition("@")
    user = credentials.split(":", 1)[0]
    return f"{scheme}://{user}:***@{location}"
