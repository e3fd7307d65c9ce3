"""PostgreSQL lifecycle for almanac: create the database, open the pool, apply the schema.

Both the API process and ``almanac init-db`` go through :meth:`Database.open`,
so the ``users``, ``events`` and ``calendar_credentials`` tables are always
present before the first query.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg

from almanac.config import DatabaseConfig
from almanac.credentials import ensure_credentials_schema
from almanac.local_store import ensure_events_schema

logger = logging.getLogger(__name__)

# asyncpg reports a server that refuses the STARTTLS upgrade with this message.
_SSL_UPGRADE_LOST = "unexpected connection_lost() call"


def should_retry_with_ssl_disable(exc: BaseException, configured_ssl: str | None) -> bool:
    """True when the connection died during asyncpg's implicit SSL negotiation."""
    if configured_ssl is not None or not isinstance(exc, ConnectionError):
        return False
    return _SSL_UPGRADE_LOST in str(exc)


async def apply_schema(pool: asyncpg.Pool, *, timeout: float) -> None:
    """Create every almanac table and index that is missing."""
    await ensure_events_schema(pool, timeout=timeout)
    await ensure_credentials_schema(pool, timeout=timeout)


async def _open_with_ssl_fallback(
    opener: Callable[..., Awaitable[Any]], kwargs: dict[str, Any], ssl: str | None, what: str
) -> Any:
    if ssl is not None:
        kwargs = {**kwargs, "ssl": ssl}
    try:
        return await opener(**kwargs)
    except ConnectionError as exc:
        if not should_retry_with_ssl_disable(exc, ssl):
            raise
    logger.info("SSL upgrade lost while opening %s; retrying with ssl=disable", what)
    return await opener(**{**kwargs, "ssl": "disable"})


class Database:
    """Owns the asyncpg pool for one :class:`~almanac.config.DatabaseConfig`."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.pool: asyncpg.Pool | None = None

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        return {
            "host": self.config.host,
            "port": self.config.port,
            "user": self.config.user,
            "password": self.config.password,
            "database": database,
        }

    async def provision(self) -> bool:
        """Create the configured database if needed; returns True when it was created.

        Runs against the ``postgres`` maintenance database, so the role needs
        ``CREATEDB``.
        """
        name = self.config.name
        conn = await _open_with_ssl_fallback(
            asyncpg.connect, self._connect_kwargs("postgres"), self.config.ssl, "maintenance db"
        )
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", name):
                return False
            # Identifiers cannot be bound as parameters.
            quoted = name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
        finally:
            await conn.close()
        logger.info("Created database %s", name)
        return True

    async def connect(self) -> asyncpg.Pool:
        if self.pool is not None:
            return self.pool
        kwargs = {
            **self._connect_kwargs(self.config.name),
            "min_size": self.config.min_pool_size,
            "max_size": self.config.max_pool_size,
        }
        self.pool = await _open_with_ssl_fallback(
            asyncpg.create_pool, kwargs, self.config.ssl, "connection pool"
        )
        logger.info("Connected to database %s", self.config.name)
        return self.pool

    async def open(self, *, provision: bool = False) -> asyncpg.Pool:
        """Connect and apply the schema, optionally creating the database first.

        The pool is closed again if the schema cannot be applied.
        """
        if provision:
            await self.provision()
        pool = await self.connect()
        try:
            await apply_schema(pool, timeout=self.config.command_timeout_seconds)
        except BaseException:
            await self.close()
            raise
        return pool

    async def close(self) -> None:
        if self.pool is None:
            return
        pool, self.pool = self.pool, None
        await pool.close()
        logger.info("Closed connection pool for %s", self.config.name)
