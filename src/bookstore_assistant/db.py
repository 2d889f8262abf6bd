"""Async database connection helper for Postgres."""
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import psycopg
from psycopg_pool import AsyncConnectionPool

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class DatabaseConfig:
    """Database configuration from environment variables.

    `DATABASE_URL` wins when set. Otherwise `DB_HOST` and `DB_NAME` are
    required, with `DB_PORT`, `DB_USER` and `DB_PASSWORD` optional.
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url if url is not None else os.getenv("DATABASE_URL")
        self.host = os.getenv("DB_HOST")
        self.port = int(os.getenv("DB_PORT", "5432"))
        self.name = os.getenv("DB_NAME")
        self.user = os.getenv("DB_USER")
        self.password = os.getenv("DB_PASSWORD")

    @property
    def is_configured(self) -> bool:
        return bool(self.url) or bool(self.host and self.name)

    def connection_string(self) -> str:
        """Return PostgreSQL connection string.

        Raises:
            ConfigurationError: If neither DATABASE_URL nor DB_HOST/DB_NAME is set
        """
        if self.url:
            return self.url
        if not self.is_configured:
            raise ConfigurationError(
                "Database connection is not configured",
                details={"variables": ["DATABASE_URL", "DB_HOST", "DB_NAME"]}
            )
        parts = [f"host={self.host}", f"port={self.port}", f"dbname={self.name}"]
        if self.user:
            parts.append(f"user={self.user}")
        if self.password:
            parts.append(f"password={self.password}")
        return " ".join(parts)


async def connect(config: Optional[DatabaseConfig] = None) -> psycopg.AsyncConnection:
    """Open a new async connection. The caller owns (and closes) it."""
    conninfo = (config or DatabaseConfig()).connection_string()
    return await psycopg.AsyncConnection.connect(conninfo)


def create_pool(
    config: Optional[DatabaseConfig] = None,
    min_size: int = 1,
    max_size: int = 10
) -> AsyncConnectionPool:
    """Build a connection pool, not yet opened.

    The caller opens it with `await pool.open()` inside the running event
    loop and closes it on shutdown.

    Raises:
        ConfigurationError: If the database is not configured
    """
    conninfo = (config or DatabaseConfig()).connection_string()
    return AsyncConnectionPool(conninfo, min_size=min_size, max_size=max_size, open=False)


@asynccontextmanager
async def get_connection(config: Optional[DatabaseConfig] = None) -> AsyncIterator[psycopg.AsyncConnection]:
    """Get a database connection as an async context manager.

    Usage:
        async with get_connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT ...")
    """
    conn = await connect(config)
    try:
        yield conn
    finally:
        await conn.close()


async def check_connection(config: Optional[DatabaseConfig] = None) -> bool:
    """Return True if a connection can be opened and answers `SELECT 1`."""
    try:
        async with get_connection(config) as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1")
                await cur.fetchone()
        return True
    except psycopg.Error as e:
        logger.warning("Database health check failed: %s", type(e).__name__)
        return False
