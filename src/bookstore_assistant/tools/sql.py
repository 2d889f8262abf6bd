"""Read-only SQL validation and execution.

Every statement that reaches the database, whether written by the model for
a plan step or for a single text-to-SQL question, goes through the same two
stages:

  1. SqlSafetyValidator.validate  - reject anything that is not a single
                                    read-only SELECT/WITH statement
  2. SqlExecutor.execute          - run it inside a read-only transaction
                                    with a statement timeout and a row cap
"""
import asyncio
import datetime
import logging
import re
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

import psycopg
from psycopg_pool import AsyncConnectionPool

from ..db import DatabaseConfig, connect
from ..errors import SqlExecutionError, SqlSafetyError
from ..schemas_sql import SqlExecutionResult, SqlStep

logger = logging.getLogger(__name__)

# Statements must start with one of these
ALLOWED_PREFIXES = ("SELECT", "WITH")

# Mutating keywords, rejected anywhere in the statement as whole words
BLOCKED_KEYWORDS = (
    "INSERT", "UPDATE", "DELETE", "DROP", "CREATE", "ALTER", "TRUNCATE", "MERGE"
)

FETCH_BATCH_SIZE = 100

ConnectionFactory = Callable[[], Awaitable[psycopg.AsyncConnection]]


class SqlSafetyValidator:
    """Accepts only single, read-only statements.

    Rules:
    1. Statement must not be empty
    2. Statement must start with SELECT or WITH
    3. No semicolons (prevents multiple statements)
    4. No mutating keyword as a whole word, case-insensitive
    """

    def __init__(self, blocked_keywords: tuple = BLOCKED_KEYWORDS):
        self._blocked = tuple(k.upper() for k in blocked_keywords)
        self._prefix_pattern = re.compile(
            r"^(?:" + "|".join(ALLOWED_PREFIXES) + r")\b", re.IGNORECASE
        )
        self._blocked_pattern = re.compile(
            r"\b(" + "|".join(self._blocked) + r")\b", re.IGNORECASE
        )

    def validate(self, statement: Optional[str]) -> str:
        """Validate a statement.

        Args:
            statement: SQL text to check

        Returns:
            The trimmed statement

        Raises:
            SqlSafetyError: If the statement violates a rule
        """
        normalized = (statement or "").strip()

        if not normalized:
            raise SqlSafetyError("Statement is empty", details={"rule": "empty"})

        if not self._prefix_pattern.match(normalized):
            raise SqlSafetyError(
                "Only SELECT or WITH statements are allowed",
                details={"rule": "prefix"}
            )

        if ";" in normalized:
            raise SqlSafetyError("Semicolons are not allowed", details={"rule": "semicolon"})

        match = self._blocked_pattern.search(normalized)
        if match:
            keyword = match.group(1).upper()
            raise SqlSafetyError(
                f"Keyword '{keyword}' is not allowed",
                details={"rule": "keyword", "keyword": keyword}
            )

        return normalized

    def is_safe(self, statement: Optional[str]) -> bool:
        try:
            self.validate(statement)
        except SqlSafetyError:
            return False
        return True


def to_json_safe(value: Any) -> Any:
    """Convert driver values to JSON-serializable ones.

    Decimal becomes float, datetimes become "YYYY-MM-DD HH:MM:SS" (plus
    offset when aware), dates and times become ISO strings.
    """
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime.datetime):
        return value.isoformat(sep=" ", timespec="seconds")
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, memoryview):
        value = value.tobytes()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value


class SqlExecutor:
    """Runs validated statements against Postgres.

    Connections come from a psycopg_pool.AsyncConnectionPool when a
    `pool_factory` is given (borrowed and returned, never closed here), or
    from a plain `connection_factory` (opened and closed per use).

    Example:
        >>> executor = SqlExecutor(pool_factory=lambda: create_pool(DatabaseConfig()))
        >>> rows = await executor.execute("SELECT title FROM book", row_cap=25)
    """

    def __init__(
        self,
        connection_factory: Optional[ConnectionFactory] = None,
        statement_timeout_ms: int = 60_000,
        validator: Optional[SqlSafetyValidator] = None,
        pool_factory: Optional[Callable[[], AsyncConnectionPool]] = None
    ):
        """Initialize executor.

        Args:
            connection_factory: Async callable opening a new connection.
                               Defaults to `db.connect` with DatabaseConfig().
            statement_timeout_ms: Server-side statement timeout
            validator: Validator used by `run_step`
            pool_factory: Builds the connection pool on first use; takes
                          precedence over `connection_factory`
        """
        self._connection_factory = connection_factory or (lambda: connect(DatabaseConfig()))
        self._pool_factory = pool_factory
        self._pool: Optional[AsyncConnectionPool] = None
        self._statement_timeout_ms = int(statement_timeout_ms)
        self._validator = validator or SqlSafetyValidator()

    async def execute(
        self,
        statement: str,
        row_cap: int,
        connection: Optional[psycopg.AsyncConnection] = None,
        params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        """Execute a statement and return at most `row_cap` rows.

        A borrowed `connection` stays open afterwards. Without one, a
        connection is taken through `connection()` for this statement only.
        `params` are bound server-side (`%s` placeholders) and are only
        used by the fixed lookup queries, never by model-written SQL.

        Raises:
            SqlExecutionError: If the statement fails or no connection can be opened
            ConfigurationError: If no connection can be configured
        """
        if row_cap < 1:
            raise ValueError("row_cap must be at least 1")

        if connection is not None:
            return await self._run_to_completion(connection, statement, row_cap, params)

        async with self.connection() as conn:
            return await self._run_to_completion(conn, statement, row_cap, params)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[psycopg.AsyncConnection]:
        """Hold one connection for several statements.

        Usage:
            async with executor.connection() as conn:
                await executor.execute(ORDER_SQL, 1, connection=conn, params=(1024,))

        Raises:
            SqlExecutionError: If the database cannot be reached
            ConfigurationError: If no connection can be configured
        """
        try:
            if self._pool_factory is not None:
                pool = await self._open_pool()
                async with pool.connection() as conn:
                    yield conn
            else:
                conn = await self._connection_factory()
                try:
                    yield conn
                finally:
                    await conn.close()
        except psycopg.Error as e:
            raise SqlExecutionError(
                f"Database unavailable: {e}",
                details={"error_type": type(e).__name__}
            ) from e

    async def _open_pool(self) -> AsyncConnectionPool:
        if self._pool is None:
            self._pool = self._pool_factory()
            logger.info("Opening database pool (max_size=%s)", self._pool.max_size)
        await self._pool.open()
        return self._pool

    async def aclose(self) -> None:
        """Close the pool, if one was opened."""
        if self._pool is not None:
            pool, self._pool = self._pool, None
            await pool.close()

    async def run_step(
        self,
        step: SqlStep,
        row_cap: int,
        connection: Optional[psycopg.AsyncConnection] = None
    ) -> SqlExecutionResult:
        """Validate and execute one plan step.

        Raises:
            SqlSafetyError: If the step's statement is rejected (never executed)
            SqlExecutionError: If execution fails
        """
        statement = self._validator.validate(step.statement)
        rows = await self.execute(statement, row_cap, connection=connection)
        return SqlExecutionResult(
            alias=step.alias,
            description=step.description,
            rows=rows,
            row_count=len(rows)
        )

    async def _run_to_completion(
        self,
        conn: psycopg.AsyncConnection,
        statement: str,
        row_cap: int,
        params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        # Once dispatched, the statement finishes (or fails) before a
        # cancellation of the caller is acknowledged.
        task = asyncio.ensure_future(self._fetch(conn, statement, row_cap, params))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                logger.warning(
                    "Statement failed after caller cancellation: %s", task.exception()
                )
            raise

    async def _fetch(
        self,
        conn: psycopg.AsyncConnection,
        statement: str,
        row_cap: int,
        params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        logger.debug("Executing SQL (cap=%d): %s", row_cap, statement)
        rows: List[Dict[str, Any]] = []
        try:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.execute("SET TRANSACTION READ ONLY")
                    await cur.execute(
                        f"SET LOCAL statement_timeout = {self._statement_timeout_ms}"
                    )
                    if params is not None:
                        await cur.execute(statement, params)
                    else:
                        await cur.execute(statement)

                    if cur.description is None:
                        return rows
                    columns = [desc[0] for desc in cur.description]

                    while len(rows) < row_cap:
                        batch = await cur.fetchmany(min(FETCH_BATCH_SIZE, row_cap - len(rows)))
                        if not batch:
                            break
                        for record in batch:
                            rows.append(
                                {column: to_json_safe(value) for column, value in zip(columns, record)}
                            )
        except psycopg.Error as e:
            raise SqlExecutionError(
                f"Query failed: {e}",
                details={"error_type": type(e).__name__}
            ) from e

        return rows[:row_cap]
