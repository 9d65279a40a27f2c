"""
Query helpers for the PostgreSQL repositories.

Every helper accepts an optional open connection (to run inside a caller's
transaction) and otherwise borrows one from the shared pool. psycopg errors
surface as DatabaseError with the failing operation name.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from delivery_engine.db.pool import db_pool
from delivery_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

Params = tuple | dict


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _borrow(
    connection: psycopg.AsyncConnection | None,
) -> AsyncIterator[psycopg.AsyncConnection]:
    if connection is not None:
        yield connection
        return
    async with db_pool.connection() as conn:
        yield conn


def _wrap(operation: str, query: str, error: psycopg.Error) -> DatabaseError:
    logger.error(
        "Database query failed",
        operation=operation,
        query=" ".join(query.split())[:120],
        error=str(error),
        sqlstate=getattr(error, "sqlstate", None),
    )
    # OperationalError covers lost connections and serialization failures
    recoverable = isinstance(error, psycopg.OperationalError)
    return DatabaseError(
        f"{operation} failed: {error}", operation=operation, recoverable=recoverable
    )


async def fetch_one(
    query: str, params: Params = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """
    Run a statement and return its first row.

    Returns:
        Row as a dict (the pool installs dict_row), or None when nothing matched
    """
    try:
        async with _borrow(connection) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()
    except psycopg.Error as e:
        raise _wrap("fetch_one", query, e) from e


async def fetch_all(
    query: str, params: Params = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    try:
        async with _borrow(connection) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()
    except psycopg.Error as e:
        raise _wrap("fetch_all", query, e) from e


async def execute_query(
    query: str, params: Params = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run a statement and return the affected row count."""
    try:
        async with _borrow(connection) as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount
    except psycopg.Error as e:
        raise _wrap("execute", query, e) from e


async def execute_many(
    query: str, params_seq: list[Params], *, connection: psycopg.AsyncConnection | None = None
) -> None:
    """Run one statement per parameter set, in a single round of executemany."""
    if not params_seq:
        return
    try:
        async with _borrow(connection) as conn:
            async with conn.cursor() as cur:
                await cur.executemany(query, params_seq)
    except psycopg.Error as e:
        raise _wrap("execute_many", query, e) from e
