"""
PostgreSQL connection pool for the delivery engine.

One AsyncConnectionPool per process, shared by the dispatch workers, the
lifecycle sweeps and the audit flusher. Connections run in autocommit: every
state change the engine makes is a single conditional statement, so there is
no multi-statement transaction to manage.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from importlib import resources
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from delivery_engine.config import settings
from delivery_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_RESOURCE = "schema.sql"


class DatabasePoolManager:
    """Owns the process-wide pool: open, configure, health check and close."""

    def __init__(self, conninfo: str | None = None):
        self.conninfo = conninfo
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self) -> None:
        """Open the pool and verify one round trip before workers start."""
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        logger.info(
            "Opening database pool",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
            environment=settings.environment,
        )

        try:
            self.pool = AsyncConnectionPool(
                conninfo=self.conninfo or settings.DATABASE_URL,
                open=False,
                check=AsyncConnectionPool.check_connection,
                configure=self._configure_connection,
                **pool_config,
            )
            await self.pool.open(wait=True)

            # The round trip below goes through connection(), which requires this flag
            self._initialized = True
            await self._ping()

        except Exception as e:
            logger.error("Failed to open database pool", error=str(e))
            self._initialized = False
            if self.pool is not None:
                await self._discard_pool()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool ready", timeout=pool_config["timeout"])

    async def _discard_pool(self) -> None:
        try:
            await self.pool.close()
        except Exception as close_error:
            logger.debug("Ignoring pool close error during cleanup", error=str(close_error))
        self.pool = None

    @staticmethod
    async def _configure_connection(conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"delivery-engine-{settings.environment}")
            )
        )
        # Day boundaries and cooldown arithmetic are computed in UTC
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '30s'")

    async def _ping(self) -> float:
        """One SELECT round trip; returns its latency in milliseconds."""
        started = time.perf_counter()
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT 1 AS ok")
            row = await cursor.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database connection test returned an unexpected result")
        return (time.perf_counter() - started) * 1000

    async def apply_schema(self) -> None:
        """Create the engine tables if they do not exist yet (idempotent)."""
        ddl = resources.files("delivery_engine.db").joinpath(SCHEMA_RESOURCE).read_text()
        async with self.connection() as conn:
            await conn.execute(ddl)
        logger.info("Database schema applied", resource=SCHEMA_RESOURCE)

    async def close(self) -> None:
        if not self._initialized or self._closed:
            return

        logger.info("Closing database pool")
        try:
            if self.pool is not None:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        if self._closed:
            raise RuntimeError("Database pool is closed")

        async with self.pool.connection() as conn:
            yield conn

    async def health_check(self) -> dict[str, Any]:
        """Pool stats plus the latency of one round trip."""
        if not self.is_ready:
            return {
                "healthy": False,
                "service": "database_pool",
                "error": "Pool is closed" if self._closed else "Pool not initialized",
            }

        try:
            latency_ms = await self._ping()
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        in_use = size - stats.get("pool_available", 0)
        utilization = in_use / size * 100 if size else 0.0

        return {
            "healthy": utilization < 90,
            "service": "database_pool",
            "connection_time_ms": round(latency_ms, 2),
            "pool_stats": {
                "pool_size": size,
                "pool_in_use": in_use,
                "pool_utilization_percent": round(utilization, 2),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


# Global pool instance
db_pool = DatabasePoolManager()
