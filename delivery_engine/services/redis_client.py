# delivery_engine/services/redis_client.py
"""
Shared asyncio Redis client.

Only the cross-process pacing gate needs Redis, so the client is opened by the
engine lifespan when PACING_BACKEND=redis and otherwise never touched.
Lua scripts are registered once and run with EVALSHA.
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.commands.core import AsyncScript

from delivery_engine.config import settings
from delivery_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_CONNECTIONS = 20


class FastRedisClient:
    """Pooled asyncio Redis client shared by every worker task in the process"""

    def __init__(self, url: str | None = None):
        self.url = url
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._scripts: dict[str, AsyncScript] = {}

    @property
    def is_initialized(self) -> bool:
        return self.client is not None

    async def initialize(self) -> None:
        if self.is_initialized:
            return

        redis_url = self.url or settings.REDIS_URL
        if not redis_url:
            raise RuntimeError("REDIS_URL is not configured")

        logger.info("Connecting to Redis", url_preview=redis_url[:30] + "...")
        pool = ConnectionPool.from_url(
            redis_url,
            max_connections=MAX_CONNECTIONS,
            retry_on_timeout=True,
            retry_on_error=[redis.ConnectionError, redis.TimeoutError],
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=pool)

        try:
            await client.ping()
        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            await client.aclose()
            await pool.disconnect()
            raise RuntimeError("Redis initialization failed") from e

        self.pool, self.client = pool, client
        logger.info("Redis client ready", max_connections=MAX_CONNECTIONS)

    async def close(self) -> None:
        if not self.is_initialized:
            return
        try:
            await self.client.aclose()
            await self.pool.disconnect()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))
        finally:
            self.client = None
            self.pool = None
            self._scripts.clear()

    async def ping(self) -> bool:
        """Reachability check for the health job; never raises."""
        if not self.is_initialized:
            return False
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def eval(self, script: str, keys: list[str], args: list) -> object:
        """
        Run a Lua script atomically.

        Raises:
            ConnectionError: client not initialized
            redis.RedisError: anything the server or connection reports
        """
        if not self.is_initialized:
            raise ConnectionError("Redis client not initialized")

        registered = self._scripts.get(script)
        if registered is None:
            registered = self.client.register_script(script)
            self._scripts[script] = registered
        return await registered(keys=keys, args=args)


# Global instance
fast_redis = FastRedisClient()
