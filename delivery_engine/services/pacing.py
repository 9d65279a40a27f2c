"""
Pacing gates for outbound platform calls.

A gate hands out one call slot at a time, spaced at least `spacing_seconds`
apart, no matter how many workers are waiting. The channel gateway keeps one
gate per operation type (sends and deletes are paced independently).

Two implementations:
- PacingGate: in-process, asyncio.Lock + monotonic clock. Serialises every
  worker task in one process.
- RedisPacingGate: cross-process. The next free slot lives in Redis and is
  reserved by an atomic Lua script, so several worker processes sharing one
  bot token still respect the spacing.

Usage:
    gate = PacingGate(0.1)
    await gate.acquire()
    await platform.send(...)
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.services.redis_client import FastRedisClient

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class PacingGate:
    """Single-flight gate: callers queue on the lock and leave spaced apart."""

    def __init__(
        self,
        spacing_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ):
        if spacing_seconds < 0:
            raise ValueError("spacing_seconds must be >= 0")
        self.spacing_seconds = spacing_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    async def acquire(self) -> float:
        """
        Wait for the next free slot.

        Returns:
            Seconds spent waiting (0.0 when the gate was idle)
        """
        async with self._lock:
            now = self._clock()
            wait = self._next_slot - now
            if wait > 0:
                await self._sleep(wait)
            else:
                wait = 0.0
            # Holding the lock while sleeping keeps later callers behind this one
            self._next_slot = max(now + wait, self._clock()) + self.spacing_seconds
            return wait


class RedisPacingGate:
    """
    Cross-process gate backed by Redis.

    Falls back to an in-process gate when Redis is unavailable so sends are
    still paced within this process.
    """

    # Reserve the next slot atomically using the Redis server clock.
    # Returns: milliseconds the caller must wait before using its slot
    RESERVE_SLOT_LUA_SCRIPT = """
    local key = KEYS[1]
    local spacing_ms = tonumber(ARGV[1])

    local t = redis.call('TIME')
    local now_ms = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

    local next_slot = tonumber(redis.call('GET', key) or '0')
    local slot = math.max(now_ms, next_slot)

    -- The key must outlive every slot already handed out
    redis.call('SET', key, slot + spacing_ms, 'PX', slot - now_ms + spacing_ms + 1000)

    return slot - now_ms
    """

    def __init__(
        self,
        redis_client: FastRedisClient,
        key: str,
        spacing_seconds: float,
        *,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.redis_client = redis_client
        self.key = f"pacing:{key}"
        self.spacing_seconds = spacing_seconds
        self._sleep = sleep
        self._fallback = PacingGate(spacing_seconds, sleep=sleep)

    async def acquire(self) -> float:
        spacing_ms = int(self.spacing_seconds * 1000)
        try:
            wait_ms = await self.redis_client.eval(
                self.RESERVE_SLOT_LUA_SCRIPT, [self.key], [spacing_ms]
            )
        except Exception as e:
            logger.warning(
                "Redis pacing unavailable, pacing locally", key=self.key, error=str(e)
            )
            return await self._fallback.acquire()

        wait = max(0, int(wait_ms)) / 1000
        if wait > 0:
            await self._sleep(wait)
        return wait
