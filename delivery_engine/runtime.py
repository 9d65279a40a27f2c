"""
Engine wiring and process lifecycle.

`build_engine` assembles every component from settings (or from explicit
overrides, as the tests do). `engine_lifespan` opens the database pool, Redis
and the audit flusher in order and closes them in reverse.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from delivery_engine.config import settings
from delivery_engine.db.pool import db_pool
from delivery_engine.infrastructure.audit import AuditSink
from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.jobs.access_lifecycle_job import AccessLifecycleMonitor
from delivery_engine.jobs.daily_reset_job import DailyResetJob
from delivery_engine.jobs.dispatch_worker import DispatchWorker, DispatchWorkerPool
from delivery_engine.repositories import memory
from delivery_engine.repositories.audit_repository import PostgresAuditStore, PostgresSettingsStore
from delivery_engine.repositories.constraint_repository import (
    PostgresConstraintStore,
    PostgresCreativeStore,
)
from delivery_engine.repositories.delivery_repository import PostgresDeliveryStore
from delivery_engine.repositories.grant_repository import PostgresGrantStore
from delivery_engine.repositories.history_repository import PostgresHistoryStore
from delivery_engine.services.channel_gateway import ChannelGateway, MessagingPlatform
from delivery_engine.services.delivery_queue import DeliveryQueue, RetryPolicy
from delivery_engine.services.engine_control import EngineControl
from delivery_engine.services.history_recorder import DeliveryHistoryRecorder
from delivery_engine.services.pacing import PacingGate, RedisPacingGate
from delivery_engine.services.redis_client import fast_redis
from delivery_engine.services.telegram_client import TelegramBotClient
from delivery_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)


@dataclass(slots=True)
class Stores:
    deliveries: Any
    constraints: Any
    creatives: Any
    history: Any
    grants: Any
    audit: Any
    settings: Any


@dataclass(slots=True)
class Engine:
    stores: Stores
    queue: DeliveryQueue
    gateway: ChannelGateway
    history: DeliveryHistoryRecorder
    audit: AuditSink
    control: EngineControl
    worker: DispatchWorker
    pool: DispatchWorkerPool
    lifecycle: AccessLifecycleMonitor
    daily_reset: DailyResetJob
    platform: Any = None


def build_stores(backend: str | None = None) -> Stores:
    backend = (backend or settings.STORE_BACKEND).strip().lower()

    if backend == "memory":
        return Stores(
            deliveries=memory.InMemoryDeliveryStore(),
            constraints=memory.InMemoryConstraintStore(),
            creatives=memory.InMemoryCreativeStore(),
            history=memory.InMemoryHistoryStore(),
            grants=memory.InMemoryGrantStore(),
            audit=memory.InMemoryAuditStore(),
            settings=memory.InMemorySettingsStore(),
        )

    if backend == "postgres":
        return Stores(
            deliveries=PostgresDeliveryStore(),
            constraints=PostgresConstraintStore(),
            creatives=PostgresCreativeStore(),
            history=PostgresHistoryStore(),
            grants=PostgresGrantStore(),
            audit=PostgresAuditStore(),
            settings=PostgresSettingsStore(),
        )

    raise ValueError(f"Unknown STORE_BACKEND '{backend}'. Use 'postgres' or 'memory'.")


def build_gateway(platform: MessagingPlatform, pacing_backend: str | None = None) -> ChannelGateway:
    pacing = settings.get_pacing_config()
    backend = (pacing_backend or settings.PACING_BACKEND).strip().lower()

    if backend == "redis":
        send_gate = RedisPacingGate(fast_redis, "send", pacing["send"])
        delete_gate = RedisPacingGate(fast_redis, "delete", pacing["delete"])
    elif backend == "local":
        send_gate = PacingGate(pacing["send"])
        delete_gate = PacingGate(pacing["delete"])
    else:
        raise ValueError(f"Unknown PACING_BACKEND '{backend}'. Use 'local' or 'redis'.")

    return ChannelGateway(
        platform,
        send_gate=send_gate,
        delete_gate=delete_gate,
        timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
    )


def build_engine(
    *,
    platform: MessagingPlatform | None = None,
    stores: Stores | None = None,
    gateway: ChannelGateway | None = None,
    retry_policy: RetryPolicy | None = None,
    clock: Clock = utc_now,
) -> Engine:
    stores = stores or build_stores()
    if gateway is None:
        platform = platform or TelegramBotClient()
        gateway = build_gateway(platform)

    queue = DeliveryQueue(stores.deliveries, retry_policy=retry_policy, clock=clock)
    history = DeliveryHistoryRecorder(stores.history)
    audit = AuditSink(stores.audit, clock=clock)
    control = EngineControl(stores.settings, audit)

    worker = DispatchWorker(
        queue,
        stores.constraints,
        stores.creatives,
        gateway,
        history,
        audit,
        control,
        clock=clock,
    )

    return Engine(
        stores=stores,
        queue=queue,
        gateway=gateway,
        history=history,
        audit=audit,
        control=control,
        worker=worker,
        pool=DispatchWorkerPool(worker),
        lifecycle=AccessLifecycleMonitor(stores.grants, gateway, audit, clock=clock),
        daily_reset=DailyResetJob(stores.constraints, audit),
        platform=platform,
    )


@asynccontextmanager
async def engine_lifespan(engine: Engine | None = None):
    """Initialize shared resources, yield the engine, then tear down in reverse."""
    logger.info("Delivery engine starting", environment=settings.environment)

    startup_tasks = []
    try:
        if settings.STORE_BACKEND == "postgres":
            await db_pool.initialize()
            startup_tasks.append("database_pool")

        if settings.PACING_BACKEND == "redis":
            await fast_redis.initialize()
            startup_tasks.append("redis")

        engine = engine or build_engine()
        await engine.audit.start()
        startup_tasks.append("audit_sink")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)
        if "redis" in startup_tasks:
            await fast_redis.close()
        if "database_pool" in startup_tasks:
            await db_pool.close()
        raise

    try:
        yield engine
    finally:
        logger.info("Delivery engine shutting down")

        # Drain audit events while the store is still reachable
        await engine.audit.stop()

        if isinstance(engine.platform, TelegramBotClient):
            await engine.platform.close()
        if "redis" in startup_tasks:
            await fast_redis.close()
        if "database_pool" in startup_tasks:
            await db_pool.close()

        logger.info("All services closed successfully")
