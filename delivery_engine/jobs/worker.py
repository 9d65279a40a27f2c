"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs it inside the engine lifespan.

    python -m delivery_engine.jobs.worker dispatch
    WORKER_JOB=lifecycle python -m delivery_engine.jobs.worker
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from delivery_engine.config import settings
from delivery_engine.db.pool import db_pool
from delivery_engine.infrastructure.observability.logging import get_logger, setup_logging
from delivery_engine.jobs.access_lifecycle_job import start_lifecycle_scheduler
from delivery_engine.jobs.daily_reset_job import start_daily_reset_scheduler
from delivery_engine.runtime import engine_lifespan
from delivery_engine.services.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_dispatch() -> None:
    async with engine_lifespan() as engine:
        await engine.pool.run()


async def run_lifecycle() -> None:
    async with engine_lifespan() as engine:
        await start_lifecycle_scheduler(engine.lifecycle)


async def run_lifecycle_once() -> None:
    """One pass of every lifecycle sweep, for external schedulers."""
    async with engine_lifespan() as engine:
        await engine.lifecycle.run_warning_sweeps()
        await engine.lifecycle.run_expiration_sweep()


async def run_daily_reset() -> None:
    async with engine_lifespan() as engine:
        await start_daily_reset_scheduler(engine.daily_reset)


async def run_healthcheck() -> None:
    """Check the backing services once, log the result and exit."""
    async with engine_lifespan() as engine:
        checks = {
            "emergency_stop_active": await engine.control.is_emergency_stop_active(),
            "audit_pending": engine.audit.pending_count,
        }
        if settings.STORE_BACKEND == "postgres":
            checks["database"] = await db_pool.health_check()
        if settings.PACING_BACKEND == "redis":
            checks["redis"] = {"healthy": await fast_redis.ping()}

        logger.info("Health check completed", **checks)


async def run_migrate() -> None:
    """Create the PostgreSQL tables, then exit."""
    if settings.STORE_BACKEND != "postgres":
        raise ValueError("migrate requires STORE_BACKEND=postgres")

    await db_pool.initialize()
    try:
        await db_pool.apply_schema()
    finally:
        await db_pool.close()


async def run_all() -> None:
    """Dispatch pool, lifecycle sweeps and daily reset in one process."""
    async with engine_lifespan() as engine:
        await asyncio.gather(
            engine.pool.run(),
            start_lifecycle_scheduler(engine.lifecycle),
            start_daily_reset_scheduler(engine.daily_reset),
        )


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "dispatch": run_dispatch,
    "lifecycle": run_lifecycle,
    "lifecycle_once": run_lifecycle_once,
    "daily_reset": run_daily_reset,
    "healthcheck": run_healthcheck,
    "migrate": run_migrate,
    "all": run_all,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "all").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
