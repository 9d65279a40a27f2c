"""
Daily counter reset.

Zeroes every destination's posts_today at the UTC day boundary. Deliveries
deferred for the daily cap are scheduled for that same instant, so they
become claimable right after the reset.
"""

from delivery_engine.domain.models import AuditEvent
from delivery_engine.infrastructure.audit import AuditSink
from delivery_engine.infrastructure.observability.logging import get_logger, log_job_run
from delivery_engine.jobs.scheduling import DailySchedule, run_on_schedule
from delivery_engine.repositories.base import ConstraintStore
from delivery_engine.utils.clock import utc_now

logger = get_logger(__name__)


class DailyResetJob:
    def __init__(self, constraints: ConstraintStore, audit: AuditSink):
        self.constraints = constraints
        self.audit = audit
        self.is_running = False

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Daily reset already running, skipping")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        started = utc_now()
        try:
            reset_count = await self.constraints.reset_daily_counters()
            result = {
                "job_run": "daily_reset",
                "start_time": started.isoformat(),
                "destinations_reset": reset_count,
            }
            log_job_run("daily_reset", result)

            await self.audit.log_async(
                AuditEvent(
                    action="daily_counters_reset",
                    entity_type="destination_constraint",
                    metadata={"destinations_reset": reset_count},
                )
            )
            return result
        finally:
            self.is_running = False


async def start_daily_reset_scheduler(job: DailyResetJob) -> None:
    """Run the reset every day at 00:00 UTC until cancelled."""
    await run_on_schedule("daily_reset", DailySchedule(hour=0), job.run_once)
