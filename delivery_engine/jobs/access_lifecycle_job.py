"""
Access Lifecycle Monitor - periodic sweeps over paid access grants.

Sweeps:
- 7-day warning (daily): completed grants expiring in (now, now+7d] that
  have not had the 7-day notice. One message per grant; the flag is set only
  after the send succeeds, so a failed send is retried on the next run.
- 1-day warning (daily): same against (now, now+1d] and the 1-day flag.
- Expiration (hourly): completed grants whose access_expires_at <= now.
  Every delivered message is deleted (continuing past failures, a message
  that is already gone counts as deleted), then the grant moves to expired
  and its message refs are cleared.

Every sweep is idempotent: running it twice in a row sends no duplicate
notices and deletes nothing twice. A sweep that is still running when its
next run comes around is skipped.

Usage:
    monitor = AccessLifecycleMonitor(grant_store, gateway, audit_sink)
    metrics = await monitor.run_expiration_sweep()
"""

import asyncio
import html
from datetime import timedelta

from delivery_engine.config import settings
from delivery_engine.domain.models import AccessGrant, AuditEvent, DeleteOutcome, OutboundMessage
from delivery_engine.infrastructure.audit import AuditSink
from delivery_engine.infrastructure.observability.logging import get_logger, log_job_run
from delivery_engine.jobs.scheduling import DailySchedule, IntervalSchedule, run_on_schedule
from delivery_engine.repositories.base import GrantStore
from delivery_engine.services.channel_gateway import ChannelGateway, GatewayError
from delivery_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

SWEEP_7D = "warning_7d"
SWEEP_1D = "warning_1d"
SWEEP_EXPIRATION = "expiration"

# sweep name -> (window, notification flag, phrase used in the message)
WARNING_SWEEPS = {
    SWEEP_7D: (timedelta(days=7), "notified_7d", "in 7 days"),
    SWEEP_1D: (timedelta(days=1), "notified_1d", "tomorrow"),
}

DEFAULT_PRODUCT_NAME = "your subscription"


class LifecycleJobError(Exception):
    """Custom exception for lifecycle sweep operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class SweepMetrics:
    """Metrics tracking for one sweep run."""

    def __init__(self, sweep: str):
        self.sweep = sweep
        self.reset()

    def reset(self):
        """Reset all metrics for new sweep run."""
        self.start_time = utc_now()
        self.found = 0
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.messages_deleted = 0
        self.messages_not_found = 0
        self.message_delete_failures = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_success(self, grant_id: str):
        self.processed += 1
        self.succeeded += 1
        logger.debug("Grant processed", grant_id=grant_id, sweep=self.sweep)

    def record_failure(self, grant_id: str, error: str):
        self.processed += 1
        self.failed += 1
        self.errors.append(
            {"grant_id": grant_id, "error": error, "timestamp": utc_now().isoformat()}
        )
        logger.warning("Grant processing failed", grant_id=grant_id, error=error, sweep=self.sweep)

    def finalize(self):
        self.total_duration_seconds = (utc_now() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        data = {
            "job_run": f"lifecycle_{self.sweep}",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "found": self.found,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors_count": len(self.errors),
        }
        if self.sweep == SWEEP_EXPIRATION:
            data.update(
                {
                    "messages_deleted": self.messages_deleted,
                    "messages_not_found": self.messages_not_found,
                    "message_delete_failures": self.message_delete_failures,
                }
            )
        return data


def build_warning_message(grant: AccessGrant, phrase: str) -> OutboundMessage:
    product = html.escape(grant.product_name or DEFAULT_PRODUCT_NAME)
    text = (
        f"<b>Your subscription to {product} expires {phrase}!</b>\n\n"
        "To keep access to the exclusive content, renew your subscription.\n\n"
        "Use /start to renew."
    )
    return OutboundMessage(text=text)


class AccessLifecycleMonitor:
    def __init__(
        self,
        grants: GrantStore,
        gateway: ChannelGateway,
        audit: AuditSink,
        *,
        clock: Clock = utc_now,
    ):
        self.grants = grants
        self.gateway = gateway
        self.audit = audit
        self._clock = clock
        self._running: set[str] = set()
        self.last_runs: dict[str, dict] = {}

    def is_running(self, sweep: str) -> bool:
        return sweep in self._running

    async def run_7d_warning_sweep(self) -> dict:
        return await self._guarded(SWEEP_7D, self._warning_sweep)

    async def run_1d_warning_sweep(self) -> dict:
        return await self._guarded(SWEEP_1D, self._warning_sweep)

    async def run_warning_sweeps(self) -> dict:
        """Both warning sweeps, 7-day first."""
        return {
            SWEEP_7D: await self.run_7d_warning_sweep(),
            SWEEP_1D: await self.run_1d_warning_sweep(),
        }

    async def run_expiration_sweep(self) -> dict:
        return await self._guarded(SWEEP_EXPIRATION, self._expiration_sweep)

    async def _guarded(self, sweep: str, body) -> dict:
        if sweep in self._running:
            logger.warning("Lifecycle sweep already running, skipping this iteration", sweep=sweep)
            return {"skipped": True, "reason": "already_running", "sweep": sweep}

        self._running.add(sweep)
        metrics = SweepMetrics(sweep)
        try:
            logger.info("Starting lifecycle sweep", sweep=sweep)
            await body(sweep, metrics)
            metrics.finalize()
            result = metrics.to_dict()
            self.last_runs[sweep] = result
            log_job_run(result["job_run"], result)
            return result

        except LifecycleJobError:
            raise
        except Exception as e:
            logger.error(
                "Lifecycle sweep failed", sweep=sweep, error=str(e), error_type=type(e).__name__
            )
            raise LifecycleJobError(f"Lifecycle sweep {sweep} failed: {e}", operation=sweep) from e

        finally:
            self._running.discard(sweep)

    # ------------------------------------------------------------------
    # Warning sweeps
    # ------------------------------------------------------------------

    async def _warning_sweep(self, sweep: str, metrics: SweepMetrics) -> None:
        window, flag, phrase = WARNING_SWEEPS[sweep]
        now = self._clock()

        try:
            expiring = await self.grants.find_expiring(now, now + window, flag)
        except Exception as e:
            raise LifecycleJobError(
                f"Failed to find expiring grants: {e}", operation="find_expiring"
            ) from e

        metrics.found = len(expiring)
        if expiring:
            logger.info("Found expiring grants", sweep=sweep, grant_count=len(expiring))

        for grant in expiring:
            try:
                await self._notify(grant, flag, phrase)
                metrics.record_success(grant.id)
            except Exception as e:
                metrics.record_failure(grant.id, f"{type(e).__name__}: {e}")

    async def _notify(self, grant: AccessGrant, flag: str, phrase: str) -> None:
        message_id = await self.gateway.send(grant.holder_ref, build_warning_message(grant, phrase))

        if not await self.grants.mark_notified(grant.id, flag):
            logger.info("Grant already notified by another run", grant_id=grant.id, flag=flag)
            return

        await self.audit.log_async(
            AuditEvent(
                action="access_expiry_warning_sent",
                entity_type="access_grant",
                entity_id=grant.id,
                metadata={
                    "flag": flag,
                    "holder_ref": grant.holder_ref,
                    "external_message_id": message_id,
                    "access_expires_at": grant.access_expires_at.isoformat(),
                },
            )
        )

    # ------------------------------------------------------------------
    # Expiration sweep
    # ------------------------------------------------------------------

    async def _expiration_sweep(self, sweep: str, metrics: SweepMetrics) -> None:
        now = self._clock()

        try:
            expired = await self.grants.find_expired(now)
        except Exception as e:
            raise LifecycleJobError(
                f"Failed to find expired grants: {e}", operation="find_expired"
            ) from e

        metrics.found = len(expired)
        if expired:
            logger.info("Found expired grants", grant_count=len(expired))

        for grant in expired:
            try:
                await self._expire(grant, metrics)
                metrics.record_success(grant.id)
            except Exception as e:
                metrics.record_failure(grant.id, f"{type(e).__name__}: {e}")

    async def _expire(self, grant: AccessGrant, metrics: SweepMetrics) -> None:
        deleted = not_found = failures = 0

        for ref in grant.delivered_message_refs:
            for message_id in ref.message_ids:
                try:
                    outcome = await self.gateway.delete(ref.channel_id, message_id)
                except GatewayError as e:
                    failures += 1
                    logger.debug(
                        "Failed to delete message",
                        grant_id=grant.id,
                        channel_id=ref.channel_id,
                        message_id=message_id,
                        error=str(e),
                    )
                    continue

                if outcome == DeleteOutcome.NOT_FOUND:
                    not_found += 1
                else:
                    deleted += 1

        metrics.messages_deleted += deleted
        metrics.messages_not_found += not_found
        metrics.message_delete_failures += failures

        if not await self.grants.mark_expired(grant.id):
            logger.info("Grant already expired by another run", grant_id=grant.id)
            return

        await self.audit.log_async(
            AuditEvent(
                action="access_grant_expired",
                entity_type="access_grant",
                entity_id=grant.id,
                changes={"status": {"from": "completed", "to": "expired"}},
                metadata={
                    "holder_ref": grant.holder_ref,
                    "messages_deleted": deleted,
                    "messages_not_found": not_found,
                    "message_delete_failures": failures,
                },
            )
        )
        logger.info(
            "Access grant expired",
            grant_id=grant.id,
            messages_deleted=deleted,
            message_delete_failures=failures,
        )


# ==========================================================================
# SCHEDULER
# ==========================================================================


async def start_lifecycle_scheduler(monitor: AccessLifecycleMonitor) -> None:
    """
    Run the warning sweeps daily at WARNING_SWEEP_HOUR_UTC and the expiration
    sweep every EXPIRATION_SWEEP_INTERVAL_MINUTES, until cancelled.
    """
    warning_schedule = DailySchedule(hour=settings.WARNING_SWEEP_HOUR_UTC)
    expiration_schedule = IntervalSchedule(
        timedelta(minutes=settings.EXPIRATION_SWEEP_INTERVAL_MINUTES)
    )

    logger.info(
        "Lifecycle scheduler STARTED",
        warning_hour_utc=settings.WARNING_SWEEP_HOUR_UTC,
        expiration_interval_minutes=settings.EXPIRATION_SWEEP_INTERVAL_MINUTES,
    )

    await asyncio.gather(
        run_on_schedule("lifecycle_warning_7d", warning_schedule, monitor.run_7d_warning_sweep),
        run_on_schedule("lifecycle_warning_1d", warning_schedule, monitor.run_1d_warning_sweep),
        run_on_schedule(
            "lifecycle_expiration",
            expiration_schedule,
            monitor.run_expiration_sweep,
            run_immediately=True,
        ),
    )
