"""
Dispatch Worker Pool - claims due deliveries and sends them.

Flow per delivery (DispatchWorker.process_one):
1. queued -> processing. If the emergency stop is active, defer to the next
   poll without consuming an attempt.
2. Load creative and destination constraint. Missing creative, missing or
   inactive destination, or a category the destination does not allow is a
   permanent failure. Daily cap or cooldown defers to the earliest time the
   constraint clears; no attempt is consumed.
3. Reserve a posting slot (atomic cap+cooldown check with an optimistic
   posts_today increment) and send through the channel gateway.
4. Success: sent, history record, usage counters, audit event.
   Transient failure: requeue with backoff (or fail once the budget is spent).
   The slot is released unless the platform may have delivered the post
   (timeout or a dropped response).
   Permanent failure: failed immediately and the slot is released.

The pool runs DISPATCH_WORKER_COUNT asyncio tasks. Each processes one delivery
at a time; exclusivity comes only from the atomic claim. The engine settings
record is read fresh every iteration and claiming pauses while the emergency
stop is active. A worker cancelled mid-batch releases the rest of its batch;
a recovery task returns claims abandoned by dead processes to pending.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import StrEnum

import structlog

from delivery_engine.config import settings
from delivery_engine.domain.models import (
    AuditEvent,
    Creative,
    Delivery,
    DeliveryState,
    OutboundMessage,
    SlotReservation,
)
from delivery_engine.domain.state_machine import InvalidTransitionError
from delivery_engine.infrastructure.audit import AuditSink
from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.repositories.base import ConstraintStore, CreativeStore
from delivery_engine.services.channel_gateway import (
    ChannelGateway,
    PermanentGatewayError,
    TransientGatewayError,
)
from delivery_engine.services.constraint_service import ConstraintDecision, evaluate
from delivery_engine.services.delivery_queue import DeliveryQueue
from delivery_engine.services.engine_control import EngineControl
from delivery_engine.services.history_recorder import DeliveryHistoryRecorder
from delivery_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

CREATIVE_NOT_FOUND = "creative_not_found"
EMERGENCY_STOP = "emergency_stop_active"


def _setting(value, default):
    return default if value is None else value


class DispatchOutcome(StrEnum):
    SENT = "sent"
    DEFERRED = "deferred"
    REQUEUED = "requeued"
    FAILED = "failed"
    SKIPPED = "skipped"


class DispatchMetrics:
    """Running totals for one worker pool."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = utc_now()
        self.claimed = 0
        self.released = 0
        self.recovered = 0
        self.counts = {outcome.value: 0 for outcome in DispatchOutcome}
        self.errors = 0

    def record(self, outcome: DispatchOutcome):
        self.counts[outcome.value] += 1

    def record_error(self):
        self.errors += 1

    def to_dict(self) -> dict:
        return {
            "job_run": "dispatch",
            "start_time": self.start_time.isoformat(),
            "claimed": self.claimed,
            "released": self.released,
            "recovered": self.recovered,
            **self.counts,
            "errors": self.errors,
        }


class DispatchWorker:
    def __init__(
        self,
        queue: DeliveryQueue,
        constraints: ConstraintStore,
        creatives: CreativeStore,
        gateway: ChannelGateway,
        history: DeliveryHistoryRecorder,
        audit: AuditSink,
        engine_control: EngineControl,
        *,
        poll_interval_seconds: float | None = None,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.constraints = constraints
        self.creatives = creatives
        self.gateway = gateway
        self.history = history
        self.audit = audit
        self.engine_control = engine_control
        self.poll_interval_seconds = _setting(
            poll_interval_seconds, settings.DISPATCH_POLL_INTERVAL_SECONDS
        )
        self._clock = clock
        self._monotonic = monotonic

    async def process_one(self, delivery: Delivery) -> DispatchOutcome:
        """Take one claimed (queued) delivery through to its next resting state."""
        try:
            delivery = await self.queue.start_processing(delivery.id)
        except InvalidTransitionError as e:
            # Cancelled between claim and processing
            logger.info("Skipping delivery", delivery_id=delivery.id, reason=str(e))
            return DispatchOutcome.SKIPPED

        started = self._monotonic()
        now = self._clock()

        if await self.engine_control.is_emergency_stop_active():
            await self.queue.defer(
                delivery.id, now + timedelta(seconds=self.poll_interval_seconds), EMERGENCY_STOP
            )
            return DispatchOutcome.DEFERRED

        creative = await self.creatives.get(delivery.creative_ref)
        if creative is None:
            return await self._fail(delivery, CREATIVE_NOT_FOUND)

        constraint = await self.constraints.get(delivery.destination_ref)
        decision = evaluate(constraint, now, creative.category)
        if not decision.allowed:
            return await self._refuse(delivery, decision, now)

        reservation = await self.constraints.reserve_slot(delivery.destination_ref, now)
        if reservation is None:
            # Another worker took the slot since we evaluated
            fresh = await self.constraints.get(delivery.destination_ref)
            return await self._refuse(delivery, evaluate(fresh, now, creative.category), now)

        return await self._send(delivery, creative, constraint.chat_id, reservation, started)

    async def _refuse(
        self, delivery: Delivery, decision: ConstraintDecision, now: datetime
    ) -> DispatchOutcome:
        if decision.permanent:
            return await self._fail(delivery, decision.reason)

        until = decision.earliest_at or now + timedelta(seconds=self.poll_interval_seconds)
        await self.queue.defer(delivery.id, until, decision.reason or "constraint_blocked")
        return DispatchOutcome.DEFERRED

    async def _send(
        self,
        delivery: Delivery,
        creative: Creative,
        chat_id: str,
        reservation: SlotReservation,
        started: float,
    ) -> DispatchOutcome:
        message = OutboundMessage.from_creative(creative)

        try:
            message_id = await self.gateway.send(chat_id, message)

        except TransientGatewayError as e:
            # A send that may have gone out keeps its slot
            if not e.outcome_unknown:
                await self.constraints.release_slot(reservation)
            requeued = await self.queue.requeue(delivery.id, str(e))
            if requeued.state == DeliveryState.FAILED:
                await self._audit_failure(requeued, str(e), retries_exhausted=True)
                return DispatchOutcome.FAILED
            return DispatchOutcome.REQUEUED

        except PermanentGatewayError as e:
            await self.constraints.release_slot(reservation)
            return await self._fail(delivery, str(e))

        sent_at = self._clock()
        completed = await self.queue.complete(delivery.id, message_id, sent_at)
        duration_ms = int((self._monotonic() - started) * 1000)

        await self.history.record(completed, sent_at, duration_ms)
        await self.constraints.record_sent(delivery.destination_ref, sent_at)
        await self.creatives.record_use(delivery.creative_ref)
        await self.audit.log_async(
            AuditEvent(
                action="delivery_sent",
                entity_type="delivery",
                entity_id=delivery.id,
                metadata={
                    "campaign_ref": delivery.campaign_ref,
                    "destination_ref": delivery.destination_ref,
                    "external_message_id": message_id,
                    "attempts": completed.attempts,
                    "processing_duration_ms": duration_ms,
                },
            )
        )
        logger.info(
            "Delivery sent",
            delivery_id=delivery.id,
            destination_ref=delivery.destination_ref,
            message_id=message_id,
            duration_ms=duration_ms,
        )
        return DispatchOutcome.SENT

    async def _fail(self, delivery: Delivery, reason: str) -> DispatchOutcome:
        failed = await self.queue.fail(delivery.id, reason)
        await self._audit_failure(failed, reason)
        return DispatchOutcome.FAILED

    async def _audit_failure(
        self, delivery: Delivery, reason: str, retries_exhausted: bool = False
    ) -> None:
        await self.audit.log_async(
            AuditEvent(
                action="delivery_failed",
                entity_type="delivery",
                entity_id=delivery.id,
                severity="warning",
                metadata={
                    "campaign_ref": delivery.campaign_ref,
                    "destination_ref": delivery.destination_ref,
                    "reason": reason,
                    "attempts": delivery.attempts,
                    "retries_exhausted": retries_exhausted,
                },
            )
        )


class DispatchWorkerPool:
    def __init__(
        self,
        worker: DispatchWorker,
        *,
        worker_count: int | None = None,
        claim_batch_size: int | None = None,
        poll_interval_seconds: float | None = None,
        stale_claim_seconds: float | None = None,
        recovery_interval_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.worker = worker
        self.queue = worker.queue
        self.engine_control = worker.engine_control
        self.worker_count = _setting(worker_count, settings.DISPATCH_WORKER_COUNT)
        self.claim_batch_size = _setting(claim_batch_size, settings.DISPATCH_CLAIM_BATCH_SIZE)
        self.poll_interval_seconds = _setting(
            poll_interval_seconds, settings.DISPATCH_POLL_INTERVAL_SECONDS
        )
        self.stale_claim_seconds = _setting(
            stale_claim_seconds, settings.DISPATCH_STALE_CLAIM_SECONDS
        )
        self.recovery_interval_seconds = _setting(
            recovery_interval_seconds, settings.DISPATCH_RECOVERY_INTERVAL_SECONDS
        )
        self._sleep = sleep
        self._stop_event = asyncio.Event()
        self.metrics = DispatchMetrics()

    async def run_iteration(self) -> int:
        """
        Claim one batch and process it sequentially.

        Whatever is still unprocessed when the iteration ends early (task
        cancelled on shutdown) is released back to pending.

        Returns:
            Number of deliveries claimed (0 when idle or stopped)
        """
        engine_settings = await self.engine_control.current()
        if engine_settings.emergency_stop_active:
            logger.debug("Emergency stop active, not claiming", version=engine_settings.version)
            return 0

        claimed = await self.queue.claim_due(self.claim_batch_size)
        self.metrics.claimed += len(claimed)

        unprocessed = list(claimed)
        try:
            while unprocessed:
                await self._process_safely(unprocessed.pop(0))
        finally:
            if unprocessed:
                await self._release_claims(unprocessed)
        return len(claimed)

    async def _release_claims(self, deliveries: list[Delivery]) -> None:
        released = 0
        for delivery in deliveries:
            try:
                await self.queue.release(delivery.id)
                released += 1
            except InvalidTransitionError:
                # Cancelled while waiting in the batch
                continue
            except Exception as e:
                logger.error(
                    "Failed to release claimed delivery", delivery_id=delivery.id, error=str(e)
                )
        self.metrics.released += released
        logger.info("Released unprocessed claims", released=released, batch=len(deliveries))

    async def recover_stale_claims(self) -> dict:
        """Hand claims abandoned by dead workers back to the queue."""
        result = await self.queue.recover_stale(timedelta(seconds=self.stale_claim_seconds))
        self.metrics.recovered += result["released"] + result["requeued"] + result["failed"]
        return result

    async def _process_safely(self, delivery: Delivery) -> None:
        structlog.contextvars.bind_contextvars(delivery_id=delivery.id)
        try:
            outcome = await self.worker.process_one(delivery)
            self.metrics.record(outcome)
        except Exception as e:
            self.metrics.record_error()
            logger.error(
                "Unexpected error processing delivery",
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._requeue_after_error(delivery.id, e)
        finally:
            structlog.contextvars.unbind_contextvars("delivery_id")

    async def _requeue_after_error(self, delivery_id: str, error: Exception) -> None:
        try:
            await self.queue.requeue(delivery_id, f"{type(error).__name__}: {error}")
        except InvalidTransitionError:
            # Never reached processing, or already resolved
            pass
        except Exception as e:
            logger.error("Failed to requeue delivery after error", error=str(e))

    async def run_until_idle(self) -> dict:
        """Process due deliveries until nothing is left to claim."""
        while await self.run_iteration():
            pass
        return self.metrics.to_dict()

    async def _worker_loop(self, name: str) -> None:
        structlog.contextvars.bind_contextvars(worker=name)
        logger.info("Dispatch worker started")

        while not self._stop_event.is_set():
            try:
                claimed = await self.run_iteration()
                if not claimed:
                    await self._sleep(self.poll_interval_seconds)
            except asyncio.CancelledError:
                logger.info("Dispatch worker cancelled")
                raise
            except Exception as e:
                logger.error(
                    "Error in dispatch worker loop", error=str(e), error_type=type(e).__name__
                )
                await self._sleep(self.poll_interval_seconds)

        logger.info("Dispatch worker stopped")

    async def _recovery_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.recover_stale_claims()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Stale claim recovery failed", error=str(e), error_type=type(e).__name__
                )
            await self._sleep(self.recovery_interval_seconds)

    async def run(self) -> None:
        """Run the worker tasks until stop() is called or the pool is cancelled."""
        self._stop_event.clear()
        logger.info(
            "Starting dispatch worker pool",
            worker_count=self.worker_count,
            claim_batch_size=self.claim_batch_size,
            poll_interval_seconds=self.poll_interval_seconds,
            stale_claim_seconds=self.stale_claim_seconds,
        )
        recovery = asyncio.create_task(self._recovery_loop(), name="dispatch-recovery")
        workers = [
            asyncio.create_task(self._worker_loop(f"dispatch-{i}"), name=f"dispatch-{i}")
            for i in range(self.worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            recovery.cancel()
            for task in workers:
                task.cancel()
            # Let every worker finish releasing its batch before returning
            await asyncio.gather(recovery, *workers, return_exceptions=True)
            logger.info("Dispatch worker pool stopped", **self.metrics.to_dict())

    def stop(self) -> None:
        self._stop_event.set()
