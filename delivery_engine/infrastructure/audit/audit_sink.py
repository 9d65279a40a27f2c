"""
AuditSink - best-effort recorder of mutating engine actions.

Two entry points:
- log_async(event): non-blocking. The event is written to the structured log
  immediately and queued in a bounded in-memory buffer; a background flusher
  drains the buffer to the audit store in batches. A full buffer or a failed
  flush is logged and the event discarded.
- log_sync(event): writes straight to the audit store. Used for
  security-critical events (emergency stop on/off) where the caller wants to
  know the row landed.

Neither method ever raises. Audit failures must not abort delivery or
expiration flows.

Usage:
    from delivery_engine.infrastructure.audit import AuditSink

    sink = AuditSink(audit_store)
    await sink.start()
    await sink.log_async(AuditEvent(action="delivery_sent", entity_type="delivery", ...))
    ...
    await sink.stop()   # drains the buffer
"""

import asyncio

from delivery_engine.config import settings
from delivery_engine.domain.models import AuditEvent
from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.repositories.base import AuditStore
from delivery_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)


def _fallback_data(event: AuditEvent) -> dict:
    # Enough context to manually recreate the audit row
    return {
        "actor_ref": event.actor_ref,
        "action": event.action,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "severity": event.severity,
        "occurred_at": event.occurred_at.isoformat() if event.occurred_at else None,
    }


class AuditSink:
    """
    Buffered audit writer.

    The buffer is an asyncio.Queue bounded at AUDIT_BUFFER_SIZE. The flusher
    writes batches of up to AUDIT_FLUSH_BATCH_SIZE events, waiting at most
    AUDIT_FLUSH_INTERVAL_SECONDS for the first event of a batch.
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        buffer_size: int | None = None,
        flush_batch_size: int | None = None,
        flush_interval_seconds: float | None = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.flush_batch_size = flush_batch_size or settings.AUDIT_FLUSH_BATCH_SIZE
        self.flush_interval_seconds = (
            flush_interval_seconds or settings.AUDIT_FLUSH_INTERVAL_SECONDS
        )
        self._clock = clock
        self._queue: asyncio.Queue[AuditEvent] = asyncio.Queue(
            maxsize=buffer_size or settings.AUDIT_BUFFER_SIZE
        )
        self._stop_event = asyncio.Event()
        self._flusher_task: asyncio.Task | None = None
        self.dropped_count = 0

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._flusher_task is not None and not self._flusher_task.done()

    def _stamp(self, event: AuditEvent) -> AuditEvent:
        if event.occurred_at is None:
            event.occurred_at = self._clock()
        return event

    def _log_event(self, event: AuditEvent) -> None:
        logger.info(
            "Audit event",
            audit_action=event.action,
            actor_ref=event.actor_ref,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            severity=event.severity,
        )

    async def log_async(self, event: AuditEvent) -> bool:
        """
        Queue an audit event for background persistence.

        Returns:
            True if queued, False if the buffer was full (never raises)
        """
        try:
            event = self._stamp(event)
            self._log_event(event)
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped_count += 1
            logger.error(
                "CRITICAL: Audit buffer full, event dropped",
                dropped_count=self.dropped_count,
                fallback_data=_fallback_data(event),
            )
            return False
        except Exception as e:
            logger.error(
                "CRITICAL: Failed to queue audit event",
                error=str(e),
                error_type=type(e).__name__,
                action=getattr(event, "action", None),
            )
            return False

    async def log_sync(self, event: AuditEvent) -> bool:
        """
        Write an audit event directly to the store.

        Returns:
            True if written, False if the write failed (never raises)
        """
        event = self._stamp(event)
        self._log_event(event)
        try:
            await self.store.insert(event)
            return True
        except Exception as e:
            logger.error(
                "CRITICAL: Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data=_fallback_data(event),
            )
            return False

    async def start(self) -> None:
        """Start the background flusher."""
        if self.is_running:
            logger.warning("Audit flusher already running")
            return
        self._stop_event.clear()
        self._flusher_task = asyncio.create_task(self._run_flusher(), name="audit-flusher")
        logger.info(
            "Audit flusher started",
            batch_size=self.flush_batch_size,
            flush_interval_seconds=self.flush_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the flusher and drain whatever is still buffered."""
        self._stop_event.set()
        if self._flusher_task is not None:
            await self._flusher_task
            self._flusher_task = None
        flushed = await self.flush()
        logger.info("Audit flusher stopped", drained=flushed, dropped=self.dropped_count)

    async def flush(self) -> int:
        """Write every currently buffered event. Returns how many were written."""
        written = 0
        while not self._queue.empty():
            batch = self._take_batch()
            if await self._write_batch(batch):
                written += len(batch)
        return written

    def _take_batch(self, first: AuditEvent | None = None) -> list[AuditEvent]:
        batch = [first] if first is not None else []
        while len(batch) < self.flush_batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch

    async def _write_batch(self, batch: list[AuditEvent]) -> bool:
        if not batch:
            return True
        try:
            await self.store.insert_many(batch)
            return True
        except Exception as e:
            logger.error(
                "CRITICAL: Failed to flush audit events",
                error=str(e),
                error_type=type(e).__name__,
                batch_size=len(batch),
                fallback_data=[_fallback_data(event) for event in batch],
            )
            return False

    async def _run_flusher(self) -> None:
        while not self._stop_event.is_set():
            try:
                first = await asyncio.wait_for(
                    self._queue.get(), timeout=self.flush_interval_seconds
                )
            except TimeoutError:
                continue
            await self._write_batch(self._take_batch(first))
