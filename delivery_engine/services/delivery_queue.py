"""
Delivery Queue - durable scheduled deliveries and their state machine.

All state changes are conditional updates in the DeliveryStore keyed on the
current state. A transition that loses a race (or is illegal) raises
InvalidTransitionError rather than silently overwriting.

Retry policy:
    Each send attempt (requeue, complete, fail) increments `attempts`.
    A transient failure returns the delivery to pending, pushed back by
    base * multiplier ** (attempts - 1) seconds (5s, 25s, 125s, ...).
    Once `attempts` reaches max_attempts the delivery fails instead, so
    `attempts` never exceeds the maximum.

Claim recovery:
    A worker that stops mid-batch releases its unprocessed claims (queued ->
    pending, no attempt consumed). Claims left behind by a process that died
    are found by `recover_stale` once untouched for longer than the stale
    timeout: queued rows are released, processing rows are requeued as a
    transient failure since their send outcome is unknown.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from delivery_engine.config import settings
from delivery_engine.domain.models import Delivery, DeliveryState
from delivery_engine.domain.state_machine import InvalidTransitionError, sources_for
from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.repositories.base import DeliveryStore
from delivery_engine.utils.clock import Clock, ensure_utc, utc_now

logger = get_logger(__name__)

CLAIM_RELEASED = "claim_released"
STALE_CLAIM = "stale_claim_recovered"
CLAIMED_STATES = frozenset({DeliveryState.QUEUED, DeliveryState.PROCESSING})
PROCESSING_ONLY = frozenset({DeliveryState.PROCESSING})


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_seconds: float = 5.0
    backoff_multiplier: float = 5.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(**settings.get_retry_policy())

    def backoff_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt, given attempts already made (>= 1)."""
        exponent = max(attempts - 1, 0)
        return timedelta(seconds=self.backoff_base_seconds * self.backoff_multiplier**exponent)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


class DeliveryQueue:
    def __init__(
        self,
        store: DeliveryStore,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._clock = clock

    async def enqueue(self, delivery: Delivery) -> Delivery:
        """Store a new delivery in pending."""
        if delivery.state != DeliveryState.PENDING:
            raise ValueError(f"New deliveries must be pending, got {delivery.state.value}")
        if delivery.attempts:
            raise ValueError("New deliveries must start with zero attempts")

        now = self._clock()
        delivery.scheduled_for = ensure_utc(delivery.scheduled_for)
        delivery.created_at = delivery.created_at or now
        delivery.updated_at = now

        stored = await self.store.insert(delivery)
        logger.info(
            "Delivery enqueued",
            delivery_id=stored.id,
            campaign_ref=stored.campaign_ref,
            destination_ref=stored.destination_ref,
            scheduled_for=stored.scheduled_for.isoformat(),
        )
        return stored

    async def get(self, delivery_id: str) -> Delivery | None:
        return await self.store.get(delivery_id)

    async def list_for_campaign(self, campaign_ref: str) -> list[Delivery]:
        return await self.store.list_for_campaign(campaign_ref)

    async def claim_due(self, limit: int, now: datetime | None = None) -> list[Delivery]:
        """
        Atomically move up to `limit` due pending deliveries to queued.

        Returns:
            Claimed deliveries ordered by (priority desc, scheduled_for asc)
        """
        if limit <= 0:
            return []
        claimed = await self.store.claim_due(now or self._clock(), limit)
        claimed.sort(key=lambda d: (-d.priority, d.scheduled_for))
        return claimed

    async def start_processing(self, delivery_id: str) -> Delivery:
        return await self._transition(delivery_id, DeliveryState.PROCESSING)

    async def requeue(self, delivery_id: str, error: str) -> Delivery:
        """
        Record a transient failure.

        Returns the delivery back in pending with a pushed-back schedule, or in
        failed if this attempt exhausted the retry budget.
        """
        current = await self.store.get(delivery_id)
        if current is None or current.state != DeliveryState.PROCESSING:
            raise InvalidTransitionError(
                delivery_id, current.state if current else None, DeliveryState.PENDING
            )

        attempts = current.attempts + 1
        if self.retry_policy.exhausted(attempts):
            failed = await self._transition(
                delivery_id,
                DeliveryState.FAILED,
                attempts_delta=1,
                fields={"last_error": error},
                from_states=PROCESSING_ONLY,
            )
            logger.warning(
                "Delivery retry budget exhausted",
                delivery_id=delivery_id,
                attempts=failed.attempts,
                error=error,
            )
            return failed

        now = self._clock()
        retry_at = now + self.retry_policy.backoff_for(attempts)
        requeued = await self._transition(
            delivery_id,
            DeliveryState.PENDING,
            attempts_delta=1,
            fields={"last_error": error, "scheduled_for": retry_at},
            now=now,
            from_states=PROCESSING_ONLY,
        )
        logger.info(
            "Delivery requeued",
            delivery_id=delivery_id,
            attempts=requeued.attempts,
            retry_at=retry_at.isoformat(),
            error=error,
        )
        return requeued

    async def defer(self, delivery_id: str, until: datetime, reason: str) -> Delivery:
        """processing -> pending without consuming an attempt."""
        deferred = await self._transition(
            delivery_id,
            DeliveryState.PENDING,
            fields={"scheduled_for": ensure_utc(until), "last_error": reason},
            from_states=PROCESSING_ONLY,
        )
        logger.info(
            "Delivery deferred",
            delivery_id=delivery_id,
            until=deferred.scheduled_for.isoformat(),
            reason=reason,
        )
        return deferred

    async def release(self, delivery_id: str, reason: str = CLAIM_RELEASED) -> Delivery:
        """queued -> pending, keeping the schedule and the attempt count."""
        released = await self._transition(
            delivery_id,
            DeliveryState.PENDING,
            fields={"last_error": reason},
            from_states=frozenset({DeliveryState.QUEUED}),
        )
        logger.info("Delivery claim released", delivery_id=delivery_id, reason=reason)
        return released

    async def recover_stale(self, older_than: timedelta, limit: int = 100) -> dict[str, Any]:
        """
        Return claims abandoned by a dead worker to the pending pool.

        Args:
            older_than: Claims whose last update is older than this are stale
            limit: Maximum number of claims handled per call

        Returns:
            Counts of released (was queued), requeued and failed (was processing)
        """
        cutoff = self._clock() - older_than
        stale = await self.store.find_stale(CLAIMED_STATES, cutoff, limit)
        result = {"stale": len(stale), "released": 0, "requeued": 0, "failed": 0}

        for delivery in stale:
            try:
                if delivery.state == DeliveryState.QUEUED:
                    await self.release(delivery.id, STALE_CLAIM)
                    result["released"] += 1
                    continue
                recovered = await self.requeue(delivery.id, STALE_CLAIM)
            except InvalidTransitionError:
                # Its worker resolved it after all
                continue
            if recovered.state == DeliveryState.FAILED:
                result["failed"] += 1
            else:
                result["requeued"] += 1

        if stale:
            logger.warning("Recovered stale delivery claims", cutoff=cutoff.isoformat(), **result)
        return result

    async def complete(
        self, delivery_id: str, external_message_id: str, sent_at: datetime | None = None
    ) -> Delivery:
        return await self._transition(
            delivery_id,
            DeliveryState.SENT,
            attempts_delta=1,
            fields={
                "external_message_id": external_message_id,
                "sent_at": ensure_utc(sent_at) if sent_at else self._clock(),
                "last_error": None,
            },
        )

    async def fail(self, delivery_id: str, error: str) -> Delivery:
        """Permanent failure: processing -> failed immediately."""
        failed = await self._transition(
            delivery_id,
            DeliveryState.FAILED,
            attempts_delta=1,
            fields={"last_error": error},
        )
        logger.warning("Delivery failed permanently", delivery_id=delivery_id, error=error)
        return failed

    async def cancel(self, delivery_id: str, reason: str = "cancelled") -> Delivery:
        return await self._transition(
            delivery_id, DeliveryState.CANCELLED, fields={"last_error": reason}
        )

    async def cancel_campaign(self, campaign_ref: str, reason: str = "campaign_withdrawn") -> int:
        """Cancel every pending/queued delivery of a campaign. In-flight ones complete."""
        count = await self.store.cancel_campaign(campaign_ref, reason, self._clock())
        logger.info("Campaign deliveries cancelled", campaign_ref=campaign_ref, cancelled=count)
        return count

    async def _transition(
        self,
        delivery_id: str,
        target: DeliveryState,
        *,
        attempts_delta: int = 0,
        fields: dict | None = None,
        now: datetime | None = None,
        from_states: frozenset[DeliveryState] | None = None,
    ) -> Delivery:
        updated = await self.store.transition(
            delivery_id,
            from_states or sources_for(target),
            target,
            now=now or self._clock(),
            attempts_delta=attempts_delta,
            fields=fields,
        )
        if updated is None:
            current = await self.store.get(delivery_id)
            raise InvalidTransitionError(delivery_id, current.state if current else None, target)
        return updated
