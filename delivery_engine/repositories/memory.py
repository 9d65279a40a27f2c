"""
In-process storage backend.

Implements the store protocols with plain dicts guarded by one asyncio.Lock
per store, so every conditional update is atomic with respect to other
coroutines in the same event loop. Used for local runs (STORE_BACKEND=memory)
and by the test-suite.

Rows are copied on the way in and out; callers never hold a live reference.
"""

import asyncio
import copy
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from delivery_engine.domain.models import (
    AccessGrant,
    AuditEvent,
    Creative,
    DeliveredMessageRef,
    Delivery,
    DeliveryRecord,
    DeliveryState,
    DestinationConstraint,
    EngineSettings,
    GrantStatus,
    SlotReservation,
)
from delivery_engine.repositories.base import NOTIFICATION_FLAGS
from delivery_engine.utils.clock import utc_now

MUTABLE_DELIVERY_FIELDS = frozenset(
    {"last_error", "scheduled_for", "sent_at", "external_message_id"}
)


class InMemoryDeliveryStore:
    def __init__(self):
        self._rows: dict[str, Delivery] = {}
        self._lock = asyncio.Lock()

    async def insert(self, delivery: Delivery) -> Delivery:
        async with self._lock:
            if delivery.id in self._rows:
                raise ValueError(f"Delivery {delivery.id} already exists")
            self._rows[delivery.id] = replace(delivery)
            return replace(delivery)

    async def get(self, delivery_id: str) -> Delivery | None:
        async with self._lock:
            row = self._rows.get(delivery_id)
            return replace(row) if row else None

    async def claim_due(self, now: datetime, limit: int) -> list[Delivery]:
        async with self._lock:
            due = [
                row
                for row in self._rows.values()
                if row.state == DeliveryState.PENDING and row.scheduled_for <= now
            ]
            due.sort(key=lambda row: (-row.priority, row.scheduled_for))

            claimed = []
            for row in due[:limit]:
                row.state = DeliveryState.QUEUED
                row.updated_at = now
                claimed.append(replace(row))
            return claimed

    async def find_stale(
        self, states: frozenset[DeliveryState], updated_before: datetime, limit: int
    ) -> list[Delivery]:
        async with self._lock:
            rows = [
                replace(row)
                for row in self._rows.values()
                if row.state in states and row.updated_at and row.updated_at < updated_before
            ]
        rows.sort(key=lambda row: row.updated_at)
        return rows[:limit]

    async def transition(
        self,
        delivery_id: str,
        from_states: frozenset[DeliveryState],
        to_state: DeliveryState,
        *,
        now: datetime,
        attempts_delta: int = 0,
        fields: dict[str, Any] | None = None,
    ) -> Delivery | None:
        fields = fields or {}
        unknown = set(fields) - MUTABLE_DELIVERY_FIELDS
        if unknown:
            raise ValueError(f"Unsupported delivery fields: {sorted(unknown)}")

        async with self._lock:
            row = self._rows.get(delivery_id)
            if row is None or row.state not in from_states:
                return None

            row.state = to_state
            row.attempts += attempts_delta
            row.updated_at = now
            for name, value in fields.items():
                setattr(row, name, value)
            return replace(row)

    async def cancel_campaign(self, campaign_ref: str, reason: str, now: datetime) -> int:
        cancellable = {DeliveryState.PENDING, DeliveryState.QUEUED}
        async with self._lock:
            count = 0
            for row in self._rows.values():
                if row.campaign_ref == campaign_ref and row.state in cancellable:
                    row.state = DeliveryState.CANCELLED
                    row.last_error = reason
                    row.updated_at = now
                    count += 1
            return count

    async def list_for_campaign(self, campaign_ref: str) -> list[Delivery]:
        async with self._lock:
            rows = [replace(row) for row in self._rows.values() if row.campaign_ref == campaign_ref]
        rows.sort(key=lambda row: row.scheduled_for)
        return rows


class InMemoryConstraintStore:
    def __init__(self):
        self._rows: dict[str, DestinationConstraint] = {}
        self._lock = asyncio.Lock()

    async def get(self, destination_ref: str) -> DestinationConstraint | None:
        async with self._lock:
            row = self._rows.get(destination_ref)
            return replace(row) if row else None

    async def upsert(self, constraint: DestinationConstraint) -> DestinationConstraint:
        async with self._lock:
            self._rows[constraint.destination_ref] = replace(constraint)
            return replace(constraint)

    async def reserve_slot(self, destination_ref: str, now: datetime) -> SlotReservation | None:
        async with self._lock:
            row = self._rows.get(destination_ref)
            if row is None or not row.is_active:
                return None
            if row.posts_today >= row.max_per_day:
                return None
            cooldown = timedelta(minutes=row.cooldown_minutes)
            if row.last_sent_at is not None and now - row.last_sent_at < cooldown:
                return None

            reservation = SlotReservation(
                destination_ref=destination_ref,
                reserved_at=now,
                previous_last_sent_at=row.last_sent_at,
                posts_today=row.posts_today + 1,
            )
            row.posts_today += 1
            row.last_sent_at = now
            return reservation

    async def release_slot(self, reservation: SlotReservation) -> None:
        async with self._lock:
            row = self._rows.get(reservation.destination_ref)
            if row is None:
                return
            row.posts_today = max(0, row.posts_today - 1)
            if row.last_sent_at == reservation.reserved_at:
                row.last_sent_at = reservation.previous_last_sent_at

    async def record_sent(self, destination_ref: str, sent_at: datetime) -> None:
        async with self._lock:
            row = self._rows.get(destination_ref)
            if row is None:
                return
            row.total_posts += 1
            if row.last_sent_at is None or row.last_sent_at < sent_at:
                row.last_sent_at = sent_at

    async def reset_daily_counters(self) -> int:
        async with self._lock:
            touched = [row for row in self._rows.values() if row.posts_today]
            for row in touched:
                row.posts_today = 0
            return len(touched)


class InMemoryCreativeStore:
    def __init__(self):
        self._rows: dict[str, Creative] = {}

    async def get(self, creative_ref: str) -> Creative | None:
        row = self._rows.get(creative_ref)
        return replace(row) if row else None

    async def upsert(self, creative: Creative) -> Creative:
        self._rows[creative.id] = replace(creative)
        return replace(creative)

    async def record_use(self, creative_ref: str) -> None:
        row = self._rows.get(creative_ref)
        if row is not None:
            row.times_used += 1


class InMemoryHistoryStore:
    def __init__(self):
        self._rows: list[DeliveryRecord] = []

    async def insert(self, record: DeliveryRecord) -> None:
        self._rows.append(copy.deepcopy(record))

    async def list_for_campaign(self, campaign_ref: str) -> list[DeliveryRecord]:
        rows = [copy.deepcopy(r) for r in self._rows if r.campaign_ref == campaign_ref]
        return sorted(rows, key=lambda r: r.sent_at, reverse=True)

    async def list_for_destination(
        self, destination_ref: str, limit: int = 50
    ) -> list[DeliveryRecord]:
        rows = [copy.deepcopy(r) for r in self._rows if r.destination_ref == destination_ref]
        return sorted(rows, key=lambda r: r.sent_at, reverse=True)[:limit]


class InMemoryGrantStore:
    def __init__(self):
        self._rows: dict[str, AccessGrant] = {}
        self._lock = asyncio.Lock()

    async def insert(self, grant: AccessGrant) -> AccessGrant:
        async with self._lock:
            self._rows[grant.id] = copy.deepcopy(grant)
            return copy.deepcopy(grant)

    async def get(self, grant_id: str) -> AccessGrant | None:
        async with self._lock:
            row = self._rows.get(grant_id)
            return copy.deepcopy(row) if row else None

    async def add_delivered_messages(self, grant_id: str, ref: DeliveredMessageRef) -> bool:
        async with self._lock:
            row = self._rows.get(grant_id)
            if row is None or row.status == GrantStatus.EXPIRED:
                return False
            row.delivered_message_refs.append(copy.deepcopy(ref))
            return True

    async def find_expiring(
        self, now: datetime, window_end: datetime, flag: str
    ) -> list[AccessGrant]:
        _check_flag(flag)
        async with self._lock:
            return [
                copy.deepcopy(row)
                for row in self._rows.values()
                if row.status == GrantStatus.COMPLETED
                and row.access_expires_at is not None
                and now < row.access_expires_at <= window_end
                and not getattr(row, flag)
            ]

    async def mark_notified(self, grant_id: str, flag: str) -> bool:
        _check_flag(flag)
        async with self._lock:
            row = self._rows.get(grant_id)
            if row is None or getattr(row, flag):
                return False
            setattr(row, flag, True)
            return True

    async def find_expired(self, now: datetime) -> list[AccessGrant]:
        async with self._lock:
            return [
                copy.deepcopy(row)
                for row in self._rows.values()
                if row.status == GrantStatus.COMPLETED
                and row.access_expires_at is not None
                and row.access_expires_at <= now
            ]

    async def mark_expired(self, grant_id: str) -> bool:
        async with self._lock:
            row = self._rows.get(grant_id)
            if row is None or row.status != GrantStatus.COMPLETED:
                return False
            row.status = GrantStatus.EXPIRED
            row.delivered_message_refs = []
            return True


class InMemoryAuditStore:
    def __init__(self):
        self.events: list[AuditEvent] = []

    async def insert(self, event: AuditEvent) -> None:
        self.events.append(copy.deepcopy(event))

    async def insert_many(self, events: list[AuditEvent]) -> None:
        self.events.extend(copy.deepcopy(events))

    async def list_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        matches = [
            event
            for event in self.events
            if (entity_type is None or event.entity_type == entity_type)
            and (entity_id is None or event.entity_id == entity_id)
        ]
        return copy.deepcopy(list(reversed(matches))[:limit])


class InMemorySettingsStore:
    def __init__(self, initial: EngineSettings | None = None):
        self._row = initial or EngineSettings()
        self._lock = asyncio.Lock()

    async def get(self) -> EngineSettings:
        async with self._lock:
            return replace(self._row)

    async def set_emergency_stop(self, active: bool, actor_ref: str) -> EngineSettings:
        async with self._lock:
            self._row = EngineSettings(
                version=self._row.version + 1,
                emergency_stop_active=active,
                updated_at=utc_now(),
                updated_by=actor_ref,
            )
            return replace(self._row)


def _check_flag(flag: str) -> None:
    if flag not in NOTIFICATION_FLAGS:
        raise ValueError(f"Unknown notification flag: {flag}")
