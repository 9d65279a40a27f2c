"""
Storage interfaces for the delivery engine.

Each store is a Protocol so the engine never depends on where state lives.
Two backends implement them: PostgreSQL (the *_repository modules) for
deployments and an in-process backend (repositories/memory) for local runs
and the test-suite.

Every method that changes state in a way other workers can race on
(`claim_due`, `transition`, `reserve_slot`, `mark_notified`, `mark_expired`)
must be a single conditional update keyed on the current value.
"""

from datetime import datetime
from typing import Any, Protocol

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
    SlotReservation,
)

# Names of the notification flags on AccessGrant
NOTIFICATION_FLAGS = ("notified_7d", "notified_1d")


class DeliveryStore(Protocol):
    async def insert(self, delivery: Delivery) -> Delivery: ...

    async def get(self, delivery_id: str) -> Delivery | None: ...

    async def claim_due(self, now: datetime, limit: int) -> list[Delivery]:
        """Move up to `limit` due pending deliveries to queued and return them."""
        ...

    async def find_stale(
        self, states: frozenset[DeliveryState], updated_before: datetime, limit: int
    ) -> list[Delivery]:
        """Deliveries in `states` untouched since `updated_before`, oldest first."""
        ...

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
        """
        Conditionally move one delivery to `to_state`.

        Returns the updated delivery, or None when its current state is not in
        `from_states` (another actor got there first, or it does not exist).
        """
        ...

    async def cancel_campaign(self, campaign_ref: str, reason: str, now: datetime) -> int: ...

    async def list_for_campaign(self, campaign_ref: str) -> list[Delivery]: ...


class ConstraintStore(Protocol):
    async def get(self, destination_ref: str) -> DestinationConstraint | None: ...

    async def upsert(self, constraint: DestinationConstraint) -> DestinationConstraint: ...

    async def reserve_slot(self, destination_ref: str, now: datetime) -> SlotReservation | None:
        """
        Atomically check cap + cooldown and take one posting slot.

        Increments posts_today and stamps last_sent_at=now. Returns None when
        the destination is missing, inactive, capped or cooling down.
        """
        ...

    async def release_slot(self, reservation: SlotReservation) -> None:
        """Undo a reservation whose send failed permanently."""
        ...

    async def record_sent(self, destination_ref: str, sent_at: datetime) -> None: ...

    async def reset_daily_counters(self) -> int: ...


class CreativeStore(Protocol):
    async def get(self, creative_ref: str) -> Creative | None: ...

    async def upsert(self, creative: Creative) -> Creative: ...

    async def record_use(self, creative_ref: str) -> None: ...


class HistoryStore(Protocol):
    async def insert(self, record: DeliveryRecord) -> None: ...

    async def list_for_campaign(self, campaign_ref: str) -> list[DeliveryRecord]: ...

    async def list_for_destination(
        self, destination_ref: str, limit: int = 50
    ) -> list[DeliveryRecord]: ...


class GrantStore(Protocol):
    async def insert(self, grant: AccessGrant) -> AccessGrant: ...

    async def get(self, grant_id: str) -> AccessGrant | None: ...

    async def add_delivered_messages(self, grant_id: str, ref: DeliveredMessageRef) -> bool: ...

    async def find_expiring(
        self, now: datetime, window_end: datetime, flag: str
    ) -> list[AccessGrant]:
        """Completed grants expiring in (now, window_end] whose `flag` is still false."""
        ...

    async def mark_notified(self, grant_id: str, flag: str) -> bool:
        """Flip `flag` false -> true. Returns False if it was already set."""
        ...

    async def find_expired(self, now: datetime) -> list[AccessGrant]: ...

    async def mark_expired(self, grant_id: str) -> bool:
        """completed -> expired and clear delivered message refs."""
        ...


class AuditStore(Protocol):
    async def insert(self, event: AuditEvent) -> None: ...

    async def insert_many(self, events: list[AuditEvent]) -> None: ...

    async def list_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]: ...


class SettingsStore(Protocol):
    async def get(self) -> EngineSettings: ...

    async def set_emergency_stop(self, active: bool, actor_ref: str) -> EngineSettings: ...
