"""
PostgreSQL persistence for deliveries.

This is the delivery queue's backing store. `claim_due` and `transition` are
single conditional statements; row locks plus the state predicate guarantee
that two workers racing on the same id cannot both succeed.
"""

from datetime import datetime
from typing import Any

from delivery_engine.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from delivery_engine.domain.models import Delivery, DeliveryState, ScheduleMode
from delivery_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Columns a transition may set besides state/attempts/updated_at
MUTABLE_FIELDS = ("last_error", "scheduled_for", "sent_at", "external_message_id")


class DeliveryRepositoryError(DatabaseError):
    """More specific exception for delivery persistence failures."""


class PostgresDeliveryStore:
    SELECT_COLUMNS = """
        id, campaign_ref, creative_ref, destination_ref, scheduled_for,
        schedule_mode, state, priority, attempts, last_error, sent_at,
        external_message_id, created_at, updated_at
    """

    @staticmethod
    def _row_to_delivery(row: dict | None) -> Delivery | None:
        if not row:
            return None

        return Delivery(
            id=row["id"],
            campaign_ref=row["campaign_ref"],
            creative_ref=row["creative_ref"],
            destination_ref=row["destination_ref"],
            scheduled_for=row["scheduled_for"],
            schedule_mode=ScheduleMode(row["schedule_mode"]),
            state=DeliveryState(row["state"]),
            priority=row["priority"],
            attempts=row["attempts"],
            last_error=row.get("last_error"),
            sent_at=row.get("sent_at"),
            external_message_id=row.get("external_message_id"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    async def insert(self, delivery: Delivery) -> Delivery:
        query = f"""
            INSERT INTO deliveries (
                id, campaign_ref, creative_ref, destination_ref, scheduled_for,
                schedule_mode, state, priority, attempts
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                delivery.id,
                delivery.campaign_ref,
                delivery.creative_ref,
                delivery.destination_ref,
                delivery.scheduled_for,
                delivery.schedule_mode.value,
                delivery.state.value,
                delivery.priority,
                delivery.attempts,
            ),
        )
        if not row:
            raise DeliveryRepositoryError("Failed to insert delivery", operation="insert")
        return self._row_to_delivery(row)

    async def get(self, delivery_id: str) -> Delivery | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM deliveries WHERE id = %s"
        return self._row_to_delivery(await fetch_one(query, (delivery_id,)))

    async def claim_due(self, now: datetime, limit: int) -> list[Delivery]:
        # SKIP LOCKED lets concurrent claimers partition the due set instead of
        # blocking on each other; the state predicate on the UPDATE is the
        # exclusivity guarantee.
        query = f"""
            WITH due AS (
                SELECT id
                FROM deliveries
                WHERE state = 'pending' AND scheduled_for <= %(now)s
                ORDER BY priority DESC, scheduled_for ASC
                LIMIT %(limit)s
                FOR UPDATE SKIP LOCKED
            )
            UPDATE deliveries AS d
            SET state = 'queued', updated_at = %(now)s
            FROM due
            WHERE d.id = due.id AND d.state = 'pending'
            RETURNING {", ".join(f"d.{col.strip()}" for col in self.SELECT_COLUMNS.split(","))}
        """
        rows = await fetch_all(query, {"now": now, "limit": limit})
        return [self._row_to_delivery(row) for row in rows]

    async def find_stale(
        self, states: frozenset[DeliveryState], updated_before: datetime, limit: int
    ) -> list[Delivery]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM deliveries
            WHERE state = ANY(%(states)s) AND updated_at < %(updated_before)s
            ORDER BY updated_at ASC
            LIMIT %(limit)s
        """
        params = {
            "states": [state.value for state in states],
            "updated_before": updated_before,
            "limit": limit,
        }
        return [self._row_to_delivery(row) for row in await fetch_all(query, params)]

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
        unknown = set(fields) - set(MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported delivery fields: {sorted(unknown)}")

        # Column names come from the MUTABLE_FIELDS whitelist only
        assignments = "".join(f", {name} = %({name})s" for name in fields)
        query = f"""
            UPDATE deliveries
            SET state = %(to_state)s,
                attempts = attempts + %(attempts_delta)s,
                updated_at = %(now)s{assignments}
            WHERE id = %(id)s AND state = ANY(%(from_states)s)
            RETURNING {self.SELECT_COLUMNS}
        """
        params = {
            "id": delivery_id,
            "to_state": to_state.value,
            "attempts_delta": attempts_delta,
            "now": now,
            "from_states": [state.value for state in from_states],
            **fields,
        }
        return self._row_to_delivery(await fetch_one(query, params))

    async def cancel_campaign(self, campaign_ref: str, reason: str, now: datetime) -> int:
        query = """
            UPDATE deliveries
            SET state = 'cancelled', last_error = %s, updated_at = %s
            WHERE campaign_ref = %s AND state IN ('pending', 'queued')
        """
        return await execute_query(query, (reason, now, campaign_ref))

    async def list_for_campaign(self, campaign_ref: str) -> list[Delivery]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM deliveries
            WHERE campaign_ref = %s
            ORDER BY scheduled_for ASC
        """
        rows = await fetch_all(query, (campaign_ref,))
        return [self._row_to_delivery(row) for row in rows]
