"""
PostgreSQL persistence for audit events and the engine settings record.
"""

import json
from functools import partial

from psycopg.types.json import Jsonb

from delivery_engine.db.helpers import execute_many, execute_query, fetch_all, fetch_one
from delivery_engine.domain.models import AuditEvent, EngineSettings

# Audit payloads may carry datetimes and enums
_dumps = partial(json.dumps, default=str)

_INSERT_EVENT = """
    INSERT INTO audit_events (
        actor_ref, action, entity_type, entity_id, severity, changes, metadata, occurred_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()))
"""


def _event_params(event: AuditEvent) -> tuple:
    return (
        event.actor_ref,
        event.action,
        event.entity_type,
        event.entity_id,
        event.severity,
        Jsonb(event.changes, dumps=_dumps) if event.changes is not None else None,
        Jsonb(event.metadata, dumps=_dumps) if event.metadata is not None else None,
        event.occurred_at,
    )


class PostgresAuditStore:
    async def insert(self, event: AuditEvent) -> None:
        await execute_query(_INSERT_EVENT, _event_params(event))

    async def insert_many(self, events: list[AuditEvent]) -> None:
        await execute_many(_INSERT_EVENT, [_event_params(event) for event in events])

    async def list_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        query = """
            SELECT actor_ref, action, entity_type, entity_id, severity,
                   changes, metadata, occurred_at
            FROM audit_events
            WHERE (%(entity_type)s::text IS NULL OR entity_type = %(entity_type)s)
              AND (%(entity_id)s::text IS NULL OR entity_id = %(entity_id)s)
            ORDER BY occurred_at DESC, id DESC
            LIMIT %(limit)s
        """
        rows = await fetch_all(
            query, {"entity_type": entity_type, "entity_id": entity_id, "limit": limit}
        )
        return [
            AuditEvent(
                action=row["action"],
                entity_type=row["entity_type"],
                entity_id=row.get("entity_id"),
                actor_ref=row["actor_ref"],
                severity=row["severity"],
                changes=row.get("changes"),
                metadata=row.get("metadata"),
                occurred_at=row.get("occurred_at"),
            )
            for row in rows
        ]


class PostgresSettingsStore:
    KEY = "default"

    @staticmethod
    def _row_to_settings(row: dict | None) -> EngineSettings:
        if not row:
            return EngineSettings()
        return EngineSettings(
            version=row["version"],
            emergency_stop_active=row["emergency_stop_active"],
            updated_at=row.get("updated_at"),
            updated_by=row.get("updated_by"),
        )

    async def get(self) -> EngineSettings:
        row = await fetch_one(
            """
            SELECT version, emergency_stop_active, updated_at, updated_by
            FROM engine_settings
            WHERE key = %s
            """,
            (self.KEY,),
        )
        return self._row_to_settings(row)

    async def set_emergency_stop(self, active: bool, actor_ref: str) -> EngineSettings:
        query = """
            INSERT INTO engine_settings (
                key, version, emergency_stop_active, updated_at, updated_by
            )
            VALUES (%(key)s, 1, %(active)s, NOW(), %(actor)s)
            ON CONFLICT (key) DO UPDATE SET
                version = engine_settings.version + 1,
                emergency_stop_active = EXCLUDED.emergency_stop_active,
                updated_at = EXCLUDED.updated_at,
                updated_by = EXCLUDED.updated_by
            RETURNING version, emergency_stop_active, updated_at, updated_by
        """
        row = await fetch_one(query, {"key": self.KEY, "active": active, "actor": actor_ref})
        return self._row_to_settings(row)
