"""
PostgreSQL persistence for access grants (paid subscriptions).
"""

from datetime import datetime

from psycopg.types.json import Jsonb

from delivery_engine.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from delivery_engine.domain.models import AccessGrant, DeliveredMessageRef, GrantStatus
from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.repositories.base import NOTIFICATION_FLAGS

logger = get_logger(__name__)


class GrantRepositoryError(DatabaseError):
    """More specific exception for grant persistence failures."""


def _refs_to_json(refs: list[DeliveredMessageRef]) -> list[dict]:
    return [{"channel_id": ref.channel_id, "message_ids": list(ref.message_ids)} for ref in refs]


def _refs_from_json(raw: list[dict] | None) -> list[DeliveredMessageRef]:
    return [
        DeliveredMessageRef(
            channel_id=str(item["channel_id"]),
            message_ids=[str(mid) for mid in item.get("message_ids", [])],
        )
        for item in raw or []
    ]


def _check_flag(flag: str) -> str:
    # Flag names are interpolated as column names
    if flag not in NOTIFICATION_FLAGS:
        raise ValueError(f"Unknown notification flag: {flag}")
    return flag


class PostgresGrantStore:
    SELECT_COLUMNS = """
        id, holder_ref, granted_product_ref, product_name, status,
        access_expires_at, delivered_message_refs, notified_7d, notified_1d
    """

    @staticmethod
    def _row_to_grant(row: dict | None) -> AccessGrant | None:
        if not row:
            return None

        return AccessGrant(
            id=row["id"],
            holder_ref=row["holder_ref"],
            granted_product_ref=row["granted_product_ref"],
            product_name=row.get("product_name"),
            status=GrantStatus(row["status"]),
            access_expires_at=row.get("access_expires_at"),
            delivered_message_refs=_refs_from_json(row.get("delivered_message_refs")),
            notified_7d=row["notified_7d"],
            notified_1d=row["notified_1d"],
        )

    async def insert(self, grant: AccessGrant) -> AccessGrant:
        query = f"""
            INSERT INTO access_grants (
                id, holder_ref, granted_product_ref, product_name, status,
                access_expires_at, delivered_message_refs, notified_7d, notified_1d
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                grant.id,
                grant.holder_ref,
                grant.granted_product_ref,
                grant.product_name,
                grant.status.value,
                grant.access_expires_at,
                Jsonb(_refs_to_json(grant.delivered_message_refs)),
                grant.notified_7d,
                grant.notified_1d,
            ),
        )
        if not row:
            raise GrantRepositoryError("Failed to insert access grant", operation="insert")
        return self._row_to_grant(row)

    async def get(self, grant_id: str) -> AccessGrant | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM access_grants WHERE id = %s"
        return self._row_to_grant(await fetch_one(query, (grant_id,)))

    async def add_delivered_messages(self, grant_id: str, ref: DeliveredMessageRef) -> bool:
        query = """
            UPDATE access_grants
            SET delivered_message_refs = delivered_message_refs || %s
            WHERE id = %s AND status <> 'expired'
        """
        updated = await execute_query(query, (Jsonb(_refs_to_json([ref])), grant_id))
        return updated > 0

    async def find_expiring(
        self, now: datetime, window_end: datetime, flag: str
    ) -> list[AccessGrant]:
        column = _check_flag(flag)
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM access_grants
            WHERE status = 'completed'
              AND access_expires_at > %s
              AND access_expires_at <= %s
              AND {column} = FALSE
            ORDER BY access_expires_at ASC
        """
        rows = await fetch_all(query, (now, window_end))
        return [self._row_to_grant(row) for row in rows]

    async def mark_notified(self, grant_id: str, flag: str) -> bool:
        column = _check_flag(flag)
        query = f"UPDATE access_grants SET {column} = TRUE WHERE id = %s AND {column} = FALSE"
        return await execute_query(query, (grant_id,)) > 0

    async def find_expired(self, now: datetime) -> list[AccessGrant]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM access_grants
            WHERE status = 'completed' AND access_expires_at <= %s
            ORDER BY access_expires_at ASC
        """
        rows = await fetch_all(query, (now,))
        return [self._row_to_grant(row) for row in rows]

    async def mark_expired(self, grant_id: str) -> bool:
        query = """
            UPDATE access_grants
            SET status = 'expired', delivered_message_refs = '[]'::jsonb
            WHERE id = %s AND status = 'completed'
        """
        return await execute_query(query, (grant_id,)) > 0
