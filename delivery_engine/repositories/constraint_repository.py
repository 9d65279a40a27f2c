"""
PostgreSQL persistence for destination constraints and creatives.

`reserve_slot` folds the cap check, the cooldown check and the optimistic
posts_today increment into one UPDATE so concurrent workers cannot both pass.
"""

from datetime import datetime

from delivery_engine.db.helpers import execute_query, fetch_one
from delivery_engine.domain.models import (
    Creative,
    DestinationConstraint,
    MediaType,
    SlotReservation,
)
from delivery_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PostgresConstraintStore:
    SELECT_COLUMNS = """
        destination_ref, chat_id, max_per_day, cooldown_minutes,
        allowed_categories, is_active, posts_today, last_sent_at, total_posts
    """

    @staticmethod
    def _row_to_constraint(row: dict | None) -> DestinationConstraint | None:
        if not row:
            return None

        return DestinationConstraint(
            destination_ref=row["destination_ref"],
            chat_id=row["chat_id"],
            max_per_day=row["max_per_day"],
            cooldown_minutes=row["cooldown_minutes"],
            allowed_categories=frozenset(row.get("allowed_categories") or ()),
            is_active=row["is_active"],
            posts_today=row["posts_today"],
            last_sent_at=row.get("last_sent_at"),
            total_posts=row.get("total_posts", 0),
        )

    async def get(self, destination_ref: str) -> DestinationConstraint | None:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM destination_constraints
            WHERE destination_ref = %s
        """
        return self._row_to_constraint(await fetch_one(query, (destination_ref,)))

    async def upsert(self, constraint: DestinationConstraint) -> DestinationConstraint:
        # Counters are owned by the engine; group settings edits never reset them
        query = f"""
            INSERT INTO destination_constraints (
                destination_ref, chat_id, max_per_day, cooldown_minutes,
                allowed_categories, is_active
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (destination_ref) DO UPDATE SET
                chat_id = EXCLUDED.chat_id,
                max_per_day = EXCLUDED.max_per_day,
                cooldown_minutes = EXCLUDED.cooldown_minutes,
                allowed_categories = EXCLUDED.allowed_categories,
                is_active = EXCLUDED.is_active
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                constraint.destination_ref,
                constraint.chat_id,
                constraint.max_per_day,
                constraint.cooldown_minutes,
                sorted(constraint.allowed_categories),
                constraint.is_active,
            ),
        )
        logger.info(
            "Destination constraint saved",
            destination_ref=constraint.destination_ref,
            max_per_day=constraint.max_per_day,
            cooldown_minutes=constraint.cooldown_minutes,
        )
        return self._row_to_constraint(row)

    async def reserve_slot(self, destination_ref: str, now: datetime) -> SlotReservation | None:
        query = """
            WITH current AS (
                SELECT destination_ref, last_sent_at AS previous_last_sent_at
                FROM destination_constraints
                WHERE destination_ref = %(ref)s
                FOR UPDATE
            )
            UPDATE destination_constraints AS c
            SET posts_today = c.posts_today + 1,
                last_sent_at = %(now)s
            FROM current
            WHERE c.destination_ref = current.destination_ref
              AND c.is_active
              AND c.posts_today < c.max_per_day
              AND (
                  c.last_sent_at IS NULL
                  OR c.last_sent_at <= %(now)s - make_interval(mins => c.cooldown_minutes)
              )
            RETURNING c.posts_today, current.previous_last_sent_at
        """
        row = await fetch_one(query, {"ref": destination_ref, "now": now})
        if not row:
            return None

        return SlotReservation(
            destination_ref=destination_ref,
            reserved_at=now,
            previous_last_sent_at=row.get("previous_last_sent_at"),
            posts_today=row["posts_today"],
        )

    async def release_slot(self, reservation: SlotReservation) -> None:
        query = """
            UPDATE destination_constraints
            SET posts_today = GREATEST(posts_today - 1, 0),
                last_sent_at = CASE
                    WHEN last_sent_at = %(reserved_at)s THEN %(previous)s
                    ELSE last_sent_at
                END
            WHERE destination_ref = %(ref)s
        """
        await execute_query(
            query,
            {
                "ref": reservation.destination_ref,
                "reserved_at": reservation.reserved_at,
                "previous": reservation.previous_last_sent_at,
            },
        )

    async def record_sent(self, destination_ref: str, sent_at: datetime) -> None:
        query = """
            UPDATE destination_constraints
            SET last_sent_at = GREATEST(COALESCE(last_sent_at, %(sent_at)s), %(sent_at)s),
                total_posts = total_posts + 1
            WHERE destination_ref = %(ref)s
        """
        await execute_query(query, {"ref": destination_ref, "sent_at": sent_at})

    async def reset_daily_counters(self) -> int:
        return await execute_query(
            "UPDATE destination_constraints SET posts_today = 0 WHERE posts_today > 0"
        )


class PostgresCreativeStore:
    SELECT_COLUMNS = "id, category, caption, media_type, media_url, cta_text, cta_url, times_used"

    async def get(self, creative_ref: str) -> Creative | None:
        row = await fetch_one(
            f"SELECT {self.SELECT_COLUMNS} FROM creatives WHERE id = %s", (creative_ref,)
        )
        if not row:
            return None

        return Creative(
            id=row["id"],
            category=row["category"],
            caption=row["caption"],
            media_type=MediaType(row["media_type"]),
            media_url=row.get("media_url"),
            cta_text=row.get("cta_text"),
            cta_url=row.get("cta_url"),
            times_used=row.get("times_used", 0),
        )

    async def upsert(self, creative: Creative) -> Creative:
        query = """
            INSERT INTO creatives (id, category, caption, media_type, media_url, cta_text, cta_url)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                category = EXCLUDED.category,
                caption = EXCLUDED.caption,
                media_type = EXCLUDED.media_type,
                media_url = EXCLUDED.media_url,
                cta_text = EXCLUDED.cta_text,
                cta_url = EXCLUDED.cta_url
        """
        await execute_query(
            query,
            (
                creative.id,
                creative.category,
                creative.caption,
                creative.media_type.value,
                creative.media_url,
                creative.cta_text,
                creative.cta_url,
            ),
        )
        return creative

    async def record_use(self, creative_ref: str) -> None:
        await execute_query(
            "UPDATE creatives SET times_used = times_used + 1 WHERE id = %s", (creative_ref,)
        )
