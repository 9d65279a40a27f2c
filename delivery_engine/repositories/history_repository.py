"""
PostgreSQL persistence for delivery history records.
"""

from dataclasses import asdict

from psycopg.types.json import Jsonb

from delivery_engine.db.helpers import execute_query, fetch_all
from delivery_engine.domain.models import DeliveryMetrics, DeliveryRecord


class PostgresHistoryStore:
    SELECT_COLUMNS = """
        delivery_id, campaign_ref, creative_ref, destination_ref,
        external_message_id, sent_at, processing_duration_ms, metrics
    """

    @staticmethod
    def _row_to_record(row: dict) -> DeliveryRecord:
        metrics = row.get("metrics") or {}
        return DeliveryRecord(
            delivery_id=row["delivery_id"],
            campaign_ref=row["campaign_ref"],
            creative_ref=row["creative_ref"],
            destination_ref=row["destination_ref"],
            external_message_id=row["external_message_id"],
            sent_at=row["sent_at"],
            processing_duration_ms=row["processing_duration_ms"],
            metrics=DeliveryMetrics(
                **{k: int(v) for k, v in metrics.items() if k in DeliveryMetrics.__slots__}
            ),
        )

    async def insert(self, record: DeliveryRecord) -> None:
        # One record per delivery; a replayed insert is a no-op
        query = """
            INSERT INTO delivery_records (
                delivery_id, campaign_ref, creative_ref, destination_ref,
                external_message_id, sent_at, processing_duration_ms, metrics
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (delivery_id) DO NOTHING
        """
        await execute_query(
            query,
            (
                record.delivery_id,
                record.campaign_ref,
                record.creative_ref,
                record.destination_ref,
                record.external_message_id,
                record.sent_at,
                record.processing_duration_ms,
                Jsonb(asdict(record.metrics)),
            ),
        )

    async def list_for_campaign(self, campaign_ref: str) -> list[DeliveryRecord]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM delivery_records
            WHERE campaign_ref = %s
            ORDER BY sent_at DESC
        """
        return [self._row_to_record(row) for row in await fetch_all(query, (campaign_ref,))]

    async def list_for_destination(
        self, destination_ref: str, limit: int = 50
    ) -> list[DeliveryRecord]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM delivery_records
            WHERE destination_ref = %s
            ORDER BY sent_at DESC
            LIMIT %s
        """
        rows = await fetch_all(query, (destination_ref, limit))
        return [self._row_to_record(row) for row in rows]
