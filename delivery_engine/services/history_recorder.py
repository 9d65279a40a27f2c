"""
Delivery History Recorder.

Appends one DeliveryRecord per completed send. A failed history write is
logged and swallowed: the send already happened and must not be rolled back.
"""

from datetime import datetime

from delivery_engine.domain.models import Delivery, DeliveryMetrics, DeliveryRecord
from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.repositories.base import HistoryStore

logger = get_logger(__name__)


class DeliveryHistoryRecorder:
    def __init__(self, store: HistoryStore):
        self.store = store

    async def record(
        self, delivery: Delivery, sent_at: datetime, processing_duration_ms: int
    ) -> DeliveryRecord | None:
        if not delivery.external_message_id:
            logger.error("Cannot record delivery without a message id", delivery_id=delivery.id)
            return None

        record = DeliveryRecord(
            delivery_id=delivery.id,
            campaign_ref=delivery.campaign_ref,
            creative_ref=delivery.creative_ref,
            destination_ref=delivery.destination_ref,
            external_message_id=delivery.external_message_id,
            sent_at=sent_at,
            processing_duration_ms=max(0, int(processing_duration_ms)),
            metrics=DeliveryMetrics(),
        )

        try:
            await self.store.insert(record)
        except Exception as e:
            logger.error(
                "Failed to write delivery history",
                delivery_id=delivery.id,
                campaign_ref=delivery.campaign_ref,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        return record

    async def list_for_campaign(self, campaign_ref: str) -> list[DeliveryRecord]:
        return await self.store.list_for_campaign(campaign_ref)

    async def list_for_destination(
        self, destination_ref: str, limit: int = 50
    ) -> list[DeliveryRecord]:
        return await self.store.list_for_destination(destination_ref, limit)
