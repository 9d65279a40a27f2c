"""
Read-only views consumed by the dashboard layer.

Each function returns plain dicts ready for JSON serialisation. Nothing here
mutates state.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any

from delivery_engine.domain.models import AccessGrant, AuditEvent, Delivery, DeliveryRecord
from delivery_engine.repositories.base import (
    AuditStore,
    ConstraintStore,
    DeliveryStore,
    GrantStore,
    HistoryStore,
)
from delivery_engine.services.constraint_service import cooldown_ends_at, evaluate
from delivery_engine.utils.clock import ensure_utc, utc_now


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _delivery_to_dict(delivery: Delivery) -> dict[str, Any]:
    return {
        "id": delivery.id,
        "creative_ref": delivery.creative_ref,
        "destination_ref": delivery.destination_ref,
        "state": delivery.state.value,
        "schedule_mode": delivery.schedule_mode.value,
        "priority": delivery.priority,
        "scheduled_for": _iso(delivery.scheduled_for),
        "attempts": delivery.attempts,
        "last_error": delivery.last_error,
        "sent_at": _iso(delivery.sent_at),
        "external_message_id": delivery.external_message_id,
    }


def _record_to_dict(record: DeliveryRecord) -> dict[str, Any]:
    return {
        "delivery_id": record.delivery_id,
        "destination_ref": record.destination_ref,
        "external_message_id": record.external_message_id,
        "sent_at": _iso(record.sent_at),
        "processing_duration_ms": record.processing_duration_ms,
        "metrics": asdict(record.metrics),
    }


async def campaign_deliveries(
    campaign_ref: str, deliveries: DeliveryStore, history: HistoryStore
) -> dict[str, Any]:
    """Deliveries of a campaign with per-state counts and send history."""
    rows = await deliveries.list_for_campaign(campaign_ref)
    records = await history.list_for_campaign(campaign_ref)

    counts: dict[str, int] = {}
    for row in rows:
        counts[row.state.value] = counts.get(row.state.value, 0) + 1

    return {
        "campaign_ref": campaign_ref,
        "total": len(rows),
        "total_posts": len(records),
        "by_state": counts,
        "deliveries": [_delivery_to_dict(row) for row in rows],
        "history": [_record_to_dict(record) for record in records],
    }


async def destination_status(
    destination_ref: str, constraints: ConstraintStore, now: datetime | None = None
) -> dict[str, Any] | None:
    """Cap and cooldown status for one destination, or None if unknown."""
    constraint = await constraints.get(destination_ref)
    if constraint is None:
        return None

    now = ensure_utc(now or utc_now())
    decision = evaluate(constraint, now)
    cooldown_end = cooldown_ends_at(constraint)
    cooldown_remaining = (
        max(0, int((cooldown_end - now).total_seconds())) if cooldown_end else 0
    )

    return {
        "destination_ref": destination_ref,
        "is_active": constraint.is_active,
        "max_per_day": constraint.max_per_day,
        "posts_today": constraint.posts_today,
        "total_posts": constraint.total_posts,
        "remaining_today": max(0, constraint.max_per_day - constraint.posts_today),
        "cooldown_minutes": constraint.cooldown_minutes,
        "cooldown_remaining_seconds": cooldown_remaining,
        "last_sent_at": _iso(constraint.last_sent_at),
        "can_post_now": decision.allowed,
        "blocked_reason": decision.reason,
        "next_eligible_at": _iso(now if decision.allowed else decision.earliest_at),
    }


def _grant_to_dict(grant: AccessGrant, now: datetime) -> dict[str, Any]:
    seconds_left = None
    if grant.access_expires_at is not None:
        seconds_left = max(0, int((ensure_utc(grant.access_expires_at) - now).total_seconds()))

    return {
        "id": grant.id,
        "holder_ref": grant.holder_ref,
        "granted_product_ref": grant.granted_product_ref,
        "product_name": grant.product_name,
        "status": grant.status.value,
        "access_expires_at": _iso(grant.access_expires_at),
        "seconds_until_expiry": seconds_left,
        "days_until_expiry": seconds_left // 86400 if seconds_left is not None else None,
        "delivered_message_count": grant.message_count(),
        "notified_7d": grant.notified_7d,
        "notified_1d": grant.notified_1d,
    }


async def grant_status(
    grant_id: str, grants: GrantStore, now: datetime | None = None
) -> dict[str, Any] | None:
    """Access grant status with expiry countdown, or None if unknown."""
    grant = await grants.get(grant_id)
    if grant is None:
        return None
    return _grant_to_dict(grant, ensure_utc(now or utc_now()))


def _event_to_dict(event: AuditEvent) -> dict[str, Any]:
    return {
        "action": event.action,
        "actor_ref": event.actor_ref,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "severity": event.severity,
        "changes": event.changes,
        "metadata": event.metadata,
        "occurred_at": _iso(event.occurred_at),
    }


async def audit_trail(
    audit: AuditStore,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Most recent audit events first."""
    events = await audit.list_events(entity_type=entity_type, entity_id=entity_id, limit=limit)
    return [_event_to_dict(event) for event in events]
