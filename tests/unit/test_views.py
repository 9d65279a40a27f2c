from datetime import timedelta

import pytest

from delivery_engine.domain.models import (
    AccessGrant,
    AuditEvent,
    DeliveredMessageRef,
    DestinationConstraint,
    GrantStatus,
)
from delivery_engine.services import views
from delivery_engine.services.constraint_service import COOLDOWN_ACTIVE


@pytest.mark.asyncio
async def test_destination_status_reports_cooldown(stores, clock):
    await stores.constraints.upsert(
        DestinationConstraint(
            "group-1",
            "-1",
            max_per_day=5,
            cooldown_minutes=60,
            posts_today=2,
            last_sent_at=clock.now - timedelta(minutes=45),
        )
    )

    status = await views.destination_status("group-1", stores.constraints, now=clock.now)

    assert status["remaining_today"] == 3
    assert status["cooldown_remaining_seconds"] == 15 * 60
    assert status["can_post_now"] is False
    assert status["blocked_reason"] == COOLDOWN_ACTIVE
    assert status["next_eligible_at"] == (clock.now + timedelta(minutes=15)).isoformat()


@pytest.mark.asyncio
async def test_destination_status_unknown(stores):
    assert await views.destination_status("nope", stores.constraints) is None


@pytest.mark.asyncio
async def test_grant_status_countdown(stores, clock):
    grant = await stores.grants.insert(
        AccessGrant(
            holder_ref="user-1",
            granted_product_ref="vip",
            status=GrantStatus.COMPLETED,
            access_expires_at=clock.now + timedelta(days=2, hours=3),
            delivered_message_refs=[DeliveredMessageRef("-100", ["1", "2", "3"])],
        )
    )

    status = await views.grant_status(grant.id, stores.grants, now=clock.now)

    assert status["days_until_expiry"] == 2
    assert status["seconds_until_expiry"] == int(timedelta(days=2, hours=3).total_seconds())
    assert status["delivered_message_count"] == 3
    assert status["status"] == "completed"


@pytest.mark.asyncio
async def test_campaign_deliveries_counts_by_state(engine, stores, make_delivery):
    await engine.queue.enqueue(make_delivery())
    second = await engine.queue.enqueue(make_delivery())
    await engine.queue.cancel(second.id)

    view = await views.campaign_deliveries("campaign-1", stores.deliveries, stores.history)

    assert view["total"] == 2
    assert view["total_posts"] == 0
    assert view["by_state"] == {"pending": 1, "cancelled": 1}
    assert view["history"] == []


@pytest.mark.asyncio
async def test_audit_trail_most_recent_first(stores):
    for action in ("a", "b", "c"):
        await stores.audit.insert(AuditEvent(action=action, entity_type="delivery", entity_id="d"))
    await stores.audit.insert(AuditEvent(action="x", entity_type="access_grant", entity_id="g"))

    trail = await views.audit_trail(stores.audit, entity_type="delivery", limit=2)

    assert [event["action"] for event in trail] == ["c", "b"]
