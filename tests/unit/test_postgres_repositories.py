"""
PostgreSQL stores with the query helpers patched out: row mapping and the
statements/parameters they send.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from delivery_engine.domain.models import DeliveryState, SlotReservation
from delivery_engine.repositories import (
    constraint_repository,
    delivery_repository,
    grant_repository,
    history_repository,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

DELIVERY_ROW = {
    "id": "d-1",
    "campaign_ref": "campaign-1",
    "creative_ref": "creative-1",
    "destination_ref": "group-1",
    "scheduled_for": NOW,
    "schedule_mode": "fixed",
    "state": "processing",
    "priority": 2,
    "attempts": 1,
    "last_error": None,
    "sent_at": None,
    "external_message_id": None,
    "created_at": NOW,
    "updated_at": NOW,
}


@pytest.mark.asyncio
async def test_transition_is_conditional_on_source_states(monkeypatch):
    fetch_one = AsyncMock(return_value={**DELIVERY_ROW, "state": "pending", "attempts": 2})
    monkeypatch.setattr(delivery_repository, "fetch_one", fetch_one)
    store = delivery_repository.PostgresDeliveryStore()

    updated = await store.transition(
        "d-1",
        frozenset({DeliveryState.PROCESSING}),
        DeliveryState.PENDING,
        now=NOW,
        attempts_delta=1,
        fields={"last_error": "timeout"},
    )

    query, params = fetch_one.await_args.args
    assert "state = ANY(%(from_states)s)" in query
    assert "last_error = %(last_error)s" in query
    assert params["from_states"] == ["processing"]
    assert params["attempts_delta"] == 1
    assert updated.state == DeliveryState.PENDING
    assert updated.attempts == 2


@pytest.mark.asyncio
async def test_transition_lost_race_returns_none(monkeypatch):
    monkeypatch.setattr(delivery_repository, "fetch_one", AsyncMock(return_value=None))
    store = delivery_repository.PostgresDeliveryStore()

    result = await store.transition(
        "d-1", frozenset({DeliveryState.QUEUED}), DeliveryState.PROCESSING, now=NOW
    )

    assert result is None


@pytest.mark.asyncio
async def test_transition_rejects_unknown_columns():
    store = delivery_repository.PostgresDeliveryStore()

    with pytest.raises(ValueError):
        await store.transition(
            "d-1",
            frozenset({DeliveryState.PROCESSING}),
            DeliveryState.SENT,
            now=NOW,
            fields={"state; DROP TABLE deliveries": "x"},
        )


@pytest.mark.asyncio
async def test_claim_due_uses_skip_locked(monkeypatch):
    fetch_all = AsyncMock(return_value=[{**DELIVERY_ROW, "state": "queued"}])
    monkeypatch.setattr(delivery_repository, "fetch_all", fetch_all)

    claimed = await delivery_repository.PostgresDeliveryStore().claim_due(NOW, 5)

    query, params = fetch_all.await_args.args
    assert "FOR UPDATE SKIP LOCKED" in query
    assert params == {"now": NOW, "limit": 5}
    assert claimed[0].state == DeliveryState.QUEUED


@pytest.mark.asyncio
async def test_reserve_slot_maps_reservation(monkeypatch):
    previous = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
    monkeypatch.setattr(
        constraint_repository,
        "fetch_one",
        AsyncMock(return_value={"posts_today": 3, "previous_last_sent_at": previous}),
    )

    reservation = await constraint_repository.PostgresConstraintStore().reserve_slot(
        "group-1", NOW
    )

    assert reservation == SlotReservation("group-1", NOW, previous, 3)


@pytest.mark.asyncio
async def test_reserve_slot_refused(monkeypatch):
    monkeypatch.setattr(constraint_repository, "fetch_one", AsyncMock(return_value=None))

    store = constraint_repository.PostgresConstraintStore()

    assert await store.reserve_slot("group-1", NOW) is None


@pytest.mark.asyncio
async def test_grant_refs_round_trip_through_json(monkeypatch):
    row = {
        "id": "g-1",
        "holder_ref": "555",
        "granted_product_ref": "vip",
        "product_name": None,
        "status": "completed",
        "access_expires_at": NOW,
        "delivered_message_refs": [{"channel_id": -100200, "message_ids": [11, 12]}],
        "notified_7d": False,
        "notified_1d": False,
    }
    monkeypatch.setattr(grant_repository, "fetch_all", AsyncMock(return_value=[row]))

    [grant] = await grant_repository.PostgresGrantStore().find_expired(NOW)

    assert grant.delivered_message_refs[0].channel_id == "-100200"
    assert grant.delivered_message_refs[0].message_ids == ["11", "12"]


@pytest.mark.asyncio
async def test_grant_flag_column_is_whitelisted(monkeypatch):
    execute_query = AsyncMock(return_value=1)
    monkeypatch.setattr(grant_repository, "execute_query", execute_query)
    store = grant_repository.PostgresGrantStore()

    assert await store.mark_notified("g-1", "notified_1d")
    assert "notified_1d = TRUE" in execute_query.await_args.args[0]

    with pytest.raises(ValueError):
        await store.mark_notified("g-1", "status")


@pytest.mark.asyncio
async def test_history_rows_ignore_unknown_metrics(monkeypatch):
    row = {
        "delivery_id": "d-1",
        "campaign_ref": "campaign-1",
        "creative_ref": "creative-1",
        "destination_ref": "group-1",
        "external_message_id": "77",
        "sent_at": NOW,
        "processing_duration_ms": 40,
        "metrics": {"views": 12, "forwards": 3},
    }
    monkeypatch.setattr(history_repository, "fetch_all", AsyncMock(return_value=[row]))

    [record] = await history_repository.PostgresHistoryStore().list_for_campaign("campaign-1")

    assert record.metrics.views == 12
    assert record.metrics.shares == 0


@pytest.mark.asyncio
async def test_find_stale_filters_claimed_states_by_age(monkeypatch):
    fetch_all = AsyncMock(return_value=[DELIVERY_ROW])
    monkeypatch.setattr(delivery_repository, "fetch_all", fetch_all)

    [stale] = await delivery_repository.PostgresDeliveryStore().find_stale(
        frozenset({DeliveryState.PROCESSING}), NOW, 10
    )

    query, params = fetch_all.await_args.args
    assert "updated_at < %(updated_before)s" in query
    assert params == {"states": ["processing"], "updated_before": NOW, "limit": 10}
    assert stale.state == DeliveryState.PROCESSING


@pytest.mark.asyncio
async def test_usage_counters_are_incremented_in_place(monkeypatch):
    execute_query = AsyncMock(return_value=1)
    monkeypatch.setattr(constraint_repository, "execute_query", execute_query)

    await constraint_repository.PostgresConstraintStore().record_sent("group-1", NOW)
    await constraint_repository.PostgresCreativeStore().record_use("creative-1")

    sent_query = execute_query.await_args_list[0].args[0]
    use_query, use_params = execute_query.await_args_list[1].args
    assert "total_posts = total_posts + 1" in sent_query
    assert "times_used = times_used + 1" in use_query
    assert use_params == ("creative-1",)
