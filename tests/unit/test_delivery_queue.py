import asyncio
from datetime import timedelta

import pytest

from delivery_engine.domain.models import DeliveryState
from delivery_engine.domain.state_machine import InvalidTransitionError
from delivery_engine.repositories.memory import InMemoryDeliveryStore
from delivery_engine.services.delivery_queue import DeliveryQueue, RetryPolicy


@pytest.fixture
def queue(clock):
    return DeliveryQueue(
        InMemoryDeliveryStore(),
        retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=5, backoff_multiplier=5),
        clock=clock,
    )


async def _processing(queue, delivery):
    await queue.enqueue(delivery)
    [claimed] = await queue.claim_due(1)
    return await queue.start_processing(claimed.id)


def test_retry_policy_backoff_grows_geometrically():
    policy = RetryPolicy(max_attempts=3, backoff_base_seconds=5, backoff_multiplier=5)

    assert policy.backoff_for(1) == timedelta(seconds=5)
    assert policy.backoff_for(2) == timedelta(seconds=25)
    assert policy.backoff_for(3) == timedelta(seconds=125)
    assert not policy.exhausted(2)
    assert policy.exhausted(3)


@pytest.mark.asyncio
async def test_enqueue_rejects_non_pending(queue, make_delivery):
    with pytest.raises(ValueError):
        await queue.enqueue(make_delivery(state=DeliveryState.SENT))
    with pytest.raises(ValueError):
        await queue.enqueue(make_delivery(attempts=1))


@pytest.mark.asyncio
async def test_claim_due_skips_future_and_orders_by_priority(queue, clock, make_delivery):
    low = await queue.enqueue(
        make_delivery(priority=0, scheduled_for=clock.now - timedelta(hours=2))
    )
    high = await queue.enqueue(make_delivery(priority=5, scheduled_for=clock.now))
    later = await queue.enqueue(make_delivery(scheduled_for=clock.now + timedelta(minutes=1)))

    claimed = await queue.claim_due(10)

    assert [d.id for d in claimed] == [high.id, low.id]
    assert all(d.state == DeliveryState.QUEUED for d in claimed)
    assert (await queue.get(later.id)).state == DeliveryState.PENDING


@pytest.mark.asyncio
async def test_concurrent_claims_never_hand_out_the_same_delivery(queue, make_delivery):
    for _ in range(20):
        await queue.enqueue(make_delivery())

    batches = await asyncio.gather(*(queue.claim_due(3) for _ in range(10)))

    ids = [d.id for batch in batches for d in batch]
    assert len(ids) == 20
    assert len(set(ids)) == 20


@pytest.mark.asyncio
async def test_claim_due_with_zero_limit(queue, make_delivery):
    await queue.enqueue(make_delivery())
    assert await queue.claim_due(0) == []


@pytest.mark.asyncio
async def test_requeue_pushes_back_with_backoff(queue, clock, make_delivery):
    delivery = await _processing(queue, make_delivery())

    requeued = await queue.requeue(delivery.id, "network down")

    assert requeued.state == DeliveryState.PENDING
    assert requeued.attempts == 1
    assert requeued.last_error == "network down"
    assert requeued.scheduled_for == clock.now + timedelta(seconds=5)


@pytest.mark.asyncio
async def test_requeue_fails_once_budget_is_spent(queue, clock, make_delivery):
    delivery = await _processing(queue, make_delivery())
    await queue.requeue(delivery.id, "first")

    clock.advance(seconds=5)
    [claimed] = await queue.claim_due(1)
    await queue.start_processing(claimed.id)
    second = await queue.requeue(claimed.id, "second")
    assert second.scheduled_for == clock.now + timedelta(seconds=25)

    clock.advance(seconds=25)
    [claimed] = await queue.claim_due(1)
    await queue.start_processing(claimed.id)
    final = await queue.requeue(claimed.id, "third")

    assert final.state == DeliveryState.FAILED
    assert final.attempts == 3
    assert final.last_error == "third"


@pytest.mark.asyncio
async def test_defer_does_not_consume_an_attempt(queue, clock, make_delivery):
    delivery = await _processing(queue, make_delivery())
    until = clock.now + timedelta(hours=1)

    deferred = await queue.defer(delivery.id, until, "cooldown_active")

    assert deferred.state == DeliveryState.PENDING
    assert deferred.attempts == 0
    assert deferred.scheduled_for == until


@pytest.mark.asyncio
async def test_complete_records_message_id(queue, clock, make_delivery):
    delivery = await _processing(queue, make_delivery())

    sent = await queue.complete(delivery.id, "4242")

    assert sent.state == DeliveryState.SENT
    assert sent.attempts == 1
    assert sent.external_message_id == "4242"
    assert sent.sent_at == clock.now


@pytest.mark.asyncio
async def test_terminal_state_rejects_further_transitions(queue, make_delivery):
    delivery = await _processing(queue, make_delivery())
    await queue.fail(delivery.id, "chat not found")

    with pytest.raises(InvalidTransitionError):
        await queue.requeue(delivery.id, "late")
    with pytest.raises(InvalidTransitionError):
        await queue.cancel(delivery.id)


@pytest.mark.asyncio
async def test_start_processing_requires_queued(queue, make_delivery):
    delivery = await queue.enqueue(make_delivery())

    with pytest.raises(InvalidTransitionError):
        await queue.start_processing(delivery.id)
    with pytest.raises(InvalidTransitionError):
        await queue.start_processing("missing")


@pytest.mark.asyncio
async def test_cancel_is_refused_while_processing(queue, make_delivery):
    delivery = await _processing(queue, make_delivery())

    with pytest.raises(InvalidTransitionError):
        await queue.cancel(delivery.id)


@pytest.mark.asyncio
async def test_cancel_campaign_leaves_in_flight_deliveries(queue, make_delivery):
    in_flight = await _processing(queue, make_delivery())
    waiting = await queue.enqueue(make_delivery())
    other = await queue.enqueue(make_delivery(campaign_ref="campaign-2"))

    cancelled = await queue.cancel_campaign("campaign-1")

    assert cancelled == 1
    assert (await queue.get(waiting.id)).state == DeliveryState.CANCELLED
    assert (await queue.get(waiting.id)).last_error == "campaign_withdrawn"
    assert (await queue.get(in_flight.id)).state == DeliveryState.PROCESSING
    assert (await queue.get(other.id)).state == DeliveryState.PENDING


@pytest.mark.asyncio
async def test_release_returns_a_claim_without_consuming_an_attempt(queue, clock, make_delivery):
    delivery = await queue.enqueue(make_delivery())
    [claimed] = await queue.claim_due(1)

    released = await queue.release(claimed.id)

    assert released.state == DeliveryState.PENDING
    assert released.attempts == 0
    assert released.scheduled_for == delivery.scheduled_for
    assert [d.id for d in await queue.claim_due(1)] == [delivery.id]


@pytest.mark.asyncio
async def test_release_and_defer_keep_to_their_source_state(queue, clock, make_delivery):
    in_flight = await _processing(queue, make_delivery())
    await queue.enqueue(make_delivery())
    [waiting] = await queue.claim_due(1)

    with pytest.raises(InvalidTransitionError):
        await queue.release(in_flight.id)
    with pytest.raises(InvalidTransitionError):
        await queue.defer(waiting.id, clock.now + timedelta(hours=1), "cooldown_active")
