import asyncio
from unittest.mock import AsyncMock

import pytest

from delivery_engine.domain.models import AuditEvent
from delivery_engine.infrastructure.audit import AuditSink
from delivery_engine.repositories.memory import InMemoryAuditStore


def _event(action: str = "delivery_sent") -> AuditEvent:
    return AuditEvent(action=action, entity_type="delivery", entity_id="d-1")


@pytest.mark.asyncio
async def test_log_async_buffers_until_flush(clock):
    store = InMemoryAuditStore()
    sink = AuditSink(store, clock=clock)

    assert await sink.log_async(_event())
    assert sink.pending_count == 1
    assert store.events == []

    assert await sink.flush() == 1
    assert store.events[0].occurred_at == clock.now


@pytest.mark.asyncio
async def test_full_buffer_drops_without_raising():
    store = InMemoryAuditStore()
    sink = AuditSink(store, buffer_size=2)

    results = [await sink.log_async(_event(f"a{i}")) for i in range(3)]

    assert results == [True, True, False]
    assert sink.dropped_count == 1
    assert await sink.flush() == 2


@pytest.mark.asyncio
async def test_failed_flush_is_swallowed():
    store = InMemoryAuditStore()
    store.insert_many = AsyncMock(side_effect=ConnectionError("db down"))
    sink = AuditSink(store)

    await sink.log_async(_event())

    assert await sink.flush() == 0
    assert sink.pending_count == 0


@pytest.mark.asyncio
async def test_flush_writes_in_batches():
    store = InMemoryAuditStore()
    store.insert_many = AsyncMock()
    sink = AuditSink(store, flush_batch_size=2)

    for i in range(5):
        await sink.log_async(_event(f"a{i}"))

    assert await sink.flush() == 5
    assert [len(call.args[0]) for call in store.insert_many.await_args_list] == [2, 2, 1]


@pytest.mark.asyncio
async def test_log_sync_writes_immediately():
    store = InMemoryAuditStore()
    sink = AuditSink(store)

    assert await sink.log_sync(_event("emergency_stop_activated"))
    assert [event.action for event in store.events] == ["emergency_stop_activated"]


@pytest.mark.asyncio
async def test_log_sync_failure_returns_false():
    store = InMemoryAuditStore()
    store.insert = AsyncMock(side_effect=RuntimeError("constraint violation"))
    sink = AuditSink(store)

    assert await sink.log_sync(_event()) is False


@pytest.mark.asyncio
async def test_background_flusher_persists_and_stop_drains():
    store = InMemoryAuditStore()
    sink = AuditSink(store, flush_interval_seconds=0.01)

    await sink.start()
    assert sink.is_running
    await sink.log_async(_event("first"))
    await asyncio.sleep(0.05)
    assert [event.action for event in store.events] == ["first"]

    await sink.log_async(_event("second"))
    await sink.stop()

    assert not sink.is_running
    assert [event.action for event in store.events] == ["first", "second"]
