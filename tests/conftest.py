from collections import deque
from datetime import UTC, datetime, timedelta

import pytest

from delivery_engine.domain.models import (
    Creative,
    Delivery,
    DestinationConstraint,
    OutboundMessage,
)
from delivery_engine.runtime import build_engine, build_stores
from delivery_engine.services.channel_gateway import ChannelGateway
from delivery_engine.services.delivery_queue import RetryPolicy
from delivery_engine.services.pacing import PacingGate

START = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakePlatform:
    """In-memory messaging platform. Queue errors to make the next calls fail."""

    def __init__(self):
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.deleted: list[tuple[str, str]] = []
        self.send_errors: deque[Exception] = deque()
        self.delete_errors: dict[tuple[str, str], Exception] = {}
        self._next_id = 1000

    async def send(self, chat_id: str, message: OutboundMessage) -> str:
        if self.send_errors:
            raise self.send_errors.popleft()
        self._next_id += 1
        self.sent.append((chat_id, message))
        return str(self._next_id)

    async def delete(self, chat_id: str, message_id: str) -> None:
        self.deleted.append((chat_id, message_id))
        error = self.delete_errors.get((chat_id, message_id))
        if error is not None:
            raise error


class FakeRedis:
    """Stands in for FastRedisClient.eval; replies are queued wait times in ms."""

    def __init__(self):
        self.calls: list[tuple[list[str], list]] = []
        self.replies: deque[int] = deque()
        self.unavailable = False

    async def eval(self, script: str, keys: list[str], args: list) -> object:
        if self.unavailable:
            raise ConnectionError("redis down")
        self.calls.append((keys, args))
        return self.replies.popleft() if self.replies else 0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def stores():
    return build_stores("memory")


@pytest.fixture
def gateway(platform):
    return ChannelGateway(
        platform, send_gate=PacingGate(0), delete_gate=PacingGate(0), timeout_seconds=1.0
    )


@pytest.fixture
def engine(stores, gateway, platform, clock):
    return build_engine(
        stores=stores,
        gateway=gateway,
        platform=platform,
        retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=5, backoff_multiplier=5),
        clock=clock,
    )


@pytest.fixture
def creative():
    return Creative(
        id="creative-1",
        category="casino",
        caption="Big weekend bonus",
        cta_text="Play now",
        cta_url="https://example.com/play",
    )


@pytest.fixture
def destination():
    return DestinationConstraint(
        destination_ref="group-1",
        chat_id="-100111",
        max_per_day=10,
        cooldown_minutes=60,
        allowed_categories=frozenset({"casino"}),
    )


@pytest.fixture
def make_delivery(clock):
    def _make(**overrides) -> Delivery:
        fields = {
            "campaign_ref": "campaign-1",
            "creative_ref": "creative-1",
            "destination_ref": "group-1",
            "scheduled_for": clock.now,
        }
        fields.update(overrides)
        return Delivery(**fields)

    return _make
