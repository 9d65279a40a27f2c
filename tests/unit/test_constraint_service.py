from datetime import UTC, datetime, timedelta

from delivery_engine.domain.models import DestinationConstraint
from delivery_engine.services.constraint_service import (
    CATEGORY_NOT_ALLOWED,
    COOLDOWN_ACTIVE,
    DAILY_CAP_REACHED,
    DESTINATION_INACTIVE,
    DESTINATION_MISSING,
    evaluate,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _constraint(**overrides) -> DestinationConstraint:
    fields = {"destination_ref": "group-1", "chat_id": "-100111"}
    fields.update(overrides)
    return DestinationConstraint(**fields)


def test_fresh_destination_is_allowed():
    assert evaluate(_constraint(), NOW).allowed


def test_missing_and_inactive_are_permanent():
    missing = evaluate(None, NOW)
    assert not missing.allowed and missing.permanent
    assert missing.reason == DESTINATION_MISSING

    inactive = evaluate(_constraint(is_active=False), NOW)
    assert inactive.permanent
    assert inactive.reason == DESTINATION_INACTIVE


def test_category_filter_only_applies_when_set():
    restricted = _constraint(allowed_categories=frozenset({"casino"}))
    decision = evaluate(restricted, NOW, category="betting")
    assert decision.permanent
    assert decision.reason == CATEGORY_NOT_ALLOWED

    assert evaluate(restricted, NOW, category="casino").allowed
    assert evaluate(_constraint(), NOW, category="anything").allowed


def test_daily_cap_defers_to_next_utc_midnight():
    decision = evaluate(_constraint(max_per_day=1, posts_today=1), NOW)

    assert not decision.allowed
    assert not decision.permanent
    assert decision.reason == DAILY_CAP_REACHED
    assert decision.earliest_at == datetime(2026, 3, 11, 0, 0, tzinfo=UTC)


def test_cooldown_defers_until_it_elapses():
    last = NOW - timedelta(minutes=20)
    decision = evaluate(_constraint(cooldown_minutes=60, last_sent_at=last), NOW)

    assert decision.reason == COOLDOWN_ACTIVE
    assert decision.earliest_at == last + timedelta(minutes=60)


def test_cooldown_boundary_is_inclusive():
    last = NOW - timedelta(minutes=60)
    assert evaluate(_constraint(cooldown_minutes=60, last_sent_at=last), NOW).allowed


def test_cap_and_cooldown_pick_the_later_time():
    late = datetime(2026, 3, 10, 23, 50, tzinfo=UTC)
    decision = evaluate(
        _constraint(max_per_day=2, posts_today=2, cooldown_minutes=60, last_sent_at=late),
        late,
    )

    assert DAILY_CAP_REACHED in decision.reason
    assert COOLDOWN_ACTIVE in decision.reason
    assert decision.earliest_at == late + timedelta(minutes=60)
