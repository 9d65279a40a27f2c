from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from delivery_engine.jobs.scheduling import DailySchedule, IntervalSchedule, run_on_schedule


def test_interval_schedule():
    now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
    assert IntervalSchedule(timedelta(hours=1)).next_run_after(now) == now + timedelta(hours=1)

    with pytest.raises(ValueError):
        IntervalSchedule(timedelta(0))


def test_daily_schedule_later_today_or_tomorrow():
    schedule = DailySchedule(hour=9)

    morning = datetime(2026, 3, 10, 8, 30, tzinfo=UTC)
    assert schedule.next_run_after(morning) == datetime(2026, 3, 10, 9, 0, tzinfo=UTC)

    exactly = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
    assert schedule.next_run_after(exactly) == datetime(2026, 3, 11, 9, 0, tzinfo=UTC)


def test_daily_schedule_in_other_timezone():
    schedule = DailySchedule(hour=9, tz=ZoneInfo("America/Sao_Paulo"))
    now = datetime(2026, 3, 10, 13, 0, tzinfo=UTC)  # 10:00 in Sao Paulo

    assert schedule.next_run_after(now) == datetime(2026, 3, 11, 12, 0, tzinfo=UTC)


def test_daily_schedule_validates_time():
    with pytest.raises(ValueError):
        DailySchedule(hour=24)


@pytest.mark.asyncio
async def test_run_on_schedule_sleeps_then_runs(clock):
    sleeps: list[float] = []
    runs: list[datetime] = []

    async def sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds=seconds)

    async def task():
        runs.append(clock.now)

    await run_on_schedule(
        "test",
        IntervalSchedule(timedelta(minutes=30)),
        task,
        clock=clock,
        sleep=sleep,
        max_runs=2,
    )

    assert sleeps == [1800.0, 1800.0]
    assert len(runs) == 2


@pytest.mark.asyncio
async def test_run_on_schedule_survives_failing_runs(clock):
    calls = {"count": 0}

    async def sleep(seconds):
        clock.advance(seconds=seconds)

    async def flaky():
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("boom")

    await run_on_schedule(
        "flaky",
        IntervalSchedule(timedelta(minutes=1)),
        flaky,
        clock=clock,
        sleep=sleep,
        run_immediately=True,
        max_runs=3,
    )

    assert calls["count"] == 3
