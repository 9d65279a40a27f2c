"""
Recurring task scheduling.

Schedules are explicit objects rather than cron strings:

    IntervalSchedule(timedelta(hours=1))          every hour
    DailySchedule(hour=9)                          every day at 09:00 UTC
    DailySchedule(hour=9, tz=ZoneInfo("America/Sao_Paulo"))

`run_on_schedule` sleeps until the next run, runs the task, logs any failure
and keeps going.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any, Protocol

from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.utils.clock import Clock, ensure_utc, utc_now

logger = get_logger(__name__)


class Schedule(Protocol):
    def next_run_after(self, now: datetime) -> datetime: ...


@dataclass(slots=True, frozen=True)
class IntervalSchedule:
    every: timedelta

    def __post_init__(self):
        if self.every <= timedelta(0):
            raise ValueError("Interval must be positive")

    def next_run_after(self, now: datetime) -> datetime:
        return ensure_utc(now) + self.every


@dataclass(slots=True, frozen=True)
class DailySchedule:
    hour: int
    minute: int = 0
    tz: tzinfo = UTC

    def __post_init__(self):
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"Invalid time of day {self.hour:02d}:{self.minute:02d}")

    def next_run_after(self, now: datetime) -> datetime:
        local_now = ensure_utc(now).astimezone(self.tz)
        next_run = local_now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)

        # If we've passed today's scheduled time, schedule for tomorrow
        if next_run <= local_now:
            next_run = (next_run + timedelta(days=1)).replace(
                hour=self.hour, minute=self.minute
            )

        return next_run.astimezone(UTC)


async def run_on_schedule(
    name: str,
    schedule: Schedule,
    task: Callable[[], Awaitable[Any]],
    *,
    clock: Clock = utc_now,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    run_immediately: bool = False,
    max_runs: int | None = None,
) -> None:
    """
    Run `task` forever on `schedule` (or `max_runs` times).

    A failing run is logged; the next run happens at its scheduled time.
    """
    logger.info("Scheduler started", scheduler=name, run_immediately=run_immediately)
    runs = 0

    while max_runs is None or runs < max_runs:
        try:
            if not (run_immediately and runs == 0):
                now = clock()
                next_run = schedule.next_run_after(now)
                sleep_seconds = max(0.0, (next_run - now).total_seconds())

                logger.info(
                    "Scheduled job waiting",
                    scheduler=name,
                    next_run=next_run.isoformat(),
                    sleep_seconds=round(sleep_seconds, 1),
                )
                await sleep(sleep_seconds)

            runs += 1
            result = await task()
            logger.debug("Scheduled job finished", scheduler=name, result=result)

        except asyncio.CancelledError:
            logger.info("Scheduler cancelled", scheduler=name)
            break
        except Exception as e:
            logger.error(
                "Error in scheduled job, will run again at next slot",
                scheduler=name,
                error=str(e),
                error_type=type(e).__name__,
            )
