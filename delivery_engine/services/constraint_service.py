"""
Pure evaluation of destination posting rules.

`evaluate` answers "may this destination receive a post now, and if not,
when?". It does not mutate anything; the atomic check-and-increment lives in
ConstraintStore.reserve_slot. The worker evaluates first to pick a deferral
time, then reserves.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from delivery_engine.domain.models import DestinationConstraint
from delivery_engine.utils.clock import ensure_utc, next_utc_midnight

# Decision reasons
DESTINATION_MISSING = "destination_missing"
DESTINATION_INACTIVE = "destination_inactive"
CATEGORY_NOT_ALLOWED = "category_not_allowed"
DAILY_CAP_REACHED = "daily_cap_reached"
COOLDOWN_ACTIVE = "cooldown_active"


@dataclass(slots=True, frozen=True)
class ConstraintDecision:
    allowed: bool
    reason: str | None = None
    earliest_at: datetime | None = None
    permanent: bool = False


def cooldown_ends_at(constraint: DestinationConstraint) -> datetime | None:
    if constraint.last_sent_at is None:
        return None
    return ensure_utc(constraint.last_sent_at) + timedelta(minutes=constraint.cooldown_minutes)


def evaluate(
    constraint: DestinationConstraint | None,
    now: datetime,
    category: str | None = None,
) -> ConstraintDecision:
    """
    Decide whether a delivery to `constraint`'s destination may go out at `now`.

    Permanent refusals (missing or inactive destination, category not allowed)
    carry permanent=True. Temporary refusals carry the earliest time the
    constraint clears: the next UTC midnight for the daily cap,
    last_sent_at + cooldown for the cooldown, the later of the two if both.
    """
    if constraint is None:
        return ConstraintDecision(False, DESTINATION_MISSING, permanent=True)

    if not constraint.is_active:
        return ConstraintDecision(False, DESTINATION_INACTIVE, permanent=True)

    if (
        category is not None
        and constraint.allowed_categories
        and category not in constraint.allowed_categories
    ):
        return ConstraintDecision(False, CATEGORY_NOT_ALLOWED, permanent=True)

    now = ensure_utc(now)
    blocked: list[tuple[str, datetime]] = []

    if constraint.posts_today >= constraint.max_per_day:
        blocked.append((DAILY_CAP_REACHED, next_utc_midnight(now)))

    cooldown_end = cooldown_ends_at(constraint)
    if cooldown_end is not None and now < cooldown_end:
        blocked.append((COOLDOWN_ACTIVE, cooldown_end))

    if not blocked:
        return ConstraintDecision(True)

    reason = ",".join(name for name, _ in blocked)
    earliest_at = max(at for _, at in blocked)
    return ConstraintDecision(False, reason, earliest_at=earliest_at)
