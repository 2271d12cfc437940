"""
Scheduling window checks.

A tier maps to a horizon in days. Zero days means the plan has no scheduling
access at all. Every run time also needs a minimum lead so a job is never
created already due.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from app.core.config import settings
from app.utils.time import ensure_utc, utc_now


@dataclass(frozen=True)
class SchedulingConstraints:
    tier: str
    max_days: int


def resolve_scheduling_constraints(
    tier: Optional[str],
    windows: Optional[Mapping[str, int]] = None,
) -> SchedulingConstraints:
    """Map a (case-insensitive) tier name to its horizon. Unknown tiers get 0 days."""
    normalized = tier.strip().lower() if isinstance(tier, str) and tier.strip() else "free"
    table = windows if windows is not None else settings.SCHEDULING_WINDOW_DAYS
    lookup = {str(key).lower(): int(value) for key, value in table.items()}
    return SchedulingConstraints(tier=normalized, max_days=lookup.get(normalized, 0))


def validate_schedule_window(
    run_at: datetime,
    max_days: int,
    now: Optional[datetime] = None,
    min_lead_seconds: Optional[int] = None,
) -> Optional[str]:
    """
    Return None when run_at is acceptable, otherwise a user-facing reason.

    Lead time is checked before the plan, so a free user asking for "right now"
    is told about the lead time first.
    """
    current = ensure_utc(now) if now is not None else utc_now()
    target = ensure_utc(run_at)
    lead = settings.SCHEDULE_MIN_LEAD_SECONDS if min_lead_seconds is None else min_lead_seconds

    if target < current + timedelta(seconds=lead):
        return f"Scheduled time must be at least {lead} seconds in the future."

    if max_days <= 0:
        return "Your current plan does not include scheduling access."

    if target > current + timedelta(days=max_days):
        return f"Scheduled time exceeds the {max_days}-day window allowed by your plan."

    return None
