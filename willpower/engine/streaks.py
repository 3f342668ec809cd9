"""Streak tracking and streak multiplier tiers."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import NamedTuple
from zoneinfo import ZoneInfo

from willpower.core.config import Settings
from willpower.core.config import settings as default_settings
from willpower.core.errors import ValidationError
from willpower.data.schemas import TierUp

logger = logging.getLogger(__name__)


class StreakTier(NamedTuple):
    min_days: int
    max_days: int | None  # None = unbounded
    multiplier: float
    name: str


STREAK_TIERS: tuple[StreakTier, ...] = (
    StreakTier(1, 2, 1.0, "Starting"),
    StreakTier(3, 6, 1.2, "Building Momentum"),
    StreakTier(7, 13, 1.5, "On Fire"),
    StreakTier(14, 29, 1.75, "Unstoppable"),
    StreakTier(30, None, 2.0, "Legendary"),
)


class StreakUpdate(NamedTuple):
    streak: int
    last_activity_date: date
    tier_up: TierUp | None


def local_today(config: Settings | None = None) -> date:
    """Return today's calendar date in the configured timezone."""
    cfg = config or default_settings
    return datetime.now(ZoneInfo(cfg.timezone)).date()


def parse_date(value: str | date | None) -> date | None:
    """Parse a YYYY-MM-DD string (or pass a date through)."""
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        msg = f"Invalid date: {value!r}"
        raise ValidationError(msg) from exc


def tier_index(streak_days: int) -> int:
    """Index into STREAK_TIERS; a streak of 0 sits in the first tier."""
    for idx in range(len(STREAK_TIERS) - 1, -1, -1):
        if streak_days >= STREAK_TIERS[idx].min_days:
            return idx
    return 0


def compute_multiplier(streak_days: int) -> float:
    """Return the point multiplier for a streak length."""
    return STREAK_TIERS[tier_index(streak_days)].multiplier


def get_tier_info(streak_days: int) -> TierUp:
    """Return multiplier, tier name and tier minimum for display."""
    tier = STREAK_TIERS[tier_index(streak_days)]
    return TierUp(multiplier=tier.multiplier, tier_name=tier.name, min_days=tier.min_days)


def detect_tier_up(old_streak: int, new_streak: int) -> TierUp | None:
    """Return the new tier if the streak moved into a higher one, else None."""
    if tier_index(new_streak) > tier_index(old_streak):
        return get_tier_info(new_streak)
    return None


def effective_streak(current_streak: int, last_activity_date: str | date | None, today: date) -> int:
    """A stored streak whose last activity is older than yesterday has lapsed."""
    last = parse_date(last_activity_date)
    if last is None or (today - last).days > 1:
        return 0
    return current_streak


def advance_streak(
    current_streak: int,
    last_activity_date: str | date | None,
    activity_date: date,
) -> StreakUpdate:
    """Apply one qualifying activity on activity_date.

    Yesterday extends the streak, the same day leaves it unchanged, anything
    else (a gap or the first activity ever) restarts it at 1.
    """
    last = parse_date(last_activity_date)
    old = effective_streak(current_streak, last, activity_date)

    if last is None:
        new_streak = 1
    elif last >= activity_date:
        # same day, or a backdated entry behind the latest activity
        new_streak = max(current_streak, 1)
    elif last == activity_date - timedelta(days=1):
        new_streak = current_streak + 1
    else:
        new_streak = 1

    return StreakUpdate(
        streak=new_streak,
        last_activity_date=max(activity_date, last) if last else activity_date,
        tier_up=detect_tier_up(old, new_streak),
    )


def count_streak_from_dates(dates: Iterable[str | date]) -> tuple[int, date | None]:
    """Count consecutive days backwards from the most recent date.

    Returns (streak_days, most_recent_date). Multiple entries on one day count once.
    """
    date_set = {d for d in (parse_date(x) for x in dates) if d is not None}
    if not date_set:
        return 0, None

    latest = max(date_set)
    streak = 0
    cursor = latest
    while cursor in date_set:
        streak += 1
        cursor -= timedelta(days=1)
    return streak, latest


def longest_streak(dates: Iterable[str | date]) -> int:
    """Longest run of consecutive days anywhere in the history."""
    ordered = sorted({d for d in (parse_date(x) for x in dates) if d is not None})
    best = 0
    run = 0
    prev: date | None = None
    for d in ordered:
        run = run + 1 if prev is not None and d - prev == timedelta(days=1) else 1
        best = max(best, run)
        prev = d
    return best
