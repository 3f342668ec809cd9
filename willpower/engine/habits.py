"""Habits: recurring activities logged against a weekly target."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import TypedDict

from willpower.core.config import Settings
from willpower.core.config import settings as default_settings
from willpower.core.errors import NotFoundError, StateConflictError, ValidationError
from willpower.data.schemas import Action, AwardResult, LogType, make_completion_log, make_habit_record
from willpower.data.store import Document, DocumentStore
from willpower.engine.bank import COMPLETION_LOGS, award_points
from willpower.engine.points import HABIT_BASE_POINTS, validate_habit_difficulty
from willpower.engine.streaks import count_streak_from_dates, effective_streak, local_today, longest_streak, parse_date

logger = logging.getLogger(__name__)

HABITS = "habits"


class HabitStreak(TypedDict):
    habit_id: str
    current_streak: int  # 0 unless logged today or yesterday
    longest_streak: int


async def create_habit(
    store: DocumentStore,
    user_id: str,
    name: str,
    category_id: str = "",
    target_count_per_week: int = 3,
) -> str:
    if not name or not name.strip():
        msg = "Habit name is required."
        raise ValidationError(msg)
    if isinstance(target_count_per_week, bool) or not 1 <= target_count_per_week <= 7:
        msg = f"Weekly target must be between 1 and 7, got {target_count_per_week!r}."
        raise ValidationError(msg)
    habit_id = await store.create(
        HABITS, dict(make_habit_record(user_id, name.strip(), category_id, target_count_per_week))
    )
    logger.info("Created habit %s for %s", habit_id, user_id)
    return habit_id


async def get_habit(store: DocumentStore, user_id: str, habit_id: str) -> Document:
    habit = await store.get(HABITS, habit_id)
    if habit is None or habit["user_id"] != user_id:
        msg = f"Habit {habit_id} not found."
        raise NotFoundError(msg)
    return habit


async def log_habit_completion(
    store: DocumentStore,
    user_id: str,
    habit_id: str,
    difficulty: str,
    log_date: date | str | None = None,
    notes: str | None = None,
    config: Settings | None = None,
    today: date | None = None,
) -> AwardResult:
    """Log a habit for a day (today by default, or backdated) and award points.

    Habit points scale with the streak multiplier.
    """
    cfg = config or default_settings
    level = validate_habit_difficulty(difficulty)
    today = today or local_today(cfg)
    day = parse_date(log_date) or today
    if day > today:
        msg = "Habits can't be logged for a future date."
        raise ValidationError(msg)

    habit = await get_habit(store, user_id, habit_id)
    if not habit["is_active"]:
        msg = f"Habit {habit['name']!r} is archived."
        raise StateConflictError(msg)

    award = await award_points(store, user_id, Action.HABIT_COMPLETED, level, config=cfg, today=day)
    log = make_completion_log(
        user_id,
        LogType.HABIT,
        habit_id,
        award["points_awarded"],
        HABIT_BASE_POINTS[level],
        day.isoformat(),
        notes=(notes or "").strip(),
    )
    await store.create(COMPLETION_LOGS, dict(log))
    logger.info("Logged habit %s for %s on %s", habit_id, user_id, day)
    return award


def _week_bounds(today: date) -> tuple[date, date]:
    monday = today - timedelta(days=today.weekday())
    return monday, monday + timedelta(days=6)


async def get_weekly_completion_counts(
    store: DocumentStore,
    user_id: str,
    today: date | None = None,
    config: Settings | None = None,
) -> dict[str, int]:
    """Habit id -> completions logged in the current Monday to Sunday week."""
    monday, sunday = _week_bounds(today or local_today(config))
    counts: dict[str, int] = {}
    for log in await store.query(COMPLETION_LOGS, {"user_id": user_id, "log_type": LogType.HABIT}):
        day = parse_date(log["date"])
        if day is not None and monday <= day <= sunday:
            counts[log["reference_id"]] = counts.get(log["reference_id"], 0) + 1
    return counts


async def get_habit_streak(
    store: DocumentStore,
    user_id: str,
    habit_id: str,
    today: date | None = None,
    config: Settings | None = None,
) -> HabitStreak:
    logs = await store.query(
        COMPLETION_LOGS, {"user_id": user_id, "log_type": LogType.HABIT, "reference_id": habit_id}
    )
    dates = [log["date"] for log in logs]
    streak, latest = count_streak_from_dates(dates)
    current = effective_streak(streak, latest, today or local_today(config or default_settings))
    return HabitStreak(habit_id=habit_id, current_streak=current, longest_streak=longest_streak(dates))
