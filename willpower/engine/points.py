"""Points policy: fixed rule table mapping an action to awarded points."""

from __future__ import annotations

import math

from willpower.core.errors import ValidationError
from willpower.data.schemas import Action, HabitDifficulty
from willpower.engine.streaks import compute_multiplier

FAILED_CHALLENGE = 1
REFLECTION_BONUS = 1

HABIT_BASE_POINTS: dict[str, int] = {
    HabitDifficulty.EASY: 1,
    HabitDifficulty.CHALLENGING: 2,
}

MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 5


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def validate_difficulty(difficulty: object, label: str = "Difficulty") -> int:
    """Return difficulty as int if it is an integer in 1..5."""
    if isinstance(difficulty, bool) or not isinstance(difficulty, int):
        msg = f"{label} must be a whole number from {MIN_DIFFICULTY} to {MAX_DIFFICULTY}."
        raise ValidationError(msg)
    if not MIN_DIFFICULTY <= difficulty <= MAX_DIFFICULTY:
        msg = f"{label} must be between {MIN_DIFFICULTY} and {MAX_DIFFICULTY}, got {difficulty}."
        raise ValidationError(msg)
    return difficulty


def validate_habit_difficulty(difficulty: object) -> HabitDifficulty:
    """Return the habit difficulty if it is easy or challenging."""
    try:
        return HabitDifficulty(str(difficulty))
    except ValueError as exc:
        msg = f"Habit difficulty must be 'easy' or 'challenging', got {difficulty!r}."
        raise ValidationError(msg) from exc


def has_reflection(reflection: str | None) -> bool:
    """Blank or whitespace-only reflections do not count."""
    return bool(reflection and reflection.strip())


def compute_points(
    action: str,
    difficulty: int | str,
    current_streak: int = 0,
    reflection: str | None = None,
) -> int:
    """Return the points a single action earns.

    challenge_completed: difficulty (1-5), no multiplier
    challenge_failed: FAILED_CHALLENGE
    both challenge actions: + REFLECTION_BONUS when reflection text is given
    habit_completed: easy=1 / challenging=2, times the streak multiplier,
        rounded half up, at least 1
    milestone_checked_in: the user-chosen value (1-5) as is

    Raises ValidationError for an unknown action or out-of-range difficulty.
    """
    try:
        kind = Action(action)
    except ValueError as exc:
        msg = f"Unknown action: {action!r}"
        raise ValidationError(msg) from exc

    if kind == Action.HABIT_COMPLETED:
        base = HABIT_BASE_POINTS[validate_habit_difficulty(difficulty)]
        return max(1, _round_half_up(base * compute_multiplier(current_streak)))

    value = validate_difficulty(difficulty, "Points" if kind == Action.MILESTONE_CHECKED_IN else "Difficulty")

    if kind == Action.MILESTONE_CHECKED_IN:
        return value

    points = value if kind == Action.CHALLENGE_COMPLETED else FAILED_CHALLENGE
    if has_reflection(reflection):
        points += REFLECTION_BONUS
    return points
