"""Level ladder: cumulative willpower points to level and title."""

from __future__ import annotations

from typing import NamedTuple, TypedDict

from willpower.data.schemas import LevelUp


class Level(NamedTuple):
    level: int
    points_required: int
    title: str


WILLPOWER_LEVELS: tuple[Level, ...] = (
    Level(1, 0, "Beginner Mind"),
    Level(2, 50, "Apprentice"),
    Level(3, 150, "Challenger"),
    Level(4, 300, "Willpower Warrior"),
    Level(5, 500, "Grit Machine"),
    Level(6, 750, "Resilient"),
    Level(7, 1000, "Unstoppable"),
    Level(8, 1500, "Master"),
    Level(9, 2500, "Grandmaster"),
    Level(10, 4000, "Willpower Legend"),
)


class LevelInfo(TypedDict):
    """Where a point total sits on the ladder."""

    level: int
    title: str
    points_for_current_level: int
    points_for_next_level: int | None  # None at max level
    progress_to_next_level: float  # 0.0-1.0


def _level_entry(total_points: int) -> Level:
    current = WILLPOWER_LEVELS[0]
    for entry in WILLPOWER_LEVELS:
        if total_points < entry.points_required:
            break
        current = entry
    return current


def level_for(total_points: int) -> int:
    """Return the highest level whose threshold is <= total_points."""
    return _level_entry(total_points).level


def get_level_info(total_points: int) -> LevelInfo:
    """Return level, title and progress towards the next threshold."""
    current = _level_entry(total_points)
    nxt = WILLPOWER_LEVELS[current.level] if current.level < len(WILLPOWER_LEVELS) else None

    progress = 1.0
    if nxt is not None:
        progress = (total_points - current.points_required) / (nxt.points_required - current.points_required)

    return LevelInfo(
        level=current.level,
        title=current.title,
        points_for_current_level=current.points_required,
        points_for_next_level=nxt.points_required if nxt else None,
        progress_to_next_level=min(progress, 1.0),
    )


def detect_level_up(points_before: int, points_after: int) -> LevelUp | None:
    """Report the final level reached if any threshold was crossed upwards."""
    after = _level_entry(points_after)
    if after.level > level_for(points_before):
        return LevelUp(level=after.level, title=after.title)
    return None
