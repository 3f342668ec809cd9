"""Willpower bank: the only code path that writes a user's points and streak."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, TypedDict

from willpower.core.config import Settings
from willpower.core.config import settings as default_settings
from willpower.core.errors import StateConflictError
from willpower.data.audit import audit_points
from willpower.data.schemas import AwardResult, make_user_record
from willpower.data.store import Document, DocumentStore, Mutation, run_transaction
from willpower.engine.levels import detect_level_up, get_level_info
from willpower.engine.points import compute_points
from willpower.engine.streaks import (
    advance_streak,
    compute_multiplier,
    count_streak_from_dates,
    effective_streak,
    local_today,
)

logger = logging.getLogger(__name__)

USERS = "users"
COMPLETION_LOGS = "completion_logs"


class WillpowerStats(TypedDict):
    """Read-side summary of a user's bank."""

    total_points: int
    current_streak: int  # 0 once the streak has lapsed
    multiplier: float
    level: int
    title: str
    progress_to_next_level: float
    points_to_next_level: int | None


def _with_defaults(current: Document | None) -> dict[str, Any]:
    """Existing user document, or a fresh bank for a first-time user."""
    base: dict[str, Any] = dict(make_user_record())
    if current:
        base.update(current)
    return base


async def get_user(store: DocumentStore, user_id: str) -> dict[str, Any]:
    """Return the user's bank, defaulting to an empty one."""
    return _with_defaults(await store.get(USERS, user_id))


async def award_points(
    store: DocumentStore,
    user_id: str,
    action: str,
    difficulty: int | str,
    reflection: str | None = None,
    config: Settings | None = None,
    today: date | None = None,
) -> AwardResult:
    """Grant points for one qualifying activity and advance the streak.

    Points are computed from the streak as it stood before this activity, so
    a tier-up caused by this activity only affects later grants. Repeated
    activities on the same day leave the streak unchanged.
    """
    cfg = config or default_settings
    activity_date = today or local_today(cfg)

    # reject bad input before touching the store
    compute_points(action, difficulty, 0, reflection)

    outcome: dict[str, Any] = {}

    def _mutate(current: Document | None) -> dict[str, Any]:
        user = _with_defaults(current)
        before = int(user["total_points"])
        old_streak = effective_streak(int(user["current_streak"]), user["last_activity_date"], activity_date)
        points = compute_points(action, difficulty, old_streak, reflection)
        update = advance_streak(int(user["current_streak"]), user["last_activity_date"], activity_date)

        outcome.update(
            points=points,
            before=before,
            after=before + points,
            streak=update.streak,
            tier_up=update.tier_up,
        )
        fields = {
            "total_points": before + points,
            "current_streak": update.streak,
            "last_activity_date": update.last_activity_date.isoformat(),
        }
        if current is None:
            return {**user, **fields}
        return fields

    await run_transaction(store, USERS, user_id, _mutate, config=cfg)

    level_up = detect_level_up(outcome["before"], outcome["after"])
    audit_points(cfg, user_id, action, outcome["points"], outcome["after"], streak=outcome["streak"])
    logger.info(
        "Awarded %d points to %s for %s (total=%d, streak=%d)",
        outcome["points"],
        user_id,
        action,
        outcome["after"],
        outcome["streak"],
    )
    if outcome["tier_up"] is not None:
        logger.info("User %s reached streak tier %s", user_id, outcome["tier_up"]["tier_name"])
    if level_up is not None:
        logger.info("User %s leveled up to %d (%s)", user_id, level_up["level"], level_up["title"])

    return AwardResult(
        points_awarded=outcome["points"],
        new_total=outcome["after"],
        new_streak=outcome["streak"],
        multiplier=compute_multiplier(outcome["streak"]),
        tier_up=outcome["tier_up"],
        level_up=level_up,
    )


async def adjust_points(
    store: DocumentStore,
    user_id: str,
    delta: int,
    reason: str = "adjust",
    config: Settings | None = None,
) -> int:
    """Add a signed delta to the bank without touching the streak. Clamped at 0."""
    cfg = config or default_settings
    applied: dict[str, int] = {}

    def _mutate(current: Document | None) -> dict[str, Any]:
        user = _with_defaults(current)
        before = int(user["total_points"])
        new_total = max(0, before + delta)
        applied.update(delta=new_total - before, total=new_total)
        if current is None:
            return {**user, "total_points": new_total}
        return {"total_points": new_total}

    await run_transaction(store, USERS, user_id, _mutate, config=cfg)
    audit_points(cfg, user_id, reason, applied["delta"], applied["total"], requested=delta)
    logger.info("Adjusted %s by %d (requested %d), total=%d", user_id, applied["delta"], delta, applied["total"])
    return applied["total"]


async def subtract_points(
    store: DocumentStore,
    user_id: str,
    amount: int,
    reason: str = "reverse",
    config: Settings | None = None,
) -> int:
    """Remove points from the bank, never going below 0. Returns the new total."""
    return await adjust_points(store, user_id, -abs(amount), reason=reason, config=config)


class _UserChanged(Exception):
    """The user record moved on while completion logs were being read."""


def _rebuild_streak(seen_version: int | None, streak: int, last: str | None) -> Mutation:
    def _mutate(current: Document | None) -> dict[str, Any]:
        if (current["version"] if current else None) != seen_version:
            raise _UserChanged
        fields = {"current_streak": streak, "last_activity_date": last}
        if current is None:
            return {**_with_defaults(None), **fields}
        return fields

    return _mutate


async def recalculate_user_stats(
    store: DocumentStore,
    user_id: str,
    config: Settings | None = None,
) -> tuple[int, str | None]:
    """Rebuild the streak from the remaining completion logs.

    Returns (streak, last_activity_date). Used after deletions remove history.
    The write only lands if the user record is still at the version seen
    before the logs were read; otherwise the logs are read again, so a grant
    made in between keeps its streak advance.
    """
    cfg = config or default_settings
    for attempt in range(1, cfg.store_max_retries + 1):
        before = await store.get(USERS, user_id)
        logs = await store.query(COMPLETION_LOGS, {"user_id": user_id})
        streak, latest = count_streak_from_dates(log["date"] for log in logs)
        last = latest.isoformat() if latest else None
        seen_version = before["version"] if before else None
        try:
            await run_transaction(store, USERS, user_id, _rebuild_streak(seen_version, streak, last), config=cfg)
        except _UserChanged:
            logger.warning("User %s changed during streak recalculation (attempt %d), retrying", user_id, attempt)
            continue
        logger.info("Recalculated streak for %s: %d (last=%s)", user_id, streak, last)
        return streak, last

    msg = "This record was changed by someone else at the same time. Please try again."
    raise StateConflictError(msg)


async def set_user_profile(
    store: DocumentStore,
    user_id: str,
    username: str | None = None,
    telegram_chat_id: int | None = None,
    config: Settings | None = None,
) -> dict[str, Any]:
    """Set the display name and the Telegram chat nudges are delivered to.

    Fields passed as None are left as they are. Returns the updated user.
    """
    fields: dict[str, Any] = {}
    if username is not None:
        fields["username"] = username.strip()
    if telegram_chat_id is not None:
        fields["telegram_chat_id"] = telegram_chat_id

    def _mutate(current: Document | None) -> dict[str, Any]:
        if current is None:
            return {**_with_defaults(None), **fields}
        return fields

    user = await run_transaction(store, USERS, user_id, _mutate, config=config)
    logger.info("Updated profile of %s (%s)", user_id, ", ".join(sorted(fields)) or "no changes")
    return _with_defaults(user)


async def get_willpower_stats(
    store: DocumentStore,
    user_id: str,
    config: Settings | None = None,
    today: date | None = None,
) -> WillpowerStats:
    """Return points, live streak, multiplier and level progress for display."""
    user = await get_user(store, user_id)
    reference = today or local_today(config)
    total = int(user["total_points"])
    streak = effective_streak(int(user["current_streak"]), user["last_activity_date"], reference)
    info = get_level_info(total)
    next_at = info["points_for_next_level"]

    return WillpowerStats(
        total_points=total,
        current_streak=streak,
        multiplier=compute_multiplier(streak),
        level=info["level"],
        title=info["title"],
        progress_to_next_level=info["progress_to_next_level"],
        points_to_next_level=next_at - total if next_at is not None else None,
    )
