"""Challenge lifecycle: create, daily milestone check-ins, completion and deletion.

State machine::

    active -> completed | failed      (complete_challenge, or the last check-in)
    active -> cancelled               (cancel_challenge)
    non-active -> deleted             (delete_challenge, reverses points_awarded)

A user has at most one active challenge. The guard is the user record's
``active_challenge_id``, claimed in the same read-modify-write transaction
that decides whether the create may proceed.

Points are granted only after the idempotency flag of the originating event
(milestone ``completed`` or the challenge's terminal status) was written, so
a retried request never grants twice.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any, TypedDict

from willpower.core.config import Settings
from willpower.core.config import settings as default_settings
from willpower.core.errors import NotFoundError, StateConflictError, ValidationError, WillpowerError
from willpower.data.schemas import (
    TERMINAL_STATUSES,
    Action,
    ChallengeSpec,
    ChallengeStatus,
    ChallengeType,
    CheckInResult,
    CompletionOutcome,
    CompletionResult,
    DeleteResult,
    LogType,
    MilestoneRecord,
    make_challenge_record,
    make_completion_log,
)
from willpower.data.store import Document, DocumentStore, new_id, run_transaction
from willpower.engine.bank import (
    COMPLETION_LOGS,
    USERS,
    _with_defaults,
    adjust_points,
    award_points,
    get_user,
    recalculate_user_stats,
    subtract_points,
)
from willpower.engine.points import compute_points, validate_difficulty
from willpower.engine.streaks import local_today, parse_date
from willpower.notify.router import NotificationRouter

logger = logging.getLogger(__name__)

CHALLENGES = "challenges"
PAST_CHALLENGES_LIMIT = 50


class DifficultyUpdate(TypedDict):
    """Result of re-rating a finished challenge."""

    points_delta: int
    new_points: int


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def current_day_number(start_date: str | date, today: date) -> int:
    """Day 1 is the start date; never below 1 even if the clock is behind."""
    start = parse_date(start_date)
    if start is None:
        return 1
    return max(1, (today - start).days + 1)


def all_milestones_complete(milestones: list[MilestoneRecord] | None) -> bool:
    """True iff there is at least one milestone and every one is checked in."""
    return bool(milestones) and all(m["completed"] for m in milestones or [])


def banked_milestone_points(milestones: list[MilestoneRecord] | None) -> int:
    """Sum of the points already granted through check-ins."""
    return sum(m["points_awarded"] or 0 for m in milestones or [] if m["completed"])


def validate_spec(spec: ChallengeSpec, config: Settings) -> None:
    """Reject a challenge spec before anything is written."""
    if not spec.name or not spec.name.strip():
        msg = "Challenge name is required."
        raise ValidationError(msg)
    validate_difficulty(spec.difficulty_expected, "Expected difficulty")
    if spec.challenge_type not in set(ChallengeType):
        msg = f"Unknown challenge type: {spec.challenge_type!r}"
        raise ValidationError(msg)
    if spec.challenge_type == ChallengeType.EXTENDED:
        days = spec.duration_days
        if (
            isinstance(days, bool)
            or not isinstance(days, int)
            or not config.extended_min_days <= days <= config.extended_max_days
        ):
            msg = (
                f"Extended challenges last {config.extended_min_days} to "
                f"{config.extended_max_days} days, got {days!r}."
            )
            raise ValidationError(msg)


def _owned(current: Document | None, user_id: str, challenge_id: str) -> Document:
    if current is None or current.get("user_id") != user_id or current.get("deleted"):
        msg = f"Challenge {challenge_id} not found."
        raise NotFoundError(msg)
    return current


def _require_active(challenge: Document) -> None:
    if challenge["status"] != ChallengeStatus.ACTIVE:
        msg = f"This challenge has already ended ({challenge['status']})."
        raise StateConflictError(msg)


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_challenge(store: DocumentStore, user_id: str, challenge_id: str) -> Document:
    """Return one of the user's challenges or raise NotFoundError."""
    return _owned(await store.get(CHALLENGES, challenge_id), user_id, challenge_id)


async def get_active_challenge(store: DocumentStore, user_id: str) -> Document | None:
    """Return the user's active challenge, if any."""
    active = await store.query(CHALLENGES, {"user_id": user_id, "status": ChallengeStatus.ACTIVE})
    return active[0] if active else None


async def get_all_challenges(store: DocumentStore, user_id: str) -> list[Document]:
    """All of the user's challenges, newest first."""
    docs = await store.query(CHALLENGES, {"user_id": user_id})
    return sorted(docs, key=lambda c: c["created_at"], reverse=True)


async def get_past_challenges(store: DocumentStore, user_id: str) -> list[Document]:
    """Completed, failed and archived challenges, newest first."""
    past = {ChallengeStatus.COMPLETED, ChallengeStatus.FAILED, ChallengeStatus.ARCHIVED}
    docs = [c for c in await get_all_challenges(store, user_id) if c["status"] in past]
    return docs[:PAST_CHALLENGES_LIMIT]


# ---------------------------------------------------------------------------
# Active slot
# ---------------------------------------------------------------------------


async def _claim_active_slot(store: DocumentStore, user_id: str, challenge_id: str, config: Settings) -> None:
    def _mutate(current: Document | None) -> dict[str, Any]:
        user = _with_defaults(current)
        if user["active_challenge_id"]:
            msg = "An active challenge already exists. Finish or cancel it first."
            raise StateConflictError(msg)
        if current is None:
            return {**user, "active_challenge_id": challenge_id}
        return {"active_challenge_id": challenge_id}

    await run_transaction(store, USERS, user_id, _mutate, config=config)


async def _release_active_slot(store: DocumentStore, user_id: str, challenge_id: str, config: Settings) -> None:
    def _mutate(current: Document | None) -> dict[str, Any]:
        user = _with_defaults(current)
        if user["active_challenge_id"] == challenge_id:
            return {"active_challenge_id": None}
        return {}

    await run_transaction(store, USERS, user_id, _mutate, config=config)


async def _reclaim_finished_slot(store: DocumentStore, user_id: str, config: Settings) -> None:
    """Free a slot still held by a challenge that has already ended."""
    held = (await get_user(store, user_id))["active_challenge_id"]
    if not held:
        return
    # a missing document may be a create still in flight, so only ended ones are reclaimed
    challenge = await store.get(CHALLENGES, held)
    if challenge is not None and (challenge["status"] in TERMINAL_STATUSES or challenge.get("deleted")):
        logger.warning("Releasing active slot of %s still held by ended challenge %s", user_id, held)
        await _release_active_slot(store, user_id, held, config)


async def _after_terminal(
    store: DocumentStore,
    user_id: str,
    challenge: Document,
    status: str,
    config: Settings,
    router: NotificationRouter | None = None,
) -> None:
    try:
        await _release_active_slot(store, user_id, challenge["id"], config)
    finally:
        buddy_id = challenge.get("buddy_challenge_id")
        if buddy_id:
            from willpower.engine.buddy import on_challenge_finished

            await on_challenge_finished(store, user_id, buddy_id, status, router=router, config=config)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def create_challenge(
    store: DocumentStore,
    user_id: str,
    spec: ChallengeSpec,
    config: Settings | None = None,
    today: date | None = None,
    buddy_challenge_id: str | None = None,
    buddy_partner_id: str | None = None,
) -> str:
    """Start a challenge; fails with StateConflictError if one is already active."""
    cfg = config or default_settings
    validate_spec(spec, cfg)

    existing = await get_active_challenge(store, user_id)
    if existing is not None:
        msg = f"An active challenge already exists: {existing['name']!r}."
        raise StateConflictError(msg)

    await _reclaim_finished_slot(store, user_id, cfg)
    challenge_id = new_id()
    await _claim_active_slot(store, user_id, challenge_id, cfg)

    record = make_challenge_record(
        user_id,
        spec,
        start_date=(today or local_today(cfg)).isoformat(),
        buddy_challenge_id=buddy_challenge_id,
        buddy_partner_id=buddy_partner_id,
    )
    try:
        await store.create(CHALLENGES, dict(record), doc_id=challenge_id)
    except Exception:
        await _release_active_slot(store, user_id, challenge_id, cfg)
        raise

    logger.info("Created %s challenge %s for %s", spec.challenge_type, challenge_id, user_id)
    return challenge_id


async def discard_unstarted_challenge(
    store: DocumentStore,
    user_id: str,
    challenge_id: str,
    config: Settings | None = None,
) -> None:
    """Remove a just-created challenge that never granted points and free the slot."""
    cfg = config or default_settings
    await store.delete(CHALLENGES, challenge_id)
    await _release_active_slot(store, user_id, challenge_id, cfg)
    logger.info("Discarded challenge %s for %s", challenge_id, user_id)


async def check_in_milestone(
    store: DocumentStore,
    user_id: str,
    challenge_id: str,
    day_number: int,
    succeeded: bool,
    points: int,
    note: str | None = None,
    difficulty_actual: int | None = None,
    config: Settings | None = None,
    today: date | None = None,
    router: NotificationRouter | None = None,
) -> CheckInResult:
    """Check in one day of an extended challenge and grant the chosen points.

    The last check-in completes the challenge: difficulty_actual defaults to
    the expected difficulty and points_awarded becomes the sum of all
    milestone grants. That sum is an audit total; the bank was already
    credited per check-in.
    """
    cfg = config or default_settings
    reference = today or local_today(cfg)
    validate_difficulty(points, "Points")
    if difficulty_actual is not None:
        validate_difficulty(difficulty_actual, "Actual difficulty")
    if isinstance(day_number, bool) or not isinstance(day_number, int) or day_number < 1:
        msg = f"Day number must be a positive whole number, got {day_number!r}."
        raise ValidationError(msg)

    ts = _now()
    state: dict[str, Any] = {}

    def _mutate(current: Document | None) -> dict[str, Any]:
        challenge = _owned(current, user_id, challenge_id)
        if challenge["challenge_type"] != ChallengeType.EXTENDED:
            msg = "Only extended challenges have daily check-ins."
            raise StateConflictError(msg)
        _require_active(challenge)

        milestones: list[MilestoneRecord] = challenge["milestones"] or []
        milestone = next((m for m in milestones if m["day_number"] == day_number), None)
        if milestone is None:
            msg = f"Day {day_number} is not part of this challenge."
            raise NotFoundError(msg)
        if milestone["completed"]:
            msg = f"Day {day_number} is already checked in."
            raise StateConflictError(msg)
        if day_number > current_day_number(challenge["start_date"], reference):
            msg = f"Day {day_number} hasn't started yet."
            raise StateConflictError(msg)

        milestone.update(
            completed=True,
            succeeded=succeeded,
            points_awarded=points,
            completed_at=ts,
            note=note,
        )
        fields: dict[str, Any] = {"milestones": milestones}
        finished = all_milestones_complete(milestones)
        if finished:
            fields.update(
                status=ChallengeStatus.COMPLETED,
                difficulty_actual=difficulty_actual or challenge["difficulty_actual"] or challenge["difficulty_expected"],
                points_awarded=banked_milestone_points(milestones),
                completed_at=ts,
            )
        state.update(finished=finished, challenge=challenge)
        return fields

    await run_transaction(store, CHALLENGES, challenge_id, _mutate, config=cfg)

    # the day is committed; the slot must be freed even if the grant fails
    try:
        log = make_completion_log(
            user_id, LogType.MILESTONE, challenge_id, points, points, reference.isoformat(), notes=note or ""
        )
        await store.create(COMPLETION_LOGS, dict(log))
        award = await award_points(store, user_id, Action.MILESTONE_CHECKED_IN, points, config=cfg, today=reference)
        logger.info("Checked in day %d of %s for %s (+%d)", day_number, challenge_id, user_id, points)
    finally:
        if state["finished"]:
            logger.info("All milestones of %s complete, challenge completed", challenge_id)
            await _after_terminal(store, user_id, state["challenge"], ChallengeStatus.COMPLETED, cfg, router)

    return CheckInResult(
        points_awarded=award["points_awarded"],
        challenge_completed=state["finished"],
        level_up=award["level_up"],
        tier_up=award["tier_up"],
    )


async def complete_challenge(
    store: DocumentStore,
    user_id: str,
    challenge_id: str,
    outcome: CompletionOutcome,
    config: Settings | None = None,
    today: date | None = None,
    router: NotificationRouter | None = None,
) -> CompletionResult:
    """One-shot transition of an active challenge to completed or failed.

    Works for daily challenges and for extended challenges ended early; for
    the latter the recorded points_awarded also includes the milestone
    points already banked, so deleting the challenge reverses everything.
    """
    cfg = config or default_settings
    reference = today or local_today(cfg)
    if outcome.status == ChallengeStatus.COMPLETED:
        action = Action.CHALLENGE_COMPLETED
    elif outcome.status == ChallengeStatus.FAILED:
        action = Action.CHALLENGE_FAILED
    else:
        msg = f"A challenge can only end as completed or failed, got {outcome.status!r}."
        raise ValidationError(msg)
    base = compute_points(action, outcome.difficulty_actual, 0, outcome.reflection)

    ts = _now()
    state: dict[str, Any] = {}

    def _mutate(current: Document | None) -> dict[str, Any]:
        challenge = _owned(current, user_id, challenge_id)
        _require_active(challenge)
        state["challenge"] = challenge
        return {
            "status": outcome.status,
            "difficulty_actual": outcome.difficulty_actual,
            "points_awarded": base + banked_milestone_points(challenge.get("milestones")),
            "reflection_note": (outcome.reflection or "").strip(),
            "completed_at": ts,
        }

    await run_transaction(store, CHALLENGES, challenge_id, _mutate, config=cfg)

    # the terminal status is committed; the slot must be freed even if the grant fails
    try:
        log = make_completion_log(
            user_id, LogType.CHALLENGE, challenge_id, base, outcome.difficulty_actual, reference.isoformat()
        )
        await store.create(COMPLETION_LOGS, dict(log))
        award = await award_points(
            store, user_id, action, outcome.difficulty_actual, outcome.reflection, config=cfg, today=reference
        )
        logger.info("Challenge %s of %s ended as %s (+%d)", challenge_id, user_id, outcome.status, base)
    finally:
        await _after_terminal(store, user_id, state["challenge"], outcome.status, cfg, router)

    return CompletionResult(
        points_awarded=award["points_awarded"],
        level_up=award["level_up"],
        tier_up=award["tier_up"],
    )


async def cancel_challenge(
    store: DocumentStore,
    user_id: str,
    challenge_id: str,
    config: Settings | None = None,
    router: NotificationRouter | None = None,
) -> None:
    """Abandon an active challenge. Milestone points already banked stay recorded."""
    cfg = config or default_settings
    state: dict[str, Any] = {}

    def _mutate(current: Document | None) -> dict[str, Any]:
        challenge = _owned(current, user_id, challenge_id)
        _require_active(challenge)
        state["challenge"] = challenge
        return {
            "status": ChallengeStatus.CANCELLED,
            "points_awarded": banked_milestone_points(challenge.get("milestones")),
            "completed_at": _now(),
        }

    await run_transaction(store, CHALLENGES, challenge_id, _mutate, config=cfg)
    logger.info("Cancelled challenge %s for %s", challenge_id, user_id)
    await _after_terminal(store, user_id, state["challenge"], ChallengeStatus.CANCELLED, cfg, router)


async def delete_challenge(
    store: DocumentStore,
    user_id: str,
    challenge_id: str,
    config: Settings | None = None,
) -> DeleteResult:
    """Delete a finished challenge and reverse the points it awarded (clamped at 0)."""
    cfg = config or default_settings
    state: dict[str, int] = {}

    def _mutate(current: Document | None) -> dict[str, Any]:
        challenge = _owned(current, user_id, challenge_id)
        if challenge["status"] not in TERMINAL_STATUSES:
            msg = "Cannot delete an active challenge."
            raise StateConflictError(msg)
        state["points"] = int(challenge.get("points_awarded") or 0)
        return {"deleted": True}

    # the tombstone makes a concurrent second delete a NotFoundError
    await run_transaction(store, CHALLENGES, challenge_id, _mutate, config=cfg)

    points = state["points"]
    if points > 0:
        try:
            await subtract_points(store, user_id, points, reason="challenge_deleted", config=cfg)
        except WillpowerError:
            await store.update(CHALLENGES, challenge_id, {"deleted": False})
            raise

    for log in await store.query(COMPLETION_LOGS, {"user_id": user_id, "reference_id": challenge_id}):
        await store.delete(COMPLETION_LOGS, log["id"])
    await store.delete(CHALLENGES, challenge_id)
    await _release_active_slot(store, user_id, challenge_id, cfg)
    await recalculate_user_stats(store, user_id, config=cfg)

    logger.info("Deleted challenge %s for %s (-%d points)", challenge_id, user_id, points)
    return DeleteResult(points_removed=points)


async def update_challenge_difficulty(
    store: DocumentStore,
    user_id: str,
    challenge_id: str,
    difficulty_actual: int,
    config: Settings | None = None,
) -> DifficultyUpdate:
    """Re-rate a finished daily challenge and move the bank by the point delta."""
    cfg = config or default_settings
    validate_difficulty(difficulty_actual, "Actual difficulty")
    state: dict[str, int] = {}

    def _mutate(current: Document | None) -> dict[str, Any]:
        challenge = _owned(current, user_id, challenge_id)
        if challenge["status"] not in (ChallengeStatus.COMPLETED, ChallengeStatus.FAILED):
            msg = "Only completed or failed challenges can be re-rated."
            raise StateConflictError(msg)
        if challenge["challenge_type"] != ChallengeType.DAILY:
            msg = "Extended challenges are rated per day through check-ins."
            raise StateConflictError(msg)
        action = (
            Action.CHALLENGE_COMPLETED if challenge["status"] == ChallengeStatus.COMPLETED else Action.CHALLENGE_FAILED
        )
        new_points = compute_points(action, difficulty_actual, 0, challenge.get("reflection_note"))
        old_points = int(challenge.get("points_awarded") or 0)
        state.update(new=new_points, delta=new_points - old_points)
        return {"difficulty_actual": difficulty_actual, "points_awarded": new_points}

    await run_transaction(store, CHALLENGES, challenge_id, _mutate, config=cfg)

    for log in await store.query(COMPLETION_LOGS, {"user_id": user_id, "reference_id": challenge_id}):
        await store.update(COMPLETION_LOGS, log["id"], {"points": state["new"], "difficulty": difficulty_actual})
    if state["delta"] != 0:
        await adjust_points(store, user_id, state["delta"], reason="challenge_rerated", config=cfg)

    return DifficultyUpdate(points_delta=state["delta"], new_points=state["new"])


async def save_reflection(
    store: DocumentStore,
    user_id: str,
    challenge_id: str,
    reflection: str,
    config: Settings | None = None,
) -> None:
    """Attach or replace reflection text; the bonus is only granted at completion."""

    def _mutate(current: Document | None) -> dict[str, Any]:
        _owned(current, user_id, challenge_id)
        return {"reflection_note": reflection.strip()}

    await run_transaction(store, CHALLENGES, challenge_id, _mutate, config=config)
