"""Tests for willpower.engine.challenges: the challenge state machine."""

from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from willpower.core.config import Settings
from willpower.core.errors import NotFoundError, StateConflictError, ValidationError
from willpower.data.schemas import (
    ChallengeSpec,
    ChallengeStatus,
    ChallengeType,
    CompletionOutcome,
    make_user_record,
)
from willpower.data.store import InMemoryStore
from willpower.engine.bank import COMPLETION_LOGS, USERS, get_user
from willpower.engine.challenges import (
    CHALLENGES,
    all_milestones_complete,
    cancel_challenge,
    check_in_milestone,
    complete_challenge,
    create_challenge,
    current_day_number,
    delete_challenge,
    get_active_challenge,
    get_challenge,
    get_past_challenges,
    save_reflection,
    update_challenge_difficulty,
)

START = date(2026, 3, 1)

DAILY = ChallengeSpec(name="Cold shower", difficulty_expected=3)
EXTENDED = ChallengeSpec(
    name="No sugar",
    difficulty_expected=4,
    challenge_type=ChallengeType.EXTENDED,
    duration_days=3,
)


@pytest.fixture
def config(tmp_path: Path) -> Settings:
    return Settings(data_audit_path=tmp_path)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


async def _check_in(
    store: InMemoryStore,
    config: Settings,
    challenge_id: str,
    day: int,
    points: int,
    today: date | None = None,
) -> dict[str, object]:
    result = await check_in_milestone(
        store, "u1", challenge_id, day, True, points, config=config, today=today or START + timedelta(days=2)
    )
    return dict(result)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def test_current_day_number() -> None:
    assert current_day_number("2026-03-01", START) == 1
    assert current_day_number("2026-03-01", START + timedelta(days=4)) == 5
    assert current_day_number(START, START - timedelta(days=2)) == 1


def test_all_milestones_complete() -> None:
    done = {"completed": True}
    pending = {"completed": False}
    assert all_milestones_complete([done, done])  # type: ignore[list-item]
    assert not all_milestones_complete([done, pending])  # type: ignore[list-item]
    assert not all_milestones_complete([])
    assert not all_milestones_complete(None)


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_daily(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    challenge = await get_challenge(store, "u1", challenge_id)
    assert challenge["status"] == ChallengeStatus.ACTIVE
    assert challenge["milestones"] is None
    assert challenge["start_date"] is None
    user = await get_user(store, "u1")
    assert user["active_challenge_id"] == challenge_id


@pytest.mark.asyncio
async def test_create_extended_builds_milestones(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    challenge = await get_challenge(store, "u1", challenge_id)
    assert challenge["start_date"] == "2026-03-01"
    assert [m["day_number"] for m in challenge["milestones"]] == [1, 2, 3]
    assert not any(m["completed"] for m in challenge["milestones"])


@pytest.mark.asyncio
async def test_second_active_challenge_rejected(store: InMemoryStore, config: Settings) -> None:
    first = await create_challenge(store, "u1", DAILY, config=config, today=START)
    before = await get_challenge(store, "u1", first)

    with pytest.raises(StateConflictError, match="active challenge"):
        await create_challenge(store, "u1", EXTENDED, config=config, today=START)

    assert await get_challenge(store, "u1", first) == before
    assert len(await store.query(CHALLENGES, {"user_id": "u1"})) == 1


@pytest.mark.asyncio
async def test_active_slot_guard_without_visible_challenge(store: InMemoryStore, config: Settings) -> None:
    # another request already claimed the slot but has not written its challenge yet
    await store.create(USERS, {**make_user_record(), "active_challenge_id": "in-flight"}, doc_id="u1")
    with pytest.raises(StateConflictError):
        await create_challenge(store, "u1", DAILY, config=config, today=START)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "spec",
    [
        ChallengeSpec(name="", difficulty_expected=3),
        ChallengeSpec(name="x", difficulty_expected=0),
        ChallengeSpec(name="x", difficulty_expected=3, challenge_type="weekly"),
        ChallengeSpec(name="x", difficulty_expected=3, challenge_type=ChallengeType.EXTENDED, duration_days=1),
        ChallengeSpec(name="x", difficulty_expected=3, challenge_type=ChallengeType.EXTENDED, duration_days=31),
        ChallengeSpec(name="x", difficulty_expected=3, challenge_type=ChallengeType.EXTENDED),
    ],
)
async def test_invalid_spec_rejected(store: InMemoryStore, config: Settings, spec: ChallengeSpec) -> None:
    with pytest.raises(ValidationError):
        await create_challenge(store, "u1", spec, config=config, today=START)
    assert await store.get(USERS, "u1") is None


# ---------------------------------------------------------------------------
# check-in
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_check_in_grants_chosen_points(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    result = await _check_in(store, config, challenge_id, 1, 4)
    assert result["points_awarded"] == 4
    assert result["challenge_completed"] is False
    user = await get_user(store, "u1")
    assert user["total_points"] == 4
    challenge = await get_challenge(store, "u1", challenge_id)
    assert challenge["milestones"][0]["completed"] is True
    assert challenge["milestones"][0]["points_awarded"] == 4


@pytest.mark.asyncio
async def test_duplicate_check_in_rejected_without_points(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    await _check_in(store, config, challenge_id, 1, 3)
    total_after_first = (await get_user(store, "u1"))["total_points"]

    with pytest.raises(StateConflictError, match="already checked in"):
        await _check_in(store, config, challenge_id, 1, 5)

    assert (await get_user(store, "u1"))["total_points"] == total_after_first


@pytest.mark.asyncio
async def test_future_day_rejected(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    with pytest.raises(StateConflictError, match="hasn't started"):
        await _check_in(store, config, challenge_id, 2, 3, today=START)


@pytest.mark.asyncio
async def test_unknown_day_and_bad_points(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    with pytest.raises(NotFoundError):
        await _check_in(store, config, challenge_id, 9, 3)
    with pytest.raises(ValidationError):
        await _check_in(store, config, challenge_id, 1, 6)


@pytest.mark.asyncio
async def test_check_in_on_daily_rejected(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    with pytest.raises(StateConflictError, match="extended"):
        await _check_in(store, config, challenge_id, 1, 3)


@pytest.mark.asyncio
async def test_other_users_challenge_not_found(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    with pytest.raises(NotFoundError):
        await check_in_milestone(store, "intruder", challenge_id, 1, True, 3, config=config, today=START)


@pytest.mark.asyncio
async def test_last_check_in_auto_completes(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    await _check_in(store, config, challenge_id, 1, 2)
    await _check_in(store, config, challenge_id, 3, 5)
    result = await _check_in(store, config, challenge_id, 2, 4)

    assert result["challenge_completed"] is True
    challenge = await get_challenge(store, "u1", challenge_id)
    assert challenge["status"] == ChallengeStatus.COMPLETED
    assert challenge["points_awarded"] == 11
    assert challenge["difficulty_actual"] == 4
    assert challenge["completed_at"] is not None
    assert (await get_user(store, "u1"))["total_points"] == 11
    assert await get_active_challenge(store, "u1") is None
    assert (await get_user(store, "u1"))["active_challenge_id"] is None


# ---------------------------------------------------------------------------
# complete / cancel
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_complete_daily_with_reflection(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    outcome = CompletionOutcome(status=ChallengeStatus.COMPLETED, difficulty_actual=5, reflection="Brutal")
    result = await complete_challenge(store, "u1", challenge_id, outcome, config=config, today=START)

    assert result["points_awarded"] == 6
    challenge = await get_challenge(store, "u1", challenge_id)
    assert challenge["status"] == ChallengeStatus.COMPLETED
    assert challenge["points_awarded"] == 6
    assert challenge["reflection_note"] == "Brutal"
    logs = await store.query(COMPLETION_LOGS, {"reference_id": challenge_id})
    assert len(logs) == 1
    assert logs[0]["points"] == 6


@pytest.mark.asyncio
async def test_complete_failed(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    outcome = CompletionOutcome(status=ChallengeStatus.FAILED, difficulty_actual=4)
    result = await complete_challenge(store, "u1", challenge_id, outcome, config=config, today=START)
    assert result["points_awarded"] == 1


@pytest.mark.asyncio
async def test_complete_twice_grants_once(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    outcome = CompletionOutcome(status=ChallengeStatus.COMPLETED, difficulty_actual=3)
    await complete_challenge(store, "u1", challenge_id, outcome, config=config, today=START)
    with pytest.raises(StateConflictError):
        await complete_challenge(store, "u1", challenge_id, outcome, config=config, today=START)
    assert (await get_user(store, "u1"))["total_points"] == 3


@pytest.mark.asyncio
async def test_complete_rejects_non_terminal_status(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    with pytest.raises(ValidationError):
        await complete_challenge(
            store, "u1", challenge_id, CompletionOutcome(status="cancelled", difficulty_actual=3), config=config
        )


@pytest.mark.asyncio
async def test_extended_ended_early_records_banked_points(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    await _check_in(store, config, challenge_id, 1, 3)
    outcome = CompletionOutcome(status=ChallengeStatus.COMPLETED, difficulty_actual=4)
    await complete_challenge(store, "u1", challenge_id, outcome, config=config, today=START + timedelta(days=2))

    challenge = await get_challenge(store, "u1", challenge_id)
    assert challenge["points_awarded"] == 7
    assert (await get_user(store, "u1"))["total_points"] == 7


@pytest.mark.asyncio
async def test_cancel_frees_slot_without_points(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    await cancel_challenge(store, "u1", challenge_id, config=config)

    challenge = await get_challenge(store, "u1", challenge_id)
    assert challenge["status"] == ChallengeStatus.CANCELLED
    assert (await get_user(store, "u1"))["total_points"] == 0
    await create_challenge(store, "u1", EXTENDED, config=config, today=START)


# ---------------------------------------------------------------------------
# delete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_delete_reverses_points(store: InMemoryStore, config: Settings) -> None:
    await store.create(USERS, {**make_user_record(), "total_points": 40}, doc_id="u1")
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    for day, points in ((1, 5), (2, 4), (3, 3)):
        await _check_in(store, config, challenge_id, day, points)
    assert (await get_user(store, "u1"))["total_points"] == 52

    result = await delete_challenge(store, "u1", challenge_id, config=config)

    assert result == {"points_removed": 12}
    user = await get_user(store, "u1")
    assert user["total_points"] == 40
    assert user["current_streak"] == 0
    assert await store.get(CHALLENGES, challenge_id) is None
    assert await store.query(COMPLETION_LOGS, {"reference_id": challenge_id}) == []


@pytest.mark.asyncio
async def test_delete_clamps_at_zero(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    outcome = CompletionOutcome(status=ChallengeStatus.COMPLETED, difficulty_actual=5)
    await complete_challenge(store, "u1", challenge_id, outcome, config=config, today=START)
    await store.update(USERS, "u1", {"total_points": 2})

    result = await delete_challenge(store, "u1", challenge_id, config=config)

    assert result["points_removed"] == 5
    assert (await get_user(store, "u1"))["total_points"] == 0


@pytest.mark.asyncio
async def test_delete_active_rejected(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    with pytest.raises(StateConflictError, match="active"):
        await delete_challenge(store, "u1", challenge_id, config=config)
    assert (await get_challenge(store, "u1", challenge_id))["status"] == ChallengeStatus.ACTIVE


@pytest.mark.asyncio
async def test_delete_twice_not_found(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    await cancel_challenge(store, "u1", challenge_id, config=config)
    await delete_challenge(store, "u1", challenge_id, config=config)
    with pytest.raises(NotFoundError):
        await delete_challenge(store, "u1", challenge_id, config=config)


# ---------------------------------------------------------------------------
# history and edits
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_past_challenges_exclude_cancelled(store: InMemoryStore, config: Settings) -> None:
    done = await create_challenge(store, "u1", DAILY, config=config, today=START)
    await complete_challenge(
        store, "u1", done, CompletionOutcome(ChallengeStatus.COMPLETED, 3), config=config, today=START
    )
    dropped = await create_challenge(store, "u1", DAILY, config=config, today=START)
    await cancel_challenge(store, "u1", dropped, config=config)

    past = await get_past_challenges(store, "u1")
    assert [c["id"] for c in past] == [done]


@pytest.mark.asyncio
async def test_update_difficulty_moves_bank_by_delta(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    outcome = CompletionOutcome(ChallengeStatus.COMPLETED, 2, reflection="ok")
    await complete_challenge(store, "u1", challenge_id, outcome, config=config, today=START)

    result = await update_challenge_difficulty(store, "u1", challenge_id, 5, config=config)

    assert result == {"points_delta": 3, "new_points": 6}
    assert (await get_user(store, "u1"))["total_points"] == 6
    logs = await store.query(COMPLETION_LOGS, {"reference_id": challenge_id})
    assert logs[0]["points"] == 6


@pytest.mark.asyncio
async def test_save_reflection(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    await save_reflection(store, "u1", challenge_id, "  pushed through  ", config=config)
    assert (await get_challenge(store, "u1", challenge_id))["reflection_note"] == "pushed through"
    assert (await get_user(store, "u1"))["total_points"] == 0


# ---------------------------------------------------------------------------
# failures after the terminal write
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unwritable_audit_does_not_fail_completion(store: InMemoryStore, tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    config = Settings(data_audit_path=blocker / "audit")
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)

    result = await complete_challenge(
        store, "u1", challenge_id, CompletionOutcome(ChallengeStatus.COMPLETED, 3), config=config, today=START
    )

    assert result["points_awarded"] == 3
    user = await get_user(store, "u1")
    assert user["total_points"] == 3
    assert user["active_challenge_id"] is None
    assert len(await store.query(COMPLETION_LOGS, {"reference_id": challenge_id})) == 1
    await create_challenge(store, "u1", EXTENDED, config=config, today=START)


@pytest.mark.asyncio
async def test_failed_grant_still_frees_slot(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)

    with (
        patch("willpower.engine.challenges.award_points", new_callable=AsyncMock) as mock_award,
        pytest.raises(StateConflictError),
    ):
        mock_award.side_effect = StateConflictError("busy")
        await complete_challenge(
            store, "u1", challenge_id, CompletionOutcome(ChallengeStatus.COMPLETED, 3), config=config, today=START
        )

    assert (await get_challenge(store, "u1", challenge_id))["status"] == ChallengeStatus.COMPLETED
    assert (await get_user(store, "u1"))["active_challenge_id"] is None
    await create_challenge(store, "u1", EXTENDED, config=config, today=START)


@pytest.mark.asyncio
async def test_failed_grant_on_last_check_in_frees_slot(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)
    await _check_in(store, config, challenge_id, 1, 2)
    await _check_in(store, config, challenge_id, 2, 2)

    with (
        patch("willpower.engine.challenges.award_points", new_callable=AsyncMock) as mock_award,
        pytest.raises(StateConflictError),
    ):
        mock_award.side_effect = StateConflictError("busy")
        await _check_in(store, config, challenge_id, 3, 2)

    assert (await get_user(store, "u1"))["active_challenge_id"] is None


@pytest.mark.asyncio
async def test_slot_held_by_ended_challenge_is_reclaimed(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    await store.update(CHALLENGES, challenge_id, {"status": ChallengeStatus.COMPLETED})

    next_id = await create_challenge(store, "u1", EXTENDED, config=config, today=START)

    assert (await get_user(store, "u1"))["active_challenge_id"] == next_id


@pytest.mark.asyncio
async def test_failed_reversal_keeps_challenge_deletable(store: InMemoryStore, config: Settings) -> None:
    challenge_id = await create_challenge(store, "u1", DAILY, config=config, today=START)
    await complete_challenge(
        store, "u1", challenge_id, CompletionOutcome(ChallengeStatus.COMPLETED, 4), config=config, today=START
    )

    with (
        patch("willpower.engine.challenges.subtract_points", new_callable=AsyncMock) as mock_subtract,
        pytest.raises(StateConflictError),
    ):
        mock_subtract.side_effect = StateConflictError("busy")
        await delete_challenge(store, "u1", challenge_id, config=config)

    assert (await get_challenge(store, "u1", challenge_id))["status"] == ChallengeStatus.COMPLETED
    result = await delete_challenge(store, "u1", challenge_id, config=config)
    assert result == {"points_removed": 4}
    assert (await get_user(store, "u1"))["total_points"] == 0
