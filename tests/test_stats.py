"""Tests for willpower.engine.stats: repeat stats, summary and suck factor."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from willpower.core.config import Settings
from willpower.data.schemas import ChallengeSpec, ChallengeStatus, CompletionOutcome
from willpower.data.store import InMemoryStore
from willpower.engine.challenges import cancel_challenge, complete_challenge, create_challenge
from willpower.engine.stats import aggregate_repeat_stats, get_repeat_stats, suck_factor_tier, summarize_challenges

NOW = datetime(2026, 3, 29, tzinfo=UTC)


def _challenge(name: str, status: str, completed_at: str | None = None, **extra: Any) -> dict[str, Any]:
    return {
        "name": name,
        "status": status,
        "completed_at": completed_at,
        "created_at": "2026-03-01T08:00:00+00:00",
        "difficulty_expected": 3,
        "difficulty_actual": None,
        **extra,
    }


# ---------------------------------------------------------------------------
# aggregate_repeat_stats
# ---------------------------------------------------------------------------


def test_groups_by_exact_name() -> None:
    stats = aggregate_repeat_stats(
        [
            _challenge("Cold shower", ChallengeStatus.COMPLETED, "2026-03-02T07:00:00+00:00"),
            _challenge("Cold shower", ChallengeStatus.FAILED),
            _challenge("Cold shower", ChallengeStatus.COMPLETED, "2026-03-09T07:00:00+00:00"),
            _challenge("cold shower", ChallengeStatus.COMPLETED, "2026-03-05T07:00:00+00:00"),
        ]
    )
    assert stats["Cold shower"] == {
        "total_completions": 2,
        "total_attempts": 3,
        "first_completed_at": "2026-03-02T07:00:00+00:00",
        "last_completed_at": "2026-03-09T07:00:00+00:00",
    }
    assert stats["cold shower"]["total_completions"] == 1


def test_active_and_cancelled_are_not_attempts() -> None:
    stats = aggregate_repeat_stats(
        [_challenge("Fast", ChallengeStatus.ACTIVE), _challenge("Fast", ChallengeStatus.CANCELLED)]
    )
    assert stats == {}


def test_never_completed_has_no_dates() -> None:
    stats = aggregate_repeat_stats([_challenge("Fast", ChallengeStatus.FAILED)])
    assert stats["Fast"]["total_completions"] == 0
    assert stats["Fast"]["first_completed_at"] is None


@pytest.mark.asyncio
async def test_get_repeat_stats_reads_store(tmp_path: Path) -> None:
    store = InMemoryStore()
    config = Settings(data_audit_path=tmp_path)
    for status in (ChallengeStatus.COMPLETED, ChallengeStatus.FAILED):
        cid = await create_challenge(store, "u1", ChallengeSpec(name="Read 20 pages", difficulty_expected=2), config=config)
        await complete_challenge(store, "u1", cid, CompletionOutcome(status, 2), config=config)
    cid = await create_challenge(store, "u1", ChallengeSpec(name="Read 20 pages", difficulty_expected=2), config=config)
    await cancel_challenge(store, "u1", cid, config=config)

    stats = await get_repeat_stats(store, "u1")

    assert stats["Read 20 pages"]["total_attempts"] == 2
    assert stats["Read 20 pages"]["total_completions"] == 1


# ---------------------------------------------------------------------------
# summarize_challenges
# ---------------------------------------------------------------------------


def test_summary_of_empty_history() -> None:
    assert summarize_challenges([], now=NOW) == {
        "avg_difficulty": 0.0,
        "total_completed": 0,
        "avg_per_week": 0.0,
        "success_rate": 0,
    }


def test_summary() -> None:
    history = [
        _challenge("a", ChallengeStatus.COMPLETED, difficulty_actual=5),
        _challenge("b", ChallengeStatus.COMPLETED, difficulty_actual=4),
        _challenge("c", ChallengeStatus.FAILED),
        _challenge("d", ChallengeStatus.CANCELLED, difficulty_actual=1),
    ]
    summary = summarize_challenges(history, now=NOW)
    assert summary["avg_difficulty"] == pytest.approx(4.0)
    assert summary["total_completed"] == 2
    assert summary["avg_per_week"] == pytest.approx(0.5)  # 4 weeks
    assert summary["success_rate"] == 67


def test_summary_within_first_week_counts_one_week() -> None:
    history = [_challenge("a", ChallengeStatus.COMPLETED, created_at="2026-03-28T08:00:00+00:00")]
    assert summarize_challenges(history, now=NOW)["avg_per_week"] == pytest.approx(1.0)


# ---------------------------------------------------------------------------
# suck_factor_tier
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "wpq,tier",
    [
        (0, "Comfort Zone"),
        (2.0, "Comfort Zone"),
        (2.1, "Steady Builder"),
        (3.0, "Steady Builder"),
        (3.1, "Challenge Seeker"),
        (4.0, "Challenge Seeker"),
        (4.1, "Limit Pusher"),
        (5.0, "Limit Pusher"),
    ],
)
def test_suck_factor_tier(wpq: float, tier: str) -> None:
    assert suck_factor_tier(wpq).tier == tier
