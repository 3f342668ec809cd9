"""Read-only statistics derived from a user's challenge history."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, NamedTuple, TypedDict

from willpower.data.schemas import ChallengeStatus
from willpower.data.store import DocumentStore
from willpower.engine.challenges import get_all_challenges

_WEEK_SECONDS = 7 * 24 * 60 * 60


class RepeatStats(TypedDict):
    """How often one named challenge was attempted and completed."""

    total_completions: int
    total_attempts: int  # completed + failed
    first_completed_at: str | None
    last_completed_at: str | None


class ChallengeSummary(TypedDict):
    avg_difficulty: float
    total_completed: int
    avg_per_week: float
    success_rate: int  # percent


class SuckFactorTier(NamedTuple):
    min_wpq: float
    tier: str
    description: str


SUCK_FACTOR_TIERS: tuple[SuckFactorTier, ...] = (
    SuckFactorTier(4.1, "Limit Pusher", "Consistently tackling the hardest challenges"),
    SuckFactorTier(3.1, "Challenge Seeker", "Pushing beyond your comfort zone"),
    SuckFactorTier(2.1, "Steady Builder", "Building strength with balanced challenges"),
    SuckFactorTier(0.0, "Comfort Zone", "Starting with manageable challenges"),
)

_FINISHED = (ChallengeStatus.COMPLETED, ChallengeStatus.FAILED)


def aggregate_repeat_stats(challenges: Iterable[Mapping[str, Any]]) -> dict[str, RepeatStats]:
    """Group finished challenges by exact name.

    Active, cancelled and archived challenges are not attempts. Names are not
    normalised: "Cold shower" and "cold shower" are different challenges.
    """
    stats: dict[str, RepeatStats] = {}
    for challenge in challenges:
        if challenge["status"] not in _FINISHED:
            continue
        entry = stats.setdefault(
            challenge["name"],
            RepeatStats(total_completions=0, total_attempts=0, first_completed_at=None, last_completed_at=None),
        )
        entry["total_attempts"] += 1
        if challenge["status"] != ChallengeStatus.COMPLETED:
            continue
        entry["total_completions"] += 1
        done_at = challenge.get("completed_at")
        if done_at:
            if entry["first_completed_at"] is None or done_at < entry["first_completed_at"]:
                entry["first_completed_at"] = done_at
            if entry["last_completed_at"] is None or done_at > entry["last_completed_at"]:
                entry["last_completed_at"] = done_at
    return stats


async def get_repeat_stats(store: DocumentStore, user_id: str) -> dict[str, RepeatStats]:
    return aggregate_repeat_stats(await get_all_challenges(store, user_id))


def summarize_challenges(
    challenges: Iterable[Mapping[str, Any]],
    now: datetime | None = None,
) -> ChallengeSummary:
    """Average difficulty, completions per week and success rate over finished challenges.

    Weeks are counted from the earliest finished challenge's creation to now,
    at least one.
    """
    finished = [c for c in challenges if c["status"] in _FINISHED]
    if not finished:
        return ChallengeSummary(avg_difficulty=0.0, total_completed=0, avg_per_week=0.0, success_rate=0)

    completed = sum(1 for c in finished if c["status"] == ChallengeStatus.COMPLETED)
    difficulty = sum(c.get("difficulty_actual") or c["difficulty_expected"] for c in finished) / len(finished)

    earliest = min(datetime.fromisoformat(c["created_at"]) for c in finished)
    if earliest.tzinfo is None:
        earliest = earliest.replace(tzinfo=UTC)
    elapsed = ((now or datetime.now(UTC)) - earliest).total_seconds()
    weeks = max(1.0, elapsed / _WEEK_SECONDS)

    return ChallengeSummary(
        avg_difficulty=round(difficulty, 1),
        total_completed=completed,
        avg_per_week=round(completed / weeks, 1),
        success_rate=round(completed / len(finished) * 100),
    )


def suck_factor_tier(wpq: float) -> SuckFactorTier:
    """Label for an average difficulty (willpower quotient)."""
    for tier in SUCK_FACTOR_TIERS:
        if wpq >= tier.min_wpq:
            return tier
    return SUCK_FACTOR_TIERS[-1]
