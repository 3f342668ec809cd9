"""Record schemas for users, challenges, milestones, habits and buddy challenges."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TypedDict


class ChallengeStatus(StrEnum):
    """Lifecycle status of a single challenge."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ChallengeStatus.COMPLETED, ChallengeStatus.FAILED, ChallengeStatus.ARCHIVED, ChallengeStatus.CANCELLED}
)


class ChallengeType(StrEnum):
    """Single-day or multi-day challenge."""

    DAILY = "daily"
    EXTENDED = "extended"  # one milestone per day


class Action(StrEnum):
    """Qualifying activity that earns willpower points."""

    CHALLENGE_COMPLETED = "challenge_completed"
    CHALLENGE_FAILED = "challenge_failed"  # logged but not succeeded
    HABIT_COMPLETED = "habit_completed"
    MILESTONE_CHECKED_IN = "milestone_checked_in"


class HabitDifficulty(StrEnum):
    """Two-level habit difficulty."""

    EASY = "easy"
    CHALLENGING = "challenging"


class LogType(StrEnum):
    """What a completion log entry refers to."""

    CHALLENGE = "challenge"
    MILESTONE = "milestone"
    HABIT = "habit"


class BuddyStatus(StrEnum):
    """Status of a two-party buddy challenge."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DECLINED = "declined"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass
class ChallengeSpec:
    """What the user asks for when starting a challenge."""

    name: str
    difficulty_expected: int
    challenge_type: str = ChallengeType.DAILY
    duration_days: int | None = None  # required for extended
    category_id: str = ""
    description: str = ""
    success_criteria: str = ""
    why: str = ""


@dataclass
class CompletionOutcome:
    """How a challenge ended, as reported by the user."""

    status: str  # ChallengeStatus.COMPLETED or ChallengeStatus.FAILED
    difficulty_actual: int
    reflection: str | None = None


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


class UserRecord(TypedDict):
    """A user's willpower bank."""

    username: str
    total_points: int
    current_streak: int
    last_activity_date: str | None  # YYYY-MM-DD
    active_challenge_id: str | None
    telegram_chat_id: int | None


class MilestoneRecord(TypedDict):
    """One day's check-in slot of an extended challenge."""

    day_number: int
    completed: bool
    succeeded: bool | None
    points_awarded: int | None  # user-chosen 1-5
    completed_at: str | None  # ISO 8601
    note: str | None


class ChallengeRecord(TypedDict):
    """A user-owned challenge."""

    user_id: str
    name: str
    category_id: str
    description: str
    success_criteria: str
    why: str
    status: str  # ChallengeStatus value
    challenge_type: str  # ChallengeType value
    difficulty_expected: int
    difficulty_actual: int | None
    points_awarded: int | None  # for extended: derived sum of milestone grants
    reflection_note: str
    created_at: str  # ISO 8601
    completed_at: str | None
    start_date: str | None  # YYYY-MM-DD, extended only
    duration_days: int | None
    milestones: list[MilestoneRecord] | None
    is_buddy_challenge: bool
    buddy_challenge_id: str | None
    buddy_partner_id: str | None


class CompletionLogRecord(TypedDict):
    """One point grant, kept for streak recalculation and reversal."""

    user_id: str
    log_type: str  # LogType value
    reference_id: str
    points: int
    difficulty: int
    date: str  # YYYY-MM-DD
    completed_at: str  # ISO 8601
    notes: str


class HabitRecord(TypedDict):
    """A recurring habit the user logs against."""

    user_id: str
    name: str
    category_id: str
    is_active: bool
    target_count_per_week: int  # 1-7


class ChallengeTemplate(TypedDict):
    """Shared definition both buddy participants start from."""

    name: str
    category_id: str
    challenge_type: str
    difficulty_expected: int
    duration_days: int | None
    description: str


class BuddyChallengeRecord(TypedDict):
    """A shared two-party challenge agreement."""

    inviter_id: str
    invitee_id: str
    inviter_username: str
    invitee_username: str
    team_id: str
    status: str  # BuddyStatus value
    template: ChallengeTemplate
    inviter_challenge_id: str | None
    invitee_challenge_id: str | None
    inviter_status: str
    invitee_status: str
    last_nudge_by_inviter: str | None  # YYYY-MM-DD
    last_nudge_by_invitee: str | None
    settled: bool  # duo streak already counted
    created_at: str
    accepted_at: str | None
    completed_at: str | None


class DuoStreakRecord(TypedDict):
    """How many buddy challenges two users completed together."""

    user_ids: list[str]  # sorted pair
    challenges_completed_together: int
    settled_buddy_ids: list[str]
    first_completed_at: str
    last_completed_at: str


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TierUp(TypedDict):
    """Streak crossed into a higher multiplier tier."""

    multiplier: float
    tier_name: str
    min_days: int


class LevelUp(TypedDict):
    """Cumulative points crossed one or more level thresholds."""

    level: int
    title: str


class AwardResult(TypedDict):
    """Outcome of a single award_points call."""

    points_awarded: int
    new_total: int
    new_streak: int
    multiplier: float
    tier_up: TierUp | None
    level_up: LevelUp | None


class CheckInResult(TypedDict):
    """Outcome of a milestone check-in."""

    points_awarded: int
    challenge_completed: bool
    level_up: LevelUp | None
    tier_up: TierUp | None


class CompletionResult(TypedDict):
    """Outcome of completing a challenge."""

    points_awarded: int
    level_up: LevelUp | None
    tier_up: TierUp | None


class DeleteResult(TypedDict):
    """Points reversed by deleting a challenge."""

    points_removed: int


class NudgeResult(TypedDict):
    """Whether a nudge went out; a same-day repeat is not an error."""

    sent: bool
    reason: str | None


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _now() -> str:
    return datetime.now(UTC).isoformat()


def make_user_record(username: str = "", telegram_chat_id: int | None = None) -> UserRecord:
    """Create an empty willpower bank."""
    return UserRecord(
        username=username,
        total_points=0,
        current_streak=0,
        last_activity_date=None,
        active_challenge_id=None,
        telegram_chat_id=telegram_chat_id,
    )


def make_milestones(duration_days: int) -> list[MilestoneRecord]:
    """Create one pending milestone per day, numbered from 1."""
    return [
        MilestoneRecord(
            day_number=day,
            completed=False,
            succeeded=None,
            points_awarded=None,
            completed_at=None,
            note=None,
        )
        for day in range(1, duration_days + 1)
    ]


def make_challenge_record(
    user_id: str,
    spec: ChallengeSpec,
    start_date: str | None = None,
    buddy_challenge_id: str | None = None,
    buddy_partner_id: str | None = None,
    created_at: str | None = None,
) -> ChallengeRecord:
    """Create an active challenge; extended challenges get their milestones up front."""
    extended = spec.challenge_type == ChallengeType.EXTENDED
    return ChallengeRecord(
        user_id=user_id,
        name=spec.name,
        category_id=spec.category_id,
        description=spec.description,
        success_criteria=spec.success_criteria,
        why=spec.why,
        status=ChallengeStatus.ACTIVE,
        challenge_type=spec.challenge_type,
        difficulty_expected=spec.difficulty_expected,
        difficulty_actual=None,
        points_awarded=None,
        reflection_note="",
        created_at=created_at or _now(),
        completed_at=None,
        start_date=start_date if extended else None,
        duration_days=spec.duration_days if extended else None,
        milestones=make_milestones(spec.duration_days or 0) if extended else None,
        is_buddy_challenge=buddy_challenge_id is not None,
        buddy_challenge_id=buddy_challenge_id,
        buddy_partner_id=buddy_partner_id,
    )


def make_completion_log(
    user_id: str,
    log_type: str,
    reference_id: str,
    points: int,
    difficulty: int,
    date: str,
    notes: str = "",
    completed_at: str | None = None,
) -> CompletionLogRecord:
    """Create a completion log entry for one point grant."""
    return CompletionLogRecord(
        user_id=user_id,
        log_type=log_type,
        reference_id=reference_id,
        points=points,
        difficulty=difficulty,
        date=date,
        completed_at=completed_at or _now(),
        notes=notes,
    )


def make_habit_record(
    user_id: str,
    name: str,
    category_id: str = "",
    target_count_per_week: int = 3,
) -> HabitRecord:
    """Create an active habit."""
    return HabitRecord(
        user_id=user_id,
        name=name,
        category_id=category_id,
        is_active=True,
        target_count_per_week=target_count_per_week,
    )


def make_challenge_template(spec: ChallengeSpec) -> ChallengeTemplate:
    """Freeze the shareable part of a challenge spec."""
    return ChallengeTemplate(
        name=spec.name,
        category_id=spec.category_id,
        challenge_type=spec.challenge_type,
        difficulty_expected=spec.difficulty_expected,
        duration_days=spec.duration_days,
        description=spec.description,
    )


def spec_from_template(template: ChallengeTemplate) -> ChallengeSpec:
    """Rebuild a challenge spec from a buddy template."""
    return ChallengeSpec(
        name=template["name"],
        difficulty_expected=template["difficulty_expected"],
        challenge_type=template["challenge_type"],
        duration_days=template["duration_days"],
        category_id=template["category_id"],
        description=template["description"],
    )


def make_buddy_challenge_record(
    inviter_id: str,
    invitee_id: str,
    template: ChallengeTemplate,
    team_id: str = "",
    inviter_username: str = "",
    invitee_username: str = "",
    created_at: str | None = None,
) -> BuddyChallengeRecord:
    """Create a pending buddy challenge invite."""
    return BuddyChallengeRecord(
        inviter_id=inviter_id,
        invitee_id=invitee_id,
        inviter_username=inviter_username,
        invitee_username=invitee_username,
        team_id=team_id,
        status=BuddyStatus.PENDING,
        template=template,
        inviter_challenge_id=None,
        invitee_challenge_id=None,
        inviter_status="pending",
        invitee_status="pending",
        last_nudge_by_inviter=None,
        last_nudge_by_invitee=None,
        settled=False,
        created_at=created_at or _now(),
        accepted_at=None,
        completed_at=None,
    )


def make_duo_streak_record(user_ids: list[str], buddy_challenge_id: str, timestamp: str | None = None) -> DuoStreakRecord:
    """Create a duo streak for the first buddy challenge two users finish together."""
    ts = timestamp or _now()
    return DuoStreakRecord(
        user_ids=sorted(user_ids),
        challenges_completed_together=1,
        settled_buddy_ids=[buddy_challenge_id],
        first_completed_at=ts,
        last_completed_at=ts,
    )
