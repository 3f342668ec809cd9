"""Buddy challenges: two users taking on the same challenge with linked records.

Buddy state machine::

    pending --accept--> active --(both sides terminal)--> completed
    pending --decline--> declined

The buddy record is shared by both participants, so every write to it goes
through run_transaction. The duo streak between the pair is counted once per
buddy challenge: the buddy record's ``settled`` flag is claimed first, and
the duo record remembers which buddy challenges it already counted.
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
    BuddyStatus,
    ChallengeSpec,
    ChallengeStatus,
    MilestoneRecord,
    NudgeResult,
    make_buddy_challenge_record,
    make_challenge_template,
    make_duo_streak_record,
    spec_from_template,
)
from willpower.data.store import Document, DocumentStore, run_transaction
from willpower.engine.bank import get_user
from willpower.engine.challenges import (
    CHALLENGES,
    create_challenge,
    discard_unstarted_challenge,
    validate_spec,
)
from willpower.engine.streaks import local_today
from willpower.notify.base import NotificationKind
from willpower.notify.router import NotificationRouter

logger = logging.getLogger(__name__)

BUDDY_CHALLENGES = "buddy_challenges"
DUO_STREAKS = "duo_streaks"

ALREADY_NUDGED = "Already nudged today."


class PartnerProgress(TypedDict):
    """Read-only view of the other participant's side."""

    partner_id: str
    username: str
    status: str
    challenge_id: str | None
    milestones: list[MilestoneRecord] | None
    completed_days: int


def duo_streak_id(user_a: str, user_b: str) -> str:
    """Order-independent key for a pair of users."""
    return "_".join(sorted((user_a, user_b)))


def _side(buddy: Document, user_id: str) -> str:
    """Return 'inviter' or 'invitee' for a participant, NotFoundError otherwise."""
    if user_id == buddy["inviter_id"]:
        return "inviter"
    if user_id == buddy["invitee_id"]:
        return "invitee"
    msg = f"Buddy challenge {buddy['id']} not found."
    raise NotFoundError(msg)


def _other(side: str) -> str:
    return "invitee" if side == "inviter" else "inviter"


def _require(current: Document | None, buddy_id: str) -> Document:
    if current is None:
        msg = f"Buddy challenge {buddy_id} not found."
        raise NotFoundError(msg)
    return current


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_buddy_challenge(store: DocumentStore, buddy_id: str) -> Document:
    return _require(await store.get(BUDDY_CHALLENGES, buddy_id), buddy_id)


async def get_pending_invites(store: DocumentStore, user_id: str) -> list[Document]:
    """Invites waiting for this user's answer."""
    return await store.query(BUDDY_CHALLENGES, {"invitee_id": user_id, "status": BuddyStatus.PENDING})


async def get_active_buddy_challenges(store: DocumentStore, user_id: str) -> list[Document]:
    """Pending and active buddy challenges the user takes part in, on either side."""
    found: dict[str, Document] = {}
    for field in ("inviter_id", "invitee_id"):
        for status in (BuddyStatus.PENDING, BuddyStatus.ACTIVE):
            for doc in await store.query(BUDDY_CHALLENGES, {field: user_id, "status": status}):
                found.setdefault(doc["id"], doc)
    return sorted(found.values(), key=lambda d: d["created_at"], reverse=True)


async def get_partner_progress(store: DocumentStore, user_id: str, buddy_id: str) -> PartnerProgress:
    """Partner's status and milestones. Never writes to the partner's records."""
    buddy = await get_buddy_challenge(store, buddy_id)
    other = _other(_side(buddy, user_id))
    partner_id = buddy[f"{other}_id"]
    challenge_id = buddy[f"{other}_challenge_id"]

    milestones = None
    if challenge_id:
        challenge = await store.get(CHALLENGES, challenge_id)
        if challenge is not None:
            milestones = challenge.get("milestones")

    return PartnerProgress(
        partner_id=partner_id,
        username=buddy[f"{other}_username"],
        status=buddy[f"{other}_status"],
        challenge_id=challenge_id,
        milestones=milestones,
        completed_days=sum(1 for m in milestones or [] if m["completed"]),
    )


async def get_duo_streak(store: DocumentStore, user_a: str, user_b: str) -> Document | None:
    return await store.get(DUO_STREAKS, duo_streak_id(user_a, user_b))


# ---------------------------------------------------------------------------
# Invitation
# ---------------------------------------------------------------------------


async def invite_buddy(
    store: DocumentStore,
    inviter_id: str,
    invitee_id: str,
    spec: ChallengeSpec,
    team_id: str = "",
    router: NotificationRouter | None = None,
    config: Settings | None = None,
) -> str:
    """Create a pending buddy challenge. No personal challenge exists until acceptance."""
    cfg = config or default_settings
    if inviter_id == invitee_id:
        msg = "You can't invite yourself to a buddy challenge."
        raise ValidationError(msg)
    validate_spec(spec, cfg)

    inviter = await get_user(store, inviter_id)
    invitee = await get_user(store, invitee_id)
    record = make_buddy_challenge_record(
        inviter_id,
        invitee_id,
        make_challenge_template(spec),
        team_id=team_id,
        inviter_username=inviter["username"],
        invitee_username=invitee["username"],
    )
    buddy_id = await store.create(BUDDY_CHALLENGES, dict(record))
    logger.info("Buddy invite %s: %s -> %s (%s)", buddy_id, inviter_id, invitee_id, spec.name)

    if router is not None:
        text = f"{inviter['username'] or 'A friend'} invited you to a buddy challenge: {spec.name}"
        try:
            await router.notify({**invitee, "id": invitee_id}, text, NotificationKind.INVITE)
        except WillpowerError as exc:
            # the invite stands; the invitee still sees it in their pending list
            logger.warning("Invite notification for %s failed: %s", buddy_id, exc)
    return buddy_id


async def _set_buddy(store: DocumentStore, buddy_id: str, fields: dict[str, Any], config: Settings) -> None:
    def _mutate(current: Document | None) -> dict[str, Any]:
        _require(current, buddy_id)
        return fields

    await run_transaction(store, BUDDY_CHALLENGES, buddy_id, _mutate, config=config)


async def accept_buddy(
    store: DocumentStore,
    invitee_id: str,
    buddy_id: str,
    config: Settings | None = None,
    today: date | None = None,
) -> Document:
    """Accept an invite and start both linked challenges, all or nothing.

    Fails with StateConflictError if the invite was already handled or either
    participant already has an active challenge; in that case nothing changes.
    """
    cfg = config or default_settings

    def _claim(current: Document | None) -> dict[str, Any]:
        buddy = _require(current, buddy_id)
        if buddy["invitee_id"] != invitee_id:
            msg = f"Buddy challenge {buddy_id} not found."
            raise NotFoundError(msg)
        if buddy["status"] != BuddyStatus.PENDING:
            msg = "Invite already handled."
            raise StateConflictError(msg)
        return {
            "status": BuddyStatus.ACTIVE,
            "inviter_status": ChallengeStatus.ACTIVE,
            "invitee_status": ChallengeStatus.ACTIVE,
            "accepted_at": _now(),
        }

    buddy = await run_transaction(store, BUDDY_CHALLENGES, buddy_id, _claim, config=cfg)
    inviter_id = buddy["inviter_id"]
    spec = spec_from_template(buddy["template"])
    revert = {
        "status": BuddyStatus.PENDING,
        "inviter_status": "pending",
        "invitee_status": "pending",
        "accepted_at": None,
    }

    try:
        invitee_challenge = await create_challenge(
            store, invitee_id, spec, config=cfg, today=today,
            buddy_challenge_id=buddy_id, buddy_partner_id=inviter_id,
        )
    except WillpowerError:
        await _set_buddy(store, buddy_id, revert, cfg)
        raise

    try:
        inviter_challenge = await create_challenge(
            store, inviter_id, spec, config=cfg, today=today,
            buddy_challenge_id=buddy_id, buddy_partner_id=invitee_id,
        )
    except WillpowerError:
        await discard_unstarted_challenge(store, invitee_id, invitee_challenge, config=cfg)
        await _set_buddy(store, buddy_id, revert, cfg)
        raise

    links = {"inviter_challenge_id": inviter_challenge, "invitee_challenge_id": invitee_challenge}
    await _set_buddy(store, buddy_id, links, cfg)
    logger.info("Buddy challenge %s accepted by %s", buddy_id, invitee_id)
    return {**buddy, **links}


async def decline_buddy(
    store: DocumentStore,
    invitee_id: str,
    buddy_id: str,
    config: Settings | None = None,
) -> None:
    """Decline a pending invite. The inviter is not notified."""

    def _mutate(current: Document | None) -> dict[str, Any]:
        buddy = _require(current, buddy_id)
        if buddy["invitee_id"] != invitee_id:
            msg = f"Buddy challenge {buddy_id} not found."
            raise NotFoundError(msg)
        if buddy["status"] != BuddyStatus.PENDING:
            msg = "Invite already handled."
            raise StateConflictError(msg)
        return {"status": BuddyStatus.DECLINED, "invitee_status": BuddyStatus.DECLINED}

    await run_transaction(store, BUDDY_CHALLENGES, buddy_id, _mutate, config=config)
    logger.info("Buddy challenge %s declined by %s", buddy_id, invitee_id)


# ---------------------------------------------------------------------------
# Nudges
# ---------------------------------------------------------------------------


async def send_nudge(
    store: DocumentStore,
    sender_id: str,
    buddy_id: str,
    router: NotificationRouter | None = None,
    config: Settings | None = None,
    today: date | None = None,
) -> NudgeResult:
    """Nudge the partner, at most once per day per sender.

    The day is claimed on the buddy record before delivery; if delivery is
    rate limited the claim is released and RateLimitedError propagates.
    """
    cfg = config or default_settings
    day = (today or local_today(cfg)).isoformat()
    state: dict[str, Any] = {}

    def _claim(current: Document | None) -> dict[str, Any]:
        buddy = _require(current, buddy_id)
        side = _side(buddy, sender_id)
        if buddy["status"] != BuddyStatus.ACTIVE:
            msg = "This buddy challenge is not active."
            raise StateConflictError(msg)
        field = f"last_nudge_by_{side}"
        state.update(buddy=buddy, side=side, field=field, previous=buddy.get(field))
        if buddy.get(field) == day:
            state["already"] = True
            return {}
        state["already"] = False
        return {field: day}

    await run_transaction(store, BUDDY_CHALLENGES, buddy_id, _claim, config=cfg)
    if state["already"]:
        logger.warning("Nudge from %s on %s rejected: already nudged %s", sender_id, buddy_id, day)
        return NudgeResult(sent=False, reason=ALREADY_NUDGED)

    buddy = state["buddy"]
    if router is not None:
        other = _other(state["side"])
        partner_id = buddy[f"{other}_id"]
        partner = await get_user(store, partner_id)
        sender_name = buddy[f"{state['side']}_username"] or "Your buddy"
        text = f"{sender_name} nudged you: keep going on {buddy['template']['name']}!"
        try:
            await router.notify({**partner, "id": partner_id}, text, NotificationKind.NUDGE)
        except WillpowerError:
            await _set_buddy(store, buddy_id, {state["field"]: state["previous"]}, cfg)
            raise

    logger.info("Nudge sent by %s on buddy challenge %s", sender_id, buddy_id)
    return NudgeResult(sent=True, reason=None)


# ---------------------------------------------------------------------------
# Completion and duo streak
# ---------------------------------------------------------------------------


async def _announce_completion(store: DocumentStore, buddy_id: str, buddy: Document, router: NotificationRouter) -> None:
    """Tell both participants how the buddy challenge ended."""
    name = buddy["template"]["name"]
    for side in ("inviter", "invitee"):
        other = _other(side)
        user_id = buddy[f"{side}_id"]
        user = await get_user(store, user_id)
        partner = buddy[f"{other}_username"] or "your buddy"
        own_status = buddy[f"{side}_status"]
        partner_status = buddy[f"{other}_status"]
        text = f"Buddy challenge {name} is over: you {own_status}, {partner} {partner_status}."
        try:
            await router.notify({**user, "id": user_id}, text, NotificationKind.BUDDY_COMPLETED)
        except WillpowerError as exc:
            logger.warning("Completion notice for %s to %s failed: %s", buddy_id, user_id, exc)


async def on_challenge_finished(
    store: DocumentStore,
    user_id: str,
    buddy_id: str,
    status: str,
    router: NotificationRouter | None = None,
    config: Settings | None = None,
) -> bool:
    """Record one side's terminal status; settle the duo streak if both completed.

    When this call finishes the buddy challenge both participants are told
    through the router. Returns True if this call settled the duo streak. Of
    two concurrent completions only the one whose write lands second sees
    both sides done.
    """
    cfg = config or default_settings
    state: dict[str, Any] = {}

    def _mutate(current: Document | None) -> dict[str, Any]:
        buddy = _require(current, buddy_id)
        side = _side(buddy, user_id)
        fields: dict[str, Any] = {f"{side}_status": status}
        other_status = buddy[f"{_other(side)}_status"]
        both_done = status in TERMINAL_STATUSES and other_status in TERMINAL_STATUSES
        if both_done and buddy["status"] == BuddyStatus.ACTIVE:
            fields.update(status=BuddyStatus.COMPLETED, completed_at=_now())
        state["finished"] = "completed_at" in fields
        state["settle"] = (
            status == ChallengeStatus.COMPLETED
            and other_status == ChallengeStatus.COMPLETED
            and not buddy["settled"]
        )
        return fields

    buddy = await run_transaction(store, BUDDY_CHALLENGES, buddy_id, _mutate, config=cfg)
    logger.info("Buddy challenge %s: %s finished as %s", buddy_id, user_id, status)

    settled = False
    if state["settle"]:
        await settle_duo_streak(store, buddy_id, config=cfg)
        settled = True
    if state["finished"] and router is not None:
        await _announce_completion(store, buddy_id, buddy, router)
    return settled


async def settle_duo_streak(
    store: DocumentStore,
    buddy_id: str,
    config: Settings | None = None,
) -> Document:
    """Count a jointly completed buddy challenge towards the pair's duo streak.

    Raises StateConflictError if this buddy challenge was already counted or
    if either side has not completed.
    """
    cfg = config or default_settings
    state: dict[str, Any] = {}

    def _claim(current: Document | None) -> dict[str, Any]:
        buddy = _require(current, buddy_id)
        if buddy["settled"]:
            msg = "Duo streak already counted for this buddy challenge."
            raise StateConflictError(msg)
        if not (
            buddy["inviter_status"] == ChallengeStatus.COMPLETED
            and buddy["invitee_status"] == ChallengeStatus.COMPLETED
        ):
            msg = "Both partners must complete the challenge first."
            raise StateConflictError(msg)
        state["pair"] = [buddy["inviter_id"], buddy["invitee_id"]]
        return {"settled": True}

    await run_transaction(store, BUDDY_CHALLENGES, buddy_id, _claim, config=cfg)

    pair = state["pair"]
    ts = _now()

    def _increment(current: Document | None) -> dict[str, Any]:
        if current is None:
            return dict(make_duo_streak_record(pair, buddy_id, timestamp=ts))
        if buddy_id in current["settled_buddy_ids"]:
            return {}
        return {
            "challenges_completed_together": current["challenges_completed_together"] + 1,
            "settled_buddy_ids": [*current["settled_buddy_ids"], buddy_id],
            "last_completed_at": ts,
        }

    duo = await run_transaction(store, DUO_STREAKS, duo_streak_id(*pair), _increment, config=cfg)
    logger.info(
        "Duo streak %s now %d after buddy challenge %s",
        duo["id"],
        duo["challenges_completed_together"],
        buddy_id,
    )
    return duo
