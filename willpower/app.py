"""FastAPI entrypoint exposing the willpower engine, with Telegram nudges in the lifespan."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from willpower.core.config import settings
from willpower.core.errors import (
    NotFoundError,
    RateLimitedError,
    StateConflictError,
    ValidationError,
    WillpowerError,
)
from willpower.data.schemas import ChallengeSpec, ChallengeType, CompletionOutcome
from willpower.data.store import DocumentStore, InMemoryStore
from willpower.engine.bank import award_points, get_willpower_stats, set_user_profile
from willpower.engine.buddy import (
    accept_buddy,
    decline_buddy,
    get_partner_progress,
    invite_buddy,
    send_nudge,
)
from willpower.engine.challenges import (
    cancel_challenge,
    check_in_milestone,
    complete_challenge,
    create_challenge,
    delete_challenge,
)
from willpower.engine.habits import create_habit, log_habit_completion
from willpower.engine.stats import get_repeat_stats
from willpower.notify import NotificationRouter, TelegramProvider

logger = logging.getLogger(__name__)

_store: DocumentStore = InMemoryStore()
_router: NotificationRouter | None = None

_STATUS_BY_ERROR: dict[type[WillpowerError], int] = {
    ValidationError: 422,
    StateConflictError: 409,
    NotFoundError: 404,
    RateLimitedError: 429,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start and stop the notification providers alongside the FastAPI server."""
    global _router  # noqa: PLW0603

    logging.getLogger("willpower").setLevel(settings.log_level)

    if settings.telegram_bot_token:
        _router = NotificationRouter()
        _router.register(TelegramProvider())
        await _router.initialize()
        logger.info("Telegram nudges enabled via TelegramProvider")
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set, nudges are recorded but not delivered")

    yield

    if _router is not None:
        await _router.shutdown()
        _router = None


app = FastAPI(title="Willpower Engine", version="0.1.0", lifespan=lifespan)

_bearer_scheme = HTTPBearer()


def get_store() -> DocumentStore:
    return _store


def get_router() -> NotificationRouter | None:
    return _router


async def _verify_api_key(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),  # noqa: B008
) -> str:
    """Validate the Bearer token against the configured api_key."""
    if not settings.api_key or credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return credentials.credentials


@app.exception_handler(WillpowerError)
async def _willpower_error_handler(request: Request, exc: WillpowerError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500)
    if status == 500:
        logger.exception("Unmapped engine error on %s", request.url.path, exc_info=exc)
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return JSONResponse(status_code=status, content={"error": exc.kind, "detail": exc.message}, headers=headers)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for the /health endpoint."""

    status: str


class ProfileRequest(BaseModel):
    """Display name and the Telegram chat nudges go to; omitted fields are kept."""

    username: str | None = None
    telegram_chat_id: int | None = None


class AwardRequest(BaseModel):
    action: str
    difficulty: int | str
    reflection: str | None = None


class ChallengeRequest(BaseModel):
    """Body for creating a challenge or a buddy invite."""

    name: str
    difficulty_expected: int
    challenge_type: str = ChallengeType.DAILY
    duration_days: int | None = None
    category_id: str = ""
    description: str = ""
    success_criteria: str = ""
    why: str = ""

    def to_spec(self) -> ChallengeSpec:
        return ChallengeSpec(**self.model_dump())


class CheckInRequest(BaseModel):
    day_number: int
    succeeded: bool
    points: int
    note: str | None = None
    difficulty_actual: int | None = None


class CompleteRequest(BaseModel):
    status: str
    difficulty_actual: int
    reflection: str | None = None


class HabitRequest(BaseModel):
    name: str
    category_id: str = ""
    target_count_per_week: int = 3


class HabitLogRequest(BaseModel):
    difficulty: str
    log_date: str | None = None
    notes: str | None = None


class BuddyInviteRequest(ChallengeRequest):
    inviter_id: str
    invitee_id: str
    team_id: str = ""

    def to_spec(self) -> ChallengeSpec:
        return ChallengeSpec(**self.model_dump(exclude={"inviter_id", "invitee_id", "team_id"}))


class ParticipantRequest(BaseModel):
    """Identifies which participant acts on a buddy challenge."""

    user_id: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok")


@app.put("/users/{user_id}")
async def put_profile(
    user_id: str,
    body: ProfileRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return await set_user_profile(store, user_id, body.username, body.telegram_chat_id)


@app.post("/users/{user_id}/points")
async def post_points(
    user_id: str,
    body: AwardRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return dict(await award_points(store, user_id, body.action, body.difficulty, body.reflection))


@app.get("/users/{user_id}/stats")
async def get_stats(
    user_id: str,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return dict(await get_willpower_stats(store, user_id))


@app.post("/users/{user_id}/challenges", status_code=201)
async def post_challenge(
    user_id: str,
    body: ChallengeRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, str]:
    return {"challenge_id": await create_challenge(store, user_id, body.to_spec())}


@app.post("/users/{user_id}/challenges/{challenge_id}/checkins")
async def post_check_in(
    user_id: str,
    challenge_id: str,
    body: CheckInRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    router: NotificationRouter | None = Depends(get_router),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    result = await check_in_milestone(
        store,
        user_id,
        challenge_id,
        body.day_number,
        body.succeeded,
        body.points,
        note=body.note,
        difficulty_actual=body.difficulty_actual,
        router=router,
    )
    return dict(result)


@app.post("/users/{user_id}/challenges/{challenge_id}/complete")
async def post_complete(
    user_id: str,
    challenge_id: str,
    body: CompleteRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    router: NotificationRouter | None = Depends(get_router),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    outcome = CompletionOutcome(status=body.status, difficulty_actual=body.difficulty_actual, reflection=body.reflection)
    return dict(await complete_challenge(store, user_id, challenge_id, outcome, router=router))


@app.post("/users/{user_id}/challenges/{challenge_id}/cancel")
async def post_cancel(
    user_id: str,
    challenge_id: str,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    router: NotificationRouter | None = Depends(get_router),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, str]:
    await cancel_challenge(store, user_id, challenge_id, router=router)
    return {"status": "cancelled"}


@app.delete("/users/{user_id}/challenges/{challenge_id}")
async def delete_challenge_endpoint(
    user_id: str,
    challenge_id: str,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return dict(await delete_challenge(store, user_id, challenge_id))


@app.get("/users/{user_id}/repeat-stats")
async def get_repeat_stats_endpoint(
    user_id: str,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return dict(await get_repeat_stats(store, user_id))


@app.post("/users/{user_id}/habits", status_code=201)
async def post_habit(
    user_id: str,
    body: HabitRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, str]:
    habit_id = await create_habit(store, user_id, body.name, body.category_id, body.target_count_per_week)
    return {"habit_id": habit_id}


@app.post("/users/{user_id}/habits/{habit_id}/logs")
async def post_habit_log(
    user_id: str,
    habit_id: str,
    body: HabitLogRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    result = await log_habit_completion(
        store, user_id, habit_id, body.difficulty, log_date=body.log_date, notes=body.notes
    )
    return dict(result)


@app.post("/buddy", status_code=201)
async def post_buddy(
    body: BuddyInviteRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    router: NotificationRouter | None = Depends(get_router),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, str]:
    buddy_id = await invite_buddy(
        store, body.inviter_id, body.invitee_id, body.to_spec(), team_id=body.team_id, router=router
    )
    return {"buddy_challenge_id": buddy_id}


@app.post("/buddy/{buddy_id}/accept")
async def post_buddy_accept(
    buddy_id: str,
    body: ParticipantRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return await accept_buddy(store, body.user_id, buddy_id)


@app.post("/buddy/{buddy_id}/decline")
async def post_buddy_decline(
    buddy_id: str,
    body: ParticipantRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, str]:
    await decline_buddy(store, body.user_id, buddy_id)
    return {"status": "declined"}


@app.post("/buddy/{buddy_id}/nudge")
async def post_buddy_nudge(
    buddy_id: str,
    body: ParticipantRequest,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    router: NotificationRouter | None = Depends(get_router),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return dict(await send_nudge(store, body.user_id, buddy_id, router=router))


@app.get("/buddy/{buddy_id}/partner")
async def get_buddy_partner(
    buddy_id: str,
    user_id: str,
    store: DocumentStore = Depends(get_store),  # noqa: B008
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return dict(await get_partner_progress(store, user_id, buddy_id))
