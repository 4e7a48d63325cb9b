from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..schemas import (
    LikeResponse,
    LikeResultResponse,
    LikeStatusResponse,
    MatchResponse,
    PendingLikesResponse,
)
from ..services.jwt_service import JWTService
from ..services.match_resolver import MatchResolver
from ..utils import _like_log, enforce_rate_limit


router = APIRouter(
    prefix="/likes",
    tags=["likes"],
)


@router.get("/incoming", response_model=PendingLikesResponse)
async def list_incoming_likes(
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Pending requests: users who liked you and are not matched with you yet.

    **Authentication Required:** Yes
    """
    likes = await MatchResolver(db).pending_incoming(current_user_id)
    return PendingLikesResponse(
        items=[LikeResponse.model_validate(like) for like in likes],
        total=len(likes),
    )


@router.post("/incoming/{user_id}/accept", response_model=MatchResponse)
async def accept_like(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Accept a pending request from `user_id`. Retrying returns the same match.

    **Authentication Required:** Yes
    """
    match = await MatchResolver(db).accept_pending(current_user_id, user_id)
    return MatchResponse.model_validate(match)


@router.post("/incoming/{user_id}/reject", response_model=LikeStatusResponse)
async def reject_like(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Reject a pending request from `user_id`. The other user may send a new one later.

    **Authentication Required:** Yes
    """
    removed = await MatchResolver(db).reject_pending(current_user_id, user_id)
    return {"removed": removed}


@router.post("/{user_id}", response_model=LikeResultResponse)
async def like_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Like `user_id`. If they already liked you, the match is created and returned.

    Liking someone twice is a no-op.

    **Authentication Required:** Yes
    """
    enforce_rate_limit(current_user_id, _like_log, settings.likes_per_min, "likes")
    outcome = await MatchResolver(db).record_like(current_user_id, user_id)
    return LikeResultResponse(
        pending=outcome.pending,
        match=MatchResponse.model_validate(outcome.match) if outcome.match else None,
        match_created=outcome.match_created,
    )


@router.delete("/{user_id}", response_model=LikeStatusResponse)
async def withdraw_like(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Withdraw your pending like of `user_id`.

    **Authentication Required:** Yes
    """
    removed = await MatchResolver(db).withdraw_like(current_user_id, user_id)
    return {"removed": removed}
