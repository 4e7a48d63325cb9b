from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas import MatchListResponse, MatchLookupResponse, MatchResponse
from ..services.jwt_service import JWTService
from ..services.match_resolver import MatchResolver


router = APIRouter(
    prefix="/matches",
    tags=["matches"],
)


@router.get("", response_model=MatchListResponse)
async def list_matches(
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Your matches, newest first. Clients refetch this wholesale after reconnecting.

    **Authentication Required:** Yes
    """
    matches = await MatchResolver(db).matches_for(current_user_id)
    return MatchListResponse(
        items=[MatchResponse.model_validate(m) for m in matches],
        total=len(matches),
    )


@router.get("/with/{user_id}", response_model=MatchLookupResponse)
async def get_match_with(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Whether you are matched with `user_id`.

    **Authentication Required:** Yes
    """
    match = await MatchResolver(db).match_exists(current_user_id, user_id)
    return MatchLookupResponse(
        matched=match is not None,
        match=MatchResponse.model_validate(match) if match else None,
    )
