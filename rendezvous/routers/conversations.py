from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..schemas import (
    ConversationListResponse,
    ConversationPreview,
    MarkReadRequest,
    MessageCreate,
    MessageHistoryResponse,
    MessageResponse,
    PresenceResponse,
    ReadWatermarkResponse,
    TypingResponse,
    UnreadCountResponse,
)
from ..services.conversation_log import ConversationLog
from ..services.jwt_service import JWTService
from ..services.match_resolver import MatchResolver
from ..services.presence import presence_hub
from ..services.read_tracker import ReadTracker
from ..services.typing_signal import TypingSignal
from ..utils import _message_log, enforce_rate_limit


router = APIRouter(tags=["conversations"])

# ============================================================================
# CONVERSATION LIST (inbox previews)
# ============================================================================


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    One entry per match with its latest message, unread count and whether the
    other user is online. Most recently active first.

    **Authentication Required:** Yes
    """
    matches = await MatchResolver(db).matches_for(current_user_id)
    last_messages = await ConversationLog(db).last_messages(m.id for m in matches)
    unread = await ReadTracker(db).unread_counts(current_user_id)

    items = []
    for match in matches:
        last = last_messages.get(match.id)
        other_user_id = match.other_participant(current_user_id)
        items.append(ConversationPreview(
            match_id=match.id,
            other_user_id=other_user_id,
            matched_at=match.created_at,
            last_message=MessageResponse.model_validate(last) if last else None,
            last_message_is_mine=bool(last and last.sender_id == current_user_id),
            unread=unread.get(match.id, 0),
            other_user_online=presence_hub.is_online(other_user_id),
        ))
    items.sort(
        key=lambda p: p.last_message.created_at if p.last_message else p.matched_at,
        reverse=True,
    )
    return ConversationListResponse(
        items=items,
        total=len(items),
        total_unread=sum(p.unread for p in items),
    )

# ============================================================================
# MESSAGES
# ============================================================================


@router.get("/matches/{match_id}/messages", response_model=MessageHistoryResponse)
async def get_messages(
    match_id: int,
    since: Optional[datetime] = Query(
        None, description="Only messages after this timestamp (the last one you saw)"),
    since_id: Optional[int] = Query(
        None, description="Id of the last message you saw, to break timestamp ties"),
    limit: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Conversation history, oldest first. Pass `since`/`since_id` from the last
    message you have to fetch only what you missed (e.g. after a reconnect).

    **Authentication Required:** Yes
    """
    await MatchResolver(db).require_participant(match_id, current_user_id)
    limit = min(limit or settings.history_page_size, settings.history_max_limit)

    messages = await ConversationLog(db).history(
        match_id, since=since, since_id=since_id, limit=limit + 1)
    has_more = len(messages) > limit
    messages = messages[:limit]
    last = messages[-1] if messages else None
    return MessageHistoryResponse(
        items=[MessageResponse.model_validate(m) for m in messages],
        next_since=last.created_at if last else since,
        next_since_id=last.id if last else since_id,
        has_more=has_more,
    )


@router.post("/matches/{match_id}/messages", response_model=MessageResponse)
async def send_message(
    match_id: int,
    payload: MessageCreate,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Send a message. Set `client_key` and reuse it on retry to avoid duplicates.

    **Authentication Required:** Yes
    """
    enforce_rate_limit(current_user_id, _message_log, settings.messages_per_min, "messages")
    message = await ConversationLog(db).append(
        match_id, current_user_id, payload.body, client_key=payload.client_key)
    return MessageResponse.model_validate(message)

# ============================================================================
# READ STATE
# ============================================================================


@router.post("/matches/{match_id}/read", response_model=ReadWatermarkResponse)
async def mark_read(
    match_id: int,
    payload: Optional[MarkReadRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Mark the conversation read up to `at` (default: now). Older values are ignored.

    **Authentication Required:** Yes
    """
    at = payload.at if payload else None
    watermark = await ReadTracker(db).mark_read(current_user_id, match_id, at)
    return ReadWatermarkResponse.model_validate(watermark)


@router.get("/matches/{match_id}/unread", response_model=UnreadCountResponse)
async def get_unread_count(
    match_id: int,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Number of messages from the other user you have not read.

    **Authentication Required:** Yes
    """
    unread = await ReadTracker(db).unread_count(current_user_id, match_id)
    return UnreadCountResponse(match_id=match_id, unread=unread)

# ============================================================================
# EPHEMERAL SIGNALS
# ============================================================================


@router.post("/matches/{match_id}/typing", response_model=TypingResponse)
async def send_typing(
    match_id: int,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Tell the other user you are typing. Repeat while typing; there is no stop call.

    **Authentication Required:** Yes
    """
    event = await TypingSignal(db).notify_typing(match_id, current_user_id)
    return TypingResponse(match_id=match_id, expires_in=event.expires_in)


@router.get("/presence/{user_id}", response_model=PresenceResponse)
async def get_presence(
    user_id: str,
    current_user_id: str = Depends(JWTService.get_current_user_id),
):
    """
    Whether `user_id` currently has a live connection.

    **Authentication Required:** Yes
    """
    return PresenceResponse(user_id=user_id, online=presence_hub.is_online(user_id))
