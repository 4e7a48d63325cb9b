from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime


# Likes & matches


class MatchResponse(BaseModel):
    id: int
    user_a: str
    user_b: str
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class LikeResponse(BaseModel):
    liker_id: str
    liked_id: str
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class LikeResultResponse(BaseModel):
    liked: bool = True
    # True while the other user has not liked back or accepted
    pending: bool
    match: Optional[MatchResponse] = None
    match_created: bool = False


class LikeStatusResponse(BaseModel):
    removed: bool


class PendingLikesResponse(BaseModel):
    items: List[LikeResponse]
    total: int


class MatchListResponse(BaseModel):
    items: List[MatchResponse]
    total: int


class MatchLookupResponse(BaseModel):
    matched: bool
    match: Optional[MatchResponse] = None


# Conversations


class MessageCreate(BaseModel):
    # Length limits are enforced by the conversation log (APP_MESSAGE_MAX_LENGTH)
    body: str = Field(..., examples=["Hey! 👋"])
    # Client-generated idempotency key; reuse it when retrying a failed send
    client_key: Optional[str] = Field(None, max_length=64, examples=["c3b1a7e2-8d"])


class MessageResponse(BaseModel):
    id: int
    match_id: int
    sender_id: str
    body: str
    created_at: datetime
    client_key: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class MessageHistoryResponse(BaseModel):
    items: List[MessageResponse]
    # Cursor of the last returned message, to pass back as since/since_id
    next_since: Optional[datetime] = None
    next_since_id: Optional[int] = None
    has_more: bool = False


class MarkReadRequest(BaseModel):
    # Defaults to the server's current time
    at: Optional[datetime] = None


class ReadWatermarkResponse(BaseModel):
    user_id: str
    match_id: int
    last_read_at: datetime
    model_config = ConfigDict(from_attributes=True)


class UnreadCountResponse(BaseModel):
    match_id: int
    unread: int


class ConversationPreview(BaseModel):
    match_id: int
    other_user_id: str
    matched_at: datetime
    last_message: Optional[MessageResponse] = None
    # "You: " prefix is applied by the client when last_message_is_mine
    last_message_is_mine: bool = False
    unread: int = 0
    other_user_online: bool = False


class ConversationListResponse(BaseModel):
    items: List[ConversationPreview]
    total: int
    total_unread: int


class TypingResponse(BaseModel):
    match_id: int
    expires_in: float


class PresenceResponse(BaseModel):
    user_id: str
    online: bool


class SyncSnapshot(BaseModel):
    """Everything a client refetches wholesale after (re)connecting."""
    type: str = "snapshot"
    user_id: str
    matches: List[MatchResponse]
    watermarks: List[ReadWatermarkResponse]
    unread: dict[int, int]
    pending_likes: List[LikeResponse]
