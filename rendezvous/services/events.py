"""Realtime event types and subscription scopes.

Every write that clients can observe is published on the bus as one of a
closed set of event models. The ``type`` field is the wire discriminator, so a
payload can be parsed back with ``EventAdapter.validate_python``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class LikeCreated(BaseModel):
    type: Literal["like_created"] = "like_created"
    liker_id: str
    liked_id: str
    created_at: datetime


class MatchCreated(BaseModel):
    type: Literal["match_created"] = "match_created"
    match_id: int
    user_a: str
    user_b: str
    created_at: datetime


class MessageAppended(BaseModel):
    type: Literal["message"] = "message"
    id: int
    match_id: int
    sender_id: str
    body: str
    created_at: datetime
    client_key: Optional[str] = None


class ReadUpdated(BaseModel):
    type: Literal["read_updated"] = "read_updated"
    user_id: str
    match_id: int
    last_read_at: datetime


class PresenceChanged(BaseModel):
    type: Literal["presence"] = "presence"
    user_id: str
    online: bool
    timestamp: datetime


class TypingPinged(BaseModel):
    type: Literal["typing"] = "typing"
    match_id: int
    user_id: str
    # Receivers clear the indicator after this many seconds without a new ping
    expires_in: float
    timestamp: datetime


Event = Annotated[
    Union[LikeCreated, MatchCreated, MessageAppended,
          ReadUpdated, PresenceChanged, TypingPinged],
    Field(discriminator="type"),
]

EventAdapter: TypeAdapter[Event] = TypeAdapter(Event)


class ScopeKind(str, Enum):
    MATCHES = "matches"
    MESSAGES = "messages"
    READS = "reads"
    PRESENCE = "presence"
    TYPING = "typing"


@dataclass(frozen=True)
class Scope:
    """What a subscription listens to: a kind plus the user or match it is keyed on."""
    kind: ScopeKind
    key: str

    @classmethod
    def matches(cls, user_id: str) -> "Scope":
        return cls(ScopeKind.MATCHES, str(user_id))

    @classmethod
    def messages(cls, match_id: int) -> "Scope":
        return cls(ScopeKind.MESSAGES, str(match_id))

    @classmethod
    def reads(cls, user_id: str) -> "Scope":
        return cls(ScopeKind.READS, str(user_id))

    @classmethod
    def presence(cls, user_id: str) -> "Scope":
        return cls(ScopeKind.PRESENCE, str(user_id))

    @classmethod
    def typing(cls, match_id: int) -> "Scope":
        return cls(ScopeKind.TYPING, str(match_id))


def scopes_for(event: Event) -> list[Scope]:
    """Scopes that must receive ``event``."""
    match event:
        case LikeCreated(liked_id=liked_id):
            # Incoming request badge for the liked user
            return [Scope.matches(liked_id)]
        case MatchCreated(user_a=user_a, user_b=user_b):
            return [Scope.matches(user_a), Scope.matches(user_b)]
        case MessageAppended(match_id=match_id):
            return [Scope.messages(match_id)]
        case ReadUpdated(user_id=user_id):
            return [Scope.reads(user_id)]
        case PresenceChanged(user_id=user_id):
            return [Scope.presence(user_id)]
        case TypingPinged(match_id=match_id):
            return [Scope.typing(match_id)]
        case _:
            raise TypeError(f"Unknown event type: {type(event).__name__}")


def is_durable(event: Event) -> bool:
    """Durable events may not be dropped; ephemeral ones are best effort."""
    match event:
        case LikeCreated() | MatchCreated() | MessageAppended() | ReadUpdated():
            return True
        case PresenceChanged() | TypingPinged():
            return False
        case _:
            raise TypeError(f"Unknown event type: {type(event).__name__}")


def event_origin(event: Event) -> Optional[str]:
    """User whose action produced an ephemeral event, if it should not echo back."""
    match event:
        case TypingPinged(user_id=user_id):
            return user_id
        case _:
            return None


def to_payload(event: Event) -> dict:
    return event.model_dump(mode="json")


EVENT_TYPES: tuple[str, ...] = (
    "like_created",
    "match_created",
    "message",
    "read_updated",
    "presence",
    "typing",
)
