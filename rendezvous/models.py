from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite stores datetimes without an offset, so values are normalized to UTC
    on the way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Like(Base):
    __tablename__ = "likes"

    id = Column(Integer, primary_key=True, index=True)
    liker_id = Column(String(64), nullable=False, index=True)
    liked_id = Column(String(64), nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    # A user can only like another user once
    __table_args__ = (
        UniqueConstraint('liker_id', 'liked_id', name='uq_like_pair'),
        CheckConstraint('liker_id <> liked_id', name='ck_like_not_self'),
    )


class Match(Base):
    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, index=True)
    # Canonical pair: user_a sorts before user_b
    user_a = Column(String(64), nullable=False, index=True)
    user_b = Column(String(64), nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    messages = relationship("Message", back_populates="match")

    __table_args__ = (
        UniqueConstraint('user_a', 'user_b', name='uq_match_pair'),
        CheckConstraint('user_a < user_b', name='ck_match_pair_order'),
    )

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.user_a, self.user_b)

    def other_participant(self, user_id: str) -> str:
        return self.user_b if user_id == self.user_a else self.user_a


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    match_id = Column(Integer, ForeignKey(
        "matches.id"), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False, index=True)
    body = Column(Text, nullable=False)
    # Client-generated idempotency key for safe append retries
    client_key = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    match = relationship("Match", back_populates="messages")

    __table_args__ = (
        UniqueConstraint('match_id', 'sender_id', 'client_key',
                         name='uq_message_client_key'),
        Index('ix_messages_match_order', 'match_id', 'created_at', 'id'),
    )


class ReadWatermark(Base):
    __tablename__ = "read_watermarks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    match_id = Column(Integer, ForeignKey(
        "matches.id"), nullable=False, index=True)
    last_read_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False,
                        default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'match_id', name='uq_read_watermark'),
    )
