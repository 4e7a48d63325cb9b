"""Append-only message history of a match.

Messages are ordered by ``(created_at, id)``; the id breaks ties between
messages stored with the same timestamp. A history cursor is the
``(created_at, id)`` of the last message a client has seen.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..exceptions import EmptyMessageError, MessageTooLongError
from ..models import Message, utcnow
from .events import MessageAppended
from .match_resolver import MatchResolver
from .realtime_bus import RealtimeBus, bus as default_bus


logger = logging.getLogger(__name__)


def message_event(message: Message) -> MessageAppended:
    return MessageAppended(
        id=message.id,
        match_id=message.match_id,
        sender_id=message.sender_id,
        body=message.body,
        created_at=message.created_at,
        client_key=message.client_key,
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ConversationLog:
    def __init__(self, db: AsyncSession, bus: Optional[RealtimeBus] = None) -> None:
        self.db = db
        self.bus = bus or default_bus
        self.matches = MatchResolver(db, bus=self.bus)

    async def append(
        self,
        match_id: int,
        sender_id: str,
        body: str,
        client_key: Optional[str] = None,
    ) -> Message:
        """Store a message and publish it to the conversation's subscribers.

        With a ``client_key`` the append is idempotent: a retry returns the
        message stored by the first attempt.
        """
        text = (body or "").strip()
        if not text:
            raise EmptyMessageError()
        if len(text) > settings.message_max_length:
            raise MessageTooLongError(settings.message_max_length)

        await self.matches.require_participant(match_id, sender_id)

        message = Message(
            match_id=match_id,
            sender_id=sender_id,
            body=text,
            client_key=client_key,
            created_at=utcnow(),
        )
        try:
            try:
                async with self.db.begin_nested():
                    self.db.add(message)
            except IntegrityError:
                # uq_message_client_key: this is a retry of a stored append
                existing = await self.get_by_client_key(match_id, sender_id, client_key) if client_key else None
                if existing is None:
                    raise
                logger.info(
                    f"Duplicate append {client_key} in match {match_id}; returning message {existing.id}")
                message = existing
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        # Delivery is at-least-once, so a retry publishes again
        self.bus.publish(message_event(message))
        return message

    async def get_by_client_key(self, match_id: int, sender_id: str, client_key: str) -> Optional[Message]:
        res = await self.db.execute(select(Message).where(
            Message.match_id == match_id,
            Message.sender_id == sender_id,
            Message.client_key == client_key,
        ))
        return res.scalar_one_or_none()

    def _history_query(
        self,
        match_id: int,
        since: Optional[datetime],
        since_id: Optional[int],
        limit: Optional[int],
    ):
        stmt = select(Message).where(Message.match_id == match_id)
        if since is not None:
            since = _as_utc(since)
            if since_id is not None:
                stmt = stmt.where(or_(
                    Message.created_at > since,
                    and_(Message.created_at == since, Message.id > since_id),
                ))
            else:
                stmt = stmt.where(Message.created_at > since)
        stmt = stmt.order_by(Message.created_at.asc(), Message.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return stmt

    async def history(
        self,
        match_id: int,
        since: Optional[datetime] = None,
        since_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Messages after the cursor, oldest first."""
        await self.matches.require_match(match_id)
        res = await self.db.execute(self._history_query(match_id, since, since_id, limit))
        return list(res.scalars().all())

    async def iter_history(
        self,
        match_id: int,
        since: Optional[datetime] = None,
        since_id: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> AsyncIterator[Message]:
        """Lazily page through the history. Restart from any message's cursor."""
        page_size = page_size or settings.history_page_size
        await self.matches.require_match(match_id)
        while True:
            res = await self.db.execute(self._history_query(match_id, since, since_id, page_size))
            page = list(res.scalars().all())
            for message in page:
                yield message
            if len(page) < page_size:
                return
            since, since_id = page[-1].created_at, page[-1].id

    async def last_messages(self, match_ids: Iterable[int]) -> Dict[int, Message]:
        """Most recent message of each match, for conversation previews."""
        match_ids = list(match_ids)
        if not match_ids:
            return {}
        ranked = (
            select(
                Message.id.label("id"),
                func.row_number().over(
                    partition_by=Message.match_id,
                    order_by=(Message.created_at.desc(), Message.id.desc()),
                ).label("rank"),
            )
            .where(Message.match_id.in_(match_ids))
            .subquery()
        )
        res = await self.db.execute(
            select(Message).join(ranked, ranked.c.id == Message.id).where(ranked.c.rank == 1)
        )
        return {message.match_id: message for message in res.scalars().all()}
