"""Read watermarks and unread counts.

A watermark only moves forward: the upsert is a conditional UPDATE
(``last_read_at < :at``), so a stale retry from a client is a no-op rather
than an error. Unread counts are derived on demand from the message log.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Match, Message, ReadWatermark, utcnow
from .events import ReadUpdated
from .match_resolver import MatchResolver
from .realtime_bus import RealtimeBus, bus as default_bus


class ReadTracker:
    def __init__(self, db: AsyncSession, bus: Optional[RealtimeBus] = None) -> None:
        self.db = db
        self.bus = bus or default_bus
        self.matches = MatchResolver(db, bus=self.bus)

    async def mark_read(self, user_id: str, match_id: int, at: Optional[datetime] = None) -> ReadWatermark:
        """Advance the watermark to ``at`` (default now); never moves it back."""
        await self.matches.require_participant(match_id, user_id)
        if at is None:
            at = utcnow()
        else:
            if at.tzinfo is None:
                at = at.replace(tzinfo=timezone.utc)
            # A watermark ahead of the clock would hide messages not yet sent
            at = min(at, utcnow())

        try:
            advanced = await self._advance(user_id, match_id, at)
            if not advanced and await self.get_watermark(user_id, match_id) is None:
                try:
                    async with self.db.begin_nested():
                        self.db.add(ReadWatermark(
                            user_id=user_id, match_id=match_id, last_read_at=at))
                    advanced = True
                except IntegrityError:
                    # uq_read_watermark: a concurrent first mark_read inserted the row
                    advanced = await self._advance(user_id, match_id, at)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        watermark = await self.get_watermark(user_id, match_id)
        if advanced:
            self.bus.publish(ReadUpdated(
                user_id=user_id,
                match_id=match_id,
                last_read_at=watermark.last_read_at,
            ))
        return watermark

    async def _advance(self, user_id: str, match_id: int, at: datetime) -> bool:
        res = await self.db.execute(
            update(ReadWatermark)
            .where(
                ReadWatermark.user_id == user_id,
                ReadWatermark.match_id == match_id,
                ReadWatermark.last_read_at < at,
            )
            .values(last_read_at=at, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return (res.rowcount or 0) > 0

    async def get_watermark(self, user_id: str, match_id: int) -> Optional[ReadWatermark]:
        res = await self.db.execute(
            select(ReadWatermark)
            .where(ReadWatermark.user_id == user_id, ReadWatermark.match_id == match_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def watermarks_for(self, user_id: str) -> List[ReadWatermark]:
        res = await self.db.execute(
            select(ReadWatermark)
            .where(ReadWatermark.user_id == user_id)
            .order_by(ReadWatermark.match_id)
            .execution_options(populate_existing=True)
        )
        return list(res.scalars().all())

    def _unread_query(self, user_id: str):
        # Messages from the other participant that are newer than the watermark,
        # or all of them when the user has never opened the conversation
        return (
            select(Message.match_id, func.count(Message.id))
            .outerjoin(ReadWatermark, and_(
                ReadWatermark.match_id == Message.match_id,
                ReadWatermark.user_id == user_id,
            ))
            .where(
                Message.sender_id != user_id,
                or_(
                    ReadWatermark.last_read_at.is_(None),
                    Message.created_at > ReadWatermark.last_read_at,
                ),
            )
            .group_by(Message.match_id)
        )

    async def unread_count(self, user_id: str, match_id: int) -> int:
        await self.matches.require_participant(match_id, user_id)
        res = await self.db.execute(
            self._unread_query(user_id).where(Message.match_id == match_id))
        row = res.first()
        return int(row[1]) if row else 0

    async def unread_counts(self, user_id: str) -> Dict[int, int]:
        """Unread count for every match of ``user_id`` (zero included)."""
        res = await self.db.execute(
            select(Match.id).where(or_(Match.user_a == user_id, Match.user_b == user_id)))
        counts = {match_id: 0 for match_id in res.scalars().all()}
        if not counts:
            return counts
        res = await self.db.execute(
            self._unread_query(user_id).where(Message.match_id.in_(list(counts))))
        for match_id, count in res.all():
            counts[match_id] = int(count)
        return counts
