from __future__ import annotations

from typing import List, Optional, Tuple

from sqlalchemy import and_, delete, exists, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Like, Match


class InterestStore:
    """Durable one-directional likes.

    Writes only flush inside the caller's transaction; committing is up to the
    caller (see ``MatchResolver``).
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def add(self, liker_id: str, liked_id: str) -> Tuple[Like, bool]:
        """Insert a like, or return the stored one. True when newly inserted."""
        like = Like(liker_id=liker_id, liked_id=liked_id)
        try:
            async with self.db.begin_nested():
                self.db.add(like)
        except IntegrityError:
            # uq_like_pair: the like already exists
            existing = await self.get(liker_id, liked_id)
            if existing is None:
                raise
            return existing, False
        return like, True

    async def get(self, liker_id: str, liked_id: str) -> Optional[Like]:
        res = await self.db.execute(select(Like).where(
            Like.liker_id == liker_id,
            Like.liked_id == liked_id,
        ))
        return res.scalar_one_or_none()

    async def exists(self, liker_id: str, liked_id: str) -> bool:
        res = await self.db.execute(select(Like.id).where(
            Like.liker_id == liker_id,
            Like.liked_id == liked_id,
        ).limit(1))
        return res.scalar_one_or_none() is not None

    async def remove(self, liker_id: str, liked_id: str) -> bool:
        """Delete a like. Deleting a missing like is not an error."""
        res = await self.db.execute(
            delete(Like)
            .where(Like.liker_id == liker_id, Like.liked_id == liked_id)
            .execution_options(synchronize_session=False)
        )
        return (res.rowcount or 0) > 0

    async def incoming(self, user_id: str, unmatched_only: bool = True) -> List[Like]:
        """Likes aimed at ``user_id``, newest first."""
        stmt = select(Like).where(Like.liked_id == user_id)
        if unmatched_only:
            pair_condition = or_(
                and_(Match.user_a == Like.liker_id, Match.user_b == Like.liked_id),
                and_(Match.user_a == Like.liked_id, Match.user_b == Like.liker_id),
            )
            stmt = stmt.where(~exists().where(pair_condition))
        stmt = stmt.order_by(Like.created_at.desc(), Like.id.desc())
        res = await self.db.execute(stmt)
        return list(res.scalars().all())
