"""Match resolution.

A match is created at most once per unordered pair of users. Instead of
locking, the pair is stored canonically (``user_a < user_b``) under a unique
constraint, and a constraint violation on insert means "already matched":
the existing row is fetched and returned.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from prometheus_client import Counter
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import InvalidSenderError, NoPendingLikeError, NoSuchMatchError, SelfInteractionError
from ..models import Like, Match
from .events import LikeCreated, MatchCreated
from .interest_store import InterestStore
from .realtime_bus import RealtimeBus, bus as default_bus


logger = logging.getLogger(__name__)

MATCHES_CREATED = Counter(
    "rendezvous_matches_created_total", "Matches created", ["path"])


def canonical_pair(user_id: str, other_user_id: str) -> Tuple[str, str]:
    """Order a pair of user ids so both sides compute the same key."""
    if user_id == other_user_id:
        raise SelfInteractionError()
    if user_id < other_user_id:
        return user_id, other_user_id
    return other_user_id, user_id


@dataclass
class LikeOutcome:
    like: Optional[Like]
    like_created: bool
    match: Optional[Match] = None
    match_created: bool = False

    @property
    def pending(self) -> bool:
        return self.match is None


class MatchResolver:
    def __init__(self, db: AsyncSession, bus: Optional[RealtimeBus] = None) -> None:
        self.db = db
        self.bus = bus or default_bus
        self.interests = InterestStore(db)

    async def record_like(self, liker_id: str, liked_id: str) -> LikeOutcome:
        """Record interest and create the match if it is now mutual."""
        canonical_pair(liker_id, liked_id)

        existing = await self.match_exists(liker_id, liked_id)
        if existing is not None:
            await self.db.commit()
            return LikeOutcome(like=None, like_created=False, match=existing)

        try:
            like, like_created = await self.interests.add(liker_id, liked_id)
            # Commit before looking for the reciprocal like so that of two
            # concurrent mutual likes, the later one always sees the earlier
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if not await self.interests.exists(liked_id, liker_id):
            await self.db.commit()
            if like_created:
                self.bus.publish(LikeCreated(
                    liker_id=like.liker_id,
                    liked_id=like.liked_id,
                    created_at=like.created_at,
                ))
            return LikeOutcome(like=like, like_created=like_created)

        match, match_created = await self._create_match(liker_id, liked_id, path="mutual")
        return LikeOutcome(like=like, like_created=like_created,
                           match=match, match_created=match_created)

    async def accept_pending(self, user_id: str, other_user_id: str) -> Match:
        """Accept the pending like from ``other_user_id`` to ``user_id``."""
        canonical_pair(user_id, other_user_id)

        if not await self.interests.exists(other_user_id, user_id):
            # A retried accept finds the match it already created
            existing = await self.match_exists(user_id, other_user_id)
            await self.db.commit()
            if existing is not None:
                return existing
            raise NoPendingLikeError(user_id, other_user_id)

        match, _ = await self._create_match(
            user_id, other_user_id, path="accept", consume_like=(other_user_id, user_id))
        return match

    async def reject_pending(self, user_id: str, other_user_id: str) -> bool:
        """Drop the pending like from ``other_user_id``. Idempotent."""
        canonical_pair(user_id, other_user_id)
        return await self._remove_like(other_user_id, user_id)

    async def withdraw_like(self, liker_id: str, liked_id: str) -> bool:
        """Take back a like that has not turned into a match. Idempotent."""
        canonical_pair(liker_id, liked_id)
        return await self._remove_like(liker_id, liked_id)

    async def _remove_like(self, liker_id: str, liked_id: str) -> bool:
        try:
            removed = await self.interests.remove(liker_id, liked_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return removed

    async def _create_match(
        self,
        user_id: str,
        other_user_id: str,
        path: str,
        consume_like: Optional[Tuple[str, str]] = None,
    ) -> Tuple[Match, bool]:
        """Shared creation routine for the mutual-like and accept paths."""
        try:
            match, created = await self._insert_or_fetch(user_id, other_user_id)
            if consume_like is not None:
                await self.interests.remove(*consume_like)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if created:
            MATCHES_CREATED.labels(path=path).inc()
            logger.info(
                f"Match {match.id} created for {match.user_a} and {match.user_b} via {path}")
            self.bus.publish(MatchCreated(
                match_id=match.id,
                user_a=match.user_a,
                user_b=match.user_b,
                created_at=match.created_at,
            ))
        return match, created

    async def _insert_or_fetch(self, user_id: str, other_user_id: str) -> Tuple[Match, bool]:
        user_a, user_b = canonical_pair(user_id, other_user_id)
        match = Match(user_a=user_a, user_b=user_b)
        try:
            async with self.db.begin_nested():
                self.db.add(match)
        except IntegrityError:
            # uq_match_pair: someone else matched this pair first
            existing = await self._fetch(user_a, user_b)
            if existing is None:
                # Violation of some other constraint; not "already matched"
                raise
            return existing, False
        return match, True

    async def _fetch(self, user_a: str, user_b: str) -> Optional[Match]:
        res = await self.db.execute(select(Match).where(
            Match.user_a == user_a,
            Match.user_b == user_b,
        ))
        return res.scalar_one_or_none()

    async def match_exists(self, user_id: str, other_user_id: str) -> Optional[Match]:
        """Look up the match for a pair in either argument order."""
        if user_id == other_user_id:
            return None
        return await self._fetch(*canonical_pair(user_id, other_user_id))

    async def get_match(self, match_id: int) -> Optional[Match]:
        res = await self.db.execute(select(Match).where(Match.id == match_id))
        return res.scalar_one_or_none()

    async def require_match(self, match_id: int) -> Match:
        match = await self.get_match(match_id)
        if match is None:
            raise NoSuchMatchError(match_id)
        return match

    async def require_participant(self, match_id: int, user_id: str) -> Match:
        match = await self.require_match(match_id)
        if not match.has_participant(user_id):
            raise InvalidSenderError(match_id, user_id)
        return match

    async def matches_for(self, user_id: str) -> List[Match]:
        """Every match of ``user_id``, newest first."""
        res = await self.db.execute(
            select(Match)
            .where(or_(Match.user_a == user_id, Match.user_b == user_id))
            .order_by(Match.created_at.desc(), Match.id.desc())
        )
        return list(res.scalars().all())

    async def pending_incoming(self, user_id: str) -> List[Like]:
        """Requests waiting for ``user_id`` to accept or reject."""
        return await self.interests.incoming(user_id, unmatched_only=True)
