"""Typing indicators.

The server never stores typing state and there is no "stopped typing"
message. A client pings while the user types; whoever receives the pings
shows the indicator and clears it once ``expires_in`` seconds pass without a
new one. ``TypingIndicator`` is that receiving side.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from .events import Event, MessageAppended, TypingPinged
from .match_resolver import MatchResolver
from .realtime_bus import RealtimeBus, bus as default_bus


logger = logging.getLogger(__name__)


class TypingSignal:
    def __init__(self, db: AsyncSession, bus: Optional[RealtimeBus] = None) -> None:
        self.db = db
        self.bus = bus or default_bus
        self.matches = MatchResolver(db, bus=self.bus)

    async def notify_typing(self, match_id: int, from_user_id: str) -> TypingPinged:
        """Broadcast a typing ping to the other participant. Nothing is stored."""
        await self.matches.require_participant(match_id, from_user_id)
        event = TypingPinged(
            match_id=match_id,
            user_id=from_user_id,
            expires_in=settings.typing_timeout_seconds,
            timestamp=datetime.now(timezone.utc),
        )
        self.bus.publish(event)
        return event


TypingKey = Tuple[int, str]
ChangeCallback = Callable[[int, str, bool], None]


class TypingIndicator:
    """Receiver-side typing state that expires on its own."""

    def __init__(self, timeout: Optional[float] = None, on_change: Optional[ChangeCallback] = None) -> None:
        self._timeout = timeout
        self._on_change = on_change
        self._timers: Dict[TypingKey, asyncio.TimerHandle] = {}

    def apply(self, event: Event) -> None:
        match event:
            case TypingPinged(match_id=match_id, user_id=user_id, expires_in=expires_in):
                self.ping(match_id, user_id, expires_in)
            case MessageAppended(match_id=match_id, sender_id=sender_id):
                # A delivered message ends the sender's typing burst
                self.clear(match_id, sender_id)
            case _:
                pass

    def ping(self, match_id: int, user_id: str, expires_in: Optional[float] = None) -> None:
        key = (match_id, user_id)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        else:
            self._notify(match_id, user_id, True)
        timeout = self._timeout or expires_in or settings.typing_timeout_seconds
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(timeout, self._expire, key)

    def clear(self, match_id: int, user_id: str) -> None:
        timer = self._timers.pop((match_id, user_id), None)
        if timer is not None:
            timer.cancel()
            self._notify(match_id, user_id, False)

    def _expire(self, key: TypingKey) -> None:
        if self._timers.pop(key, None) is not None:
            self._notify(key[0], key[1], False)

    def _notify(self, match_id: int, user_id: str, typing: bool) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(match_id, user_id, typing)
        except Exception:
            logger.exception("Typing change callback failed")

    def is_typing(self, match_id: int, user_id: str) -> bool:
        return (match_id, user_id) in self._timers

    def typing_users(self, match_id: int) -> Set[str]:
        return {user_id for (mid, user_id) in self._timers if mid == match_id}

    def reset(self) -> None:
        """Forget everything, as on reconnect."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
