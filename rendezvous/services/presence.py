"""Ephemeral online/offline state.

Presence lives only in this process: each live connection of a user is kept
with its last heartbeat, and a user is online while any of them is fresh.
Nothing is persisted, so a restart simply starts everyone offline.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..config import settings
from .events import PresenceChanged
from .realtime_bus import RealtimeBus, bus as default_bus


logger = logging.getLogger(__name__)


class PresenceHub:
    def __init__(
        self,
        bus: Optional[RealtimeBus] = None,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._bus = bus or default_bus
        self._ttl = timedelta(seconds=ttl_seconds or settings.presence_ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # user_id -> {connection_id: last heartbeat}
        self._connections: Dict[str, Dict[str, datetime]] = {}
        # users last announced as online
        self._announced: set[str] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._shutdown = False

    def join(self, user_id: str, connection_id: Optional[str] = None) -> str:
        """Register a live connection and return its id."""
        connection_id = connection_id or uuid.uuid4().hex
        self._connections.setdefault(user_id, {})[connection_id] = self._clock()
        self._sync(user_id)
        self._ensure_sweeper()
        return connection_id

    def heartbeat(self, user_id: str, connection_id: str) -> None:
        conns = self._connections.get(user_id)
        if conns is None or connection_id not in conns:
            # Expired or unknown connection: a heartbeat revives it
            self.join(user_id, connection_id)
            return
        conns[connection_id] = self._clock()

    def leave(self, user_id: str, connection_id: Optional[str] = None) -> None:
        """Withdraw one connection, or all of the user's connections."""
        conns = self._connections.get(user_id)
        if conns is not None:
            if connection_id is None:
                conns.clear()
            else:
                conns.pop(connection_id, None)
            if not conns:
                self._connections.pop(user_id, None)
        self._sync(user_id)

    def is_online(self, user_id: str) -> bool:
        conns = self._connections.get(user_id)
        if not conns:
            return False
        cutoff = self._clock() - self._ttl
        return any(seen >= cutoff for seen in conns.values())

    def online_users(self) -> set[str]:
        return {user_id for user_id in self._connections if self.is_online(user_id)}

    def sweep(self) -> int:
        """Drop connections whose heartbeat is older than the TTL."""
        cutoff = self._clock() - self._ttl
        expired = 0
        for user_id in list(self._connections):
            conns = self._connections[user_id]
            for connection_id, seen in list(conns.items()):
                if seen < cutoff:
                    del conns[connection_id]
                    expired += 1
            if not conns:
                del self._connections[user_id]
            self._sync(user_id)
        if expired:
            logger.info(f"Presence sweep expired {expired} connection(s)")
        return expired

    def _sync(self, user_id: str) -> None:
        # Announce only offline <-> online transitions
        online = self.is_online(user_id)
        if online == (user_id in self._announced):
            return
        if online:
            self._announced.add(user_id)
        else:
            self._announced.discard(user_id)
        self._bus.publish(PresenceChanged(
            user_id=user_id, online=online, timestamp=self._clock()))

    def _ensure_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            if self._sweeper.get_loop() is asyncio.get_running_loop():
                return
        self._shutdown = False
        self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        """Background task expiring silently disconnected users"""
        while not self._shutdown:
            try:
                await asyncio.sleep(settings.presence_sweep_seconds)
                self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Presence sweep failed")

        logger.info("Presence sweeper stopped")

    def reset(self) -> None:
        """Forget all presence state, as after a restart."""
        self._connections.clear()
        self._announced.clear()

    async def shutdown(self) -> None:
        self._shutdown = True
        if self._sweeper and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self.reset()
        logger.info("Presence hub shutdown complete")


presence_hub = PresenceHub()
