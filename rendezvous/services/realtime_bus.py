"""In-process fan-out of realtime events to scoped subscriptions.

Writers call ``bus.publish(event)``, which only enqueues: every event type has
its own publish queue drained by a dispatcher task, and every subscription has
its own bounded queue drained by a consumer task. A slow or dead subscriber
therefore never stalls the writer or the other subscribers.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, Optional

from prometheus_client import Counter, Gauge

from ..config import settings
from .events import EVENT_TYPES, Event, Scope, event_origin, is_durable, scopes_for


logger = logging.getLogger(__name__)

EVENTS_PUBLISHED = Counter(
    "rendezvous_bus_events_published_total", "Events published on the realtime bus", ["type"])
EVENTS_DELIVERED = Counter(
    "rendezvous_bus_events_delivered_total", "Events delivered to subscribers", ["type"])
EVENTS_DROPPED = Counter(
    "rendezvous_bus_events_dropped_total", "Events not delivered to a subscriber", ["type", "reason"])
ACTIVE_SUBSCRIPTIONS = Gauge(
    "rendezvous_bus_active_subscriptions", "Active bus subscriptions", ["scope"])

EventCallback = Callable[[Event], Awaitable[None]]
CloseCallback = Callable[[str], Awaitable[None]]


class Subscription:
    """Cancellable handle for one scoped subscription."""

    def __init__(
        self,
        bus: "RealtimeBus",
        scope: Scope,
        callback: EventCallback,
        owner_id: Optional[str] = None,
        on_close: Optional[CloseCallback] = None,
        queue_size: Optional[int] = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.scope = scope
        self.owner_id = owner_id
        self._bus = bus
        self._callback = callback
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue(
            maxsize=queue_size or settings.subscription_queue_size)
        self._task: Optional[asyncio.Task] = None
        self._overflowed = False
        self.closed = False
        self.close_reason: Optional[str] = None

    def _start(self) -> None:
        self._task = asyncio.create_task(self._run())

    def offer(self, event: Event) -> bool:
        """Queue an event for delivery; False when the queue is full."""
        if self.closed or self._overflowed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def _overflow(self) -> None:
        # Stop receiving; the consumer drains what is queued, then closes
        self._overflowed = True
        self._bus._unregister(self)

    async def _run(self) -> None:
        reason = "overflow"
        while True:
            if self._overflowed and self._queue.empty():
                break
            event = await self._queue.get()
            try:
                await asyncio.wait_for(
                    self._callback(event),
                    timeout=float(settings.ws_send_timeout_seconds),
                )
                EVENTS_DELIVERED.labels(type=event.type).inc()
            except asyncio.TimeoutError:
                logger.warning(
                    f"Delivery timeout for subscription {self.id} ({self.scope.kind.value}:{self.scope.key})")
                EVENTS_DROPPED.labels(type=event.type, reason="timeout").inc()
                reason = "timeout"
                break
            except Exception as e:
                logger.warning(
                    f"Delivery failed for subscription {self.id} ({self.scope.kind.value}:{self.scope.key}): {e}")
                EVENTS_DROPPED.labels(type=event.type, reason="error").inc()
                reason = "delivery_failed"
                break
            finally:
                self._queue.task_done()

        self._mark_closed(reason)
        if self._on_close is not None:
            try:
                await self._on_close(reason)
            except Exception as e:
                logger.warning(f"Close callback failed for subscription {self.id}: {e}")

    def _mark_closed(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self._bus._unregister(self)

    def cancel(self) -> None:
        """Stop delivery and release the bus registration."""
        self._mark_closed("cancelled")
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        """Cancel and wait until the consumer task has finished."""
        self.cancel()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()


class RealtimeBus:
    def __init__(self, queue_size: Optional[int] = None) -> None:
        self._queue_size = queue_size
        # scope -> {subscription id: subscription}
        self._subscriptions: Dict[Scope, Dict[str, Subscription]] = {}
        # event type -> publish queue and its dispatcher
        self._queues: Dict[str, asyncio.Queue] = {}
        self._dispatchers: Dict[str, asyncio.Task] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _ensure_started(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is loop:
            return
        # First use on this event loop: anything bound to an older loop is dead
        for subs in list(self._subscriptions.values()):
            for sub in list(subs.values()):
                sub._mark_closed("loop_changed")
        self._subscriptions = {}
        self._queues = {kind: asyncio.Queue() for kind in EVENT_TYPES}
        self._dispatchers = {
            kind: loop.create_task(self._dispatch(kind)) for kind in EVENT_TYPES
        }
        self._loop = loop
        logger.info("Realtime bus started")

    def start(self) -> None:
        self._ensure_started()

    def publish(self, event: Event) -> None:
        """Enqueue an event for fan-out. Never blocks and never raises on delivery problems."""
        self._ensure_started()
        self._queues[event.type].put_nowait(event)
        EVENTS_PUBLISHED.labels(type=event.type).inc()

    def subscribe(
        self,
        scope: Scope,
        callback: EventCallback,
        owner_id: Optional[str] = None,
        on_close: Optional[CloseCallback] = None,
    ) -> Subscription:
        self._ensure_started()
        sub = Subscription(self, scope, callback, owner_id=owner_id,
                           on_close=on_close, queue_size=self._queue_size)
        self._subscriptions.setdefault(scope, {})[sub.id] = sub
        ACTIVE_SUBSCRIPTIONS.labels(scope=scope.kind.value).inc()
        sub._start()
        return sub

    def _unregister(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.scope)
        if not subs or sub.id not in subs:
            return
        del subs[sub.id]
        if not subs:
            del self._subscriptions[sub.scope]
        ACTIVE_SUBSCRIPTIONS.labels(scope=sub.scope.kind.value).dec()

    def subscription_count(self, scope: Optional[Scope] = None) -> int:
        if scope is not None:
            return len(self._subscriptions.get(scope, {}))
        return sum(len(subs) for subs in self._subscriptions.values())

    async def _dispatch(self, kind: str) -> None:
        queue = self._queues[kind]
        while True:
            event = await queue.get()
            try:
                self._fan_out(event)
            except Exception:
                logger.exception(f"Failed to dispatch {kind} event")
            finally:
                queue.task_done()

    def _fan_out(self, event: Event) -> None:
        origin = event_origin(event)
        for scope in scopes_for(event):
            for sub in list(self._subscriptions.get(scope, {}).values()):
                if origin is not None and sub.owner_id == origin:
                    continue
                if sub.offer(event):
                    continue
                if is_durable(event):
                    # Never drop durable events silently: close the
                    # subscription so the client resyncs on reconnect
                    logger.warning(
                        f"Subscription {sub.id} overflowed on {event.type}; closing")
                    EVENTS_DROPPED.labels(type=event.type, reason="overflow_closed").inc()
                    sub._overflow()
                else:
                    EVENTS_DROPPED.labels(type=event.type, reason="overflow").inc()

    async def flush(self) -> None:
        """Wait until published events have reached every active subscriber."""
        if self._loop is not asyncio.get_running_loop():
            return
        for queue in self._queues.values():
            await queue.join()
        for subs in list(self._subscriptions.values()):
            for sub in list(subs.values()):
                await sub.drain()

    async def shutdown(self) -> None:
        """Cancel every subscription and stop the dispatchers"""
        for subs in list(self._subscriptions.values()):
            for sub in list(subs.values()):
                await sub.aclose()
        for task in self._dispatchers.values():
            task.cancel()
        for task in self._dispatchers.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._dispatchers = {}
        self._queues = {}
        self._loop = None
        logger.info("Realtime bus shutdown complete")


bus = RealtimeBus()
