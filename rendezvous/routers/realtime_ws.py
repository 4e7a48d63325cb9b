from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Dict, Optional
from datetime import datetime, timezone
from functools import partial
import asyncio
import json
import logging
import uuid

from prometheus_client import Counter, Gauge
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..database import AsyncSessionLocal
from ..exceptions import RendezvousError
from ..schemas import (
    LikeResponse,
    MatchResponse,
    MessageHistoryResponse,
    MessageResponse,
    ReadWatermarkResponse,
    SyncSnapshot,
)
from ..services.conversation_log import ConversationLog
from ..services.events import Event, Scope, ScopeKind, to_payload
from ..services.jwt_service import JWTService
from ..services.match_resolver import MatchResolver
from ..services.presence import presence_hub
from ..services.read_tracker import ReadTracker
from ..services.realtime_bus import RealtimeBus, Subscription, bus as default_bus
from ..services.typing_signal import TypingSignal
from ..utils import _message_log, enforce_rate_limit


logger = logging.getLogger(__name__)

router = APIRouter()

WS_CONNECTIONS = Gauge("rendezvous_ws_connections", "Open realtime sockets")
WS_FRAMES = Counter("rendezvous_ws_frames_total", "Client frames received", ["type"])

# Close codes
CLOSE_UNAUTHENTICATED = 4401
CLOSE_RESYNC = 4408


_datetime_adapter = TypeAdapter(datetime)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FrameError(RendezvousError):
    """Raised for a malformed client frame"""


def _int_field(data: dict, name: str) -> int:
    value = data.get(name)
    if isinstance(value, bool) or value is None:
        raise FrameError(f"'{name}' is required and must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise FrameError(f"'{name}' is required and must be an integer.")


def _datetime_field(data: dict, name: str) -> Optional[datetime]:
    value = data.get(name)
    if value is None:
        return None
    try:
        return _datetime_adapter.validate_python(value)
    except ValidationError:
        raise FrameError(f"'{name}' must be an ISO 8601 timestamp.")


class RealtimeConnection:
    """One client socket and the bus subscriptions it holds."""

    def __init__(self, websocket: WebSocket, user_id: str, bus: Optional[RealtimeBus] = None) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.connection_id = uuid.uuid4().hex
        self._bus = bus or default_bus
        # Bus consumers and the frame loop share the socket
        self._send_lock = asyncio.Lock()
        self._subscriptions: Dict[Scope, Subscription] = {}
        self.closed = False

    async def send(self, payload: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_json(payload)

    async def send_error(self, code: str, detail: str) -> None:
        await self.send({
            "type": "error",
            "code": code,
            "detail": detail,
            "timestamp": _now_iso(),
        })

    async def _deliver(self, event: Event) -> None:
        await self.send(to_payload(event))

    def subscribe(self, scope: Scope) -> bool:
        if scope in self._subscriptions:
            return False
        self._subscriptions[scope] = self._bus.subscribe(
            scope,
            self._deliver,
            owner_id=self.user_id,
            on_close=partial(self._on_subscription_closed, scope),
        )
        return True

    def unsubscribe(self, scope: Scope) -> bool:
        sub = self._subscriptions.pop(scope, None)
        if sub is None:
            return False
        sub.cancel()
        return True

    async def _on_subscription_closed(self, scope: Scope, reason: str) -> None:
        self._subscriptions.pop(scope, None)
        if self.closed:
            return
        # Durable events were lost: make the client reconnect and resync
        logger.warning(
            f"Closing socket of user {self.user_id}: {scope.kind.value}:{scope.key} subscription {reason}")
        try:
            await asyncio.wait_for(
                self.send({"type": "closing", "reason": reason, "timestamp": _now_iso()}),
                timeout=float(settings.ws_send_timeout_seconds),
            )
        except Exception as e:
            logger.debug(f"Could not send closing frame to user {self.user_id}: {e}")
        await self.close(code=CLOSE_RESYNC, reason=reason)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self.closed:
            return
        self.closed = True
        for sub in list(self._subscriptions.values()):
            sub.cancel()
        self._subscriptions.clear()
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception:
            pass  # Socket might already be closed


async def _authenticate(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        return None
    try:
        return JWTService.user_id_from_token(token)
    except Exception:
        return None


async def _snapshot(user_id: str) -> SyncSnapshot:
    """State a client refetches wholesale on (re)connect."""
    async with AsyncSessionLocal() as db:
        resolver = MatchResolver(db)
        tracker = ReadTracker(db)
        matches = await resolver.matches_for(user_id)
        watermarks = await tracker.watermarks_for(user_id)
        unread = await tracker.unread_counts(user_id)
        pending = await resolver.pending_incoming(user_id)
    return SyncSnapshot(
        user_id=user_id,
        matches=[MatchResponse.model_validate(m) for m in matches],
        watermarks=[ReadWatermarkResponse.model_validate(w) for w in watermarks],
        unread=unread,
        pending_likes=[LikeResponse.model_validate(like) for like in pending],
    )


def _scope_from_frame(data: dict) -> Scope:
    try:
        kind = ScopeKind(data.get("scope"))
    except ValueError:
        raise FrameError("'scope' must be one of: messages, typing, presence.")
    if kind in (ScopeKind.MESSAGES, ScopeKind.TYPING):
        return Scope(kind, str(_int_field(data, "key")))
    if kind == ScopeKind.PRESENCE:
        key = data.get("key")
        if not key:
            raise FrameError("'key' is required.")
        return Scope.presence(str(key))
    # matches/reads of the socket's own user are subscribed on connect
    raise FrameError("'scope' must be one of: messages, typing, presence.")


async def _handle_subscribe(conn: RealtimeConnection, data: dict) -> None:
    scope = _scope_from_frame(data)
    async with AsyncSessionLocal() as db:
        resolver = MatchResolver(db)
        if scope.kind == ScopeKind.PRESENCE:
            # Only people you are matched with
            if await resolver.match_exists(conn.user_id, scope.key) is None:
                raise FrameError("You can only follow the presence of your matches.")
        else:
            await resolver.require_participant(int(scope.key), conn.user_id)

    conn.subscribe(scope)
    await conn.send({"type": "subscribed", "scope": scope.kind.value, "key": scope.key})
    if scope.kind == ScopeKind.PRESENCE:
        await conn.send({
            "type": "presence",
            "user_id": scope.key,
            "online": presence_hub.is_online(scope.key),
            "timestamp": _now_iso(),
        })


async def _handle_unsubscribe(conn: RealtimeConnection, data: dict) -> None:
    scope = _scope_from_frame(data)
    conn.unsubscribe(scope)
    await conn.send({"type": "unsubscribed", "scope": scope.kind.value, "key": scope.key})


async def _handle_message(conn: RealtimeConnection, data: dict) -> None:
    match_id = _int_field(data, "match_id")
    body = data.get("body")
    if body is not None and not isinstance(body, str):
        raise FrameError("'body' must be a string.")
    client_key = data.get("client_key")
    if client_key is not None and (not isinstance(client_key, str) or len(client_key) > 64):
        raise FrameError("'client_key' must be a string of at most 64 characters.")

    enforce_rate_limit(conn.user_id, _message_log, settings.messages_per_min, "messages")
    async with AsyncSessionLocal() as db:
        message = await ConversationLog(db).append(
            match_id, conn.user_id, body or "", client_key=client_key)
    await conn.send({
        "type": "ack",
        "client_key": client_key,
        "message": MessageResponse.model_validate(message).model_dump(mode="json"),
    })


async def _handle_typing(conn: RealtimeConnection, data: dict) -> None:
    match_id = _int_field(data, "match_id")
    async with AsyncSessionLocal() as db:
        await TypingSignal(db).notify_typing(match_id, conn.user_id)


async def _handle_mark_read(conn: RealtimeConnection, data: dict) -> None:
    match_id = _int_field(data, "match_id")
    at = _datetime_field(data, "at")
    async with AsyncSessionLocal() as db:
        watermark = await ReadTracker(db).mark_read(conn.user_id, match_id, at)
    await conn.send({
        "type": "read_ack",
        **ReadWatermarkResponse.model_validate(watermark).model_dump(mode="json"),
    })


async def _handle_sync(conn: RealtimeConnection, data: dict) -> None:
    """Gap-fill after a reconnect: messages after the client's checkpoint."""
    match_id = _int_field(data, "match_id")
    since = _datetime_field(data, "since")
    since_id = _int_field(data, "since_id") if data.get("since_id") is not None else None
    limit = _int_field(data, "limit") if data.get("limit") is not None else settings.history_page_size
    limit = max(1, min(limit, settings.history_max_limit))

    async with AsyncSessionLocal() as db:
        await MatchResolver(db).require_participant(match_id, conn.user_id)
        messages = await ConversationLog(db).history(
            match_id, since=since, since_id=since_id, limit=limit + 1)
    has_more = len(messages) > limit
    messages = messages[:limit]
    last = messages[-1] if messages else None
    page = MessageHistoryResponse(
        items=[MessageResponse.model_validate(m) for m in messages],
        next_since=last.created_at if last else since,
        next_since_id=last.id if last else since_id,
        has_more=has_more,
    )
    await conn.send({"type": "history", "match_id": match_id, **page.model_dump(mode="json")})


FRAME_HANDLERS = {
    "subscribe": _handle_subscribe,
    "unsubscribe": _handle_unsubscribe,
    "message": _handle_message,
    "typing": _handle_typing,
    "mark_read": _handle_mark_read,
    "sync": _handle_sync,
}


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket):
    user_id = await _authenticate(websocket)
    if not user_id:
        logger.warning("WebSocket authentication failed")
        await websocket.close(code=CLOSE_UNAUTHENTICATED)
        return

    await websocket.accept()
    conn = RealtimeConnection(websocket, user_id)
    WS_CONNECTIONS.inc()
    presence_hub.join(user_id, conn.connection_id)
    logger.info(f"WebSocket connection {conn.connection_id} established for user {user_id}")

    try:
        conn.subscribe(Scope.matches(user_id))
        conn.subscribe(Scope.reads(user_id))
        snapshot = await _snapshot(user_id)
        await conn.send(snapshot.model_dump(mode="json"))

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await conn.send_error("bad_request", "Frames must be JSON objects.")
                continue
            if not isinstance(data, dict):
                await conn.send_error("bad_request", "Frames must be JSON objects.")
                continue

            msg_type = data.get("type")
            WS_FRAMES.labels(type=msg_type if msg_type in FRAME_HANDLERS or msg_type == "ping" else "unknown").inc()

            if msg_type == "ping":
                presence_hub.heartbeat(user_id, conn.connection_id)
                await conn.send({"type": "pong", "timestamp": _now_iso()})
                continue

            handler = FRAME_HANDLERS.get(msg_type)
            if handler is None:
                await conn.send_error("bad_request", f"Unknown message type: {msg_type}")
                continue

            try:
                await handler(conn, data)
            except RendezvousError as e:
                await conn.send_error(e.code, str(e))
            except SQLAlchemyError:
                logger.exception(f"Storage error handling {msg_type} for user {user_id}")
                await conn.send_error(
                    "storage_unavailable", "Could not complete request, try again.")

    except WebSocketDisconnect:
        pass
    except Exception as e:
        if not conn.closed:
            logger.error(f"WebSocket error for user {user_id}: {e}")
    finally:
        await conn.close()
        presence_hub.leave(user_id, conn.connection_id)
        WS_CONNECTIONS.dec()
        logger.info(f"WebSocket connection {conn.connection_id} closed for user {user_id}")
