import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from rendezvous.main import app
from rendezvous.services.jwt_service import JWTService


def _ws_url(user_id: str) -> str:
    return f"/ws?token={JWTService.create_token(user_id)}"


def _make_match(client, headers_for, user_id="alice", other_user_id="bob") -> int:
    client.post(f"/likes/{other_user_id}", headers=headers_for(user_id))
    r = client.post(f"/likes/{user_id}", headers=headers_for(other_user_id))
    assert r.status_code == 200
    return r.json()["match"]["id"]


def test_rejects_missing_or_bad_token():
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 4401

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=garbage"):
                pass
        assert exc_info.value.code == 4401


def test_snapshot_on_connect(headers_for):
    with TestClient(app) as client:
        match_id = _make_match(client, headers_for)
        client.post("/likes/alice", headers=headers_for("carol"))
        client.post(f"/matches/{match_id}/messages", json={"body": "hi"}, headers=headers_for("bob"))

        with client.websocket_connect(_ws_url("alice")) as ws:
            snapshot = ws.receive_json()

            assert snapshot["type"] == "snapshot"
            assert snapshot["user_id"] == "alice"
            assert [m["id"] for m in snapshot["matches"]] == [match_id]
            assert snapshot["unread"] == {str(match_id): 1}
            assert [like["liker_id"] for like in snapshot["pending_likes"]] == ["carol"]

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"


def test_message_push_and_ack(headers_for):
    with TestClient(app) as client:
        match_id = _make_match(client, headers_for)

        with client.websocket_connect(_ws_url("bob")) as bob:
            bob.receive_json()
            bob.send_json({"type": "subscribe", "scope": "messages", "key": match_id})
            assert bob.receive_json() == {"type": "subscribed", "scope": "messages", "key": str(match_id)}

            with client.websocket_connect(_ws_url("alice")) as alice:
                alice.receive_json()
                alice.send_json({"type": "message", "match_id": match_id,
                                 "body": "hello bob", "client_key": "k-1"})
                ack = alice.receive_json()
                assert ack["type"] == "ack"
                assert ack["client_key"] == "k-1"
                assert ack["message"]["body"] == "hello bob"

                pushed = bob.receive_json()
                assert pushed["type"] == "message"
                assert pushed["id"] == ack["message"]["id"]
                assert pushed["sender_id"] == "alice"


def test_typing_reaches_peer(headers_for):
    with TestClient(app) as client:
        match_id = _make_match(client, headers_for)

        with client.websocket_connect(_ws_url("bob")) as bob:
            bob.receive_json()
            bob.send_json({"type": "subscribe", "scope": "typing", "key": match_id})
            bob.receive_json()

            with client.websocket_connect(_ws_url("alice")) as alice:
                alice.receive_json()
                alice.send_json({"type": "typing", "match_id": match_id})

                event = bob.receive_json()
                assert event["type"] == "typing"
                assert event["user_id"] == "alice"
                assert event["expires_in"] > 0


def test_presence_follows_connections(headers_for):
    with TestClient(app) as client:
        _make_match(client, headers_for)

        with client.websocket_connect(_ws_url("bob")) as bob:
            bob.receive_json()

            with client.websocket_connect(_ws_url("alice")) as alice:
                alice.receive_json()
                bob.send_json({"type": "subscribe", "scope": "presence", "key": "alice"})
                assert bob.receive_json()["type"] == "subscribed"
                state = bob.receive_json()
                assert state == {**state, "type": "presence", "user_id": "alice", "online": True}

            offline = bob.receive_json()
            assert offline["type"] == "presence"
            assert offline["user_id"] == "alice"
            assert offline["online"] is False


def test_mark_read_and_sync(headers_for):
    with TestClient(app) as client:
        match_id = _make_match(client, headers_for)
        for body in ("one", "two", "three"):
            client.post(f"/matches/{match_id}/messages", json={"body": body}, headers=headers_for("alice"))

        with client.websocket_connect(_ws_url("bob")) as bob:
            bob.receive_json()

            bob.send_json({"type": "sync", "match_id": match_id, "limit": 2})
            page = bob.receive_json()
            assert page["type"] == "history"
            assert [m["body"] for m in page["items"]] == ["one", "two"]
            assert page["has_more"] is True

            bob.send_json({"type": "sync", "match_id": match_id,
                           "since": page["next_since"], "since_id": page["next_since_id"]})
            rest = bob.receive_json()
            assert [m["body"] for m in rest["items"]] == ["three"]
            assert rest["has_more"] is False

            bob.send_json({"type": "mark_read", "match_id": match_id})
            # The reply and the bus event may arrive in either order
            frames = {frame["type"]: frame for frame in (bob.receive_json(), bob.receive_json())}
            assert set(frames) == {"read_ack", "read_updated"}
            assert frames["read_ack"]["last_read_at"] == frames["read_updated"]["last_read_at"]

        r = client.get(f"/matches/{match_id}/unread", headers=headers_for("bob"))
        assert r.json()["unread"] == 0


def test_frame_errors(headers_for):
    with TestClient(app) as client:
        match_id = _make_match(client, headers_for)

        with client.websocket_connect(_ws_url("mallory")) as ws:
            ws.receive_json()

            ws.send_text("not json")
            assert ws.receive_json()["code"] == "bad_request"

            ws.send_json({"type": "dance"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert "dance" in error["detail"]

            ws.send_json({"type": "subscribe", "scope": "messages", "key": match_id})
            assert ws.receive_json()["code"] == "forbidden"

            ws.send_json({"type": "subscribe", "scope": "presence", "key": "alice"})
            assert ws.receive_json()["code"] == "bad_request"

            ws.send_json({"type": "message", "match_id": "abc", "body": "hi"})
            assert ws.receive_json()["code"] == "bad_request"

            ws.send_json({"type": "message", "match_id": match_id, "body": "hi"})
            assert ws.receive_json()["code"] == "forbidden"

            # The socket is still usable after errors
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"
