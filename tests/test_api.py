import pytest


async def _match(client, headers_for, user_id="alice", other_user_id="bob") -> int:
    await client.post(f"/likes/{other_user_id}", headers=headers_for(user_id))
    r = await client.post(f"/likes/{user_id}", headers=headers_for(other_user_id))
    assert r.status_code == 200
    return r.json()["match"]["id"]


async def test_requires_authentication(client):
    r = await client.get("/matches")
    # FastAPI's HTTPBearer answers 403 before 0.115 and 401 after
    assert r.status_code in (401, 403)
    assert "request_id" in r.json()

    r = await client.get("/matches", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "unauthorized"


async def test_like_flow(client, headers_for):
    r = await client.post("/likes/bob", headers=headers_for("alice"))
    assert r.status_code == 200
    assert r.json() == {"liked": True, "pending": True, "match": None, "match_created": False}

    r = await client.post("/likes/alice", headers=headers_for("bob"))
    data = r.json()
    assert data["pending"] is False
    assert data["match_created"] is True
    assert {data["match"]["user_a"], data["match"]["user_b"]} == {"alice", "bob"}

    r = await client.get("/matches", headers=headers_for("alice"))
    assert r.json()["total"] == 1

    r = await client.get("/matches/with/alice", headers=headers_for("bob"))
    assert r.json()["matched"] is True
    assert r.json()["match"]["id"] == data["match"]["id"]

    r = await client.get("/matches/with/carol", headers=headers_for("bob"))
    assert r.json() == {"matched": False, "match": None}


async def test_pending_request_accept(client, headers_for):
    await client.post("/likes/bob", headers=headers_for("alice"))

    r = await client.get("/likes/incoming", headers=headers_for("bob"))
    assert r.json()["total"] == 1
    assert r.json()["items"][0]["liker_id"] == "alice"

    r = await client.post("/likes/incoming/alice/accept", headers=headers_for("bob"))
    assert r.status_code == 200
    match_id = r.json()["id"]

    # Retried accept returns the same match
    r = await client.post("/likes/incoming/alice/accept", headers=headers_for("bob"))
    assert r.json()["id"] == match_id

    r = await client.get("/likes/incoming", headers=headers_for("bob"))
    assert r.json()["total"] == 0


async def test_accept_missing_request(client, headers_for):
    r = await client.post("/likes/incoming/alice/accept", headers=headers_for("bob"))
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"


async def test_reject_and_withdraw(client, headers_for):
    await client.post("/likes/bob", headers=headers_for("alice"))

    r = await client.post("/likes/incoming/alice/reject", headers=headers_for("bob"))
    assert r.json() == {"removed": True}

    await client.post("/likes/bob", headers=headers_for("alice"))
    r = await client.delete("/likes/bob", headers=headers_for("alice"))
    assert r.json() == {"removed": True}
    r = await client.delete("/likes/bob", headers=headers_for("alice"))
    assert r.json() == {"removed": False}


async def test_self_like_is_rejected(client, headers_for):
    r = await client.post("/likes/alice", headers=headers_for("alice"))
    assert r.status_code == 400
    body = r.json()
    assert body["error"]["code"] == "bad_request"
    assert body["error"]["message"] == "You can't send a request to yourself."
    assert r.headers["X-Request-ID"] == body["request_id"]


async def test_like_rate_limit(monkeypatch, client, headers_for):
    from rendezvous.config import settings
    monkeypatch.setattr(settings, "likes_per_min", 2)

    for other in ("bob", "carol"):
        r = await client.post(f"/likes/{other}", headers=headers_for("alice"))
        assert r.status_code == 200

    r = await client.post("/likes/dave", headers=headers_for("alice"))
    assert r.status_code == 429
    assert r.json()["error"]["code"] == "too_many_requests"


async def test_send_and_page_messages(client, headers_for):
    match_id = await _match(client, headers_for)
    for i in range(5):
        r = await client.post(f"/matches/{match_id}/messages",
                              json={"body": f"m{i}"}, headers=headers_for("alice"))
        assert r.status_code == 200

    r = await client.get(f"/matches/{match_id}/messages", params={"limit": 2},
                         headers=headers_for("bob"))
    page = r.json()
    assert [m["body"] for m in page["items"]] == ["m0", "m1"]
    assert page["has_more"] is True

    r = await client.get(
        f"/matches/{match_id}/messages",
        params={"since": page["next_since"], "since_id": page["next_since_id"], "limit": 10},
        headers=headers_for("bob"),
    )
    rest = r.json()
    assert [m["body"] for m in rest["items"]] == ["m2", "m3", "m4"]
    assert rest["has_more"] is False


async def test_message_retry_with_client_key(client, headers_for):
    match_id = await _match(client, headers_for)
    payload = {"body": "hello", "client_key": "c3b1a7e2"}

    first = await client.post(f"/matches/{match_id}/messages", json=payload, headers=headers_for("alice"))
    retry = await client.post(f"/matches/{match_id}/messages", json=payload, headers=headers_for("alice"))

    assert first.json()["id"] == retry.json()["id"]
    r = await client.get(f"/matches/{match_id}/messages", headers=headers_for("alice"))
    assert len(r.json()["items"]) == 1


async def test_message_errors(client, headers_for):
    match_id = await _match(client, headers_for)

    r = await client.post(f"/matches/{match_id}/messages", json={"body": "   "}, headers=headers_for("alice"))
    assert r.status_code == 400

    r = await client.post(f"/matches/{match_id}/messages", json={"body": "x" * 2001}, headers=headers_for("alice"))
    assert r.status_code == 400

    r = await client.post(f"/matches/{match_id}/messages", json={"body": "hi"}, headers=headers_for("mallory"))
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "forbidden"

    r = await client.get(f"/matches/{match_id}/messages", headers=headers_for("mallory"))
    assert r.status_code == 403

    r = await client.post("/matches/9999/messages", json={"body": "hi"}, headers=headers_for("alice"))
    assert r.status_code == 404

    r = await client.get(f"/matches/{match_id}/messages", params={"limit": 0}, headers=headers_for("alice"))
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "validation_error"


async def test_read_state(client, headers_for):
    match_id = await _match(client, headers_for)
    for body in ("one", "two"):
        await client.post(f"/matches/{match_id}/messages", json={"body": body}, headers=headers_for("bob"))

    r = await client.get(f"/matches/{match_id}/unread", headers=headers_for("alice"))
    assert r.json() == {"match_id": match_id, "unread": 2}

    r = await client.post(f"/matches/{match_id}/read", headers=headers_for("alice"))
    assert r.status_code == 200
    read_at = r.json()["last_read_at"]

    r = await client.get(f"/matches/{match_id}/unread", headers=headers_for("alice"))
    assert r.json()["unread"] == 0

    # An older timestamp leaves the watermark where it is
    r = await client.post(f"/matches/{match_id}/read", json={"at": "2020-01-01T00:00:00Z"},
                          headers=headers_for("alice"))
    assert r.json()["last_read_at"] == read_at


async def test_conversation_list(client, headers_for):
    with_bob = await _match(client, headers_for, "alice", "bob")
    with_carol = await _match(client, headers_for, "alice", "carol")
    await client.post(f"/matches/{with_bob}/messages", json={"body": "hey"}, headers=headers_for("bob"))
    await client.post(f"/matches/{with_bob}/messages", json={"body": "hi"}, headers=headers_for("alice"))
    await client.post(f"/matches/{with_bob}/messages", json={"body": "how are you?"}, headers=headers_for("bob"))

    r = await client.get("/conversations", headers=headers_for("alice"))
    data = r.json()

    assert data["total"] == 2
    assert data["total_unread"] == 2
    first, second = data["items"]
    assert first["match_id"] == with_bob
    assert first["other_user_id"] == "bob"
    assert first["last_message"]["body"] == "how are you?"
    assert first["last_message_is_mine"] is False
    assert first["other_user_online"] is False
    assert second["match_id"] == with_carol
    assert second["last_message"] is None


async def test_typing_and_presence(client, headers_for):
    match_id = await _match(client, headers_for)

    r = await client.post(f"/matches/{match_id}/typing", headers=headers_for("alice"))
    assert r.status_code == 200
    assert r.json()["expires_in"] > 0

    r = await client.post(f"/matches/{match_id}/typing", headers=headers_for("mallory"))
    assert r.status_code == 403

    r = await client.get("/presence/bob", headers=headers_for("alice"))
    assert r.json() == {"user_id": "bob", "online": False}


async def test_metrics_protected(client):
    r = await client.get("/metrics")
    assert r.status_code == 403
