import pytest
from starlette.websockets import WebSocketDisconnect


def resolve(client, auth, user, item_id, counterpart):
    return client.post("/conversations", json={"item_id": item_id, "counterpart_id": counterpart}, headers=auth(user))


def test_root(client):
    body = client.get("/").json()
    assert body["realtime"] == "local"
    assert "items" in body["collections"]


def test_resolve_created_then_existing(client, auth):
    created = resolve(client, auth, "u1", "item-bike", "u2")
    assert created.status_code == 201
    assert created.json()["status"] == "created"

    existing = resolve(client, auth, "u2", "item-bike", "u1")
    assert existing.status_code == 200
    assert existing.json() == {"conversation_id": created.json()["conversation_id"], "status": "existing"}


def test_resolve_errors(client, auth):
    assert resolve(client, auth, "u1", "item-bike", "u1").status_code == 403
    missing = resolve(client, auth, "u1", "item-missing", "u2")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


def test_requires_authentication(client):
    assert client.get("/conversations").status_code == 401
    bad = client.get("/conversations", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401
    assert bad.json()["error"]["code"] == "UNAUTHENTICATED"


def test_send_and_list(client, auth):
    conversation_id = resolve(client, auth, "u1", "item-bike", "u2").json()["conversation_id"]

    sent = client.post(f"/conversations/{conversation_id}/messages", json={"content": "hello"}, headers=auth("u1"))
    assert sent.status_code == 201
    assert sent.json()["seq"] == 1
    client.post(f"/conversations/{conversation_id}/messages", json={"content": "hi"}, headers=auth("u2"))

    listed = client.get(f"/conversations/{conversation_id}/messages", headers=auth("u2")).json()
    assert [m["content"] for m in listed["items"]] == ["hello", "hi"]
    assert listed["next_cursor"] == 2

    after = client.get(f"/conversations/{conversation_id}/messages?after=1", headers=auth("u1")).json()
    assert [m["content"] for m in after["items"]] == ["hi"]

    summaries = client.get("/conversations", headers=auth("u1")).json()["items"]
    assert summaries[0]["conversation_id"] == conversation_id
    assert summaries[0]["counterpart_name"] == "Brook"


def test_send_rejections(client, auth):
    conversation_id = resolve(client, auth, "u1", "item-bike", "u2").json()["conversation_id"]

    blank = client.post(f"/conversations/{conversation_id}/messages", json={"content": "   "}, headers=auth("u1"))
    assert blank.status_code == 422
    assert blank.json()["error"]["code"] == "VALIDATION_ERROR"

    outsider = client.post(f"/conversations/{conversation_id}/messages", json={"content": "hey"}, headers=auth("u3"))
    assert outsider.status_code == 403
    assert client.get(f"/conversations/{conversation_id}/messages", headers=auth("u3")).status_code == 403

    items = client.get(f"/conversations/{conversation_id}/messages", headers=auth("u1")).json()["items"]
    assert items == []


def test_websocket_history_send_and_push(client, auth):
    from itemchat.utils.security import create_access_token

    conversation_id = resolve(client, auth, "u1", "item-bike", "u2").json()["conversation_id"]
    client.post(f"/conversations/{conversation_id}/messages", json={"content": "hello"}, headers=auth("u1"))

    url = f"/ws/conversations/{conversation_id}?token="
    with client.websocket_connect(url + create_access_token("u2")) as buyer, client.websocket_connect(url + create_access_token("u1") + "&after=1") as seller:
        history = buyer.receive_json()
        assert history["type"] == "history"
        assert [m["content"] for m in history["items"]] == ["hello"]
        assert seller.receive_json() == {"type": "history", "items": []}

        buyer.send_json({"type": "ping"})
        assert buyer.receive_json() == {"type": "pong"}

        buyer.send_json({"type": "send", "content": "hi", "client_message_id": "tmp-1"})
        frames = [buyer.receive_json(), buyer.receive_json()]
        by_type = {frame["type"]: frame for frame in frames}
        assert set(by_type) == {"ack", "message"}
        assert by_type["ack"]["client_message_id"] == "tmp-1"
        assert by_type["ack"]["message"]["seq"] == 2

        pushed = seller.receive_json()
        assert pushed["type"] == "message"
        assert pushed["message"]["content"] == "hi"

        seller.send_json({"type": "send", "content": "  "})
        error = seller.receive_json()
        assert error["type"] == "error"
        assert error["code"] == "VALIDATION_ERROR"


@pytest.mark.parametrize(
    "user, token_suffix, expected",
    [
        ("u1", "", 4401),
        ("u3", None, 4403),
    ],
)
def test_websocket_rejections(client, auth, user, token_suffix, expected):
    from itemchat.utils.security import create_access_token

    conversation_id = resolve(client, auth, "u1", "item-bike", "u2").json()["conversation_id"]
    token = create_access_token(user) if token_suffix is None else token_suffix
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws/conversations/{conversation_id}?token={token}") as ws:
            ws.receive_json()
    assert exc.value.code == expected


def test_websocket_unknown_conversation(client):
    from itemchat.utils.security import create_access_token

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws/conversations/missing?token={create_access_token('u1')}") as ws:
            ws.receive_json()
    assert exc.value.code == 4404
