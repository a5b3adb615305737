"""End-to-end tests for the WebSocket chat endpoint with multiple clients.

Every connection is given its own origin through X-Forwarded-For (the test
settings trust that header), so bans and admin throttling can be exercised
per client.
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.chat.coordinator import SessionCoordinator
from app.main import app

from conftest import ADMIN_NAME, ADMIN_SECRET


client = TestClient(app)


def connect(origin):
    return client.websocket_connect("/ws/chat", headers={"x-forwarded-for": origin})


def receive_until(ws, event_type, limit=20):
    """Skip frames until one of ``event_type`` arrives and return it."""
    for _ in range(limit):
        frame = ws.receive_json()
        if frame["type"] == event_type:
            return frame
    raise AssertionError(f"no {event_type} frame within {limit} frames")


def create_room(ws, name, nickname, password=None):
    ws.send_json({
        "type": "createRoom",
        "roomName": name,
        "hasPassword": password is not None,
        "password": password or "",
        "nickname": nickname,
    })
    return receive_until(ws, "joinSuccess")["roomId"]


def test_first_frame_is_room_list():
    with connect("10.0.0.1") as ws:
        assert ws.receive_json() == {"type": "roomList", "rooms": []}


def test_two_clients_chat_in_one_room():
    with connect("10.0.0.1") as ws1, connect("10.0.0.2") as ws2:
        ws1.receive_json()
        ws2.receive_json()

        room_id = create_room(ws1, "lobby", "alice")
        listing = receive_until(ws2, "roomList")
        assert [r["name"] for r in listing["rooms"]] == ["lobby"]

        ws2.send_json({"type": "joinRoom", "roomId": room_id, "nickname": "bob", "password": ""})
        assert ws2.receive_json() == {"type": "joinSuccess", "roomId": room_id}
        assert ws2.receive_json() == {"type": "chatHistory", "roomId": room_id, "messages": []}
        assert receive_until(ws1, "roomUsers")["users"] == ["alice", "bob"]
        assert receive_until(ws1, "systemMessage")["text"] == "bob joined"

        ws1.send_json({"type": "sendMessage", "roomId": room_id, "nickname": "alice", "message": "hi"})
        ws2.send_json({"type": "sendMessage", "roomId": room_id, "nickname": "bob", "message": "yo"})

        for ws in (ws1, ws2):
            first = receive_until(ws, "newMessage")["message"]
            second = receive_until(ws, "newMessage")["message"]
            assert [first["payload"], second["payload"]] == ["hi", "yo"]
            assert [first["author"], second["author"]] == ["alice", "bob"]
            assert first["kind"] == "text"
            assert isinstance(first["timestamp"], float)


def test_late_joiner_receives_history():
    with connect("10.0.0.1") as ws1:
        ws1.receive_json()
        room_id = create_room(ws1, "lobby", "alice")
        for text in ("one", "two"):
            ws1.send_json({"type": "sendMessage", "roomId": room_id, "nickname": "alice", "message": text})
            receive_until(ws1, "newMessage")

        with connect("10.0.0.2") as ws2:
            ws2.receive_json()
            ws2.send_json({"type": "joinRoom", "roomId": room_id, "nickname": "bob"})
            history = receive_until(ws2, "chatHistory")["messages"]
            assert [m["payload"] for m in history] == ["one", "two"]


def test_wrong_password_is_rejected():
    with connect("10.0.0.1") as ws1, connect("10.0.0.2") as ws2:
        ws1.receive_json()
        ws2.receive_json()
        room_id = create_room(ws1, "secret", "carl", password="pw1")

        ws2.send_json({"type": "joinRoom", "roomId": room_id, "nickname": "dave", "password": "nope"})
        assert receive_until(ws2, "joinFailed") == {"type": "joinFailed", "reason": "Wrong password"}

        ws2.send_json({"type": "joinRoom", "roomId": room_id, "nickname": "dave", "password": "pw1"})
        assert receive_until(ws2, "joinSuccess")["roomId"] == room_id


def test_duplicate_nickname_fails_create():
    with connect("10.0.0.1") as ws1, connect("10.0.0.2") as ws2:
        ws1.receive_json()
        ws2.receive_json()
        create_room(ws1, "x", "eve")
        ws2.send_json({
            "type": "createRoom", "roomName": "y", "hasPassword": False,
            "password": "", "nickname": "eve",
        })
        assert receive_until(ws2, "createFailed")["reason"] == "Nickname 'eve' is already in use"


def test_invalid_json_gets_error_frame():
    with connect("10.0.0.1") as ws:
        ws.receive_json()
        ws.send_text("not json")
        assert ws.receive_json() == {
            "type": "error",
            "action": "unknown",
            "reason": "Invalid message format: expected JSON",
        }
        # The connection stays usable
        ws.send_json({"type": "searchRooms", "keyword": ""})
        assert ws.receive_json()["type"] == "roomList"


def test_unknown_event_type():
    with connect("10.0.0.1") as ws:
        ws.receive_json()
        ws.send_json({"type": "dance"})
        frame = ws.receive_json()
        assert frame["type"] == "error"
        assert frame["reason"] == "Unknown event type"


def test_admin_login_and_ban():
    with connect("10.0.0.1") as admin, connect("10.0.0.2") as victim:
        admin.receive_json()
        victim.receive_json()
        create_room(victim, "lobby", "bob")

        admin.send_json({"type": "adminLogin", "name": ADMIN_NAME, "secret": ADMIN_SECRET})
        assert receive_until(admin, "adminSuccess")["banList"] == []

        admin.send_json({"type": "banUser", "targetName": "bob"})
        assert receive_until(admin, "banList")["origins"] == ["10.0.0.2"]

        assert receive_until(victim, "banned")["type"] == "banned"
        with pytest.raises(WebSocketDisconnect) as excinfo:
            victim.receive_json()
        assert excinfo.value.code == 1008

    # Later connections from the banned origin are refused
    with connect("10.0.0.2") as again:
        assert again.receive_json()["type"] == "banned"
        with pytest.raises(WebSocketDisconnect):
            again.receive_json()


def test_failed_admin_login_cannot_ban():
    with connect("10.0.0.1") as ws1, connect("10.0.0.2") as ws2:
        ws1.receive_json()
        ws2.receive_json()
        create_room(ws2, "lobby", "bob")

        ws1.send_json({"type": "adminLogin", "name": ADMIN_NAME, "secret": "guess"})
        assert receive_until(ws1, "adminFailed")["reason"] == "Administrator login failed"

        ws1.send_json({"type": "banUser", "targetName": "bob"})
        frame = receive_until(ws1, "error")
        assert frame["action"] == "banUser"

        # bob is untouched and can still talk
        ws2.send_json({"type": "searchRooms", "keyword": "lob"})
        assert [r["name"] for r in receive_until(ws2, "roomList")["rooms"]] == ["lobby"]


def test_disconnect_notifies_room():
    with connect("10.0.0.1") as ws1:
        ws1.receive_json()
        room_id = create_room(ws1, "lobby", "alice")
        with connect("10.0.0.2") as ws2:
            ws2.receive_json()
            ws2.send_json({"type": "joinRoom", "roomId": room_id, "nickname": "bob"})
            receive_until(ws2, "systemMessage")
            assert receive_until(ws1, "systemMessage")["text"] == "bob joined"

        assert receive_until(ws1, "systemMessage")["text"] == "bob left"


def test_rooms_http_search():
    coordinator = SessionCoordinator.get_instance()
    coordinator.connect("c1", "10.0.0.1")
    coordinator.create_room("c1", "lobby", True, "pw", "alice")
    coordinator.create_room("c1", "games", False, None, "alice")

    response = client.get("/rooms", params={"keyword": "lob"})
    assert response.status_code == 200
    rooms = response.json()
    assert len(rooms) == 1
    assert rooms[0]["name"] == "lobby"
    assert rooms[0]["hasPassword"] is True
    assert "password" not in rooms[0]

    assert len(client.get("/rooms").json()) == 2


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
