import asyncio
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from app import create_app
from relay import RelayEngine


@pytest.fixture
def client(backend):
    app = create_app(backend=backend, write_timeout=1.0, idle_seconds=0)
    with TestClient(app) as test_client:
        yield test_client


def wait_for_room(client, room_id, predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        response = client.get(f"/rooms/{room_id}")
        if response.status_code == 200 and predicate(response.json()):
            return response.json()
        time.sleep(0.01)
    raise AssertionError(f"room {room_id} never reached the expected state")


def test_late_joiner_receives_sync_state(client, backend):
    backend.create_room("R1", {"creator_id": "A"})
    with client.websocket_connect("/ws?roomId=R1") as a:
        a.send_json({"type": "join", "roomId": "R1", "senderId": "A"})
        a.send_json({"type": "media-change", "roomId": "R1", "url": "x"})
        a.send_json({"type": "seek", "roomId": "R1", "time": 0.4})
        wait_for_room(client, "R1", lambda room: room["time"] == 0.4)

        with client.websocket_connect("/ws?roomId=R1") as b:
            b.send_json({"type": "join", "roomId": "R1", "senderId": "B"})
            assert b.receive_json() == {"type": "sync-state", "roomId": "R1", "url": "x", "time": 0.4, "playing": False}


def test_malformed_frame_keeps_connection_open(client):
    with client.websocket_connect("/ws?roomId=R1&senderId=A") as a, \
            client.websocket_connect("/rooms/R1/ws?senderId=B") as b:
        a.send_json({"type": "join", "roomId": "R1"})
        b.send_json({"type": "join", "roomId": "R1"})
        wait_for_room(client, "R1", lambda room: room["onlineCount"] == 2)

        a.send_text("{this is not json")
        a.send_json({"type": "chat", "roomId": "R1", "nickname": "a", "message": "after"})
        message = b.receive_json()
        assert message["type"] == "chat"
        assert message["message"] == "after"
        assert message["senderId"] == "A"

        b.send_json({"type": "chat", "roomId": "R1", "message": "reply"})
        assert a.receive_json()["message"] == "reply"


def test_signal_reaches_only_named_peer(client):
    with client.websocket_connect("/ws?roomId=R1&senderId=A") as a, \
            client.websocket_connect("/ws?roomId=R1&senderId=B") as b, \
            client.websocket_connect("/ws?roomId=R1&senderId=C") as c:
        for ws in (a, b, c):
            ws.send_json({"type": "join", "roomId": "R1"})
        wait_for_room(client, "R1", lambda room: room["onlineCount"] == 3)

        a.send_json({"type": "signal", "roomId": "R1", "to": "C", "sdp": "offer-sdp"})
        a.send_json({"type": "chat", "roomId": "R1", "message": "marker"})

        assert b.receive_json()["message"] == "marker"
        signal = c.receive_json()
        assert signal["type"] == "signal"
        assert signal["from"] == "A"
        assert signal["sdp"] == "offer-sdp"


def test_disconnect_updates_online_count(client):
    with client.websocket_connect("/ws?roomId=R1&senderId=A") as a:
        a.send_json({"type": "join", "roomId": "R1"})
        with client.websocket_connect("/ws?roomId=R1&senderId=B") as b:
            b.send_json({"type": "join", "roomId": "R1"})
            wait_for_room(client, "R1", lambda room: room["onlineCount"] == 2)
        wait_for_room(client, "R1", lambda room: room["onlineCount"] == 1)


def test_create_room_and_details(client, backend):
    response = client.post("/rooms/", json={"roomId": "jam1", "creatorId": "0xabc", "title": "Friday jam"})
    assert response.status_code == 201
    body = response.json()
    assert body["roomId"] == "jam1"
    assert body["wsUrl"].endswith("/ws?roomId=jam1")
    assert backend.rooms["jam1"]["creator_id"] == "0xabc"

    details = client.get("/rooms/jam1").json()
    assert details["title"] == "Friday jam"
    assert details["creatorId"] == "0xabc"
    assert details["onlineCount"] == 0
    assert details["url"] is None


def test_create_room_generates_id(client):
    response = client.post("/rooms/", json={"creatorId": "0xabc", "title": "Jam"})
    assert response.status_code == 201
    assert response.json()["roomId"]


def test_create_duplicate_room_conflicts(client):
    payload = {"roomId": "jam1", "creatorId": "0xabc", "title": "Jam"}
    assert client.post("/rooms/", json=payload).status_code == 201
    assert client.post("/rooms/", json=payload).status_code == 409


def test_create_room_validates_body(client):
    assert client.post("/rooms/", json={"title": "no creator"}).status_code == 422


def test_unknown_room_is_404(client):
    assert client.get("/rooms/missing").status_code == 404


def test_health(client, backend):
    assert client.get("/health").json() == {"status": "ok", "redis": True}
    backend.healthy = False
    assert client.get("/health").json() == {"status": "degraded", "redis": False}


@pytest.mark.anyio
async def test_room_details_are_read_under_the_room_lock(backend):
    backend.create_room("R1", {"creator_id": "A"})
    app = create_app(backend=backend)
    relay = RelayEngine(backend, idle_seconds=0)
    app.state.backend = backend
    app.state.relay = relay

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        async with relay.locks.hold("R1"):
            pending = asyncio.create_task(http.get("/rooms/R1"))
            await asyncio.sleep(0.1)
            assert not pending.done()
        response = await asyncio.wait_for(pending, timeout=1)

    assert response.status_code == 200
    assert response.json()["creatorId"] == "A"
