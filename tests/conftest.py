import asyncio
import json

import pytest

from relay import RelayEngine


class InMemoryBackend:
    """Stands in for RedisBackend: same methods, dicts instead of hashes."""

    def __init__(self):
        self.rooms = {}
        self.snapshots = {}
        self.saved = []
        self.fail_saves = False
        self.fail_loads = False
        self.healthy = True

    def ping(self):
        return self.healthy

    def create_room(self, room_id, room_data):
        self.rooms[room_id] = {k: str(v) for k, v in room_data.items() if v is not None}
        return room_id

    def get_room(self, room_id):
        return self.rooms.get(room_id)

    def load_authority(self, room_id):
        if self.fail_loads:
            raise ConnectionError("store down")
        return self.rooms.get(room_id, {}).get("creator_id")

    def load_snapshot(self, room_id):
        if self.fail_loads:
            raise ConnectionError("store down")
        return self.snapshots.get(room_id)

    def save_snapshot(self, room_id, snapshot):
        if self.fail_saves:
            raise ConnectionError("store down")
        self.snapshots[room_id] = dict(snapshot)
        self.saved.append((room_id, dict(snapshot)))
        return True


class FakeTransport:
    def __init__(self, fail=False, delay=0.0):
        self.sent = []
        self.closed = False
        self.fail = fail
        self.delay = delay

    async def send_text(self, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True

    def types(self):
        return [m["type"] for m in self.sent]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def relay(backend):
    return RelayEngine(backend, write_timeout=0.2, idle_seconds=60, sweep_interval=3600)


def envelope(kind, room_id="R1", **fields):
    data = {"type": kind, "roomId": room_id}
    data.update(fields)
    return json.dumps(data)


async def join(relay, participant_id, room_id="R1", transport=None):
    transport = transport or FakeTransport()
    connection = relay.connect(transport, room_id)
    await relay.handle_text(connection, envelope("join", room_id, senderId=participant_id))
    return connection, transport
