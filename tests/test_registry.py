import json

import pytest

from conftest import FakeTransport
from registry import Connection, ConnectionRegistry, ConnectionState

pytestmark = pytest.mark.anyio


def make(room_id="R1", participant_id=None, **transport_options):
    return Connection(FakeTransport(**transport_options), room_id, participant_id)


@pytest.fixture
def registry():
    return ConnectionRegistry(write_timeout=0.2)


async def test_register_creates_room_lazily(registry):
    assert registry.connections("R1") == []
    conn = make()
    registry.register("R1", conn)
    assert registry.connections("R1") == [conn]
    assert registry.rooms() == ["R1"]


async def test_unregister_uses_back_reference_and_evicts_empty_room(registry):
    a, b = make(), make()
    registry.register("R1", a)
    registry.register("R1", b)

    assert registry.unregister(a) is False
    assert registry.count("R1") == 1
    assert registry.unregister(b) is True
    assert registry.rooms() == []
    assert registry.unregister(b) is False


async def test_find_by_participant(registry):
    a, b = make(participant_id="A"), make(participant_id="B")
    registry.register("R1", a)
    registry.register("R1", b)
    assert registry.find("R1", "B") == [b]
    assert registry.find("R1", "Z") == []
    assert registry.find("R2", "B") == []


async def test_broadcast_excludes_sender(registry):
    a, b, c = make(), make(), make()
    for conn in (a, b, c):
        registry.register("R1", conn)

    delivered = await registry.broadcast("R1", json.dumps({"type": "chat"}), excluding=a)

    assert delivered == 2
    assert a.transport.sent == []
    assert b.transport.sent == [{"type": "chat"}]
    assert c.transport.sent == [{"type": "chat"}]


async def test_broadcast_isolates_failures(registry):
    good, bad, slow = make(), make(fail=True), make(delay=5)
    for conn in (good, bad, slow):
        registry.register("R1", conn)

    delivered = await registry.broadcast("R1", json.dumps({"type": "volume"}))

    assert delivered == 1
    assert good.transport.sent == [{"type": "volume"}]
    assert registry.connections("R1") == [good]
    assert bad.state == ConnectionState.CLOSED and bad.transport.closed
    assert slow.state == ConnectionState.CLOSED


async def test_broadcast_to_empty_room(registry):
    assert await registry.broadcast("nobody", "{}") == 0
