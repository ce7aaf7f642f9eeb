import asyncio

import pytest

from server.room_registry import RoomFullError, RoomRegistry
from shared.protocol import RelayEvent, decode_relay_stream


class DummyWriter:
    def __init__(self) -> None:
        self.closed = False
        self.buffer = bytearray()

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        await asyncio.sleep(0)

    def events(self) -> list[str]:
        messages, _ = decode_relay_stream(bytes(self.buffer))
        return [message["event"] for message in messages]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_room_holds_at_most_two_members() -> None:
    registry = RoomRegistry()
    alice = await registry.register(DummyWriter(), peername=("10.0.0.1", 5000))
    bob = await registry.register(DummyWriter())
    carol = await registry.register(DummyWriter())

    assert await registry.join_room(alice.peer_id, "m1") == []
    assert await registry.join_room(bob.peer_id, "m1") == [alice.peer_id]
    with pytest.raises(RoomFullError):
        await registry.join_room(carol.peer_id, "m1")

    assert await registry.members("m1") == [alice.peer_id, bob.peer_id]
    assert await registry.room_of(carol.peer_id) is None
    events = await registry.get_recent_events()
    assert any(event["type"] == "room_full" for event in events)


@pytest.mark.anyio
async def test_rejoining_same_room_is_idempotent() -> None:
    registry = RoomRegistry()
    alice = await registry.register(DummyWriter())
    await registry.join_room(alice.peer_id, "m1")
    await registry.join_room(alice.peer_id, "m1")
    assert await registry.members("m1") == [alice.peer_id]


@pytest.mark.anyio
async def test_unregister_leaves_room_and_closes_writer() -> None:
    registry = RoomRegistry()
    writer = DummyWriter()
    alice = await registry.register(writer)
    bob = await registry.register(DummyWriter())
    await registry.join_room(alice.peer_id, "m1")
    await registry.join_room(bob.peer_id, "m1")

    assert await registry.unregister(alice.peer_id) == "m1"
    assert writer.closed is True
    assert await registry.members("m1") == [bob.peer_id]
    assert await registry.unregister(alice.peer_id) is None

    await registry.leave_room(bob.peer_id)
    snapshot = await registry.snapshot()
    assert snapshot["rooms"] == {}
    assert [peer["peer_id"] for peer in snapshot["peers"]] == [bob.peer_id]


@pytest.mark.anyio
async def test_broadcast_room_skips_excluded_and_other_rooms() -> None:
    registry = RoomRegistry()
    writers = [DummyWriter() for _ in range(3)]
    peers = [await registry.register(writer) for writer in writers]
    await registry.join_room(peers[0].peer_id, "m1")
    await registry.join_room(peers[1].peer_id, "m1")
    await registry.join_room(peers[2].peer_id, "m2")

    await registry.broadcast_room("m1", RelayEvent.USER_JOINED, {"peerId": "x"}, exclude={peers[0].peer_id})

    assert writers[0].events() == []
    assert writers[1].events() == ["user-joined"]
    assert writers[2].events() == []
    snapshot = await registry.snapshot()
    sent = {peer["peer_id"]: peer["bytes_sent"] for peer in snapshot["peers"]}
    assert sent[peers[1].peer_id] > 0


@pytest.mark.anyio
async def test_share_room_and_send_to_unknown_peer() -> None:
    registry = RoomRegistry()
    alice = await registry.register(DummyWriter())
    bob = await registry.register(DummyWriter())
    await registry.join_room(alice.peer_id, "m1")

    assert await registry.share_room(alice.peer_id, bob.peer_id) is False
    await registry.join_room(bob.peer_id, "m1")
    assert await registry.share_room(alice.peer_id, bob.peer_id) is True
    assert await registry.send_to("ghost", RelayEvent.ERROR, {"reason": "x"}) is False


@pytest.mark.anyio
async def test_heartbeat_watcher_closes_silent_peers() -> None:
    registry = RoomRegistry()
    writer = DummyWriter()
    peer = await registry.register(writer)
    peer.last_seen -= 10

    watcher = asyncio.create_task(registry.heartbeat_watcher(interval=0.01))
    await asyncio.sleep(0.05)
    watcher.cancel()
    with pytest.raises(asyncio.CancelledError):
        await watcher

    assert writer.closed is True
    events = await registry.get_recent_events()
    assert any(event["type"] == "peer_timed_out" for event in events)


@pytest.mark.anyio
async def test_disconnect_all_notifies_and_clears() -> None:
    registry = RoomRegistry()
    writer = DummyWriter()
    peer = await registry.register(writer)
    await registry.join_room(peer.peer_id, "m1")

    await registry.disconnect_all(reason="maintenance")

    assert writer.closed is True
    assert writer.events() == ["error"]
    snapshot = await registry.snapshot()
    assert snapshot["peers"] == []
    assert snapshot["rooms"] == {}
