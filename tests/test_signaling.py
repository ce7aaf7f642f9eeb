import asyncio
from typing import Optional

import pytest

from client.media import MediaAcquisitionError, MediaStream
from client.relay_client import RelayClient
from client.signaling import PeerRole, PeerStatus, SignalingError, SignalingSession
from server.relay_server import RelayServer
from shared.protocol import RelayEvent, SessionDescription


class FakeTrack:
    def __init__(self, kind: str, log: Optional[list] = None) -> None:
        self.kind = kind
        self.enabled = True
        self.readyState = "live"
        self.stop_calls = 0
        self._log = log

    def stop(self) -> None:
        self.stop_calls += 1
        self.readyState = "ended"
        if self._log is not None:
            self._log.append(f"stop:{self.kind}")


class FakePeer:
    """Negotiates instantly: the answer is produced as soon as the offer arrives."""

    instances: list["FakePeer"] = []

    def __init__(self, *, initiator, stream, on_signal, on_track=None, on_connect=None, on_error=None, log=None):
        self.initiator = initiator
        self.stream = stream
        self.on_signal = on_signal
        self.on_track = on_track
        self.on_connect = on_connect
        self.closed = False
        self.received: list[SessionDescription] = []
        self._log = log
        FakePeer.instances.append(self)

    async def start(self) -> None:
        if self.initiator:
            await self.on_signal(SessionDescription(type="offer", sdp="v=0 offer"))

    async def signal(self, description: SessionDescription) -> None:
        self.received.append(description)
        if description.type == "offer":
            await self.on_signal(SessionDescription(type="answer", sdp="v=0 answer"))
        await self.on_connect()

    async def close(self) -> None:
        self.closed = True
        if self._log is not None:
            self._log.append("close:peer")


class FakeRelay:
    def __init__(self, on_message, on_disconnect, log: list, *, fail: bool = False) -> None:
        self.on_message = on_message
        self.on_disconnect = on_disconnect
        self.sent: list[tuple[RelayEvent, dict]] = []
        self.connected = False
        self._log = log
        self._fail = fail

    async def connect(self) -> str:
        if self._fail:
            raise ConnectionRefusedError("relay down")
        self.connected = True
        return "me"

    async def send(self, event: RelayEvent, payload: dict) -> None:
        self.sent.append((event, payload))
        self._log.append(f"send:{event.value}")

    async def close(self) -> None:
        self.connected = False
        self._log.append("close:relay")


class Harness:
    def __init__(self, *, fail_relay: bool = False, media_error: Optional[Exception] = None) -> None:
        self.log: list[str] = []
        self.relays: list[FakeRelay] = []
        self.failures: list[str] = []
        self.endings: list[str] = []
        self.connected = 0
        self.stream = MediaStream([FakeTrack("audio", self.log), FakeTrack("video", self.log)])
        self._fail_relay = fail_relay
        self._media_error = media_error
        FakePeer.instances = []

    def relay_factory(self, on_message, on_disconnect) -> FakeRelay:
        relay = FakeRelay(on_message, on_disconnect, self.log, fail=self._fail_relay)
        self.relays.append(relay)
        return relay

    async def media_provider(self) -> MediaStream:
        if self._media_error is not None:
            raise self._media_error
        return self.stream

    def peer_factory(self, **kwargs) -> FakePeer:
        return FakePeer(log=self.log, **kwargs)

    async def on_connected(self) -> None:
        self.connected += 1

    async def on_call_failed(self, reason: str) -> None:
        self.failures.append(reason)

    async def on_call_ended(self, reason: str) -> None:
        self.endings.append(reason)

    def session(self) -> SignalingSession:
        return SignalingSession(
            "m1",
            relay_factory=self.relay_factory,
            media_provider=self.media_provider,
            peer_factory=self.peer_factory,
            on_connected=self.on_connected,
            on_call_failed=self.on_call_failed,
            on_call_ended=self.on_call_ended,
        )

    @property
    def relay(self) -> FakeRelay:
        return self.relays[-1]

    async def deliver(self, event: RelayEvent, payload: dict) -> None:
        await self.relay.on_message(event, payload)

    def sent_events(self) -> list[RelayEvent]:
        return [event for event, _ in self.relay.sent]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_start_joins_room_after_media() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()

    assert harness.relay.sent == [(RelayEvent.JOIN_ROOM, {"roomId": "m1"})]
    assert session.peer_id == "me"
    assert session.status == PeerStatus.IDLE
    with pytest.raises(SignalingError):
        await session.start()
    await session.close()


@pytest.mark.anyio
async def test_user_joined_makes_existing_member_the_initiator() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()

    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "other"})

    assert session.role == PeerRole.INITIATOR
    assert session.status == PeerStatus.OFFER_SENT
    event, payload = harness.relay.sent[-1]
    assert event == RelayEvent.SEND_CALL
    assert payload["toPeerId"] == "other"
    assert payload["fromPeerId"] == "me"
    assert payload["signal"]["type"] == "offer"

    await harness.deliver(RelayEvent.CALL_ACCEPTED, {"fromPeerId": "other", "signal": {"type": "answer", "sdp": "v=0"}})
    assert session.status == PeerStatus.CONNECTED
    assert harness.connected == 1
    await session.close()


@pytest.mark.anyio
async def test_receive_call_makes_newcomer_the_responder() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()

    await harness.deliver(RelayEvent.RECEIVE_CALL, {"callerId": "other", "signal": {"type": "offer", "sdp": "v=0"}})

    assert session.role == PeerRole.RESPONDER
    assert session.status == PeerStatus.CONNECTED
    assert harness.sent_events() == [RelayEvent.JOIN_ROOM, RelayEvent.ACCEPT_CALL]
    assert harness.relay.sent[-1][1]["callerId"] == "other"
    await session.close()


@pytest.mark.anyio
async def test_remote_stream_absent_until_first_remote_track() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()
    assert session.remote_stream is None

    await harness.deliver(RelayEvent.RECEIVE_CALL, {"callerId": "other", "signal": {"type": "offer", "sdp": "v=0"}})
    assert session.status == PeerStatus.CONNECTED
    assert session.remote_stream is None

    video = FakeTrack("video")
    audio = FakeTrack("audio")
    await FakePeer.instances[-1].on_track(video)
    await FakePeer.instances[-1].on_track(audio)

    assert session.remote_stream is not None
    assert session.remote_stream.tracks == [video, audio]
    await session.close()


@pytest.mark.anyio
async def test_second_user_joined_while_call_active_is_ignored() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()

    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "other"})
    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "other"})
    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "me"})

    assert harness.sent_events().count(RelayEvent.SEND_CALL) == 1
    assert len(FakePeer.instances) == 1
    await session.close()


@pytest.mark.anyio
async def test_answer_from_wrong_peer_is_ignored() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()
    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "other"})

    await harness.deliver(RelayEvent.CALL_ACCEPTED, {"fromPeerId": "stranger", "signal": {"type": "answer", "sdp": "v=0"}})

    assert session.status == PeerStatus.OFFER_SENT
    assert FakePeer.instances[0].received == []
    await session.close()


@pytest.mark.anyio
async def test_malformed_message_is_dropped() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()

    await harness.deliver(RelayEvent.RECEIVE_CALL, {"callerId": "other", "signal": {"type": "offer"}})

    assert session.status == PeerStatus.IDLE
    assert FakePeer.instances == []
    assert harness.failures == []
    await session.close()


@pytest.mark.anyio
async def test_remote_leave_ends_call() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()
    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "other"})

    await harness.deliver(RelayEvent.USER_LEFT, {"peerId": "other"})

    assert FakePeer.instances[0].closed is True
    assert session.status == PeerStatus.CLOSED
    assert harness.endings == ["remote participant left"]
    await session.close()


@pytest.mark.anyio
async def test_relay_disconnect_fails_the_call() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()
    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "other"})

    await harness.relay.on_disconnect("relay_closed")

    assert session.status == PeerStatus.CLOSED
    assert FakePeer.instances[0].closed is True
    assert harness.failures == ["relay connection lost (relay_closed)"]
    await session.close()


@pytest.mark.anyio
async def test_room_full_error_fails_the_call() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()

    await harness.deliver(RelayEvent.ERROR, {"reason": "Room is full", "code": "room_full"})

    assert harness.failures == ["relay error: Room is full"]
    await session.close()


@pytest.mark.anyio
async def test_media_failure_prevents_any_relay_connection() -> None:
    harness = Harness(media_error=MediaAcquisitionError("no camera"))
    session = harness.session()

    with pytest.raises(MediaAcquisitionError) as excinfo:
        await session.start()

    assert str(excinfo.value).startswith("Camera/microphone unavailable")
    assert harness.relays == []
    await session.close()


@pytest.mark.anyio
async def test_unreachable_relay_raises_signaling_error_and_releases_media() -> None:
    harness = Harness(fail_relay=True)
    session = harness.session()

    with pytest.raises(SignalingError):
        await session.start()

    assert harness.stream.live_tracks() == []
    assert session.closed is True


@pytest.mark.anyio
async def test_toggles_only_flip_enabled_flags() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()
    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "other"})
    sent_before = list(harness.relay.sent)

    assert session.toggle_audio() is False
    assert session.toggle_video() is False
    assert session.toggle_audio() is True

    audio, video = harness.stream.tracks
    assert audio.enabled is True
    assert video.enabled is False
    assert all(track.readyState == "live" for track in harness.stream.tracks)
    assert harness.relay.sent == sent_before
    assert len(FakePeer.instances) == 1
    await session.close()


@pytest.mark.anyio
async def test_teardown_order_and_idempotence() -> None:
    harness = Harness()
    session = harness.session()
    await session.start()
    await harness.deliver(RelayEvent.USER_JOINED, {"peerId": "other"})
    harness.log.clear()

    await session.close()
    await session.close()

    assert harness.log == ["close:peer", "stop:audio", "stop:video", "send:leave-room", "close:relay"]
    assert harness.stream.live_tracks() == []
    assert all(track.stop_calls == 1 for track in harness.stream.tracks)
    assert session.status == PeerStatus.CLOSED


class RecordingRelayClient(RelayClient):
    def __init__(self, *args, sent: list, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sent_log = sent

    async def send(self, event: RelayEvent, payload: dict) -> None:
        self._sent_log.append(event)
        await super().send(event, payload)


@pytest.mark.anyio
@pytest.mark.parametrize("order", ["alice_first", "bob_first", "together"])
async def test_exactly_one_offer_and_one_answer_per_pair(order: str) -> None:
    server = RelayServer("127.0.0.1", 0)
    await server.start()
    sent: list[RelayEvent] = []
    FakePeer.instances = []
    streams = {name: MediaStream([FakeTrack("audio"), FakeTrack("video")]) for name in ("alice", "bob")}
    connected = {name: asyncio.Event() for name in streams}

    def make_session(name: str) -> SignalingSession:
        async def media() -> MediaStream:
            return streams[name]

        async def on_connected() -> None:
            connected[name].set()

        def relay_factory(on_message, on_disconnect) -> RelayClient:
            return RecordingRelayClient("127.0.0.1", server.port, on_message, on_disconnect=on_disconnect, sent=sent)

        return SignalingSession(
            "m1",
            relay_factory=relay_factory,
            media_provider=media,
            peer_factory=FakePeer,
            on_connected=on_connected,
        )

    async def wait_for_members(count: int) -> None:
        while len(await server.registry.members("m1")) < count:
            await asyncio.sleep(0.01)

    sessions = {name: make_session(name) for name in streams}
    try:
        if order == "alice_first":
            await sessions["alice"].start()
            await asyncio.wait_for(wait_for_members(1), timeout=5)
            await sessions["bob"].start()
        elif order == "bob_first":
            await sessions["bob"].start()
            await asyncio.wait_for(wait_for_members(1), timeout=5)
            await sessions["alice"].start()
        else:
            await asyncio.gather(sessions["alice"].start(), sessions["bob"].start())

        await asyncio.wait_for(asyncio.gather(*(event.wait() for event in connected.values())), timeout=5)

        assert sent.count(RelayEvent.SEND_CALL) == 1
        assert sent.count(RelayEvent.ACCEPT_CALL) == 1
        roles = sorted(session.role.value for session in sessions.values())
        assert roles == ["initiator", "responder"]
        if order == "alice_first":
            assert sessions["alice"].role == PeerRole.INITIATOR
        elif order == "bob_first":
            assert sessions["bob"].role == PeerRole.INITIATOR
    finally:
        for session in sessions.values():
            await session.close()
        await server.stop()

    for stream in streams.values():
        assert stream.live_tracks() == []
    assert all(peer.closed for peer in FakePeer.instances)
