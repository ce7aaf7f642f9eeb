"""Per-participant signaling over the relay channel.

Role assignment is asymmetric: a member already in the room that hears
``user-joined`` becomes the initiator toward the newcomer, while the newcomer
only ever answers inbound offers. In a two-party room this yields exactly one
offer and one answer whatever order the two ``join-room`` events arrive in.
The scheme is deliberately limited to two participants.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from shared.protocol import (
    AcceptCall,
    CallAccepted,
    JoinRoom,
    LeaveRoom,
    ProtocolError,
    ReceiveCall,
    RelayErrorPayload,
    RelayEvent,
    SendCall,
    SessionDescription,
    UserJoined,
    UserLeft,
)

from .media import MediaProvider, MediaStream
from .peer import PeerConnection
from .relay_client import DisconnectCallback, MessageCallback, RelayClient

logger = logging.getLogger(__name__)

RelayFactory = Callable[[MessageCallback, DisconnectCallback], RelayClient]
PeerFactory = Callable[..., PeerConnection]
ReasonCallback = Callable[[str], Awaitable[None] | None]
TrackCallback = Callable[[object], Awaitable[None] | None]
NotifyCallback = Callable[[], Awaitable[None] | None]


class SignalingError(RuntimeError):
    """The relay could not be reached or refused the room join."""


class PeerRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class PeerStatus(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    ANSWER_PENDING = "answer_pending"
    ANSWER_SENT = "answer_sent"
    CONNECTED = "connected"
    CLOSED = "closed"


async def _invoke(callback: Optional[Callable[..., Awaitable[None] | None]], *args: object) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Signaling callback failed")


class SignalingSession:
    """Room membership plus at most one live peer-connection attempt."""

    def __init__(
        self,
        room_id: str,
        *,
        relay_factory: RelayFactory,
        media_provider: MediaProvider,
        peer_factory: PeerFactory = PeerConnection,
        on_connected: Optional[NotifyCallback] = None,
        on_remote_track: Optional[TrackCallback] = None,
        on_call_failed: Optional[ReasonCallback] = None,
        on_call_ended: Optional[ReasonCallback] = None,
    ) -> None:
        self._room_id = room_id
        self._relay_factory = relay_factory
        self._media_provider = media_provider
        self._peer_factory = peer_factory
        self._on_connected = on_connected
        self._on_remote_track = on_remote_track
        self._on_call_failed = on_call_failed
        self._on_call_ended = on_call_ended
        self._relay: Optional[RelayClient] = None
        self._peer: Optional[PeerConnection] = None
        self._local_stream: Optional[MediaStream] = None
        self._remote_stream: Optional[MediaStream] = None
        self._peer_id: Optional[str] = None
        self._remote_peer_id: Optional[str] = None
        self._role: Optional[PeerRole] = None
        self._status = PeerStatus.IDLE
        self._started = False
        self._joined = False
        self._closed = False

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def peer_id(self) -> Optional[str]:
        return self._peer_id

    @property
    def remote_peer_id(self) -> Optional[str]:
        return self._remote_peer_id

    @property
    def role(self) -> Optional[PeerRole]:
        return self._role

    @property
    def status(self) -> PeerStatus:
        return self._status

    @property
    def local_stream(self) -> Optional[MediaStream]:
        return self._local_stream

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self._remote_stream

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Acquire local media, connect to the relay and announce presence.

        Media acquisition comes first; if it raises, no relay connection is
        opened and the error propagates unchanged.
        """

        if self._started:
            raise SignalingError("signaling session already started; create a new one")
        self._started = True
        self._local_stream = await self._media_provider()
        if self._closed:
            self._local_stream.stop()
            return
        relay = self._relay_factory(self._handle_relay_message, self._handle_relay_disconnect)
        self._relay = relay
        try:
            self._peer_id = await relay.connect()
            self._joined = True
            await relay.send(RelayEvent.JOIN_ROOM, JoinRoom(self._room_id).to_dict())
        except (ConnectionError, OSError) as exc:
            await self.close()
            raise SignalingError(f"Could not reach the relay: {exc}") from exc
        logger.info("Joined room %s as %s", self._room_id, self._peer_id)

    def toggle_audio(self) -> bool:
        return self._toggle("audio")

    def toggle_video(self) -> bool:
        return self._toggle("video")

    def _toggle(self, kind: str) -> bool:
        stream = self._local_stream
        if stream is None:
            return False
        enabled = not stream.is_enabled(kind)
        stream.set_enabled(kind, enabled)
        return enabled

    async def close(self) -> None:
        """Close the peer, stop local tracks, then leave the room. Idempotent."""

        if self._closed:
            return
        self._closed = True
        await self._close_peer()
        self._status = PeerStatus.CLOSED
        if self._local_stream is not None:
            self._local_stream.stop()
        relay, self._relay = self._relay, None
        if relay is not None:
            if relay.connected:
                try:
                    await relay.send(RelayEvent.LEAVE_ROOM, LeaveRoom(self._room_id).to_dict())
                except (ConnectionError, OSError):
                    logger.debug("Relay gone before leave-room could be sent")
            await relay.close()
        logger.info("Signaling session for room %s closed", self._room_id)

    async def _handle_relay_message(self, event: RelayEvent, payload: dict) -> None:
        if self._closed:
            return
        try:
            if event == RelayEvent.USER_JOINED:
                await self._handle_user_joined(UserJoined.from_dict(payload))
            elif event == RelayEvent.RECEIVE_CALL:
                await self._handle_receive_call(ReceiveCall.from_dict(payload))
            elif event == RelayEvent.CALL_ACCEPTED:
                await self._handle_call_accepted(CallAccepted.from_dict(payload))
            elif event == RelayEvent.USER_LEFT:
                await self._handle_user_left(UserLeft.from_dict(payload))
            elif event == RelayEvent.ERROR:
                error = RelayErrorPayload.from_dict(payload)
                await self._fail(f"relay error: {error.reason}")
            else:
                logger.debug("Ignoring relay event %s", event.value)
        except ProtocolError as exc:
            logger.warning("Dropping malformed %s message: %s", event.value, exc)

    async def _handle_relay_disconnect(self, reason: Optional[str]) -> None:
        if self._closed or not self._joined:
            return
        self._relay = None
        await self._fail(f"relay connection lost ({reason})")

    def _has_live_peer(self) -> bool:
        return self._peer is not None and not self._peer.closed

    async def _handle_user_joined(self, message: UserJoined) -> None:
        if message.peer_id == self._peer_id:
            return
        if self._has_live_peer():
            logger.warning("Ignoring user-joined for %s: a call attempt is already active", message.peer_id)
            return
        logger.info("Peer %s joined room %s; initiating call", message.peer_id, self._room_id)
        self._remote_peer_id = message.peer_id
        self._role = PeerRole.INITIATOR
        self._status = PeerStatus.IDLE
        self._remote_stream = None
        peer = self._create_peer(initiator=True)
        try:
            await peer.start()
        except Exception as exc:
            logger.exception("Failed to create offer")
            await self._fail(f"negotiation error: {exc}")

    async def _handle_receive_call(self, message: ReceiveCall) -> None:
        if self._has_live_peer():
            logger.warning("Ignoring offer from %s: a call attempt is already active", message.caller_id)
            return
        if message.signal.type != "offer":
            logger.warning("Ignoring receive-call from %s without an offer", message.caller_id)
            return
        logger.info("Receiving call from %s", message.caller_id)
        self._remote_peer_id = message.caller_id
        self._role = PeerRole.RESPONDER
        self._status = PeerStatus.ANSWER_PENDING
        self._remote_stream = None
        peer = self._create_peer(initiator=False)
        try:
            await peer.signal(message.signal)
        except Exception as exc:
            logger.exception("Failed to answer offer")
            await self._fail(f"negotiation error: {exc}")

    async def _handle_call_accepted(self, message: CallAccepted) -> None:
        peer = self._peer
        if (
            peer is None
            or peer.closed
            or self._role != PeerRole.INITIATOR
            or self._status != PeerStatus.OFFER_SENT
            or message.from_peer_id != self._remote_peer_id
        ):
            logger.warning("Ignoring unexpected call-accepted from %s", message.from_peer_id)
            return
        logger.info("Call accepted by %s", message.from_peer_id)
        try:
            await peer.signal(message.signal)
        except Exception as exc:
            logger.exception("Failed to apply answer")
            await self._fail(f"negotiation error: {exc}")

    async def _handle_user_left(self, message: UserLeft) -> None:
        if message.peer_id != self._remote_peer_id or not self._has_live_peer():
            return
        logger.info("Peer %s left room %s", message.peer_id, self._room_id)
        await self._close_peer()
        self._status = PeerStatus.CLOSED
        await _invoke(self._on_call_ended, "remote participant left")

    def _create_peer(self, *, initiator: bool) -> PeerConnection:
        assert self._local_stream is not None
        peer = self._peer_factory(
            initiator=initiator,
            stream=self._local_stream,
            on_signal=self._handle_local_signal,
            on_track=self._handle_remote_track,
            on_connect=self._handle_peer_connected,
            on_error=self._handle_peer_error,
        )
        self._peer = peer
        return peer

    async def _handle_local_signal(self, description: SessionDescription) -> None:
        relay = self._relay
        if relay is None or self._closed or self._remote_peer_id is None or self._peer_id is None:
            return
        if self._role == PeerRole.INITIATOR:
            if self._status != PeerStatus.IDLE:
                logger.warning("Suppressing duplicate offer toward %s", self._remote_peer_id)
                return
            message = SendCall(to_peer_id=self._remote_peer_id, from_peer_id=self._peer_id, signal=description)
            await relay.send(RelayEvent.SEND_CALL, message.to_dict())
            if self._status == PeerStatus.IDLE:
                self._status = PeerStatus.OFFER_SENT
            return
        if self._status != PeerStatus.ANSWER_PENDING:
            logger.warning("Suppressing duplicate answer toward %s", self._remote_peer_id)
            return
        reply = AcceptCall(caller_id=self._remote_peer_id, signal=description)
        await relay.send(RelayEvent.ACCEPT_CALL, reply.to_dict())
        if self._status == PeerStatus.ANSWER_PENDING:
            self._status = PeerStatus.ANSWER_SENT

    async def _handle_remote_track(self, track) -> None:
        if self._remote_stream is None:
            self._remote_stream = MediaStream()
        self._remote_stream.add_track(track)
        await _invoke(self._on_remote_track, track)

    async def _handle_peer_connected(self) -> None:
        if self._closed or not self._has_live_peer():
            return
        self._status = PeerStatus.CONNECTED
        logger.info("Peer connection with %s established", self._remote_peer_id)
        await _invoke(self._on_connected)

    async def _handle_peer_error(self, reason: str) -> None:
        await self._fail(reason)

    async def _close_peer(self) -> None:
        peer = self._peer
        if peer is not None and not peer.closed:
            await peer.close()

    async def _fail(self, reason: str) -> None:
        if self._closed:
            return
        logger.warning("Call failed in room %s: %s", self._room_id, reason)
        await self._close_peer()
        self._status = PeerStatus.CLOSED
        await _invoke(self._on_call_failed, reason)
