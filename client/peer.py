from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from shared.protocol import SessionDescription

from .media import MediaStream

logger = logging.getLogger(__name__)

SignalCallback = Callable[[SessionDescription], Awaitable[None] | None]
TrackCallback = Callable[[object], Awaitable[None] | None]
ConnectCallback = Callable[[], Awaitable[None] | None]
ErrorCallback = Callable[[str], Awaitable[None] | None]


class PeerClosedError(RuntimeError):
    """A closed peer connection was asked to negotiate again."""


async def _invoke(callback: Optional[Callable[..., Awaitable[None] | None]], *args: object) -> None:
    if callback is None:
        return
    result = callback(*args)
    if asyncio.iscoroutine(result):
        await result


class PeerConnection:
    """Single-use wrapper around an aiortc peer connection.

    Offers and answers are emitted through ``on_signal`` only after ICE
    gathering has completed, so each side produces exactly one description.
    """

    def __init__(
        self,
        *,
        initiator: bool,
        stream: MediaStream,
        on_signal: SignalCallback,
        on_track: Optional[TrackCallback] = None,
        on_connect: Optional[ConnectCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        ice_servers: Sequence[str] = (),
    ) -> None:
        self.initiator = initiator
        self._stream = stream
        self._on_signal = on_signal
        self._on_track = on_track
        self._on_connect = on_connect
        self._on_error = on_error
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers]) if ice_servers else None
        self._pc = RTCPeerConnection(configuration=configuration)
        self._closed = False
        self._pc.on("track", self._handle_track)
        self._pc.on("connectionstatechange", self._handle_connection_state)

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Create and emit the offer; a no-op for the responder."""

        if not self.initiator:
            return
        self._ensure_open()
        self._add_local_tracks()
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        await self._emit_local_description()

    async def signal(self, description: SessionDescription) -> None:
        self._ensure_open()
        if description.type == "offer":
            if self.initiator:
                raise ValueError("initiator cannot accept an offer")
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type="offer"))
            self._add_local_tracks()
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
            await self._emit_local_description()
            return
        if not self.initiator:
            raise ValueError("responder cannot accept an answer")
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type="answer"))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pc.close()
        except Exception:
            logger.exception("Error while closing peer connection")

    def _ensure_open(self) -> None:
        if self._closed:
            raise PeerClosedError("peer connection is closed; create a new one")

    def _add_local_tracks(self) -> None:
        for track in self._stream.tracks:
            self._pc.addTrack(track)

    async def _emit_local_description(self) -> None:
        local = self._pc.localDescription
        await _invoke(self._on_signal, SessionDescription(type=local.type, sdp=local.sdp))

    async def _handle_track(self, track) -> None:
        logger.info("Remote %s track received", track.kind)
        try:
            await _invoke(self._on_track, track)
        except Exception:
            logger.exception("Track callback failed")

    async def _handle_connection_state(self) -> None:
        state = self._pc.connectionState
        logger.debug("Peer connection state is %s", state)
        try:
            if state == "connected":
                await _invoke(self._on_connect)
            elif state == "failed" and not self._closed:
                await _invoke(self._on_error, "peer connection failed")
        except Exception:
            logger.exception("Connection state callback failed")
