from __future__ import annotations

import asyncio
import functools
import logging
from typing import Callable, Dict, Optional, Sequence, Set

from shared.protocol import MeetingCreated, build_invite_link

from .directory_client import DirectoryClient, DirectoryError
from .media import MediaAcquisitionError, MediaProvider, MediaStream
from .peer import PeerConnection
from .relay_client import RelayClient
from .session_state import (
    Clock,
    MeetingSession,
    SessionPhase,
    SessionState,
    SessionStateError,
    TICK_INTERVAL,
    local_now,
)
from .signaling import PeerFactory, SignalingError, SignalingSession

logger = logging.getLogger(__name__)

TrackHandler = Callable[[object], None]


async def default_media_provider() -> MediaStream:
    from .devices import acquire_user_media

    return await acquire_user_media()


class MeetingApp:
    """Client runtime tying the directory, the meeting lifecycle and signaling together."""

    def __init__(
        self,
        directory: DirectoryClient,
        *,
        relay_host: str,
        relay_port: int,
        media_provider: MediaProvider = default_media_provider,
        peer_factory: Optional[PeerFactory] = None,
        ice_servers: Sequence[str] = (),
        clock: Clock = local_now,
        tick_interval: float = TICK_INTERVAL,
        on_remote_track: Optional[TrackHandler] = None,
    ) -> None:
        if not relay_host:
            raise ValueError("relay host is required")
        self._directory = directory
        self._relay_host = relay_host
        self._relay_port = relay_port
        self._media_provider = media_provider
        self._peer_factory = peer_factory or functools.partial(PeerConnection, ice_servers=tuple(ice_servers))
        self._clock = clock
        self._tick_interval = tick_interval
        self._on_remote_track = on_remote_track
        self._session: Optional[MeetingSession] = None
        self._signaling: Optional[SignalingSession] = None
        self._background: Set[asyncio.Task[object]] = set()
        self._call_finished = asyncio.Event()
        self._call_connected = asyncio.Event()
        self.last_error: Optional[str] = None

    @property
    def session(self) -> Optional[MeetingSession]:
        return self._session

    @property
    def signaling(self) -> Optional[SignalingSession]:
        return self._signaling

    async def create_meeting(self, recipient: str, *, send_invite: bool = False) -> Optional[MeetingCreated]:
        self.last_error = None
        try:
            created = await self._directory.create_meeting(recipient)
        except DirectoryError as exc:
            self.last_error = exc.message
            logger.warning("Meeting creation failed: %s", exc.message)
            return None
        if send_invite:
            self._spawn(self._directory.send_invite(created.meeting_id, created.recipient))
        return created

    @staticmethod
    def invite_link(created: MeetingCreated) -> str:
        return build_invite_link(created.recipient, created.meeting_link, created.meeting_id)

    async def open_meeting(self, meeting_id: str) -> SessionState:
        """Start a fresh lifecycle for ``meeting_id``, discarding any previous one."""

        await self._discard_session()
        self.last_error = None
        session = MeetingSession(self._directory, clock=self._clock, tick_interval=self._tick_interval)
        self._session = session
        state = await session.open(meeting_id)
        if state.phase == SessionPhase.EXPIRED:
            self.last_error = state.message
        return state

    async def confirm_slot(self, slot_time: str) -> bool:
        session = self._require_session()
        confirmed = await session.confirm_slot(slot_time)
        self.last_error = None if confirmed else session.message
        return confirmed

    async def join_call(self) -> bool:
        """Re-validate, acquire media and enter the room. Returns False on failure."""

        session = self._require_session()
        await self._teardown_signaling()
        self.last_error = None
        try:
            await session.begin_call()
        except SessionStateError as exc:
            self.last_error = str(exc)
            return False

        self._call_finished.clear()
        self._call_connected.clear()
        signaling = SignalingSession(
            session.state.meeting_id or "",
            relay_factory=self._create_relay,
            media_provider=self._media_provider,
            peer_factory=self._peer_factory,
            on_connected=self._handle_connected,
            on_remote_track=self._on_remote_track,
            on_call_failed=self._handle_call_failed,
            on_call_ended=self._handle_call_ended,
        )
        self._signaling = signaling
        try:
            await signaling.start()
        except MediaAcquisitionError as exc:
            self.last_error = str(exc)
        except SignalingError as exc:
            self.last_error = f"Call failed: {exc}"
        else:
            return True
        logger.warning("Could not start call: %s", self.last_error)
        await self._teardown_signaling()
        if session.phase == SessionPhase.IN_CALL:
            session.end_call(self.last_error)
        return False

    async def wait_until_connected(self) -> None:
        await self._call_connected.wait()

    async def wait_for_call_end(self) -> None:
        await self._call_finished.wait()

    async def leave_call(self) -> None:
        """Cancel the countdown, close the peer, stop tracks, then leave the room."""

        session = self._session
        if session is not None:
            session.cancel_countdown()
        await self._teardown_signaling()
        if session is not None and session.phase == SessionPhase.IN_CALL:
            session.end_call(self.last_error)

    def toggle_audio(self) -> bool:
        return self._signaling.toggle_audio() if self._signaling else False

    def toggle_video(self) -> bool:
        return self._signaling.toggle_video() if self._signaling else False

    def snapshot(self) -> Dict[str, object]:
        session = self._session
        signaling = self._signaling
        state = session.state if session else None
        local_stream = signaling.local_stream if signaling else None
        return {
            "meeting_id": state.meeting_id if state else None,
            "phase": state.phase.value if state else None,
            "slot": str(state.slot) if state and state.slot else None,
            "countdown": session.countdown if session else 0,
            "seconds_until_slot": session.seconds_until_slot if session else 0,
            "can_join": session.can_join if session else False,
            "call_status": signaling.status.value if signaling else None,
            "role": signaling.role.value if signaling and signaling.role else None,
            "audio_enabled": local_stream.is_enabled("audio") if local_stream else False,
            "video_enabled": local_stream.is_enabled("video") if local_stream else False,
            "message": self.last_error or (state.message if state else None),
        }

    async def close(self) -> None:
        await self._discard_session()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._directory.aclose()

    def _create_relay(self, on_message, on_disconnect) -> RelayClient:
        return RelayClient(self._relay_host, self._relay_port, on_message, on_disconnect=on_disconnect)

    def _require_session(self) -> MeetingSession:
        if self._session is None:
            raise SessionStateError("no meeting is open")
        return self._session

    async def _discard_session(self) -> None:
        await self.leave_call()
        if self._session is not None:
            self._session.close()
            self._session = None

    async def _teardown_signaling(self) -> None:
        signaling, self._signaling = self._signaling, None
        if signaling is not None:
            await signaling.close()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _handle_connected(self) -> None:
        self._call_connected.set()

    async def _handle_call_failed(self, reason: str) -> None:
        await self._finish_call(f"Call failed: {reason}")

    async def _handle_call_ended(self, reason: str) -> None:
        await self._finish_call(reason)

    async def _finish_call(self, message: str) -> None:
        """Release the failed or abandoned call so the user can join again."""

        self.last_error = message
        await self._teardown_signaling()
        session = self._session
        if session is not None and session.phase == SessionPhase.IN_CALL:
            session.end_call(message)
        self._call_finished.set()
