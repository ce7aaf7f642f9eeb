from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from shared.protocol import (
    INVITE_LIFETIME_MINUTES,
    MeetingCreated,
    MeetingValidation,
    SlotSelection,
    build_invite_link,
    normalize_phone_number,
)
from shared.slot_clock import SlotTime, resolve_next_occurrence

logger = logging.getLogger(__name__)

DEFAULT_SLOT_MINUTES = 30
NOT_FOUND_MESSAGE = "Meeting not found."
EXPIRED_MESSAGE = "Meeting link has expired."

Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now().astimezone()


class MeetingStatus(str, Enum):
    PENDING = "pending"
    SLOT_CONFIRMED = "slot-confirmed"
    EXPIRED = "expired"


class MeetingLookupError(LookupError):
    """Unknown or expired meeting; ``message`` is returned to the caller verbatim."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass(slots=True)
class MeetingRecord:
    meeting_id: str
    recipient: str
    created_at: datetime
    expires_at: datetime
    slot: Optional[SlotTime] = None
    slot_instant: Optional[datetime] = None
    status: MeetingStatus = MeetingStatus.PENDING

    def to_dict(self) -> Dict[str, object]:
        return {
            "meetingId": self.meeting_id,
            "recipientPhoneNumber": self.recipient,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "slotTime": str(self.slot) if self.slot else None,
            "status": self.status.value,
        }


class MeetingStore:
    """In-memory meeting records with lazy expiry against an injected clock."""

    def __init__(
        self,
        *,
        clock: Clock = _local_now,
        meeting_lifetime: timedelta = timedelta(minutes=INVITE_LIFETIME_MINUTES),
        slot_length: timedelta = timedelta(minutes=DEFAULT_SLOT_MINUTES),
    ) -> None:
        self._clock = clock
        self._meeting_lifetime = meeting_lifetime
        self._slot_length = slot_length
        self._meetings: Dict[str, MeetingRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, recipient: str) -> MeetingRecord:
        number = normalize_phone_number(recipient)
        async with self._lock:
            now = self._clock()
            record = MeetingRecord(
                meeting_id=uuid.uuid4().hex,
                recipient=number,
                created_at=now,
                expires_at=now + self._meeting_lifetime,
            )
            self._meetings[record.meeting_id] = record
            logger.info("Created meeting %s for %s", record.meeting_id, number)
            return record

    async def get(self, meeting_id: str) -> MeetingRecord:
        """Return the live record, or raise :class:`MeetingLookupError`."""

        async with self._lock:
            return self._get_live_locked(meeting_id)

    async def select_slot(self, meeting_id: str, slot: SlotTime) -> MeetingRecord:
        """Confirm ``slot``, replacing any previously confirmed one."""

        async with self._lock:
            record = self._get_live_locked(meeting_id)
            previous = record.slot
            instant = resolve_next_occurrence(slot, self._clock())
            record.slot = slot
            record.slot_instant = instant
            record.expires_at = instant + self._slot_length
            record.status = MeetingStatus.SLOT_CONFIRMED
            if previous is not None and previous != slot:
                logger.info("Meeting %s slot changed from %s to %s", meeting_id, previous, slot)
            else:
                logger.info("Meeting %s slot confirmed for %s", meeting_id, slot)
            return record

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            now = self._clock()
            for record in self._meetings.values():
                self._refresh_status(record, now)
            counts = {status.value: 0 for status in MeetingStatus}
            for record in self._meetings.values():
                counts[record.status.value] += 1
            return {"meeting_count": len(self._meetings), "by_status": counts}

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            stale = [mid for mid, record in self._meetings.items() if self._refresh_status(record, now) == MeetingStatus.EXPIRED]
            for meeting_id in stale:
                del self._meetings[meeting_id]
            if stale:
                logger.info("Purged %d expired meetings", len(stale))
            return len(stale)

    def _get_live_locked(self, meeting_id: str) -> MeetingRecord:
        record = self._meetings.get(meeting_id)
        if record is None:
            raise MeetingLookupError(NOT_FOUND_MESSAGE, status_code=404)
        if self._refresh_status(record, self._clock()) == MeetingStatus.EXPIRED:
            raise MeetingLookupError(EXPIRED_MESSAGE, status_code=410)
        return record

    @staticmethod
    def _refresh_status(record: MeetingRecord, now: datetime) -> MeetingStatus:
        if record.status != MeetingStatus.EXPIRED and now >= record.expires_at:
            record.status = MeetingStatus.EXPIRED
        return record.status


def _failure(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=status_code)


class MeetingDirectory:
    """FastAPI application serving meeting creation, validation and slot selection."""

    def __init__(self, store: Optional[MeetingStore] = None, *, public_url: str = "http://localhost:3000") -> None:
        self._store = store or MeetingStore()
        self._public_url = public_url.rstrip("/")
        self._started_at = time.time()
        self._app = FastAPI(title="Meeting directory")

        @self._app.post("/create-meeting")
        async def create_meeting(payload: dict = Body(...)):
            raw = payload.get("recipientPhoneNumber")
            if not isinstance(raw, str):
                return _failure("Please enter a recipient phone number.", 400)
            try:
                record = await self._store.create(raw)
            except ValueError as exc:
                return _failure(str(exc), 400)
            return MeetingCreated(
                meeting_id=record.meeting_id,
                meeting_link=self.meeting_link(record.meeting_id),
                recipient=record.recipient,
            ).to_dict()

        @self._app.get("/validate-meeting/{meeting_id}")
        async def validate_meeting(meeting_id: str) -> dict:
            try:
                record = await self._store.get(meeting_id)
            except MeetingLookupError as exc:
                return MeetingValidation(valid=False, message=exc.message).to_dict()
            return MeetingValidation(valid=True, slot_time=str(record.slot) if record.slot else None).to_dict()

        @self._app.post("/select-slot")
        async def select_slot(payload: dict = Body(...)):
            meeting_id = payload.get("meetingId")
            raw_slot = payload.get("slotTime")
            if not isinstance(meeting_id, str) or not isinstance(raw_slot, str):
                return _failure("meetingId and slotTime are required.", 400)
            try:
                slot = SlotTime.parse(raw_slot)
            except ValueError as exc:
                return _failure(str(exc), 400)
            try:
                await self._store.select_slot(meeting_id, slot)
            except MeetingLookupError as exc:
                return _failure(exc.message, exc.status_code)
            return SlotSelection(success=True, message=f"Slot {slot} confirmed.").to_dict()

        @self._app.post("/send-invite")
        async def send_invite(payload: dict = Body(...)):
            meeting_id = payload.get("meetingId")
            if not isinstance(meeting_id, str):
                return _failure("meetingId is required.", 400)
            try:
                record = await self._store.get(meeting_id)
            except MeetingLookupError as exc:
                return _failure(exc.message, exc.status_code)
            raw = payload.get("recipientPhoneNumber")
            try:
                recipient = normalize_phone_number(raw) if isinstance(raw, str) else record.recipient
            except ValueError as exc:
                return _failure(str(exc), 400)
            link = build_invite_link(recipient, self.meeting_link(meeting_id), meeting_id)
            logger.info("Invite for meeting %s prepared for %s", meeting_id, recipient)
            return {"success": True, "inviteLink": link}

        @self._app.get("/api/health")
        async def health() -> dict:
            snapshot = await self._store.snapshot()
            return {
                "status": "ok",
                "meeting_count": snapshot["meeting_count"],
                "by_status": snapshot["by_status"],
                "uptime_seconds": max(0.0, time.time() - self._started_at),
                "timestamp": time.time(),
            }

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def store(self) -> MeetingStore:
        return self._store

    def meeting_link(self, meeting_id: str) -> str:
        return f"{self._public_url}/schedule/{meeting_id}"


class DirectoryServer:
    """Background task helper for running the directory FastAPI server."""

    def __init__(
        self,
        store: Optional[MeetingStore] = None,
        *,
        host: str,
        port: int,
        public_url: Optional[str] = None,
    ) -> None:
        self._directory = MeetingDirectory(store, public_url=public_url or f"http://{host}:{port}")
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def directory(self) -> MeetingDirectory:
        return self._directory

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._directory.app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Meeting directory available at http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
