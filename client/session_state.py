"""Meeting lifecycle: validation, slot confirmation, join-window gating, expiry.

``transition`` is a pure function over immutable states; ``MeetingSession``
wraps it with the directory calls, an injected clock and the single countdown
timer that moves a confirmed slot into the joinable state.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Union

from shared.protocol import MeetingValidation
from shared.slot_clock import (
    SlotTime,
    countdown_seconds,
    join_window_opens_at,
    resolve_next_occurrence,
    seconds_between,
)

from .directory_client import DirectoryClient, DirectoryError

logger = logging.getLogger(__name__)

TICK_INTERVAL = 1.0
VALIDATION_UNREACHABLE_MESSAGE = "Could not validate meeting link. Please try again."
DEFAULT_INVALID_MESSAGE = "Meeting link is invalid or expired."


class SessionPhase(str, Enum):
    UNSCHEDULED = "unscheduled"
    AWAITING_SLOT = "awaiting_slot"
    SLOT_CONFIRMED = "slot_confirmed"
    JOINABLE_NOW = "joinable_now"
    IN_CALL = "in_call"
    EXPIRED = "expired"


class SessionStateError(RuntimeError):
    """Operation not permitted in the current phase."""


@dataclass(slots=True, frozen=True)
class SessionState:
    phase: SessionPhase = SessionPhase.UNSCHEDULED
    meeting_id: Optional[str] = None
    slot: Optional[SlotTime] = None
    slot_instant: Optional[datetime] = None
    window_opens_at: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def can_join(self) -> bool:
        return self.phase == SessionPhase.JOINABLE_NOW


@dataclass(slots=True, frozen=True)
class MeetingValidated:
    meeting_id: str
    slot: Optional[SlotTime] = None


@dataclass(slots=True, frozen=True)
class ValidationFailed:
    message: str


@dataclass(slots=True, frozen=True)
class SlotConfirmed:
    slot: SlotTime


@dataclass(slots=True, frozen=True)
class SlotRejected:
    message: str


@dataclass(slots=True, frozen=True)
class Tick:
    pass


@dataclass(slots=True, frozen=True)
class JoinStarted:
    pass


@dataclass(slots=True, frozen=True)
class CallEnded:
    message: Optional[str] = None


SessionEvent = Union[MeetingValidated, ValidationFailed, SlotConfirmed, SlotRejected, Tick, JoinStarted, CallEnded]


def _with_slot(state: SessionState, slot: SlotTime, now: datetime) -> SessionState:
    instant = resolve_next_occurrence(slot, now)
    return replace(
        state,
        phase=SessionPhase.SLOT_CONFIRMED,
        slot=slot,
        slot_instant=instant,
        window_opens_at=join_window_opens_at(instant),
        message=None,
    )


def transition(state: SessionState, event: SessionEvent, now: datetime) -> SessionState:
    """Return the state after ``event`` at ``now``.

    Events that do not apply to the current phase leave it unchanged.
    ``EXPIRED`` is terminal.
    """

    phase = state.phase
    if phase == SessionPhase.EXPIRED:
        return state

    if isinstance(event, ValidationFailed):
        return replace(state, phase=SessionPhase.EXPIRED, message=event.message)

    if isinstance(event, MeetingValidated):
        if phase == SessionPhase.UNSCHEDULED:
            state = replace(state, meeting_id=event.meeting_id)
            if event.slot is None:
                return replace(state, phase=SessionPhase.AWAITING_SLOT, message=None)
            return _with_slot(state, event.slot, now)
        if (
            phase in (SessionPhase.AWAITING_SLOT, SessionPhase.SLOT_CONFIRMED, SessionPhase.JOINABLE_NOW)
            and event.slot is not None
            and event.slot != state.slot
        ):
            # The directory holds a slot other than the one being counted down to.
            return _with_slot(state, event.slot, now)
        return state

    if isinstance(event, SlotConfirmed):
        if phase in (SessionPhase.AWAITING_SLOT, SessionPhase.SLOT_CONFIRMED, SessionPhase.JOINABLE_NOW):
            return _with_slot(state, event.slot, now)
        return state

    if isinstance(event, SlotRejected):
        if phase == SessionPhase.AWAITING_SLOT:
            return replace(state, message=event.message)
        return state

    if isinstance(event, Tick):
        if phase == SessionPhase.SLOT_CONFIRMED:
            if state.window_opens_at is None:
                raise SessionStateError("confirmed slot has no join window")
            if seconds_between(state.window_opens_at, now) >= 0:
                return replace(state, phase=SessionPhase.JOINABLE_NOW)
        return state

    if isinstance(event, JoinStarted):
        if phase != SessionPhase.JOINABLE_NOW:
            raise SessionStateError(f"cannot join while {phase.value}")
        return replace(state, phase=SessionPhase.IN_CALL, message=None)

    if isinstance(event, CallEnded):
        if phase == SessionPhase.IN_CALL:
            return replace(state, phase=SessionPhase.JOINABLE_NOW, message=event.message)
        return state

    raise TypeError(f"unknown session event {event!r}")


Clock = Callable[[], datetime]
StateListener = Callable[[SessionState, int], None]


def local_now() -> datetime:
    return datetime.now().astimezone()


class MeetingSession:
    """Lifecycle of one meeting as seen by one client."""

    def __init__(
        self,
        directory: DirectoryClient,
        *,
        clock: Clock = local_now,
        tick_interval: float = TICK_INTERVAL,
    ) -> None:
        self._directory = directory
        self._clock = clock
        self._tick_interval = tick_interval
        self._state = SessionState()
        self._listeners: List[StateListener] = []
        self._timer: Optional[asyncio.Task[None]] = None
        self._timer_generation = 0
        self._countdown = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    @property
    def message(self) -> Optional[str]:
        return self._state.message

    @property
    def can_join(self) -> bool:
        return self._state.can_join

    @property
    def countdown(self) -> int:
        """Seconds until the join window opens, as of the last tick."""
        return self._countdown

    @property
    def seconds_until_slot(self) -> int:
        if self._state.slot_instant is None:
            return 0
        return countdown_seconds(self._state.slot_instant, self._clock())

    @property
    def timer_active(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def open(self, meeting_id: str) -> SessionState:
        """Validate ``meeting_id`` with the directory and enter the lifecycle."""

        if self._state.phase != SessionPhase.UNSCHEDULED:
            raise SessionStateError("meeting session already opened; create a new one")
        try:
            validation = await self._directory.validate_meeting(meeting_id)
        except DirectoryError as exc:
            logger.warning("Could not validate meeting %s: %s", meeting_id, exc.message)
            self._apply(ValidationFailed(VALIDATION_UNREACHABLE_MESSAGE))
            return self._state
        self._apply_validation(meeting_id, validation)
        return self._state

    async def confirm_slot(self, slot_time: str) -> bool:
        """Ask the directory to fix the slot; on failure stay put with a message."""

        if self._state.phase not in (SessionPhase.AWAITING_SLOT, SessionPhase.SLOT_CONFIRMED, SessionPhase.JOINABLE_NOW):
            raise SessionStateError(f"cannot select a slot while {self._state.phase.value}")
        try:
            slot = SlotTime.parse(slot_time)
        except ValueError:
            self._apply(SlotRejected("Please select a time slot before submitting."))
            return False
        meeting_id = self._require_meeting_id()
        try:
            result = await self._directory.select_slot(meeting_id, str(slot))
        except DirectoryError as exc:
            self._apply(SlotRejected(f"Error saving slot. Please try again: {exc.message}"))
            return False
        if not result.success:
            self._apply(SlotRejected(f"Error saving slot. Please try again: {result.message}"))
            return False
        self._apply(SlotConfirmed(slot))
        return True

    async def begin_call(self) -> SessionState:
        """Re-validate and move to ``IN_CALL``.

        Raises :class:`SessionStateError` when the window is not open, or when
        the re-validation invalidated the meeting or moved its slot.
        """

        if self._state.phase != SessionPhase.JOINABLE_NOW:
            raise SessionStateError(f"cannot join while {self._state.phase.value}")
        meeting_id = self._require_meeting_id()
        try:
            validation = await self._directory.validate_meeting(meeting_id)
        except DirectoryError as exc:
            self._state = replace(self._state, message=f"Failed to join meeting. Please try again. ({exc.message})")
            self._notify()
            raise SessionStateError(self._state.message) from exc
        self._apply_validation(meeting_id, validation)
        if self._state.phase == SessionPhase.SLOT_CONFIRMED:
            raise SessionStateError(f"The meeting slot changed to {self._state.slot}; wait for the join window.")
        if self._state.phase != SessionPhase.JOINABLE_NOW:
            raise SessionStateError(self._state.message or f"meeting is {self._state.phase.value}")
        self._apply(JoinStarted())
        return self._state

    async def refresh(self) -> SessionState:
        """Re-validate an opened meeting, picking up a slot set by the other party."""

        if self._state.phase in (SessionPhase.UNSCHEDULED, SessionPhase.EXPIRED):
            return self._state
        meeting_id = self._require_meeting_id()
        try:
            validation = await self._directory.validate_meeting(meeting_id)
        except DirectoryError as exc:
            logger.warning("Could not re-validate meeting %s: %s", meeting_id, exc.message)
            return self._state
        self._apply_validation(meeting_id, validation)
        return self._state

    def end_call(self, message: Optional[str] = None) -> None:
        self._apply(CallEnded(message))

    def cancel_countdown(self) -> None:
        timer, self._timer = self._timer, None
        self._timer_generation += 1
        if timer is None:
            return
        if timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    def close(self) -> None:
        self.cancel_countdown()
        self._listeners.clear()

    def _require_meeting_id(self) -> str:
        meeting_id = self._state.meeting_id
        if meeting_id is None:
            raise SessionStateError("no meeting has been opened")
        return meeting_id

    def _apply_validation(self, meeting_id: str, validation: MeetingValidation) -> None:
        if not validation.valid:
            self._apply(ValidationFailed(validation.message or DEFAULT_INVALID_MESSAGE))
            return
        slot: Optional[SlotTime] = None
        if validation.slot_time:
            try:
                slot = SlotTime.parse(validation.slot_time)
            except ValueError:
                logger.warning("Directory returned malformed slot %r for %s", validation.slot_time, meeting_id)
        self._apply(MeetingValidated(meeting_id, slot))

    def _apply(self, event: SessionEvent) -> None:
        previous = self._state
        self._state = transition(previous, event, self._clock())
        if self._state.phase == SessionPhase.SLOT_CONFIRMED and (
            previous.phase != SessionPhase.SLOT_CONFIRMED or previous.window_opens_at != self._state.window_opens_at
        ):
            self._start_countdown()
        elif self._state.phase != SessionPhase.SLOT_CONFIRMED:
            self.cancel_countdown()
        if self._state.phase != previous.phase:
            logger.info("Meeting %s: %s -> %s", self._state.meeting_id, previous.phase.value, self._state.phase.value)
        self._notify()

    def _start_countdown(self) -> None:
        self.cancel_countdown()
        self._tick(notify=False)
        if self._state.phase != SessionPhase.SLOT_CONFIRMED:
            return
        generation = self._timer_generation

        async def _run() -> None:
            try:
                while generation == self._timer_generation:
                    await asyncio.sleep(self._tick_interval)
                    if generation != self._timer_generation:
                        return
                    self._tick()
            except asyncio.CancelledError:
                return

        self._timer = asyncio.get_running_loop().create_task(_run())

    def _tick(self, *, notify: bool = True) -> None:
        try:
            state = self._state
            if state.window_opens_at is None:
                raise SessionStateError("countdown running without a join window")
            now = self._clock()
            self._countdown = countdown_seconds(state.window_opens_at, now)
            updated = transition(state, Tick(), now)
        except Exception:
            logger.exception("Countdown tick failed; stopping the timer")
            self.cancel_countdown()
            return
        if updated.phase != state.phase:
            self._countdown = 0
            self._state = updated
            self.cancel_countdown()
            logger.info("Meeting %s: join window is open", updated.meeting_id)
        if notify:
            self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state, self._countdown)
            except Exception:
                logger.exception("Session listener failed")
