"""Pure time computations for meeting slots and join windows."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

JOIN_WINDOW_LEAD = timedelta(milliseconds=180_000)

_SLOT_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(slots=True, frozen=True)
class SlotTime:
    """Wall-clock time of day with no date component."""

    hour: int
    minute: int

    def __post_init__(self) -> None:
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"invalid slot time {self.hour}:{self.minute}")

    @classmethod
    def parse(cls, raw: str) -> "SlotTime":
        match = _SLOT_PATTERN.match(raw.strip()) if isinstance(raw, str) else None
        if match is None:
            raise ValueError(f"slot time must look like HH:MM, got {raw!r}")
        return cls(hour=int(match.group(1)), minute=int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


def _absolute(moment: datetime) -> datetime:
    # Aware datetimes sharing a tzinfo compare by wall clock; compare in UTC instead.
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc)


def resolve_next_occurrence(slot: SlotTime, now: datetime) -> datetime:
    """Return the first instant at ``slot`` that is strictly after ``now``.

    The candidate is built on ``now``'s calendar date and timezone; when it is
    not after ``now`` it moves to the same wall-clock time on the next day.
    """

    candidate = now.replace(hour=slot.hour, minute=slot.minute, second=0, microsecond=0)
    if _absolute(candidate) <= _absolute(now):
        next_day = candidate.date() + timedelta(days=1)
        candidate = candidate.replace(year=next_day.year, month=next_day.month, day=next_day.day)
    return candidate


def join_window_opens_at(instant: datetime) -> datetime:
    """Instant exactly 180 seconds of elapsed time before ``instant``.

    No clamping: a result in the past means the window is already open.
    """

    if instant.tzinfo is None:
        return instant - JOIN_WINDOW_LEAD
    return (instant.astimezone(timezone.utc) - JOIN_WINDOW_LEAD).astimezone(instant.tzinfo)


def seconds_between(start: datetime, end: datetime) -> float:
    return (_absolute(end) - _absolute(start)).total_seconds()


def countdown_seconds(target: datetime, now: datetime) -> int:
    """Whole seconds left until ``target``, rounded up and never negative."""

    remaining = seconds_between(now, target)
    if remaining <= 0:
        return 0
    return math.ceil(remaining)
