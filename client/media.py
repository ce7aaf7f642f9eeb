from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, List, Protocol

logger = logging.getLogger(__name__)

CAMERA_UNAVAILABLE_MESSAGE = "Camera/microphone unavailable"


class MediaAcquisitionError(RuntimeError):
    """Local camera or microphone could not be opened."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"{CAMERA_UNAVAILABLE_MESSAGE}: {detail}")
        self.detail = detail


class MediaTrack(Protocol):
    kind: str
    enabled: bool

    @property
    def readyState(self) -> str: ...

    def stop(self) -> None: ...


MediaProvider = Callable[[], Awaitable["MediaStream"]]


class MediaStream:
    """A group of audio/video tracks owned by exactly one signaling session."""

    def __init__(self, tracks: Iterable[MediaTrack] = ()) -> None:
        self._tracks: List[MediaTrack] = list(tracks)

    @property
    def tracks(self) -> List[MediaTrack]:
        return list(self._tracks)

    def add_track(self, track: MediaTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def tracks_of(self, kind: str) -> List[MediaTrack]:
        return [track for track in self._tracks if track.kind == kind]

    def live_tracks(self) -> List[MediaTrack]:
        return [track for track in self._tracks if track.readyState == "live"]

    def set_enabled(self, kind: str, enabled: bool) -> None:
        for track in self.tracks_of(kind):
            track.enabled = enabled

    def is_enabled(self, kind: str) -> bool:
        tracks = self.tracks_of(kind)
        return bool(tracks) and all(track.enabled for track in tracks)

    def stop(self) -> None:
        for track in self._tracks:
            if track.readyState == "ended":
                continue
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop %s track", track.kind)
