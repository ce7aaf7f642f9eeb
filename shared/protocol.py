"""Core protocol primitives shared between the relay server, clients and directory.

Signaling travels over a single TCP connection per client as length-prefixed
JSON envelopes. This module centralises serialization/deserialization helpers
and the typed payloads so both halves of the application remain in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict
from urllib.parse import quote

import json
import struct


class ProtocolError(ValueError):
    """Raised when a payload does not match the expected message shape."""


class RelayEvent(str, Enum):
    """Room-scoped events exchanged with the relay server."""

    HELLO = "hello"
    WELCOME = "welcome"
    HEARTBEAT = "heartbeat"
    JOIN_ROOM = "join-room"
    USER_JOINED = "user-joined"
    SEND_CALL = "send-call"
    RECEIVE_CALL = "receive-call"
    ACCEPT_CALL = "accept-call"
    CALL_ACCEPTED = "call-accepted"
    LEAVE_ROOM = "leave-room"
    USER_LEFT = "user-left"
    ERROR = "error"


class RelayEnvelope(TypedDict):
    """Generic representation of relay messages sent over TCP."""

    event: str
    data: Dict[str, Any]


def encode_relay_message(event: RelayEvent, data: Dict[str, Any]) -> bytes:
    """Serialize a relay message using length-prefixed JSON."""

    envelope: RelayEnvelope = {
        "event": event.value,
        "data": data,
    }
    payload = json.dumps(envelope, separators=(',', ':')).encode("utf-8")
    return struct.pack("!I", len(payload)) + payload


def decode_relay_stream(buffer: bytes) -> tuple[list[RelayEnvelope], bytes]:
    """Decode as many complete relay messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer). A frame that is not a
    JSON object with ``event`` and ``data`` keys raises :class:`ProtocolError`.
    """

    offset = 0
    messages: list[RelayEnvelope] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        try:
            envelope = json.loads(buffer[start:end].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProtocolError("relay frame is not valid JSON") from exc
        if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), dict) or "event" not in envelope:
            raise ProtocolError("relay frame is missing event or data")
        messages.append(envelope)  # type: ignore[arg-type]
        offset = end

    return messages, buffer[offset:]


def parse_event(raw: object) -> RelayEvent:
    try:
        return RelayEvent(raw)
    except ValueError as exc:
        raise ProtocolError(f"unknown relay event {raw!r}") from exc


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"'{key}' must be a non-empty string")
    return value


def _require_dict(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ProtocolError(f"'{key}' must be an object")
    return value


@dataclass(slots=True, frozen=True)
class SessionDescription:
    """A complete (non-trickle) SDP offer or answer."""

    type: str
    sdp: str

    def __post_init__(self) -> None:
        if self.type not in ("offer", "answer"):
            raise ProtocolError(f"unsupported description type {self.type!r}")
        if not self.sdp:
            raise ProtocolError("description carries no SDP")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionDescription":
        return cls(type=_require_str(data, "type"), sdp=_require_str(data, "sdp"))


@dataclass(slots=True, frozen=True)
class Welcome:
    """Sent by the relay after HELLO with the connection's peer id."""

    peer_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"peerId": self.peer_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Welcome":
        return cls(peer_id=_require_str(data, "peerId"))


@dataclass(slots=True, frozen=True)
class JoinRoom:
    room_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"roomId": self.room_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinRoom":
        return cls(room_id=_require_str(data, "roomId"))


@dataclass(slots=True, frozen=True)
class LeaveRoom:
    room_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"roomId": self.room_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LeaveRoom":
        return cls(room_id=_require_str(data, "roomId"))


@dataclass(slots=True, frozen=True)
class UserJoined:
    peer_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"peerId": self.peer_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserJoined":
        return cls(peer_id=_require_str(data, "peerId"))


@dataclass(slots=True, frozen=True)
class UserLeft:
    peer_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"peerId": self.peer_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserLeft":
        return cls(peer_id=_require_str(data, "peerId"))


@dataclass(slots=True, frozen=True)
class SendCall:
    """Offer addressed to one peer of the room."""

    to_peer_id: str
    from_peer_id: str
    signal: SessionDescription

    def to_dict(self) -> Dict[str, Any]:
        return {
            "toPeerId": self.to_peer_id,
            "fromPeerId": self.from_peer_id,
            "signal": self.signal.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SendCall":
        return cls(
            to_peer_id=_require_str(data, "toPeerId"),
            from_peer_id=_require_str(data, "fromPeerId"),
            signal=SessionDescription.from_dict(_require_dict(data, "signal")),
        )


@dataclass(slots=True, frozen=True)
class ReceiveCall:
    """Offer as delivered to the callee."""

    caller_id: str
    signal: SessionDescription

    def to_dict(self) -> Dict[str, Any]:
        return {"callerId": self.caller_id, "signal": self.signal.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReceiveCall":
        return cls(
            caller_id=_require_str(data, "callerId"),
            signal=SessionDescription.from_dict(_require_dict(data, "signal")),
        )


@dataclass(slots=True, frozen=True)
class AcceptCall:
    """Answer addressed back to the caller."""

    caller_id: str
    signal: SessionDescription

    def to_dict(self) -> Dict[str, Any]:
        return {"callerId": self.caller_id, "signal": self.signal.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AcceptCall":
        return cls(
            caller_id=_require_str(data, "callerId"),
            signal=SessionDescription.from_dict(_require_dict(data, "signal")),
        )


@dataclass(slots=True, frozen=True)
class CallAccepted:
    """Answer as delivered to the caller."""

    from_peer_id: str
    signal: SessionDescription

    def to_dict(self) -> Dict[str, Any]:
        return {"fromPeerId": self.from_peer_id, "signal": self.signal.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallAccepted":
        return cls(
            from_peer_id=_require_str(data, "fromPeerId"),
            signal=SessionDescription.from_dict(_require_dict(data, "signal")),
        )


@dataclass(slots=True, frozen=True)
class RelayErrorPayload:
    reason: str
    code: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "code": self.code}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayErrorPayload":
        return cls(
            reason=str(data.get("reason") or "relay error"),
            code=str(data.get("code") or "error"),
        )


CLIENT_VERSION = "0.1.0"

INVITE_LIFETIME_MINUTES = 30


@dataclass(slots=True)
class MeetingCreated:
    """Directory response to a create-meeting request."""

    meeting_id: str
    meeting_link: str
    recipient: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "meetingId": self.meeting_id,
            "meetingLink": self.meeting_link,
            "recipientPhoneNumber": self.recipient,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeetingCreated":
        return cls(
            meeting_id=_require_str(data, "meetingId"),
            meeting_link=_require_str(data, "meetingLink"),
            recipient=_require_str(data, "recipientPhoneNumber"),
        )


@dataclass(slots=True)
class MeetingValidation:
    """Directory verdict on a meeting id."""

    valid: bool
    slot_time: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"valid": self.valid}
        if self.slot_time:
            data["slotTime"] = self.slot_time
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeetingValidation":
        valid = data.get("valid")
        if not isinstance(valid, bool):
            raise ProtocolError("'valid' must be a boolean")
        slot_time = data.get("slotTime")
        message = data.get("message")
        return cls(
            valid=valid,
            slot_time=str(slot_time) if slot_time else None,
            message=str(message) if message else None,
        )


@dataclass(slots=True)
class SlotSelection:
    success: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SlotSelection":
        success = data.get("success")
        if not isinstance(success, bool):
            raise ProtocolError("'success' must be a boolean")
        return cls(success=success, message=str(data.get("message") or ""))


def normalize_phone_number(raw: str) -> str:
    """Strip whitespace and make sure the number carries a leading ``+``."""

    number = raw.strip()
    if not number:
        raise ValueError("Please enter a recipient phone number.")
    return number if number.startswith("+") else f"+{number}"


def build_invite_link(recipient: str, meeting_link: str, meeting_id: str) -> str:
    """Build a ``wa.me`` share link carrying the invitation text."""

    text = (
        f"You've been invited to a meeting!\n\n"
        f"Click here to join: {meeting_link}\n\n"
        f"Meeting ID: {meeting_id}\n\n"
        f"This invitation link will expire in {INVITE_LIFETIME_MINUTES} minutes."
    )
    return f"https://wa.me/{recipient.replace('+', '')}?text={quote(text, safe='')}"
