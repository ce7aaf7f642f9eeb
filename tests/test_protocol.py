import json
import struct

import pytest

from shared.protocol import (
    CallAccepted,
    MeetingCreated,
    MeetingValidation,
    ProtocolError,
    RelayEvent,
    SendCall,
    SessionDescription,
    build_invite_link,
    decode_relay_stream,
    encode_relay_message,
    normalize_phone_number,
    parse_event,
)


def test_encode_decode_relay_roundtrip() -> None:
    payload = {"roomId": "abc123"}
    encoded = encode_relay_message(RelayEvent.JOIN_ROOM, payload)
    messages, remaining = decode_relay_stream(encoded)
    assert remaining == b""
    assert len(messages) == 1
    assert messages[0]["event"] == "join-room"
    assert messages[0]["data"] == payload


def test_decode_keeps_partial_frame_for_next_read() -> None:
    first = encode_relay_message(RelayEvent.HEARTBEAT, {"timestampMs": 1})
    second = encode_relay_message(RelayEvent.LEAVE_ROOM, {"roomId": "r"})
    messages, remaining = decode_relay_stream(first + second[:5])
    assert [m["event"] for m in messages] == ["heartbeat"]
    assert remaining == second[:5]

    messages, remaining = decode_relay_stream(remaining + second[5:])
    assert [m["event"] for m in messages] == ["leave-room"]
    assert remaining == b""


def test_decode_rejects_frame_without_data() -> None:
    body = json.dumps({"event": "hello"}).encode("utf-8")
    with pytest.raises(ProtocolError):
        decode_relay_stream(struct.pack("!I", len(body)) + body)


def test_decode_rejects_non_json_frame() -> None:
    body = b"\xff\xfenot json"
    with pytest.raises(ProtocolError):
        decode_relay_stream(struct.pack("!I", len(body)) + body)


def test_parse_event_rejects_unknown_name() -> None:
    assert parse_event("user-joined") is RelayEvent.USER_JOINED
    with pytest.raises(ProtocolError):
        parse_event("renegotiate")


def test_send_call_uses_wire_field_names() -> None:
    offer = SessionDescription(type="offer", sdp="v=0")
    message = SendCall(to_peer_id="bob", from_peer_id="alice", signal=offer)
    data = message.to_dict()
    assert data == {"toPeerId": "bob", "fromPeerId": "alice", "signal": {"type": "offer", "sdp": "v=0"}}
    assert SendCall.from_dict(data) == message


def test_call_accepted_requires_signal_object() -> None:
    with pytest.raises(ProtocolError):
        CallAccepted.from_dict({"fromPeerId": "bob", "signal": "v=0"})


def test_session_description_rejects_unknown_type() -> None:
    with pytest.raises(ProtocolError):
        SessionDescription(type="pranswer", sdp="v=0")
    with pytest.raises(ProtocolError):
        SessionDescription(type="offer", sdp="")


def test_meeting_validation_requires_boolean_valid() -> None:
    with pytest.raises(ProtocolError):
        MeetingValidation.from_dict({"valid": "yes"})
    parsed = MeetingValidation.from_dict({"valid": False, "message": "Meeting link has expired."})
    assert parsed.valid is False
    assert parsed.slot_time is None
    assert parsed.message == "Meeting link has expired."


def test_meeting_created_reads_directory_response() -> None:
    created = MeetingCreated.from_dict(
        {
            "success": True,
            "meetingId": "m1",
            "meetingLink": "http://host/schedule/m1",
            "recipientPhoneNumber": "+15550100",
        }
    )
    assert created.meeting_id == "m1"
    assert created.recipient == "+15550100"


def test_normalize_phone_number_adds_plus() -> None:
    assert normalize_phone_number(" 919876543210 ") == "+919876543210"
    assert normalize_phone_number("+15550100") == "+15550100"
    with pytest.raises(ValueError):
        normalize_phone_number("   ")


def test_invite_link_targets_recipient_without_plus() -> None:
    link = build_invite_link("+15550100", "http://host/schedule/m1", "m1")
    assert link.startswith("https://wa.me/15550100?text=")
    assert "expire%20in%2030%20minutes" in link
    assert "http%3A%2F%2Fhost%2Fschedule%2Fm1" in link
