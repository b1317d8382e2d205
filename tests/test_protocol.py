import json

import pytest

from shared.protocol import (
    CallBoundary,
    PeerInfo,
    ProtocolError,
    SignalEvent,
    decode_signal_message,
    encode_signal_message,
)


def test_signal_payload_survives_encoding_untouched() -> None:
    signal = {"type": "offer", "sdp": "v=0\r\no=- 1 2 IN IP4 127.0.0.1", "nested": {"candidates": [1, 2]}}
    encoded = encode_signal_message(SignalEvent.SIGNAL, {"to": "abc", "signal": signal}, ack=3)
    event, data, ack = decode_signal_message(encoded)
    assert event == SignalEvent.SIGNAL
    assert data["signal"] == signal
    assert ack == 3


def test_ack_is_omitted_when_not_requested() -> None:
    encoded = encode_signal_message(SignalEvent.PEER_LEFT, {"connection_id": "abc"})
    assert "ack" not in json.loads(encoded)
    assert decode_signal_message(encoded)[2] is None


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        "[1, 2]",
        json.dumps({"event": "shout", "data": {}}),
        json.dumps({"event": "signal", "data": "nope"}),
        json.dumps({"event": "join-room", "data": {}, "ack": "1"}),
    ],
)
def test_malformed_frames_raise_protocol_error(frame: str) -> None:
    with pytest.raises(ProtocolError):
        decode_signal_message(frame)


def test_missing_data_decodes_as_empty_object() -> None:
    event, data, _ = decode_signal_message(json.dumps({"event": "call-ended"}))
    assert event == SignalEvent.CALL_ENDED
    assert data == {}


def test_call_boundary_serialization_skips_unset_fields() -> None:
    boundary = CallBoundary(room_id="abc123-0-xyz", class_index=0)
    data = boundary.to_dict()
    assert data == {"room_id": "abc123-0-xyz", "class_index": 0}
    restored = CallBoundary.from_dict({**data, "class_index": "0"})
    assert restored.room_id == boundary.room_id
    assert restored.class_index is None


def test_peer_info_without_user() -> None:
    info = PeerInfo(connection_id="c1")
    assert info.to_dict() == {"connection_id": "c1"}
    assert PeerInfo.from_dict({"connection_id": "c1", "user_id": "u1"}).user_id == "u1"
