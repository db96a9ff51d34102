"""Tests for the signaling frame codec."""

import json

import pytest

from callmate.call.state import CallSession
from callmate.signaling.events import (
    CallAccepted,
    CallConnected,
    CallEnded,
    CallRejected,
    EventKind,
    IncomingCall,
    SignalingFailure,
)
from callmate.signaling.frames import (
    CALL_INITIATE,
    Frame,
    FrameError,
    decode_frame,
    encode_frame,
    frame_to_event,
)

INCOMING_DATA = {
    "bookingId": "b-7",
    "callerId": "p-1",
    "callerName": "Ravi",
    "receiverId": "u-1",
    "receiverName": "Asha",
    "serviceName": "Plumbing",
}


# ---------------------------------------------------------------------------
# encode / decode
# ---------------------------------------------------------------------------


def test_encode_is_compact_json():
    text = encode_frame(CALL_INITIATE, {"bookingId": "b-7"}, ref=3)
    assert " " not in text
    assert json.loads(text) == {
        "event": "call:initiate",
        "data": {"bookingId": "b-7"},
        "ref": 3,
    }


def test_encode_without_ref_or_data():
    assert json.loads(encode_frame("join")) == {"event": "join", "data": {}}


def test_decode_ack():
    frame = decode_frame('{"event":"ack","ref":4,"data":{"status":"success"}}')
    assert frame == Frame(event="ack", data={"status": "success"}, ref=4)
    assert frame.is_ack


def test_decode_null_data_becomes_empty():
    frame = decode_frame('{"event":"call:accepted","data":null}')
    assert frame.data == {}
    assert frame.ref is None
    assert not frame.is_ack


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        "[1, 2]",
        '{"data": {}}',
        '{"event": ""}',
        '{"event": 5}',
        '{"event": "call:ended", "data": [1]}',
        '{"event": "ack", "ref": "1"}',
        '{"event": "ack", "ref": true}',
    ],
)
def test_decode_rejects_malformed(text):
    with pytest.raises(FrameError):
        decode_frame(text)


# ---------------------------------------------------------------------------
# frame_to_event
# ---------------------------------------------------------------------------


def test_incoming_event():
    event = frame_to_event(Frame(event="call:incoming", data=INCOMING_DATA))
    assert isinstance(event, IncomingCall)
    assert event.kind == EventKind.INCOMING
    assert event.session == CallSession(
        booking_id="b-7",
        caller_id="p-1",
        caller_name="Ravi",
        receiver_id="u-1",
        receiver_name="Asha",
        service_name="Plumbing",
    )


def test_incoming_defaults_service_name():
    data = {k: v for k, v in INCOMING_DATA.items() if k != "serviceName"}
    event = frame_to_event(Frame(event="call:incoming", data=data))
    assert event.session.service_name == "Service Call"


def test_incoming_missing_participant():
    data = {k: v for k, v in INCOMING_DATA.items() if k != "callerId"}
    with pytest.raises(FrameError):
        frame_to_event(Frame(event="call:incoming", data=data))


def test_simple_events():
    assert frame_to_event(Frame("call:accepted", {})) == CallAccepted()
    assert frame_to_event(Frame("call:connected", {})) == CallConnected()


def test_rejected_reason():
    assert frame_to_event(Frame("call:rejected", {"reason": "busy"})) == (
        CallRejected(reason="busy")
    )
    assert frame_to_event(Frame("call:rejected", {})) == CallRejected()


def test_ended_duration_and_peer():
    event = frame_to_event(
        Frame("call:ended", {"duration": "42", "endedBy": "u-1"})
    )
    assert event == CallEnded(duration=42, ended_by="u-1")


def test_ended_negative_duration_clamped():
    assert frame_to_event(Frame("call:ended", {"duration": -5})) == CallEnded()


def test_ended_bad_duration():
    with pytest.raises(FrameError):
        frame_to_event(Frame("call:ended", {"duration": "soon"}))


def test_error_event_message():
    assert frame_to_event(Frame("call:error", {"message": "boom"})) == (
        SignalingFailure(message="boom")
    )
    assert frame_to_event(Frame("call:error", {})) == SignalingFailure(
        message="Call signaling error"
    )


@pytest.mark.parametrize("event", ["webrtc:offer", "webrtc:ice-candidate", "ack"])
def test_media_and_unknown_frames_are_ignored(event):
    assert frame_to_event(Frame(event, {})) is None
