"""
Tests for wire frame parsing and encoding.
"""

import json

import pytest

from relay.schemas import (
    ErrorCode,
    ErrorFrame,
    FrameError,
    JoinFrame,
    MessageFrame,
    MessageRecord,
    PresenceEntry,
    PresenceStatus,
    UserJoinedFrame,
    UsersListFrame,
    encode_frame,
    parse_frame,
)


class TestParse:

    def test_join(self):
        frame = parse_frame('{"type": "join", "username": "  alice  "}')

        assert isinstance(frame, JoinFrame)
        assert frame.username == "alice"

    def test_message_without_id_gets_one(self):
        frame = parse_frame(json.dumps({"type": "message", "text": "hi"}))

        assert isinstance(frame, MessageFrame)
        assert frame.id
        assert frame.timestamp > 0

    def test_bytes_payload(self):
        frame = parse_frame(b'{"type": "heartbeat"}')
        assert frame.type == "heartbeat"

    @pytest.mark.parametrize("raw,reason", [
        ("not json", "malformed"),
        ("[1, 2]", "malformed"),
        ('{"type": "typing"}', "unknown_type"),
        ('{"text": "no type"}', "unknown_type"),
        ('{"type": []}', "unknown_type"),
        ('{"type": {"name": "join"}}', "unknown_type"),
        ('{"type": 7}', "unknown_type"),
        ('{"type": "join", "username": "a"}', "invalid"),
        ('{"type": "join", "username": "' + "x" * 21 + '"}', "invalid"),
        ('{"type": "message"}', "invalid"),
        ('{"type": "message", "text": "hi", "timestamp": -1}', "invalid"),
        ('{"type": "message", "text": "hi", "timestamp": 100000000000000000000}', "invalid"),
        ('{"type": "user_status", "status": "busy"}', "invalid"),
    ])
    def test_rejected_frames(self, raw, reason):
        with pytest.raises(FrameError) as exc_info:
            parse_frame(raw)
        assert exc_info.value.reason == reason


class TestEncode:

    def test_message_record_uses_username_key(self):
        data = json.loads(MessageRecord(id="m1", text="hi", author="alice", timestamp=5).model_dump_json(by_alias=True))

        assert data == {"id": "m1", "text": "hi", "username": "alice", "timestamp": 5}

    def test_camel_case_wire_fields(self):
        joined = json.loads(encode_frame(UserJoinedFrame(username="bob", online_count=2, timestamp=7)))
        roster = json.loads(encode_frame(UsersListFrame(users=[
            PresenceEntry(username="bob", status=PresenceStatus.AWAY, last_seen=7),
        ])))

        assert joined["onlineCount"] == 2
        assert roster["users"] == [{"username": "bob", "status": "away", "lastSeen": 7}]

    def test_encoded_frame_parses_back(self):
        frame = ErrorFrame(message="taken", code=ErrorCode.NAME_IN_USE)

        parsed = parse_frame(encode_frame(frame))

        assert parsed == frame
