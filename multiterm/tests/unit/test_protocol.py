"""
Unit Tests for the Wire Protocol.

Test Coverage:
- Text frame classification (every variant, malformed input)
- Binary framing (header layout, compression, error cases)
- Outbound frame encoding (auth, resize, data)
"""

import base64
import gzip
import json
import struct

import pytest

from multiterm.core.models import ConnectionDescriptor
from multiterm.core.protocol import (
    BINARY_MAGIC,
    HEADER_SIZE,
    BinaryMessageType,
    CompressionType,
    DataFrame,
    ErrorFrame,
    KeepaliveFrame,
    PingFrame,
    PongFrame,
    ProtocolError,
    RawFrame,
    ResizeAckFrame,
    ResizeFrame,
    build_auth_frame,
    classify,
    decode_binary_frame,
    encode_binary_frame,
    encode_frame,
    is_binary_frame,
)


class TestClassifyText:
    """Test suite for text classification."""

    @pytest.mark.parametrize("message,frame_type", [
        ('{"type":"data","data":"hello"}', DataFrame),
        ('{"type":"ping","timestamp":1}', PingFrame),
        ('{"type":"pong","timestamp":1}', PongFrame),
        ('{"type":"error","message":"denied"}', ErrorFrame),
        ('{"type":"resize-ack","cols":80,"rows":24}', ResizeAckFrame),
        ('{"type":"heartbeat"}', KeepaliveFrame),
        ('{"type":"latency","value":12}', KeepaliveFrame),
    ])
    def test_known_frames(self, message, frame_type):
        [frame] = classify(message)

        assert isinstance(frame, frame_type)

    @pytest.mark.parametrize("message", [
        "user@host:~$ ",
        '{"type":"mystery"}',
        '{"type": 5}',
        '{"no_type": true}',
        "{truncated",
        '["type", "data"]',
        "",
    ])
    def test_everything_else_is_raw(self, message):
        [frame] = classify(message)

        assert isinstance(frame, RawFrame)
        assert frame.payload == message

    def test_base64_data_payload(self):
        encoded = base64.b64encode(b"\x1b[31mred").decode()
        [frame] = classify(json.dumps({"type": "data", "data": encoded, "encoding": "base64"}))

        assert frame.payload() == b"\x1b[31mred"

    def test_plain_data_payload(self):
        [frame] = classify('{"type":"data","data":"ls\\r\\n"}')

        assert frame.payload() == "ls\r\n"

    def test_error_frame_carries_error_text(self):
        [frame] = classify('{"type":"error","error":"authentication failed"}')

        assert isinstance(frame, ErrorFrame)
        assert frame.error == "authentication failed"

    def test_plain_bytes_are_raw(self):
        [frame] = classify(b"\x00\x01binary")

        assert isinstance(frame, RawFrame)
        assert frame.payload == b"\x00\x01binary"


class TestBinaryFraming:
    """Test suite for the MWEB binary protocol."""

    def test_header_layout(self):
        data = encode_binary_frame(json_data={"type": "ping"}, binary_data=b"abc")
        magic, msg_type, compression, json_len, binary_len, reserved = struct.unpack(">IBBIIH", data[:16])

        assert HEADER_SIZE == 16
        assert magic == BINARY_MAGIC
        assert data[:4] == b"MWEB"
        assert msg_type == BinaryMessageType.MIXED
        assert compression == CompressionType.NONE
        assert json_len == len(b'{"type":"ping"}')
        assert binary_len == 3
        assert reserved == 0

    def test_message_type_inference(self):
        assert decode_binary_frame(encode_binary_frame(json_data={"a": 1})).message_type == BinaryMessageType.JSON_ONLY
        assert decode_binary_frame(encode_binary_frame(binary_data=b"x")).message_type == BinaryMessageType.BINARY_ONLY

    def test_gzip_sections(self):
        payload = b"screen update " * 100
        data = encode_binary_frame(json_data={"type": "data"}, binary_data=payload, compression=CompressionType.GZIP)

        frame = decode_binary_frame(data)

        assert frame.binary_data == payload
        assert frame.json_data == {"type": "data"}
        assert len(data) < HEADER_SIZE + len(payload)

    def test_truncated_frame(self):
        data = encode_binary_frame(binary_data=b"abcdef")

        with pytest.raises(ProtocolError):
            decode_binary_frame(data[:-2])

    def test_short_frame(self):
        with pytest.raises(ProtocolError):
            decode_binary_frame(b"MWEB")

    def test_bad_magic(self):
        data = struct.pack(">IBBIIH", 0xDEADBEEF, 1, 0, 0, 0, 0)

        assert not is_binary_frame(data)
        with pytest.raises(ProtocolError):
            decode_binary_frame(data)

    def test_unknown_message_type(self):
        data = struct.pack(">IBBIIH", BINARY_MAGIC, 9, 0, 0, 0, 0)

        with pytest.raises(ProtocolError):
            decode_binary_frame(data)

    def test_bad_gzip(self):
        data = struct.pack(">IBBIIH", BINARY_MAGIC, 2, 1, 0, 4, 0) + b"junk"

        with pytest.raises(ProtocolError):
            decode_binary_frame(data)

    def test_bad_json_section(self):
        data = struct.pack(">IBBIIH", BINARY_MAGIC, 1, 0, 3, 0, 0) + b"{x]"

        with pytest.raises(ProtocolError):
            decode_binary_frame(data)

    def test_classify_mixed_frame(self):
        data = encode_binary_frame(json_data={"type": "ping", "timestamp": 5}, binary_data=b"\x89PNG")

        frames = classify(data)

        assert isinstance(frames[0], PingFrame)
        assert frames[0].timestamp == 5
        assert frames[1] == RawFrame(b"\x89PNG")

    def test_classify_heartbeat_frame(self):
        data = encode_binary_frame(message_type=BinaryMessageType.HEARTBEAT)

        [frame] = classify(data)

        assert isinstance(frame, KeepaliveFrame)

    def test_classify_broken_binary_frame_is_raw(self):
        data = encode_binary_frame(binary_data=b"abcdef")[:-1]

        [frame] = classify(data)

        assert frame == RawFrame(data)

    def test_classify_unknown_json_section_is_raw_text(self):
        data = encode_binary_frame(json_data={"type": "mystery"})

        [frame] = classify(data)

        assert isinstance(frame, RawFrame)
        assert json.loads(frame.payload) == {"type": "mystery"}


class TestOutboundFrames:
    """Test suite for outbound encoding."""

    def test_auth_frame_wire_format(self):
        descriptor = ConnectionDescriptor(
            protocol="ssh", host="10.0.0.5", port=22, username="deploy", credentials_ref="cred-7",
        )

        frame = json.loads(encode_frame(build_auth_frame("tok", descriptor, 9)))

        assert frame == {
            "type": "auth",
            "token": "tok",
            "connectionInfo": {
                "protocol": "ssh",
                "host": "10.0.0.5",
                "port": 22,
                "username": "deploy",
                "sessionId": 9,
                "credentialsRef": "cred-7",
            },
        }

    def test_auth_frame_omits_missing_fields(self):
        descriptor = ConnectionDescriptor(protocol="vnc", host="h", port=5900)

        info = json.loads(encode_frame(build_auth_frame("tok", descriptor, 4)))["connectionInfo"]

        assert "username" not in info
        assert "credentialsRef" not in info

    def test_resize_frame(self):
        assert json.loads(encode_frame(ResizeFrame(cols=120, rows=40))) == {"type": "resize", "cols": 120, "rows": 40}

    def test_resize_frame_rejects_zero(self):
        with pytest.raises(ValueError):
            ResizeFrame(cols=0, rows=24)

    def test_plain_dict_frame(self):
        assert json.loads(encode_frame({"type": "custom", "value": 1})) == {"type": "custom", "value": 1}

    def test_gzip_round_trip_matches_stdlib(self):
        data = encode_binary_frame(binary_data=b"hi", compression=CompressionType.GZIP)

        assert gzip.decompress(data[HEADER_SIZE:]) == b"hi"
