"""
Wire Protocol - Frame Models, Classification and Binary Framing.

Text Frames (JSON objects tagged by "type"):
- data:        {"type": "data", "data": "...", "encoding": "base64"?}
- ping/pong:   {"type": "ping"|"pong", "timestamp": <epoch ms>}
- error:       {"type": "error", "message": "...", "code": ...}
- resize-ack:  {"type": "resize-ack"|"resize", "cols": N, "rows": N}
- keepalive:   heartbeat, latency, system, control, config, auth echoes

Anything that is not a JSON object with a known type is a RawFrame and is
forwarded to the display untouched (line-oriented backends stream plain
terminal text).

Binary Frames ("MWEB" framing):
    +--------+------+-------------+-----------+-------------+----------+
    | magic  | type | compression | json_len  | binary_len  | reserved |
    | u32    | u8   | u8          | u32       | u32         | u16      |
    +--------+------+-------------+-----------+-------------+----------+
    followed by json_len bytes of JSON, then binary_len bytes of payload.
    All integers big-endian. Compressed sections are gzip.

Author: Backend Lead Developer
"""

from __future__ import annotations

import base64
import gzip
import json
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .models import ConnectionDescriptor, RemoteId

__all__ = [
    "ProtocolError",
    "DataFrame",
    "PingFrame",
    "PongFrame",
    "ErrorFrame",
    "ResizeAckFrame",
    "KeepaliveFrame",
    "RawFrame",
    "InboundFrame",
    "ResizeFrame",
    "AuthFrame",
    "classify",
    "classify_text",
    "encode_frame",
    "build_auth_frame",
    "BinaryMessageType",
    "CompressionType",
    "BinaryFrame",
    "encode_binary_frame",
    "decode_binary_frame",
    "is_binary_frame",
    "BINARY_MAGIC",
    "HEADER_SIZE",
]


class ProtocolError(Exception):
    """Raised when a binary frame cannot be decoded."""
    pass


# ========= Text frames =========

class _Frame(BaseModel):
    model_config = ConfigDict(extra="allow")


class DataFrame(_Frame):
    type: Literal["data"] = "data"
    data: str = ""
    encoding: Optional[str] = None

    def payload(self) -> Union[str, bytes]:
        """Terminal payload, base64-decoded when flagged as such."""
        if self.encoding == "base64":
            return base64.b64decode(self.data)
        return self.data


class PingFrame(_Frame):
    type: Literal["ping"] = "ping"
    timestamp: Optional[float] = None


class PongFrame(_Frame):
    type: Literal["pong"] = "pong"
    timestamp: Optional[float] = None


class ErrorFrame(_Frame):
    type: Literal["error"] = "error"
    error: Optional[str] = None
    message: str = ""
    code: Optional[Union[int, str]] = None


class ResizeAckFrame(_Frame):
    type: Literal["resize-ack", "resize"] = "resize-ack"
    cols: Optional[int] = None
    rows: Optional[int] = None


class KeepaliveFrame(_Frame):
    type: Literal["heartbeat", "keepalive", "latency", "system", "control", "config", "auth"] = "keepalive"


@dataclass(frozen=True)
class RawFrame:
    """Unparsed inbound payload forwarded as-is."""
    payload: Union[str, bytes]
    type: str = "raw"


_ControlFrame = Annotated[
    Union[DataFrame, PingFrame, PongFrame, ErrorFrame, ResizeAckFrame, KeepaliveFrame],
    Field(discriminator="type"),
]
_control_adapter: TypeAdapter = TypeAdapter(_ControlFrame)

InboundFrame = Union[DataFrame, PingFrame, PongFrame, ErrorFrame, ResizeAckFrame, KeepaliveFrame, RawFrame]


# ========= Outbound frames =========

class ResizeFrame(BaseModel):
    type: Literal["resize"] = "resize"
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class ConnectionInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    protocol: str
    host: str
    port: int
    username: Optional[str] = None
    session_id: Optional[RemoteId] = Field(default=None, alias="sessionId")
    credentials_ref: Optional[str] = Field(default=None, alias="credentialsRef")


class AuthFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["auth"] = "auth"
    token: str
    connection_info: ConnectionInfo = Field(alias="connectionInfo")


def build_auth_frame(
    token: str,
    descriptor: ConnectionDescriptor,
    session_id: Optional[RemoteId],
) -> AuthFrame:
    """The first frame sent on every freshly opened socket."""
    return AuthFrame(
        token=token,
        connection_info=ConnectionInfo(
            protocol=descriptor.protocol,
            host=descriptor.host,
            port=descriptor.port,
            username=descriptor.username,
            session_id=session_id,
            credentials_ref=descriptor.credentials_ref,
        ),
    )


def encode_frame(frame: Union[BaseModel, Dict[str, Any]]) -> str:
    """Serialize an outbound frame to JSON text (wire aliases, no nulls)."""
    if isinstance(frame, BaseModel):
        return frame.model_dump_json(by_alias=True, exclude_none=True)
    return json.dumps(frame, separators=(",", ":"))


# ========= Classification =========

def classify_text(text: str) -> InboundFrame:
    """Classify one text message. Never raises."""
    stripped = text.lstrip()
    if not stripped.startswith("{"):
        return RawFrame(text)
    try:
        obj = json.loads(text)
    except ValueError:
        return RawFrame(text)
    if not isinstance(obj, dict) or not isinstance(obj.get("type"), str):
        return RawFrame(text)
    try:
        return _control_adapter.validate_python(obj)
    except ValidationError:
        return RawFrame(text)


def classify(message: Union[str, bytes]) -> List[InboundFrame]:
    """
    Classify an inbound socket message.

    Text yields exactly one frame. A binary-protocol frame yields the frame
    for its JSON section (if any) followed by a RawFrame with its binary
    section (if any). Other bytes, and binary frames that fail to decode,
    yield one RawFrame.

    Returns:
        Frames in delivery order
    """
    if isinstance(message, str):
        return [classify_text(message)]

    data = bytes(message)
    if not is_binary_frame(data):
        return [RawFrame(data)]
    try:
        frame = decode_binary_frame(data)
    except ProtocolError:
        return [RawFrame(data)]

    frames: List[InboundFrame] = []
    if frame.message_type == BinaryMessageType.HEARTBEAT:
        frames.append(KeepaliveFrame(type="heartbeat"))
        return frames
    if frame.json_data is not None:
        frames.append(_classify_object(frame.json_data))
    if frame.binary_data:
        frames.append(RawFrame(frame.binary_data))
    return frames


def _classify_object(obj: Any) -> InboundFrame:
    if isinstance(obj, dict) and isinstance(obj.get("type"), str):
        try:
            return _control_adapter.validate_python(obj)
        except ValidationError:
            pass
    return RawFrame(json.dumps(obj))


# ========= Binary framing =========

BINARY_MAGIC = 0x4D574542  # "MWEB"
_HEADER = struct.Struct(">IBBIIH")
HEADER_SIZE = _HEADER.size  # 16 bytes


class BinaryMessageType(IntEnum):
    JSON_ONLY = 1
    BINARY_ONLY = 2
    MIXED = 3
    HEARTBEAT = 4
    PROTOCOL_NEGOTIATION = 5


class CompressionType(IntEnum):
    NONE = 0
    GZIP = 1


@dataclass(frozen=True)
class BinaryFrame:
    message_type: BinaryMessageType
    json_data: Optional[Any] = None
    binary_data: Optional[bytes] = None
    compression: CompressionType = CompressionType.NONE


def is_binary_frame(data: bytes) -> bool:
    return len(data) >= HEADER_SIZE and _HEADER.unpack_from(data)[0] == BINARY_MAGIC


def encode_binary_frame(
    json_data: Optional[Any] = None,
    binary_data: Optional[bytes] = None,
    message_type: Optional[BinaryMessageType] = None,
    compression: CompressionType = CompressionType.NONE,
) -> bytes:
    """
    Build a binary-protocol frame.

    The message type is inferred from which sections are present unless
    given explicitly.
    """
    json_bytes = b"" if json_data is None else json.dumps(json_data, separators=(",", ":")).encode("utf-8")
    binary_bytes = binary_data or b""

    if message_type is None:
        if json_bytes and binary_bytes:
            message_type = BinaryMessageType.MIXED
        elif binary_bytes:
            message_type = BinaryMessageType.BINARY_ONLY
        else:
            message_type = BinaryMessageType.JSON_ONLY

    if compression == CompressionType.GZIP:
        json_bytes = gzip.compress(json_bytes) if json_bytes else b""
        binary_bytes = gzip.compress(binary_bytes) if binary_bytes else b""

    header = _HEADER.pack(
        BINARY_MAGIC,
        int(message_type),
        int(compression),
        len(json_bytes),
        len(binary_bytes),
        0,
    )
    return header + json_bytes + binary_bytes


def decode_binary_frame(data: bytes) -> BinaryFrame:
    """
    Parse a binary-protocol frame.

    Raises:
        ProtocolError: Bad magic, unknown type or compression, truncated
            sections, undecodable JSON or gzip data
    """
    if len(data) < HEADER_SIZE:
        raise ProtocolError(f"Frame too short: {len(data)} bytes")

    magic, msg_type, compression, json_len, binary_len, _ = _HEADER.unpack_from(data)
    if magic != BINARY_MAGIC:
        raise ProtocolError(f"Bad magic 0x{magic:08X}")
    try:
        message_type = BinaryMessageType(msg_type)
        compression_type = CompressionType(compression)
    except ValueError as e:
        raise ProtocolError(str(e)) from e

    expected = HEADER_SIZE + json_len + binary_len
    if len(data) != expected:
        raise ProtocolError(f"Length mismatch: header says {expected} bytes, got {len(data)}")

    json_bytes = data[HEADER_SIZE:HEADER_SIZE + json_len]
    binary_bytes = data[HEADER_SIZE + json_len:expected]

    if compression_type == CompressionType.GZIP:
        try:
            json_bytes = gzip.decompress(json_bytes) if json_bytes else b""
            binary_bytes = gzip.decompress(binary_bytes) if binary_bytes else b""
        except (OSError, EOFError) as e:
            raise ProtocolError(f"Bad gzip section: {e}") from e

    json_data = None
    if json_bytes:
        try:
            json_data = json.loads(json_bytes.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError(f"Bad JSON section: {e}") from e

    return BinaryFrame(
        message_type=message_type,
        json_data=json_data,
        binary_data=binary_bytes or None,
        compression=compression_type,
    )
