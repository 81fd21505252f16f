"""Length-prefixed frame codec for the local IPC byte stream.

Every frame on the wire is laid out as::

    int32le opcode | int32le payload length | payload (UTF-8 JSON text)

``encode`` produces one frame. ``FrameDecoder`` owns the reassembly state of a
single connection: chunks are appended as they arrive from the stream and every
frame whose declared length is fully buffered is decoded, in order.
"""

from __future__ import annotations

import enum
import json
import struct
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import BaseModel

from ipcrpc.errors import EncodingError, ProtocolError

HEADER = struct.Struct("<ii")
HEADER_SIZE = HEADER.size
DEFAULT_MAX_FRAME_BYTES = 1024 * 1024


class Opcode(enum.IntEnum):
    """Frame operation codes understood by the peer."""

    HANDSHAKE = 0
    FRAME = 1
    CLOSE = 2
    PING = 3
    PONG = 4


@dataclass(frozen=True)
class Frame:
    opcode: Opcode
    payload: Any


def _payload_json(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(exclude_none=True, by_alias=True)
    return payload


def encode(opcode: Opcode | int, payload: Any) -> bytes:
    """Serialise ``payload`` to JSON and prefix it with the frame header."""

    try:
        text = json.dumps(
            _payload_json(payload),
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError, RecursionError) as exc:
        raise EncodingError(f"Payload is not JSON serialisable: {exc}") from exc
    data = text.encode("utf-8")
    return HEADER.pack(int(opcode), len(data)) + data


def decode(data: bytes) -> Frame:
    """Decode exactly one complete frame."""

    decoder = FrameDecoder()
    frames = decoder.feed(data)
    if len(frames) != 1 or decoder.buffered:
        raise ProtocolError(
            f"Expected exactly one frame, got {len(frames)} with {decoder.buffered} trailing bytes"
        )
    return frames[0]


class FrameDecoder:
    """Per-connection reassembly state for inbound frames.

    ``pending_opcode``/``pending_length`` are set while a header has been read
    and its payload is still incomplete; both are cleared as soon as the payload
    is decoded.
    """

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        self._max_frame_bytes = max_frame_bytes
        self._buffer = bytearray()
        self.pending_opcode: Optional[Opcode] = None
        self.pending_length: Optional[int] = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()
        self.pending_opcode = None
        self.pending_length = None

    def feed(self, chunk: bytes) -> List[Frame]:
        """Consume a raw chunk and return the frames it completed, in order."""

        self._buffer.extend(chunk)
        frames: List[Frame] = []
        while True:
            if self.pending_opcode is None:
                if len(self._buffer) < HEADER_SIZE:
                    break
                self._read_header()
            assert self.pending_length is not None
            if len(self._buffer) < self.pending_length:
                break
            frames.append(self._take_payload())
        return frames

    def _read_header(self) -> None:
        raw_opcode, length = HEADER.unpack_from(self._buffer, 0)
        try:
            opcode = Opcode(raw_opcode)
        except ValueError:
            self.reset()
            raise ProtocolError(f"Unknown opcode {raw_opcode} in frame header") from None
        if length < 0 or length > self._max_frame_bytes:
            self.reset()
            raise ProtocolError(f"Invalid payload length {length} for {opcode.name} frame")
        del self._buffer[:HEADER_SIZE]
        self.pending_opcode = opcode
        self.pending_length = length

    def _take_payload(self) -> Frame:
        opcode = self.pending_opcode
        length = self.pending_length or 0
        raw = bytes(self._buffer[:length])
        del self._buffer[:length]
        self.pending_opcode = None
        self.pending_length = None
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            self.reset()
            raise ProtocolError(f"Malformed {opcode.name} payload: {exc}") from exc
        return Frame(opcode=opcode, payload=payload)
