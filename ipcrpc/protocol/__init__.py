from .framing import (
    DEFAULT_MAX_FRAME_BYTES,
    HEADER_SIZE,
    Frame,
    FrameDecoder,
    Opcode,
    decode,
    encode,
)
from .messages import CommandPayload, HandshakePayload, RpcMessage, current_pid, fingerprint, new_token

__all__ = [
    "DEFAULT_MAX_FRAME_BYTES",
    "HEADER_SIZE",
    "Frame",
    "FrameDecoder",
    "Opcode",
    "decode",
    "encode",
    "CommandPayload",
    "HandshakePayload",
    "RpcMessage",
    "current_pid",
    "fingerprint",
    "new_token",
]
