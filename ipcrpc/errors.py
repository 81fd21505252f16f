"""Error taxonomy shared by the transport, session and request layers."""

from __future__ import annotations

from typing import Any, Optional


class RpcError(RuntimeError):
    """Base class for every error raised by the IPC RPC client."""

    code = "E.RPC"


class ProtocolError(RpcError):
    """Raised when the byte stream does not carry well-formed frames."""

    code = "E.PROTOCOL"


class EncodingError(RpcError):
    """Raised when a payload cannot be serialised to JSON."""

    code = "E.ENCODING"


class ConnectionFailed(RpcError):
    """Raised when no candidate endpoint accepted a connection."""

    code = "E.CONNECTION.FAILED"


class EndpointNotFound(RpcError):
    """Raised when the HTTP side-channel probe exhausts its attempts."""

    code = "E.ENDPOINT.MISSING"


class NotConnected(RpcError):
    """Raised when a frame is sent while the session has no live transport."""

    code = "E.NOT_CONNECTED"


class ConnectionLost(RpcError):
    """Raised for requests still pending when the connection went away."""

    code = "E.CONNECTION.LOST"


class RequestTimeout(RpcError):
    """Raised when a request did not receive a response before its deadline."""

    code = "E.TIMEOUT"


class ReconnectExhausted(RpcError):
    """Raised (and reported) when automatic reconnection gives up."""

    code = "E.RECONNECT.EXHAUSTED"


class RpcResponseError(RpcError):
    """Raised when the peer answers a request with an error payload."""

    code = "E.RESPONSE"

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[int | str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.data = data or {}


__all__ = [
    "RpcError",
    "ProtocolError",
    "EncodingError",
    "ConnectionFailed",
    "EndpointNotFound",
    "NotConnected",
    "ConnectionLost",
    "RequestTimeout",
    "ReconnectExhausted",
    "RpcResponseError",
]
