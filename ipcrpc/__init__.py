"""Local IPC RPC client: framing, session lifecycle and request correlation."""

from ipcrpc.client import LIFECYCLE_EVENTS, RpcClient
from ipcrpc.config import ClientSettings, get_settings
from ipcrpc.errors import (
    ConnectionFailed,
    ConnectionLost,
    EncodingError,
    EndpointNotFound,
    NotConnected,
    ProtocolError,
    ReconnectExhausted,
    RequestTimeout,
    RpcError,
    RpcResponseError,
)

__all__ = [
    "LIFECYCLE_EVENTS",
    "RpcClient",
    "ClientSettings",
    "get_settings",
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
