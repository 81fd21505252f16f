"""Network stack (transport/session/reconnect) for the local IPC peer."""

from ipcrpc.network.endpoints import candidate_paths, probe_for_alternate_endpoint
from ipcrpc.network.session import ConnectionSession
from ipcrpc.network.session_state import SessionState, SessionTracker
from ipcrpc.network.supervisor import ReconnectState, ReconnectSupervisor, backoff_delay
from ipcrpc.network.transport import BaseTransport, DummyTransport, IpcTransport

__all__ = [
    "ConnectionSession",
    "SessionState",
    "SessionTracker",
    "ReconnectState",
    "ReconnectSupervisor",
    "backoff_delay",
    "candidate_paths",
    "probe_for_alternate_endpoint",
    "BaseTransport",
    "DummyTransport",
    "IpcTransport",
]
