"""Session tracking for the local IPC connection."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone


class SessionState(enum.Enum):
    """Client-side connection state machine."""

    DISCONNECTED = "DISCONNECTED"
    RESOLVING = "RESOLVING"
    CONNECTING = "CONNECTING"
    HANDSHAKE_SENT = "HANDSHAKE_SENT"
    READY = "READY"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


ACTIVE_STATES = frozenset({SessionState.CONNECTING, SessionState.HANDSHAKE_SENT, SessionState.READY})
SENDABLE_STATES = frozenset({SessionState.HANDSHAKE_SENT, SessionState.READY})


@dataclass
class SessionTracker:
    """In-memory session metadata."""

    state: SessionState = SessionState.DISCONNECTED
    last_transition_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def transition(self, next_state: SessionState) -> None:
        """Move the session into a new state, validating allowed transitions."""

        if not self._is_valid_transition(self.state, next_state):
            raise ValueError(f"Invalid transition {self.state.value} → {next_state.value}")
        self.state = next_state
        self.last_transition_at = datetime.now(tz=timezone.utc)

    @staticmethod
    def _is_valid_transition(current: SessionState, nxt: SessionState) -> bool:
        allowed = {
            SessionState.DISCONNECTED: {SessionState.RESOLVING, SessionState.CLOSING},
            SessionState.RESOLVING: {SessionState.CONNECTING, SessionState.DISCONNECTED, SessionState.CLOSING},
            SessionState.CONNECTING: {
                SessionState.HANDSHAKE_SENT,
                SessionState.DISCONNECTED,
                SessionState.CLOSING,
            },
            SessionState.HANDSHAKE_SENT: {
                SessionState.READY,
                SessionState.DISCONNECTED,
                SessionState.CLOSING,
            },
            SessionState.READY: {SessionState.CLOSING, SessionState.DISCONNECTED},
            SessionState.CLOSING: {SessionState.CLOSED},
            SessionState.CLOSED: {SessionState.RESOLVING},
        }
        return nxt in allowed.get(current, set())
