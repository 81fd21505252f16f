"""Wire models carried inside FRAME payloads."""

from __future__ import annotations

import json
import os
import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ipcrpc.errors import RpcResponseError

DISPATCH = "DISPATCH"
SUBSCRIBE = "SUBSCRIBE"
UNSUBSCRIBE = "UNSUBSCRIBE"
AUTHORIZE = "AUTHORIZE"

READY_EVENT = "READY"
ERROR_EVENT = "ERROR"


def new_token() -> str:
    """Return a collision-resistant correlation token."""

    return str(uuid.uuid4())


def current_pid() -> int:
    return os.getpid()


def fingerprint(event: Optional[str], args: Any) -> str:
    """Deterministic key for an (event, arguments) pair."""

    serialized = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    return f"{event or ''}{serialized}"


class HandshakePayload(BaseModel):
    v: int = 1
    client_id: str


class CommandPayload(BaseModel):
    """Outbound request: ``{cmd, args, evt, nonce}``."""

    model_config = ConfigDict(populate_by_name=True)

    command: str = Field(alias="cmd")
    args: Any = None
    event: Optional[str] = Field(default=None, alias="evt")
    token: str = Field(alias="nonce")

    def to_wire(self) -> dict[str, Any]:
        data = {"cmd": self.command, "args": self.args, "evt": self.event, "nonce": self.token}
        return {key: value for key, value in data.items() if value is not None}


class RpcMessage(BaseModel):
    """Inbound FRAME payload: a response, the READY dispatch, or a broadcast event."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    command: Optional[str] = Field(default=None, alias="cmd")
    event: Optional[str] = Field(default=None, alias="evt")
    token: Optional[str] = Field(default=None, alias="nonce")
    data: Any = None

    @property
    def is_ready_dispatch(self) -> bool:
        return self.command == DISPATCH and self.event == READY_EVENT

    @property
    def is_error(self) -> bool:
        return self.event == ERROR_EVENT

    def to_error(self) -> RpcResponseError:
        data = self.data if isinstance(self.data, dict) else {}
        message = data.get("message") or f"{self.command or 'request'} failed"
        return RpcResponseError(str(message), error_code=data.get("code"), data=data)
