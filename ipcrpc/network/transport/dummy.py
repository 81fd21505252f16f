"""In-memory transport; the caller plays the peer."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from ipcrpc.protocol.framing import Frame, FrameDecoder, Opcode, encode

from .base import BaseTransport

LOGGER = logging.getLogger(__name__)


class DummyTransport(BaseTransport):
    """Loopback transport used for offline runs and tests.

    Written bytes are recorded in ``written``; inbound bytes are queued with
    ``feed``/``feed_frame`` and an abrupt failure with ``fail``.
    """

    def __init__(self, path: Optional[str] = None, *, refuse: bool = False) -> None:
        self.path = path
        self.refuse = refuse
        self.connected = False
        self.closed = False
        self.written: List[bytes] = []
        self._inbound: asyncio.Queue[bytes | Exception] = asyncio.Queue()

    async def connect(self) -> None:
        LOGGER.debug("Dummy transport connect(%s)", self.path)
        if self.refuse:
            raise ConnectionRefusedError(f"Dummy endpoint {self.path} refused the connection")
        self.connected = True

    async def write(self, data: bytes) -> None:
        if not self.connected or self.closed:
            raise ConnectionResetError("Dummy transport not connected")
        self.written.append(bytes(data))

    async def read(self) -> bytes:
        if self.closed and self._inbound.empty():
            return b""
        item = await self._inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        LOGGER.debug("Dummy transport close(%s)", self.path)
        if self.closed:
            return
        self.closed = True
        self._inbound.put_nowait(b"")

    def feed(self, data: bytes) -> None:
        self._inbound.put_nowait(data)

    def feed_frame(self, opcode: Opcode, payload: Any) -> None:
        self.feed(encode(opcode, payload))

    def feed_eof(self) -> None:
        self._inbound.put_nowait(b"")

    def fail(self, exc: Exception) -> None:
        self._inbound.put_nowait(exc)

    def sent_frames(self) -> List[Frame]:
        return FrameDecoder().feed(b"".join(self.written))
