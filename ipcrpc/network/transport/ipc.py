"""Unix domain socket / Windows named pipe transport."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from ipcrpc.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class IpcTransport(BaseTransport):
    """Stream transport bound to one local rendezvous path."""

    def __init__(self, path: str, *, read_size: int = READ_CHUNK_SIZE) -> None:
        self.path = path
        self._read_size = read_size
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def connect(self) -> None:
        LOGGER.debug("Connecting to IPC endpoint %s", self.path)
        if sys.platform == "win32":
            self._reader, self._writer = await self._open_pipe()
        else:
            self._reader, self._writer = await asyncio.open_unix_connection(self.path)

    async def _open_pipe(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self._read_size)
        protocol = asyncio.StreamReaderProtocol(reader)
        transport, _ = await loop.create_pipe_connection(lambda: protocol, self.path)  # type: ignore[attr-defined]
        writer = asyncio.StreamWriter(transport, protocol, reader, loop)
        return reader, writer

    async def write(self, data: bytes) -> None:
        if not self._writer:
            raise ConnectionResetError(f"IPC transport {self.path} not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def read(self) -> bytes:
        if not self._reader:
            return b""
        return await self._reader.read(self._read_size)

    async def close(self) -> None:
        writer = self._writer
        if writer is None:
            return
        self._writer = None
        LOGGER.debug("Closing IPC transport %s", self.path)
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            LOGGER.debug("Suppress IPC transport close error", exc_info=True)
