"""Transport abstractions for the local IPC connection."""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseTransport(ABC):
    """Abstract byte-stream transport driven by the connection session."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def read(self) -> bytes:
        """Return the next chunk from the stream, ``b""`` once the peer closed it."""

    @abstractmethod
    async def close(self) -> None:
        ...
