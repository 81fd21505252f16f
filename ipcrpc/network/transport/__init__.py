from .base import BaseTransport
from .dummy import DummyTransport
from .ipc import IpcTransport

__all__ = ["BaseTransport", "DummyTransport", "IpcTransport"]
