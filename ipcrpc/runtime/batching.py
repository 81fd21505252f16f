"""Delay-window request batching."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, List, Optional, Set

from ipcrpc.errors import ConnectionLost

LOGGER = logging.getLogger(__name__)

IssueCallable = Callable[[str, Any, Optional[str]], Awaitable[Any]]


@dataclass(frozen=True)
class RequestSpec:
    command: str
    args: Any = None
    event: Optional[str] = None


@dataclass
class BatchItem:
    spec: RequestSpec
    future: asyncio.Future[Any]


class BatchAggregator:
    """Buffers requests and issues them together once arrivals go quiet.

    Every ``submit`` restarts the window timer. On flush the whole buffer is
    issued concurrently and each item's future is settled with its own
    outcome. When disabled, ``submit`` issues its requests right away.
    """

    def __init__(self, issue: IssueCallable, *, delay_seconds: float = 0.01, enabled: bool = True) -> None:
        self._issue = issue
        self._delay = float(delay_seconds)
        self.enabled = enabled
        self._buffer: List[BatchItem] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flushes: Set[asyncio.Task[None]] = set()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def submit(self, requests: Iterable[RequestSpec | Mapping[str, Any] | Sequence[Any]]) -> List[Any]:
        specs = [_as_spec(request) for request in requests]
        if not specs:
            return []
        if not self.enabled:
            return list(await asyncio.gather(*(self._issue(s.command, s.args, s.event) for s in specs)))

        loop = asyncio.get_running_loop()
        items = [BatchItem(spec=spec, future=loop.create_future()) for spec in specs]
        self._buffer.extend(items)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._delay, self._schedule_flush)
        return list(await asyncio.gather(*(item.future for item in items)))

    def cancel(self, reason: Optional[BaseException] = None) -> int:
        """Reject everything still buffered; used when the client shuts down."""

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch, self._buffer = self._buffer, []
        for item in batch:
            if not item.future.done():
                exc = ConnectionLost(f"{item.spec.command}: batch cancelled")
                exc.__cause__ = reason
                item.future.set_exception(exc)
        return len(batch)

    def _schedule_flush(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self._flush(), name="ipc-batch-flush")
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def _flush(self) -> None:
        batch, self._buffer = self._buffer, []
        batch = [item for item in batch if not item.future.done()]
        if not batch:
            return
        LOGGER.debug("Flushing batch of %s request(s)", len(batch))
        results = await asyncio.gather(
            *(self._issue(item.spec.command, item.spec.args, item.spec.event) for item in batch),
            return_exceptions=True,
        )
        for item, result in zip(batch, results):
            if item.future.done():
                continue
            if isinstance(result, asyncio.CancelledError):
                item.future.cancel()
            elif isinstance(result, BaseException):
                item.future.set_exception(result)
            else:
                item.future.set_result(result)


def _as_spec(request: RequestSpec | Mapping[str, Any] | Sequence[Any]) -> RequestSpec:
    if isinstance(request, RequestSpec):
        return request
    if isinstance(request, Mapping):
        return RequestSpec(request["cmd"], request.get("args"), request.get("evt"))
    return RequestSpec(*request)
