"""Explicit name → handlers dispatch table."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Dict, List, Optional, Set

LOGGER = logging.getLogger(__name__)

Handler = Callable[..., Any]


class EventDispatcher:
    """Ordered handlers per event name, invoked synchronously on ``emit``.

    A failing handler is logged and reported to ``on_error``; it never stops
    delivery to the remaining handlers. Coroutine handlers are scheduled as
    tasks by the caller's loop.
    """

    def __init__(self, *, on_error: Optional[Callable[[Exception], None]] = None) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self.on_error = on_error
        self._tasks: Set[asyncio.Future[Any]] = set()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler``; the returned callable removes it again."""

        self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> bool:
        handlers = self._handlers.get(event)
        if not handlers:
            return False
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        if not handlers:
            del self._handlers[event]
        return True

    def handlers(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event, ()))

    def has_handlers(self, event: str) -> bool:
        return bool(self._handlers.get(event))

    def clear(self) -> None:
        self._handlers.clear()

    def emit(self, event: str, *args: Any) -> int:
        """Deliver to every handler of ``event``; returns how many were called."""

        delivered = 0
        for handler in self.handlers(event):
            delivered += 1
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    self._track(event, result)
            except Exception as exc:  # noqa: BLE001
                self._report(event, exc)
        return delivered

    def _track(self, event: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(fut: asyncio.Future[Any]) -> None:
            self._tasks.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None and isinstance(exc, Exception):
                self._report(event, exc)

        task.add_done_callback(_done)

    def _report(self, event: str, exc: Exception) -> None:
        LOGGER.error("Handler for %s failed: %s", event, exc, exc_info=exc)
        if self.on_error is None or event == "error":
            return
        try:
            self.on_error(exc)
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress dispatcher error callback failure", exc_info=True)
