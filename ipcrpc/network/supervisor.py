"""Reconnection policy wrapped around a connection session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional

from ipcrpc.errors import ReconnectExhausted, RpcError

LOGGER = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff ``min(base * 2**attempt, cap)``."""

    return min(base * (2 ** attempt), cap)


@dataclass
class ReconnectState:
    attempts: int = 0
    max_attempts: int = 3
    in_progress: bool = False
    rearm: bool = False


class ReconnectSupervisor:
    """Retries ``connect`` with capped exponential backoff after a disconnect."""

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        *,
        max_attempts: int,
        base_delay: float,
        max_delay: float,
        on_reconnecting: Optional[Callable[[int, float], Awaitable[None]]] = None,
        on_reconnected: Optional[Callable[[int], Awaitable[None]]] = None,
        on_exhausted: Optional[Callable[[ReconnectExhausted], Awaitable[None]]] = None,
    ) -> None:
        self._connect = connect
        self._base_delay = float(base_delay)
        self._max_delay = float(max_delay)
        self._on_reconnecting = on_reconnecting
        self._on_reconnected = on_reconnected
        self._on_exhausted = on_exhausted
        self.state = ReconnectState(max_attempts=max_attempts)
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def in_progress(self) -> bool:
        return self.state.in_progress

    def reset(self) -> None:
        """Forget previous failures; called on every READY transition."""

        self.state.attempts = 0

    def schedule(self, reason: Optional[Exception] = None) -> Optional[asyncio.Task[None]]:
        """Start the retry loop unless one is already running."""

        if self.state.in_progress:
            # The connection may have dropped again while the loop was connecting.
            self.state.rearm = True
            LOGGER.debug("Reconnect already in progress; re-arming for %s", reason)
            return None
        self.state.in_progress = True
        self._task = asyncio.create_task(self._run(), name="ipc-reconnect")
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.state.in_progress = False
        self.state.rearm = False

    async def wait(self) -> None:
        """Wait for the running retry loop (if any) to finish."""

        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        try:
            while True:
                self.state.attempts += 1
                attempt = self.state.attempts
                if attempt > self.state.max_attempts:
                    exc = ReconnectExhausted(f"Failed to reconnect after {attempt - 1} attempts")
                    LOGGER.error("%s", exc)
                    await self._notify(self._on_exhausted, exc)
                    return
                delay = backoff_delay(attempt, self._base_delay, self._max_delay)
                await self._notify(self._on_reconnecting, attempt, delay)
                LOGGER.info("Reconnect attempt %s in %.2fs", attempt, delay)
                await asyncio.sleep(delay)
                self.state.rearm = False
                try:
                    await self._connect()
                except asyncio.CancelledError:
                    raise
                except RpcError as exc:
                    LOGGER.warning("Reconnect attempt %s failed: %s", attempt, exc)
                    continue
                if self.state.rearm:
                    self.state.rearm = False
                    LOGGER.warning("Connection dropped again right after reconnect attempt %s", attempt)
                    continue
                self.reset()
                LOGGER.info("Reconnected after %s attempt(s)", attempt)
                await self._notify(self._on_reconnected, attempt)
                return
        finally:
            self.state.in_progress = False
            self.state.rearm = False

    @staticmethod
    async def _notify(callback: Optional[Callable[..., Awaitable[None]]], *args: object) -> None:
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress reconnect callback error", exc_info=True)
