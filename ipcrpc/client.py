"""RPC client facade exposed to the command-marshalling layer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, List, Optional

from ipcrpc.config import ClientSettings, get_settings
from ipcrpc.control import EventDispatcher, RequestCorrelator, Subscription
from ipcrpc.control.dispatch import Handler
from ipcrpc.errors import ConnectionLost, EndpointNotFound, ReconnectExhausted, RequestTimeout
from ipcrpc.network.endpoints import probe_for_alternate_endpoint
from ipcrpc.network.session import ConnectionSession
from ipcrpc.network.session_state import SessionState
from ipcrpc.network.supervisor import ReconnectSupervisor
from ipcrpc.network.transport.base import BaseTransport
from ipcrpc.network.transport.ipc import IpcTransport
from ipcrpc.protocol.framing import Opcode
from ipcrpc.protocol.messages import RpcMessage
from ipcrpc.runtime import MISSING, AdmissionQueue, BatchAggregator, ResponseCache

LOGGER = logging.getLogger(__name__)

LIFECYCLE_EVENTS = frozenset({"connected", "disconnected", "reconnecting", "reconnected", "closed", "error"})


@dataclass
class RpcClient:
    """Wires the session, reconnection, correlation and concurrency layers.

    Lifecycle notifications (``connected``, ``disconnected``, ``reconnecting``,
    ``reconnected``, ``closed``, ``error``) and peer broadcast events share the
    ``on``/``off`` API; peer events are keyed by their ``evt`` name.
    """

    settings: ClientSettings = field(default_factory=get_settings)
    transport_factory: Callable[[str], BaseTransport] = IpcTransport
    candidates: Optional[Callable[[], Sequence[str]]] = None

    session: ConnectionSession = field(init=False, repr=False)
    correlator: RequestCorrelator = field(init=False, repr=False)
    supervisor: ReconnectSupervisor = field(init=False, repr=False)
    queue: AdmissionQueue = field(init=False, repr=False)
    batcher: BatchAggregator = field(init=False, repr=False)
    cache: Optional[ResponseCache] = field(default=None, init=False, repr=False)
    lifecycle: EventDispatcher = field(init=False, repr=False)
    user: Optional[dict[str, Any]] = field(default=None, init=False)
    http_endpoint: Optional[str] = field(default=None, init=False)

    _connect_task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)
    _ready_waiter: Optional[asyncio.Future[None]] = field(default=None, init=False, repr=False)
    _probe_task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)
    _established: bool = field(default=False, init=False, repr=False)
    _closing: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        settings = self.settings
        self.lifecycle = EventDispatcher(on_error=self._report_handler_error)
        self.session = ConnectionSession(
            settings,
            self.transport_factory,
            candidates=self.candidates,
            on_message=self._on_message,
            on_disconnect=self._on_disconnect,
            on_closed=self._on_closed,
        )
        self.correlator = RequestCorrelator(
            self._send_command,
            timeout=settings.request_timeout_seconds,
            on_ready=self._on_ready,
            on_authorize=self._on_authorize,
            events=EventDispatcher(on_error=self._report_handler_error),
            issue=self.request,
        )
        self.supervisor = ReconnectSupervisor(
            self._reconnect,
            max_attempts=settings.max_reconnect_attempts,
            base_delay=settings.reconnect_base_delay_seconds,
            max_delay=settings.reconnect_max_delay_seconds,
            on_reconnecting=self._on_reconnecting,
            on_reconnected=self._on_reconnected,
            on_exhausted=self._on_reconnect_exhausted,
        )
        self.queue = AdmissionQueue(settings.max_concurrent_requests)
        self.batcher = BatchAggregator(
            self.request,
            delay_seconds=settings.batch_delay_seconds,
            enabled=settings.enable_batching,
        )
        if settings.enable_cache:
            self.cache = ResponseCache(settings.cache_ttl_seconds)

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def client_id(self) -> Optional[str]:
        return self.session.client_id

    # Lifecycle -----------------------------------------------------------

    async def connect(self, client_id: Optional[str] = None) -> RpcClient:
        """Open the IPC session and wait for READY; concurrent callers share one attempt."""

        if client_id:
            self.session.client_id = client_id
        if self.session.state is SessionState.READY:
            return self
        task = self._connect_task
        if task is None or task.done():
            task = asyncio.create_task(self._connect_once(), name="ipc-connect")
            self._connect_task = task
        await asyncio.shield(task)
        return self

    async def _connect_once(self) -> None:
        self._closing = False
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._ready_waiter = waiter
        try:
            await self.session.connect()
            timeout = self.settings.request_timeout_seconds
            try:
                await asyncio.wait_for(waiter, timeout=timeout)
            except asyncio.TimeoutError as exc:
                self._ready_waiter = None
                error = RequestTimeout(f"Peer did not send READY within {timeout:.2f}s")
                await self.session.abort(error)
                raise error from exc
        finally:
            if self._ready_waiter is waiter:
                self._ready_waiter = None
            if not waiter.done():
                waiter.cancel()

    async def _reconnect(self) -> None:
        await self.connect()

    async def close(self) -> None:
        """Stop reconnecting, reject outstanding work and close the session."""

        self._closing = True
        await self.supervisor.stop()
        probe = self._probe_task
        self._probe_task = None
        if probe is not None and not probe.done():
            probe.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await probe
        reason = ConnectionLost("Client closed")
        self.batcher.cancel(reason)
        self.correlator.reject_all(reason)
        self._fail_ready_waiter(reason)
        await self.session.close()

    async def destroy(self) -> None:
        """Close and drop every listener, subscription and cached response."""

        await self.close()
        if self.cache is not None:
            self.cache.clear()
        self.correlator.clear()
        self.lifecycle.clear()

    # Requests ------------------------------------------------------------

    async def request(self, command: str, args: Any = None, event: Optional[str] = None) -> Any:
        """Issue ``command`` through the admission queue and await its response."""

        async with self.queue.slot():
            return await self.correlator.request(command, args, event)

    async def batch_request(self, requests: Iterable[Any]) -> List[Any]:
        return await self.batcher.submit(requests)

    async def cached_request(self, command: str, args: Any = None, event: Optional[str] = None) -> Any:
        """``request`` for read-only commands, answered from the response cache while fresh."""

        if self.cache is None:
            return await self.request(command, args, event)
        key = self.cache.key(event or command, args)
        cached = self.cache.get(key, MISSING)
        if cached is not MISSING:
            return cached
        value = await self.request(command, args, event)
        self.cache.set(key, value)
        return value

    async def subscribe(self, event: str, args: Any = None, handler: Optional[Handler] = None) -> Subscription:
        async with self.queue.slot():
            return await self.correlator.subscribe(event, args, handler)

    async def send(self, opcode: Opcode, payload: Any) -> None:
        await self.session.send(opcode, payload)

    # Listeners -----------------------------------------------------------

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Listen for a lifecycle notification or a peer broadcast event."""

        return self._dispatcher_for(event).on(event, handler)

    def off(self, event: str, handler: Handler) -> bool:
        return self._dispatcher_for(event).off(event, handler)

    def _dispatcher_for(self, event: str) -> EventDispatcher:
        if event in LIFECYCLE_EVENTS:
            return self.lifecycle
        return self.correlator.events

    def _report_handler_error(self, exc: Exception) -> None:
        self.lifecycle.emit("error", exc)

    # Session callbacks ---------------------------------------------------

    async def _send_command(self, payload: dict[str, Any]) -> None:
        await self.session.send(Opcode.FRAME, payload)

    async def _on_message(self, payload: dict[str, Any]) -> None:
        await self.correlator.handle_message(payload)

    def _on_ready(self, message: RpcMessage) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        if data.get("user"):
            self.user = data["user"]
        self.session.mark_ready()
        self.supervisor.reset()
        self._established = True
        waiter = self._ready_waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(None)
        LOGGER.info("IPC session ready (client_id=%s)", self.session.client_id)
        self.lifecycle.emit("connected")

    async def _on_disconnect(self, exc: Exception) -> None:
        was_established = self._established
        self._established = False
        self.correlator.reject_all(exc)
        self._fail_ready_waiter(exc)
        LOGGER.warning("IPC session disconnected: %s", exc)
        self.lifecycle.emit("disconnected", exc)
        if self.settings.auto_reconnect and was_established and not self._closing:
            self.supervisor.schedule(exc)

    async def _on_closed(self) -> None:
        self._established = False
        self.lifecycle.emit("closed")

    def _fail_ready_waiter(self, exc: BaseException) -> None:
        waiter = self._ready_waiter
        if waiter is None or waiter.done():
            return
        error = exc if isinstance(exc, ConnectionLost) else ConnectionLost(f"Disconnected before READY: {exc}")
        if error is not exc:
            error.__cause__ = exc
        waiter.set_exception(error)

    async def _on_reconnecting(self, attempt: int, delay: float) -> None:
        self.lifecycle.emit("reconnecting", attempt, delay)

    async def _on_reconnected(self, attempt: int) -> None:
        self.lifecycle.emit("reconnected", attempt)

    async def _on_reconnect_exhausted(self, exc: ReconnectExhausted) -> None:
        self.lifecycle.emit("error", exc)

    def _on_authorize(self, message: RpcMessage) -> None:
        if self._probe_task is not None and not self._probe_task.done():
            return
        self._probe_task = asyncio.create_task(self._probe_http_endpoint(), name="ipc-endpoint-probe")

    async def _probe_http_endpoint(self) -> None:
        settings = self.settings
        try:
            self.http_endpoint = await probe_for_alternate_endpoint(
                settings.endpoint_probe_max_attempts,
                base_port=settings.endpoint_probe_base_port,
                host=settings.endpoint_probe_host,
                timeout=settings.endpoint_probe_timeout_seconds,
            )
        except EndpointNotFound as exc:
            LOGGER.warning("%s", exc)
            self.lifecycle.emit("error", exc)
