"""Connection session for the local IPC peer.

This layer is responsible for:
- Endpoint walk and transport ownership
- Handshake and READY transition
- Frame reassembly and opcode dispatch (PING/PONG, CLOSE, FRAME)
- Keep-alive pings while READY
- Graceful and abrupt close

It must not know about request correlation; FRAME payloads are handed to
``on_message`` untouched.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Optional

from ipcrpc.config import ClientSettings
from ipcrpc.errors import ConnectionFailed, ConnectionLost, NotConnected, RpcError
from ipcrpc.network.endpoints import candidate_paths
from ipcrpc.network.session_state import (
    ACTIVE_STATES,
    SENDABLE_STATES,
    SessionState,
    SessionTracker,
)
from ipcrpc.network.transport.base import BaseTransport
from ipcrpc.protocol.framing import Frame, FrameDecoder, Opcode, encode
from ipcrpc.protocol.messages import HandshakePayload, new_token

LOGGER = logging.getLogger(__name__)
CLOSE_TIMEOUT_SECONDS = 5.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class ConnectionSession:
    """Owns one byte-stream connection to the peer and drives its framing."""

    def __init__(
        self,
        settings: ClientSettings,
        transport_factory: Callable[[str], BaseTransport],
        *,
        client_id: Optional[str] = None,
        candidates: Optional[Callable[[], Sequence[str]]] = None,
        on_message: Optional[MessageHandler] = None,
        on_disconnect: Optional[Callable[[Exception], Awaitable[None]]] = None,
        on_closed: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._settings = settings
        self._transport_factory = transport_factory
        self._candidates = candidates or (lambda: candidate_paths(settings.ipc_name))
        self.client_id = client_id or settings.client_id
        self.on_message = on_message
        self.on_disconnect = on_disconnect
        self.on_closed = on_closed
        self.tracker = SessionTracker()
        self.path: Optional[str] = None
        self._decoder = FrameDecoder(settings.max_frame_bytes)
        self._transport: Optional[BaseTransport] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._send_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self.tracker.state

    @property
    def decoder(self) -> FrameDecoder:
        return self._decoder

    def _transition(self, state: SessionState) -> None:
        previous = self.tracker.state
        self.tracker.transition(state)
        LOGGER.debug("Session %s -> %s", previous.value, state.value)

    async def connect(self) -> None:
        """Walk the candidate endpoints and send the handshake on the first that answers."""

        if self.state in ACTIVE_STATES:
            return
        if not self.client_id:
            raise ValueError("client_id is required to open an IPC session")
        self._transition(SessionState.RESOLVING)
        paths = list(self._candidates())
        self._transition(SessionState.CONNECTING)

        transport: Optional[BaseTransport] = None
        for path in paths:
            candidate = self._transport_factory(path)
            try:
                await candidate.connect()
            except OSError as exc:
                LOGGER.debug("IPC endpoint %s unavailable: %s", path, exc)
                continue
            transport = candidate
            self.path = path
            break

        if transport is None:
            self._transition(SessionState.DISCONNECTED)
            raise ConnectionFailed(f"No IPC endpoint accepted a connection ({len(paths)} tried)")
        if self.state is not SessionState.CONNECTING:
            await transport.close()
            raise ConnectionFailed("Session closed while connecting")

        self._transport = transport
        self._decoder.reset()
        handshake = HandshakePayload(v=self._settings.handshake_version, client_id=self.client_id)
        try:
            await self._write(encode(Opcode.HANDSHAKE, handshake))
        except OSError as exc:
            self._transport = None
            await self._close_transport(transport)
            self._transition(SessionState.DISCONNECTED)
            raise ConnectionFailed(f"Handshake write to {self.path} failed: {exc}") from exc
        self._transition(SessionState.HANDSHAKE_SENT)
        LOGGER.info("Connected to IPC endpoint %s; handshake sent", self.path)
        self._recv_task = asyncio.create_task(self._receive_loop(transport), name="ipc-receive")

    def mark_ready(self) -> None:
        """Enter READY after the peer's READY dispatch and start keep-alive pings."""

        if self.state is not SessionState.HANDSHAKE_SENT:
            return
        self._transition(SessionState.READY)
        if self._settings.heartbeat_interval_seconds:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="ipc-heartbeat")

    async def send(self, opcode: Opcode, payload: Any) -> None:
        """Frame and write ``payload``; frames reach the stream in call order."""

        if self.state not in SENDABLE_STATES or self._transport is None:
            raise NotConnected(f"Cannot send {opcode.name} frame in state {self.state.value}")
        data = encode(opcode, payload)
        try:
            await self._write(data)
        except OSError as exc:
            await self._handle_disconnect(exc, self._transport)
            raise ConnectionLost(f"Write failed: {exc}") from exc

    async def send_frame(self, frame: Frame) -> None:
        await self.send(frame.opcode, frame.payload)

    async def abort(self, exc: Exception) -> None:
        """Drop the connection as if the transport had failed with ``exc``."""

        await self._handle_disconnect(exc, self._transport)

    async def close(self) -> None:
        """Send CLOSE, tear the transport down and wait for the receive loop to finish."""

        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        previous = self.state
        self._transition(SessionState.CLOSING)
        await self._stop_heartbeat()
        transport = self._transport
        if transport is not None and previous in SENDABLE_STATES:
            try:
                await self._write(encode(Opcode.CLOSE, {}))
            except OSError:
                LOGGER.debug("Suppress CLOSE frame write error", exc_info=True)
        self._transport = None
        if transport is not None:
            await self._close_transport(transport)
        recv_task = self._recv_task
        self._recv_task = None
        if recv_task is not None and recv_task is not asyncio.current_task():
            try:
                await asyncio.wait_for(recv_task, timeout=CLOSE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                LOGGER.warning("Receive loop did not stop within %.1fs of close", CLOSE_TIMEOUT_SECONDS)
        self._decoder.reset()
        self._transition(SessionState.CLOSED)
        LOGGER.info("IPC session closed")
        if self.on_closed:
            try:
                await self.on_closed()
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress session closed callback error", exc_info=True)

    async def _write(self, data: bytes) -> None:
        async with self._send_lock:
            transport = self._transport
            if transport is None:
                raise NotConnected("Transport already torn down")
            await transport.write(data)

    async def _receive_loop(self, transport: BaseTransport) -> None:
        try:
            while True:
                chunk = await transport.read()
                if transport is not self._transport:
                    return
                if not chunk:
                    raise ConnectionLost("Peer closed the IPC stream")
                for frame in self._decoder.feed(chunk):
                    await self._handle_frame(frame)
                    if transport is not self._transport:
                        return
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            if transport is not self._transport:
                LOGGER.debug("Receive loop for stale transport ended: %s", exc)
                return
            LOGGER.warning("Receive loop error, disconnecting: %s", exc)
            await self._handle_disconnect(exc, transport)

    async def _handle_frame(self, frame: Frame) -> None:
        if frame.opcode is Opcode.PING:
            await self._write(encode(Opcode.PONG, frame.payload))
        elif frame.opcode is Opcode.FRAME:
            if not isinstance(frame.payload, dict):
                LOGGER.debug("Ignoring non-object FRAME payload: %r", frame.payload)
                return
            if self.on_message is None:
                return
            try:
                result = self.on_message(frame.payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                LOGGER.exception("Inbound message handler failed")
        elif frame.opcode is Opcode.CLOSE:
            payload = frame.payload if isinstance(frame.payload, dict) else {}
            raise ConnectionLost(
                f"Peer closed the connection: {payload.get('code')} {payload.get('message') or ''}".rstrip()
            )
        else:
            LOGGER.debug("Ignoring %s frame", frame.opcode.name)

    async def _handle_disconnect(self, exc: Exception, transport: Optional[BaseTransport]) -> None:
        if transport is None or transport is not self._transport or self.state not in ACTIVE_STATES:
            return
        self._transport = None
        self._transition(SessionState.DISCONNECTED)
        await self._stop_heartbeat()
        await self._close_transport(transport)
        self._decoder.reset()
        if self.on_disconnect:
            try:
                await self.on_disconnect(exc)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress session disconnect callback error", exc_info=True)

    async def _close_transport(self, transport: BaseTransport) -> None:
        try:
            await transport.close()
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress transport close error", exc_info=True)

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _heartbeat_loop(self) -> None:
        interval = float(self._settings.heartbeat_interval_seconds)
        while self.state is SessionState.READY:
            await asyncio.sleep(interval)
            if self.state is not SessionState.READY:
                break
            try:
                await self.send(Opcode.PING, new_token())
            except asyncio.CancelledError:
                raise
            except RpcError as exc:
                LOGGER.warning("Heartbeat ping failed: %s", exc)
                break
