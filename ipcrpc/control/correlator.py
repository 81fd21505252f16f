"""Request/response correlation over the single multiplexed IPC channel."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ipcrpc.control.dispatch import EventDispatcher, Handler
from ipcrpc.errors import ConnectionLost, RequestTimeout
from ipcrpc.protocol.messages import (
    AUTHORIZE,
    SUBSCRIBE,
    UNSUBSCRIBE,
    CommandPayload,
    RpcMessage,
    fingerprint,
    new_token,
)

LOGGER = logging.getLogger(__name__)

_ABORTED_TOKENS_MAX = 512

SendCallable = Callable[[dict[str, Any]], Awaitable[None]]
IssueCallable = Callable[[str, Any, Optional[str]], Awaitable[Any]]


@dataclass
class PendingRequest:
    token: str
    command: str
    deadline: float
    future: asyncio.Future[Any]
    timer: Optional[asyncio.TimerHandle] = None

    def resolve(self, value: Any) -> None:
        self._cancel_timer()
        if not self.future.done():
            self.future.set_result(value)

    def reject(self, exc: BaseException) -> None:
        self._cancel_timer()
        if not self.future.done():
            self.future.set_exception(exc)

    def _cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``RequestCorrelator.subscribe``."""

    correlator: "RequestCorrelator"
    event: str
    args: Any
    handler: Optional[Handler] = None
    key: str = field(init=False)
    active: bool = field(default=True, init=False)

    def __post_init__(self) -> None:
        self.key = fingerprint(self.event, self.args)

    async def unsubscribe(self) -> Any:
        if not self.active:
            return None
        self.active = False
        self.correlator._forget_subscription(self)
        return await self.correlator.issue(UNSUBSCRIBE, self.args, self.event)


class RequestCorrelator:
    """Tracks pending requests by token and routes inbound FRAME payloads.

    Inbound messages are, in order of precedence: the READY dispatch, a
    response to a pending request, a late response to a request that already
    timed out (dropped), or a broadcast event delivered to ``events``.
    """

    def __init__(
        self,
        send: SendCallable,
        *,
        timeout: float,
        on_ready: Optional[Callable[[RpcMessage], Awaitable[None] | None]] = None,
        on_authorize: Optional[Callable[[RpcMessage], None]] = None,
        events: Optional[EventDispatcher] = None,
        issue: Optional[IssueCallable] = None,
    ) -> None:
        self._send = send
        # Requests made through subscription handles (UNSUBSCRIBE).
        self.issue: IssueCallable = issue or self.request
        self._timeout = float(timeout)
        self.on_ready = on_ready
        self.on_authorize = on_authorize
        self.events = events or EventDispatcher()
        self._pending: Dict[str, PendingRequest] = {}
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._aborted: OrderedDict[str, None] = OrderedDict()

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def pending_tokens(self) -> List[str]:
        return list(self._pending)

    def is_pending(self, token: str) -> bool:
        return token in self._pending

    async def request(self, command: str, args: Any = None, event: Optional[str] = None) -> Any:
        """Send ``command`` and wait for the response carrying the same token."""

        loop = asyncio.get_running_loop()
        token = new_token()
        future: asyncio.Future[Any] = loop.create_future()
        pending = PendingRequest(
            token=token,
            command=command,
            deadline=loop.time() + self._timeout,
            future=future,
        )
        pending.timer = loop.call_later(self._timeout, self._expire, token)
        self._pending[token] = pending
        payload = CommandPayload(command=command, args=args, event=event, token=token)
        try:
            await self._send(payload.to_wire())
        except BaseException:
            self._discard(token)
            if future.done() and not future.cancelled():
                # Already rejected by a disconnect triggered from the failed write.
                future.exception()
            else:
                future.cancel()
            raise
        try:
            return await future
        finally:
            if token in self._pending:
                self._discard(token)

    async def handle_message(self, payload: dict[str, Any]) -> None:
        try:
            message = RpcMessage.model_validate(payload)
        except ValidationError as exc:
            LOGGER.warning("Dropping malformed inbound message: %s", exc)
            return

        if message.is_ready_dispatch:
            if self.on_ready is not None:
                result = self.on_ready(message)
                if inspect.isawaitable(result):
                    await result
            return

        if message.command == AUTHORIZE and not message.is_error and self.on_authorize is not None:
            self.on_authorize(message)

        if message.token and message.token in self._pending:
            pending = self._pending.pop(message.token)
            if message.is_error:
                pending.reject(message.to_error())
            else:
                pending.resolve(message.data)
            return

        if message.token and self._pop_aborted(message.token):
            LOGGER.debug("Ignored late response for aborted request token=%s cmd=%s", message.token, message.command)
            return

        if not message.event:
            LOGGER.debug("Dropping unmatched message without event cmd=%s token=%s", message.command, message.token)
            return
        if not self.events.emit(message.event, message.data):
            LOGGER.debug("No subscribers for event %s", message.event)

    def reject_all(self, reason: Optional[BaseException] = None) -> int:
        """Reject every pending request with ``ConnectionLost`` in registration order."""

        pending = list(self._pending.values())
        self._pending.clear()
        if pending:
            LOGGER.debug("Rejecting %s pending requests: %s", len(pending), reason)
        for entry in pending:
            exc = ConnectionLost(f"{entry.command}: connection lost ({reason})" if reason else f"{entry.command}: connection lost")
            exc.__cause__ = reason
            entry.reject(exc)
            self._track_aborted(entry.token)
        return len(pending)

    async def subscribe(self, event: str, args: Any = None, handler: Optional[Handler] = None) -> Subscription:
        """Send SUBSCRIBE for ``(event, args)`` and return an independent handle."""

        subscription = Subscription(self, event, args, handler)
        self._subscriptions.setdefault(subscription.key, []).append(subscription)
        if handler is not None:
            self.events.on(event, handler)
        try:
            await self.request(SUBSCRIBE, args, event)
        except BaseException:
            subscription.active = False
            self._forget_subscription(subscription)
            raise
        return subscription

    def subscriptions(self, event: Optional[str] = None, args: Any = None) -> List[Subscription]:
        if event is None:
            return [sub for subs in self._subscriptions.values() for sub in subs]
        return list(self._subscriptions.get(fingerprint(event, args), ()))

    def clear(self) -> None:
        for subs in list(self._subscriptions.values()):
            for subscription in subs:
                subscription.active = False
        self._subscriptions.clear()
        self.events.clear()

    def _forget_subscription(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.key)
        if subs and subscription in subs:
            subs.remove(subscription)
            if not subs:
                del self._subscriptions[subscription.key]
        if subscription.handler is not None:
            self.events.off(subscription.event, subscription.handler)

    def _expire(self, token: str) -> None:
        pending = self._pending.pop(token, None)
        if pending is None:
            return
        pending.timer = None
        self._track_aborted(token)
        LOGGER.debug("Request %s timed out token=%s", pending.command, token)
        pending.reject(RequestTimeout(f"{pending.command} timed out after {self._timeout:.2f}s"))

    def _discard(self, token: str) -> None:
        pending = self._pending.pop(token, None)
        if pending is None:
            return
        pending._cancel_timer()
        self._track_aborted(token)

    def _track_aborted(self, token: str) -> None:
        if token in self._aborted:
            return
        self._aborted[token] = None
        if len(self._aborted) > _ABORTED_TOKENS_MAX:
            self._aborted.popitem(last=False)

    def _pop_aborted(self, token: str) -> bool:
        if token not in self._aborted:
            return False
        del self._aborted[token]
        return True
