"""Client bootstrap entrypoint for settings/session wiring."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from ipcrpc.client import RpcClient
from ipcrpc.config import ClientSettings, get_settings

LOGGER = logging.getLogger(__name__)


def _log_event(name: str):
    def _handler(*args: object) -> None:
        LOGGER.info("Event %s: %s", name, args if args else "")

    return _handler


async def setup(settings: Optional[ClientSettings] = None, *, subscribe: Iterable[str] = ()) -> RpcClient:
    """Construct, connect and return the client."""

    settings = settings or get_settings()
    if not settings.client_id:
        raise RuntimeError("client_id is not configured (set IPCRPC_CLIENT_ID or pass --client-id)")
    client = RpcClient(settings=settings)
    for name in ("connected", "disconnected", "reconnecting", "reconnected", "closed", "error"):
        client.on(name, _log_event(name))

    await client.connect()
    LOGGER.info("Connected via %s as user=%s", client.session.path, (client.user or {}).get("username"))
    for event in subscribe:
        await client.subscribe(event, handler=_log_event(event))
    return client


async def run_forever(settings: Optional[ClientSettings] = None, *, subscribe: Iterable[str] = ()) -> None:
    """Connect and keep the process alive until cancelled."""

    client = await setup(settings, subscribe=subscribe)
    try:
        await asyncio.Future()  # block until cancelled
    except asyncio.CancelledError:
        LOGGER.info("Client shutdown requested")
        raise
    finally:
        await client.destroy()
