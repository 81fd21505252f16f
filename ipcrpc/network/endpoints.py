"""Endpoint discovery: local IPC candidates and the HTTP side-channel probe."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import List, Mapping, Optional

import requests

from ipcrpc.errors import EndpointNotFound

LOGGER = logging.getLogger(__name__)

INSTANCE_COUNT = 10
PROBE_PORT_SPAN = 10
_PREFIX_VARS = ("XDG_RUNTIME_DIR", "TMPDIR", "TMP", "TEMP")


def candidate_paths(
    name: str = "discord-ipc",
    *,
    platform: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """Return the numbered rendezvous addresses to try, in order."""

    platform = platform or sys.platform
    if platform == "win32":
        return [rf"\\?\pipe\{name}-{index}" for index in range(INSTANCE_COUNT)]
    env = os.environ if environ is None else environ
    prefix = next((env[var] for var in _PREFIX_VARS if env.get(var)), "/tmp")
    prefix = prefix.rstrip("/")
    return [f"{prefix}/{name}-{index}" for index in range(INSTANCE_COUNT)]


def _probe_once(url: str, timeout: float) -> bool:
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        LOGGER.debug("Endpoint probe %s failed: %s", url, exc)
        return False
    return response.status_code == 404


async def probe_for_alternate_endpoint(
    max_attempts: int = 30,
    *,
    base_port: int = 6463,
    host: str = "127.0.0.1",
    timeout: float = 1.0,
) -> str:
    """Find the HTTP side-channel by cycling through the probe port range.

    A 404 answer marks the endpoint; refusals and any other status move on to
    the next port. Gives up once ``max_attempts`` is exceeded.
    """

    attempt = 0
    while attempt <= max_attempts:
        url = f"http://{host}:{base_port + (attempt % PROBE_PORT_SPAN)}"
        if await asyncio.to_thread(_probe_once, url, timeout):
            LOGGER.info("HTTP side-channel found at %s after %s attempt(s)", url, attempt + 1)
            return url
        attempt += 1
    raise EndpointNotFound(f"No HTTP side-channel answered after {attempt} attempts")
