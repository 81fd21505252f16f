"""Connects the IPC RPC client and logs lifecycle and subscribed events."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from pathlib import Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Connect to the local RPC peer and stay attached.")
    parser.add_argument("--client-id", default=None, help="Application id sent in the handshake (overrides settings/env).")
    parser.add_argument(
        "--subscribe",
        action="append",
        default=[],
        metavar="EVENT",
        help="Peer event to subscribe to; may be repeated.",
    )
    parser.add_argument(
        "--log-level",
        choices=["critical", "error", "warning", "info", "debug"],
        default=None,
        help="Log level (overrides settings/env).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root))

    # Lazy import after adjusting sys.path
    from ipcrpc.bootstrap import run_forever  # type: ignore
    from ipcrpc.config import get_settings  # type: ignore

    settings = get_settings()
    overrides = {}
    if args.client_id:
        overrides["client_id"] = args.client_id
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if overrides:
        settings = settings.model_copy(update=overrides)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run_forever(settings, subscribe=args.subscribe))


if __name__ == "__main__":
    main()
