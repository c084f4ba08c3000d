"""
Worker process entry point.

    python start_instance.py <port> <client_url> <json neighbor urls>

Launched by the cluster supervisor, one process per roster entry.  Logs go to
stdout so the supervisor can prefix them with the worker's port.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys

import config
from instance import PendulumRuntime, start_http_server

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def parse_neighbors(raw: str) -> tuple[str, ...]:
    try:
        urls = json.loads(raw)
    except ValueError as exc:
        raise ValueError(f"neighbor list is not JSON: {raw!r}") from exc
    if not isinstance(urls, list) or not all(isinstance(u, str) for u in urls):
        raise ValueError("neighbor list must be a JSON array of URLs")
    return tuple(urls)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one pendulum worker")
    parser.add_argument("port", type=int)
    parser.add_argument("client_url")
    parser.add_argument("neighbors", nargs="?", default="[]", help="JSON array of neighbor base URLs")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> int:
    setup_logging()
    args = parse_args(argv)
    try:
        neighbors = parse_neighbors(args.neighbors)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    rt = PendulumRuntime(args.port, args.client_url, neighbors)

    try:
        server = start_http_server(rt)
    except OSError as exc:
        logger.error("Cannot bind port %s: %s", args.port, exc)
        return 1

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        rt.shutdown(f"signal {signum}")

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        rt.start_background()
        while rt.running:
            # Signals interrupt the wait; the loop re-checks running.
            rt.wait(1.0)
    finally:
        server.shutdown()
        server.server_close()
        if rt.running:
            rt.shutdown("process exit")
    return 0


if __name__ == "__main__":
    sys.exit(run())
