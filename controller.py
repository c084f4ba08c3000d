"""
Headless cluster controller.

    python controller.py watch          # poll and log cluster state changes
    python controller.py start          # start-all, then watch
    python controller.py pause|reset    # same for pause-all / reset-all
    python controller.py wind 0.5       # operator wind (only while Stopped)

Stands in for the browser client: same polling cadence, same reducer, same
button gating.  Runs until interrupted.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import config
from cluster import build_roster
from poller import ClusterController

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pendulum cluster controller")
    parser.add_argument("command", choices=("watch", "start", "pause", "reset", "wind"))
    parser.add_argument("impulse", nargs="?", type=float, default=0.0, help="wind impulse (rad/s)")
    parser.add_argument("--once", action="store_true", help="issue the command and exit")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> int:
    setup_logging()
    args = parse_args(argv)

    roster = build_roster()
    controller = ClusterController(w.base_url for w in roster)
    initial = controller.sync_once()
    logger.info("Initial cluster state: %s", initial.to_dict())

    ok = True
    if args.command == "wind":
        ok, msg = controller.wind_all(args.impulse)
        logger.info("wind: %s", msg)
    elif args.command != "watch":
        action = {
            "start": controller.start_all,
            "pause": controller.pause_all,
            "reset": controller.reset_all,
        }[args.command]
        ok, msg = action()
        logger.info("%s: %s", args.command, msg)

    if args.once:
        controller.close()
        return 0 if ok else 1

    done = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        done.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    while not done.wait(1.0):
        pass
    controller.close()
    logger.info("Final cluster state: %s", controller.state.to_dict())
    return 0


if __name__ == "__main__":
    sys.exit(run())
