"""
Cluster supervisor entry point: spawns the static roster and waits.

    python app.py
"""

from __future__ import annotations

import logging
import signal
import sys

import config
from cluster import Cluster, SpawnError, build_roster

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def run() -> int:
    setup_logging()
    config.print_banner()

    roster = build_roster()
    if not roster:
        logger.error("Roster is empty; set CLUSTER_PORTS")
        return 1

    cluster = Cluster(roster)

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received, stopping workers", signum)
        cluster.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        cluster.start()
    except SpawnError as exc:
        logger.error("Cluster start failed: %s", exc)
        return 1

    codes = cluster.wait()
    return 0 if all(code == 0 for code in codes.values()) else 1


if __name__ == "__main__":
    sys.exit(run())
