"""
pendulum_client.py -- HTTP client for pendulum worker endpoints.

Used by the controller (state polling, cluster commands, operator wind)
and by workers themselves (wind notifications to neighbors).

Worker endpoints:
  GET  /pendulum          -> {"bobPosition": {"x", "y"}, "status"}
  POST /start|/pause|/reset
  POST /wind              {"impulse": float}
  POST /configure         {"angle"?, "length"?, "damping"?}

Every failure (connection refused, timeout, HTTP error, bad JSON) surfaces
as PendulumClientError so callers have one thing to catch.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

import config
from pendulum_engine import BobPosition
from state_machine import SimulationState

logger = logging.getLogger(__name__)

PENDULUM_PATH = "/pendulum"
WIND_PATH = "/wind"
CONFIGURE_PATH = "/configure"
COMMAND_PATHS = {
    "start": "/start",
    "pause": "/pause",
    "reset": "/reset",
}

USER_AGENT = "PendulumCluster/1.0"


class PendulumClientError(Exception):
    """A worker could not be reached or answered with something unusable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class PendulumReport:
    bob_position: BobPosition
    status: SimulationState


def _request(url: str, payload: dict | None = None, timeout: float | None = None) -> dict:
    """
    Make an HTTP request and return the parsed JSON object.

    GET when payload is None, otherwise POST with a JSON body.
    """
    data = None
    headers = {"User-Agent": USER_AGENT}
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    if timeout is None:
        timeout = config.REQUEST_TIMEOUT_SECONDS

    req = urllib.request.Request(url, data=data, headers=headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        message = body[:200]
        try:
            parsed = json.loads(body)
            if isinstance(parsed, dict):
                message = str(parsed.get("message") or parsed.get("error") or message)
        except ValueError:
            pass
        raise PendulumClientError(f"HTTP {e.code} from {url}: {message}", e.code) from e
    except urllib.error.URLError as e:
        raise PendulumClientError(f"URL error for {url}: {e.reason}") from e
    except OSError as e:
        raise PendulumClientError(f"Request failed for {url}: {e}") from e

    try:
        parsed = json.loads(body)
    except ValueError as e:
        raise PendulumClientError(f"invalid JSON from {url}") from e
    if not isinstance(parsed, dict):
        raise PendulumClientError(f"unexpected payload from {url}")
    return parsed


def parse_report(payload: dict[str, Any]) -> PendulumReport:
    try:
        bob = payload["bobPosition"]
        position = BobPosition(x=float(bob["x"]), y=float(bob["y"]))
        status = SimulationState.parse(payload["status"])
    except (KeyError, TypeError, ValueError) as e:
        raise PendulumClientError(f"malformed pendulum report: {e}") from e
    return PendulumReport(bob_position=position, status=status)


def fetch_state(base_url: str, timeout: float | None = None) -> PendulumReport:
    """GET {base_url}/pendulum and parse it."""
    return parse_report(_request(base_url.rstrip("/") + PENDULUM_PATH, timeout=timeout))


def send_command(base_url: str, command: str, timeout: float | None = None) -> dict:
    """POST a lifecycle command (start / pause / reset) to one worker."""
    path = COMMAND_PATHS.get(command)
    if path is None:
        raise ValueError(f"unknown command: {command}")
    return _request(base_url.rstrip("/") + path, payload={}, timeout=timeout)


def send_wind(base_url: str, impulse: float, timeout: float | None = None) -> dict:
    return _request(
        base_url.rstrip("/") + WIND_PATH,
        payload={"impulse": float(impulse)},
        timeout=timeout,
    )


def send_configure(base_url: str, settings: dict, timeout: float | None = None) -> dict:
    return _request(base_url.rstrip("/") + CONFIGURE_PATH, payload=dict(settings), timeout=timeout)
