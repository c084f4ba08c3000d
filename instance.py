"""
Pendulum worker runtime.

One process hosts exactly one pendulum:
- reducer-driven lifecycle (state_machine.transition)
- fixed-cadence tick thread, active only while Started
- wind thread broadcasting impulses to neighbor workers
- threaded HTTP server answering state queries and commands

Every engine mutation and every reducer dispatch happens under
PendulumRuntime.lock; handlers read snapshots under the same lock.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from math import isfinite
from socketserver import ThreadingMixIn
from typing import Any, Callable

import config
import pendulum_client
import state_machine as sm
from pendulum_engine import PendulumEngine, PendulumParams

logger = logging.getLogger(__name__)

# Keys accepted by POST /configure, mapped to PendulumParams fields.
CONFIGURABLE = {
    "angle": "initial_angle",
    "length": "length",
    "damping": "damping",
}


def default_params() -> PendulumParams:
    return PendulumParams(
        length=config.PENDULUM_LENGTH,
        gravity=config.PENDULUM_GRAVITY,
        damping=config.PENDULUM_DAMPING,
        initial_angle=config.PENDULUM_INITIAL_ANGLE,
        max_step=config.PENDULUM_MAX_STEP,
        scale=config.PENDULUM_SCALE,
        pivot_x=config.PENDULUM_PIVOT_X,
        pivot_y=config.PENDULUM_PIVOT_Y,
    )


class PendulumRuntime:
    def __init__(
        self,
        port: int,
        client_url: str,
        neighbors: tuple[str, ...] | list[str] = (),
        engine: PendulumEngine | None = None,
        tick_interval: float | None = None,
        restart_hold: float | None = None,
        wind_interval: float | None = None,
        wind_coupling: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.lock = threading.RLock()
        self.port = int(port)
        self.client_url = client_url
        self.neighbors = tuple(neighbors)
        self.engine = engine or PendulumEngine(default_params())
        self.state = sm.InstanceState()

        self.tick_interval = float(config.TICK_INTERVAL_SECONDS if tick_interval is None else tick_interval)
        self.restart_hold = float(config.RESTART_HOLD_SECONDS if restart_hold is None else restart_hold)
        self.wind_interval = float(config.WIND_BROADCAST_SECONDS if wind_interval is None else wind_interval)
        self.wind_coupling = float(config.WIND_COUPLING if wind_coupling is None else wind_coupling)
        self._clock = clock

        self.running = False
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

        self.ticks = 0
        self.wind_received = 0
        self.wind_sent = 0
        self.wind_failures = 0

    # ------------------ Lifecycle ------------------

    def status(self) -> sm.SimulationState:
        with self.lock:
            return self.state.status

    def dispatch(self, event: sm.Event) -> tuple[bool, str]:
        with self.lock:
            before = self.state.status
            self.state, actions = sm.transition(self.state, event)
            for action in actions:
                if isinstance(action, sm.ResetEngine):
                    self.engine.reset()
                elif isinstance(action, sm.RejectCommand):
                    logger.warning("Rejected %s: %s", action.command, action.reason)
                    return False, action.reason
            after = self.state.status
        if after != before:
            logger.info("Status %s -> %s", before.value, after.value)
        return True, after.value

    def start(self) -> tuple[bool, str]:
        return self.dispatch(sm.StartCommand(timestamp=self._clock()))

    def pause(self) -> tuple[bool, str]:
        return self.dispatch(sm.PauseCommand(timestamp=self._clock()))

    def reset(self) -> tuple[bool, str]:
        return self.dispatch(sm.ResetCommand(timestamp=self._clock(), hold_sec=self.restart_hold))

    def configure(self, settings: dict[str, Any]) -> tuple[bool, str]:
        changes: dict[str, float] = {}
        for key, value in settings.items():
            field = CONFIGURABLE.get(key)
            if field is None:
                return False, f"unknown setting: {key}"
            try:
                number = float(value)
            except (TypeError, ValueError):
                return False, f"invalid value for {key}"
            if not isfinite(number):
                return False, f"invalid value for {key}"
            changes[field] = number
        if not changes:
            return False, "nothing to configure"

        with self.lock:
            if self.state.status != sm.SimulationState.STOPPED:
                return False, f"cannot configure while {self.state.status.value}"
            try:
                self.engine.configure(**changes)
            except ValueError as exc:
                return False, str(exc)
        logger.info("Configured %s", changes)
        return True, "configured"

    def apply_wind(self, impulse: float) -> None:
        with self.lock:
            self.engine.apply_wind(impulse)
            self.wind_received += 1

    # ------------------ Simulation loop ------------------

    def tick_once(self) -> None:
        with self.lock:
            if self.state.status == sm.SimulationState.RESTARTING:
                self.dispatch(sm.ResetComplete(timestamp=self._clock()))
            if sm.is_ticking(self.state):
                self.engine.tick(self.tick_interval)
                self.ticks += 1

    def _tick_loop(self) -> None:
        logger.info("Tick loop running (every %.3fs)", self.tick_interval)
        while not self._stop.is_set():
            loop_start = time.monotonic()
            try:
                self.tick_once()
            except Exception:
                logger.exception("Tick loop error")
            elapsed = time.monotonic() - loop_start
            self._stop.wait(max(0.0, self.tick_interval - elapsed))

    # ------------------ Wind ------------------

    def wind_impulse(self) -> float | None:
        """Impulse to broadcast right now, or None when nothing should be sent."""
        with self.lock:
            if not sm.is_ticking(self.state):
                return None
            omega = self.engine.snapshot().angular_velocity
        if not self.neighbors or self.wind_coupling == 0.0:
            return None
        return self.wind_coupling * omega

    def broadcast_wind_once(self) -> int:
        """Send one impulse to every neighbor.  Returns how many were delivered."""
        impulse = self.wind_impulse()
        if impulse is None:
            return 0
        delivered = 0
        for url in self.neighbors:
            try:
                pendulum_client.send_wind(url, impulse, timeout=config.WIND_TIMEOUT_SECONDS)
            except pendulum_client.PendulumClientError as exc:
                with self.lock:
                    self.wind_failures += 1
                logger.warning("Wind to %s dropped: %s", url, exc)
                continue
            delivered += 1
            logger.debug("Wind %.5f -> %s", impulse, url)
        with self.lock:
            self.wind_sent += delivered
        return delivered

    def _wind_loop(self) -> None:
        while not self._stop.wait(self.wind_interval):
            try:
                self.broadcast_wind_once()
            except Exception:
                logger.exception("Wind loop error")

    # ------------------ Threads ------------------

    def start_background(self) -> None:
        if self.running:
            return
        self.running = True
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._tick_loop, daemon=True, name=f"tick-{self.port}"),
            threading.Thread(target=self._wind_loop, daemon=True, name=f"wind-{self.port}"),
        ]
        for thread in self._threads:
            thread.start()

    def wait(self, timeout: float) -> bool:
        """Block until shutdown or timeout.  Returns True once shut down."""
        return self._stop.wait(timeout)

    def shutdown(self, reason: str) -> None:
        logger.info("Shutting down: %s", reason)
        self.running = False
        self._stop.set()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=2.0)
        self._threads = []

    # ------------------ Payloads ------------------

    def report(self) -> dict:
        with self.lock:
            snap = self.engine.snapshot()
            status = self.state.status
        return {
            "bobPosition": {"x": snap.bob_position.x, "y": snap.bob_position.y},
            "status": status.value,
        }

    def details(self) -> dict:
        with self.lock:
            snap = self.engine.snapshot()
            params = self.engine.params
            return {
                "port": self.port,
                "status": self.state.status.value,
                "legal_commands": list(sm.legal_commands(self.state.status)),
                "physics": snap.to_dict(),
                "energy": self.engine.energy(),
                "params": {
                    "length": params.length,
                    "gravity": params.gravity,
                    "damping": params.damping,
                    "initial_angle": params.initial_angle,
                },
                "neighbors": list(self.neighbors),
                "ticks": self.ticks,
                "wind": {
                    "received": self.wind_received,
                    "sent": self.wind_sent,
                    "failures": self.wind_failures,
                },
                "lifecycle": sm.to_dict(self.state),
            }


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], runtime: PendulumRuntime) -> None:
        self.runtime = runtime
        super().__init__(address, PendulumHandler)


class PendulumHandler(BaseHTTPRequestHandler):
    server: ThreadingHTTPServer

    def log_message(self, fmt: str, *args: Any) -> None:  # noqa: D401
        logger.debug("HTTP %s - %s", self.address_string(), fmt % args)

    def _cors_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", self.server.runtime.client_url or "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")

    def _send_json(self, data: dict, code: int = 200) -> None:
        payload = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        self._cors_headers()
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _read_json(self) -> dict:
        n = int(self.headers.get("Content-Length", "0") or "0")
        if n <= 0:
            return {}
        raw = self.rfile.read(n)
        try:
            body = json.loads(raw.decode("utf-8"))
        except Exception as exc:
            raise ValueError("invalid request body") from exc
        if not isinstance(body, dict):
            raise ValueError("invalid request body")
        return body

    def _route(self) -> str:
        return self.path.split("?", 1)[0].rstrip("/") or "/"

    def do_OPTIONS(self) -> None:  # noqa: N802
        self.send_response(204)
        self._cors_headers()
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self) -> None:  # noqa: N802
        runtime = self.server.runtime
        route = self._route()
        try:
            if route == pendulum_client.PENDULUM_PATH:
                self._send_json(runtime.report())
                return
            if route == pendulum_client.PENDULUM_PATH + "/details":
                self._send_json(runtime.details())
                return
            self._send_json({"error": "not found"}, 404)
        except Exception:
            logger.exception("Unhandled exception in GET %s", route)
            self._send_json({"error": "internal server error"}, 500)

    def do_POST(self) -> None:  # noqa: N802
        runtime = self.server.runtime
        route = self._route()
        try:
            try:
                body = self._read_json()
            except ValueError:
                self._send_json({"ok": False, "message": "invalid request body"}, 400)
                return

            if route == pendulum_client.WIND_PATH:
                try:
                    impulse = float(body.get("impulse"))
                    if not isfinite(impulse):
                        raise ValueError("non-finite impulse")
                except (TypeError, ValueError):
                    self._send_json({"ok": False, "message": "invalid impulse"}, 400)
                    return
                runtime.apply_wind(impulse)
                self._send_json({"ok": True})
                return

            if route == pendulum_client.CONFIGURE_PATH:
                ok, msg = runtime.configure(body)
                self._send_json({"ok": ok, "message": msg}, 200 if ok else 409)
                return

            commands = {
                pendulum_client.COMMAND_PATHS["start"]: runtime.start,
                pendulum_client.COMMAND_PATHS["pause"]: runtime.pause,
                pendulum_client.COMMAND_PATHS["reset"]: runtime.reset,
            }
            handler = commands.get(route)
            if handler is None:
                self._send_json({"ok": False, "message": "not found"}, 404)
                return
            ok, msg = handler()
            if ok:
                self._send_json({"ok": True, "status": msg})
            else:
                self._send_json({"ok": False, "message": msg, "status": runtime.status().value}, 409)
        except Exception:
            logger.exception("Unhandled exception in POST %s", route)
            self._send_json({"ok": False, "message": "internal server error"}, 500)


def start_http_server(runtime: PendulumRuntime, host: str = "0.0.0.0") -> ThreadingHTTPServer:
    """
    Bind and serve on a background thread.

    Raises OSError when the port is already bound; callers treat that as fatal.
    """
    server = ThreadingHTTPServer((host, runtime.port), runtime)
    if runtime.port == 0:
        runtime.port = int(server.server_address[1])
    thread = threading.Thread(target=server.serve_forever, daemon=True, name=f"http-{runtime.port}")
    thread.start()
    logger.info("Pendulum server listening on :%s (%d neighbors)", runtime.port, len(runtime.neighbors))
    return server
