"""
poller.py

Controller side of the cluster: one polling thread per worker feeding the
reconciliation reducer, plus the cluster-wide operator commands.

A worker is polled only while its locally known status is not Stopped.
Each loop exits on its own once it sees Stopped; a later dispatch that moves
the worker out of Stopped (e.g. start_all) starts a fresh loop.  Poll
failures are skipped and retried next period, with no backoff and no status
change.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

import config
import pendulum_client
import reconciler as rc
from pendulum_client import PendulumClientError, PendulumReport
from pendulum_engine import BobPosition
from state_machine import SimulationState

logger = logging.getLogger(__name__)

PositionCallback = Callable[[str, BobPosition], None]
ChangeCallback = Callable[[rc.ClusterObservedState], None]

# Optimistic cluster status applied after each operator command.
COMMAND_STATES = {
    "start": SimulationState.STARTED,
    "pause": SimulationState.PAUSED,
    "reset": SimulationState.RESTARTING,
}


class ClusterController:
    def __init__(
        self,
        worker_ids: Iterable[str],
        fetch: Callable[[str], PendulumReport] = pendulum_client.fetch_state,
        command: Callable[[str, str], dict] = pendulum_client.send_command,
        wind: Callable[[str, float], dict] = pendulum_client.send_wind,
        configure: Callable[[str, dict], dict] = pendulum_client.send_configure,
        period: float | None = None,
        on_position: PositionCallback | None = None,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self.worker_ids = tuple(worker_ids)
        self.lock = threading.RLock()
        self._state = rc.initial_state(self.worker_ids)
        self._fetch = fetch
        self._command = command
        self._wind = wind
        self._configure = configure
        self.period = float(config.REFRESH_PERIOD_SECONDS if period is None else period)
        self.on_position = on_position
        self.on_change = on_change

        self._closed = False
        self._loops: dict[str, tuple[threading.Thread, threading.Event]] = {}
        self.poll_failures: dict[str, int] = {w: 0 for w in self.worker_ids}

    # ------------------ Reducer access ------------------

    @property
    def state(self) -> rc.ClusterObservedState:
        with self.lock:
            return self._state

    def dispatch(self, action: rc.ReconcileAction) -> rc.ClusterObservedState:
        with self.lock:
            before = self._state
            self._state = rc.reduce(before, action)
            after = self._state
            self._ensure_polling_locked()
        changed = (
            after.global_state != before.global_state
            or after.interactions_enabled != before.interactions_enabled
        )
        if changed:
            logger.info(
                "Cluster state %s -> %s (interactions %s)",
                before.global_state.value,
                after.global_state.value,
                "enabled" if after.interactions_enabled else "disabled",
            )
            if self.on_change is not None:
                self.on_change(after)
        return after

    # ------------------ Polling ------------------

    def polling(self) -> tuple[str, ...]:
        """Workers with a live polling loop."""
        with self.lock:
            return tuple(w for w, (thread, _) in self._loops.items() if thread.is_alive())

    def _ensure_polling_locked(self) -> None:
        if self._closed:
            return
        for worker_id, status in self._state.per_worker.items():
            if status == SimulationState.STOPPED:
                continue
            current = self._loops.get(worker_id)
            if current is not None and current[0].is_alive():
                continue
            stop = threading.Event()
            thread = threading.Thread(
                target=self._poll_loop,
                args=(worker_id, stop),
                daemon=True,
                name=f"poll-{worker_id}",
            )
            self._loops[worker_id] = (thread, stop)
            thread.start()

    def _poll_loop(self, worker_id: str, stop: threading.Event) -> None:
        logger.debug("Polling %s every %.3fs", worker_id, self.period)
        while not stop.is_set():
            with self.lock:
                # Exit and deregistration are atomic w.r.t. _ensure_polling_locked.
                if self._state.per_worker.get(worker_id) == SimulationState.STOPPED:
                    self._loops.pop(worker_id, None)
                    logger.debug("Stopped polling %s", worker_id)
                    return
            self.poll_once(worker_id)
            stop.wait(self.period)
        with self.lock:
            entry = self._loops.get(worker_id)
            if entry is not None and entry[1] is stop:
                self._loops.pop(worker_id, None)

    def poll_once(self, worker_id: str) -> PendulumReport | None:
        """Fetch one worker's state and feed it to the reducer."""
        try:
            report = self._fetch(worker_id)
        except PendulumClientError as exc:
            with self.lock:
                self.poll_failures[worker_id] = self.poll_failures.get(worker_id, 0) + 1
            logger.debug("Poll of %s failed: %s", worker_id, exc)
            return None
        if self.on_position is not None:
            try:
                self.on_position(worker_id, report.bob_position)
            except Exception:
                logger.exception("Position callback failed for %s", worker_id)
        self.dispatch(rc.WorkerUpdated(worker_id, report.status))
        return report

    def sync_once(self) -> rc.ClusterObservedState:
        """Poll every worker once regardless of status (controller startup)."""
        for worker_id in self.worker_ids:
            self.poll_once(worker_id)
        return self.state

    def close(self, timeout: float = 2.0) -> None:
        with self.lock:
            self._closed = True
            loops = list(self._loops.values())
        for _, stop in loops:
            stop.set()
        for thread, _ in loops:
            if thread is not threading.current_thread():
                thread.join(timeout=timeout)

    # ------------------ Operator commands ------------------

    def _issue(self, command: str) -> tuple[bool, str]:
        state = self.state
        if not getattr(rc.control_availability(state), command):
            msg = f"{command} unavailable while {state.global_state.value}"
            logger.warning("%s", msg)
            return False, msg

        failed = []
        for worker_id in self.worker_ids:
            try:
                self._command(worker_id, command)
            except PendulumClientError as exc:
                failed.append(worker_id)
                logger.warning("%s to %s failed: %s", command, worker_id, exc)
        self.dispatch(rc.ForceAll(COMMAND_STATES[command]))
        if failed:
            return False, f"{command} failed for {len(failed)}/{len(self.worker_ids)} workers"
        return True, COMMAND_STATES[command].value

    def start_all(self) -> tuple[bool, str]:
        return self._issue("start")

    def pause_all(self) -> tuple[bool, str]:
        return self._issue("pause")

    def reset_all(self) -> tuple[bool, str]:
        return self._issue("reset")

    def _interaction(self, name: str, send: Callable[[str], dict]) -> tuple[bool, str]:
        state = self.state
        if not state.interactions_enabled:
            return False, f"{name} disabled while {state.global_state.value}"
        delivered = 0
        for worker_id in self.worker_ids:
            try:
                send(worker_id)
            except PendulumClientError as exc:
                logger.warning("%s to %s failed: %s", name, worker_id, exc)
                continue
            delivered += 1
        return delivered == len(self.worker_ids), f"{name} delivered to {delivered}/{len(self.worker_ids)}"

    def wind_all(self, impulse: float) -> tuple[bool, str]:
        """Operator wind compass: push every pendulum by the same impulse."""
        return self._interaction("wind", lambda w: self._wind(w, impulse))

    def configure_all(self, **settings: float) -> tuple[bool, str]:
        return self._interaction("configure", lambda w: self._configure(w, settings))
