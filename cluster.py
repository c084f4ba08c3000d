"""
Cluster supervisor: spawns one worker process per roster entry.

Each worker is told its own port, the client URL and the base URLs of every
other worker (its neighbors).  Child stdout/stderr are pumped into this
process's log as "[port] | message".

There is no restart policy.  A worker that exits stays down; a spawn failure
tears down whatever already started and raises SpawnError.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import subprocess
import threading
import time
from typing import IO, Sequence

import config

logger = logging.getLogger(__name__)

WORKER_SCRIPT = Path(__file__).resolve().parent / "start_instance.py"


class SpawnError(RuntimeError):
    """A worker process could not be launched."""


@dataclass(frozen=True)
class WorkerDescriptor:
    port: int
    client_url: str
    host: str = "localhost"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def build_roster(
    ports: Sequence[int] | None = None,
    client_url: str | None = None,
    host: str | None = None,
) -> tuple[WorkerDescriptor, ...]:
    ports = config.CLUSTER_PORTS if ports is None else ports
    client_url = config.CLIENT_URL if client_url is None else client_url
    host = config.CLUSTER_HOST if host is None else host
    roster = tuple(WorkerDescriptor(int(p), client_url, host) for p in ports)
    if len({w.port for w in roster}) != len(roster):
        raise ValueError("roster ports must be unique")
    return roster


def neighbor_urls(roster: Sequence[WorkerDescriptor], worker: WorkerDescriptor) -> tuple[str, ...]:
    """Every other worker's base URL, in roster order."""
    return tuple(w.base_url for w in roster if w.base_url != worker.base_url)


def worker_command(
    worker: WorkerDescriptor,
    neighbors: Sequence[str],
    python: str | None = None,
) -> list[str]:
    return [
        python or config.PYTHON_EXECUTABLE,
        str(WORKER_SCRIPT),
        str(worker.port),
        worker.client_url,
        json.dumps(list(neighbors)),
    ]


class Cluster:
    def __init__(self, workers: Sequence[WorkerDescriptor], python: str | None = None) -> None:
        self.workers = tuple(workers)
        self.python = python
        self.processes: dict[int, subprocess.Popen] = {}
        self._pumps: list[threading.Thread] = []
        # Reentrant: a signal handler calling stop() runs on the main thread,
        # possibly while start() holds the lock.
        self._lock = threading.RLock()
        self._stopping = False

    def start(self, startup_grace: float | None = None) -> None:
        """
        Spawn every worker, then give them startup_grace seconds to bind.

        Any worker that exits during the grace period (typically a port
        conflict) is a SpawnError: every other child is terminated.
        """
        env = dict(os.environ)
        # Children write to pipes; without this their logs arrive in bursts.
        env["PYTHONUNBUFFERED"] = "1"

        with self._lock:
            for worker in self.workers:
                if self._stopping:
                    self._stop_locked()
                    raise SpawnError("startup interrupted by stop request")
                cmd = worker_command(worker, neighbor_urls(self.workers, worker), self.python)
                try:
                    proc = subprocess.Popen(
                        cmd,
                        stdout=subprocess.PIPE,
                        stderr=subprocess.PIPE,
                        text=True,
                        bufsize=1,
                        env=env,
                    )
                except OSError as exc:
                    self._stop_locked()
                    raise SpawnError(f"failed to spawn worker on port {worker.port}: {exc}") from exc

                self.processes[worker.port] = proc
                logger.info("Spawned child %s for port %s", proc.pid, worker.port)
                self._pump(worker.port, proc.stdout, logging.INFO)
                self._pump(worker.port, proc.stderr, logging.ERROR)

        grace = config.STARTUP_GRACE_SECONDS if startup_grace is None else startup_grace
        if grace > 0:
            time.sleep(grace)
            if self._stopping:
                raise SpawnError("startup interrupted by stop request")
            self._check_started()

    def _check_started(self) -> None:
        with self._lock:
            failed = {port: proc.poll() for port, proc in self.processes.items() if proc.poll() is not None}
            if failed:
                self._stop_locked()
                ports = ", ".join(f"{p} (exit {c})" for p, c in sorted(failed.items()))
                raise SpawnError(f"workers exited during startup: {ports}")

    def _pump(self, port: int, stream: IO[str] | None, level: int) -> None:
        if stream is None:
            return
        thread = threading.Thread(
            target=_pump_stream,
            args=(port, stream, level),
            daemon=True,
            name=f"pump-{port}-{logging.getLevelName(level).lower()}",
        )
        thread.start()
        self._pumps.append(thread)

    def exit_codes(self) -> dict[int, int | None]:
        with self._lock:
            return {port: proc.poll() for port, proc in self.processes.items()}

    def wait(self) -> dict[int, int]:
        """Block until every worker has exited; return exit codes by port."""
        codes: dict[int, int] = {}
        for port, proc in list(self.processes.items()):
            codes[port] = proc.wait()
            log = logger.info if codes[port] == 0 else logger.error
            log("Worker on port %s exited with code %s", port, codes[port])
        for thread in self._pumps:
            thread.join(timeout=1.0)
        return codes

    def stop(self) -> None:
        with self._lock:
            self._stopping = True
            self._stop_locked()

    def _stop_locked(self) -> None:
        for port, proc in self.processes.items():
            if proc.poll() is not None:
                continue
            logger.info("Terminating worker on port %s", port)
            try:
                proc.terminate()
                try:
                    proc.wait(timeout=2.0)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=2.0)
            except OSError as exc:
                logger.warning("Could not stop worker on port %s: %s", port, exc)


def _pump_stream(port: int, stream: IO[str], level: int) -> None:
    try:
        for raw_line in stream:
            line = raw_line.rstrip()
            if line:
                logger.log(level, "[%s] | %s", port, line)
    finally:
        stream.close()
