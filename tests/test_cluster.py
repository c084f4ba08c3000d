import io
import json
import os
import signal
import subprocess
import unittest
from unittest import mock

import app
import cluster
import config
from cluster import Cluster, SpawnError, WorkerDescriptor


class _FakeProc:
    _next_pid = 100

    def __init__(self, stdout: str = "", stderr: str = "", returncode=None) -> None:
        _FakeProc._next_pid += 1
        self.pid = _FakeProc._next_pid
        self.stdout = io.StringIO(stdout)
        self.stderr = io.StringIO(stderr)
        self.returncode = returncode
        self.terminated = False

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None:
            self.returncode = 0
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9


class RosterTests(unittest.TestCase):
    def test_build_roster_from_ports(self):
        roster = cluster.build_roster([3001, 3002], client_url="http://c", host="h")
        self.assertEqual([w.base_url for w in roster], ["http://h:3001", "http://h:3002"])
        self.assertTrue(all(w.client_url == "http://c" for w in roster))

    def test_duplicate_ports_rejected(self):
        with self.assertRaises(ValueError):
            cluster.build_roster([3001, 3001], client_url="http://c", host="h")

    def test_neighbors_are_everyone_else(self):
        roster = cluster.build_roster([3001, 3002, 3003, 3004, 3005], client_url="http://c", host="localhost")
        for worker in roster:
            neighbors = cluster.neighbor_urls(roster, worker)
            self.assertEqual(len(neighbors), 4)
            self.assertNotIn(worker.base_url, neighbors)
            self.assertEqual(set(neighbors) | {worker.base_url}, {w.base_url for w in roster})

    def test_single_worker_has_no_neighbors(self):
        roster = cluster.build_roster([3001], client_url="http://c", host="localhost")
        self.assertEqual(cluster.neighbor_urls(roster, roster[0]), ())

    def test_worker_command_positional_contract(self):
        worker = WorkerDescriptor(3002, "http://client", "localhost")
        cmd = cluster.worker_command(worker, ["http://localhost:3001"], python="py")
        self.assertEqual(cmd[0], "py")
        self.assertTrue(cmd[1].endswith("start_instance.py"))
        self.assertEqual(cmd[2:4], ["3002", "http://client"])
        self.assertEqual(json.loads(cmd[4]), ["http://localhost:3001"])


class ClusterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.roster = cluster.build_roster([3001, 3002, 3003], client_url="http://c", host="localhost")

    def test_start_spawns_one_process_per_worker_with_neighbors(self):
        procs = []

        def fake_popen(cmd, **kwargs):
            proc = _FakeProc(stdout=f"hello from {cmd[2]}\n")
            procs.append((cmd, kwargs, proc))
            return proc

        with mock.patch.object(subprocess, "Popen", side_effect=fake_popen):
            with self.assertLogs("cluster", level="INFO") as logs:
                c = Cluster(self.roster, python="py")
                c.start(startup_grace=0)
                c.wait()

        self.assertEqual(len(procs), 3)
        for (cmd, kwargs, _), worker in zip(procs, self.roster):
            self.assertEqual(cmd[2], str(worker.port))
            self.assertEqual(json.loads(cmd[4]), list(cluster.neighbor_urls(self.roster, worker)))
            self.assertEqual(kwargs["env"]["PYTHONUNBUFFERED"], "1")
        self.assertTrue(any("[3001] | hello from 3001" in line for line in logs.output))

    def test_stderr_lines_logged_as_errors(self):
        with mock.patch.object(subprocess, "Popen", side_effect=lambda cmd, **kw: _FakeProc(stderr="boom\n")):
            with self.assertLogs("cluster", level="ERROR") as logs:
                c = Cluster(self.roster[:1], python="py")
                c.start(startup_grace=0)
                c.wait()
        self.assertTrue(any("[3001] | boom" in line for line in logs.output))

    def test_spawn_failure_is_fatal_and_tears_down_started_children(self):
        started = []

        def fake_popen(cmd, **kwargs):
            if cmd[2] == "3002":
                raise FileNotFoundError("no such interpreter")
            proc = _FakeProc()
            started.append(proc)
            return proc

        with mock.patch.object(subprocess, "Popen", side_effect=fake_popen):
            c = Cluster(self.roster, python="py")
            with self.assertRaises(SpawnError):
                c.start(startup_grace=0)

        self.assertEqual(len(started), 1)
        self.assertTrue(started[0].terminated)
        self.assertNotIn(3003, c.processes)

    def test_worker_exiting_during_grace_is_fatal(self):
        def fake_popen(cmd, **kwargs):
            return _FakeProc(returncode=1 if cmd[2] == "3003" else None)

        with mock.patch.object(subprocess, "Popen", side_effect=fake_popen):
            with mock.patch.object(cluster.time, "sleep"):
                c = Cluster(self.roster, python="py")
                with self.assertRaises(SpawnError) as ctx:
                    c.start(startup_grace=0.5)

        self.assertIn("3003", str(ctx.exception))
        self.assertTrue(all(p.terminated for port, p in c.processes.items() if port != 3003))

    def test_no_respawn_after_exit(self):
        calls = []

        def fake_popen(cmd, **kwargs):
            calls.append(cmd)
            return _FakeProc()

        with mock.patch.object(subprocess, "Popen", side_effect=fake_popen):
            c = Cluster(self.roster, python="py")
            c.start(startup_grace=0)
            c.processes[3001].returncode = 1
            codes = c.wait()
        self.assertEqual(codes[3001], 1)
        self.assertEqual(len(calls), 3)
        self.assertEqual(c.exit_codes()[3001], 1)


class StopDuringStartTests(unittest.TestCase):
    """SIGTERM arriving while the supervisor is still spawning workers."""

    def setUp(self) -> None:
        self.roster = cluster.build_roster([3001, 3002, 3003], client_url="http://c", host="localhost")
        self.saved = {sig: signal.getsignal(sig) for sig in (signal.SIGTERM, signal.SIGINT)}
        self.spawned: list[_FakeProc] = []

    def tearDown(self) -> None:
        for sig, handler in self.saved.items():
            signal.signal(sig, handler)

    def _popen_signalling_on(self, nth: int):
        def fake_popen(cmd, **kwargs):
            proc = _FakeProc()
            self.spawned.append(proc)
            if len(self.spawned) == nth:
                os.kill(os.getpid(), signal.SIGTERM)
            return proc

        return fake_popen

    def test_stop_from_signal_handler_mid_spawn_tears_down(self):
        c = Cluster(self.roster, python="py")
        signal.signal(signal.SIGTERM, lambda signum, frame: c.stop())

        with mock.patch.object(subprocess, "Popen", side_effect=self._popen_signalling_on(2)):
            with self.assertRaises(SpawnError) as ctx:
                c.start(startup_grace=0)

        self.assertIn("interrupted", str(ctx.exception))
        self.assertEqual(len(self.spawned), 2)
        self.assertTrue(all(p.terminated for p in self.spawned))

    def test_stop_during_grace_skips_startup_check(self):
        c = Cluster(self.roster, python="py")
        with mock.patch.object(subprocess, "Popen", side_effect=lambda cmd, **kw: _FakeProc()):
            with mock.patch.object(cluster.time, "sleep", side_effect=lambda _s: c.stop()):
                with self.assertRaises(SpawnError) as ctx:
                    c.start(startup_grace=0.5)

        self.assertIn("interrupted", str(ctx.exception))
        self.assertTrue(all(p.terminated for p in c.processes.values()))

    def test_app_exits_when_signalled_mid_spawn(self):
        with mock.patch.object(config, "CLUSTER_PORTS", (3001, 3002, 3003)):
            with mock.patch.object(config, "print_banner"):
                with mock.patch.object(subprocess, "Popen", side_effect=self._popen_signalling_on(2)):
                    with self.assertLogs("app", level="INFO") as logs:
                        code = app.run()

        self.assertEqual(code, 1)
        self.assertEqual(len(self.spawned), 2)
        self.assertTrue(all(p.terminated for p in self.spawned))
        self.assertTrue(any("Signal" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
