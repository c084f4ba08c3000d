"""
Five real worker runtimes on ephemeral ports, driven by a real controller.

No subprocesses: each worker runs its HTTP server and loops on threads in
this process, which is enough to exercise the HTTP contract, polling and
reconciliation together.
"""

import time
import unittest

import instance
import pendulum_client
from pendulum_engine import PendulumEngine, PendulumParams
from poller import ClusterController
from state_machine import SimulationState as S


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class ClusterEndToEndTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runtimes = []
        self.servers = []
        for i in range(5):
            engine = PendulumEngine(PendulumParams(initial_angle=0.2 * (i + 1)))
            rt = instance.PendulumRuntime(
                0,
                "http://localhost:3000",
                engine=engine,
                tick_interval=0.01,
                restart_hold=0.1,
                wind_interval=0.05,
                wind_coupling=0.05,
            )
            self.servers.append(instance.start_http_server(rt, host="127.0.0.1"))
            self.runtimes.append(rt)
        self.urls = [f"http://127.0.0.1:{rt.port}" for rt in self.runtimes]
        for rt, url in zip(self.runtimes, self.urls):
            rt.neighbors = tuple(u for u in self.urls if u != url)
            rt.start_background()

        self.positions = {}
        self.ctl = ClusterController(
            self.urls,
            period=0.02,
            on_position=lambda w, pos: self.positions.__setitem__(w, pos),
        )

    def tearDown(self) -> None:
        self.ctl.close()
        for rt in self.runtimes:
            rt.shutdown("test teardown")
        for server in self.servers:
            server.shutdown()
            server.server_close()

    def test_start_pause_reset_cycle(self):
        self.assertTrue(self.ctl.state.interactions_enabled)

        ok, msg = self.ctl.start_all()
        self.assertTrue(ok, msg)
        self.assertFalse(self.ctl.state.interactions_enabled)
        self.assertTrue(wait_until(lambda: set(self.ctl.state.per_worker.values()) == {S.STARTED}))
        self.assertEqual(self.ctl.state.global_state, S.STARTED)
        self.assertTrue(wait_until(lambda: len(self.positions) == 5))
        self.assertTrue(wait_until(lambda: all(rt.ticks > 0 for rt in self.runtimes)))

        ok, msg = self.ctl.pause_all()
        self.assertTrue(ok, msg)
        self.assertTrue(wait_until(lambda: set(self.ctl.state.per_worker.values()) == {S.PAUSED}))
        self.assertEqual([rt.status() for rt in self.runtimes], [S.PAUSED] * 5)
        frozen = [(s.angle, s.elapsed) for s in (rt.engine.snapshot() for rt in self.runtimes)]
        time.sleep(0.05)
        self.assertEqual([(s.angle, s.elapsed) for s in (rt.engine.snapshot() for rt in self.runtimes)], frozen)

        ok, msg = self.ctl.reset_all()
        self.assertTrue(ok, msg)
        self.assertTrue(wait_until(lambda: self.ctl.state.global_state == S.STOPPED))
        self.assertTrue(self.ctl.state.interactions_enabled)
        self.assertTrue(wait_until(lambda: self.ctl.polling() == ()))
        for i, rt in enumerate(self.runtimes):
            snap = rt.engine.snapshot()
            self.assertEqual(snap.elapsed, 0.0)
            self.assertAlmostEqual(snap.angle, 0.2 * (i + 1))

    def test_single_worker_pause_leaves_global_started(self):
        self.ctl.start_all()
        self.assertTrue(wait_until(lambda: set(self.ctl.state.per_worker.values()) == {S.STARTED}))

        pendulum_client.send_command(self.urls[2], "pause")
        self.assertTrue(wait_until(lambda: self.ctl.state.per_worker[self.urls[2]] == S.PAUSED))
        self.assertEqual(self.ctl.state.global_state, S.STARTED)

        for url in self.urls:
            if url != self.urls[2]:
                pendulum_client.send_command(url, "pause")
        self.assertTrue(wait_until(lambda: self.ctl.state.global_state == S.PAUSED))

    def test_neighbors_receive_wind_while_started(self):
        self.ctl.start_all()
        self.assertTrue(wait_until(lambda: all(rt.wind_received > 0 for rt in self.runtimes)))
        self.assertTrue(all(rt.wind_failures == 0 for rt in self.runtimes))

    def test_dead_worker_keeps_last_known_status(self):
        self.ctl.start_all()
        self.assertTrue(wait_until(lambda: set(self.ctl.state.per_worker.values()) == {S.STARTED}))

        self.servers[0].shutdown()
        self.servers[0].server_close()
        self.assertTrue(wait_until(lambda: self.ctl.poll_failures[self.urls[0]] >= 2))
        self.assertEqual(self.ctl.state.per_worker[self.urls[0]], S.STARTED)
        self.assertEqual(self.ctl.state.global_state, S.STARTED)


if __name__ == "__main__":
    unittest.main()
