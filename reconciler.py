"""
reconciler.py

Controller-side fold of per-worker status reports into one cluster state.

Design goals:
- Pure reducer: reduce(state, action) -> next_state, no hidden state
- Global state only moves when every worker reports the same status;
  while workers disagree the previous global state is held (no "mixed")
- interactions_enabled is always exactly (global_state == Stopped)
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from state_machine import SimulationState


@dataclass(frozen=True)
class ClusterObservedState:
    global_state: SimulationState
    interactions_enabled: bool
    per_worker: Mapping[str, SimulationState]

    def to_dict(self) -> dict:
        return {
            "state": self.global_state.value,
            "interactionsEnabled": self.interactions_enabled,
            "servers": {k: v.value for k, v in self.per_worker.items()},
        }


@dataclass(frozen=True)
class WorkerUpdated:
    worker_id: str
    status: SimulationState


@dataclass(frozen=True)
class ForceAll:
    status: SimulationState


ReconcileAction = WorkerUpdated | ForceAll


@dataclass(frozen=True)
class ControlAvailability:
    start: bool
    pause: bool
    reset: bool


def _build(global_state: SimulationState, per_worker: dict[str, SimulationState]) -> ClusterObservedState:
    return ClusterObservedState(
        global_state=global_state,
        interactions_enabled=global_state == SimulationState.STOPPED,
        per_worker=MappingProxyType(per_worker),
    )


def initial_state(worker_ids: Iterable[str]) -> ClusterObservedState:
    return _build(SimulationState.STOPPED, {w: SimulationState.STOPPED for w in worker_ids})


def reduce(state: ClusterObservedState, action: ReconcileAction) -> ClusterObservedState:
    if isinstance(action, WorkerUpdated):
        per_worker = dict(state.per_worker)
        per_worker[action.worker_id] = SimulationState.parse(action.status)
        global_state = state.global_state
        distinct = set(per_worker.values())
        if len(distinct) == 1:
            global_state = distinct.pop()
        return _build(global_state, per_worker)

    if isinstance(action, ForceAll):
        status = SimulationState.parse(action.status)
        return _build(status, {w: status for w in state.per_worker})

    raise TypeError(f"unsupported action: {type(action).__name__}")


def fold(state: ClusterObservedState, actions: Iterable[ReconcileAction]) -> ClusterObservedState:
    for action in actions:
        state = reduce(state, action)
    return state


def control_availability(state: ClusterObservedState) -> ControlAvailability:
    """Which cluster-wide commands an operator may issue right now."""
    g = state.global_state
    return ControlAvailability(
        start=g not in (SimulationState.STARTED, SimulationState.RESTARTING),
        pause=g == SimulationState.STARTED,
        reset=g != SimulationState.STOPPED,
    )


def check_invariants(state: ClusterObservedState) -> list[str]:
    violations: list[str] = []
    if state.interactions_enabled != (state.global_state == SimulationState.STOPPED):
        violations.append("interactions_enabled disagrees with global_state")
    distinct = set(state.per_worker.values())
    if len(distinct) == 1 and state.global_state not in distinct:
        violations.append("all workers agree but global_state differs")
    return violations
