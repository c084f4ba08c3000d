"""
state_machine.py

Pendulum instance lifecycle state machine.

Design goals:
- Pure reducer transitions: (state, event) -> (next_state, actions)
- Strict Stopped/Started/Paused/Restarting semantics
- Illegal commands are rejected without touching the physics engine
- The runtime executes actions; the reducer never does I/O
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Literal


class SimulationState(str, Enum):
    STOPPED = "Stopped"
    STARTED = "Started"
    PAUSED = "Paused"
    RESTARTING = "Restarting"

    @classmethod
    def parse(cls, raw: object) -> "SimulationState":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw))
        except ValueError as exc:
            raise ValueError(f"unknown simulation state: {raw!r}") from exc


Command = Literal["start", "pause", "reset"]


@dataclass(frozen=True)
class InstanceState:
    status: SimulationState = SimulationState.STOPPED
    # Timestamp at which a Restarting instance may settle to Stopped.
    restart_until: float | None = None
    started_count: int = 0
    reset_count: int = 0


# --------------------------- Events ---------------------------


@dataclass(frozen=True)
class StartCommand:
    timestamp: float


@dataclass(frozen=True)
class PauseCommand:
    timestamp: float


@dataclass(frozen=True)
class ResetCommand:
    timestamp: float
    hold_sec: float = 0.0


@dataclass(frozen=True)
class ResetComplete:
    timestamp: float


Event = StartCommand | PauseCommand | ResetCommand | ResetComplete


# --------------------------- Actions ---------------------------


@dataclass(frozen=True)
class BeginTicking:
    pass


@dataclass(frozen=True)
class HaltTicking:
    pass


@dataclass(frozen=True)
class ResetEngine:
    pass


@dataclass(frozen=True)
class RejectCommand:
    command: str
    reason: str


Action = BeginTicking | HaltTicking | ResetEngine | RejectCommand


_LEGAL: dict[SimulationState, tuple[Command, ...]] = {
    SimulationState.STOPPED: ("start",),
    SimulationState.STARTED: ("pause", "reset"),
    SimulationState.PAUSED: ("start", "reset"),
    SimulationState.RESTARTING: (),
}


def legal_commands(status: SimulationState) -> tuple[Command, ...]:
    return _LEGAL[SimulationState.parse(status)]


def is_ticking(state: InstanceState) -> bool:
    return state.status == SimulationState.STARTED


def _reject(state: InstanceState, command: str) -> tuple[InstanceState, list[Action]]:
    reason = f"cannot {command} while {state.status.value}"
    return state, [RejectCommand(command=command, reason=reason)]


def transition(state: InstanceState, event: Event) -> tuple[InstanceState, list[Action]]:
    status = state.status

    if isinstance(event, StartCommand):
        if "start" not in _LEGAL[status]:
            return _reject(state, "start")
        nxt = replace(state, status=SimulationState.STARTED, started_count=state.started_count + 1)
        return nxt, [BeginTicking()]

    if isinstance(event, PauseCommand):
        if "pause" not in _LEGAL[status]:
            return _reject(state, "pause")
        return replace(state, status=SimulationState.PAUSED), [HaltTicking()]

    if isinstance(event, ResetCommand):
        if "reset" not in _LEGAL[status]:
            return _reject(state, "reset")
        nxt = replace(
            state,
            status=SimulationState.RESTARTING,
            restart_until=float(event.timestamp) + max(0.0, float(event.hold_sec)),
            reset_count=state.reset_count + 1,
        )
        return nxt, [HaltTicking(), ResetEngine()]

    if isinstance(event, ResetComplete):
        if status != SimulationState.RESTARTING:
            return state, []
        if state.restart_until is not None and event.timestamp < state.restart_until:
            return state, []
        return replace(state, status=SimulationState.STOPPED, restart_until=None), []

    raise TypeError(f"unsupported event: {type(event).__name__}")


def check_invariants(state: InstanceState) -> list[str]:
    violations: list[str] = []
    if not isinstance(state.status, SimulationState):
        violations.append(f"status is not a SimulationState: {state.status!r}")
        return violations
    if state.status == SimulationState.RESTARTING and state.restart_until is None:
        violations.append("Restarting without restart_until")
    if state.status != SimulationState.RESTARTING and state.restart_until is not None:
        violations.append(f"restart_until set while {state.status.value}")
    if state.started_count < 0 or state.reset_count < 0:
        violations.append("negative counters")
    return violations


def to_dict(state: InstanceState) -> dict:
    return {
        "status": state.status.value,
        "restart_until": state.restart_until,
        "started_count": state.started_count,
        "reset_count": state.reset_count,
    }
