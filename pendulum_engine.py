"""
pendulum_engine.py

Single-pendulum physics for one worker.  Pure numpy, no external services.

State vector: [angle, angular_velocity], angle in radians from vertical.
Equation of motion:

    d2theta/dt2 = -(g / L) * sin(theta) - damping * omega

Integrated with fixed-step RK4.  A tick of length dt is split into equal
sub-steps no larger than max_step, so tick size never changes accuracy.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import math
from typing import Any

import numpy as np


@dataclass(frozen=True)
class PendulumParams:
    length: float = 1.0
    gravity: float = 9.81
    damping: float = 0.05
    initial_angle: float = 0.6
    max_step: float = 0.005
    # Screen mapping for the reported bob position (y grows downward).
    scale: float = 300.0
    pivot_x: float = 0.0
    pivot_y: float = 15.0


@dataclass(frozen=True)
class BobPosition:
    x: float
    y: float


@dataclass(frozen=True)
class PendulumPhysicalState:
    angle: float
    angular_velocity: float
    bob_position: BobPosition
    elapsed: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "angle": float(self.angle),
            "angularVelocity": float(self.angular_velocity),
            "bobPosition": {"x": float(self.bob_position.x), "y": float(self.bob_position.y)},
            "elapsed": float(self.elapsed),
        }


def derivatives(state: np.ndarray, params: PendulumParams) -> np.ndarray:
    theta, omega = state[0], state[1]
    alpha = -(params.gravity / params.length) * np.sin(theta) - params.damping * omega
    return np.array([omega, alpha], dtype=float)


def rk4_step(state: np.ndarray, h: float, params: PendulumParams) -> np.ndarray:
    k1 = derivatives(state, params)
    k2 = derivatives(state + 0.5 * h * k1, params)
    k3 = derivatives(state + 0.5 * h * k2, params)
    k4 = derivatives(state + h * k3, params)
    return state + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)


def bob_position(angle: float, params: PendulumParams) -> BobPosition:
    radius = params.length * params.scale
    return BobPosition(
        x=params.pivot_x + radius * math.sin(angle),
        y=params.pivot_y + radius * math.cos(angle),
    )


class PendulumEngine:
    """
    Mutable physical model of one pendulum.

    Not thread-safe on its own: the worker runtime serializes every
    mutating call (tick, apply_wind, reset, configure) behind its lock.
    """

    def __init__(self, params: PendulumParams | None = None) -> None:
        self.params = params or PendulumParams()
        self._validate(self.params)
        self._state = np.array([self.params.initial_angle, 0.0], dtype=float)
        self._elapsed = 0.0

    @staticmethod
    def _validate(params: PendulumParams) -> None:
        if not (params.length > 0 and math.isfinite(params.length)):
            raise ValueError(f"length must be positive, got {params.length!r}")
        if not (params.max_step > 0 and math.isfinite(params.max_step)):
            raise ValueError(f"max_step must be positive, got {params.max_step!r}")
        if params.damping < 0 or not math.isfinite(params.damping):
            raise ValueError(f"damping must be >= 0, got {params.damping!r}")
        if not math.isfinite(params.initial_angle):
            raise ValueError("initial_angle must be finite")

    @property
    def elapsed(self) -> float:
        return self._elapsed

    def tick(self, dt: float) -> None:
        """Advance the simulation by dt seconds.  A non-positive or non-finite dt does nothing."""
        dt = float(dt)
        if not (dt > 0 and math.isfinite(dt)):
            return
        n_steps = max(1, int(math.ceil(dt / self.params.max_step)))
        h = dt / n_steps
        state = self._state
        for _ in range(n_steps):
            state = rk4_step(state, h, self.params)
        self._state = state
        self._elapsed += dt

    def apply_wind(self, impulse: float) -> None:
        """Add an angular-velocity impulse (rad/s)."""
        impulse = float(impulse)
        if not math.isfinite(impulse):
            raise ValueError("impulse must be finite")
        self._state = self._state + np.array([0.0, impulse])

    def snapshot(self) -> PendulumPhysicalState:
        angle = float(self._state[0])
        return PendulumPhysicalState(
            angle=angle,
            angular_velocity=float(self._state[1]),
            bob_position=bob_position(angle, self.params),
            elapsed=self._elapsed,
        )

    def reset(self) -> None:
        self._state = np.array([self.params.initial_angle, 0.0], dtype=float)
        self._elapsed = 0.0

    def configure(self, **changes: Any) -> PendulumParams:
        """
        Replace rest-configuration parameters and reset to the new rest state.

        Accepts any PendulumParams field; unknown names raise TypeError
        (from dataclasses.replace) and invalid values raise ValueError,
        leaving the engine untouched.
        """
        params = replace(self.params, **{k: float(v) for k, v in changes.items()})
        self._validate(params)
        self.params = params
        self.reset()
        return params

    def energy(self) -> float:
        """Mechanical energy per unit mass, zero at rest hanging straight down."""
        theta, omega = float(self._state[0]), float(self._state[1])
        length, g = self.params.length, self.params.gravity
        kinetic = 0.5 * length * length * omega * omega
        potential = g * length * (1.0 - math.cos(theta))
        return kinetic + potential
