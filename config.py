"""
config.py -- All tunable parameters for the pendulum cluster.

Every value here is loaded from environment variables so the supervisor,
the workers and the controller can be tuned without touching code.  Worker
processes inherit the supervisor's environment, so one setting applies to
the whole cluster.

HOW TO READ THIS FILE:
  Each config value has a comment explaining what it controls and what
  happens if you raise/lower it.
"""

import os
import sys
import logging

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


def _ports(raw: str) -> tuple:
    """Parse a comma separated port list, ignoring blanks and junk."""
    ports = []
    for part in str(raw).split(","):
        part = part.strip()
        if not part:
            continue
        try:
            port = int(part)
        except ValueError:
            logging.getLogger(__name__).warning("Ignoring invalid port %r", part)
            continue
        if port not in ports:
            ports.append(port)
    return tuple(ports)


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------

# Host the workers bind to and the controller talks to.
CLUSTER_HOST: str = _env("CLUSTER_HOST", "localhost")

# Static roster: one worker per port.  The reference deployment runs five.
# Membership never changes at runtime -- restart the supervisor to change it.
CLUSTER_PORTS: tuple = _ports(_env("CLUSTER_PORTS", "3001,3002,3003,3004,3005"))

# Origin of the browser client.  Workers echo it in CORS headers.
CLIENT_URL: str = _env("CLIENT_URL", "http://localhost:3000")

# Interpreter used to launch worker processes.
PYTHON_EXECUTABLE: str = _env("PYTHON_EXECUTABLE", sys.executable)

# Seconds the supervisor waits after spawning before checking that every
# worker is still alive.  A worker that died by then (usually a port
# conflict) aborts the whole cluster.  0 skips the check.
STARTUP_GRACE_SECONDS: float = _env("STARTUP_GRACE_SECONDS", 1.0, float)

# ---------------------------------------------------------------------------
# Worker simulation loop
# ---------------------------------------------------------------------------

# Seconds between simulation ticks while Started.  Each tick advances the
# pendulum by exactly this much simulated time.
TICK_INTERVAL_SECONDS: float = _env("TICK_INTERVAL_SECONDS", 0.02, float)

# How long a worker stays in Restarting after a reset before settling in
# Stopped.  Long enough that at least one poll usually sees it.
RESTART_HOLD_SECONDS: float = _env("RESTART_HOLD_SECONDS", 0.5, float)

# ---------------------------------------------------------------------------
# Wind coupling between neighbors
# ---------------------------------------------------------------------------

# Seconds between wind broadcasts to neighbors while Started.
# Lowering it couples the pendulums more tightly (and costs more requests).
WIND_BROADCAST_SECONDS: float = _env("WIND_BROADCAST_SECONDS", 1.0, float)

# Fraction of this pendulum's angular velocity sent as an impulse.
# 0 disables coupling entirely.
WIND_COUPLING: float = _env("WIND_COUPLING", 0.01, float)

# Per-neighbor timeout for a wind notification.
WIND_TIMEOUT_SECONDS: float = _env("WIND_TIMEOUT_SECONDS", 0.5, float)

# ---------------------------------------------------------------------------
# Controller polling
# ---------------------------------------------------------------------------

# Fixed polling period per worker.  No backoff is applied on failure.
REFRESH_PERIOD_SECONDS: float = _env("REFRESH_PERIOD_SECONDS", 0.05, float)

# Timeout for state fetches and control commands.
REQUEST_TIMEOUT_SECONDS: float = _env("REQUEST_TIMEOUT_SECONDS", 2.0, float)

# ---------------------------------------------------------------------------
# Pendulum physics defaults
# ---------------------------------------------------------------------------

# Rod length in meters.
PENDULUM_LENGTH: float = _env("PENDULUM_LENGTH", 1.0, float)

# Gravitational acceleration in m/s^2.
PENDULUM_GRAVITY: float = _env("PENDULUM_GRAVITY", 9.81, float)

# Linear damping coefficient (1/s).  0 = frictionless.
PENDULUM_DAMPING: float = _env("PENDULUM_DAMPING", 0.05, float)

# Angle (radians from vertical) the pendulum is released from after reset.
PENDULUM_INITIAL_ANGLE: float = _env("PENDULUM_INITIAL_ANGLE", 0.6, float)

# Largest RK4 sub-step.  Each tick is split into steps no larger than this.
PENDULUM_MAX_STEP: float = _env("PENDULUM_MAX_STEP", 0.005, float)

# Pixels per meter and pivot location for reported bob positions.
PENDULUM_SCALE: float = _env("PENDULUM_SCALE", 300.0, float)
PENDULUM_PIVOT_X: float = _env("PENDULUM_PIVOT_X", 0.0, float)
PENDULUM_PIVOT_Y: float = _env("PENDULUM_PIVOT_Y", 15.0, float)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

# DEBUG shows every wind notification and poll; INFO is the normal level.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")


def print_banner():
    """Print the effective configuration at startup."""
    lines = [
        "",
        "=" * 60,
        "  PENDULUM CLUSTER",
        "=" * 60,
        f"  Host:            {CLUSTER_HOST}",
        f"  Ports:           {', '.join(str(p) for p in CLUSTER_PORTS) or 'NONE'}",
        f"  Client URL:      {CLIENT_URL}",
        f"  Tick interval:   {TICK_INTERVAL_SECONDS:.3f}s",
        f"  Restart hold:    {RESTART_HOLD_SECONDS:.2f}s",
        f"  Wind broadcast:  every {WIND_BROADCAST_SECONDS:.2f}s (coupling {WIND_COUPLING:g})",
        f"  Refresh period:  {REFRESH_PERIOD_SECONDS:.3f}s",
        f"  Pendulum:        L={PENDULUM_LENGTH:g}m g={PENDULUM_GRAVITY:g} damping={PENDULUM_DAMPING:g}",
        f"  Log level:       {LOG_LEVEL}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))
