"""Callbacks run by ``solve`` after every completed step.

A callback is any callable ``cb(solver, Q)``; returning :data:`STOP` ends the
time loop once the current step has finished. The wrappers below decide how
often the wrapped function actually fires. Wall-clock callbacks are advisory:
they never interrupt a step.
"""
from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Sequence

from .filters import apply_filter
from .state import DistributedState

__all__ = [
    "Control",
    "STOP",
    "EveryXSimulationSteps",
    "EveryXWallTimeSeconds",
    "EveryXSimulationTime",
    "CheckFinite",
    "StepLogger",
    "ApplyFilter",
]

logger = logging.getLogger(__name__)

class Control(enum.Enum):
    """Values a callback may return to steer the time loop."""

    STOP = "stop"


STOP = Control.STOP
"""Returned by a callback to request the end of the time loop."""


class EveryXSimulationSteps:
    """Fire ``fn`` every ``steps`` completed steps."""

    def __init__(self, fn: Callable, steps: int):
        if steps < 1:
            raise ValueError(f"steps must be positive, got {steps}")
        self.fn = fn
        self.steps = steps
        self._count = 0

    def __call__(self, solver, Q: DistributedState):
        self._count += 1
        if self._count % self.steps == 0:
            return self.fn(solver, Q)
        return None


class EveryXWallTimeSeconds:
    """Fire ``fn`` when at least ``seconds`` of wall time passed since it last fired."""

    def __init__(self, fn: Callable, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.fn = fn
        self.seconds = seconds
        self.clock = clock
        self._last = clock()

    def __call__(self, solver, Q: DistributedState):
        now = self.clock()
        if now - self._last >= self.seconds:
            self._last = now
            return self.fn(solver, Q)
        return None


class EveryXSimulationTime:
    """Fire ``fn`` each time simulation time crosses a multiple of ``interval``."""

    def __init__(self, fn: Callable, interval: float, t0: float = 0.0):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.fn = fn
        self.interval = interval
        self._next = t0 + interval

    def __call__(self, solver, Q: DistributedState):
        t = solver.t
        if t + 1e-12 * abs(self.interval) >= self._next:
            while self._next <= t + 1e-12 * abs(self.interval):
                self._next += self.interval
            return self.fn(solver, Q)
        return None


class CheckFinite:
    """Raise :class:`NumericalInstabilityError` as soon as ``Q`` holds NaN or Inf."""

    def __call__(self, solver, Q: DistributedState):
        Q.check_finite()
        return None


class StepLogger:
    """Log step count, time and the state norm at INFO."""

    def __call__(self, solver, Q: DistributedState):
        logger.info("step %d  t=%.6g  |Q|=%.10e", solver.steps, solver.t, Q.norm())
        return None


class ApplyFilter:
    """Filter ``variables`` of ``Q`` in place, usually wrapped in :class:`EveryXSimulationSteps`."""

    def __init__(self, filter, variables: Sequence[str] | None = None):
        self.filter = filter
        self.variables = None if variables is None else tuple(variables)

    def __call__(self, solver, Q: DistributedState):
        apply_filter(Q, self.filter, self.variables)
        return None
