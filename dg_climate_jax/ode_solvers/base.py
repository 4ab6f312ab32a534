"""Common time-stepping driver shared by every integrator.

Right-hand sides follow the DG convention ``rhs(dQ, Q, t, increment=False)``:
write (or, with ``increment``, add) ``L(Q, t)`` into ``dQ``.
"""
from __future__ import annotations

import enum
import logging
import math
import time
from typing import Callable, Iterable

import numpy as np

from ..callbacks import STOP
from ..errors import ConfigurationError
from ..state import DistributedState

__all__ = ["SolverStatus", "AbstractODESolver"]

logger = logging.getLogger(__name__)


class SolverStatus(enum.Enum):
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    FINISHED = "finished"


class AbstractODESolver:
    """Time, step size and the ``solve`` loop; subclasses implement ``dostep``."""

    def __init__(self, rhs: Callable, Q: DistributedState, dt: float | None = None, t0: float = 0.0, check_finite: bool = False):
        self.rhs = rhs
        self.dt = None if dt is None else float(dt)
        self.t = float(t0)
        self.t0 = float(t0)
        self.steps = 0
        self.status = SolverStatus.INITIALIZED
        self.check_finite = check_finite

    def updatedt(self, dt: float) -> None:
        self.dt = float(dt)

    def updatetime(self, t: float) -> None:
        self.t = float(t)

    def dostep(self, Q: DistributedState, t: float, dt: float) -> None:
        raise NotImplementedError

    def step(self, Q: DistributedState, dt: float | None = None) -> float:
        """Advance ``Q`` by one step of ``dt`` (default: the solver's ``dt``)."""

        dt = self.dt if dt is None else float(dt)
        if dt is None:
            raise ConfigurationError(f"{type(self).__name__} has no time step")
        self.status = SolverStatus.STEPPING
        self.dostep(Q, self.t, dt)
        if self.check_finite:
            Q.check_finite()
        self.t += dt
        self.steps += 1
        logger.debug("%s step %d: t=%.12g dt=%.6g", type(self).__name__, self.steps, self.t, dt)
        return self.t

    def solve(
        self,
        Q: DistributedState,
        timeend: float | None = None,
        callbacks: Iterable[Callable] = (),
        numberofsteps: int | None = None,
        adjustfinalstep: bool = True,
    ) -> float:
        """Step until ``timeend`` (or ``numberofsteps`` steps) and return the final time.

        The last step is shortened so the loop lands on ``timeend`` exactly.
        Callbacks run after each full step; any returning :data:`STOP` ends
        the loop.
        """

        if self.dt is None:
            raise ConfigurationError(f"{type(self).__name__} has no time step")
        if numberofsteps is not None:
            if timeend is not None:
                raise ConfigurationError("pass either timeend or numberofsteps, not both")
            timeend = self.t + numberofsteps * self.dt
        if timeend is None:
            raise ConfigurationError("solve needs timeend or numberofsteps")
        callbacks = tuple(callbacks)
        eps = np.finfo(np.float64).eps
        start = time.monotonic()
        logger.info("%s: t=%.6g -> %.6g with dt=%.6g", type(self).__name__, self.t, timeend, self.dt)
        stop = False
        while not stop and self.t < timeend:
            dt = self.dt
            final = False
            if adjustfinalstep and self.t + dt * (1 + math.sqrt(eps)) >= timeend:
                dt = timeend - self.t
                final = True
            self.step(Q, dt)
            if final:
                self.t = float(timeend)
            for cb in callbacks:
                if cb(self, Q) is STOP:
                    stop = True
        self.status = SolverStatus.FINISHED
        logger.info(
            "%s finished: %d steps, t=%.12g (%.2fs wall)",
            type(self).__name__,
            self.steps,
            self.t,
            time.monotonic() - start,
        )
        return self.t
