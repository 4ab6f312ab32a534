"""Multirate Runge-Kutta: a low-storage slow method with a sub-cycled fast one.

For each slow stage ``s`` the slow tendency is accumulated into the slow
solver's ``dQ`` exactly as in the single-rate scheme; instead of the update
``Q += B[s] dt dQ`` the fast method integrates
``dQ/dt = L_fast(Q) + (B[s] / gamma) dQ_slow`` over ``gamma * dt`` with
``gamma = C[s+1] - C[s]`` (``1 - C[s]`` for the last stage), using as many
substeps of at most the fast ``dt`` as needed.
"""
from __future__ import annotations

import logging
import math

from ..errors import ConfigurationError
from .base import AbstractODESolver
from .lsrk import LowStorageRungeKutta2N

__all__ = ["MultirateRungeKutta"]

logger = logging.getLogger(__name__)


class MultirateRungeKutta(AbstractODESolver):
    """Two-level multirate scheme ``(slow, fast)``.

    ``slow`` must be a :class:`LowStorageRungeKutta2N`; ``fast`` any solver
    whose ``dostep`` accepts ``slow_delta`` and ``slow_rv_dQ``. The slow
    solver's ``dt`` is the outer step; the fast solver's ``dt`` bounds the
    substep length.
    """

    def __init__(self, slow: LowStorageRungeKutta2N, fast: AbstractODESolver, Q, dt=None, t0=0.0, check_finite=False):
        if not isinstance(slow, LowStorageRungeKutta2N):
            raise ConfigurationError("the slow method of a multirate scheme must be low-storage Runge-Kutta")
        dt = slow.dt if dt is None else dt
        super().__init__(slow.rhs, Q, dt=dt, t0=t0, check_finite=check_finite)
        self.slow = slow
        self.fast = fast
        self.fast_dt = fast.dt

    def dostep(self, Q, t, dt):
        slow = self.slow
        n = slow.nstages
        for s in range(n):
            stage_time = t + slow.RKC[s] * dt
            slow.rhs(slow.dQ, Q, stage_time, increment=True)
            gamma = (1.0 if s == n - 1 else slow.RKC[s + 1]) - slow.RKC[s]
            slow_delta = slow.RKB[s] / gamma
            if self.fast_dt is not None and self.fast_dt > 0:
                nsubsteps = max(1, math.ceil(gamma * dt / self.fast_dt - 1e-12))
            else:
                nsubsteps = 1
            fast_dt = gamma * dt / nsubsteps
            for sub in range(nsubsteps):
                self.fast.dostep(Q, stage_time + sub * fast_dt, fast_dt, slow_delta, slow.dQ.data)
            slow.dQ.data = slow.RKA[(s + 1) % n] * slow.dQ.data
        self.fast.t = t + dt
        slow.t = t + dt
