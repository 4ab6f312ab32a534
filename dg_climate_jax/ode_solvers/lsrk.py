"""Low-storage (2N) explicit Runge-Kutta methods."""
from __future__ import annotations

import numpy as np

from ..state import DistributedState
from .base import AbstractODESolver

__all__ = ["LowStorageRungeKutta2N", "LSRK54CarpenterKennedy", "LSRKEulerMethod"]


class LowStorageRungeKutta2N(AbstractODESolver):
    """Williamson 2N-storage scheme.

    Per stage ``s``::

        dQ = A[s] dQ + L(Q, t + C[s] dt)
        Q  = Q + B[s] dt dQ

    ``dQ`` is the accumulator owned by the solver; ``A[0]`` must be zero so it
    needs no reset between steps. An optional slow forcing
    ``slow_delta * slow_rv_dQ`` is added to ``dQ`` at every stage, which is how
    a multirate method drives its fast integrator.
    """

    def __init__(self, rhs, RKA, RKB, RKC, Q: DistributedState, dt=None, t0=0.0, check_finite=False):
        super().__init__(rhs, Q, dt=dt, t0=t0, check_finite=check_finite)
        self.RKA = np.asarray(RKA, dtype=np.float64)
        self.RKB = np.asarray(RKB, dtype=np.float64)
        self.RKC = np.asarray(RKC, dtype=np.float64)
        if not (self.RKA.size == self.RKB.size == self.RKC.size):
            raise ValueError("RKA, RKB and RKC need the same number of stages")
        if self.RKA[0] != 0.0:
            raise ValueError("the first low-storage coefficient A[0] must vanish")
        self.dQ = Q.similar()

    @property
    def nstages(self) -> int:
        return self.RKA.size

    def dostep(self, Q, t, dt, slow_delta=None, slow_rv_dQ=None):
        n = self.nstages
        for s in range(n):
            self.rhs(self.dQ, Q, t + self.RKC[s] * dt, increment=True)
            if slow_delta is not None:
                self.dQ.data = self.dQ.data + slow_delta * slow_rv_dQ
            Q.data = Q.data + self.RKB[s] * dt * self.dQ.data
            self.dQ.data = self.RKA[(s + 1) % n] * self.dQ.data


class LSRK54CarpenterKennedy(LowStorageRungeKutta2N):
    """Five-stage fourth-order scheme of Carpenter and Kennedy (1994), solution 3."""

    RKA = (
        0.0,
        -567301805773.0 / 1357537059087.0,
        -2404267990393.0 / 2016746695238.0,
        -3550918686646.0 / 2091501179385.0,
        -1275806237668.0 / 842570457699.0,
    )
    RKB = (
        1432997174477.0 / 9575080441755.0,
        5161836677717.0 / 13612068292357.0,
        1720146321549.0 / 2090206949498.0,
        3134564353537.0 / 4481467310338.0,
        2277821191437.0 / 14882151754819.0,
    )
    RKC = (
        0.0,
        1432997174477.0 / 9575080441755.0,
        2526269341429.0 / 6820363962896.0,
        2006345519317.0 / 3224310063776.0,
        2802321613138.0 / 2924317926251.0,
    )

    def __init__(self, rhs, Q, dt=None, t0=0.0, check_finite=False):
        super().__init__(rhs, self.RKA, self.RKB, self.RKC, Q, dt=dt, t0=t0, check_finite=check_finite)


class LSRKEulerMethod(LowStorageRungeKutta2N):
    """Forward Euler written as a one-stage low-storage scheme."""

    def __init__(self, rhs, Q, dt=None, t0=0.0, check_finite=False):
        super().__init__(rhs, (0.0,), (1.0,), (0.0,), Q, dt=dt, t0=t0, check_finite=check_finite)
