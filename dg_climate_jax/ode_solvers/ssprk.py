"""Strong-stability-preserving Runge-Kutta methods in Shu-Osher form."""
from __future__ import annotations

import numpy as np

from .base import AbstractODESolver

__all__ = ["StrongStabilityPreservingRungeKutta", "SSPRK33ShuOsher", "SSPRK34SpiteriRuuth"]


class StrongStabilityPreservingRungeKutta(AbstractODESolver):
    """``Q_s = A[s,0] Q^n + A[s,1] Q_{s-1} + B[s] dt L(Q_{s-1}, t + C[s] dt)``."""

    def __init__(self, rhs, RKA, RKB, RKC, Q, dt=None, t0=0.0, check_finite=False):
        super().__init__(rhs, Q, dt=dt, t0=t0, check_finite=check_finite)
        self.RKA = np.asarray(RKA, dtype=np.float64)
        self.RKB = np.asarray(RKB, dtype=np.float64)
        self.RKC = np.asarray(RKC, dtype=np.float64)
        self.Qstage = Q.similar()
        self.Rstage = Q.similar()

    def dostep(self, Q, t, dt, slow_delta=None, slow_rv_dQ=None):
        Q0 = Q.data
        self.Qstage.data = Q0
        for s in range(self.RKB.size):
            self.rhs(self.Rstage, self.Qstage, t + self.RKC[s] * dt, increment=False)
            R = self.Rstage.data
            if slow_delta is not None:
                R = R + slow_delta * slow_rv_dQ
            self.Qstage.data = self.RKA[s, 0] * Q0 + self.RKA[s, 1] * self.Qstage.data + self.RKB[s] * dt * R
        Q.data = self.Qstage.data


class SSPRK33ShuOsher(StrongStabilityPreservingRungeKutta):
    """Third-order, three-stage scheme of Shu and Osher (1988)."""

    def __init__(self, rhs, Q, dt=None, t0=0.0, check_finite=False):
        RKA = ((1.0, 0.0), (3.0 / 4.0, 1.0 / 4.0), (1.0 / 3.0, 2.0 / 3.0))
        RKB = (1.0, 1.0 / 4.0, 2.0 / 3.0)
        RKC = (0.0, 1.0, 1.0 / 2.0)
        super().__init__(rhs, RKA, RKB, RKC, Q, dt=dt, t0=t0, check_finite=check_finite)


class SSPRK34SpiteriRuuth(StrongStabilityPreservingRungeKutta):
    """Third-order, four-stage scheme of Spiteri and Ruuth (2002)."""

    def __init__(self, rhs, Q, dt=None, t0=0.0, check_finite=False):
        RKA = ((1.0, 0.0), (0.0, 1.0), (2.0 / 3.0, 1.0 / 3.0), (0.0, 1.0))
        RKB = (1.0 / 2.0, 1.0 / 2.0, 1.0 / 6.0, 1.0 / 2.0)
        RKC = (0.0, 1.0 / 2.0, 1.0, 1.0 / 2.0)
        super().__init__(rhs, RKA, RKB, RKC, Q, dt=dt, t0=t0, check_finite=check_finite)
