"""Multirate infinitesimal GARK methods (Sandu, 2019).

Stage ``i`` of the slow method integrates the fast ODE

    dv/dtau = L_fast(v) + (1 / dc_i) sum_k sum_j G_k[i, j] (tau / (dc_i h))**k f_j

over ``tau in [0, dc_i h]`` with ``dc_i = c_i - c_{i-1}``, where ``f_j`` are the
slow tendencies of the earlier stages. Stages with ``dc_i == 0`` are solved
directly; a nonzero coefficient on the current stage makes them implicit in
the slow operator, which must then be linear.

Coupling matrices are stored with one row per stage after the first and one
column per stage, so ``G_k[i - 1, j]`` multiplies ``f_j``.
"""
from __future__ import annotations

import logging

import numpy as np

from ..errors import ConfigurationError
from ..system_solvers import LinearBackwardEulerSolver
from .base import AbstractODESolver

__all__ = ["MRIGARK", "MRIGARKERK22aSandu", "MRIGARKERK33aSandu", "MRIGARKIRK21aSandu"]

logger = logging.getLogger(__name__)


class MRIGARK(AbstractODESolver):
    def __init__(
        self,
        slow_rhs,
        fast: AbstractODESolver,
        gammas,
        c,
        Q,
        dt=None,
        t0=0.0,
        backward_euler_solver: LinearBackwardEulerSolver | None = None,
        check_finite: bool = False,
    ):
        super().__init__(slow_rhs, Q, dt=dt, t0=t0, check_finite=check_finite)
        self.fast = fast
        self.c = np.asarray(c, dtype=np.float64)
        self.gammas = [np.asarray(g, dtype=np.float64) for g in gammas]
        nstages = self.c.size
        for g in self.gammas:
            if g.shape != (nstages - 1, nstages):
                raise ValueError(f"coupling matrices must have shape {(nstages - 1, nstages)}, got {g.shape}")
        self.implicit = [bool(self.gammas[0][i - 1, i] != 0.0) for i in range(1, nstages)]
        for i in range(1, nstages):
            dc = self.c[i] - self.c[i - 1]
            if self.implicit[i - 1] and dc != 0.0:
                raise ConfigurationError("implicit coupling is only supported on stages with dc == 0")
            if dc < 0.0:
                raise ConfigurationError("stage abscissae must be non-decreasing")
        if any(self.implicit) and backward_euler_solver is None:
            raise ConfigurationError("implicit MRI-GARK tables need a linear backward Euler solver")
        self.backward_euler_solver = backward_euler_solver
        self.fast_dt = fast.dt
        self.stage_tendencies = [Q.similar() for _ in range(nstages)]
        self.Qhat = Q.similar()
        self.Qstage = Q.similar()

    def _forced_rhs(self, fast_rhs, stage: int, tau0: float, dc: float, h: float):
        forcing = []
        for g in self.gammas:
            f = 0.0
            for j in range(stage):
                if g[stage - 1, j] != 0.0:
                    f = f + (g[stage - 1, j] / dc) * self.stage_tendencies[j].data
            forcing.append(f)

        def rhs(dQ, Q, tau, increment=False):
            fast_rhs(dQ, Q, tau, increment=increment)
            s = (tau - tau0) / (dc * h)
            extra = 0.0
            for k, f in enumerate(forcing):
                extra = extra + s**k * f
            dQ.data = dQ.data + extra

        return rhs

    def dostep(self, Q, t, dt):
        c = self.c
        nstages = c.size
        self.rhs(self.stage_tendencies[0], Q, t, increment=False)
        for i in range(1, nstages):
            dc = c[i] - c[i - 1]
            stage_time = t + c[i] * dt
            if dc > 0.0:
                fast = self.fast
                nsubsteps = 1 if not self.fast_dt else max(1, int(np.ceil(dc * dt / self.fast_dt - 1e-12)))
                fast_dt = dc * dt / nsubsteps
                tau0 = t + c[i - 1] * dt
                saved = fast.rhs
                fast.rhs = self._forced_rhs(saved, i, tau0, dc, dt)
                try:
                    for sub in range(nsubsteps):
                        fast.dostep(Q, tau0 + sub * fast_dt, fast_dt)
                finally:
                    fast.rhs = saved
            else:
                # zero-length stage: Y_i = Y_{i-1} + h sum_j gbar_ij f_j
                gbar = sum(g / (k + 1) for k, g in enumerate(self.gammas))
                qhat = Q.data
                for j in range(i):
                    if gbar[i - 1, j] != 0.0:
                        qhat = qhat + dt * gbar[i - 1, j] * self.stage_tendencies[j].data
                if self.implicit[i - 1]:
                    self.Qhat.data = qhat
                    self.backward_euler_solver(Q, self.Qhat, dt * gbar[i - 1, i], self.rhs, stage_time)
                else:
                    Q.data = qhat
            if i < nstages - 1:
                self.rhs(self.stage_tendencies[i], Q, stage_time, increment=False)
        self.fast.t = t + dt


class MRIGARKERK22aSandu(MRIGARK):
    """Explicit second-order MRI-GARK (ERK22a)."""

    def __init__(self, slow_rhs, fast, Q, dt=None, t0=0.0, check_finite=False):
        c = (0.0, 0.5, 1.0)
        gamma0 = ((0.5, 0.0, 0.0), (-0.5, 1.0, 0.0))
        super().__init__(slow_rhs, fast, (gamma0,), c, Q, dt=dt, t0=t0, check_finite=check_finite)


class MRIGARKERK33aSandu(MRIGARK):
    """Explicit third-order MRI-GARK (ERK33a) with ``delta = -1/2``."""

    def __init__(self, slow_rhs, fast, Q, dt=None, t0=0.0, check_finite=False):
        d = -0.5
        c = (0.0, 1.0 / 3.0, 2.0 / 3.0, 1.0)
        gamma0 = (
            (1.0 / 3.0, 0.0, 0.0, 0.0),
            ((-6 * d - 7) / 12, (6 * d + 11) / 12, 0.0, 0.0),
            (0.0, (6 * d - 5) / 12, (3 - 2 * d) / 4, 0.0),
        )
        gamma1 = (
            (0.0, 0.0, 0.0, 0.0),
            ((2 * d + 1) / 2, -(2 * d + 1) / 2, 0.0, 0.0),
            (0.5, -(2 * d + 1) / 2, d, 0.0),
        )
        super().__init__(slow_rhs, fast, (gamma0, gamma1), c, Q, dt=dt, t0=t0, check_finite=check_finite)


class MRIGARKIRK21aSandu(MRIGARK):
    """Implicit-slow second-order MRI-GARK (IRK21a): trapezoidal slow coupling."""

    def __init__(self, slow_rhs, backward_euler_solver, fast, Q, dt=None, t0=0.0, check_finite=False):
        c = (0.0, 1.0, 1.0)
        gamma0 = ((1.0, 0.0, 0.0), (-0.5, 0.0, 0.5))
        super().__init__(
            slow_rhs,
            fast,
            (gamma0,),
            c,
            Q,
            dt=dt,
            t0=t0,
            backward_euler_solver=backward_euler_solver,
            check_finite=check_finite,
        )
