"""Additive (IMEX) Runge-Kutta methods.

The explicit tendency is ``rhs`` (or ``rhs - rhs_linear`` when
``split_explicit_implicit`` is false) and the implicit one the linear operator
``rhs_linear``; each implicit stage solves ``(I - dt a_ss L) Q_s = Qhat`` with a
:class:`~dg_climate_jax.system_solvers.LinearBackwardEulerSolver`.
"""
from __future__ import annotations

import math

import numpy as np

from ..system_solvers import LinearBackwardEulerSolver
from .base import AbstractODESolver

__all__ = ["AdditiveRungeKutta", "ARK2GiraldoKellyConstantinescu", "ARK1ForwardBackwardEuler"]


class AdditiveRungeKutta(AbstractODESolver):
    def __init__(
        self,
        rhs,
        rhs_linear,
        backward_euler_solver: LinearBackwardEulerSolver,
        RKA_explicit,
        RKA_implicit,
        RKB,
        RKC,
        Q,
        dt=None,
        t0=0.0,
        split_explicit_implicit: bool = True,
        check_finite: bool = False,
    ):
        super().__init__(rhs, Q, dt=dt, t0=t0, check_finite=check_finite)
        self.rhs_linear = rhs_linear
        self.backward_euler_solver = backward_euler_solver
        self.RKA_explicit = np.asarray(RKA_explicit, dtype=np.float64)
        self.RKA_implicit = np.asarray(RKA_implicit, dtype=np.float64)
        self.RKB = np.asarray(RKB, dtype=np.float64)
        self.RKC = np.asarray(RKC, dtype=np.float64)
        n = self.RKB.size
        if self.RKA_explicit.shape != (n, n) or self.RKA_implicit.shape != (n, n):
            raise ValueError("Butcher tables must be square with one row per stage")
        if np.any(np.triu(self.RKA_explicit) != 0):
            raise ValueError("the explicit table must be strictly lower triangular")
        self.split_explicit_implicit = split_explicit_implicit
        self.Qstage = Q.similar()
        self.Qhat = Q.similar()
        self._scratch = Q.similar()
        self.Rexp = [Q.similar() for _ in range(n)]
        self.Rimp = [Q.similar() for _ in range(n)]

    def _explicit(self, out, Q, t):
        self.rhs(out, Q, t, increment=False)
        if not self.split_explicit_implicit:
            self.rhs_linear(self._scratch, Q, t, increment=False)
            out.data = out.data - self._scratch.data

    def dostep(self, Q, t, dt):
        n = self.RKB.size
        AE, AI = self.RKA_explicit, self.RKA_implicit
        for s in range(n):
            ts = t + self.RKC[s] * dt
            qhat = Q.data
            for j in range(s):
                qhat = qhat + dt * (AE[s, j] * self.Rexp[j].data + AI[s, j] * self.Rimp[j].data)
            self.Qhat.data = qhat
            if AI[s, s] != 0.0:
                self.backward_euler_solver(self.Qstage, self.Qhat, dt * AI[s, s], self.rhs_linear, ts)
            else:
                self.Qstage.data = qhat
            self._explicit(self.Rexp[s], self.Qstage, ts)
            self.rhs_linear(self.Rimp[s], self.Qstage, ts, increment=False)
        update = Q.data
        for s in range(n):
            update = update + dt * self.RKB[s] * (self.Rexp[s].data + self.Rimp[s].data)
        Q.data = update


class ARK2GiraldoKellyConstantinescu(AdditiveRungeKutta):
    """Second-order IMEX scheme ARK2 of Giraldo, Kelly and Constantinescu (2013)."""

    def __init__(self, rhs, rhs_linear, backward_euler_solver, Q, dt=None, t0=0.0, split_explicit_implicit=True, check_finite=False):
        a32 = (3.0 + 2.0 * math.sqrt(2.0)) / 6.0
        r2 = math.sqrt(2.0)
        RKA_explicit = (
            (0.0, 0.0, 0.0),
            (2.0 - r2, 0.0, 0.0),
            (1.0 - a32, a32, 0.0),
        )
        RKA_implicit = (
            (0.0, 0.0, 0.0),
            ((2.0 - r2) / 2.0, (2.0 - r2) / 2.0, 0.0),
            (1.0 / (2.0 * r2), 1.0 / (2.0 * r2), 1.0 - 1.0 / r2),
        )
        RKB = RKA_implicit[2]
        RKC = (0.0, 2.0 - r2, 1.0)
        super().__init__(
            rhs,
            rhs_linear,
            backward_euler_solver,
            RKA_explicit,
            RKA_implicit,
            RKB,
            RKC,
            Q,
            dt=dt,
            t0=t0,
            split_explicit_implicit=split_explicit_implicit,
            check_finite=check_finite,
        )


class ARK1ForwardBackwardEuler(AdditiveRungeKutta):
    """First-order forward/backward Euler pair."""

    def __init__(self, rhs, rhs_linear, backward_euler_solver, Q, dt=None, t0=0.0, split_explicit_implicit=True, check_finite=False):
        super().__init__(
            rhs,
            rhs_linear,
            backward_euler_solver,
            ((0.0, 0.0), (1.0, 0.0)),
            ((0.0, 0.0), (0.0, 1.0)),
            (0.0, 1.0),
            (0.0, 1.0),
            Q,
            dt=dt,
            t0=t0,
            split_explicit_implicit=split_explicit_implicit,
            check_finite=check_finite,
        )
