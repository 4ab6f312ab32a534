"""Matrix-free iterative solvers for the implicit stages.

Operators are callables ``linear_operator(Ax, x)`` writing ``A x`` into the
container ``Ax``. Inner products are global: they reduce over the process
group of the containers. A solve that does not reach
``max(rtol * |b|, atol)`` within its iteration budget raises
:class:`~dg_climate_jax.errors.NonConvergenceError`.
"""
from __future__ import annotations

import logging
from typing import Callable

import numpy as np

from .errors import NonConvergenceError
from .state import DistributedState

__all__ = ["GeneralizedMinimalResidual", "GeneralizedConjugateResidual", "LinearBackwardEulerSolver"]

logger = logging.getLogger(__name__)


class _IterativeSolver:
    def __init__(self, restart: int = 30, max_restarts: int = 10, rtol: float = 1e-10, atol: float = 0.0):
        if restart < 1 or max_restarts < 1:
            raise ValueError("restart length and restart count must be positive")
        self.restart = restart
        self.max_restarts = max_restarts
        self.rtol = rtol
        self.atol = atol

    @property
    def max_iterations(self) -> int:
        return self.restart * self.max_restarts

    def _threshold(self, b: DistributedState) -> tuple[float, float]:
        bnorm = b.norm(weighted=False)
        return bnorm, max(self.rtol * bnorm, self.atol)

    def _residual(self, linear_operator, x, b, Ax):
        linear_operator(Ax, x)
        r = b.similar()
        r.data = b.data - Ax.data
        return r


class GeneralizedMinimalResidual(_IterativeSolver):
    """Restarted GMRES(``restart``) with modified Gram-Schmidt Arnoldi."""

    def solve(self, linear_operator: Callable, x: DistributedState, b: DistributedState) -> int:
        """Solve ``A x = b`` in place starting from the guess in ``x``; return iterations."""

        bnorm, threshold = self._threshold(b)
        if bnorm == 0.0:
            x.data = x.data * 0
            return 0
        Ax = x.similar()
        iterations = 0
        residual = np.inf
        m = self.restart
        for _ in range(self.max_restarts):
            r = self._residual(linear_operator, x, b, Ax)
            beta = r.norm(weighted=False)
            residual = beta
            if beta <= threshold:
                logger.debug("gmres converged after %d iterations (residual %.3e)", iterations, beta)
                return iterations
            V = [r.data / beta]
            H = np.zeros((m + 1, m))
            cs = np.zeros(m)
            sn = np.zeros(m)
            g = np.zeros(m + 1)
            g[0] = beta
            v = x.similar()
            w = x.similar()
            k_used = 0
            for k in range(m):
                v.data = V[k]
                linear_operator(w, v)
                wdata = w.data
                for j in range(k + 1):
                    v.data = V[j]
                    w.data = wdata
                    H[j, k] = w.dot(v, weighted=False)
                    wdata = wdata - H[j, k] * V[j]
                w.data = wdata
                H[k + 1, k] = w.norm(weighted=False)
                if H[k + 1, k] != 0.0:
                    V.append(wdata / H[k + 1, k])
                # apply previous rotations to the new column
                for j in range(k):
                    t = cs[j] * H[j, k] + sn[j] * H[j + 1, k]
                    H[j + 1, k] = -sn[j] * H[j, k] + cs[j] * H[j + 1, k]
                    H[j, k] = t
                denom = np.hypot(H[k, k], H[k + 1, k])
                cs[k], sn[k] = (1.0, 0.0) if denom == 0.0 else (H[k, k] / denom, H[k + 1, k] / denom)
                H[k, k] = cs[k] * H[k, k] + sn[k] * H[k + 1, k]
                H[k + 1, k] = 0.0
                g[k + 1] = -sn[k] * g[k]
                g[k] = cs[k] * g[k]
                iterations += 1
                k_used = k + 1
                residual = abs(g[k + 1])
                if residual <= threshold or len(V) <= k + 1:
                    break
            y = np.linalg.solve(np.triu(H[:k_used, :k_used]), g[:k_used]) if k_used else np.zeros(0)
            update = 0.0
            for j in range(k_used):
                update = update + y[j] * V[j]
            x.data = x.data + update
            if residual <= threshold:
                logger.debug("gmres converged after %d iterations (residual %.3e)", iterations, residual)
                return iterations
        # confirm with the true residual
        r = self._residual(linear_operator, x, b, Ax)
        residual = r.norm(weighted=False)
        if residual <= threshold:
            return iterations
        raise NonConvergenceError(
            f"GMRES did not converge in {iterations} iterations (residual {residual:.3e} > {threshold:.3e})",
            iterations,
            residual,
        )


class GeneralizedConjugateResidual(_IterativeSolver):
    """Restarted GCR(``restart``)."""

    def solve(self, linear_operator: Callable, x: DistributedState, b: DistributedState) -> int:
        bnorm, threshold = self._threshold(b)
        if bnorm == 0.0:
            x.data = x.data * 0
            return 0
        Ax = x.similar()
        iterations = 0
        residual = np.inf
        tmp = x.similar()
        tmp2 = x.similar()
        for _ in range(self.max_restarts):
            r = self._residual(linear_operator, x, b, Ax)
            residual = r.norm(weighted=False)
            if residual <= threshold:
                return iterations
            P, AP, APnorm2 = [], [], []
            p = r.data
            tmp.data = p
            linear_operator(Ax, tmp)
            ap = Ax.data
            for _k in range(self.restart):
                tmp.data, tmp2.data = ap, ap
                apap = tmp.dot(tmp2, weighted=False)
                tmp2.data = r.data
                alpha = tmp.dot(tmp2, weighted=False) / apap
                x.data = x.data + alpha * p
                r.data = r.data - alpha * ap
                iterations += 1
                residual = r.norm(weighted=False)
                if residual <= threshold:
                    logger.debug("gcr converged after %d iterations (residual %.3e)", iterations, residual)
                    return iterations
                P.append(p)
                AP.append(ap)
                APnorm2.append(apap)
                z = r.data
                tmp.data = z
                linear_operator(Ax, tmp)
                az = Ax.data
                p, ap = z, az
                for pj, apj, nj in zip(P, AP, APnorm2):
                    tmp.data, tmp2.data = az, apj
                    beta = -tmp.dot(tmp2, weighted=False) / nj
                    p = p + beta * pj
                    ap = ap + beta * apj
        raise NonConvergenceError(
            f"GCR did not converge in {iterations} iterations (residual {residual:.3e} > {threshold:.3e})",
            iterations,
            residual,
        )


class LinearBackwardEulerSolver:
    """Solve ``(I - alpha L) Q = Qhat`` for a linear operator ``L``.

    ``L`` follows the right-hand-side convention ``L(dQ, Q, t)``. With
    ``isadjustable`` the factor ``alpha`` may change between calls; otherwise a
    change raises ``ValueError``.
    """

    def __init__(self, solver: _IterativeSolver, isadjustable: bool = False):
        self.solver = solver
        self.isadjustable = isadjustable
        self._alpha: float | None = None
        self.iterations = 0

    def __call__(self, Q: DistributedState, Qhat: DistributedState, alpha: float, rhs_linear: Callable, t) -> int:
        if self._alpha is not None and not self.isadjustable and not np.isclose(alpha, self._alpha):
            raise ValueError(f"backward Euler factor changed from {self._alpha} to {alpha} on a fixed solver")
        self._alpha = alpha

        def operator(out, x):
            rhs_linear(out, x, t)
            out.data = x.data - alpha * out.data

        Q.data = Qhat.data
        its = self.solver.solve(operator, Q, Qhat)
        self.iterations += its
        return its
