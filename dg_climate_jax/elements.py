"""One-dimensional reference-element operators.

Quadrature nodes, barycentric weights, spectral differentiation and
interpolation matrices on ``[-1, 1]``. Tensor products of these operators
define the hexahedral (or quadrilateral) reference element used by the grid.
Everything here is precomputed in float64 NumPy and cached per order.
"""
from __future__ import annotations

import functools
from dataclasses import dataclass

import numpy as np
from numpy.polynomial.legendre import leggauss, legval
from scipy.special import eval_jacobi, gammaln

from .errors import InvalidOrderError

__all__ = [
    "lglpoints",
    "glpoints",
    "baryweights",
    "spectralderivative",
    "interpolationmatrix",
    "jacobip",
    "ReferenceElement",
    "reference_element",
    "POINT_KINDS",
]

POINT_KINDS = ("lgl", "lg")


def _legendre_and_derivative(N: int, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Evaluate ``P_N`` and ``P_N'`` by the three-term recurrence."""

    p_prev = np.ones_like(x)
    p = x.copy()
    if N == 0:
        return p_prev, np.zeros_like(x)
    for n in range(1, N):
        p_prev, p = p, ((2 * n + 1) * x * p - n * p_prev) / (n + 1)
    dp = N * (x * p - p_prev) / (x * x - 1.0)
    return p, dp


def lglpoints(N: int) -> tuple[np.ndarray, np.ndarray]:
    """Legendre-Gauss-Lobatto nodes and weights of order ``N``.

    Returns ``N + 1`` points including both end points; the rule integrates
    polynomials of degree ``2N - 1`` exactly.
    """

    if N < 1:
        raise InvalidOrderError(f"Lobatto points need N >= 1, got {N}")
    if N == 1:
        return np.array([-1.0, 1.0]), np.array([1.0, 1.0])

    # Interior nodes are the roots of P_N'; Chebyshev-Gauss-Lobatto start
    # values followed by Newton iterations on (1 - x^2) P_N'.
    x = -np.cos(np.pi * np.arange(N + 1) / N)
    interior = x[1:-1]
    for _ in range(100):
        p, dp = _legendre_and_derivative(N, interior)
        # d/dx [(1 - x^2) P_N'] = -N (N + 1) P_N
        g = (1.0 - interior**2) * dp
        dg = -N * (N + 1) * p
        delta = g / dg
        interior = interior - delta
        if np.max(np.abs(delta)) < 1e-15:
            break
    x[1:-1] = interior
    x[0], x[-1] = -1.0, 1.0
    # symmetrize to remove round-off bias
    x = 0.5 * (x - x[::-1])

    c = np.zeros(N + 1)
    c[-1] = 1.0
    pN = legval(x, c)
    w = 2.0 / (N * (N + 1) * pN**2)
    return x, w


def glpoints(N: int) -> tuple[np.ndarray, np.ndarray]:
    """Legendre-Gauss nodes and weights with ``N + 1`` interior points.

    The rule integrates polynomials of degree ``2N + 1`` exactly.
    """

    if N < 0:
        raise InvalidOrderError(f"Gauss points need N >= 0, got {N}")
    x, w = leggauss(N + 1)
    return np.asarray(x, dtype=np.float64), np.asarray(w, dtype=np.float64)


def baryweights(r: np.ndarray) -> np.ndarray:
    """Barycentric weights ``w_j = 1 / prod_{k != j} (r_j - r_k)``."""

    r = np.asarray(r, dtype=np.float64)
    if r.ndim != 1 or r.size == 0:
        raise InvalidOrderError("barycentric weights need a non-empty 1D point set")
    diff = r[:, None] - r[None, :]
    np.fill_diagonal(diff, 1.0)
    if np.any(diff == 0.0):
        raise InvalidOrderError("point set contains repeated nodes")
    w = 1.0 / np.prod(diff, axis=1)
    return w / np.max(np.abs(w))


def spectralderivative(r: np.ndarray, wb: np.ndarray | None = None) -> np.ndarray:
    """Differentiation matrix of the Lagrange interpolant through ``r``.

    ``D @ p(r)`` equals ``p'(r)`` for every polynomial of degree ``len(r) - 1``.
    The diagonal uses the negative-sum trick so constants differentiate to zero
    exactly.
    """

    r = np.asarray(r, dtype=np.float64)
    if wb is None:
        wb = baryweights(r)
    n = r.size
    D = np.zeros((n, n))
    for i in range(n):
        for j in range(n):
            if i != j:
                D[i, j] = (wb[j] / wb[i]) / (r[i] - r[j])
        D[i, i] = -np.sum(D[i, :])
    return D


def interpolationmatrix(src: np.ndarray, dst: np.ndarray, wb: np.ndarray | None = None) -> np.ndarray:
    """Matrix mapping nodal values on ``src`` to values at ``dst``.

    Uses the second barycentric form; rows for destination points coinciding
    with a source point reduce to the corresponding unit vector.
    """

    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    if wb is None:
        wb = baryweights(src)
    I = np.zeros((dst.size, src.size))
    for k, x in enumerate(dst):
        d = x - src
        hit = np.flatnonzero(d == 0.0)
        if hit.size:
            I[k, hit[0]] = 1.0
            continue
        t = wb / d
        I[k] = t / np.sum(t)
    return I


def jacobip(alpha: float, beta: float, N: int, x: np.ndarray) -> np.ndarray:
    """Orthonormal Jacobi Vandermonde ``V[i, n] = P_n^{(alpha, beta)}(x_i)``.

    Columns are normalized with respect to the weight
    ``(1 - x)^alpha (1 + x)^beta`` on ``[-1, 1]``.
    """

    if N < 0:
        raise InvalidOrderError(f"Jacobi order must be non-negative, got {N}")
    x = np.asarray(x, dtype=np.float64)
    V = np.zeros((x.size, N + 1))
    for n in range(N + 1):
        log_h = (
            (alpha + beta + 1) * np.log(2.0)
            - np.log(2 * n + alpha + beta + 1)
            + gammaln(n + alpha + 1)
            + gammaln(n + beta + 1)
            - gammaln(n + alpha + beta + 1)
            - gammaln(n + 1)
        )
        V[:, n] = eval_jacobi(n, alpha, beta, x) * np.exp(-0.5 * log_h)
    return V


@dataclass(frozen=True, eq=False)
class ReferenceElement:
    """Shared 1D operators for a polynomial order and node family.

    Attributes
    ----------
    order : int
        Polynomial order ``N``; the element has ``Nq = N + 1`` nodes per axis.
    kind : str
        ``"lgl"`` (Lobatto) or ``"lg"`` (Gauss).
    points, weights : ndarray, shape (Nq,)
    baryweights : ndarray, shape (Nq,)
    derivative : ndarray, shape (Nq, Nq)
    """

    order: int
    kind: str
    points: np.ndarray
    weights: np.ndarray
    baryweights: np.ndarray
    derivative: np.ndarray

    @property
    def Nq(self) -> int:
        return self.order + 1

    def Np(self, dim: int) -> int:
        return self.Nq**dim

    def interpolate_to(self, dst: np.ndarray) -> np.ndarray:
        return interpolationmatrix(self.points, dst, self.baryweights)


@functools.lru_cache(None)
def reference_element(N: int, kind: str = "lgl") -> ReferenceElement:
    """Build (once) the reference operators for order ``N``."""

    if kind == "lgl":
        r, w = lglpoints(N)
    elif kind == "lg":
        r, w = glpoints(N)
    else:
        raise InvalidOrderError(f"unknown point kind {kind!r}; choose from {POINT_KINDS}")
    wb = baryweights(r)
    D = spectralderivative(r, wb)
    for arr in (r, w, wb, D):
        arr.setflags(write=False)
    return ReferenceElement(order=N, kind=kind, points=r, weights=w, baryweights=wb, derivative=D)
