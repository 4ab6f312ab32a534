"""Modal filters applied to nodal element data.

A 1D filter ``F = V diag(sigma) V^{-1}`` built from the orthonormal Legendre
Vandermonde is applied along every reference direction of the selected
variables. Filters act element-locally; ghost elements are filtered too so no
exchange is needed afterwards.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import jax.numpy as jnp
import numpy as np

from .elements import jacobip
from .errors import ConfigurationError
from .grid import SpectralElementGrid, apply_1d_operator
from .state import DistributedState

__all__ = ["CutoffFilter", "ExponentialFilter", "apply_filter"]


def _modal_filter(r: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    V = jacobip(0.0, 0.0, r.size - 1, r)
    return V @ np.diag(sigma) @ np.linalg.inv(V)


@dataclass(frozen=True)
class CutoffFilter:
    """Zero every mode of degree ``>= Nc``."""

    grid: SpectralElementGrid
    Nc: int | None = None

    @property
    def matrix(self) -> np.ndarray:
        N = self.grid.N
        Nc = N if self.Nc is None else self.Nc
        if not 0 <= Nc <= N + 1:
            raise ConfigurationError(f"cutoff order {Nc} outside [0, {N + 1}]")
        sigma = (np.arange(N + 1) < Nc).astype(np.float64)
        return _modal_filter(np.asarray(self.grid.element.points), sigma)


@dataclass(frozen=True)
class ExponentialFilter:
    """``sigma(n) = exp(-alpha ((n - Nc) / (N - Nc))**s)`` for ``n > Nc``.

    ``alpha`` defaults to ``-log(eps)`` so the highest mode is removed to
    machine precision; ``s`` must be even.
    """

    grid: SpectralElementGrid
    Nc: int = 0
    s: int = 32
    alpha: float = float(-np.log(np.finfo(np.float64).eps))

    @property
    def matrix(self) -> np.ndarray:
        N = self.grid.N
        if not 0 <= self.Nc < N:
            raise ConfigurationError(f"filter cutoff {self.Nc} must lie in [0, {N})")
        if self.s <= 0 or self.s % 2:
            raise ConfigurationError(f"filter order s={self.s} must be positive and even")
        n = np.arange(N + 1)
        eta = np.clip((n - self.Nc) / (N - self.Nc), 0.0, None)
        sigma = np.exp(-self.alpha * eta**self.s)
        return _modal_filter(np.asarray(self.grid.element.points), sigma)


def apply_filter(state: DistributedState, filter, variables: Sequence[str] | None = None) -> None:
    """Filter ``variables`` (all by default) of ``state`` in place."""

    grid = filter.grid
    F = jnp.asarray(filter.matrix, dtype=state.data.dtype)
    slots = np.arange(state.nvar)
    if variables is not None:
        sl = state.layout.slices()
        missing = [v for v in variables if v not in sl]
        if missing:
            raise ConfigurationError(f"cannot filter unknown variables {missing}")
        slots = np.concatenate([np.arange(sl[v].start, sl[v].stop) for v in variables])
    sub = state.data[:, slots, :]
    for a in range(grid.dim):
        sub = apply_1d_operator(F, sub, a, grid.dim)
    state.data = state.data.at[:, slots, :].set(sub)
