"""Pytest configuration for lightweight test settings.

Grids in the unit tests are a handful of low-order elements, so the cost is
dominated by JAX tracing. Double precision stays on because the metric
identity, quadrature and solver tests are machine-precision statements.
"""

import os
import sys
from pathlib import Path

import numpy as np
import pytest
from numpy.polynomial import Polynomial


# Ensure the repository root is importable without an editable install.
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))


os.environ.setdefault("DG_CLIMATE_JAX_ENABLE_X64", "True")


from dg_climate_jax.grid import SpectralElementGrid  # noqa: E402
from dg_climate_jax.topology import BrickTopology  # noqa: E402


def make_grid(elements=(3, 3), N=3, domain=((0.0, 1.0), (0.0, 1.0)), periodicity=None, boundary=None, meshwarp=None, process_group=None):
    brickrange = [np.linspace(lo, hi, n + 1) for (lo, hi), n in zip(domain, elements)]
    if periodicity is None:
        periodicity = (True,) * len(elements)
    topo = BrickTopology(process_group, brickrange, periodicity=periodicity, boundary=boundary)
    return SpectralElementGrid(topo, N, meshwarp=meshwarp)


@pytest.fixture
def periodic_grid():
    return make_grid()


def linear_rhs(lam):
    """Right-hand side ``dQ = lam * Q`` in the solver calling convention."""

    def rhs(dQ, Q, t, increment=False):
        val = lam * Q.data
        dQ.data = dQ.data + val if increment else val

    return rhs


def matrix_rhs(A):
    """Right-hand side ``dQ = A Q`` for a state built with ``from_array``."""

    A = np.asarray(A, dtype=np.float64)

    def rhs(dQ, Q, t, increment=False):
        y = Q.data[0, :, 0]
        val = (A @ y).reshape(Q.data.shape)
        dQ.data = dQ.data + val if increment else val

    return rhs


def low_storage_stability_polynomial(RKA, RKB):
    """``R(z)`` of a 2N low-storage scheme applied to ``y' = lambda y``, ``z = lambda dt``."""

    z = Polynomial([0.0, 1.0])
    y, dq = Polynomial([1.0]), Polynomial([0.0])
    for a, b in zip(RKA, RKB):
        dq = float(a) * dq + z * y
        y = y + float(b) * dq
    return y


def shu_osher_stability_polynomial(RKA, RKB):
    """``R(z)`` of an SSP scheme with rows ``(A[s, 0], A[s, 1])`` and weights ``B``."""

    z = Polynomial([0.0, 1.0])
    y0 = Polynomial([1.0])
    y = y0
    for (a0, a1), b in zip(RKA, RKB):
        y = float(a0) * y0 + float(a1) * y + float(b) * z * y
    return y
