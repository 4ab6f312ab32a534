import jax.numpy as jnp
import numpy as np
import pytest
from numpy.polynomial.legendre import legval

from dg_climate_jax.callbacks import ApplyFilter, EveryXSimulationSteps
from dg_climate_jax.errors import ConfigurationError
from dg_climate_jax.filters import CutoffFilter, ExponentialFilter, apply_filter
from dg_climate_jax.ode_solvers import LSRK54CarpenterKennedy
from dg_climate_jax.state import DistributedState
from dg_climate_jax.variables import VariableLayout

from .conftest import linear_rhs, make_grid


def _state(grid, **fields):
    Q = DistributedState.zeros(grid, VariableLayout.of(*fields))
    Q.set_from(fields)
    return Q


def _local_xi(grid, axis=0):
    x = np.asarray(grid.coords[..., axis])
    lo, hi = x.min(axis=0), x.max(axis=0)
    return 2 * (x - lo) / (hi - lo) - 1


def test_exponential_filter_keeps_low_modes_and_removes_top_mode():
    grid = make_grid(elements=(2, 2), N=4)
    x, y = grid.coords[..., 0], grid.coords[..., 1]
    low = 1 + 2 * x - y
    top = legval(_local_xi(grid), [0, 0, 0, 0, 1])
    Q = _state(grid, a=low, b=jnp.asarray(top))
    apply_filter(Q, ExponentialFilter(grid, Nc=1, s=8))
    np.testing.assert_allclose(np.asarray(Q["a"]), np.asarray(low), atol=1e-12)
    assert float(jnp.max(jnp.abs(Q["b"]))) < 1e-12


def test_cutoff_filter_projects_onto_element_means():
    grid = make_grid(elements=(3, 2), N=3)
    x = grid.coords[..., 0]
    Q = _state(grid, a=x)
    apply_filter(Q, CutoffFilter(grid, Nc=1))
    center = 0.5 * (np.asarray(x).min(axis=0) + np.asarray(x).max(axis=0))
    np.testing.assert_allclose(np.asarray(Q["a"]), np.broadcast_to(center, x.shape), atol=1e-12)


def test_full_cutoff_is_identity_and_variable_selection():
    grid = make_grid(elements=(2, 2), N=3)
    x, y = grid.coords[..., 0], grid.coords[..., 1]
    Q = _state(grid, a=x * y, b=x)
    apply_filter(Q, CutoffFilter(grid, Nc=1), variables=["b"])
    np.testing.assert_allclose(np.asarray(Q["a"]), np.asarray(x * y), atol=0)
    before = Q.data
    apply_filter(Q, CutoffFilter(grid, Nc=grid.N + 1))
    np.testing.assert_allclose(np.asarray(Q.data), np.asarray(before), atol=1e-12)


def test_invalid_filters_raise():
    grid = make_grid(elements=(2, 2), N=3)
    Q = _state(grid, a=grid.coords[..., 0])
    with pytest.raises(ConfigurationError):
        apply_filter(Q, ExponentialFilter(grid, Nc=3))
    with pytest.raises(ConfigurationError):
        apply_filter(Q, ExponentialFilter(grid, s=3))
    with pytest.raises(ConfigurationError):
        apply_filter(Q, CutoffFilter(grid, Nc=9))
    with pytest.raises(ConfigurationError):
        apply_filter(Q, CutoffFilter(grid), variables=["missing"])


def test_filter_callback_damps_the_top_mode_during_solve():
    grid = make_grid(elements=(2, 2), N=4)
    x, y = grid.coords[..., 0], grid.coords[..., 1]
    low = 1 + 2 * x - y
    top = jnp.asarray(legval(_local_xi(grid), [0, 0, 0, 0, 1]))
    Q = _state(grid, a=low + top, b=low + top)

    # alpha = 1/2 so each application scales the top mode by exp(-1/2)
    filt = ExponentialFilter(grid, Nc=1, s=8, alpha=0.5)
    solver = LSRK54CarpenterKennedy(linear_rhs(0.0), Q, dt=0.1)
    solver.solve(Q, numberofsteps=6, callbacks=[EveryXSimulationSteps(ApplyFilter(filt, ["b"]), 2)])

    assert solver.steps == 6
    np.testing.assert_allclose(np.asarray(Q["a"]), np.asarray(low + top), atol=1e-12)
    np.testing.assert_allclose(np.asarray(Q["b"]), np.asarray(low + np.exp(-1.5) * top), atol=1e-12)
