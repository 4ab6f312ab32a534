import jax.numpy as jnp
import numpy as np
import pytest

from dg_climate_jax.errors import CommunicationError, ConfigurationError, NumericalInstabilityError
from dg_climate_jax.process_group import InProcessWorld, SerialProcessGroup
from dg_climate_jax.state import DistributedState
from dg_climate_jax.variables import VariableLayout, vector

from .conftest import make_grid


def test_zeros_and_named_views(periodic_grid):
    layout = VariableLayout.of("rho", vector("rhou"))
    Q = DistributedState.zeros(periodic_grid, layout)
    assert Q.data.shape == (periodic_grid.Np, 4, periodic_grid.nelem)
    x = periodic_grid.coords
    Q.set_from({"rho": x[..., 0], "rhou": x})
    np.testing.assert_allclose(np.asarray(Q["rho"]), np.asarray(x[..., 0]))
    np.testing.assert_allclose(np.asarray(Q["rhou"]), np.asarray(x))
    snap = Q.snapshot()
    assert set(snap) == {"rho", "rhou"}
    with pytest.raises(ValueError):
        snap["rho"][0, 0] = 1.0


def test_layout_mismatch_raises():
    with pytest.raises(ConfigurationError):
        DistributedState(jnp.zeros((4, 2, 3)), VariableLayout.of("a"))


def test_weighted_reductions(periodic_grid):
    Q = DistributedState.zeros(periodic_grid, VariableLayout.of("a"))
    Q.data = Q.data + 2.0
    assert np.isclose(Q.weighted_sum(), 2.0)
    assert np.isclose(Q.norm(), 2.0)
    R = Q.similar()
    assert R.norm() == 0.0
    assert np.isclose(Q.euclidean_distance(R), 2.0 * np.sqrt(Q.data.size))


def test_copy_does_not_alias(periodic_grid):
    Q = DistributedState.zeros(periodic_grid, VariableLayout.of("a"))
    C = Q.copy()
    C.data = C.data + 1
    assert float(jnp.max(Q.data)) == 0.0


def test_check_finite(periodic_grid):
    Q = DistributedState.zeros(periodic_grid, VariableLayout.of("a", "b"))
    Q.check_finite()
    Q.data = Q.data.at[0, 1, 0].set(jnp.nan)
    with pytest.raises(NumericalInstabilityError, match="b"):
        Q.check_finite()


def test_from_array_wraps_vector():
    Q = DistributedState.from_array([1.0, 2.0, 3.0])
    assert Q.data.shape == (1, 3, 1)
    assert Q.weights is None
    assert np.isclose(Q.norm(), np.sqrt(14.0))
    assert isinstance(Q.process_group, SerialProcessGroup)


def test_halo_exchange_fills_ghosts():
    world = InProcessWorld(3)

    def fn(group):
        grid = make_grid(elements=(4, 3), N=2, process_group=group)
        topo = grid.topology
        Q = DistributedState.zeros(grid, VariableLayout.of("id"))
        ids = np.full(grid.nelem, -1.0)
        ids[: grid.nrealelem] = topo.globalelems[: grid.nrealelem]
        Q.data = jnp.broadcast_to(jnp.asarray(ids), (grid.Np, 1, grid.nelem))
        Q.exchange()
        got = np.asarray(Q.data[0, 0, grid.nrealelem :])
        return topo.nghostelem > 0 and np.array_equal(got, topo.globalelems[grid.nrealelem :].astype(float))

    assert all(world.run(fn))


def test_global_reductions_across_ranks():
    world = InProcessWorld(2)

    def fn(group):
        grid = make_grid(elements=(4, 2), N=2, process_group=group)
        Q = DistributedState.zeros(grid, VariableLayout.of("a"))
        Q.data = Q.data + 1.0
        return Q.weighted_sum(), group.allreduce(group.rank, op="max")

    results = world.run(fn)
    for total, rmax in results:
        assert np.isclose(total, 1.0)
        assert rmax == 1.0


def test_failure_on_one_rank_aborts_the_world():
    world = InProcessWorld(2, timeout=5.0)

    def fn(group):
        if group.rank == 0:
            raise ValueError("boom")
        group.barrier()

    with pytest.raises(ValueError, match="boom"):
        world.run(fn)


def test_receive_timeout_raises_communication_error():
    world = InProcessWorld(2, timeout=0.2)

    def fn(group):
        if group.rank == 1:
            group.irecv(0, 5).wait()

    with pytest.raises(CommunicationError):
        world.run(fn)
