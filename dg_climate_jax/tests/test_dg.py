import jax.numpy as jnp
import numpy as np
import pytest

from dg_climate_jax.config import ParameterSet
from dg_climate_jax.dg import DGModel, remainder_dg_model
from dg_climate_jax.errors import ConfigurationError
from dg_climate_jax.models import (
    AdvectionDiffusion,
    DryAtmosAcousticLinearModel,
    DryAtmosModel,
    HyperDiffusion,
    IsentropicVortex,
)
from dg_climate_jax.models.dry_atmos import total_energy
from dg_climate_jax.numerical_fluxes import numerical_flux_from_name
from dg_climate_jax.ode_solvers import LSRK54CarpenterKennedy
from dg_climate_jax.process_group import InProcessWorld
from dg_climate_jax.state import DistributedState
from dg_climate_jax.variables import StateKind, VariableLayout

from .conftest import make_grid

GAS = ParameterSet(grav=0.0, R_d=1.0, cp_d=3.5)


def _warp(x, y, z):
    bump = np.sin(np.pi * x) * np.sin(np.pi * y)
    return x + 0.05 * bump, y + 0.04 * bump, z


def _uniform_flow(dg, rho=1.2, u=(0.3, -0.2, 0.0), p=0.9):
    grid = dg.grid
    law = dg.balance_law
    shape = (grid.Np, grid.nelem)
    rho = jnp.full(shape, rho)
    rhou = rho[..., None] * jnp.asarray(u)
    Q = dg.new_state()
    Q.set_from({"rho": rho, "rhou": rhou, "rhoe": total_energy(law.gamma, rho, rhou, p, 0.0)})
    return Q


def _vortex_dg(flux="rusanov", elements=(4, 4), N=3):
    grid = make_grid(elements=elements, N=N, domain=((-5.0, 5.0), (-5.0, 5.0)))
    law = DryAtmosModel(dim=2, problem=IsentropicVortex(halflength=5.0), parameters=GAS, sources=())
    return DGModel(law, grid, numerical_flux_from_name(flux))


@pytest.mark.parametrize(
    "flux",
    ["central", "rusanov", "entropy_conservative", "entropy_conservative_penalty", "matrix", "kennedy_gruber"],
)
def test_free_stream_is_preserved_on_warped_mesh(flux):
    grid = make_grid(elements=(3, 3), N=4, meshwarp=_warp)
    law = DryAtmosModel(dim=2, parameters=GAS, sources=())
    dg = DGModel(law, grid, numerical_flux_from_name(flux))
    Q = _uniform_flow(dg)
    dQ = dg.tendency(Q, 0.0)
    assert float(jnp.max(jnp.abs(dQ.realdata))) < 1e-10


def test_resting_gas_in_closed_box():
    grid = make_grid(elements=(2, 3), N=3, periodicity=(False, False), boundary=((1, 2), (3, 4)))
    law = DryAtmosModel(dim=2, parameters=GAS, sources=())
    dg = DGModel(law, grid)
    Q = _uniform_flow(dg, u=(0.0, 0.0, 0.0))
    assert float(jnp.max(jnp.abs(dg.tendency(Q, 0.0).realdata))) < 1e-12


def test_mass_is_conserved_discretely():
    dg = _vortex_dg()
    Q = dg.init_ode_state(0.0)
    dQ = dg.tendency(Q, 0.0)
    assert abs(dQ.weighted_sum("rho")) < 1e-12
    assert abs(dQ.weighted_sum("rhoe")) < 1e-11


def test_init_ode_state_places_vortex_at_center():
    dg = _vortex_dg()
    Q = dg.init_ode_state(0.0)
    rho = np.asarray(Q["rho"])
    r = np.linalg.norm(np.asarray(dg.grid.coords)[..., :2], axis=-1)
    assert rho[r < 0.5].max() < rho[r > 4.0].min()
    assert np.isclose(rho[r > 4.5].max(), 1.0, atol=1e-3)


def test_increment_adds_to_tendency():
    dg = _vortex_dg()
    Q = dg.init_ode_state(0.0)
    dQ = dg.tendency(Q, 0.0)
    acc = dQ.copy()
    dg(acc, Q, 0.0, increment=True)
    np.testing.assert_allclose(np.asarray(acc.data), 2 * np.asarray(dQ.data), rtol=1e-13, atol=1e-14)


def test_state_layout_is_checked():
    dg = _vortex_dg()
    wrong = DistributedState.zeros(dg.grid, VariableLayout.of("a"))
    with pytest.raises(ConfigurationError):
        dg.tendency(wrong, 0.0)


def test_remainder_plus_linear_is_full_operator():
    dg = _vortex_dg()
    linear = DGModel(DryAtmosAcousticLinearModel(dg.balance_law), dg.grid, state_auxiliary=dg.state_auxiliary)
    rem = remainder_dg_model(dg, [linear.balance_law])
    assert rem.state_auxiliary is dg.state_auxiliary
    Q = dg.init_ode_state(0.0)
    full = dg.tendency(Q, 0.0)
    split = rem.tendency(Q, 0.0)
    split.data = split.data + linear.tendency(Q, 0.0).data
    np.testing.assert_allclose(np.asarray(split.realdata), np.asarray(full.realdata), atol=1e-11)


def test_remainder_rejects_mismatched_sub_law():
    dg = _vortex_dg()
    with pytest.raises(ConfigurationError):
        remainder_dg_model(dg, [HyperDiffusion()])


def test_auxiliary_state_reuse_is_checked():
    dg = _vortex_dg()
    other = DistributedState.zeros(dg.grid, VariableLayout.of("x"))
    with pytest.raises(ConfigurationError):
        DGModel(dg.balance_law, dg.grid, state_auxiliary=other)


def test_courant_number_scales_with_dt():
    dg = _vortex_dg()
    Q = dg.init_ode_state(0.0)
    c1 = dg.courant(Q, 0.1)
    assert c1 > 0
    assert np.isclose(dg.courant(Q, 0.2), 2 * c1)


def _sine(coord, t=0.0):
    return jnp.sin(2 * jnp.pi * coord[..., 0])


def test_advection_diffusion_tendency():
    grid = make_grid(elements=(6, 2), N=5)
    D = 0.01
    law = AdvectionDiffusion(velocity=(1.0, 0.0, 0.0), diffusivity=D, initial_condition=_sine)
    dg = DGModel(law, grid)
    Q = dg.init_ode_state(0.0)
    x = np.asarray(grid.coords[..., 0])
    k = 2 * np.pi
    expected = -k * np.cos(k * x) - D * k**2 * np.sin(k * x)
    got = np.asarray(dg.tendency(Q, 0.0)["rho"])
    assert np.max(np.abs(got - expected)) < 1e-2 * np.max(np.abs(expected))


def test_advection_diffusion_evolves_to_exact_solution():
    grid = make_grid(elements=(6, 2), N=5)
    D = 0.01
    law = AdvectionDiffusion(velocity=(1.0, 0.0, 0.0), diffusivity=D, initial_condition=_sine)
    dg = DGModel(law, grid)
    Q = dg.init_ode_state(0.0)
    t_end = 0.1
    LSRK54CarpenterKennedy(dg, Q, dt=2e-3).solve(Q, t_end)
    x = np.asarray(grid.coords[..., 0])
    k = 2 * np.pi
    exact = np.exp(-D * k**2 * t_end) * np.sin(k * (x - t_end))
    assert np.max(np.abs(np.asarray(Q["rho"]) - exact)) < 1e-3


def test_dirichlet_walls_reproduce_linear_profile():
    grid = make_grid(elements=(3, 2), N=2, periodicity=(False, False))
    law = AdvectionDiffusion(
        velocity=(1.0, 0.5, 0.0),
        diffusivity=0.1,
        initial_condition=lambda coord, t: coord[..., 0] + 2 * coord[..., 1],
    )
    dg = DGModel(law, grid)
    Q = dg.init_ode_state(0.0)
    # -u . grad(rho) = -(1 + 1); the diffusive flux is constant
    np.testing.assert_allclose(np.asarray(dg.tendency(Q, 0.0)["rho"]), -2.0, atol=1e-10)


def test_neumann_walls_keep_constant_state():
    grid = make_grid(elements=(2, 2), N=3, periodicity=(False, False), boundary=((1, 2), (3, 3)))
    law = AdvectionDiffusion(
        velocity=(0.0, 0.0, 0.0),
        diffusivity=0.5,
        initial_condition=lambda coord, t: jnp.full(coord.shape[:-1], 3.0),
        neumann_tags=(1, 2, 3),
    )
    dg = DGModel(law, grid)
    Q = dg.init_ode_state(0.0)
    assert float(jnp.max(jnp.abs(dg.tendency(Q, 0.0).realdata))) < 1e-12


def test_hyperdiffusion_damps_fourier_mode_at_k4_rate():
    grid = make_grid(elements=(10, 2), N=5)
    nu = 1e-3
    law = HyperDiffusion(nu=nu, initial_condition=_sine)
    dg = DGModel(law, grid)
    Q = dg.init_ode_state(0.0)
    got = np.asarray(dg.tendency(Q, 0.0)["rho"])
    k = 2 * np.pi
    expected = -nu * k**4 * np.sin(k * np.asarray(grid.coords[..., 0]))
    assert np.max(np.abs(got - expected)) < 5e-2 * nu * k**4
    assert law.has_hyperdiffusion


def test_hyperdiffusion_leaves_constants_alone():
    grid = make_grid(elements=(2, 2), N=3)
    law = HyperDiffusion(nu=1.0, initial_condition=lambda coord, t: jnp.ones(coord.shape[:-1]))
    dg = DGModel(law, grid)
    Q = dg.init_ode_state(0.0)
    # four derivatives amplify roundoff by h**-4
    tol = 100 * np.finfo(np.float64).eps / grid.min_node_distance() ** 4
    assert float(jnp.max(jnp.abs(dg.tendency(Q, 0.0).realdata))) < tol


def test_layouts_cover_every_state_kind():
    dg = _vortex_dg()
    assert set(dg.layouts) == set(StateKind)
    assert dg.layouts[StateKind.PROGNOSTIC].names == ("rho", "rhou", "rhoe")
    assert dg.state_auxiliary.layout.names[0] == "coord"


def _vortex_tendency(group):
    grid = make_grid(elements=(4, 4), N=3, domain=((-5.0, 5.0), (-5.0, 5.0)), meshwarp=_warp, process_group=group)
    law = DryAtmosModel(dim=2, problem=IsentropicVortex(halflength=5.0), parameters=GAS, sources=())
    dg = DGModel(law, grid, numerical_flux_from_name("entropy_conservative_penalty"))
    return grid, dg.tendency(dg.init_ode_state(0.0), 0.0)


def _walled_diffusion_tendency(group):
    grid = make_grid(elements=(5, 3), N=3, periodicity=(False, True), process_group=group)
    law = AdvectionDiffusion(
        velocity=(0.7, 0.3, 0.0),
        diffusivity=0.05,
        initial_condition=lambda coord, t: jnp.sin(3 * coord[..., 0]) * jnp.cos(2 * jnp.pi * coord[..., 1]),
    )
    dg = DGModel(law, grid)
    return grid, dg.tendency(dg.init_ode_state(0.0), 0.0)


def _by_global_element(build, group=None):
    grid, dQ = build(group)
    n = grid.nrealelem
    data = np.asarray(dQ.realdata)
    return {int(g): data[:, :, e] for e, g in enumerate(grid.topology.globalelems[:n])}


@pytest.mark.parametrize("build", [_vortex_tendency, _walled_diffusion_tendency])
def test_distributed_tendency_matches_serial(build):
    serial = _by_global_element(build)
    pieces = InProcessWorld(3).run(lambda group: _by_global_element(build, group))

    distributed = {}
    for piece in pieces:
        assert piece
        assert not set(piece) & set(distributed)
        distributed.update(piece)
    assert set(distributed) == set(serial)
    for g, column in serial.items():
        np.testing.assert_allclose(distributed[g], column, rtol=1e-12, atol=1e-12)
