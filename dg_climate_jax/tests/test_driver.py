import math

import numpy as np
import pytest

from dg_climate_jax import config, driver
from dg_climate_jax.errors import ConfigurationError
from dg_climate_jax.ode_solvers import ARK2GiraldoKellyConstantinescu, LSRK54CarpenterKennedy, MultirateRungeKutta


def _config(**overrides):
    data = config.as_dict(config.DEFAULT)
    data["mesh"]["elements"] = [3, 3]
    data["discretization"]["polynomial_order"] = 3
    data["timestepping"]["timeend"] = 0.5
    for section, values in overrides.items():
        if isinstance(values, dict) and values:
            data[section].update(values)
        else:
            data[section] = values
    return config.config_from_dict(data)


def test_driver_run_returns_dataset():
    ds = driver.run(_config(), history_stride=2)
    assert "rho" in ds and "rhou_x" in ds
    assert ds.sizes["time"] >= 2
    assert ds["time"].values[0] == 0.0
    assert ds["time"].values[-1] == pytest.approx(0.5)
    assert ds.attrs["method"] == "lsrk54"
    assert ds.attrs["steps"] >= 1
    # measured for this 3x3, N=3 Rusanov run to t=0.5
    assert ds.attrs["l2_error"] == pytest.approx(1.255, rel=1e-3)
    assert np.all(np.isfinite(ds["rhoe"].values))


def test_stable_timestep_divides_the_run():
    sim = driver.build_simulation(_config())
    dt = sim.solver.dt
    nsteps = 0.5 / dt
    assert nsteps == pytest.approx(round(nsteps))
    assert sim.dg.courant(sim.Q, dt) <= 0.2 + 1e-12

    fixed = driver.build_simulation(_config(timestepping={"dt": 0.01}))
    assert fixed.solver.dt == 0.01


def test_build_solver_selects_the_integrator():
    assert isinstance(driver.build_isentropic_vortex((2, 2), 2, timeend=0.1).solver, LSRK54CarpenterKennedy)
    assert isinstance(driver.build_isentropic_vortex((2, 2), 2, method="ark2", timeend=0.1).solver, ARK2GiraldoKellyConstantinescu)
    assert isinstance(driver.build_isentropic_vortex((2, 2), 2, method="multirate_rk", timeend=0.1).solver, MultirateRungeKutta)


def _final_state(method, **timestepping):
    sim = driver.build_isentropic_vortex((3, 3), 3, method=method, timeend=0.5, **timestepping)
    sim.solver.solve(sim.Q, 0.5)
    return sim


@pytest.mark.parametrize(
    "method, tol",
    [
        ("ark2", 0.1),
        ("ark1", 0.3),
        ("multirate_rk", 0.1),
        ("mrigark_erk22a", 0.1),
        ("mrigark_erk33a", 0.1),
        ("mrigark_irk21a", 0.1),
    ],
)
def test_split_methods_track_the_explicit_solution(method, tol):
    reference = _final_state("lsrk54")
    Q0 = reference.dg.init_ode_state(0.0)
    change = reference.Q.euclidean_distance(Q0)

    sim = _final_state(method, dt=reference.solver.dt)
    assert sim.solver.t == pytest.approx(0.5)
    assert sim.Q.euclidean_distance(reference.Q) < tol * change


def test_split_methods_need_a_compatible_flux():
    with pytest.raises(ConfigurationError):
        driver.build_isentropic_vortex((2, 2), 2, method="ark2", numerical_flux="entropy_conservative")
    with pytest.raises(ConfigurationError):
        driver.build_isentropic_vortex((2, 2), 2, method="multirate_rk", fast_method="ark2")


def test_unknown_problem():
    with pytest.raises(ConfigurationError):
        driver.build_simulation(_config(problem="baroclinic_wave"))


def test_rising_bubble_runs():
    cfg = _config(
        problem="rising_bubble",
        parameters={},
        mesh={"domain": [[0.0, 2000.0], [0.0, 2000.0]], "periodicity": [True, False]},
        timestepping={"timeend": 1.0, "check_finite": True},
    )
    assert cfg.parameters.grav == pytest.approx(9.81)
    ds = driver.run(cfg, history_stride=1000)
    assert "l2_error" not in ds.attrs
    assert ds.sizes["time"] == 2
    assert np.all(np.isfinite(ds["rho"].values))
    assert np.max(np.abs(ds["rhou_y"].isel(time=-1).values)) > 0


def test_warped_mesh_keeps_the_boundary():
    warp = driver._sine_warp(((0.0, 2.0), (-1.0, 1.0)), 0.05)
    x = np.array([0.0, 2.0, 1.0, 0.5])
    y = np.array([0.3, -0.2, 1.0, 0.0])
    wx, wy, wz = warp(x, y, np.zeros(4))
    np.testing.assert_allclose(wx[:3], x[:3], atol=1e-15)
    np.testing.assert_allclose(wy[:3], y[:3], atol=1e-15)
    assert not math.isclose(wx[3], x[3])


def test_run_applies_the_configured_filter():
    cfg = _config(filter={"kind": "cutoff", "cutoff_order": 1, "every": 1}, timestepping={"timeend": 0.2})
    ds = driver.run(cfg, history_stride=1000)
    assert ds.attrs["filter"] == "cutoff"
    # projecting onto modes below 1 leaves element means only
    final = ds["rho"].isel(time=-1).values
    np.testing.assert_allclose(final, np.broadcast_to(final.mean(axis=0), final.shape), atol=1e-12)
    assert np.ptp(ds["rho"].isel(time=0).values, axis=0).max() > 1e-3


def test_filter_configuration_is_checked_before_the_run():
    with pytest.raises(ConfigurationError):
        driver.run(_config(filter={"kind": "exponential", "variables": ["theta"]}))
    with pytest.raises(ConfigurationError):
        driver.run(_config(filter={"kind": "exponential", "cutoff_order": 3}))
