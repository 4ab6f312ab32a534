import numpy as np
import pytest

from dg_climate_jax.errors import ConfigurationError

from .conftest import make_grid


def _warp2d(x, y, z):
    bump = np.sin(np.pi * x) * np.sin(np.pi * y)
    return x + 0.08 * bump, y - 0.05 * bump, z


def _warp3d(x, y, z):
    bump = np.sin(np.pi * x) * np.sin(np.pi * y) * np.sin(np.pi * z)
    return x + 0.06 * bump, y + 0.04 * bump, z - 0.05 * bump


def test_metric_identity_on_warped_2d_mesh():
    grid = make_grid(elements=(3, 2), N=4, periodicity=(False, False), meshwarp=_warp2d)
    assert grid.metric_identity_residual() < 1e-12


def test_metric_identity_on_warped_3d_mesh():
    grid = make_grid(
        elements=(2, 2, 2),
        N=3,
        domain=((0.0, 1.0),) * 3,
        periodicity=(False, False, False),
        meshwarp=_warp3d,
    )
    assert grid.metric_identity_residual() < 1e-12
    assert np.all(np.asarray(grid.J) > 0)


def test_affine_geometry():
    grid = make_grid(elements=(3, 3), N=2, periodicity=(False, False))
    normal = np.asarray(grid.normal)
    np.testing.assert_allclose(normal[:, 0], np.broadcast_to([-1.0, 0.0, 0.0], normal[:, 0].shape), atol=1e-14)
    np.testing.assert_allclose(normal[:, 3], np.broadcast_to([0.0, 1.0, 0.0], normal[:, 3].shape), atol=1e-14)
    np.testing.assert_allclose(np.asarray(grid.sJ), 1.0 / 6.0, rtol=1e-13)
    np.testing.assert_allclose(np.asarray(grid.J), 1.0 / 36.0, rtol=1e-13)


def test_volume_and_node_distance():
    grid = make_grid(elements=(4, 2), N=3, domain=((0.0, 2.0), (0.0, 1.0)))
    assert np.isclose(grid.volume(), 2.0, rtol=1e-13)
    single = make_grid(elements=(1, 1), N=1, periodicity=(False, False))
    assert np.isclose(single.min_node_distance(), 1.0)


def test_coordinates_of_2d_grid_have_zero_z():
    grid = make_grid(meshwarp=_warp2d)
    assert np.all(np.asarray(grid.coords)[..., 2] == 0.0)
    assert grid.coords.shape == (grid.Np, grid.nelem, 3)


def test_inverted_elements_raise():
    with pytest.raises(ConfigurationError):
        make_grid(meshwarp=lambda x, y, z: (-x, y, z))
