import numpy as np
import pytest

from dg_climate_jax.errors import NonConvergenceError
from dg_climate_jax.ode_solvers import ARK2GiraldoKellyConstantinescu, LSRK54CarpenterKennedy, MRIGARKIRK21aSandu
from dg_climate_jax.state import DistributedState
from dg_climate_jax.system_solvers import (
    GeneralizedConjugateResidual,
    GeneralizedMinimalResidual,
    LinearBackwardEulerSolver,
)

from .conftest import linear_rhs, matrix_rhs


def _system(n=8, seed=0):
    rng = np.random.default_rng(seed)
    A = np.eye(n) * 4 + rng.normal(scale=0.5, size=(n, n))
    b = rng.normal(size=n)
    return A, b


def _operator(A):
    def apply(out, x):
        out.data = (A @ x.data[0, :, 0]).reshape(x.data.shape)

    return apply


@pytest.mark.parametrize("solver_cls", [GeneralizedMinimalResidual, GeneralizedConjugateResidual])
def test_krylov_solvers_match_direct_solve(solver_cls):
    A, b = _system()
    x = DistributedState.from_array(np.zeros_like(b))
    rhs = DistributedState.from_array(b)
    its = solver_cls(restart=8, max_restarts=5, rtol=1e-12).solve(_operator(A), x, rhs)
    assert 0 < its <= 40
    np.testing.assert_allclose(np.asarray(x.data[0, :, 0]), np.linalg.solve(A, b), rtol=1e-9, atol=1e-10)


def test_gmres_restarts_converge():
    A, b = _system(n=12, seed=3)
    x = DistributedState.from_array(np.zeros_like(b))
    GeneralizedMinimalResidual(restart=3, max_restarts=50, rtol=1e-10).solve(_operator(A), x, DistributedState.from_array(b))
    np.testing.assert_allclose(np.asarray(x.data[0, :, 0]), np.linalg.solve(A, b), rtol=1e-7, atol=1e-8)


def test_zero_right_hand_side_returns_immediately():
    A, _ = _system()
    x = DistributedState.from_array(np.ones(8))
    its = GeneralizedMinimalResidual().solve(_operator(A), x, DistributedState.from_array(np.zeros(8)))
    assert its == 0
    assert float(np.max(np.abs(np.asarray(x.data)))) == 0.0


@pytest.mark.parametrize("solver_cls", [GeneralizedMinimalResidual, GeneralizedConjugateResidual])
def test_exhausted_budget_raises(solver_cls):
    A, b = _system(n=10, seed=1)
    x = DistributedState.from_array(np.zeros_like(b))
    with pytest.raises(NonConvergenceError) as info:
        solver_cls(restart=1, max_restarts=1, rtol=1e-14).solve(_operator(A), x, DistributedState.from_array(b))
    assert info.value.iterations >= 1
    assert info.value.residual > 0


def test_invalid_budget():
    with pytest.raises(ValueError):
        GeneralizedMinimalResidual(restart=0)


def test_backward_euler_solves_scalar_problem():
    lam, alpha = -3.0, 0.2
    be = LinearBackwardEulerSolver(GeneralizedMinimalResidual(rtol=1e-13))
    Q = DistributedState.from_array([0.0, 0.0])
    Qhat = DistributedState.from_array([1.0, 2.0])
    be(Q, Qhat, alpha, linear_rhs(lam), 0.0)
    np.testing.assert_allclose(np.asarray(Q.data[0, :, 0]), np.array([1.0, 2.0]) / (1 - alpha * lam), rtol=1e-12)
    assert be.iterations >= 1


def test_fixed_backward_euler_rejects_new_factor():
    be = LinearBackwardEulerSolver(GeneralizedMinimalResidual(), isadjustable=False)
    Q = DistributedState.from_array([0.0])
    Qhat = DistributedState.from_array([1.0])
    be(Q, Qhat, 0.1, linear_rhs(-1.0), 0.0)
    with pytest.raises(ValueError):
        be(Q, Qhat, 0.2, linear_rhs(-1.0), 0.0)
    adjustable = LinearBackwardEulerSolver(GeneralizedMinimalResidual(), isadjustable=True)
    adjustable(Q, Qhat, 0.1, linear_rhs(-1.0), 0.0)
    adjustable(Q, Qhat, 0.2, linear_rhs(-1.0), 0.0)
    np.testing.assert_allclose(np.asarray(Q.data).ravel(), [1 / 1.2], rtol=1e-10)


def _starved_backward_euler():
    return LinearBackwardEulerSolver(GeneralizedMinimalResidual(restart=1, max_restarts=1, rtol=1e-14), isadjustable=True)


def test_non_convergence_reaches_the_caller_of_ark_solve():
    A, b = _system(n=10, seed=2)
    Q = DistributedState.from_array(b)
    solver = ARK2GiraldoKellyConstantinescu(
        matrix_rhs(np.zeros_like(A)), matrix_rhs(-A), _starved_backward_euler(), Q, dt=0.5
    )
    with pytest.raises(NonConvergenceError) as info:
        solver.solve(Q, 2.0)
    assert info.value.iterations == 1
    assert solver.steps == 0
    assert solver.t == 0.0


def test_non_convergence_reaches_the_caller_of_mrigark_step():
    A, b = _system(n=10, seed=4)
    Q = DistributedState.from_array(b)
    fast = LSRK54CarpenterKennedy(matrix_rhs(np.zeros_like(A)), Q, dt=0.1)
    solver = MRIGARKIRK21aSandu(matrix_rhs(-A), _starved_backward_euler(), fast, Q, dt=0.5)
    with pytest.raises(NonConvergenceError):
        solver.step(Q)
    assert solver.steps == 0
