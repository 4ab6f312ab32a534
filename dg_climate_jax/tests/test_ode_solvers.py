import math

import numpy as np
import pytest
from scipy.linalg import expm

from dg_climate_jax.errors import ConfigurationError
from dg_climate_jax.ode_solvers import (
    ARK1ForwardBackwardEuler,
    ARK2GiraldoKellyConstantinescu,
    LSRK54CarpenterKennedy,
    LSRKEulerMethod,
    LowStorageRungeKutta2N,
    MRIGARK,
    MRIGARKERK22aSandu,
    MRIGARKERK33aSandu,
    MRIGARKIRK21aSandu,
    MultirateRungeKutta,
    SSPRK33ShuOsher,
    SSPRK34SpiteriRuuth,
    SolverStatus,
)
from dg_climate_jax.state import DistributedState
from dg_climate_jax.system_solvers import GeneralizedMinimalResidual, LinearBackwardEulerSolver

from .conftest import linear_rhs, low_storage_stability_polynomial, matrix_rhs, shu_osher_stability_polynomial

# damped rotation split into a slow non-normal part and a fast oscillation
A_SLOW = np.array([[-0.5, 0.3], [0.0, -0.2]])
A_FAST = np.array([[0.0, 4.0], [-4.0, 0.0]])
Y0 = np.array([1.0, 0.5])
T = 1.0


def _exact(A, t=T):
    return expm(A * t) @ Y0


def _error(Q, A):
    return float(np.linalg.norm(np.asarray(Q.data[0, :, 0]) - _exact(A)))


def _rate(errors):
    return np.log2(errors[-2] / errors[-1])


def _be():
    return LinearBackwardEulerSolver(GeneralizedMinimalResidual(rtol=1e-13), isadjustable=True)


@pytest.mark.parametrize(
    "cls, order",
    [
        (LSRK54CarpenterKennedy, 4),
        (LSRKEulerMethod, 1),
        (SSPRK33ShuOsher, 3),
        (SSPRK34SpiteriRuuth, 3),
    ],
)
def test_explicit_methods_converge_at_design_order(cls, order):
    A = A_SLOW + A_FAST
    errors = []
    for n in (20, 40, 80):
        Q = DistributedState.from_array(Y0)
        solver = cls(matrix_rhs(A), Q, dt=T / n)
        solver.solve(Q, T)
        assert solver.status == SolverStatus.FINISHED
        assert solver.t == T
        errors.append(_error(Q, A))
    assert _rate(errors) > order - 0.25


@pytest.mark.parametrize("cls, order", [(ARK2GiraldoKellyConstantinescu, 2), (ARK1ForwardBackwardEuler, 1)])
@pytest.mark.parametrize("split", [True, False])
def test_imex_methods_converge(cls, order, split):
    A = A_SLOW + A_FAST
    explicit = A_SLOW if split else A
    errors = []
    for n in (20, 40, 80):
        Q = DistributedState.from_array(Y0)
        solver = cls(matrix_rhs(explicit), matrix_rhs(A_FAST), _be(), Q, dt=T / n, split_explicit_implicit=split)
        solver.solve(Q, T)
        errors.append(_error(Q, A))
    assert _rate(errors) > order - 0.25


def test_imex_is_stable_beyond_explicit_limit():
    stiff = np.array([[-400.0, 0.0], [0.0, -0.1]])
    Q = DistributedState.from_array(Y0)
    solver = ARK2GiraldoKellyConstantinescu(matrix_rhs(np.zeros((2, 2))), matrix_rhs(stiff), _be(), Q, dt=0.1)
    solver.solve(Q, T)
    y = np.asarray(Q.data[0, :, 0])
    assert abs(y[0]) < 1e-3
    assert np.isclose(y[1], 0.5 * np.exp(-0.1), rtol=1e-3)


def test_multirate_without_fast_dynamics_is_single_rate():
    dt = 0.1
    Q1 = DistributedState.from_array(Y0)
    LSRK54CarpenterKennedy(matrix_rhs(A_SLOW), Q1, dt=dt).solve(Q1, T)

    Q2 = DistributedState.from_array(Y0)
    slow = LSRK54CarpenterKennedy(matrix_rhs(A_SLOW), Q2, dt=dt)
    fast = LSRK54CarpenterKennedy(matrix_rhs(np.zeros((2, 2))), Q2, dt=dt / 3)
    MultirateRungeKutta(slow, fast, Q2).solve(Q2, T)
    np.testing.assert_allclose(np.asarray(Q2.data), np.asarray(Q1.data), rtol=1e-12, atol=1e-14)


def test_multirate_converges():
    slow_A = np.array([[-0.5, 0.0], [0.0, -0.5]])
    A = slow_A + A_FAST
    errors = []
    for n in (10, 20, 40):
        dt = T / n
        Q = DistributedState.from_array(Y0)
        slow = LSRK54CarpenterKennedy(matrix_rhs(slow_A), Q, dt=dt)
        fast = LSRK54CarpenterKennedy(matrix_rhs(A_FAST), Q, dt=dt / 10)
        MultirateRungeKutta(slow, fast, Q).solve(Q, T)
        errors.append(_error(Q, A))
    assert errors[-1] < 1e-4
    assert _rate(errors) > 1.7


def test_multirate_needs_low_storage_slow_method():
    Q = DistributedState.from_array(Y0)
    slow = SSPRK33ShuOsher(matrix_rhs(A_SLOW), Q, dt=0.1)
    fast = LSRK54CarpenterKennedy(matrix_rhs(A_FAST), Q, dt=0.01)
    with pytest.raises(ConfigurationError):
        MultirateRungeKutta(slow, fast, Q)


@pytest.mark.parametrize("cls, order", [(MRIGARKERK22aSandu, 2), (MRIGARKERK33aSandu, 3)])
def test_explicit_mrigark_converges(cls, order):
    A = A_SLOW + A_FAST
    errors = []
    for n in (10, 20, 40):
        dt = T / n
        Q = DistributedState.from_array(Y0)
        fast = LSRK54CarpenterKennedy(matrix_rhs(A_FAST), Q, dt=dt / 20)
        cls(matrix_rhs(A_SLOW), fast, Q, dt=dt).solve(Q, T)
        errors.append(_error(Q, A))
    assert _rate(errors) > order - 0.25


def test_implicit_mrigark_converges():
    A = A_SLOW + A_FAST
    errors = []
    for n in (10, 20, 40):
        dt = T / n
        Q = DistributedState.from_array(Y0)
        fast = LSRK54CarpenterKennedy(matrix_rhs(A_FAST), Q, dt=dt / 20)
        MRIGARKIRK21aSandu(matrix_rhs(A_SLOW), _be(), fast, Q, dt=dt).solve(Q, T)
        errors.append(_error(Q, A))
    assert _rate(errors) > 1.75


def test_mrigark_table_validation():
    Q = DistributedState.from_array(Y0)
    fast = LSRK54CarpenterKennedy(matrix_rhs(A_FAST), Q, dt=0.01)
    with pytest.raises(ValueError):
        MRIGARK(matrix_rhs(A_SLOW), fast, [np.zeros((2, 2))], (0.0, 0.5, 1.0), Q, dt=0.1)
    with pytest.raises(ConfigurationError):
        MRIGARK(matrix_rhs(A_SLOW), fast, [((1.0, 1.0),)], (0.0, 0.5), Q, dt=0.1)
    with pytest.raises(ConfigurationError):
        MRIGARKIRK21aSandu(matrix_rhs(A_SLOW), None, fast, Q, dt=0.1)


def test_solve_requires_a_step_size_and_one_stopping_rule():
    Q = DistributedState.from_array(Y0)
    with pytest.raises(ConfigurationError):
        LSRK54CarpenterKennedy(matrix_rhs(A_SLOW), Q).solve(Q, T)
    solver = LSRK54CarpenterKennedy(matrix_rhs(A_SLOW), Q, dt=0.1)
    with pytest.raises(ConfigurationError):
        solver.solve(Q, T, numberofsteps=3)
    with pytest.raises(ConfigurationError):
        solver.solve(Q)


def test_numberofsteps_and_updatedt():
    Q = DistributedState.from_array(Y0)
    solver = LSRK54CarpenterKennedy(matrix_rhs(A_SLOW), Q, dt=0.1)
    solver.solve(Q, numberofsteps=3)
    assert solver.steps == 3
    assert np.isclose(solver.t, 0.3)
    solver.updatedt(0.05)
    solver.step(Q)
    assert np.isclose(solver.t, 0.35)
    solver.updatetime(0.0)
    assert solver.t == 0.0


def test_final_step_is_shortened():
    A = A_SLOW
    Q = DistributedState.from_array(Y0)
    solver = LSRK54CarpenterKennedy(matrix_rhs(A), Q, dt=0.3)
    assert solver.solve(Q, T) == T
    assert solver.steps == 4
    assert _error(Q, A) < 1e-5


@pytest.mark.parametrize(
    "cls, order",
    [
        (LSRK54CarpenterKennedy, 4),
        (LSRKEulerMethod, 1),
        (SSPRK33ShuOsher, 3),
        (SSPRK34SpiteriRuuth, 3),
    ],
)
def test_decay_follows_the_stability_polynomial(cls, order):
    h, n = 0.1, 10
    Q = DistributedState.from_array([1.0])
    solver = cls(linear_rhs(-1.0), Q, dt=h)
    if isinstance(solver, LowStorageRungeKutta2N):
        R = low_storage_stability_polynomial(solver.RKA, solver.RKB)
    else:
        R = shu_osher_stability_polynomial(solver.RKA, solver.RKB)
    # R(z) agrees with exp(z) through z**order
    taylor = [1.0 / math.factorial(k) for k in range(order + 1)]
    np.testing.assert_allclose(R.coef[: order + 1], taylor, rtol=1e-10)

    for _ in range(n):
        solver.step(Q)
    np.testing.assert_allclose(float(Q.data[0, 0, 0]), R(-h) ** n, rtol=1e-13)
