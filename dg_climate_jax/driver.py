"""High-level run driver and convenience utilities."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterable

import numpy as np
import xarray as xr

from . import config, diagnostics
from .callbacks import ApplyFilter, CheckFinite, EveryXSimulationSteps, EveryXWallTimeSeconds, StepLogger
from .dg import DGModel, remainder_dg_model
from .errors import ConfigurationError
from .filters import CutoffFilter, ExponentialFilter
from .grid import SpectralElementGrid
from .models import DryAtmosAcousticLinearModel, DryAtmosModel, IsentropicVortex, RisingBubble
from .numerical_fluxes import numerical_flux_from_name
from .ode_solvers import (
    ARK1ForwardBackwardEuler,
    ARK2GiraldoKellyConstantinescu,
    AbstractODESolver,
    LSRK54CarpenterKennedy,
    LSRKEulerMethod,
    MRIGARKERK22aSandu,
    MRIGARKERK33aSandu,
    MRIGARKIRK21aSandu,
    MultirateRungeKutta,
    SSPRK33ShuOsher,
    SSPRK34SpiteriRuuth,
)
from .process_group import ProcessGroup
from .state import DistributedState
from .system_solvers import GeneralizedConjugateResidual, GeneralizedMinimalResidual, LinearBackwardEulerSolver
from .topology import BrickTopology

__all__ = [
    "Simulation",
    "configure_logging",
    "build_topology",
    "build_grid",
    "build_balance_law",
    "build_dg_model",
    "stable_timestep",
    "build_solver",
    "build_filter",
    "filter_callback",
    "build_simulation",
    "build_isentropic_vortex",
    "exact_error",
    "run",
]

logger = logging.getLogger(__name__)

_EXPLICIT = {
    "lsrk54": LSRK54CarpenterKennedy,
    "lsrk_euler": LSRKEulerMethod,
    "ssprk33": SSPRK33ShuOsher,
    "ssprk34": SSPRK34SpiteriRuuth,
}
_IMEX = {
    "ark2": ARK2GiraldoKellyConstantinescu,
    "ark1": ARK1ForwardBackwardEuler,
}
_MRIGARK_EXPLICIT = {
    "mrigark_erk22a": MRIGARKERK22aSandu,
    "mrigark_erk33a": MRIGARKERK33aSandu,
}
# split operators need a flux every sub-law supports
_SPLIT_FLUXES = ("central", "rusanov")


def configure_logging(level: int | str = logging.INFO) -> None:
    """Route package log records to stderr with a timestamped format."""

    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("dg_climate_jax").setLevel(level)


@dataclass
class Simulation:
    """Everything needed to advance one configured run."""

    config: config.RunConfig
    grid: SpectralElementGrid
    dg: DGModel
    Q: DistributedState
    solver: AbstractODESolver


def _sine_warp(domain, amplitude: float) -> Callable:
    """Smooth interior warp that leaves the brick boundary in place."""

    lo = np.array([d[0] for d in domain] + [0.0] * (3 - len(domain)))
    ext = np.array([d[1] - d[0] for d in domain] + [1.0] * (3 - len(domain)))
    dim = len(domain)

    def warp(x, y, z):
        xs = [x, y, z]
        s = [np.sin(np.pi * (xs[d] - lo[d]) / ext[d]) for d in range(dim)]
        bump = np.prod(s, axis=0)
        out = [xs[d] + amplitude * ext[d] * bump for d in range(dim)]
        return tuple(out + xs[dim:])

    return warp


def build_topology(mesh: config.MeshConfig, process_group: ProcessGroup | None = None) -> BrickTopology:
    brickrange = [np.linspace(lo, hi, n + 1) for (lo, hi), n in zip(mesh.domain, mesh.elements)]
    return BrickTopology(
        process_group,
        brickrange,
        periodicity=mesh.periodicity,
        boundary=mesh.boundary,
        ordering=mesh.ordering,
    )


def build_grid(cfg: config.RunConfig, process_group: ProcessGroup | None = None) -> SpectralElementGrid:
    topology = build_topology(cfg.mesh, process_group)
    meshwarp = None
    if cfg.mesh.warp_amplitude:
        meshwarp = _sine_warp(cfg.mesh.domain, cfg.mesh.warp_amplitude)
    return SpectralElementGrid(topology, cfg.discretization.polynomial_order, meshwarp=meshwarp)


def build_balance_law(cfg: config.RunConfig) -> DryAtmosModel:
    """Dry atmosphere set up for ``cfg.problem``."""

    dim = cfg.mesh.dim
    if cfg.problem == "isentropic_vortex":
        halflength = 0.5 * (cfg.mesh.domain[0][1] - cfg.mesh.domain[0][0])
        center = tuple(0.5 * (lo + hi) for lo, hi in cfg.mesh.domain[:2])
        problem = IsentropicVortex(halflength=halflength, center=center)
        return DryAtmosModel(dim=dim, problem=problem, parameters=cfg.parameters, sources=())
    if cfg.problem == "rising_bubble":
        return DryAtmosModel(dim=dim, problem=RisingBubble(), parameters=cfg.parameters, sources=("gravity",))
    raise ConfigurationError(f"unknown problem {cfg.problem!r}; choose 'isentropic_vortex' or 'rising_bubble'")


def build_dg_model(cfg: config.RunConfig, law, grid: SpectralElementGrid) -> DGModel:
    return DGModel(law, grid, numerical_flux_from_name(cfg.discretization.numerical_flux))


def stable_timestep(cfg: config.RunConfig, dg: DGModel, Q: DistributedState) -> float:
    """Configured ``dt``, or a CFL-limited one that divides the run evenly."""

    ts = cfg.timestepping
    span = ts.timeend - ts.t0
    if ts.dt is not None:
        return ts.dt
    # courant(Q, 1) is max wavespeed over the minimum node distance
    dt = ts.cfl / dg.courant(Q, 1.0, ts.t0)
    if span <= 0:
        return dt
    nsteps = math.ceil(span / dt)
    return span / nsteps


def _linear_solver(cfg: config.LinearSolverConfig):
    cls = GeneralizedMinimalResidual if cfg.kind == "gmres" else GeneralizedConjugateResidual
    return cls(restart=cfg.restart, max_restarts=cfg.max_restarts, rtol=cfg.rtol, atol=cfg.atol)


def _fast_solver(method: str, rhs, Q, dt, t0):
    if method not in _EXPLICIT:
        raise ConfigurationError(f"fast method must be one of {sorted(_EXPLICIT)}, got {method!r}")
    return _EXPLICIT[method](rhs, Q, dt=dt, t0=t0)


def build_solver(cfg: config.RunConfig, dg: DGModel, Q: DistributedState, dt: float) -> AbstractODESolver:
    """Time integrator named by ``cfg.timestepping.method``.

    IMEX and multirate methods split off the acoustic linearization of the
    dry atmosphere: it is treated implicitly by the ARK schemes and as the
    fast component of the multirate schemes.
    """

    ts = cfg.timestepping
    method = ts.method
    if method in _EXPLICIT:
        return _EXPLICIT[method](dg, Q, dt=dt, t0=ts.t0, check_finite=ts.check_finite)

    if not isinstance(dg.balance_law, DryAtmosModel):
        raise ConfigurationError(f"{method} needs a DryAtmosModel to linearize")
    if cfg.discretization.numerical_flux not in _SPLIT_FLUXES:
        raise ConfigurationError(
            f"{method} splits the operator and needs one of {_SPLIT_FLUXES}, "
            f"got {cfg.discretization.numerical_flux!r}"
        )
    linear = DGModel(
        DryAtmosAcousticLinearModel(dg.balance_law),
        dg.grid,
        dg.numerical_flux_first_order,
        state_auxiliary=dg.state_auxiliary,
    )
    fast_dt = dt / ts.fast_substeps

    if method in _IMEX:
        # the final step may be shortened, which changes the backward Euler factor
        be = LinearBackwardEulerSolver(_linear_solver(cfg.linear_solver), isadjustable=True)
        return _IMEX[method](
            dg,
            linear,
            be,
            Q,
            dt=dt,
            t0=ts.t0,
            split_explicit_implicit=False,
            check_finite=ts.check_finite,
        )

    remainder = remainder_dg_model(dg, [linear.balance_law])
    if method == "multirate_rk":
        slow = LSRK54CarpenterKennedy(remainder, Q, dt=dt, t0=ts.t0)
        fast = _fast_solver(ts.fast_method, linear, Q, fast_dt, ts.t0)
        return MultirateRungeKutta(slow, fast, Q, dt=dt, t0=ts.t0, check_finite=ts.check_finite)
    if method in _MRIGARK_EXPLICIT:
        fast = _fast_solver(ts.fast_method, linear, Q, fast_dt, ts.t0)
        return _MRIGARK_EXPLICIT[method](remainder, fast, Q, dt=dt, t0=ts.t0, check_finite=ts.check_finite)
    if method == "mrigark_irk21a":
        # implicit slow acoustics, explicit fast remainder
        be = LinearBackwardEulerSolver(_linear_solver(cfg.linear_solver), isadjustable=True)
        fast = _fast_solver(ts.fast_method, remainder, Q, fast_dt, ts.t0)
        return MRIGARKIRK21aSandu(linear, be, fast, Q, dt=dt, t0=ts.t0, check_finite=ts.check_finite)
    raise ConfigurationError(f"unknown ODE method {method!r}")


def build_filter(cfg: config.RunConfig, grid: SpectralElementGrid):
    """Modal filter named by ``cfg.filter``, or ``None`` when filtering is off."""

    fc = cfg.filter
    if fc.kind == "exponential":
        Nc = 0 if fc.cutoff_order is None else fc.cutoff_order
        return ExponentialFilter(grid, Nc=Nc, s=fc.order)
    if fc.kind == "cutoff":
        return CutoffFilter(grid, Nc=fc.cutoff_order)
    return None


def filter_callback(cfg: config.RunConfig, grid: SpectralElementGrid, layout) -> Callable | None:
    """Callback applying the configured filter every ``cfg.filter.every`` steps."""

    filt = build_filter(cfg, grid)
    if filt is None:
        return None
    variables = cfg.filter.variables
    if variables is not None:
        missing = [v for v in variables if v not in layout]
        if missing:
            raise ConfigurationError(f"cannot filter unknown variables {missing}")
    filt.matrix  # raises on an invalid cutoff or order
    return EveryXSimulationSteps(ApplyFilter(filt, variables), cfg.filter.every)


def build_simulation(cfg: config.RunConfig | None = None, process_group: ProcessGroup | None = None) -> Simulation:
    if cfg is None:
        cfg = config.DEFAULT
    grid = build_grid(cfg, process_group)
    law = build_balance_law(cfg)
    dg = build_dg_model(cfg, law, grid)
    Q = dg.init_ode_state(cfg.timestepping.t0)
    dt = stable_timestep(cfg, dg, Q)
    solver = build_solver(cfg, dg, Q, dt)
    logger.info(
        "%s: %s elements, N=%d, %s flux, %s with dt=%.6g",
        cfg.problem,
        "x".join(str(n) for n in cfg.mesh.elements),
        cfg.discretization.polynomial_order,
        cfg.discretization.numerical_flux,
        cfg.timestepping.method,
        dt,
    )
    return Simulation(config=cfg, grid=grid, dg=dg, Q=Q, solver=solver)


def build_isentropic_vortex(
    elements: tuple[int, int] = (5, 5),
    polynomial_order: int = 4,
    method: str = "lsrk54",
    timeend: float = 1.0,
    numerical_flux: str = "rusanov",
    process_group: ProcessGroup | None = None,
    **timestepping,
) -> Simulation:
    """Isentropic vortex on the default periodic square with a few overrides.

    Extra keyword arguments replace fields of the timestepping config (for
    example ``dt``, ``cfl`` or ``fast_method``).
    """

    data = config.as_dict(config.DEFAULT)
    data["problem"] = "isentropic_vortex"
    data["mesh"]["elements"] = list(elements)
    data["discretization"].update(polynomial_order=polynomial_order, numerical_flux=numerical_flux)
    data["timestepping"].update(method=method, timeend=timeend, **timestepping)
    return build_simulation(config.config_from_dict(data), process_group)


def exact_error(sim: Simulation) -> float | None:
    """L2 distance to the exact solution, where the problem has one."""

    if not isinstance(sim.dg.balance_law.problem, IsentropicVortex):
        return None
    Qe = sim.dg.init_ode_state(sim.solver.t)
    return sim.Q.euclidean_distance(Qe)


def run(
    cfg: config.RunConfig | None = None,
    process_group: ProcessGroup | None = None,
    history_stride: int | None = None,
    callbacks: Iterable[Callable] = (),
) -> xr.Dataset:
    """Build and integrate ``cfg``; return snapshots stacked along ``time``.

    A snapshot is taken at the start, every ``history_stride`` steps and at
    the end. For the isentropic vortex the final L2 error is stored in the
    ``l2_error`` attribute.
    """

    sim = build_simulation(cfg, process_group)
    cfg = sim.config
    stride = cfg.history_stride if history_stride is None else history_stride

    states = [sim.Q.copy()]
    times = [sim.solver.t]

    def record(solver, Q):
        states.append(Q.copy())
        times.append(solver.t)

    cbs = []
    filtering = filter_callback(cfg, sim.grid, sim.Q.layout)
    if filtering is not None:
        cbs.append(filtering)
    cbs.append(EveryXSimulationSteps(record, max(1, stride)))
    cbs.append(EveryXWallTimeSeconds(StepLogger(), cfg.info_interval_seconds))
    if cfg.timestepping.check_finite:
        cbs.append(CheckFinite())
    cbs.extend(callbacks)

    sim.solver.solve(sim.Q, cfg.timestepping.timeend, callbacks=cbs)
    if times[-1] != sim.solver.t:
        states.append(sim.Q.copy())
        times.append(sim.solver.t)

    ds = diagnostics.history_dataset(states, times, sim.grid)
    ds.attrs.update(
        problem=cfg.problem,
        method=cfg.timestepping.method,
        numerical_flux=cfg.discretization.numerical_flux,
        filter=cfg.filter.kind,
        polynomial_order=cfg.discretization.polynomial_order,
        dt=sim.solver.dt,
        steps=sim.solver.steps,
    )
    err = exact_error(sim)
    if err is not None:
        ds.attrs["l2_error"] = err
        logger.info("final L2 error %.6e", err)
    return ds
