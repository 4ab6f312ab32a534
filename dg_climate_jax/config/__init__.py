"""Run configuration tree and defaults.

Every component of the core receives its settings explicitly: the mesh and
basis take a :class:`MeshConfig` / :class:`DiscretizationConfig`, the physical
models take a :class:`ParameterSet`, the time integrators take a
:class:`TimeSteppingConfig`. The tree is immutable once loaded and the core
keeps no hidden module-level defaults besides :data:`DEFAULT`, which is only
consulted by the driver when the caller does not pass a configuration.
"""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

import jax
import yaml

from ..errors import ConfigurationError

__all__ = [
    "ParameterSet",
    "MeshConfig",
    "DiscretizationConfig",
    "TimeSteppingConfig",
    "LinearSolverConfig",
    "FilterConfig",
    "RunConfig",
    "load_config",
    "config_from_dict",
    "as_dict",
    "DEFAULT",
    "EARTH",
    "NUMERICAL_FLUXES",
    "ODE_METHODS",
    "FILTERS",
]


def _bool_env(name: str, default: bool) -> bool:
    """Read a boolean from the environment if provided."""

    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() not in {"false", "0", ""}


# The metric identity and quadrature checks are machine-precision statements,
# so double precision is on unless explicitly disabled.
jax_enable_x64 = _bool_env("DG_CLIMATE_JAX_ENABLE_X64", True)

if jax_enable_x64:
    jax.config.update("jax_enable_x64", True)


NUMERICAL_FLUXES = (
    "central",
    "rusanov",
    "entropy_conservative",
    "entropy_conservative_penalty",
    "matrix",
    "kennedy_gruber",
)

ODE_METHODS = (
    "lsrk54",
    "lsrk_euler",
    "ssprk33",
    "ssprk34",
    "ark2",
    "ark1",
    "multirate_rk",
    "mrigark_erk22a",
    "mrigark_erk33a",
    "mrigark_irk21a",
)

FILTERS = ("none", "exponential", "cutoff")


@dataclass(frozen=True)
class ParameterSet:
    """Physical constants handed to the balance-law variants."""

    grav: float = 9.81
    R_d: float = 8.3144598 / 0.02897
    cp_d: float = 8.3144598 / 0.02897 / (2.0 / 7.0)
    R_v: float = 8.3144598 / 0.01801528
    cp_v: float = 1859.0
    MSLP: float = 1.01325e5
    Omega: float = 7.2921159e-5
    planet_radius: float = 6.371e6

    @property
    def cv_d(self) -> float:
        return self.cp_d - self.R_d

    @property
    def cv_v(self) -> float:
        return self.cp_v - self.R_v

    @property
    def gamma(self) -> float:
        return self.cp_d / self.cv_d

    @property
    def kappa_d(self) -> float:
        return self.R_d / self.cp_d


@dataclass(frozen=True)
class MeshConfig:
    """Brick mesh: element counts, extents, periodicity and boundary tags."""

    elements: tuple[int, ...] = (5, 5)
    domain: tuple[tuple[float, float], ...] = ((-10.0, 10.0), (-10.0, 10.0))
    periodicity: tuple[bool, ...] = (True, True)
    boundary: tuple[tuple[int, int], ...] | None = None
    ordering: str = "morton"
    warp_amplitude: float = 0.0

    @property
    def dim(self) -> int:
        return len(self.elements)


@dataclass(frozen=True)
class DiscretizationConfig:
    """Polynomial order and numerical flux policy."""

    polynomial_order: int = 4
    numerical_flux: str = "rusanov"


@dataclass(frozen=True)
class LinearSolverConfig:
    """Krylov solver budget for implicit stages."""

    kind: str = "gmres"
    restart: int = 30
    max_restarts: int = 10
    rtol: float = 1e-10
    atol: float = 0.0


@dataclass(frozen=True)
class TimeSteppingConfig:
    """Time integrator selection and step control."""

    method: str = "lsrk54"
    t0: float = 0.0
    timeend: float = 1.0
    dt: float | None = None
    cfl: float = 0.2
    fast_method: str = "lsrk54"
    fast_substeps: int = 4
    check_finite: bool = False


@dataclass(frozen=True)
class FilterConfig:
    """Modal filter applied every ``every`` steps of a run.

    ``cutoff_order`` is the first damped mode of the exponential filter
    (default 0) or the first removed mode of the cutoff filter (default N).
    ``variables`` restricts the filter to some prognostic fields.
    """

    kind: str = "none"
    every: int = 1
    cutoff_order: int | None = None
    order: int = 32
    variables: tuple[str, ...] | None = None


@dataclass(frozen=True)
class RunConfig:
    """Complete configuration tree for one simulation run."""

    parameters: ParameterSet = field(default_factory=ParameterSet)
    mesh: MeshConfig = field(default_factory=MeshConfig)
    discretization: DiscretizationConfig = field(default_factory=DiscretizationConfig)
    timestepping: TimeSteppingConfig = field(default_factory=TimeSteppingConfig)
    linear_solver: LinearSolverConfig = field(default_factory=LinearSolverConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    problem: str = "isentropic_vortex"
    history_stride: int = 10
    info_interval_seconds: float = 60.0

    @property
    def dim(self) -> int:
        return self.mesh.dim


def _resolve_yaml(path: Path | str | None) -> Path:
    if path is None:
        return Path(__file__).with_name("default.yaml")
    return Path(path)


def _load_yaml(path: Path) -> Mapping[str, Any]:
    data = yaml.safe_load(path.read_text())
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{path} does not contain a configuration mapping")
    return data


def _parameters_from_dict(data: Mapping[str, Any]) -> ParameterSet:
    defaults = ParameterSet()
    R_d = float(data.get("R_d", defaults.R_d))
    kappa = data.get("kappa_d")
    if kappa is not None:
        cp_d = R_d / float(kappa)
    else:
        cp_d = float(data.get("cp_d", defaults.cp_d))
    if cp_d <= R_d:
        raise ConfigurationError(f"cp_d={cp_d} must exceed R_d={R_d}")
    return ParameterSet(
        grav=float(data.get("grav", defaults.grav)),
        R_d=R_d,
        cp_d=cp_d,
        R_v=float(data.get("R_v", defaults.R_v)),
        cp_v=float(data.get("cp_v", defaults.cp_v)),
        MSLP=float(data.get("MSLP", defaults.MSLP)),
        Omega=float(data.get("Omega", defaults.Omega)),
        planet_radius=float(data.get("planet_radius", defaults.planet_radius)),
    )


def _mesh_from_dict(data: Mapping[str, Any]) -> MeshConfig:
    elements = tuple(int(n) for n in data.get("elements", (5, 5)))
    dim = len(elements)
    if dim not in (2, 3):
        raise ConfigurationError(f"only 2D and 3D bricks are supported, got {dim} axes")
    if any(n < 1 for n in elements):
        raise ConfigurationError(f"element counts must be positive, got {elements}")
    domain = tuple((float(lo), float(hi)) for lo, hi in data.get("domain", [(-10.0, 10.0)] * dim))
    periodicity = tuple(bool(p) for p in data.get("periodicity", [True] * dim))
    if len(domain) != dim or len(periodicity) != dim:
        raise ConfigurationError("mesh.elements, mesh.domain and mesh.periodicity must have equal length")
    for lo, hi in domain:
        if not hi > lo:
            raise ConfigurationError(f"degenerate domain extent ({lo}, {hi})")
    raw_boundary = data.get("boundary")
    boundary = None
    if raw_boundary is not None:
        boundary = tuple((int(lo), int(hi)) for lo, hi in raw_boundary)
        if len(boundary) != dim:
            raise ConfigurationError("mesh.boundary needs one (low, high) tag pair per axis")
    ordering = str(data.get("ordering", "morton"))
    if ordering not in {"morton", "lexicographic"}:
        raise ConfigurationError(f"unknown element ordering {ordering!r}")
    return MeshConfig(
        elements=elements,
        domain=domain,
        periodicity=periodicity,
        boundary=boundary,
        ordering=ordering,
        warp_amplitude=float(data.get("warp_amplitude", 0.0)),
    )


def _discretization_from_dict(data: Mapping[str, Any]) -> DiscretizationConfig:
    order = int(data.get("polynomial_order", 4))
    if order < 1:
        raise ConfigurationError(f"polynomial_order must be >= 1, got {order}")
    flux = str(data.get("numerical_flux", "rusanov"))
    if flux not in NUMERICAL_FLUXES:
        raise ConfigurationError(f"unknown numerical flux {flux!r}; choose from {NUMERICAL_FLUXES}")
    return DiscretizationConfig(polynomial_order=order, numerical_flux=flux)


def _timestepping_from_dict(data: Mapping[str, Any]) -> TimeSteppingConfig:
    method = str(data.get("method", "lsrk54"))
    if method not in ODE_METHODS:
        raise ConfigurationError(f"unknown ODE method {method!r}; choose from {ODE_METHODS}")
    fast_method = str(data.get("fast_method", "lsrk54"))
    if fast_method not in ODE_METHODS:
        raise ConfigurationError(f"unknown fast ODE method {fast_method!r}")
    dt = data.get("dt")
    t0 = float(data.get("t0", 0.0))
    timeend = float(data.get("timeend", 1.0))
    if timeend < t0:
        raise ConfigurationError(f"timeend={timeend} precedes t0={t0}")
    return TimeSteppingConfig(
        method=method,
        t0=t0,
        timeend=timeend,
        dt=None if dt is None else float(dt),
        cfl=float(data.get("cfl", 0.2)),
        fast_method=fast_method,
        fast_substeps=int(data.get("fast_substeps", 4)),
        check_finite=bool(data.get("check_finite", False)),
    )


def _linear_solver_from_dict(data: Mapping[str, Any]) -> LinearSolverConfig:
    kind = str(data.get("kind", "gmres"))
    if kind not in {"gmres", "gcr"}:
        raise ConfigurationError(f"unknown linear solver {kind!r}")
    return LinearSolverConfig(
        kind=kind,
        restart=int(data.get("restart", 30)),
        max_restarts=int(data.get("max_restarts", 10)),
        rtol=float(data.get("rtol", 1e-10)),
        atol=float(data.get("atol", 0.0)),
    )


def _filter_from_dict(data: Mapping[str, Any]) -> FilterConfig:
    kind = str(data.get("kind", "none"))
    if kind not in FILTERS:
        raise ConfigurationError(f"unknown filter {kind!r}; choose from {FILTERS}")
    every = int(data.get("every", 1))
    if every < 1:
        raise ConfigurationError(f"filter.every must be positive, got {every}")
    cutoff = data.get("cutoff_order")
    variables = data.get("variables")
    return FilterConfig(
        kind=kind,
        every=every,
        cutoff_order=None if cutoff is None else int(cutoff),
        order=int(data.get("order", 32)),
        variables=None if variables is None else tuple(str(v) for v in variables),
    )


def config_from_dict(data: Mapping[str, Any]) -> RunConfig:
    """Build and validate a :class:`RunConfig` from nested mappings."""

    return RunConfig(
        parameters=_parameters_from_dict(data.get("parameters", {})),
        mesh=_mesh_from_dict(data.get("mesh", {})),
        discretization=_discretization_from_dict(data.get("discretization", {})),
        timestepping=_timestepping_from_dict(data.get("timestepping", {})),
        linear_solver=_linear_solver_from_dict(data.get("linear_solver", {})),
        filter=_filter_from_dict(data.get("filter", {})),
        problem=str(data.get("problem", "isentropic_vortex")),
        history_stride=int(data.get("history_stride", 10)),
        info_interval_seconds=float(data.get("info_interval_seconds", 60.0)),
    )


def load_config(path: Path | str | None = None) -> RunConfig:
    return config_from_dict(_load_yaml(_resolve_yaml(path)))


def as_dict(cfg: RunConfig) -> dict[str, Any]:
    """Nested plain-data form of ``cfg`` that :func:`config_from_dict` accepts."""

    data = asdict(cfg)
    for key in ("elements", "domain", "periodicity", "boundary"):
        value = data["mesh"][key]
        if value is not None:
            data["mesh"][key] = [list(v) if isinstance(v, tuple) else v for v in value]
    if data["filter"]["variables"] is not None:
        data["filter"]["variables"] = list(data["filter"]["variables"])
    return data


DEFAULT = load_config()
"""Isentropic-vortex configuration on a periodic 5x5 brick, order 4."""

EARTH = ParameterSet()
"""Earth constants used by the atmosphere and ocean variants."""
