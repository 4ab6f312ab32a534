"""Single-layer hydrostatic Boussinesq ocean on a 2D horizontal box.

A depth-averaged form of the hydrostatic Boussinesq equations with a rigid
reference depth ``H``:

    d eta/dt   + div(H u)                 = 0
    d u/dt     + grad(g eta) + f z x u    = div(nu grad u) + tau / (rho_0 H)
    d theta/dt + div(u theta)             = div(kappa grad theta) + lambda (theta* - theta)

The pressure is hydrostatic in the free-surface height. Coastlines are walls
with either free-slip (``nu grad u . n = 0``) or no-slip (``u = 0``)
velocity conditions; temperature has no flux through any wall.

This is one layer of the three-dimensional model, so the vertical structure
is gone. It leaves out:

- the vertical coordinate itself, and with it the vertical velocity that
  the continuity equation diagnoses by vertical integration;
- the baroclinic pressure, which is the hydrostatic integral of buoyancy
  ``g alpha_T theta``. Temperature is a passive tracer here, so there is no
  equation of state;
- separate horizontal and vertical viscosity and diffusivity, and the
  convective-adjustment diffusivity for unstable columns;
- bottom drag and the split into barotropic and baroclinic modes;
- surface heat flux. It is replaced by Newtonian relaxation towards
  ``theta*``.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Mapping

import jax.numpy as jnp

from ..balance_law import FIRST_ORDER, GRADIENT, BalanceLaw
from ..config import EARTH, ParameterSet
from ..errors import ConfigurationError
from ..variables import StateKind, VariableLayout, vector

__all__ = ["CoastlineBoundary", "OceanGyre", "HydrostaticBoussinesqModel"]


class CoastlineBoundary(enum.Enum):
    FREE_SLIP = "free_slip"
    NO_SLIP = "no_slip"


def _dot(a, b):
    return jnp.sum(a * b, axis=-1)


@dataclass(frozen=True)
class OceanGyre:
    """Wind-driven gyre in ``[0, Lx] x [0, Ly]``.

    Zonal wind stress ``tau_x = -tau0 cos(pi y / Ly)`` and relaxation of the
    temperature towards ``theta* = theta_max y / Ly`` on the time scale
    ``1 / relaxation``. Starts at rest with ``theta = theta*``.
    """

    Ly: float = 4e6
    tau0: float = 0.1
    theta_max: float = 25.0
    relaxation: float = 1.0 / (30 * 86400.0)

    def wind_stress(self, coord):
        y = coord[..., 1]
        tau = -self.tau0 * jnp.cos(jnp.pi * y / self.Ly)
        return jnp.stack([tau, jnp.zeros_like(tau), jnp.zeros_like(tau)], axis=-1)

    def target_temperature(self, coord):
        return self.theta_max * coord[..., 1] / self.Ly

    def initial_state(self, coord, t):
        theta = self.target_temperature(coord)
        zero = jnp.zeros_like(theta)
        return {"u": jnp.zeros_like(coord), "eta": zero, "theta": theta}


@dataclass(frozen=True, eq=False)
class HydrostaticBoussinesqModel(BalanceLaw):
    """Depth-averaged Boussinesq ocean.

    Parameters
    ----------
    problem : OceanGyre
        Forcing and initial state.
    parameters : ParameterSet
        Supplies ``grav``.
    H : float
        Reference depth.
    rho_0 : float
        Reference density of sea water.
    f0, beta : float
        Beta-plane Coriolis parameter.
    nu, kappa : float
        Horizontal viscosity and temperature diffusivity.
    boundary_conditions : mapping of tag to CoastlineBoundary
        Tags not listed are free-slip.
    """

    problem: OceanGyre = field(default_factory=OceanGyre)
    parameters: ParameterSet = EARTH
    H: float = 1000.0
    rho_0: float = 1000.0
    f0: float = 1e-4
    beta: float = 1e-11
    nu: float = 5e3
    kappa: float = 1e3
    boundary_conditions: Mapping[int, CoastlineBoundary] = field(default_factory=dict)

    def __post_init__(self):
        if self.H <= 0:
            raise ConfigurationError(f"ocean depth must be positive, got {self.H}")
        if self.nu < 0 or self.kappa < 0:
            raise ConfigurationError("viscosity and diffusivity must be non-negative")
        for tag, bc in self.boundary_conditions.items():
            if not isinstance(bc, CoastlineBoundary):
                raise ConfigurationError(f"boundary tag {tag} has unknown condition {bc!r}")

    def vars_state(self, kind):
        if kind == StateKind.PROGNOSTIC:
            return VariableLayout.of(vector("u"), "eta", "theta")
        if kind == StateKind.AUXILIARY:
            return VariableLayout.of(vector("coord"), vector("tau"), "theta_star", "f")
        if kind == StateKind.GRADIENT:
            return VariableLayout.of(vector("u"), "theta")
        if kind == StateKind.GRADIENT_FLUX:
            return VariableLayout.of(("nu_grad_u", 9), vector("kappa_grad_theta"))
        return VariableLayout()

    def _noslip(self, tag) -> bool:
        return self.boundary_conditions.get(tag, CoastlineBoundary.FREE_SLIP) == CoastlineBoundary.NO_SLIP

    def init_state_auxiliary(self, aux, geom):
        coord = geom["coord"]
        return {
            "coord": coord,
            "tau": self.problem.wind_stress(coord),
            "theta_star": self.problem.target_temperature(coord),
            "f": self.f0 + self.beta * coord[..., 1],
        }

    def init_state_prognostic(self, state, aux, coords, t):
        return self.problem.initial_state(coords, t)

    def flux_first_order(self, state, aux, t):
        u, eta, theta = state["u"], state["eta"], state["theta"]
        eye = jnp.eye(3, dtype=eta.dtype).at[2, 2].set(0.0)
        return {
            "eta": self.H * u,
            "u": (self.parameters.grav * eta)[..., None, None] * eye,
            "theta": theta[..., None] * u,
        }

    def source(self, state, aux, t):
        u = state["u"]
        zhat = jnp.broadcast_to(jnp.array([0.0, 0.0, 1.0], dtype=u.dtype), u.shape)
        du = -aux["f"][..., None] * jnp.cross(zhat, u) + aux["tau"] / (self.rho_0 * self.H)
        dtheta = self.problem.relaxation * (aux["theta_star"] - state["theta"])
        return {"u": du, "theta": dtheta}

    def compute_gradient_argument(self, state, aux, t):
        return {"u": state["u"], "theta": state["theta"]}

    def compute_gradient_flux(self, gradient, state, aux, t):
        g = self.nu * gradient["u"]
        return {
            "nu_grad_u": g.reshape(g.shape[:-2] + (9,)),
            "kappa_grad_theta": self.kappa * gradient["theta"],
        }

    def flux_second_order(self, state, gradient_flux, hyperdiffusive, aux, t):
        g = gradient_flux["nu_grad_u"]
        return {"u": -g.reshape(g.shape[:-1] + (3, 3)), "theta": -gradient_flux["kappa_grad_theta"]}

    def wavespeed(self, normal, state, aux, t):
        c = jnp.sqrt(self.parameters.grav * self.H)
        return jnp.abs(_dot(normal, state["u"])) + c

    def boundary_state(self, kind, tag, state, aux, normal, t):
        u = state["u"]
        if self._noslip(tag) and kind in (FIRST_ORDER, GRADIENT):
            u = -u
        elif kind == FIRST_ORDER:
            u = u - 2 * _dot(u, normal)[..., None] * normal
        return {"u": u, "eta": state["eta"], "theta": state["theta"]}

    def boundary_gradient_flux(self, tag, gradient_flux, state, aux, normal, t):
        out = {"kappa_grad_theta": -gradient_flux["kappa_grad_theta"]}
        out["nu_grad_u"] = gradient_flux["nu_grad_u"] if self._noslip(tag) else -gradient_flux["nu_grad_u"]
        return out
