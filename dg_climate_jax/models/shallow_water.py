"""Rotating shallow-water equations on a 2D box.

Prognostic variables are the layer thickness ``h`` and the transport ``hu``;
the bathymetry ``b`` and its gradient live in the auxiliary state. Coriolis
uses a beta plane ``f = f0 + beta y``; linear drag and a constant eddy
viscosity acting on ``u`` are optional.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import jax.numpy as jnp

from ..balance_law import FIRST_ORDER, GRADIENT, BalanceLaw
from ..config import EARTH, ParameterSet
from ..variables import StateKind, VariableLayout, vector

__all__ = ["ShallowWaterModel"]


def _dot(a, b):
    return jnp.sum(a * b, axis=-1)


@dataclass(frozen=True, eq=False)
class ShallowWaterModel(BalanceLaw):
    """Shallow water over bathymetry ``b(x, y)``.

    Parameters
    ----------
    parameters : ParameterSet
        Supplies ``grav``.
    f0, beta : float
        Beta-plane Coriolis parameter.
    drag : float
        Linear bottom drag rate.
    viscosity : float
        Eddy viscosity; zero disables the gradient pass.
    bathymetry : callable, optional
        ``bathymetry(coord)``; flat bottom by default.
    initial_condition : callable, optional
        ``initial_condition(coord, t) -> (h, u)``.
    noslip_tags : tuple of int
        Wall tags with no-slip; other walls are free-slip.
    """

    parameters: ParameterSet = EARTH
    f0: float = 0.0
    beta: float = 0.0
    drag: float = 0.0
    viscosity: float = 0.0
    bathymetry: Callable | None = None
    initial_condition: Callable | None = None
    noslip_tags: tuple[int, ...] = ()

    def vars_state(self, kind):
        if kind == StateKind.PROGNOSTIC:
            return VariableLayout.of("h", vector("hu"))
        if kind == StateKind.AUXILIARY:
            return VariableLayout.of(vector("coord"), "b", vector("grad_b"))
        if self.viscosity > 0 and kind == StateKind.GRADIENT:
            return VariableLayout.of(vector("u"))
        if self.viscosity > 0 and kind == StateKind.GRADIENT_FLUX:
            return VariableLayout.of(("nu_h_grad_u", 9))
        return VariableLayout()

    def init_state_auxiliary(self, aux, geom):
        coord = geom["coord"]
        if self.bathymetry is None:
            b = jnp.zeros(coord.shape[:-1], dtype=coord.dtype)
        else:
            b = self.bathymetry(coord)
        # grad_b is filled by DGModel.grad_auxiliary_state("b", "grad_b")
        return {"coord": coord, "b": b, "grad_b": jnp.zeros_like(coord)}

    def init_state_prognostic(self, state, aux, coords, t):
        if self.initial_condition is None:
            return super().init_state_prognostic(state, aux, coords, t)
        h, u = self.initial_condition(coords, t)
        return {"h": h, "hu": h[..., None] * u}

    def flux_first_order(self, state, aux, t):
        h, hu = state["h"], state["hu"]
        u = hu / h[..., None]
        eye = jnp.eye(3, dtype=h.dtype).at[2, 2].set(0.0)
        p = 0.5 * self.parameters.grav * h * h
        return {"h": hu, "hu": hu[..., :, None] * u[..., None, :] + p[..., None, None] * eye}

    def source(self, state, aux, t):
        h, hu = state["h"], state["hu"]
        f = self.f0 + self.beta * aux["coord"][..., 1]
        zhat = jnp.broadcast_to(jnp.array([0.0, 0.0, 1.0], dtype=hu.dtype), hu.shape)
        s = -self.parameters.grav * h[..., None] * aux["grad_b"]
        s = s - f[..., None] * jnp.cross(zhat, hu) - self.drag * hu
        return {"hu": s}

    def compute_gradient_argument(self, state, aux, t):
        return {"u": state["hu"] / state["h"][..., None]}

    def compute_gradient_flux(self, gradient, state, aux, t):
        g = self.viscosity * state["h"][..., None, None] * gradient["u"]
        return {"nu_h_grad_u": g.reshape(g.shape[:-2] + (9,))}

    def flux_second_order(self, state, gradient_flux, hyperdiffusive, aux, t):
        if self.viscosity == 0:
            return {}
        g = gradient_flux["nu_h_grad_u"]
        return {"hu": -g.reshape(g.shape[:-1] + (3, 3))}

    def wavespeed(self, normal, state, aux, t):
        h = state["h"]
        u = state["hu"] / h[..., None]
        return jnp.abs(_dot(normal, u)) + jnp.sqrt(self.parameters.grav * h)

    def boundary_state(self, kind, tag, state, aux, normal, t):
        hu = state["hu"]
        if tag in self.noslip_tags and kind in (FIRST_ORDER, GRADIENT):
            return {"h": state["h"], "hu": -hu}
        return {"h": state["h"], "hu": hu - 2 * _dot(hu, normal)[..., None] * normal}

    def boundary_gradient_flux(self, tag, gradient_flux, state, aux, normal, t):
        if tag in self.noslip_tags:
            return dict(gradient_flux)
        return {k: -v for k, v in gradient_flux.items()}
