"""Linear advection-diffusion of a passive scalar.

``drho/dt + div(u rho - D grad rho) = 0`` with a prescribed velocity field.
Used to exercise the first-order, gradient and second-order passes of the DG
operator against closed-form solutions.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import jax.numpy as jnp

from ..balance_law import FIRST_ORDER, GRADIENT, BalanceLaw
from ..variables import StateKind, VariableLayout, vector

__all__ = ["AdvectionDiffusion"]


@dataclass(frozen=True, eq=False)
class AdvectionDiffusion(BalanceLaw):
    """Scalar ``rho`` advected by ``velocity`` and diffused with ``diffusivity``.

    Parameters
    ----------
    velocity : tuple or callable
        Constant advection velocity, or ``velocity(coord)`` returning an array
        with a trailing axis of 3.
    diffusivity : float
        Constant diffusion coefficient; zero disables the gradient pass.
    initial_condition : callable
        ``initial_condition(coord, t)`` giving ``rho`` (also used as the
        Dirichlet value when ``boundary_value`` is not given).
    boundary_value : callable, optional
        Dirichlet data ``boundary_value(coord, t)``.
    neumann_tags : tuple of int
        Boundary tags with zero normal diffusive flux; every other tag is
        Dirichlet.
    """

    velocity: tuple | Callable = (1.0, 0.0, 0.0)
    diffusivity: float = 0.0
    initial_condition: Callable | None = None
    boundary_value: Callable | None = None
    neumann_tags: tuple[int, ...] = ()

    def vars_state(self, kind):
        if kind == StateKind.PROGNOSTIC:
            return VariableLayout.of("rho")
        if kind == StateKind.AUXILIARY:
            return VariableLayout.of(vector("coord"), vector("u"))
        if self.diffusivity > 0 and kind == StateKind.GRADIENT:
            return VariableLayout.of("rho")
        if self.diffusivity > 0 and kind == StateKind.GRADIENT_FLUX:
            return VariableLayout.of(vector("diffusive_flux"))
        return VariableLayout()

    def init_state_auxiliary(self, aux, geom):
        coord = geom["coord"]
        if callable(self.velocity):
            u = self.velocity(coord)
        else:
            u = jnp.broadcast_to(jnp.asarray(self.velocity, dtype=coord.dtype), coord.shape)
        return {"coord": coord, "u": u}

    def init_state_prognostic(self, state, aux, coords, t):
        if self.initial_condition is None:
            return super().init_state_prognostic(state, aux, coords, t)
        return {"rho": self.initial_condition(coords, t)}

    def flux_first_order(self, state, aux, t):
        return {"rho": state["rho"][..., None] * aux["u"]}

    def compute_gradient_argument(self, state, aux, t):
        return {"rho": state["rho"]}

    def compute_gradient_flux(self, gradient, state, aux, t):
        return {"diffusive_flux": self.diffusivity * gradient["rho"]}

    def flux_second_order(self, state, gradient_flux, hyperdiffusive, aux, t):
        if self.diffusivity == 0:
            return {}
        return {"rho": -gradient_flux["diffusive_flux"]}

    def wavespeed(self, normal, state, aux, t):
        return jnp.abs(jnp.sum(normal * aux["u"], axis=-1))

    def boundary_state(self, kind, tag, state, aux, normal, t):
        g = self.boundary_value if self.boundary_value is not None else self.initial_condition
        if tag in self.neumann_tags or g is None or kind not in (FIRST_ORDER, GRADIENT):
            return dict(state)
        return {"rho": g(aux["coord"], t)}

    def boundary_gradient_flux(self, tag, gradient_flux, state, aux, normal, t):
        if tag in self.neumann_tags:
            # mirror so the central normal flux vanishes
            return {k: -v for k, v in gradient_flux.items()}
        return dict(gradient_flux)
