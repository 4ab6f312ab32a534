"""Dry dynamics carrying total specific humidity as a tracer.

The gas constant and heat capacity of the mixture depend on ``q_tot``:
``R_m = R_d (1 - q) + R_v q`` and ``cv_m = cv_d (1 - q) + cv_v q``, so the
pressure is ``p = (R_m / cv_m) rho e_int``. Phase changes are not modelled.
Moisture diffuses with a constant diffusivity through the second-order pass.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import jax.numpy as jnp

from ..balance_law import BalanceLaw
from ..variables import StateKind, VariableLayout, vector
from .dry_atmos import DryAtmosModel, pressure, total_energy

__all__ = ["MoistAtmosModel"]

_PROGNOSTIC = VariableLayout.of("rho", vector("rhou"), "rhoe", "rhoq_tot")


@dataclass(frozen=True, eq=False)
class MoistAtmosModel(DryAtmosModel):
    """Moist variant of :class:`DryAtmosModel`.

    Parameters
    ----------
    moisture : callable, optional
        ``moisture(coord, t)`` giving the initial ``q_tot``; dry by default.
    moisture_diffusivity : float
        Constant diffusivity of ``q_tot``; zero disables the gradient pass.
    """

    moisture: Callable | None = None
    moisture_diffusivity: float = 0.0

    def vars_state(self, kind):
        if kind == StateKind.PROGNOSTIC:
            return _PROGNOSTIC
        if kind == StateKind.AUXILIARY:
            return super().vars_state(kind)
        if self.moisture_diffusivity > 0 and kind == StateKind.GRADIENT:
            return VariableLayout.of("q_tot")
        if self.moisture_diffusivity > 0 and kind == StateKind.GRADIENT_FLUX:
            return VariableLayout.of(vector("moisture_flux"))
        return VariableLayout()

    def mixture_gamma(self, q_tot):
        params = self.parameters
        R_m = params.R_d * (1 - q_tot) + params.R_v * q_tot
        cv_m = params.cv_d * (1 - q_tot) + params.cv_v * q_tot
        return (cv_m + R_m) / cv_m

    def _pressure(self, state, aux):
        gamma = self.mixture_gamma(state["rhoq_tot"] / state["rho"])
        return pressure(gamma, state["rho"], state["rhou"], state["rhoe"], aux["phi"], self.total_energy)

    def init_state_prognostic(self, state, aux, coords, t):
        rho, u, p = self.problem.initial_state(self, coords, aux["phi"], t)
        q = jnp.zeros_like(rho) if self.moisture is None else self.moisture(coords, t)
        rhou = rho[..., None] * u
        gamma = self.mixture_gamma(q)
        return {
            "rho": rho,
            "rhou": rhou,
            "rhoe": total_energy(gamma, rho, rhou, p, aux["phi"], self.total_energy),
            "rhoq_tot": rho * q,
        }

    def flux_first_order(self, state, aux, t):
        flux = super().flux_first_order(state, aux, t)
        flux["rhoq_tot"] = state["rhoq_tot"][..., None] * state["rhou"] / state["rho"][..., None]
        return flux

    def compute_gradient_argument(self, state, aux, t):
        return {"q_tot": state["rhoq_tot"] / state["rho"]}

    def compute_gradient_flux(self, gradient, state, aux, t):
        return {"moisture_flux": self.moisture_diffusivity * state["rho"][..., None] * gradient["q_tot"]}

    def flux_second_order(self, state, gradient_flux, hyperdiffusive, aux, t):
        if self.moisture_diffusivity == 0:
            return {}
        return {"rhoq_tot": -gradient_flux["moisture_flux"]}

    def wavespeed(self, normal, state, aux, t):
        rho = state["rho"]
        u = state["rhou"] / rho[..., None]
        gamma = self.mixture_gamma(state["rhoq_tot"] / rho)
        p = self._pressure(state, aux)
        return jnp.abs(jnp.sum(normal * u, axis=-1)) + jnp.sqrt(gamma * p / rho)

    def boundary_state(self, kind, tag, state, aux, normal, t):
        out = super().boundary_state(kind, tag, state, aux, normal, t)
        out["rhoq_tot"] = state["rhoq_tot"]
        return out

    def boundary_gradient_flux(self, tag, gradient_flux, state, aux, normal, t):
        # no moisture flux through walls
        return {k: -v for k, v in gradient_flux.items()}

    # the dry entropy pair does not carry over to the mixture
    def state_to_entropy(self, state, aux):
        return BalanceLaw.state_to_entropy(self, state, aux)

    def state_to_entropy_variables(self, state, aux):
        return BalanceLaw.state_to_entropy_variables(self, state, aux)

    def two_point_flux(self, kind, state1, aux1, state2, aux2, t):
        return BalanceLaw.two_point_flux(self, kind, state1, aux1, state2, aux2, t)

    packed_matrix_dissipation = None
