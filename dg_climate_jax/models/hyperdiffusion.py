"""Fourth-order hyperdiffusion ``drho/dt = -nu lap(lap(rho))``.

Written as ``drho/dt + div(nu grad(lap rho)) = 0`` so the DG operator's
Laplacian pass supplies ``lap rho`` and the post-gradient transform builds the
flux. On a periodic box a Fourier mode with wavenumber ``k`` decays at rate
``nu |k|**4``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from ..balance_law import BalanceLaw
from ..variables import StateKind, VariableLayout, vector

__all__ = ["HyperDiffusion"]


@dataclass(frozen=True, eq=False)
class HyperDiffusion(BalanceLaw):
    nu: float = 1.0
    initial_condition: Callable | None = None

    def vars_state(self, kind):
        if kind in (StateKind.PROGNOSTIC, StateKind.GRADIENT_LAPLACIAN):
            return VariableLayout.of("rho")
        if kind == StateKind.AUXILIARY:
            return VariableLayout.of(vector("coord"))
        if kind == StateKind.HYPERDIFFUSIVE:
            return VariableLayout.of(vector("nu_grad_lap_rho"))
        return VariableLayout()

    def init_state_auxiliary(self, aux, geom):
        return {"coord": geom["coord"]}

    def init_state_prognostic(self, state, aux, coords, t):
        if self.initial_condition is None:
            return super().init_state_prognostic(state, aux, coords, t)
        return {"rho": self.initial_condition(coords, t)}

    def compute_gradient_laplacian_argument(self, state, aux, t):
        return {"rho": state["rho"]}

    def transform_post_gradient_laplacian(self, gradient_laplacian, state, aux, t):
        return {"nu_grad_lap_rho": self.nu * gradient_laplacian["rho"]}

    def flux_second_order(self, state, gradient_flux, hyperdiffusive, aux, t):
        return {"rho": hyperdiffusive["nu_grad_lap_rho"]}
