"""Compressible Euler equations for a dry ideal gas.

Prognostic variables are density ``rho``, momentum ``rhou`` and energy
``rhoe``. With ``total_energy`` the energy includes the geopotential,
``rhoe = p / (gamma - 1) + |rhou|**2 / (2 rho) + rho phi``, and gravity only
enters the momentum equation.

Besides the standard flux the model provides the entropy
``eta = -rho s / (gamma - 1)`` with ``s = log(p / rho**gamma)``, its entropy
variables, the entropy-conservative two-point flux of Chandrashekar, the
kinetic-energy preserving flux of Kennedy and Gruber and the matrix
dissipation of Winters et al. (2017).
"""
from __future__ import annotations

from dataclasses import dataclass, field

import jax.numpy as jnp

from ..balance_law import BalanceLaw
from ..config import EARTH, ParameterSet
from ..errors import ConfigurationError
from ..numerical_fluxes import ave, logave
from ..variables import StateKind, VariableLayout, vector

__all__ = [
    "DryAtmosProblem",
    "IsentropicVortex",
    "RisingBubble",
    "DryAtmosModel",
    "DryAtmosAcousticLinearModel",
    "pressure",
    "total_energy",
]

SOURCES = ("gravity", "coriolis")

_PROGNOSTIC = VariableLayout.of("rho", vector("rhou"), "rhoe")
_AUXILIARY = VariableLayout.of(
    vector("coord"), "phi", vector("grad_phi"), "ref_T", "ref_p", "ref_rho", "ref_rhoe"
)
_ENTROPY = VariableLayout.of("rho", vector("rhou"), "rhoe", "phi")


def _dot(a, b):
    return jnp.sum(a * b, axis=-1)


def pressure(gamma, rho, rhou, rhoe, phi, total_energy=True):
    """Ideal-gas pressure from the conserved variables."""

    internal = rhoe - _dot(rhou, rhou) / (2 * rho)
    if total_energy:
        internal = internal - rho * phi
    return (gamma - 1) * internal


def total_energy(gamma, rho, rhou, p, phi, total_energy=True):
    e = p / (gamma - 1) + _dot(rhou, rhou) / (2 * rho)
    if total_energy:
        e = e + rho * phi
    return e


@dataclass(frozen=True)
class DryAtmosProblem:
    """Initial and reference states of a dry atmosphere experiment.

    The default reference state is an isothermal hydrostatic profile at
    ``T_ref``; subclasses provide :meth:`initial_state`.
    """

    T_ref: float = 300.0

    def reference_state(self, law: "DryAtmosModel", coord, phi):
        """Reference ``(T, p)`` at the nodes."""

        params = law.parameters
        T = jnp.full_like(phi, self.T_ref)
        p = params.MSLP * jnp.exp(-phi / (params.R_d * self.T_ref))
        return T, p

    def initial_state(self, law: "DryAtmosModel", coord, phi, t):
        """Primitive ``(rho, u, p)`` at time ``t``; ``u`` has a trailing axis of 3."""

        raise NotImplementedError(f"{type(self).__name__} has no initial condition")


@dataclass(frozen=True)
class IsentropicVortex(DryAtmosProblem):
    """Shu's isentropic vortex translating through a periodic square.

    Nondimensional: free stream ``rho = p = 1``; the exact solution at time
    ``t`` is the initial vortex shifted by ``translation * t`` (wrapped into
    the periodic box of half-width ``halflength``).
    """

    halflength: float = 10.0
    beta: float = 5.0
    center: tuple[float, float] = (0.0, 0.0)
    translation: tuple[float, float] = (1.0, 1.0)

    def reference_state(self, law, coord, phi):
        one = jnp.ones_like(phi)
        return one / law.parameters.R_d, one

    def initial_state(self, law, coord, phi, t):
        gamma = law.parameters.gamma
        L = 2 * self.halflength
        x = coord[..., 0] - self.center[0] - self.translation[0] * t
        y = coord[..., 1] - self.center[1] - self.translation[1] * t
        x = x - L * jnp.round(x / L)
        y = y - L * jnp.round(y / L)
        r2 = x * x + y * y
        du = self.beta / (2 * jnp.pi) * jnp.exp((1 - r2) / 2)
        dT = -(gamma - 1) * self.beta**2 / (8 * gamma * jnp.pi**2) * jnp.exp(1 - r2)
        rho = (1 + dT) ** (1 / (gamma - 1))
        p = rho**gamma
        u = jnp.stack([self.translation[0] - du * y, self.translation[1] + du * x, jnp.zeros_like(x)], axis=-1)
        return rho, u, p


@dataclass(frozen=True)
class RisingBubble(DryAtmosProblem):
    """Warm bubble of constant potential-temperature excess in a neutral atmosphere."""

    theta_ref: float = 300.0
    amplitude: float = 0.5
    radius: float = 250.0
    center: tuple[float, float] = (1000.0, 260.0)

    def _background(self, law, z, theta):
        params = law.parameters
        exner = 1 - params.grav / (params.cp_d * theta) * z
        rho = params.MSLP / (params.R_d * theta) * exner ** (params.cv_d / params.R_d)
        T = theta * exner
        return rho, T

    def reference_state(self, law, coord, phi):
        z = coord[..., law.dim - 1]
        rho, T = self._background(law, z, jnp.full_like(z, self.theta_ref))
        return T, rho * law.parameters.R_d * T

    def initial_state(self, law, coord, phi, t):
        x = coord[..., 0]
        z = coord[..., law.dim - 1]
        r = jnp.sqrt((x - self.center[0]) ** 2 + (z - self.center[1]) ** 2)
        theta = self.theta_ref + jnp.where(r <= self.radius, self.amplitude, 0.0)
        rho, T = self._background(law, z, theta)
        u = jnp.zeros(x.shape + (3,), dtype=x.dtype)
        return rho, u, rho * law.parameters.R_d * T


@dataclass(frozen=True, eq=False)
class DryAtmosModel(BalanceLaw):
    """Dry compressible atmosphere on a flat (box) geometry.

    Parameters
    ----------
    dim : int
        Mesh dimension; the last coordinate is the vertical.
    problem : DryAtmosProblem
    parameters : ParameterSet
    sources : tuple of str
        Any of ``"gravity"`` and ``"coriolis"`` (f-plane about the vertical).
    total_energy : bool
        Include the geopotential in ``rhoe``.
    """

    dim: int = 2
    problem: DryAtmosProblem = field(default_factory=IsentropicVortex)
    parameters: ParameterSet = EARTH
    sources: tuple[str, ...] = ("gravity",)
    total_energy: bool = True

    def __post_init__(self):
        if self.dim not in (2, 3):
            raise ConfigurationError(f"dim must be 2 or 3, got {self.dim}")
        unknown = set(self.sources) - set(SOURCES)
        if unknown:
            raise ConfigurationError(f"unknown sources {sorted(unknown)}; choose from {SOURCES}")
        if "coriolis" in self.sources and self.dim != 3:
            raise ConfigurationError("the Coriolis source needs a 3D box")

    @property
    def gamma(self) -> float:
        return self.parameters.gamma

    def vars_state(self, kind):
        if kind == StateKind.PROGNOSTIC:
            return _PROGNOSTIC
        if kind == StateKind.AUXILIARY:
            return _AUXILIARY
        if kind == StateKind.ENTROPY:
            return _ENTROPY
        return VariableLayout()

    def _pressure(self, state, aux):
        return pressure(self.gamma, state["rho"], state["rhou"], state["rhoe"], aux["phi"], self.total_energy)

    # initialisation ---------------------------------------------------
    def init_state_auxiliary(self, aux, geom):
        coord = geom["coord"]
        grav = self.parameters.grav
        z = coord[..., self.dim - 1]
        phi = grav * z
        up = jnp.zeros(3).at[self.dim - 1].set(grav)
        T, p = self.problem.reference_state(self, coord, phi)
        rho = p / (self.parameters.R_d * T)
        zero = jnp.zeros_like(coord)
        return {
            "coord": coord,
            "phi": phi,
            "grad_phi": jnp.broadcast_to(up, coord.shape),
            "ref_T": T,
            "ref_p": p,
            "ref_rho": rho,
            "ref_rhoe": total_energy(self.gamma, rho, zero, p, phi, self.total_energy),
        }

    def init_state_prognostic(self, state, aux, coords, t):
        rho, u, p = self.problem.initial_state(self, coords, aux["phi"], t)
        rhou = rho[..., None] * u
        return {
            "rho": rho,
            "rhou": rhou,
            "rhoe": total_energy(self.gamma, rho, rhou, p, aux["phi"], self.total_energy),
        }

    # fluxes -----------------------------------------------------------
    def flux_first_order(self, state, aux, t):
        rho, rhou, rhoe = state["rho"], state["rhou"], state["rhoe"]
        u = rhou / rho[..., None]
        p = self._pressure(state, aux)
        eye = jnp.eye(3, dtype=rho.dtype)
        return {
            "rho": rhou,
            "rhou": rhou[..., :, None] * u[..., None, :] + p[..., None, None] * eye,
            "rhoe": u * (rhoe + p)[..., None],
        }

    def source(self, state, aux, t):
        out = {}
        rhou = state["rhou"]
        terms = []
        if "gravity" in self.sources:
            terms.append(-state["rho"][..., None] * aux["grad_phi"])
            if not self.total_energy:
                out["rhoe"] = -_dot(rhou, aux["grad_phi"])
        if "coriolis" in self.sources:
            # f-plane: -2 Omega z x rhou
            f = 2 * self.parameters.Omega
            zhat = jnp.broadcast_to(jnp.array([0.0, 0.0, 1.0], dtype=rhou.dtype), rhou.shape)
            terms.append(-f * jnp.cross(zhat, rhou))
        if terms:
            out["rhou"] = sum(terms[1:], terms[0])
        return out

    def wavespeed(self, normal, state, aux, t):
        rho = state["rho"]
        u = state["rhou"] / rho[..., None]
        p = self._pressure(state, aux)
        return jnp.abs(_dot(normal, u)) + jnp.sqrt(self.gamma * p / rho)

    def boundary_state(self, kind, tag, state, aux, normal, t):
        # impenetrable free-slip wall: reflect the normal momentum
        rhou = state["rhou"]
        rhou_n = _dot(rhou, normal)
        return {"rho": state["rho"], "rhou": rhou - 2 * rhou_n[..., None] * normal, "rhoe": state["rhoe"]}

    # entropy ------------------------------------------------------------
    def state_to_entropy(self, state, aux):
        rho = state["rho"]
        p = self._pressure(state, aux)
        s = jnp.log(p / rho**self.gamma)
        return -rho * s / (self.gamma - 1)

    def state_to_entropy_variables(self, state, aux):
        gamma = self.gamma
        rho, phi = state["rho"], aux["phi"]
        p = self._pressure(state, aux)
        s = jnp.log(p / rho**gamma)
        b = rho / (2 * p)
        u = state["rhou"] / rho[..., None]
        usq = _dot(u, u)
        if self.total_energy:
            usq = usq - 2 * phi
        return {
            "rho": (gamma - s) / (gamma - 1) - usq * b,
            "rhou": 2 * b[..., None] * u,
            "rhoe": -2 * b,
            "phi": 2 * rho * b,
        }

    def _primitives(self, state, aux):
        rho = state["rho"]
        u = state["rhou"] / rho[..., None]
        p = self._pressure(state, aux)
        return rho, u, p, aux["phi"]

    def two_point_flux(self, kind, state1, aux1, state2, aux2, t):
        if kind == "entropy_conservative":
            return self._entropy_conservative_flux(state1, aux1, state2, aux2)
        if kind == "kennedy_gruber":
            return self._kennedy_gruber_flux(state1, aux1, state2, aux2)
        return super().two_point_flux(kind, state1, aux1, state2, aux2, t)

    def _entropy_conservative_flux(self, state1, aux1, state2, aux2):
        gamma = self.gamma
        rho1, u1, p1, phi1 = self._primitives(state1, aux1)
        rho2, u2, p2, phi2 = self._primitives(state2, aux2)
        b1 = rho1 / (2 * p1)
        b2 = rho2 / (2 * p2)

        rho_avg = ave(rho1, rho2)
        u_avg = ave(u1, u2)
        b_avg = ave(b1, b2)
        usq_avg = ave(_dot(u1, u1), _dot(u2, u2))
        rho_log = logave(rho1, rho2)
        b_log = logave(b1, b2)

        eye = jnp.eye(3, dtype=rho_avg.dtype)
        f_rho = u_avg * rho_log[..., None]
        f_rhou = u_avg[..., :, None] * f_rho[..., None, :] + (rho_avg / (2 * b_avg))[..., None, None] * eye
        coeff = 1 / (2 * (gamma - 1) * b_log) - usq_avg / 2
        if self.total_energy:
            coeff = coeff + ave(phi1, phi2)
        f_rhoe = coeff[..., None] * f_rho + jnp.einsum("...c,...cd->...d", u_avg, f_rhou)
        return {"rho": f_rho, "rhou": f_rhou, "rhoe": f_rhoe}

    def _kennedy_gruber_flux(self, state1, aux1, state2, aux2):
        rho1, u1, p1, _ = self._primitives(state1, aux1)
        rho2, u2, p2, _ = self._primitives(state2, aux2)
        rho_avg = ave(rho1, rho2)
        u_avg = ave(u1, u2)
        e_avg = ave(state1["rhoe"] / rho1, state2["rhoe"] / rho2)
        p_avg = ave(p1, p2)
        eye = jnp.eye(3, dtype=rho_avg.dtype)
        return {
            "rho": rho_avg[..., None] * u_avg,
            "rhou": p_avg[..., None, None] * eye + rho_avg[..., None, None] * u_avg[..., :, None] * u_avg[..., None, :],
            "rhoe": (rho_avg * e_avg + p_avg)[..., None] * u_avg,
        }

    def packed_matrix_dissipation(self, policy, normal, qM, auxM, qP, auxP, t):
        """``R |Lambda| T R^T [[v]] / 2`` on packed face traces."""

        gamma = self.gamma
        sM = _PROGNOSTIC.unpack(qM)
        sP = _PROGNOSTIC.unpack(qP)
        aM = _AUXILIARY.unpack(auxM)
        aP = _AUXILIARY.unpack(auxP)
        rhoM, uM, pM, phiM = self._primitives(sM, aM)
        rhoP, uP, pP, phiP = self._primitives(sP, aP)
        betaM = rhoM / (2 * pM)
        betaP = rhoP / (2 * pP)

        rho_log = logave(rhoM, rhoP)
        beta_log = logave(betaM, betaP)
        phi_avg = ave(phiM, phiP) if self.total_energy else 0.0
        u_avg = ave(uM, uP)
        p_avg = ave(rhoM, rhoP) / (2 * ave(betaM, betaP))
        u2_bar = 2 * _dot(u_avg, u_avg) - ave(_dot(uM, uM), _dot(uP, uP))
        h_bar = gamma / (2 * beta_log * (gamma - 1)) + u2_bar / 2 + phi_avg
        c_bar = jnp.sqrt(gamma * p_avg / rho_log)
        un = _dot(u_avg, normal)

        c_lam = c_bar
        if policy.low_mach:
            mach = jnp.abs(un) / c_bar
            c_lam = c_bar * jnp.maximum(jnp.minimum(mach, 1.0), policy.Mcut)
        if policy.kinetic_energy_preserving:
            lam_l = lam_r = jnp.abs(un) + c_lam
        else:
            lam_l = jnp.abs(un - c_lam)
            lam_r = jnp.abs(un + c_lam)
        lam_0 = jnp.abs(un)

        vM = self.state_to_entropy_variables(sM, aM)
        vP = self.state_to_entropy_variables(sP, aP)
        d_rho = vP["rho"] - vM["rho"]
        d_m = vP["rhou"] - vM["rhou"]
        d_e = vP["rhoe"] - vM["rhoe"]

        out_rho = 0.0
        out_m = 0.0
        out_e = 0.0
        # acoustic waves
        for sign, lam in ((-1.0, lam_l), (1.0, lam_r)):
            r_m = u_avg + sign * c_bar[..., None] * normal
            r_e = h_bar + sign * c_bar * un
            w = lam * rho_log / (2 * gamma) * (d_rho + _dot(r_m, d_m) + r_e * d_e)
            out_rho = out_rho + w
            out_m = out_m + w[..., None] * r_m
            out_e = out_e + w * r_e
        # entropy wave
        r_e = u2_bar / 2 + phi_avg
        w = lam_0 * rho_log * (gamma - 1) / gamma * (d_rho + _dot(u_avg, d_m) + r_e * d_e)
        out_rho = out_rho + w
        out_m = out_m + w[..., None] * u_avg
        out_e = out_e + w * r_e
        # shear waves, summed over the tangent plane
        a = d_m + u_avg * d_e[..., None]
        a_t = a - _dot(a, normal)[..., None] * normal
        w = lam_0 * p_avg
        out_m = out_m + w[..., None] * a_t
        out_e = out_e + w * _dot(u_avg, a_t)

        views = {"rho": out_rho / 2, "rhou": out_m / 2, "rhoe": out_e / 2}
        return _PROGNOSTIC.pack(views, shape=qM.shape[:-1], dtype=qM.dtype)


@dataclass(frozen=True, eq=False)
class DryAtmosAcousticLinearModel(BalanceLaw):
    """Acoustic linearization of a :class:`DryAtmosModel` about its reference state.

    Shares the auxiliary layout of ``atmos`` so both can use one auxiliary
    state. With ``gravity`` the linear buoyancy term is included as well.
    """

    atmos: DryAtmosModel
    gravity: bool = False

    def vars_state(self, kind):
        if kind == StateKind.ENTROPY:
            return VariableLayout()
        return self.atmos.vars_state(kind)

    def init_state_auxiliary(self, aux, geom):
        return self.atmos.init_state_auxiliary(aux, geom)

    def init_state_prognostic(self, state, aux, coords, t):
        return self.atmos.init_state_prognostic(state, aux, coords, t)

    def _linear_pressure(self, state, aux):
        gamma = self.atmos.gamma
        rhoe = state["rhoe"]
        if self.atmos.total_energy:
            rhoe = rhoe - state["rho"] * aux["phi"]
        return (gamma - 1) * rhoe

    def flux_first_order(self, state, aux, t):
        rhou = state["rhou"]
        p = self._linear_pressure(state, aux)
        h_ref = (aux["ref_rhoe"] + aux["ref_p"]) / aux["ref_rho"]
        eye = jnp.eye(3, dtype=p.dtype)
        return {"rho": rhou, "rhou": p[..., None, None] * eye, "rhoe": h_ref[..., None] * rhou}

    def source(self, state, aux, t):
        if not self.gravity:
            return {}
        out = {"rhou": -state["rho"][..., None] * aux["grad_phi"]}
        if not self.atmos.total_energy:
            out["rhoe"] = -_dot(state["rhou"], aux["grad_phi"])
        return out

    def wavespeed(self, normal, state, aux, t):
        return jnp.sqrt(self.atmos.gamma * aux["ref_p"] / aux["ref_rho"])

    def boundary_state(self, kind, tag, state, aux, normal, t):
        return self.atmos.boundary_state(kind, tag, state, aux, normal, t)
