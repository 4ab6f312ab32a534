"""Numerical flux policies for the DG operator.

Each policy is a stateless frozen dataclass chosen once at configuration time.
First-order policies return the normal numerical flux ``F* . n`` on packed face
traces of shape ``(..., nvar)``; policies whose ``volume_flux`` is set also
switch the volume term to flux differencing with that two-point flux.
"""
from __future__ import annotations

from dataclasses import dataclass

import jax.numpy as jnp

from .errors import ConfigurationError

__all__ = [
    "NumericalFluxFirstOrder",
    "CentralNumericalFluxFirstOrder",
    "RusanovNumericalFlux",
    "EntropyConservative",
    "EntropyConservativeWithPenalty",
    "MatrixFlux",
    "KennedyGruberFlux",
    "CentralNumericalFluxGradient",
    "CentralNumericalFluxSecondOrder",
    "CentralNumericalFluxDivergence",
    "CentralNumericalFluxHigherOrder",
    "numerical_flux_from_name",
    "normal_dot",
    "ave",
    "logave",
]


def normal_dot(flux, normal):
    """Contract the direction axis of ``(..., nvar, 3)`` with ``(..., 3)``."""

    return jnp.einsum("...vd,...d->...v", flux, normal)


def ave(a, b):
    return 0.5 * (a + b)


def logave(a, b):
    """Logarithmic mean ``(a - b) / (log a - log b)``, stable as ``a -> b``."""

    zeta = a / b
    f = (zeta - 1) / (zeta + 1)
    u = f * f
    small = u < 1e-4
    series = 1 + u / 3 + u * u / 5 + u**3 / 7 + u**4 / 9
    f_safe = jnp.where(small, 1.0, f)
    zeta_safe = jnp.where(small, jnp.e, zeta)
    F = jnp.where(small, series, jnp.log(zeta_safe) / (2 * f_safe))
    return (a + b) / (2 * F)


@dataclass(frozen=True)
class NumericalFluxFirstOrder:
    volume_flux = None

    def normal_flux(self, law, normal, qM, auxM, qP, auxP, t):
        raise NotImplementedError


@dataclass(frozen=True)
class CentralNumericalFluxFirstOrder(NumericalFluxFirstOrder):
    def normal_flux(self, law, normal, qM, auxM, qP, auxP, t):
        fM = law.packed_flux_first_order(qM, auxM, t)
        fP = law.packed_flux_first_order(qP, auxP, t)
        return normal_dot(0.5 * (fM + fP), normal)


@dataclass(frozen=True)
class RusanovNumericalFlux(NumericalFluxFirstOrder):
    """Local Lax-Friedrichs: central flux minus ``max(c) / 2`` times the jump."""

    def normal_flux(self, law, normal, qM, auxM, qP, auxP, t):
        central = CentralNumericalFluxFirstOrder().normal_flux(law, normal, qM, auxM, qP, auxP, t)
        cM = law.packed_wavespeed(normal, qM, auxM, t)
        cP = law.packed_wavespeed(normal, qP, auxP, t)
        c = jnp.maximum(cM, cP)
        return central - 0.5 * c[..., None] * (qP - qM)


@dataclass(frozen=True)
class EntropyConservative(NumericalFluxFirstOrder):
    """Two-point entropy-conservative flux on faces and in the volume."""

    volume_flux = "entropy_conservative"

    def normal_flux(self, law, normal, qM, auxM, qP, auxP, t):
        f = law.packed_two_point_flux(self.volume_flux, qM, auxM, qP, auxP, t)
        return normal_dot(f, normal)


@dataclass(frozen=True)
class EntropyConservativeWithPenalty(EntropyConservative):
    """Entropy-conservative flux plus a Rusanov-type penalty (entropy stable)."""

    def normal_flux(self, law, normal, qM, auxM, qP, auxP, t):
        ec = super().normal_flux(law, normal, qM, auxM, qP, auxP, t)
        cM = law.packed_wavespeed(normal, qM, auxM, t)
        cP = law.packed_wavespeed(normal, qP, auxP, t)
        c = jnp.maximum(cM, cP)
        return ec - 0.5 * c[..., None] * (qP - qM)


@dataclass(frozen=True)
class MatrixFlux(EntropyConservative):
    """Entropy-conservative flux with matrix dissipation.

    The dissipation ``R |Lambda| T R^T [[v]] / 2`` is model specific and
    comes from the law's ``packed_matrix_dissipation`` hook, which receives
    this policy so it can honour the options below.

    Attributes
    ----------
    Mcut : float
        Lower bound of the Mach-number scaling of the acoustic waves.
    low_mach : bool
        Scale the acoustic eigenvalues by ``max(min(M, 1), Mcut)``.
    kinetic_energy_preserving : bool
        Use ``|u.n| + c`` for both acoustic waves.
    """

    Mcut: float = 0.0
    low_mach: bool = False
    kinetic_energy_preserving: bool = False

    def normal_flux(self, law, normal, qM, auxM, qP, auxP, t):
        hook = getattr(law, "packed_matrix_dissipation", None)
        if hook is None:
            raise ConfigurationError(f"{type(law).__name__} does not provide matrix dissipation")
        ec = super().normal_flux(law, normal, qM, auxM, qP, auxP, t)
        return ec - hook(self, normal, qM, auxM, qP, auxP, t)


@dataclass(frozen=True)
class KennedyGruberFlux(NumericalFluxFirstOrder):
    """Kinetic-energy preserving split-form flux (no dissipation)."""

    volume_flux = "kennedy_gruber"

    def normal_flux(self, law, normal, qM, auxM, qP, auxP, t):
        f = law.packed_two_point_flux(self.volume_flux, qM, auxM, qP, auxP, t)
        return normal_dot(f, normal)


@dataclass(frozen=True)
class CentralNumericalFluxGradient:
    """``g* = (g- + g+) / 2`` for the gradient pass."""

    def trace(self, gM, gP):
        return 0.5 * (gM + gP)


@dataclass(frozen=True)
class CentralNumericalFluxSecondOrder:
    def normal_flux(self, fM, fP, normal):
        return normal_dot(0.5 * (fM + fP), normal)


@dataclass(frozen=True)
class CentralNumericalFluxDivergence:
    """Central trace of a vector field for the Laplacian pass."""

    def normal_flux(self, gM, gP, normal):
        return normal_dot(0.5 * (gM + gP), normal)


@dataclass(frozen=True)
class CentralNumericalFluxHigherOrder:
    """Central trace of the Laplacian for the ``grad(lap)`` pass."""

    def trace(self, lM, lP):
        return 0.5 * (lM + lP)


_FIRST_ORDER = {
    "central": CentralNumericalFluxFirstOrder,
    "rusanov": RusanovNumericalFlux,
    "entropy_conservative": EntropyConservative,
    "entropy_conservative_penalty": EntropyConservativeWithPenalty,
    "matrix": MatrixFlux,
    "kennedy_gruber": KennedyGruberFlux,
}


def numerical_flux_from_name(name: str) -> NumericalFluxFirstOrder:
    try:
        return _FIRST_ORDER[name]()
    except KeyError as exc:
        raise ConfigurationError(f"unknown numerical flux {name!r}; choose from {sorted(_FIRST_ORDER)}") from exc
