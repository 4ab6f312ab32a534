"""Exception taxonomy for the spectral-element core."""
from __future__ import annotations

__all__ = [
    "DGError",
    "ConfigurationError",
    "InvalidOrderError",
    "NonConvergenceError",
    "NumericalInstabilityError",
    "CommunicationError",
]


class DGError(RuntimeError):
    """Base class of all errors raised by :mod:`dg_climate_jax`."""


class ConfigurationError(DGError):
    """Inconsistent setup detected at construction time.

    Raised for variable-count mismatches between a balance law and its state
    containers, periodic axes that also carry a boundary tag, invalid
    polynomial orders and similar mistakes. Never recovered internally.
    """


class InvalidOrderError(ConfigurationError):
    """Requested polynomial order or point count cannot define a basis."""


class NonConvergenceError(DGError):
    """An iterative linear solve exhausted its iteration budget."""

    def __init__(self, message: str, iterations: int, residual: float):
        super().__init__(message)
        self.iterations = iterations
        self.residual = residual


class NumericalInstabilityError(DGError, FloatingPointError):
    """Non-finite values detected in a state container."""


class CommunicationError(DGError):
    """A halo exchange or global reduction could not be completed."""
