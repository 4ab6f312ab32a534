"""Discontinuous spectral-element dynamical core (JAX implementation)."""
from .config import DEFAULT, EARTH, RunConfig, load_config
from .dg import DGModel, remainder_dg_model
from .grid import SpectralElementGrid
from .state import DistributedState
from .topology import BrickTopology
from .variables import StateKind, VariableLayout

__all__ = [
    "DEFAULT",
    "EARTH",
    "RunConfig",
    "load_config",
    "DGModel",
    "remainder_dg_model",
    "SpectralElementGrid",
    "DistributedState",
    "BrickTopology",
    "StateKind",
    "VariableLayout",
]
