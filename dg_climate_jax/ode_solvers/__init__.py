"""Time integrators driving a DG right-hand side."""
from .base import AbstractODESolver, SolverStatus
from .lsrk import LowStorageRungeKutta2N, LSRK54CarpenterKennedy, LSRKEulerMethod
from .ssprk import StrongStabilityPreservingRungeKutta, SSPRK33ShuOsher, SSPRK34SpiteriRuuth
from .ark import AdditiveRungeKutta, ARK2GiraldoKellyConstantinescu, ARK1ForwardBackwardEuler
from .multirate import MultirateRungeKutta
from .mrigark import MRIGARK, MRIGARKERK22aSandu, MRIGARKERK33aSandu, MRIGARKIRK21aSandu

__all__ = [
    "AbstractODESolver",
    "SolverStatus",
    "LowStorageRungeKutta2N",
    "LSRK54CarpenterKennedy",
    "LSRKEulerMethod",
    "StrongStabilityPreservingRungeKutta",
    "SSPRK33ShuOsher",
    "SSPRK34SpiteriRuuth",
    "AdditiveRungeKutta",
    "ARK2GiraldoKellyConstantinescu",
    "ARK1ForwardBackwardEuler",
    "MultirateRungeKutta",
    "MRIGARK",
    "MRIGARKERK22aSandu",
    "MRIGARKERK33aSandu",
    "MRIGARKIRK21aSandu",
]
