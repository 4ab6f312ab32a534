"""Balance-law variants."""
from .advection_diffusion import AdvectionDiffusion
from .dry_atmos import (
    DryAtmosAcousticLinearModel,
    DryAtmosModel,
    DryAtmosProblem,
    IsentropicVortex,
    RisingBubble,
)
from .hyperdiffusion import HyperDiffusion
from .moist_atmos import MoistAtmosModel
from .ocean import CoastlineBoundary, HydrostaticBoussinesqModel, OceanGyre
from .shallow_water import ShallowWaterModel

__all__ = [
    "AdvectionDiffusion",
    "DryAtmosAcousticLinearModel",
    "DryAtmosModel",
    "DryAtmosProblem",
    "IsentropicVortex",
    "RisingBubble",
    "HyperDiffusion",
    "MoistAtmosModel",
    "CoastlineBoundary",
    "HydrostaticBoussinesqModel",
    "OceanGyre",
    "ShallowWaterModel",
]
