"""
Nonlinear step controller registry.

Usage:
    from dolfinx_ns.controllers import create_controller
    controller = create_controller("newton", assembler, fluid, solve, comm)
"""

from dolfinx_ns.controllers.base import (
    AssembledSystem,
    Assembler,
    NonlinearStepController,
    StepReport,
)
from dolfinx_ns.controllers.imex import ImexController
from dolfinx_ns.controllers.newton import NewtonController, NewtonDivergenceError

_REGISTRY: dict[str, type[NonlinearStepController]] = {
    "imex": ImexController,
    "newton": NewtonController,
}


def create_controller(name: str, assembler, fluid, solve, comm, timer=None) -> NonlinearStepController:
    """Factory: instantiate a step controller by config name."""
    key = name.lower()
    cls = _REGISTRY.get(key)
    if cls is None:
        supported = ", ".join(sorted(_REGISTRY))
        raise ValueError(f"Unknown step controller '{name}'. Supported: {supported}")
    return cls(assembler, fluid, solve, comm, timer)


__all__ = [
    "AssembledSystem",
    "Assembler",
    "ImexController",
    "NewtonController",
    "NewtonDivergenceError",
    "NonlinearStepController",
    "StepReport",
    "create_controller",
]
