"""
dolfinx-ns: incompressible Navier-Stokes with block Schur preconditioning for DOLFINx.

Taylor-Hood discretization, IMEX or Newton time stepping, an FGMRES outer
solver with a block preconditioner built on an approximate Schur
complement, and adaptive mesh refinement with solution transfer.

Requirements:
    - DOLFINx 0.10.0+ (for the finite element layer)
    - petsc4py, mpi4py, numpy, matplotlib

The algebraic core (fields, constraints, preconditioner, Krylov solver,
step controllers, refinement flagging) only needs petsc4py and mpi4py.

Example:
    from dolfinx_ns.solver import NavierStokesSolver
    from dolfinx_ns.utils import CasePaths
    solver = NavierStokesSolver(geom, fluid, time_params, solve, amr, case=CasePaths.under("results"))
    solver.run()
"""

__version__ = "0.1.0"

from dolfinx_ns.config import (
    AMRParams,
    ChannelGeom,
    ConfigurationError,
    FluidParams,
    SolveParams,
    TimeParams,
)
from dolfinx_ns.controllers import NewtonDivergenceError, create_controller
from dolfinx_ns.fields import BlockField
from dolfinx_ns.linalg import SolverConvergenceError
from dolfinx_ns.time_state import TimeState

__all__ = [
    "__version__",
    "AMRParams",
    "BlockField",
    "ChannelGeom",
    "ConfigurationError",
    "FluidParams",
    "NewtonDivergenceError",
    "SolveParams",
    "SolverConvergenceError",
    "TimeParams",
    "TimeState",
    "create_controller",
]
