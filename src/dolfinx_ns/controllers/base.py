"""
Abstract base class for nonlinear step controllers.

A controller advances the present solution by one time step:
- asks the assembler for the linearized block system
- (re)builds the block Schur preconditioner when matrices were rebuilt
- runs the outer FGMRES solve and folds the increment into the solution

Controllers never touch DOLFINx directly. Anything that can produce the
2x2 MATNEST operator, mass operator and right-hand side (the finite
element assembler, or a hand-built algebraic system in tests) plugs in
through the Assembler protocol.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Protocol

from petsc4py import PETSc

from dolfinx_ns.config import FluidParams, SolveParams
from dolfinx_ns.constraints import ConstraintPair, ConstraintSet
from dolfinx_ns.fields import BlockField
from dolfinx_ns.krylov import KrylovResult, OuterKrylovSolver
from dolfinx_ns.preconditioner import BlockSchurPreconditioner
from dolfinx_ns.schur import SchurSurrogate
from dolfinx_ns.time_state import TimeState
from dolfinx_ns.utils import Timer


@dataclass
class AssembledSystem:
    """
    Output of one assembly.

    operator: MATNEST [[A, B^T], [B, None]]
    mass:     MATNEST [[M_u, None], [None, M_p]]
    rhs:      right-hand side with the selected constraints applied
    constraints: the constraint set the rhs was built with
    rebuilt:  whether operator/mass values were recomputed
    """

    operator: PETSc.Mat
    mass: PETSc.Mat
    rhs: BlockField
    constraints: ConstraintSet
    rebuilt: bool


class Assembler(Protocol):
    constraints: ConstraintPair

    def assemble(
        self,
        current: BlockField,
        present: BlockField,
        *,
        apply_nonzero_constraints: bool,
        rebuild_matrices: bool,
    ) -> AssembledSystem:
        """
        Linearize about `current` (the present solution for IMEX, the
        Newton evaluation point otherwise). `present` is the last accepted
        time level. Matrices are recomputed only if `rebuild_matrices`; the
        right-hand side always is.
        """
        ...


@dataclass
class StepReport:
    """What one call to advance() did."""

    timestep: int
    time: float
    rebuilt: bool = False
    residuals: list[float] = field(default_factory=list)
    relative_residuals: list[float] = field(default_factory=list)
    krylov: list[KrylovResult] = field(default_factory=list)
    regularized_rows: int = 0

    @property
    def iterations(self) -> int:
        """Nonlinear iterations (1 for IMEX)."""
        return len(self.krylov)

    @property
    def krylov_iterations(self) -> int:
        return sum(k.iterations for k in self.krylov)


class NonlinearStepController(ABC):
    """
    Shared machinery: preconditioner lifecycle and outer solve.

    The Schur surrogate's sparsity pattern is derived from the first
    assembled B blocks of a DOF layout and reused afterwards. invalidate()
    must be called whenever the layout changes (mesh refinement); it drops
    the surrogate and the preconditioner so the next step starts over.
    """

    def __init__(
        self,
        assembler: Assembler,
        fluid: FluidParams,
        solve: SolveParams,
        comm,
        timer: Timer | None = None,
    ) -> None:
        self.assembler = assembler
        self.fluid = fluid
        self.solve_params = solve
        self.comm = comm
        self.timer = timer if timer is not None else Timer(comm)
        self.krylov = OuterKrylovSolver(comm)
        self.velocity_solver = solve.velocity_solver or self.default_velocity_solver
        self._schur: SchurSurrogate | None = None
        self._preconditioner: BlockSchurPreconditioner | None = None
        self.preconditioner_builds = 0

    # ── Metadata ──────────────────────────────────────────────────

    @property
    @abstractmethod
    def kind(self) -> str:
        """Config name, e.g. 'imex'."""

    @property
    @abstractmethod
    def default_velocity_solver(self) -> str:
        """'cg' or 'direct' when the config leaves it empty."""

    # ── Lifecycle ─────────────────────────────────────────────────

    @abstractmethod
    def advance(self, present: BlockField, time: TimeState) -> StepReport:
        """Advance `present` in place by one step of `time.delta_t`."""

    def invalidate(self) -> None:
        """Forget everything tied to the current DOF layout."""
        if self._preconditioner is not None:
            self._preconditioner.destroy()
            self._preconditioner = None
        if self._schur is not None:
            self._schur.destroy()
            self._schur = None

    @property
    def preconditioner(self) -> BlockSchurPreconditioner | None:
        return self._preconditioner

    def _build_preconditioner(self, system: AssembledSystem, delta_t: float) -> BlockSchurPreconditioner:
        B = system.operator.getNestSubMatrix(1, 0)
        Bt = system.operator.getNestSubMatrix(0, 1)
        if self._schur is not None and not self._schur.matches(B, Bt):
            # New block objects mean a new layout the caller did not announce.
            self.invalidate()
        if self._schur is None:
            self._schur = SchurSurrogate(B, Bt)
        if self._preconditioner is not None:
            self._preconditioner.destroy()
        self._preconditioner = BlockSchurPreconditioner(
            system.operator,
            system.mass,
            self._schur,
            viscosity=self.fluid.viscosity,
            density=self.fluid.density,
            grad_div=self.fluid.grad_div,
            delta_t=delta_t,
            velocity_solver=self.velocity_solver,
            velocity_pc=self.solve_params.velocity_pc,
            timer=self.timer,
        )
        self.preconditioner_builds += 1
        return self._preconditioner

    def _solve(self, system: AssembledSystem, x: BlockField) -> KrylovResult:
        if self._preconditioner is None:
            raise RuntimeError("Preconditioner requested before it was built")
        with self.timer.section("Solve linear system"):
            return self.krylov.solve(system.operator, x, system.rhs, self._preconditioner, system.constraints)
