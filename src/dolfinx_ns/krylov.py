"""Outer flexible GMRES solve of the block system."""

from __future__ import annotations

from dataclasses import dataclass

from petsc4py import PETSc

from dolfinx_ns.config import GMRES_RESTART, OUTER_REL_TOL
from dolfinx_ns.constraints import ConstraintSet
from dolfinx_ns.fields import BlockField
from dolfinx_ns.linalg import SolverConvergenceError


@dataclass(frozen=True)
class KrylovResult:
    iterations: int
    residual: float
    relative_residual: float
    # residual norm before the first and after every iteration
    history: tuple[float, ...] = ()


class OuterKrylovSolver:
    """
    FGMRES with the block preconditioner applied from the right.

    The preconditioner changes between applications (its inner solves are
    themselves iterative), hence the flexible variant. Tolerance is absolute,
    `rel_tol * ||rhs||`; the iteration budget is the velocity block's global
    DOF count.
    """

    def __init__(self, comm, *, rel_tol: float = OUTER_REL_TOL, restart: int = GMRES_RESTART) -> None:
        self.comm = comm
        self.rel_tol = float(rel_tol)
        self.restart = int(restart)

    def solve(
        self,
        operator: PETSc.Mat,
        x: BlockField,
        rhs: BlockField,
        preconditioner,
        constraints: ConstraintSet | None = None,
    ) -> KrylovResult:
        """Overwrite x with the solution, then distribute constraints into it."""
        rhs_norm = rhs.norm()
        if rhs_norm == 0.0:
            x.zero()
            if constraints is not None:
                constraints.distribute(x)
            return KrylovResult(0, 0.0, 0.0)

        ksp = PETSc.KSP().create(self.comm)
        ksp.setOptionsPrefix("ns_outer_")
        ksp.setType(PETSc.KSP.Type.FGMRES)
        ksp.setGMRESRestart(self.restart)
        ksp.setOperators(operator)
        ksp.setPCSide(PETSc.PC.Side.RIGHT)
        ksp.setNormType(PETSc.KSP.NormType.UNPRECONDITIONED)
        pc = ksp.getPC()
        pc.setType(PETSc.PC.Type.PYTHON)
        pc.setPythonContext(preconditioner)
        ksp.setTolerances(rtol=0.0, atol=self.rel_tol * rhs_norm, max_it=x.global_sizes[0])
        ksp.setInitialGuessNonzero(False)
        ksp.setFromOptions()
        ksp.setConvergenceHistory()

        ksp.solve(rhs.vec, x.vec)
        reason = ksp.getConvergedReason()
        its = ksp.getIterationNumber()
        res = ksp.getResidualNorm()
        history = tuple(float(r) for r in ksp.getConvergenceHistory())
        ksp.destroy()
        if reason < 0:
            raise SolverConvergenceError("FGMRES", its, res, reason)

        if constraints is not None:
            constraints.distribute(x)
        return KrylovResult(its, res, res / rhs_norm, history)


def residual_norm(operator: PETSc.Mat, x: BlockField, rhs: BlockField) -> float:
    """||operator x - rhs|| (collective)."""
    r = rhs.vec.duplicate()
    operator.mult(x.vec, r)
    r.axpy(-1.0, rhs.vec)
    out = r.norm()
    r.destroy()
    return out
