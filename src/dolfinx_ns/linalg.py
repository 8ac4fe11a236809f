"""
Inner iterative/direct solves used by the block preconditioner.

Every inner solve runs against an absolute tolerance `rel_tol * ||rhs||`
and an iteration budget equal to the size of its block. Exceeding the
budget or any other PETSc divergence is fatal: SolverConvergenceError is
raised and the time step is aborted.
"""

from __future__ import annotations

from petsc4py import PETSc

INNER_SOLVER_KINDS = ("cg", "cg_ilu", "direct")


class SolverConvergenceError(RuntimeError):
    """A linear solve failed to reach its tolerance within the iteration budget."""

    def __init__(self, name: str, iterations: int, residual: float, reason: int) -> None:
        self.name = name
        self.iterations = iterations
        self.residual = residual
        self.reason = reason
        super().__init__(
            f"{name} did not converge: reason={converged_reason_name(reason)} "
            f"after {iterations} iterations (residual {residual:.3e})"
        )


def converged_reason_name(reason: int) -> str:
    for key, value in vars(PETSc.KSP.ConvergedReason).items():
        if not key.startswith("_") and value == reason:
            return key
    return str(reason)


def has_mumps() -> bool:
    return bool(PETSc.Sys.hasExternalPackage("mumps"))


def create_inner_solver(comm, mat: PETSc.Mat, kind: str, prefix: str) -> PETSc.KSP:
    """
    Build and set up a KSP for one diagonal block.

    kind:
        "cg"      conjugate gradient, no preconditioner
        "cg_ilu"  conjugate gradient, ILU(0) (block-Jacobi ILU(0) in parallel)
                  with a nonzero pivot shift
        "direct"  sparse LU, MUMPS when PETSc was built with it
    """
    if kind not in INNER_SOLVER_KINDS:
        raise ValueError(f"Unknown inner solver '{kind}'. Supported: {', '.join(INNER_SOLVER_KINDS)}")

    ksp = PETSc.KSP().create(comm)
    ksp.setOptionsPrefix(prefix)
    ksp.setOperators(mat)
    pc = ksp.getPC()

    if kind == "direct":
        ksp.setType(PETSc.KSP.Type.PREONLY)
        pc.setType(PETSc.PC.Type.LU)
        if has_mumps():
            pc.setFactorSolverType("mumps")
    else:
        ksp.setType(PETSc.KSP.Type.CG)
        ksp.setNormType(PETSc.KSP.NormType.UNPRECONDITIONED)
        if kind == "cg_ilu":
            if comm.size == 1:
                pc.setType(PETSc.PC.Type.ILU)
                pc.setFactorShift(shift_type=PETSc.Mat.FactorShiftType.NONZERO)
            else:
                opts = PETSc.Options()
                opts[f"{prefix}sub_pc_type"] = "ilu"
                opts[f"{prefix}sub_pc_factor_shift_type"] = "nonzero"
                pc.setType(PETSc.PC.Type.BJACOBI)
        else:
            pc.setType(PETSc.PC.Type.NONE)

    ksp.setFromOptions()
    ksp.setUp()
    return ksp


def solve_to_tolerance(ksp: PETSc.KSP, rhs: PETSc.Vec, x: PETSc.Vec, rel_tol: float, name: str) -> int:
    """
    Solve ksp to ||r|| <= rel_tol * ||rhs|| within rhs.getSize() iterations.

    Returns the iteration count. A zero right-hand side yields x = 0 without
    calling the solver.
    """
    rhs_norm = rhs.norm()
    if rhs_norm == 0.0:
        x.zeroEntries()
        return 0
    ksp.setTolerances(rtol=0.0, atol=rel_tol * rhs_norm, max_it=rhs.getSize())
    ksp.solve(rhs, x)
    reason = ksp.getConvergedReason()
    its = ksp.getIterationNumber()
    if reason < 0:
        raise SolverConvergenceError(name, its, ksp.getResidualNorm(), reason)
    return its
