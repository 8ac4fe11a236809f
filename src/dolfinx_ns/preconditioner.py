"""
Block Schur-complement preconditioner for the 2x2 Navier-Stokes system.

    [ A   B^T ] [u0]   [v0]
    [ B   0   ] [u1] = [v1]

Applied as

    u1 = -(mu + gamma rho) Mp^{-1} v1 - (rho / dt) S^{-1} v1
    u0 = A^{-1} (v0 - B^T u1)

with Mp the pressure mass matrix and S = B diag(M_u)^{-1} B^T the Schur
surrogate. The object is installed as a petsc4py "python" PC context of
the outer FGMRES solver; it keeps no state between applications besides
its matrices and scratch vectors.
"""

from __future__ import annotations

from petsc4py import PETSc

from dolfinx_ns.config import INNER_REL_TOL
from dolfinx_ns.linalg import create_inner_solver, solve_to_tolerance
from dolfinx_ns.schur import SchurSurrogate, jacobi_reciprocal
from dolfinx_ns.utils import Timer


class BlockSchurPreconditioner:
    """
    Args:
        operator: 2x2 MATNEST [[A, B^T], [B, None]]
        mass: 2x2 MATNEST [[M_u, None], [None, M_p]]
        schur: surrogate whose pattern matches the B blocks of `operator`
        viscosity, density, grad_div, delta_t: physical weights of the two
            pressure-space terms
        velocity_solver: "cg" or "direct" for the A^{-1} solve
        velocity_pc: "none" or "ilu" (only used with "cg")
    """

    def __init__(
        self,
        operator: PETSc.Mat,
        mass: PETSc.Mat,
        schur: SchurSurrogate,
        *,
        viscosity: float,
        density: float,
        grad_div: float,
        delta_t: float,
        velocity_solver: str = "cg",
        velocity_pc: str = "none",
        timer: Timer | None = None,
    ) -> None:
        self.timer = timer if timer is not None else Timer()
        self.A = operator.getNestSubMatrix(0, 0)
        self.Bt = operator.getNestSubMatrix(0, 1)
        self.B = operator.getNestSubMatrix(1, 0)
        self.Mp = mass.getNestSubMatrix(1, 1)
        Mu = mass.getNestSubMatrix(0, 0)

        self.mp_weight = -(viscosity + grad_div * density)
        self.sm_weight = -density / delta_t

        with self.timer.section("CG for Sm"):
            reciprocal = jacobi_reciprocal(Mu)
            self.S = schur.rebuild(reciprocal)
            reciprocal.destroy()
        self.regularized_rows = schur.regularized_rows

        comm = operator.getComm()
        self._mp_solver = create_inner_solver(comm, self.Mp, "cg_ilu", "ns_mp_")
        self._sm_solver = create_inner_solver(comm, self.S, "cg_ilu", "ns_sm_")
        if velocity_solver == "direct":
            self._a_name = "Direct for A"
            kind = "direct"
        else:
            self._a_name = "CG for A"
            kind = "cg_ilu" if velocity_pc == "ilu" else "cg"
        with self.timer.section(self._a_name):
            self._a_solver = create_inner_solver(comm, self.A, kind, "ns_a_")

        self._ptmp = self.Mp.createVecRight()
        self._utmp = self.A.createVecRight()
        self.iterations = (0, 0, 0)

    # -- petsc4py PCPYTHON protocol -------------------------------------------
    def setUp(self, pc) -> None:
        pass

    def apply(self, pc, x: PETSc.Vec, y: PETSc.Vec) -> None:
        self.vmult(y, x)

    # -------------------------------------------------------------------------
    def vmult(self, dst: PETSc.Vec, src: PETSc.Vec) -> None:
        """dst = P^{-1} src for nest vectors laid out like the operator."""
        v0, v1 = src.getNestSubVecs()
        u0, u1 = dst.getNestSubVecs()

        with self.timer.section("CG for Mp"):
            its_mp = solve_to_tolerance(self._mp_solver, v1, self._ptmp, INNER_REL_TOL, "CG for Mp")
        self._ptmp.scale(self.mp_weight)

        with self.timer.section("CG for Sm"):
            its_sm = solve_to_tolerance(self._sm_solver, v1, u1, INNER_REL_TOL, "CG for Sm")
        u1.scale(self.sm_weight)
        u1.axpy(1.0, self._ptmp)

        # utmp = v0 - B^T u1
        self.Bt.mult(u1, self._utmp)
        self._utmp.aypx(-1.0, v0)

        with self.timer.section(self._a_name):
            its_a = solve_to_tolerance(self._a_solver, self._utmp, u0, INNER_REL_TOL, self._a_name)

        self.iterations = (its_mp, its_sm, its_a)

    def destroy(self) -> None:
        for obj in (self._mp_solver, self._sm_solver, self._a_solver, self._ptmp, self._utmp):
            obj.destroy()
