"""
Approximate Schur complement.

The pressure-space surrogate S = B diag(M_u)^{-1} B^T stands in for the
true Schur complement B A^{-1} B^T. The diagonal lives in its own AIJ
matrix so both products keep their patterns: they are derived once per
DOF layout and every later rebuild refills values in place.
"""

from __future__ import annotations

import numpy as np
from mpi4py import MPI
from petsc4py import PETSc


def jacobi_reciprocal(M: PETSc.Mat) -> PETSc.Vec:
    """Return 1 / diag(M), the action of M's Jacobi preconditioner."""
    out = M.getDiagonal()
    out.reciprocal()
    return out


class SchurSurrogate:
    """
    Pressure-space matrix B D^{-1} B^T with a fixed, precomputed pattern.

    Args:
        B: pressure-velocity block (divergence)
        Bt: velocity-pressure block (gradient)
    """

    def __init__(self, B: PETSc.Mat, Bt: PETSc.Mat) -> None:
        self._B = B
        self._Bt = Bt
        rows = Bt.getSizes()[0]
        # the matrix to later insert the diagonal
        self._dinv = PETSc.Mat().createAIJ((rows, rows), nnz=(1, 0), comm=Bt.getComm())
        self._dinv.setUp()
        self._dinv.assemble()
        self._dinv.shift(1.0)
        # Symbolic + numeric products: the only place the patterns are derived.
        self._dinv_bt = self._dinv.matMult(Bt)
        self.matrix = B.matMult(self._dinv_bt)
        self.matrix.setOption(PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR, False)
        self.regularized_rows = 0
        self.builds = 0

    def matches(self, B: PETSc.Mat, Bt: PETSc.Mat) -> bool:
        """True if the surrogate was created for exactly these block objects."""
        return B.handle == self._B.handle and Bt.handle == self._Bt.handle

    def rebuild(self, reciprocal: PETSc.Vec) -> PETSc.Mat:
        """Refill S = B diag(reciprocal) B^T reusing the stored patterns."""
        self._dinv.setDiagonal(reciprocal, addv=PETSc.InsertMode.INSERT)
        self._dinv.matMult(self._Bt, result=self._dinv_bt)  # diag^{-1} Bt
        self._B.matMult(self._dinv_bt, result=self.matrix)  # B diag^{-1} Bt
        self.regularized_rows = self._regularize_diagonal()
        self.builds += 1
        return self.matrix

    def _regularize_diagonal(self) -> int:
        """
        Replace (numerically) zero diagonal entries by the largest diagonal magnitude.

        Pressure rows whose velocity couplings were all eliminated by Dirichlet
        constraints come out of the product with an empty row; incomplete
        factorizations of S would then hit a zero pivot. Returns the global
        number of rows changed.
        """
        comm = self.matrix.getComm().tompi4py()
        diag = self.matrix.getDiagonal()
        d = diag.getArray(readonly=True)
        local_max = float(np.max(np.abs(d))) if d.size else 0.0
        scale = comm.allreduce(local_max, op=MPI.MAX)
        tiny = 1e-14 * scale
        mask = np.abs(d) <= tiny
        count = int(comm.allreduce(int(mask.sum())))
        if count:
            fixed = d.copy()
            fixed[mask] = scale if scale > 0.0 else 1.0
            diag.setArray(fixed)
            self.matrix.setDiagonal(diag, addv=PETSc.InsertMode.INSERT_VALUES)
        diag.destroy()
        return count

    def destroy(self) -> None:
        for mat in (self.matrix, self._dinv_bt, self._dinv):
            mat.destroy()
