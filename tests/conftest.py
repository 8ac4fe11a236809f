"""
Shared fixtures: a small algebraic saddle-point system.

The toy problem mimics a 1D discretization with N velocity and N/2
pressure unknowns:

    F_u = mu K u + rho/dt Mu (u - u_n) + c h u^3 + B^T p - f
    F_p = B u

with Dirichlet values on the first and last velocity DOF, eliminated
symmetrically (identity rows and zeroed columns, lifted right-hand side)
the same way the finite element assembler does it. Only petsc4py and
numpy are needed.
"""

import numpy as np
import pytest
from petsc4py import PETSc

from dolfinx_ns.config import FluidParams, SolveParams
from dolfinx_ns.constraints import ConstraintPair, ConstraintSet
from dolfinx_ns.controllers.base import AssembledSystem
from dolfinx_ns.fields import BlockField


def _tridiag(n, lower, diag, upper):
    return np.diag(np.full(n, diag)) + np.diag(np.full(n - 1, lower), -1) + np.diag(np.full(n - 1, upper), 1)


def create_aij(mask: np.ndarray) -> PETSc.Mat:
    """Sequential AIJ matrix preallocated with exactly the pattern of `mask`."""
    m, n = mask.shape
    indptr = np.concatenate([[0], np.cumsum(mask.sum(axis=1))]).astype(PETSc.IntType)
    indices = np.concatenate([np.flatnonzero(row) for row in mask]).astype(PETSc.IntType)
    A = PETSc.Mat().createAIJ(
        size=(m, n), csr=(indptr, indices, np.zeros(indices.size)), comm=PETSc.COMM_SELF
    )
    A.assemble()
    return A


def fill_aij(A: PETSc.Mat, mask: np.ndarray, dense: np.ndarray) -> None:
    """Overwrite the values of A on its pattern (explicit zeros are kept)."""
    indptr = np.concatenate([[0], np.cumsum(mask.sum(axis=1))]).astype(PETSc.IntType)
    indices = np.concatenate([np.flatnonzero(row) for row in mask]).astype(PETSc.IntType)
    A.zeroEntries()
    A.setValuesCSR(indptr, indices, dense[mask])
    A.assemble()


def seq_vec(values) -> PETSc.Vec:
    values = np.asarray(values, dtype=PETSc.ScalarType)
    v = PETSc.Vec().createSeq(values.size, comm=PETSc.COMM_SELF)
    v.getArray()[:] = values
    return v


def dense(A: PETSc.Mat) -> np.ndarray:
    m, n = A.getSize()
    return A.getValues(range(m), range(n))


class ToyAssembler:
    """Assembler protocol implementation for the toy saddle-point problem."""

    def __init__(
        self,
        n_velocity: int = 40,
        *,
        viscosity: float = 0.01,
        density: float = 1.0,
        delta_t: float = 0.01,
        cubic: float = 1.0,
        linearization: str = "imex",
        bc_values=(1.0, 0.5),
    ) -> None:
        N = n_velocity
        M = N // 2
        h = 1.0 / N
        self.N, self.M, self.h = N, M, h
        self.mu, self.rho, self.dt, self.c = viscosity, density, delta_t, cubic
        self.linearization = linearization

        self.K = _tridiag(N, -1.0, 2.0, -1.0) / h
        self.Mu = _tridiag(N, 1.0, 4.0, 1.0) * h / 6.0
        self.B = np.zeros((M, N))
        for i in range(M):
            self.B[i, 2 * i] = -1.0
            self.B[i, 2 * i + 1] = 1.0
        self.Mp = np.eye(M) * h
        self.f = np.full(N, h)

        self.bc_dofs = np.array([0, N - 1], dtype=np.int32)
        self.bc_values = np.asarray(bc_values, dtype=np.float64)
        self.free = np.setdiff1d(np.arange(N), self.bc_dofs)

        tri = _tridiag(N, 1.0, 1.0, 1.0).astype(bool)
        self.masks = {
            "A": tri,
            "Bt": self.B.T != 0.0,
            "B": self.B != 0.0,
            "Mu": tri,
            "Mp": np.eye(M, dtype=bool),
        }
        self.mats = {key: create_aij(mask) for key, mask in self.masks.items()}
        self.operator = PETSc.Mat().createNest(
            [[self.mats["A"], self.mats["Bt"]], [self.mats["B"], None]], comm=PETSc.COMM_SELF
        )
        self.mass = PETSc.Mat().createNest(
            [[self.mats["Mu"], None], [None, self.mats["Mp"]]], comm=PETSc.COMM_SELF
        )
        self.rhs = BlockField(seq_vec(np.zeros(N)), seq_vec(np.zeros(M)))

        nonzero = ConstraintSet("nonzero", self.bc_dofs, self.bc_values)
        self.constraints = ConstraintPair(zero=nonzero.zero_like(), nonzero=nonzero)
        self.calls: list[dict] = []

    # ── Helpers ───────────────────────────────────────────────────

    def new_field(self) -> BlockField:
        return BlockField.from_operator(self.operator)

    def jacobian(self, uc: np.ndarray) -> np.ndarray:
        A = self.mu * self.K + self.rho / self.dt * self.Mu
        A = A + np.diag(3.0 * self.c * self.h * uc**2)
        return A

    def residual(self, uc, pc, un) -> tuple[np.ndarray, np.ndarray]:
        Fu = self.mu * self.K @ uc + self.c * self.h * uc**3 + self.B.T @ pc - self.f
        if self.linearization == "newton":
            Fu = Fu + self.rho / self.dt * self.Mu @ (uc - un)
        return Fu, self.B @ uc

    def _eliminate(self, dense_mat: np.ndarray, rows: bool, cols: bool, diag: bool) -> np.ndarray:
        out = dense_mat.copy()
        if rows:
            out[self.bc_dofs, :] = 0.0
        if cols:
            out[:, self.bc_dofs] = 0.0
        if diag:
            out[self.bc_dofs, self.bc_dofs] = 1.0
        return out

    # ── Assembler protocol ────────────────────────────────────────

    def assemble(self, current, present, *, apply_nonzero_constraints, rebuild_matrices):
        uc = current.velocity.getArray(readonly=True).copy()
        pc = current.pressure.getArray(readonly=True).copy()
        un = present.velocity.getArray(readonly=True).copy()
        self.calls.append({"apply_nonzero": apply_nonzero_constraints, "rebuild": rebuild_matrices})

        if self.linearization == "newton":
            J = self.jacobian(uc)
        else:
            J = self.mu * self.K + self.rho / self.dt * self.Mu

        if rebuild_matrices:
            fill_aij(self.mats["A"], self.masks["A"], self._eliminate(J, True, True, True))
            fill_aij(self.mats["Bt"], self.masks["Bt"], self._eliminate(self.B.T, True, False, False))
            fill_aij(self.mats["B"], self.masks["B"], self._eliminate(self.B, False, True, False))
            fill_aij(self.mats["Mu"], self.masks["Mu"], self._eliminate(self.Mu, True, True, True))
            fill_aij(self.mats["Mp"], self.masks["Mp"], self.Mp)
            self.operator.assemble()
            self.mass.assemble()

        Fu, Fp = self.residual(uc, pc, un)
        ru, rp = -Fu, -Fp
        if apply_nonzero_constraints:
            shift = self.bc_values - uc[self.bc_dofs]
            ru = ru - J[:, self.bc_dofs] @ shift
            rp = rp - self.B[:, self.bc_dofs] @ shift
            ru[self.bc_dofs] = shift
            constraints = self.constraints.nonzero
        else:
            ru[self.bc_dofs] = 0.0
            constraints = self.constraints.zero
        self.rhs.velocity.getArray()[:] = ru
        self.rhs.pressure.getArray()[:] = rp

        return AssembledSystem(self.operator, self.mass, self.rhs, constraints, rebuild_matrices)


@pytest.fixture
def toy_imex():
    return ToyAssembler(linearization="imex")


@pytest.fixture
def toy_newton():
    return ToyAssembler(linearization="newton")


@pytest.fixture
def fluid():
    return FluidParams(viscosity=0.01, density=1.0, grad_div=0.0)


@pytest.fixture
def imex_params():
    return SolveParams(controller="imex")


@pytest.fixture
def newton_params():
    return SolveParams(controller="newton", tolerance=1e-10, max_iterations=8)
