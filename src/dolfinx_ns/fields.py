"""
Owned block fields.

A BlockField is the velocity/pressure pair of owned (non-ghosted) PETSc
vectors that the linear solvers operate on. Both blocks are exposed as one
VECNEST so that MATNEST operators and the outer Krylov solver see a single
vector, while the preconditioner works on the blocks directly.

The read-only ghosted counterpart used for assembly and output lives in
dolfinx_ns.discretization (GhostedBlockField).
"""

from __future__ import annotations

from petsc4py import PETSc


class BlockField:
    """Owned (velocity, pressure) vectors with contiguous, non-interleaved blocks."""

    def __init__(self, velocity: PETSc.Vec, pressure: PETSc.Vec, vec: PETSc.Vec | None = None) -> None:
        self.velocity = velocity
        self.pressure = pressure
        if vec is None:
            vec = PETSc.Vec().createNest([velocity, pressure], comm=velocity.getComm())
        self.vec = vec

    @classmethod
    def from_nest(cls, vec: PETSc.Vec) -> "BlockField":
        velocity, pressure = vec.getNestSubVecs()
        return cls(velocity, pressure, vec=vec)

    @classmethod
    def from_operator(cls, operator: PETSc.Mat) -> "BlockField":
        """Zero field laid out like the columns of a 2x2 MATNEST operator."""
        x, _ = operator.createVecs()
        x.zeroEntries()
        return cls.from_nest(x)

    @property
    def comm(self):
        return self.vec.getComm()

    @property
    def sizes(self) -> tuple[int, int]:
        """Locally owned sizes of the two blocks."""
        return self.velocity.getLocalSize(), self.pressure.getLocalSize()

    @property
    def global_sizes(self) -> tuple[int, int]:
        return self.velocity.getSize(), self.pressure.getSize()

    def copy(self) -> "BlockField":
        return BlockField(self.velocity.copy(), self.pressure.copy())

    def copy_from(self, other: "BlockField") -> None:
        other.velocity.copy(self.velocity)
        other.pressure.copy(self.pressure)

    def zero(self) -> None:
        self.velocity.zeroEntries()
        self.pressure.zeroEntries()

    def axpy(self, alpha: float, other: "BlockField") -> None:
        self.velocity.axpy(alpha, other.velocity)
        self.pressure.axpy(alpha, other.pressure)

    def norm(self) -> float:
        """Global l2 norm over both blocks (collective)."""
        return self.vec.norm()

    def destroy(self) -> None:
        self.vec.destroy()
        self.velocity.destroy()
        self.pressure.destroy()
