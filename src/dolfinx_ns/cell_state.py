"""
Per-quadrature-point auxiliary state for fluid-structure coupling.

An arena of contiguous arrays indexed by (local cell, quadrature point).
The mesh owns it: it is reallocated and zeroed exactly when the topology
or DOF layout changes, and written only by the external structural solver
between time steps. The assembler reads it to add the coupled-region body
force.
"""

from __future__ import annotations

import numpy as np


class MeshStateError(RuntimeError):
    """Auxiliary state does not match the current mesh (refinement sequence bug)."""


class CellAuxiliaryState:
    """
    indicator:    (n_cells, n_q)            1 marks a coupled/structural point
    acceleration: (n_cells, n_q, dim)       externally supplied acceleration
    stress:       (n_cells, n_q, dim, dim)  externally supplied stress
    """

    def __init__(self, dim: int, n_cells: int = 0, n_q: int = 0) -> None:
        self.dim = int(dim)
        self.reset(n_cells, n_q)

    def reset(self, n_cells: int, n_q: int) -> None:
        """Reallocate for a new mesh; every entry starts as fluid with zero forcing."""
        self.n_cells = int(n_cells)
        self.n_q = int(n_q)
        self.indicator = np.zeros((self.n_cells, self.n_q), dtype=np.int8)
        self.acceleration = np.zeros((self.n_cells, self.n_q, self.dim), dtype=np.float64)
        self.stress = np.zeros((self.n_cells, self.n_q, self.dim, self.dim), dtype=np.float64)

    def check(self, n_cells: int, n_q: int) -> None:
        if (self.n_cells, self.n_q) != (n_cells, n_q):
            raise MeshStateError(
                f"Wrong number of cell properties: state holds {self.n_cells} cells x "
                f"{self.n_q} points, mesh has {n_cells} cells x {n_q} points"
            )
        for name, arr, tail in (
            ("indicator", self.indicator, ()),
            ("acceleration", self.acceleration, (self.dim,)),
            ("stress", self.stress, (self.dim, self.dim)),
        ):
            if arr.shape != (n_cells, n_q) + tail:
                raise MeshStateError(f"{name} has shape {arr.shape}, expected {(n_cells, n_q) + tail}")

    def set_cell(
        self,
        cell: int,
        *,
        indicator=None,
        acceleration=None,
        stress=None,
    ) -> None:
        """Write side for the coupling collaborator; values broadcast over quadrature points."""
        if not 0 <= cell < self.n_cells:
            raise IndexError(f"Cell handle {cell} outside [0, {self.n_cells})")
        if indicator is not None:
            self.indicator[cell] = indicator
        if acceleration is not None:
            self.acceleration[cell] = acceleration
        if stress is not None:
            self.stress[cell] = stress

    def coupled_cells(self) -> np.ndarray:
        """Per-cell binary indicator: 1 where any quadrature point is coupled."""
        if self.n_q == 0:
            return np.zeros(self.n_cells, dtype=np.int8)
        return (self.indicator == 1).any(axis=1).astype(np.int8)

    @property
    def any_coupled(self) -> bool:
        return bool(self.indicator.any())
