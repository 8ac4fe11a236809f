"""
Constraint sets.

Two live instances exist per DOF layout: the nonzero set carries the
absolute boundary data and is used for the very first linearization and
to restore the present solution after mesh transfer; the zero set
constrains increments. Both are rebuilt whenever the DOF layout changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np

from dolfinx_ns.fields import BlockField

_EMPTY_DOFS = np.zeros(0, dtype=np.int32)
_EMPTY_VALUES = np.zeros(0, dtype=np.float64)


@dataclass
class ConstraintSet:
    """
    Constrained owned DOFs per block and their prescribed values.

    Indices are local to the owned part of each block. `bcs` holds the
    discretization-level objects (DOLFINx DirichletBCs) that the assembler
    needs to eliminate the same DOFs from the operator; the core solver
    never looks inside them.
    """

    kind: str  # "zero" or "nonzero"
    velocity_dofs: np.ndarray = field(default_factory=lambda: _EMPTY_DOFS)
    velocity_values: np.ndarray = field(default_factory=lambda: _EMPTY_VALUES)
    pressure_dofs: np.ndarray = field(default_factory=lambda: _EMPTY_DOFS)
    pressure_values: np.ndarray = field(default_factory=lambda: _EMPTY_VALUES)
    bcs: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        if self.kind not in {"zero", "nonzero"}:
            raise ValueError(f"ConstraintSet kind must be 'zero' or 'nonzero', got '{self.kind}'")
        self.velocity_dofs = np.asarray(self.velocity_dofs, dtype=np.int32)
        self.pressure_dofs = np.asarray(self.pressure_dofs, dtype=np.int32)
        self.velocity_values = np.broadcast_to(
            np.asarray(self.velocity_values, dtype=np.float64), self.velocity_dofs.shape
        ).copy()
        self.pressure_values = np.broadcast_to(
            np.asarray(self.pressure_values, dtype=np.float64), self.pressure_dofs.shape
        ).copy()
        if self.kind == "zero":
            self.velocity_values[:] = 0.0
            self.pressure_values[:] = 0.0

    @property
    def constrained_count(self) -> int:
        """Number of locally owned constrained DOFs."""
        return int(self.velocity_dofs.size + self.pressure_dofs.size)

    def distribute(self, target: BlockField) -> None:
        """Overwrite constrained entries of an owned field with their prescribed values."""
        if self.velocity_dofs.size:
            target.velocity.array[self.velocity_dofs] = self.velocity_values
        if self.pressure_dofs.size:
            target.pressure.array[self.pressure_dofs] = self.pressure_values

    def zero_like(self, bcs: tuple[Any, ...] | None = None) -> "ConstraintSet":
        """The homogeneous variant over the same DOFs."""
        return ConstraintSet(
            "zero",
            self.velocity_dofs.copy(),
            np.zeros_like(self.velocity_values),
            self.pressure_dofs.copy(),
            np.zeros_like(self.pressure_values),
            self.bcs if bcs is None else tuple(bcs),
        )


@dataclass
class ConstraintPair:
    """The zero and nonzero constraint sets of one DOF layout."""

    zero: ConstraintSet
    nonzero: ConstraintSet

    def select(self, use_nonzero: bool) -> ConstraintSet:
        return self.nonzero if use_nonzero else self.zero
