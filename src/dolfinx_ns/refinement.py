"""
Adaptive refinement: error-fraction flagging and the refine/transfer sequence.

The orchestrator runs, in this order and without any solve in between:

    estimate -> flag -> snapshot solution -> change topology
    -> rebuild DOF layout / constraints / matrices / cell state
    -> interpolate snapshot -> distribute nonzero constraints

and returns the transferred present solution. Anything tied to the old
layout (preconditioners, Schur patterns) is told through `on_rebuild`.
When the flags leave the mesh untouched the rebuild is skipped and
`present` itself is returned.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

import numpy as np

from dolfinx_ns.config import AMRParams
from dolfinx_ns.constraints import ConstraintPair
from dolfinx_ns.fields import BlockField
from dolfinx_ns.utils import Timer


class AdaptiveDiscretization(Protocol):
    comm: Any
    constraints: ConstraintPair
    n_cells_global: int
    n_dofs: tuple[int, int]

    def estimate(self, field: BlockField) -> np.ndarray:
        """Per owned cell error indicator of the velocity."""
        ...

    def cell_levels(self) -> np.ndarray:
        """Per owned cell refinement level relative to the coarse mesh."""
        ...

    def snapshot(self, field: BlockField) -> Any:
        ...

    def execute(self, refine: np.ndarray, coarsen: np.ndarray) -> bool:
        """Change the topology; False if nothing changed."""
        ...

    def setup(self) -> None:
        ...

    def interpolate(self, snapshot: Any) -> BlockField:
        ...


def _top_threshold(values: np.ndarray, target: float) -> float:
    """Smallest value among the largest entries whose sum first reaches target."""
    ordered = np.sort(values)[::-1]
    k = int(np.searchsorted(np.cumsum(ordered), target, side="left"))
    return float(ordered[min(k, ordered.size - 1)])


def _bottom_threshold(values: np.ndarray, target: float) -> float:
    """Largest value among the smallest entries whose sum stays within target."""
    ordered = np.sort(values)
    k = int(np.searchsorted(np.cumsum(ordered), target, side="right")) - 1
    return float(ordered[k]) if k >= 0 else -np.inf


def flag_fixed_fraction(
    errors,
    levels,
    *,
    refine_fraction: float = 0.6,
    coarsen_fraction: float = 0.4,
    min_level: int = 0,
    max_level: int = 1,
    comm=None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Flag cells by fraction of the total (global) error.

    Cells carrying the largest `refine_fraction` of the error are flagged
    for refinement, those carrying the smallest `coarsen_fraction` for
    coarsening. Refinement is dropped at `max_level`, coarsening at
    `min_level`; no cell is flagged both ways. An all-zero indicator flags
    nothing.

    Returns (refine, coarsen) boolean arrays over the local cells.
    """
    errors = np.asarray(errors, dtype=np.float64)
    levels = np.asarray(levels)
    if errors.shape != levels.shape:
        raise ValueError(f"errors {errors.shape} and levels {levels.shape} differ in shape")

    if comm is not None and comm.size > 1:
        everything = np.concatenate(comm.allgather(errors))
    else:
        everything = errors

    refine = np.zeros(errors.shape, dtype=bool)
    coarsen = np.zeros(errors.shape, dtype=bool)
    total = float(everything.sum())
    if everything.size == 0 or total <= 0.0:
        return refine, coarsen

    if refine_fraction > 0.0:
        refine = errors >= _top_threshold(everything, refine_fraction * total)
    if coarsen_fraction > 0.0:
        coarsen = errors <= _bottom_threshold(everything, coarsen_fraction * total)

    refine &= levels < max_level
    coarsen &= levels > min_level
    coarsen &= ~refine
    return refine, coarsen


@dataclass(frozen=True)
class RefinementReport:
    refined: int
    coarsened: int
    cells_before: int
    cells_after: int
    dofs_before: tuple[int, int]
    dofs_after: tuple[int, int]


class RefinementOrchestrator:
    def __init__(
        self,
        discretization: AdaptiveDiscretization,
        params: AMRParams,
        *,
        on_rebuild: Sequence[Callable[[], None]] = (),
        timer: Timer | None = None,
    ) -> None:
        self.discretization = discretization
        self.params = params
        self.on_rebuild = list(on_rebuild)
        self.timer = timer if timer is not None else Timer()
        self.last_report: RefinementReport | None = None

    def refine(self, present: BlockField) -> BlockField:
        """Adapt the mesh to `present`; return the solution on the new layout."""
        disc = self.discretization
        comm = disc.comm
        cells_before, dofs_before = disc.n_cells_global, disc.n_dofs
        with self.timer.section("Refine mesh"):
            errors = disc.estimate(present)
            refine, coarsen = flag_fixed_fraction(
                errors,
                disc.cell_levels(),
                refine_fraction=self.params.refine_fraction,
                coarsen_fraction=self.params.coarsen_fraction,
                min_level=self.params.min_level,
                max_level=self.params.max_level,
                comm=comm,
            )
            snapshot = disc.snapshot(present)
            if disc.execute(refine, coarsen):
                disc.setup()
                for callback in self.on_rebuild:
                    callback()
                transferred = disc.interpolate(snapshot)
                disc.constraints.nonzero.distribute(transferred)
            else:
                transferred = present

        n_ref = int(refine.sum())
        n_coa = int(coarsen.sum())
        if comm is not None:
            n_ref = comm.allreduce(n_ref)
            n_coa = comm.allreduce(n_coa)
        self.last_report = RefinementReport(
            n_ref, n_coa, cells_before, disc.n_cells_global, dofs_before, disc.n_dofs
        )
        return transferred
