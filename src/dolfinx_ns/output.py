"""
Snapshot export.

Every snapshot writes three VTX files into the case snapshot directory
(velocity, pressure, cell fields) named by the zero-padded output index,
and appends (time, name) to an index that is dumped to the case
snapshot list.
A new writer is opened per snapshot because the mesh may have changed.
"""

from __future__ import annotations

from dolfinx.fem import Function, functionspace
from dolfinx.io import VTXWriter

from dolfinx_ns.discretization import Discretization
from dolfinx_ns.utils import CasePaths, write_json


class SnapshotWriter:
    def __init__(self, discretization: Discretization, paths: CasePaths, *, enabled: bool = True) -> None:
        self.disc = discretization
        self.paths = paths
        self.enabled = enabled
        self.times_and_names: list[tuple[float, str]] = []
        self.output_index = 0

    def cell_fields(self) -> tuple[Function, Function]:
        """DG0 coupled-region indicator and MPI partition id."""
        domain = self.disc.mesh
        W = functionspace(domain, ("DG", 0))
        n_owned = self.disc.n_owned_cells
        owned = W.dofmap.list[:n_owned, 0]

        indicator = Function(W, name="indicator")
        indicator.x.array[owned] = self.disc.cell_state.coupled_cells()
        indicator.x.scatter_forward()

        partition = Function(W, name="partition")
        partition.x.array[owned] = float(domain.comm.rank)
        partition.x.scatter_forward()
        return indicator, partition

    def write(self, time: float) -> str | None:
        """Write the current ghosted solution; returns the snapshot name."""
        if not self.enabled:
            return None
        name = f"navierstokes-{self.output_index:06d}"
        snps = self.paths.snps_dir
        comm = self.disc.comm
        if comm.rank == 0:
            snps.mkdir(parents=True, exist_ok=True)
        comm.barrier()

        ghosted = self.disc.ghosted
        indicator, partition = self.cell_fields()
        for suffix, functions in (
            ("velocity", [ghosted.velocity]),
            ("pressure", [ghosted.pressure]),
            ("cells", [indicator, partition]),
        ):
            writer = VTXWriter(comm, snps / f"{name}-{suffix}.bp", functions, engine="BP4")
            writer.write(time)
            writer.close()

        self.times_and_names.append((float(time), name))
        self.output_index += 1
        if comm.rank == 0:
            write_json(
                self.paths.snapshots_json,
                [{"time": t, "name": n} for t, n in self.times_and_names],
            )
        return name
