"""
Incompressible Navier-Stokes time stepper for dolfinx-ns.

Wires the pieces together:
- Discretization (mesh, Taylor-Hood spaces, constraints, cell state)
- NavierStokesAssembler (weak forms, block matrices)
- a nonlinear step controller ("imex" or "newton")
- RefinementOrchestrator (adaptive mesh refinement)
- SnapshotWriter, step table and history CSV

Per step: output at step 0, advance the clock, run the controller,
publish the ghosted solution, output when due, refine when due.
"""

from __future__ import annotations

import numpy as np
from mpi4py import MPI

from dolfinx_ns.assembler import NavierStokesAssembler
from dolfinx_ns.cell_state import CellAuxiliaryState
from dolfinx_ns.config import (
    AMRParams,
    ChannelGeom,
    FluidParams,
    SolveParams,
    TimeParams,
    parse_dirichlet_bcs,
    parse_neumann_bcs,
    validate_params,
)
from dolfinx_ns.controllers import StepReport, create_controller
from dolfinx_ns.discretization import Discretization
from dolfinx_ns.fields import BlockField
from dolfinx_ns.output import SnapshotWriter
from dolfinx_ns.refinement import RefinementOrchestrator
from dolfinx_ns.time_state import TimeState
from dolfinx_ns.utils import CasePaths, HistoryWriterCSV, StepTablePrinter, Timer, fmt_sci


class NavierStokesSolver:
    """
    Args:
        geom, fluid, time_params, solve, amr: configuration sections
        comm: MPI communicator
        case: run directory layout for snapshots and history (None disables
            file output)
    """

    def __init__(
        self,
        geom: ChannelGeom,
        fluid: FluidParams,
        time_params: TimeParams,
        solve: SolveParams,
        amr: AMRParams | None = None,
        *,
        comm=MPI.COMM_WORLD,
        case: CasePaths | None = None,
    ) -> None:
        amr = amr if amr is not None else AMRParams()
        validate_params(time_params, solve, amr)
        # Boundary maps are checked before any mesh is built.
        dirichlet = parse_dirichlet_bcs(fluid.dirichlet_bcs, geom.dim)
        parse_neumann_bcs(fluid.neumann_bcs)

        self.comm = comm
        self.geom = geom
        self.solve_params = solve
        self.amr = amr
        self.time = TimeState.from_params(time_params)
        self.timer = Timer(comm)
        self.case = case

        self.discretization = Discretization(
            geom, fluid, dirichlet, comm, max_level=amr.max_level if amr.enabled else None
        )
        self.assembler = NavierStokesAssembler(self.discretization, fluid, self.time, solve.controller)
        self.controller = create_controller(solve.controller, self.assembler, fluid, solve, comm, self.timer)
        self.orchestrator = RefinementOrchestrator(
            self.discretization,
            amr,
            on_rebuild=[self.controller.invalidate],
            timer=self.timer,
        )
        self.writer = None
        if case is not None:
            self.writer = SnapshotWriter(self.discretization, case, enabled=solve.snapshot)

        self.present: BlockField | None = None
        self.history: list[StepReport] = []
        self._table: StepTablePrinter | None = None
        self._csv: HistoryWriterCSV | None = None

    # ── Coupling accessors ────────────────────────────────────────

    @property
    def cell_state(self) -> CellAuxiliaryState:
        """Write side for an external structural solver (between steps only)."""
        return self.discretization.cell_state

    def get_current_solution(self) -> BlockField:
        """Copy of the present solution on the current layout."""
        if self.present is None:
            raise RuntimeError("Solver has not been set up")
        return self.present.copy()

    # ── Lifecycle ─────────────────────────────────────────────────

    def setup(self) -> None:
        disc = self.discretization
        disc.refine_global(self.geom.global_refinement)
        disc.setup()
        self.present = disc.create_field()
        disc.constraints.nonzero.distribute(self.present)
        disc.ghosted.publish(self.present)

        if self.comm.rank == 0 and self.solve_params.log_interval > 0:
            n_u, n_p = disc.n_dofs
            print(f"Controller: {self.controller.kind}, velocity solver: {self.controller.velocity_solver}", flush=True)
            print(f"Active cells: {disc.n_cells_global}, DOFs: {n_u + n_p} ({n_u} + {n_p})", flush=True)
            print(f"dt={self.time.delta_t}, t_end={self.time.end}", flush=True)
            self._table = StepTablePrinter([
                ("step", 6),
                ("time", 10),
                ("it", 3),
                ("res", 9),
                ("rel", 9),
                ("ksp", 5),
                ("ksp_res", 9),
            ])
        if self.comm.rank == 0 and self.case is not None:
            self._csv = HistoryWriterCSV(self.case.history_csv)

    def velocity_max(self) -> float:
        u = self.discretization.ghosted.velocity
        gdim = self.discretization.mesh.geometry.dim
        n = u.function_space.dofmap.index_map.size_local
        vals = u.x.array[: n * gdim].reshape(-1, gdim)
        local = float(np.max(np.linalg.norm(vals, axis=1))) if vals.size else 0.0
        return float(self.comm.allreduce(local, op=MPI.MAX))

    def _log(self, report: StepReport) -> None:
        log_interval = self.solve_params.log_interval
        do_log = log_interval > 0 and report.timestep % log_interval == 0
        u_max = self.velocity_max()
        if self.comm.rank != 0:
            return
        n_u, n_p = self.discretization.n_dofs
        for i, (res, rel, kry) in enumerate(zip(report.residuals, report.relative_residuals, report.krylov)):
            if do_log and self._table is not None:
                self._table.row([
                    f"{report.timestep:6d}",
                    f"{report.time:10.4e}",
                    f"{i:3d}",
                    fmt_sci(res, prec=2),
                    fmt_sci(rel, prec=2),
                    f"{kry.iterations:5d}",
                    fmt_sci(kry.residual, prec=2),
                ])
        if self._csv is not None and report.krylov:
            self._csv.write({
                "step": report.timestep,
                "time": report.time,
                "newton": report.iterations,
                "residual": report.residuals[-1],
                "relative_residual": report.relative_residuals[-1],
                "krylov_its": report.krylov_iterations,
                "krylov_residual": report.krylov[-1].residual,
                "n_cells": self.discretization.n_cells_global,
                "n_dofs": n_u + n_p,
                "u_max": u_max,
            })

    def _output(self) -> None:
        if self.writer is None:
            return
        with self.timer.section("Output results"):
            self.writer.write(self.time.current)

    def run_one_step(self) -> StepReport:
        if self.present is None:
            self.setup()
        if self.time.timestep == 0:
            self._output()

        self.time.increment()
        report = self.controller.advance(self.present, self.time)
        self.discretization.ghosted.publish(self.present)
        self.history.append(report)
        self._log(report)

        if self.time.time_to_output():
            self._output()
        if self.amr.enabled and self.time.time_to_refine():
            old = self.present
            self.present = self.orchestrator.refine(old)
            if self.present is not old:
                old.destroy()
            self.discretization.ghosted.publish(self.present)
            rep = self.orchestrator.last_report
            if self.comm.rank == 0 and self.solve_params.log_interval > 0:
                print(
                    f"  Refined {rep.refined} / coarsened {rep.coarsened} cells: "
                    f"{rep.cells_before} -> {rep.cells_after} cells, "
                    f"{sum(rep.dofs_before)} -> {sum(rep.dofs_after)} DOFs",
                    flush=True,
                )
        return report

    def run(self) -> BlockField:
        if self.present is None:
            self.setup()
        try:
            while not self.time.finished():
                self.run_one_step()
        finally:
            if self._csv is not None:
                self._csv.close()
        self.timer.summary()
        return self.present
