"""
Implicit-explicit controller: one linear solve per time step.

The convective velocity is taken from the present solution, so the
operator only depends on it through the velocity block. Matrices (and
the preconditioner) are rebuilt on the first two steps and after every
change of DOF layout; all other steps reuse them and only reassemble the
right-hand side.
"""

from __future__ import annotations

from dolfinx_ns.controllers.base import NonlinearStepController, StepReport
from dolfinx_ns.fields import BlockField
from dolfinx_ns.time_state import TimeState


class ImexController(NonlinearStepController):
    kind = "imex"
    default_velocity_solver = "cg"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._increment: BlockField | None = None
        self._stale = True

    def invalidate(self) -> None:
        super().invalidate()
        if self._increment is not None:
            self._increment.destroy()
            self._increment = None
        self._stale = True

    def _workspace(self, present: BlockField) -> BlockField:
        if self._increment is None or self._increment.sizes != present.sizes:
            if self._increment is not None:
                self._increment.destroy()
            self._increment = present.copy()
        self._increment.zero()
        return self._increment

    def advance(self, present: BlockField, time: TimeState) -> StepReport:
        step = time.timestep
        increment = self._workspace(present)
        apply_nonzero = step == 1
        rebuild = step < 3 or self._stale or self._preconditioner is None

        with self.timer.section("Assemble system"):
            system = self.assembler.assemble(
                present,
                present,
                apply_nonzero_constraints=apply_nonzero,
                rebuild_matrices=rebuild,
            )

        report = StepReport(timestep=step, time=time.current, rebuilt=rebuild)
        if rebuild:
            self._build_preconditioner(system, time.delta_t)
            self._stale = False
            report.regularized_rows = self._preconditioner.regularized_rows

        result = self._solve(system, increment)
        present.axpy(1.0, increment)
        if apply_nonzero:
            # The increment carries the absolute boundary values; present may
            # already hold them.
            self.assembler.constraints.nonzero.distribute(present)

        report.krylov.append(result)
        report.residuals.append(result.residual)
        report.relative_residuals.append(result.relative_residual)
        return report
