"""
Fully implicit Newton controller.

Each iteration reassembles the Jacobian at the evaluation point, rebuilds
the preconditioner and solves for the Newton update. Nonzero boundary
data enter only through the first iteration of the first time step;
afterwards the evaluation point already satisfies them and updates are
constrained to zero, with the nonzero set redistributed after every
update.
"""

from __future__ import annotations

from dolfinx_ns.config import NEWTON_ABS_FLOOR
from dolfinx_ns.controllers.base import NonlinearStepController, StepReport
from dolfinx_ns.fields import BlockField
from dolfinx_ns.time_state import TimeState


class NewtonDivergenceError(RuntimeError):
    """Newton did not reach its tolerance within the iteration budget."""

    def __init__(self, max_iterations: int, residual: float, relative: float) -> None:
        self.max_iterations = max_iterations
        self.residual = residual
        self.relative = relative
        super().__init__(
            f"Newton solver did not converge in {max_iterations} iterations "
            f"(residual {residual:.3e}, relative {relative:.3e})"
        )


class NewtonController(NonlinearStepController):
    kind = "newton"
    default_velocity_solver = "direct"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.tolerance = float(self.solve_params.tolerance)
        self.max_iterations = int(self.solve_params.max_iterations)

    def advance(self, present: BlockField, time: TimeState) -> StepReport:
        first_step = time.timestep == 1
        report = StepReport(timestep=time.timestep, time=time.current, rebuilt=True)

        evaluation = present.copy()
        update = present.copy()
        initial_residual = 1.0
        current_residual = 1.0
        relative_residual = 1.0
        iteration = 0

        try:
            while relative_residual > self.tolerance and current_residual > NEWTON_ABS_FLOOR:
                if iteration >= self.max_iterations:
                    raise NewtonDivergenceError(self.max_iterations, current_residual, relative_residual)

                update.zero()
                with self.timer.section("Assemble system"):
                    system = self.assembler.assemble(
                        evaluation,
                        present,
                        apply_nonzero_constraints=first_step and iteration == 0,
                        rebuild_matrices=True,
                    )
                self._build_preconditioner(system, time.delta_t)
                report.regularized_rows = self._preconditioner.regularized_rows

                result = self._solve(system, update)
                current_residual = system.rhs.norm()

                evaluation.axpy(1.0, update)
                self.assembler.constraints.nonzero.distribute(evaluation)

                if iteration == 0:
                    initial_residual = current_residual
                relative_residual = current_residual / initial_residual if initial_residual > 0.0 else 0.0

                report.krylov.append(result)
                report.residuals.append(current_residual)
                report.relative_residuals.append(relative_residual)
                iteration += 1

            present.copy_from(evaluation)
        finally:
            evaluation.destroy()
            update.destroy()
        return report
