"""Tests for the IMEX and Newton step controllers on the toy saddle-point system."""

import numpy as np
import pytest
from mpi4py import MPI

from dolfinx_ns.config import SolveParams
from dolfinx_ns.controllers import (
    ImexController,
    NewtonController,
    NewtonDivergenceError,
    create_controller,
)
from dolfinx_ns.time_state import TimeState


def _clock(toy):
    return TimeState(end=1.0, delta_t=toy.dt)


def _step(controller, present, time):
    time.increment()
    return controller.advance(present, time)


def test_registry(toy_imex, fluid, imex_params):
    controller = create_controller("IMEX", toy_imex, fluid, imex_params, MPI.COMM_SELF)
    assert isinstance(controller, ImexController)
    assert controller.velocity_solver == "cg"
    assert create_controller("newton", toy_imex, fluid, imex_params, MPI.COMM_SELF).velocity_solver == "direct"

    with pytest.raises(ValueError, match="Unknown step controller"):
        create_controller("picard", toy_imex, fluid, imex_params, MPI.COMM_SELF)


def test_imex_rebuild_schedule(toy_imex, fluid, imex_params):
    controller = ImexController(toy_imex, fluid, imex_params, MPI.COMM_SELF)
    present = toy_imex.new_field()
    time = _clock(toy_imex)

    reports = [_step(controller, present, time)]
    np.testing.assert_allclose(present.velocity.getArray()[toy_imex.bc_dofs], toy_imex.bc_values)

    reports.append(_step(controller, present, time))
    pc = controller.preconditioner
    reports += [_step(controller, present, time) for _ in range(2)]

    assert [c["rebuild"] for c in toy_imex.calls] == [True, True, False, False]
    assert [c["apply_nonzero"] for c in toy_imex.calls] == [True, False, False, False]
    assert [r.rebuilt for r in reports] == [True, True, False, False]
    assert controller.preconditioner is pc
    assert controller.preconditioner_builds == 2
    assert all(r.iterations == 1 for r in reports)
    assert all(r.krylov_iterations > 0 for r in reports)
    # Boundary values survive the zero-constrained steps.
    np.testing.assert_allclose(present.velocity.getArray()[toy_imex.bc_dofs], toy_imex.bc_values)

    controller.invalidate()
    assert controller.preconditioner is None
    report = _step(controller, present, time)
    assert report.rebuilt
    assert toy_imex.calls[-1] == {"apply_nonzero": False, "rebuild": True}
    assert controller.preconditioner_builds == 3


def test_imex_first_step_from_constrained_field(toy_imex, fluid, imex_params):
    controller = ImexController(toy_imex, fluid, imex_params, MPI.COMM_SELF)
    present = toy_imex.new_field()
    toy_imex.constraints.nonzero.distribute(present)
    time = _clock(toy_imex)

    _step(controller, present, time)
    u = present.velocity.getArray()
    np.testing.assert_array_equal(u[toy_imex.bc_dofs], toy_imex.bc_values)
    assert np.all(np.isfinite(u))

    _step(controller, present, time)
    np.testing.assert_allclose(present.velocity.getArray()[toy_imex.bc_dofs], toy_imex.bc_values, atol=1e-12)


def test_imex_reuses_operator_values(toy_imex, fluid, imex_params):
    controller = ImexController(toy_imex, fluid, imex_params, MPI.COMM_SELF)
    present = toy_imex.new_field()
    time = _clock(toy_imex)
    for _ in range(2):
        _step(controller, present, time)

    A = toy_imex.mats["A"]
    before = A.getValues(range(toy_imex.N), range(toy_imex.N)).copy()
    _step(controller, present, time)
    after = A.getValues(range(toy_imex.N), range(toy_imex.N))
    np.testing.assert_array_equal(before, after)


def test_newton_converges(toy_newton, fluid, newton_params):
    controller = NewtonController(toy_newton, fluid, newton_params, MPI.COMM_SELF)
    present = toy_newton.new_field()
    time = _clock(toy_newton)

    previous = present.velocity.getArray().copy()
    report = _step(controller, present, time)

    assert 2 <= report.iterations <= newton_params.max_iterations
    assert report.relative_residuals[0] == 1.0
    assert report.relative_residuals[-1] <= newton_params.tolerance or report.residuals[-1] <= 1e-14
    assert all(b <= a for a, b in zip(report.residuals, report.residuals[1:]))
    assert [c["apply_nonzero"] for c in toy_newton.calls] == [True] + [False] * (report.iterations - 1)
    assert all(c["rebuild"] for c in toy_newton.calls)
    assert controller.preconditioner_builds == report.iterations

    u = present.velocity.getArray()
    p = present.pressure.getArray()
    Fu, Fp = toy_newton.residual(u, p, previous)
    assert np.linalg.norm(Fu[toy_newton.free]) < 1e-7
    assert np.linalg.norm(Fp) < 1e-7
    np.testing.assert_array_equal(u[toy_newton.bc_dofs], toy_newton.bc_values)


def test_newton_second_step_uses_zero_constraints(toy_newton, fluid, newton_params):
    controller = NewtonController(toy_newton, fluid, newton_params, MPI.COMM_SELF)
    present = toy_newton.new_field()
    time = _clock(toy_newton)
    first = _step(controller, present, time)
    toy_newton.calls.clear()

    _step(controller, present, time)
    assert not any(c["apply_nonzero"] for c in toy_newton.calls)
    np.testing.assert_array_equal(present.velocity.getArray()[toy_newton.bc_dofs], toy_newton.bc_values)
    assert first.timestep == 1


def test_newton_divergence(toy_newton, fluid):
    params = SolveParams(controller="newton", tolerance=1e-10, max_iterations=1)
    controller = NewtonController(toy_newton, fluid, params, MPI.COMM_SELF)
    present = toy_newton.new_field()
    time = _clock(toy_newton)

    with pytest.raises(NewtonDivergenceError) as excinfo:
        _step(controller, present, time)
    assert excinfo.value.max_iterations == 1
    assert excinfo.value.relative == 1.0
    # The present solution is left untouched.
    assert present.norm() == 0.0
