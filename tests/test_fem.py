"""
Finite element tests (require DOLFINx).

Short channel runs exercising assembly, both step controllers, adaptive
refinement with solution transfer, and the coupling state hooks.
"""

import numpy as np
import pytest
from mpi4py import MPI

from dolfinx_ns.config import AMRParams, ChannelGeom, FluidParams, SolveParams, TimeParams


def _can_import_dolfinx():
    try:
        import dolfinx  # noqa: F401
        return True
    except ImportError:
        return False


pytestmark = pytest.mark.skipif(not _can_import_dolfinx(), reason="DOLFINx not available")

GEOM = ChannelGeom(length=2.2, height=0.41, nx=8, ny=2)
BCS = {
    "0": {"flag": "xy", "hard_coded": True},
    "1": {"flag": "xy", "values": [0.0, 0.0]},
}


def _fluid(**kwargs):
    return FluidParams(viscosity=0.01, density=1.0, inflow_peak=0.45, dirichlet_bcs=BCS, **kwargs)


def _solver(controller, *, end_time=0.03, amr=None, case=None, **solve_kwargs):
    from dolfinx_ns.solver import NavierStokesSolver

    time_params = TimeParams(end_time=end_time, time_step=0.01, refinement_interval=0.01 if amr else 0.0)
    solve = SolveParams(controller=controller, log_interval=0, snapshot=False, **solve_kwargs)
    return NavierStokesSolver(
        GEOM, _fluid(), time_params, solve, amr, comm=MPI.COMM_WORLD, case=case
    )


def _assert_boundary_values(solver):
    nonzero = solver.discretization.constraints.nonzero
    u = solver.present.velocity.getArray()
    np.testing.assert_allclose(u[nonzero.velocity_dofs], nonzero.velocity_values, atol=1e-14)
    assert solver.comm.allreduce(nonzero.velocity_dofs.size) > 0


def test_refine_then_coarsen_round_trip():
    from dolfinx.fem import Function, functionspace

    from dolfinx_ns.discretization import AdaptiveMesh, create_channel_mesh, transfer_function

    adaptive = AdaptiveMesh(create_channel_mesh(GEOM, MPI.COMM_WORLD))
    tdim = adaptive.mesh.topology.dim
    n_base = adaptive.mesh.topology.index_map(tdim).size_global

    def quadratic(x):
        return x[0] ** 2 + x[0] * x[1] - 0.5 * x[1]

    V_old = functionspace(adaptive.mesh, ("Lagrange", 2))
    u_old = Function(V_old)
    u_old.interpolate(quadratic)

    n_owned = adaptive.owned_levels.size
    refine = np.zeros(n_owned, dtype=bool)
    refine[: max(1, n_owned // 4)] = True
    assert adaptive.adapt(refine, np.zeros(n_owned, dtype=bool))
    n_refined = adaptive.mesh.topology.index_map(tdim).size_global
    assert n_refined > n_base
    assert MPI.COMM_WORLD.allreduce(int(adaptive.owned_levels.max(initial=0)), op=MPI.MAX) == 1

    # Quadratics are reproduced exactly by P2 on the refined mesh.
    V_new = functionspace(adaptive.mesh, ("Lagrange", 2))
    u_new = Function(V_new)
    transfer_function(u_old, u_new)
    exact = Function(V_new)
    exact.interpolate(quadratic)
    np.testing.assert_allclose(u_new.x.array, exact.x.array, atol=1e-10)

    coarsen = adaptive.owned_levels > 0
    assert adaptive.adapt(np.zeros(coarsen.size, dtype=bool), coarsen)
    assert adaptive.mesh.topology.index_map(tdim).size_global == n_base
    assert not adaptive.owned_levels.any()

    # Back on the coarse topology the original field is recovered.
    V_back = functionspace(adaptive.mesh, ("Lagrange", 2))
    u_back = Function(V_back)
    transfer_function(u_new, u_back)
    np.testing.assert_allclose(u_back.x.array, u_old.x.array, atol=1e-10)

    # Nothing flagged means nothing happens.
    n_owned = adaptive.owned_levels.size
    assert not adaptive.adapt(np.zeros(n_owned, dtype=bool), np.zeros(n_owned, dtype=bool))


def test_refinement_respects_max_level():
    from dolfinx_ns.discretization import AdaptiveMesh, create_channel_mesh

    comm = MPI.COMM_WORLD
    adaptive = AdaptiveMesh(create_channel_mesh(GEOM, comm), max_level=1)
    tdim = adaptive.mesh.topology.dim

    n_owned = adaptive.owned_levels.size
    refine = np.zeros(n_owned, dtype=bool)
    refine[: max(1, n_owned // 3)] = True
    assert adaptive.adapt(refine, np.zeros(n_owned, dtype=bool))
    assert comm.allreduce(int(adaptive.owned_levels.max(initial=0)), op=MPI.MAX) == 1

    # Every level-0 cell asks for a split; conforming closure must leave the
    # level-1 cells alone.
    n_cells = adaptive.mesh.topology.index_map(tdim).size_global
    refine = adaptive.owned_levels == 0
    changed = adaptive.adapt(refine, np.zeros(refine.size, dtype=bool))
    assert comm.allreduce(int(adaptive.owned_levels.max(initial=0)), op=MPI.MAX) <= 1
    assert changed == (adaptive.mesh.topology.index_map(tdim).size_global > n_cells)


def test_imex_channel(tmp_path):
    from dolfinx_ns.utils import CasePaths

    case = CasePaths.under(tmp_path)
    solver = _solver("imex", case=case)
    solver.setup()
    _assert_boundary_values(solver)
    if solver.cell_state.n_cells:
        solver.cell_state.set_cell(0, indicator=1, acceleration=[1.0, 0.0])

    present = solver.run()

    assert solver.time.timestep == 3
    assert [r.rebuilt for r in solver.history] == [True, True, False]
    assert all(r.iterations == 1 for r in solver.history)
    # Steps 1 and 2 rebuild the operator and FGMRES drives the residual down.
    for r in solver.history[:2]:
        history = r.krylov[0].history
        assert len(history) >= 2
        assert all(b <= a * (1.0 + 1e-10) for a, b in zip(history, history[1:]))
        assert history[-1] < history[0]
    n_velocity = solver.discretization.n_dofs[0]
    assert 0 < solver.history[2].krylov_iterations < n_velocity
    assert np.all(np.isfinite(present.velocity.getArray()))
    assert 0.0 < solver.velocity_max() < 10.0
    _assert_boundary_values(solver)

    if MPI.COMM_WORLD.rank == 0:
        lines = case.history_csv.read_text().strip().splitlines()
        assert len(lines) == 4


def test_newton_channel():
    solver = _solver("newton", end_time=0.01, tolerance=1e-8, max_iterations=10)
    solver.setup()
    report = solver.run_one_step()

    assert report.iterations >= 2
    assert report.relative_residuals[0] == 1.0
    assert report.relative_residuals[-1] <= 1e-8 or report.residuals[-1] <= 1e-14
    _assert_boundary_values(solver)

    copy = solver.get_current_solution()
    assert copy.vec.handle != solver.present.vec.handle
    assert copy.norm() == pytest.approx(solver.present.norm())


def test_adaptive_channel():
    solver = _solver("imex", end_time=0.02, amr=AMRParams(enabled=True, min_level=0, max_level=1))
    solver.setup()
    cells_before = solver.discretization.n_cells_global

    solver.run_one_step()
    report = solver.orchestrator.last_report
    assert report is not None
    assert report.cells_before == cells_before
    assert report.refined > 0
    assert report.cells_after == solver.discretization.n_cells_global > cells_before
    assert solver.present.global_sizes == solver.discretization.n_dofs
    assert solver.controller.preconditioner is None
    _assert_boundary_values(solver)
    # Cell state follows the new mesh and starts zeroed.
    solver.cell_state.check(
        solver.discretization.n_owned_cells, solver.discretization.n_quadrature_points
    )
    assert not solver.cell_state.any_coupled

    report2 = solver.run_one_step()
    assert report2.rebuilt
    assert np.all(np.isfinite(solver.present.velocity.getArray()))
