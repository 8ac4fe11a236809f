"""
Command-line interface for dolfinx-ns.

Usage:
    dolfinx-ns config.json
    mpirun -n 4 dolfinx-ns config.json
"""

import argparse
import sys
from pathlib import Path

from mpi4py import MPI

from dolfinx_ns.config import (
    AMRParams,
    ChannelGeom,
    FluidParams,
    SolveParams,
    TimeParams,
    validate_params,
)
from dolfinx_ns.plotting import plot_convergence
from dolfinx_ns.utils import (
    CasePaths,
    dc_from_dict,
    load_json_config,
    prepare_case_dir,
    print_dc_json,
)


def _print_summary(solver, case: CasePaths):
    """Print final solution diagnostics (all ranks must call)."""
    disc = solver.discretization
    comm = solver.comm
    u_max = solver.velocity_max()
    p = disc.ghosted.pressure
    n = p.function_space.dofmap.index_map.size_local
    p_loc = p.x.array[:n]
    p_min = comm.allreduce(float(p_loc.min()) if n else float("inf"), op=MPI.MIN)
    p_max = comm.allreduce(float(p_loc.max()) if n else float("-inf"), op=MPI.MAX)
    n_u, n_p = disc.n_dofs

    if comm.rank == 0:
        print("\n" + "─" * 50)
        print("FINAL SOLUTION SUMMARY")
        print("─" * 50)
        print(f"  t:         {solver.time.current:.4e} ({solver.time.timestep} steps)")
        print(f"  cells:     {disc.n_cells_global}")
        print(f"  DOFs:      {n_u + n_p} ({n_u} + {n_p})")
        print(f"  |u|_max:   {u_max:.4f}")
        print(f"  p:         [{p_min:.4e}, {p_max:.4e}]")
        print("─" * 50)
        print(f"Results saved to {case.case_dir}/")
        print("=" * 60, flush=True)


def main():
    """Run the incompressible Navier-Stokes solver from the command line."""
    p = argparse.ArgumentParser(
        description="Incompressible Navier-Stokes solver for DOLFINx (IMEX / Newton, block Schur preconditioning)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    dolfinx-ns configs/channel_imex.json
    dolfinx-ns --print-only configs/channel_newton_amr.json

Environment:
    Requires DOLFINx 0.10.0+.
    Activate your FEniCSx environment before running.
        """,
    )
    p.add_argument("config", type=str, help="JSON config file")
    p.add_argument("--print-only", action="store_true", help="Print config and exit")
    args = p.parse_args()

    cfg_path = Path(args.config)
    cfg = load_json_config(cfg_path)

    geom = dc_from_dict(ChannelGeom, cfg["geometry"], name="geometry")
    fluid = dc_from_dict(FluidParams, cfg["fluid"], name="fluid")
    time_params = dc_from_dict(TimeParams, cfg["time"], name="time")
    solve_params = dc_from_dict(SolveParams, cfg["solve"], name="solve")
    amr = dc_from_dict(AMRParams, cfg.get("amr"), name="amr")
    validate_params(time_params, solve_params, amr)

    if args.print_only:
        for dc in (geom, fluid, time_params, solve_params, amr):
            print_dc_json(dc)
        return 0

    case = CasePaths.under(solve_params.out_dir)
    comm = MPI.COMM_WORLD
    if comm.rank == 0:
        prepare_case_dir(case, config_path=cfg_path, cfg=cfg)
    comm.barrier()

    if comm.rank == 0:
        print("=" * 60)
        print("INCOMPRESSIBLE NAVIER-STOKES - dolfinx-ns")
        print("=" * 60)
        print(f"Controller: {solve_params.controller}")
        print(f"mu = {fluid.viscosity}, rho = {fluid.density}, gamma = {fluid.grad_div}")
        print(f"Mesh: {geom.nx}x{geom.ny}" + (f"x{geom.nz}" if geom.dim == 3 else "") + f" ({geom.dim}D)")
        print(f"Domain: {geom.length:.2f} x {geom.height:.2f}")
        print(flush=True)

    # Imported here so --print-only works without a FEniCSx environment.
    from dolfinx_ns.solver import NavierStokesSolver

    solver = NavierStokesSolver(
        geom, fluid, time_params, solve_params, amr, comm=comm, case=case
    )
    solver.run()

    if case.history_csv.exists():
        plot_convergence(case.history_csv, save_path=case.convergence_png)

    _print_summary(solver, case)
    return 0


if __name__ == "__main__":
    sys.exit(main())
