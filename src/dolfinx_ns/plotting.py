"""
Plotting for dolfinx-ns: convergence history from history.csv.
"""

import csv
from pathlib import Path

import matplotlib.pyplot as plt
from mpi4py import MPI


def load_history(history_file: Path) -> dict[str, list[float]]:
    """Read the per-step history CSV into columns."""
    data: dict[str, list[float]] = {
        "step": [], "residual": [], "krylov_its": [], "newton": [], "n_dofs": [],
    }
    with open(history_file) as f:
        reader = csv.DictReader(f)
        for row in reader:
            data["step"].append(int(row["step"]))
            data["residual"].append(float(row["residual"]))
            data["krylov_its"].append(int(row["krylov_its"]))
            data["newton"].append(int(row.get("newton") or 1))
            data["n_dofs"].append(int(row.get("n_dofs") or 0))
    return data


def plot_convergence(history_file: Path, save_path: Path | None = None):
    """Plot convergence history from CSV file.

    Single figure: final nonlinear residual per step on the left y-axis (log),
    outer Krylov iterations per step on the right y-axis (linear).
    """
    if MPI.COMM_WORLD.rank != 0:
        return

    data = load_history(history_file)
    steps = data["step"]

    fig, ax = plt.subplots(figsize=(10, 5))

    ax.semilogy(steps, [max(r, 1e-300) for r in data["residual"]], "b-", linewidth=1.2, label="Residual")
    ax.set_xlabel("Time step")
    ax.set_ylabel("Residual (log)")
    ax.set_title("Nonlinear Residual and Krylov Iterations")
    ax.grid(True, alpha=0.3, which="both")

    ax2 = ax.twinx()
    ax2.plot(steps, data["krylov_its"], "k--", linewidth=0.8, alpha=0.6, label="FGMRES its")
    if any(n > 1 for n in data["newton"]):
        ax2.plot(steps, data["newton"], "r:", linewidth=0.8, alpha=0.6, label="Newton its")
    ax2.set_ylabel("Iterations")

    lines1, labels1 = ax.get_legend_handles_labels()
    lines2, labels2 = ax2.get_legend_handles_labels()
    ax.legend(lines1 + lines2, labels1 + labels2, loc="upper right", fontsize=9)

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches="tight")
        print(f"  Saved convergence plot: {save_path}")
    plt.close(fig)
