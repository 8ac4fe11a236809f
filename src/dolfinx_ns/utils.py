"""
Utility functions for dolfinx-ns.

Provides config loading, case-directory bookkeeping, step tables,
CSV history and per-phase wall-time accounting.
"""

from __future__ import annotations

import csv
import dataclasses
import json
import math
import os
import platform
import subprocess
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence, TypeVar

T = TypeVar("T")


def load_json_config(config_path: str | Path) -> dict[str, Any]:
    """Load JSON configuration file."""
    p = Path(config_path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")
    return json.loads(p.read_text())


def dc_from_dict(cls: type[T], data: Mapping[str, Any] | None, *, name: str = "config") -> T:
    """
    Build a dataclass instance from a mapping with strict validation.

    Checks for unknown keys and missing required fields.
    Keys starting with "_" are ignored (allows JSON comments).
    """
    data = {} if data is None else dict(data)
    data = {k: v for k, v in data.items() if not str(k).startswith("_")}

    field_names = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data.keys()) - field_names)
    if unknown:
        raise ValueError(f"Unknown keys in {name}: {unknown}")

    required = {
        f.name
        for f in dataclasses.fields(cls)
        if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
    }
    missing = sorted(required - set(data.keys()))
    if missing:
        raise ValueError(f"Missing keys in {name}: {missing}")

    return cls(**data)


def print_dc_json(obj: Any) -> None:
    """Print a dataclass (or dict) as stable, sorted JSON."""
    if dataclasses.is_dataclass(obj):
        payload = dataclasses.asdict(obj)
    else:
        payload = obj
    print(json.dumps(payload, indent=2, sort_keys=True))


@dataclasses.dataclass(frozen=True)
class CasePaths:
    """File layout of one run directory."""

    case_dir: Path
    snps_dir: Path
    history_csv: Path
    snapshots_json: Path
    convergence_png: Path
    run_info_json: Path
    config_used_json: Path

    @classmethod
    def under(cls, out_dir: str | Path, *, snps_subdir: str = "snps") -> CasePaths:
        case_dir = Path(out_dir)
        return cls(
            case_dir=case_dir,
            snps_dir=case_dir / snps_subdir,
            history_csv=case_dir / "history.csv",
            snapshots_json=case_dir / "snapshots.json",
            convergence_png=case_dir / "convergence.png",
            run_info_json=case_dir / "run_info.json",
            config_used_json=case_dir / "config_used.json",
        )


def _git_revision(start_dir: Path) -> dict[str, str] | None:
    """Revision of the checkout containing start_dir, or None outside git."""

    def git(*args: str, cwd: str | Path = start_dir) -> str:
        out = subprocess.check_output(["git", *args], cwd=str(cwd), stderr=subprocess.DEVNULL)
        return out.decode().strip()

    try:
        top = git("rev-parse", "--show-toplevel")
        sha = git("rev-parse", "HEAD", cwd=top)
        dirty = git("status", "--porcelain", cwd=top)
    except (OSError, subprocess.CalledProcessError):
        return None
    return {"root": top, "sha": sha, "dirty": "1" if dirty else "0"}


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True))


def prepare_case_dir(paths: CasePaths, *, config_path: Path | None, cfg: Mapping[str, Any]) -> CasePaths:
    """
    Create the run directory and its reproducibility metadata (call on rank 0).

    Writes config_used.json (the parsed config as given) and run_info.json
    (time stamp, interpreter, platform, package version, git revision).
    """
    from dolfinx_ns import __version__

    paths.snps_dir.mkdir(parents=True, exist_ok=True)
    write_json(paths.config_used_json, dict(cfg))

    info: dict[str, Any] = {
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "cwd": os.getcwd(),
        "config_path": str(config_path) if config_path else None,
        "python": sys.version.split()[0],
        "platform": f"{platform.system()} {platform.release()} {platform.machine()}",
        "dolfinx_ns_version": __version__,
        "git": _git_revision(Path(__file__).parent),
    }
    write_json(paths.run_info_json, info)
    return paths


def fmt_sci(x: float, *, prec: int = 1, sign: bool = False) -> str:
    """Scientific notation with NaN/Inf handling."""
    if not math.isfinite(float(x)):
        return "nan"
    s = "+" if sign else ""
    return f"{float(x):{s}.{prec}e}"


class StepTablePrinter:
    """
    Compact step logs for solver iteration output.

    Example:
        table = StepTablePrinter([("step", 6), ("newton", 6), ("res", 9)])
        table.row(["10", "2", "1.2e-04"])
    """

    def __init__(self, columns: list[tuple[str, int]], *, gap: str = " ") -> None:
        self.columns = list(columns)
        self.gap = gap
        self._printed_header = False

    def header(self) -> None:
        if self._printed_header:
            return
        self._printed_header = True
        parts = [label.rjust(width) for label, width in self.columns]
        print(self.gap.join(parts), flush=True)

    def row(self, values: list[object]) -> None:
        if not self._printed_header:
            self.header()
        if len(values) != len(self.columns):
            raise ValueError(f"Expected {len(self.columns)} columns, got {len(values)} values")
        parts = []
        for (label, width), v in zip(self.columns, values):
            s = str(v)
            parts.append(s if len(s) > width else s.rjust(width))
        print(self.gap.join(parts), flush=True)


HISTORY_FIELDS = [
    "step",
    "time",
    "newton",
    "residual",
    "relative_residual",
    "krylov_its",
    "krylov_residual",
    "n_cells",
    "n_dofs",
    "u_max",
]


class HistoryWriterCSV:
    """
    One CSV row of scalar diagnostics per time step.

    Appends to an existing file (the header is written only for a new one)
    and flushes every row so a killed run keeps its history. Floats are
    written with full precision; unknown keys are ignored.
    """

    def __init__(self, path: Path, fieldnames: Sequence[str] = HISTORY_FIELDS) -> None:
        self.path = Path(path)
        self.fieldnames = list(fieldnames)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists()
        self._fh = open(self.path, "a", newline="")
        self._writer = csv.DictWriter(self._fh, fieldnames=self.fieldnames, extrasaction="ignore")
        if new_file:
            self._writer.writeheader()

    def write(self, row: Mapping[str, object]) -> None:
        if self._fh is None:
            raise ValueError(f"History file {self.path} is closed")
        self._writer.writerow({k: f"{v:.16e}" if isinstance(v, float) else v for k, v in row.items()})
        self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


def _max_over_ranks(tables: Sequence[Mapping[str, float]]) -> dict[str, float]:
    merged: dict[str, float] = {}
    for table in tables:
        for name, t in table.items():
            merged[name] = max(merged.get(name, 0.0), t)
    return merged


class Timer:
    """
    Wall time per named solver phase.

    Sections may nest. `totals` holds inclusive times; `exclusive` leaves
    out the time spent in inner sections, so exclusive times add up to the
    timed wall time and the summary percentages are taken from them. With a
    communicator the summary shows the maximum over ranks.

    Example:
        timer = Timer(comm)
        with timer.section("Solve linear system"):
            with timer.section("CG for A"):
                ...
        timer.summary()  # all ranks call, rank 0 prints
    """

    def __init__(self, comm=None) -> None:
        self.comm = comm
        self.totals: dict[str, float] = {}
        self.exclusive: dict[str, float] = {}
        self.calls: dict[str, int] = {}
        self._inner: list[float] = []

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        self._inner.append(0.0)
        t0 = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - t0
            inner = self._inner.pop()
            if self._inner:
                self._inner[-1] += elapsed
            self.totals[name] = self.totals.get(name, 0.0) + elapsed
            self.exclusive[name] = self.exclusive.get(name, 0.0) + elapsed - inner
            self.calls[name] = self.calls.get(name, 0) + 1

    def summary(self) -> None:
        totals, exclusive = self.totals, self.exclusive
        if self.comm is not None and self.comm.size > 1:
            gathered = self.comm.gather((totals, exclusive), root=0)
            if self.comm.rank != 0:
                return
            totals = _max_over_ranks([g[0] for g in gathered])
            exclusive = _max_over_ranks([g[1] for g in gathered])
        if not totals:
            return
        wall = sum(exclusive.values())
        table = StepTablePrinter([("section", 24), ("calls", 7), ("wall [s]", 11), ("self [s]", 11), ("%", 6)])
        print("\n" + "─" * 63)
        for name, t in sorted(exclusive.items(), key=lambda kv: -kv[1]):
            share = 100.0 * t / wall if wall > 0 else 0.0
            table.row([name, self.calls.get(name, 0), f"{totals[name]:.3e}", f"{t:.3e}", f"{share:.1f}"])
        print("─" * 63, flush=True)
