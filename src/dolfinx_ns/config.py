"""
Configuration dataclasses and boundary-condition parsing for dolfinx-ns.

Contains:
- Geometry dataclass (ChannelGeom)
- Fluid / time / solver / adaptivity parameter dataclasses
- Dirichlet component-flag decoding (DirichletBCSpec)
- ConfigurationError for fatal input problems
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

# =============================================================================
# Solver constants
# =============================================================================

INNER_REL_TOL = 1e-6  # relative tolerance of the three preconditioner sub-solves
OUTER_REL_TOL = 1e-8  # relative tolerance of the outer FGMRES solve
NEWTON_ABS_FLOOR = 1e-14  # absolute residual below which Newton stops
GMRES_RESTART = 30

# Boundary ids used by the channel geometry
INFLOW_ID = 0
WALL_ID = 1
OUTFLOW_ID = 2

# Component flags: 1-x, 2-y, 3-xy, 4-z, 5-xz, 6-yz, 7-xyz
COMPONENT_FLAGS: dict[int, tuple[int, ...]] = {
    1: (0,),
    2: (1,),
    3: (0, 1),
    4: (2,),
    5: (0, 2),
    6: (1, 2),
    7: (0, 1, 2),
}
_FLAG_NAMES = {"x": 1, "y": 2, "xy": 3, "z": 4, "xz": 5, "yz": 6, "xyz": 7}


class ConfigurationError(ValueError):
    """Fatal problem in the user configuration (bad flag, malformed mask)."""


# =============================================================================
# Configuration dataclasses
# =============================================================================


@dataclass(frozen=True)
class ChannelGeom:
    """Rectangular (2D) or box (3D) channel with a single inflow boundary."""

    length: float  # streamwise extent, measured from x0
    height: float  # cross-stream extent (0.41 for the classic benchmark)
    nx: int  # coarse cells in x
    ny: int  # coarse cells in y
    x0: float = 0.0  # inflow position
    nz: int = 0  # coarse cells in z (0 = 2D)
    global_refinement: int = 0  # uniform refinements applied to the coarse mesh

    @property
    def dim(self) -> int:
        return 3 if self.nz > 0 else 2


@dataclass(frozen=True)
class FluidParams:
    """
    Fluid parameters.

    dirichlet_bcs maps a boundary id (as string, JSON keys) to
    {"flag": 1..7 or "x".."xyz", "values": [...]} or
    {"flag": ..., "hard_coded": true} for the parabolic inflow profile.
    neumann_bcs maps a boundary id to a prescribed pressure value.
    """

    viscosity: float
    density: float
    grad_div: float = 0.0  # grad-div stabilization parameter gamma
    degree: int = 1  # pressure degree; velocity uses degree + 1
    inflow_peak: float = 0.45  # peak of the hard-coded parabolic inflow
    dirichlet_bcs: Mapping[str, Any] = field(default_factory=dict)
    neumann_bcs: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class TimeParams:
    """Simulation clock parameters (intervals are in time units)."""

    end_time: float
    time_step: float
    output_interval: float = 0.0  # 0 = never
    refinement_interval: float = 0.0  # 0 = never


@dataclass(frozen=True)
class SolveParams:
    """
    Solver parameters.

    controller: "imex" (single linearization, frozen operator) or "newton"
    tolerance: Newton relative residual tolerance
    max_iterations: Newton iteration budget per time step
    velocity_solver: "cg" (iterative) or "direct" (LU) for the velocity block
    velocity_pc: "none" or "ilu", preconditioner of the iterative velocity solve
    log_interval: Print every N time steps (0 = silent)
    snapshot: Write VTX snapshots when output is due
    """

    controller: str
    tolerance: float = 1e-10
    max_iterations: int = 8
    velocity_solver: str = ""  # default: "cg" for imex, "direct" for newton
    velocity_pc: str = "none"
    out_dir: str = "results"
    log_interval: int = 1
    snapshot: bool = True


@dataclass(frozen=True)
class AMRParams:
    """Adaptive mesh refinement parameters (levels relative to the coarse mesh)."""

    enabled: bool = False
    min_level: int = 0
    max_level: int = 3
    refine_fraction: float = 0.6
    coarsen_fraction: float = 0.4


# =============================================================================
# Boundary conditions
# =============================================================================


@dataclass(frozen=True)
class DirichletBCSpec:
    """Decoded Dirichlet condition on one boundary id."""

    boundary_id: int
    components: tuple[int, ...]
    values: tuple[float, ...]  # one value per masked component
    hard_coded: bool = False

    def mask(self, dim: int) -> list[bool]:
        m = [False] * dim
        for c in self.components:
            m[c] = True
        return m

    def component_value(self, component: int) -> float:
        return self.values[self.components.index(component)]


def decode_component_flag(flag: int | str, dim: int) -> tuple[int, ...]:
    """Map a component flag (1..7 or 'x'..'xyz') to the masked component indices."""
    if isinstance(flag, str):
        key = flag.strip().lower()
        if key.isdigit():
            flag = int(key)
        elif key in _FLAG_NAMES:
            flag = _FLAG_NAMES[key]
        else:
            raise ConfigurationError(f"Unrecognized component flag '{flag}'")
    if isinstance(flag, bool) or not isinstance(flag, int) or flag not in COMPONENT_FLAGS:
        raise ConfigurationError(f"Unrecognized component flag {flag!r}")
    components = COMPONENT_FLAGS[flag]
    if max(components) >= dim:
        raise ConfigurationError(
            f"Component flag {flag} masks component {max(components)} but the problem is {dim}D"
        )
    return components


def parse_dirichlet_bcs(raw: Mapping[str, Any], dim: int) -> list[DirichletBCSpec]:
    """
    Parse the Dirichlet boundary map into specs.

    Raises ConfigurationError on the first malformed entry; nothing is
    partially applied.
    """
    specs = []
    for key, entry in sorted(raw.items(), key=lambda kv: str(kv[0])):
        if str(key).startswith("_"):
            continue
        try:
            boundary_id = int(key)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Boundary id must be an integer, got {key!r}") from exc
        if not isinstance(entry, Mapping) or "flag" not in entry:
            raise ConfigurationError(f"Dirichlet entry for boundary {boundary_id} needs a 'flag'")
        components = decode_component_flag(entry["flag"], dim)
        hard_coded = bool(entry.get("hard_coded", False))
        values = entry.get("values", [])
        if isinstance(values, (int, float)):
            values = [values]
        values = tuple(float(v) for v in values)
        if hard_coded:
            values = tuple(0.0 for _ in components)
        elif len(values) != len(components):
            raise ConfigurationError(
                f"Boundary {boundary_id}: flag {entry['flag']!r} masks {len(components)} "
                f"component(s) but {len(values)} value(s) were given"
            )
        specs.append(DirichletBCSpec(boundary_id, components, values, hard_coded))
    return specs


def parse_neumann_bcs(raw: Mapping[str, Any]) -> dict[int, float]:
    """Parse the pressure (Neumann) boundary map."""
    out = {}
    for key, value in raw.items():
        if str(key).startswith("_"):
            continue
        try:
            out[int(key)] = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Bad Neumann entry {key!r}: {value!r}") from exc
    return out


def validate_params(time: TimeParams, solve: SolveParams, amr: AMRParams) -> None:
    """Range checks that dataclass typing cannot express."""
    if time.time_step <= 0.0:
        raise ValueError(f"time.time_step must be positive, got {time.time_step}")
    if time.end_time < time.time_step:
        raise ValueError("time.end_time must be at least one time step")
    if solve.controller.lower() not in {"imex", "newton"}:
        raise ValueError(f"Unknown solve.controller '{solve.controller}'. Expected 'imex' or 'newton'.")
    if solve.velocity_solver and solve.velocity_solver not in {"cg", "direct"}:
        raise ValueError(f"Unknown solve.velocity_solver '{solve.velocity_solver}'")
    if solve.velocity_pc not in {"none", "ilu"}:
        raise ValueError(f"Unknown solve.velocity_pc '{solve.velocity_pc}'")
    if solve.max_iterations < 1:
        raise ValueError("solve.max_iterations must be >= 1")
    for name in ("refine_fraction", "coarsen_fraction"):
        v = getattr(amr, name)
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"amr.{name} must lie in [0, 1], got {v}")
    if amr.refine_fraction + amr.coarsen_fraction > 1.0:
        raise ValueError("amr.refine_fraction + amr.coarsen_fraction must not exceed 1")
    if amr.min_level > amr.max_level:
        raise ValueError("amr.min_level must not exceed amr.max_level")
