"""
Mesh, function spaces, boundary constraints and adaptive refinement for dolfinx-ns.

Contains:
- Channel mesh creation and boundary marking (inflow / walls / outflow)
- Parabolic inflow profile
- AdaptiveMesh: coarse mesh + per-cell refinement levels, refine and
  coarsen (coarsening regenerates from the coarse mesh)
- GhostedBlockField: read-only ghosted velocity/pressure Functions
- Discretization: Taylor-Hood spaces, zero/nonzero constraint sets,
  cell auxiliary state, Kelly-type error indicator and solution transfer
"""

from __future__ import annotations

from typing import Callable

import numpy as np
import ufl
from mpi4py import MPI
from petsc4py import PETSc

import basix
from dolfinx import fem, la, mesh
from dolfinx.fem import (
    Function,
    create_interpolation_data,
    dirichletbc,
    form,
    functionspace,
    locate_dofs_topological,
)
from dolfinx.mesh import CellType

from dolfinx_ns.cell_state import CellAuxiliaryState
from dolfinx_ns.config import (
    INFLOW_ID,
    OUTFLOW_ID,
    WALL_ID,
    ChannelGeom,
    DirichletBCSpec,
    FluidParams,
)
from dolfinx_ns.constraints import ConstraintPair, ConstraintSet
from dolfinx_ns.fields import BlockField

# =============================================================================
# Mesh utilities
# =============================================================================


def create_channel_mesh(geom: ChannelGeom, comm=MPI.COMM_WORLD):
    """Simplex mesh of [x0, x0+length] x [0, height] (x [0, height] in 3D)."""
    x1 = geom.x0 + geom.length
    if geom.dim == 2:
        return mesh.create_rectangle(
            comm,
            [[geom.x0, 0.0], [x1, geom.height]],
            [geom.nx, geom.ny],
            cell_type=CellType.triangle,
        )
    return mesh.create_box(
        comm,
        [np.array([geom.x0, 0.0, 0.0]), np.array([x1, geom.height, geom.height])],
        [geom.nx, geom.ny, geom.nz],
        cell_type=CellType.tetrahedron,
    )


def mark_channel_boundaries(domain, geom: ChannelGeom, tol: float = 1e-10):
    """
    Facet tags: INFLOW_ID at x = x0, OUTFLOW_ID at x = x0 + length,
    WALL_ID on every other boundary facet.
    """
    fdim = domain.topology.dim - 1
    x1 = geom.x0 + geom.length

    def inflow(x):
        return np.isclose(x[0], geom.x0, atol=tol)

    def outflow(x):
        return np.isclose(x[0], x1, atol=tol)

    domain.topology.create_connectivity(fdim, domain.topology.dim)
    boundary = mesh.locate_entities_boundary(domain, fdim, lambda x: np.full(x.shape[1], True))
    inflow_facets = mesh.locate_entities_boundary(domain, fdim, inflow)
    outflow_facets = mesh.locate_entities_boundary(domain, fdim, outflow)

    values = np.full(boundary.size, WALL_ID, dtype=np.int32)
    values[np.isin(boundary, inflow_facets)] = INFLOW_ID
    values[np.isin(boundary, outflow_facets)] = OUTFLOW_ID
    return mesh.meshtags(domain, fdim, boundary, values)


def parabolic_inflow(x, peak: float, height: float, dim: int):
    """
    Streamwise inflow velocity of the channel benchmark.

    2D: 4 U y (H - y) / H^2
    3D: 16 U y z (H - y) (H - z) / H^4
    """
    value = 4.0 * peak * x[1] * (height - x[1]) / height**2
    if dim == 3:
        value = value * 4.0 * x[2] * (height - x[2]) / height**2
    return value


def _num_local_cells(domain) -> int:
    imap = domain.topology.index_map(domain.topology.dim)
    return imap.size_local + imap.num_ghosts


def _num_owned_cells(domain) -> int:
    return domain.topology.index_map(domain.topology.dim).size_local


def transfer_function(source: Function, target: Function, padding: float = 1e-8) -> None:
    """Interpolate `source` into `target` when they live on different meshes."""
    domain = target.function_space.mesh
    cells = np.arange(_num_local_cells(domain), dtype=np.int32)
    data = create_interpolation_data(target.function_space, source.function_space, cells, padding=padding)
    target.interpolate_nonmatching(source, cells, data)
    target.x.scatter_forward()


class AdaptiveMesh:
    """
    Coarse mesh plus the currently active mesh and its per-cell levels.

    Levels count refinements relative to the coarse mesh; a cell is one
    level deeper than its parent when the parent was split. With
    `max_level` set, no cell at that level is ever split again, including
    splits forced on neighbours to keep the mesh conforming.
    """

    def __init__(self, base, max_level: int | None = None) -> None:
        self.base = base
        self.mesh = base
        self.levels = np.zeros(_num_local_cells(base), dtype=np.int32)
        self.max_level = max_level
        self.comm = base.comm

    @property
    def owned_levels(self) -> np.ndarray:
        return self.levels[: _num_owned_cells(self.mesh)]

    @staticmethod
    def _refine(domain, levels: np.ndarray, cells: np.ndarray | None):
        tdim = domain.topology.dim
        if cells is None:
            edges = None
        else:
            domain.topology.create_entities(1)
            domain.topology.create_connectivity(tdim, 1)
            edges = mesh.compute_incident_entities(domain.topology, cells.astype(np.int32), tdim, 1)
        refined, parent_cell, _ = mesh.refine(
            domain, edges, partitioner=None, option=mesh.RefinementOption.parent_cell
        )
        split = np.bincount(parent_cell, minlength=levels.size) > 1
        return refined, levels[parent_cell] + split[parent_cell].astype(np.int32)

    def _exclude_max_level(self, domain, levels: np.ndarray, cells: np.ndarray) -> np.ndarray:
        """
        Drop flagged cells whose refinement would split a cell at max_level.

        Plaza bisection marks the longest edge of every face that has a
        marked edge, so a split travels along longest edges into unflagged
        neighbours. An edge is unsafe when that chain reaches an edge of a
        max-level cell. Ties in edge length count as longest.

        The search only sees local and ghost cells.
        """
        if self.max_level is None or cells.size == 0:
            return cells
        protected = np.flatnonzero(levels >= self.max_level)
        if protected.size == 0:
            return cells

        topology = domain.topology
        tdim = topology.dim
        topology.create_entities(1)
        if tdim == 3:
            topology.create_entities(2)
        topology.create_connectivity(2, 1)
        topology.create_connectivity(tdim, 1)

        imap = topology.index_map(1)
        all_edges = np.arange(imap.size_local + imap.num_ghosts, dtype=np.int32)
        nodes = mesh.entities_to_geometry(domain, 1, all_edges)
        x = domain.geometry.x
        length = np.linalg.norm(x[nodes[:, 0]] - x[nodes[:, 1]], axis=1)

        # marked edge (src) -> longest edge of the same face (dst)
        face_edges = topology.connectivity(2, 1).array.reshape(-1, 3)
        face_length = length[face_edges]
        longest = face_length >= face_length.max(axis=1, keepdims=True) * (1.0 - 1e-10)
        keep = np.tile(longest, 3)
        src = np.repeat(face_edges, 3, axis=1)[keep]
        dst = np.tile(face_edges, 3)[keep]

        cell_edges = topology.connectivity(tdim, 1).array.reshape(-1, tdim * (tdim + 1) // 2)
        unsafe = np.zeros(all_edges.size, dtype=bool)
        unsafe[cell_edges[protected].ravel()] = True
        while True:
            grown = unsafe[dst] & ~unsafe[src]
            if not grown.any():
                break
            unsafe[src[grown]] = True
        return cells[~unsafe[cell_edges[cells]].any(axis=1)]

    def refine_global(self, n: int = 1) -> None:
        for _ in range(n):
            self.mesh, self.levels = self._refine(self.mesh, self.levels, None)
        if n > 0:
            # Uniform refinement becomes the new coarse level.
            self.base = self.mesh
            self.levels = np.zeros(_num_local_cells(self.mesh), dtype=np.int32)

    def adapt(self, refine: np.ndarray, coarsen: np.ndarray) -> bool:
        """
        Apply owned-cell flags. Returns False if nothing changed anywhere.

        Pure refinement subdivides the active mesh. Any coarsening flag
        regenerates the mesh from the coarse level towards the target levels.
        """
        n_coa = self.comm.allreduce(int(np.count_nonzero(coarsen)))
        if n_coa == 0:
            cells = np.flatnonzero(refine).astype(np.int32)
            cells = self._exclude_max_level(self.mesh, self.levels, cells)
            if self.comm.allreduce(int(cells.size)) == 0:
                return False
            self.mesh, self.levels = self._refine(self.mesh, self.levels, cells)
            return True

        target = self.owned_levels + refine.astype(np.int32) - coarsen.astype(np.int32)
        self._regenerate(np.maximum(target, 0))
        return True

    def _regenerate(self, target: np.ndarray) -> None:
        W_old = functionspace(self.mesh, ("DG", 0))
        wanted_old = Function(W_old)
        owned_dofs = W_old.dofmap.list[: target.size, 0]
        wanted_old.x.array[owned_dofs] = target.astype(np.float64)
        wanted_old.x.scatter_forward()

        domain = self.base
        levels = np.zeros(_num_local_cells(domain), dtype=np.int32)
        max_target = self.comm.allreduce(int(target.max()) if target.size else 0, op=MPI.MAX)
        for _ in range(max_target):
            W = functionspace(domain, ("DG", 0))
            wanted = Function(W)
            transfer_function(wanted_old, wanted)
            n_owned = _num_owned_cells(domain)
            goal = np.rint(wanted.x.array[W.dofmap.list[:n_owned, 0]]).astype(np.int32)
            cells = np.flatnonzero(levels[:n_owned] < goal).astype(np.int32)
            cells = self._exclude_max_level(domain, levels, cells)
            if self.comm.allreduce(int(cells.size)) == 0:
                break
            domain, levels = self._refine(domain, levels, cells)
        self.mesh = domain
        self.levels = levels


# =============================================================================
# Ghosted fields
# =============================================================================


class GhostedBlockField:
    """
    Velocity/pressure Functions with ghost values, for assembly and output.

    Written only via publish(); never handed to a linear solver.
    """

    def __init__(self, velocity: Function, pressure: Function) -> None:
        self.velocity = velocity
        self.pressure = pressure

    @staticmethod
    def _n_owned(f: Function) -> int:
        dofmap = f.function_space.dofmap
        return dofmap.index_map.size_local * dofmap.index_map_bs

    def publish(self, field: BlockField) -> None:
        """Copy owned values from `field` and refresh ghosts."""
        for f, vec in ((self.velocity, field.velocity), (self.pressure, field.pressure)):
            n = self._n_owned(f)
            f.x.array[:n] = vec.getArray(readonly=True)
            f.x.scatter_forward()

    def pull(self, field: BlockField) -> None:
        """Copy owned values into `field`."""
        for f, vec in ((self.velocity, field.velocity), (self.pressure, field.pressure)):
            n = self._n_owned(f)
            vec.getArray()[:] = f.x.array[:n]


# =============================================================================
# Discretization
# =============================================================================


def _owned_bc_values(bcs, V) -> tuple[np.ndarray, np.ndarray]:
    """Owned constrained DOF indices of V and their prescribed values."""
    imap, bs = V.dofmap.index_map, V.dofmap.index_map_bs
    n_owned = imap.size_local * bs
    marker = np.full((imap.size_local + imap.num_ghosts) * bs, np.nan, dtype=PETSc.ScalarType)
    for bc in bcs:
        bc.set(marker)
    dofs = np.flatnonzero(~np.isnan(marker[:n_owned])).astype(np.int32)
    return dofs, marker[dofs].real.astype(np.float64)


class Discretization:
    """
    Taylor-Hood discretization of a channel with adaptive refinement.

    setup() (re)builds everything tied to the DOF layout and then runs the
    registered `on_setup` hooks (the assembler rebuilds its forms and
    matrices there).
    """

    def __init__(
        self,
        geom: ChannelGeom,
        fluid: FluidParams,
        dirichlet: list[DirichletBCSpec],
        comm=MPI.COMM_WORLD,
        max_level: int | None = None,
    ) -> None:
        self.geom = geom
        self.fluid = fluid
        self.dirichlet = list(dirichlet)
        self.comm = comm
        self.adaptive = AdaptiveMesh(create_channel_mesh(geom, comm), max_level)
        self.quadrature_degree = 2 * (fluid.degree + 1)
        self.cell_state = CellAuxiliaryState(geom.dim)
        self.on_setup: list[Callable[[], None]] = []
        self.V = None
        self.Q = None

    # ── Layout ────────────────────────────────────────────────────

    @property
    def mesh(self):
        return self.adaptive.mesh

    @property
    def n_owned_cells(self) -> int:
        return _num_owned_cells(self.mesh)

    @property
    def n_quadrature_points(self) -> int:
        _, weights = basix.make_quadrature(self.mesh.basix_cell(), self.quadrature_degree)
        return len(weights)

    def refine_global(self, n: int) -> None:
        self.adaptive.refine_global(n)

    def setup(self) -> None:
        domain = self.mesh
        gdim = domain.geometry.dim
        self.V = functionspace(domain, ("Lagrange", self.fluid.degree + 1, (gdim,)))
        self.Q = functionspace(domain, ("Lagrange", self.fluid.degree))
        self.facet_tags = mark_channel_boundaries(domain, self.geom)
        self.ghosted = GhostedBlockField(Function(self.V, name="velocity"), Function(self.Q, name="pressure"))
        self.constraints = self._build_constraints()
        self.cell_state.reset(self.n_owned_cells, self.n_quadrature_points)
        for hook in self.on_setup:
            hook()

    def _build_constraints(self) -> ConstraintPair:
        fdim = self.mesh.topology.dim - 1
        zero_bcs, nonzero_bcs = [], []
        for spec in self.dirichlet:
            facets = self.facet_tags.find(spec.boundary_id)
            for comp in spec.components:
                V_sub = self.V.sub(comp)
                V_c, _ = V_sub.collapse()
                dofs = locate_dofs_topological((V_sub, V_c), fdim, facets)
                g = Function(V_c)
                if spec.hard_coded and comp == 0:
                    g.interpolate(
                        lambda x: parabolic_inflow(x, self.fluid.inflow_peak, self.geom.height, self.geom.dim)
                    )
                else:
                    g.x.array[:] = spec.component_value(comp)
                nonzero_bcs.append(dirichletbc(g, dofs, V_sub))
                zero_bcs.append(dirichletbc(Function(V_c), dofs, V_sub))

        dofs, values = _owned_bc_values(nonzero_bcs, self.V)
        nonzero = ConstraintSet("nonzero", dofs, values, bcs=tuple(nonzero_bcs))
        return ConstraintPair(zero=nonzero.zero_like(bcs=tuple(zero_bcs)), nonzero=nonzero)

    def create_field(self) -> BlockField:
        """Zero owned field on the current layout."""
        vecs = []
        for V in (self.V, self.Q):
            imap, bs = V.dofmap.index_map, V.dofmap.index_map_bs
            vec = PETSc.Vec().createMPI((imap.size_local * bs, imap.size_global * bs), comm=self.comm)
            vec.zeroEntries()
            vecs.append(vec)
        return BlockField(*vecs)

    @property
    def n_dofs(self) -> tuple[int, int]:
        return (
            self.V.dofmap.index_map.size_global * self.V.dofmap.index_map_bs,
            self.Q.dofmap.index_map.size_global,
        )

    @property
    def n_cells_global(self) -> int:
        return self.mesh.topology.index_map(self.mesh.topology.dim).size_global

    # ── Adaptivity ────────────────────────────────────────────────

    def cell_levels(self) -> np.ndarray:
        return self.adaptive.owned_levels.copy()

    def estimate(self, field: BlockField) -> np.ndarray:
        """
        Kelly-type indicator per owned cell:
            eta_K^2 = sum over interior facets F of K of h_F / 24 * |[grad u . n]|^2
        """
        self.ghosted.publish(field)
        u = self.ghosted.velocity
        domain = self.mesh
        W = functionspace(domain, ("DG", 0))
        w = ufl.TestFunction(W)
        n = ufl.FacetNormal(domain)
        h = ufl.CellDiameter(domain)
        jump = ufl.jump(ufl.grad(u), n)
        eta = form(ufl.avg(h) / 24.0 * ufl.inner(jump, jump) * (w("+") + w("-")) * ufl.dS)
        vec = fem.assemble_vector(eta)
        vec.scatter_reverse(la.InsertMode.add)
        n_owned = self.n_owned_cells
        return np.sqrt(np.abs(vec.array[W.dofmap.list[:n_owned, 0]]))

    def snapshot(self, field: BlockField) -> tuple[Function, Function]:
        """Solution on the current mesh, kept alive across the topology change."""
        self.ghosted.publish(field)
        return self.ghosted.velocity.copy(), self.ghosted.pressure.copy()

    def execute(self, refine: np.ndarray, coarsen: np.ndarray) -> bool:
        """Change the mesh; False when the flags left it untouched."""
        return self.adaptive.adapt(np.asarray(refine, dtype=bool), np.asarray(coarsen, dtype=bool))

    def interpolate(self, snapshot: tuple[Function, Function]) -> BlockField:
        """Transfer a snapshot onto the current (new) layout."""
        u_old, p_old = snapshot
        transfer_function(u_old, self.ghosted.velocity)
        transfer_function(p_old, self.ghosted.pressure)
        field = self.create_field()
        self.ghosted.pull(field)
        return field
