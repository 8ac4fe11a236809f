"""
Finite element assembly of the Navier-Stokes block system.

Weak forms (v, q test functions; u_c, p_c the linearization point; u_n the
present time level):

    A   = mu (grad du, grad v) + gamma rho (div du, div v) + rho/dt (du, v)
          [+ rho ((grad du) u_c + (grad u_c) du, v)      Newton only]
    B^T = -(dp, div v)
    B   = -(q, div du)

    r_u = -[mu (grad u_c, grad v) - (p_c, div v) + gamma rho (div u_c, div v)
            + rho ((grad u_c) u_c, v)]
          [- rho/dt (u_c - u_n, v)                      Newton only]
          + I (sigma : grad v + rho a . v)              coupled region
          - sum_N p_N (v . n) ds_N                      Neumann boundaries
    r_p = (div u_c, q)

The operator and mass matrices are created once per DOF layout and
refilled in place; the two MATNEST wrappers reference them.
"""

from __future__ import annotations

import numpy as np
import ufl
from petsc4py import PETSc

import basix.ufl
from dolfinx.fem import Constant, Function, form, functionspace
from dolfinx.fem.petsc import (
    apply_lifting,
    assemble_matrix,
    assemble_vector,
    create_matrix,
    create_vector,
    set_bc,
)

from dolfinx_ns.config import FluidParams, parse_neumann_bcs
from dolfinx_ns.constraints import ConstraintPair
from dolfinx_ns.controllers.base import AssembledSystem
from dolfinx_ns.discretization import Discretization, GhostedBlockField
from dolfinx_ns.fields import BlockField
from dolfinx_ns.time_state import TimeState

LINEARIZATIONS = ("imex", "newton")


def _reassemble_matrix(A, a, bcs) -> None:
    A.zeroEntries()
    assemble_matrix(A, a, bcs=bcs)
    A.assemble()


class NavierStokesAssembler:
    """
    Assembler for one Discretization; rebuilds itself on every setup().

    Args:
        discretization: owner of spaces, constraints and cell state
        fluid: viscosity, density, grad-div parameter, Neumann map
        time: clock providing delta_t
        linearization: "imex" or "newton"
    """

    def __init__(
        self,
        discretization: Discretization,
        fluid: FluidParams,
        time: TimeState,
        linearization: str = "imex",
    ) -> None:
        key = linearization.lower()
        if key not in LINEARIZATIONS:
            raise ValueError(f"Unknown linearization '{linearization}'. Expected one of {LINEARIZATIONS}")
        self.disc = discretization
        self.fluid = fluid
        self.time = time
        self.linearization = key
        self.neumann = parse_neumann_bcs(fluid.neumann_bcs)
        self.operator: PETSc.Mat | None = None
        self.mass: PETSc.Mat | None = None
        discretization.on_setup.append(self.setup)

    @property
    def constraints(self) -> ConstraintPair:
        return self.disc.constraints

    # ── Setup ─────────────────────────────────────────────────────

    def setup(self) -> None:
        disc = self.disc
        domain = disc.mesh
        V, Q = disc.V, disc.Q
        gdim = domain.geometry.dim

        self.current = GhostedBlockField(Function(V), Function(Q))
        self.present = GhostedBlockField(Function(V), Function(Q))

        cell = domain.basix_cell()
        qdeg = disc.quadrature_degree
        self.indicator = Function(functionspace(domain, basix.ufl.quadrature_element(cell, value_shape=(), degree=qdeg)))
        self.acceleration = Function(
            functionspace(domain, basix.ufl.quadrature_element(cell, value_shape=(gdim,), degree=qdeg))
        )
        self.stress = Function(
            functionspace(domain, basix.ufl.quadrature_element(cell, value_shape=(gdim, gdim), degree=qdeg))
        )

        mu = Constant(domain, PETSc.ScalarType(self.fluid.viscosity))
        rho = Constant(domain, PETSc.ScalarType(self.fluid.density))
        gamma = Constant(domain, PETSc.ScalarType(self.fluid.grad_div))
        self.dt = Constant(domain, PETSc.ScalarType(self.time.delta_t))

        du, v = ufl.TrialFunction(V), ufl.TestFunction(V)
        dp, q = ufl.TrialFunction(Q), ufl.TestFunction(Q)
        uc, pc = self.current.velocity, self.current.pressure
        un = self.present.velocity
        dx = ufl.dx
        dx_q = ufl.Measure("dx", domain=domain, metadata={"quadrature_degree": qdeg, "quadrature_rule": "default"})
        ds = ufl.Measure("ds", domain=domain, subdomain_data=disc.facet_tags)
        n = ufl.FacetNormal(domain)

        a00 = (
            mu * ufl.inner(ufl.grad(du), ufl.grad(v))
            + gamma * rho * ufl.div(du) * ufl.div(v)
            + rho / self.dt * ufl.inner(du, v)
        ) * dx
        if self.linearization == "newton":
            a00 += rho * ufl.inner(ufl.dot(ufl.grad(du), uc) + ufl.dot(ufl.grad(uc), du), v) * dx
        a01 = -ufl.div(v) * dp * dx
        a10 = -q * ufl.div(du) * dx

        L0 = -(
            mu * ufl.inner(ufl.grad(uc), ufl.grad(v))
            - pc * ufl.div(v)
            + gamma * rho * ufl.div(uc) * ufl.div(v)
            + rho * ufl.inner(ufl.dot(ufl.grad(uc), uc), v)
        ) * dx
        if self.linearization == "newton":
            L0 -= rho / self.dt * ufl.inner(uc - un, v) * dx
        L0 += self.indicator * (ufl.inner(self.stress, ufl.grad(v)) + rho * ufl.inner(self.acceleration, v)) * dx_q
        for boundary_id, value in sorted(self.neumann.items()):
            p_bc = Constant(domain, PETSc.ScalarType(value))
            L0 += -p_bc * ufl.inner(v, n) * ds(boundary_id)
        L1 = ufl.div(uc) * q * dx

        self.a = [[form(a00), form(a01)], [form(a10), None]]
        self.m = [form(ufl.inner(du, v) * dx), form(dp * q * dx)]
        self.L = [form(L0), form(L1)]

        if self.operator is not None:
            self.destroy()
        self.A = [[create_matrix(self.a[0][0]), create_matrix(self.a[0][1])], [create_matrix(self.a[1][0]), None]]
        self.M = [create_matrix(self.m[0]), create_matrix(self.m[1])]
        self.operator = PETSc.Mat().createNest(self.A, comm=domain.comm)
        self.mass = PETSc.Mat().createNest([[self.M[0], None], [None, self.M[1]]], comm=domain.comm)
        self.b = [create_vector(self.L[0]), create_vector(self.L[1])]
        self.rhs = BlockField(self.b[0], self.b[1])
        self.assembled = False

    def destroy(self) -> None:
        for mat in (self.operator, self.mass, self.A[0][0], self.A[0][1], self.A[1][0], *self.M):
            mat.destroy()
        for vec in self.b:
            vec.destroy()
        self.operator = None
        self.mass = None

    # ── Assembly ──────────────────────────────────────────────────

    def _push_cell_state(self) -> None:
        state = self.disc.cell_state
        state.check(self.disc.n_owned_cells, self.disc.n_quadrature_points)
        for f, data in (
            (self.indicator, state.indicator),
            (self.acceleration, state.acceleration),
            (self.stress, state.stress),
        ):
            dofmap = f.function_space.dofmap
            dofs = dofmap.list[: state.n_cells].ravel()
            f.x.array.reshape(-1, dofmap.bs)[dofs] = np.asarray(data, dtype=np.float64).reshape(dofs.size, dofmap.bs)
            f.x.scatter_forward()

    def assemble(
        self,
        current: BlockField,
        present: BlockField,
        *,
        apply_nonzero_constraints: bool,
        rebuild_matrices: bool,
    ) -> AssembledSystem:
        if self.operator is None:
            raise RuntimeError("Assembler used before Discretization.setup()")
        self.current.publish(current)
        self.present.publish(present)
        self._push_cell_state()
        self.dt.value = self.time.delta_t

        zero_bcs = list(self.constraints.zero.bcs)
        rebuild = rebuild_matrices or not self.assembled
        if rebuild:
            _reassemble_matrix(self.A[0][0], self.a[0][0], zero_bcs)
            _reassemble_matrix(self.A[0][1], self.a[0][1], zero_bcs)
            _reassemble_matrix(self.A[1][0], self.a[1][0], zero_bcs)
            _reassemble_matrix(self.M[0], self.m[0], zero_bcs)
            _reassemble_matrix(self.M[1], self.m[1], [])
            self.operator.assemble()
            self.mass.assemble()
            self.assembled = True

        constraints = self.constraints.select(apply_nonzero_constraints)
        bcs = list(constraints.bcs)
        x0 = self.current.velocity.x.petsc_vec if apply_nonzero_constraints else None
        for b, L, a in ((self.b[0], self.L[0], self.a[0][0]), (self.b[1], self.L[1], self.a[1][0])):
            with b.localForm() as loc:
                loc.set(0.0)
            assemble_vector(b, L)
            if x0 is None:
                apply_lifting(b, [a], [bcs])
            else:
                apply_lifting(b, [a], [bcs], [x0], 1.0)
            b.ghostUpdate(addv=PETSc.InsertMode.ADD_VALUES, mode=PETSc.ScatterMode.REVERSE)
        if x0 is None:
            set_bc(self.b[0], bcs)
        else:
            set_bc(self.b[0], bcs, x0, 1.0)

        return AssembledSystem(self.operator, self.mass, self.rhs, constraints, rebuild)
