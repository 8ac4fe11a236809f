"""Tests for the Jacobi reciprocal and the Schur surrogate B diag(M)^-1 B^T."""

import numpy as np
from conftest import create_aij, dense, fill_aij, seq_vec

from dolfinx_ns.schur import SchurSurrogate, jacobi_reciprocal


def test_jacobi_reciprocal_inverts_diagonal(toy_imex):
    field = toy_imex.new_field()
    toy_imex.assemble(field, field, apply_nonzero_constraints=False, rebuild_matrices=True)
    Mu = toy_imex.mats["Mu"]

    r = jacobi_reciprocal(Mu)
    d = Mu.getDiagonal().getArray()
    np.testing.assert_allclose(d * r.getArray(), 1.0, rtol=1e-12)


def test_surrogate_values_and_pattern_reuse(toy_imex):
    field = toy_imex.new_field()
    toy_imex.assemble(field, field, apply_nonzero_constraints=False, rebuild_matrices=True)
    B, Bt = toy_imex.mats["B"], toy_imex.mats["Bt"]
    schur = SchurSurrogate(B, Bt)
    handle = schur.matrix.handle
    nnz = schur.matrix.getInfo()["nz_used"]

    for scale in (1.0, 3.0):
        recip_values = scale * (1.0 + np.arange(toy_imex.N) / toy_imex.N)
        S = schur.rebuild(seq_vec(recip_values))
        expected = dense(B) @ np.diag(recip_values) @ dense(Bt)
        np.testing.assert_allclose(dense(S), expected, rtol=1e-12, atol=1e-14)
        assert S.handle == handle
        assert S.getInfo()["nz_used"] == nnz

    assert schur.builds == 2
    assert schur.regularized_rows == 0
    assert schur.matches(B, Bt)


def test_empty_pressure_row_is_regularized():
    # Pressure row 1 only couples to a velocity DOF whose column was eliminated.
    Bd = np.array([[1.0, -1.0, 0.0], [0.0, 0.0, 0.0], [0.0, 1.0, 1.0]])
    mask = np.array([[1, 1, 0], [0, 0, 1], [0, 1, 1]], dtype=bool)
    B = create_aij(mask)
    fill_aij(B, mask, Bd)
    Bt = create_aij(mask.T.copy())
    fill_aij(Bt, mask.T.copy(), Bd.T.copy())

    schur = SchurSurrogate(B, Bt)
    S = dense(schur.rebuild(seq_vec([1.0, 1.0, 1.0])))

    assert schur.regularized_rows == 1
    assert S[1, 1] == np.max(np.abs(np.diag(Bd @ Bd.T)))
    np.testing.assert_allclose(S[[0, 2]][:, [0, 2]], (Bd @ Bd.T)[[0, 2]][:, [0, 2]])
