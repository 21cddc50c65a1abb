"""
Tests for the plane stress assembler and its derivatives.
"""

import numpy as np
import pytest

from plane_model import PlaneStressModel, domain_compressed_column, make_model
from shift_invert import SparseMat


@pytest.fixture
def model():
    model = make_model(nx=4, ny=8)
    rng = np.random.default_rng(2)
    model.set_design_vars(0.6 + 0.4 * rng.uniform(size=model.num_design_vars))
    return model


def test_reduced_matrices(model):
    u0 = model.get_equilibrium_path()

    for kind in ["stiffness", "mass", "geometric"]:
        full = model.assemble_matrix(kind, u0, reduced=False)
        red = model.assemble_matrix(kind, u0)

        assert red.shape == (len(model.reduced), len(model.reduced))
        assert np.allclose(model.reduce_matrix(full).toarray(), red.toarray())

        # All matrices are symmetric
        A = red.toarray()
        assert np.allclose(A, A.T, atol=1e-12)


def test_stiffness_and_mass_positive_definite(model):
    K = model.assemble_matrix("stiffness").toarray()
    M = model.assemble_matrix("mass").toarray()

    assert np.min(np.linalg.eigvalsh(K)) > 0.0
    assert np.min(np.linalg.eigvalsh(M)) > 0.0


def test_shared_pattern(model):
    u0 = model.get_equilibrium_path()

    K = SparseMat(model.assemble_matrix("stiffness"), name="K")
    M = SparseMat(model.assemble_matrix("mass"), name="M")
    G = SparseMat(model.assemble_matrix("geometric", u0), name="G")

    assert K.same_pattern(M)
    assert K.same_pattern(G)


def test_equilibrium_path(model):
    u0 = model.get_equilibrium_path()
    assert u0.shape == (model.nvars,)

    K = model.assemble_matrix("stiffness")
    fr = model.reduce_vector(model.f[0])
    assert np.allclose(K @ model.reduce_vector(u0), fr)

    # Clamped nodes do not move
    removed = np.setdiff1d(np.arange(model.nvars), model.reduced)
    assert np.all(u0[removed] == 0.0)

    # The path is cached until the design changes
    assert model.get_equilibrium_path() is u0
    model.set_design_vars(model.get_design_vars())
    assert model.get_equilibrium_path() is not u0


def test_geometric_requires_path(model):
    with pytest.raises(ValueError):
        model.assemble_matrix("geometric")

    with pytest.raises(ValueError):
        model.assemble_matrix("damping")


def test_path_sens(model):
    u0 = model.get_equilibrium_path()
    nr = len(model.reduced)

    rng = np.random.default_rng(3)
    psi = rng.standard_normal(nr)
    phi = rng.standard_normal(nr)
    du = rng.standard_normal(model.nvars)

    dfdu = model.eval_matrix_path_sens("geometric", psi, phi, u0)

    # G is linear in the path
    G0 = model.assemble_matrix("geometric", u0)
    G1 = model.assemble_matrix("geometric", u0 + du)
    fd = psi @ (G1 @ phi) - psi @ (G0 @ phi)

    assert np.isclose(dfdu @ du, fd, rtol=1e-8)

    assert np.all(model.eval_matrix_path_sens("stiffness", psi, phi, u0) == 0.0)


@pytest.mark.parametrize("kind", ["stiffness", "mass", "geometric"])
@pytest.mark.parametrize("ptype", ["simp", "ramp"])
def test_matrix_dv_sens(kind, ptype):
    model = make_model(nx=4, ny=8, ptype_K=ptype, ptype_M="ramp" if ptype == "ramp" else "linear")
    rng = np.random.default_rng(4)
    x0 = 0.6 + 0.4 * rng.uniform(size=model.num_design_vars)
    model.set_design_vars(x0)

    u0 = model.get_equilibrium_path().copy()
    nr = len(model.reduced)
    psi = rng.standard_normal(nr)
    phi = rng.standard_normal(nr)
    p = rng.uniform(-1.0, 1.0, size=x0.shape)

    ans = model.eval_matrix_dv_sens(kind, psi, phi, u0) @ p

    dh = 1e-6
    model.set_design_vars(x0 + dh * p)
    f1 = psi @ (model.assemble_matrix(kind, u0) @ phi)
    model.set_design_vars(x0 - dh * p)
    f2 = psi @ (model.assemble_matrix(kind, u0) @ phi)
    cd = (f1 - f2) / (2.0 * dh)

    assert np.isclose(ans, cd, rtol=1e-6)


def test_residual_dv_sens(model):
    x0 = model.get_design_vars()
    u0 = model.get_equilibrium_path().copy()

    rng = np.random.default_rng(5)
    adj = model.full_vector(rng.standard_normal(len(model.reduced)))
    p = rng.uniform(-1.0, 1.0, size=x0.shape)

    ans = model.eval_residual_dv_sens(adj, u0) @ p

    # R = K(x) u - f with the path held fixed
    dh = 1e-6
    model.set_design_vars(x0 + dh * p)
    r1 = model.reduce_vector(adj) @ (model.assemble_matrix("stiffness") @ model.reduce_vector(u0))
    model.set_design_vars(x0 - dh * p)
    r2 = model.reduce_vector(adj) @ (model.assemble_matrix("stiffness") @ model.reduce_vector(u0))

    assert np.isclose(ans, (r1 - r2) / (2.0 * dh), rtol=1e-6)


def test_tangent_adjoint(model):
    rng = np.random.default_rng(6)
    rhs = rng.standard_normal(model.nvars)

    adj = model.solve_tangent_adjoint(rhs)
    K = model.assemble_matrix("stiffness")

    assert np.allclose(K.T @ model.reduce_vector(adj), model.reduce_vector(rhs))


def test_failure(model):
    assert np.all(model.eval_failure(np.zeros(model.nvars), 1.0) == 0.0)

    u0 = model.get_equilibrium_path()
    fail = model.eval_failure(u0, 1.0)
    assert fail.shape == (model.nelems,)
    assert np.max(fail) > 0.0

    # The failure value scales with the inverse of the yield stress
    assert np.allclose(model.eval_failure(u0, 2.0), 0.5 * fail)


def test_load_cases():
    model = make_model(nx=4, ny=8, shear_force=True)
    assert len(model.f) == 2

    u0 = model.get_equilibrium_path(0)
    u1 = model.get_equilibrium_path(1)
    assert not np.allclose(u0, u1)

    with pytest.raises(ValueError):
        model.get_equilibrium_path(2)


def test_invalid_options():
    conn, X, bcs, forces = domain_compressed_column(nx=2, ny=2)

    with pytest.raises(ValueError):
        PlaneStressModel(conn, X, bcs, forces, ptype_K="linear")

    with pytest.raises(ValueError):
        PlaneStressModel(conn, X, bcs, forces, ptype_M="simp")

    with pytest.raises(ValueError):
        domain_compressed_column(nx=1, ny=4)

    model = PlaneStressModel(conn, X, bcs, forces)
    with pytest.raises(ValueError):
        model.set_design_vars(np.ones(3))


def test_inverted_element():
    conn, X, bcs, forces = domain_compressed_column(nx=2, ny=2)
    conn = conn[:, ::-1]

    with pytest.raises(ValueError):
        PlaneStressModel(conn, X, bcs, forces)
