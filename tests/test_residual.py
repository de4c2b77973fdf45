# test_residual.py
import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_array_equal

import pbratu_base as pb
from utils_for_testing import smooth_test_field


@pytest.fixture
def random_field():
    """Random values everywhere, boundary included."""
    rng = np.random.default_rng(42)
    return rng.uniform(-0.5, 1.0, size=(7, 6))


params_to_test = [
    pb.Parameters(lam=6.0, p=2.0, epsilon=1e-5),
    pb.Parameters(lam=1.0, p=3.0, epsilon=0.1),
    pb.Parameters(lam=0.5, p=1.5, epsilon=0.5),
]


@pytest.mark.parametrize("params", params_to_test)
def test_boundary_residual_is_field_value(random_field, params):
    dgrid = pb.make_distributed_grid(7, 6)
    F = pb.evaluate_residual(dgrid, random_field, params)
    boundary = dgrid.geometry.boundary_mask()
    assert_array_equal(F[boundary], random_field[boundary])


@pytest.mark.parametrize("params", params_to_test)
def test_residual_is_idempotent(random_field, params):
    dgrid = pb.make_distributed_grid(7, 6, px=2, py=2)
    F1 = pb.evaluate_residual(dgrid, random_field, params)
    F2 = pb.evaluate_residual(dgrid, random_field, params)
    assert_array_equal(F1, F2)


def test_input_is_not_modified(random_field):
    dgrid = pb.make_distributed_grid(7, 6)
    before = random_field.copy()
    pb.evaluate_residual(dgrid, random_field, params_to_test[1])
    assert_array_equal(random_field, before)


@pytest.mark.parametrize("Mx,My", [(4, 4), (9, 6)])
def test_p2_is_five_point_bratu(Mx, My):
    """At p=2 the residual is the 5-point Laplacian plus the reaction term."""
    dgrid = pb.make_distributed_grid(Mx, My)
    geometry = dgrid.geometry
    hx, hy = geometry.hx, geometry.hy
    lam = 5.0
    u = smooth_test_field(Mx, My)

    F = pb.evaluate_residual(dgrid, u, pb.Parameters(lam=lam, p=2.0))

    c = u[1:-1, 1:-1]
    expected_interior = (
        (hy / hx) * (2 * c - u[2:, 1:-1] - u[:-2, 1:-1])
        + (hx / hy) * (2 * c - u[1:-1, 2:] - u[1:-1, :-2])
        - hx * hy * lam * np.exp(c)
    )
    assert_allclose(F[1:-1, 1:-1], expected_interior, rtol=1e-12, atol=1e-13)


def test_zero_field_residual_is_reaction_only():
    dgrid = pb.make_distributed_grid(5, 5)
    hx, hy = dgrid.geometry.hx, dgrid.geometry.hy
    F = pb.evaluate_residual(dgrid, np.zeros((5, 5)), pb.Parameters(lam=2.0, p=3.0, epsilon=1e-3))
    assert_allclose(F[1:-1, 1:-1], -hx * hy * 2.0)
    assert np.all(F[dgrid.geometry.boundary_mask()] == 0.0)


@pytest.mark.parametrize("px,py", [(2, 1), (1, 2), (3, 2), (2, 3)])
@pytest.mark.parametrize("params", params_to_test)
def test_independent_of_partition(random_field, params, px, py):
    serial = pb.evaluate_residual(pb.make_distributed_grid(7, 6), random_field, params)
    parallel = pb.evaluate_residual(
        pb.make_distributed_grid(7, 6, px=px, py=py), random_field, params
    )
    assert_allclose(parallel, serial, rtol=1e-14, atol=1e-15)


def test_forcing_shifts_interior_only(random_field):
    dgrid = pb.make_distributed_grid(7, 6, px=2)
    geometry = dgrid.geometry
    params = params_to_test[1]
    forcing = np.arange(42, dtype=float).reshape(7, 6)

    F0 = pb.evaluate_residual(dgrid, random_field, params)
    Ff = pb.evaluate_residual(dgrid, random_field, params, forcing=forcing)

    boundary = geometry.boundary_mask()
    assert_array_equal(Ff[boundary], F0[boundary])
    assert_allclose(
        Ff[~boundary], F0[~boundary] - geometry.hx * geometry.hy * forcing[~boundary], rtol=1e-13, atol=1e-14
    )


def test_form_function_local_shape():
    geometry = pb.make_grid_geometry(7, 6)
    window = pb.OwnedWindow(xs=3, ys=2, xm=4, ym=2)
    u = smooth_test_field(7, 6)
    field = pb.Field.from_global(u, geometry=geometry, window=window)
    f = pb.form_function_local(field, params_to_test[0])
    assert f.shape == (4, 2)


# --- Field accessor ---


@pytest.fixture
def window_field(random_field):
    geometry = pb.make_grid_geometry(7, 6)
    window = pb.OwnedWindow(xs=2, ys=3, xm=3, ym=3)
    return pb.Field.from_global(random_field, geometry=geometry, window=window)


def test_field_reads_owned_and_halo(window_field, random_field):
    for i in range(1, 6):
        for j in range(2, 6):
            assert window_field[i, j] == random_field[i, j]
    assert_array_equal(window_field.owned, random_field[2:5, 3:6])


@pytest.mark.parametrize("ij", [(0, 3), (6, 3), (3, 1), (-1, 4), (3, 6), (7, 4)])
def test_field_rejects_points_beyond_halo(window_field, ij):
    with pytest.raises(IndexError):
        window_field[ij]


def test_field_halo_outside_domain_is_zero(random_field):
    geometry = pb.make_grid_geometry(7, 6)
    window = pb.OwnedWindow(xs=0, ys=0, xm=3, ym=2)
    field = pb.Field.from_global(random_field, geometry=geometry, window=window)

    assert np.all(field.local[0, :] == 0.0)
    assert np.all(field.local[:, 0] == 0.0)
    with pytest.raises(IndexError):
        field[-1, 0]


def test_field_is_immutable(window_field):
    with pytest.raises(AttributeError):
        window_field.window = pb.OwnedWindow(0, 0, 1, 1)
    with pytest.raises(ValueError):
        window_field.local[1, 1] = 3.0
    with pytest.raises(TypeError):
        window_field[3, 4] = 3.0
