# test_initial_guess.py
import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_array_equal

import pbratu_base as pb


def test_4x4_interior_value():
    geometry = pb.make_grid_geometry(4, 4)
    x = pb.form_initial_guess_global(geometry)

    assert x[1, 1] == pytest.approx(64 / 81, rel=1e-14)
    assert_allclose(x[1:-1, 1:-1], np.full((2, 2), 64 / 81), rtol=1e-14)


@pytest.mark.parametrize("Mx,My", [(2, 2), (4, 4), (5, 9), (12, 7)])
def test_boundary_is_exactly_zero(Mx, My):
    geometry = pb.make_grid_geometry(Mx, My)
    x = pb.form_initial_guess_global(geometry)

    assert x.shape == (Mx, My)
    assert np.all(x[geometry.boundary_mask()] == 0.0)
    assert np.all(x[1:-1, 1:-1] > 0.0)
    assert np.all(x <= 1.0)


def test_bump_formula():
    geometry = pb.make_grid_geometry(9, 6)
    x = pb.form_initial_guess_global(geometry)
    xx, yy = geometry.coordinates()
    expected = (1 - (2 * xx - 1) ** 2) * (1 - (2 * yy - 1) ** 2)
    assert_allclose(x[1:-1, 1:-1], expected[1:-1, 1:-1], rtol=1e-12, atol=1e-15)


def test_center_of_odd_grid_is_one():
    geometry = pb.make_grid_geometry(7, 7)
    x = pb.form_initial_guess_global(geometry)
    assert x[3, 3] == 1.0


@pytest.mark.parametrize("px,py", [(1, 1), (2, 1), (1, 3), (3, 2)])
def test_independent_of_partition(px, py):
    dgrid = pb.make_distributed_grid(10, 8, px=px, py=py)
    serial = pb.form_initial_guess_global(dgrid.geometry)
    assert_array_equal(dgrid.initial_guess(), serial)


def test_window_block_shape():
    geometry = pb.make_grid_geometry(6, 5)
    window = pb.OwnedWindow(xs=2, ys=1, xm=3, ym=2)
    block = pb.form_initial_guess(geometry, window)
    assert block.shape == (3, 2)
    assert_array_equal(block, pb.form_initial_guess_global(geometry)[2:5, 1:3])
