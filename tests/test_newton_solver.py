# test_newton_solver.py
import pytest
import numpy as np
import scipy.sparse as sp
from numpy.testing import assert_allclose

import pbratu_base as pb
import pbratu_solver as ps
from utils_for_testing import smooth_test_field

ALL_VARIANTS = list(pb.JacobianVariant)


@pytest.mark.parametrize("variant", ALL_VARIANTS)
def test_default_problem_converges(variant):
    params = pb.make_parameters(jtype=int(variant))
    result = ps.solve_pbratu(params)

    assert result.reason.converged, result.reason.name
    assert 1 <= result.its <= 10
    assert len(result.fnorms) == result.its + 1
    assert result.fnorms[-1] < result.fnorms[0]


def test_default_problem_solution_by_symmetry():
    """
    On the 4x4 grid all four interior unknowns are equal and solve
    2u - lambda/9 exp(u) = 0; the root reached from the bump is the smaller one.
    """
    result = ps.solve_pbratu(pb.default_parameters, options=ps.make_solver_options(rtol=1e-12))
    u = result.u
    assert_allclose(u[1:-1, 1:-1], u[1, 1], rtol=1e-12)
    assert 2 * u[1, 1] - 6.0 / 9.0 * np.exp(u[1, 1]) == pytest.approx(0.0, abs=1e-10)
    assert u[1, 1] < 1.0


def test_full_jacobian_converges_for_p3():
    params = pb.make_parameters(lam=1.0, p=3.0, epsilon=0.1, jtype=4)
    result = ps.solve_pbratu(params, Mx=9, My=9)

    assert result.reason.converged, result.reason.name
    assert result.its <= 20
    # bt only accepts steps that decrease |F|
    assert np.all(np.diff(result.fnorms) < 0)


def test_full_jacobian_converges_quadratically_for_p3():
    params = pb.make_parameters(lam=1.0, p=3.0, epsilon=0.1, jtype=4)
    result = ps.solve_pbratu(params, Mx=17, My=17)
    assert result.reason.converged, result.reason.name

    fnorms = result.fnorms
    # Asymptotic steps that are still above round-off.
    pairs = [
        (f0, f1) for f0, f1 in zip(fnorms, fnorms[1:]) if f0 < 1e-4 and f1 > 1e-13
    ]
    assert pairs, fnorms
    for f0, f1 in pairs:
        assert f1 <= 100.0 * f0**2, fnorms
    assert fnorms[-1] / fnorms[-2] < 1e-3, fnorms


@pytest.mark.parametrize("alloc_star", [False, True])
def test_fd_colored_jacobian_gives_same_solution(alloc_star):
    jtype = 3 if alloc_star else 4
    params = pb.make_parameters(lam=2.0, p=3.0, epsilon=0.2, jtype=jtype)
    options = ps.make_solver_options(rtol=1e-10, stol=0.0)

    analytic = ps.solve_pbratu(params, Mx=8, My=7, options=options)
    fd = ps.solve_pbratu(
        params, Mx=8, My=7, use_analytic_jacobian=False, alloc_star=alloc_star, options=options
    )

    assert analytic.reason.converged, analytic.reason.name
    assert fd.reason.converged, fd.reason.name
    assert_allclose(fd.u, analytic.u, rtol=1e-6, atol=1e-8)


def test_fd_colored_jacobian_matches_analytic_in_box_pattern():
    dgrid = pb.make_distributed_grid(8, 7)
    params = pb.Parameters(lam=1.0, p=3.0, epsilon=1.0)
    u = smooth_test_field(8, 7, amplitude=0.7)

    J = pb.assemble_jacobian(dgrid, u, params, dgrid.create_matrix("box"))
    J_fd = ps.fd_colored_jacobian(
        lambda v: pb.evaluate_residual(dgrid, v, params), u, dgrid.create_matrix("box")
    )

    assert J_fd.nnz == J.nnz
    assert_allclose(J_fd.toarray(), J.toarray(), rtol=1e-5, atol=1e-6 * abs(J).max())


def test_lagged_jacobian_still_converges():
    params = pb.make_parameters(lam=1.0, p=3.0, epsilon=0.1)
    lagged = ps.solve_pbratu(
        params, Mx=9, My=9, options=ps.make_solver_options(lag_jacobian=3, max_it=100)
    )
    assert lagged.reason.converged, lagged.reason.name


def test_partitioned_solve_matches_serial():
    params = pb.make_parameters(lam=4.0, p=2.5, epsilon=0.05)
    serial = ps.solve_pbratu(params, Mx=9, My=8)
    parallel = ps.solve_pbratu(params, Mx=9, My=8, px=2, py=3)
    assert serial.its == parallel.its
    assert_allclose(parallel.u, serial.u, rtol=1e-10, atol=1e-12)


def test_max_it_is_reported():
    result = ps.solve_pbratu(pb.default_parameters, options=ps.make_solver_options(max_it=1))
    assert result.reason == ps.ConvergedReason.DIVERGED_MAX_IT
    assert result.its == 1


def test_full_on_star_allocation_raises():
    with pytest.raises(pb.StructuralError):
        ps.solve_pbratu(pb.make_parameters(jtype=4), Mx=5, My=5, alloc_star=True)


def test_monitor_prints_norms(capsys):
    ps.solve_pbratu(pb.default_parameters, options=ps.make_solver_options(monitor=True))
    out = capsys.readouterr().out
    assert "  0 SNES Function norm" in out
    assert "  1 SNES Function norm" in out


class _FakeProblem:
    def __init__(self, residual_fn, jacobian):
        self.geometry = pb.make_grid_geometry(3, 3)
        self._residual_fn = residual_fn
        self._jacobian = jacobian

    def initial_guess(self):
        return np.ones(self.geometry.shape)

    def residual(self, u):
        return self._residual_fn(u)

    def jacobian(self, u, F=None):
        return self._jacobian


def test_singular_jacobian_is_linear_solve_failure():
    singular = sp.csr_array(np.diag([1.0] * 8 + [0.0]))
    problem = _FakeProblem(lambda u: u.copy(), singular)
    result = ps.NewtonSolver().solve(problem)
    assert result.reason == ps.ConvergedReason.DIVERGED_LINEAR_SOLVE
    assert result.its == 0


def test_nan_residual_is_reported():
    problem = _FakeProblem(lambda u: np.full(u.shape, np.nan), sp.eye_array(9, format="csr"))
    result = ps.NewtonSolver().solve(problem)
    assert result.reason == ps.ConvergedReason.DIVERGED_FNORM_NAN


def test_line_search_failure_is_reported():
    # The Newton direction of F(u) = u + 1 under a wrong Jacobian points uphill.
    problem = _FakeProblem(lambda u: u + 1.0, -sp.eye_array(9, format="csr"))
    result = ps.NewtonSolver().solve(problem)
    assert result.reason == ps.ConvergedReason.DIVERGED_LINE_SEARCH


def test_basic_line_search_takes_full_steps():
    problem = _FakeProblem(lambda u: u + 1.0, sp.eye_array(9, format="csr"))
    result = ps.NewtonSolver(ps.make_solver_options(line_search="basic")).solve(problem)
    assert result.reason.converged
    assert result.its == 1
    assert_allclose(result.u, -1.0)


@pytest.mark.parametrize(
    "kwargs", [{"lag_jacobian": 0}, {"line_search": "cubic"}, {"max_it": -1}]
)
def test_invalid_solver_options(kwargs):
    with pytest.raises(pb.InvalidConfigurationError):
        ps.make_solver_options(**kwargs)
