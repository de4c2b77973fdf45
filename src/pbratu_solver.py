# pbratu_solver.py - v1

"""
Newton driver for the p-Bratu kernels.

The driver owns the solution; every iteration it asks the problem for a
residual and, every `lag_jacobian` iterations, for a Jacobian, either the
analytic one or a colored finite-difference approximation.
"""

import logging
import warnings
from enum import IntEnum
from typing import List, NamedTuple, Optional

import numpy as np
import scipy.sparse.linalg as spla

import pbratu_base as pb

logger = logging.getLogger(__name__)


class ConvergedReason(IntEnum):
    CONVERGED_FNORM_ABS = 2
    CONVERGED_FNORM_RELATIVE = 3
    CONVERGED_SNORM_RELATIVE = 4
    CONVERGED_ITERATING = 0
    DIVERGED_LINEAR_SOLVE = -3
    DIVERGED_FNORM_NAN = -4
    DIVERGED_MAX_IT = -5
    DIVERGED_LINE_SEARCH = -6

    @property
    def converged(self) -> bool:
        return self.value > 0


LINE_SEARCH_TYPES = ("bt", "basic")


class SolverOptions(NamedTuple):
    rtol: float = 1e-8
    atol: float = 1e-50
    stol: float = 1e-8
    max_it: int = 50
    lag_jacobian: int = 1
    line_search: str = "bt"
    monitor: bool = False


default_solver_options = SolverOptions()


def make_solver_options(**kwargs) -> SolverOptions:
    opts = default_solver_options._replace(**kwargs)
    if opts.max_it < 0:
        raise pb.InvalidConfigurationError(f"max_it = {opts.max_it} must be >= 0")
    if opts.lag_jacobian < 1:
        raise pb.InvalidConfigurationError(
            f"lag_jacobian = {opts.lag_jacobian} must be >= 1"
        )
    if opts.line_search not in LINE_SEARCH_TYPES:
        raise pb.InvalidConfigurationError(
            f"Unknown line search '{opts.line_search}'. Expected one of {LINE_SEARCH_TYPES}."
        )
    return opts


class SolveResult(NamedTuple):
    u: np.ndarray
    its: int
    reason: ConvergedReason
    fnorms: List[float]


def newton_direction(*, Fx0, JacFx0) -> np.ndarray:
    """
    Solves JacFx0 @ dx = -Fx0.

    Returns dx flattened in C order. A singular Jacobian shows up as a
    non-finite dx, which the caller reports as a failed linear solve.
    """
    Fx0 = np.asarray(Fx0).flatten("C")
    dim = len(Fx0)
    assert JacFx0.shape == (dim, dim)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", spla.MatrixRankWarning)
        dx = spla.spsolve(JacFx0, -Fx0)
    return np.asarray(dx).reshape(dim)


def fd_colored_jacobian(residual_fn, u, matrix: pb.StencilMatrixBuilder, *, F0=None):
    """
    Forward-difference Jacobian filling the preallocated pattern of `matrix`.

    Columns are grouped in 9 colors, (i % 3) + 3 (j % 3), so that no two
    columns of a color share a row of a box stencil; one residual evaluation
    per color is enough. The increment for column k is sqrt(eps) * (1 + |u[k]|).
    """
    geometry = matrix.geometry
    Mx, My = geometry
    u = np.asarray(u, dtype=np.float64)
    assert u.shape == geometry.shape

    if F0 is None:
        F0 = residual_fn(u)
    F0 = np.asarray(F0).ravel()

    ii, jj = np.meshgrid(np.arange(Mx), np.arange(My), indexing="ij")
    color = ((ii % 3) + 3 * (jj % 3)).ravel()

    err = np.sqrt(np.finfo(np.float64).eps)
    h = err * (1.0 + np.abs(u.ravel()))

    pattern = matrix.pattern
    col_color = color[pattern.cols]

    for c in range(9):
        in_color = color == c
        if not np.any(in_color):
            continue
        up = u.ravel().copy()
        up[in_color] += h[in_color]
        dF = np.asarray(residual_fn(up.reshape(geometry.shape))).ravel() - F0

        sel = col_color == c
        rows, cols = pattern.rows[sel], pattern.cols[sel]
        matrix.stage(rows, cols, dF[rows] / h[cols])

    return matrix.finalize()


class PBratuProblem:
    """
    Residual and Jacobian callbacks of the p-Bratu problem on a distributed grid.

    Args:
        dgrid: Grid and partition.
        params: Problem parameters.
        forcing: Optional global (Mx, My) source term (manufactured solutions).
        use_analytic_jacobian: If False, the Jacobian is computed by colored
            finite differences.
        alloc_star: Preallocate the Jacobian for the 5-point stencil instead
            of the 9-point one.
    """

    def __init__(
        self,
        dgrid: pb.DistributedGrid,
        params: pb.Parameters,
        *,
        forcing: Optional[np.ndarray] = None,
        use_analytic_jacobian: bool = True,
        alloc_star: bool = False,
    ):
        self.dgrid = dgrid
        self.params = params
        self.forcing = forcing
        self.use_analytic_jacobian = use_analytic_jacobian
        self.matrix = dgrid.create_matrix("star" if alloc_star else "box")

    @property
    def geometry(self) -> pb.GridGeometry:
        return self.dgrid.geometry

    def initial_guess(self) -> np.ndarray:
        return self.dgrid.initial_guess()

    def residual(self, u) -> np.ndarray:
        return pb.evaluate_residual(self.dgrid, u, self.params, self.forcing)

    def jacobian(self, u, F=None):
        if self.use_analytic_jacobian:
            return pb.assemble_jacobian(self.dgrid, u, self.params, self.matrix)
        return fd_colored_jacobian(self.residual, u, self.matrix, F0=F)


class NewtonSolver:
    def __init__(self, options: SolverOptions = default_solver_options):
        self.options = options

    def _monitor(self, its, fnorm):
        logger.debug("iteration %d, |F| = %.6e", its, fnorm)
        if self.options.monitor:
            print(f"{its:3d} SNES Function norm {fnorm:.12e}")

    def _converged(self, its, fnorm, fnorm0, snorm, xnorm) -> ConvergedReason:
        opts = self.options
        if not np.isfinite(fnorm):
            return ConvergedReason.DIVERGED_FNORM_NAN
        if fnorm < opts.atol:
            return ConvergedReason.CONVERGED_FNORM_ABS
        if its > 0:
            if fnorm <= opts.rtol * fnorm0:
                return ConvergedReason.CONVERGED_FNORM_RELATIVE
            if snorm < opts.stol * xnorm:
                return ConvergedReason.CONVERGED_SNORM_RELATIVE
        return ConvergedReason.CONVERGED_ITERATING

    def _line_search(self, problem, u, dx, fnorm):
        """
        Returns (lam, u_new, F_new, fnorm_new), or None when no acceptable
        step was found.
        """
        alpha = 1e-4
        max_cuts = 10

        lam = 1.0
        for _cut in range(max_cuts + 1):
            u_new = u + lam * dx
            F_new = problem.residual(u_new)
            fnorm_new = np.linalg.norm(F_new)

            if self.options.line_search == "basic":
                return lam, u_new, F_new, fnorm_new

            sufficient = fnorm_new**2 <= (1.0 - 2.0 * alpha * lam) * fnorm**2
            if np.isfinite(fnorm_new) and sufficient:
                return lam, u_new, F_new, fnorm_new

            logger.debug("line search: step %.3e rejected, |F| = %.6e", lam, fnorm_new)
            lam *= 0.5

        return None

    def solve(self, problem: PBratuProblem, u0=None) -> SolveResult:
        opts = self.options
        shape = problem.geometry.shape

        u = problem.initial_guess() if u0 is None else np.array(u0, dtype=np.float64)
        assert u.shape == shape

        F = problem.residual(u)
        fnorm = np.linalg.norm(F)
        fnorm0 = fnorm
        fnorms = [fnorm]
        self._monitor(0, fnorm)

        its = 0
        J = None
        reason = self._converged(its, fnorm, fnorm0, np.inf, 0.0)

        while reason == ConvergedReason.CONVERGED_ITERATING:
            if its >= opts.max_it:
                reason = ConvergedReason.DIVERGED_MAX_IT
                break

            if J is None or its % opts.lag_jacobian == 0:
                J = problem.jacobian(u, F)

            dx = newton_direction(Fx0=F, JacFx0=J).reshape(shape)
            if not np.all(np.isfinite(dx)):
                reason = ConvergedReason.DIVERGED_LINEAR_SOLVE
                break

            step = self._line_search(problem, u, dx, fnorm)
            if step is None:
                reason = ConvergedReason.DIVERGED_LINE_SEARCH
                break
            lam, u, F, fnorm = step

            its += 1
            fnorms.append(fnorm)
            self._monitor(its, fnorm)

            snorm = lam * np.linalg.norm(dx)
            reason = self._converged(its, fnorm, fnorm0, snorm, np.linalg.norm(u))

        logger.info("Newton finished: %s after %d iterations", reason.name, its)
        return SolveResult(u=u, its=its, reason=reason, fnorms=fnorms)


def solve_pbratu(
    params: pb.Parameters = pb.default_parameters,
    *,
    Mx: int = 4,
    My: Optional[int] = None,
    px: int = 1,
    py: int = 1,
    use_analytic_jacobian: bool = True,
    alloc_star: bool = False,
    options: SolverOptions = default_solver_options,
) -> SolveResult:
    """Sets up the grid and problem, and solves from the bump initial guess."""
    dgrid = pb.make_distributed_grid(Mx, My, px=px, py=py)
    problem = PBratuProblem(
        dgrid,
        params,
        use_analytic_jacobian=use_analytic_jacobian,
        alloc_star=alloc_star,
    )
    return NewtonSolver(options).solve(problem)
