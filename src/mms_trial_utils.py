# mms_trial_utils.py
from typing import Dict, Optional, Type

import numpy as np

import pbratu_base as pb
import pbratu_solver as ps
from pbratu_mms_cases import MMSCaseBase


def grad_minus(geometry: pb.GridGeometry, u):
    """
    Backward differences (D_{-x} u, D_{-y} u), zero in the first row/column
    where they are undefined.
    """
    u = np.asarray(u)
    Dmxu = np.zeros_like(u)
    Dmyu = np.zeros_like(u)
    Dmxu[1:, :] = (u[1:, :] - u[:-1, :]) / geometry.hx
    Dmyu[:, 1:] = (u[:, 1:] - u[:, :-1]) / geometry.hy
    return Dmxu, Dmyu


def norm_grad_minus(geometry: pb.GridGeometry, u) -> float:
    """Discrete H1 seminorm built from the backward differences."""
    Dmxu, Dmyu = grad_minus(geometry, u)
    hxhy = geometry.hx * geometry.hy
    return np.sqrt(hxhy * (np.sum(Dmxu[1:, :] ** 2) + np.sum(Dmyu[:, 1:] ** 2)))


class NumericalErrorSummary:
    """
    Errors of a numerical solution against the exact one on the same grid.
    """

    def __init__(self, geometry: pb.GridGeometry, u_num, u_exact, *, solve_result=None):
        error = np.asarray(u_num) - np.asarray(u_exact)
        assert error.shape == geometry.shape

        self.geometry = geometry
        self.solve_result = solve_result

        self.max_error: float = float(np.max(np.abs(error)))
        self.h_norm_error: float = float(geometry.norm_H(error))
        self.grad_h_norm_error: float = float(norm_grad_minus(geometry, error))

    @property
    def converged(self) -> bool:
        return self.solve_result is None or self.solve_result.reason.converged

    def __repr__(self):
        reason = "n/a" if self.solve_result is None else self.solve_result.reason.name
        return (
            f"NumericalErrorSummary(grid={self.geometry.Mx}x{self.geometry.My}, "
            f"MaxError={self.max_error:.4e}, HNormError={self.h_norm_error:.4e}, "
            f"GradHNormError={self.grad_h_norm_error:.4e}, Reason={reason})"
        )


class MMSTrial:
    """
    Solves the p-Bratu problem forced by a manufactured solution on one grid
    and compares against the exact solution.
    """

    def __init__(
        self,
        geometry: pb.GridGeometry,
        params: pb.Parameters,
        mms_case_cls: Type[MMSCaseBase],
        *,
        mms_case_params: Optional[Dict] = None,
        px: int = 1,
        py: int = 1,
        solver_options: ps.SolverOptions = ps.default_solver_options,
        use_analytic_jacobian: bool = True,
        alloc_star: bool = False,
    ):
        self.geometry = geometry
        self.params = params
        self.mms_case = mms_case_cls(params, **(mms_case_params or {}))
        self.dgrid = pb.DistributedGrid(geometry, px=px, py=py)

        self.u_exact = self.mms_case.u_on(geometry)
        self.forcing = self.mms_case.forcing_on(geometry)

        self.problem = ps.PBratuProblem(
            self.dgrid,
            params,
            forcing=self.forcing,
            use_analytic_jacobian=use_analytic_jacobian,
            alloc_star=alloc_star,
        )
        self.solver = ps.NewtonSolver(solver_options)

    def run_for_errors(self, u0=None) -> NumericalErrorSummary:
        """
        Args:
            u0: Initial iterate. Defaults to the bump initial guess of the
                unforced problem.
        """
        result = self.solver.solve(self.problem, u0)
        return NumericalErrorSummary(
            self.geometry, result.u, self.u_exact, solve_result=result
        )
