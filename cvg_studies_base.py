# cvg_studies_base.py - v1

import math
import time
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Tuple, Type

import numpy as np

import pbratu_base as pb
import pbratu_solver as ps
from mms_trial_utils import MMSTrial
from pbratu_mms_cases import MMSCaseBase


class _RateStatus(NamedTuple):
    OK: str = "OK"
    ZERO_DENOMINATOR_ZERO_NUMERATOR: str = "Differences near zero (converged/stalled?)"
    ZERO_DENOMINATOR_NONZERO_NUMERATOR: str = "Unstable rate (denominator near zero)"
    NON_POSITIVE_RATIO: str = "Non-positive ratio (convergence issue?)"
    ERROR_INCREASING: str = "Error increasing significantly"


RateStatus = _RateStatus()


def calculate_observed_rates(
    errors: List[float], refinement_factor: float = 2.0
) -> List[Tuple[float, str]]:
    """
    Observed convergence rates from consecutive triplets of errors.

    For errors (E_coarse, E_medium, E_fine) of levels refined by
    `refinement_factor`, the rate is log((E_coarse - E_medium) / (E_medium - E_fine)) / log(r).
    Errors are ordered from coarsest to finest.

    Returns:
        [(rate, status), ...], one per triplet. rate is nan whenever status
        is not RateStatus.OK.
    """
    assert len(errors) >= 3, "At least 3 error values are required for rate calculation."
    assert refinement_factor > 1.0, "Refinement factor must be > 1.0"
    assert all(e >= 0 for e in errors), "Error values must be non-negative."

    log_r = math.log(refinement_factor)
    near_zero_tol = np.finfo(float).eps

    results = []
    for k in range(len(errors) - 2):
        numerator = errors[k] - errors[k + 1]
        denominator = errors[k + 1] - errors[k + 2]

        rate = np.nan
        if abs(denominator) < near_zero_tol:
            if abs(numerator) < near_zero_tol:
                status = RateStatus.ZERO_DENOMINATOR_ZERO_NUMERATOR
            else:
                status = RateStatus.ZERO_DENOMINATOR_NONZERO_NUMERATOR
        elif denominator < 0:
            status = RateStatus.ERROR_INCREASING
        elif numerator <= 0:
            status = RateStatus.NON_POSITIVE_RATIO
        else:
            status = RateStatus.OK
            rate = math.log(numerator / denominator) / log_r

        results.append((rate, status))

    return results


# A spatial convergence report maps each error norm to its list of errors
# (None where the solve failed) and to the rates/statuses computed from them.
ErrorNorm = Literal["max", "h_norm", "grad_h_norm"]
CvgReport = Dict[str, Any]

ERROR_NORMS: List[ErrorNorm] = ["max", "h_norm", "grad_h_norm"]


def run_spatial_convergence_study(
    *,
    params: pb.Parameters,
    mms_case_cls: Type[MMSCaseBase],
    N_base: int = 8,
    num_refinements: int = 4,
    refinement_factor: int = 2,
    mms_case_params: Optional[Dict] = None,
    solver_options: ps.SolverOptions = ps.default_solver_options,
    trial_params: Optional[Dict] = None,
    verbose: bool = True,
) -> CvgReport:
    """
    Solves the manufactured problem on grids with N = N_base * r^k cells per
    side (Mx = My = N + 1), k = 0..num_refinements-1, and collects errors in
    the max, H and gradient H norms together with the observed rates.
    """

    def cond_print(*args, **kwargs):
        if verbose:
            print(*args, **kwargs)

    Ns = [N_base * refinement_factor**k for k in range(num_refinements)]
    report: CvgReport = {
        "Ns": Ns,
        "reasons": [],
        "errors": {norm: [] for norm in ERROR_NORMS},
        "rates": {},
        "statuses": {},
    }

    for k, N in enumerate(Ns):
        t_start_level = time.time()
        cond_print(f"\n  Spatial Level {k} (Mx=My={N + 1})")

        trial = MMSTrial(
            pb.make_grid_geometry(N + 1, N + 1),
            params,
            mms_case_cls,
            mms_case_params=mms_case_params,
            solver_options=solver_options,
            **(trial_params or {}),
        )
        summary = trial.run_for_errors()
        report["reasons"].append(summary.solve_result.reason.name)

        if summary.converged:
            report["errors"]["max"].append(summary.max_error)
            report["errors"]["h_norm"].append(summary.h_norm_error)
            report["errors"]["grad_h_norm"].append(summary.grad_h_norm_error)
        else:
            for norm in ERROR_NORMS:
                report["errors"][norm].append(None)

        cond_print(f"    {summary}")
        cond_print(
            f"  Spatial Level {k} finished in {time.time() - t_start_level:.2f} seconds."
        )

    for norm in ERROR_NORMS:
        errors = report["errors"][norm]
        if len(errors) >= 3 and all(e is not None for e in errors):
            computed = calculate_observed_rates(errors, refinement_factor)
        else:
            computed = []
        report["rates"][norm] = [rate for (rate, _status) in computed]
        report["statuses"][norm] = [status for (_rate, status) in computed]

    return report


StudyConfig = Tuple[pb.Parameters, Type[MMSCaseBase], str]


def run_convergence_studies(
    study_configs: List[StudyConfig], study_params: Dict[str, Any]
) -> Dict[str, CvgReport]:
    """
    Runs a spatial convergence study per (params, MMS case class, label).
    `study_params` holds the keyword arguments shared by every study
    (N_base, num_refinements, solver_options, ...).
    """
    all_results = {}
    for params, mms_case_cls, label in study_configs:
        print(f"\n===== Running Studies for Case: {label} =====")
        all_results[label] = run_spatial_convergence_study(
            params=params, mms_case_cls=mms_case_cls, **study_params
        )
        print(f"\n===== Finished Studies for Case: {label} =====")
    return all_results
