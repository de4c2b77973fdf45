import math
from typing import Callable, List, Literal

import numpy as np

from cvg_studies_base import RateStatus, calculate_observed_rates


def central_difference_jacobian(
    residual_fn: Callable[[np.ndarray], np.ndarray], u: np.ndarray, *, h: float = 1e-6
) -> np.ndarray:
    """
    Dense Jacobian of residual_fn at u by central differences, one column per
    grid point. Columns follow the C-order flattening of u.
    """
    u = np.asarray(u, dtype=np.float64)
    n = u.size
    J = np.zeros((n, n))
    for k in range(n):
        up = u.flatten()
        um = u.flatten()
        up[k] += h
        um[k] -= h
        Fp = np.asarray(residual_fn(up.reshape(u.shape))).ravel()
        Fm = np.asarray(residual_fn(um.reshape(u.shape))).ravel()
        J[:, k] = (Fp - Fm) / (2 * h)
    return J


def smooth_test_field(Mx: int, My: int, *, amplitude: float = 1.0) -> np.ndarray:
    """
    A non-symmetric field vanishing on the boundary, with gradients of
    different sizes in x and y at every interior point.
    """
    x = np.linspace(0, 1, Mx)
    y = np.linspace(0, 1, My)
    xx, yy = np.meshgrid(x, y, indexing="ij")
    return amplitude * np.sin(np.pi * xx) * np.sin(np.pi * yy) * (1 + xx + 0.5 * yy**2)


def observed_rates_report(
    errors: List[float],
    *,
    expected_rate: float = 2.0,
    tolerance: float = 0.1,
    cmp_type: Literal["least", "equal"] = "least",
    halt_print: bool = False,
) -> List[float]:
    """
    Prints the 3-point observed rates of `errors` (refinement factor 2) and
    asserts on the final one.

    Args:
        errors: Errors from coarsest to finest level.
        expected_rate: Target convergence rate.
        tolerance: Allowed deviation from expected_rate.
        cmp_type: 'equal' for |rate - expected| <= tolerance, 'least' for
            rate >= expected - tolerance.
        halt_print: Suppress the printed report.

    Returns:
        The observed rates.
    """
    if cmp_type not in ["equal", "least"]:
        raise ValueError(f"cmp_type must be 'equal' or 'least', not {cmp_type}")

    def cond_print(*args):
        if not halt_print:
            print(*args)

    rates_with_status = calculate_observed_rates(errors, refinement_factor=2.0)

    cond_print("\nObserved Rates (3-point formula):")
    for k, (rate, status) in enumerate(rates_with_status):
        if status == RateStatus.OK:
            cond_print(f"    Levels {k},{k+1},{k+2}: {rate:.3f}")
        else:
            cond_print(f"    Levels {k},{k+1},{k+2}: NaN ({status})")

    observed_rates = [rate for (rate, _status) in rates_with_status]
    final_rate = observed_rates[-1]

    assert math.isfinite(final_rate), f"Final rate is not finite ({final_rate})."
    cond_print(f"  Final observed rate (3-point): {final_rate:.3f}")

    if cmp_type == "least":
        assert (
            final_rate >= expected_rate - tolerance
        ), f"Observed rate {final_rate:.3f} not at least {expected_rate:.1f}"
    else:
        assert (
            abs(final_rate - expected_rate) <= tolerance
        ), f"Observed rate {final_rate:.3f} not close to expected {expected_rate:.1f}"

    return observed_rates
