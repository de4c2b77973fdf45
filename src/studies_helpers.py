# studies_helpers.py - v1
# Rate reports and plots for convergence studies and solutions.

from typing import List, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np

import pbratu_base as pb
from cvg_studies_base import ERROR_NORMS, CvgReport
from utils_for_testing import observed_rates_report


def report_on_rates(
    errors: List[float],
    *,
    expected_rate: float = 2.0,
    tolerance: float = 0.1,
    cmp_type: str = "least",
    title: str = "Observed Rates",
) -> Tuple[List[float], bool]:
    """
    Like observed_rates_report, but a rate below expectations is reported
    instead of raised. Returns (rates, success); rates is empty on failure.
    """
    print(f"\n{title}:")
    print("=" * len(title))

    try:
        observed_rates = observed_rates_report(
            errors, expected_rate=expected_rate, tolerance=tolerance, cmp_type=cmp_type
        )
    except AssertionError as e:
        print(f"FAIL: {e}")
        print(f"FAIL: Does not match expected rate {expected_rate:.1f} ± {tolerance:.1f}")
        return [], False

    print(f"PASS: Matches expected rate {expected_rate:.1f} ± {tolerance:.1f}")
    return observed_rates, True


def plot_errors_and_rates(
    Ns: Sequence[int],
    errors_by_norm: dict,
    rates_by_norm: dict,
    *,
    title: str,
    expected_rate: Optional[float] = None,
    show: bool = False,
):
    """
    Left: log-log errors against h = 1/N, one line per norm, with an
    h^expected_rate reference through the finest error of the first norm.
    Right: the 3-point observed rates, drawn at the middle level of their
    triplet.
    """
    h = 1.0 / np.asarray(Ns, dtype=float)
    fig, (ax_err, ax_rate) = plt.subplots(1, 2, figsize=(13, 5))

    plotted = []
    for norm, errors in errors_by_norm.items():
        errs = np.array([np.nan if e is None else e for e in errors], dtype=float)
        if np.all(np.isnan(errs)):
            continue
        ax_err.loglog(h, errs, "o-", label=norm)
        plotted.append(errs)

    if expected_rate is not None and plotted and np.isfinite(plotted[0][-1]):
        ref = plotted[0][-1] * (h / h[-1]) ** expected_rate
        ax_err.loglog(h, ref, "k--", label=f"O(h^{expected_rate:g})")

    ax_err.invert_xaxis()
    ax_err.set_xlabel("h")
    ax_err.set_ylabel("error")
    ax_err.set_title(f"{title}: errors")
    ax_err.grid(True, which="both", alpha=0.4)
    ax_err.legend()

    has_rates = False
    for norm, rates in rates_by_norm.items():
        if rates:
            ax_rate.plot(Ns[1 : 1 + len(rates)], rates, "s-", label=norm)
            has_rates = True

    if has_rates:
        if expected_rate is not None:
            ax_rate.axhline(expected_rate, color="r", linestyle=":", label="expected")
        ax_rate.set_xscale("log", base=2)
        ax_rate.set_xlabel("N (cells per side)")
        ax_rate.set_ylabel("observed rate")
        ax_rate.set_title(f"{title}: rates")
        ax_rate.grid(True, alpha=0.4)
        ax_rate.legend()
    else:
        ax_rate.axis("off")
        ax_rate.text(0.5, 0.5, "Fewer than 3 levels:\nno rates", ha="center", va="center")

    fig.tight_layout()
    if show:
        plt.show()
    return fig


def plot_convergence_report(
    report: CvgReport,
    *,
    norms: Sequence[str] = tuple(ERROR_NORMS),
    expected_rate: float = 2.0,
    title: str = "Spatial convergence",
    show: bool = False,
):
    """Plots the selected norms of a run_spatial_convergence_study report."""
    return plot_errors_and_rates(
        report["Ns"],
        {norm: report["errors"][norm] for norm in norms},
        {norm: report["rates"].get(norm, []) for norm in norms},
        title=title,
        expected_rate=expected_rate,
        show=show,
    )


def visualize_solution(
    geometry: pb.GridGeometry,
    u,
    *,
    u_exact=None,
    title: str = "p-Bratu solution",
    show: bool = False,
):
    """
    Contour plot of u; with u_exact, also of the exact solution and of the
    error u - u_exact.
    """
    xx, yy = geometry.coordinates()
    u = np.asarray(u)

    panels = [(u, "u (numerical)", "viridis")]
    if u_exact is not None:
        u_exact = np.asarray(u_exact)
        panels.append((u_exact, "u (exact)", "viridis"))
        panels.append((u - u_exact, "error", "coolwarm"))

    fig, axs = plt.subplots(1, len(panels), figsize=(6 * len(panels), 5), squeeze=False)
    for ax, (values, label, cmap) in zip(axs[0], panels):
        im = ax.contourf(xx, yy, values, cmap=cmap)
        fig.colorbar(im, ax=ax)
        ax.set_title(label)
        ax.set_xlabel("x")
        ax.set_ylabel("y")
        ax.set_aspect("equal")

    fig.suptitle(title, fontsize=16)
    fig.tight_layout()
    if show:
        plt.show()
    return fig
