# test_studies_helpers.py
import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pytest

import pbratu_base as pb
import studies_helpers as sh


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


def test_report_on_rates_success(capsys):
    rates, ok = sh.report_on_rates([1.0, 0.25, 0.0625, 0.015625], expected_rate=2.0)
    assert ok
    assert rates == pytest.approx([2.0, 2.0])
    assert "PASS: Matches expected rate" in capsys.readouterr().out


def test_report_on_rates_failure(capsys):
    rates, ok = sh.report_on_rates([0.1, 0.2, 0.4, 0.8], expected_rate=2.0)
    assert not ok
    assert rates == []
    assert "FAIL: Does not match" in capsys.readouterr().out


def test_plot_errors_and_rates_axes():
    fig = sh.plot_errors_and_rates(
        [8, 16, 32, 64],
        {"max": [1.0, 0.25, 0.0625, 0.015625], "h_norm": [0.5, 0.125, None, 0.0078125]},
        {"max": [2.0, 2.0], "h_norm": []},
        title="demo",
        expected_rate=2.0,
    )
    ax_err, ax_rate = fig.axes
    assert ax_err.get_xscale() == "log"
    assert ax_err.get_title() == "demo: errors"
    # two norms plus the reference slope
    assert len(ax_err.get_lines()) == 3
    # max-norm rates plus the expected-rate line
    assert len(ax_rate.get_lines()) == 2


def test_plot_convergence_report_without_rates():
    report = {
        "Ns": [4, 8],
        "errors": {"max": [0.2, 0.05], "h_norm": [0.1, 0.03], "grad_h_norm": [None, None]},
        "rates": {"max": [], "h_norm": [], "grad_h_norm": []},
    }
    fig = sh.plot_convergence_report(report)
    ax_err, ax_rate = fig.axes
    assert ax_err.get_title() == "Spatial convergence: errors"
    assert len(ax_err.get_lines()) == 3
    assert "no rates" in ax_rate.texts[0].get_text()


def test_visualize_solution_panels():
    geometry = pb.make_grid_geometry(9, 7)
    u = pb.form_initial_guess_global(geometry)

    fig = sh.visualize_solution(geometry, u)
    assert len([ax for ax in fig.axes if ax.get_title() == "u (numerical)"]) == 1

    fig = sh.visualize_solution(geometry, u, u_exact=0.9 * u)
    titles = {ax.get_title() for ax in fig.axes}
    assert {"u (numerical)", "u (exact)", "error"} <= titles
    assert np.all(np.isfinite(u))
