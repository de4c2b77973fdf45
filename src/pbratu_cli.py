# pbratu_cli.py - v1

"""
p-Bratu nonlinear PDE in 2d.

Solves the p-Laplacian (nonlinear diffusion) combined with the Bratu (solid
fuel ignition) nonlinearity on the unit square,

    -div(eta grad u) - lambda exp(u) = 0,   u = 0 on the boundary,
    eta = (epsilon^2 + 1/2 |grad u|^2)^((p-2)/2),

and prints the convergence reason and the number of Newton iterations.

Example:
    pbratu -p 3 -lambda 2 -jtype 3 -da_grid_x 16 -da_grid_y 16 -snes_monitor
"""

import logging

import click

import pbratu_base as pb
import pbratu_solver as ps

LOG_FORMAT = "[%(asctime)s] %(levelname)s in %(module)s: %(message)s"


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)


@click.command(context_settings={"help_option_names": ["-h", "-help", "--help"]})
@click.option("-p", "p", type=float, default=2.0, show_default=True, help="Exponent `p' in p-Laplacian.")
@click.option("-epsilon", "epsilon", type=float, default=1e-5, show_default=True, help="Strain-regularization in p-Laplacian.")
@click.option("-lambda", "lam", type=float, default=6.0, show_default=True, help="Bratu parameter.")
@click.option(
    "-jtype",
    "jtype",
    type=int,
    default=4,
    show_default=True,
    help="Jacobian type, 1=plain, 2=first term, 3=star, 4=full.",
)
@click.option(
    "-myJ",
    "my_j",
    type=click.BOOL,
    is_flag=False,
    flag_value=True,
    default=True,
    show_default=True,
    help="Provide the analytic Jacobian (otherwise colored finite differences).",
)
@click.option(
    "-alloc_star",
    "alloc_star",
    type=click.BOOL,
    is_flag=False,
    flag_value=True,
    default=False,
    show_default=True,
    help="Allocate the Jacobian for the STAR stencil (5-point).",
)
@click.option("-da_grid_x", "mx", type=int, default=4, show_default=True, help="Grid points in x.")
@click.option("-da_grid_y", "my", type=int, default=4, show_default=True, help="Grid points in y.")
@click.option("-da_processors_x", "px", type=int, default=1, show_default=True, help="Partitions in x.")
@click.option("-da_processors_y", "py", type=int, default=1, show_default=True, help="Partitions in y.")
@click.option("-snes_rtol", "rtol", type=float, default=ps.default_solver_options.rtol, show_default=True)
@click.option("-snes_atol", "atol", type=float, default=ps.default_solver_options.atol, show_default=True)
@click.option("-snes_stol", "stol", type=float, default=ps.default_solver_options.stol, show_default=True)
@click.option("-snes_max_it", "max_it", type=int, default=ps.default_solver_options.max_it, show_default=True)
@click.option(
    "-snes_lag_jacobian",
    "lag_jacobian",
    type=int,
    default=ps.default_solver_options.lag_jacobian,
    show_default=True,
    help="Recompute the Jacobian every this many Newton iterations.",
)
@click.option(
    "-snes_linesearch_type",
    "line_search",
    type=click.Choice(ps.LINE_SEARCH_TYPES),
    default=ps.default_solver_options.line_search,
    show_default=True,
)
@click.option("-snes_monitor", "monitor", is_flag=True, help="Print the residual norm at every iteration.")
@click.option(
    "-log_level",
    "log_level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def main(
    p,
    epsilon,
    lam,
    jtype,
    my_j,
    alloc_star,
    mx,
    my,
    px,
    py,
    rtol,
    atol,
    stol,
    max_it,
    lag_jacobian,
    line_search,
    monitor,
    log_level,
):
    """p-Bratu nonlinear PDE in 2d."""
    _configure_logging(log_level)

    try:
        params = pb.make_parameters(lam=lam, p=p, epsilon=epsilon, jtype=jtype)
        options = ps.make_solver_options(
            rtol=rtol,
            atol=atol,
            stol=stol,
            max_it=max_it,
            lag_jacobian=lag_jacobian,
            line_search=line_search,
            monitor=monitor,
        )
        result = ps.solve_pbratu(
            params,
            Mx=mx,
            My=my,
            px=px,
            py=py,
            use_analytic_jacobian=my_j,
            alloc_star=alloc_star,
            options=options,
        )
    except pb.PBratuError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"{result.reason.name} Number of Newton iterations = {result.its}")


if __name__ == "__main__":
    main()
