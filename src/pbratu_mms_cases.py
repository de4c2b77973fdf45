# pbratu_mms_cases.py - v1

"""
Manufactured solutions for the p-Bratu problem.

An exact solution u(x, y) vanishing on the boundary of the unit square is
chosen symbolically and the source term

    f = -div(eta(grad u) grad u) - lambda exp(u)

is derived from it, so that u solves the forced problem exactly. The
discrete problem forced with f then has a solution within O(h^2) of u.
"""

import numbers
from abc import ABC, abstractmethod
from typing import Callable, Dict

import numpy as np
import sympy

import pbratu_base as pb

# 0 <= x, y <= 1.
x_sym, y_sym = sympy.symbols("x y", real=True)


def _create_shape_adjusting_wrapper(raw_lambdified_func: Callable) -> Callable:
    """
    Wraps a lambdified z = f(x, y) so that z always has the shape of x (and
    y, which must match) and dtype float64. Constant expressions lambdify to
    scalars and are broadcast.
    """

    def wrapped_func(x_num, y_num) -> np.ndarray:
        x_shape = np.shape(x_num)
        assert x_shape == np.shape(y_num)

        raw_flat = np.asarray(raw_lambdified_func(x_num, y_num)).flatten()
        if len(raw_flat) == 1:
            return np.full(x_shape, raw_flat[0], dtype=np.float64)

        assert len(raw_flat) == np.prod(x_shape)
        return np.reshape(raw_flat, x_shape).astype(np.float64)

    return wrapped_func


def pack_symbolic_xy_with_derivatives(
    *,
    base_expr: sympy.Expr,
    x_var: sympy.Symbol = x_sym,
    y_var: sympy.Symbol = y_sym,
) -> Dict[str, Callable]:
    """
    Lambdified 'base', 'dx', 'dy', 'dxx', 'dyy' and 'lap' of base_expr, each
    taking (xx, yy) arrays and returning an array of the same shape.
    """
    dx_expr = sympy.diff(base_expr, x_var)
    dy_expr = sympy.diff(base_expr, y_var)
    dxx_expr = sympy.diff(dx_expr, x_var)
    dyy_expr = sympy.diff(dy_expr, y_var)

    exprs = {
        "base": base_expr,
        "dx": dx_expr,
        "dy": dy_expr,
        "dxx": dxx_expr,
        "dyy": dyy_expr,
        "lap": dxx_expr + dyy_expr,
    }
    eval_vars = [x_var, y_var]
    return {
        name: _create_shape_adjusting_wrapper(sympy.lambdify(eval_vars, expr, modules="numpy"))
        for name, expr in exprs.items()
    }


def symbolic_forcing(
    u_expr: sympy.Expr,
    params: pb.Parameters,
    *,
    x_var: sympy.Symbol = x_sym,
    y_var: sympy.Symbol = y_sym,
) -> sympy.Expr:
    """f = -div(eta grad u) - lambda exp(u) for the exact solution u_expr."""
    # Exact rational exponent: p=2 gives eta == 1 symbolically.
    p = sympy.nsimplify(params.p)
    epsilon = sympy.Float(params.epsilon)
    lam = sympy.Float(params.lam)

    ux = sympy.diff(u_expr, x_var)
    uy = sympy.diff(u_expr, y_var)
    eta_expr = (epsilon**2 + sympy.Rational(1, 2) * (ux**2 + uy**2)) ** ((p - 2) / 2)

    div_flux = sympy.diff(eta_expr * ux, x_var) + sympy.diff(eta_expr * uy, y_var)
    return -div_flux - lam * sympy.exp(u_expr)


class MMSCaseBase(ABC):
    def __init__(self, params: pb.Parameters):
        self._params = params

    @property
    def params(self) -> pb.Parameters:
        return self._params

    @abstractmethod
    def u(self, xx, yy) -> np.ndarray:
        pass

    @abstractmethod
    def dx_u(self, xx, yy) -> np.ndarray:
        pass

    @abstractmethod
    def dy_u(self, xx, yy) -> np.ndarray:
        pass

    @abstractmethod
    def forcing(self, xx, yy) -> np.ndarray:
        pass

    def u_on(self, geometry: pb.GridGeometry) -> np.ndarray:
        xx, yy = geometry.coordinates()
        u = self.u(xx, yy)
        # Exact zeros on the boundary, not round-off of sin(pi), etc.
        u[geometry.boundary_mask()] = 0.0
        return u

    def forcing_on(self, geometry: pb.GridGeometry) -> np.ndarray:
        xx, yy = geometry.coordinates()
        return self.forcing(xx, yy)


class MMSCaseSymbolic(MMSCaseBase):
    """
    MMS case from a sympy expression of the exact solution in x_sym, y_sym.
    Derivatives and the forcing term are derived and lambdified on creation.
    """

    def __init__(self, params: pb.Parameters, *, u_sym_expr: sympy.Expr):
        super().__init__(params)

        boundary_values = [
            u_sym_expr.subs(x_sym, 0),
            u_sym_expr.subs(x_sym, 1),
            u_sym_expr.subs(y_sym, 0),
            u_sym_expr.subs(y_sym, 1),
        ]
        assert all(
            sympy.simplify(v) == 0 for v in boundary_values
        ), "Exact solution must vanish on the boundary of the unit square."

        self._u_sym_expr = u_sym_expr
        self._u_pack = pack_symbolic_xy_with_derivatives(base_expr=u_sym_expr)
        self._forcing_sym_expr = symbolic_forcing(u_sym_expr, params)
        self._forcing_func = _create_shape_adjusting_wrapper(
            sympy.lambdify([x_sym, y_sym], self._forcing_sym_expr, modules="numpy")
        )

    @property
    def u_sym_expr(self) -> sympy.Expr:
        return self._u_sym_expr

    @property
    def forcing_sym_expr(self) -> sympy.Expr:
        return self._forcing_sym_expr

    @property
    def u_pack(self) -> Dict[str, Callable]:
        return self._u_pack

    def u(self, xx, yy):
        return self.u_pack["base"](xx, yy)

    def dx_u(self, xx, yy):
        return self.u_pack["dx"](xx, yy)

    def dy_u(self, xx, yy):
        return self.u_pack["dy"](xx, yy)

    def forcing(self, xx, yy):
        return self._forcing_func(xx, yy)


class MMSCaseBump(MMSCaseSymbolic):
    """
    u = A * 16 x(1-x) y(1-y): maximum A at the centre of the square.
    """

    def __init__(self, params: pb.Parameters, *, amplitude: float = 1.0):
        assert isinstance(amplitude, numbers.Number)
        u_sym = amplitude * 16 * x_sym * (1 - x_sym) * y_sym * (1 - y_sym)
        super().__init__(params, u_sym_expr=u_sym)


class MMSCaseSinSin(MMSCaseSymbolic):
    def __init__(self, params: pb.Parameters, *, amplitude: float = 1.0):
        assert isinstance(amplitude, numbers.Number)
        u_sym = amplitude * sympy.sin(sympy.pi * x_sym) * sympy.sin(sympy.pi * y_sym)
        super().__init__(params, u_sym_expr=u_sym)


class MMSCaseSkewed(MMSCaseSymbolic):
    """
    u = A * (27/4)^2 x(1-x)^2 y^2(1-y): no symmetry about the centre, so
    ux*uy does not vanish along the axes and the mixed terms of the
    Jacobian are exercised.
    """

    def __init__(self, params: pb.Parameters, *, amplitude: float = 1.0):
        assert isinstance(amplitude, numbers.Number)
        scale = sympy.Rational(27, 4) ** 2
        u_sym = amplitude * scale * x_sym * (1 - x_sym) ** 2 * y_sym**2 * (1 - y_sym)
        super().__init__(params, u_sym_expr=u_sym)
