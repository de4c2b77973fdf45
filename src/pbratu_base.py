# pbratu_base.py - v1

"""
Legenda: E, W, N, S: east (i+1), west (i-1), north (j+1), south (j-1).
Exemplo: NE: i+1,j+1; SW: i-1,j-1; ux_E: x-derivative on the east edge of (i, j).

Grid functions are arrays of shape (Mx, My) indexed [i, j], i along x and j
along y. The flat index of (i, j) is i*My + j.
"""

import logging
from collections import namedtuple
from enum import IntEnum
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PBratuError(Exception):
    """Base class of the errors raised by the p-Bratu kernels."""


class InvalidConfigurationError(PBratuError, ValueError):
    """Unsupported parameter, grid size or Jacobian variant."""


class StructuralError(PBratuError, RuntimeError):
    """A matrix entry does not fit the preallocated nonzero pattern."""


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

# Known stable range of lambda for the p=2 (classical Bratu) problem.
BRATU_LAMBDA_MIN = 0.0
BRATU_LAMBDA_MAX = 6.81


class JacobianVariant(IntEnum):
    PLAIN = 1
    PICARD = 2
    STAR = 3
    FULL = 4

    @classmethod
    def from_jtype(cls, jtype) -> "JacobianVariant":
        try:
            if int(jtype) != jtype:
                raise ValueError(jtype)
            return cls(int(jtype))
        except (TypeError, ValueError):
            raise InvalidConfigurationError(
                f"Jacobian type {jtype} not implemented"
            ) from None

    @property
    def stencil(self) -> str:
        """Nonzero pattern the variant stages into ('star' or 'box')."""
        return "box" if self is JacobianVariant.FULL else "star"


class Parameters(NamedTuple):
    lam: float = 6.0
    p: float = 2.0
    epsilon: float = 1e-5
    jacobian_variant: JacobianVariant = JacobianVariant.FULL


default_parameters = Parameters()


def make_parameters(
    *, lam: float = 6.0, p: float = 2.0, epsilon: float = 1e-5, jtype=4
) -> Parameters:
    """
    Validated Parameters.

    Raises InvalidConfigurationError for p < 1, epsilon <= 0 or an unknown
    jtype. A lambda outside [BRATU_LAMBDA_MIN, BRATU_LAMBDA_MAX] is only
    reported through the logger, the problem is still set up.
    """
    if not p >= 1:
        raise InvalidConfigurationError(f"p = {p} must be >= 1")
    if not epsilon > 0:
        raise InvalidConfigurationError(f"epsilon = {epsilon} must be > 0")

    variant = JacobianVariant.from_jtype(jtype)

    if lam > BRATU_LAMBDA_MAX or lam < BRATU_LAMBDA_MIN:
        logger.warning("lambda %g out of range for p=2", lam)

    return Parameters(
        lam=float(lam), p=float(p), epsilon=float(epsilon), jacobian_variant=variant
    )


# ---------------------------------------------------------------------------
# Grid
# ---------------------------------------------------------------------------


class GridGeometry(NamedTuple):
    Mx: int
    My: int

    @property
    def hx(self) -> float:
        return 1.0 / (self.Mx - 1)

    @property
    def hy(self) -> float:
        return 1.0 / (self.My - 1)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.Mx, self.My)

    @property
    def num_points(self) -> int:
        return self.Mx * self.My

    def flat_index(self, i, j):
        return i * self.My + j

    def coordinates(self) -> Tuple[np.ndarray, np.ndarray]:
        x = np.linspace(0, 1, self.Mx)
        y = np.linspace(0, 1, self.My)
        # 'ij' because i indexes x and j indexes y.
        xx, yy = np.meshgrid(x, y, indexing="ij")
        return xx, yy

    def boundary_mask(self) -> np.ndarray:
        mask = np.zeros(self.shape, dtype=bool)
        mask[[0, -1], :] = True
        mask[:, [0, -1]] = True
        return mask

    def norm_H(self, u) -> float:
        """Discrete L2 norm over the interior points."""
        u = np.asarray(u)
        assert u.shape == self.shape
        return np.sqrt(np.sum(u[1:-1, 1:-1] ** 2) * self.hx * self.hy)


def make_grid_geometry(Mx: int, My: Optional[int] = None) -> GridGeometry:
    if My is None:
        My = Mx
    for name, value in (("Mx", Mx), ("My", My)):
        if int(value) != value or value < 2:
            raise InvalidConfigurationError(
                f"Grid dimension {name} = {value} must be an integer >= 2"
            )
    return GridGeometry(Mx=int(Mx), My=int(My))


class OwnedWindow(NamedTuple):
    xs: int
    ys: int
    xm: int
    ym: int

    @property
    def owned_slices(self) -> Tuple[slice, slice]:
        return (slice(self.xs, self.xs + self.xm), slice(self.ys, self.ys + self.ym))

    def global_indices(self) -> Tuple[np.ndarray, np.ndarray]:
        """(ii, jj), each of shape (xm, ym), with the global indices of the owned points."""
        return np.meshgrid(
            np.arange(self.xs, self.xs + self.xm),
            np.arange(self.ys, self.ys + self.ym),
            indexing="ij",
        )


def _split_extent(M: int, parts: int, axis_name: str) -> List[Tuple[int, int]]:
    if parts < 1 or parts > M:
        raise InvalidConfigurationError(
            f"Cannot split {M} grid points along {axis_name} into {parts} parts"
        )
    sizes = [M // parts + (1 if k < M % parts else 0) for k in range(parts)]
    starts = np.cumsum([0] + sizes[:-1])
    return [(int(s), m) for s, m in zip(starts, sizes)]


def partition_windows(geometry: GridGeometry, px: int = 1, py: int = 1) -> List[OwnedWindow]:
    """
    Splits the grid into px*py disjoint owned windows covering it. Along
    each axis the first M % parts pieces get one extra point. Windows are
    ordered with the x position varying fastest.
    """
    x_extents = _split_extent(geometry.Mx, px, "x")
    y_extents = _split_extent(geometry.My, py, "y")
    return [
        OwnedWindow(xs=xs, ys=ys, xm=xm, ym=ym)
        for (ys, ym) in y_extents
        for (xs, xm) in x_extents
    ]


class Field:
    """
    Read-only values of one owned window plus its one-cell halo.

    The local array has shape (xm+2, ym+2); local[1:-1, 1:-1] are the owned
    values. Halo cells falling outside the physical domain hold 0.0 and are
    never read by the kernels, which treat boundary points separately.

    Indexing takes global indices: field[i, j] is valid for
    xs-1 <= i <= xs+xm and ys-1 <= j <= ys+ym, restricted to the domain.
    Anything else raises IndexError.
    """

    def __init__(self, local, *, geometry: GridGeometry, window: OwnedWindow):
        local = np.array(local, dtype=np.float64)
        assert local.shape == (window.xm + 2, window.ym + 2)
        local.flags.writeable = False

        object.__setattr__(self, "_local", local)
        object.__setattr__(self, "_geometry", geometry)
        object.__setattr__(self, "_window", window)
        object.__setattr__(self, "_initialized", True)

    @classmethod
    def from_global(cls, u, *, geometry: GridGeometry, window: OwnedWindow) -> "Field":
        """Halo exchange: copies the window and its neighbours out of a global array."""
        u = np.asarray(u, dtype=np.float64)
        assert u.shape == geometry.shape
        padded = np.zeros((geometry.Mx + 2, geometry.My + 2))
        padded[1:-1, 1:-1] = u
        local = padded[
            window.xs : window.xs + window.xm + 2, window.ys : window.ys + window.ym + 2
        ]
        return cls(local, geometry=geometry, window=window)

    @property
    def local(self) -> np.ndarray:
        return self._local

    @property
    def owned(self) -> np.ndarray:
        return self._local[1:-1, 1:-1]

    @property
    def geometry(self) -> GridGeometry:
        return self._geometry

    @property
    def window(self) -> OwnedWindow:
        return self._window

    def boundary_mask(self) -> np.ndarray:
        """Mask, of the owned shape, of the points lying on the domain boundary."""
        ii, jj = self._window.global_indices()
        Mx, My = self._geometry
        return (ii == 0) | (jj == 0) | (ii == Mx - 1) | (jj == My - 1)

    def __getitem__(self, ij):
        i, j = ij
        w = self._window
        Mx, My = self._geometry
        in_halo = (w.xs - 1 <= i <= w.xs + w.xm) and (w.ys - 1 <= j <= w.ys + w.ym)
        in_domain = (0 <= i < Mx) and (0 <= j < My)
        if not (in_halo and in_domain):
            raise IndexError(
                f"Point ({i}, {j}) is not readable from window {tuple(w)} of a {Mx}x{My} grid"
            )
        return float(self._local[i - w.xs + 1, j - w.ys + 1])

    def __setattr__(self, name, value):
        raise AttributeError(
            f"Cannot set attribute '{name}'. '{self.__class__.__name__}' instance is immutable."
        )

    def __delattr__(self, name):
        raise AttributeError(
            f"Cannot delete attribute '{name}'. '{self.__class__.__name__}' instance is immutable."
        )


# ---------------------------------------------------------------------------
# Sparse matrix with a frozen stencil pattern
# ---------------------------------------------------------------------------

StencilPattern = namedtuple("StencilPattern", ["rows", "cols", "keys", "indptr"])

# (di, dj) offsets of the neighbours coupled to (i, j).
STENCIL_OFFSETS: Dict[str, List[Tuple[int, int]]] = {
    "star": [(0, -1), (-1, 0), (0, 0), (1, 0), (0, 1)],
    "box": [(di, dj) for dj in (-1, 0, 1) for di in (-1, 0, 1)],
}


def make_stencil_pattern(geometry: GridGeometry, stencil: str) -> StencilPattern:
    """
    Nonzero pattern of a grid matrix: every row couples to all in-domain
    neighbours of its stencil, boundary rows included. Entries are sorted by
    row and then by column (CSR order); keys are row*n + col.
    """
    if stencil not in STENCIL_OFFSETS:
        raise InvalidConfigurationError(
            f"Unknown stencil '{stencil}'. Expected one of {list(STENCIL_OFFSETS)}."
        )

    Mx, My = geometry
    n = geometry.num_points
    ii, jj = np.meshgrid(np.arange(Mx), np.arange(My), indexing="ij")
    row_of = geometry.flat_index(ii, jj)

    all_keys = []
    for di, dj in STENCIL_OFFSETS[stencil]:
        ni, nj = ii + di, jj + dj
        valid = (ni >= 0) & (ni < Mx) & (nj >= 0) & (nj < My)
        rows = row_of[valid].astype(np.int64)
        cols = geometry.flat_index(ni[valid], nj[valid]).astype(np.int64)
        all_keys.append(rows * n + cols)

    keys = np.unique(np.concatenate(all_keys))
    rows = keys // n
    cols = keys % n
    indptr = np.searchsorted(rows, np.arange(n + 1)).astype(np.int64)
    return StencilPattern(rows=rows, cols=cols, keys=keys, indptr=indptr)


class StencilMatrixBuilder:
    """
    Preallocated grid matrix with two-phase assembly.

    `stage` records entries (insert semantics: for repeated positions the
    last staged value wins) and rejects anything outside the preallocated
    pattern with StructuralError. `finalize` merges everything staged since
    the previous assembly into a fresh csr_array whose structure is the full
    preallocated pattern, unstaged entries being explicit zeros.
    """

    def __init__(self, geometry: GridGeometry, stencil: str = "box"):
        self._geometry = geometry
        self._stencil = stencil
        self._pattern = make_stencil_pattern(geometry, stencil)
        self._stash: List[Tuple[np.ndarray, np.ndarray]] = []
        self._num_assemblies = 0

    @property
    def geometry(self) -> GridGeometry:
        return self._geometry

    @property
    def stencil(self) -> str:
        return self._stencil

    @property
    def pattern(self) -> StencilPattern:
        return self._pattern

    @property
    def shape(self) -> Tuple[int, int]:
        n = self._geometry.num_points
        return (n, n)

    @property
    def nnz(self) -> int:
        return len(self._pattern.keys)

    @property
    def num_assemblies(self) -> int:
        return self._num_assemblies

    def stage(self, rows, cols, values):
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        values = np.asarray(values, dtype=np.float64).ravel()
        assert rows.shape == cols.shape == values.shape

        n = self._geometry.num_points
        keys = rows * n + cols
        pos = np.searchsorted(self._pattern.keys, keys)
        found = self._pattern.keys[np.minimum(pos, self.nnz - 1)] == keys
        found &= (rows >= 0) & (rows < n) & (cols >= 0) & (cols < n)

        if not np.all(found):
            k = np.flatnonzero(~found)[0]
            raise StructuralError(
                f"Entry ({rows[k]}, {cols[k]}) is outside the preallocated "
                f"'{self._stencil}' nonzero pattern"
            )

        self._stash.append((pos, values))

    def discard(self):
        """Drops everything staged since the last finalize."""
        self._stash = []

    def finalize(self) -> sp.csr_array:
        values = np.zeros(self.nnz)

        if self._stash:
            pos = np.concatenate([p for p, _ in self._stash])
            vals = np.concatenate([v for _, v in self._stash])
            # First occurrence in the reversed stream is the last one staged.
            uniq, first_rev = np.unique(pos[::-1], return_index=True)
            values[uniq] = vals[::-1][first_rev]
        self._stash = []

        pattern = self._pattern
        A = sp.csr_array(
            (values, pattern.cols.copy(), pattern.indptr.copy()), shape=self.shape
        )

        if not (
            np.array_equal(A.indptr, pattern.indptr)
            and np.array_equal(A.indices, pattern.cols)
        ):
            raise StructuralError("Assembled matrix structure differs from its preallocation")

        self._num_assemblies += 1
        return A


# ---------------------------------------------------------------------------
# Distributed grid (in-process)
# ---------------------------------------------------------------------------


class DistributedGrid:
    """
    Grid geometry plus a static px*py partition into owned windows.

    Every evaluation goes through `local_fields` (halo exchange from a global
    array) and `gather` (owned blocks back into a global array). Windows are
    processed one after another.
    """

    def __init__(self, geometry: GridGeometry, *, px: int = 1, py: int = 1):
        self.geometry = geometry
        self.px, self.py = px, py
        self.windows = partition_windows(geometry, px, py)

    def create_global_vector(self) -> np.ndarray:
        return np.zeros(self.geometry.shape)

    def local_fields(self, u) -> List[Field]:
        return [
            Field.from_global(u, geometry=self.geometry, window=w) for w in self.windows
        ]

    def gather(self, blocks: List[np.ndarray]) -> np.ndarray:
        assert len(blocks) == len(self.windows)
        out = self.create_global_vector()
        for w, block in zip(self.windows, blocks):
            assert block.shape == (w.xm, w.ym)
            out[w.owned_slices] = block
        return out

    def create_matrix(self, stencil: str = "box") -> StencilMatrixBuilder:
        return StencilMatrixBuilder(self.geometry, stencil)

    def initial_guess(self) -> np.ndarray:
        return self.gather([form_initial_guess(self.geometry, w) for w in self.windows])


def make_distributed_grid(Mx: int, My: Optional[int] = None, *, px: int = 1, py: int = 1):
    return DistributedGrid(make_grid_geometry(Mx, My), px=px, py=py)


# ---------------------------------------------------------------------------
# Diffusivity closure
# ---------------------------------------------------------------------------


def eta(params: Parameters, ux, uy):
    """
    eta = (epsilon^2 + 1/2 (ux^2 + uy^2))^((p-2)/2)
    """
    return (params.epsilon**2 + 0.5 * (ux * ux + uy * uy)) ** (0.5 * (params.p - 2.0))


def deta(params: Parameters, ux, uy):
    """
    Derivative of eta with respect to gamma = 1/2 |grad u|^2, so that
    d(eta)/d(ux) = deta * ux and d(eta)/d(uy) = deta * uy.

    Exactly zero for p == 2.
    """
    if params.p == 2:
        return np.zeros(np.broadcast(ux, uy).shape)
    return (
        (params.epsilon**2 + 0.5 * (ux * ux + uy * uy)) ** (0.5 * (params.p - 4.0))
        * 0.5
        * (params.p - 2.0)
    )


# ---------------------------------------------------------------------------
# Edge quantities of the 9-point stencil
# ---------------------------------------------------------------------------


def _create_lazy_immutable_property(prop_name, compute_func):
    """
    Read-only property computing its value with compute_func(self) on first
    access and caching it on the instance.
    """
    cache_attr = f"_cache_{prop_name}"

    def getter(self):
        try:
            return object.__getattribute__(self, cache_attr)
        except AttributeError:
            value = compute_func(self)
            object.__setattr__(self, cache_attr, value)
            return value

    return property(fget=getter, doc=f"Lazy evaluated immutable property: {prop_name}")


def _add_lazy_properties(cls):
    """Class decorator attaching a lazy property for each entry of cls._COMPUTED_PROPERTIES."""
    for name, func in getattr(cls, "_COMPUTED_PROPERTIES", {}).items():
        assert name not in cls.__dict__
        setattr(cls, name, _create_lazy_immutable_property(name, func))
    return cls


@_add_lazy_properties
class EdgeStencil:
    """
    Edge gradients, diffusivities and derived terms at every owned point of
    a window, computed lazily from the local (owned + halo) array.

    All computed arrays have the owned shape (xm, ym). Values at points on the
    domain boundary are meaningless and are masked out by the callers.
    """

    _COMPUTED_PROPERTIES = {
        # Neighbour values.
        "u": lambda self: self.x[1:-1, 1:-1],
        "x_E": lambda self: self.x[2:, 1:-1],
        "x_W": lambda self: self.x[:-2, 1:-1],
        "x_N": lambda self: self.x[1:-1, 2:],
        "x_S": lambda self: self.x[1:-1, :-2],
        "x_NE": lambda self: self.x[2:, 2:],
        "x_NW": lambda self: self.x[:-2, 2:],
        "x_SE": lambda self: self.x[2:, :-2],
        "x_SW": lambda self: self.x[:-2, :-2],
        # Edge gradients.
        "ux_E": lambda self: self.dhx * (self.x_E - self.u),
        "uy_E": lambda self: 0.25 * self.dhy * (self.x_N + self.x_NE - self.x_S - self.x_SE),
        "ux_W": lambda self: self.dhx * (self.u - self.x_W),
        "uy_W": lambda self: 0.25 * self.dhy * (self.x_NW + self.x_N - self.x_SW - self.x_S),
        "ux_N": lambda self: 0.25 * self.dhx * (self.x_E + self.x_NE - self.x_W - self.x_NW),
        "uy_N": lambda self: self.dhy * (self.x_N - self.u),
        "ux_S": lambda self: 0.25 * self.dhx * (self.x_SE + self.x_E - self.x_SW - self.x_W),
        "uy_S": lambda self: self.dhy * (self.u - self.x_S),
        # Edge diffusivities.
        "e_E": lambda self: eta(self.params, self.ux_E, self.uy_E),
        "e_W": lambda self: eta(self.params, self.ux_W, self.uy_W),
        "e_N": lambda self: eta(self.params, self.ux_N, self.uy_N),
        "e_S": lambda self: eta(self.params, self.ux_S, self.uy_S),
        "de_E": lambda self: deta(self.params, self.ux_E, self.uy_E),
        "de_W": lambda self: deta(self.params, self.ux_W, self.uy_W),
        "de_N": lambda self: deta(self.params, self.ux_N, self.uy_N),
        "de_S": lambda self: deta(self.params, self.ux_S, self.uy_S),
        # Fluxes.
        "uxx": lambda self: -self.hy * (self.e_E * self.ux_E - self.e_W * self.ux_W),
        "uyy": lambda self: -self.hx * (self.e_N * self.uy_N - self.e_S * self.uy_S),
        "sc_exp_u": lambda self: self.sc * np.exp(self.u),
        # Jacobian terms.
        "skew_E": lambda self: self.de_E * self.ux_E * self.uy_E,
        "skew_W": lambda self: self.de_W * self.ux_W * self.uy_W,
        "skew_N": lambda self: self.de_N * self.ux_N * self.uy_N,
        "skew_S": lambda self: self.de_S * self.ux_S * self.uy_S,
        "cross_EW": lambda self: 0.25 * (self.skew_E - self.skew_W),
        "cross_NS": lambda self: 0.25 * (self.skew_N - self.skew_S),
        "newt_E": lambda self: self.e_E + self.de_E * self.ux_E * self.ux_E,
        "newt_W": lambda self: self.e_W + self.de_W * self.ux_W * self.ux_W,
        "newt_N": lambda self: self.e_N + self.de_N * self.uy_N * self.uy_N,
        "newt_S": lambda self: self.e_S + self.de_S * self.uy_S * self.uy_S,
    }

    def __init__(self, x, *, geometry: GridGeometry, params: Parameters):
        hx, hy = geometry.hx, geometry.hy
        object.__setattr__(self, "_x", np.asarray(x))
        object.__setattr__(self, "_params", params)
        object.__setattr__(self, "_hx", hx)
        object.__setattr__(self, "_hy", hy)
        object.__setattr__(self, "_initialized", True)

    @classmethod
    def from_field(cls, field: Field, params: Parameters) -> "EdgeStencil":
        return cls(field.local, geometry=field.geometry, params=params)

    @property
    def x(self):
        return self._x

    @property
    def params(self):
        return self._params

    @property
    def hx(self):
        return self._hx

    @property
    def hy(self):
        return self._hy

    @property
    def dhx(self):
        return 1.0 / self._hx

    @property
    def dhy(self):
        return 1.0 / self._hy

    @property
    def hxdhy(self):
        return self._hx / self._hy

    @property
    def hydhx(self):
        return self._hy / self._hx

    @property
    def sc(self):
        return self._hx * self._hy * self._params.lam

    def __setattr__(self, name, value):
        if name.startswith("_cache_") or not getattr(self, "_initialized", False):
            super().__setattr__(name, value)
        else:
            raise AttributeError(
                f"Cannot set attribute '{name}'. '{self.__class__.__name__}' instance is immutable."
            )


# ---------------------------------------------------------------------------
# Initial guess and residual
# ---------------------------------------------------------------------------


def form_initial_guess(geometry: GridGeometry, window: OwnedWindow) -> np.ndarray:
    """
    Bump (1 - xx^2)(1 - yy^2), with xx, yy the coordinates mapped to [-1, 1],
    over the owned points; zero on the boundary.
    """
    Mx, My = geometry
    ii, jj = window.global_indices()
    xx = 2.0 * ii / (Mx - 1) - 1
    yy = 2.0 * jj / (My - 1) - 1
    x = (1 - xx * xx) * (1 - yy * yy)
    x[(ii == 0) | (jj == 0) | (ii == Mx - 1) | (jj == My - 1)] = 0.0
    return x


def form_initial_guess_global(geometry: GridGeometry) -> np.ndarray:
    return form_initial_guess(geometry, OwnedWindow(0, 0, geometry.Mx, geometry.My))


def form_function_local(
    field: Field, params: Parameters, *, forcing: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Residual over the owned points of `field`.

    Interior points: uxx + uyy - hx*hy*lambda*exp(u) [- hx*hy*forcing], where
    uxx = -hy (eta_E ux_E - eta_W ux_W) and uyy = -hx (eta_N uy_N - eta_S uy_S).
    Boundary points: the field value itself (homogeneous Dirichlet).

    `forcing`, when given, is a global (Mx, My) array of source values.
    """
    st = EdgeStencil.from_field(field, params)
    f = st.uxx + st.uyy - st.sc_exp_u

    if forcing is not None:
        forcing = np.asarray(forcing)
        assert forcing.shape == field.geometry.shape
        f = f - st.hx * st.hy * forcing[field.window.owned_slices]

    boundary = field.boundary_mask()
    f[boundary] = st.u[boundary]
    return f


def evaluate_residual(
    dgrid: DistributedGrid,
    u,
    params: Parameters,
    forcing: Optional[np.ndarray] = None,
) -> np.ndarray:
    return dgrid.gather(
        [form_function_local(fld, params, forcing=forcing) for fld in dgrid.local_fields(u)]
    )


# ---------------------------------------------------------------------------
# Jacobian
# ---------------------------------------------------------------------------
# Each entries function maps an (di, dj) offset to the values, of the owned
# shape, of the entry J[(i, j), (i+di, j+dj)].


def _plain_entries(st: EdgeStencil) -> Dict[Tuple[int, int], np.ndarray]:
    ones = np.ones_like(st.u)
    return {
        (0, -1): -st.hxdhy * ones,
        (-1, 0): -st.hydhx * ones,
        (0, 0): 2.0 * (st.hydhx + st.hxdhy) - st.sc_exp_u,
        (1, 0): -st.hydhx * ones,
        (0, 1): -st.hxdhy * ones,
    }


def _picard_entries(st: EdgeStencil) -> Dict[Tuple[int, int], np.ndarray]:
    return {
        (0, -1): -st.hxdhy * st.e_S,
        (-1, 0): -st.hydhx * st.e_W,
        (0, 0): (st.e_W + st.e_E) * st.hydhx + (st.e_S + st.e_N) * st.hxdhy - st.sc_exp_u,
        (1, 0): -st.hydhx * st.e_E,
        (0, 1): -st.hxdhy * st.e_N,
    }


def _star_entries(st: EdgeStencil) -> Dict[Tuple[int, int], np.ndarray]:
    # Diagonal-neighbour couplings of the exact derivative are left out.
    return {
        (0, -1): -st.hxdhy * st.newt_S + st.cross_EW,
        (-1, 0): -st.hydhx * st.newt_W + st.cross_NS,
        (0, 0): st.hxdhy * (st.newt_N + st.newt_S)
        + st.hydhx * (st.newt_E + st.newt_W)
        - st.sc_exp_u,
        (1, 0): -st.hydhx * st.newt_E - st.cross_NS,
        (0, 1): -st.hxdhy * st.newt_N - st.cross_EW,
    }


def _full_entries(st: EdgeStencil) -> Dict[Tuple[int, int], np.ndarray]:
    entries = _star_entries(st)
    entries.update(
        {
            (-1, -1): -0.25 * (st.skew_S + st.skew_W),
            (1, -1): 0.25 * (st.skew_S + st.skew_E),
            (-1, 1): 0.25 * (st.skew_N + st.skew_W),
            (1, 1): -0.25 * (st.skew_N + st.skew_E),
        }
    )
    return entries


JACOBIAN_ENTRIES: Dict[JacobianVariant, Callable[[EdgeStencil], Dict]] = {
    JacobianVariant.PLAIN: _plain_entries,
    JacobianVariant.PICARD: _picard_entries,
    JacobianVariant.STAR: _star_entries,
    JacobianVariant.FULL: _full_entries,
}


def form_jacobian_local(field: Field, params: Parameters, matrix: StencilMatrixBuilder):
    """
    Stages the Jacobian rows of the owned points of `field` into `matrix`.

    Boundary rows get a single unit diagonal. Interior rows get the entries of
    params.jacobian_variant. Raises InvalidConfigurationError for an unknown
    variant and StructuralError when the variant does not fit the matrix
    preallocation (e.g. FULL into a 'star' matrix).
    """
    variant = JacobianVariant.from_jtype(params.jacobian_variant)
    geometry = field.geometry

    st = EdgeStencil.from_field(field, params)
    entries = JACOBIAN_ENTRIES[variant](st)

    ii, jj = field.window.global_indices()
    boundary = field.boundary_mask()
    interior = ~boundary

    diag_b = geometry.flat_index(ii[boundary], jj[boundary])
    rows = [diag_b]
    cols = [diag_b]
    vals = [np.ones(diag_b.shape)]

    i_in, j_in = ii[interior], jj[interior]
    row_in = geometry.flat_index(i_in, j_in)
    for (di, dj), values in entries.items():
        rows.append(row_in)
        cols.append(geometry.flat_index(i_in + di, j_in + dj))
        vals.append(values[interior])

    matrix.stage(np.concatenate(rows), np.concatenate(cols), np.concatenate(vals))


def assemble_jacobian(
    dgrid: DistributedGrid,
    u,
    params: Parameters,
    matrix: Optional[StencilMatrixBuilder] = None,
) -> sp.csr_array:
    """
    Stages every window and finalizes. Without a `matrix`, one preallocated
    for the stencil of the variant is created. If a window does not fit the
    preallocation, the entries staged by earlier windows are discarded
    before the StructuralError propagates.
    """
    variant = JacobianVariant.from_jtype(params.jacobian_variant)
    if matrix is None:
        matrix = dgrid.create_matrix(variant.stencil)

    try:
        for fld in dgrid.local_fields(u):
            form_jacobian_local(fld, params, matrix)
    except StructuralError:
        matrix.discard()
        raise

    return matrix.finalize()
