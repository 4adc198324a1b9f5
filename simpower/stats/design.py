"""
Factorial design generator.

Simulates one dataset for a design with between-unit and within-unit
factors, per-cell means and SDs, and a correlation structure across the
within-unit cells.

Two sampling modes:

- *population*: each between cell is an i.i.d. multivariate-normal
  sample, so realised means and covariances vary from draw to draw;
- *empirical*: the raw draw is centred, whitened against its own sample
  covariance and re-coloured with the target covariance, so realised
  means and covariances equal the targets exactly.
"""

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.linalg import solve_triangular

from ..errors import InvalidConfiguration, ShapeMismatch
from ..utils.validators import _validate_correlation_matrix, _validate_count

__all__ = ["DesignSpec", "simulate_design", "to_long", "to_wide", "describe_design"]

CELL_SEP = "_"


def _cell_labels(factors: Dict[str, List[Any]]) -> List[str]:
    if not factors:
        return []
    return [CELL_SEP.join(str(level) for level in combo) for combo in itertools.product(*factors.values())]


def _cell_levels(factors: Dict[str, List[Any]]) -> List[Tuple[Any, ...]]:
    return list(itertools.product(*factors.values())) if factors else [()]


@dataclass
class DesignSpec:
    """Description of a factorial design.

    Attributes:
        within: Within-unit factor name → ordered levels.
        between: Between-unit factor name → ordered levels.
        n: Number of units per between cell.
        mu: Cell means. A scalar, a DataFrame (index = within cells,
            columns = between cells), a dict keyed by between cell (values
            are scalars, sequences over within cells, or dicts keyed by
            within cell), or an array of shape ``(n_between, n_within)``.
        sd: Cell SDs, same accepted shapes as *mu*.
        r: Correlation across within cells. A scalar (uniform), a full
            ``k x k`` matrix, the ``k(k-1)/2`` upper-triangle values, or a
            dict keyed by between cell holding any of those.
        empirical: Force realised moments to equal the targets.
        dv: Outcome column name in long form (and the single outcome column
            when there are no within factors).
        id: Unit id column name.
        labels: Human-readable variable descriptions, attached to the
            generated DataFrame for plotting only.
    """

    within: Dict[str, List[Any]] = field(default_factory=dict)
    between: Dict[str, List[Any]] = field(default_factory=dict)
    n: int = 100
    mu: Any = 0.0
    sd: Any = 1.0
    r: Any = 0.0
    empirical: bool = False
    dv: str = "y"
    id: str = "id"
    labels: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.within = {name: list(levels) for name, levels in dict(self.within).items()}
        self.between = {name: list(levels) for name, levels in dict(self.between).items()}

        _validate_count(self.n, "n", min_val=1).raise_if_invalid()

        for kind, factors in (("within", self.within), ("between", self.between)):
            for name, levels in factors.items():
                if not levels:
                    raise InvalidConfiguration(f"{kind} factor '{name}' has no levels")
                if len({str(level) for level in levels}) != len(levels):
                    raise InvalidConfiguration(f"{kind} factor '{name}' has duplicate levels: {levels}")

        names = [self.id] + list(self.between) + list(self.within) + [self.dv]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise InvalidConfiguration(f"Column names must be distinct, duplicated: {', '.join(duplicates)}")

        clashes = set(self.within_cells) & ({self.id} | set(self.between))
        if clashes:
            raise InvalidConfiguration(f"Within cell labels clash with column names: {', '.join(sorted(clashes))}")

        # Resolve eagerly so malformed tables fail before any trial runs.
        self.mean_table()
        self.sd_table()
        self.correlation_matrices()

    # ------------------------------------------------------------------
    # Cell bookkeeping
    # ------------------------------------------------------------------

    @property
    def within_cells(self) -> List[str]:
        """Outcome column labels in wide form (``[dv]`` without within factors)."""
        return _cell_labels(self.within) or [self.dv]

    @property
    def between_cells(self) -> List[str]:
        """Between cell labels (``[""]`` without between factors)."""
        return _cell_labels(self.between) or [""]

    @property
    def n_units(self) -> int:
        """Total number of simulated units."""
        return self.n * len(self.between_cells)

    # ------------------------------------------------------------------
    # Parameter tables
    # ------------------------------------------------------------------

    def mean_table(self) -> np.ndarray:
        """Cell means as an array of shape ``(n_between, n_within)``."""
        return self._resolve_table(self.mu, "mu")

    def sd_table(self) -> np.ndarray:
        """Cell SDs as an array of shape ``(n_between, n_within)``."""
        table = self._resolve_table(self.sd, "sd")
        if np.any(table < 0):
            raise InvalidConfiguration("sd must be non-negative in every cell")
        return table

    def correlation_matrices(self) -> List[np.ndarray]:
        """One ``k x k`` correlation matrix per between cell."""
        cells = self.between_cells
        if isinstance(self.r, dict):
            by_cell = {str(key): item for key, item in self.r.items()}
            self._check_keys(by_cell, cells, "r")
            return [self._resolve_correlation(by_cell[cell], f"r['{cell}']") for cell in cells]
        matrix = self._resolve_correlation(self.r, "r")
        return [matrix] * len(cells)

    def covariance_matrices(self) -> List[np.ndarray]:
        """One target covariance matrix per between cell: ``diag(sd) R diag(sd)``."""
        sds = self.sd_table()
        return [np.outer(sd_row, sd_row) * corr for sd_row, corr in zip(sds, self.correlation_matrices())]

    def _resolve_table(self, value: Any, name: str) -> np.ndarray:
        b_cells, w_cells = self.between_cells, self.within_cells
        shape = (len(b_cells), len(w_cells))

        if np.isscalar(value) and not isinstance(value, str):
            return np.full(shape, float(value))

        if isinstance(value, pd.DataFrame):
            index = [str(i) for i in value.index]
            columns = [str(c) for c in value.columns]
            if not self.between and len(columns) == 1:
                columns = [""]
            if sorted(index) != sorted(w_cells) or sorted(columns) != sorted(b_cells):
                raise ShapeMismatch(
                    f"{name} table labels do not match the design: rows {index} vs within cells {w_cells}, "
                    f"columns {columns} vs between cells {b_cells}"
                )
            frame = value.copy()
            frame.index, frame.columns = index, columns
            return frame.loc[w_cells, b_cells].to_numpy(dtype=float).T

        if isinstance(value, dict):
            value = {str(key): item for key, item in value.items()}
            if not self.between and self._is_cell_keyed(value, w_cells):
                return self._resolve_row(value, name, w_cells).reshape(shape)
            self._check_keys(value, b_cells, name)
            return np.vstack([self._resolve_row(value[cell], f"{name}['{cell}']", w_cells) for cell in b_cells])

        arr = np.asarray(value, dtype=float)
        if arr.shape == shape:
            return arr
        if arr.ndim == 1 and arr.size == shape[0] * shape[1]:
            return arr.reshape(shape)
        raise ShapeMismatch(f"{name} has shape {arr.shape}, expected {shape} (between cells x within cells)")

    def _resolve_row(self, value: Any, name: str, w_cells: List[str]) -> np.ndarray:
        if np.isscalar(value) and not isinstance(value, str):
            return np.full(len(w_cells), float(value))
        if isinstance(value, dict):
            value = {str(key): item for key, item in value.items()}
            self._check_keys(value, w_cells, name)
            return np.array([float(value[cell]) for cell in w_cells])
        arr = np.asarray(value, dtype=float).reshape(-1)
        if arr.size != len(w_cells):
            raise ShapeMismatch(f"{name} has {arr.size} values, expected {len(w_cells)} (one per within cell)")
        return arr

    def _resolve_correlation(self, value: Any, name: str) -> np.ndarray:
        k = len(self.within_cells)

        if np.isscalar(value) and not isinstance(value, str):
            r = float(value)
            if not -1 <= r <= 1:
                raise InvalidConfiguration(f"{name} must be between -1 and 1, got {r}")
            matrix = np.full((k, k), r)
            np.fill_diagonal(matrix, 1.0)
        else:
            arr = np.asarray(value, dtype=float)
            if arr.shape == (k, k):
                matrix = arr.copy()
            elif arr.ndim == 1 and arr.size == k * (k - 1) // 2:
                matrix = np.eye(k)
                upper = np.triu_indices(k, 1)
                matrix[upper] = arr
                matrix.T[upper] = arr
            else:
                raise ShapeMismatch(f"{name} has shape {arr.shape}, expected ({k}, {k}) for {k} within cells")

        result = _validate_correlation_matrix(matrix)
        result.raise_if_invalid()
        return matrix

    @staticmethod
    def _is_cell_keyed(value: dict, cells: Sequence[str]) -> bool:
        return bool(value) and {str(key) for key in value} <= set(cells)

    @staticmethod
    def _check_keys(value: dict, cells: Sequence[str], name: str):
        keys = sorted(str(key) for key in value)
        if keys != sorted(cells):
            raise ShapeMismatch(f"{name} keys {keys} do not match cells {list(cells)}")


def _matrix_root(sigma: np.ndarray) -> np.ndarray:
    """Return ``A`` with ``A @ A.T == sigma`` (Cholesky, eigen-decomposition if only PSD)."""
    try:
        return np.linalg.cholesky(sigma)
    except np.linalg.LinAlgError:
        eigenvals, eigenvecs = np.linalg.eigh(sigma)
        return eigenvecs * np.sqrt(np.clip(eigenvals, 0.0, None))


def _empirical_sample(mu: np.ndarray, sigma: np.ndarray, n: int, rng: np.random.Generator) -> np.ndarray:
    """Draw *n* rows whose sample mean and covariance (ddof=1) equal *mu* and *sigma*."""
    k = len(mu)
    if n <= k:
        raise InvalidConfiguration(f"empirical=True needs n > {k} (the number of within cells), got n={n}")

    z = rng.standard_normal((n, k))
    z -= z.mean(axis=0)
    sample_cov = np.atleast_2d(np.cov(z, rowvar=False, ddof=1))

    try:
        chol = np.linalg.cholesky(sample_cov)
    except np.linalg.LinAlgError as e:
        raise InvalidConfiguration("Raw draw is rank deficient; increase n for empirical=True") from e

    white = solve_triangular(chol, z.T, lower=True).T
    return white @ _matrix_root(sigma).T + mu


def simulate_design(spec: DesignSpec, rng: Optional[np.random.Generator] = None, long: bool = False) -> pd.DataFrame:
    """Simulate one dataset for *spec*.

    Args:
        spec: The design.
        rng: Random generator; a fresh unseeded one when omitted.
        long: Return long form (one row per unit x within cell) instead of
            wide form (one row per unit).

    Returns:
        DataFrame with the id column, one column per between factor and
        either one outcome column per within cell (wide) or the within
        factor columns plus ``spec.dv`` (long).
    """
    rng = rng if rng is not None else np.random.default_rng()

    means = spec.mean_table()
    covariances = spec.covariance_matrices()
    between_levels = _cell_levels(spec.between)

    blocks = []
    for mu, sigma in zip(means, covariances):
        if spec.empirical:
            blocks.append(_empirical_sample(mu, sigma, spec.n, rng))
        else:
            blocks.append(rng.multivariate_normal(mu, sigma, size=spec.n))
    values = np.vstack(blocks)

    width = len(str(spec.n_units))
    wide = pd.DataFrame({spec.id: [f"S{i + 1:0{width}d}" for i in range(spec.n_units)]})
    for f_idx, factor in enumerate(spec.between):
        wide[factor] = np.repeat([levels[f_idx] for levels in between_levels], spec.n)
    for c_idx, cell in enumerate(spec.within_cells):
        wide[cell] = values[:, c_idx]

    if spec.labels:
        wide.attrs["labels"] = dict(spec.labels)

    return to_long(wide, spec) if long else wide


def to_long(wide: pd.DataFrame, spec: DesignSpec) -> pd.DataFrame:
    """Convert a wide dataset to long form, one row per unit x within cell."""
    cells = spec.within_cells
    id_vars = [spec.id] + list(spec.between)
    wide = wide.reset_index(drop=True)
    n_units, k = len(wide), len(cells)

    long = wide.loc[wide.index.repeat(k), id_vars].reset_index(drop=True)
    within_levels = _cell_levels(spec.within)
    for f_idx, factor in enumerate(spec.within):
        long[factor] = np.tile([levels[f_idx] for levels in within_levels], n_units)
    long[spec.dv] = wide[cells].to_numpy().reshape(-1)

    long.attrs = dict(wide.attrs)
    return long


def to_wide(long: pd.DataFrame, spec: DesignSpec) -> pd.DataFrame:
    """Convert a long dataset back to wide form.

    Raises:
        InvalidConfiguration: If a unit lacks a within cell or has it twice.
    """
    if not spec.within:
        return long.copy()

    cells = spec.within_cells
    frame = long.copy()
    frame["_cell"] = frame[list(spec.within)].astype(str).agg(CELL_SEP.join, axis=1)

    counts = frame.groupby([spec.id, "_cell"], sort=False).size()
    per_unit = counts.groupby(level=0, sort=False).size()
    if (counts != 1).any() or (per_unit != len(cells)).any():
        raise InvalidConfiguration(f"Every unit needs exactly one row per within cell ({len(cells)} cells)")

    index_cols = [spec.id] + list(spec.between)
    wide = frame.pivot(index=index_cols, columns="_cell", values=spec.dv)
    unit_order = pd.unique(frame[spec.id])
    wide = wide.reset_index().set_index(spec.id).loc[unit_order].reset_index()
    wide.columns.name = None

    wide.attrs = dict(long.attrs)
    return wide[index_cols + cells]


def describe_design(wide: pd.DataFrame, spec: DesignSpec) -> pd.DataFrame:
    """Realised mean and SD of every (between cell, within cell) in a wide dataset."""
    rows = []
    for b_cell, levels in zip(spec.between_cells, _cell_levels(spec.between)):
        mask = np.ones(len(wide), dtype=bool)
        for factor, level in zip(spec.between, levels):
            mask &= (wide[factor] == level).to_numpy()
        block = wide.loc[mask, spec.within_cells]
        for w_cell in spec.within_cells:
            rows.append(
                {
                    "between": b_cell,
                    "within": w_cell,
                    "n": int(mask.sum()),
                    "mean": float(block[w_cell].mean()),
                    "sd": float(block[w_cell].std(ddof=1)),
                }
            )
    return pd.DataFrame(rows, columns=["between", "within", "n", "mean", "sd"])
