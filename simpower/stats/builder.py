"""
Model states and outcome synthesis.

A ``ModelState`` is an immutable snapshot of a (generalised) linear mixed
model: formula, family, fixed-effect coefficients, random-effect
covariances, residual SD and the dataset the model lives on. It is either
fitted to pilot data (``simpower.stats.fitting.fit_model``) or built from
hypothetical parameters with ``build_model``.

Overriding a coefficient or swapping the dataset derives a new state;
nothing mutates a state in place, so a state can be shared by every trial
of a sweep cell (and shipped to worker processes) without drift.
"""

import dataclasses
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import patsy
from scipy.special import expit

from ..errors import InvalidConfiguration, MissingColumn, UnknownFactor
from ..utils.data_utils import normalize_dataset
from ..utils.parsers import _build_formula, _parse_equation, _parser, _referenced_variables
from ..utils.validators import _resolve_family, _validate_covariance_matrix, _validate_sd

__all__ = ["RandomEffect", "ModelState", "build_model", "simulate_outcome"]


@dataclass(frozen=True)
class RandomEffect:
    """Random-effect block for one grouping factor.

    Attributes:
        group: Grouping column (e.g. ``"subj"``).
        terms: ``"1"`` for the intercept plus any slope columns, in the
            order used by *cov*.
        cov: ``q x q`` covariance matrix of the per-level deviates (a scalar
            is read as the variance of a single term).
    """

    group: str
    terms: Tuple[str, ...] = ("1",)
    cov: Any = 1.0

    def __post_init__(self):
        terms = tuple(self.terms)
        cov = np.array(self.cov, dtype=float, copy=True)
        if cov.ndim == 0:
            cov = cov.reshape(1, 1)
        cov.setflags(write=False)
        object.__setattr__(self, "terms", terms)
        object.__setattr__(self, "cov", cov)

        _validate_covariance_matrix(cov, len(terms), f"Random effect '{self.group}'").raise_if_invalid()

    @property
    def variances(self) -> Dict[str, float]:
        return {term: float(self.cov[i, i]) for i, term in enumerate(self.terms)}


@dataclass(frozen=True)
class ModelState:
    """Immutable model snapshot used to synthesise outcomes and refit.

    Attributes:
        formula: lme4-style formula, e.g. ``"y ~ cond + (1|subj) + (1|item)"``.
        family: ``"gaussian"`` or ``"binomial"``.
        fixed_effects: Coefficient name → value, named like the design
            matrix columns (``Intercept``, ``cond``, ``C(cond)[T.b]``).
        random_effects: One ``RandomEffect`` per grouping factor.
        sigma: Residual SD (gaussian only).
        data: The dataset.
    """

    formula: str
    family: str
    fixed_effects: Mapping[str, float]
    random_effects: Tuple[RandomEffect, ...] = ()
    sigma: Optional[float] = None
    data: pd.DataFrame = field(default=None, repr=False, compare=False)

    @cached_property
    def _parsed(self) -> Tuple[str, str, List[Dict[str, Any]]]:
        return _parse_equation(self.formula)

    @property
    def outcome(self) -> str:
        return self._parsed[0]

    @property
    def fixed_formula(self) -> str:
        return self._parsed[1]

    @property
    def groups(self) -> List[str]:
        return [re_spec.group for re_spec in self.random_effects]

    @property
    def coefficient_names(self) -> List[str]:
        return list(self.fixed_effects)

    def design_matrix(self, data: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """Fixed-effect design matrix of *data* (default: the state's own data)."""
        if data is None:
            return self._own_design_matrix
        return _design_matrix(self.fixed_formula, data)

    @cached_property
    def _own_design_matrix(self) -> pd.DataFrame:
        return _design_matrix(self.fixed_formula, self.data)

    def with_fixed_effect(self, name: str, value: float) -> "ModelState":
        """Return a copy with coefficient *name* set to *value*."""
        if name not in self.fixed_effects:
            raise InvalidConfiguration(f"Unknown coefficient '{name}'. Available: {', '.join(self.fixed_effects)}")
        if not np.isfinite(value):
            raise InvalidConfiguration(f"Coefficient '{name}' must be finite, got {value}")
        fixed = dict(self.fixed_effects)
        fixed[name] = float(value)
        return dataclasses.replace(self, fixed_effects=fixed)

    def with_data(self, data: pd.DataFrame) -> "ModelState":
        """Return a copy living on *data* (same parameters)."""
        data = normalize_dataset(data)
        _check_predictors(self.fixed_formula, self._parsed[2], data)
        return dataclasses.replace(self, data=data)

    def with_outcome(self, y: np.ndarray) -> "ModelState":
        """Return a copy whose dataset carries *y* as the outcome column."""
        data = self.data.copy()
        data[self.outcome] = y
        return dataclasses.replace(self, data=data)


def _design_matrix(fixed_formula: str, data: pd.DataFrame) -> pd.DataFrame:
    try:
        return patsy.dmatrix(fixed_formula, data, return_type="dataframe", NA_action="raise")
    except patsy.PatsyError as e:
        raise InvalidConfiguration(f"Could not build design matrix for '{fixed_formula}': {e}") from e


def _check_predictors(fixed_formula: str, random_spec: Sequence[Dict[str, Any]], data: pd.DataFrame):
    """Raise ``MissingColumn``/``UnknownFactor`` for columns the formula needs but *data* lacks."""
    columns = set(data.columns)

    for name in _referenced_variables(fixed_formula):
        if name not in columns:
            raise MissingColumn(f"Column '{name}' required by '{fixed_formula}' not found in dataset")

    for re_spec in random_spec:
        if re_spec["grouping_var"] not in columns:
            raise UnknownFactor(f"Grouping factor '{re_spec['grouping_var']}' not found in dataset")
        for term in re_spec["terms"]:
            if term == "1":
                continue
            if term not in columns:
                raise MissingColumn(f"Random slope column '{term}' not found in dataset")
            if not pd.api.types.is_numeric_dtype(data[term]):
                raise InvalidConfiguration(f"Random slope column '{term}' must be numeric")


def _resolve_fixed_effects(fixed_effects: Union[str, Mapping[str, float]], coefficient_names: Sequence[str]) -> Dict[str, float]:
    if isinstance(fixed_effects, str):
        parsed, errors = _parser._parse(fixed_effects, coefficient_names)
        if errors:
            raise InvalidConfiguration("Error setting fixed effects:\n" + "\n".join(f"- {e}" for e in errors))
        fixed_effects = parsed
    elif isinstance(fixed_effects, pd.Series):
        fixed_effects = fixed_effects.to_dict()
    elif not isinstance(fixed_effects, Mapping):
        # Positional values in design-matrix column order
        values = list(np.asarray(fixed_effects, dtype=float).reshape(-1))
        if len(values) != len(coefficient_names):
            raise InvalidConfiguration(f"Expected {len(coefficient_names)} fixed effects ({', '.join(coefficient_names)}), got {len(values)}")
        fixed_effects = dict(zip(coefficient_names, values))

    unknown = [name for name in fixed_effects if name not in coefficient_names]
    if unknown:
        raise InvalidConfiguration(f"Unknown coefficient(s): {', '.join(unknown)}. Available: {', '.join(coefficient_names)}")

    missing = [name for name in coefficient_names if name not in fixed_effects]
    if missing:
        raise InvalidConfiguration(f"Missing fixed effect(s): {', '.join(missing)}")

    resolved = {}
    for name in coefficient_names:
        value = float(fixed_effects[name])
        if not np.isfinite(value):
            raise InvalidConfiguration(f"Fixed effect '{name}' must be finite, got {value}")
        resolved[name] = value
    return resolved


def _resolve_random_effects(random_effects: Any, random_spec: Sequence[Dict[str, Any]]) -> Tuple[RandomEffect, ...]:
    if random_effects is None:
        random_effects = {}

    if isinstance(random_effects, Mapping):
        given = dict(random_effects)
    else:
        given = {}
        for block in random_effects:
            if not isinstance(block, RandomEffect):
                raise InvalidConfiguration(f"random_effects entries must be RandomEffect, got {type(block).__name__}")
            given[block.group] = block

    expected = [re_spec["grouping_var"] for re_spec in random_spec]
    unknown = [group for group in given if group not in expected]
    if unknown:
        raise InvalidConfiguration(f"Random effects given for {', '.join(unknown)} but the formula has none for them")
    missing = [group for group in expected if group not in given]
    if missing:
        raise InvalidConfiguration(f"Missing random-effect covariance for: {', '.join(missing)}")

    blocks = []
    for re_spec in random_spec:
        group, terms = re_spec["grouping_var"], tuple(re_spec["terms"])
        value = given[group]
        if isinstance(value, RandomEffect):
            if value.terms != terms:
                raise InvalidConfiguration(f"Random effect '{group}' has terms {value.terms}, formula has {terms}")
            blocks.append(value)
        else:
            blocks.append(RandomEffect(group=group, terms=terms, cov=value))
    return tuple(blocks)


def build_model(
    formula: str,
    data,
    fixed_effects: Union[str, Mapping[str, float], Sequence[float]],
    random_effects: Any = None,
    sigma: Optional[float] = None,
    family: str = "gaussian",
    rng: Optional[np.random.Generator] = None,
    simulate: bool = True,
) -> ModelState:
    """Construct a model from hypothetical parameters and synthesise its outcome.

    Args:
        formula: lme4-style formula; the outcome column need not exist.
        data: Predictor columns (DataFrame, dict or array input).
        fixed_effects: Coefficients as a dict, a ``"name=value, ..."``
            string, or values in design-matrix column order.
        random_effects: ``{group: variance or covariance matrix}`` or a
            sequence of ``RandomEffect``; one entry per ``(...|group)`` term.
        sigma: Residual SD, required for gaussian models.
        family: ``"gaussian"`` or ``"binomial"`` (aliases accepted).
        rng: Random generator for the outcome draw.
        simulate: Synthesise the outcome column now.

    Returns:
        A ``ModelState`` whose dataset includes the synthesised outcome.

    Raises:
        UnsupportedFamily: For any family other than gaussian/binomial.
        MissingColumn: If a predictor column is absent.
        UnknownFactor: If a grouping column is absent.
        InvalidConfiguration: For missing/unknown coefficients, bad
            covariances, or a missing residual SD.

    Example:
        >>> state = build_model(
        ...     "y ~ cond + (1|subj)",
        ...     data,
        ...     fixed_effects="Intercept=10, cond=0.5",
        ...     random_effects={"subj": 0.5},
        ...     sigma=1.0,
        ... )
    """
    family = _resolve_family(family)
    data = normalize_dataset(data)
    dep_var, fixed_formula, random_spec = _parse_equation(formula)

    _check_predictors(fixed_formula, random_spec, data)

    coefficient_names = list(_design_matrix(fixed_formula, data).columns)
    fixed = _resolve_fixed_effects(fixed_effects, coefficient_names)
    blocks = _resolve_random_effects(random_effects, random_spec)

    if family == "gaussian":
        if sigma is None:
            raise InvalidConfiguration("sigma (residual SD) is required for gaussian models")
        _validate_sd(sigma, "sigma").raise_if_invalid()
        sigma = float(sigma)
    else:
        sigma = None

    state = ModelState(
        formula=_build_formula(dep_var, fixed_formula, random_spec),
        family=family,
        fixed_effects=fixed,
        random_effects=blocks,
        sigma=sigma,
        data=data,
    )

    if simulate:
        state = state.with_outcome(simulate_outcome(state, rng))
    return state


def linear_predictor(state: ModelState, rng: np.random.Generator, data: Optional[pd.DataFrame] = None) -> np.ndarray:
    """Fixed part plus one random deviate per grouping level (and slope)."""
    data = state.data if data is None else data
    X = state.design_matrix(None if data is state.data else data)
    beta = np.array([state.fixed_effects[name] for name in X.columns])
    eta = X.to_numpy() @ beta

    for block in state.random_effects:
        codes, uniques = pd.factorize(data[block.group])
        q = len(block.terms)
        deviates = rng.multivariate_normal(np.zeros(q), block.cov, size=len(uniques))
        Z = np.column_stack([np.ones(len(data)) if term == "1" else data[term].to_numpy(dtype=float) for term in block.terms])
        eta = eta + np.sum(Z * deviates[codes], axis=1)

    return eta


def simulate_outcome(state: ModelState, rng: Optional[np.random.Generator] = None, data: Optional[pd.DataFrame] = None) -> np.ndarray:
    """Draw a fresh outcome vector for *state* (identity/normal or logistic/Bernoulli)."""
    rng = rng if rng is not None else np.random.default_rng()
    eta = linear_predictor(state, rng, data)

    if state.family == "gaussian":
        return eta + rng.normal(0.0, state.sigma, size=len(eta))
    return rng.binomial(1, expit(eta))
