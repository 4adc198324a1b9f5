"""
Model fitting and nested-model tests via statsmodels.

``StatsmodelsFitter`` fits a full or reduced model and compares the two:

- gaussian, no random effects: OLS, nested-model F test;
- gaussian, random effects: MixedLM fitted by ML, likelihood-ratio χ² test.
  One grouping factor uses ``groups`` + ``re_formula`` (correlated
  intercept/slopes); several grouping factors are crossed variance
  components over a single constant group;
- binomial, no random effects: GLM with a logit link, likelihood-ratio test;
- binomial, random effects: GEE with exchangeable working correlation
  clustered on the single grouping factor, Wald χ² test on the dropped
  coefficients. Several grouping factors raise ``UnsupportedFamily``.

Convergence warnings are silenced around ``.fit()`` calls; a fit that does
not converge or has a non-finite log-likelihood raises
``FitDidNotConverge`` so the caller can record the trial as failed.
"""

import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import stats

from ..errors import FitDidNotConverge, InvalidConfiguration, MissingColumn, UnsupportedFamily
from ..utils.parsers import _parse_equation, _referenced_variables
from ..utils.validators import _resolve_family

__all__ = ["FitResult", "StatsmodelsFitter", "check_binomial_grouping", "fit_model"]

_CONST_GROUP = "__const_group__"

# (method, maxiter) ladder for MixedLM, tried in order until one converges
_MIXEDLM_ATTEMPTS = [("lbfgs", 200), ("lbfgs", 1000), ("bfgs", 1000)]


@dataclass
class FitResult:
    """A converged fit.

    Attributes:
        kind: ``"ols"``, ``"mixedlm"``, ``"glm"`` or ``"gee"``.
        formula: Formula the model was fitted with.
        result: The statsmodels results object.
        llf: Maximum log-likelihood (NaN for GEE).
        fe_params: Fixed-effect estimates named by design column.
    """

    kind: str
    formula: str
    result: Any
    llf: float
    fe_params: pd.Series

    @property
    def n_fixed(self) -> int:
        return len(self.fe_params)


def _vc_formula(random_spec: Sequence[Dict[str, Any]]) -> Dict[str, str]:
    """Variance-component formulas for crossed grouping factors."""
    vc = {}
    for re_spec in random_spec:
        group = re_spec["grouping_var"]
        for term in re_spec["terms"]:
            if term == "1":
                vc[group] = f"0 + C({group})"
            else:
                vc[f"{group}:{term}"] = f"0 + C({group}):{term}"
    return vc


def _re_formula(terms: Sequence[str]) -> str:
    slopes = [t for t in terms if t != "1"]
    if "1" in terms:
        return " + ".join(["1"] + slopes)
    return " + ".join(["0"] + slopes)


def check_binomial_grouping(formula: str, random_spec) -> None:
    """GEE clusters on one grouping factor; crossed binomial designs are rejected."""
    if len(random_spec) > 1:
        groups = ", ".join(re_spec["grouping_var"] for re_spec in random_spec)
        raise UnsupportedFamily(
            f"Binomial models with random effects are fitted by GEE, which clusters on a single grouping factor; "
            f"'{formula}' has several ({groups}). Use one grouping factor or a gaussian outcome."
        )


class StatsmodelsFitter:
    """Fit-and-test collaborator backed by statsmodels."""

    def fit(self, formula: str, data: pd.DataFrame, family: str = "gaussian") -> FitResult:
        """Fit *formula* to *data*.

        Raises:
            UnsupportedFamily: For an unknown family, or a binomial model
                with several grouping factors.
            MissingColumn: If the outcome or a predictor column is absent.
            FitDidNotConverge: If the optimiser fails or the likelihood is
                not finite.
        """
        family = _resolve_family(family)
        dep_var, fixed, random_spec = _parse_equation(formula)
        self._check_columns(dep_var, fixed, random_spec, data)

        fixed_formula = f"{dep_var} ~ {fixed}"
        if family == "gaussian":
            if random_spec:
                return self._fit_mixedlm(formula, fixed_formula, random_spec, data)
            return self._fit_ols(formula, fixed_formula, data)

        if random_spec:
            check_binomial_grouping(formula, random_spec)
            return self._fit_gee(formula, fixed_formula, random_spec, data)
        return self._fit_glm(formula, fixed_formula, data)

    def test_term(self, full: FitResult, reduced: FitResult) -> float:
        """p-value of the comparison of a full model with its nested reduction."""
        df = full.n_fixed - reduced.n_fixed
        if df <= 0:
            raise InvalidConfiguration(f"Reduced model '{reduced.formula}' is not nested in '{full.formula}'")

        if full.kind == "ols":
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                _, p_value, _ = full.result.compare_f_test(reduced.result)
        elif full.kind == "gee":
            p_value = self._wald_p_value(full, reduced)
        else:
            lr_stat = 2.0 * (full.llf - reduced.llf)
            # Negative statistics come from optimiser slack at a tie
            p_value = stats.chi2.sf(max(lr_stat, 0.0), df)

        p_value = float(p_value)
        if not np.isfinite(p_value):
            raise FitDidNotConverge(f"Non-finite p-value comparing '{full.formula}' with '{reduced.formula}'")
        return p_value

    # ------------------------------------------------------------------

    @staticmethod
    def _check_columns(dep_var: str, fixed: str, random_spec, data: pd.DataFrame):
        needed = [dep_var] + _referenced_variables(fixed)
        for re_spec in random_spec:
            needed.append(re_spec["grouping_var"])
            needed.extend(t for t in re_spec["terms"] if t != "1")
        for name in needed:
            if name not in data.columns:
                raise MissingColumn(f"Column '{name}' not found in dataset")

    @staticmethod
    def _fe_params(params) -> pd.Series:
        return pd.Series(params, dtype=float)

    def _fit_ols(self, formula: str, fixed_formula: str, data: pd.DataFrame) -> FitResult:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                result = smf.ols(fixed_formula, data).fit()
        except (np.linalg.LinAlgError, ValueError) as e:
            raise FitDidNotConverge(f"OLS fit failed: {e}") from e

        if not np.isfinite(result.llf):
            raise FitDidNotConverge("OLS log-likelihood is not finite")
        return FitResult("ols", formula, result, float(result.llf), self._fe_params(result.params))

    def _fit_glm(self, formula: str, fixed_formula: str, data: pd.DataFrame) -> FitResult:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                result = smf.glm(fixed_formula, data, family=sm.families.Binomial()).fit()
        except (np.linalg.LinAlgError, ValueError) as e:
            raise FitDidNotConverge(f"GLM fit failed: {e}") from e

        if not getattr(result, "converged", True) or not np.isfinite(result.llf):
            raise FitDidNotConverge("GLM did not converge")
        return FitResult("glm", formula, result, float(result.llf), self._fe_params(result.params))

    def _fit_gee(self, formula: str, fixed_formula: str, random_spec, data: pd.DataFrame) -> FitResult:
        group = random_spec[0]["grouping_var"]
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                model = smf.gee(
                    fixed_formula,
                    group,
                    data,
                    family=sm.families.Binomial(),
                    cov_struct=sm.cov_struct.Exchangeable(),
                )
                result = model.fit()
        except (np.linalg.LinAlgError, ValueError, ZeroDivisionError) as e:
            raise FitDidNotConverge(f"GEE fit failed: {e}") from e

        if not getattr(result, "converged", True) or not np.all(np.isfinite(result.params)):
            raise FitDidNotConverge("GEE did not converge")
        return FitResult("gee", formula, result, np.nan, self._fe_params(result.params))

    def _fit_mixedlm(self, formula: str, fixed_formula: str, random_spec, data: pd.DataFrame) -> FitResult:
        if len(random_spec) == 1:
            re_spec = random_spec[0]
            model_kwargs = dict(groups=re_spec["grouping_var"], re_formula=_re_formula(re_spec["terms"]))
        else:
            data = data.assign(**{_CONST_GROUP: 1})
            model_kwargs = dict(groups=_CONST_GROUP, re_formula="0", vc_formula=_vc_formula(random_spec))

        failure_reason = None
        for method, max_iter in _MIXEDLM_ATTEMPTS:
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore")
                    model = smf.mixedlm(fixed_formula, data, **model_kwargs)
                    result = model.fit(reml=False, method=method, maxiter=max_iter)
            except (np.linalg.LinAlgError, ValueError, FloatingPointError) as e:
                failure_reason = f"{type(e).__name__}: {e}"
                continue

            if not getattr(result, "converged", True):
                failure_reason = "Model did not converge"
                continue

            llf = self._mixedlm_llf(result, fixed_formula, data)
            if np.isfinite(llf):
                return FitResult("mixedlm", formula, result, llf, self._fe_params(result.fe_params))
            failure_reason = "Log-likelihood is not finite"

        raise FitDidNotConverge(f"MixedLM fit failed: {failure_reason}")

    @staticmethod
    def _mixedlm_llf(result, fixed_formula: str, data: pd.DataFrame) -> float:
        llf = float(result.llf)
        if np.isfinite(llf):
            return llf

        # statsmodels reports inf when every variance sits at zero; the
        # model is then OLS, whose ML log-likelihood is exact.
        variances = np.concatenate([np.diag(np.asarray(result.cov_re)), np.asarray(result.vcomp).ravel()])
        if np.all(variances < 1e-10):
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                return float(smf.ols(fixed_formula, data).fit().llf)
        return np.nan

    @staticmethod
    def _wald_p_value(full: FitResult, reduced: FitResult) -> float:
        dropped = [name for name in full.fe_params.index if name not in reduced.fe_params.index]
        if not dropped:
            raise InvalidConfiguration(f"Reduced model '{reduced.formula}' drops no coefficient of '{full.formula}'")

        beta = full.fe_params[dropped].to_numpy()
        cov = full.result.cov_params().loc[dropped, dropped].to_numpy()
        try:
            wald_stat = float(beta @ np.linalg.solve(cov, beta))
        except np.linalg.LinAlgError as e:
            raise FitDidNotConverge(f"Singular covariance in Wald test: {e}") from e
        return stats.chi2.sf(wald_stat, len(dropped))


def fit_model(formula: str, data, family: str = "gaussian") -> "ModelState":
    """Fit *formula* to pilot *data* and return the estimates as a ``ModelState``.

    Gaussian models take their fixed effects, random-effect covariances and
    residual SD from OLS/MixedLM. Binomial models without random effects
    use GLM; with random effects the variances come from a variational
    Bayes binomial mixed GLM, since GEE estimates no random effects.

    Example:
        >>> pilot = pd.read_csv("pilot.csv")
        >>> state = fit_model("rt ~ cond + (1|subj)", pilot)
        >>> state.fixed_effects
        {'Intercept': 512.3, 'cond': 21.8}
    """
    from ..utils.data_utils import normalize_dataset
    from .builder import ModelState, RandomEffect

    family = _resolve_family(family)
    data = normalize_dataset(data)
    dep_var, fixed, random_spec = _parse_equation(formula)

    if family == "binomial" and random_spec:
        fixed_effects, covs = _fit_binomial_mixed(dep_var, fixed, random_spec, data)
        sigma = None
    else:
        fitted = StatsmodelsFitter().fit(formula, data, family)
        fixed_effects = fitted.fe_params.to_dict()
        covs = _random_covariances(fitted, random_spec)
        sigma = float(np.sqrt(fitted.result.scale)) if family == "gaussian" else None

    blocks = tuple(RandomEffect(group=re_spec["grouping_var"], terms=tuple(re_spec["terms"]), cov=cov) for re_spec, cov in zip(random_spec, covs))

    return ModelState(
        formula=formula,
        family=family,
        fixed_effects={name: float(value) for name, value in fixed_effects.items()},
        random_effects=blocks,
        sigma=sigma,
        data=data,
    )


def _random_covariances(fitted: FitResult, random_spec) -> List[np.ndarray]:
    if not random_spec:
        return []

    result = fitted.result
    if len(random_spec) == 1:
        cov = np.asarray(result.cov_re, dtype=float)
        return [(cov + cov.T) / 2]

    vcomp = dict(zip(result.model.exog_vc.names, np.asarray(result.vcomp, dtype=float)))
    return [_diagonal_cov(re_spec, vcomp) for re_spec in random_spec]


def _diagonal_cov(re_spec: Dict[str, Any], variances: Dict[str, float]) -> np.ndarray:
    group = re_spec["grouping_var"]
    names = [group if term == "1" else f"{group}:{term}" for term in re_spec["terms"]]
    return np.diag([max(variances[name], 0.0) for name in names])


def _fit_binomial_mixed(dep_var: str, fixed: str, random_spec, data: pd.DataFrame) -> Tuple[Dict[str, float], List[np.ndarray]]:
    from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model = BinomialBayesMixedGLM.from_formula(f"{dep_var} ~ {fixed}", _vc_formula(random_spec), data)
            result = model.fit_vb()
    except (np.linalg.LinAlgError, ValueError) as e:
        raise FitDidNotConverge(f"Binomial mixed GLM fit failed: {e}") from e

    fixed_effects = dict(zip(model.fep_names, result.fe_mean))
    # vcp_mean holds log standard deviations
    variances = dict(zip(model.vcp_names, np.exp(2 * np.asarray(result.vcp_mean))))
    return fixed_effects, [_diagonal_cov(re_spec, variances) for re_spec in random_spec]
