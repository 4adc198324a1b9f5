"""
Tests for model construction and outcome synthesis.
"""

import dataclasses

import numpy as np
import pandas as pd
import pytest

from simpower import ModelState, RandomEffect, build_model, simulate_outcome
from simpower.errors import InvalidConfiguration, MissingColumn, UnknownFactor, UnsupportedFamily
from tests.config import SEED


def _build(predictors, **overrides):
    params = dict(
        formula="rt ~ cond + (1|subj)",
        data=predictors,
        fixed_effects="Intercept=500, cond=25",
        random_effects={"subj": 900.0},
        sigma=50.0,
        rng=np.random.default_rng(SEED),
    )
    params.update(overrides)
    return build_model(**params)


class TestBuildModel:
    def test_outcome_synthesised(self, predictors):
        state = _build(predictors)
        assert isinstance(state, ModelState)
        assert state.outcome == "rt"
        assert "rt" in state.data.columns
        assert len(state.data) == len(predictors)
        assert state.data["rt"].notna().all()

    def test_caller_data_untouched(self, predictors):
        _build(predictors)
        assert "rt" not in predictors.columns

    def test_parameters_recorded(self, predictors):
        state = _build(predictors)
        assert state.fixed_effects == {"Intercept": 500.0, "cond": 25.0}
        assert state.coefficient_names == ["Intercept", "cond"]
        assert state.groups == ["subj"]
        assert state.random_effects[0].variances == {"1": 900.0}
        assert state.sigma == 50.0

    def test_dict_and_positional_fixed_effects(self, predictors):
        by_dict = _build(predictors, fixed_effects={"Intercept": 500, "cond": 25})
        by_position = _build(predictors, fixed_effects=[500, 25])
        assert by_dict.fixed_effects == by_position.fixed_effects

    def test_categorical_coefficient_names(self, predictors):
        state = _build(predictors, formula="rt ~ group + (1|subj)", fixed_effects={"Intercept": 500, "group[T.trt]": 10})
        assert state.coefficient_names == ["Intercept", "group[T.trt]"]

    def test_seeded_outcome_repeats(self, predictors):
        a = _build(predictors)
        b = _build(predictors)
        np.testing.assert_array_equal(a.data["rt"], b.data["rt"])

    def test_no_simulation(self, predictors):
        state = _build(predictors, simulate=False)
        assert "rt" not in state.data.columns

    def test_gaussian_requires_sigma(self, predictors):
        with pytest.raises(InvalidConfiguration, match="sigma"):
            _build(predictors, sigma=None)

    def test_negative_sigma(self, predictors):
        with pytest.raises(InvalidConfiguration):
            _build(predictors, sigma=-1.0)

    def test_binomial_outcome(self, predictors):
        state = _build(predictors, family="logistic", fixed_effects="Intercept=0, cond=0.5", random_effects={"subj": 0.5})
        assert state.family == "binomial"
        assert state.sigma is None
        assert set(np.unique(state.data["rt"])) <= {0, 1}

    def test_unsupported_family(self, predictors):
        with pytest.raises(UnsupportedFamily):
            _build(predictors, family="poisson")

    def test_unknown_coefficient(self, predictors):
        with pytest.raises(InvalidConfiguration, match="Unknown coefficient"):
            _build(predictors, fixed_effects={"Intercept": 1, "cond": 1, "dose": 1})

    def test_missing_coefficient(self, predictors):
        with pytest.raises(InvalidConfiguration, match="Missing fixed effect"):
            _build(predictors, fixed_effects={"Intercept": 1})

    def test_wrong_positional_count(self, predictors):
        with pytest.raises(InvalidConfiguration, match="Expected 2"):
            _build(predictors, fixed_effects=[1.0])

    def test_missing_predictor_column(self, predictors):
        with pytest.raises(MissingColumn, match="dose"):
            _build(predictors, formula="rt ~ dose + (1|subj)", fixed_effects=[1.0, 1.0])

    def test_unknown_grouping_factor(self, predictors):
        with pytest.raises(UnknownFactor, match="school"):
            _build(predictors, formula="rt ~ cond + (1|school)", random_effects={"school": 1.0})

    def test_missing_random_covariance(self, predictors):
        with pytest.raises(InvalidConfiguration, match="trial"):
            _build(predictors, formula="rt ~ cond + (1|subj) + (1|trial)")

    def test_extra_random_covariance(self, predictors):
        with pytest.raises(InvalidConfiguration, match="trial"):
            _build(predictors, random_effects={"subj": 1.0, "trial": 1.0})

    def test_random_slope_covariance(self, predictors):
        cov = [[900.0, 30.0], [30.0, 100.0]]
        state = _build(predictors, formula="rt ~ cond + (1 + cond|subj)", random_effects={"subj": cov})
        block = state.random_effects[0]
        assert block.terms == ("1", "cond")
        np.testing.assert_array_equal(block.cov, cov)

    def test_random_slope_wrong_size(self, predictors):
        with pytest.raises(InvalidConfiguration, match="2x2"):
            _build(predictors, formula="rt ~ cond + (1 + cond|subj)", random_effects={"subj": 900.0})

    def test_non_numeric_slope(self, predictors):
        with pytest.raises(InvalidConfiguration, match="numeric"):
            _build(predictors, formula="rt ~ cond + (1 + group|subj)", random_effects={"subj": np.eye(2)})

    def test_random_effect_objects(self, predictors):
        state = _build(predictors, random_effects=[RandomEffect("subj", ("1",), 4.0)])
        assert state.random_effects[0].cov.shape == (1, 1)

    def test_random_effect_terms_must_match(self, predictors):
        with pytest.raises(InvalidConfiguration, match="terms"):
            _build(predictors, random_effects=[RandomEffect("subj", ("1", "cond"), np.eye(2))])


class TestSimulateOutcome:
    def test_zero_noise_is_linear_predictor(self, predictors):
        state = _build(predictors, formula="rt ~ cond", random_effects=None, sigma=0.0)
        expected = 500 + 25 * predictors["cond"].to_numpy()
        np.testing.assert_allclose(state.data["rt"], expected)

    def test_random_intercept_shared_within_unit(self, predictors):
        state = _build(predictors, fixed_effects="Intercept=0, cond=0", sigma=0.0)
        per_subject = state.data.groupby("subj")["rt"].nunique()
        assert (per_subject == 1).all()
        assert state.data.groupby("subj")["rt"].first().nunique() == 12

    def test_crossed_random_intercepts(self, predictors):
        state = _build(
            predictors,
            formula="rt ~ cond + (1|subj) + (1|trial)",
            fixed_effects="Intercept=0, cond=0",
            random_effects={"subj": 1.0, "trial": 1.0},
            sigma=0.0,
        )
        wide = state.data.pivot(index="subj", columns="trial", values="rt").to_numpy()
        # additive crossed effects: every 2x2 minor of the subj x trial table is zero
        np.testing.assert_allclose(wide[0, 0] - wide[0, 1] - wide[1, 0] + wide[1, 1], 0.0, atol=1e-9)

    def test_binomial_extreme_intercept(self, predictors):
        state = _build(predictors, family="binomial", fixed_effects="Intercept=30, cond=0", random_effects={"subj": 0.01})
        assert (state.data["rt"] == 1).all()

    def test_fresh_draw_on_other_data(self, predictors):
        state = _build(predictors, formula="rt ~ cond", random_effects=None, sigma=0.0)
        other = pd.DataFrame({"cond": [0, 1, 1], "subj": [1, 2, 3]})
        y = simulate_outcome(state, np.random.default_rng(SEED), data=other)
        np.testing.assert_allclose(y, [500, 525, 525])


class TestModelState:
    def test_with_fixed_effect_derives_new_state(self, predictors):
        state = _build(predictors)
        changed = state.with_fixed_effect("cond", 40)
        assert changed.fixed_effects["cond"] == 40.0
        assert state.fixed_effects["cond"] == 25.0
        assert changed.data is state.data

    def test_with_fixed_effect_unknown(self, predictors):
        with pytest.raises(InvalidConfiguration, match="Unknown coefficient"):
            _build(predictors).with_fixed_effect("dose", 1.0)

    def test_with_fixed_effect_non_finite(self, predictors):
        with pytest.raises(InvalidConfiguration):
            _build(predictors).with_fixed_effect("cond", np.inf)

    def test_frozen(self, predictors):
        state = _build(predictors)
        with pytest.raises(dataclasses.FrozenInstanceError):
            state.sigma = 1.0

    def test_random_effect_cov_read_only(self):
        block = RandomEffect("subj", ("1",), 2.0)
        with pytest.raises(ValueError):
            block.cov[0, 0] = 3.0

    def test_with_data_checks_columns(self, predictors):
        state = _build(predictors)
        with pytest.raises(MissingColumn):
            state.with_data(predictors.drop(columns="cond"))

    def test_design_matrix(self, predictors):
        X = _build(predictors).design_matrix()
        assert list(X.columns) == ["Intercept", "cond"]
        assert len(X) == len(predictors)
