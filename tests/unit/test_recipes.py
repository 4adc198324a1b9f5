"""
Tests for dataset-generation recipes.
"""

import numpy as np
import pytest

from simpower import DesignRecipe, DesignSpec, ModelRecipe, TwoGroupRecipe, build_model
from simpower.core.recipes import as_recipe
from simpower.errors import InvalidConfiguration, UnsupportedFamily
from tests.config import SEED


@pytest.fixture
def two_groups():
    return TwoGroupRecipe(n_a=10, n_b=10, mean_a=25, sd_a=10, mean_b=20, sd_b=10)


@pytest.fixture
def model_state(predictors):
    return build_model(
        "rt ~ cond + (1|subj)",
        predictors,
        fixed_effects="Intercept=500, cond=25",
        random_effects={"subj": 900.0},
        sigma=50.0,
        rng=np.random.default_rng(SEED),
    )


class TestTwoGroupRecipe:
    def test_formula_and_default_test(self, two_groups):
        assert two_groups.formula == "y ~ group"
        assert two_groups.default_test == "group"

    def test_baseline_effect_is_cohens_d(self, two_groups):
        assert two_groups.baseline_effect == pytest.approx(0.5)

    def test_cell_sets_sizes_and_effect(self, two_groups):
        cell = two_groups.cell(40, 0.8)
        assert (cell.n_a, cell.n_b) == (40, 40)
        assert cell.mean_a == pytest.approx(28.0)
        assert cell.baseline_effect == pytest.approx(0.8)
        assert cell.total_sample_size == 80

    def test_cell_does_not_modify_source(self, two_groups):
        two_groups.cell(40, 0.8)
        assert two_groups.n_a == 10
        assert two_groups.mean_a == 25

    def test_generate(self, two_groups):
        data = two_groups.generate(np.random.default_rng(SEED))
        assert len(data) == 20
        assert set(data["group"]) == {"A", "B"}


class TestDesignRecipe:
    def test_default_formula(self, mixed_design_spec):
        recipe = DesignRecipe(mixed_design_spec)
        assert recipe.formula == "y ~ group * difficulty + (1|id)"
        assert recipe.default_test == "group:difficulty"

    def test_between_only_formula(self):
        recipe = DesignRecipe(DesignSpec(between={"arm": ["a", "b"]}, n=10))
        assert recipe.formula == "y ~ arm"

    def test_cell_changes_n(self, mixed_design_spec):
        cell = DesignRecipe(mixed_design_spec).cell(50, None)
        assert cell.sample_size == 50
        assert cell.total_sample_size == 100
        assert mixed_design_spec.n == 30

    def test_effect_on_single_cell(self, mixed_design_spec):
        recipe = DesignRecipe(mixed_design_spec, effect_cell=("hard", "B"))
        cell = recipe.cell(None, 2.0)
        np.testing.assert_allclose(cell.spec.mean_table(), [[10, 12], [10, 17]])

    def test_effect_on_within_cell(self, mixed_design_spec):
        recipe = DesignRecipe(mixed_design_spec, effect_cell="hard")
        np.testing.assert_allclose(recipe.cell(None, 1.0).spec.mean_table(), [[10, 13], [10, 16]])

    def test_effect_on_between_cell(self, mixed_design_spec):
        recipe = DesignRecipe(mixed_design_spec, effect_cell="A")
        np.testing.assert_allclose(recipe.cell(None, 1.0).spec.mean_table(), [[11, 13], [10, 15]])

    def test_unknown_effect_cell(self, mixed_design_spec):
        with pytest.raises(InvalidConfiguration, match="matches no cell"):
            DesignRecipe(mixed_design_spec, effect_cell="medium")

    def test_effect_needs_cell(self, mixed_design_spec):
        with pytest.raises(InvalidConfiguration, match="effect_cell"):
            DesignRecipe(mixed_design_spec).cell(None, 1.0)

    def test_generate_long(self, mixed_design_spec):
        data = DesignRecipe(mixed_design_spec).generate(np.random.default_rng(SEED))
        assert list(data.columns) == ["id", "group", "difficulty", "y"]


class TestModelRecipe:
    def test_sizes(self, model_state):
        recipe = ModelRecipe(model_state, along="subj")
        assert recipe.sample_size == 12
        assert recipe.total_sample_size == 12

    def test_within_sample_size(self, model_state):
        recipe = ModelRecipe(model_state, along="subj", within="group")
        assert recipe.sample_size == 6
        assert recipe.cell(10, None).sample_size == 10
        assert recipe.cell(10, None).total_sample_size == 20

    def test_cell_extends_and_overrides(self, model_state):
        recipe = ModelRecipe(model_state, along="subj", effect="cond")
        cell = recipe.cell(30, 10.0)
        assert len(cell.state.data) == 300
        assert cell.state.fixed_effects["cond"] == 10.0
        assert recipe.state.fixed_effects["cond"] == 25.0
        assert len(recipe.state.data) == 120

    def test_identity_cell(self, model_state):
        recipe = ModelRecipe(model_state, along="subj")
        assert recipe.cell(None, None) is recipe

    def test_sample_size_needs_along(self, model_state):
        with pytest.raises(InvalidConfiguration, match="along"):
            ModelRecipe(model_state).cell(20, None)

    def test_effect_needs_coefficient(self, model_state):
        with pytest.raises(InvalidConfiguration, match="effect"):
            ModelRecipe(model_state, along="subj").cell(None, 1.0)

    def test_baseline_effect(self, model_state):
        assert ModelRecipe(model_state, effect="cond").baseline_effect == 25.0
        assert ModelRecipe(model_state).baseline_effect is None

    def test_generate_fills_cloned_outcomes(self, model_state):
        cell = ModelRecipe(model_state, along="subj").cell(20, None)
        assert cell.state.data["rt"].isna().any()
        data = cell.generate(np.random.default_rng(SEED))
        assert data["rt"].notna().all()
        assert cell.state.data["rt"].isna().any()


class TestAsRecipe:
    def test_wraps_model_state(self, model_state):
        recipe = as_recipe(model_state, along="subj", effect="cond")
        assert isinstance(recipe, ModelRecipe)
        assert recipe.effect == "cond"

    def test_wraps_design_spec(self, mixed_design_spec):
        assert isinstance(as_recipe(mixed_design_spec), DesignRecipe)

    def test_recipe_passes_through(self, two_groups):
        assert as_recipe(two_groups) is two_groups

    def test_model_recipe_gets_options(self, model_state):
        recipe = as_recipe(ModelRecipe(model_state), along="subj")
        assert recipe.along == "subj"

    def test_rejects_dataframe(self, pilot_data):
        with pytest.raises(TypeError):
            as_recipe(pilot_data)

    def test_model_options_rejected_for_recipes(self, two_groups):
        with pytest.raises(InvalidConfiguration, match="along only apply to model sources"):
            as_recipe(two_groups, along="subj")

    def test_model_options_rejected_for_designs(self, mixed_design_spec):
        with pytest.raises(InvalidConfiguration, match="within"):
            as_recipe(mixed_design_spec, within="group")

    def test_none_options_accepted_for_recipes(self, two_groups):
        assert as_recipe(two_groups, along=None, within=None, effect=None) is two_groups


class TestBinomialGrouping:
    @pytest.fixture
    def crossed_binomial(self, predictors):
        return build_model(
            "hit ~ cond + (1|subj) + (1|trial)",
            predictors,
            fixed_effects={"Intercept": 0.0, "cond": 0.5},
            random_effects={"subj": 0.5, "trial": 0.3},
            family="binomial",
            rng=np.random.default_rng(SEED),
        )

    def test_crossed_binomial_state_builds(self, crossed_binomial):
        assert crossed_binomial.groups == ["subj", "trial"]

    def test_crossed_binomial_recipe_rejected(self, crossed_binomial):
        with pytest.raises(UnsupportedFamily, match="single grouping factor"):
            ModelRecipe(crossed_binomial, along="subj")

    def test_crossed_binomial_simulation_rejected(self, crossed_binomial):
        from simpower import PowerSimulation

        with pytest.raises(UnsupportedFamily):
            PowerSimulation(crossed_binomial, test="cond", along="subj")

    def test_crossed_gaussian_accepted(self, predictors):
        state = build_model(
            "rt ~ cond + (1|subj) + (1|trial)",
            predictors,
            fixed_effects={"Intercept": 500.0, "cond": 25.0},
            random_effects={"subj": 900.0, "trial": 100.0},
            sigma=50.0,
            rng=np.random.default_rng(SEED),
        )
        assert ModelRecipe(state, along="subj").family == "gaussian"
