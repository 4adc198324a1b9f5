"""
Unit tests for the Monte Carlo trial loop.
"""

import warnings
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from simpower import TwoGroupRecipe
from simpower.core.results import TABLE_COLUMNS
from simpower.core.simulation import SimulationRunner, reduced_formula, run_trial, trial_rng
from simpower.errors import FitDidNotConverge, InvalidConfiguration
from simpower.progress import ProgressReporter, SweepInterrupted
from simpower.stats.fitting import StatsmodelsFitter
from tests.config import SEED


class StubFitter:
    """Returns scripted p-values in call order; ``None`` fails the trial."""

    def __init__(self, p_values):
        self._p_values = list(p_values)

    def fit(self, formula, data, family="gaussian"):
        return formula

    def test_term(self, full, reduced):
        p_value = self._p_values.pop(0)
        if p_value is None:
            raise FitDidNotConverge("stub failure")
        return p_value


@pytest.fixture
def recipe():
    return TwoGroupRecipe(n_a=10, n_b=10, mean_a=25, sd_a=10, mean_b=20, sd_b=10)


class TestHelpers:
    def test_trial_rng_reproducible(self):
        a = trial_rng(SEED, 0, 1, 2).standard_normal(3)
        b = trial_rng(SEED, 0, 1, 2).standard_normal(3)
        np.testing.assert_array_equal(a, b)

    def test_trial_rng_keys_independent(self):
        a = trial_rng(SEED, 0, 0, 0).standard_normal(3)
        b = trial_rng(SEED, 0, 0, 1).standard_normal(3)
        c = trial_rng(SEED, 1, 0, 0).standard_normal(3)
        assert not np.array_equal(a, b)
        assert not np.array_equal(a, c)

    def test_reduced_formula_keeps_random_terms(self):
        assert reduced_formula("y ~ a * b + (1|g)", "a:b") == "y ~ a + b + (1|g)"

    def test_reduced_formula_single_term(self):
        assert reduced_formula("y ~ group", "group") == "y ~ 1"

    def test_reduced_formula_unknown_term(self):
        with pytest.raises(InvalidConfiguration):
            reduced_formula("y ~ group", "dose")


class TestRunTrial:
    def test_returns_p_value(self, recipe):
        key, p_value, failure = run_trial(recipe, StatsmodelsFitter(), "y ~ group", "y ~ 1", "gaussian", SEED, (0, 0, 3))
        assert key == (0, 0, 3)
        assert 0.0 <= p_value <= 1.0
        assert failure is None

    def test_same_key_same_p_value(self, recipe):
        args = (recipe, StatsmodelsFitter(), "y ~ group", "y ~ 1", "gaussian", SEED, (1, 2, 3))
        assert run_trial(*args)[1] == run_trial(*args)[1]

    def test_failure_recorded(self, recipe):
        key, p_value, failure = run_trial(recipe, StubFitter([None]), "y ~ group", "y ~ 1", "gaussian", SEED, (0, 0, 0))
        assert np.isnan(p_value)
        assert failure == "stub failure"


class TestSimulationRunner:
    def test_power_from_scripted_p_values(self, recipe):
        runner = SimulationRunner(n_simulations=4, seed=SEED, fitter=StubFitter([0.01, 0.2, 0.03, 0.5]))
        result = runner.run_power(recipe, "group")
        assert result.power == 0.5
        np.testing.assert_array_equal(result.p_values, [0.01, 0.2, 0.03, 0.5])

    def test_failures_above_threshold_warn(self, recipe):
        runner = SimulationRunner(n_simulations=4, seed=SEED, fitter=StubFitter([0.01, 0.2, None, 0.03]))
        with pytest.warns(UserWarning, match="1 of 4 trials failed"):
            result = runner.run_power(recipe, "group")
        assert result.n_failed == 1
        assert result.n_trials == 4
        assert result.power == pytest.approx(2 / 3)
        assert result.failures == {"stub failure": 1}

    def test_failures_within_threshold_silent(self, recipe):
        runner = SimulationRunner(
            n_simulations=4,
            seed=SEED,
            max_failed_simulations=0.5,
            fitter=StubFitter([0.01, 0.2, None, 0.03]),
        )
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            runner.run_power(recipe, "group")

    def test_all_failed(self, recipe):
        runner = SimulationRunner(n_simulations=3, seed=SEED, fitter=StubFitter([None] * 3))
        with pytest.warns(UserWarning, match="All 3 trials failed"):
            result = runner.run_power(recipe, "group")
        assert np.isnan(result.power)

    def test_sweep_table_in_sweep_order(self, recipe):
        runner = SimulationRunner(n_simulations=2, seed=SEED)
        sweep = runner.run_sweep(recipe, "group", sample_sizes=[20, 10], effect_sizes=[0.5, 0.2])
        assert list(sweep.table.columns) == TABLE_COLUMNS
        assert list(zip(sweep.table["sample_size"], sweep.table["effect_size"])) == [(20, 0.5), (20, 0.2), (10, 0.5), (10, 0.2)]
        assert list(sweep.table["total_sample_size"]) == [40, 40, 20, 20]
        assert (sweep.table["n_trials"] == 2).all()
        assert not sweep.interrupted

    def test_missing_axis_uses_recipe_values(self, recipe):
        runner = SimulationRunner(n_simulations=2, seed=SEED)
        sweep = runner.run_sweep(recipe, "group", effect_sizes=[0.2])
        assert sweep.table.loc[0, "sample_size"] == 10
        assert sweep.table.loc[0, "effect_size"] == 0.2

    def test_cell_result_lookup(self, recipe):
        runner = SimulationRunner(n_simulations=2, seed=SEED)
        sweep = runner.run_sweep(recipe, "group", sample_sizes=[10, 20])
        assert set(sweep.cells) == {(10, 0.5), (20, 0.5)}

    def test_bad_cell_fails_before_trials(self, recipe):
        fitter = MagicMock()
        runner = SimulationRunner(n_simulations=2, seed=SEED, fitter=fitter)
        with pytest.raises(InvalidConfiguration):
            runner.run_sweep(recipe, "group", sample_sizes=[10, -5])
        fitter.fit.assert_not_called()

    def test_cancel_after_first_group(self, recipe):
        runner = SimulationRunner(n_simulations=2, seed=SEED)
        sweep = runner.run_sweep(recipe, "group", sample_sizes=[10, 20, 30], cancel_check=lambda: True)
        assert sweep.interrupted
        assert sweep.completed_groups == [(10, 0.5)]
        assert len(sweep.table) == 1

    def test_single_cell_cancelled_between_trials(self, recipe):
        fitter = StubFitter([0.01] * 50)
        runner = SimulationRunner(n_simulations=50, seed=SEED, fitter=fitter)
        with pytest.raises(SweepInterrupted) as exc_info:
            runner.run_power(recipe, "group", cancel_check=lambda: True)
        assert exc_info.value.completed_groups == []
        assert len(fitter._p_values) == 49

    def test_single_cell_cancel_after_some_trials(self, recipe):
        calls = []

        def cancel_on_third():
            calls.append(1)
            return len(calls) == 3

        fitter = StubFitter([0.01] * 10)
        runner = SimulationRunner(n_simulations=10, seed=SEED, fitter=fitter)
        with pytest.raises(SweepInterrupted):
            runner.run_power(recipe, "group", cancel_check=cancel_on_third)
        assert len(fitter._p_values) == 7

    def test_single_cell_cancel_not_consulted_after_last_trial(self, recipe):
        calls = []
        runner = SimulationRunner(n_simulations=5, seed=SEED)
        result = runner.run_power(recipe, "group", cancel_check=lambda: calls.append(1) or False)
        assert result.n_trials == 5
        assert len(calls) == 4

    def test_sweep_cancel_only_between_groups(self, recipe):
        calls = []
        runner = SimulationRunner(n_simulations=3, seed=SEED)
        sweep = runner.run_sweep(recipe, "group", sample_sizes=[10, 20], cancel_check=lambda: calls.append(1) or False)
        assert not sweep.interrupted
        assert len(calls) == 1

    def test_run_power_propagates_interrupt(self, recipe):
        # _execute raises where run_sweep would return a partial result
        runner = SimulationRunner(n_simulations=1, seed=SEED)
        with pytest.raises(SweepInterrupted):
            runner._execute(recipe, "group", [10, 20], [None], None, lambda: True, None)

    def test_checkpoint_written(self, recipe, tmp_path):
        path = tmp_path / "partial.csv"
        runner = SimulationRunner(n_simulations=2, seed=SEED)
        runner.run_sweep(recipe, "group", sample_sizes=[10, 20], checkpoint=path)
        table = pd.read_csv(path)
        assert list(table.columns) == TABLE_COLUMNS
        assert list(table["sample_size"]) == [10, 20]

    def test_progress_reaches_total(self, recipe):
        callback = MagicMock()
        runner = SimulationRunner(n_simulations=3, seed=SEED)
        runner.run_sweep(recipe, "group", sample_sizes=[10, 20], progress=ProgressReporter(6, callback))
        callback.assert_any_call(0, 6)
        callback.assert_called_with(6, 6)

    def test_progress_reports_cells(self, recipe):
        callback = MagicMock()
        progress = ProgressReporter(6, callback, update_every=100, n_cells=2)
        runner = SimulationRunner(n_simulations=3, seed=SEED)
        runner.run_sweep(recipe, "group", sample_sizes=[10, 20], progress=progress)
        assert progress.cells_done == 2
        callback.cell_done.assert_any_call((10, 0.5), 1, 2)
        callback.cell_done.assert_called_with((20, 0.5), 2, 2)
        callback.assert_any_call(3, 6)

    def test_seed_reproducibility(self, recipe):
        a = SimulationRunner(n_simulations=5, seed=SEED).run_power(recipe, "group")
        b = SimulationRunner(n_simulations=5, seed=SEED).run_power(recipe, "group")
        np.testing.assert_array_equal(a.p_values, b.p_values)

    def test_unseeded_runs_differ(self, recipe):
        a = SimulationRunner(n_simulations=5, seed=None).run_power(recipe, "group")
        b = SimulationRunner(n_simulations=5, seed=None).run_power(recipe, "group")
        assert not np.array_equal(a.p_values, b.p_values)
