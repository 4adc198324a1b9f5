"""
Tests for parallel execution in SimPower.
"""

import numpy as np
import pytest


def _joblib_available():
    """Check if joblib is available."""
    import importlib.util

    return importlib.util.find_spec("joblib") is not None


pytestmark = pytest.mark.skipif(not _joblib_available(), reason="joblib not installed")


class TestParallelExecution:
    """Parallel sweeps must reproduce the sequential results."""

    def test_parallel_results_match_sequential(self, suppress_output):
        """Same seed, same p-values, whatever the scheduling."""
        from tests.helpers.power_helpers import make_two_group_simulation

        sim = make_two_group_simulation(n_sims=6)
        sim.set_parallel(False)
        seq = sim.find_power_surface([10, 20], [0.2, 0.6], print_results=False)

        sim.set_parallel(True, n_cores=2)
        par = sim.find_power_surface([10, 20], [0.2, 0.6], print_results=False)

        assert list(seq.table["sample_size"]) == list(par.table["sample_size"])
        for key, cell in seq.cells.items():
            np.testing.assert_array_equal(cell.p_values, par.cells[key].p_values)

    def test_parallel_model_state(self, suppress_output, predictors):
        from tests.helpers.power_helpers import make_mixed_simulation

        sim = make_mixed_simulation(predictors, n_sims=2)
        sim.set_parallel(False)
        seq = sim.find_power(sample_size=14, print_results=False)
        sim.set_parallel(True, n_cores=2)
        par = sim.find_power(sample_size=14, print_results=False)
        np.testing.assert_array_equal(seq.p_values, par.p_values)

    def test_parallel_cancellation(self, suppress_output):
        from tests.helpers.power_helpers import make_two_group_simulation

        sim = make_two_group_simulation(n_sims=3)
        sim.set_parallel(True, n_cores=2)
        sweep = sim.find_power_surface([10, 20, 30], print_results=False, cancel_check=lambda: True)
        assert sweep.interrupted
        assert len(sweep.completed_groups) == 1
        assert len(sweep.table) == 1

    def test_fallback_to_sequential(self, capsys, monkeypatch):
        import joblib

        from tests.helpers.power_helpers import make_two_group_simulation

        class BrokenParallel:
            def __init__(self, *args, **kwargs):
                raise RuntimeError("pool unavailable")

        sim = make_two_group_simulation(n_sims=3)
        expected = sim.find_power(print_results=False).p_values

        monkeypatch.setattr(joblib, "Parallel", BrokenParallel)
        sim.set_parallel(True, n_cores=2)
        sim.n_cores = 2
        capsys.readouterr()
        result = sim.find_power(print_results=False)

        assert "Falling back to sequential" in capsys.readouterr().out
        np.testing.assert_array_equal(result.p_values, expected)


class TestParallelSettings:
    def test_enable_caps_cores(self, suppress_output):
        import multiprocessing as mp

        from tests.helpers.power_helpers import make_two_group_simulation

        sim = make_two_group_simulation()
        sim.set_parallel(True, n_cores=10_000)
        assert sim.parallel is True
        assert sim.n_cores <= mp.cpu_count()

    def test_invalid_cores(self):
        from simpower.errors import InvalidConfiguration
        from tests.helpers.power_helpers import make_two_group_simulation

        sim = make_two_group_simulation()
        with pytest.raises(InvalidConfiguration):
            sim.set_parallel(True, n_cores=0)

    def test_mixedmodels_resolves_by_formula(self, suppress_output, predictors):
        from tests.helpers.power_helpers import make_mixed_simulation, make_two_group_simulation

        mixed = make_mixed_simulation(predictors)
        fixed = make_two_group_simulation()
        mixed.set_parallel("mixedmodels", n_cores=2)
        fixed.set_parallel("mixedmodels", n_cores=2)
        assert mixed._is_parallel_effective() is True
        assert fixed._is_parallel_effective() is False
        assert mixed._runner().parallel is True
        assert fixed._runner().parallel is False

    def test_explicit_true_applies_to_fixed_models(self, suppress_output):
        from tests.helpers.power_helpers import make_two_group_simulation

        sim = make_two_group_simulation()
        sim.set_parallel(True, n_cores=2)
        assert sim._is_parallel_effective() is True
