"""
Ordering checks: power grows with sample size and with effect size.
"""

import contextlib
import io

import numpy as np
import pytest

from tests.config import N_SIMS_ORDERING, SEED
from tests.helpers.power_helpers import get_power, make_two_group_simulation


@pytest.fixture(autouse=True)
def _quiet():
    """Suppress stdout for all tests in this module."""
    with contextlib.redirect_stdout(io.StringIO()):
        yield


@pytest.fixture(scope="module")
def surface():
    with contextlib.redirect_stdout(io.StringIO()):
        sim = make_two_group_simulation(mean_a=105.0, mean_b=100.0, n_sims=N_SIMS_ORDERING, seed=SEED)
        return sim.find_power_surface([10, 40, 90], [0.2, 0.5, 0.9], print_results=False)


class TestMonotonicity:
    @pytest.mark.parametrize("effect", [0.2, 0.5, 0.9])
    def test_power_increases_with_sample_size(self, surface, effect):
        powers = [get_power(surface, n, effect) for n in (10, 40, 90)]
        assert powers[0] < powers[-1], f"d={effect}: {powers}"

    @pytest.mark.parametrize("n", [10, 40, 90])
    def test_power_increases_with_effect_size(self, surface, n):
        powers = [get_power(surface, n, d) for d in (0.2, 0.5, 0.9)]
        assert powers[0] < powers[-1], f"n={n}: {powers}"

    def test_large_design_large_effect_saturates(self, surface):
        assert get_power(surface, 90, 0.9) > 0.95

    def test_strict_ordering_along_diagonal(self, surface):
        diagonal = [get_power(surface, n, d) for n, d in ((10, 0.2), (40, 0.5), (90, 0.9))]
        assert np.all(np.diff(diagonal) > 0)
