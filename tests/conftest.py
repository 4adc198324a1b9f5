"""
Shared pytest fixtures for SimPower tests.
"""

import contextlib
import io

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def suppress_output():
    """Suppress stdout (configuration echoes, result tables)."""
    with contextlib.redirect_stdout(io.StringIO()):
        yield


@pytest.fixture
def pilot_data():
    """Pilot study: 12 subjects x 10 trials, within-subject 0/1 condition,
    subjects split between two between-subject groups."""
    rng = np.random.default_rng(123)
    n_subj, n_trials = 12, 10

    subj = np.repeat(np.arange(1, n_subj + 1), n_trials)
    trial = np.tile(np.arange(1, n_trials + 1), n_subj)
    cond = np.tile([0, 1], n_subj * n_trials // 2)
    group = np.repeat(np.where(np.arange(n_subj) < 6, "ctl", "trt"), n_trials)

    subj_effect = rng.normal(0, 30, n_subj)[subj - 1]
    rt = 500 + 25 * cond + subj_effect + rng.normal(0, 50, len(subj))

    return pd.DataFrame({"subj": subj, "trial": trial, "cond": cond, "group": group, "rt": rt})


@pytest.fixture
def predictors(pilot_data):
    """Pilot predictors without the outcome column."""
    return pilot_data.drop(columns="rt")


@pytest.fixture
def regression_data():
    """Single-level data for OLS/GLM: 80 units, numeric x and 0/1 treat."""
    rng = np.random.default_rng(7)
    n = 80
    x = rng.normal(0, 1, n)
    treat = np.tile([0, 1], n // 2)
    y = 1.0 + 0.5 * x + 0.4 * treat + rng.normal(0, 1, n)
    return pd.DataFrame({"id": np.arange(1, n + 1), "x": x, "treat": treat, "y": y})


@pytest.fixture
def mixed_design_spec():
    """2 (between) x 2 (within) design with a uniform correlation."""
    from simpower import DesignSpec

    return DesignSpec(
        within={"difficulty": ["easy", "hard"]},
        between={"group": ["A", "B"]},
        n=30,
        mu={"A": [10, 12], "B": [10, 15]},
        sd=2.0,
        r=0.5,
    )


@pytest.fixture
def correlation_matrix_3x3():
    """Valid non-uniform 3x3 correlation matrix."""
    return np.array(
        [
            [1.0, 0.3, 0.5],
            [0.3, 1.0, 0.2],
            [0.5, 0.2, 1.0],
        ]
    )
