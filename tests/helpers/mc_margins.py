"""
Monte Carlo margin-of-error calculations.

Single source of truth for all MC tolerance computations.
"""

import numpy as np

from tests.config import ALLOWED_BIAS, MC_Z


def mc_margin(alpha, n_sims, z=MC_Z):
    """
    MC margin of error for a rejection rate (0-1 scale).

    Half-width of an approximate (1 - 2*Phi(-z)) interval for a binomial
    proportion, plus the allowed bias.
    """
    return z * np.sqrt(alpha * (1 - alpha) / n_sims) + ALLOWED_BIAS / 100


def mc_accuracy_margin(true_power, n_sims, z=MC_Z):
    """MC margin for a known true power (0-1 scale)."""
    return z * np.sqrt(true_power * (1 - true_power) / n_sims) + ALLOWED_BIAS / 100
