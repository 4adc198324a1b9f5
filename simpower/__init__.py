"""SimPower - Monte Carlo Power Simulation.

A simulation-based framework for statistical power analysis: factorial
design generation, two-group simulation, extension of pilot datasets to
hypothetical sample sizes, and repeated fit-and-test loops over sweeps of
sample sizes and effect sizes.

Example:
    >>> from simpower import PowerSimulation, fit_model
    >>>
    >>> state = fit_model("rt ~ cond + (1|subj)", pilot)
    >>> sim = PowerSimulation(state, test="cond", along="subj")
    >>> sim.find_power_surface(sample_sizes=[20, 40, 60], effect_sizes=[10, 20])
"""

from importlib.metadata import version as _get_version

from .core.recipes import DesignRecipe, ModelRecipe, TwoGroupRecipe
from .core.results import PowerResult, SweepResult, TrialResult, save_power_table
from .errors import (
    FitDidNotConverge,
    InvalidConfiguration,
    MissingColumn,
    ShapeMismatch,
    SimPowerError,
    UnknownFactor,
    UnsupportedFamily,
)
from .model import PowerSimulation
from .progress import PrintReporter, ProgressReporter, SweepInterrupted, TqdmReporter
from .stats.builder import ModelState, RandomEffect, build_model, simulate_outcome
from .stats.design import DesignSpec, simulate_design, to_long, to_wide
from .stats.extension import count_units, extend_between, extend_model, extend_within
from .stats.fitting import StatsmodelsFitter, fit_model
from .stats.parametric import simulate_two_groups

__version__ = _get_version("SimPower")

__all__ = [
    "PowerSimulation",
    # Recipes
    "TwoGroupRecipe",
    "DesignRecipe",
    "ModelRecipe",
    # Data generation
    "DesignSpec",
    "simulate_design",
    "to_long",
    "to_wide",
    "simulate_two_groups",
    # Models
    "ModelState",
    "RandomEffect",
    "build_model",
    "simulate_outcome",
    "fit_model",
    "StatsmodelsFitter",
    "count_units",
    "extend_between",
    "extend_within",
    "extend_model",
    # Results
    "PowerResult",
    "SweepResult",
    "TrialResult",
    "save_power_table",
    # Progress
    "SweepInterrupted",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
    # Errors
    "SimPowerError",
    "InvalidConfiguration",
    "ShapeMismatch",
    "UnknownFactor",
    "MissingColumn",
    "UnsupportedFamily",
    "FitDidNotConverge",
]
