"""Core components for the SimPower framework.

Re-exports the building blocks of a power run:

- ``TwoGroupRecipe``, ``DesignRecipe``, ``ModelRecipe``: per-trial dataset
  generation and derivation of sweep cells.
- ``SimulationRunner``, ``run_trial``: Monte Carlo trial execution.
- ``ResultsProcessor``, ``build_power_result``, ``save_power_table``:
  power calculation and result persistence.
"""

from .recipes import DesignRecipe, ModelRecipe, TwoGroupRecipe, as_recipe
from .results import (
    TABLE_COLUMNS,
    CheckpointWriter,
    PowerResult,
    ResultsProcessor,
    SweepResult,
    TrialResult,
    build_power_result,
    save_power_table,
)
from .simulation import SimulationRunner, run_trial

__all__ = [
    # Recipes
    "TwoGroupRecipe",
    "DesignRecipe",
    "ModelRecipe",
    "as_recipe",
    # Simulation
    "SimulationRunner",
    "run_trial",
    # Results
    "TABLE_COLUMNS",
    "TrialResult",
    "PowerResult",
    "SweepResult",
    "ResultsProcessor",
    "build_power_result",
    "save_power_table",
    "CheckpointWriter",
]
