"""
Results processing for SimPower.

This module turns per-trial p-values into power estimates, aggregates a
sweep into its result table, and persists that table.
"""

import warnings
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

TABLE_COLUMNS = ["sample_size", "total_sample_size", "effect_size", "n_trials", "power", "n_failed"]

# Two-sided 95% normal quantile for the summary interval
_Z_95 = 1.959963984540054


@dataclass(frozen=True)
class TrialResult:
    """Outcome of one trial.

    ``p_value`` is NaN when a fit failed; ``failure`` then holds the reason.
    """

    sample_size: Optional[int]
    effect_size: Optional[float]
    trial: int
    p_value: float
    failure: Optional[str] = None
    total_sample_size: Optional[int] = None

    @property
    def failed(self) -> bool:
        return not np.isfinite(self.p_value)


@dataclass
class PowerResult:
    """Power estimate for one (sample size, effect size) cell."""

    sample_size: Optional[int]
    total_sample_size: Optional[int]
    effect_size: Optional[float]
    alpha: float
    p_values: np.ndarray
    failures: Dict[str, int] = field(default_factory=dict)

    @property
    def n_trials(self) -> int:
        return len(self.p_values)

    @property
    def n_failed(self) -> int:
        return int(np.sum(~np.isfinite(self.p_values)))

    @property
    def n_converged(self) -> int:
        return self.n_trials - self.n_failed

    @property
    def failure_rate(self) -> float:
        return self.n_failed / self.n_trials if self.n_trials else 0.0

    @property
    def power(self) -> float:
        """Fraction of converged trials with ``p < alpha`` (NaN if none converged)."""
        converged = self.p_values[np.isfinite(self.p_values)]
        if len(converged) == 0:
            return np.nan
        return float(np.mean(converged < self.alpha))

    @property
    def confidence_interval(self) -> Tuple[float, float]:
        """Normal-approximation 95% interval for the power, clipped to [0, 1]."""
        power, n = self.power, self.n_converged
        if n == 0 or not np.isfinite(power):
            return (np.nan, np.nan)
        half_width = _Z_95 * np.sqrt(power * (1 - power) / n)
        return (max(0.0, power - half_width), min(1.0, power + half_width))

    def summary(self) -> str:
        lower, upper = self.confidence_interval
        lines = [
            f"Sample size: {self.sample_size} (total units: {self.total_sample_size})",
            f"Effect size: {self.effect_size}",
            f"Power: {100 * self.power:.1f}% [95% CI {100 * lower:.1f}%, {100 * upper:.1f}%]",
            f"Trials: {self.n_trials} ({self.n_failed} failed), alpha = {self.alpha}",
        ]
        return "\n".join(lines)


@dataclass
class SweepResult:
    """Aggregate table of a sweep plus the per-cell results behind it.

    ``interrupted`` is set when a ``cancel_check`` stopped the sweep;
    ``table`` and ``cells`` then cover ``completed_groups`` only.
    """

    table: pd.DataFrame
    cells: Dict[Tuple[Any, Any], PowerResult]
    alpha: float
    interrupted: bool = False
    completed_groups: List[Tuple[Any, Any]] = field(default_factory=list)

    def power(self, sample_size, effect_size) -> float:
        return self.cells[(sample_size, effect_size)].power

    def first_achieved(self, target_power: float = 0.8) -> Dict[Any, Optional[int]]:
        """Smallest sample size reaching *target_power*, per effect size (``None`` if never)."""
        achieved: Dict[Any, Optional[int]] = {}
        for effect_size, block in self.table.groupby("effect_size", sort=False):
            hits = block.loc[block["power"] >= target_power, "sample_size"]
            achieved[effect_size] = int(hits.min()) if len(hits) else None
        return achieved


class ResultsProcessor:
    """Converts trial results into power estimates and the sweep table."""

    def __init__(self, alpha: float = 0.05):
        """Initialise the results processor.

        Args:
            alpha: Significance level.
        """
        self.alpha = alpha

    def summarize(self, trials: Sequence[TrialResult]) -> PowerResult:
        """Build the ``PowerResult`` of a single cell's trials."""
        first = trials[0]
        failures: Dict[str, int] = {}
        for trial in trials:
            if trial.failure is not None:
                failures[trial.failure] = failures.get(trial.failure, 0) + 1
        return PowerResult(
            sample_size=first.sample_size,
            total_sample_size=first.total_sample_size,
            effect_size=first.effect_size,
            alpha=self.alpha,
            p_values=np.array([t.p_value for t in trials], dtype=float),
            failures=failures,
        )

    def aggregate(self, trials: Sequence[TrialResult]) -> pd.DataFrame:
        """Group trials by (sample size, effect size) into the sweep table.

        Groups appear in order of first occurrence. ``power`` ignores failed
        (NaN) trials; ``n_trials`` counts every trial of the group.
        """
        groups: Dict[Tuple[Any, Any], List[TrialResult]] = {}
        for trial in trials:
            groups.setdefault((trial.sample_size, trial.effect_size), []).append(trial)
        return self.table([self.summarize(group) for group in groups.values()])

    @staticmethod
    def table(results: Sequence[PowerResult]) -> pd.DataFrame:
        rows = [
            {
                "sample_size": r.sample_size,
                "total_sample_size": r.total_sample_size,
                "effect_size": r.effect_size,
                "n_trials": r.n_trials,
                "power": r.power,
                "n_failed": r.n_failed,
            }
            for r in results
        ]
        return pd.DataFrame(rows, columns=TABLE_COLUMNS)


def build_power_result(trials: Sequence[TrialResult], alpha: float) -> PowerResult:
    """Shortcut for ``ResultsProcessor(alpha).summarize(trials)``."""
    return ResultsProcessor(alpha=alpha).summarize(trials)


def save_power_table(table: pd.DataFrame, path, sep: str = ",") -> None:
    """Write a sweep table with the fixed column order."""
    table.loc[:, TABLE_COLUMNS].to_csv(path, sep=sep, index=False)


class CheckpointWriter:
    """Writes partial sweep tables on a single background thread.

    ``write`` returns immediately; ``close`` waits for pending writes and
    turns write errors into warnings.
    """

    def __init__(self, path, sep: str = ","):
        self.path = path
        self.sep = sep
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="simpower-checkpoint")
        self._pending: List[Future] = []

    def write(self, table: pd.DataFrame):
        self._pending.append(self._executor.submit(save_power_table, table.copy(), self.path, self.sep))

    def close(self):
        self._executor.shutdown(wait=True)
        for future in self._pending:
            error = future.exception()
            if error is not None:
                warnings.warn(f"Checkpoint write to {self.path} failed: {error}", UserWarning)
        self._pending = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
