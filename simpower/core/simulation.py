"""
Monte Carlo trial loop and sweep execution.

Every trial is an explicit function of (cell recipe, fitter, formulas,
seed key): it synthesises one dataset, fits the full and the reduced
model, and returns the p-value of their comparison. Trials of a sweep are
dispatched one task per (size, effect, trial) key, either sequentially or
through a joblib worker pool, and written into a pre-sized slot array.
A (size, effect) group is aggregated as soon as its last trial arrives.
"""

import warnings
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import FitDidNotConverge
from ..progress import SweepInterrupted
from ..stats.fitting import StatsmodelsFitter
from ..utils.parsers import _build_formula, _drop_fixed_term, _parse_equation
from .recipes import Recipe
from .results import CheckpointWriter, PowerResult, ResultsProcessor, SweepResult, TrialResult

__all__ = ["SimulationRunner", "run_trial", "trial_rng", "reduced_formula"]

TrialKey = Tuple[int, int, int]


def trial_rng(entropy: int, size_idx: int, effect_idx: int, trial: int) -> np.random.Generator:
    """Independent, reproducible stream for one (size, effect, trial) key."""
    return np.random.default_rng(np.random.SeedSequence([entropy, size_idx, effect_idx, trial]))


def reduced_formula(formula: str, test: str) -> str:
    """*formula* without the fixed term *test* (random terms kept)."""
    dep_var, fixed, random_spec = _parse_equation(formula)
    return _build_formula(dep_var, _drop_fixed_term(fixed, test), random_spec)


def run_trial(
    recipe: Recipe,
    fitter,
    full_formula: str,
    reduced: str,
    family: str,
    entropy: int,
    key: TrialKey,
) -> Tuple[TrialKey, float, Optional[str]]:
    """Run one trial and return ``(key, p_value, failure_reason)``.

    A ``FitDidNotConverge`` from either fit yields a NaN p-value and its
    message as the failure reason.
    """
    rng = trial_rng(entropy, *key)
    data = recipe.generate(rng)
    try:
        full = fitter.fit(full_formula, data, family)
        restricted = fitter.fit(reduced, data, family)
        return key, fitter.test_term(full, restricted), None
    except FitDidNotConverge as e:
        return key, np.nan, str(e)


class SimulationRunner:
    """Executes Monte Carlo trials for power analysis.

    Each (sample size, effect size) cell is derived from the base recipe
    before any trial runs; failed fits are recorded as NaN and reported
    through a warning when their share exceeds ``max_failed_simulations``.
    """

    def __init__(
        self,
        n_simulations: int,
        seed: Optional[int] = None,
        alpha: float = 0.05,
        parallel: bool = False,
        n_cores: int = 1,
        max_failed_simulations: float = 0.10,
        fitter=None,
    ):
        """Initialise the simulation runner.

        Args:
            n_simulations: Trials per cell.
            seed: Base seed; trial streams are spawned from
                ``SeedSequence([seed, size_idx, effect_idx, trial])``.
                ``None`` draws fresh entropy for every run.
            alpha: Significance level.
            parallel: Dispatch trials through joblib.
            n_cores: Worker processes when *parallel*.
            max_failed_simulations: Failure share (0–1) above which a
                cell's result is flagged with a warning.
            fitter: Fit-and-test collaborator (``StatsmodelsFitter``).
        """
        self.n_simulations = n_simulations
        self.seed = seed
        self.alpha = alpha
        self.parallel = parallel
        self.n_cores = n_cores
        self.max_failed_simulations = max_failed_simulations
        self.fitter = fitter if fitter is not None else StatsmodelsFitter()

    def run_power(self, recipe: Recipe, test: str, progress=None, cancel_check: Optional[Callable[[], bool]] = None) -> PowerResult:
        """Run one cell.

        *cancel_check* is consulted after every trial but the last; when it
        returns ``True`` the run stops with ``SweepInterrupted``.
        """
        sweep = self._execute(recipe, test, [None], [None], progress, cancel_check, checkpoint=None)
        return next(iter(sweep.cells.values()))

    def run_sweep(
        self,
        recipe: Recipe,
        test: str,
        sample_sizes: Optional[Sequence[int]] = None,
        effect_sizes: Optional[Sequence[float]] = None,
        progress=None,
        cancel_check: Optional[Callable[[], bool]] = None,
        checkpoint=None,
    ) -> SweepResult:
        """Run every (sample size, effect size) cell.

        Returns a partial ``SweepResult`` with ``interrupted=True`` when
        *cancel_check* returns ``True`` after a completed group.
        """
        sizes = list(sample_sizes) if sample_sizes is not None else [None]
        effects = list(effect_sizes) if effect_sizes is not None else [None]

        state = _SweepState(self, recipe, test, sizes, effects)
        try:
            return self._run(state, progress, cancel_check, checkpoint)
        except SweepInterrupted as interrupted:
            return state.result(interrupted=True, completed=interrupted.completed_groups)

    # ------------------------------------------------------------------

    def _execute(self, recipe, test, sizes, effects, progress, cancel_check, checkpoint) -> SweepResult:
        return self._run(_SweepState(self, recipe, test, sizes, effects), progress, cancel_check, checkpoint)

    def _run(self, state: "_SweepState", progress, cancel_check, checkpoint) -> SweepResult:
        writer = CheckpointWriter(checkpoint) if checkpoint is not None else None
        if progress is not None:
            progress.start()

        # A single-cell run has no group boundary before its end, so it is
        # checked between trials instead.
        single_cell = len(state.sizes) * len(state.effects) == 1

        def on_result(key, p_value, failure):
            group = state.record(key, p_value, failure)
            if progress is not None:
                progress.advance(state.labels[group][:2] if group is not None else None)
            if group is None:
                if single_cell and cancel_check is not None and cancel_check():
                    raise SweepInterrupted()
                return
            self._check_failures(state.cells_result[group])
            if writer is not None:
                writer.write(state.result().table)
            if cancel_check is not None and not state.done and cancel_check():
                raise SweepInterrupted(state.completed_labels())

        try:
            if self.parallel and self.n_cores > 1:
                self._run_parallel(state, on_result)
            else:
                self._run_sequential(state, state.pending_keys(), on_result)
        finally:
            if writer is not None:
                writer.close()

        if progress is not None:
            progress.finish()
        return state.result()

    def _run_sequential(self, state: "_SweepState", keys: Sequence[TrialKey], on_result):
        for key in keys:
            on_result(*run_trial(*state.trial_args(key)))

    def _run_parallel(self, state: "_SweepState", on_result):
        from joblib import Parallel, delayed

        try:
            results = Parallel(
                n_jobs=self.n_cores,
                backend="loky",
                verbose=0,
                return_as="generator",
            )(delayed(run_trial)(*state.trial_args(key)) for key in state.pending_keys())
            for key, p_value, failure in results:
                on_result(key, p_value, failure)
        except Exception as e:
            if isinstance(e, SweepInterrupted):
                raise
            print(f"Warning: Parallel execution failed ({e}). Falling back to sequential.")
            self._run_sequential(state, state.pending_keys(), on_result)

    def _check_failures(self, result: PowerResult):
        if result.n_failed == 0:
            return
        if result.n_converged == 0:
            warnings.warn(
                f"All {result.n_trials} trials failed at sample size {result.sample_size}, effect size {result.effect_size}",
                UserWarning,
            )
        elif result.failure_rate > self.max_failed_simulations:
            warnings.warn(
                f"{result.n_failed} of {result.n_trials} trials failed ({result.failure_rate:.1%}) at sample size "
                f"{result.sample_size}, effect size {result.effect_size}; threshold: {self.max_failed_simulations:.1%}",
                UserWarning,
            )


class _SweepState:
    """Slot array and per-group bookkeeping of one sweep run."""

    def __init__(self, runner: SimulationRunner, recipe: Recipe, test: str, sizes: List, effects: List):
        self.runner = runner
        self.sizes = sizes
        self.effects = effects
        self.n_trials = runner.n_simulations
        self.family = recipe.family
        self.full_formula = recipe.formula
        self.reduced = reduced_formula(recipe.formula, test)
        self.entropy = runner.seed if runner.seed is not None else np.random.SeedSequence().entropy

        # Every cell is derived before the first trial so bad sizes or
        # effects fail fast.
        self.recipes: Dict[Tuple[int, int], Recipe] = {}
        self.labels: Dict[Tuple[int, int], Tuple] = {}
        for i, size in enumerate(sizes):
            for j, effect in enumerate(effects):
                cell = recipe.cell(size, effect)
                self.recipes[(i, j)] = cell
                self.labels[(i, j)] = (
                    size if size is not None else cell.sample_size,
                    effect if effect is not None else cell.baseline_effect,
                    cell.total_sample_size,
                )

        shape = (len(sizes), len(effects), self.n_trials)
        self.p_values = np.full(shape, np.nan)
        self.failures = np.full(shape, None, dtype=object)
        self.filled = np.zeros(shape, dtype=bool)
        self.remaining = np.full(shape[:2], self.n_trials, dtype=int)

        self.completed: List[Tuple[int, int]] = []
        self.cells_result: Dict[Tuple[int, int], PowerResult] = {}
        self.processor = ResultsProcessor(alpha=runner.alpha)

    @property
    def done(self) -> bool:
        return len(self.completed) == len(self.sizes) * len(self.effects)

    def pending_keys(self) -> List[TrialKey]:
        return [
            (i, j, t)
            for i in range(len(self.sizes))
            for j in range(len(self.effects))
            for t in range(self.n_trials)
            if not self.filled[i, j, t]
        ]

    def trial_args(self, key: TrialKey):
        i, j, _ = key
        return (self.recipes[(i, j)], self.runner.fitter, self.full_formula, self.reduced, self.family, self.entropy, key)

    def record(self, key: TrialKey, p_value: float, failure: Optional[str]) -> Optional[Tuple[int, int]]:
        """Store one trial; return its group when that group just completed."""
        i, j, t = key
        if self.filled[i, j, t]:
            return None
        self.p_values[i, j, t] = p_value
        self.failures[i, j, t] = failure
        self.filled[i, j, t] = True
        self.remaining[i, j] -= 1

        if self.remaining[i, j] > 0:
            return None
        self.cells_result[(i, j)] = self._summarize((i, j))
        self.completed.append((i, j))
        return (i, j)

    def _summarize(self, group: Tuple[int, int]) -> PowerResult:
        i, j = group
        size, effect, total = self.labels[group]
        trials = [
            TrialResult(
                sample_size=size,
                effect_size=effect,
                trial=t,
                p_value=float(self.p_values[i, j, t]),
                failure=self.failures[i, j, t],
                total_sample_size=total,
            )
            for t in range(self.n_trials)
        ]
        return self.processor.summarize(trials)

    def completed_labels(self) -> List[Tuple]:
        return [self.labels[group][:2] for group in self.completed]

    def result(self, interrupted: bool = False, completed=None) -> SweepResult:
        # Table rows follow sweep order, not completion order
        groups = [(i, j) for i in range(len(self.sizes)) for j in range(len(self.effects)) if (i, j) in self.cells_result]
        results = [self.cells_result[group] for group in groups]
        return SweepResult(
            table=self.processor.table(results),
            cells={self.labels[group][:2]: self.cells_result[group] for group in groups},
            alpha=self.runner.alpha,
            interrupted=interrupted,
            completed_groups=list(completed) if completed is not None else self.completed_labels(),
        )
