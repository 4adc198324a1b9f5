"""
SimPower - Monte Carlo Power Simulation.

This module provides the main PowerSimulation class for estimating
statistical power by repeated data synthesis, model fitting and testing.
"""

from typing import Any, Callable, Optional, Sequence, Union

from .core.recipes import as_recipe
from .core.results import PowerResult, SweepResult
from .core.simulation import SimulationRunner, reduced_formula
from .errors import InvalidConfiguration
from .progress import PrintReporter, ProgressReporter, compute_total_simulations
from .utils.parsers import _parse_equation
from .utils.validators import (
    _validate_alpha,
    _validate_effect_sizes,
    _validate_numeric_parameter,
    _validate_parallel_settings,
    _validate_power,
    _validate_sample_sizes,
    _validate_seed,
    _validate_simulations,
)
from .utils.visualization import _create_power_plot


class PowerSimulation:
    """Monte Carlo power simulation for one model term.

    The source is either a ``ModelState`` (fitted to pilot data or built
    from hypothetical parameters) or a recipe (``TwoGroupRecipe``,
    ``DesignRecipe``; a bare ``DesignSpec`` is wrapped automatically).
    Each trial synthesises a dataset, fits the full model and the model
    without the tested term, and records the p-value of the comparison.

    All configuration methods (``set_*``) validate their input, echo the
    change and return ``self`` for method chaining.

    Attributes:
        seed: Random seed for reproducibility (default: 2137).
        power: Target power level in percent (default: 80.0).
        alpha: Significance level (default: 0.05).
        n_simulations: Number of trials per cell (default: 1000).
        parallel: ``True``, ``False`` or ``"mixedmodels"`` (default): the
            latter dispatches trials through joblib only for models with
            random effects.
        n_cores: Number of worker processes for parallel execution.
        max_failed_simulations: Failure share above which a cell is
            flagged with a warning (default: 0.10).

    Example:
        >>> pilot_state = fit_model("rt ~ cond + (1|subj)", pilot)
        >>> sim = PowerSimulation(pilot_state, test="cond", along="subj", effect="cond")
        >>> sim.set_simulations(200)
        >>> sweep = sim.find_power_surface([20, 40, 60], [10, 20, 30])

        >>> recipe = TwoGroupRecipe(n_a=20, n_b=20, mean_a=25, sd_a=10, mean_b=20, sd_b=10)
        >>> PowerSimulation(recipe).find_power()
    """

    def __init__(
        self,
        source: Any,
        test: Optional[str] = None,
        along: Optional[str] = None,
        within: Optional[str] = None,
        effect: Optional[str] = None,
        fitter=None,
    ):
        """Initialise a power simulation.

        Args:
            source: ``ModelState``, ``DesignSpec`` or recipe.
            test: Fixed term whose significance is evaluated. Defaults to
                the last fixed term of the formula.
            along: Unit column sample sizes extend (model sources only).
            within: Between-unit factor for within extension.
            effect: Coefficient that effect sizes override. Defaults to
                *test* when *test* is also a coefficient name.
            fitter: Fit-and-test collaborator (``StatsmodelsFitter``).

        Raises:
            InvalidConfiguration: If *test* is not a fixed term of the formula.
        """
        recipe = as_recipe(source, along=along, within=within)
        self.test = test if test is not None else recipe.default_test
        self._reduced = reduced_formula(recipe.formula, self.test)

        coefficients = getattr(getattr(recipe, "state", None), "fixed_effects", {})
        if effect is None and self.test in coefficients:
            effect = self.test
        self._recipe = as_recipe(recipe, effect=effect)
        self._fitter = fitter

        # Core configuration
        self.seed: Optional[int] = 2137
        self.power = 80.0
        self.alpha = 0.05
        self.n_simulations = 1000

        # Parallel processing
        import multiprocessing as mp

        self.parallel: Union[bool, str] = "mixedmodels"
        self.n_cores = max(1, (mp.cpu_count() or 1) // 2)

        # Simulation failure tolerance
        self.max_failed_simulations = 0.10

    @property
    def formula(self) -> str:
        return self._recipe.formula

    @property
    def reduced_formula(self) -> str:
        return self._reduced

    @property
    def recipe(self):
        return self._recipe

    # =========================================================================

    def set_parallel(self, enable: Union[bool, str] = True, n_cores: Optional[int] = None):
        """Enable or disable parallel processing.

        Args:
            enable: Parallel mode:
                - ``True``: joblib worker pool for every source.
                - ``False``: sequential processing.
                - ``"mixedmodels"``: worker pool only when the formula has
                  random effects (default).
            n_cores: Number of worker processes. Defaults to
                ``cpu_count // 2``.

        Returns:
            self: For method chaining.
        """
        if enable is False:
            self.parallel, self.n_cores = False, 1
            return self

        settings, result = _validate_parallel_settings(enable, n_cores)
        result.raise_if_invalid()
        self.parallel, self.n_cores = settings
        print(f"Parallel processing: {self.n_cores} cores")
        return self

    def set_seed(self, seed: Optional[int] = None):
        """Set random seed for reproducibility.

        Args:
            seed: Non-negative integer below 2**32.
                Pass ``None`` to enable fully random seeding.

        Returns:
            self: For method chaining.
        """
        _validate_seed(seed).raise_if_invalid()
        self.seed = int(seed) if seed is not None else None
        if seed is not None:
            print(f"Seed set to: {seed}")
        else:
            print("Random seeding enabled")
        return self

    def set_power(self, power: float):
        """Set the target power (percent) used for plots and ``first_achieved``."""
        _validate_power(power).raise_if_invalid()
        self.power = float(power)
        return self

    def set_alpha(self, alpha: float):
        """Set the significance level (0–0.25, default 0.05)."""
        _validate_alpha(alpha).raise_if_invalid()
        self.alpha = float(alpha)
        return self

    def set_simulations(self, n_simulations: int):
        """Set the number of trials per (sample size, effect size) cell.

        More trials yield more precise power estimates at the cost of
        longer runtime.
        """
        n_sims, result = _validate_simulations(n_simulations)
        result.print_warnings()
        result.raise_if_invalid()
        self.n_simulations = n_sims
        return self

    def set_max_failed_simulations(self, percentage: float):
        """Set the failure share (0–1) above which a cell is flagged.

        Failed fits are recorded as NaN and excluded from the power
        estimate; exceeding this share only produces a warning.
        """
        _validate_numeric_parameter(percentage, "max_failed_simulations", min_val=0, max_val=1).raise_if_invalid()
        self.max_failed_simulations = float(percentage)
        return self

    # =========================================================================

    def _is_parallel_effective(self) -> bool:
        """Resolve the parallel setting for this simulation's formula."""
        if self.parallel is True:
            return True
        if self.parallel == "mixedmodels":
            return bool(_parse_equation(self.formula)[2])
        return False

    def _runner(self) -> SimulationRunner:
        return SimulationRunner(
            n_simulations=self.n_simulations,
            seed=self.seed,
            alpha=self.alpha,
            parallel=self._is_parallel_effective(),
            n_cores=self.n_cores,
            max_failed_simulations=self.max_failed_simulations,
            fitter=self._fitter,
        )

    @staticmethod
    def _reporter(progress_callback, print_results: bool, total: int, n_cells: int = 1) -> Optional[ProgressReporter]:
        if progress_callback is None:
            effective_cb = PrintReporter() if print_results else None
        elif progress_callback is False:
            effective_cb = None
        else:
            effective_cb = progress_callback
        return ProgressReporter(total, effective_cb, n_cells=n_cells) if effective_cb is not None else None

    def find_power(
        self,
        sample_size: Optional[int] = None,
        effect_size: Optional[float] = None,
        print_results: bool = True,
        progress_callback=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> PowerResult:
        """Estimate power for one sample size and effect size.

        Args:
            sample_size: Sample size setting (``None``: the source as is).
            effect_size: Effect size setting (``None``: the source's own).
            print_results: Print the result summary.
            progress_callback: ``None`` (default) uses ``PrintReporter``
                when *print_results* is ``True``; ``False`` disables
                progress; a callable ``(current, total)`` receives updates.
            cancel_check: Consulted after every trial but the last;
                returning ``True`` stops the run with ``SweepInterrupted``.

        Returns:
            ``PowerResult`` with the power, the p-value sequence, the
            failure count and a 95% interval.
        """
        if sample_size is not None:
            result = _validate_sample_sizes([sample_size])
            result.raise_if_invalid()
        if effect_size is not None:
            _validate_effect_sizes([effect_size]).raise_if_invalid()

        reporter = self._reporter(progress_callback, print_results, compute_total_simulations(self.n_simulations))
        runner = self._runner()
        recipe = self._recipe.cell(sample_size, effect_size)
        result = runner.run_power(recipe, self.test, progress=reporter, cancel_check=cancel_check)

        if print_results:
            print(f"\n{'=' * 80}")
            print("MONTE CARLO POWER ANALYSIS RESULTS")
            print(f"{'=' * 80}")
            print(f"Formula: {self.formula}")
            print(f"Test: {self.test} (reduced model: {self._reduced})")
            print(result.summary())
        return result

    def find_power_surface(
        self,
        sample_sizes: Optional[Sequence[int]] = None,
        effect_sizes: Optional[Sequence[float]] = None,
        print_results: bool = True,
        progress_callback=None,
        cancel_check: Optional[Callable[[], bool]] = None,
        checkpoint=None,
        plot: bool = False,
    ) -> SweepResult:
        """Estimate power for every (sample size, effect size) pair.

        Each pair derives its own model from the source before any trial
        runs: the dataset is extended to the sample size and the effect
        coefficient is overridden.

        Args:
            sample_sizes: Sample size settings (``None``: the source as is).
            effect_sizes: Effect size settings (``None``: the source's own).
            print_results: Print the aggregate table.
            progress_callback: As in ``find_power``.
            cancel_check: Consulted after every completed pair; returning
                ``True`` stops the sweep and returns the completed pairs
                with ``interrupted=True``.
            checkpoint: Path the partial table is written to after each
                completed pair.
            plot: Draw the power curves when done.

        Returns:
            ``SweepResult`` whose ``table`` has the columns ``sample_size``,
            ``total_sample_size``, ``effect_size``, ``n_trials``, ``power``,
            ``n_failed``.
        """
        if sample_sizes is None and effect_sizes is None:
            raise InvalidConfiguration("find_power_surface needs sample_sizes, effect_sizes, or both")
        if sample_sizes is not None:
            sample_sizes = list(sample_sizes)
            result = _validate_sample_sizes(sample_sizes)
            result.print_warnings()
            result.raise_if_invalid()
        if effect_sizes is not None:
            effect_sizes = list(effect_sizes)
            _validate_effect_sizes(effect_sizes).raise_if_invalid()

        n_sizes = len(sample_sizes) if sample_sizes is not None else 1
        n_effects = len(effect_sizes) if effect_sizes is not None else 1
        total = compute_total_simulations(self.n_simulations, n_sizes, n_effects)
        reporter = self._reporter(progress_callback, print_results, total, n_cells=n_sizes * n_effects)

        sweep = self._runner().run_sweep(
            self._recipe,
            self.test,
            sample_sizes=sample_sizes,
            effect_sizes=effect_sizes,
            progress=reporter,
            cancel_check=cancel_check,
            checkpoint=checkpoint,
        )

        if print_results:
            print(f"\n{'=' * 80}")
            print("POWER SURFACE")
            print(f"{'=' * 80}")
            print(f"Formula: {self.formula}")
            print(f"Test: {self.test}, alpha = {self.alpha}, {self.n_simulations} trials per cell")
            if sweep.interrupted:
                print(f"Warning: Sweep interrupted after {len(sweep.completed_groups)} of {n_sizes * n_effects} cells")
            print(sweep.table.to_string(index=False))

        if plot and len(sweep.table):
            self.plot(sweep)
        return sweep

    def plot(self, sweep: SweepResult, show: bool = True):
        """Plot power against sample size, one line per effect size."""
        return _create_power_plot(
            sweep.table,
            first_achieved=sweep.first_achieved(self.power / 100),
            target_power=self.power,
            title=f"Power for '{self.test}'",
            show=show,
        )

    def __repr__(self):
        return f"PowerSimulation(formula='{self.formula}', test='{self.test}')"
