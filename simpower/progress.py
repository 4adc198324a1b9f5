"""
Progress reporting for SimPower simulations.

A run is counted in trials and in sweep cells. The user-facing callback is a
plain ``callback(current, total)`` over trials; callbacks that also define
``cell_done(cell, done, n_cells)`` are told about every completed
(sample size, effect size) cell.
"""

import sys
from typing import Callable, Optional, Tuple


class SweepInterrupted(Exception):
    """Raised when a run is cancelled by its ``cancel_check``.

    Carries the sweep cells that had fully completed when the
    cancellation was observed (empty for a single-cell run).
    """

    def __init__(self, completed_groups=None):
        self.completed_groups = list(completed_groups or [])
        super().__init__(f"Sweep interrupted after {len(self.completed_groups)} completed group(s)")


class ProgressReporter:
    """Counts trials and cells of one run and forwards updates to a callback.

    Trial updates are throttled to one every *update_every* trials
    (default ``max(1, total // 200)``); a completed cell always fires an
    update.

    Args:
        total: Trials in the run.
        callback: ``callback(current, total)``.
        update_every: Trials between throttled updates.
        n_cells: (sample size, effect size) cells in the run.
    """

    def __init__(
        self,
        total: int,
        callback: Callable[[int, int], None],
        update_every: Optional[int] = None,
        n_cells: int = 1,
    ):
        self.total = total
        self.n_cells = n_cells
        self.update_every = update_every if update_every is not None else max(1, total // 200)
        self._callback = callback
        self._current = 0
        self._cells_done = 0
        self._reported = None

    @property
    def current(self) -> int:
        return self._current

    @property
    def cells_done(self) -> int:
        return self._cells_done

    def start(self):
        self._current = 0
        self._cells_done = 0
        self._fire()

    def advance(self, cell: Optional[Tuple] = None):
        """Count one finished trial; *cell* is the cell it completed, if any."""
        self._current += 1
        if cell is not None:
            self._cells_done += 1
            hook = getattr(self._callback, "cell_done", None)
            if hook is not None:
                hook(cell, self._cells_done, self.n_cells)
        if cell is not None or self._current >= self.total or self._current % self.update_every == 0:
            self._fire()

    def finish(self):
        if self._reported != self.total:
            self._current = self.total
            self._fire()

    def _fire(self):
        self._reported = self._current
        self._callback(self._current, self.total)


class PrintReporter:
    """Single console line on stderr: ``Progress:  45.2% (723/1600 trials, 3/9 cells)``."""

    def __init__(self):
        self._cells = ""

    def cell_done(self, cell, done: int, n_cells: int):
        if n_cells > 1:
            self._cells = f", {done}/{n_cells} cells"

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        sys.stderr.write(f"\rProgress: {100.0 * current / total:5.1f}% ({current}/{total} trials{self._cells})")
        if current >= total:
            sys.stderr.write("\n")
            self._cells = ""
        sys.stderr.flush()


class TqdmReporter:
    """tqdm progress bar over trials, with the last completed cell as postfix.

    tqdm is imported on first use::

        sim.find_power_surface([20, 40], [0.2, 0.4], progress_callback=TqdmReporter())
    """

    def __init__(self, **tqdm_kwargs):
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def cell_done(self, cell, done: int, n_cells: int):
        if self._bar is not None:
            size, effect = cell
            self._bar.set_postfix_str(f"cell {done}/{n_cells}: n={size}, effect={effect}")

    def __call__(self, current: int, total: int):
        if self._bar is None:
            from tqdm import tqdm

            self._bar = tqdm(total=total, unit="trial", **self._tqdm_kwargs)

        if current > self._bar.n:
            self._bar.update(current - self._bar.n)
        if current >= total:
            self._bar.close()
            self._bar = None


def compute_total_simulations(n_simulations: int, n_sample_sizes: int = 1, n_effect_sizes: int = 1) -> int:
    """Trials in a run: ``n_simulations`` per (sample size, effect size) cell."""
    return n_simulations * n_sample_sizes * n_effect_sizes
