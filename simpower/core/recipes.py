"""
Dataset-generation recipes.

A recipe knows how to produce one synthetic dataset per trial and how to
derive the recipe of a sweep cell. ``cell(sample_size, effect_size)``
returns a new recipe; recipes are never modified, so every trial of a cell
starts from the same snapshot.

- ``TwoGroupRecipe``: two independent groups (``simulate_two_groups``);
  sample size is the per-group n, effect size is Cohen's d.
- ``DesignRecipe``: a factorial ``DesignSpec``; sample size is the n per
  between cell, effect size is a raw shift added to the chosen cell means.
- ``ModelRecipe``: a ``ModelState``; sample size extends the dataset along a
  grouping factor, effect size overrides one fixed-effect coefficient.
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..errors import InvalidConfiguration
from ..stats.builder import ModelState, simulate_outcome
from ..stats.design import DesignSpec, simulate_design
from ..stats.extension import count_units, extend_model
from ..stats.fitting import check_binomial_grouping
from ..stats.parametric import simulate_two_groups
from ..utils.parsers import _fixed_term_names, _parse_equation
from ..utils.validators import _validate_count, _validate_sd

__all__ = ["Recipe", "TwoGroupRecipe", "DesignRecipe", "ModelRecipe", "as_recipe"]


class Recipe:
    """Interface shared by the recipes."""

    formula: str
    family: str = "gaussian"

    def cell(self, sample_size: Optional[int], effect_size: Optional[float]) -> "Recipe":
        raise NotImplementedError

    def generate(self, rng: np.random.Generator) -> pd.DataFrame:
        raise NotImplementedError

    @property
    def sample_size(self) -> Optional[int]:
        raise NotImplementedError

    @property
    def total_sample_size(self) -> int:
        raise NotImplementedError

    @property
    def baseline_effect(self) -> float:
        raise NotImplementedError

    @property
    def default_test(self) -> str:
        """Last fixed term of the formula."""
        terms = [t for t in _fixed_term_names(_parse_equation(self.formula)[1]) if t != "Intercept"]
        if not terms:
            raise InvalidConfiguration(f"Formula '{self.formula}' has no fixed term to test")
        return terms[-1]


@dataclass(frozen=True)
class TwoGroupRecipe(Recipe):
    """Two independent groups compared on a non-negative integer outcome."""

    n_a: int
    n_b: int
    mean_a: float
    sd_a: float
    mean_b: float
    sd_b: float
    labels: Tuple[str, str] = ("A", "B")
    group: str = "group"
    dv: str = "y"

    def __post_init__(self):
        _validate_count(self.n_a, "n_a").raise_if_invalid()
        _validate_count(self.n_b, "n_b").raise_if_invalid()
        _validate_sd(self.sd_a, "sd_a").raise_if_invalid()
        _validate_sd(self.sd_b, "sd_b").raise_if_invalid()

    @property
    def formula(self) -> str:
        return f"{self.dv} ~ {self.group}"

    @property
    def pooled_sd(self) -> float:
        return float(np.sqrt((self.sd_a**2 + self.sd_b**2) / 2))

    @property
    def sample_size(self) -> int:
        return self.n_a

    @property
    def total_sample_size(self) -> int:
        return self.n_a + self.n_b

    @property
    def baseline_effect(self) -> float:
        if self.pooled_sd == 0:
            return 0.0
        return (self.mean_a - self.mean_b) / self.pooled_sd

    def cell(self, sample_size, effect_size):
        changes = {}
        if sample_size is not None:
            changes.update(n_a=int(sample_size), n_b=int(sample_size))
        if effect_size is not None:
            changes["mean_a"] = self.mean_b + float(effect_size) * self.pooled_sd
        return dataclasses.replace(self, **changes)

    def generate(self, rng):
        return simulate_two_groups(
            self.n_a,
            self.n_b,
            self.mean_a,
            self.sd_a,
            self.mean_b,
            self.sd_b,
            labels=self.labels,
            group=self.group,
            dv=self.dv,
            rng=rng,
        )


@dataclass(frozen=True)
class DesignRecipe(Recipe):
    """Factorial design analysed in long form.

    Attributes:
        spec: The design.
        formula: Analysis formula; defaults to the full factorial of every
            factor, plus ``(1|id)`` when there are within factors.
        effect_cell: Cells the effect size is added to: a within cell
            label (every between cell), a between cell label (every within
            cell), or a ``(within cell, between cell)`` pair.
    """

    spec: DesignSpec
    formula: str = None
    effect_cell: Union[str, Tuple[str, str], None] = None

    def __post_init__(self):
        if self.formula is None:
            object.__setattr__(self, "formula", self._default_formula())
        if self.effect_cell is not None:
            self._effect_mask()

    def _default_formula(self) -> str:
        spec = self.spec
        factors = list(spec.between) + list(spec.within)
        fixed = " * ".join(factors) if factors else "1"
        if spec.within:
            return f"{spec.dv} ~ {fixed} + (1|{spec.id})"
        return f"{spec.dv} ~ {fixed}"

    def _effect_mask(self) -> np.ndarray:
        w_cells, b_cells = self.spec.within_cells, self.spec.between_cells
        mask = np.zeros((len(b_cells), len(w_cells)), dtype=bool)
        target = self.effect_cell

        if isinstance(target, tuple):
            w_cell, b_cell = (str(part) for part in target)
            if w_cell not in w_cells or b_cell not in b_cells:
                raise InvalidConfiguration(f"effect_cell {target} is not a (within cell, between cell) pair of the design")
            mask[b_cells.index(b_cell), w_cells.index(w_cell)] = True
        elif str(target) in w_cells:
            mask[:, w_cells.index(str(target))] = True
        elif str(target) in b_cells:
            mask[b_cells.index(str(target)), :] = True
        else:
            raise InvalidConfiguration(f"effect_cell '{target}' matches no cell. Within cells: {w_cells}, between cells: {b_cells}")
        return mask

    @property
    def sample_size(self) -> int:
        return self.spec.n

    @property
    def total_sample_size(self) -> int:
        return self.spec.n_units

    @property
    def baseline_effect(self) -> float:
        return 0.0

    def cell(self, sample_size, effect_size):
        changes = {}
        if sample_size is not None:
            changes["n"] = int(sample_size)
        if effect_size is not None and float(effect_size) != 0.0:
            if self.effect_cell is None:
                raise InvalidConfiguration("DesignRecipe needs effect_cell to sweep effect sizes")
            changes["mu"] = self.spec.mean_table() + float(effect_size) * self._effect_mask()
        if not changes:
            return self
        return dataclasses.replace(self, spec=dataclasses.replace(self.spec, **changes))

    def generate(self, rng):
        return simulate_design(self.spec, rng=rng, long=True)


@dataclass(frozen=True)
class ModelRecipe(Recipe):
    """Resynthesise the outcome of a ``ModelState`` on its (extended) dataset.

    Attributes:
        state: The model.
        along: Unit column the sample size extends (``None``: no extension).
        within: Between-unit factor for within extension.
        effect: Coefficient the effect size overrides.
    """

    state: ModelState
    along: Optional[str] = None
    within: Optional[str] = None
    effect: Optional[str] = None

    def __post_init__(self):
        if self.state.family == "binomial":
            check_binomial_grouping(self.state.formula, _parse_equation(self.state.formula)[2])

    @property
    def formula(self) -> str:
        return self.state.formula

    @property
    def family(self) -> str:
        return self.state.family

    @property
    def sample_size(self) -> Optional[int]:
        if self.along is None:
            return None
        if self.within is None:
            return count_units(self.state.data, self.along)
        return int(self.state.data.groupby(self.within)[self.along].nunique().min())

    @property
    def total_sample_size(self) -> int:
        if self.along is None:
            return len(self.state.data)
        return count_units(self.state.data, self.along)

    @property
    def baseline_effect(self) -> Optional[float]:
        if self.effect is None:
            return None
        if self.effect not in self.state.fixed_effects:
            raise InvalidConfiguration(f"Unknown coefficient '{self.effect}'. Available: {', '.join(self.state.fixed_effects)}")
        return self.state.fixed_effects[self.effect]

    def cell(self, sample_size, effect_size):
        state = self.state
        if sample_size is not None:
            if self.along is None:
                raise InvalidConfiguration("Sample sizes need a unit column to extend along (pass along=...)")
            state = extend_model(state, self.along, int(sample_size), within=self.within)
        if effect_size is not None:
            if self.effect is None:
                raise InvalidConfiguration("Effect sizes need a coefficient to override (pass effect=...)")
            state = state.with_fixed_effect(self.effect, effect_size)
        if state is self.state:
            return self
        return dataclasses.replace(self, state=state)

    def generate(self, rng):
        data = self.state.data.copy()
        data[self.state.outcome] = simulate_outcome(self.state, rng)
        return data


def as_recipe(source: Any, along: Optional[str] = None, within: Optional[str] = None, effect: Optional[str] = None) -> Recipe:
    """Wrap a ``ModelState`` or ``DesignSpec`` in its recipe; recipes pass through.

    Raises:
        InvalidConfiguration: If *along*, *within* or *effect* is given for
            a source that is not model based.
    """
    if isinstance(source, ModelState):
        return ModelRecipe(source, along=along, within=within, effect=effect)
    if isinstance(source, ModelRecipe):
        if along or within or effect:
            return dataclasses.replace(
                source,
                along=along or source.along,
                within=within or source.within,
                effect=effect or source.effect,
            )
        return source
    if not isinstance(source, (DesignSpec, Recipe)):
        raise TypeError(f"Expected a ModelState, DesignSpec or recipe, got {type(source).__name__}")

    given = [name for name, value in (("along", along), ("within", within), ("effect", effect)) if value is not None]
    if given:
        raise InvalidConfiguration(
            f"{', '.join(given)} only apply to model sources; {type(source).__name__} "
            f"sets sample and effect sizes through its own recipe"
        )
    if isinstance(source, DesignSpec):
        return DesignRecipe(source)
    return source
