"""
Dataset extension along a grouping factor.

Enlarges a pilot dataset to a hypothetical sample size by cloning whole
units (every row that belongs to a unit id) under fresh ids:

- **between** extension grows the total number of units to ``n``, cycling
  through the existing units in order of first appearance;
- **within** extension grows every level of a between-unit factor to ``n``
  units, cloning donors from that level only.

Extension never drops or edits existing rows. Clones copy their donor's
covariates exactly; their outcome is blanked when the outcome column is
named, so it has to be resynthesised before fitting.
"""

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..errors import InvalidConfiguration, UnknownFactor
from ..utils.data_utils import unit_ids
from ..utils.validators import _validate_count

__all__ = ["extend_between", "extend_within", "extend_model", "count_units"]


def _check_columns(data: pd.DataFrame, *names: Optional[str]):
    for name in names:
        if name is not None and name not in data.columns:
            raise UnknownFactor(f"Factor '{name}' not found in dataset. Available columns: {', '.join(map(str, data.columns))}")
    for name in names[:1]:
        if data[name].isna().any():
            raise InvalidConfiguration(f"Grouping column '{name}' contains missing values")


def _new_ids(existing: Sequence[Any], count: int, along: str) -> List[Any]:
    """Fresh unit ids: continue integer ids, otherwise ``"<along><k>"`` strings."""
    if all(isinstance(u, (int, np.integer)) and not isinstance(u, (bool, np.bool_)) for u in existing):
        start = int(max(existing)) + 1 if existing else 1
        return list(range(start, start + count))

    taken = {str(u) for u in existing}
    ids: List[Any] = []
    k = len(existing)
    while len(ids) < count:
        k += 1
        candidate = f"{along}{k}"
        if candidate not in taken:
            ids.append(candidate)
            taken.add(candidate)
    return ids


def _clone_units(
    data: pd.DataFrame,
    along: str,
    donors: Sequence[Any],
    new_ids: Sequence[Any],
    outcome: Optional[str],
) -> pd.DataFrame:
    positions = data.groupby(along, sort=False).indices

    blocks = [data]
    for donor, new_id in zip(donors, new_ids):
        block = data.iloc[positions[donor]].copy()
        block[along] = new_id
        blocks.append(block)

    extended = pd.concat(blocks, ignore_index=True)
    if outcome is not None and len(extended) > len(data):
        extended[outcome] = extended[outcome].astype(float)
        extended.loc[len(data):, outcome] = np.nan

    extended.attrs = dict(data.attrs)
    return extended


def count_units(data: pd.DataFrame, along: str) -> int:
    """Number of distinct units in *along*."""
    _check_columns(data, along)
    return int(data[along].nunique())


def extend_between(
    data: pd.DataFrame,
    along: str,
    n: int,
    outcome: Optional[str] = None,
) -> pd.DataFrame:
    """Extend *data* to *n* units of *along* by cloning existing units in order.

    The k-th new unit (0-based, counting after the existing ones) clones
    existing unit ``k mod current``.

    Args:
        data: Dataset containing the *along* column.
        along: Unit id column.
        n: Target total number of units.
        outcome: Outcome column to blank on cloned rows.

    Returns:
        The input itself when *n* equals the current unit count, otherwise
        a new DataFrame with the original rows first.

    Raises:
        UnknownFactor: If *along* (or *outcome*) is not a column.
        InvalidConfiguration: If *n* is smaller than the current unit count.
    """
    _check_columns(data, along, outcome)
    _validate_count(n, "n", min_val=1).raise_if_invalid()

    units = unit_ids(data, along)
    current = len(units)
    if n < current:
        raise InvalidConfiguration(f"Cannot extend '{along}' to {n} units: dataset already has {current}")
    if n == current:
        return data

    new_ids = _new_ids(units, n - current, along)
    donors = [units[k % current] for k in range(n - current)]
    return _clone_units(data, along, donors, new_ids, outcome)


def extend_within(
    data: pd.DataFrame,
    along: str,
    within: str,
    n: int,
    outcome: Optional[str] = None,
) -> pd.DataFrame:
    """Extend every level of the between-unit factor *within* to *n* units.

    Levels with fewer than *n* units get clones of their own units (cycled
    in order of first appearance), each clone carrying the donor's full set
    of rows, so every within-unit combination (trial, item, ...) present in
    the donor is present in the clone. Levels at or above *n* are untouched.

    Raises:
        UnknownFactor: If *along*, *within* (or *outcome*) is not a column.
        InvalidConfiguration: If a unit spans several levels of *within*, or
            *n* is below the unit count of every level.
    """
    _check_columns(data, along, within, outcome)
    _validate_count(n, "n", min_val=1).raise_if_invalid()

    levels_per_unit = data.groupby(along, sort=False)[within].nunique(dropna=False)
    mixed = levels_per_unit[levels_per_unit > 1]
    if len(mixed):
        raise InvalidConfiguration(
            f"'{within}' is not a between-unit factor for '{along}': "
            f"unit(s) {', '.join(map(str, mixed.index[:5]))} appear in several levels"
        )

    first_rows = data.drop_duplicates(along)
    units_by_level: Dict[Any, List[Any]] = {}
    for unit, level in zip(first_rows[along], first_rows[within]):
        units_by_level.setdefault(level, []).append(unit)

    smallest = min(len(units) for units in units_by_level.values())
    if n < smallest:
        counts = ", ".join(f"{level}={len(units)}" for level, units in units_by_level.items())
        raise InvalidConfiguration(f"Cannot extend '{along}' within '{within}' to {n} units per level: current counts are {counts}")

    donors: List[Any] = []
    for units in units_by_level.values():
        donors.extend(units[k % len(units)] for k in range(max(0, n - len(units))))

    if not donors:
        return data

    new_ids = _new_ids(unit_ids(data, along), len(donors), along)
    return _clone_units(data, along, donors, new_ids, outcome)


def extend_model(state, along: str, n: int, within: Optional[str] = None):
    """Return a new ``ModelState`` whose dataset is extended along *along*.

    Uses within extension when *within* names a between-unit factor,
    between extension otherwise. The outcome of cloned rows is blanked.
    """
    outcome = state.outcome if state.outcome in state.data.columns else None
    if within is None:
        extended = extend_between(state.data, along, n, outcome=outcome)
    else:
        extended = extend_within(state.data, along, within, n, outcome=outcome)

    if extended is state.data:
        return state
    return state.with_data(extended)
