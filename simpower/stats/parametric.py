"""Two independent groups with normal outcomes coerced to non-negative counts."""

from typing import Optional, Sequence

import numpy as np
import pandas as pd

from ..errors import InvalidConfiguration
from ..utils.validators import _validate_count, _validate_sd

__all__ = ["simulate_two_groups"]


def simulate_two_groups(
    n_a: int,
    n_b: int,
    mean_a: float,
    sd_a: float,
    mean_b: float,
    sd_b: float,
    labels: Sequence[str] = ("A", "B"),
    group: str = "group",
    dv: str = "y",
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """Simulate one two-group dataset.

    Each unit's outcome is drawn from Normal(mean, sd) of its group, then
    replaced by its absolute value rounded to the nearest integer.

    Args:
        n_a: Units in the first group.
        n_b: Units in the second group.
        mean_a: Population mean of the first group.
        sd_a: Population SD of the first group.
        mean_b: Population mean of the second group.
        sd_b: Population SD of the second group.
        labels: Group labels, first group first.
        group: Name of the group column.
        dv: Name of the outcome column.
        rng: Random generator; a fresh unseeded one when omitted.

    Returns:
        DataFrame with ``id``, *group* and *dv* columns and ``n_a + n_b`` rows.

    Raises:
        InvalidConfiguration: For negative or non-integer sizes, negative
            SDs, or fewer than two distinct labels.
    """
    _validate_count(n_a, "n_a").raise_if_invalid()
    _validate_count(n_b, "n_b").raise_if_invalid()
    _validate_sd(sd_a, "sd_a").raise_if_invalid()
    _validate_sd(sd_b, "sd_b").raise_if_invalid()

    labels = list(labels)
    if len(labels) != 2 or labels[0] == labels[1]:
        raise InvalidConfiguration(f"labels must be two distinct values, got {labels}")
    if group in ("id", dv) or dv == "id":
        raise InvalidConfiguration(f"group ('{group}'), dv ('{dv}') and 'id' must be distinct column names")

    rng = rng if rng is not None else np.random.default_rng()

    y = np.concatenate([rng.normal(mean_a, sd_a, n_a), rng.normal(mean_b, sd_b, n_b)])

    return pd.DataFrame(
        {
            "id": np.arange(1, n_a + n_b + 1),
            group: np.repeat(labels, [n_a, n_b]),
            dv: np.rint(np.abs(y)).astype(np.int64),
        }
    )
