"""
Dataset input normalization.

Converts the accepted dataset formats (pandas DataFrame, dict of columns,
2D numpy array or list with column names) into a pandas DataFrame.
"""

from typing import List, Optional

import numpy as np
import pandas as pd


def normalize_dataset(
    data,
    columns: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Convert user-supplied data into a pandas DataFrame.

    Accepted inputs:
        - pandas DataFrame: returned as a copy with a fresh RangeIndex
        - dict of {name: array}: keys become column names
        - list or 1D numpy array: treated as single column
        - 2D numpy array or list of rows: used directly

    When *columns* is not provided and cannot be inferred (plain array / list),
    columns are auto-named ``column_1``, ``column_2``, ...

    Args:
        data: Raw data in any supported format.
        columns: Optional explicit column names (only used for numpy/list input).

    Returns:
        A new DataFrame; the caller's object is never modified.

    Raises:
        TypeError: If *data* is an unsupported type.
        ValueError: If *columns* length doesn't match array width.
    """
    # --- pandas DataFrame ---------------------------------------------------
    if isinstance(data, pd.DataFrame):
        return data.reset_index(drop=True).copy()

    # --- dict ---------------------------------------------------------------
    if isinstance(data, dict):
        return pd.DataFrame({name: np.asarray(values) for name, values in data.items()})

    # --- list / numpy array -------------------------------------------------
    if isinstance(data, (list, np.ndarray)):
        arr = np.asarray(data)

        # 1-D → single column
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)

        # Auto-generate column names when not supplied
        if columns is None:
            columns = [f"column_{i + 1}" for i in range(arr.shape[1])]

        if len(columns) != arr.shape[1]:
            raise ValueError(f"columns length ({len(columns)}) must match data columns ({arr.shape[1]})")

        return pd.DataFrame(arr, columns=columns)

    # --- unsupported --------------------------------------------------------
    raise TypeError("data must be a pandas DataFrame, dict, numpy array, or list")


def unit_ids(data: pd.DataFrame, along: str) -> List:
    """Return the unique values of *along* in order of first appearance."""
    return list(pd.unique(data[along]))
