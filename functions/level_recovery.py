"""
Rebuild price levels from forecast first differences.
"""

from typing import Union

import numpy as np
import pandas as pd


def recover_levels(
    last_level: float,
    diffs: Union[np.ndarray, pd.Series]
) -> Union[np.ndarray, pd.Series]:
    """
    Cumulate forecast differences onto the last training level.

        level_i = L + sum_{j <= i} d_j

    An error in d_j carries into every later level, and an undefined d_j
    leaves level_j and all later levels undefined.

    Parameters
    ----------
    last_level : float
        Last observed level of the training window (L).
    diffs : array-like
        Forecast first differences d_1..d_h.

    Returns
    -------
    Same type as ``diffs`` (a Series keeps its index).
    """

    if not np.isfinite(last_level):

        raise ValueError("last training level must be finite")

    arr = np.asarray(diffs, dtype = float)

    levels = last_level + np.cumsum(arr)

    if isinstance(diffs, pd.Series):

        return pd.Series(levels, index = diffs.index, name = diffs.name)

    return levels
