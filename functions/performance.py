"""
Forecast accuracy per (symbol, strategy).

    MAPE = mean(|forecast - actual| / |actual|) * 100

    MSE  = mean((forecast - actual)^2)

Steps where the forecast or the actual value is undefined, or the actual is
zero (MAPE undefined), are left out of both means and counted in
``n_excluded``. A strategy with no usable step gets NaN metrics.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable, List

import numpy as np
import pandas as pd

from forecasts.results import AlignmentError, ForecastResult


@dataclass(frozen = True)
class PerformanceRecord:

    symbol: str

    strategy: str

    mape: float

    mse: float

    n_obs: int

    n_excluded: int


def mape(
    forecast: np.ndarray,
    actual: np.ndarray
) -> float:

    return float(np.mean(np.abs(forecast - actual) / np.abs(actual)) * 100.0)


def mse(
    forecast: np.ndarray,
    actual: np.ndarray
) -> float:

    return float(np.mean((forecast - actual) ** 2))


def evaluate_forecast(
    symbol: str,
    result: ForecastResult,
    actual: pd.Series
) -> PerformanceRecord:
    """
    Score ``result`` against the true test-period levels.

    Raises
    ------
    AlignmentError
        If ``actual`` does not share the forecast's index.
    """

    if not actual.index.equals(result.index):

        raise AlignmentError(f"{result.strategy}: actual values are not aligned with the forecast")

    f = result.values.to_numpy(dtype = float)

    a = actual.to_numpy(dtype = float)

    usable = np.isfinite(f) & np.isfinite(a) & (a != 0)

    n_used = int(usable.sum())

    if n_used == 0:

        return PerformanceRecord(symbol, result.strategy, float("nan"), float("nan"), 0, len(f))

    return PerformanceRecord(
        symbol = symbol,
        strategy = result.strategy,
        mape = mape(f[usable], a[usable]),
        mse = mse(f[usable], a[usable]),
        n_obs = n_used,
        n_excluded = len(f) - n_used,
    )


def records_to_frame(
    records: Iterable[PerformanceRecord]
) -> pd.DataFrame:

    rows: List[dict] = [asdict(r) for r in records]

    cols = ["symbol", "strategy", "mape", "mse", "n_obs", "n_excluded"]

    return pd.DataFrame(rows, columns = cols)
