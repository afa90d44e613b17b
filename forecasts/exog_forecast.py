"""
Horizon forecasts of the exogenous regressors.

Each downstream model consumes regressor forecasts made with its own
technique:

    arima -> ArimaxStrategy        (automatic-order ARIMA on each regressor)
    nnar  -> NeuralARStrategy      (NNAR on each regressor)
    tree  -> RecursiveTreeStrategy (recursive lag tree on each regressor)

Every regressor is fitted on its own history alone. A failed fit yields an
all-undefined column, never an exception, so the consuming model reports
those steps as undefined.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

import pandas as pd

from forecasts.arimax import arima_forecast
from forecasts.machine_learning.neural_ar import NNAR_EPOCHS, NNAR_REPEATS, nnar_forecast
from forecasts.machine_learning.recursive_tree import DEFAULT_LAGS, tree_forecast
from forecasts.results import ForecastResult
from functions.log_utils import configure_logger

logger = configure_logger(__name__)

TECHNIQUES = ("arima", "nnar", "tree")


@dataclass
class RegressorForecast:

    technique: str

    values: pd.DataFrame

    results: Dict[str, ForecastResult] = field(default_factory = dict)


    @property
    def failed(self) -> Dict[str, str]:

        return {
            name: res.unavailable.value
            for name, res in self.results.items()
            if not res.is_available
        }


def forecast_one(
    series: pd.Series,
    index: pd.Index,
    technique: str,
    seed: int = 42,
    tree_lags: int = DEFAULT_LAGS,
    nnar_repeats: int = NNAR_REPEATS,
    nnar_epochs: int = NNAR_EPOCHS
) -> ForecastResult:

    name = str(series.name)

    if technique == "arima":

        return arima_forecast(series, index, name = name)

    if technique == "nnar":

        return nnar_forecast(series, index, name = name, repeats = nnar_repeats, epochs = nnar_epochs, seed = seed)

    if technique == "tree":

        return tree_forecast(series, index, lags = tree_lags, name = name, random_state = seed)

    raise ValueError(f"unknown regressor technique {technique!r}; expected one of {TECHNIQUES}")


def forecast_regressors(
    train_regressors: pd.DataFrame,
    index: pd.Index,
    technique: str,
    seed: int = 42,
    tree_lags: int = DEFAULT_LAGS,
    nnar_repeats: int = NNAR_REPEATS,
    nnar_epochs: int = NNAR_EPOCHS
) -> RegressorForecast:
    """
    Forecast every column of ``train_regressors`` over ``index``.

    Returns
    -------
    RegressorForecast
        ``values`` is indexed by ``index`` with one column per regressor.
    """

    if technique not in TECHNIQUES:

        raise ValueError(f"unknown regressor technique {technique!r}; expected one of {TECHNIQUES}")

    results: Dict[str, ForecastResult] = {}

    for name in train_regressors.columns:

        results[name] = forecast_one(
            train_regressors[name],
            index,
            technique,
            seed = seed,
            tree_lags = tree_lags,
            nnar_repeats = nnar_repeats,
            nnar_epochs = nnar_epochs,
        )

    values = pd.DataFrame({name: res.values for name, res in results.items()}, index = index)

    out = RegressorForecast(technique = technique, values = values, results = results)

    if out.failed:

        logger.warning("%s regressor forecasts unavailable: %s", technique, out.failed)

    return out
