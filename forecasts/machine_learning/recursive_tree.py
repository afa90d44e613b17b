"""
Recursive multi-step forecasting with gradient-boosted regression trees.

Lag embedding
-------------
For a series v and lag count k each training row is

    [v_t, v_{t-1}, ..., v_{t-k}],

the first column being the target and the remaining k columns the features.
A HistGradientBoostingRegressor learns the one-step map

    v_t = f(v_{t-1}, ..., v_{t-k}).

Recursive forecasting
---------------------
The lag buffer holds the k most recent known-or-predicted values, most recent
first. Each horizon step predicts from the buffer, pushes the prediction to the
front and drops the oldest value:

    (buffer, x_t) -> (buffer', v_hat_t)

so the i-th prediction is an input of the (i+1)-th and errors compound with the
horizon. Given a fitted model and a buffer the sequence is deterministic.

Two uses
--------
* ``tree_forecast``: an exogenous regressor forecast from its own lags.
* ``RecursiveTreeStrategy``: the weekly close level from two of its own lags
  plus the regressors. Training uses true regressor values; the forecast uses
  the regressor forecasts. The output is already a level.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.ensemble import HistGradientBoostingRegressor

from forecasts.results import (
    FailureReason,
    FitFailure,
    ForecastResult,
    ModelFit,
    StepFailure,
    propagate_failures,
)
from forecasts.strategy import ForecastStrategy, resolve_index
from functions.log_utils import configure_logger

logger = configure_logger(__name__)

DEFAULT_LAGS = 4

TARGET_LAGS = 2

MIN_TRAIN_ROWS = 10

TREE_PARAMS = {
    "learning_rate": 0.1,
    "max_iter": 200,
    "max_depth": 3,
    "min_samples_leaf": 5,
    "l2_regularization": 0.0,
    "max_bins": 255,
    "early_stopping": False,
}


def embed(
    values,
    dimension: int
) -> np.ndarray:
    """
    Lag-embedding matrix with rows [v_t, v_{t-1}, ..., v_{t-dimension+1}].

    Returns
    -------
    np.ndarray, shape (n - dimension + 1, dimension)
    """

    arr = np.asarray(values, dtype = float)

    n = len(arr)

    if dimension < 1 or n < dimension:

        raise ValueError(f"cannot embed {n} values in dimension {dimension}")

    return np.column_stack([arr[dimension - 1 - j: n - j] for j in range(dimension)])


def _new_model(
    random_state: int
) -> HistGradientBoostingRegressor:

    return HistGradientBoostingRegressor(random_state = random_state, **TREE_PARAMS)


def _fit_model(
    X: np.ndarray,
    y: np.ndarray,
    random_state: int
) -> HistGradientBoostingRegressor:

    if X.shape[0] < MIN_TRAIN_ROWS:

        raise FitFailure(FailureReason.INSUFFICIENT_DATA, f"{X.shape[0]} training rows, need {MIN_TRAIN_ROWS}")

    model = _new_model(random_state)

    try:

        model.fit(X, y)

    except ValueError as exc:

        raise FitFailure(FailureReason.FIT_ERROR, str(exc)) from exc

    return model


@dataclass(frozen = True)
class LagTreeFit:

    model: HistGradientBoostingRegressor

    buffer: np.ndarray

    lags: int


def fit_lag_tree(
    series: pd.Series,
    lags: int = DEFAULT_LAGS,
    random_state: int = 42
) -> LagTreeFit:
    """
    Train the one-step lag tree on the defined values of ``series``.

    Raises
    ------
    FitFailure
        When there are too few rows to train.
    """

    values = np.asarray(pd.Series(series).dropna(), dtype = float)

    if len(values) <= lags:

        raise FitFailure(FailureReason.INSUFFICIENT_DATA, f"{len(values)} values for {lags} lags")

    emb = embed(values, lags + 1)

    model = _fit_model(emb[:, 1:], emb[:, 0], random_state)

    return LagTreeFit(model = model, buffer = values[::-1][:lags].copy(), lags = lags)


def recursive_step(
    model,
    buffer: np.ndarray,
    exog_row: Optional[np.ndarray] = None
) -> Tuple[np.ndarray, float]:
    """
    One recursive step: predict from the lag buffer (and the step's regressor
    values), then shift the prediction into the buffer.

    An undefined input yields an undefined prediction, which then sits in the
    buffer and leaves every later step undefined.
    """

    features = buffer if exog_row is None else np.concatenate([buffer, np.asarray(exog_row, dtype = float)])

    if np.isfinite(features).all():

        pred = float(model.predict(features.reshape(1, -1))[0])

    else:

        pred = float("nan")

    new_buffer = np.concatenate([[pred], buffer[:-1]])

    return new_buffer, pred


def recursive_forecast(
    model,
    buffer: np.ndarray,
    horizon: int,
    future_exog: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Apply ``recursive_step`` ``horizon`` times starting from ``buffer``.
    """

    state = np.asarray(buffer, dtype = float).copy()

    if future_exog is not None and len(future_exog) != horizon:

        raise ValueError(f"{len(future_exog)} regressor rows for horizon {horizon}")

    preds: List[float] = []

    for t in range(horizon):

        row = None if future_exog is None else future_exog[t]

        state, pred = recursive_step(model, state, row)

        preds.append(pred)

    return np.asarray(preds, dtype = float)


def tree_forecast(
    series: pd.Series,
    index: pd.Index,
    lags: int = DEFAULT_LAGS,
    name: Optional[str] = None,
    random_state: int = 42
) -> ForecastResult:
    """
    Forecast one regressor recursively from its own lags over ``index``.
    """

    name = name or str(series.name)

    try:

        fit = fit_lag_tree(series, lags = lags, random_state = random_state)

    except FitFailure as exc:

        logger.warning("Tree forecast of %s unavailable: %s", name, exc)

        return ForecastResult.unavailable_for(name, index, exc.reason, exc.detail)

    preds = recursive_forecast(fit.model, fit.buffer, len(index))

    return ForecastResult.from_array(name, preds, index, failures = propagate_failures(preds, ()))


class RecursiveTreeStrategy(ForecastStrategy):
    """
    Level forecaster on [level_{t-1}, level_{t-2}, regressors_t].
    """

    name = "tree"


    def __init__(
        self,
        random_state: int = 42
    ):

        self.random_state = random_state


    def fit(
        self,
        target: pd.Series,
        regressors: Optional[pd.DataFrame] = None
    ) -> ModelFit:

        lagged = pd.concat(
            {f"lag_{j}": target.shift(j) for j in range(1, TARGET_LAGS + 1)},
            axis = 1
        )

        reg_names: List[str] = [] if regressors is None else list(regressors.columns)

        frame = lagged if regressors is None else pd.concat([lagged, regressors.reindex(target.index)], axis = 1)

        frame["y"] = target

        frame = frame.dropna()

        X = frame.drop(columns = "y").to_numpy(dtype = float)

        model = _fit_model(X, frame["y"].to_numpy(dtype = float), self.random_state)

        buffer = target.dropna().to_numpy(dtype = float)[::-1][:TARGET_LAGS].copy()

        return ModelFit(
            strategy = self.name,
            state = model,
            meta = {"buffer": buffer, "regressors": reg_names},
        )


    def forecast(
        self,
        model_fit: ModelFit,
        horizon: int,
        future_regressors: Optional[pd.DataFrame] = None,
        index: Optional[pd.Index] = None,
        realized: Optional[pd.DataFrame] = None,
    ) -> ForecastResult:

        index = resolve_index(horizon, index, future_regressors)

        reg_names = model_fit.meta["regressors"]

        future_exog = None

        failures: Tuple[StepFailure, ...] = ()

        if reg_names:

            if future_regressors is None:

                raise ValueError("model was fitted with regressors; future values are required")

            future_exog = future_regressors[reg_names].to_numpy(dtype = float)

            failures = tuple(
                StepFailure(int(i), FailureReason.MISSING_INPUT, "regressor forecast undefined")
                for i in np.flatnonzero(~np.isfinite(future_exog).all(axis = 1))
            )

        preds = recursive_forecast(model_fit.state, model_fit.meta["buffer"], horizon, future_exog)

        return ForecastResult.from_array(self.name, preds, index, failures = propagate_failures(preds, failures))
