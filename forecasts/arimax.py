"""
Automatic-order ARIMA / ARIMAX forecasting with statsmodels SARIMAX.

Order selection
---------------
Every candidate (p, d, q) x (P, D, Q, s) pair is fitted by maximum likelihood.
Fits that raise or whose optimiser reports no convergence are discarded and
the survivor with the smallest AIC is kept:

    AIC = 2k - 2 log L

Seasonal candidates are only tried when the sample holds at least
``SEASONAL_MIN_CYCLES`` full seasons. Models with d = 0 carry a constant so a
differenced series with drift keeps its mean.

Two uses
--------
* ``arima_forecast``: univariate forecast of one exogenous regressor from its
  own history.
* ``ArimaxStrategy``: weekly close differences regressed on the four
  exogenous regressors, forecast with forecast regressor values and turned
  back into levels.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from statsmodels.tsa.statespace.sarimax import SARIMAX
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from forecasts.results import (
    FailureReason,
    FitFailure,
    ForecastResult,
    ModelFit,
    StepFailure,
    propagate_failures,
)
from forecasts.strategy import ForecastStrategy, resolve_index
from functions.level_recovery import recover_levels
from functions.log_utils import configure_logger

logger = configure_logger(__name__)

CANDIDATE_ORDERS: List[Tuple[int, int, int]] = [
    (0, 0, 0),
    (1, 0, 0),
    (0, 0, 1),
    (1, 0, 1),
    (2, 0, 0),
    (0, 1, 1),
    (1, 1, 0),
    (1, 1, 1),
]

CANDIDATE_SEASONAL_ORDERS: List[Tuple[int, int, int, int]] = [
    (0, 0, 0, 0),
    (1, 0, 0, 4),
]

SEASONAL_MIN_CYCLES = 6

MIN_OBS = 8


@dataclass
class AutoArimaFit:

    result: object

    order: Tuple[int, int, int]

    seasonal_order: Tuple[int, int, int, int]

    aic: float

    exog_names: Optional[List[str]] = None


def _candidate_pairs(
    n_obs: int
):

    for seasonal in CANDIDATE_SEASONAL_ORDERS:

        s = seasonal[3]

        if s and n_obs < SEASONAL_MIN_CYCLES * s:

            continue

        for order in CANDIDATE_ORDERS:

            yield order, seasonal


def select_sarimax(
    y: pd.Series,
    exog: Optional[pd.DataFrame] = None
) -> AutoArimaFit:
    """
    Fit every candidate order and return the lowest-AIC converged fit.

    Parameters
    ----------
    y : pd.Series
        Series to model; must be fully defined.
    exog : pd.DataFrame, optional
        Regressors aligned with ``y``.

    Raises
    ------
    FitFailure
        ``insufficient_data`` for short or undefined input,
        ``non_convergence`` when no candidate converged.
    """

    y_arr = np.asarray(y, dtype = float)

    if len(y_arr) < MIN_OBS:

        raise FitFailure(FailureReason.INSUFFICIENT_DATA, f"{len(y_arr)} observations, need {MIN_OBS}")

    if not np.isfinite(y_arr).all():

        raise FitFailure(FailureReason.INSUFFICIENT_DATA, "series holds undefined values")

    x_arr = None

    exog_names = None

    if exog is not None:

        x_arr = np.asarray(exog, dtype = float)

        exog_names = list(exog.columns)

        if x_arr.shape[0] != len(y_arr) or not np.isfinite(x_arr).all():

            raise FitFailure(FailureReason.INSUFFICIENT_DATA, "regressors do not cover the training window")

    best: Optional[AutoArimaFit] = None

    n_tried = 0

    for order, seasonal in _candidate_pairs(len(y_arr)):

        n_tried += 1

        trend = "c" if order[1] == 0 and seasonal[1] == 0 else "n"

        try:

            model = SARIMAX(
                y_arr,
                exog = x_arr,
                order = order,
                seasonal_order = seasonal,
                trend = trend,
                enforce_stationarity = False,
                enforce_invertibility = False,
            )

            with warnings.catch_warnings():

                warnings.simplefilter("ignore", ConvergenceWarning)

                warnings.simplefilter("ignore", UserWarning)

                warnings.simplefilter("ignore", RuntimeWarning)

                fit = model.fit(disp = False, method = "lbfgs", maxiter = 200)

        except Exception as exc:

            logger.debug("SARIMAX%s%s failed: %s", order, seasonal, exc)

            continue

        if not (fit.mle_retvals or {}).get("converged", True) or not np.isfinite(fit.aic):

            continue

        if best is None or fit.aic < best.aic:

            best = AutoArimaFit(
                result = fit,
                order = order,
                seasonal_order = seasonal,
                aic = float(fit.aic),
                exog_names = exog_names,
            )

    if best is None:

        raise FitFailure(FailureReason.NON_CONVERGENCE, f"none of {n_tried} candidate orders converged")

    logger.debug("Selected SARIMAX%s%s (AIC %.2f)", best.order, best.seasonal_order, best.aic)

    return best


def _masked_exog(
    future_regressors: pd.DataFrame,
    exog_names: List[str],
    horizon: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Future regressor matrix with undefined rows zero-filled, plus the mask of
    those rows so their forecasts can be marked undefined afterwards.
    """

    missing = [c for c in exog_names if c not in future_regressors.columns]

    if missing:

        raise ValueError(f"future regressors are missing {missing}")

    x = future_regressors[exog_names].to_numpy(dtype = float)

    if x.shape[0] != horizon:

        raise ValueError(f"future regressors cover {x.shape[0]} steps, horizon is {horizon}")

    bad = ~np.isfinite(x).all(axis = 1)

    return np.where(np.isfinite(x), x, 0.0), bad


def forecast_fitted(
    fit: AutoArimaFit,
    horizon: int,
    future_regressors: Optional[pd.DataFrame] = None
) -> Tuple[np.ndarray, List[StepFailure]]:
    """
    h-step mean forecast of a selected model. Steps with undefined future
    regressors are returned as NaN and reported as ``missing_input``.
    """

    failures: List[StepFailure] = []

    if fit.exog_names:

        if future_regressors is None:

            raise ValueError("model was fitted with regressors; future values are required")

        x, bad = _masked_exog(future_regressors, fit.exog_names, horizon)

        mean = np.asarray(fit.result.get_forecast(steps = horizon, exog = x).predicted_mean, dtype = float)

        mean[bad] = np.nan

        failures = [
            StepFailure(int(i), FailureReason.MISSING_INPUT, "regressor forecast undefined")
            for i in np.flatnonzero(bad)
        ]

    else:

        mean = np.asarray(fit.result.get_forecast(steps = horizon).predicted_mean, dtype = float)

    return mean, failures


def arima_forecast(
    series: pd.Series,
    index: pd.Index,
    name: Optional[str] = None
) -> ForecastResult:
    """
    Forecast one regressor from its own history over ``index``. A failed
    search gives an unavailable, all-undefined result.
    """

    name = name or str(series.name)

    try:

        fit = select_sarimax(series.dropna())

    except FitFailure as exc:

        logger.warning("ARIMA forecast of %s unavailable: %s", name, exc)

        return ForecastResult.unavailable_for(name, index, exc.reason, exc.detail)

    mean, _ = forecast_fitted(fit, len(index))

    return ForecastResult.from_array(name, mean, index)


class ArimaxStrategy(ForecastStrategy):
    """
    ARIMAX on first differences of the target with level recovery.
    """

    name = "arimax"


    def fit(
        self,
        target: pd.Series,
        regressors: Optional[pd.DataFrame] = None
    ) -> ModelFit:

        diffs = target.diff().iloc[1:]

        exog = None if regressors is None else regressors.loc[diffs.index]

        auto = select_sarimax(diffs, exog)

        logger.info("ARIMAX order %s seasonal %s, AIC %.2f", auto.order, auto.seasonal_order, auto.aic)

        return ModelFit(
            strategy = self.name,
            state = auto,
            meta = {"last_level": float(target.iloc[-1])},
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

        diffs, failures = forecast_fitted(model_fit.state, horizon, future_regressors)

        levels = recover_levels(model_fit.meta["last_level"], diffs)

        return ForecastResult.from_array(self.name, levels, index, failures = propagate_failures(levels, tuple(failures)))
