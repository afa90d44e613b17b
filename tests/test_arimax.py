"""Automatic-order SARIMAX search and the ARIMAX strategy."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from forecasts.arimax import (
    ArimaxStrategy,
    _candidate_pairs,
    arima_forecast,
    select_sarimax,
)
from forecasts.exog_forecast import forecast_regressors
from forecasts.results import FailureReason, FitFailure
from functions.performance import evaluate_forecast

REGS = ["ma_7_diff", "ma_30_diff", "rsi_diff", "log_volume_diff"]


def _ar1(n: int = 120, phi: float = 0.6, seed: int = 3) -> pd.Series:
    rng = np.random.default_rng(seed)

    e = rng.standard_normal(n)

    y = np.zeros(n)

    for t in range(1, n):
        y[t] = phi * y[t - 1] + e[t]

    return pd.Series(y, name = "y")


def test_seasonal_candidates_need_six_full_seasons():
    short = {seasonal for _, seasonal in _candidate_pairs(20)}

    long = {seasonal for _, seasonal in _candidate_pairs(24)}

    assert short == {(0, 0, 0, 0)}

    assert (1, 0, 0, 4) in long


def test_select_sarimax_returns_lowest_aic_converged_fit():
    fit = select_sarimax(_ar1())

    assert np.isfinite(fit.aic)

    assert fit.result.mle_retvals.get("converged", True)

    assert fit.exog_names is None


def test_select_sarimax_short_series_raises():
    with pytest.raises(FitFailure) as info:
        select_sarimax(pd.Series(np.arange(5, dtype = float)))

    assert info.value.reason is FailureReason.INSUFFICIENT_DATA


def test_arima_forecast_short_regressor_is_unavailable():
    idx = pd.date_range("2024-01-01", periods = 4, freq = "W-MON")

    res = arima_forecast(pd.Series([1.0, 2.0, 3.0], name = "rsi_diff"), idx)

    assert res.strategy == "rsi_diff"

    assert res.unavailable is FailureReason.INSUFFICIENT_DATA

    assert res.values.isna().all()


def test_arimax_strategy_tracks_trend(weekly_split):
    index = weekly_split.test.index

    exog = forecast_regressors(weekly_split.train[REGS], index, "arima")

    res = ArimaxStrategy().run(
        weekly_split.train["close"],
        index,
        regressors = weekly_split.train[REGS],
        future_regressors = exog.values,
    )

    assert res.is_available

    assert res.index.equals(index)

    rec = evaluate_forecast("SYN", res, weekly_split.test["close"])

    assert rec.mape < 5.0


def test_undefined_regressor_step_propagates_to_later_levels(weekly_split):
    index = weekly_split.test.index

    future = weekly_split.test[REGS].copy()

    future.iloc[2, 1] = np.nan

    res = ArimaxStrategy().run(
        weekly_split.train["close"],
        index,
        regressors = weekly_split.train[REGS],
        future_regressors = future,
    )

    assert np.isfinite(res.values.iloc[:2]).all()

    assert res.values.iloc[2:].isna().all()

    steps = [f.step for f in res.failures]

    assert steps == list(range(2, len(index)))

    assert all(f.reason is FailureReason.MISSING_INPUT for f in res.failures)
