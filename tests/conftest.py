"""Shared synthetic market data for the forecasting tests."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from data_processing.feature_data import build_daily_features, build_weekly_split, split_daily
from functions.run_config import RunConfig


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

N_DAYS = 360

WARMUP = 40

CUTOFF_POS = 309

DRIFT = 0.05

NOISE = 0.1


def make_bars(
    n_days: int = N_DAYS,
    start: str = "2022-01-03",
    seed: int = 7,
    drift: float = DRIFT,
    noise: float = NOISE
) -> pd.DataFrame:
    """
    Business-day OHLCV bars whose close is a noisy linear trend.

    ``start`` is a Monday, so position ``i`` falls on weekday ``i % 5``.
    """

    idx = pd.bdate_range(start = start, periods = n_days, name = "Date")

    rng = np.random.default_rng(seed)

    close = 100.0 + drift * np.arange(n_days) + rng.normal(0.0, noise, n_days)

    return pd.DataFrame(
        {
            "Open": close - 0.05,
            "High": close + 0.2,
            "Low": close - 0.2,
            "Close": close,
            "Adj Close": close,
            "Volume": rng.lognormal(13.0, 0.3, n_days),
        },
        index = idx,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope = "session")
def bars() -> pd.DataFrame:
    return make_bars()


@pytest.fixture(scope = "session")
def daily_features(bars) -> pd.DataFrame:
    return build_daily_features(bars)


@pytest.fixture(scope = "session")
def train_start(daily_features) -> pd.Timestamp:
    # Monday, after the 30-day moving average has history
    return daily_features.index[WARMUP]


@pytest.fixture(scope = "session")
def cutoff(daily_features) -> pd.Timestamp:
    # Friday; the 50 remaining days are 10 full test weeks
    return daily_features.index[CUTOFF_POS]


@pytest.fixture(scope = "session")
def daily_split(daily_features, train_start, cutoff):
    return split_daily(daily_features, train_start, cutoff)


@pytest.fixture(scope = "session")
def short_daily_split(daily_features, train_start, cutoff):
    """Daily split with a two-week test window, for the rolling refits."""
    return split_daily(daily_features, train_start, cutoff, end = daily_features.index[CUTOFF_POS + 10])


@pytest.fixture(scope = "session")
def weekly_split(daily_features, train_start, cutoff):
    return build_weekly_split(daily_features, train_start, cutoff)


@pytest.fixture(scope = "session")
def run_cfg(train_start, cutoff) -> RunConfig:
    return RunConfig(
        train_start = train_start,
        cutoff = cutoff,
        n_paths = 500,
        nnar_repeats = 1,
        nnar_epochs = 30,
        n_jobs = 1,
        seed = 42,
    )
