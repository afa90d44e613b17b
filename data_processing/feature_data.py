"""
Daily and weekly feature tables plus the train/test splits the forecasters use.

Daily bars are turned into a feature frame with the close, derived return,
7 and 30 day moving averages, a 14 day RSI, log volume and the first
differences of those fields. Weeks run Monday to Sunday and are keyed by their
Monday.

Split rules
-----------
Daily:   train = [train_start, cutoff],  test = (cutoff, end].

Weekly:  training weeks are aggregated only from days up to the cutoff, so the
         week holding the cutoff is a partial week ending on the cutoff close.
         Test weeks are the weeks starting after the cutoff. Test days that fall
         in the cutoff week appear in the daily test window only.

The weekly close difference is the change between consecutive weekly closes,
so cumulating forecast differences onto the cutoff close reproduces weekly
close levels. Regressor differences are weekly means of the daily differences.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

import config
from forecasts.results import InsufficientDataError
from functions.log_utils import configure_logger

logger = configure_logger(__name__)

TARGET = "close"

TARGET_DIFF = "close_diff"

REGRESSORS: List[str] = list(config.REGRESSORS)

MA_SHORT = 7

MA_LONG = 30

RSI_WINDOW = 14

COLUMN_MAP = {
    "Open": "open",
    "High": "high",
    "Low": "low",
    "Close": "close",
    "Adj Close": "adj_close",
    "Volume": "volume",
}

DIFF_COLUMNS = ["close_diff", "ma_7_diff", "ma_30_diff", "rsi_diff", "log_volume_diff"]

WEEKLY_AGG = {
    "open": "first",
    "high": "max",
    "low": "min",
    "close": "last",
    "adj_close": "last",
    "volume": "sum",
    "return": "sum",
    "ma_7": "last",
    "ma_30": "last",
    "rsi_14": "last",
    "log_volume": "last",
    "ma_7_diff": "mean",
    "ma_30_diff": "mean",
    "rsi_diff": "mean",
    "log_volume_diff": "mean",
}


def week_start(
    index: pd.DatetimeIndex
) -> pd.DatetimeIndex:
    """
    Monday of the Monday-to-Sunday week containing each timestamp.
    """

    idx = pd.DatetimeIndex(index)

    return idx.to_period("W-SUN").start_time


def weekly_last(
    series: pd.Series
) -> pd.Series:
    """
    Bucket a daily series into weeks and keep the value of the last day.

    For a week with days d1..d5 the weekly value is the value at d5, not a
    mean or the first observation. An undefined d5 leaves the week undefined.
    The index must be sorted.
    """

    if series.empty:

        return series.copy()

    keys = week_start(series.index)

    last_in_week = ~keys.duplicated(keep = "last")

    return pd.Series(
        series.to_numpy()[last_in_week],
        index = pd.DatetimeIndex(keys[last_in_week], name = series.index.name),
        name = series.name,
    )


def _rsi(
    close: pd.Series,
    window: int = RSI_WINDOW
) -> pd.Series:

    delta = close.diff()

    up = delta.clip(lower = 0.0)

    dn = -delta.clip(upper = 0.0)

    up_sum = up.rolling(window, min_periods = window).sum()

    dn_sum = dn.rolling(window, min_periods = window).sum().replace(0, np.nan)

    ratio = (up_sum / dn_sum).replace([np.inf, -np.inf], np.nan)

    rsi = 100 - (100 / (1 + ratio))

    # no down moves in the window
    rsi = rsi.where(~(dn_sum.isna() & up_sum.notna()), 100.0)

    return rsi


def normalise_bars(
    bars: pd.DataFrame
) -> pd.DataFrame:
    """
    Flatten provider columns to lower-case OHLCV names with a sorted,
    duplicate-free, timezone-naive DatetimeIndex.
    """

    df = bars.copy()

    if isinstance(df.columns, pd.MultiIndex):

        df.columns = df.columns.get_level_values(0)

    df = df.rename(columns = COLUMN_MAP)

    if "adj_close" not in df.columns and "close" in df.columns:

        df["adj_close"] = df["close"]

    missing = [c for c in ("open", "high", "low", "close", "volume") if c not in df.columns]

    if missing:

        raise KeyError(f"price bars are missing columns {missing}")

    idx = pd.DatetimeIndex(pd.to_datetime(df.index))

    if idx.tz is not None:

        idx = idx.tz_localize(None)

    df.index = idx

    df = df[~df.index.duplicated(keep = "last")].sort_index()

    return df[list(COLUMN_MAP.values())].astype(float)


def build_daily_features(
    bars: pd.DataFrame
) -> pd.DataFrame:
    """
    Build the daily feature frame from OHLCV bars.

    Columns
    -------
    open, high, low, close, adj_close, volume, return, ma_7, ma_30, rsi_14,
    log_volume and the differences close_diff, ma_7_diff, ma_30_diff,
    rsi_diff, log_volume_diff. Leading rows are undefined where rolling
    windows and differences have no history.
    """

    df = normalise_bars(bars)

    close = df["close"]

    df["return"] = close.pct_change()

    df["ma_7"] = close.rolling(MA_SHORT, min_periods = MA_SHORT).mean()

    df["ma_30"] = close.rolling(MA_LONG, min_periods = MA_LONG).mean()

    df["rsi_14"] = _rsi(close)

    df["log_volume"] = np.log(df["volume"].clip(lower = 1.0))

    df["close_diff"] = close.diff()

    df["ma_7_diff"] = df["ma_7"].diff()

    df["ma_30_diff"] = df["ma_30"].diff()

    df["rsi_diff"] = df["rsi_14"].diff()

    df["log_volume_diff"] = df["log_volume"].diff()

    return df


def aggregate_weekly(
    daily: pd.DataFrame
) -> pd.DataFrame:
    """
    Reduce a daily feature frame to one row per week keyed by week start.

    Fields use first/last/max/min/sum as fits each field; regressor differences
    are weekly means. The weekly close difference is left to the caller since
    it depends on the neighbouring weeks.
    """

    agg = {c: how for c, how in WEEKLY_AGG.items() if c in daily.columns}

    if daily.empty:

        return pd.DataFrame(columns = list(agg))

    weekly = daily.groupby(week_start(daily.index)).agg(agg)

    weekly.index = pd.DatetimeIndex(weekly.index)

    return weekly


@dataclass(frozen = True)
class Split:
    """
    A frequency-specific train/test partition of a feature frame.
    """

    train: pd.DataFrame

    test: pd.DataFrame

    frequency: str

    cutoff: pd.Timestamp


    @property
    def horizon(self) -> int:

        return len(self.test)


    @property
    def last_level(self) -> float:

        return float(self.train[TARGET].iloc[-1])


def _require_rows(
    frame: pd.DataFrame,
    what: str
) -> None:

    if frame.empty:

        raise InsufficientDataError(f"{what} window is empty")


def _clean(
    frame: pd.DataFrame,
    required: Sequence[str]
) -> pd.DataFrame:

    missing = [c for c in required if c not in frame.columns]

    if missing:

        raise KeyError(f"feature frame is missing columns {missing}")

    return frame.dropna(subset = list(required))


def split_daily(
    daily: pd.DataFrame,
    train_start,
    cutoff,
    end = None,
    required: Optional[Iterable[str]] = None
) -> Split:
    """
    Partition a daily feature frame into ``[train_start, cutoff]`` and
    ``(cutoff, end]``. Rows missing any required column are dropped.

    Raises
    ------
    InsufficientDataError
        If either window is empty after cleaning.
    """

    required = list(required) if required is not None else [TARGET, TARGET_DIFF] + REGRESSORS

    train_start = pd.Timestamp(train_start)

    cutoff = pd.Timestamp(cutoff)

    idx = daily.index

    train = daily.loc[(idx >= train_start) & (idx <= cutoff)]

    test = daily.loc[idx > cutoff]

    if end is not None:

        test = test.loc[test.index <= pd.Timestamp(end)]

    train = _clean(train, required)

    test = _clean(test, required)

    _require_rows(train, "daily training")

    _require_rows(test, "daily test")

    return Split(train = train, test = test, frequency = "daily", cutoff = cutoff)


def build_weekly_split(
    daily: pd.DataFrame,
    train_start,
    cutoff,
    end = None,
    required: Optional[Iterable[str]] = None
) -> Split:
    """
    Weekly counterpart of ``split_daily`` following the module's split rules.

    Raises
    ------
    InsufficientDataError
        If either weekly window is empty after cleaning.
    """

    required = list(required) if required is not None else [TARGET, TARGET_DIFF] + REGRESSORS

    train_start = pd.Timestamp(train_start)

    cutoff = pd.Timestamp(cutoff)

    idx = daily.index

    pre = daily.loc[(idx >= train_start) & (idx <= cutoff)]

    post = daily.loc[idx > cutoff]

    if end is not None:

        post = post.loc[post.index <= pd.Timestamp(end)]

    in_cutoff_week = week_start(post.index) <= cutoff

    if in_cutoff_week.any():

        logger.info("%d test day(s) share the cutoff week; kept in the daily test window only", int(in_cutoff_week.sum()))

    post = post.loc[~in_cutoff_week]

    parts = [aggregate_weekly(frame) for frame in (pre, post) if not frame.empty]

    if not parts:

        raise InsufficientDataError("no daily rows in the weekly window")

    weekly = pd.concat(parts)

    weekly[TARGET_DIFF] = weekly[TARGET].diff()

    train = _clean(weekly.loc[weekly.index <= cutoff], required)

    test = _clean(weekly.loc[weekly.index > cutoff], [TARGET])

    _require_rows(train, "weekly training")

    _require_rows(test, "weekly test")

    return Split(train = train, test = test, frequency = "weekly", cutoff = cutoff)
