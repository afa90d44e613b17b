"""
Daily OHLCV bars from Yahoo Finance.
"""

import datetime as dt
from typing import Dict, List

import pandas as pd
import yfinance as yf

from functions.log_utils import configure_logger

logger = configure_logger(__name__)


def download_daily_bars(
    ticker: str,
    start: dt.date,
    end: dt.date
) -> pd.DataFrame:
    """
    Download unadjusted daily bars (with the adjusted close) for one ticker.

    Parameters
    ----------
    ticker : str
        Yahoo Finance symbol.
    start : datetime.date
        Inclusive start date.
    end : datetime.date
        Exclusive (Yahoo convention) end date.

    Returns
    -------
    pd.DataFrame
        Columns 'Open', 'High', 'Low', 'Close', 'Adj Close', 'Volume' on a
        timezone-naive DatetimeIndex. Empty if Yahoo returned nothing.
    """

    logger.info("Downloading %s daily bars: %s to %s", ticker, start, end)

    data = yf.download(ticker, start = start, end = end, auto_adjust = False, progress = False)

    if data.empty:

        logger.warning("No data returned for %s", ticker)

        return data

    if isinstance(data.columns, pd.MultiIndex):

        data = data.xs(ticker, axis = 1, level = -1) if ticker in data.columns.get_level_values(-1) else data.droplevel(-1, axis = 1)

    data.index = pd.to_datetime(data.index)

    if data.index.tz is not None:

        data.index = data.index.tz_localize(None)

    return data


def download_universe(
    tickers: List[str],
    start: dt.date,
    end: dt.date
) -> Dict[str, pd.DataFrame]:
    """
    Download bars for each ticker; tickers with no data are left out.
    """

    out: Dict[str, pd.DataFrame] = {}

    for tk in tickers:

        bars = download_daily_bars(tk, start, end)

        if not bars.empty:

            out[tk] = bars

    return out
