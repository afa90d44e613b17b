"""
Equal-weight combination of the four weekly strategy forecasts.

Alignment rule
--------------
All four inputs must carry exactly the same ordered weekly index (week-start
Mondays of the weekly test window). The daily Monte Carlo forecast is brought
onto that index by ``reconcile_weekly``:

1) bucket the daily forecast into weeks and keep the last daily value of
   each week;

2) reindex onto the weekly test index. The week holding the cutoff (whose test
   days are daily-only) is dropped and logged; a weekly test week with no daily
   forecast at all raises ``AlignmentError``.

``combine_forecasts`` never truncates or reindexes: differing indices are a
defect upstream and raise ``AlignmentError``.

Combination
-----------
    ensemble_w = (arimax_w + neural_ar_w + tree_w + garch_mc_w) / 4

summed in that fixed order. A week where any input is undefined stays
undefined.
"""

from __future__ import annotations

from functools import reduce
from typing import List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from data_processing.feature_data import weekly_last
from forecasts.results import (
    AlignmentError,
    FailureReason,
    ForecastResult,
    StepFailure,
)
from functions.log_utils import configure_logger

logger = configure_logger(__name__)

STRATEGY_ORDER: List[str] = ["arimax", "neural_ar", "tree", "garch_mc"]

ENSEMBLE = "ensemble"


def _weekly_band(
    band: Optional[pd.Series],
    index: pd.Index
) -> Optional[pd.Series]:

    if band is None:

        return None

    return weekly_last(band).reindex(index)


def reconcile_weekly(
    daily: ForecastResult,
    weekly_index: pd.DatetimeIndex
) -> ForecastResult:
    """
    Weekly last-value view of a daily forecast on ``weekly_index``.

    Raises
    ------
    AlignmentError
        If a week of ``weekly_index`` has no daily forecast.
    """

    weekly = weekly_last(daily.values)

    absent = weekly_index.difference(weekly.index)

    if len(absent):

        raise AlignmentError(f"{daily.strategy}: no daily forecast for week(s) {[str(d.date()) for d in absent]}")

    dropped = weekly.index.difference(weekly_index)

    if len(dropped):

        logger.info("%s: dropping week(s) outside the weekly test window: %s", daily.strategy, [str(d.date()) for d in dropped])

    values = weekly.reindex(weekly_index)

    failures = tuple(
        StepFailure(int(i), FailureReason.MISSING_INPUT, "daily forecast undefined for the week")
        for i in np.flatnonzero(values.isna().to_numpy())
    )

    return ForecastResult(
        strategy = daily.strategy,
        values = values.rename(daily.strategy),
        lower = _weekly_band(daily.lower, weekly_index),
        upper = _weekly_band(daily.upper, weekly_index),
        failures = failures,
        unavailable = daily.unavailable,
        detail = daily.detail,
    )


def check_alignment(
    results: Sequence[ForecastResult]
) -> pd.Index:
    """
    Return the common index of ``results`` or raise ``AlignmentError``.
    """

    if not results:

        raise AlignmentError("nothing to combine")

    ref = results[0].index

    for res in results[1:]:

        if not res.index.equals(ref):

            raise AlignmentError(
                f"{res.strategy} index ({len(res.index)} steps) differs from {results[0].strategy} ({len(ref)} steps)"
            )

    return ref


def combine_forecasts(
    results: Mapping[str, ForecastResult],
    order: Sequence[str] = STRATEGY_ORDER
) -> ForecastResult:
    """
    Elementwise arithmetic mean of the strategy forecasts named in ``order``.

    Raises
    ------
    KeyError
        If a strategy in ``order`` is missing.
    AlignmentError
        If the forecasts do not share one index.
    """

    missing = [name for name in order if name not in results]

    if missing:

        raise KeyError(f"missing strategy forecasts: {missing}")

    members = [results[name] for name in order]

    index = check_alignment(members)

    total = reduce(lambda acc, s: acc + s, (m.values.to_numpy(dtype = float) for m in members))

    mean = total / len(members)

    failures = tuple(
        StepFailure(int(i), FailureReason.MISSING_INPUT, "a member forecast is undefined")
        for i in np.flatnonzero(~np.isfinite(mean))
    )

    unavailable = [m.strategy for m in members if not m.is_available]

    if unavailable:

        logger.warning("Ensemble built with unavailable member(s): %s", unavailable)

    return ForecastResult(
        strategy = ENSEMBLE,
        values = pd.Series(mean, index = index, name = ENSEMBLE),
        failures = failures,
    )
