"""
Common interface of the four forecasting strategies.

Orchestration code treats every strategy the same way: ``fit`` on a training
target (plus optional regressors) and ``forecast`` over a horizon with future
regressor values. ``run`` wraps both and turns a ``FitFailure`` into an
unavailable ``ForecastResult`` so one strategy never blocks another.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import pandas as pd

from forecasts.results import FitFailure, ForecastResult, ModelFit
from functions.log_utils import configure_logger

logger = configure_logger(__name__)


class ForecastStrategy(ABC):

    name: str = "strategy"


    @abstractmethod
    def fit(
        self,
        target: pd.Series,
        regressors: Optional[pd.DataFrame] = None
    ) -> ModelFit:
        ...


    @abstractmethod
    def forecast(
        self,
        model_fit: ModelFit,
        horizon: int,
        future_regressors: Optional[pd.DataFrame] = None,
        index: Optional[pd.Index] = None,
        realized: Optional[pd.DataFrame] = None,
    ) -> ForecastResult:
        """
        Parameters
        ----------
        model_fit : ModelFit
            Output of this strategy's ``fit``.
        horizon : int
            Number of test steps.
        future_regressors : pd.DataFrame, optional
            Regressor values over the horizon (forecast or realized, per strategy).
        index : pd.Index, optional
            Test timestamps; defaults to ``future_regressors.index``.
        realized : pd.DataFrame, optional
            Realized test observations, used only by expanding-window strategies.
        """


    def run(
        self,
        target: pd.Series,
        index: pd.Index,
        regressors: Optional[pd.DataFrame] = None,
        future_regressors: Optional[pd.DataFrame] = None,
        realized: Optional[pd.DataFrame] = None,
    ) -> ForecastResult:

        try:

            model_fit = self.fit(target, regressors)

            return self.forecast(
                model_fit,
                horizon = len(index),
                future_regressors = future_regressors,
                index = index,
                realized = realized,
            )

        except FitFailure as exc:

            logger.warning("%s unavailable: %s", self.name, exc)

            return ForecastResult.unavailable_for(self.name, index, exc.reason, exc.detail)


def resolve_index(
    horizon: int,
    index: Optional[pd.Index],
    future_regressors: Optional[pd.DataFrame]
) -> pd.Index:

    if index is None:

        if future_regressors is None:

            index = pd.RangeIndex(horizon)

        else:

            index = future_regressors.index

    if len(index) != horizon:

        raise ValueError(f"horizon {horizon} does not match index of length {len(index)}")

    return index
