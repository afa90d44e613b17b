"""
Result containers and error types shared by the forecasting strategies.

Every fit step produces a ``StepOutcome`` carrying either a value or a typed
failure reason. Strategies assemble those into a ``ForecastResult`` whose
undefined steps are NaN and listed in ``failures``; a strategy that cannot fit
at all returns a result with ``unavailable`` set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd


class FailureReason(str, Enum):

    NON_CONVERGENCE = "non_convergence"

    FIT_ERROR = "fit_error"

    INSUFFICIENT_DATA = "insufficient_data"

    MISSING_INPUT = "missing_input"


class InsufficientDataError(ValueError):
    """A required train or test window is empty; the symbol is skipped."""


class AlignmentError(ValueError):
    """Forecast series reaching the combiner do not share one index."""


class FitFailure(RuntimeError):
    """A model fit failed; the step or strategy is marked unavailable."""

    def __init__(
        self,
        reason: FailureReason,
        detail: str = ""
    ):

        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)

        self.reason = reason

        self.detail = detail


@dataclass(frozen = True)
class StepOutcome:

    value: float = float("nan")

    failure: Optional[FailureReason] = None

    detail: str = ""


    @property
    def ok(self) -> bool:

        return self.failure is None


    @classmethod
    def success(
        cls,
        value: float
    ) -> "StepOutcome":

        return cls(value = float(value))


    @classmethod
    def failed(
        cls,
        reason: FailureReason,
        detail: str = ""
    ) -> "StepOutcome":

        return cls(failure = reason, detail = detail)


@dataclass(frozen = True)
class StepFailure:

    step: int

    reason: FailureReason

    detail: str = ""


@dataclass
class ModelFit:
    """
    Fitted state of one strategy. ``state`` is private to the strategy that
    produced it.
    """

    strategy: str

    state: Any

    meta: Dict[str, Any] = field(default_factory = dict)


@dataclass(frozen = True)
class ForecastResult:
    """
    Point forecasts aligned one-to-one with a test window.

    Attributes
    ----------
    strategy : str
    values : pd.Series
        Point forecasts indexed by the test timestamps; NaN marks an undefined step.
    lower, upper : pd.Series, optional
        Uncertainty band, when the strategy produces one.
    failures : tuple of StepFailure
        Zero-based steps that are undefined and why.
    unavailable : FailureReason, optional
        Set when the whole strategy failed for the symbol.
    """

    strategy: str

    values: pd.Series

    lower: Optional[pd.Series] = None

    upper: Optional[pd.Series] = None

    failures: Tuple[StepFailure, ...] = ()

    unavailable: Optional[FailureReason] = None

    detail: str = ""


    def __post_init__(self):

        for band in (self.lower, self.upper):

            if band is not None and not band.index.equals(self.values.index):

                raise AlignmentError(f"{self.strategy}: interval index differs from point forecast index")


    @property
    def index(self) -> pd.DatetimeIndex:

        return self.values.index


    @property
    def is_available(self) -> bool:

        return self.unavailable is None


    @property
    def n_undefined(self) -> int:

        return int(self.values.isna().sum())


    def __len__(self) -> int:

        return len(self.values)


    @classmethod
    def from_array(
        cls,
        strategy: str,
        values: np.ndarray,
        index: pd.Index,
        failures: Tuple[StepFailure, ...] = (),
        lower: Optional[np.ndarray] = None,
        upper: Optional[np.ndarray] = None,
    ) -> "ForecastResult":

        values = np.asarray(values, dtype = float)

        if values.shape != (len(index),):

            raise AlignmentError(f"{strategy}: {values.shape[0]} forecasts for {len(index)} test steps")

        def _series(arr):

            return None if arr is None else pd.Series(np.asarray(arr, dtype = float), index = index, name = strategy)

        return cls(
            strategy = strategy,
            values = pd.Series(values, index = index, name = strategy),
            lower = _series(lower),
            upper = _series(upper),
            failures = tuple(failures),
        )


    @classmethod
    def unavailable_for(
        cls,
        strategy: str,
        index: pd.Index,
        reason: FailureReason,
        detail: str = ""
    ) -> "ForecastResult":

        return cls(
            strategy = strategy,
            values = pd.Series(np.nan, index = index, name = strategy, dtype = float),
            failures = tuple(StepFailure(i, reason, detail) for i in range(len(index))),
            unavailable = reason,
            detail = detail,
        )


def failures_from_outcomes(
    outcomes
) -> Tuple[StepFailure, ...]:

    return tuple(
        StepFailure(i, o.failure, o.detail)
        for i, o in enumerate(outcomes)
        if not o.ok
    )


def propagate_failures(
    values: np.ndarray,
    failures: Tuple[StepFailure, ...]
) -> Tuple[StepFailure, ...]:
    """
    Extend ``failures`` with every undefined step not already listed, e.g.
    levels left undefined by an earlier undefined difference.
    """

    listed = {f.step for f in failures}

    extra = tuple(
        StepFailure(int(i), FailureReason.MISSING_INPUT, "depends on an undefined earlier step")
        for i in np.flatnonzero(~np.isfinite(np.asarray(values, dtype = float)))
        if int(i) not in listed
    )

    return tuple(sorted(tuple(failures) + extra, key = lambda f: f.step))
