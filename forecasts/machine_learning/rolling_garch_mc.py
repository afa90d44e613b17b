"""
Rolling-refit AR-GARCH Monte Carlo price forecaster (daily).

Overview
--------
The engine forecasts daily close levels over the test window from daily price
changes r_t = P_t - P_{t-1} in three stages.

1) Expanding-window one-step refits:

   For each test day i = 1..n an AR(1) mean / GARCH(1,1) variance model
   (the default orders; both come from the run configuration)

        r_t = mu + phi * r_{t-1} + e_t,   e_t = sigma_t * z_t,   z_t ~ N(0, 1)

        sigma_t^2 = omega + alpha * e_{t-1}^2 + beta * sigma_{t-1}^2

   is refitted on all training data plus the first i - 1 realised test
   observations, and forecast one step ahead. The target's fit gives the
   conditional volatility sigma_i. The same refit on each regressor, after
   clipping it to fixed lower / upper quantiles of the window, gives the
   one-step conditional means m_{i,k}. A refit that fails leaves only its own
   step undefined; the loop carries on.

   The loop is a pure state step

        (RollingState(history), observation) -> (RollingState(history + [observation]), outcome)

   applied n times, strictly in time order.

2) Structural fit:

   One AR-X / GARCH model of the same orders on the full training window, with
   the clipped regressors in the mean equation, supplies the intercept c, the AR
   coefficients phi_1..phi_p and one coefficient b_k per regressor.

3) Monte Carlo simulation:

   For N paths with independent N(0, 1) shocks z_{j,t}:

        r_{j,1} = c + phi * r_T + sum_k b_k m_{1,k} + sigma_1 z_{j,1}

        r_{j,t} = c + phi * r_{j,t-1} + sum_k b_k m_{t,k} + sigma_t z_{j,t},   t = 2..n

   shown for one lag; with p lags the AR term sums phi_l over the p most recent
   changes, seeded from the last p training changes.

   Paths are independent, each path sequential in t. Price paths are the last
   training close plus the cumulative sum of simulated changes. The daily point
   forecast is the cross-path mean and the band is given by the 2.5 / 97.5
   percentiles.

All fits use the arch package's internal rescaling; estimates are mapped back
to the data scale before use.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from arch import arch_model

import config
from forecasts.results import (
    FailureReason,
    FitFailure,
    ForecastResult,
    ModelFit,
    StepFailure,
    StepOutcome,
    propagate_failures,
)
from forecasts.strategy import ForecastStrategy, resolve_index
from functions.log_utils import configure_logger

logger = configure_logger(__name__)

AR_LAGS: int = config.ARMA_ORDER[0]

GARCH_ORDER: Tuple[int, int] = tuple(config.GARCH_ORDER)

CLIP_QUANTILES: Tuple[float, float] = tuple(config.CLIP_QUANTILES)

MIN_OBS: int = 30

MAX_ITER: int = 500

N_PATHS: int = config.N_PATHS

INTERVAL_QUANTILES: Tuple[float, float] = tuple(config.INTERVAL_QUANTILES)

SEED: int = config.RNG_SEED

RETURN_COLUMN = "close_diff"


def winsorize(
    values: np.ndarray,
    lower_q: float,
    upper_q: float
) -> np.ndarray:
    """
    Clip values to their own lower / upper empirical quantiles.
    """

    arr = np.asarray(values, dtype = float)

    lo, hi = np.nanquantile(arr, [lower_q, upper_q])

    return np.clip(arr, lo, hi)


def _winsorize_columns(
    x: np.ndarray,
    clip: Optional[Tuple[float, float]]
) -> np.ndarray:

    if clip is None:

        return x

    return np.column_stack([winsorize(x[:, j], *clip) for j in range(x.shape[1])])


def _fit_ar_garch(
    y: np.ndarray,
    x: Optional[np.ndarray] = None,
    ar_lags: int = AR_LAGS,
    garch_order: Tuple[int, int] = GARCH_ORDER
):
    """
    Fit an AR(``ar_lags``) mean (AR-X when ``x`` is given) with a GARCH
    variance of order ``garch_order = (p, q)``.

    Raises
    ------
    FitFailure
        ``fit_error`` if estimation raises, ``non_convergence`` if the
        optimiser does not converge.
    """

    try:

        am = arch_model(
            y,
            x = x,
            mean = "AR" if x is None else "ARX",
            lags = ar_lags,
            vol = "GARCH",
            p = garch_order[0],
            q = garch_order[1],
            dist = "normal",
            rescale = True,
        )

        with warnings.catch_warnings():

            warnings.simplefilter("ignore")

            res = am.fit(disp = "off", show_warning = False, options = {"maxiter": MAX_ITER})

    except Exception as exc:

        raise FitFailure(FailureReason.FIT_ERROR, str(exc)) from exc

    if res.convergence_flag != 0:

        raise FitFailure(FailureReason.NON_CONVERGENCE, f"optimiser flag {res.convergence_flag}")

    return res


@dataclass(frozen = True)
class OneStep:

    mean: StepOutcome

    vol: StepOutcome


    @property
    def ok(self) -> bool:

        return self.mean.ok and self.vol.ok


def _failed_step(
    reason: FailureReason,
    detail: str
) -> OneStep:

    out = StepOutcome.failed(reason, detail)

    return OneStep(mean = out, vol = out)


def one_step_garch(
    history: np.ndarray,
    clip: Optional[Tuple[float, float]] = None,
    ar_lags: int = AR_LAGS,
    garch_order: Tuple[int, int] = GARCH_ORDER
) -> OneStep:
    """
    Fit AR-GARCH of the given orders to ``history`` and forecast one step.

    Returns
    -------
    OneStep
        Conditional mean and volatility on the data scale, or failures.
    """

    y = np.asarray(history, dtype = float)

    if len(y) < MIN_OBS:

        return _failed_step(FailureReason.INSUFFICIENT_DATA, f"{len(y)} observations, need {MIN_OBS}")

    if not np.isfinite(y).all():

        return _failed_step(FailureReason.INSUFFICIENT_DATA, "window holds undefined values")

    if clip is not None:

        y = winsorize(y, *clip)

    try:

        res = _fit_ar_garch(y, ar_lags = ar_lags, garch_order = garch_order)

    except FitFailure as exc:

        return _failed_step(exc.reason, exc.detail)

    scale = float(res.scale)

    fc = res.forecast(horizon = 1, reindex = False)

    mean = float(fc.mean.values[-1, 0]) / scale

    var = float(fc.variance.values[-1, 0]) / scale ** 2

    if not (np.isfinite(mean) and np.isfinite(var) and var >= 0):

        return _failed_step(FailureReason.FIT_ERROR, "undefined one-step forecast")

    return OneStep(mean = StepOutcome.success(mean), vol = StepOutcome.success(np.sqrt(var)))


@dataclass(frozen = True)
class RollingState:

    history: np.ndarray


    def advance(
        self,
        observation: float
    ) -> "RollingState":

        return RollingState(history = np.append(self.history, observation))


def rolling_step(
    state: RollingState,
    observation: float,
    clip: Optional[Tuple[float, float]] = None,
    ar_lags: int = AR_LAGS,
    garch_order: Tuple[int, int] = GARCH_ORDER
) -> Tuple[RollingState, OneStep]:
    """
    Forecast the next step from the current window, then extend the window
    with the realised ``observation``.
    """

    out = one_step_garch(state.history, clip, ar_lags = ar_lags, garch_order = garch_order)

    return state.advance(observation), out


def rolling_one_step(
    train: np.ndarray,
    realized: np.ndarray,
    clip: Optional[Tuple[float, float]] = None,
    ar_lags: int = AR_LAGS,
    garch_order: Tuple[int, int] = GARCH_ORDER
) -> List[OneStep]:
    """
    Expanding-window one-step forecasts for every realised test step.

    Step i (zero-based) is fitted on ``train`` plus ``realized[:i]``.
    """

    state = RollingState(history = np.asarray(train, dtype = float))

    outs: List[OneStep] = []

    for obs in np.asarray(realized, dtype = float):

        state, out = rolling_step(state, obs, clip, ar_lags = ar_lags, garch_order = garch_order)

        outs.append(out)

    return outs


@dataclass(frozen = True)
class StructuralFit:

    intercept: float

    ar_coefs: np.ndarray

    betas: np.ndarray

    regressor_names: Tuple[str, ...]


    @property
    def ar_lags(self) -> int:

        return len(self.ar_coefs)


def fit_structural(
    returns: np.ndarray,
    regressors: np.ndarray,
    regressor_names: Sequence[str],
    clip: Optional[Tuple[float, float]] = None,
    ar_lags: int = AR_LAGS,
    garch_order: Tuple[int, int] = GARCH_ORDER
) -> StructuralFit:
    """
    AR-X mean / GARCH variance fit on the full training window.

    The arch parameter vector starts with the constant, the ``ar_lags`` AR
    coefficients and then one coefficient per regressor.

    Raises
    ------
    FitFailure
        When the data is too short or the fit fails.
    """

    y = np.asarray(returns, dtype = float)

    x = np.asarray(regressors, dtype = float)

    if x.ndim != 2 or x.shape[0] != len(y) or x.shape[1] != len(regressor_names):

        raise ValueError("regressor matrix does not match the return series")

    if len(y) < MIN_OBS:

        raise FitFailure(FailureReason.INSUFFICIENT_DATA, f"{len(y)} observations, need {MIN_OBS}")

    if not (np.isfinite(y).all() and np.isfinite(x).all()):

        raise FitFailure(FailureReason.INSUFFICIENT_DATA, "training window holds undefined values")

    res = _fit_ar_garch(y, _winsorize_columns(x, clip), ar_lags = ar_lags, garch_order = garch_order)

    scale = float(res.scale)

    params = np.asarray(res.params, dtype = float)

    k = x.shape[1]

    fit = StructuralFit(
        intercept = params[0] / scale,
        ar_coefs = params[1: 1 + ar_lags],
        betas = params[1 + ar_lags: 1 + ar_lags + k] / scale,
        regressor_names = tuple(regressor_names),
    )

    logger.info("Structural fit: c = %.5f, phi = %s, b = %s", fit.intercept, np.round(fit.ar_coefs, 4), np.round(fit.betas, 5))

    return fit


def simulate_step(
    lags: np.ndarray,
    fit: StructuralFit,
    exog_term: float,
    sigma: float,
    shocks: np.ndarray
) -> np.ndarray:
    """
    One simulated day across all paths.

    ``lags`` has shape (n_paths, p) with the most recent change in column 0.
    """

    return fit.intercept + lags @ fit.ar_coefs + exog_term + sigma * shocks


def simulate_paths(
    fit: StructuralFit,
    sigmas: np.ndarray,
    regressor_means: np.ndarray,
    last_returns,
    last_level: float,
    n_paths: int,
    rng: np.random.Generator
) -> np.ndarray:
    """
    Simulate ``n_paths`` price paths over ``len(sigmas)`` days.

    Parameters
    ----------
    sigmas : np.ndarray, shape (n,)
        One-step conditional volatilities.
    regressor_means : np.ndarray, shape (n, k)
        One-step conditional regressor means.
    last_returns : float or array-like
        Training price changes in time order; the last ``fit.ar_lags`` of them
        seed the AR recursion.
    last_level : float
        Last training close.
    rng : np.random.Generator
        Source of the (n_paths, n) standard-normal shocks.

    Returns
    -------
    np.ndarray, shape (n_paths, n)
    """

    sigmas = np.asarray(sigmas, dtype = float)

    n_steps = len(sigmas)

    means = np.asarray(regressor_means, dtype = float).reshape(n_steps, len(fit.betas))

    shocks = rng.standard_normal((n_paths, n_steps))

    exog_term = means @ fit.betas

    returns = np.empty((n_paths, n_steps))

    seed_lags = np.atleast_1d(np.asarray(last_returns, dtype = float))[-fit.ar_lags:][::-1]

    if len(seed_lags) != fit.ar_lags:

        raise ValueError(f"need {fit.ar_lags} training changes to seed the AR recursion")

    lags = np.tile(seed_lags, (n_paths, 1))

    for t in range(n_steps):

        step = simulate_step(lags, fit, exog_term[t], sigmas[t], shocks[:, t])

        lags = np.column_stack([step, lags[:, :-1]])

        returns[:, t] = step

    return last_level + np.cumsum(returns, axis = 1)


def summarise_paths(
    paths: np.ndarray,
    percentiles: Tuple[float, float] = INTERVAL_QUANTILES
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Cross-path mean and lower / upper percentiles per day.
    """

    mean = paths.mean(axis = 0)

    with warnings.catch_warnings():

        warnings.simplefilter("ignore", RuntimeWarning)

        lower, upper = np.percentile(paths, list(percentiles), axis = 0)

    return mean, lower, upper


class RollingGarchMonteCarlo(ForecastStrategy):
    """
    Daily rolling-refit volatility Monte Carlo forecaster.

    ``forecast`` needs ``realized``: the realised test observations holding the
    price change column and every regressor column.
    """

    name = "garch_mc"


    def __init__(
        self,
        n_paths: int = N_PATHS,
        clip_quantiles: Optional[Tuple[float, float]] = CLIP_QUANTILES,
        interval_quantiles: Tuple[float, float] = INTERVAL_QUANTILES,
        seed: int = SEED,
        return_column: str = RETURN_COLUMN,
        ar_lags: int = AR_LAGS,
        garch_order: Tuple[int, int] = GARCH_ORDER
    ):

        if ar_lags < 1:

            raise ValueError("the mean equation needs at least one AR lag")

        if garch_order[0] < 1 or garch_order[1] < 0:

            raise ValueError(f"invalid GARCH order {garch_order}")

        self.n_paths = n_paths

        self.clip_quantiles = clip_quantiles

        self.interval_quantiles = interval_quantiles

        self.seed = seed

        self.return_column = return_column

        self.ar_lags = int(ar_lags)

        self.garch_order = (int(garch_order[0]), int(garch_order[1]))


    def fit(
        self,
        target: pd.Series,
        regressors: Optional[pd.DataFrame] = None
    ) -> ModelFit:

        if regressors is None or regressors.empty:

            raise ValueError("the volatility engine needs regressors")

        returns = target.diff().iloc[1:]

        regs = regressors.loc[returns.index]

        structural = fit_structural(
            returns.to_numpy(dtype = float),
            regs.to_numpy(dtype = float),
            list(regs.columns),
            clip = self.clip_quantiles,
            ar_lags = self.ar_lags,
            garch_order = self.garch_order,
        )

        return ModelFit(
            strategy = self.name,
            state = structural,
            meta = {
                "last_level": float(target.iloc[-1]),
                "last_returns": returns.iloc[-self.ar_lags:].to_numpy(dtype = float),
                "train_returns": returns.to_numpy(dtype = float),
                "train_regressors": regs.copy(),
            },
        )


    def forecast(
        self,
        model_fit: ModelFit,
        horizon: int,
        future_regressors: Optional[pd.DataFrame] = None,
        index: Optional[pd.Index] = None,
        realized: Optional[pd.DataFrame] = None,
    ) -> ForecastResult:

        if realized is None:

            raise ValueError("the rolling refit needs the realised test observations")

        index = resolve_index(horizon, index if index is not None else realized.index[:horizon], None)

        structural: StructuralFit = model_fit.state

        meta = model_fit.meta

        realized = realized.iloc[:horizon]

        orders = dict(ar_lags = self.ar_lags, garch_order = self.garch_order)

        target_steps = rolling_one_step(
            meta["train_returns"],
            realized[self.return_column].to_numpy(dtype = float),
            **orders,
        )

        sigmas = np.array([s.vol.value for s in target_steps])

        step_reason: List[Optional[StepOutcome]] = [None if s.vol.ok else s.vol for s in target_steps]

        means = np.empty((horizon, len(structural.regressor_names)))

        for k, name in enumerate(structural.regressor_names):

            reg_steps = rolling_one_step(
                meta["train_regressors"][name].to_numpy(dtype = float),
                realized[name].to_numpy(dtype = float),
                clip = self.clip_quantiles,
                **orders,
            )

            means[:, k] = [s.mean.value for s in reg_steps]

            for i, s in enumerate(reg_steps):

                if not s.mean.ok and step_reason[i] is None:

                    step_reason[i] = StepOutcome.failed(s.mean.failure, f"{name}: {s.mean.detail}")

        failures = tuple(
            StepFailure(i, o.failure, o.detail)
            for i, o in enumerate(step_reason)
            if o is not None
        )

        if failures:

            logger.warning("%d of %d rolling refit steps failed", len(failures), horizon)

        rng = np.random.default_rng(self.seed)

        paths = simulate_paths(
            structural,
            sigmas,
            means,
            meta["last_returns"],
            meta["last_level"],
            self.n_paths,
            rng,
        )

        mean, lower, upper = summarise_paths(paths, self.interval_quantiles)

        return ForecastResult.from_array(
            self.name,
            mean,
            index,
            failures = propagate_failures(mean, failures),
            lower = lower,
            upper = upper,
        )
