"""
Neural network autoregression (NNAR) with optional exogenous regressors.

Model
-----
For a (differenced) series y and regressors x_t the network learns

    y_t = g(y_{t-1}, ..., y_{t-p}, x_t) + e_t,

with g a feed-forward network holding one sigmoid hidden layer of
ceil((p + k + 1) / 2) units and a linear output. The lag order p is the order
of the best linear AR model by AIC. Inputs and target are standardised.
Several networks are trained from different seeds and their outputs averaged.

Multi-step forecasts
--------------------
Forecasts are produced one step at a time by a pure state step

    (lag_buffer, x_t) -> (lag_buffer', y_hat_t),

the prediction being pushed to the front of the lag buffer, so the network
consumes its own earlier predictions. Future regressor values come from the
matching NNAR regressor forecasts.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler
from statsmodels.tsa.ar_model import ar_select_order

import tensorflow as tf
from tensorflow.keras.layers import Dense, Input
from tensorflow.keras.models import Model
from tensorflow.keras.optimizers import Adam

from forecasts.machine_learning.recursive_tree import embed
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

NNAR_MAX_LAGS = 6

NNAR_REPEATS = 3

NNAR_EPOCHS = 200

NNAR_LR = 0.01

NNAR_BATCH = 32

MIN_TRAIN_ROWS = 10


def select_lag_order(
    y: np.ndarray,
    max_lags: int = NNAR_MAX_LAGS
) -> int:
    """
    Lag order of the AIC-best linear AR model, at least 1.
    """

    maxlag = max(1, min(max_lags, len(y) // 4))

    try:

        with warnings.catch_warnings():

            warnings.simplefilter("ignore")

            sel = ar_select_order(np.asarray(y, dtype = float), maxlag = maxlag, ic = "aic", trend = "c")

    except (ValueError, np.linalg.LinAlgError) as exc:

        logger.debug("AR order selection failed, using p = 1: %s", exc)

        return 1

    lags = sel.ar_lags

    return int(max(lags)) if lags else 1


def hidden_size(
    p: int,
    k: int
) -> int:

    return int(math.ceil((p + k + 1) / 2))


def _build_network(
    n_inputs: int,
    hidden: int,
    seed: int,
    learning_rate: float = NNAR_LR
) -> Model:

    tf.keras.utils.set_random_seed(seed)

    inp = Input((n_inputs,), dtype = "float32")

    x = Dense(
        hidden,
        activation = "sigmoid",
        kernel_initializer = tf.keras.initializers.GlorotUniform(seed = seed),
    )(inp)

    out = Dense(1, kernel_initializer = tf.keras.initializers.GlorotUniform(seed = seed + 1))(x)

    model = Model(inp, out)

    model.compile(optimizer = Adam(learning_rate = learning_rate), loss = "mse")

    return model


@dataclass
class NNARFit:

    networks: List[Model]

    p: int

    y_scaler: StandardScaler

    x_scaler: Optional[StandardScaler]

    buffer: np.ndarray

    reg_names: List[str]


def fit_nnar(
    y: np.ndarray,
    X: Optional[np.ndarray] = None,
    reg_names: Optional[List[str]] = None,
    repeats: int = NNAR_REPEATS,
    epochs: int = NNAR_EPOCHS,
    seed: int = 42
) -> NNARFit:
    """
    Train ``repeats`` networks on the lagged design of ``y`` (and ``X``).

    Raises
    ------
    FitFailure
        For undefined input or too few rows after lagging.
    """

    y = np.asarray(y, dtype = float)

    if not np.isfinite(y).all():

        raise FitFailure(FailureReason.INSUFFICIENT_DATA, "series holds undefined values")

    if X is not None:

        X = np.asarray(X, dtype = float)

        if X.shape[0] != len(y) or not np.isfinite(X).all():

            raise FitFailure(FailureReason.INSUFFICIENT_DATA, "regressors do not cover the training window")

    p = select_lag_order(y)

    if len(y) - p < MIN_TRAIN_ROWS:

        raise FitFailure(FailureReason.INSUFFICIENT_DATA, f"{len(y) - p} training rows, need {MIN_TRAIN_ROWS}")

    y_scaler = StandardScaler().fit(y.reshape(-1, 1))

    y_s = y_scaler.transform(y.reshape(-1, 1)).ravel()

    emb = embed(y_s, p + 1)

    inputs = emb[:, 1:]

    targets = emb[:, 0]

    x_scaler = None

    if X is not None:

        x_scaler = StandardScaler().fit(X)

        inputs = np.hstack([inputs, x_scaler.transform(X)[p:]])

    k = 0 if X is None else X.shape[1]

    hidden = hidden_size(p, k)

    networks: List[Model] = []

    for r in range(repeats):

        net = _build_network(inputs.shape[1], hidden, seed = seed + 101 * r)

        hist = net.fit(
            inputs.astype("float32"),
            targets.astype("float32"),
            epochs = epochs,
            batch_size = min(NNAR_BATCH, len(targets)),
            shuffle = True,
            verbose = 0,
        )

        if not np.isfinite(hist.history["loss"][-1]):

            continue

        networks.append(net)

    if not networks:

        raise FitFailure(FailureReason.NON_CONVERGENCE, "every network diverged")

    logger.debug("NNAR(%d, %d) with %d regressors, %d networks", p, hidden, k, len(networks))

    return NNARFit(
        networks = networks,
        p = p,
        y_scaler = y_scaler,
        x_scaler = x_scaler,
        buffer = y_s[::-1][:p].copy(),
        reg_names = list(reg_names or []),
    )


def nnar_step(
    fit: NNARFit,
    buffer: np.ndarray,
    x_row: Optional[np.ndarray] = None
) -> Tuple[np.ndarray, float]:
    """
    One forecast step on the standardised scale: average the networks'
    outputs for [buffer, x_row] and push the prediction into the buffer.
    """

    features = buffer if x_row is None else np.concatenate([buffer, x_row])

    if np.isfinite(features).all():

        inp = features.reshape(1, -1).astype("float32")

        pred = float(np.mean([float(net(inp, training = False).numpy()[0, 0]) for net in fit.networks]))

    else:

        pred = float("nan")

    return np.concatenate([[pred], buffer[:-1]]), pred


def forecast_nnar(
    fit: NNARFit,
    horizon: int,
    future_X: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Iterated h-step forecast on the original scale.
    """

    x_s = None

    if fit.x_scaler is not None:

        if future_X is None or len(future_X) != horizon:

            raise ValueError("future regressors must cover the horizon")

        future_X = np.asarray(future_X, dtype = float)

        x_s = (future_X - fit.x_scaler.mean_) / fit.x_scaler.scale_

    state = fit.buffer.copy()

    preds: List[float] = []

    for t in range(horizon):

        state, pred = nnar_step(fit, state, None if x_s is None else x_s[t])

        preds.append(pred)

    preds_arr = np.asarray(preds, dtype = float)

    return preds_arr * fit.y_scaler.scale_[0] + fit.y_scaler.mean_[0]


def nnar_forecast(
    series: pd.Series,
    index: pd.Index,
    name: Optional[str] = None,
    repeats: int = NNAR_REPEATS,
    epochs: int = NNAR_EPOCHS,
    seed: int = 42
) -> ForecastResult:
    """
    Forecast one regressor from its own lags over ``index``.
    """

    name = name or str(series.name)

    try:

        fit = fit_nnar(series.dropna().to_numpy(), repeats = repeats, epochs = epochs, seed = seed)

    except FitFailure as exc:

        logger.warning("NNAR forecast of %s unavailable: %s", name, exc)

        return ForecastResult.unavailable_for(name, index, exc.reason, exc.detail)

    preds = forecast_nnar(fit, len(index))

    return ForecastResult.from_array(name, preds, index, failures = propagate_failures(preds, ()))


class NeuralARStrategy(ForecastStrategy):
    """
    NNAR on first differences of the target with regressors, level recovery.
    """

    name = "neural_ar"


    def __init__(
        self,
        repeats: int = NNAR_REPEATS,
        epochs: int = NNAR_EPOCHS,
        seed: int = 42
    ):

        self.repeats = repeats

        self.epochs = epochs

        self.seed = seed


    def fit(
        self,
        target: pd.Series,
        regressors: Optional[pd.DataFrame] = None
    ) -> ModelFit:

        diffs = target.diff().iloc[1:]

        X = None

        reg_names: List[str] = []

        if regressors is not None:

            reg_names = list(regressors.columns)

            X = regressors.loc[diffs.index].to_numpy(dtype = float)

        nnar = fit_nnar(
            diffs.to_numpy(dtype = float),
            X,
            reg_names = reg_names,
            repeats = self.repeats,
            epochs = self.epochs,
            seed = self.seed,
        )

        logger.info("NNAR lag order %d, %d networks", nnar.p, len(nnar.networks))

        return ModelFit(
            strategy = self.name,
            state = nnar,
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

        nnar: NNARFit = model_fit.state

        future_X = None

        failures: Tuple[StepFailure, ...] = ()

        if nnar.reg_names:

            if future_regressors is None:

                raise ValueError("model was fitted with regressors; future values are required")

            future_X = future_regressors[nnar.reg_names].to_numpy(dtype = float)

            failures = tuple(
                StepFailure(int(i), FailureReason.MISSING_INPUT, "regressor forecast undefined")
                for i in np.flatnonzero(~np.isfinite(future_X).all(axis = 1))
            )

        diffs = forecast_nnar(nnar, horizon, future_X)

        levels = recover_levels(model_fit.meta["last_level"], diffs)

        return ForecastResult.from_array(self.name, levels, index, failures = propagate_failures(levels, failures))
