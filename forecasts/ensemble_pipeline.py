"""
Per-symbol multi-model forecasting and ensemble evaluation.

Workflow per symbol
-------------------
1) Split the daily feature frame at the cutoff, and build the weekly split.

2) Weekly strategies, each with regressor forecasts from its own technique:

       arimax    <- arima regressor forecasts
       neural_ar <- nnar regressor forecasts
       tree      <- tree regressor forecasts

3) Daily rolling GARCH Monte Carlo on the daily split, then reduced to weekly
   last values on the weekly test index.

4) Equal-weight ensemble of the four weekly forecasts.

5) MAPE / MSE of every strategy and the ensemble against the weekly closes.

The four strategies share nothing but the read-only feature frame; a fit
failure in one marks only that strategy unavailable. A symbol with an empty
train or test window is skipped without stopping the batch. Symbols run in
parallel with joblib, each with the same frozen ``RunConfig``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

import pandas as pd
from joblib import Parallel, delayed

import config
from data_processing.feature_data import (
    TARGET,
    TARGET_DIFF,
    build_daily_features,
    build_weekly_split,
    split_daily,
)
from fetch_data.price_data import download_universe
from forecasts.arimax import ArimaxStrategy
from forecasts.combination_forecast import ENSEMBLE, STRATEGY_ORDER, combine_forecasts, reconcile_weekly
from forecasts.exog_forecast import forecast_regressors
from forecasts.machine_learning.neural_ar import NeuralARStrategy
from forecasts.machine_learning.recursive_tree import RecursiveTreeStrategy
from forecasts.machine_learning.rolling_garch_mc import RollingGarchMonteCarlo
from forecasts.results import ForecastResult, InsufficientDataError
from functions.export_forecast import export_results
from functions.log_utils import LogTimer, configure_logger
from functions.performance import PerformanceRecord, evaluate_forecast, records_to_frame
from functions.run_config import RunConfig, load_run_config

logger = configure_logger(__name__)

TECHNIQUE_FOR = {
    "arimax": "arima",
    "neural_ar": "nnar",
    "tree": "tree",
}


@dataclass
class SymbolForecast:
    """
    Everything produced for one symbol.

    ``weekly`` holds the five weekly ForecastResults (four strategies plus the
    ensemble) on the weekly test index; ``daily_mc`` is the daily Monte Carlo
    forecast before weekly reduction.
    """

    symbol: str

    weekly: Dict[str, ForecastResult]

    daily_mc: ForecastResult

    actual: pd.Series

    performance: List[PerformanceRecord] = field(default_factory = list)


def _weekly_strategies(
    cfg: RunConfig,
    seed: int
):

    return {
        "arimax": ArimaxStrategy(),
        "neural_ar": NeuralARStrategy(repeats = cfg.nnar_repeats, epochs = cfg.nnar_epochs, seed = seed),
        "tree": RecursiveTreeStrategy(random_state = seed),
    }


def run_weekly_strategy(
    name: str,
    strategy,
    weekly_split,
    cfg: RunConfig,
    seed: int
) -> ForecastResult:

    regs = list(cfg.regressors)

    train = weekly_split.train

    index = weekly_split.test.index

    with LogTimer(f"{name}: regressor forecasts ({TECHNIQUE_FOR[name]})", logger):

        exog = forecast_regressors(
            train[regs],
            index,
            TECHNIQUE_FOR[name],
            seed = seed,
            tree_lags = cfg.tree_lags,
            nnar_repeats = cfg.nnar_repeats,
            nnar_epochs = cfg.nnar_epochs,
        )

    with LogTimer(f"{name}: fit and forecast", logger):

        return strategy.run(
            train[TARGET],
            index,
            regressors = train[regs],
            future_regressors = exog.values,
        )


def run_mc_strategy(
    daily_split,
    cfg: RunConfig,
    seed: int
) -> ForecastResult:

    regs = list(cfg.regressors)

    strategy = RollingGarchMonteCarlo(
        n_paths = cfg.n_paths,
        clip_quantiles = cfg.clip_quantiles,
        interval_quantiles = cfg.interval_quantiles,
        seed = seed,
        return_column = TARGET_DIFF,
        ar_lags = cfg.arma_order[0],
        garch_order = cfg.garch_order,
    )

    with LogTimer(f"garch_mc: {daily_split.horizon} rolling refits, {cfg.n_paths} paths", logger):

        return strategy.run(
            daily_split.train[TARGET],
            daily_split.test.index,
            regressors = daily_split.train[regs],
            realized = daily_split.test[[TARGET_DIFF] + regs],
        )


def run_symbol(
    symbol: str,
    daily_features: pd.DataFrame,
    cfg: RunConfig
) -> SymbolForecast:
    """
    Run all strategies, the ensemble and the evaluation for one symbol.

    Raises
    ------
    InsufficientDataError
        If the daily or weekly train / test window is empty.
    """

    required = [TARGET, TARGET_DIFF] + list(cfg.regressors)

    daily_split = split_daily(daily_features, cfg.train_start, cfg.cutoff, cfg.end, required)

    weekly_split = build_weekly_split(daily_features, cfg.train_start, cfg.cutoff, cfg.end, required)

    seed = cfg.symbol_seed(symbol)

    logger.info(
        "%s: %d/%d daily and %d/%d weekly train/test rows",
        symbol, len(daily_split.train), daily_split.horizon, len(weekly_split.train), weekly_split.horizon,
    )

    weekly: Dict[str, ForecastResult] = {}

    for name, strategy in _weekly_strategies(cfg, seed).items():

        weekly[name] = run_weekly_strategy(name, strategy, weekly_split, cfg, seed)

    daily_mc = run_mc_strategy(daily_split, cfg, seed)

    weekly["garch_mc"] = reconcile_weekly(daily_mc, weekly_split.test.index)

    weekly[ENSEMBLE] = combine_forecasts(weekly)

    actual = weekly_split.test[TARGET]

    performance = [
        evaluate_forecast(symbol, weekly[name], actual)
        for name in STRATEGY_ORDER + [ENSEMBLE]
    ]

    for rec in performance:

        logger.info("%s %-9s MAPE %.3f%%  MSE %.4f  (excluded %d)", symbol, rec.strategy, rec.mape, rec.mse, rec.n_excluded)

    return SymbolForecast(
        symbol = symbol,
        weekly = weekly,
        daily_mc = daily_mc,
        actual = actual,
        performance = performance,
    )


def _run_symbol_or_skip(
    symbol: str,
    daily_features: pd.DataFrame,
    cfg: RunConfig
) -> Optional[SymbolForecast]:

    try:

        return run_symbol(symbol, daily_features, cfg)

    except InsufficientDataError as exc:

        logger.warning("Skipping %s: %s", symbol, exc)

        return None


def run_batch(
    features_by_symbol: Mapping[str, pd.DataFrame],
    cfg: RunConfig
) -> Dict[str, SymbolForecast]:
    """
    Run every symbol independently; skipped symbols are absent from the result.
    """

    symbols = list(features_by_symbol)

    results = Parallel(n_jobs = cfg.n_jobs, prefer = "processes", batch_size = 1)(
        delayed(_run_symbol_or_skip)(sym, features_by_symbol[sym], cfg)
        for sym in symbols
    )

    out = {sym: res for sym, res in zip(symbols, results) if res is not None}

    logger.info("Forecast %d of %d symbols", len(out), len(symbols))

    return out


def forecast_table(
    results: Mapping[str, SymbolForecast]
) -> pd.DataFrame:
    """
    Long table indexed by (symbol, week) with one column per strategy, the
    ensemble, the Monte Carlo band and the actual close.
    """

    frames = []

    for sym, res in results.items():

        df = pd.DataFrame({name: res.weekly[name].values for name in STRATEGY_ORDER + [ENSEMBLE]})

        mc = res.weekly["garch_mc"]

        if mc.lower is not None:

            df["garch_mc_lower"] = mc.lower

            df["garch_mc_upper"] = mc.upper

        df["actual"] = res.actual

        df.insert(0, "symbol", sym)

        df.index.name = "week"

        frames.append(df.reset_index())

    if not frames:

        return pd.DataFrame(columns = ["symbol", "week"]).set_index(["symbol", "week"])

    return pd.concat(frames, ignore_index = True).set_index(["symbol", "week"])


def performance_table(
    results: Mapping[str, SymbolForecast]
) -> pd.DataFrame:

    records = [rec for res in results.values() for rec in res.performance]

    return records_to_frame(records).set_index(["symbol", "strategy"])


def main() -> None:

    cfg = load_run_config()

    tickers = [tk for tk in config.tickers if tk]

    with LogTimer("Download daily bars"):

        end = (cfg.end or pd.Timestamp(config.TODAY)) + pd.Timedelta(days = 1)

        bars = download_universe(tickers, config.DOWNLOAD_START, end.date())

    with LogTimer(f"Build feature tables ({len(bars)} symbols)"):

        features = {tk: build_daily_features(b) for tk, b in bars.items()}

    with LogTimer("Forecast symbols"):

        results = run_batch(features, cfg)

    if not results:

        logger.warning("No symbol had enough data; nothing to export.")

        return

    with LogTimer("Export results"):

        export_results(
            sheets = {
                "Ensemble Forecast": forecast_table(results),
                "Performance": performance_table(results),
            },
            output_excel_file = config.FORECAST_FILE,
        )


if __name__ == "__main__":

    main()
