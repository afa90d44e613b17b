"""Rolling AR-GARCH refits and the Monte Carlo path engine."""

from __future__ import annotations

import numpy as np
import pytest

import config
from forecasts.machine_learning import rolling_garch_mc
from forecasts.machine_learning.rolling_garch_mc import (
    OneStep,
    RollingGarchMonteCarlo,
    RollingState,
    StructuralFit,
    one_step_garch,
    rolling_one_step,
    rolling_step,
    simulate_paths,
    summarise_paths,
    winsorize,
)
from forecasts.results import FailureReason, StepOutcome
from functions.performance import evaluate_forecast

from conftest import DRIFT, NOISE

REGS = ["ma_7_diff", "ma_30_diff", "rsi_diff", "log_volume_diff"]


def _structural(k: int = 1, c: float = 0.1, phi = 0.0, beta: float = 0.0) -> StructuralFit:
    return StructuralFit(
        intercept = c,
        ar_coefs = np.atleast_1d(np.asarray(phi, dtype = float)),
        betas = np.full(k, beta),
        regressor_names = tuple(f"x{j}" for j in range(k)),
    )


def _ok(mean: float = 0.0, vol: float = 1.0) -> OneStep:
    return OneStep(mean = StepOutcome.success(mean), vol = StepOutcome.success(vol))


def _run(strategy, split):
    return strategy.run(
        split.train["close"],
        split.test.index,
        regressors = split.train[REGS],
        realized = split.test[["close_diff"] + REGS],
    )


# ---------------------------------------------------------------------------
# Helpers and state step
# ---------------------------------------------------------------------------

def test_winsorize_clips_to_own_quantiles():
    x = np.arange(101, dtype = float)

    out = winsorize(x, 0.05, 0.95)

    assert out.min() == pytest.approx(5.0)

    assert out.max() == pytest.approx(95.0)


def test_one_step_garch_short_history_fails_without_raising():
    out = one_step_garch(np.ones(5))

    assert not out.ok

    assert out.vol.failure is FailureReason.INSUFFICIENT_DATA


def test_one_step_garch_forecasts_positive_volatility():
    rng = np.random.default_rng(11)

    out = one_step_garch(rng.normal(0.0, 0.5, 400))

    assert out.ok

    assert 0.1 < out.vol.value < 2.0


def test_rolling_step_extends_window_with_observation():
    state = RollingState(history = np.zeros(3))

    new_state, _ = rolling_step(state, 7.0)

    assert len(state.history) == 3

    assert new_state.history.tolist() == [0.0, 0.0, 0.0, 7.0]


def test_rolling_refits_use_expanding_window(monkeypatch):
    seen = []

    def fake(history, clip = None, **orders):
        seen.append(len(history))
        return _ok()

    monkeypatch.setattr(rolling_garch_mc, "one_step_garch", fake)

    rolling_one_step(np.zeros(50), np.ones(4))

    assert seen == [50, 51, 52, 53]


def test_failed_refit_only_affects_its_step(monkeypatch):
    def fake(history, clip = None, **orders):
        if len(history) == 52:
            out = StepOutcome.failed(FailureReason.NON_CONVERGENCE, "flag 1")
            return OneStep(mean = out, vol = out)
        return _ok(vol = 0.5)

    monkeypatch.setattr(rolling_garch_mc, "one_step_garch", fake)

    outs = rolling_one_step(np.zeros(50), np.ones(5))

    assert [o.ok for o in outs] == [True, True, False, True, True]

    assert outs[2].vol.failure is FailureReason.NON_CONVERGENCE


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

def test_simulation_is_reproducible_with_same_seed():
    fit = _structural(phi = 0.2, beta = 0.5)

    kwargs = dict(sigmas = np.full(10, 0.8), regressor_means = np.full((10, 1), 0.1), last_returns = 0.3, last_level = 50.0, n_paths = 200)

    a = simulate_paths(fit, rng = np.random.default_rng(5), **kwargs)

    b = simulate_paths(fit, rng = np.random.default_rng(5), **kwargs)

    assert a.shape == (200, 10)

    assert np.array_equal(a, b)


def test_zero_volatility_paths_follow_the_mean_recursion():
    fit = _structural(c = 0.1, phi = 0.5, beta = 2.0)

    paths = simulate_paths(fit, np.zeros(3), np.full((3, 1), 0.05), 1.0, 10.0, 4, np.random.default_rng(0))

    # r1 = 0.1 + 0.5 + 0.1 = 0.7, r2 = 0.1 + 0.35 + 0.1 = 0.55, r3 = 0.475
    expected = 10.0 + np.cumsum([0.7, 0.55, 0.475])

    assert np.allclose(paths, expected)


def test_two_lag_recursion_is_seeded_from_last_training_changes():
    fit = _structural(c = 0.1, phi = [0.5, 0.2])

    paths = simulate_paths(fit, np.zeros(3), np.zeros((3, 1)), [5.0, 2.0, 1.0], 10.0, 2, np.random.default_rng(0))

    # r1 = 0.1 + 0.5 * 1 + 0.2 * 2 = 1.0, r2 = 0.1 + 0.5 + 0.2 = 0.8, r3 = 0.1 + 0.4 + 0.2 = 0.7
    expected = 10.0 + np.cumsum([1.0, 0.8, 0.7])

    assert np.allclose(paths, expected)


def test_too_few_seed_changes_raise():
    fit = _structural(phi = [0.5, 0.2])

    with pytest.raises(ValueError):
        simulate_paths(fit, np.ones(2), np.zeros((2, 1)), 0.0, 10.0, 2, np.random.default_rng(0))


def test_path_mean_converges_with_path_count():
    fit = _structural(c = 0.0)

    kw = dict(sigmas = np.ones(20), regressor_means = np.zeros((20, 1)), last_returns = 0.0, last_level = 100.0)

    m_small = simulate_paths(fit, n_paths = 500, rng = np.random.default_rng(1), **kw).mean(axis = 0)

    m_large = simulate_paths(fit, n_paths = 5000, rng = np.random.default_rng(2), **kw).mean(axis = 0)

    assert np.max(np.abs(m_small - m_large)) < 1.0


def test_summarise_paths_band_brackets_mean():
    paths = np.random.default_rng(3).normal(0.0, 1.0, (1000, 5)).cumsum(axis = 1)

    mean, lower, upper = summarise_paths(paths, (2.5, 97.5))

    assert (lower <= mean).all() and (mean <= upper).all()


def test_undefined_volatility_leaves_day_and_later_days_undefined():
    fit = _structural()

    sigmas = np.array([1.0, np.nan, 1.0])

    paths = simulate_paths(fit, sigmas, np.zeros((3, 1)), 0.0, 10.0, 50, np.random.default_rng(0))

    mean, _, _ = summarise_paths(paths)

    assert np.isfinite(mean[0])

    assert np.isnan(mean[1:]).all()


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------

def test_strategy_defaults_follow_config_module():
    strategy = RollingGarchMonteCarlo()

    assert strategy.n_paths == config.N_PATHS

    assert tuple(strategy.clip_quantiles) == tuple(config.CLIP_QUANTILES)

    assert tuple(strategy.interval_quantiles) == tuple(config.INTERVAL_QUANTILES)

    assert strategy.seed == config.RNG_SEED

    assert strategy.garch_order == tuple(config.GARCH_ORDER)

    assert strategy.ar_lags == config.ARMA_ORDER[0]


@pytest.mark.parametrize("orders", [{"ar_lags": 0}, {"garch_order": (0, 1)}, {"garch_order": (1, -1)}])
def test_invalid_orders_raise(orders):
    with pytest.raises(ValueError):
        RollingGarchMonteCarlo(**orders)


def _recording_arch_model(monkeypatch):
    calls = []

    def fake_arch_model(y, **kwargs):
        calls.append(kwargs)
        raise RuntimeError("not fitted")

    monkeypatch.setattr(rolling_garch_mc, "arch_model", fake_arch_model)

    return calls


def test_one_step_refit_uses_requested_orders(monkeypatch):
    calls = _recording_arch_model(monkeypatch)

    out = one_step_garch(np.zeros(60), ar_lags = 3, garch_order = (2, 1))

    assert out.vol.failure is FailureReason.FIT_ERROR

    assert (calls[0]["lags"], calls[0]["p"], calls[0]["q"]) == (3, 2, 1)


def test_rolling_refits_pass_orders_to_every_step(monkeypatch):
    seen = []

    def fake(history, clip = None, **orders):
        seen.append(orders)
        return _ok()

    monkeypatch.setattr(rolling_garch_mc, "one_step_garch", fake)

    rolling_one_step(np.zeros(50), np.ones(3), ar_lags = 2, garch_order = (1, 2))

    assert seen == [{"ar_lags": 2, "garch_order": (1, 2)}] * 3


def test_structural_fit_uses_strategy_orders(monkeypatch, short_daily_split):
    calls = _recording_arch_model(monkeypatch)

    res = _run(RollingGarchMonteCarlo(n_paths = 10, ar_lags = 2, garch_order = (2, 1)), short_daily_split)

    assert not res.is_available

    assert calls[0]["mean"] == "ARX"

    assert (calls[0]["lags"], calls[0]["p"], calls[0]["q"]) == (2, 2, 1)


def test_forecast_needs_realized_observations(short_daily_split):
    strategy = RollingGarchMonteCarlo(n_paths = 100)

    model_fit = strategy.fit(short_daily_split.train["close"], short_daily_split.train[REGS])

    with pytest.raises(ValueError):
        strategy.forecast(model_fit, short_daily_split.horizon, index = short_daily_split.test.index)


@pytest.mark.slow
def test_strategy_forecast_band_and_accuracy(short_daily_split):
    res = _run(RollingGarchMonteCarlo(n_paths = 500, seed = 9), short_daily_split)

    assert res.strategy == "garch_mc"

    assert res.is_available

    assert res.index.equals(short_daily_split.test.index)

    ok = res.values.notna()

    assert ok.any()

    assert (res.lower[ok] <= res.values[ok]).all() and (res.values[ok] <= res.upper[ok]).all()

    rec = evaluate_forecast("SYN", res, short_daily_split.test["close"])

    assert rec.mape < 5.0


@pytest.mark.slow
def test_strategy_is_reproducible_for_fixed_seed(short_daily_split):
    a = _run(RollingGarchMonteCarlo(n_paths = 300, seed = 4), short_daily_split)

    b = _run(RollingGarchMonteCarlo(n_paths = 300, seed = 4), short_daily_split)

    np.testing.assert_array_equal(a.values.to_numpy(), b.values.to_numpy())


@pytest.mark.slow
def test_strategy_isolates_failed_refit(monkeypatch, short_daily_split):
    n_train = len(short_daily_split.train) - 1

    real = rolling_garch_mc.one_step_garch

    def flaky(history, clip = None, **orders):
        if len(history) == n_train + 3:
            out = StepOutcome.failed(FailureReason.FIT_ERROR, "boom")
            return OneStep(mean = out, vol = out)
        return real(history, clip, **orders)

    monkeypatch.setattr(rolling_garch_mc, "one_step_garch", flaky)

    res = _run(RollingGarchMonteCarlo(n_paths = 200), short_daily_split)

    assert res.is_available

    assert np.isfinite(res.values.iloc[:3]).all()

    # price levels cumulate daily changes, so the gap carries forward
    assert res.values.iloc[3:].isna().all()

    first = res.failures[0]

    assert first.step == 3 and first.reason is FailureReason.FIT_ERROR


@pytest.mark.slow
def test_path_mean_tracks_linear_trend_over_long_horizon(daily_split, daily_features):
    res = _run(RollingGarchMonteCarlo(n_paths = 2000, seed = 3), daily_split)

    h = daily_split.horizon

    pos = daily_features.index.get_indexer(daily_split.test.index)

    trend = 100.0 + DRIFT * pos

    ok = res.values.notna().to_numpy()

    # a non-converged refit leaves its day and later days undefined
    assert ok.sum() >= h // 2

    gap = np.abs(res.values.to_numpy()[ok] - trend[ok])

    assert gap.max() < 4 * NOISE * np.sqrt(h)
