"""End-to-end per-symbol runs, batch handling and the Excel export."""

from __future__ import annotations

import dataclasses

import numpy as np
import pytest
from openpyxl import load_workbook

from forecasts import ensemble_pipeline
from forecasts.combination_forecast import ENSEMBLE, STRATEGY_ORDER
from forecasts.ensemble_pipeline import (
    forecast_table,
    performance_table,
    run_batch,
    run_mc_strategy,
    run_symbol,
)
from forecasts.machine_learning import rolling_garch_mc
from forecasts.results import InsufficientDataError
from functions.export_forecast import export_results

from conftest import CUTOFF_POS


@pytest.fixture(scope = "module")
def symbol_forecast(daily_features, run_cfg):
    return run_symbol("SYN", daily_features, run_cfg)


@pytest.mark.slow
def test_all_strategies_share_the_weekly_test_index(symbol_forecast):
    index = symbol_forecast.actual.index

    assert len(index) == 10

    assert set(symbol_forecast.weekly) == set(STRATEGY_ORDER + [ENSEMBLE])

    for res in symbol_forecast.weekly.values():
        assert res.index.equals(index)

    assert len(symbol_forecast.daily_mc) == 50


@pytest.mark.slow
def test_ensemble_is_mean_of_members(symbol_forecast):
    members = np.column_stack([symbol_forecast.weekly[n].values.to_numpy() for n in STRATEGY_ORDER])

    expected = members.sum(axis = 1) / 4

    np.testing.assert_allclose(symbol_forecast.weekly[ENSEMBLE].values.to_numpy(), expected)


@pytest.mark.slow
def test_every_strategy_is_scored(symbol_forecast):
    names = [rec.strategy for rec in symbol_forecast.performance]

    assert names == STRATEGY_ORDER + [ENSEMBLE]

    by_name = {rec.strategy: rec for rec in symbol_forecast.performance}

    for name in ("arimax", "neural_ar", "tree"):
        assert by_name[name].mape < 5.0


@pytest.mark.slow
def test_tables_and_export(symbol_forecast, tmp_path):
    results = {"SYN": symbol_forecast}

    fc = forecast_table(results)

    perf = performance_table(results)

    assert fc.index.names == ["symbol", "week"]

    assert {"ensemble", "garch_mc_lower", "garch_mc_upper", "actual"} <= set(fc.columns)

    assert len(fc) == 10

    assert len(perf) == 5

    out = tmp_path / "forecast.xlsx"

    export_results({"Ensemble Forecast": fc, "Performance": perf}, output_excel_file = out)

    wb = load_workbook(out)

    assert set(wb.sheetnames) == {"Ensemble Forecast", "Performance"}

    assert "PerformanceTable" in wb["Performance"].tables

    # a second export replaces the sheets in place
    export_results({"Performance": perf}, output_excel_file = out)

    assert load_workbook(out).sheetnames.count("Performance") == 1


@pytest.mark.slow
def test_single_step_horizon(daily_features, run_cfg):
    # test window is the Monday after the Friday cutoff
    short = daily_features.iloc[: CUTOFF_POS + 2]

    res = run_symbol("ONE", short, run_cfg)

    assert len(res.actual) == 1

    assert len(res.daily_mc) == 1

    assert res.weekly[ENSEMBLE].index.equals(res.actual.index)


def test_symbol_without_test_window_is_skipped(daily_features, run_cfg, monkeypatch):
    def fake_run_symbol(symbol, frame, cfg):
        if len(frame) <= CUTOFF_POS + 1:
            raise InsufficientDataError("daily test window is empty")
        return symbol

    monkeypatch.setattr(ensemble_pipeline, "run_symbol", fake_run_symbol)

    out = run_batch(
        {"GOOD": daily_features, "BAD": daily_features.iloc[: CUTOFF_POS + 1]},
        run_cfg,
    )

    assert out == {"GOOD": "GOOD"}


def test_run_symbol_raises_for_empty_test_window(daily_features, run_cfg):
    with pytest.raises(InsufficientDataError):
        run_symbol("BAD", daily_features.iloc[: CUTOFF_POS + 1], run_cfg)


def test_mc_strategy_uses_configured_orders(short_daily_split, run_cfg, monkeypatch):
    calls = []

    def fake_arch_model(y, **kwargs):
        calls.append(kwargs)
        raise RuntimeError("not fitted")

    monkeypatch.setattr(rolling_garch_mc, "arch_model", fake_arch_model)

    cfg = dataclasses.replace(run_cfg, garch_order = (1, 2), arma_order = (2, 0))

    res = run_mc_strategy(short_daily_split, cfg, seed = 1)

    assert not res.is_available

    assert (calls[0]["lags"], calls[0]["p"], calls[0]["q"]) == (2, 1, 2)
