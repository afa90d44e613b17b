"""Level recovery from forecast differences."""

import numpy as np
import pandas as pd
import pytest

from functions.level_recovery import recover_levels


def test_levels_are_cumulated_differences():
    out = recover_levels(100.0, np.array([1.0, -2.0, 0.5]))

    assert np.allclose(out, [101.0, 99.0, 99.5])


def test_series_keeps_index():
    idx = pd.date_range("2024-01-01", periods = 3, freq = "W-MON")

    out = recover_levels(10.0, pd.Series([1.0, 1.0, 1.0], index = idx, name = "d"))

    assert isinstance(out, pd.Series)

    assert out.index.equals(idx)

    assert list(out) == [11.0, 12.0, 13.0]


def test_undefined_difference_leaves_later_levels_undefined():
    out = recover_levels(100.0, np.array([1.0, np.nan, 1.0, 1.0]))

    assert out[0] == 101.0

    assert np.isnan(out[1:]).all()


def test_first_step_error_carries_forward():
    true = recover_levels(50.0, np.zeros(4))

    off = recover_levels(50.0, np.array([0.5, 0.0, 0.0, 0.0]))

    assert np.allclose(off - true, 0.5)


def test_undefined_last_level_raises():
    with pytest.raises(ValueError):
        recover_levels(float("nan"), np.ones(2))
