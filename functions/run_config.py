"""
Immutable per-run configuration snapshot.

Each symbol is processed with the same frozen ``RunConfig`` so that worker
processes never read mutable module state. Values default to the constants in
``config`` and can be overridden by keyword.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, fields
from typing import Optional, Tuple

import pandas as pd

import config


def seed_for_symbol(
    base_seed: int,
    symbol: str
) -> int:
    """
    Derive a stable per-symbol integer seed from a base seed and a symbol.

    An 8-byte BLAKE2b digest of the symbol is combined with ``base_seed``
    modulo 2^31 - 1, so runs are reproducible and symbols draw independent
    shocks.
    """

    digest = hashlib.blake2b(symbol.encode("utf-8"), digest_size = 8).digest()

    off = int.from_bytes(digest, "little") & 0x7fffffff

    return (base_seed + off) % (2 ** 31 - 1)


@dataclass(frozen = True)
class RunConfig:
    """
    Attributes
    ----------
    train_start, cutoff : pd.Timestamp
        Training window is ``[train_start, cutoff]``.
    end : pd.Timestamp or None
        Last date of the test window; ``None`` keeps every row after the cutoff.
    n_paths : int
        Monte Carlo path count.
    garch_order : (p, q)
        Conditional variance order of the volatility model.
    arma_order : (p, q)
        Mean-equation order of the volatility model. arch has no MA term, so
        the MA order must be 0.
    clip_quantiles : (lower, upper)
        Quantile clip points applied to regressors before volatility fits.
    interval_quantiles : (lower, upper)
        Percentiles of the simulated path band.
    regressors : tuple of str
        Exogenous regressor columns of the feature table.
    nnar_repeats, nnar_epochs : int
        Network ensemble size and training epochs of the NNAR models.
    tree_lags : int
        Lag count of the recursive tree regressor forecaster.
    seed : int
        Base seed; per-symbol seeds come from ``seed_for_symbol``.
    n_jobs : int
        joblib worker count across symbols.
    """

    train_start: pd.Timestamp

    cutoff: pd.Timestamp

    end: Optional[pd.Timestamp] = None

    n_paths: int = config.N_PATHS

    garch_order: Tuple[int, int] = config.GARCH_ORDER

    arma_order: Tuple[int, int] = config.ARMA_ORDER

    clip_quantiles: Tuple[float, float] = config.CLIP_QUANTILES

    interval_quantiles: Tuple[float, float] = config.INTERVAL_QUANTILES

    regressors: Tuple[str, ...] = field(default_factory = lambda: tuple(config.REGRESSORS))

    nnar_repeats: int = 3

    nnar_epochs: int = 200

    tree_lags: int = 4

    seed: int = config.RNG_SEED

    n_jobs: int = config.N_JOBS


    def __post_init__(self):

        object.__setattr__(self, "train_start", pd.Timestamp(self.train_start))

        object.__setattr__(self, "cutoff", pd.Timestamp(self.cutoff))

        if self.end is not None:

            object.__setattr__(self, "end", pd.Timestamp(self.end))

        object.__setattr__(self, "regressors", tuple(self.regressors))

        if self.cutoff <= self.train_start:

            raise ValueError(f"cutoff {self.cutoff.date()} must be after train_start {self.train_start.date()}")

        if self.end is not None and self.end <= self.cutoff:

            raise ValueError(f"end {self.end.date()} must be after cutoff {self.cutoff.date()}")

        if self.n_paths < 1:

            raise ValueError("n_paths must be positive")

        lo, hi = self.clip_quantiles

        if not 0.0 <= lo < hi <= 1.0:

            raise ValueError(f"invalid clip quantiles {self.clip_quantiles}")

        lo, hi = self.interval_quantiles

        if not 0.0 <= lo < hi <= 100.0:

            raise ValueError(f"invalid interval percentiles {self.interval_quantiles}")

        p, q = self.garch_order

        if p < 1 or q < 0:

            raise ValueError(f"invalid GARCH order {self.garch_order}")

        ar, ma = self.arma_order

        if ar < 1 or ma != 0:

            raise ValueError(f"the volatility mean equation is AR(p) with p >= 1, got ARMA{tuple(self.arma_order)}")

        if not self.regressors:

            raise ValueError("at least one regressor is required")


    def symbol_seed(
        self,
        symbol: str
    ) -> int:

        return seed_for_symbol(self.seed, symbol)


def load_run_config(**overrides) -> RunConfig:
    """
    Build a ``RunConfig`` from the ``config`` module with keyword overrides.

    Raises
    ------
    TypeError
        If an override does not name a ``RunConfig`` field.
    """

    known = {f.name for f in fields(RunConfig)}

    unknown = set(overrides) - known

    if unknown:

        raise TypeError(f"unknown run configuration keys: {sorted(unknown)}")

    params = {
        "train_start": config.TRAIN_START,
        "cutoff": config.CUTOFF,
        "end": config.END,
    }

    params.update(overrides)

    return RunConfig(**params)
