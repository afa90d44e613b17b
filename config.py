import datetime as dt
from pathlib import Path
import numpy as np

TODAY = dt.date.today()

TRAIN_START = dt.date(2019, 1, 2)

CUTOFF = dt.date(2023, 12, 29)

END = dt.date(2024, 6, 28)

DOWNLOAD_START = TRAIN_START - dt.timedelta(days = 90)

BASE_DIR = Path.home() / "ensemble_forecasts"

FORECAST_FILE = BASE_DIR / f"Ensemble_Forecast_{TODAY}.xlsx"

N_PATHS = 5000

GARCH_ORDER = (1, 1)

ARMA_ORDER = (1, 0)

CLIP_QUANTILES = (0.01, 0.99)

INTERVAL_QUANTILES = (2.5, 97.5)

RNG_SEED = 42

N_JOBS = -1

REGRESSORS = ["ma_7_diff", "ma_30_diff", "rsi_diff", "log_volume_diff"]

tickers = np.sort(["AAPL", "MSFT", "SPY"]).tolist()
