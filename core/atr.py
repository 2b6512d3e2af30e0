"""
ATR (Average True Range) + Volatility Index + Momentum.

Pure NumPy implementation.
"""
from typing import Optional

import numpy as np


VOLATILITY_WINDOW = 20       # Fractional changes used for the volatility index
VOLATILITY_MIN_SAMPLES = 10  # Below this the previous index is kept
MOMENTUM_WINDOW = 10         # Recent vs preceding block size


def true_range(high_arr: np.ndarray, low_arr: np.ndarray,
               close_arr: np.ndarray) -> np.ndarray:
    """
    True range for bars 1..n-1 (bar 0 has no previous close).

    TR = max(H-L, |H - Prev_Close|, |L - Prev_Close|)
    """
    n = len(close_arr)
    if n < 2:
        return np.zeros(0, dtype=np.float64)

    tr_arr = np.zeros(n - 1, dtype=np.float64)
    for i in range(1, n):
        hl = high_arr[i] - low_arr[i]
        hc = abs(high_arr[i] - close_arr[i - 1])
        lc = abs(low_arr[i] - close_arr[i - 1])
        tr_arr[i - 1] = max(hl, hc, lc)
    return tr_arr


def calculate_atr(high_arr: np.ndarray, low_arr: np.ndarray,
                  close_arr: np.ndarray, period: int) -> Optional[float]:
    """
    Average True Range over the last `period` bars.

    ATR = mean(TR[-period:])

    Needs period + 1 bars (each TR uses the previous close). Returns None
    when there is not enough history; callers skip ATR-dependent logic.
    """
    if period <= 0 or len(close_arr) < period + 1:
        return None

    high_arr = np.asarray(high_arr, dtype=np.float64)[-(period + 1):]
    low_arr = np.asarray(low_arr, dtype=np.float64)[-(period + 1):]
    close_arr = np.asarray(close_arr, dtype=np.float64)[-(period + 1):]

    tr_arr = true_range(high_arr, low_arr, close_arr)
    return float(np.mean(tr_arr))


def fractional_changes(close_arr: np.ndarray) -> np.ndarray:
    """(p[i] - p[i-1]) / p[i-1] for consecutive samples."""
    close_arr = np.asarray(close_arr, dtype=np.float64)
    if len(close_arr) < 2:
        return np.zeros(0, dtype=np.float64)
    prev = close_arr[:-1]
    safe_prev = np.where(prev > 1e-12, prev, np.nan)
    changes = (close_arr[1:] - prev) / safe_prev
    return np.nan_to_num(changes, nan=0.0)


def calculate_volatility_index(close_arr: np.ndarray,
                               window: int = VOLATILITY_WINDOW,
                               min_samples: int = VOLATILITY_MIN_SAMPLES
                               ) -> Optional[float]:
    """
    Root-mean-square of the last `window` fractional price changes.

    Returns None with fewer than `min_samples` changes so the caller
    can keep its previous value instead of dropping to zero.
    """
    changes = fractional_changes(close_arr)[-window:]
    if len(changes) < min_samples:
        return None
    return float(np.sqrt(np.mean(changes ** 2)))


def calculate_momentum(close_arr: np.ndarray,
                       window: int = MOMENTUM_WINDOW) -> Optional[float]:
    """
    Momentum = (mean(last window) - mean(preceding window)) / mean(preceding window)

    Returns None with fewer than 2 * window samples.
    """
    close_arr = np.asarray(close_arr, dtype=np.float64)
    if len(close_arr) < 2 * window:
        return None

    recent = close_arr[-window:]
    older = close_arr[-2 * window:-window]
    older_avg = float(np.mean(older))
    if older_avg < 1e-12:
        return 0.0
    return (float(np.mean(recent)) - older_avg) / older_avg
