"""
Directional entry heuristic: EMA trend + RSI + MACD + volume spike.

Pure NumPy implementation. Thresholds come from SymbolConfig; the
defaults are the empirically chosen values, not derived ones.
"""
from typing import Optional

import numpy as np


SIGNAL_LONG = "long"
SIGNAL_SHORT = "short"

MIN_SIGNAL_BARS = 55


def calculate_ema(values: np.ndarray, period: int) -> np.ndarray:
    """
    Exponential moving average seeded with the SMA of the first `period` values.

    Returns len(values) - period + 1 points (empty if not enough data).
    """
    values = np.asarray(values, dtype=np.float64)
    n = len(values)
    if period <= 0 or n < period:
        return np.zeros(0, dtype=np.float64)

    alpha = 2.0 / (period + 1)
    ema = np.zeros(n - period + 1, dtype=np.float64)
    ema[0] = np.mean(values[:period])
    for i in range(1, len(ema)):
        ema[i] = alpha * values[period - 1 + i] + (1.0 - alpha) * ema[i - 1]
    return ema


def calculate_sma(values: np.ndarray, period: int) -> Optional[float]:
    """Simple average of the last `period` values."""
    values = np.asarray(values, dtype=np.float64)
    if period <= 0 or len(values) < period:
        return None
    return float(np.mean(values[-period:]))


def calculate_rsi(close_arr: np.ndarray, period: int = 14) -> Optional[float]:
    """
    Latest Wilder RSI.

    avg_gain/avg_loss seeded with simple means over the first `period`
    changes, then smoothed: avg = (avg * (period-1) + x) / period
    """
    close_arr = np.asarray(close_arr, dtype=np.float64)
    if len(close_arr) < period + 1:
        return None

    deltas = np.diff(close_arr)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = np.mean(gains[:period])
    avg_loss = np.mean(losses[:period])
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss < 1e-12:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def calculate_macd_histogram(close_arr: np.ndarray, fast: int = 12,
                             slow: int = 26, signal: int = 9) -> Optional[float]:
    """
    Latest MACD histogram = MACD - Signal.

    MACD   = EMA(fast) - EMA(slow)
    Signal = EMA(MACD, signal)
    """
    close_arr = np.asarray(close_arr, dtype=np.float64)
    if len(close_arr) < slow + signal - 1:
        return None

    ema_fast = calculate_ema(close_arr, fast)
    ema_slow = calculate_ema(close_arr, slow)
    # Align both on the slow EMA's first index
    macd_line = ema_fast[slow - fast:] - ema_slow
    signal_line = calculate_ema(macd_line, signal)
    if len(signal_line) == 0:
        return None
    return float(macd_line[-1] - signal_line[-1])


def multi_factor_entry(close_arr: np.ndarray, volume_arr: np.ndarray,
                       ema_fast: int = 20, ema_slow: int = 50,
                       rsi_period: int = 14, rsi_long: float = 52.0,
                       rsi_short: float = 48.0,
                       volume_multiplier: float = 1.2) -> tuple:
    """
    Evaluate the entry heuristic on the latest bar.

    Long:  EMA(fast) > EMA(slow), RSI > rsi_long,  MACD hist > 0, vol spike
    Short: EMA(fast) < EMA(slow), RSI < rsi_short, MACD hist < 0, vol spike

    Returns:
        (signal, reason); signal is 'long', 'short' or None
    """
    close_arr = np.asarray(close_arr, dtype=np.float64)
    volume_arr = np.asarray(volume_arr, dtype=np.float64)

    if len(close_arr) < max(MIN_SIGNAL_BARS, ema_slow + 1):
        return None, "Insufficient data"

    fast = calculate_ema(close_arr, ema_fast)
    slow = calculate_ema(close_arr, ema_slow)
    rsi = calculate_rsi(close_arr, rsi_period)
    hist = calculate_macd_histogram(close_arr)
    avg_vol = calculate_sma(volume_arr, 20) or 0.0
    cur_vol = float(volume_arr[-1]) if len(volume_arr) else 0.0

    if rsi is None or hist is None:
        return None, "Insufficient data"

    volume_spike = cur_vol > avg_vol * volume_multiplier

    if fast[-1] > slow[-1] and rsi > rsi_long and hist > 0 and volume_spike:
        return SIGNAL_LONG, (f"Bullish trend: EMA crossover, RSI >{rsi_long:g}, "
                             f"MACD positive, volume spike")

    if fast[-1] < slow[-1] and rsi < rsi_short and hist < 0 and volume_spike:
        return SIGNAL_SHORT, (f"Bearish trend: EMA crossover, RSI <{rsi_short:g}, "
                              f"MACD negative, volume spike")

    return None, "No clear signal"
