"""
Tests for core indicator modules: ATR, volatility index, momentum,
regime classification and the entry signal.

Uses synthetic data with hand-checked values.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest
from core.atr import (
    true_range, calculate_atr, calculate_volatility_index, calculate_momentum,
)
from core.regime import (
    classify_regime, REGIME_BULL, REGIME_BEAR, REGIME_SIDEWAYS,
    REGIME_VOLATILE, REGIME_UNKNOWN,
)
from core.signals import (
    calculate_ema, calculate_rsi, calculate_macd_histogram,
    multi_factor_entry, SIGNAL_LONG, SIGNAL_SHORT,
)


def make_geometric(n=80, start=100.0, growth=1.01):
    """Price series compounding at a fixed rate per bar."""
    return start * growth ** np.arange(n)


def make_spike_volume(n=80, spike=2.0):
    vol = np.ones(n)
    vol[-1] = spike
    return vol


class TestATR:
    def test_known_values(self):
        close = np.array([10.0, 11.0, 12.0])
        high = np.array([10.5, 11.5, 13.0])
        low = np.array([9.5, 10.0, 11.5])
        # TR1 = 1.5, TR2 = max(1.5, 2.0, 0.5) = 2.0
        np.testing.assert_allclose(true_range(high, low, close), [1.5, 2.0])
        assert calculate_atr(high, low, close, 2) == pytest.approx(1.75)

    def test_insufficient_data_returns_none(self):
        """P+1 bars are needed; fewer gives None, not zero."""
        close = np.array([10.0, 11.0, 12.0])
        assert calculate_atr(close, close, close, 3) is None
        assert calculate_atr(close, close, close, 14) is None

    def test_uses_only_last_period_bars(self):
        close = np.concatenate([np.full(50, 100.0), np.full(15, 100.0)])
        high = close.copy()
        low = close.copy()
        high[:50] += 50.0  # Old volatility outside the window
        high[-14:] += 2.0
        assert calculate_atr(high, low, close, 14) == pytest.approx(2.0)

    def test_gap_counts_in_true_range(self):
        close = np.array([100.0, 110.0])
        high = np.array([100.0, 110.0])
        low = np.array([100.0, 110.0])
        assert calculate_atr(high, low, close, 1) == pytest.approx(10.0)


class TestVolatilityIndex:
    def test_needs_ten_changes(self):
        assert calculate_volatility_index(np.linspace(100, 110, 10)) is None
        assert calculate_volatility_index(np.linspace(100, 110, 11)) is not None

    def test_constant_growth_rms(self):
        close = make_geometric(30, growth=1.01)
        assert calculate_volatility_index(close) == pytest.approx(0.01, rel=1e-9)

    def test_flat_prices_zero(self):
        assert calculate_volatility_index(np.full(30, 50.0)) == 0.0

    def test_alternating_moves(self):
        close = np.array([100.0, 102.0] * 15)
        vol = calculate_volatility_index(close)
        # Changes alternate +2% and -1.96%
        assert 0.019 < vol < 0.021


class TestMomentum:
    def test_step_up(self):
        close = np.array([100.0] * 10 + [110.0] * 10)
        assert calculate_momentum(close) == pytest.approx(0.1)

    def test_uses_last_twenty_samples(self):
        close = np.array([1.0] * 30 + [100.0] * 10 + [95.0] * 10)
        assert calculate_momentum(close) == pytest.approx(-0.05)

    def test_insufficient(self):
        assert calculate_momentum(np.ones(19)) is None


class TestRegime:
    def test_unknown_below_twenty_samples(self):
        assert classify_regime([100.0] * 19, 0.001) == REGIME_UNKNOWN

    def test_bull(self):
        prices = [100.0] * 10 + [103.0] * 10
        assert classify_regime(prices, 0.005) == REGIME_BULL

    def test_bear(self):
        prices = [100.0] * 10 + [97.0] * 10
        assert classify_regime(prices, 0.005) == REGIME_BEAR

    def test_volatile(self):
        assert classify_regime([100.0] * 20, 0.05) == REGIME_VOLATILE

    def test_trend_with_high_volatility_is_volatile(self):
        prices = [100.0] * 10 + [103.0] * 10
        assert classify_regime(prices, 0.05) == REGIME_VOLATILE

    def test_sideways(self):
        assert classify_regime([100.0] * 20, 0.001) == REGIME_SIDEWAYS

    def test_volatility_at_threshold_is_sideways(self):
        assert classify_regime([100.0] * 20, 0.02) == REGIME_SIDEWAYS

    def test_custom_thresholds(self):
        prices = [100.0] * 10 + [101.0] * 10  # +1% momentum
        assert classify_regime(prices, 0.005) == REGIME_SIDEWAYS
        assert classify_regime(prices, 0.005, bull_threshold=0.005) == REGIME_BULL

    def test_pure_function(self):
        """Identical inputs give identical output and inputs are untouched."""
        prices = [100.0] * 10 + [97.0] * 10
        snapshot = list(prices)
        first = classify_regime(prices, 0.005)
        for _ in range(5):
            assert classify_regime(prices, 0.005) == first
        assert prices == snapshot


class TestSignals:
    def test_ema_sma_seed(self):
        ema = calculate_ema(np.array([1.0, 2.0, 3.0, 4.0, 5.0]), 3)
        np.testing.assert_allclose(ema, [2.0, 3.0, 4.0])

    def test_ema_not_enough_data(self):
        assert len(calculate_ema(np.array([1.0, 2.0]), 3)) == 0

    def test_rsi_bounds(self):
        assert calculate_rsi(make_geometric(40, growth=1.01)) == 100.0
        assert calculate_rsi(make_geometric(40, growth=0.99)) == pytest.approx(0.0)
        assert calculate_rsi(np.ones(10)) is None

    def test_macd_histogram_sign(self):
        assert calculate_macd_histogram(make_geometric(80, growth=1.01)) > 0
        assert calculate_macd_histogram(make_geometric(80, growth=0.99)) < 0

    def test_insufficient_bars(self):
        close = make_geometric(54)
        signal, reason = multi_factor_entry(close, make_spike_volume(54))
        assert signal is None
        assert reason == "Insufficient data"

    def test_long_signal(self):
        signal, reason = multi_factor_entry(make_geometric(80, growth=1.01),
                                            make_spike_volume(80))
        assert signal == SIGNAL_LONG
        assert "Bullish" in reason

    def test_short_signal(self):
        signal, reason = multi_factor_entry(make_geometric(80, growth=0.99),
                                            make_spike_volume(80))
        assert signal == SIGNAL_SHORT
        assert "Bearish" in reason

    def test_no_signal_without_volume_spike(self):
        signal, reason = multi_factor_entry(make_geometric(80, growth=1.01),
                                            np.ones(80))
        assert signal is None
        assert reason == "No clear signal"

    def test_rsi_threshold_blocks_signal(self):
        signal, _ = multi_factor_entry(make_geometric(80, growth=1.01),
                                       make_spike_volume(80), rsi_long=101.0)
        assert signal is None
