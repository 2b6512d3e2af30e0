"""
Market Regime Classifier.

Momentum + volatility decision table. Pure function: identical inputs
always give the identical regime.
"""
from typing import Sequence

from core.atr import calculate_momentum, MOMENTUM_WINDOW


# ─── Regime Constants ──────────────────────────────────────────
REGIME_BULL = "BULL"
REGIME_BEAR = "BEAR"
REGIME_SIDEWAYS = "SIDEWAYS"
REGIME_VOLATILE = "VOLATILE"
REGIME_UNKNOWN = "UNKNOWN"

REGIMES = (REGIME_BULL, REGIME_BEAR, REGIME_SIDEWAYS,
           REGIME_VOLATILE, REGIME_UNKNOWN)

MIN_REGIME_SAMPLES = 2 * MOMENTUM_WINDOW


def classify_regime(prices: Sequence[float], volatility: float,
                    bull_threshold: float = 0.02,
                    bear_threshold: float = -0.02,
                    volatility_threshold: float = 0.02) -> str:
    """
    Classify the market from price samples and the volatility index.

    First match wins:
      1. fewer than 20 samples                      → UNKNOWN
      2. momentum > bull  and vol < vol_threshold   → BULL
      3. momentum < bear  and vol < vol_threshold   → BEAR
      4. vol > vol_threshold                        → VOLATILE
      5. otherwise                                  → SIDEWAYS
    """
    if len(prices) < MIN_REGIME_SAMPLES:
        return REGIME_UNKNOWN

    momentum = calculate_momentum(prices)

    if momentum > bull_threshold and volatility < volatility_threshold:
        return REGIME_BULL
    if momentum < bear_threshold and volatility < volatility_threshold:
        return REGIME_BEAR
    if volatility > volatility_threshold:
        return REGIME_VOLATILE
    return REGIME_SIDEWAYS
