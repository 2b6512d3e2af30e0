"""
Grid level generation + dynamic spacing.

Two policies:
  - Anchored trailing grid (static spacing around an anchor)
  - ATR-adaptive grid (spacing from ATR/price, scaled by regime)

Pure functions; GridPlanner owns the state.
"""
from typing import Optional


DEFAULT_SPACING_MULTIPLIERS = {
    'BULL': 1.2, 'BEAR': 0.9, 'VOLATILE': 1.5, 'SIDEWAYS': 1.0,
}
DEFAULT_SIZE_MULTIPLIERS = {
    'BULL': 1.1, 'BEAR': 0.9, 'VOLATILE': 0.7, 'SIDEWAYS': 1.0,
}

ATR_SPACING_FACTOR = 0.8       # spacing = ATR / price * 0.8 before clamping
CENTER_EXCLUSION = 0.5         # Drop levels closer than spacing * 0.5
BUY_PLACEMENT_GAP = 0.995      # Only place buys below price * 0.995
SELL_PLACEMENT_GAP = 1.005     # Only place sells above price * 1.005
VOLATILITY_REBALANCE_MULT = 1.5
MIN_LIVE_ORDER_RATIO = 0.3


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def trailing_grid_levels(anchor_price: float, steps: int,
                         spacing: float) -> list:
    """
    Levels centred on the anchor.

    level[i] = anchor * (1 + (i - floor(steps/2)) * spacing),  i in [0, steps)
    """
    half = steps // 2
    return [anchor_price * (1.0 + (i - half) * spacing) for i in range(steps)]


def needs_reanchor(price: float, anchor: Optional[float],
                   trail_threshold: float) -> bool:
    """True when there is no anchor or price drifted past the threshold."""
    if not anchor:
        return True
    return abs(price / anchor - 1.0) > trail_threshold


def adaptive_spacing(atr: Optional[float], price: float, regime: str,
                     min_spacing: float, max_spacing: float,
                     fallback: float,
                     multipliers: Optional[dict] = None) -> float:
    """
    Dynamic spacing (fraction of price).

    spacing = clamp(ATR / price * 0.8, min, max) * regime_multiplier,
    re-clamped to [min, max]. Without ATR the static fallback is used.
    """
    if not atr or price <= 1e-12:
        return fallback

    multipliers = multipliers or DEFAULT_SPACING_MULTIPLIERS
    spacing = _clamp(atr / price * ATR_SPACING_FACTOR, min_spacing, max_spacing)
    spacing *= multipliers.get(regime, 1.0)
    return _clamp(spacing, min_spacing, max_spacing)


def order_quantity(price: float, base_investment: float, levels: int,
                   max_position_fraction: float, regime: str,
                   min_lot: float, multipliers: Optional[dict] = None) -> float:
    """
    Per-level order size in base asset.

    qty = min(base / levels / price, base * max_fraction / price)
          * regime_multiplier, floored at min_lot
    """
    if price <= 1e-12 or levels <= 0:
        return min_lot

    multipliers = multipliers or DEFAULT_SIZE_MULTIPLIERS
    base_qty = base_investment / levels / price
    max_qty = base_investment * max_position_fraction / price
    qty = min(base_qty, max_qty) * multipliers.get(regime, 1.0)
    return max(qty, min_lot)


def adaptive_grid_levels(center_price: float, atr: float, spacing: float,
                         levels: int, atr_multiplier: float,
                         qty_fn=None) -> list:
    """
    ATR band grid.

    Buy prices step evenly from (center - ATR*mult) across the band in
    `levels` steps; sell = buy * (1 + spacing). Levels within
    spacing * 0.5 of the center are dropped so a buy and sell never cross.
    Result is sorted by distance from center, closest first.

    Returns:
        list of dicts {level, buy_price, sell_price, quantity, distance}
    """
    atr_range = atr * atr_multiplier
    lower = center_price - atr_range
    step = (2.0 * atr_range) / levels if levels > 0 else 0.0

    grid = []
    for i in range(levels):
        buy_price = lower + step * i
        if buy_price <= 0:
            continue
        distance = abs(buy_price - center_price) / center_price
        if distance < spacing * CENTER_EXCLUSION:
            continue
        grid.append({
            'level': i,
            'buy_price': buy_price,
            'sell_price': buy_price * (1.0 + spacing),
            'quantity': qty_fn(buy_price) if qty_fn else 0.0,
            'distance': distance,
        })

    grid.sort(key=lambda lv: lv['distance'])
    return grid


def placement_sides(buy_price: float, sell_price: float,
                    current_price: float) -> tuple:
    """Which sides of a level are worth placing at the current price."""
    place_buy = buy_price < current_price * BUY_PLACEMENT_GAP
    place_sell = sell_price > current_price * SELL_PLACEMENT_GAP
    return place_buy, place_sell


def should_rebalance(price: float, center_price: Optional[float],
                     volatility: float, live_orders: int, expected_orders: int,
                     seconds_since_rebalance: float, cooldown_seconds: float,
                     rebalance_threshold: float,
                     volatility_threshold: float) -> tuple:
    """
    Rebalance test for the adaptive grid.

    Never inside the cooldown. Otherwise triggers on:
      - |price - center| / price > threshold
      - volatility > 1.5 * volatility_threshold
      - fewer than 30% of expected orders still live

    Returns:
        (should_rebalance, reason, deviation)
    """
    if seconds_since_rebalance < cooldown_seconds:
        return False, 'cooldown', 0.0
    if not center_price or price <= 1e-12:
        return False, 'no grid', 0.0

    deviation = abs(price - center_price) / price
    if deviation > rebalance_threshold:
        return True, 'deviation', deviation
    if volatility > volatility_threshold * VOLATILITY_REBALANCE_MULT:
        return True, 'volatility', deviation
    if live_orders < expected_orders * MIN_LIVE_ORDER_RATIO:
        return True, 'orders', deviation
    return False, '', deviation


def dca_triggered(recent_prices, current_price: float,
                  dca_percentage: float, regime: str) -> bool:
    """
    Dip buy: recent low at or below price * (1 - dca%) in a calm or
    rising market.
    """
    if len(recent_prices) == 0 or regime not in ('SIDEWAYS', 'BULL'):
        return False
    return min(recent_prices) <= current_price * (1.0 - dca_percentage)
