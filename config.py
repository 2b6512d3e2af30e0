"""
Adaptive Grid & Hedge Engine Configuration.

Per-symbol trading parameters plus engine/live settings.
Per-symbol dicts are turned into typed SymbolConfig objects by
engine.types.SymbolConfig.from_dict().
"""

SYMBOL_DEFAULTS = {
    # ─── Policy ───────────────────────────────────────────────
    'policy': 'GRID_WITH_HEDGE',    # GRID_ONLY | GRID_WITH_HEDGE
    'grid_mode': 'TRAILING',        # TRAILING | ADAPTIVE
    'timeframe': '1',               # Candle interval (exchange minutes)

    # ─── Position Sizing ──────────────────────────────────────
    'capital': 1000.0,              # Capital allocated to the main position
    'risk_percent': 1.0,            # % of capital risked per entry
    'leverage': 5.0,
    'min_lot': None,                # None = look up MIN_LOT_SIZES

    # ─── Trailing Grid ────────────────────────────────────────
    'grid_steps': 5,                # Levels around the anchor
    'grid_spacing': 0.003,          # Static spacing (0.3%)
    'grid_trail_threshold': 0.01,   # Re-anchor when price moves 1% off anchor

    # ─── ATR-Adaptive Grid ────────────────────────────────────
    'grid_levels': 12,              # Buy steps across the ATR band
    'base_investment': 1000.0,      # Total grid investment (quote currency)
    'max_position_fraction': 0.09,  # Max notional per level vs investment
    'min_grid_spacing': 0.004,      # 0.4%
    'max_grid_spacing': 0.025,      # 2.5%
    'atr_period': 14,
    'atr_multiplier': 1.7,          # Band half-width = ATR * multiplier
    'rebalance_threshold': 0.075,   # Center deviation that forces rebalance
    'rebalance_cooldown_seconds': 1800,
    'max_concurrent_orders': 20,
    'dca_percentage': 0.018,        # Dip size that triggers a DCA buy

    # ─── Regime ───────────────────────────────────────────────
    'volatility_threshold': 0.018,
    'bull_threshold': 0.02,         # Momentum above → BULL candidate
    'bear_threshold': -0.02,        # Momentum below → BEAR candidate
    'regime_spacing_multipliers': {
        'BULL': 1.2, 'BEAR': 0.9, 'VOLATILE': 1.5, 'SIDEWAYS': 1.0,
    },
    'regime_size_multipliers': {
        'BULL': 1.1, 'BEAR': 0.9, 'VOLATILE': 0.7, 'SIDEWAYS': 1.0,
    },

    # ─── Entry Signal ─────────────────────────────────────────
    'ema_fast': 20,
    'ema_slow': 50,
    'rsi_period': 14,
    'rsi_long': 52.0,               # RSI above → long confirmation
    'rsi_short': 48.0,              # RSI below → short confirmation
    'volume_multiplier': 1.2,       # Volume spike vs SMA(20)

    # ─── Hedge & Protection (percent) ─────────────────────────
    'hedge_loss_percent': 8.0,      # Open hedge at -8% on main
    'hedge_tp_percent': 10.0,       # Arm hedge stop at +10% on hedge
    'hedge_sl_percent': 5.0,        # Hedge stop gives back 5%
    'main_tp_percent': 50.0,        # Close main at +50%
    'main_protection_start_percent': 20.0,  # Arm main stop above +20%
    'main_protection_percent': 10.0,        # Main stop locks in +10%
}

# Per-symbol overrides on top of SYMBOL_DEFAULTS
SYMBOLS = {
    'BTCUSDT': {},
}

# Minimum lot sizes per symbol
MIN_LOT_SIZES = {
    'BTCUSDT': 0.001,
    'ETHUSDT': 0.01,
    'SOLUSDT': 0.1,
    'XRPUSDT': 20,
    'BNBUSDT': 0.07,
}
DEFAULT_MIN_LOT = 0.001

# ─── Engine / Live Configuration ────────────────────────────────
ENGINE_CONFIG = {
    # Exchange Connection
    'exchange_id': 'bybit',
    'category': 'linear',            # USDT perpetuals
    'data_source': 'LIVE',           # LIVE | SIMULATED
    'testnet': False,
    'hedge_mode': True,              # Main and hedge held on separate sides
    'request_timeout_ms': 5000,
    'recv_window_ms': 60000,

    # Driver
    'tick_interval_seconds': 20,
    'persist_interval_seconds': 300,

    # Candle Feed
    'candle_limit': 100,
    'buffer_size': 200,              # Rolling candle buffer

    # Order Management
    'max_retry_attempts': 1,
    'retry_delay_seconds': 1,
    'max_daily_orders': 4550,
    'recent_tag_memory': 500,        # Submitted tags remembered for dedup

    # State Persistence
    'state_dir': 'data/state',
    'log_dir': 'data/logs',
    'log_level': 'INFO',

    # Health
    'max_consecutive_errors': 5,
}

# ─── Simulated Feed ──────────────────────────────────────────────
SIMULATION_CONFIG = {
    'start_price': 50000.0,
    'bar_volatility': 0.005,         # Per-bar random-walk step
    'bar_ms': 60 * 1000,
    'seed': 42,
}
