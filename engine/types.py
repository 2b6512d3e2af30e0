"""
Data structures for the Adaptive Grid & Hedge Engine.

One main Position and at most one hedge Position per symbol; the hedge
always takes the opposite side of the main.
"""
import dataclasses
from dataclasses import dataclass, field
from typing import Optional

from config import SYMBOL_DEFAULTS, MIN_LOT_SIZES, DEFAULT_MIN_LOT


# ─── Side Constants ────────────────────────────────────────────
SIDE_LONG = "long"
SIDE_SHORT = "short"

ORDER_BUY = "buy"
ORDER_SELL = "sell"

ORDER_MARKET = "market"
ORDER_LIMIT = "limit"

# ─── Policy / Data Source ──────────────────────────────────────
POLICY_GRID_ONLY = "GRID_ONLY"
POLICY_GRID_WITH_HEDGE = "GRID_WITH_HEDGE"
POLICIES = (POLICY_GRID_ONLY, POLICY_GRID_WITH_HEDGE)

GRID_MODE_TRAILING = "TRAILING"
GRID_MODE_ADAPTIVE = "ADAPTIVE"
GRID_MODES = (GRID_MODE_TRAILING, GRID_MODE_ADAPTIVE)

DATA_SOURCE_LIVE = "LIVE"
DATA_SOURCE_SIMULATED = "SIMULATED"

# ─── Lifecycle States ──────────────────────────────────────────
STATE_FLAT = "FLAT"
STATE_OPEN = "OPEN"
STATE_HEDGED = "HEDGED"
STATE_CLOSED = "CLOSED"

# ─── Order Roles (correlation) ─────────────────────────────────
ROLE_GRID_BUY = "grid_buy"
ROLE_GRID_SELL = "grid_sell"
ROLE_DCA = "dca"
ROLE_MAIN_OPEN = "main_open"
ROLE_MAIN_CLOSE = "main_close"
ROLE_HEDGE_OPEN = "hedge_open"
ROLE_HEDGE_CLOSE = "hedge_close"
GRID_ROLES = (ROLE_GRID_BUY, ROLE_GRID_SELL, ROLE_DCA)

# ─── Close Reasons ─────────────────────────────────────────────
REASON_TAKE_PROFIT = "TAKE_PROFIT"
REASON_STOP_LOSS = "STOP_LOSS"
REASON_HEDGE_STOP = "HEDGE_STOP"
REASON_MAIN_CLOSED = "MAIN_CLOSED"
REASON_GRID_SELL = "GRID_SELL"
REASON_MANUAL = "MANUAL"
CLOSE_REASONS = (REASON_TAKE_PROFIT, REASON_STOP_LOSS, REASON_HEDGE_STOP,
                 REASON_MAIN_CLOSED, REASON_GRID_SELL, REASON_MANUAL)

TRADE_MAIN = "main"
TRADE_HEDGE = "hedge"
TRADE_GRID = "grid"


def opposite_side(side: str) -> str:
    return SIDE_SHORT if side == SIDE_LONG else SIDE_LONG


def entry_order_side(side: str) -> str:
    """Order side that opens a position of the given direction."""
    return ORDER_BUY if side == SIDE_LONG else ORDER_SELL


def exit_order_side(side: str) -> str:
    """Order side that closes a position of the given direction."""
    return ORDER_SELL if side == SIDE_LONG else ORDER_BUY


def profit_percent(side: str, entry_price: float, price: float) -> float:
    """(price - entry) / entry * 100 for long, inverted for short."""
    if entry_price <= 1e-12:
        return 0.0
    if side == SIDE_LONG:
        return (price - entry_price) / entry_price * 100.0
    return (entry_price - price) / entry_price * 100.0


# ─── Configuration ─────────────────────────────────────────────

@dataclass(frozen=True)
class SymbolConfig:
    """Typed per-symbol parameters. Replaced, never mutated."""
    symbol: str
    policy: str = SYMBOL_DEFAULTS['policy']
    grid_mode: str = SYMBOL_DEFAULTS['grid_mode']
    timeframe: str = SYMBOL_DEFAULTS['timeframe']

    capital: float = SYMBOL_DEFAULTS['capital']
    risk_percent: float = SYMBOL_DEFAULTS['risk_percent']
    leverage: float = SYMBOL_DEFAULTS['leverage']
    min_lot: float = DEFAULT_MIN_LOT

    grid_steps: int = SYMBOL_DEFAULTS['grid_steps']
    grid_spacing: float = SYMBOL_DEFAULTS['grid_spacing']
    grid_trail_threshold: float = SYMBOL_DEFAULTS['grid_trail_threshold']

    grid_levels: int = SYMBOL_DEFAULTS['grid_levels']
    base_investment: float = SYMBOL_DEFAULTS['base_investment']
    max_position_fraction: float = SYMBOL_DEFAULTS['max_position_fraction']
    min_grid_spacing: float = SYMBOL_DEFAULTS['min_grid_spacing']
    max_grid_spacing: float = SYMBOL_DEFAULTS['max_grid_spacing']
    atr_period: int = SYMBOL_DEFAULTS['atr_period']
    atr_multiplier: float = SYMBOL_DEFAULTS['atr_multiplier']
    rebalance_threshold: float = SYMBOL_DEFAULTS['rebalance_threshold']
    rebalance_cooldown_seconds: float = SYMBOL_DEFAULTS['rebalance_cooldown_seconds']
    max_concurrent_orders: int = SYMBOL_DEFAULTS['max_concurrent_orders']
    dca_percentage: float = SYMBOL_DEFAULTS['dca_percentage']

    volatility_threshold: float = SYMBOL_DEFAULTS['volatility_threshold']
    bull_threshold: float = SYMBOL_DEFAULTS['bull_threshold']
    bear_threshold: float = SYMBOL_DEFAULTS['bear_threshold']
    regime_spacing_multipliers: dict = field(
        default_factory=lambda: dict(SYMBOL_DEFAULTS['regime_spacing_multipliers']))
    regime_size_multipliers: dict = field(
        default_factory=lambda: dict(SYMBOL_DEFAULTS['regime_size_multipliers']))

    ema_fast: int = SYMBOL_DEFAULTS['ema_fast']
    ema_slow: int = SYMBOL_DEFAULTS['ema_slow']
    rsi_period: int = SYMBOL_DEFAULTS['rsi_period']
    rsi_long: float = SYMBOL_DEFAULTS['rsi_long']
    rsi_short: float = SYMBOL_DEFAULTS['rsi_short']
    volume_multiplier: float = SYMBOL_DEFAULTS['volume_multiplier']

    hedge_loss_percent: float = SYMBOL_DEFAULTS['hedge_loss_percent']
    hedge_tp_percent: float = SYMBOL_DEFAULTS['hedge_tp_percent']
    hedge_sl_percent: float = SYMBOL_DEFAULTS['hedge_sl_percent']
    main_tp_percent: float = SYMBOL_DEFAULTS['main_tp_percent']
    main_protection_start_percent: float = SYMBOL_DEFAULTS['main_protection_start_percent']
    main_protection_percent: float = SYMBOL_DEFAULTS['main_protection_percent']

    def __post_init__(self):
        if self.policy not in POLICIES:
            raise ValueError(f"Unknown policy '{self.policy}'")
        if self.grid_mode not in GRID_MODES:
            raise ValueError(f"Unknown grid mode '{self.grid_mode}'")
        if self.min_grid_spacing > self.max_grid_spacing:
            raise ValueError("min_grid_spacing exceeds max_grid_spacing")
        for name in ('capital', 'leverage', 'min_lot', 'grid_spacing',
                     'base_investment', 'atr_multiplier'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ('grid_steps', 'grid_levels', 'atr_period',
                     'max_concurrent_orders'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")

    @classmethod
    def field_names(cls) -> set:
        return {f.name for f in dataclasses.fields(cls)}

    @classmethod
    def from_dict(cls, symbol: str, params: Optional[dict] = None) -> 'SymbolConfig':
        """Build from SYMBOL_DEFAULTS + overrides. Unknown keys are rejected."""
        merged = dict(SYMBOL_DEFAULTS)
        merged.update(params or {})
        merged.pop('symbol', None)
        if merged.get('min_lot') is None:
            merged['min_lot'] = MIN_LOT_SIZES.get(symbol, DEFAULT_MIN_LOT)

        unknown = set(merged) - cls.field_names()
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        return cls(symbol=symbol, **_coerce(merged))

    def apply_update(self, changes: dict) -> 'SymbolConfig':
        """Return a new config with `changes` applied (validated)."""
        changes = dict(changes or {})
        changes.pop('symbol', None)
        unknown = set(changes) - self.field_names()
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        return dataclasses.replace(self, **_coerce(changes))

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def _coerce(params: dict) -> dict:
    """Cast values to the declared field types (JSON gives ints for floats)."""
    types = {f.name: f.type for f in dataclasses.fields(SymbolConfig)}
    out = {}
    for key, value in params.items():
        declared = types.get(key)
        if declared in (float, 'float') and value is not None:
            value = float(value)
        elif declared in (int, 'int') and value is not None:
            value = int(value)
        elif declared in (dict, 'dict') and value is not None:
            value = dict(value)
        out[key] = value
    return out


# ─── Market Data ───────────────────────────────────────────────

@dataclass(frozen=True)
class Candle:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_ohlcv(cls, row) -> 'Candle':
        """From a [ts, O, H, L, C, V] row."""
        return cls(int(row[0]), float(row[1]), float(row[2]),
                   float(row[3]), float(row[4]),
                   float(row[5]) if len(row) > 5 and row[5] is not None else 0.0)


# ─── Positions ─────────────────────────────────────────────────

@dataclass
class Position:
    """
    A main or hedge position.

    stop_loss is a one-way ratchet: None until protection activates,
    then fixed for the life of the position. `hedges` counts hedges
    opened against a main position and numbers their order tags.
    """
    side: str
    entry_price: float
    size: float
    open_ts: int
    order_id: str = ''
    stop_loss: Optional[float] = None
    is_hedge: bool = False
    parent_order_id: Optional[str] = None
    hedges: int = 0

    def profit_pct(self, price: float) -> float:
        return profit_percent(self.side, self.entry_price, price)

    def attach_stop(self, price: float) -> bool:
        """Set the stop once. Returns False if a stop already exists."""
        if self.stop_loss is not None:
            return False
        self.stop_loss = price
        return True

    def stop_crossed(self, price: float) -> bool:
        if self.stop_loss is None:
            return False
        if self.side == SIDE_LONG:
            return price <= self.stop_loss
        return price >= self.stop_loss

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['Position']:
        if not data:
            return None
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# ─── Grid ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class GridState:
    """
    A complete grid. Regeneration builds a new GridState; levels are
    never edited in place.
    """
    mode: str
    anchor: Optional[float] = None
    center: Optional[float] = None
    levels: tuple = ()
    spacing: float = 0.0
    generation: int = 0
    last_move_ts: int = 0
    last_rebalance_ts: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.levels

    def level_prices(self) -> list:
        """Flat list of level prices (buy price for adaptive levels)."""
        return [lv['buy_price'] if isinstance(lv, dict) else lv
                for lv in self.levels]

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data['levels'] = [dict(lv) if isinstance(lv, dict) else lv
                          for lv in self.levels]
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict], mode: str) -> 'GridState':
        if not data:
            return cls(mode=mode)
        known = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['levels'] = tuple(values.get('levels') or ())
        values.setdefault('mode', mode)
        return cls(**values)


# ─── Orders ────────────────────────────────────────────────────

@dataclass
class Order:
    """Exchange-facing order, tracked only while live."""
    tag: str
    symbol: str
    side: str
    order_type: str
    quantity: float
    role: str
    price: Optional[float] = None
    ref_price: Optional[float] = None   # grid sell: paired level buy price
    level: Optional[int] = None
    generation: int = 0
    exchange_id: str = ''
    created_ts: int = 0
    reduce_only: bool = False
    position_side: str = ''
    reason: str = ''                    # close reason for position exits

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'Order':
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class Fill:
    order: Order
    price: float
    quantity: float
    timestamp: int

    def to_dict(self) -> dict:
        return {'order': self.order.to_dict(), 'price': self.price,
                'quantity': self.quantity, 'timestamp': self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> 'Fill':
        return cls(order=Order.from_dict(data['order']), price=float(data['price']),
                   quantity=float(data['quantity']), timestamp=int(data.get('timestamp', 0)))


# ─── Trade History ─────────────────────────────────────────────

@dataclass(frozen=True)
class TradeRecord:
    """Closed trade. Append-only; never mutated after creation."""
    symbol: str
    trade_type: str
    side: str
    entry_price: float
    exit_price: float
    size: float
    open_ts: int
    close_ts: int
    profit_pct: float
    close_reason: str
    order_id: str = ''

    def __post_init__(self):
        if self.close_reason not in CLOSE_REASONS:
            raise ValueError(f"Unknown close reason '{self.close_reason}'")

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'TradeRecord':
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
