"""
GridPlanner: owns one symbol's GridState.

TRAILING mode keeps reference levels around an anchor and only
re-anchors (no orders). ADAPTIVE mode places live limit orders on an
ATR band grid, rebalances it and buys dips.

Rebalance is all-or-nothing: grid orders are cancelled first and a
failed cancel leaves the old grid in place. The new GridState is built
completely before it replaces the old one.
"""
import time
import logging
from typing import Callable, Optional

from core.grid import (
    trailing_grid_levels, needs_reanchor, adaptive_spacing, order_quantity,
    adaptive_grid_levels, placement_sides, should_rebalance, dca_triggered,
)
from core.regime import REGIME_UNKNOWN
from engine.types import (
    SymbolConfig, GridState, Order, Fill, TradeRecord,
    GRID_MODE_TRAILING, GRID_MODE_ADAPTIVE, GRID_ROLES,
    ROLE_GRID_BUY, ROLE_GRID_SELL, ROLE_DCA,
    ORDER_BUY, ORDER_SELL, ORDER_LIMIT, SIDE_LONG, SIDE_SHORT,
    REASON_GRID_SELL, TRADE_GRID, profit_percent,
)
from live.telegram_notifier import AlertEvent, ALERT_GRIDMOVE, ALERT_INFO

logger = logging.getLogger('grid_planner')

DCA_LOOKBACK = 5
DCA_SIZE_FACTOR = 0.6
DCA_PRICE_FACTOR = 0.999
CARRY_KEY = 'carry'
QTY_EPS = 1e-12


class GridPlanner:

    def __init__(self, config: SymbolConfig, reconciler,
                 persist: Optional[Callable[[], None]] = None,
                 clock=time.time):
        self.config = config
        self.symbol = config.symbol
        self.reconciler = reconciler
        self._persist = persist or (lambda: None)
        self._clock = clock

        self.grid = GridState(mode=config.grid_mode)
        self.inventory = {}          # "gen:level" | "dca:tag" | "carry" -> {buy_price, quantity, ts}
        self.expected_orders = 0
        self._force = False

    # ─── Public API ──────────────────────────────────────────────

    def force_rebalance(self):
        """Rebalance on the next tick, ignoring the cooldown."""
        self._force = True

    def update(self, price: float, atr: Optional[float], volatility: float,
               regime: str, recent_prices, bar_ts: int) -> list:
        """Advance the grid for this tick. Returns alerts."""
        if price is None or price <= 0:
            return []
        if self.config.grid_mode == GRID_MODE_TRAILING:
            return self._update_trailing(price)
        return self._update_adaptive(price, atr, volatility, regime,
                                     recent_prices, bar_ts)

    def invalidate(self) -> bool:
        """
        Cancel live grid orders and clear the grid so the next tick
        rebuilds it. Returns False (grid untouched) if the cancel failed.
        """
        if not self.reconciler.cancel_all(roles=GRID_ROLES):
            logger.warning(f"{self.symbol}: grid invalidation aborted, cancel failed")
            return False
        self.grid = GridState(mode=self.config.grid_mode,
                              generation=self.grid.generation)
        self.expected_orders = 0
        self._carry_inventory()
        self._persist()
        return True

    def handle_fill(self, fill: Fill) -> Optional[TradeRecord]:
        """Book a grid fill. A sell fill yields a GRID_SELL trade."""
        order = fill.order
        ts = fill.timestamp or self._now_ms()

        if order.role in (ROLE_GRID_BUY, ROLE_DCA):
            key = (f"{order.generation}:{order.level}" if order.role == ROLE_GRID_BUY
                   else f"dca:{order.tag}")
            held = self.inventory.get(key, {'buy_price': fill.price,
                                            'quantity': 0.0, 'ts': ts})
            held['quantity'] += fill.quantity
            self.inventory[key] = held
            self._persist()
            logger.info(f"{self.symbol}: grid BUY filled L{order.level} "
                        f"{fill.quantity:.6f} @ {fill.price:.2f}")
            return None

        if order.role != ROLE_GRID_SELL:
            return None

        held = self._consume_inventory(f"{order.generation}:{order.level}", fill.quantity)
        entry = order.ref_price or (held['buy_price'] if held else fill.price)
        trade = TradeRecord(
            symbol=self.symbol, trade_type=TRADE_GRID, side=SIDE_LONG,
            entry_price=entry, exit_price=fill.price, size=fill.quantity,
            open_ts=held['ts'] if held else order.created_ts, close_ts=ts,
            profit_pct=profit_percent(SIDE_LONG, entry, fill.price),
            close_reason=REASON_GRID_SELL, order_id=order.tag)
        self._persist()
        logger.info(f"{self.symbol}: grid SELL filled L{order.level} "
                    f"{fill.quantity:.6f} @ {fill.price:.2f} ({trade.profit_pct:+.2f}%)")
        return trade

    def update_config(self, config: SymbolConfig):
        self.config = config
        if self.grid.mode != config.grid_mode:
            self.grid = GridState(mode=config.grid_mode,
                                  generation=self.grid.generation)

    # ─── Trailing Policy ─────────────────────────────────────────

    def _update_trailing(self, price: float) -> list:
        forced, self._force = self._force, False
        if not forced and not needs_reanchor(price, self.grid.anchor,
                                             self.config.grid_trail_threshold):
            return []

        cfg = self.config
        old_anchor = self.grid.anchor
        levels = trailing_grid_levels(price, cfg.grid_steps, cfg.grid_spacing)
        now = self._now_ms()
        self.grid = GridState(
            mode=GRID_MODE_TRAILING, anchor=price, center=price,
            levels=tuple(levels), spacing=cfg.grid_spacing,
            generation=self.grid.generation + 1,
            last_move_ts=now, last_rebalance_ts=now)
        self._persist()

        moved = f"{old_anchor:.2f} → {price:.2f}" if old_anchor else f"{price:.2f}"
        logger.info(f"{self.symbol}: grid anchored {moved}")
        return [AlertEvent(
            ALERT_GRIDMOVE, self.symbol, "Grid moved",
            (f"Anchor: {moved}",
             "Levels: " + ", ".join(f"{lv:.2f}" for lv in levels)))]

    # ─── Adaptive Policy ─────────────────────────────────────────

    def _update_adaptive(self, price: float, atr: Optional[float],
                         volatility: float, regime: str,
                         recent_prices, bar_ts: int) -> list:
        if atr is None:
            return []

        alerts = []
        if self.grid.is_empty or self._force:
            reason = 'forced' if self._force else 'initial'
            alerts.extend(self.rebalance(price, atr, regime, reason))
        else:
            cfg = self.config
            since = (self._now_ms() - self.grid.last_rebalance_ts) / 1000.0
            trigger, reason, deviation = should_rebalance(
                price, self.grid.center, volatility,
                self.reconciler.live_count((ROLE_GRID_BUY, ROLE_GRID_SELL)),
                self.expected_orders, since, cfg.rebalance_cooldown_seconds,
                cfg.rebalance_threshold, cfg.volatility_threshold)
            if trigger:
                logger.info(f"{self.symbol}: rebalance triggered ({reason}, "
                            f"deviation {deviation:.2%})")
                alerts.extend(self.rebalance(price, atr, regime, reason))

        alerts.extend(self._maybe_dca(price, regime, recent_prices, bar_ts))
        return alerts

    def rebalance(self, price: float, atr: float, regime: str,
                  reason: str = 'manual') -> list:
        """Cancel grid orders, regenerate, swap the GridState, place orders."""
        if not self.reconciler.cancel_all(roles=(ROLE_GRID_BUY, ROLE_GRID_SELL)):
            logger.warning(f"{self.symbol}: rebalance aborted, cancel failed "
                           f"(keeping generation {self.grid.generation})")
            return []
        self._force = False

        cfg = self.config
        spacing = adaptive_spacing(atr, price, regime, cfg.min_grid_spacing,
                                   cfg.max_grid_spacing, cfg.grid_spacing,
                                   cfg.regime_spacing_multipliers)
        levels = adaptive_grid_levels(
            price, atr, spacing, cfg.grid_levels, cfg.atr_multiplier,
            qty_fn=lambda p: self._level_quantity(p, regime))

        now = self._now_ms()
        self.grid = GridState(
            mode=GRID_MODE_ADAPTIVE, anchor=price, center=price,
            levels=tuple(levels), spacing=spacing,
            generation=self.grid.generation + 1,
            last_move_ts=now, last_rebalance_ts=now)
        self._carry_inventory()

        placed = self._place_orders(price)
        self._persist()

        logger.info(f"{self.symbol}: grid gen {self.grid.generation} built "
                    f"({len(levels)} levels, spacing {spacing:.3%}, {placed} orders, "
                    f"regime {regime}, reason {reason})")
        return [AlertEvent(
            ALERT_GRIDMOVE, self.symbol, "Grid rebalanced",
            (f"Center: {price:.2f}", f"Spacing: {spacing:.3%}",
             f"Orders: {placed}", f"Reason: {reason}"))]

    def _place_orders(self, price: float) -> int:
        """Place buy/sell orders on the closest levels. Returns orders placed."""
        gen = self.grid.generation
        expected = 0
        placed = 0
        for lv in self.grid.levels[:self.config.max_concurrent_orders]:
            place_buy, place_sell = placement_sides(lv['buy_price'], lv['sell_price'], price)
            if place_buy:
                expected += 1
                res = self.reconciler.submit(Order(
                    tag=f"{self.symbol}-g{gen}-{lv['level']}b", symbol=self.symbol,
                    side=ORDER_BUY, order_type=ORDER_LIMIT, quantity=lv['quantity'],
                    price=lv['buy_price'], role=ROLE_GRID_BUY, level=lv['level'],
                    generation=gen, position_side=SIDE_LONG))
                placed += int(res.ok)
            if place_sell:
                expected += 1
                res = self.reconciler.submit(Order(
                    tag=f"{self.symbol}-g{gen}-{lv['level']}s", symbol=self.symbol,
                    side=ORDER_SELL, order_type=ORDER_LIMIT, quantity=lv['quantity'],
                    price=lv['sell_price'], ref_price=lv['buy_price'],
                    role=ROLE_GRID_SELL, level=lv['level'],
                    generation=gen, position_side=SIDE_SHORT))
                placed += int(res.ok)
        self.expected_orders = expected
        return placed

    def _maybe_dca(self, price: float, regime: str, recent_prices,
                   bar_ts: int) -> list:
        window = list(recent_prices)[-DCA_LOOKBACK:]
        if not dca_triggered(window, price, self.config.dca_percentage, regime):
            return []

        qty = self._level_quantity(price, regime) * DCA_SIZE_FACTOR
        dca_price = price * DCA_PRICE_FACTOR
        res = self.reconciler.submit(Order(
            tag=f"{self.symbol}-dca-{bar_ts}", symbol=self.symbol,
            side=ORDER_BUY, order_type=ORDER_LIMIT, quantity=qty,
            price=dca_price, role=ROLE_DCA, generation=self.grid.generation,
            position_side=SIDE_LONG))
        if not res.ok:
            return []
        logger.info(f"{self.symbol}: DCA buy {qty:.6f} @ {dca_price:.2f}")
        return [AlertEvent(ALERT_INFO, self.symbol, "DCA buy placed",
                           (f"Price: {dca_price:.2f}", f"Qty: {qty:.6f}"))]

    def _level_quantity(self, price: float, regime: str) -> float:
        cfg = self.config
        return order_quantity(price, cfg.base_investment, cfg.grid_levels,
                              cfg.max_position_fraction,
                              regime or REGIME_UNKNOWN, cfg.min_lot,
                              cfg.regime_size_multipliers)

    # ─── Inventory ───────────────────────────────────────────────

    def _carry_inventory(self):
        """
        Fold every held lot into one carried lot (weighted buy price,
        earliest timestamp). Runs when a generation is replaced, so the
        map never keeps keys of dead generations or settled DCA buys.
        """
        lots = [lot for lot in self.inventory.values() if lot['quantity'] > QTY_EPS]
        if len(lots) <= 1 and CARRY_KEY in self.inventory:
            return
        qty = sum(lot['quantity'] for lot in lots)
        if qty <= QTY_EPS:
            self.inventory = {}
            return
        cost = sum(lot['buy_price'] * lot['quantity'] for lot in lots)
        self.inventory = {CARRY_KEY: {'buy_price': cost / qty, 'quantity': qty,
                                      'ts': min(lot['ts'] for lot in lots)}}
        logger.debug(f"{self.symbol}: carrying {qty:.6f} held @ {cost / qty:.2f}")

    def _consume_inventory(self, key: str, quantity: float) -> Optional[dict]:
        """
        Take `quantity` off held lots: the sold level first, then the
        oldest lots. Returns a copy of the first lot touched.
        """
        others = sorted((k for k in self.inventory if k != key),
                        key=lambda k: self.inventory[k]['ts'])
        order = ([key] if key in self.inventory else []) + others
        first = None
        remaining = quantity
        for k in order:
            if remaining <= QTY_EPS:
                break
            lot = self.inventory[k]
            if first is None:
                first = dict(lot)
            take = min(lot['quantity'], remaining)
            lot['quantity'] -= take
            remaining -= take
            if lot['quantity'] <= QTY_EPS:
                del self.inventory[k]
        return first

    # ─── Persistence ─────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            'state': self.grid.to_dict(),
            'inventory': dict(self.inventory),
            'expected_orders': self.expected_orders,
        }

    def restore(self, data: Optional[dict]):
        if not data:
            return
        self.grid = GridState.from_dict(data.get('state'), self.config.grid_mode)
        if self.grid.mode != self.config.grid_mode:
            self.grid = GridState(mode=self.config.grid_mode,
                                  generation=self.grid.generation)
        self.inventory = dict(data.get('inventory', {}))
        self.expected_orders = int(data.get('expected_orders', 0))

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
