"""
PositionLifecycle: main position + protective hedge state machine.

    FLAT ──entry──▶ OPEN ──loss ≥ hedge_loss──▶ HEDGED
                     ▲                            │
                     └──────── hedge stop ────────┘
    OPEN / HEDGED ──TP / main stop / manual──▶ CLOSED ──▶ FLAT

Each transition is: exchange call → state mutation → persist callback.
A failed exchange call leaves the state untouched; the same condition
is seen again on the next tick and retried there.

Order tags derive from the position they act on, so a retry always
reuses the tag of the first attempt. An order whose reply was lost is
looked up by that tag before any rule runs, and applied if it went
through.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from engine.types import (
    SymbolConfig, Position, Order, TradeRecord,
    POLICY_GRID_WITH_HEDGE, ORDER_MARKET,
    SIDE_LONG, STATE_FLAT, STATE_OPEN, STATE_HEDGED,
    ROLE_MAIN_OPEN, ROLE_MAIN_CLOSE, ROLE_HEDGE_OPEN, ROLE_HEDGE_CLOSE,
    REASON_TAKE_PROFIT, REASON_STOP_LOSS, REASON_HEDGE_STOP,
    REASON_MAIN_CLOSED, REASON_MANUAL,
    TRADE_MAIN, TRADE_HEDGE,
    opposite_side, entry_order_side, exit_order_side,
)
from live.telegram_notifier import (
    AlertEvent, ALERT_OPEN, ALERT_CLOSE, ALERT_HEDGE, ALERT_STOP, ALERT_WARN, ALERT_ERROR,
)

logger = logging.getLogger('lifecycle')

TRADE_HISTORY_LIMIT = 500
POSITION_ROLES = (ROLE_MAIN_OPEN, ROLE_HEDGE_OPEN, ROLE_HEDGE_CLOSE, ROLE_MAIN_CLOSE)


@dataclass
class TransitionResult:
    ok: bool
    action: str = 'noop'
    reason: str = ''
    short_circuit: bool = False
    trades: list = field(default_factory=list)
    alerts: list = field(default_factory=list)

    def merge(self, other: 'TransitionResult'):
        self.trades.extend(other.trades)
        self.alerts.extend(other.alerts)


class PositionLifecycle:

    def __init__(self, config: SymbolConfig, reconciler,
                 persist: Optional[Callable[[], None]] = None,
                 clock=time.time):
        self.config = config
        self.symbol = config.symbol
        self.reconciler = reconciler
        self._persist = persist or (lambda: None)
        self._clock = clock

        self.main: Optional[Position] = None
        self.hedge: Optional[Position] = None
        self.trades = []

    @property
    def state(self) -> str:
        if self.main is None:
            return STATE_FLAT
        return STATE_HEDGED if self.hedge is not None else STATE_OPEN

    @property
    def hedging_enabled(self) -> bool:
        return self.config.policy == POLICY_GRID_WITH_HEDGE

    # ─── Entry ───────────────────────────────────────────────────

    def entry_size(self, price: float) -> tuple:
        """
        size = capital * risk% / 100 * leverage / price, floored at min_lot.

        Returns:
            (size, below_minimum)
        """
        cfg = self.config
        size = cfg.capital * cfg.risk_percent / 100.0 * cfg.leverage / price
        if size < cfg.min_lot:
            return cfg.min_lot, True
        return size, False

    def try_entry(self, signal: Optional[str], price: float,
                  bar_ts: int) -> TransitionResult:
        """Open the main position on a long/short signal when FLAT."""
        if self.main is not None or not self.hedging_enabled:
            return TransitionResult(ok=False)

        resumed = self.resume_pending(price)
        if resumed.action != 'noop':
            return resumed
        if signal is None:
            return TransitionResult(ok=False)
        if price <= 0:
            return TransitionResult(ok=False, reason='no price')

        result = TransitionResult(ok=False, action='open')
        size, below_min = self.entry_size(price)
        if below_min:
            logger.warning(f"{self.symbol}: lot size below minimum, using {size}")
            result.alerts.append(AlertEvent(
                ALERT_WARN, self.symbol, "Lot size below minimum",
                (f"Calculated size under min lot, using {size}",)))

        order = Order(tag=f"{self.symbol}-mo-{bar_ts}", symbol=self.symbol,
                      side=entry_order_side(signal), order_type=ORDER_MARKET,
                      quantity=size, role=ROLE_MAIN_OPEN, position_side=signal)
        sub = self.reconciler.submit(order)
        if not sub.ok:
            failed = _failed(self.symbol, 'open', sub)
            failed.alerts[:0] = result.alerts
            return failed

        opened = self._open_main(sub.order, sub.fill_price or price)
        result.ok = True
        result.merge(opened)
        return result

    def _open_main(self, order: Order, fill: float) -> TransitionResult:
        side = order.position_side
        self.main = Position(side=side, entry_price=fill, size=order.quantity,
                             open_ts=self._now_ms(), order_id=order.tag)
        self._persist()

        logger.info(f"{self.symbol}: main {side.upper()} opened "
                    f"{order.quantity:.6f} @ {fill:.2f}")
        return TransitionResult(ok=True, action='open', alerts=[AlertEvent(
            ALERT_OPEN, self.symbol, f"Main {side.upper()} opened",
            (f"Entry: {fill:.2f}", f"Size: {order.quantity:.6f}"))])

    # ─── Lost Replies ────────────────────────────────────────────

    def resume_pending(self, price: float) -> TransitionResult:
        """
        Settle position orders whose placement reply was lost.

        An order found at the venue is applied as if it had just filled.
        One the venue never saw is dropped and the rules decide again.
        While a lookup keeps failing the result is ok=False with action
        'pending', and no other position order is sent this tick.
        """
        result = TransitionResult(ok=True)
        for order in self.reconciler.pending_orders(POSITION_ROLES):
            sub = self.reconciler.resolve(order.tag)
            if sub.transient:
                result.ok = False
                result.action = 'pending'
                continue
            if not sub.ok:
                continue
            applied = self._apply_recovered(sub.order, sub.fill_price or price)
            result.merge(applied)
            if result.action == 'noop':
                result.action = 'recovered'
        return result

    def _apply_recovered(self, order: Order, fill: float) -> TransitionResult:
        role = order.role
        if role == ROLE_MAIN_OPEN and self.main is None:
            return self._open_main(order, fill)
        if role == ROLE_HEDGE_OPEN and self.main is not None and self.hedge is None:
            return self._open_hedge(order, fill)
        if role == ROLE_HEDGE_CLOSE and self.hedge is not None:
            return self._finish_hedge_close(order.reason or REASON_HEDGE_STOP, fill)
        if role == ROLE_MAIN_CLOSE and self.main is not None:
            return self._finish_main_close(order.reason or REASON_MANUAL, fill)
        logger.warning(f"{self.symbol}: recovered {role} order {order.tag} "
                       f"does not match state {self.state}, ignored")
        return TransitionResult(ok=False, reason='stale order')

    # ─── Per-tick Evaluation ─────────────────────────────────────

    def evaluate(self, price: float) -> TransitionResult:
        """
        Run the protection rules for the current price.

        Order: settle lost replies, take-profit (ends the tick), main
        stop, hedge open, hedge stop, main protection.
        """
        if self.main is None or price <= 0:
            return TransitionResult(ok=True)

        result = self.resume_pending(price)
        if result.action == 'pending':
            return result
        if self.main is None:
            result.short_circuit = True
            return result
        result.action = 'evaluate'

        cfg = self.config
        profit = self.main.profit_pct(price)

        if profit >= cfg.main_tp_percent:
            return _after(result, self.close_main(price, REASON_TAKE_PROFIT))

        if self.main.stop_crossed(price):
            return _after(result, self.close_main(price, REASON_STOP_LOSS))

        if self.hedge is None and self.hedging_enabled and profit <= -cfg.hedge_loss_percent:
            sub = self.open_hedge(price)
            result.merge(sub)
            result.ok = result.ok and sub.ok

        if self.hedge is not None:
            sub = self._update_hedge_stop(price)
            result.merge(sub)
            result.ok = result.ok and sub.ok

        if self.main.stop_loss is None and profit > cfg.main_protection_start_percent:
            offset = cfg.main_protection_percent / 100.0
            stop = (self.main.entry_price * (1.0 + offset) if self.main.side == SIDE_LONG
                    else self.main.entry_price * (1.0 - offset))
            if self.main.attach_stop(stop):
                self._persist()
                logger.info(f"{self.symbol}: main protection stop set @ {stop:.2f} "
                            f"(profit {profit:.2f}%)")
                result.alerts.append(AlertEvent(
                    ALERT_STOP, self.symbol, "Main protection activated",
                    (f"Stop: {stop:.2f}", f"Profit: {profit:.2f}%")))

        return result

    # ─── Hedge ───────────────────────────────────────────────────

    def open_hedge(self, price: float) -> TransitionResult:
        if self.main is None or self.hedge is not None:
            logger.warning(f"{self.symbol}: hedge open refused in state {self.state}")
            return TransitionResult(ok=False, reason='invalid state')

        side = opposite_side(self.main.side)
        order = Order(tag=self._tag("ho", self.main.hedges + 1),
                      symbol=self.symbol, side=entry_order_side(side),
                      order_type=ORDER_MARKET, quantity=self.main.size,
                      role=ROLE_HEDGE_OPEN, position_side=side)
        sub = self.reconciler.submit(order)
        if not sub.ok:
            return _failed(self.symbol, 'hedge_open', sub)
        return self._open_hedge(sub.order, sub.fill_price or price)

    def _open_hedge(self, order: Order, fill: float) -> TransitionResult:
        side = order.position_side
        self.hedge = Position(side=side, entry_price=fill, size=order.quantity,
                              open_ts=self._now_ms(), order_id=order.tag,
                              is_hedge=True, parent_order_id=self.main.order_id)
        self.main.hedges += 1
        self._persist()

        logger.info(f"{self.symbol}: hedge {side.upper()} opened @ {fill:.2f}")
        return TransitionResult(ok=True, action='hedge_open', alerts=[AlertEvent(
            ALERT_HEDGE, self.symbol, f"Hedge {side.upper()} opened",
            (f"Entry: {fill:.2f}", f"Size: {order.quantity:.6f}"))])

    def _update_hedge_stop(self, price: float) -> TransitionResult:
        hedge = self.hedge
        if hedge.stop_crossed(price):
            return self.close_hedge(price, REASON_HEDGE_STOP)

        hedge_profit = hedge.profit_pct(price)
        if hedge.stop_loss is None and hedge_profit >= self.config.hedge_tp_percent:
            offset = (hedge_profit - self.config.hedge_sl_percent) / 100.0
            stop = (hedge.entry_price * (1.0 + offset) if hedge.side == SIDE_LONG
                    else hedge.entry_price * (1.0 - offset))
            if hedge.attach_stop(stop):
                self._persist()
                logger.info(f"{self.symbol}: hedge stop set @ {stop:.2f} "
                            f"(hedge profit {hedge_profit:.2f}%)")
                return TransitionResult(ok=True, action='hedge_stop', alerts=[AlertEvent(
                    ALERT_STOP, self.symbol, "Hedge stop activated",
                    (f"Stop: {stop:.2f}", f"Profit: {hedge_profit:.2f}%"))])
        return TransitionResult(ok=True)

    def close_hedge(self, price: float, reason: str) -> TransitionResult:
        if self.hedge is None:
            return TransitionResult(ok=False, reason='no hedge')

        sub = self._submit_close(self.hedge, reason, ROLE_HEDGE_CLOSE,
                                 self._tag("hc", self.main.hedges))
        if not sub.ok:
            return _failed(self.symbol, 'hedge_close', sub)
        return self._finish_hedge_close(reason, sub.fill_price or price)

    def _finish_hedge_close(self, reason: str, exit_price: float) -> TransitionResult:
        trade = self._book_close(self.hedge, exit_price, reason, TRADE_HEDGE)
        self.hedge = None
        self._persist()
        return TransitionResult(ok=True, action='hedge_close', reason=reason,
                                trades=[trade], alerts=[_close_alert(trade, 'Hedge')])

    # ─── Main Close ──────────────────────────────────────────────

    def close_main(self, price: float, reason: str = REASON_MANUAL) -> TransitionResult:
        """
        Close the main position, hedge first.

        If the hedge closes but the main close fails, the hedge close
        stays committed and the main close is retried next tick.
        """
        if self.main is None:
            return TransitionResult(ok=False, reason='no position')

        result = TransitionResult(ok=False, action='close', reason=reason)
        if self.hedge is not None:
            sub = self.close_hedge(price, REASON_MAIN_CLOSED)
            result.merge(sub)
            if not sub.ok:
                return result

        sub = self._submit_close(self.main, reason, ROLE_MAIN_CLOSE, self._tag("mc"))
        if not sub.ok:
            result.merge(_failed(self.symbol, 'close', sub))
            return result

        closed = self._finish_main_close(reason, sub.fill_price or price)
        result.ok = True
        result.merge(closed)
        return result

    def _finish_main_close(self, reason: str, exit_price: float) -> TransitionResult:
        trade = self._book_close(self.main, exit_price, reason, TRADE_MAIN)
        self.main = None
        self._persist()
        return TransitionResult(ok=True, action='close', reason=reason,
                                trades=[trade], alerts=[_close_alert(trade, 'Main')])

    def _submit_close(self, pos: Position, reason: str, role: str, tag: str):
        order = Order(tag=tag, symbol=self.symbol, side=exit_order_side(pos.side),
                      order_type=ORDER_MARKET, quantity=pos.size, role=role,
                      reduce_only=True, position_side=pos.side, reason=reason)
        sub = self.reconciler.submit(order)
        if not sub.ok:
            logger.warning(f"{self.symbol}: {role} failed ({reason}): {sub.error}")
        return sub

    def _book_close(self, pos: Position, exit_price: float, reason: str,
                    trade_type: str) -> TradeRecord:
        trade = TradeRecord(
            symbol=self.symbol, trade_type=trade_type, side=pos.side,
            entry_price=pos.entry_price, exit_price=exit_price, size=pos.size,
            open_ts=pos.open_ts, close_ts=self._now_ms(),
            profit_pct=pos.profit_pct(exit_price), close_reason=reason,
            order_id=pos.order_id)
        self.record_trade(trade)
        logger.info(f"{self.symbol}: {trade_type} {pos.side.upper()} closed @ "
                    f"{exit_price:.2f} ({trade.profit_pct:+.2f}%) [{reason}]")
        return trade

    # ─── Persistence ─────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            'state': self.state,
            'main': self.main.to_dict() if self.main else None,
            'hedge': self.hedge.to_dict() if self.hedge else None,
            'trades': [t.to_dict() for t in self.trades],
        }

    def restore(self, data: Optional[dict]):
        if not data:
            return
        self.main = Position.from_dict(data.get('main'))
        self.hedge = Position.from_dict(data.get('hedge'))
        if self.main is None and self.hedge is not None:
            logger.warning(f"{self.symbol}: dropping orphan hedge from saved state")
            self.hedge = None
        self.trades = [TradeRecord.from_dict(t) for t in data.get('trades', [])]

    def record_trade(self, trade: TradeRecord):
        self.trades.append(trade)
        if len(self.trades) > TRADE_HISTORY_LIMIT:
            self.trades = self.trades[-TRADE_HISTORY_LIMIT:]

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _tag(self, code: str, hedge_no: Optional[int] = None) -> str:
        """Tag tied to the main position: its entry bar, plus the hedge number."""
        main = self.main
        key = main.order_id.rsplit('-', 1)[-1] if main.order_id else str(main.open_ts)
        suffix = f"-{hedge_no}" if hedge_no is not None else ''
        return f"{self.symbol}-{code}-{key}{suffix}"


def _after(earlier: TransitionResult, res: TransitionResult) -> TransitionResult:
    """A tick-ending transition, keeping what happened before it."""
    res.trades[:0] = earlier.trades
    res.alerts[:0] = earlier.alerts
    res.short_circuit = True
    return res


def _close_alert(trade: TradeRecord, label: str) -> AlertEvent:
    return AlertEvent(
        ALERT_CLOSE, trade.symbol, f"{label} {trade.side.upper()} closed",
        (f"Entry: {trade.entry_price:.2f}", f"Exit: {trade.exit_price:.2f}",
         f"Profit: {trade.profit_pct:+.2f}%", f"Reason: {trade.close_reason}"))


def _failed(symbol: str, action: str, sub) -> TransitionResult:
    """Failed transition; rejections (not transport errors) raise an error alert."""
    result = TransitionResult(ok=False, action=action, reason=sub.error)
    if not sub.transient and not sub.duplicate:
        result.alerts.append(AlertEvent(
            ALERT_ERROR, symbol, f"{action} rejected", (sub.error,)))
    return result
