"""
TradingEngine: multi-symbol driver and control surface.

One loop, fixed tick interval, symbols processed one after another.
Every symbol has its own SymbolContext (market buffer, grid, positions,
orders, state file) guarded by a lock that ticks and control operations
both take. A failure in one symbol never stops the others.

Per-symbol tick:
  1. Fetch candles → MarketObservation
  2. Poll order fills → grid inventory / GRID_SELL trades
  3. Classify regime
  4. Position lifecycle (TP / stops / hedge / protection) or entry signal
  5. Grid update (trailing re-anchor or adaptive rebalance + DCA)
  6. Periodic persist
"""
import time
import logging
import threading
from typing import Callable, Optional

from config import ENGINE_CONFIG
from core.performance import compute_performance
from core.regime import classify_regime, REGIME_UNKNOWN
from core.signals import multi_factor_entry
from engine.grid_planner import GridPlanner
from engine.lifecycle import PositionLifecycle, TransitionResult
from engine.market import MarketObservation
from engine.reconciler import OrderReconciler
from engine.types import (
    SymbolConfig, GridState, GRID_ROLES, REASON_MANUAL,
)
from live.exceptions import TransportError, ExchangeRejectedError
from live.state import StateManager
from live.telegram_notifier import (
    AlertEvent, ALERT_ERROR, ALERT_GRIDMOVE, ALERT_INFO, notify,
)

logger = logging.getLogger('engine')


class SymbolContext:
    """Everything the engine owns for one symbol."""

    def __init__(self, config: SymbolConfig, exchange, engine_config: dict,
                 state_manager: StateManager,
                 on_persist: Callable[["SymbolContext"], bool],
                 clock=time.time):
        self.config = config
        self.symbol = config.symbol
        self.state = state_manager
        self.lock = threading.Lock()
        self._on_persist = on_persist

        self.market = MarketObservation(
            config.symbol, capacity=engine_config.get('buffer_size', 200),
            atr_period=config.atr_period)
        self.reconciler = OrderReconciler(
            config.symbol, exchange,
            max_daily_orders=engine_config.get('max_daily_orders', 4550),
            recent_tag_memory=engine_config.get('recent_tag_memory', 500),
            clock=clock)
        self.lifecycle = PositionLifecycle(config, self.reconciler, self.persist, clock)
        self.planner = GridPlanner(config, self.reconciler, self.persist, clock)

        self.regime = REGIME_UNKNOWN
        self.last_signal = (None, '')
        self.last_tick_at = 0.0
        self.last_persist_at = 0.0
        self.last_error = ''

    def persist(self) -> bool:
        return self._on_persist(self)

    def apply_config(self, config: SymbolConfig):
        self.config = config
        self.market.atr_period = config.atr_period
        self.lifecycle.config = config
        self.planner.update_config(config)

    def snapshot(self) -> dict:
        return {
            'symbol': self.symbol,
            'config': self.config.to_dict(),
            'lifecycle': self.lifecycle.to_dict(),
            'grid': self.planner.to_dict(),
            'orders': self.reconciler.to_dict(),
            'performance': compute_performance(self.lifecycle.trades),
        }

    def restore(self, data: dict):
        self.lifecycle.restore(data.get('lifecycle'))
        self.planner.restore(data.get('grid'))
        self.reconciler.restore(data.get('orders'))


class TradingEngine:

    def __init__(self, exchange, symbol_configs: list,
                 engine_config: Optional[dict] = None,
                 trade_logger=None, health_monitor=None,
                 notifier: Callable[[AlertEvent], None] = notify,
                 clock=time.time):
        self.exchange = exchange
        self.engine_config = dict(ENGINE_CONFIG)
        self.engine_config.update(engine_config or {})
        self.trade_logger = trade_logger
        self.monitor = health_monitor
        self._notify = notifier
        self._clock = clock

        self.contexts = {}
        self._contexts_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

        for cfg in symbol_configs:
            self.add_symbol(cfg)

    # ─── Lifecycle ───────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> threading.Thread:
        """Run the driver loop in a background thread."""
        if self._thread and self._thread.is_alive():
            return self._thread
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name='trading-engine',
                                        daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, wait: bool = True, timeout: Optional[float] = None):
        """Request shutdown. The loop cancels orders and flushes before exiting."""
        self._stop_event.set()
        if wait and self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def run(self):
        """Main loop. Runs until stop() is called."""
        self._stopped.clear()
        self._running = True
        interval = self.engine_config.get('tick_interval_seconds', 20)
        logger.info(f"TradingEngine started for {', '.join(self.contexts)} "
                    f"(tick {interval}s)")
        self._alert(AlertEvent(ALERT_INFO, '*', "Engine started",
                               (f"Symbols: {', '.join(self.contexts)}",)))

        try:
            while not self._stop_event.is_set():
                started = time.time()
                self.tick_all()
                elapsed = time.time() - started
                self._stop_event.wait(max(interval - elapsed, 0.0))
        finally:
            self._shutdown()

    def tick_all(self) -> int:
        """One pass over every symbol. Returns the number of failed symbols."""
        failures = 0
        for symbol in list(self.contexts):
            if self._stop_event.is_set():
                break
            try:
                self.tick(symbol)
            except Exception as e:
                failures += 1
                logger.error(f"{symbol}: tick failed: {e}", exc_info=True)
                ctx = self.contexts.get(symbol)
                if ctx is not None:
                    ctx.last_error = str(e)
                if self.monitor and self.monitor.report_error(e, symbol):
                    self._alert(AlertEvent(ALERT_ERROR, symbol, "Repeated tick failures",
                                           (str(e),)))
        if failures == 0 and self.monitor:
            self.monitor.heartbeat()
        return failures

    def _shutdown(self):
        logger.info("Shutting down: cancelling orders and flushing state...")
        for symbol in list(self.contexts):
            ctx = self.contexts.get(symbol)
            if ctx is None:
                continue
            with ctx.lock:
                if not ctx.reconciler.cancel_all():
                    logger.warning(f"{symbol}: could not cancel all orders on shutdown")
                self._route_fills(ctx, ctx.reconciler.drain_settled())
                self._persist(ctx)

        if self.trade_logger:
            self.trade_logger.log_session_summary(
                {s: c.lifecycle.trades for s, c in self.contexts.items()})
        self._running = False
        self._stopped.set()
        self._alert(AlertEvent(ALERT_INFO, '*', "Engine stopped"))
        logger.info("Shutdown complete. Positions left open on exchange.")

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    # ─── Per-symbol Tick ─────────────────────────────────────────

    def tick(self, symbol: str) -> bool:
        """
        Process one symbol. Returns False when the tick was skipped
        because an earlier tick or control operation still holds the lock.
        """
        ctx = self._ctx(symbol)
        if not ctx.lock.acquire(blocking=False):
            logger.debug(f"{symbol}: previous tick still running, skipped")
            return False
        try:
            self._tick_symbol(ctx)
        finally:
            ctx.lock.release()
        return True

    def _tick_symbol(self, ctx: SymbolContext):
        cfg = ctx.config
        symbol = ctx.symbol

        # 1. Market data
        try:
            rows = self.exchange.fetch_candles(
                symbol, cfg.timeframe, self.engine_config.get('candle_limit', 100))
        except TransportError as e:
            logger.warning(f"{symbol}: candle fetch failed, skipping tick: {e}")
            return
        except ExchangeRejectedError as e:
            logger.error(f"{symbol}: candle fetch rejected: {e}")
            self._alert(AlertEvent(ALERT_ERROR, symbol, "Candle fetch rejected", (str(e),)))
            return

        ctx.market.ingest_many(rows)
        price = ctx.market.last_price
        if price is None:
            return
        ctx.last_tick_at = self._clock()

        # 2. Fills
        try:
            fills = ctx.reconciler.poll_fills()
        except TransportError as e:
            logger.warning(f"{symbol}: fill poll failed: {e}")
            fills = []
        self._route_fills(ctx, fills)

        # 3. Regime
        volatility = ctx.market.volatility_index()
        ctx.regime = classify_regime(
            ctx.market.prices(), volatility, cfg.bull_threshold,
            cfg.bear_threshold, cfg.volatility_threshold)

        # 4. Position lifecycle
        if ctx.lifecycle.main is not None:
            result = ctx.lifecycle.evaluate(price)
            self._apply_result(ctx, result)
            if result.short_circuit:
                self._persist_if_due(ctx)
                return
        else:
            signal, reason = multi_factor_entry(
                ctx.market.closes, ctx.market.volumes, cfg.ema_fast, cfg.ema_slow,
                cfg.rsi_period, cfg.rsi_long, cfg.rsi_short, cfg.volume_multiplier)
            ctx.last_signal = (signal, reason)
            if signal is not None:
                logger.info(f"{symbol}: entry signal {signal} ({reason})")
            self._apply_result(ctx, ctx.lifecycle.try_entry(
                signal, price, ctx.market.last_timestamp))

        # 5. Grid
        alerts = ctx.planner.update(price, ctx.market.atr(), volatility, ctx.regime,
                                    ctx.market.prices(), ctx.market.last_timestamp)
        for alert in alerts:
            if alert.kind == ALERT_GRIDMOVE and self.trade_logger:
                self.trade_logger.log_grid(symbol, ctx.planner.grid)
            self._alert(alert)

        # 6. Periodic persist
        self._persist_if_due(ctx)

    def _apply_result(self, ctx: SymbolContext, result: TransitionResult):
        for trade in result.trades:
            self._audit(ctx, trade)
        for alert in result.alerts:
            self._alert(alert)

    def _route_fills(self, ctx: SymbolContext, fills: list):
        """Book grid fills; a grid sell becomes a trade in the history."""
        for fill in fills:
            if fill.order.role not in GRID_ROLES:
                continue
            trade = ctx.planner.handle_fill(fill)
            if trade is not None:
                ctx.lifecycle.record_trade(trade)
                self._persist(ctx)
                self._audit(ctx, trade)

    # ─── Control Surface ─────────────────────────────────────────

    def force_rebalance(self, symbol: str):
        """Next tick rebuilds the grid regardless of cooldown."""
        ctx = self._ctx(symbol)
        with ctx.lock:
            ctx.planner.force_rebalance()
        logger.info(f"{symbol}: forced rebalance requested")

    def flush(self) -> dict:
        """Persist every symbol now. Returns {symbol: saved}."""
        results = {}
        for symbol in list(self.contexts):
            ctx = self.contexts.get(symbol)
            if ctx is None:
                continue
            with ctx.lock:
                results[symbol] = self._persist(ctx)
        return results

    def get_status(self, symbol: Optional[str] = None) -> dict:
        if symbol is not None:
            return self._symbol_status(self._ctx(symbol))
        return {
            'running': self._running,
            'health': self.monitor.get_status() if self.monitor else None,
            'symbols': {s: self._symbol_status(c) for s, c in list(self.contexts.items())},
        }

    def get_grid(self, symbol: str) -> dict:
        ctx = self._ctx(symbol)
        data = ctx.planner.to_dict()
        data['live_orders'] = [o.to_dict() for o in ctx.reconciler.live_orders.values()]
        return data

    def get_trades(self, symbol: str, limit: int = 50) -> list:
        trades = self._ctx(symbol).lifecycle.trades
        return [t.to_dict() for t in trades[-limit:]] if limit else []

    def get_performance(self, symbol: str) -> dict:
        return compute_performance(self._ctx(symbol).lifecycle.trades)

    def update_symbol_config(self, symbol: str, changes: dict) -> bool:
        """
        Apply a validated config change. Live grid orders are cancelled
        and the grid cleared so it is rebuilt from the new parameters.

        Raises ValueError for unknown fields or invalid values. Returns
        False (nothing applied) when the grid orders could not be cancelled.
        """
        ctx = self._ctx(symbol)
        with ctx.lock:
            new_config = ctx.config.apply_update(changes)
            invalidated = ctx.planner.invalidate()
            self._route_fills(ctx, ctx.reconciler.drain_settled())
            if not invalidated:
                return False
            ctx.apply_config(new_config)
            self._persist(ctx)
        logger.info(f"{symbol}: config updated {sorted(changes)}")
        return True

    def add_symbol(self, config: SymbolConfig) -> SymbolContext:
        """Register a symbol and restore its saved state."""
        with self._contexts_lock:
            if config.symbol in self.contexts:
                raise ValueError(f"Symbol {config.symbol} already managed")

            state_mgr = StateManager(self.engine_config['state_dir'], config.symbol)
            ctx = SymbolContext(config, self.exchange, self.engine_config, state_mgr,
                                on_persist=self._persist, clock=self._clock)

            saved = state_mgr.load()
            if saved:
                ctx.restore(saved)
                logger.info(f"{config.symbol}: restored state "
                            f"({ctx.lifecycle.state}, grid gen {ctx.planner.grid.generation}, "
                            f"{len(ctx.reconciler.live_orders)} live orders)")
            elif state_mgr.load_error:
                where = (f"Moved to {state_mgr.last_corrupt_path}"
                         if state_mgr.last_corrupt_path else state_mgr.load_error)
                self._alert(AlertEvent(
                    ALERT_ERROR, config.symbol, "State file corrupted",
                    (where, "Starting fresh")))

            self.contexts[config.symbol] = ctx
        return ctx

    def remove_symbol(self, symbol: str) -> bool:
        """Cancel the symbol's orders, save it and stop managing it."""
        ctx = self._ctx(symbol)
        with ctx.lock:
            cancelled = ctx.reconciler.cancel_all()
            self._route_fills(ctx, ctx.reconciler.drain_settled())
            if not cancelled:
                logger.warning(f"{symbol}: not removed, cancel failed")
                self._persist(ctx)
                return False
            self._persist(ctx)
            with self._contexts_lock:
                self.contexts.pop(symbol, None)
        logger.info(f"{symbol}: removed")
        return True

    def close_position(self, symbol: str) -> TransitionResult:
        """Manually close the main position (hedge first) at the last price."""
        ctx = self._ctx(symbol)
        with ctx.lock:
            price = ctx.market.last_price
            if price is None:
                return TransitionResult(ok=False, reason='no price')
            result = ctx.lifecycle.close_main(price, REASON_MANUAL)
            self._apply_result(ctx, result)
        return result

    # ─── Internal Helpers ────────────────────────────────────────

    def _ctx(self, symbol: str) -> SymbolContext:
        ctx = self.contexts.get(symbol)
        if ctx is None:
            raise KeyError(f"Unknown symbol {symbol}")
        return ctx

    def _persist(self, ctx: SymbolContext) -> bool:
        ok = ctx.state.save(ctx.snapshot())
        ctx.last_persist_at = self._clock()
        if not ok:
            logger.error(f"{ctx.symbol}: state save failed, continuing in memory")
            self._alert(AlertEvent(ALERT_ERROR, ctx.symbol, "State save failed"))
        return ok

    def _persist_if_due(self, ctx: SymbolContext):
        interval = self.engine_config.get('persist_interval_seconds', 300)
        if self._clock() - ctx.last_persist_at >= interval:
            self._persist(ctx)

    def _audit(self, ctx: SymbolContext, trade):
        ctx.state.save_trade(trade.to_dict())
        if self.trade_logger:
            self.trade_logger.log_trade(trade)

    def _alert(self, event: AlertEvent):
        logger.debug(f"ALERT {event.kind} {event.symbol}: {event.event}")
        try:
            self._notify(event)
        except Exception as e:
            logger.debug(f"Alert delivery failed: {e}")

    def _symbol_status(self, ctx: SymbolContext) -> dict:
        grid: GridState = ctx.planner.grid
        main = ctx.lifecycle.main
        hedge = ctx.lifecycle.hedge
        price = ctx.market.last_price
        return {
            'symbol': ctx.symbol,
            'policy': ctx.config.policy,
            'grid_mode': ctx.config.grid_mode,
            'state': ctx.lifecycle.state,
            'price': price,
            'regime': ctx.regime,
            'volatility': ctx.market.volatility_index(),
            'atr': ctx.market.atr(),
            'candles': len(ctx.market),
            'signal': {'signal': ctx.last_signal[0], 'reason': ctx.last_signal[1]},
            'main': dict(main.to_dict(), profit_pct=main.profit_pct(price))
            if main and price else (main.to_dict() if main else None),
            'hedge': dict(hedge.to_dict(), profit_pct=hedge.profit_pct(price))
            if hedge and price else (hedge.to_dict() if hedge else None),
            'grid': {
                'generation': grid.generation,
                'anchor': grid.anchor,
                'levels': len(grid.levels),
                'spacing': grid.spacing,
                'last_move_ts': grid.last_move_ts,
            },
            'live_orders': ctx.reconciler.live_count(),
            'daily_orders': ctx.reconciler.daily_orders,
            'last_tick_at': ctx.last_tick_at,
            'last_error': ctx.last_error,
        }
