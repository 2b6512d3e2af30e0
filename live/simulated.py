"""
SimulatedExchange: offline stand-in for BybitExecutor.

Generates a seeded random-walk candle stream per symbol and fills
orders against it:
  - market orders fill immediately at the last close
  - limit orders fill once a later candle trades through their price

Same public interface as BybitExecutor so the engine cannot tell the
two apart. Every fetch_candles() call closes one new bar.
"""
import time
import logging

import numpy as np

from engine.types import Order, ORDER_BUY, ORDER_MARKET
from live.exceptions import ExchangeRejectedError

logger = logging.getLogger('simulated_exchange')


class SimulatedExchange:

    def __init__(self, config: dict):
        self.start_price = config.get('start_price', 50000.0)
        self.bar_volatility = config.get('bar_volatility', 0.005)
        self.bar_ms = config.get('bar_ms', 60 * 1000)
        self._rng = np.random.RandomState(config.get('seed', 42))

        self._candles = {}   # symbol -> list of [ts, O, H, L, C, V]
        self._orders = {}    # exchange id -> order dict
        self._counter = 0

    # ─── Connection ──────────────────────────────────────────────

    def connect(self) -> bool:
        logger.info("Simulated exchange ready")
        return True

    def set_leverage(self, symbol: str, leverage: float) -> bool:
        return True

    # ─── Market Data ─────────────────────────────────────────────

    def fetch_candles(self, symbol: str, timeframe: str, limit: int = 100) -> list:
        candles = self._candles.get(symbol)
        if candles is None:
            candles = self._seed_history(symbol, limit)
        else:
            self._append_bar(symbol)
        return [list(c) for c in candles[-limit:]]

    def fetch_last_price(self, symbol: str) -> float:
        candles = self._candles.get(symbol)
        return float(candles[-1][4]) if candles else self.start_price

    # ─── Orders ──────────────────────────────────────────────────

    def place_order(self, order: Order) -> dict:
        if order.quantity <= 0:
            raise ExchangeRejectedError("Order quantity must be positive",
                                        error_code='InvalidOrder')

        self._counter += 1
        oid = f"SIM_{self._counter}_{int(time.time() * 1000)}"
        record = {
            'id': oid,
            'client_id': order.tag,
            'symbol': order.symbol,
            'side': order.side,
            'price': float(order.price or 0.0),
            'average': 0.0,
            'amount': float(order.quantity),
            'filled': 0.0,
            'status': 'open',
            'timestamp': self._now_ms(order.symbol),
        }
        if order.order_type == ORDER_MARKET:
            last = self.fetch_last_price(order.symbol)
            record.update(status='closed', average=last, price=last,
                          filled=record['amount'])

        self._orders[oid] = record
        logger.info(
            f"[SIM] {order.order_type.upper()} {order.side.upper()} "
            f"{order.quantity} {order.symbol} @ {record['price']} → id={oid}")
        return dict(record)

    def cancel_order(self, symbol: str, exchange_id: str) -> bool:
        record = self._orders.get(exchange_id)
        if record is None or record['status'] != 'open':
            return False
        record['status'] = 'canceled'
        return True

    def cancel_all_orders(self, symbol: str):
        for record in self._orders.values():
            if record['symbol'] == symbol and record['status'] == 'open':
                record['status'] = 'canceled'

    def fetch_open_orders(self, symbol: str) -> list:
        return [dict(r) for r in self._orders.values()
                if r['symbol'] == symbol and r['status'] == 'open']

    def fetch_order(self, symbol: str, exchange_id: str) -> dict:
        record = self._orders.get(exchange_id)
        if record is None:
            raise ExchangeRejectedError(f"Order {exchange_id} not found",
                                        error_code='OrderNotFound')
        return dict(record)

    def fetch_order_by_tag(self, symbol: str, tag: str):
        for record in self._orders.values():
            if record['symbol'] == symbol and record['client_id'] == tag:
                return dict(record)
        return None

    # ─── Price Process ───────────────────────────────────────────

    def _seed_history(self, symbol: str, count: int) -> list:
        self._candles[symbol] = []
        start = int(time.time() * 1000) - count * self.bar_ms
        price = self.start_price
        for i in range(count):
            price = self._make_bar(symbol, start + i * self.bar_ms, price)
        return self._candles[symbol]

    def _append_bar(self, symbol: str):
        last = self._candles[symbol][-1]
        self._make_bar(symbol, last[0] + self.bar_ms, last[4])
        self._match_limits(symbol, self._candles[symbol][-1])

    def _make_bar(self, symbol: str, ts: int, prev_close: float) -> float:
        step = self._rng.normal(0.0, self.bar_volatility)
        close = max(prev_close * (1.0 + step), 1e-8)
        wick = abs(self._rng.normal(0.0, self.bar_volatility / 2))
        high = max(prev_close, close) * (1.0 + wick)
        low = min(prev_close, close) * (1.0 - wick)
        volume = float(self._rng.uniform(50.0, 150.0))
        self._candles[symbol].append([ts, prev_close, high, low, close, volume])
        return close

    def _match_limits(self, symbol: str, bar: list):
        _, _, high, low, _, _ = bar
        for record in self._orders.values():
            if record['symbol'] != symbol or record['status'] != 'open':
                continue
            crossed = (low <= record['price'] if record['side'] == ORDER_BUY
                       else high >= record['price'])
            if crossed:
                record.update(status='closed', average=record['price'],
                              filled=record['amount'])
                logger.debug(f"[SIM] Order {record['id']} filled @ {record['price']}")

    def _now_ms(self, symbol: str) -> int:
        candles = self._candles.get(symbol)
        return int(candles[-1][0]) if candles else int(time.time() * 1000)
