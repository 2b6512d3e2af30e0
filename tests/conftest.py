"""
Shared fixtures: temp dirs, a controllable clock and a scripted exchange.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import shutil
import tempfile

import pytest

from engine.types import SymbolConfig, ORDER_MARKET
from live.exceptions import TransportError, ExchangeRejectedError


class FakeClock:
    """Callable clock (seconds) that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeExchange:
    """
    In-memory exchange with the adapter interface.

    Market orders fill at the current price. Limit orders stay open
    until fill() or cancel. Failures are scripted per call type.
    """

    def __init__(self):
        self.candles = {}            # symbol -> [[ts, O, H, L, C, V], ...]
        self.prices = {}
        self.orders = {}             # id -> dict
        self.placed = []             # Order objects in submission order
        self.reject_roles = set()
        self.transport_down = False
        self.fail_cancel = None      # exception raised by cancel calls
        self.fail_candles = {}       # symbol -> exception
        self.fail_fetch_order = None
        self.lose_reply_roles = set()  # accept the order, then time out
        self._counter = 0

    # ─── Scripting ───────────────────────────────────────────────

    def seed(self, symbol: str, prices, start_ts: int = 1_700_000_000_000,
             bar_ms: int = 60_000, spread: float = 0.01, volume: float = 100.0):
        self.candles[symbol] = []
        for i, p in enumerate(prices):
            self.candles[symbol].append(
                [start_ts + i * bar_ms, p, p * (1 + spread), p * (1 - spread), p, volume])
        self.prices[symbol] = float(prices[-1])

    def set_price(self, symbol: str, price: float, bar_ms: int = 60_000):
        rows = self.candles.setdefault(symbol, [])
        ts = rows[-1][0] + bar_ms if rows else 1_700_000_000_000
        rows.append([ts, price, price, price, price, 100.0])
        self.prices[symbol] = float(price)

    def fill(self, exchange_id: str, price: float = None):
        order = self.orders[exchange_id]
        order.update(status='closed', filled=order['amount'],
                     average=price if price is not None else order['price'])

    def open_orders(self, symbol: str = None) -> list:
        return [o for o in self.orders.values()
                if o['status'] == 'open' and (symbol is None or o['symbol'] == symbol)]

    def placed_roles(self) -> list:
        return [o.role for o in self.placed]

    # ─── Adapter Interface ───────────────────────────────────────

    def connect(self) -> bool:
        return True

    def set_leverage(self, symbol, leverage) -> bool:
        return True

    def fetch_candles(self, symbol, timeframe, limit=100):
        self._check_transport()
        if symbol in self.fail_candles:
            raise self.fail_candles[symbol]
        return [list(r) for r in self.candles.get(symbol, [])[-limit:]]

    def place_order(self, order):
        self._check_transport()
        if order.role in self.reject_roles:
            raise ExchangeRejectedError(f"{order.role} rejected", error_code='InvalidOrder')

        self._counter += 1
        oid = f"F{self._counter}"
        record = {
            'id': oid, 'client_id': order.tag, 'symbol': order.symbol,
            'side': order.side, 'price': float(order.price or 0.0),
            'average': 0.0, 'amount': order.quantity, 'filled': 0.0,
            'status': 'open', 'timestamp': 1_700_000_000_000 + self._counter,
            'role': order.role,
        }
        if order.order_type == ORDER_MARKET:
            last = self.prices.get(order.symbol, 0.0)
            record.update(status='closed', average=last, price=last,
                          filled=order.quantity)
        self.orders[oid] = record
        self.placed.append(order)
        if order.role in self.lose_reply_roles:
            raise TransportError("read timeout")
        return dict(record)

    def cancel_order(self, symbol, exchange_id):
        self._check_transport()
        if self.fail_cancel is not None:
            raise self.fail_cancel
        order = self.orders.get(exchange_id)
        if order is None or order['status'] != 'open':
            return False
        order['status'] = 'canceled'
        return True

    def cancel_all_orders(self, symbol):
        self._check_transport()
        if self.fail_cancel is not None:
            raise self.fail_cancel
        for order in self.open_orders(symbol):
            order['status'] = 'canceled'

    def fetch_open_orders(self, symbol):
        self._check_transport()
        return [dict(o) for o in self.open_orders(symbol)]

    def fetch_order(self, symbol, exchange_id):
        self._check_transport()
        if self.fail_fetch_order is not None:
            raise self.fail_fetch_order
        if exchange_id not in self.orders:
            raise ExchangeRejectedError("not found", error_code='OrderNotFound')
        return dict(self.orders[exchange_id])

    def fetch_order_by_tag(self, symbol, tag):
        self._check_transport()
        for order in self.orders.values():
            if order['symbol'] == symbol and order['client_id'] == tag:
                return dict(order)
        return None

    def _check_transport(self):
        if self.transport_down:
            raise TransportError("connection refused")


# ─── Fixtures ────────────────────────────────────────────────────

@pytest.fixture
def tmp_dir():
    """Create a temporary directory for test files."""
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def make_config():
    def _make(symbol='BTCUSDT', **overrides):
        return SymbolConfig.from_dict(symbol, overrides)
    return _make
