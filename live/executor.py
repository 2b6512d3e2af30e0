"""
BybitExecutor: Exchange API interaction layer.

Wraps ccxt for Bybit v5 USDT linear perpetuals. ccxt signs every
private request (HMAC-SHA256 over timestamp + key + recvWindow + payload)
and turns a non-zero retCode into an ExchangeError.

Errors leave this module as one of two types:
  - TransportError        network failure / timeout, retry next tick
  - ExchangeRejectedError venue rejected the request, do not retry
"""
import time
import logging
from typing import Optional

import ccxt

from engine.types import Order, SIDE_LONG, SIDE_SHORT
from live.exceptions import TransportError, ExchangeRejectedError

logger = logging.getLogger('executor')

# Bybit kline interval → ccxt timeframe
_TIMEFRAMES = {
    '1': '1m', '3': '3m', '5': '5m', '15': '15m', '30': '30m',
    '60': '1h', '120': '2h', '240': '4h', '360': '6h', '720': '12h',
    'D': '1d', 'W': '1w', 'M': '1M',
}

# Hedge-mode position index per position side
_POSITION_IDX = {SIDE_LONG: 1, SIDE_SHORT: 2}


def to_ccxt_timeframe(timeframe: str) -> str:
    return _TIMEFRAMES.get(str(timeframe), str(timeframe))


def to_unified_symbol(symbol: str) -> str:
    """'BTCUSDT' → 'BTC/USDT:USDT' (linear perpetual)."""
    if '/' in symbol:
        return symbol
    if symbol.endswith('USDT'):
        return f"{symbol[:-4]}/USDT:USDT"
    return symbol


class BybitExecutor:

    def __init__(self, api_key: str, api_secret: str, config: dict,
                 testnet: bool = False):
        self.config = config
        self.testnet = testnet
        self.hedge_mode = config.get('hedge_mode', True)
        self._max_retries = config.get('max_retry_attempts', 1)
        self._retry_delay = config.get('retry_delay_seconds', 1)

        opts = {
            'apiKey': api_key,
            'secret': api_secret,
            'enableRateLimit': True,
            'timeout': config.get('request_timeout_ms', 5000),
            'options': {
                'defaultType': 'swap',
                'recvWindow': config.get('recv_window_ms', 60000),
            },
        }
        self.exchange = ccxt.bybit(opts)
        if testnet:
            self.exchange.set_sandbox_mode(True)

        self._markets_loaded = False

    # ─── Connection ──────────────────────────────────────────────

    def connect(self) -> bool:
        """Load markets."""
        try:
            self.exchange.load_markets()
            self._markets_loaded = True
            logger.info("Markets loaded successfully")
            return True
        except Exception as e:
            logger.error(f"Failed to connect: {e}")
            return False

    def set_leverage(self, symbol: str, leverage: float) -> bool:
        """Set leverage for a symbol (both sides)."""
        try:
            self.exchange.set_leverage(int(leverage), to_unified_symbol(symbol))
            logger.info(f"Leverage set to {int(leverage)}x for {symbol}")
            return True
        except Exception as e:
            # Bybit rejects an unchanged leverage with "leverage not modified"
            logger.warning(f"Failed to set leverage: {e}")
            return False

    # ─── Market Data ─────────────────────────────────────────────

    def fetch_candles(self, symbol: str, timeframe: str, limit: int = 100) -> list:
        """Most recent candles as [ts, O, H, L, C, V], oldest first."""
        rows = self._call(self.exchange.fetch_ohlcv, to_unified_symbol(symbol),
                          to_ccxt_timeframe(timeframe), limit=limit)
        return sorted(rows or [], key=lambda r: r[0])

    def fetch_last_price(self, symbol: str) -> float:
        ticker = self._call(self.exchange.fetch_ticker, to_unified_symbol(symbol))
        return float(ticker.get('last', 0) or 0)

    # ─── Orders ──────────────────────────────────────────────────

    def place_order(self, order: Order) -> dict:
        """Submit an order. The order tag travels as orderLinkId."""
        unified = to_unified_symbol(order.symbol)
        amount = self._amount_precision(unified, order.quantity)
        price = (self._price_precision(unified, order.price)
                 if order.price is not None else None)

        params = {'orderLinkId': order.tag}
        if self.hedge_mode and order.position_side:
            params['positionIdx'] = _POSITION_IDX[order.position_side]
        if order.reduce_only:
            params['reduceOnly'] = True

        raw = self._call(self.exchange.create_order, unified, order.order_type,
                         order.side, amount, price, params)
        logger.info(
            f"{order.order_type.upper()} {order.side.upper()} {amount} {order.symbol}"
            f"{' @ ' + str(price) if price else ''} [{order.role}] → id={raw['id']}")
        return self._normalize_order(raw)

    def cancel_order(self, symbol: str, exchange_id: str) -> bool:
        """Cancel one order. An unknown order counts as already gone."""
        try:
            self._call(self.exchange.cancel_order, exchange_id,
                       to_unified_symbol(symbol))
            logger.info(f"Cancelled order {exchange_id}")
            return True
        except ExchangeRejectedError as e:
            if e.error_code == 'OrderNotFound':
                logger.warning(f"Order {exchange_id} not found (already filled/cancelled)")
                return False
            raise

    def cancel_all_orders(self, symbol: str):
        self._call(self.exchange.cancel_all_orders, to_unified_symbol(symbol))
        logger.info(f"Cancelled all orders for {symbol}")

    def fetch_open_orders(self, symbol: str) -> list:
        orders = self._call(self.exchange.fetch_open_orders,
                            to_unified_symbol(symbol))
        return [self._normalize_order(o) for o in orders or []]

    def fetch_order(self, symbol: str, exchange_id: str) -> dict:
        """Order history lookup for an order no longer open."""
        unified = to_unified_symbol(symbol)
        if self.exchange.has.get('fetchClosedOrder'):
            raw = self._call(self.exchange.fetch_closed_order, exchange_id, unified)
        else:
            raw = self._call(self.exchange.fetch_order, exchange_id, unified)
        return self._normalize_order(raw)

    def fetch_order_by_tag(self, symbol: str, tag: str) -> Optional[dict]:
        """
        Find an order by its orderLinkId, open orders first, then history.
        Returns None when Bybit has no order with that tag.
        """
        unified = to_unified_symbol(symbol)
        params = {'orderLinkId': tag}
        lookups = [self.exchange.fetch_open_orders]
        if self.exchange.has.get('fetchCanceledAndClosedOrders'):
            lookups.append(self.exchange.fetch_canceled_and_closed_orders)
        else:
            lookups.append(self.exchange.fetch_closed_orders)

        for lookup in lookups:
            rows = self._call(lookup, unified, None, None, params)
            for raw in rows or []:
                if raw.get('clientOrderId') == tag:
                    return self._normalize_order(raw)
        logger.info(f"No order with tag {tag} on {symbol}")
        return None

    # ─── Normalization ───────────────────────────────────────────

    @staticmethod
    def _normalize_order(o: dict) -> dict:
        status = o.get('status') or 'open'
        if status == 'cancelled':
            status = 'canceled'
        return {
            'id': str(o.get('id', '')),
            'client_id': o.get('clientOrderId') or '',
            'side': o.get('side', ''),
            'price': float(o.get('price', 0) or 0),
            'average': float(o.get('average', 0) or o.get('price', 0) or 0),
            'amount': float(o.get('amount', 0) or 0),
            'filled': float(o.get('filled', 0) or 0),
            'status': status,
            'timestamp': int(o.get('timestamp', 0) or 0),
        }

    # ─── Precision Helpers ───────────────────────────────────────

    def _amount_precision(self, symbol: str, amount: float) -> float:
        if not self._markets_loaded:
            return amount
        try:
            return float(self.exchange.amount_to_precision(symbol, amount))
        except Exception:
            return amount

    def _price_precision(self, symbol: str, price: float) -> float:
        if not self._markets_loaded:
            return price
        try:
            return float(self.exchange.price_to_precision(symbol, price))
        except Exception:
            return price

    # ─── Retry Logic ─────────────────────────────────────────────

    def _call(self, func, *args, **kwargs):
        """
        Run a ccxt call with exponential backoff on network errors.

        Raises TransportError once retries run out and
        ExchangeRejectedError immediately on an application error.
        """
        retries = self._max_retries
        for attempt in range(retries + 1):
            try:
                return func(*args, **kwargs)
            except ccxt.RateLimitExceeded as e:
                if attempt < retries:
                    delay = 10 * (attempt + 1)
                    logger.warning(f"Rate limited. Waiting {delay}s...")
                    time.sleep(delay)
                else:
                    raise TransportError(str(e), status_code=429) from e
            except ccxt.NetworkError as e:
                if attempt < retries:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(f"Network error (attempt {attempt + 1}): {e}. "
                                   f"Retrying in {delay}s...")
                    time.sleep(delay)
                else:
                    raise TransportError(str(e)) from e
            except ccxt.ExchangeError as e:
                raise ExchangeRejectedError(str(e), error_code=type(e).__name__) from e
        raise TransportError("retries exhausted")
