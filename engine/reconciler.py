"""
OrderReconciler: bridges locally tracked orders and the exchange.

Orders are keyed by tag. A tag that is live or was submitted recently is
never sent twice, so a retried tick cannot double-place an order.
Fills are detected by diffing tracked orders against exchange open orders
and looking the missing ones up in order history.

A placement whose reply is lost to a transport error is kept as
"unknown". Before that tag is sent again the venue is asked for it by
tag; an order that did go through is accepted as if the reply had
arrived. Orders that fill while being cancelled are settled from
history and handed out by the next poll_fills().
"""
import time
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from engine.types import Order, Fill, ORDER_MARKET, ORDER_LIMIT
from live.exceptions import ExchangeAPIError, TransportError

logger = logging.getLogger('reconciler')

DAY_SECONDS = 24 * 60 * 60
FILLED_STATUSES = ('closed', 'filled')
DEAD_STATUSES = ('canceled', 'cancelled', 'expired', 'rejected')
QTY_EPS = 1e-12


@dataclass
class SubmitResult:
    ok: bool
    order: Optional[Order] = None
    duplicate: bool = False
    transient: bool = False
    error: str = ''
    fill_price: Optional[float] = None
    fill_quantity: Optional[float] = None
    recovered: bool = False


class OrderReconciler:

    def __init__(self, symbol: str, exchange, max_daily_orders: int = 4550,
                 recent_tag_memory: int = 500, clock=time.time):
        self.symbol = symbol
        self.exchange = exchange
        self.max_daily_orders = max_daily_orders
        self.recent_tag_memory = recent_tag_memory
        self._clock = clock

        self.live_orders = {}            # tag -> Order
        self.unknown_orders = {}         # tag -> Order, placement reply lost
        self._settled = []               # fills found while cancelling
        self._recent_tags = OrderedDict()
        self.daily_orders = 0
        self._day_start = clock()

    # ─── Submission ──────────────────────────────────────────────

    def submit(self, order: Order) -> SubmitResult:
        """
        Send an order unless its tag is already known.

        A rejection changes nothing locally, so the next tick may retry.
        A transport error marks the tag unknown; submitting it again
        first asks the venue whether the earlier attempt went through.
        """
        if order.tag in self.live_orders or order.tag in self._recent_tags:
            logger.debug(f"{self.symbol}: duplicate tag {order.tag} skipped")
            return SubmitResult(ok=False, order=order, duplicate=True,
                                error='duplicate tag')

        if order.tag in self.unknown_orders:
            res = self.resolve(order.tag)
            if res.ok or res.transient:
                return res

        self._roll_daily_counter()
        if self.daily_orders >= self.max_daily_orders:
            logger.warning(f"{self.symbol}: daily order cap "
                           f"({self.max_daily_orders}) reached")
            return SubmitResult(ok=False, order=order, error='daily order cap')

        try:
            raw = self.exchange.place_order(order)
        except TransportError as e:
            logger.warning(f"{self.symbol}: transport error placing {order.tag}, "
                           f"outcome unknown: {e}")
            self.unknown_orders[order.tag] = order
            return SubmitResult(ok=False, order=order, transient=True, error=str(e))
        except ExchangeAPIError as e:
            logger.error(f"{self.symbol}: order {order.tag} rejected: {e}")
            return SubmitResult(ok=False, order=order, error=str(e))

        self.daily_orders += 1
        return self._accept(order, raw)

    def resolve(self, tag: str) -> SubmitResult:
        """
        Settle an unknown order by looking its tag up at the venue.

        Found: accepted as a normal placement (recovered=True). Never
        placed: forgotten, ok=False and not transient. Lookup failed:
        still unknown, transient.
        """
        order = self.unknown_orders[tag]
        try:
            raw = self.exchange.fetch_order_by_tag(self.symbol, tag)
        except ExchangeAPIError as e:
            logger.warning(f"{self.symbol}: lookup of unknown order {tag} failed: {e}")
            return SubmitResult(ok=False, order=order, transient=True, error=str(e))

        del self.unknown_orders[tag]
        if raw is None:
            logger.info(f"{self.symbol}: order {tag} never reached the exchange")
            return SubmitResult(ok=False, order=order, error='not placed')

        logger.info(f"{self.symbol}: recovered order {tag} as {raw.get('id')} "
                    f"({raw.get('status', 'open')})")
        self.daily_orders += 1
        res = self._accept(order, raw)
        res.recovered = True
        return res

    def pending_orders(self, roles=None) -> list:
        """Unknown orders (optionally only those with a role in `roles`)."""
        return [o for o in self.unknown_orders.values()
                if roles is None or o.role in roles]

    # ─── Fill Detection ──────────────────────────────────────────

    def poll_fills(self) -> list:
        """
        Detect fills of tracked orders.

        Fills settled during a cancel come first. Unknown limit orders
        are looked up by tag. Raises TransportError when open orders
        cannot be fetched; the caller skips this tick. A failed history
        lookup keeps the order tracked for the next poll.
        """
        fills = self.drain_settled()
        fills.extend(self._resolve_resting())
        if not self.live_orders:
            return fills

        try:
            open_orders = self.exchange.fetch_open_orders(self.symbol)
        except ExchangeAPIError:
            self._settled[:0] = fills
            raise
        open_ids = {o['id'] for o in open_orders}

        for tag, order in list(self.live_orders.items()):
            if order.exchange_id in open_ids:
                continue
            try:
                info = self.exchange.fetch_order(self.symbol, order.exchange_id)
            except ExchangeAPIError as e:
                logger.warning(f"{self.symbol}: could not fetch order "
                               f"{order.exchange_id} status: {e}")
                continue
            fill, _ = self._settle(tag, order, info)
            if fill is not None:
                fills.append(fill)
        return fills

    def drain_settled(self) -> list:
        """Hand out (and forget) fills found while cancelling."""
        fills, self._settled = self._settled, []
        return fills

    # ─── Cancellation ────────────────────────────────────────────

    def cancel_all(self, roles=None) -> bool:
        """
        Cancel tracked orders (all, or those with a role in `roles`).

        An order the venue would not cancel is looked up in history and
        a fill is kept for the next poll_fills(). Returns False if any
        order may still be resting; those stay tracked.
        """
        self._settled.extend(self._resolve_resting(roles))
        ok = not any(o.order_type == ORDER_LIMIT for o in self.pending_orders(roles))

        if roles is None:
            try:
                self.exchange.cancel_all_orders(self.symbol)
            except ExchangeAPIError as e:
                logger.warning(f"{self.symbol}: cancel all failed: {e}")
                return False
            for tag, order in list(self.live_orders.items()):
                ok = self._settle_cancelled(tag, order) and ok
            return ok

        for tag, order in list(self.live_orders.items()):
            if order.role not in roles:
                continue
            try:
                cancelled = self.exchange.cancel_order(self.symbol, order.exchange_id)
            except ExchangeAPIError as e:
                logger.warning(f"{self.symbol}: cancel {tag} failed: {e}")
                ok = False
                continue
            if cancelled:
                del self.live_orders[tag]
            else:
                ok = self._settle_cancelled(tag, order) and ok
        return ok

    def live_count(self, roles=None) -> int:
        if roles is None:
            return len(self.live_orders)
        return sum(1 for o in self.live_orders.values() if o.role in roles)

    # ─── Persistence ─────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            'live_orders': [o.to_dict() for o in self.live_orders.values()],
            'unknown_orders': [o.to_dict() for o in self.unknown_orders.values()],
            'settled_fills': [f.to_dict() for f in self._settled],
            'recent_tags': list(self._recent_tags),
            'daily_orders': self.daily_orders,
            'day_start': self._day_start,
        }

    def restore(self, data: Optional[dict]):
        if not data:
            return
        self.live_orders = {}
        for raw in data.get('live_orders', []):
            order = Order.from_dict(raw)
            self.live_orders[order.tag] = order
        self.unknown_orders = {}
        for raw in data.get('unknown_orders', []):
            order = Order.from_dict(raw)
            self.unknown_orders[order.tag] = order
        self._settled = [Fill.from_dict(f) for f in data.get('settled_fills', [])]
        for tag in data.get('recent_tags', []):
            self._remember(tag)
        self.daily_orders = int(data.get('daily_orders', 0))
        self._day_start = float(data.get('day_start', self._clock()))
        self._roll_daily_counter()

    # ─── Internal Helpers ────────────────────────────────────────

    def _accept(self, order: Order, raw: dict) -> SubmitResult:
        """Record an order the venue holds (fresh reply or tag lookup)."""
        order.exchange_id = str(raw.get('id', ''))
        order.created_ts = int(raw.get('timestamp') or self._clock() * 1000)
        self._remember(order.tag)

        status = raw.get('status', 'open')
        filled_qty = float(raw.get('filled', 0) or 0)
        if status in DEAD_STATUSES and filled_qty <= QTY_EPS:
            logger.info(f"{self.symbol}: order {order.tag} was {status}, nothing filled")
            return SubmitResult(ok=False, order=order, error=f'order {status}')

        if status in FILLED_STATUSES or status in DEAD_STATUSES \
                or order.order_type == ORDER_MARKET:
            price = float(raw.get('average') or raw.get('price') or 0) or None
            qty = filled_qty if filled_qty > QTY_EPS else order.quantity
            return SubmitResult(ok=True, order=order, fill_price=price, fill_quantity=qty)

        self.live_orders[order.tag] = order
        return SubmitResult(ok=True, order=order)

    def _settle(self, tag: str, order: Order, info: dict) -> tuple:
        """
        Apply the history record of a tracked order no longer open.

        Returns (fill or None, finished). Finished orders stop being tracked.
        """
        status = info.get('status', 'unknown')
        filled_qty = float(info.get('filled', 0) or 0)
        if status in FILLED_STATUSES or (status in DEAD_STATUSES and filled_qty > QTY_EPS):
            fill_price = float(info.get('average') or info.get('price')
                               or order.price or 0)
            qty = filled_qty if filled_qty > QTY_EPS else order.quantity
            logger.info(f"{self.symbol}: order {tag} FILLED @ {fill_price:.2f} qty={qty}")
            self.live_orders.pop(tag, None)
            return Fill(order=order, price=fill_price, quantity=qty,
                        timestamp=int(info.get('timestamp') or 0)), True
        if status in DEAD_STATUSES:
            logger.info(f"{self.symbol}: order {tag} was {status}, not a fill")
            self.live_orders.pop(tag, None)
            return None, True
        logger.debug(f"{self.symbol}: order {tag} status '{status}', keeping")
        return None, False

    def _settle_cancelled(self, tag: str, order: Order) -> bool:
        """
        Check an order after a cancel that did not confirm. Returns False
        only when the venue still shows it open.
        """
        try:
            info = self.exchange.fetch_order(self.symbol, order.exchange_id)
        except ExchangeAPIError as e:
            logger.warning(f"{self.symbol}: status of {tag} unknown after cancel, "
                           f"left for the next poll: {e}")
            return True
        fill, finished = self._settle(tag, order, info)
        if fill is not None:
            self._settled.append(fill)
        return finished or info.get('status') != 'open'

    def _resolve_resting(self, roles=None) -> list:
        """Look up unknown limit orders. Found resting ones become live."""
        fills = []
        for order in self.pending_orders(roles):
            if order.order_type != ORDER_LIMIT:
                continue
            res = self.resolve(order.tag)
            if res.ok and res.fill_price is not None:
                fills.append(Fill(order=res.order, price=res.fill_price,
                                  quantity=res.fill_quantity or res.order.quantity,
                                  timestamp=res.order.created_ts))
        return fills

    def _remember(self, tag: str):
        self._recent_tags[tag] = True
        self._recent_tags.move_to_end(tag)
        while len(self._recent_tags) > self.recent_tag_memory:
            self._recent_tags.popitem(last=False)

    def _roll_daily_counter(self):
        now = self._clock()
        if now - self._day_start >= DAY_SECONDS:
            self.daily_orders = 0
            self._day_start = now
