"""
Tests for OrderReconciler: tag dedup, failure classification, fill
detection and cancellation.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest
from engine.reconciler import OrderReconciler
from engine.types import (
    Order, ORDER_BUY, ORDER_SELL, ORDER_LIMIT, ORDER_MARKET,
    ROLE_GRID_BUY, ROLE_GRID_SELL, ROLE_MAIN_OPEN,
)
from live.exceptions import TransportError, ExchangeRejectedError

SYMBOL = 'BTCUSDT'


def limit_order(tag, role=ROLE_GRID_BUY, price=99.0, side=ORDER_BUY):
    return Order(tag=tag, symbol=SYMBOL, side=side, order_type=ORDER_LIMIT,
                 quantity=0.1, role=role, price=price, level=1, generation=1)


@pytest.fixture
def reconciler(exchange, clock):
    exchange.set_price(SYMBOL, 100.0)
    return OrderReconciler(SYMBOL, exchange, clock=clock)


class TestSubmit:
    def test_limit_order_tracked(self, reconciler, exchange):
        res = reconciler.submit(limit_order('t1'))
        assert res.ok
        assert res.fill_price is None
        assert res.order.exchange_id == 'F1'
        assert reconciler.live_count() == 1

    def test_duplicate_tag_not_resent(self, reconciler, exchange):
        reconciler.submit(limit_order('t1'))
        res = reconciler.submit(limit_order('t1'))
        assert not res.ok
        assert res.duplicate
        assert len(exchange.placed) == 1

    def test_recent_tag_blocks_after_fill(self, reconciler, exchange):
        reconciler.submit(limit_order('t1'))
        exchange.fill('F1')
        reconciler.poll_fills()
        assert reconciler.live_count() == 0
        assert reconciler.submit(limit_order('t1')).duplicate

    def test_market_order_fill_price(self, reconciler, exchange):
        order = Order(tag='m1', symbol=SYMBOL, side=ORDER_BUY,
                      order_type=ORDER_MARKET, quantity=0.5, role=ROLE_MAIN_OPEN)
        res = reconciler.submit(order)
        assert res.ok
        assert res.fill_price == 100.0
        assert reconciler.live_count() == 0

    def test_rejection_not_remembered(self, reconciler, exchange):
        exchange.reject_roles.add(ROLE_GRID_BUY)
        res = reconciler.submit(limit_order('t1'))
        assert not res.ok
        assert not res.transient
        assert 'rejected' in res.error

        exchange.reject_roles.clear()
        assert reconciler.submit(limit_order('t1')).ok

    def test_transport_error_is_transient(self, reconciler, exchange):
        exchange.transport_down = True
        res = reconciler.submit(limit_order('t1'))
        assert not res.ok
        assert res.transient
        assert reconciler.live_count() == 0
        assert reconciler.daily_orders == 0

    def test_daily_cap(self, exchange, clock):
        rec = OrderReconciler(SYMBOL, exchange, max_daily_orders=2, clock=clock)
        assert rec.submit(limit_order('a')).ok
        assert rec.submit(limit_order('b')).ok
        res = rec.submit(limit_order('c'))
        assert not res.ok
        assert res.error == 'daily order cap'

        clock.advance(24 * 60 * 60)
        assert rec.submit(limit_order('c')).ok

    def test_recent_tag_memory_bounded(self, exchange, clock):
        rec = OrderReconciler(SYMBOL, exchange, recent_tag_memory=2, clock=clock)
        for tag in ('a', 'b', 'c'):
            rec.submit(limit_order(tag))
        rec.cancel_all()
        assert rec.to_dict()['recent_tags'] == ['b', 'c']
        assert rec.submit(limit_order('a')).ok


class TestPollFills:
    def test_filled_order_reported(self, reconciler, exchange):
        reconciler.submit(limit_order('t1'))
        reconciler.submit(limit_order('t2', price=98.0))
        exchange.fill('F1', price=98.9)

        fills = reconciler.poll_fills()
        assert len(fills) == 1
        assert fills[0].order.tag == 't1'
        assert fills[0].price == pytest.approx(98.9)
        assert fills[0].quantity == pytest.approx(0.1)
        assert reconciler.live_count() == 1

    def test_canceled_order_dropped(self, reconciler, exchange):
        reconciler.submit(limit_order('t1'))
        exchange.orders['F1']['status'] = 'canceled'
        assert reconciler.poll_fills() == []
        assert reconciler.live_count() == 0

    def test_partially_filled_cancel_is_fill(self, reconciler, exchange):
        reconciler.submit(limit_order('t1'))
        exchange.orders['F1'].update(status='canceled', filled=0.04, average=99.0)
        fills = reconciler.poll_fills()
        assert fills[0].quantity == pytest.approx(0.04)

    def test_lookup_failure_keeps_order(self, reconciler, exchange):
        reconciler.submit(limit_order('t1'))
        exchange.fill('F1')
        exchange.fail_fetch_order = TransportError("timeout")
        assert reconciler.poll_fills() == []
        assert reconciler.live_count() == 1

        exchange.fail_fetch_order = None
        assert len(reconciler.poll_fills()) == 1

    def test_open_orders_failure_raises(self, reconciler, exchange):
        reconciler.submit(limit_order('t1'))
        exchange.transport_down = True
        with pytest.raises(TransportError):
            reconciler.poll_fills()

    def test_nothing_tracked_no_exchange_call(self, reconciler, exchange):
        exchange.transport_down = True
        assert reconciler.poll_fills() == []


class TestCancel:
    def test_cancel_by_role(self, reconciler, exchange):
        reconciler.submit(limit_order('b1'))
        reconciler.submit(limit_order('s1', role=ROLE_GRID_SELL, side=ORDER_SELL, price=101.0))
        assert reconciler.cancel_all(roles=(ROLE_GRID_BUY,))
        assert [o.tag for o in reconciler.live_orders.values()] == ['s1']
        assert len(exchange.open_orders(SYMBOL)) == 1

    def test_cancel_all(self, reconciler, exchange):
        reconciler.submit(limit_order('b1'))
        reconciler.submit(limit_order('b2'))
        assert reconciler.cancel_all()
        assert reconciler.live_count() == 0
        assert exchange.open_orders(SYMBOL) == []

    def test_cancel_failure_keeps_orders(self, reconciler, exchange):
        reconciler.submit(limit_order('b1'))
        exchange.fail_cancel = ExchangeRejectedError("busy", error_code='ExchangeError')
        assert not reconciler.cancel_all(roles=(ROLE_GRID_BUY,))
        assert not reconciler.cancel_all()
        assert reconciler.live_count() == 1


class TestPersistence:
    def test_round_trip(self, reconciler, exchange, clock):
        reconciler.submit(limit_order('t1'))
        data = reconciler.to_dict()

        restored = OrderReconciler(SYMBOL, exchange, clock=clock)
        restored.restore(data)
        assert restored.live_orders['t1'].exchange_id == 'F1'
        assert restored.daily_orders == 1
        assert restored.submit(limit_order('t1')).duplicate

        exchange.fill('F1')
        assert len(restored.poll_fills()) == 1


class TestLostReplies:
    def test_accepted_order_recovered_by_tag(self, reconciler, exchange):
        exchange.lose_reply_roles.add(ROLE_GRID_BUY)
        res = reconciler.submit(limit_order('t1'))
        assert not res.ok
        assert res.transient
        assert [o.tag for o in reconciler.pending_orders()] == ['t1']

        exchange.lose_reply_roles.clear()
        res = reconciler.submit(limit_order('t1'))
        assert res.ok
        assert res.recovered
        assert len(exchange.placed) == 1
        assert reconciler.live_orders['t1'].exchange_id == 'F1'
        assert reconciler.pending_orders() == []
        assert reconciler.daily_orders == 1

    def test_unplaced_order_sent_after_outage(self, reconciler, exchange):
        exchange.transport_down = True
        assert reconciler.submit(limit_order('t1')).transient

        exchange.transport_down = False
        res = reconciler.submit(limit_order('t1'))
        assert res.ok
        assert not res.recovered
        assert len(exchange.placed) == 1
        assert reconciler.pending_orders() == []

    def test_lookup_failure_stays_unknown(self, reconciler, exchange):
        exchange.lose_reply_roles.add(ROLE_GRID_BUY)
        reconciler.submit(limit_order('t1'))
        exchange.lose_reply_roles.clear()
        exchange.transport_down = True

        res = reconciler.submit(limit_order('t1'))
        assert res.transient
        assert len(reconciler.pending_orders()) == 1
        assert len(exchange.placed) == 1

    def test_unknown_limit_fill_found_by_poll(self, reconciler, exchange):
        exchange.lose_reply_roles.add(ROLE_GRID_BUY)
        reconciler.submit(limit_order('t1'))
        exchange.lose_reply_roles.clear()
        exchange.fill('F1', price=98.5)

        fills = reconciler.poll_fills()
        assert len(fills) == 1
        assert fills[0].order.tag == 't1'
        assert fills[0].price == pytest.approx(98.5)
        assert reconciler.pending_orders() == []
        assert reconciler.live_count() == 0

    def test_unknown_resting_order_becomes_live(self, reconciler, exchange):
        exchange.lose_reply_roles.add(ROLE_GRID_BUY)
        reconciler.submit(limit_order('t1'))
        exchange.lose_reply_roles.clear()

        assert reconciler.poll_fills() == []
        assert reconciler.live_orders['t1'].exchange_id == 'F1'

    def test_unknown_orders_persist(self, reconciler, exchange, clock):
        exchange.lose_reply_roles.add(ROLE_GRID_BUY)
        reconciler.submit(limit_order('t1'))
        exchange.lose_reply_roles.clear()

        restored = OrderReconciler(SYMBOL, exchange, clock=clock)
        restored.restore(reconciler.to_dict())
        assert restored.submit(limit_order('t1')).recovered
        assert len(exchange.placed) == 1


class TestCancelFills:
    def test_fill_kept_on_role_cancel(self, reconciler, exchange):
        reconciler.submit(limit_order('b1'))
        exchange.fill('F1', price=98.8)

        assert reconciler.cancel_all(roles=(ROLE_GRID_BUY,))
        assert reconciler.live_count() == 0
        fills = reconciler.poll_fills()
        assert [f.order.tag for f in fills] == ['b1']
        assert fills[0].price == pytest.approx(98.8)
        assert reconciler.poll_fills() == []

    def test_fill_kept_on_cancel_all(self, reconciler, exchange):
        reconciler.submit(limit_order('b1'))
        reconciler.submit(limit_order('b2', price=98.0))
        exchange.fill('F1')

        assert reconciler.cancel_all()
        assert reconciler.live_count() == 0
        fills = reconciler.drain_settled()
        assert [f.order.tag for f in fills] == ['b1']

    def test_settled_fills_persist(self, reconciler, exchange, clock):
        reconciler.submit(limit_order('b1'))
        exchange.fill('F1', price=98.7)
        reconciler.cancel_all()

        restored = OrderReconciler(SYMBOL, exchange, clock=clock)
        restored.restore(reconciler.to_dict())
        fills = restored.poll_fills()
        assert fills[0].order.tag == 'b1'
        assert fills[0].price == pytest.approx(98.7)

    def test_settled_fills_survive_failed_poll(self, reconciler, exchange):
        reconciler.submit(limit_order('b1'))
        reconciler.submit(limit_order('s1', role=ROLE_GRID_SELL, side=ORDER_SELL, price=101.0))
        exchange.fill('F1')
        reconciler.cancel_all(roles=(ROLE_GRID_BUY,))

        exchange.transport_down = True
        with pytest.raises(TransportError):
            reconciler.poll_fills()

        exchange.transport_down = False
        assert [f.order.tag for f in reconciler.poll_fills()] == ['b1']

    def test_unresolved_order_fails_cancel(self, reconciler, exchange):
        exchange.lose_reply_roles.add(ROLE_GRID_BUY)
        reconciler.submit(limit_order('b1'))
        exchange.lose_reply_roles.clear()
        exchange.transport_down = True

        assert not reconciler.cancel_all(roles=(ROLE_GRID_BUY,))
        assert len(reconciler.pending_orders()) == 1

    def test_unknown_order_cancelled_once_found(self, reconciler, exchange):
        exchange.lose_reply_roles.add(ROLE_GRID_BUY)
        reconciler.submit(limit_order('b1'))
        exchange.lose_reply_roles.clear()

        assert reconciler.cancel_all()
        assert reconciler.pending_orders() == []
        assert reconciler.live_count() == 0
        assert exchange.open_orders(SYMBOL) == []
