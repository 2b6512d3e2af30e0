"""
Tests for MarketObservation and the typed configuration / records.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest
from engine.market import MarketObservation
from engine.types import (
    SymbolConfig, Candle, Position, GridState, TradeRecord,
    GRID_MODE_ADAPTIVE, GRID_MODE_TRAILING, POLICY_GRID_WITH_HEDGE,
    profit_percent,
)


def candle(ts, close, spread=0.01, volume=100.0):
    return Candle(ts, close, close * (1 + spread), close * (1 - spread), close, volume)


class TestMarketObservation:
    def test_ingest_appends_in_order(self):
        m = MarketObservation('BTCUSDT')
        assert m.ingest(candle(1, 100.0))
        assert m.ingest(candle(2, 101.0))
        assert m.prices() == [100.0, 101.0]
        assert m.last_price == 101.0
        assert m.last_timestamp == 2

    def test_same_timestamp_replaces_forming_bar(self):
        m = MarketObservation('BTCUSDT')
        m.ingest(candle(1, 100.0))
        m.ingest(candle(2, 101.0))
        assert m.ingest(candle(2, 102.5))
        assert len(m) == 2
        assert m.last_price == 102.5

    def test_older_timestamp_ignored(self):
        m = MarketObservation('BTCUSDT')
        m.ingest(candle(5, 100.0))
        assert not m.ingest(candle(3, 90.0))
        assert m.prices() == [100.0]

    def test_capacity_trim(self):
        m = MarketObservation('BTCUSDT', capacity=10)
        for i in range(25):
            m.ingest(candle(i, 100.0 + i))
        assert len(m) == 10
        assert m.prices()[0] == 115.0

    def test_ingest_many_counts_accepted(self):
        m = MarketObservation('BTCUSDT')
        rows = [[i, 100.0, 101.0, 99.0, 100.0, 5.0] for i in range(5)]
        assert m.ingest_many(rows) == 5
        # Re-polling the same window only refreshes the last bar
        assert m.ingest_many(rows) == 1
        assert len(m) == 5

    def test_ingest_price(self):
        m = MarketObservation('BTCUSDT')
        m.ingest_price(100.0, 1)
        assert m.last_price == 100.0
        assert m.volumes.tolist() == [0.0]

    def test_empty_buffer(self):
        m = MarketObservation('BTCUSDT')
        assert m.last_price is None
        assert m.last_timestamp == 0
        assert m.atr() is None
        assert m.volatility_index() == 0.0

    def test_atr_from_buffer(self):
        m = MarketObservation('BTCUSDT', atr_period=14)
        for i in range(14):
            m.ingest(candle(i, 100.0))
        assert m.atr() is None
        m.ingest(candle(14, 100.0))
        assert m.atr() == pytest.approx(2.0)

    def test_volatility_keeps_previous_value(self):
        m = MarketObservation('BTCUSDT')
        for i in range(12):
            m.ingest(candle(i, 100.0 * 1.01 ** i))
        vol = m.volatility_index()
        assert vol == pytest.approx(0.01)

        short = MarketObservation('BTCUSDT')
        for i in range(5):
            short.ingest(candle(i, 100.0 * 1.05 ** i))
        assert short.volatility_index() == 0.0


class TestSymbolConfig:
    def test_defaults_and_min_lot_lookup(self):
        cfg = SymbolConfig.from_dict('ETHUSDT')
        assert cfg.policy == POLICY_GRID_WITH_HEDGE
        assert cfg.grid_mode == GRID_MODE_TRAILING
        assert cfg.min_lot == 0.01
        assert SymbolConfig.from_dict('DOGEUSDT').min_lot == 0.001

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            SymbolConfig.from_dict('BTCUSDT', {'grid_levelz': 5})

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            SymbolConfig.from_dict('BTCUSDT', {'policy': 'YOLO'})
        with pytest.raises(ValueError):
            SymbolConfig.from_dict('BTCUSDT', {'min_grid_spacing': 0.05,
                                               'max_grid_spacing': 0.01})
        with pytest.raises(ValueError):
            SymbolConfig.from_dict('BTCUSDT', {'grid_levels': 0})

    def test_json_ints_coerced(self):
        cfg = SymbolConfig.from_dict('BTCUSDT', {'capital': 500, 'grid_levels': 8.0})
        assert isinstance(cfg.capital, float)
        assert isinstance(cfg.grid_levels, int)

    def test_apply_update_returns_new_config(self):
        cfg = SymbolConfig.from_dict('BTCUSDT')
        new = cfg.apply_update({'grid_mode': GRID_MODE_ADAPTIVE, 'symbol': 'ETHUSDT'})
        assert new.grid_mode == GRID_MODE_ADAPTIVE
        assert new.symbol == 'BTCUSDT'
        assert cfg.grid_mode == GRID_MODE_TRAILING


class TestRecords:
    def test_profit_percent(self):
        assert profit_percent('long', 100.0, 110.0) == pytest.approx(10.0)
        assert profit_percent('short', 100.0, 110.0) == pytest.approx(-10.0)
        assert profit_percent('long', 0.0, 110.0) == 0.0

    def test_stop_set_once(self):
        pos = Position(side='long', entry_price=100.0, size=1.0, open_ts=0)
        assert not pos.stop_crossed(1.0)
        assert pos.attach_stop(110.0)
        assert not pos.attach_stop(120.0)
        assert pos.stop_loss == 110.0
        assert pos.stop_crossed(110.0)

    def test_short_stop_direction(self):
        pos = Position(side='short', entry_price=100.0, size=1.0, open_ts=0)
        pos.attach_stop(90.0)
        assert not pos.stop_crossed(89.0)
        assert pos.stop_crossed(90.5)

    def test_grid_state_from_empty(self):
        grid = GridState.from_dict(None, GRID_MODE_ADAPTIVE)
        assert grid.is_empty
        assert grid.mode == GRID_MODE_ADAPTIVE

    def test_trade_record_reason_validated(self):
        with pytest.raises(ValueError):
            TradeRecord(symbol='BTCUSDT', trade_type='main', side='long',
                        entry_price=100.0, exit_price=101.0, size=1.0,
                        open_ts=0, close_ts=1, profit_pct=1.0,
                        close_reason='BECAUSE')

    def test_candle_from_ohlcv(self):
        c = Candle.from_ohlcv(['1700000000000', '1', '2', '0.5', '1.5', None])
        assert c.timestamp == 1700000000000
        assert c.close == 1.5
        assert c.volume == 0.0
