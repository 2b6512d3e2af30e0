"""
MarketObservation: rolling candle buffer + derived indicators.

Never persisted: rebuilt from the exchange feed after a restart.
"""
import logging
from typing import Optional

import numpy as np
import pandas as pd

from core.atr import calculate_atr, calculate_volatility_index, calculate_momentum
from engine.types import Candle

logger = logging.getLogger('market')

COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']
DTYPES = {'timestamp': 'int64', 'open': 'float64', 'high': 'float64',
          'low': 'float64', 'close': 'float64', 'volume': 'float64'}


class MarketObservation:

    def __init__(self, symbol: str, capacity: int = 200, atr_period: int = 14):
        self.symbol = symbol
        self.capacity = capacity
        self.atr_period = atr_period
        self.candle_buffer = pd.DataFrame(columns=COLUMNS).astype(DTYPES)
        self._volatility = 0.0

    def __len__(self):
        return len(self.candle_buffer)

    # ─── Ingest ──────────────────────────────────────────────────

    def ingest(self, candle: Candle) -> bool:
        """
        Add a candle. A candle with the newest timestamp replaces the
        forming bar; older timestamps are ignored.

        Returns True when the buffer changed.
        """
        if len(self.candle_buffer) > 0:
            newest = int(self.candle_buffer['timestamp'].iloc[-1])
            if candle.timestamp < newest:
                return False
            if candle.timestamp == newest:
                self.candle_buffer.iloc[-1] = [
                    candle.timestamp, candle.open, candle.high,
                    candle.low, candle.close, candle.volume]
                self._refresh_volatility()
                return True

        new_row = pd.DataFrame([[candle.timestamp, candle.open, candle.high,
                                 candle.low, candle.close, candle.volume]],
                               columns=COLUMNS).astype(DTYPES)
        if len(self.candle_buffer) == 0:
            self.candle_buffer = new_row
        else:
            self.candle_buffer = pd.concat(
                [self.candle_buffer, new_row], ignore_index=True)

        # Trim to capacity
        if len(self.candle_buffer) > self.capacity:
            self.candle_buffer = self.candle_buffer.iloc[-self.capacity:].reset_index(drop=True)

        self._refresh_volatility()
        return True

    def ingest_many(self, rows: list) -> int:
        """Ingest [ts, O, H, L, C, V] rows (oldest first). Returns count accepted."""
        accepted = 0
        for row in rows:
            if self.ingest(Candle.from_ohlcv(row)):
                accepted += 1
        return accepted

    def ingest_price(self, price: float, timestamp: int) -> bool:
        """A bare price sample becomes a flat candle."""
        return self.ingest(Candle(timestamp, price, price, price, price, 0.0))

    # ─── Accessors ───────────────────────────────────────────────

    @property
    def closes(self) -> np.ndarray:
        return self.candle_buffer['close'].values.astype(np.float64)

    @property
    def volumes(self) -> np.ndarray:
        return self.candle_buffer['volume'].values.astype(np.float64)

    def prices(self) -> list:
        return self.closes.tolist()

    @property
    def last_price(self) -> Optional[float]:
        if len(self.candle_buffer) == 0:
            return None
        return float(self.candle_buffer['close'].iloc[-1])

    @property
    def last_timestamp(self) -> int:
        if len(self.candle_buffer) == 0:
            return 0
        return int(self.candle_buffer['timestamp'].iloc[-1])

    # ─── Indicators ──────────────────────────────────────────────

    def atr(self) -> Optional[float]:
        df = self.candle_buffer
        return calculate_atr(df['high'].values, df['low'].values,
                             df['close'].values, self.atr_period)

    def volatility_index(self) -> float:
        return self._volatility

    def momentum(self) -> Optional[float]:
        return calculate_momentum(self.closes)

    def _refresh_volatility(self):
        vol = calculate_volatility_index(self.closes)
        if vol is not None:
            self._volatility = vol
