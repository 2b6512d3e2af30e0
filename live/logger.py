"""
TradeLogger: Human-readable trade log.

Provides:
  - Console output (formatted)
  - File logging with rotation
  - Closed trade / grid move / event lines
  - Session summary built from the performance projection
"""
import os
import logging
import logging.handlers
from datetime import datetime, timezone

from core.performance import compute_performance


class TradeLogger:

    def __init__(self, log_dir: str, name: str = 'engine', log_level: str = 'INFO'):
        self.name = name
        os.makedirs(log_dir, exist_ok=True)
        self._session_start = datetime.now(timezone.utc)

        self._log = logging.getLogger('trade_logger')
        self._log.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Avoid duplicate handlers on re-init
        if not self._log.handlers:
            # Console handler
            ch = logging.StreamHandler()
            ch.setLevel(getattr(logging, log_level.upper(), logging.INFO))
            ch.setFormatter(logging.Formatter('%(message)s'))
            self._log.addHandler(ch)

            # File handler with rotation (10MB, 5 backups)
            log_file = os.path.join(log_dir, f'{name}.log')
            fh = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(
                '%(asctime)s | %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
            self._log.addHandler(fh)

    def log_trade(self, trade):
        """Log a closed TradeRecord."""
        dt = _ms_to_str(trade.close_ts)
        hold_hours = max(trade.close_ts - trade.open_ts, 0) / 3600000.0
        self._log.info(
            f"[{dt}] {trade.trade_type.upper()}_{trade.side.upper()} CLOSE | "
            f"{trade.symbol} | {trade.close_reason}\n"
            f"  Entry: ${trade.entry_price:,.2f} | Exit: ${trade.exit_price:,.2f} | "
            f"Size: {trade.size:.6f} | Profit: {trade.profit_pct:+.2f}%\n"
            f"  Hold: {hold_hours:.1f}h")

    def log_grid(self, symbol: str, grid):
        """Log a grid move / rebalance."""
        dt = _ms_to_str(grid.last_move_ts)
        prices = grid.level_prices()
        if not prices:
            return
        self._log.info(
            f"[{dt}] GRID:{grid.mode} gen {grid.generation} | {symbol} | "
            f"{len(prices)} levels | Range: ${min(prices):,.2f} - ${max(prices):,.2f}")

    def log_event(self, event_type: str, details: str):
        """Log a non-trade event."""
        dt = _ms_to_str(0)
        self._log.info(f"[{dt}] EVENT:{event_type} | {details}")

    def log_session_summary(self, trades_by_symbol: dict):
        """Log formatted session summary on shutdown."""
        duration = (datetime.now(timezone.utc) - self._session_start).total_seconds() / 3600

        border = '=' * 62
        self._log.info(f"\n{border}")
        self._log.info(f"  SESSION SUMMARY | {self.name}")
        self._log.info(f"  Duration: {duration:.1f} hours")
        self._log.info(f"{border}")
        for symbol, trades in trades_by_symbol.items():
            m = compute_performance(trades)
            self._log.info(f"  {symbol}")
            self._log.info(f"    Total Trades:  {m['total_trades']}")
            self._log.info(f"    Win Rate:      {m['win_rate_pct']:.1f}%")
            self._log.info(f"    Avg Profit:    {m['avg_profit_pct']:+.2f}%")
            self._log.info(f"    Best / Worst:  {m['best_trade_pct']:+.2f}% / "
                           f"{m['worst_trade_pct']:+.2f}%")
            self._log.info(f"    Profit Factor: {m['profit_factor']:.3f}")
            self._log.info(f"    Volume:        ${m['total_volume']:,.2f}")
        self._log.info(border)


def _ms_to_str(ms: int) -> str:
    """Convert milliseconds timestamp to formatted string."""
    if ms <= 0:
        return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
    try:
        return datetime.fromtimestamp(
            ms / 1000, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
    except (OSError, ValueError):
        return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
