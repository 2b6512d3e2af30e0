"""
StateManager: Persistence layer for one symbol's engine state.

The whole snapshot (positions, grid, live orders, trade log) is one JSON
document, fully replaced on every write with an atomic temp-file +
rename. Closed trades are also appended to CSV and JSON lines files as
an audit log.
"""
import json
import csv
import os
import time
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger('state')

SCHEMA_VERSION = 1


class StateManager:

    TRADE_CSV_HEADERS = [
        'close_ts', 'datetime', 'symbol', 'trade_type', 'side',
        'entry_price', 'exit_price', 'size', 'profit_pct',
        'close_reason', 'open_ts', 'order_id',
    ]

    def __init__(self, state_dir: str, symbol: str):
        self.state_dir = state_dir
        self.symbol = symbol
        os.makedirs(state_dir, exist_ok=True)

        self.state_file = os.path.join(state_dir, f'state_{symbol}.json')
        self.trade_csv = os.path.join(state_dir, f'{symbol}_trades.csv')
        self.trade_jsonl = os.path.join(state_dir, f'{symbol}_trades.jsonl')
        self.last_corrupt_path: Optional[str] = None
        self.load_error: Optional[str] = None

        # Initialize CSV with headers if needed
        if not os.path.exists(self.trade_csv):
            with open(self.trade_csv, 'w', newline='') as f:
                writer = csv.DictWriter(f, fieldnames=self.TRADE_CSV_HEADERS)
                writer.writeheader()

        logger.info(f"StateManager initialized: {state_dir}/{symbol}")

    def save(self, state: dict) -> bool:
        """Replace the state file (atomic write). Returns False on failure."""
        state = dict(state)
        state['_schema'] = SCHEMA_VERSION
        state['_saved_at'] = datetime.now(timezone.utc).isoformat()
        tmp_path = self.state_file + '.tmp'
        try:
            with open(tmp_path, 'w') as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(tmp_path, self.state_file)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save state: {e}")
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
            return False

    def load(self) -> Optional[dict]:
        """
        Load state. Returns None if missing, unreadable or corrupt.

        A corrupt file is moved aside and its new path kept in
        `last_corrupt_path`; `load_error` describes any failure.
        """
        self.last_corrupt_path = None
        self.load_error = None
        if not os.path.exists(self.state_file):
            logger.info(f"No saved state for {self.symbol}: starting fresh")
            return None
        try:
            with open(self.state_file, 'r') as f:
                state = json.load(f)
            if not isinstance(state, dict):
                raise ValueError("state root is not an object")
            logger.info(f"State loaded from {self.state_file} "
                        f"(saved at {state.get('_saved_at', 'unknown')})")
            return state
        except OSError as e:
            logger.error(f"State file unreadable: {e}")
            self.load_error = str(e)
            return None
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"State file corrupted: {e}")
            self.load_error = str(e)

        corrupt_path = f"{self.state_file}.corrupt.{int(time.time())}"
        try:
            os.rename(self.state_file, corrupt_path)
        except OSError as e:
            logger.error(f"Could not move corrupted state aside: {e}")
            return None
        logger.info(f"Corrupted state moved to {corrupt_path}")
        self.last_corrupt_path = corrupt_path
        return None

    def save_trade(self, trade: dict):
        """Append a single trade to CSV and JSON lines files."""
        row = dict(trade)
        row['datetime'] = _ms_to_iso(row.get('close_ts', 0))

        # CSV append
        try:
            with open(self.trade_csv, 'a', newline='') as f:
                writer = csv.DictWriter(f, fieldnames=self.TRADE_CSV_HEADERS,
                                        extrasaction='ignore')
                writer.writerow({h: row.get(h, '') for h in self.TRADE_CSV_HEADERS})
        except OSError as e:
            logger.error(f"Failed to write trade CSV: {e}")

        # JSON lines append
        try:
            with open(self.trade_jsonl, 'a') as f:
                f.write(json.dumps(trade, default=str) + '\n')
        except OSError as e:
            logger.error(f"Failed to write trade JSONL: {e}")

    def load_trades(self) -> list:
        """Load all trades from the JSON lines audit log."""
        if not os.path.exists(self.trade_jsonl):
            return []
        trades = []
        try:
            with open(self.trade_jsonl, 'r') as f:
                for line in f:
                    line = line.strip()
                    if line:
                        trades.append(json.loads(line))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load trades: {e}")
        return trades


def _ms_to_iso(ms) -> str:
    try:
        return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc).isoformat()
    except (OSError, ValueError, TypeError):
        return ''
