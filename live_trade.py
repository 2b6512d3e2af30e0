#!/usr/bin/env python3
"""
Adaptive Grid & Hedge Engine CLI.

Usage:
  python3 live_trade.py --symbols BTCUSDT ETHUSDT
  python3 live_trade.py --symbols BTCUSDT --simulated
  python3 live_trade.py --symbols SOLUSDT --testnet --log-level DEBUG
  python3 live_trade.py --config overrides.json

Environment Variables:
  BYBIT_API_KEY        Your Bybit API key
  BYBIT_API_SECRET     Your Bybit API secret
  TELEGRAM_BOT_TOKEN   Optional, enables Telegram alerts
  TELEGRAM_CHAT_ID     Optional, enables Telegram alerts
"""
import argparse
import json
import os
import sys
import signal
import logging

from dotenv import load_dotenv

from config import SYMBOLS, ENGINE_CONFIG, SIMULATION_CONFIG
from engine.engine import TradingEngine
from engine.types import SymbolConfig, DATA_SOURCE_SIMULATED
from live.executor import BybitExecutor
from live.simulated import SimulatedExchange
from live.logger import TradeLogger
from live.monitor import HealthMonitor
from live.telegram_notifier import init_notifier, fmt_start, fmt_stop


def load_overrides(path: str) -> dict:
    """
    JSON override file:
      {"engine": {...ENGINE_CONFIG keys...},
       "symbols": {"BTCUSDT": {...SymbolConfig fields...}}}
    """
    with open(path, 'r') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return data


def build_symbol_configs(symbols: list, overrides: dict) -> list:
    configs = []
    for symbol in symbols:
        params = dict(SYMBOLS.get(symbol, {}))
        params.update(overrides.get(symbol, {}))
        configs.append(SymbolConfig.from_dict(symbol, params))
    return configs


def main():
    parser = argparse.ArgumentParser(
        description="Adaptive Grid & Hedge Engine: Bybit USDT Perpetuals",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Offline run against the simulated feed (no keys needed)
  python3 live_trade.py --symbols BTCUSDT --simulated --tick-interval 1

  # Live trade two symbols
  python3 live_trade.py --symbols BTCUSDT ETHUSDT

  # Testnet with custom parameters
  python3 live_trade.py --symbols BTCUSDT --testnet --config overrides.json
""")
    parser.add_argument("--symbols", nargs='+', default=None,
                        help="Symbols to trade (default: config.SYMBOLS)")
    parser.add_argument("--simulated", action="store_true",
                        help="Use the simulated random-walk exchange")
    parser.add_argument("--testnet", action="store_true",
                        help="Use Bybit testnet")
    parser.add_argument("--config", default=None,
                        help="JSON file with engine/symbol overrides")
    parser.add_argument("--tick-interval", type=float, default=None,
                        help="Seconds between ticks (default: from config)")
    parser.add_argument("--log-level", default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: from config)")

    args = parser.parse_args()

    # ─── Build Configs ─────────────────────────────────────────
    overrides = load_overrides(args.config) if args.config else {}
    engine_config = ENGINE_CONFIG.copy()
    engine_config.update(overrides.get('engine', {}))
    if args.tick_interval:
        engine_config['tick_interval_seconds'] = args.tick_interval
    if args.log_level:
        engine_config['log_level'] = args.log_level
    if args.simulated:
        engine_config['data_source'] = DATA_SOURCE_SIMULATED
    if args.testnet:
        engine_config['testnet'] = True

    # ─── Logging Setup ─────────────────────────────────────────
    log_level = engine_config['log_level']
    logging.basicConfig(
        level=getattr(logging, log_level),
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    symbols = args.symbols or list(SYMBOLS)
    try:
        symbol_configs = build_symbol_configs(symbols, overrides.get('symbols', {}))
    except ValueError as e:
        print(f"ERROR: Invalid symbol configuration: {e}")
        sys.exit(1)

    # ─── API Keys ──────────────────────────────────────────────
    load_dotenv()  # Load .env file into environment (must be before os.environ.get)
    simulated = engine_config['data_source'] == DATA_SOURCE_SIMULATED

    if simulated:
        exchange = SimulatedExchange(SIMULATION_CONFIG)
    else:
        api_key = os.environ.get('BYBIT_API_KEY', '')
        api_secret = os.environ.get('BYBIT_API_SECRET', '')
        if not api_key or not api_secret:
            print("ERROR: Set BYBIT_API_KEY and BYBIT_API_SECRET environment variables.")
            print()
            print("  export BYBIT_API_KEY='your_api_key_here'")
            print("  export BYBIT_API_SECRET='your_api_secret_here'")
            print()
            print("Or use --simulated for an offline run.")
            sys.exit(1)
        exchange = BybitExecutor(api_key, api_secret, engine_config,
                                 testnet=engine_config['testnet'])

    mode_str = 'SIMULATED' if simulated else ('TESTNET' if engine_config['testnet'] else 'LIVE')
    print(f"\nConnecting to Bybit {mode_str}...")
    if not exchange.connect():
        print("ERROR: Failed to connect to exchange.")
        print("Check your API credentials and network connection.")
        sys.exit(1)

    for cfg in symbol_configs:
        exchange.set_leverage(cfg.symbol, cfg.leverage)

    # ─── Initialize Components ─────────────────────────────────
    os.makedirs(engine_config['state_dir'], exist_ok=True)
    os.makedirs(engine_config['log_dir'], exist_ok=True)

    notifier = init_notifier()
    trade_logger = TradeLogger(engine_config['log_dir'], 'engine', log_level)
    health_monitor = HealthMonitor(engine_config)

    engine = TradingEngine(
        exchange, symbol_configs, engine_config,
        trade_logger=trade_logger, health_monitor=health_monitor)

    # ─── Signal Handlers ───────────────────────────────────────
    def handle_signal(signum, frame):
        sig_name = signal.Signals(signum).name
        print(f"\nReceived {sig_name}, initiating graceful shutdown...")
        engine.stop(wait=False)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    # ─── Banner ────────────────────────────────────────────────
    border = '=' * 62
    print(f"\n{border}")
    print(f"  ADAPTIVE GRID & HEDGE ENGINE | {mode_str}")
    print(f"{border}")
    for cfg in symbol_configs:
        print(f"  {cfg.symbol:<10} {cfg.policy} / {cfg.grid_mode} | "
              f"capital ${cfg.capital:,.2f} | {cfg.leverage:g}x | min lot {cfg.min_lot:g}")
    print(f"  Tick:       {engine_config['tick_interval_seconds']}s")
    print(f"  State Dir:  {engine_config['state_dir']}")
    print(f"  Log Dir:    {engine_config['log_dir']}")
    print(f"{border}\n")

    notifier.send_now(fmt_start([c.symbol for c in symbol_configs], mode_str))

    print("Starting engine loop... (Ctrl+C to stop)\n")
    engine.run()

    notifier.send_now(fmt_stop())
    print("\nEngine stopped.")


if __name__ == "__main__":
    main()
