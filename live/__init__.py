"""
Live Execution Module for the Adaptive Grid & Hedge Engine.

Exchange adapters (Bybit via ccxt, offline simulation), state
persistence, trade logging, health monitoring and Telegram alerts.
"""
from live.executor import BybitExecutor
from live.simulated import SimulatedExchange
from live.state import StateManager
from live.logger import TradeLogger
from live.monitor import HealthMonitor
