"""
Trading core: wallet, swaps, positions, snipe execution and exit orders
"""
from .auto_sell import ExitEngine
from .config_manager import ConfigManager, SniperConfig
from .db_handler import TradingDB
from .models import LimitOrder, PriceSample, SellResult, SnipeResult, TokenPosition
from .position_tracker import PositionTracker
from .price_monitor import PriceMonitor
from .swap_service import SwapService
from .trade_executor import ExecutionEngine
from .trading_state_machine import EngineState, OrderStatus, OrderType, PositionStatus
from .wallet_manager import WalletManager

__all__ = [
    'ConfigManager',
    'EngineState',
    'ExecutionEngine',
    'ExitEngine',
    'LimitOrder',
    'OrderStatus',
    'OrderType',
    'PositionStatus',
    'PositionTracker',
    'PriceMonitor',
    'PriceSample',
    'SellResult',
    'SniperConfig',
    'SnipeResult',
    'SwapService',
    'TokenPosition',
    'TradingDB',
    'WalletManager',
]
