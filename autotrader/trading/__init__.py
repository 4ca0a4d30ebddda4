from .binance_client import BinanceFuturesClient, RuleBook
from .order_executor import OrderExecutor, route_action
from .schedule import is_due

__all__ = ['BinanceFuturesClient', 'RuleBook', 'OrderExecutor', 'route_action', 'is_due']
