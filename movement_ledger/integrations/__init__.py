# External Integrations Package
from .base import BaseStockClient, StockSnapshot
from .stock_api import StockApiClient
from .broker import RabbitBroker

__all__ = [
    "BaseStockClient",
    "StockSnapshot",
    "StockApiClient",
    "RabbitBroker",
]
