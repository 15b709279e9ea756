"""
Base Stock Client - Abstract base class for the stock-of-record integration
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional
from uuid import UUID
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockSnapshot:
    """Quantity held by the stock-of-record at the instant it was read"""
    product_id: UUID
    stock: int


class BaseStockClient(ABC):
    """
    Abstract base class for stock-of-record clients
    """
    SERVICE_NAME: str = "stock"

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    # ========== Stock ==========

    @abstractmethod
    async def get_stock(self, product_id: UUID) -> StockSnapshot:
        """
        Read the current quantity for a product
        Raises DependencyError when the service cannot answer
        """
        pass

    @abstractmethod
    async def update_stock(self, product_id: UUID, quantity: int) -> None:
        """
        Overwrite the current quantity for a product
        Raises DependencyError when the service rejects or cannot be reached
        """
        pass

    # ========== Utilities ==========

    def _build_headers(self) -> Dict[str, str]:
        """Build common request headers"""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _log_api_call(self, method: str, endpoint: str, status_code: int):
        """Log API call for debugging"""
        logger.info(f"[{self.SERVICE_NAME}] {method} {endpoint} -> {status_code}")
