"""
Stock API Client - reads and writes product quantities on the stock-of-record
"""
from typing import Any, Dict, Optional
from uuid import UUID
import httpx
import logging

from movement_ledger.core.exceptions import DependencyError
from .base import BaseStockClient, StockSnapshot

logger = logging.getLogger(__name__)


class StockApiClient(BaseStockClient):
    """
    HTTP client for the Stock API
    GET  {base_url}/products/{id} -> {"stock": int, ...}
    PUT  {base_url}/products/{id}    {"stock": int}
    """
    SERVICE_NAME = "stock-api"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, api_key, timeout)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._build_headers(),
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with self._client() as client:
                response = await client.request(method, url, json=json)
        except httpx.TimeoutException as e:
            raise DependencyError(f"Stock API timeout on {method} {path}: {e}")
        except httpx.HTTPError as e:
            raise DependencyError(f"Stock API unreachable on {method} {path}: {e}")

        self._log_api_call(method, path, response.status_code)

        if not response.is_success:
            raise DependencyError(
                f"Stock API returned {response.status_code} on {method} {path}",
                {"status_code": response.status_code, "body": response.text[:500]},
            )
        return response

    async def get_stock(self, product_id: UUID) -> StockSnapshot:
        response = await self._request("GET", f"/products/{product_id}")
        try:
            data = response.json()
        except ValueError:
            raise DependencyError(f"Stock API returned a non-JSON body for product {product_id}")

        stock = data.get("stock") if isinstance(data, dict) else None
        if isinstance(stock, bool) or not isinstance(stock, int):
            raise DependencyError(f"Stock API returned no integer stock for product {product_id}")

        return StockSnapshot(product_id=product_id, stock=stock)

    async def update_stock(self, product_id: UUID, quantity: int) -> None:
        await self._request("PUT", f"/products/{product_id}", json={"stock": quantity})
        logger.debug(f"Stock for product {product_id} set to {quantity}")
