import logging
from functools import lru_cache
from typing import Optional

import httpx

from .config import settings
from .errors import CatalogUnavailableError, ValidationError
from .schemas import ProductInfo

logger = logging.getLogger("booking_service")


class CatalogClient:
    """
    Thin HTTP client for the catalog/listing service.
    Only used to look up a product's owner, daily price and availability.
    """

    def __init__(
            self,
            base_url: str,
            timeout: float = 5.0,
            transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def get_product(self, product_id: int) -> ProductInfo:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/products/{product_id}")
        except httpx.HTTPError as e:
            logger.error(f"Catalog lookup for product {product_id} failed: {e}")
            raise CatalogUnavailableError("Catalog service is unreachable.") from e

        if response.status_code == 404:
            raise ValidationError(f"Product {product_id} does not exist.")
        if response.status_code != 200:
            raise CatalogUnavailableError(f"Catalog service returned HTTP {response.status_code}.")

        return ProductInfo.model_validate(response.json())


@lru_cache
def get_catalog() -> CatalogClient:
    return CatalogClient(settings.CATALOG_SERVICE_URL, timeout=settings.CATALOG_TIMEOUT_SECONDS)
