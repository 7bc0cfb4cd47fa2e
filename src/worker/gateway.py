"""Price-apply gateway contract and implementations.

The gateway commits a new price to the marketplace. Implementations must be
safe to call more than once with the same (listing_id, new_price) pair.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import httpx

from src import metrics
from src.config import settings
from src.errors import MarketplaceError
from src.market.http_client import ServicePolicy, request_with_policy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    """Gateway confirmation."""

    applied: bool
    remote_reference: Optional[str] = None


class PriceApplyGateway(Protocol):
    async def apply(self, listing_id: int, new_price: Decimal) -> ApplyResult:
        ...


class HttpPriceApplyGateway:
    """POSTs price updates to a remote price-apply service."""

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[ServicePolicy] = None,
        api_key: Optional[str] = None,
    ):
        self.url = url or settings.price_apply_url
        self._client = client
        self._owns_client = client is None
        self.api_key = api_key if api_key is not None else settings.marketplace_access_token
        self.policy = policy or ServicePolicy(
            name="price_apply",
            max_attempts=settings.price_apply_max_attempts,
            timeout=httpx.Timeout(settings.price_apply_timeout_seconds),
            backoff_base=settings.price_apply_backoff_base_seconds,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def apply(self, listing_id: int, new_price: Decimal) -> ApplyResult:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.monotonic()
        try:
            resp = await request_with_policy(
                self._get_client(),
                "POST",
                self.url,
                self.policy,
                headers=headers,
                json={"listing_id": listing_id, "price": str(new_price)},
            )
        except MarketplaceError:
            metrics.record_price_apply(False, time.monotonic() - start)
            raise

        try:
            body = resp.json()
        except ValueError:
            body = {}
        applied = bool(body.get("applied", True))
        metrics.record_price_apply(applied, time.monotonic() - start)
        return ApplyResult(applied=applied, remote_reference=body.get("remote_reference"))


class DryRunPriceApplyGateway:
    """Confirms every price without calling anything (local/demo deployments)."""

    async def apply(self, listing_id: int, new_price: Decimal) -> ApplyResult:
        logger.info(f"[dry-run] would apply price {new_price} to listing {listing_id}")
        metrics.record_price_apply(True, 0.0)
        return ApplyResult(applied=True, remote_reference="dry-run")

    async def close(self):
        pass


def build_gateway():
    """Pick the gateway implementation from settings."""
    if settings.price_apply_url:
        return HttpPriceApplyGateway()
    logger.warning("No price_apply_url configured; using dry-run price gateway")
    return DryRunPriceApplyGateway()
