"""Marketplace search adapter.

Issues one search query per call against the marketplace item-summary
search endpoint and normalizes the result into ``CandidateListing`` rows.
No business logic lives here: tiering, self-exclusion and outlier
filtering belong to the resolver.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from src import metrics
from src.config import settings
from src.errors import MarketplaceError
from src.market.credentials import CredentialProvider, StaticCredentialProvider
from src.market.http_client import ServicePolicy, request_with_policy
from src.market.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "new", "used", "free", "shipping", "fast",
    "buy", "now", "get", "sale", "best", "top", "great", "good", "quality",
})

_PUNCT_RE = re.compile(r"[^\w\s]")


@dataclass(frozen=True)
class CandidateListing:
    """Normalized competitor listing returned by a search."""

    item_id: Optional[str]
    title: Optional[str]
    price: Decimal
    currency: Optional[str]
    seller_id: Optional[str]
    condition: Optional[str]


def extract_keywords(title: str, max_terms: Optional[int] = None) -> str:
    """
    Reduce a listing title to its most meaningful search terms.

    Args:
        title: Listing title
        max_terms: Number of words to keep (defaults to settings)

    Returns:
        Space-separated keywords (may be empty)
    """
    if not title:
        return ""
    limit = max_terms or settings.keyword_max_terms
    words = _PUNCT_RE.sub(" ", title.lower()).split()
    meaningful = [w for w in words if len(w) > 2 and w not in STOP_WORDS]
    return " ".join(meaningful[:limit])


def _parse_price(raw: Any) -> Optional[Decimal]:
    if raw is None:
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def normalize_item(item: dict) -> Optional[CandidateListing]:
    """Convert one raw item summary to a CandidateListing (None if it has no usable price)."""
    price_info = item.get("price") or {}
    price = _parse_price(price_info.get("value"))
    if price is None:
        return None
    seller = item.get("seller") or {}
    return CandidateListing(
        item_id=item.get("itemId"),
        title=item.get("title"),
        price=price,
        currency=price_info.get("currency"),
        seller_id=seller.get("username"),
        condition=item.get("condition"),
    )


class MarketplaceSearchAdapter:
    """Thin async client for the marketplace search endpoint."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        credentials: Optional[CredentialProvider] = None,
        rate_limiter: Optional[RateLimiter] = None,
        search_url: Optional[str] = None,
        marketplace_id: Optional[str] = None,
        result_limit: Optional[int] = None,
        policy: Optional[ServicePolicy] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self.credentials = credentials or StaticCredentialProvider()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.search_url = search_url or settings.marketplace_search_url
        self.marketplace_id = marketplace_id or settings.marketplace_id
        self.result_limit = result_limit or settings.search_result_limit
        self.policy = policy or ServicePolicy(
            name="marketplace_search",
            max_attempts=settings.search_max_attempts,
            timeout=httpx.Timeout(settings.search_timeout_seconds),
            backoff_base=settings.search_backoff_base_seconds,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self):
        """Close the underlying HTTP client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def search_by_identifier(self, identifier: str) -> list[CandidateListing]:
        """Search by exact product identifier (GTIN/UPC/EAN)."""
        return await self._search({"gtin": identifier}, tier="identifier")

    async def search_by_title(
        self,
        keywords: str,
        category_id: Optional[str] = None,
    ) -> list[CandidateListing]:
        """Search by title keywords, optionally constrained to a category."""
        params: dict[str, Any] = {"q": keywords}
        tier = "title_only"
        if category_id:
            params["category_ids"] = category_id
            tier = "title_category"
        return await self._search(params, tier=tier)

    async def _search(self, params: dict[str, Any], tier: str) -> list[CandidateListing]:
        token = await self.credentials.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-EBAY-C-MARKETPLACE-ID": self.marketplace_id,
        }
        query = dict(params)
        query["limit"] = self.result_limit

        start = time.monotonic()
        try:
            resp = await request_with_policy(
                self._get_client(),
                "GET",
                self.search_url,
                self.policy,
                headers=headers,
                params=query,
                rate_limiter=self.rate_limiter,
            )
        except MarketplaceError as e:
            metrics.record_search(tier, type(e).__name__, time.monotonic() - start)
            raise
        metrics.record_search(tier, "success", time.monotonic() - start)

        try:
            payload = resp.json()
        except ValueError:
            logger.warning(f"Search returned non-JSON body for tier {tier}")
            return []

        items = payload.get("itemSummaries") or []
        candidates = [c for c in (normalize_item(item) for item in items) if c is not None]
        logger.debug(
            f"Search tier={tier} returned {len(items)} items ({len(candidates)} with prices)"
        )
        return candidates
