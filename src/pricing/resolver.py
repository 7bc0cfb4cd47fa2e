"""Competitive match resolver.

Runs a tiered waterfall of marketplace searches for a listing, drops the
seller's own listings, rejects price outliers around the median and turns
what is left into a suggested-price snapshot.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from src import metrics
from src.config import settings
from src.db.models import MatchTier as TierName
from src.errors import MarketplaceError
from src.market.search_adapter import CandidateListing, MarketplaceSearchAdapter, extract_keywords
from src.pricing.strategies import round_price

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolverConfig:
    """Empirically chosen constants, overridable per deployment."""

    sufficiency_threshold: int = 5
    outlier_high_multiplier: Decimal = Decimal("3")
    outlier_low_multiplier: Decimal = Decimal("0.3")

    @classmethod
    def from_settings(cls) -> "ResolverConfig":
        return cls(
            sufficiency_threshold=settings.match_sufficiency_threshold,
            outlier_high_multiplier=Decimal(str(settings.outlier_high_multiplier)),
            outlier_low_multiplier=Decimal(str(settings.outlier_low_multiplier)),
        )


@dataclass
class SnapshotResult:
    """Unpersisted outcome of one resolve() call."""

    tier_used: TierName
    competitor_count: int = 0
    suggested_min: Optional[Decimal] = None
    suggested_avg: Optional[Decimal] = None
    market_high: Optional[Decimal] = None
    computed_at: datetime = field(default_factory=datetime.utcnow)
    has_insufficient_data: bool = True
    error_message: Optional[str] = None


class MatchTier:
    """One strategy in the competitor-search waterfall."""

    name: TierName

    def applies(self, listing) -> bool:
        raise NotImplementedError

    async def search(self, adapter: MarketplaceSearchAdapter, listing) -> list[CandidateListing]:
        raise NotImplementedError


class IdentifierTier(MatchTier):
    name = TierName.IDENTIFIER

    def applies(self, listing) -> bool:
        return bool(listing.product_identifier)

    async def search(self, adapter, listing):
        return await adapter.search_by_identifier(listing.product_identifier)


class TitleCategoryTier(MatchTier):
    name = TierName.TITLE_CATEGORY

    def applies(self, listing) -> bool:
        return bool(listing.category) and bool(extract_keywords(listing.title))

    async def search(self, adapter, listing):
        return await adapter.search_by_title(extract_keywords(listing.title), listing.category)


class TitleOnlyTier(MatchTier):
    name = TierName.TITLE_ONLY

    def applies(self, listing) -> bool:
        return bool(extract_keywords(listing.title))

    async def search(self, adapter, listing):
        return await adapter.search_by_title(extract_keywords(listing.title))


DEFAULT_TIERS: tuple[MatchTier, ...] = (IdentifierTier(), TitleCategoryTier(), TitleOnlyTier())


def reject_outliers(
    prices: Sequence[Decimal],
    high_multiplier: Decimal,
    low_multiplier: Decimal,
) -> list[Decimal]:
    """
    Drop prices far from the median.

    Args:
        prices: Candidate prices
        high_multiplier: Prices above median x this are dropped
        low_multiplier: Prices below median x this are dropped

    Returns:
        Prices within [median x low, median x high]
    """
    if not prices:
        return []
    median = statistics.median(prices)
    upper = median * high_multiplier
    lower = median * low_multiplier
    return [p for p in prices if lower <= p <= upper]


class CompetitiveMatchResolver:
    """Tiered competitor search producing a suggested-price snapshot."""

    def __init__(
        self,
        adapter: MarketplaceSearchAdapter,
        config: Optional[ResolverConfig] = None,
        tiers: Sequence[MatchTier] = DEFAULT_TIERS,
        default_seller_id: Optional[str] = None,
    ):
        self.adapter = adapter
        self.config = config or ResolverConfig.from_settings()
        self.tiers = tuple(tiers)
        self.default_seller_id = (
            default_seller_id if default_seller_id is not None else settings.marketplace_seller_id
        )

    def _own_identity(self, listing) -> Optional[str]:
        return getattr(listing, "seller_username", None) or self.default_seller_id or None

    def exclude_self(self, listing, candidates: list[CandidateListing]) -> list[CandidateListing]:
        """Drop the caller's own listings and listings priced in another currency."""
        own = self._own_identity(listing)
        currency = getattr(listing, "currency", None)
        kept = []
        for c in candidates:
            if own and c.seller_id and c.seller_id.lower() == own.lower():
                continue
            if currency and c.currency and c.currency.upper() != currency.upper():
                continue
            kept.append(c)
        return kept

    def is_sufficient(self, candidates: list[CandidateListing]) -> bool:
        return len(candidates) >= self.config.sufficiency_threshold

    async def resolve(self, listing) -> SnapshotResult:
        """
        Produce a snapshot for a listing.

        "No data" is a valid result (tier_used=no_matches). Adapter failures
        produce tier_used=error instead of propagating.
        """
        try:
            tier, candidates = await self._run_waterfall(listing)
        except MarketplaceError as e:
            logger.warning(f"Competitive search failed for listing {listing.id}: {e}")
            metrics.record_resolution(TierName.ERROR.value)
            return SnapshotResult(tier_used=TierName.ERROR, error_message=str(e)[:500])

        if tier is None or not candidates:
            metrics.record_resolution(TierName.NO_MATCHES.value)
            return SnapshotResult(tier_used=TierName.NO_MATCHES)

        prices = reject_outliers(
            [c.price for c in candidates],
            self.config.outlier_high_multiplier,
            self.config.outlier_low_multiplier,
        )
        if not prices:
            # The chosen tier is final for this call even if outlier rejection empties it
            metrics.record_resolution(TierName.NO_MATCHES.value)
            return SnapshotResult(tier_used=TierName.NO_MATCHES)

        result = SnapshotResult(
            tier_used=tier.name,
            competitor_count=len(prices),
            suggested_min=round_price(min(prices)),
            suggested_avg=round_price(sum(prices, Decimal(0)) / len(prices)),
            market_high=round_price(max(prices)),
            has_insufficient_data=len(prices) < self.config.sufficiency_threshold,
        )
        metrics.record_resolution(tier.name.value)
        logger.info(
            f"Listing {listing.id}: tier={tier.name.value} competitors={result.competitor_count} "
            f"min={result.suggested_min} avg={result.suggested_avg}"
        )
        return result

    async def _run_waterfall(
        self, listing
    ) -> tuple[Optional[MatchTier], list[CandidateListing]]:
        """Evaluate tiers in order; stop at the first one meeting the sufficiency predicate.

        Falls back to the tier with the most candidates (earliest wins ties).
        """
        best_tier: Optional[MatchTier] = None
        best: list[CandidateListing] = []

        for tier in self.tiers:
            if not tier.applies(listing):
                continue
            candidates = self.exclude_self(listing, await tier.search(self.adapter, listing))
            logger.debug(
                f"Listing {listing.id}: tier {tier.name.value} -> {len(candidates)} candidates"
            )
            if self.is_sufficient(candidates):
                return tier, candidates
            if len(candidates) > len(best):
                best_tier, best = tier, candidates

        return best_tier, best
