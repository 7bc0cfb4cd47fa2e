"""Competitive analysis job: resolve and persist one snapshot per listing."""

import asyncio
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from src.config import settings
from src.db.models import AnalyzedState, CompetitiveSnapshot, Listing, MatchTier
from src.db.session import AsyncSessionLocal
from src.errors import ListingBusyError
from src.market.search_adapter import MarketplaceSearchAdapter
from src.pricing.resolver import CompetitiveMatchResolver, SnapshotResult

logger = logging.getLogger(__name__)


class CompetitiveAnalysisJob:
    """
    Runs the resolver over unanalyzed listings.

    One-shot policy: once a snapshot exists the listing is flipped to
    ``analyzed`` (or ``error`` on adapter failure) and never resolved again
    unless an operator resets it.
    """

    def __init__(
        self,
        resolver: Optional[CompetitiveMatchResolver] = None,
        session_factory=None,
        delay_seconds: Optional[float] = None,
    ):
        self.resolver = resolver or CompetitiveMatchResolver(MarketplaceSearchAdapter())
        self.session_factory = session_factory or AsyncSessionLocal
        self.delay_seconds = (
            delay_seconds if delay_seconds is not None else settings.analysis_delay_seconds
        )

    async def analyze_listing(self, listing_id: int) -> Optional[CompetitiveSnapshot]:
        """
        Resolve and persist a snapshot for one listing.

        The listing is claimed (``unanalyzed`` -> ``analyzing``) with a
        conditional UPDATE before any search, so concurrent callers never
        search twice. A caller that loses the claim gets the stored snapshot
        without any external call. Returns None if the listing does not exist.

        Raises:
            ListingBusyError: Another caller holds the claim and has not
                stored its snapshot yet
        """
        async with self.session_factory() as db:
            listing = await db.get(Listing, listing_id)
            if listing is None:
                return None

            claimed = await db.execute(
                update(Listing)
                .where(
                    Listing.id == listing_id,
                    Listing.analyzed_state == AnalyzedState.UNANALYZED.value,
                )
                .values(analyzed_state=AnalyzedState.ANALYZING.value)
            )
            await db.commit()

            if claimed.rowcount != 1:
                snapshot = await self._stored_snapshot(db, listing_id)
                if snapshot is None:
                    raise ListingBusyError(f"listing {listing_id} is being analyzed")
                return snapshot

            await db.refresh(listing)
            try:
                outcome = await self.resolver.resolve(listing)
                snapshot = self._to_row(listing_id, outcome)
                db.add(snapshot)
                listing.analyzed_state = (
                    AnalyzedState.ERROR.value
                    if outcome.tier_used is MatchTier.ERROR
                    else AnalyzedState.ANALYZED.value
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                await self._release_claim(listing_id)
                raise
            return snapshot

    @staticmethod
    async def _stored_snapshot(db, listing_id: int) -> Optional[CompetitiveSnapshot]:
        result = await db.execute(
            select(CompetitiveSnapshot).where(CompetitiveSnapshot.listing_id == listing_id)
        )
        return result.scalar_one_or_none()

    async def _release_claim(self, listing_id: int) -> None:
        # Fresh session: the failed one may be unusable
        async with self.session_factory() as db:
            await db.execute(
                update(Listing)
                .where(
                    Listing.id == listing_id,
                    Listing.analyzed_state == AnalyzedState.ANALYZING.value,
                )
                .values(analyzed_state=AnalyzedState.UNANALYZED.value)
            )
            await db.commit()
        logger.warning(f"Released analysis claim on listing {listing_id} after failure")

    async def run(self, limit: Optional[int] = None) -> dict:
        """
        Analyze a batch of unanalyzed listings.

        Returns:
            Counts: analyzed, errors, total
        """
        batch = limit or settings.analysis_batch_size
        async with self.session_factory() as db:
            result = await db.execute(
                select(Listing.id)
                .where(
                    Listing.analyzed_state == AnalyzedState.UNANALYZED.value,
                    Listing.archived.is_(False),
                )
                .order_by(Listing.id)
                .limit(batch)
            )
            listing_ids = [row[0] for row in result.all()]

        if not listing_ids:
            logger.info("No listings to analyze")
            return {"analyzed": 0, "errors": 0, "total": 0}

        logger.info(f"Found {len(listing_ids)} listings to analyze")
        analyzed = 0
        errors = 0
        for index, listing_id in enumerate(listing_ids):
            try:
                snapshot = await self.analyze_listing(listing_id)
                if snapshot is not None and snapshot.tier_used == MatchTier.ERROR.value:
                    errors += 1
                else:
                    analyzed += 1
            except ListingBusyError as e:
                logger.info(f"Skipping listing {listing_id}: {e}")
            except SQLAlchemyError as e:
                logger.error(f"Failed to store snapshot for listing {listing_id}: {e}")
                errors += 1

            if self.delay_seconds and index < len(listing_ids) - 1:
                await asyncio.sleep(self.delay_seconds)

        logger.info(f"Analysis complete: {analyzed} analyzed, {errors} errors")
        return {"analyzed": analyzed, "errors": errors, "total": len(listing_ids)}

    @staticmethod
    def _to_row(listing_id: int, outcome: SnapshotResult) -> CompetitiveSnapshot:
        return CompetitiveSnapshot(
            listing_id=listing_id,
            tier_used=outcome.tier_used.value,
            competitor_count=outcome.competitor_count,
            suggested_min=outcome.suggested_min,
            suggested_avg=outcome.suggested_avg,
            market_high=outcome.market_high,
            has_insufficient_data=outcome.has_insufficient_data,
            error_message=outcome.error_message,
            computed_at=outcome.computed_at,
        )

    async def close(self):
        await self.resolver.adapter.close()
