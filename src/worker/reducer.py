"""Daily reduction scheduler.

Idle -> Claiming -> Processing -> Completed, with a NoOp exit when today's
run was already claimed. The SchedulerRun row is only marked completed
after every eligible listing has been attempted; a crash or deadline in
between leaves it running, and a later retry simply re-selects listings
(already-reduced ones no longer match the eligibility predicate).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from src import metrics
from src.config import settings
from src.db.models import AttemptOutcome, Listing
from src.db.session import AsyncSessionLocal
from src.errors import (
    AuthError,
    DedupConflict,
    ListingBusyError,
    MarketplaceError,
    PersistenceError,
    PriceValidationError,
    RunFatalError,
)
from src.logging_config import get_logger
from src.pricing.strategies import Custom, PricingState, calculate, strategy_for_listing
from src.worker.gateway import build_gateway
from src.worker.listing_lock import build_listing_locks
from src.worker.outcome_log import append_attempt, build_attempt
from src.worker.run_guard import RunClaim, RunGuard

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibleListing:
    id: int
    current_price: Decimal
    strategy: str


@dataclass(frozen=True)
class AttemptResult:
    """What happened to one listing."""

    listing_id: int
    outcome: AttemptOutcome
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None
    reason: Optional[str] = None


@dataclass
class RunSummary:
    """Result of one scheduler invocation."""

    status: str  # 'completed' | 'noop' | 'cancelled'
    run_date: date
    attempted: int = 0
    success: int = 0
    skip: int = 0
    fail: int = 0
    forced: bool = False
    reason: Optional[str] = None
    results: list[AttemptResult] = field(default_factory=list)

    def add(self, result: AttemptResult) -> None:
        self.results.append(result)
        if result.outcome is AttemptOutcome.SUCCESS:
            self.success += 1
        elif result.outcome is AttemptOutcome.SKIP:
            self.skip += 1
        else:
            self.fail += 1


def eligibility_clause(now: datetime):
    """SQL predicate for reduction-eligible listings."""
    return (
        Listing.reduction_enabled.is_(True),
        Listing.archived.is_(False),
        Listing.listing_status == "active",
        Listing.current_price > Listing.minimum_price,
        or_(Listing.next_reduction_at.is_(None), Listing.next_reduction_at <= now),
    )


def is_eligible(listing: Listing, now: datetime, manual: bool = False) -> Optional[str]:
    """Python-side re-check of eligibility. Returns a skip reason or None."""
    if listing.archived or listing.listing_status != "active":
        return "listing not active"
    if listing.current_price <= listing.minimum_price:
        return "at minimum price"
    if manual:
        return None
    if not listing.reduction_enabled:
        return "reduction disabled"
    if listing.next_reduction_at is not None and listing.next_reduction_at > now:
        return "next reduction not due"
    return None


class ReductionScheduler:
    """Runs the daily reduction pass."""

    def __init__(
        self,
        gateway=None,
        session_factory=None,
        locks=None,
        run_guard: Optional[RunGuard] = None,
        workers: Optional[int] = None,
        gateway_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.gateway = gateway or build_gateway()
        self.locks = locks or build_listing_locks()
        self.run_guard = run_guard or RunGuard(session_factory=self.session_factory)
        self.workers = max(1, workers or settings.reduction_workers)
        self.gateway_timeout = gateway_timeout or settings.price_apply_deadline_seconds

    async def run(
        self,
        force: bool = False,
        trigger: str = "scheduled",
        now: Optional[datetime] = None,
        deadline_seconds: Optional[float] = None,
    ) -> RunSummary:
        """
        Execute one reduction pass for today's UTC date.

        Args:
            force: Bypass the dedup guard (operator-initiated)
            trigger: What invoked the run
            now: Reference time (defaults to utcnow)
            deadline_seconds: Cancel processing after this long (0/None = settings)

        Returns:
            RunSummary with status completed, noop or cancelled

        Raises:
            RunFatalError: The run could not be claimed or listings could not be read
        """
        now = now or datetime.utcnow()
        run_date = now.date()

        try:
            claim = await self.run_guard.claim(run_date, trigger=trigger, force=force, now=now)
        except DedupConflict as e:
            logger.info(f"Reduction run for {run_date} already {e.status}; nothing to do ({trigger})")
            metrics.record_scheduler_run(trigger, "noop")
            return RunSummary(status="noop", run_date=run_date, reason=f"already {e.status}")
        except RunFatalError:
            metrics.record_scheduler_run(trigger, "fatal")
            raise

        summary = RunSummary(status="running", run_date=run_date, forced=force)
        deadline = deadline_seconds if deadline_seconds is not None else settings.reduction_run_deadline_seconds

        try:
            await asyncio.wait_for(self._process_all(claim, summary, now), timeout=deadline or None)
        except asyncio.TimeoutError:
            summary.status = "cancelled"
            summary.reason = f"deadline of {deadline:.0f}s exceeded"
            logger.warning(
                f"Reduction run for {run_date} cancelled after {summary.success + summary.skip + summary.fail}"
                f"/{summary.attempted} listings; run stays unfinished"
            )
            await self.run_guard.record_error(claim, summary.reason)
            metrics.record_scheduler_run(trigger, "cancelled")
            return summary
        except RunFatalError:
            metrics.record_scheduler_run(trigger, "fatal")
            raise

        await self.run_guard.complete(claim, summary.success, summary.skip, summary.fail)
        summary.status = "completed"
        metrics.record_scheduler_run(trigger, "completed")
        logger.info(
            f"Reduction run for {run_date} complete: {summary.attempted} eligible, "
            f"{summary.success} reduced, {summary.skip} skipped, {summary.fail} failed"
        )
        return summary

    async def select_eligible(self, now: datetime) -> list[EligibleListing]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Listing.id, Listing.current_price, Listing.strategy)
                    .where(*eligibility_clause(now))
                    .order_by(Listing.id)
                )
                return [EligibleListing(row[0], row[1], row[2]) for row in result.all()]
        except SQLAlchemyError as e:
            raise RunFatalError(f"cannot select eligible listings: {e}") from e

    async def _process_all(self, claim: RunClaim, summary: RunSummary, now: datetime) -> None:
        eligible = await self.select_eligible(now)
        summary.attempted = len(eligible)
        if not eligible:
            logger.info(f"No listings due for reduction on {claim.run_date}")
            return

        logger.info(
            f"Processing {len(eligible)} eligible listings with {min(self.workers, len(eligible))} workers"
        )
        queue: asyncio.Queue[EligibleListing] = asyncio.Queue()
        for item in eligible:
            queue.put_nowait(item)

        async def worker():
            while True:
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                result = await self.process_listing(
                    item.id,
                    now,
                    scheduler_run_id=claim.run_id,
                    fallback_price=item.current_price,
                    fallback_strategy=item.strategy,
                )
                summary.add(result)

        await asyncio.gather(*(worker() for _ in range(min(self.workers, len(eligible)))))

    async def process_listing(
        self,
        listing_id: int,
        now: datetime,
        scheduler_run_id: Optional[int] = None,
        custom_price: Optional[Decimal] = None,
        reduction_type: str = "scheduled",
        fallback_price: Optional[Decimal] = None,
        fallback_strategy: str = "fixed_percentage",
    ) -> AttemptResult:
        """Attempt one listing. Never raises for per-listing failures."""
        log = get_logger(__name__, listing_id=listing_id, reduction_type=reduction_type)
        try:
            async with self.locks.hold(listing_id):
                return await self._attempt(
                    listing_id, now, scheduler_run_id, custom_price, reduction_type
                )
        except ListingBusyError as e:
            log.info(f"Listing {listing_id} busy; skipping")
            return await self._record_standalone(
                listing_id, fallback_price, fallback_strategy, AttemptOutcome.SKIP,
                str(e), scheduler_run_id, reduction_type, now,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Unexpected error reducing listing {listing_id}: {e}", exc_info=True)
            return await self._record_standalone(
                listing_id, fallback_price, fallback_strategy, AttemptOutcome.FAIL,
                f"unexpected error: {e}", scheduler_run_id, reduction_type, now,
            )

    async def _attempt(
        self,
        listing_id: int,
        now: datetime,
        scheduler_run_id: Optional[int],
        custom_price: Optional[Decimal],
        reduction_type: str,
    ) -> AttemptResult:
        manual = reduction_type == "manual"

        async with self.session_factory() as db:
            # Re-read under the lock; the selection snapshot may be stale
            listing = await db.get(Listing, listing_id)
            if listing is None:
                logger.warning(f"Listing {listing_id} disappeared before reduction")
                return AttemptResult(listing_id, AttemptOutcome.SKIP, reason="listing not found")

            old_price = listing.current_price
            strategy_name = listing.strategy or "fixed_percentage"

            def finish(outcome, reason=None, new_price=None, remote_reference=None):
                db.add(build_attempt(
                    listing_id=listing_id,
                    old_price=old_price,
                    new_price=new_price,
                    strategy_used="custom" if custom_price is not None else strategy_name,
                    outcome=outcome.value,
                    reason=reason,
                    scheduler_run_id=scheduler_run_id,
                    reduction_type=reduction_type,
                    remote_reference=remote_reference,
                    now=now,
                ))
                return AttemptResult(listing_id, outcome, old_price, new_price, reason)

            skip_reason = is_eligible(listing, now, manual=manual)
            if skip_reason:
                result = finish(AttemptOutcome.SKIP, skip_reason)
                await db.commit()
                return result

            if custom_price is not None:
                strategy = Custom(target=custom_price)
            else:
                try:
                    strategy = strategy_for_listing(listing)
                except PriceValidationError as e:
                    result = finish(AttemptOutcome.SKIP, f"validation: {e}")
                    await db.commit()
                    return result

            decision = calculate(PricingState.from_listing(listing), strategy, now=now)
            if not decision.is_reduction:
                result = finish(AttemptOutcome.SKIP, decision.reason, new_price=decision.new_price)
                await db.commit()
                return result

            new_price = decision.new_price
            if new_price < listing.minimum_price or new_price >= old_price:
                result = finish(AttemptOutcome.SKIP, f"rejected unsafe price {new_price}")
                await db.commit()
                return result

            try:
                applied = await asyncio.wait_for(
                    self.gateway.apply(listing_id, new_price), timeout=self.gateway_timeout
                )
            except AuthError as e:
                result = finish(
                    AttemptOutcome.FAIL,
                    f"auth error: {e}; reconnect the marketplace account",
                    new_price=new_price,
                )
                await db.commit()
                return result
            except MarketplaceError as e:
                result = finish(AttemptOutcome.FAIL, f"gateway error: {e}", new_price=new_price)
                await db.commit()
                return result
            except asyncio.TimeoutError:
                result = finish(
                    AttemptOutcome.FAIL,
                    f"gateway timed out after {self.gateway_timeout:.0f}s",
                    new_price=new_price,
                )
                await db.commit()
                return result

            if not applied.applied:
                result = finish(AttemptOutcome.FAIL, "gateway did not apply price", new_price=new_price)
                await db.commit()
                return result

            interval = listing.reduction_interval_days or settings.default_reduction_interval_days
            try:
                listing.current_price = new_price
                listing.last_reduction_at = now
                listing.next_reduction_at = now + timedelta(days=interval)
                result = finish(
                    AttemptOutcome.SUCCESS,
                    new_price=new_price,
                    remote_reference=applied.remote_reference,
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    f"Price {new_price} applied remotely for listing {listing_id} "
                    f"but local update failed: {e}"
                )
                return await self._record_standalone(
                    listing_id, old_price, strategy_name, AttemptOutcome.FAIL,
                    f"persistence error: {e}", scheduler_run_id, reduction_type, now,
                    new_price=new_price,
                )

        logger.info(
            f"Reduced listing {listing_id}: {old_price} -> {new_price} ({decision.strategy_name})"
        )
        return result

    async def _record_standalone(
        self,
        listing_id: int,
        old_price: Optional[Decimal],
        strategy_name: str,
        outcome: AttemptOutcome,
        reason: str,
        scheduler_run_id: Optional[int],
        reduction_type: str,
        now: datetime,
        new_price: Optional[Decimal] = None,
    ) -> AttemptResult:
        """Record an attempt outside the listing's session (busy/persistence failures)."""
        if old_price is None:
            logger.error(f"Cannot record {outcome.value} for listing {listing_id}: {reason}")
            return AttemptResult(listing_id, outcome, reason=reason)
        try:
            await append_attempt(
                session_factory=self.session_factory,
                listing_id=listing_id,
                old_price=old_price,
                new_price=new_price,
                strategy_used=strategy_name or "fixed_percentage",
                outcome=outcome.value,
                reason=reason,
                scheduler_run_id=scheduler_run_id,
                reduction_type=reduction_type,
                now=now,
            )
        except PersistenceError as e:
            logger.error(f"Failed to record attempt: {e}")
        return AttemptResult(listing_id, outcome, old_price, new_price, reason)

    async def reduce_listing(
        self,
        listing_id: int,
        custom_price: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> AttemptResult:
        """Manual, operator-initiated reduction of one listing (no dedup guard)."""
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            listing = await db.get(Listing, listing_id)
            if listing is None:
                raise LookupError(f"listing {listing_id} not found")
            fallback_price = listing.current_price
            fallback_strategy = listing.strategy

        return await self.process_listing(
            listing_id,
            now,
            custom_price=custom_price,
            reduction_type="manual",
            fallback_price=fallback_price,
            fallback_strategy=fallback_strategy,
        )

    async def close(self):
        for resource in (self.gateway, self.locks):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
