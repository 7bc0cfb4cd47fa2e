"""Daily dedup guard for the reduction scheduler.

The claim is an INSERT against a unique ``run_date`` column, never a
read-then-write, so two triggers racing for the same date cannot both win.
Takeovers of an existing row (forced runs, stale-run recovery) are a
compare-and-swap on ``claim_token``.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.config import settings
from src.db.models import RunStatus, SchedulerRun
from src.db.session import AsyncSessionLocal
from src.errors import DedupConflict, RunFatalError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunClaim:
    """Ownership of today's SchedulerRun row."""

    run_id: int
    run_date: date
    token: str
    forced: bool = False
    reclaimed: bool = False


class RunGuard:
    """Claims and completes the SchedulerRun row for a calendar date."""

    def __init__(self, session_factory=None, stale_after: Optional[timedelta] = None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.stale_after = stale_after or timedelta(minutes=settings.stale_run_timeout_minutes)

    async def claim(
        self,
        run_date: date,
        trigger: str = "scheduled",
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> RunClaim:
        """
        Atomically claim the run for ``run_date``.

        Args:
            run_date: UTC calendar date of the run
            trigger: What started the run ('scheduled' | 'manual' | 'cli')
            force: Bypass the dedup guard (operator-initiated runs)
            now: Reference time (defaults to utcnow)

        Returns:
            RunClaim for the caller

        Raises:
            DedupConflict: The date is already completed or claimed by a live run
            RunFatalError: The dedup table could not be read or written
        """
        now = now or datetime.utcnow()
        token = uuid4().hex

        try:
            async with self.session_factory() as db:
                run = SchedulerRun(
                    run_date=run_date,
                    status=RunStatus.RUNNING.value,
                    claim_token=token,
                    trigger=trigger,
                    forced=force,
                    started_at=now,
                )
                db.add(run)
                try:
                    await db.commit()
                    logger.info(f"Claimed reduction run for {run_date} (trigger: {trigger})")
                    return RunClaim(run_id=run.id, run_date=run_date, token=token, forced=force)
                except IntegrityError:
                    await db.rollback()

                result = await db.execute(
                    select(SchedulerRun).where(SchedulerRun.run_date == run_date)
                )
                existing = result.scalar_one()
                return await self._take_over(db, existing, token, trigger, force, now)
        except DedupConflict:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Could not claim reduction run for {run_date}: {e}", exc_info=True)
            raise RunFatalError(f"cannot claim scheduler run for {run_date}: {e}") from e

    async def _take_over(self, db, existing: SchedulerRun, token, trigger, force, now) -> RunClaim:
        run_date = existing.run_date
        is_completed = existing.status == RunStatus.COMPLETED.value
        is_stale = (
            not is_completed
            and existing.started_at is not None
            and now - existing.started_at > self.stale_after
        )

        if not force:
            if is_completed:
                raise DedupConflict(run_date, "completed")
            if not is_stale:
                raise DedupConflict(run_date, "running")

        result = await db.execute(
            update(SchedulerRun)
            .where(
                SchedulerRun.id == existing.id,
                SchedulerRun.claim_token == existing.claim_token,
            )
            .values(
                claim_token=token,
                trigger=trigger,
                forced=existing.forced or force,
                started_at=existing.started_at if is_completed else now,
            )
        )
        if result.rowcount != 1:
            await db.rollback()
            # Somebody else swapped the token between our read and our update
            raise DedupConflict(run_date, "running")
        await db.commit()

        if is_stale:
            logger.warning(
                f"Reclaimed stale reduction run for {run_date} "
                f"(started_at: {existing.started_at}, trigger: {trigger})"
            )
        else:
            logger.info(f"Forced reduction run for {run_date} (existing status: {existing.status})")
        return RunClaim(
            run_id=existing.id,
            run_date=run_date,
            token=token,
            forced=force,
            reclaimed=True,
        )

    async def complete(
        self,
        claim: RunClaim,
        success: int,
        skip: int,
        fail: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Mark the claimed run completed and add this pass's counts.

        Only the current token holder can complete the row.

        Returns:
            True if the row was updated, False if the claim was superseded
        """
        now = now or datetime.utcnow()
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    update(SchedulerRun)
                    .where(
                        SchedulerRun.id == claim.run_id,
                        SchedulerRun.claim_token == claim.token,
                    )
                    .values(
                        status=RunStatus.COMPLETED.value,
                        completed_at=now,
                        success_count=SchedulerRun.success_count + success,
                        skip_count=SchedulerRun.skip_count + skip,
                        fail_count=SchedulerRun.fail_count + fail,
                    )
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise RunFatalError(f"cannot complete scheduler run {claim.run_id}: {e}") from e

        if result.rowcount != 1:
            logger.warning(
                f"Run {claim.run_id} for {claim.run_date} was superseded; not marking completed"
            )
            return False
        logger.info(
            f"Completed reduction run for {claim.run_date}: "
            f"{success} success, {skip} skip, {fail} fail"
        )
        return True

    async def record_error(self, claim: RunClaim, message: str) -> None:
        """Attach an error note to a run that stays unfinished."""
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(SchedulerRun)
                    .where(
                        SchedulerRun.id == claim.run_id,
                        SchedulerRun.claim_token == claim.token,
                    )
                    .values(error_message=message[:500])
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to record error on run {claim.run_id}: {e}")
