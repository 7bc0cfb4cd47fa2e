"""Append-only reduction outcome log and its reporting/retention queries."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src import metrics
from src.config import settings
from src.db.models import ReductionAttempt, RunStatus, SchedulerRun
from src.db.session import AsyncSessionLocal
from src.errors import PersistenceError

logger = logging.getLogger(__name__)


def build_attempt(
    listing_id: int,
    old_price: Decimal,
    new_price: Optional[Decimal],
    strategy_used: str,
    outcome: str,
    reason: Optional[str] = None,
    scheduler_run_id: Optional[int] = None,
    reduction_type: str = "scheduled",
    remote_reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReductionAttempt:
    """Create (but do not add) a ReductionAttempt row and count it."""
    metrics.record_attempt(outcome, strategy_used, reduction_type)
    return ReductionAttempt(
        listing_id=listing_id,
        scheduler_run_id=scheduler_run_id,
        old_price=old_price,
        new_price=new_price,
        strategy_used=strategy_used,
        outcome=outcome,
        reason=reason[:1000] if reason else None,
        reduction_type=reduction_type,
        remote_reference=remote_reference,
        created_at=now or datetime.utcnow(),
    )


async def append_attempt(session_factory=None, **fields) -> None:
    """Write a single attempt in its own transaction.

    Raises:
        PersistenceError: The row could not be written
    """
    factory = session_factory or AsyncSessionLocal
    try:
        async with factory() as db:
            db.add(build_attempt(**fields))
            await db.commit()
    except SQLAlchemyError as e:
        raise PersistenceError(f"cannot record attempt for listing {fields.get('listing_id')}: {e}") from e


async def purge_old_attempts(
    retention_days: Optional[int] = None,
    session_factory=None,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete attempts older than the retention window.

    Args:
        retention_days: Days to keep (defaults to settings.attempt_retention_days)
        session_factory: Session factory override
        now: Reference time

    Returns:
        Number of rows deleted
    """
    days = retention_days if retention_days is not None else settings.attempt_retention_days
    cutoff = (now or datetime.utcnow()) - timedelta(days=days)
    factory = session_factory or AsyncSessionLocal

    async with factory() as db:
        result = await db.execute(
            delete(ReductionAttempt).where(ReductionAttempt.created_at < cutoff)
        )
        await db.commit()

    deleted = result.rowcount or 0
    if deleted:
        metrics.attempts_purged_total.inc(deleted)
    logger.info(f"Purged {deleted} reduction attempts older than {days} days")
    return deleted


async def latest_completed_run(db: AsyncSession) -> Optional[SchedulerRun]:
    """Most recently completed run, if any."""
    result = await db.execute(
        select(SchedulerRun)
        .where(SchedulerRun.status == RunStatus.COMPLETED.value)
        .order_by(SchedulerRun.completed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_runs(db: AsyncSession, limit: int = 30) -> list[SchedulerRun]:
    result = await db.execute(
        select(SchedulerRun).order_by(SchedulerRun.run_date.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def list_attempts(
    db: AsyncSession,
    listing_id: Optional[int] = None,
    outcome: Optional[str] = None,
    scheduler_run_id: Optional[int] = None,
    limit: int = 100,
) -> list[ReductionAttempt]:
    query = select(ReductionAttempt).order_by(
        ReductionAttempt.created_at.desc(), ReductionAttempt.id.desc()
    )
    if listing_id is not None:
        query = query.where(ReductionAttempt.listing_id == listing_id)
    if outcome:
        query = query.where(ReductionAttempt.outcome == outcome)
    if scheduler_run_id is not None:
        query = query.where(ReductionAttempt.scheduler_run_id == scheduler_run_id)
    result = await db.execute(query.limit(limit))
    return list(result.scalars().all())
