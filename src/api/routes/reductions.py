"""Reduction run and outcome log API endpoints."""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database, get_task_runner, require_admin_api_key
from src.errors import RunFatalError
from src.worker import outcome_log
from src.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reductions", tags=["reductions"])


# Response models
class SchedulerRunResponse(BaseModel):
    """Response model for a scheduler run."""
    id: int
    run_date: date
    status: str
    trigger: Optional[str]
    forced: bool
    started_at: datetime
    completed_at: Optional[datetime]
    success_count: int
    skip_count: int
    fail_count: int
    error_message: Optional[str]

    class Config:
        from_attributes = True


class ReductionAttemptResponse(BaseModel):
    """Response model for a reduction attempt."""
    id: int
    listing_id: int
    scheduler_run_id: Optional[int]
    old_price: Decimal
    new_price: Optional[Decimal]
    strategy_used: str
    outcome: str
    reason: Optional[str]
    reduction_type: str
    created_at: datetime

    class Config:
        from_attributes = True


class TriggerRunRequest(BaseModel):
    """Request model for triggering a reduction run."""
    force: bool = False
    deadline_seconds: Optional[float] = None


class RunSummaryResponse(BaseModel):
    """Response model for a finished invocation."""
    status: str
    run_date: date
    attempted: int
    success: int
    skip: int
    fail: int
    forced: bool
    reason: Optional[str]


class ManualReductionRequest(BaseModel):
    """Request model for a manual reduction."""
    custom_price: Optional[Decimal] = Field(default=None, gt=0)


class ManualReductionResponse(BaseModel):
    listing_id: int
    outcome: str
    old_price: Optional[Decimal]
    new_price: Optional[Decimal]
    reason: Optional[str]


class LatestRunResponse(BaseModel):
    """Reporting summary: last completed run and its counts."""
    last_completed_at: Optional[datetime]
    run: Optional[SchedulerRunResponse]


@router.post(
    "/run",
    response_model=RunSummaryResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def trigger_run(
    request: TriggerRunRequest,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Trigger a reduction pass now (``force`` bypasses the once-per-day guard)."""
    try:
        summary = await runner.run_reductions(
            trigger="manual",
            force=request.force,
            deadline_seconds=request.deadline_seconds,
        )
    except RunFatalError as e:
        logger.error(f"Manual reduction run failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return RunSummaryResponse(
        status=summary.status,
        run_date=summary.run_date,
        attempted=summary.attempted,
        success=summary.success,
        skip=summary.skip,
        fail=summary.fail,
        forced=summary.forced,
        reason=summary.reason,
    )


@router.get("/runs", response_model=List[SchedulerRunResponse])
async def list_runs(limit: int = 30, db: AsyncSession = Depends(get_database)):
    """List recent scheduler runs, newest first."""
    return await outcome_log.list_runs(db, limit=limit)


@router.get("/runs/latest", response_model=LatestRunResponse)
async def latest_run(db: AsyncSession = Depends(get_database)):
    """Last completed run with its success/skip/fail counts."""
    run = await outcome_log.latest_completed_run(db)
    return LatestRunResponse(
        last_completed_at=run.completed_at if run else None,
        run=SchedulerRunResponse.model_validate(run) if run else None,
    )


@router.get("/attempts", response_model=List[ReductionAttemptResponse])
async def list_attempts(
    listing_id: Optional[int] = None,
    outcome: Optional[str] = None,
    run_id: Optional[int] = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_database),
):
    """List reduction attempts, optionally filtered."""
    return await outcome_log.list_attempts(
        db, listing_id=listing_id, outcome=outcome, scheduler_run_id=run_id, limit=limit
    )


@router.post(
    "/listings/{listing_id}/reduce",
    response_model=ManualReductionResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def reduce_listing(
    listing_id: int,
    request: ManualReductionRequest,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Reduce one listing now, optionally to a custom price."""
    await runner.initialize()
    try:
        result = await runner.reducer.reduce_listing(listing_id, custom_price=request.custom_price)
    except LookupError:
        raise HTTPException(status_code=404, detail="Listing not found")

    return ManualReductionResponse(
        listing_id=result.listing_id,
        outcome=result.outcome.value,
        old_price=result.old_price,
        new_price=result.new_price,
        reason=result.reason,
    )
