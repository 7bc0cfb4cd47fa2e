"""Competitive pricing analysis API endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database, get_task_runner, require_admin_api_key
from src.db.models import CompetitiveSnapshot
from src.errors import ListingBusyError
from src.worker.tasks import TaskRunner

router = APIRouter(prefix="/api/analysis", tags=["analysis"])


class SnapshotResponse(BaseModel):
    """Response model for a competitive snapshot."""
    listing_id: int
    tier_used: str
    competitor_count: int
    suggested_min: Optional[Decimal]
    suggested_avg: Optional[Decimal]
    market_high: Optional[Decimal]
    has_insufficient_data: bool
    computed_at: datetime

    class Config:
        from_attributes = True


class AnalysisRunResponse(BaseModel):
    analyzed: int
    errors: int
    total: int


@router.post(
    "/run",
    response_model=AnalysisRunResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def run_analysis(
    limit: Optional[int] = None,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Analyze the next batch of unanalyzed listings."""
    return await runner.run_competitive_analysis(limit=limit)


@router.post(
    "/listings/{listing_id}",
    response_model=SnapshotResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def analyze_listing(
    listing_id: int,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Analyze one listing (returns the stored snapshot if it was already analyzed)."""
    await runner.initialize()
    try:
        snapshot = await runner.analysis.analyze_listing(listing_id)
    except ListingBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No snapshot for listing")
    return snapshot


@router.get("/listings/{listing_id}/snapshot", response_model=SnapshotResponse)
async def get_snapshot(listing_id: int, db: AsyncSession = Depends(get_database)):
    """Get the stored competitive snapshot for a listing."""
    result = await db.execute(
        select(CompetitiveSnapshot).where(CompetitiveSnapshot.listing_id == listing_id)
    )
    snapshot = result.scalar_one_or_none()
    if not snapshot:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return snapshot
