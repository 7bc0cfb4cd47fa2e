"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class AnalyzedState(str, Enum):
    """Competitive analysis state of a listing."""

    UNANALYZED = "unanalyzed"
    ANALYZING = "analyzing"  # claimed by a caller that is resolving it now
    ANALYZED = "analyzed"
    ERROR = "error"


class MatchTier(str, Enum):
    """Which tier of the competitor search produced a snapshot."""

    IDENTIFIER = "identifier"
    TITLE_CATEGORY = "title_category"
    TITLE_ONLY = "title_only"
    NO_MATCHES = "no_matches"
    ERROR = "error"


class AttemptOutcome(str, Enum):
    """Outcome of one reduction attempt."""

    SUCCESS = "success"
    SKIP = "skip"
    FAIL = "fail"


class RunStatus(str, Enum):
    """Dedup row status for a daily scheduler run."""

    RUNNING = "running"
    COMPLETED = "completed"


class Listing(Base):
    """Marketplace listing under automated reduction."""

    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    seller_username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)  # Owner's marketplace identity
    marketplace_item_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    sku: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    product_identifier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # GTIN/UPC/EAN

    current_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    minimum_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Reduction settings
    reduction_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    strategy: Mapped[str] = mapped_column(String(32), default="fixed_percentage", nullable=False)
    reduction_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("5.00"), nullable=False
    )
    reduction_interval_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    target_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)  # custom strategy
    last_reduction_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_reduction_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    listing_start_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    listing_status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    analyzed_state: Mapped[str] = mapped_column(
        String(16), default=AnalyzedState.UNANALYZED.value, nullable=False, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    snapshot: Mapped[Optional["CompetitiveSnapshot"]] = relationship(
        "CompetitiveSnapshot", back_populates="listing", uselist=False
    )

    __table_args__ = (
        CheckConstraint("minimum_price >= 0", name="ck_listing_minimum_non_negative"),
        CheckConstraint("current_price >= minimum_price", name="ck_listing_price_above_floor"),
        CheckConstraint(
            "reduction_percentage >= 0 AND reduction_percentage <= 100",
            name="ck_listing_reduction_percentage",
        ),
    )


class CompetitiveSnapshot(Base):
    """Result of one competitive-match resolution for a listing."""

    __tablename__ = "competitive_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )
    tier_used: Mapped[str] = mapped_column(String(20), nullable=False)
    competitor_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    suggested_min: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    suggested_avg: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    market_high: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    has_insufficient_data: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    listing: Mapped["Listing"] = relationship("Listing", back_populates="snapshot")

    # A snapshot is computed once per listing; resets delete the row first
    __table_args__ = (UniqueConstraint("listing_id", name="uq_snapshot_listing"),)


class SchedulerRun(Base):
    """Dedup guard row: one logical run per UTC calendar date."""

    __tablename__ = "scheduler_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.RUNNING.value, nullable=False)
    claim_token: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # 'scheduled' | 'manual' | 'cli'
    forced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Per-run outcome counts for reporting
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fail_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attempts: Mapped[list["ReductionAttempt"]] = relationship(
        "ReductionAttempt", back_populates="scheduler_run"
    )

    __table_args__ = (UniqueConstraint("run_date", name="uq_scheduler_run_date"),)


class ReductionAttempt(Base):
    """Append-only record of every reduction attempt."""

    __tablename__ = "reduction_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scheduler_run_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("scheduler_runs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    old_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    new_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    strategy_used: Mapped[str] = mapped_column(String(32), nullable=False)
    outcome: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reduction_type: Mapped[str] = mapped_column(String(16), default="scheduled", nullable=False)
    remote_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )

    scheduler_run: Mapped[Optional["SchedulerRun"]] = relationship(
        "SchedulerRun", back_populates="attempts"
    )
