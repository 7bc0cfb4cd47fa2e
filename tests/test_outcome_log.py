"""Tests for the outcome log retention and reporting queries."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from src.db.models import RunStatus, SchedulerRun
from src.worker import outcome_log
from tests.conftest import NOW


@pytest.mark.asyncio
async def test_purge_old_attempts(session_factory, make_listing):
    listing = await make_listing()
    for age_days in (0, 3, 9, 11, 30):
        await outcome_log.append_attempt(
            session_factory=session_factory,
            listing_id=listing.id,
            old_price=Decimal("100.00"),
            new_price=Decimal("90.00"),
            strategy_used="fixed_percentage",
            outcome="success",
            now=NOW - timedelta(days=age_days),
        )

    deleted = await outcome_log.purge_old_attempts(
        retention_days=10, session_factory=session_factory, now=NOW
    )

    assert deleted == 2
    async with session_factory() as db:
        remaining = await outcome_log.list_attempts(db, listing_id=listing.id)
    assert len(remaining) == 3
    assert all(a.created_at >= NOW - timedelta(days=10) for a in remaining)


@pytest.mark.asyncio
async def test_list_attempts_filters(session_factory, make_listing):
    a = await make_listing()
    b = await make_listing()
    for listing_id, outcome in ((a.id, "success"), (a.id, "fail"), (b.id, "skip")):
        await outcome_log.append_attempt(
            session_factory=session_factory,
            listing_id=listing_id,
            old_price=Decimal("100.00"),
            new_price=None,
            strategy_used="fixed_percentage",
            outcome=outcome,
            reason="gateway error: timeout" if outcome == "fail" else None,
            now=NOW,
        )

    async with session_factory() as db:
        assert len(await outcome_log.list_attempts(db)) == 3
        assert len(await outcome_log.list_attempts(db, listing_id=a.id)) == 2
        [failed] = await outcome_log.list_attempts(db, outcome="fail")

    assert failed.listing_id == a.id
    assert failed.reason == "gateway error: timeout"


@pytest.mark.asyncio
async def test_latest_completed_run(session_factory):
    async with session_factory() as db:
        db.add_all([
            SchedulerRun(
                run_date=(NOW - timedelta(days=2)).date(),
                status=RunStatus.COMPLETED.value,
                claim_token="a",
                started_at=NOW - timedelta(days=2),
                completed_at=NOW - timedelta(days=2) + timedelta(minutes=5),
                success_count=4,
            ),
            SchedulerRun(
                run_date=(NOW - timedelta(days=1)).date(),
                status=RunStatus.COMPLETED.value,
                claim_token="b",
                started_at=NOW - timedelta(days=1),
                completed_at=NOW - timedelta(days=1) + timedelta(minutes=5),
                success_count=2,
                fail_count=1,
            ),
            SchedulerRun(
                run_date=NOW.date(),
                status=RunStatus.RUNNING.value,
                claim_token="c",
                started_at=NOW,
            ),
        ])
        await db.commit()

        latest = await outcome_log.latest_completed_run(db)
        runs = await outcome_log.list_runs(db)

    assert latest.claim_token == "b"
    assert latest.fail_count == 1
    assert [r.claim_token for r in runs] == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_latest_completed_run_empty(db_session):
    assert await outcome_log.latest_completed_run(db_session) is None
