"""Tests for the competitive analysis job."""

import asyncio
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from src.db.models import AnalyzedState, CompetitiveSnapshot, Listing, MatchTier
from src.errors import ListingBusyError, TransientUpstreamError
from src.market.credentials import StaticCredentialProvider
from src.market.http_client import ServicePolicy
from src.market.rate_limiter import RateLimiter
from src.market.search_adapter import MarketplaceSearchAdapter
from src.pricing.resolver import CompetitiveMatchResolver, ResolverConfig
from src.worker.analysis_job import CompetitiveAnalysisJob
from tests.test_resolver import FakeAdapter, candidate


def make_job(session_factory, adapter):
    resolver = CompetitiveMatchResolver(adapter, config=ResolverConfig())
    return CompetitiveAnalysisJob(resolver=resolver, session_factory=session_factory, delay_seconds=0)


@pytest.mark.asyncio
async def test_analyze_listing_persists_snapshot(session_factory, make_listing):
    listing = await make_listing(product_identifier="0194253397168")
    adapter = FakeAdapter(identifier=[candidate(p) for p in (80, 85, 90, 95, 100)])
    job = make_job(session_factory, adapter)

    snapshot = await job.analyze_listing(listing.id)

    assert snapshot.tier_used == MatchTier.IDENTIFIER.value
    assert snapshot.competitor_count == 5
    assert snapshot.suggested_min == Decimal("80.00")
    assert snapshot.suggested_avg == Decimal("90.00")
    async with session_factory() as db:
        stored = await db.get(Listing, listing.id)
    assert stored.analyzed_state == AnalyzedState.ANALYZED.value


@pytest.mark.asyncio
async def test_analysis_is_one_shot(session_factory, make_listing):
    listing = await make_listing()
    adapter = FakeAdapter()
    job = make_job(session_factory, adapter)

    first = await job.analyze_listing(listing.id)
    calls_after_first = len(adapter.calls)
    second = await job.analyze_listing(listing.id)

    assert first.tier_used == MatchTier.NO_MATCHES.value
    assert second.id == first.id
    assert len(adapter.calls) == calls_after_first
    async with session_factory() as db:
        count = await db.scalar(select(func.count()).select_from(CompetitiveSnapshot))
    assert count == 1


@pytest.mark.asyncio
async def test_adapter_failure_marks_listing_error(session_factory, make_listing):
    listing = await make_listing()
    adapter = FakeAdapter(error=TransientUpstreamError("marketplace_search: status 500"))
    job = make_job(session_factory, adapter)

    snapshot = await job.analyze_listing(listing.id)

    assert snapshot.tier_used == MatchTier.ERROR.value
    async with session_factory() as db:
        stored = await db.get(Listing, listing.id)
    assert stored.analyzed_state == AnalyzedState.ERROR.value


@pytest.mark.asyncio
async def test_analyze_unknown_listing(session_factory):
    job = make_job(session_factory, FakeAdapter())
    assert await job.analyze_listing(12345) is None


@pytest.mark.asyncio
async def test_run_processes_unanalyzed_batch(session_factory, make_listing):
    await make_listing()
    await make_listing()
    await make_listing(analyzed_state=AnalyzedState.ANALYZED.value)
    await make_listing(archived=True)
    adapter = FakeAdapter(title_only=[candidate(50)])
    job = make_job(session_factory, adapter)

    stats = await job.run()
    again = await job.run()

    assert stats == {"analyzed": 2, "errors": 0, "total": 2}
    assert again == {"analyzed": 0, "errors": 0, "total": 0}


@pytest.mark.asyncio
async def test_run_counts_errors_without_aborting(session_factory, make_listing):
    await make_listing()
    await make_listing()
    adapter = FakeAdapter(error=TransientUpstreamError("marketplace_search: transport error"))
    job = make_job(session_factory, adapter)

    stats = await job.run(limit=10)

    assert stats == {"analyzed": 0, "errors": 2, "total": 2}


def resetting_adapter(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadError("connection reset", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    adapter = MarketplaceSearchAdapter(
        client=client,
        credentials=StaticCredentialProvider("test-token"),
        rate_limiter=RateLimiter(requests_per_second=0, min_interval=0),
        search_url="https://marketplace.test/search",
        policy=ServicePolicy(name="marketplace_search", max_attempts=2, backoff_base=0),
    )
    return adapter, client


@pytest.mark.asyncio
async def test_connection_resets_produce_error_snapshots(session_factory, make_listing):
    first = await make_listing()
    second = await make_listing()
    calls = []
    adapter, client = resetting_adapter(calls)
    job = make_job(session_factory, adapter)

    try:
        stats = await job.run(limit=10)
    finally:
        await client.aclose()

    assert stats == {"analyzed": 0, "errors": 2, "total": 2}
    # The first search is retried once per listing, then the waterfall stops
    assert len(calls) == 4
    async with session_factory() as db:
        for listing_id in (first.id, second.id):
            stored = await db.get(Listing, listing_id)
            assert stored.analyzed_state == AnalyzedState.ERROR.value
        snapshots = (await db.execute(select(CompetitiveSnapshot))).scalars().all()
    assert {s.tier_used for s in snapshots} == {MatchTier.ERROR.value}
    assert all("transport error" in s.error_message for s in snapshots)


class SlowAdapter(FakeAdapter):
    async def search_by_identifier(self, identifier):
        await asyncio.sleep(0.1)
        return await super().search_by_identifier(identifier)


@pytest.mark.asyncio
async def test_concurrent_analysis_searches_once(session_factory, make_listing):
    listing = await make_listing(product_identifier="0194253397168")
    adapter = SlowAdapter(identifier=[candidate(p) for p in (80, 85, 90, 95, 100)])
    job = make_job(session_factory, adapter)

    results = await asyncio.gather(
        job.analyze_listing(listing.id),
        job.analyze_listing(listing.id),
        return_exceptions=True,
    )

    snapshots = [r for r in results if isinstance(r, CompetitiveSnapshot)]
    busy = [r for r in results if isinstance(r, ListingBusyError)]
    assert len(snapshots) == 1
    assert len(busy) == 1
    assert adapter.calls == [("identifier", "0194253397168")]

    # Once stored, later callers get the same snapshot back
    again = await job.analyze_listing(listing.id)
    assert again.id == snapshots[0].id
    async with session_factory() as db:
        count = await db.scalar(select(func.count()).select_from(CompetitiveSnapshot))
    assert count == 1


@pytest.mark.asyncio
async def test_failed_analysis_releases_claim(session_factory, make_listing):
    class BrokenResolver:
        adapter = FakeAdapter()

        async def resolve(self, listing):
            raise RuntimeError("boom")

    listing = await make_listing()
    job = CompetitiveAnalysisJob(
        resolver=BrokenResolver(), session_factory=session_factory, delay_seconds=0
    )

    with pytest.raises(RuntimeError):
        await job.analyze_listing(listing.id)

    async with session_factory() as db:
        stored = await db.get(Listing, listing.id)
    assert stored.analyzed_state == AnalyzedState.UNANALYZED.value
