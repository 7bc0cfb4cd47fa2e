"""Shared pytest fixtures."""

import asyncio
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.db.models import Base, Listing
from src.worker.gateway import ApplyResult
from src.errors import AuthError, TransientUpstreamError

NOW = datetime(2026, 3, 10, 6, 10, 0)


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_listing(session_factory):
    """Factory that persists a listing and returns it."""

    async def _make(**overrides) -> Listing:
        fields = dict(
            title="Sony WH-1000XM4 Wireless Noise Cancelling Headphones",
            seller_username="my_store",
            current_price=Decimal("100.00"),
            minimum_price=Decimal("50.00"),
            reduction_enabled=True,
            strategy="fixed_percentage",
            reduction_percentage=Decimal("10"),
            reduction_interval_days=7,
            listing_start_time=datetime(2026, 2, 1),
        )
        fields.update(overrides)
        listing = Listing(**fields)
        async with session_factory() as db:
            db.add(listing)
            await db.commit()
        return listing

    return _make


class FakeGateway:
    """Records apply calls; can be told to fail for specific listings."""

    def __init__(self, fail_for=(), auth_fail_for=(), reject_for=(), delay: float = 0.0):
        self.calls = []
        self.fail_for = set(fail_for)
        self.auth_fail_for = set(auth_fail_for)
        self.reject_for = set(reject_for)
        self.delay = delay
        self.closed = False

    async def apply(self, listing_id: int, new_price: Decimal) -> ApplyResult:
        self.calls.append((listing_id, new_price))
        if self.delay:
            await asyncio.sleep(self.delay)
        if listing_id in self.auth_fail_for:
            raise AuthError("token expired")
        if listing_id in self.fail_for:
            raise TransientUpstreamError("price_apply: status 503 after 3 attempts")
        if listing_id in self.reject_for:
            return ApplyResult(applied=False)
        return ApplyResult(applied=True, remote_reference=f"ref-{listing_id}")

    async def close(self):
        self.closed = True


@pytest.fixture
def gateway():
    return FakeGateway()
