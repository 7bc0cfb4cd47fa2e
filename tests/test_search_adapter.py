"""Tests for the marketplace search adapter and its HTTP policy."""

from decimal import Decimal

import httpx
import pytest

from src.errors import AuthError, TransientUpstreamError, UpstreamRejectedError
from src.market.credentials import StaticCredentialProvider
from src.market.http_client import ServicePolicy
from src.market.rate_limiter import RateLimiter
from src.market.search_adapter import MarketplaceSearchAdapter, extract_keywords, normalize_item

SEARCH_URL = "https://marketplace.test/buy/browse/v1/item_summary/search"

ITEMS = [
    {
        "itemId": "v1|111|0",
        "title": "AirPods Pro 2",
        "price": {"value": "189.99", "currency": "USD"},
        "seller": {"username": "gadget_hub"},
        "condition": "New",
    },
    {
        "itemId": "v1|222|0",
        "title": "AirPods Pro 2 open box",
        "price": {"value": "0", "currency": "USD"},
        "seller": {"username": "bargains"},
    },
    {
        "itemId": "v1|333|0",
        "title": "AirPods Pro (2nd gen)",
        "seller": {"username": "no_price_seller"},
    },
]


def make_adapter(handler, token="test-token"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    adapter = MarketplaceSearchAdapter(
        client=client,
        credentials=StaticCredentialProvider(token),
        rate_limiter=RateLimiter(requests_per_second=0, min_interval=0),
        search_url=SEARCH_URL,
        marketplace_id="EBAY_US",
        result_limit=25,
        policy=ServicePolicy(name="marketplace_search", max_attempts=3, backoff_base=0),
    )
    return adapter, client


def test_extract_keywords():
    assert extract_keywords("The NEW Apple iPhone 13, 128GB - Blue!", max_terms=5) == (
        "apple iphone 128gb blue"
    )
    assert extract_keywords("a to of", max_terms=5) == ""
    assert extract_keywords("", max_terms=5) == ""


def test_normalize_item():
    c = normalize_item(ITEMS[0])
    assert c.price == Decimal("189.99")
    assert c.seller_id == "gadget_hub"
    assert c.currency == "USD"
    assert normalize_item(ITEMS[1]) is None
    assert normalize_item(ITEMS[2]) is None


@pytest.mark.asyncio
async def test_search_by_identifier_sends_expected_request():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"itemSummaries": ITEMS})

    adapter, client = make_adapter(handler)
    try:
        results = await adapter.search_by_identifier("0194253397168")
    finally:
        await client.aclose()

    assert len(results) == 1
    assert results[0].item_id == "v1|111|0"
    request = seen[0]
    assert request.url.params["gtin"] == "0194253397168"
    assert request.url.params["limit"] == "25"
    assert request.headers["Authorization"] == "Bearer test-token"
    assert request.headers["X-EBAY-C-MARKETPLACE-ID"] == "EBAY_US"


@pytest.mark.asyncio
async def test_search_by_title_with_category():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"total": 0})

    adapter, client = make_adapter(handler)
    try:
        assert await adapter.search_by_title("airpods pro", "172618") == []
        assert await adapter.search_by_title("airpods pro") == []
    finally:
        await client.aclose()

    assert seen[0].url.params["q"] == "airpods pro"
    assert seen[0].url.params["category_ids"] == "172618"
    assert "category_ids" not in seen[1].url.params


@pytest.mark.asyncio
async def test_retries_server_errors_then_succeeds():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"itemSummaries": ITEMS[:1]})

    adapter, client = make_adapter(handler)
    try:
        results = await adapter.search_by_identifier("123")
    finally:
        await client.aclose()

    assert len(attempts) == 3
    assert len(results) == 1


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(502)

    adapter, client = make_adapter(handler)
    try:
        with pytest.raises(TransientUpstreamError):
            await adapter.search_by_identifier("123")
    finally:
        await client.aclose()

    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_transport_errors_are_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    adapter, client = make_adapter(handler)
    try:
        with pytest.raises(TransientUpstreamError):
            await adapter.search_by_title("airpods")
    finally:
        await client.aclose()

    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_rate_limited_honors_retry_after():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"itemSummaries": []})

    adapter, client = make_adapter(handler)
    try:
        assert await adapter.search_by_title("airpods") == []
    finally:
        await client.aclose()

    assert len(attempts) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_auth_errors_are_not_retried(status):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(status)

    adapter, client = make_adapter(handler)
    try:
        with pytest.raises(AuthError):
            await adapter.search_by_identifier("123")
    finally:
        await client.aclose()

    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_validation_errors_are_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(400, json={"errors": [{"message": "bad gtin"}]})

    adapter, client = make_adapter(handler)
    try:
        with pytest.raises(UpstreamRejectedError) as exc_info:
            await adapter.search_by_identifier("not-a-gtin")
    finally:
        await client.aclose()

    assert exc_info.value.status_code == 400
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_missing_token_raises_auth_error_without_calling():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(200, json={})

    adapter, client = make_adapter(handler, token="")
    try:
        with pytest.raises(AuthError):
            await adapter.search_by_title("airpods")
    finally:
        await client.aclose()

    assert attempts == []


@pytest.mark.asyncio
async def test_rate_limiter_enforces_min_interval(monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr("src.market.rate_limiter.asyncio.sleep", fake_sleep)
    limiter = RateLimiter(requests_per_second=0, min_interval=5.0)

    await limiter.acquire()
    await limiter.acquire()

    assert len(sleeps) == 1
    assert 0 < sleeps[0] <= 5.0


@pytest.mark.asyncio
async def test_read_errors_are_retried_then_succeed():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ReadError("connection reset", request=request)
        return httpx.Response(200, json={"itemSummaries": ITEMS[:1]})

    adapter, client = make_adapter(handler)
    try:
        results = await adapter.search_by_identifier("123")
    finally:
        await client.aclose()

    assert len(attempts) == 2
    assert len(results) == 1


@pytest.mark.asyncio
async def test_persistent_read_errors_become_transient_error():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        raise httpx.ReadError("connection reset", request=request)

    adapter, client = make_adapter(handler)
    try:
        with pytest.raises(TransientUpstreamError) as exc_info:
            await adapter.search_by_title("airpods")
    finally:
        await client.aclose()

    assert len(attempts) == 3
    assert isinstance(exc_info.value.__cause__, httpx.ReadError)


class CountingLimiter(RateLimiter):
    def __init__(self):
        super().__init__(requests_per_second=0, min_interval=0)
        self.acquired = 0

    async def acquire(self) -> None:
        self.acquired += 1
        await super().acquire()


@pytest.mark.asyncio
async def test_every_attempt_takes_a_limiter_token():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"itemSummaries": []})

    limiter = CountingLimiter()
    adapter, client = make_adapter(handler)
    adapter.rate_limiter = limiter
    try:
        await adapter.search_by_identifier("123")
    finally:
        await client.aclose()

    assert len(attempts) == 3
    assert limiter.acquired == 3


@pytest.mark.asyncio
async def test_rate_limited_cools_down_shared_limiter(monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr("src.market.rate_limiter.asyncio.sleep", fake_sleep)
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(429, headers={"Retry-After": "7"})
        return httpx.Response(200, json={"itemSummaries": []})

    adapter, client = make_adapter(handler)
    try:
        assert await adapter.search_by_title("airpods") == []
    finally:
        await client.aclose()

    assert len(attempts) == 2
    assert adapter.rate_limiter.cooldown_until > 0
    assert len(sleeps) == 1
    assert 6 < sleeps[0] <= 7
