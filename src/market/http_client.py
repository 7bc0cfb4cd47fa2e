"""Centralized HTTP request loop with per-service policies and status-aware error handling."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import httpx

from src.errors import AuthError, TransientUpstreamError, UpstreamRejectedError

if TYPE_CHECKING:
    from src.market.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Retryable exceptions: any httpx transport failure
RETRYABLE_EXC = (httpx.TransportError,)


@dataclass(frozen=True)
class ServicePolicy:
    """Per-service HTTP request policy configuration."""

    name: str
    max_attempts: int = 3
    timeout: httpx.Timeout = None  # Will be set to default if None
    backoff_base: float = 1.0

    def __post_init__(self):
        """Set default timeout if not provided."""
        if self.timeout is None:
            object.__setattr__(
                self,
                'timeout',
                httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=10.0)
            )


class _RateLimited(Exception):
    def __init__(self, retry_after: Optional[float] = None):
        super().__init__("Rate limited")
        self.retry_after = retry_after


def _backoff(policy: ServicePolicy, attempt: int) -> float:
    if policy.backoff_base <= 0:
        return 0.0
    return policy.backoff_base * (2 ** (attempt - 1)) + random.random() * policy.backoff_base


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


async def request_with_policy(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    policy: ServicePolicy,
    headers: Optional[dict[str, str]] = None,
    params: Optional[dict[str, Any]] = None,
    json: Optional[Any] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> httpx.Response:
    """
    Issue a request with per-service policy and status-aware error handling.

    Args:
        client: httpx AsyncClient instance
        method: HTTP method
        url: URL to call
        policy: ServicePolicy configuration
        headers: Optional request headers
        params: Optional query parameters
        json: Optional JSON body
        rate_limiter: Shared limiter; one token is taken per attempt and a 429
            puts it into cooldown for every caller sharing it

    Returns:
        httpx.Response on success (2xx)

    Raises:
        AuthError: On 401/403 (not retried)
        UpstreamRejectedError: On other 4xx (not retried)
        TransientUpstreamError: If 5xx/429/transport failures persist after retries
    """
    last_exc: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if rate_limiter is not None:
            await rate_limiter.acquire()
        try:
            resp = await client.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                timeout=policy.timeout,
            )

            sc = resp.status_code

            if 200 <= sc < 300:
                return resp

            if sc in (401, 403):
                raise AuthError(f"{policy.name}: {sc} for {url}")

            if sc == 429:
                raise _RateLimited(_parse_retry_after(resp.headers.get("Retry-After")))

            if 400 <= sc < 500:
                raise UpstreamRejectedError(f"{policy.name}: {sc} for {url}", status_code=sc)

            # 5xx and anything unexpected is transient
            last_exc = TransientUpstreamError(f"{policy.name}: status {sc} for {url}")
            if attempt < policy.max_attempts:
                sleep_s = _backoff(policy, attempt)
                logger.warning(
                    f"{policy.name}: Server error {sc}, retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                continue
            raise TransientUpstreamError(
                f"{policy.name}: status {sc} for {url} after {policy.max_attempts} attempts"
            )

        except _RateLimited as e:
            sleep_s = e.retry_after if e.retry_after is not None else _backoff(policy, attempt)
            last_exc = e
            if attempt < policy.max_attempts:
                logger.warning(
                    f"{policy.name}: Rate limited (429), retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{policy.max_attempts})"
                )
                if rate_limiter is not None:
                    rate_limiter.set_cooldown(sleep_s)
                else:
                    await asyncio.sleep(sleep_s)
                continue
            raise TransientUpstreamError(
                f"{policy.name}: rate limited after {policy.max_attempts} attempts"
            ) from e

        except RETRYABLE_EXC as e:
            last_exc = e
            if attempt < policy.max_attempts:
                sleep_s = _backoff(policy, attempt)
                logger.warning(
                    f"{policy.name}: Transport error ({type(e).__name__}), "
                    f"retrying in {sleep_s:.1f}s (attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                continue
            raise TransientUpstreamError(
                f"{policy.name}: transport error after {policy.max_attempts} attempts: {url}"
            ) from e

    # Only reachable with max_attempts < 1
    raise TransientUpstreamError(
        f"{policy.name}: failed after {policy.max_attempts} attempts: {url}"
    ) from last_exc
