"""Error taxonomy shared by the search adapter, calculator and scheduler."""

from __future__ import annotations

from typing import Optional


class MarketplaceError(RuntimeError):
    """Base class for failures talking to an upstream marketplace service."""


class TransientUpstreamError(MarketplaceError):
    """Raised when an upstream call fails after retries (network, 5xx, 429)."""


class AuthError(MarketplaceError):
    """Raised for invalid or expired credentials (401/403). Never retried."""


class UpstreamRejectedError(MarketplaceError):
    """Raised when upstream rejects the request itself (other 4xx). Never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PriceValidationError(ValueError):
    """Raised when a reduction would violate a pricing invariant."""


class PersistenceError(RuntimeError):
    """Raised when a store write fails for a single listing."""


class ListingBusyError(RuntimeError):
    """Raised when another worker holds the listing's serialization lock."""


class DedupConflict(Exception):
    """Raised when today's run was already claimed or completed."""

    def __init__(self, run_date, status: str):
        super().__init__(f"Run for {run_date} already {status}")
        self.run_date = run_date
        self.status = status


class RunFatalError(RuntimeError):
    """Raised when a run cannot even claim or read its dedup row."""
