"""Reduction strategy calculator.

Pure functions only: given a listing's pricing state and a strategy, return
a candidate price with the universal safety clamps applied. Nothing here
touches the database or the network.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

from src.errors import PriceValidationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Time-based aggressiveness: +50% per 30 days listed, capped at 2x
TIME_BASED_RAMP_DAYS = Decimal("30")
TIME_BASED_RAMP_STEP = Decimal("0.5")
TIME_BASED_MAX_FACTOR = Decimal("2")


class DecisionOutcome(str, Enum):
    """Calculator verdict."""

    SUCCESS = "success"
    SKIP = "skip"


@dataclass(frozen=True)
class PricingState:
    """The subset of a listing the calculator needs."""

    current_price: Decimal
    minimum_price: Optional[Decimal]
    listing_start_time: Optional[datetime] = None

    @classmethod
    def from_listing(cls, listing) -> "PricingState":
        return cls(
            current_price=_as_decimal(listing.current_price),
            minimum_price=(
                _as_decimal(listing.minimum_price) if listing.minimum_price is not None else None
            ),
            listing_start_time=listing.listing_start_time,
        )


@dataclass(frozen=True)
class PriceDecision:
    """Result of one calculation."""

    new_price: Decimal
    outcome: DecisionOutcome
    strategy_name: str
    reason: Optional[str] = None

    @property
    def is_reduction(self) -> bool:
        return self.outcome is DecisionOutcome.SUCCESS


def _as_decimal(value: Union[Decimal, float, int, str]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _validated_pct(pct: Decimal) -> Decimal:
    pct = _as_decimal(pct)
    if not pct.is_finite() or pct <= 0 or pct > HUNDRED:
        raise PriceValidationError(f"reduction percentage {pct} outside (0, 100]")
    return pct


class ReductionStrategy:
    """Base class for the closed set of reduction strategies."""

    name: str = "base"

    def raw_price(self, state: PricingState, now: datetime) -> Decimal:
        raise NotImplementedError


@dataclass(frozen=True)
class FixedPercentage(ReductionStrategy):
    """new = current x (1 - pct/100)."""

    pct: Decimal
    name = "fixed_percentage"

    def raw_price(self, state: PricingState, now: datetime) -> Decimal:
        pct = _validated_pct(self.pct)
        return state.current_price * (1 - pct / HUNDRED)


@dataclass(frozen=True)
class MarketBased(ReductionStrategy):
    """Same formula as FixedPercentage for now.

    Kept as its own variant so it can later be wired to a CompetitiveSnapshot
    without silently changing what listings configured as fixed_percentage do.
    The snapshot is accepted and ignored.
    """

    pct: Decimal
    snapshot: Optional[object] = None
    name = "market_based"

    def raw_price(self, state: PricingState, now: datetime) -> Decimal:
        pct = _validated_pct(self.pct)
        return state.current_price * (1 - pct / HUNDRED)


@dataclass(frozen=True)
class TimeBased(ReductionStrategy):
    """Reduce harder the longer the listing has been up."""

    pct: Decimal
    name = "time_based"

    @staticmethod
    def days_listed(state: PricingState, now: datetime) -> int:
        if state.listing_start_time is None:
            return 0
        elapsed = (now - state.listing_start_time).total_seconds()
        if elapsed <= 0:
            return 0
        return math.ceil(elapsed / 86400)

    @classmethod
    def aggressive_factor(cls, days_listed: int) -> Decimal:
        factor = 1 + (Decimal(days_listed) / TIME_BASED_RAMP_DAYS) * TIME_BASED_RAMP_STEP
        return min(factor, TIME_BASED_MAX_FACTOR)

    def raw_price(self, state: PricingState, now: datetime) -> Decimal:
        pct = _validated_pct(self.pct)
        factor = self.aggressive_factor(self.days_listed(state, now))
        return state.current_price * (1 - (pct / HUNDRED) * factor)


@dataclass(frozen=True)
class Custom(ReductionStrategy):
    """Jump straight to an operator-chosen target, never below the floor."""

    target: Decimal
    name = "custom"

    def raw_price(self, state: PricingState, now: datetime) -> Decimal:
        target = _as_decimal(self.target)
        if not target.is_finite() or target <= 0:
            raise PriceValidationError(f"custom target {target} must be positive")
        return max(target, state.minimum_price)


STRATEGY_NAMES = ("fixed_percentage", "market_based", "time_based", "custom")


def strategy_for_listing(listing, snapshot=None) -> ReductionStrategy:
    """
    Map a listing's stored strategy selector to a strategy variant.

    Unknown selectors fall back to FixedPercentage.
    """
    pct = _as_decimal(listing.reduction_percentage)
    selector = (listing.strategy or "fixed_percentage").lower()

    if selector == "market_based":
        return MarketBased(pct=pct, snapshot=snapshot)
    if selector == "time_based":
        return TimeBased(pct=pct)
    if selector == "custom":
        if listing.target_price is None:
            raise PriceValidationError("custom strategy requires a target price")
        return Custom(target=_as_decimal(listing.target_price))
    return FixedPercentage(pct=pct)


def round_price(value: Decimal) -> Decimal:
    """Round to whole cents (half-up)."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate(
    state: PricingState,
    strategy: ReductionStrategy,
    custom_target: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> PriceDecision:
    """
    Compute the next price for a listing.

    Args:
        state: Current pricing state
        strategy: Configured strategy variant
        custom_target: Optional override; replaces the strategy with Custom(target)
        now: Reference time for time-based strategies (defaults to utcnow)

    Returns:
        PriceDecision; invariant violations come back as Skip, never raise
    """
    now = now or datetime.utcnow()
    if custom_target is not None:
        strategy = Custom(target=_as_decimal(custom_target))

    current = state.current_price
    floor = state.minimum_price

    try:
        if floor is None or floor <= 0:
            raise PriceValidationError("minimum price not set")
        new_price = strategy.raw_price(state, now)
    except PriceValidationError as e:
        return PriceDecision(
            new_price=current,
            outcome=DecisionOutcome.SKIP,
            strategy_name=strategy.name,
            reason=f"validation: {e}",
        )

    new_price = max(new_price, floor)
    new_price = round_price(new_price)
    # Rounding can never be allowed to dip under the floor
    new_price = max(new_price, floor)

    if new_price >= current:
        reason = "at minimum price" if current <= floor else "new price not lower than current"
        return PriceDecision(
            new_price=new_price,
            outcome=DecisionOutcome.SKIP,
            strategy_name=strategy.name,
            reason=reason,
        )

    return PriceDecision(
        new_price=new_price,
        outcome=DecisionOutcome.SUCCESS,
        strategy_name=strategy.name,
    )
