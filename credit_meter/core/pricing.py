"""
Pricing of gateway-reported usage costs.

Turns the USD cost the AI gateway reports for a completion into a billed
cost breakdown: base cost, markup and total, each kept in exact microcents
and rounded independently to cents.
"""

import math
from dataclasses import dataclass
from typing import Optional, Union

from .currency import (
    RoundingMode,
    UsdInput,
    coerce_rounding,
    microcents_to_cents,
    parse_usd_to_microcents,
    round_divide,
)
from .errors import InvalidAmount

BPS_DIVISOR = 10_000
DEFAULT_MARKUP_BPS = 1500  # 15%
PRICING_SOURCE = "gateway-cost"
CURRENCY = "usd"


@dataclass(frozen=True)
class CostBreakdown:
    """Billed cost of a single gateway completion.

    total_microcents is always base_microcents + markup_microcents. The cent
    fields are each rounded from their own microcent value, so markup_cents
    may differ by one from total_cents - base_cents.
    """
    currency: str
    source: str
    markup_bps: int
    base_microcents: int
    markup_microcents: int
    total_microcents: int
    base_cents: int
    markup_cents: int
    total_cents: int
    cents_rounding: RoundingMode
    markup_rounding: RoundingMode


def _normalize_bps(value: Optional[Union[int, float]]) -> int:
    if value is None:
        return DEFAULT_MARKUP_BPS
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidAmount("Markup bps must be a number")
    if not math.isfinite(value):
        raise InvalidAmount("Markup bps must be a finite number")
    # Half up, matching how bps values arrive from JSON configuration
    rounded = math.floor(value + 0.5)
    if rounded < 0:
        raise InvalidAmount("Markup bps must be non-negative")
    return rounded


def price_gateway_cost(
    cost_usd: UsdInput,
    markup_bps: Optional[Union[int, float]] = DEFAULT_MARKUP_BPS,
    cents_rounding: Union[RoundingMode, str] = RoundingMode.CEIL,
    markup_rounding: Union[RoundingMode, str] = RoundingMode.ROUND,
    min_charge_cents: int = 0
) -> CostBreakdown:
    """Price a gateway-reported cost with markup.

    The markup is computed at microcent precision before any rounding to
    cents. A minimum charge only lifts nonzero totals; zero-cost usage is
    never billed.

    Args:
        cost_usd: Vendor-reported USD cost
        markup_bps: Markup in basis points (1500 = 15%)
        cents_rounding: Rounding used for every microcent to cent conversion
        markup_rounding: Rounding used when computing the markup in microcents
        min_charge_cents: Floor applied to nonzero total_cents

    Returns:
        CostBreakdown for the usage

    Raises:
        InvalidAmount: If the cost is malformed or negative, or markup_bps is negative
    """
    bps = _normalize_bps(markup_bps)
    cents_mode = coerce_rounding(cents_rounding)
    markup_mode = coerce_rounding(markup_rounding)
    min_charge = max(0, math.floor(min_charge_cents or 0))

    base_microcents = parse_usd_to_microcents(cost_usd)
    markup_microcents = round_divide(base_microcents * bps, BPS_DIVISOR, markup_mode)
    total_microcents = base_microcents + markup_microcents

    base_cents = microcents_to_cents(base_microcents, cents_mode)
    markup_cents = microcents_to_cents(markup_microcents, cents_mode)
    total_cents = microcents_to_cents(total_microcents, cents_mode)

    if min_charge > 0 and total_cents > 0:
        total_cents = max(total_cents, min_charge)

    return CostBreakdown(
        currency=CURRENCY,
        source=PRICING_SOURCE,
        markup_bps=bps,
        base_microcents=base_microcents,
        markup_microcents=markup_microcents,
        total_microcents=total_microcents,
        base_cents=base_cents,
        markup_cents=markup_cents,
        total_cents=total_cents,
        cents_rounding=cents_mode,
        markup_rounding=markup_mode
    )


def price_gateway_cost_or_none(cost_usd: Optional[UsdInput], **kwargs) -> Optional[CostBreakdown]:
    """Price a cost that may be missing from the gateway response."""
    if cost_usd is None:
        return None
    return price_gateway_cost(cost_usd, **kwargs)


@dataclass(frozen=True)
class PricingPolicy:
    """Markup and rounding policy applied to every gateway cost."""
    markup_bps: int = DEFAULT_MARKUP_BPS
    cents_rounding: RoundingMode = RoundingMode.CEIL
    markup_rounding: RoundingMode = RoundingMode.ROUND
    min_charge_cents: int = 0

    def __post_init__(self):
        """Validate policy values."""
        if isinstance(self.markup_bps, bool) or not isinstance(self.markup_bps, int):
            raise ValueError("markup_bps must be an integer")
        if self.markup_bps < 0:
            raise ValueError("markup_bps must be >= 0")
        if isinstance(self.min_charge_cents, bool) or not isinstance(self.min_charge_cents, int):
            raise ValueError("min_charge_cents must be an integer")
        if self.min_charge_cents < 0:
            raise ValueError("min_charge_cents must be >= 0")
        # Frozen dataclass: normalize string modes through object.__setattr__
        object.__setattr__(self, "cents_rounding", coerce_rounding(self.cents_rounding))
        object.__setattr__(self, "markup_rounding", coerce_rounding(self.markup_rounding))

    def price(self, cost_usd: UsdInput) -> CostBreakdown:
        """Price a cost under this policy."""
        return price_gateway_cost(
            cost_usd,
            markup_bps=self.markup_bps,
            cents_rounding=self.cents_rounding,
            markup_rounding=self.markup_rounding,
            min_charge_cents=self.min_charge_cents
        )

    def price_or_none(self, cost_usd: Optional[UsdInput]) -> Optional[CostBreakdown]:
        """Price a possibly missing cost under this policy."""
        if cost_usd is None:
            return None
        return self.price(cost_usd)
