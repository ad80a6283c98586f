"""
Pricing calculations and rate management.

Turns a request count (or explicit token usage) into a monetary cost using
the provider's pricing rule: free-tier allowance first, then tiered or flat
rates.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

import structlog

from ..errors import ValidationFailure
from ..storage.models import PricingRule, PricingTier
from ..storage.query import EventQuery
from ..storage.repository import EventRepository, PricingRepository
from .periods import month_start
from .token_counter import TokenUsage

logger = structlog.get_logger()

# sub-cent per-request prices need more than two decimal places
COST_PRECISION = Decimal("0.000001")


def _to_decimal(value: float) -> Decimal:
    return Decimal(str(value))


def _round_cost(cost: Decimal) -> float:
    return float(cost.quantize(COST_PRECISION, rounding=ROUND_HALF_UP))


def sort_tiers(tiers: Sequence[PricingTier]) -> List[PricingTier]:
    return sorted(tiers, key=lambda t: t.start)


def validate_tiers(tiers: Sequence[PricingTier]) -> List[PricingTier]:
    """Validate a tier table and return it sorted by start.

    Raises:
        ValidationFailure: On negative bounds, inverted ranges, overlaps,
            negative rates or a bounded tier following an unbounded one
    """
    ordered = sort_tiers(tiers)
    previous: Optional[PricingTier] = None
    for tier in ordered:
        if tier.start < 0:
            raise ValidationFailure(f"Tier start cannot be negative: {tier.start}")
        if tier.cost_per_unit < 0:
            raise ValidationFailure(f"Tier rate cannot be negative: {tier.cost_per_unit}")
        if tier.end is not None and tier.end < tier.start:
            raise ValidationFailure(f"Tier end {tier.end} is before start {tier.start}")
        if previous is not None:
            if previous.end is None or tier.start <= previous.end:
                raise ValidationFailure(
                    f"Tier starting at {tier.start} overlaps tier starting at {previous.start}"
                )
        previous = tier
    return ordered


def calculate_tier_pricing(units: int, tiers: Sequence[PricingTier]) -> Decimal:
    """Cost of units consumed through the tier table in ascending order.

    Each tier absorbs min(remaining, tier size) units at its own rate;
    a tier with no end absorbs everything left.

    Args:
        units: Billable units
        tiers: Tier table (sorted here, callers need not pre-sort)

    Returns:
        Unrounded cost
    """
    cost = Decimal("0")
    remaining = units

    for tier in sort_tiers(tiers):
        if remaining <= 0:
            break
        size = tier.size
        in_tier = remaining if size is None else min(remaining, size)
        cost += Decimal(in_tier) * _to_decimal(tier.cost_per_unit)
        remaining -= in_tier

    return cost


def calculate_request_cost(
    rule: PricingRule,
    request_count: int,
    usage_this_month: int,
) -> float:
    """Cost of request_count requests given usage already logged this month.

    Args:
        rule: Provider pricing rule
        request_count: Requests being billed now
        usage_this_month: Requests already logged since the first of the month

    Returns:
        Cost rounded to 6 decimal places
    """
    remaining_free = max(0, rule.free_tier_limit - usage_this_month)
    billable = max(0, request_count - remaining_free)

    if billable <= 0:
        return 0.0

    if rule.tier_pricing:
        cost = calculate_tier_pricing(billable, rule.tier_pricing)
    else:
        cost = Decimal(billable) * _to_decimal(rule.cost_per_unit)

    return _round_cost(cost)


def calculate_token_cost(
    usage: TokenUsage,
    input_cost_per_1k: Optional[float],
    output_cost_per_1k: Optional[float],
) -> float:
    """Token-based cost: (tokens / 1000) * rate for input and output.

    A missing rate bills that direction at zero.
    """
    input_rate = _to_decimal(input_cost_per_1k or 0)
    output_rate = _to_decimal(output_cost_per_1k or 0)

    input_cost = (Decimal(usage.input_tokens) / Decimal("1000")) * input_rate
    output_cost = (Decimal(usage.output_tokens) / Decimal("1000")) * output_rate

    return _round_cost(input_cost + output_cost)


class CostCalculator:
    """Attributes a cost to logged calls from the pricing catalog.

    The monthly usage lookup and the subsequent event write are not atomic:
    concurrent writers for the same provider may both see the same
    pre-write free-tier usage.
    """

    def __init__(self, events: EventRepository, pricing: PricingRepository):
        self.events = events
        self.pricing = pricing

    def usage_this_month(self, provider: str, now: datetime) -> int:
        """Requests logged for provider since the first of now's month, any status."""
        return self.events.sum_requests(
            EventQuery(start=month_start(now), provider=provider)
        )

    def calculate_cost(self, provider: str, request_count: int, now: datetime) -> float:
        """Cost of request_count requests to provider at instant now.

        Returns 0 when the provider has no active pricing rule.
        """
        rule = self.pricing.get_active(provider)
        if rule is None:
            logger.warning("pricing_rule_missing", provider=provider)
            return 0.0
        return self.cost_for_rule(rule, request_count, now)

    def cost_for_rule(self, rule: PricingRule, request_count: int, now: datetime) -> float:
        usage = self.usage_this_month(rule.provider, now)
        return calculate_request_cost(rule, request_count, usage)

    def cost_for_call(
        self,
        rule: PricingRule,
        request_count: int,
        usage: TokenUsage,
        now: datetime,
    ) -> float:
        """Pick the billing mode from the populated fields and compute the cost.

        Token billing applies when the call carries token counts and the rule
        defines per-1k token rates; otherwise requests are billed.
        """
        if usage.total_tokens > 0 and rule.has_token_rates:
            return calculate_token_cost(usage, rule.input_cost_per_1k, rule.output_cost_per_1k)
        return self.cost_for_rule(rule, request_count, now)
