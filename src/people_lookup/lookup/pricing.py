"""Price table, admission estimates and metered cost."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

BILLABLE_UNIT = Decimal("0.1")


def to_units(amount: Decimal, *, round_up: bool = True) -> int:
    """Convert a credit amount to integer billable units."""

    rounding = ROUND_CEILING if round_up else ROUND_HALF_UP
    return int((Decimal(amount) / BILLABLE_UNIT).to_integral_value(rounding=rounding))


def from_units(units: int) -> Decimal:
    return (Decimal(units) * BILLABLE_UNIT).quantize(BILLABLE_UNIT)


def round_up_to_unit(amount: Decimal) -> Decimal:
    return from_units(to_units(amount))


@dataclass(slots=True, frozen=True)
class PriceTable:
    """Per-call prices in credits."""

    search_cost: Decimal
    detail_cost: Decimal


@dataclass(slots=True, frozen=True)
class CostEstimate:
    sub_tasks: int
    minimum: Decimal
    maximum: Decimal


@dataclass(slots=True, frozen=True)
class CostBreakdown:
    """Metered cost of one task, rounded up to the billable unit."""

    search_requests: int
    detail_requests: int
    search_cost: Decimal
    detail_cost: Decimal
    cache_savings: Decimal
    total: Decimal


def estimate_cost(
    *,
    sub_task_count: int,
    prices: PriceTable,
    max_pages: int,
    max_details_per_subtask: int,
) -> CostEstimate:
    """Minimum is one search page per sub-task; maximum assumes every page and detail cap."""

    minimum = Decimal(sub_task_count) * prices.search_cost
    maximum = (
        Decimal(sub_task_count * max_pages) * prices.search_cost
        + Decimal(sub_task_count * max_details_per_subtask) * prices.detail_cost
    )
    return CostEstimate(
        sub_tasks=sub_task_count,
        minimum=round_up_to_unit(minimum),
        maximum=round_up_to_unit(maximum),
    )


def metered_cost(
    *,
    search_requests: int,
    detail_requests: int,
    prices: PriceTable,
    cache_hits: int = 0,
) -> CostBreakdown:
    search_cost = Decimal(search_requests) * prices.search_cost
    detail_cost = Decimal(detail_requests) * prices.detail_cost
    return CostBreakdown(
        search_requests=search_requests,
        detail_requests=detail_requests,
        search_cost=search_cost,
        detail_cost=detail_cost,
        cache_savings=Decimal(cache_hits) * prices.detail_cost,
        total=round_up_to_unit(search_cost + detail_cost),
    )
