from decimal import Decimal

import allure
import pytest

from people_lookup.lookup.pricing import (
    PriceTable,
    estimate_cost,
    from_units,
    metered_cost,
    round_up_to_unit,
    to_units,
)

pytestmark = [
    allure.epic("Credits"),
    allure.feature("Pricing"),
]

PRICES = PriceTable(search_cost=Decimal("0.3"), detail_cost=Decimal("0.3"))


def test_unit_conversion_rounds_up_for_charges() -> None:
    assert to_units(Decimal("0.21")) == 3
    assert to_units(Decimal("0.21"), round_up=False) == 2
    assert to_units(Decimal("6.3")) == 63
    assert from_units(63) == Decimal("6.3")
    assert round_up_to_unit(Decimal("0.25")) == Decimal("0.3")
    assert round_up_to_unit(Decimal("0")) == Decimal("0.0")


def test_estimate_bounds_scale_with_sub_tasks() -> None:
    estimate = estimate_cost(
        sub_task_count=3,
        prices=PRICES,
        max_pages=10,
        max_details_per_subtask=50,
    )

    assert estimate.sub_tasks == 3
    assert estimate.minimum == Decimal("0.9")
    assert estimate.maximum == Decimal("54.0")


def test_metered_cost_reports_breakdown_and_cache_savings() -> None:
    breakdown = metered_cost(search_requests=3, detail_requests=4, prices=PRICES, cache_hits=2)

    assert breakdown.search_cost == Decimal("0.9")
    assert breakdown.detail_cost == Decimal("1.2")
    assert breakdown.total == Decimal("2.1")
    assert breakdown.cache_savings == Decimal("0.6")


@pytest.mark.parametrize(
    ("search_cost", "expected"),
    [(Decimal("0.25"), Decimal("0.3")), (Decimal("0.01"), Decimal("0.1"))],
)
def test_metered_total_is_rounded_up_to_billable_unit(
    search_cost: Decimal,
    expected: Decimal,
) -> None:
    prices = PriceTable(search_cost=search_cost, detail_cost=Decimal("0"))

    assert metered_cost(search_requests=1, detail_requests=0, prices=prices).total == expected
