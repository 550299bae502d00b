from __future__ import annotations

from decimal import Decimal

import pytest

from tariffscope.errors import InvalidInputError
from tariffscope.scenarios.builder import AXIS_ORIGIN, AXIS_SHIPPING, build_scenarios
from tariffscope.scenarios.models import (
    ClassificationAlternative,
    FulfillmentOption,
    ProductProfile,
    RateLookupResult,
    ScenarioConfiguration,
)


@pytest.fixture()
def busy_product() -> ProductProfile:
    """A product with alternatives on every axis."""

    return ProductProfile(
        product_id="lamp-9",
        value=Decimal("400"),
        weight_kg=3.0,
        hs_code="9405.40.84.40",
        origin_country="CN",
        shipping_method="express",
        fulfillment_fee=Decimal("6"),
        alternative_origins=["VN", "MX", "TH", "IN", "MY"],
        alternative_hs_codes=[
            ClassificationAlternative(hs_code=f"9405.40.{n:02d}", confidence=0.9) for n in range(10, 15)
        ],
        fulfillment_options=[
            FulfillmentOption(name="fba", fee=Decimal("4")),
            FulfillmentOption(name="3pl", fee=Decimal("3")),
        ],
    )


@pytest.mark.parametrize("cap", [1, 3, 7, 20])
def test_candidate_count_never_exceeds_cap(busy_product, cap):
    configuration = ScenarioConfiguration(
        max_scenarios=cap, analysis_depth="exhaustive", min_saving_threshold=Decimal("0")
    )

    candidates = list(build_scenarios(busy_product, configuration))

    assert 1 <= len(candidates) <= cap


def test_no_enabled_axis_yields_only_baseline(busy_product, baseline_only):
    candidates = list(build_scenarios(busy_product, baseline_only))

    assert len(candidates) == 1
    assert candidates[0].is_baseline
    assert candidates[0].shipping_method == "express"


def test_single_axis_candidates_come_first(busy_product):
    configuration = ScenarioConfiguration(analysis_depth="exhaustive", min_saving_threshold=Decimal("0"), max_scenarios=200)

    sizes = [len(c.changes) for c in build_scenarios(busy_product, configuration)]

    assert sizes == sorted(sizes)


def test_candidates_are_distinct(busy_product):
    configuration = ScenarioConfiguration(analysis_depth="exhaustive", min_saving_threshold=Decimal("0"), max_scenarios=500)

    keys = [c.key for c in build_scenarios(busy_product, configuration)]

    assert len(keys) == len(set(keys))


def test_depth_limits_values_per_axis(busy_product):
    configuration = ScenarioConfiguration(
        analysis_depth="basic",
        include_shipping_variations=False,
        include_classification_variations=False,
        include_trade_agreements=False,
        include_fulfillment_optimizations=False,
        min_saving_threshold=Decimal("0"),
    )

    origins = [dict(c.changes)[AXIS_ORIGIN] for c in build_scenarios(busy_product, configuration)]

    assert origins == ["VN", "MX"]


def test_candidates_below_saving_threshold_are_pruned(busy_product):
    # On a 3 kg parcel leaving express saves 30 (standard), 40 (economy) or 46 (sea freight) per unit.
    configuration = ScenarioConfiguration(
        include_origin_country_variations=False,
        include_classification_variations=False,
        include_trade_agreements=False,
        include_fulfillment_optimizations=False,
        min_saving_threshold=Decimal("42"),
    )

    candidates = list(build_scenarios(busy_product, configuration, annual_units=1000))

    assert [dict(c.changes)[AXIS_SHIPPING] for c in candidates] == ["sea_freight"]
    assert candidates[0].estimated_saving == Decimal("46.00")
    assert candidates[0].estimated_annual_saving == Decimal("46000.00")


def test_threshold_applies_to_the_per_unit_saving():
    # Moving origin can remove at most the 5.00 duty on a 100.00 product.
    product = ProductProfile(
        product_id="cap-3",
        value=Decimal("100"),
        weight_kg=0.2,
        hs_code="6505.00.80.15",
        origin_country="CN",
        alternative_origins=["VN"],
    )
    rate = RateLookupResult(hs_code="6505008015", origin_country="CN", destination_country="US", duty_percent=5.0)
    configuration = ScenarioConfiguration(
        include_shipping_variations=False,
        include_classification_variations=False,
        include_trade_agreements=False,
        include_fulfillment_optimizations=False,
        min_saving_threshold=Decimal("50"),
    )

    assert list(build_scenarios(product, configuration, baseline_rate=rate, annual_units=1000)) == []

    lower = configuration.model_copy(update={"min_saving_threshold": Decimal("5")})
    kept = list(build_scenarios(product, lower, baseline_rate=rate, annual_units=1000))
    assert [c.origin_country for c in kept] == ["VN"]
    assert kept[0].estimated_saving == Decimal("5.00")


def test_trade_agreement_without_preference_is_pruned(busy_product):
    rate = RateLookupResult(hs_code="9405408440", origin_country="CN", destination_country="US", duty_percent=3.9)
    configuration = ScenarioConfiguration(
        include_shipping_variations=False,
        include_origin_country_variations=False,
        include_classification_variations=False,
        include_fulfillment_optimizations=False,
        min_saving_threshold=Decimal("1"),
    )

    candidates = list(build_scenarios(busy_product, configuration, baseline_rate=rate))

    assert candidates == []


def test_invalid_configuration_is_rejected(busy_product):
    with pytest.raises(InvalidInputError):
        list(build_scenarios(busy_product, ScenarioConfiguration(max_scenarios=0)))
