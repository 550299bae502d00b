from __future__ import annotations

from decimal import Decimal

import pytest

from tariffscope.errors import InvalidInputError
from tariffscope.scenarios.cost_model import chargeable_weight, compute_landed_cost, money
from tariffscope.scenarios.models import Dimensions, ProductProfile, RateLookupResult, ShippingOption


def _product(**overrides) -> ProductProfile:
    data = {
        "product_id": "p-1",
        "value": Decimal("100"),
        "weight_kg": 0.5,
        "hs_code": "6109100010",
        "origin_country": "CN",
    }
    data.update(overrides)
    return ProductProfile(**data)


def _rate(**overrides) -> RateLookupResult:
    data = {"hs_code": "6109100010", "origin_country": "CN", "destination_country": "US", "duty_percent": 16.5}
    data.update(overrides)
    return RateLookupResult(**data)


def test_landed_cost_components_for_light_parcel():
    cost = compute_landed_cost(_product(), _rate())

    assert cost.product_value == Decimal("100.00")
    assert cost.duty_amount == Decimal("16.50")
    assert cost.vat_amount == Decimal("0.00")
    assert cost.shipping_cost == Decimal("15.00")
    assert cost.insurance_cost == Decimal("0.50")
    assert cost.total_landed_cost == Decimal("132.00")


def test_total_is_exact_sum_of_rounded_components():
    product = _product(value=Decimal("33.33"), fulfillment_fee=Decimal("3.337"), other_fees=Decimal("0.005"))
    rate = _rate(duty_percent=7.5, vat_percent=19.0, broker_fee=Decimal("1.115"), additional_fees=Decimal("0.333"))

    cost = compute_landed_cost(product, rate, ShippingOption(method="express", cost=Decimal("12.345")))

    assert cost.duty_amount == Decimal("2.50")
    assert cost.total_landed_cost == cost.components_sum()
    for amount in (cost.duty_amount, cost.vat_amount, cost.shipping_cost, cost.fulfillment_fees, cost.other_fees):
        assert amount == money(amount)


def test_vat_on_duty_taxes_the_duty_as_well():
    product = _product()
    plain = compute_landed_cost(product, _rate(duty_percent=10.0, vat_percent=20.0))
    compounded = compute_landed_cost(product, _rate(duty_percent=10.0, vat_percent=20.0, vat_on_duty=True))

    assert plain.vat_amount == Decimal("20.00")
    assert compounded.vat_amount == Decimal("22.00")


def test_shipping_and_fees_are_not_dutiable():
    rate = _rate(duty_percent=10.0)
    cheap = compute_landed_cost(_product(), rate, ShippingOption(method="economy", cost=Decimal("1")))
    dear = compute_landed_cost(
        _product(fulfillment_fee=Decimal("9")), rate, ShippingOption(method="express", cost=Decimal("80"))
    )

    assert cheap.duty_amount == dear.duty_amount == Decimal("10.00")


def test_trade_agreement_rate_only_applies_when_claimed():
    rate = _rate(duty_percent=12.0, trade_agreement="USMCA", preferential_duty_percent=0.0)

    assert compute_landed_cost(_product(), rate).duty_amount == Decimal("12.00")
    assert compute_landed_cost(_product(), rate, claim_trade_agreement=True).duty_amount == Decimal("0.00")


def test_volumetric_weight_drives_default_freight():
    bulky = _product(weight_kg=2.0, dimensions=Dimensions(length_cm=50, width_cm=40, height_cm=30))

    assert chargeable_weight(bulky) == pytest.approx(12.0)
    assert compute_landed_cost(bulky, _rate()).shipping_cost == Decimal("45.00")


def test_profit_margin_uses_selling_price():
    cost = compute_landed_cost(_product(selling_price=Decimal("264")), _rate())

    assert cost.profit_margin == pytest.approx(50.0)


@pytest.mark.parametrize(
    "product_overrides, rate_overrides",
    [
        ({"value": Decimal("-1")}, {}),
        ({"weight_kg": -0.1}, {}),
        ({"weight_kg": float("nan")}, {}),
        ({}, {"duty_percent": 150.0}),
        ({}, {"vat_percent": -5.0}),
    ],
)
def test_invalid_inputs_are_rejected(product_overrides, rate_overrides):
    with pytest.raises(InvalidInputError):
        compute_landed_cost(_product(**product_overrides), _rate(**rate_overrides))
