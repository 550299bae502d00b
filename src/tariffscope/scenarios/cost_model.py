"""Landed-cost computation.

Pure functions, no I/O.  Duty is charged on the declared customs value
only; shipping, insurance and fees are never dutiable.  VAT is charged on
the customs value, or on customs value plus duty when the rate source marks
the destination as taxing duty (``vat_on_duty``).  Every component is
rounded to cents before summing, so the total is exactly the sum of the
reported components.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Optional

from tariffscope.errors import InvalidInputError
from tariffscope.scenarios.models import (
    LandedCostBreakdown,
    ProductProfile,
    RateLookupResult,
    ShippingOption,
)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Volumetric divisor (cm^3 per kg) used for chargeable weight.
VOLUMETRIC_DIVISOR = 5000.0

# Flat freight per unit by method and weight band: light < 1kg, medium <= 5kg.
SHIPPING_RATES: Dict[str, Dict[str, Decimal]] = {
    "standard": {"light": Decimal("15"), "medium": Decimal("25"), "heavy": Decimal("45")},
    "express": {"light": Decimal("35"), "medium": Decimal("55"), "heavy": Decimal("85")},
    "economy": {"light": Decimal("8"), "medium": Decimal("15"), "heavy": Decimal("25")},
    "sea_freight": {"light": Decimal("4"), "medium": Decimal("9"), "heavy": Decimal("16")},
}

DEFAULT_INSURANCE_RATE_PERCENT = 0.5


def money(value: Decimal | float | int | str) -> Decimal:
    """Quantize to cents with half-up rounding."""

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _percent(value: float, name: str) -> Decimal:
    if value is None or not math.isfinite(value) or value < 0 or value > 100:
        raise InvalidInputError(f"{name} must be within [0, 100], got {value}", detail={"field": name})
    return Decimal(str(value))


def _check_amount(value: Decimal, name: str) -> Decimal:
    try:
        finite = value.is_finite()
    except (AttributeError, InvalidOperation):
        finite = False
    if not finite or value < 0:
        raise InvalidInputError(f"{name} must be a finite, non-negative amount, got {value}", detail={"field": name})
    return value


def chargeable_weight(product: ProductProfile) -> float:
    weight = product.weight_kg
    if weight is None or not math.isfinite(weight) or weight < 0:
        raise InvalidInputError(
            f"weight_kg must be finite and non-negative, got {weight}",
            detail={"field": "weight_kg", "product_id": product.product_id},
        )
    dims = product.dimensions
    if dims is None:
        return weight
    volumetric = dims.length_cm * dims.width_cm * dims.height_cm / VOLUMETRIC_DIVISOR
    if not math.isfinite(volumetric) or volumetric < 0:
        raise InvalidInputError(
            "dimensions must be finite and non-negative",
            detail={"field": "dimensions", "product_id": product.product_id},
        )
    return max(weight, volumetric)


def _weight_band(weight_kg: float) -> str:
    if weight_kg < 1:
        return "light"
    if weight_kg <= 5:
        return "medium"
    return "heavy"


def default_shipping_option(method: str, weight_kg: float) -> ShippingOption:
    """Look up the configured flat freight for a method, falling back to standard."""

    table = SHIPPING_RATES.get(method) or SHIPPING_RATES["standard"]
    return ShippingOption(
        method=method if method in SHIPPING_RATES else "standard",
        cost=table[_weight_band(weight_kg)],
        insurance_rate_percent=DEFAULT_INSURANCE_RATE_PERCENT,
    )


def compute_landed_cost(
    product: ProductProfile,
    rate: RateLookupResult,
    shipping_option: Optional[ShippingOption] = None,
    *,
    claim_trade_agreement: bool = False,
    fulfillment_fee: Optional[Decimal] = None,
    default_shipping_method: str = "standard",
) -> LandedCostBreakdown:
    """Compute the full landed-cost breakdown for one unit of ``product``.

    Parameters
    ----------
    product:
        Product attributes; ``value`` is the declared customs value.
    rate:
        Provider result for the HS code / origin / destination in use.
    shipping_option:
        Freight offer.  When omitted, the flat rate for
        ``default_shipping_method`` at the product's chargeable weight is used.
    claim_trade_agreement:
        Apply the preferential duty rate when the lookup reports one.
    fulfillment_fee:
        Per-unit fulfillment fee override (e.g. an alternate fulfillment
        option); defaults to the product's current fee.
    """
    value = _check_amount(product.value, "value")
    weight = chargeable_weight(product)

    duty_pct = _percent(rate.effective_duty_percent(claim_trade_agreement), "duty_percent")
    vat_pct = _percent(rate.vat_percent, "vat_percent")

    if shipping_option is None:
        shipping_option = default_shipping_option(default_shipping_method, weight)
    shipping_cost = money(_check_amount(shipping_option.cost, "shipping_cost"))
    insurance_pct = _percent(shipping_option.insurance_rate_percent, "insurance_rate_percent")

    duty_amount = money(value * duty_pct / HUNDRED)
    vat_base = value + duty_amount if rate.vat_on_duty else value
    vat_amount = money(vat_base * vat_pct / HUNDRED)
    insurance_cost = money(value * insurance_pct / HUNDRED)

    fulfillment = money(_check_amount(
        fulfillment_fee if fulfillment_fee is not None else product.fulfillment_fee,
        "fulfillment_fee",
    ))
    broker_fees = money(_check_amount(rate.broker_fee, "broker_fee"))
    other_fees = money(
        _check_amount(rate.additional_fees, "additional_fees")
        + _check_amount(product.other_fees, "other_fees")
    )
    product_value = money(value)

    total = (
        product_value
        + duty_amount
        + vat_amount
        + shipping_cost
        + insurance_cost
        + fulfillment
        + broker_fees
        + other_fees
    )

    profit_margin = None
    if product.selling_price is not None and product.selling_price > 0:
        profit_margin = float((product.selling_price - total) / product.selling_price * HUNDRED)

    return LandedCostBreakdown(
        product_value=product_value,
        duty_amount=duty_amount,
        vat_amount=vat_amount,
        shipping_cost=shipping_cost,
        insurance_cost=insurance_cost,
        fulfillment_fees=fulfillment,
        broker_fees=broker_fees,
        other_fees=other_fees,
        total_landed_cost=total,
        profit_margin=profit_margin,
        selling_price=product.selling_price,
    )
