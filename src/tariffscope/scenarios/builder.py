"""Expand a scenario configuration into candidate scenarios for one product.

Enabled axes contribute their alternative values; disabled axes keep the
product's current value.  Candidates are generated lazily in order of
simplicity: single-axis changes before compound changes, and among equally
sized changes, axes with fewer alternatives first.  Compound changes carry
compounding implementation risk, so they are only reached once the simpler
space is exhausted or the cap allows it.

Pruning compares an optimistic per-unit bound on the saving with
``min_saving_threshold``.  The bound never underestimates what a full cost
computation could find, so pruning only drops candidates that cannot reach
the threshold on a single unit.  The bound is also annualized over the
product's yearly units for reporting.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from tariffscope.scenarios.cost_model import SHIPPING_RATES, chargeable_weight, default_shipping_option, money
from tariffscope.scenarios.models import (
    ClassificationAlternative,
    FulfillmentOption,
    ProductProfile,
    RateLookupResult,
    ScenarioConfiguration,
)

logger = logging.getLogger(__name__)

AXIS_SHIPPING = "shipping"
AXIS_ORIGIN = "origin"
AXIS_CLASSIFICATION = "classification"
AXIS_TRADE_AGREEMENT = "trade_agreement"
AXIS_FULFILLMENT = "fulfillment"

# Fixed order used when two axes have the same number of alternatives.
AXIS_ORDER: Tuple[str, ...] = (
    AXIS_TRADE_AGREEMENT,
    AXIS_SHIPPING,
    AXIS_FULFILLMENT,
    AXIS_CLASSIFICATION,
    AXIS_ORIGIN,
)

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CandidateScenario:
    """One concrete alternative to the product's current setup."""

    product_id: str
    hs_code: str
    origin_country: str
    destination_country: str
    shipping_method: str
    claim_trade_agreement: bool = False
    fulfillment_option: Optional[FulfillmentOption] = None
    classification_confidence: float = 1.0
    changes: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    estimated_saving: Optional[Decimal] = None
    estimated_annual_saving: Optional[Decimal] = None

    @property
    def key(self) -> str:
        if not self.changes:
            return "baseline"
        return "|".join(f"{axis}={value}" for axis, value in self.changes)

    @property
    def changed_axes(self) -> List[str]:
        return [axis for axis, _ in self.changes]

    @property
    def is_baseline(self) -> bool:
        return not self.changes

    def changes_dict(self) -> Dict[str, str]:
        return dict(self.changes)


def baseline_candidate(product: ProductProfile, default_shipping_method: str = "standard") -> CandidateScenario:
    return CandidateScenario(
        product_id=product.product_id,
        hs_code=product.hs_code,
        origin_country=product.origin_country.upper(),
        destination_country=product.destination_country.upper(),
        shipping_method=product.shipping_method or default_shipping_method,
    )


def _limit(values: Sequence, limit: Optional[int]) -> List:
    values = list(values)
    return values if limit is None else values[:limit]


def _axis_values(
    product: ProductProfile,
    configuration: ScenarioConfiguration,
    current_shipping: str,
) -> Dict[str, List]:
    """Alternative values per enabled axis, excluding the current value."""

    limit = configuration.axis_limit
    axes: Dict[str, List] = {}

    if configuration.include_shipping_variations:
        methods = configuration.shipping_methods or list(SHIPPING_RATES)
        alternatives = [m for m in dict.fromkeys(methods) if m != current_shipping]
        if alternatives:
            axes[AXIS_SHIPPING] = _limit(alternatives, limit)

    if configuration.include_origin_country_variations:
        origins = configuration.origin_countries or product.alternative_origins
        current = product.origin_country.upper()
        alternatives = [o.upper() for o in dict.fromkeys(origins) if o.upper() != current]
        if alternatives:
            axes[AXIS_ORIGIN] = _limit(alternatives, limit)

    if configuration.include_classification_variations:
        if configuration.hs_code_alternatives:
            codes = [ClassificationAlternative(hs_code=code) for code in configuration.hs_code_alternatives]
        else:
            codes = list(product.alternative_hs_codes)
        seen = set()
        alternatives = []
        for alt in codes:
            if alt.hs_code == product.hs_code or alt.hs_code in seen:
                continue
            seen.add(alt.hs_code)
            alternatives.append(alt)
        if alternatives:
            axes[AXIS_CLASSIFICATION] = _limit(alternatives, limit)

    if configuration.include_trade_agreements:
        axes[AXIS_TRADE_AGREEMENT] = [True]

    if configuration.include_fulfillment_optimizations:
        alternatives = [
            opt for opt in product.fulfillment_options if opt.fee != product.fulfillment_fee
        ]
        if alternatives:
            axes[AXIS_FULFILLMENT] = _limit(alternatives, limit)

    return axes


def _axis_groups(axes: Dict[str, List]) -> Iterator[Tuple[str, ...]]:
    """Non-empty axis subsets, smallest first, fewest combinations first."""

    names = sorted(axes, key=AXIS_ORDER.index)
    for size in range(1, len(names) + 1):
        groups = list(itertools.combinations(names, size))
        groups.sort(key=lambda group: (_combination_count(axes, group), [AXIS_ORDER.index(a) for a in group]))
        yield from groups


def _combination_count(axes: Dict[str, List], group: Tuple[str, ...]) -> int:
    count = 1
    for axis in group:
        count *= len(axes[axis])
    return count


def _label(axis: str, value) -> str:
    if axis == AXIS_CLASSIFICATION:
        return value.hs_code
    if axis == AXIS_FULFILLMENT:
        return value.name
    if axis == AXIS_TRADE_AGREEMENT:
        return "claim"
    return str(value)


def _estimate_saving_per_unit(
    product: ProductProfile,
    baseline: CandidateScenario,
    changes: Dict[str, object],
    baseline_rate: Optional[RateLookupResult],
) -> Optional[Decimal]:
    """Optimistic per-unit saving bound, or None when it cannot be bounded."""

    saving = Decimal("0")
    weight = chargeable_weight(product)

    if AXIS_SHIPPING in changes:
        current = default_shipping_option(baseline.shipping_method, weight).cost
        alternative = default_shipping_option(str(changes[AXIS_SHIPPING]), weight).cost
        saving += current - alternative

    if AXIS_FULFILLMENT in changes:
        option = changes[AXIS_FULFILLMENT]
        saving += product.fulfillment_fee - option.fee

    duty_axes = {AXIS_ORIGIN, AXIS_CLASSIFICATION, AXIS_TRADE_AGREEMENT} & set(changes)
    if duty_axes:
        if baseline_rate is None:
            return None
        value = product.value
        duty = value * Decimal(str(baseline_rate.duty_percent)) / _HUNDRED
        if duty_axes == {AXIS_TRADE_AGREEMENT}:
            if not baseline_rate.trade_agreement or baseline_rate.preferential_duty_percent is None:
                duty_saving = Decimal("0")
            else:
                preferential = value * Decimal(str(baseline_rate.preferential_duty_percent)) / _HUNDRED
                duty_saving = duty - preferential
        else:
            # A new origin or heading can at most remove the whole duty.
            duty_saving = duty
        saving += duty_saving
        if baseline_rate.vat_on_duty:
            saving += duty_saving * Decimal(str(baseline_rate.vat_percent)) / _HUNDRED

    return saving


def build_scenarios(
    product: ProductProfile,
    configuration: ScenarioConfiguration,
    *,
    baseline_rate: Optional[RateLookupResult] = None,
    annual_units: int = 1000,
    default_shipping_method: str = "standard",
) -> Iterator[CandidateScenario]:
    """Lazily yield at most ``configuration.max_scenarios`` candidates.

    With no enabled axis (or no alternatives on any enabled axis) the only
    candidate is the baseline itself.
    """
    configuration.validate_semantics()
    baseline = baseline_candidate(product, default_shipping_method)
    axes = _axis_values(product, configuration, baseline.shipping_method)

    if not axes:
        yield baseline
        return

    threshold = configuration.min_saving_threshold
    units = Decimal(max(annual_units, 0))
    kept = 0
    pruned = 0

    for group in _axis_groups(axes):
        for values in itertools.product(*(axes[axis] for axis in group)):
            changes = dict(zip(group, values))
            per_unit = _estimate_saving_per_unit(product, baseline, changes, baseline_rate)
            if per_unit is not None and per_unit < threshold:
                pruned += 1
                continue

            classification = changes.get(AXIS_CLASSIFICATION)
            fulfillment = changes.get(AXIS_FULFILLMENT)
            yield CandidateScenario(
                product_id=product.product_id,
                hs_code=classification.hs_code if classification else baseline.hs_code,
                origin_country=str(changes.get(AXIS_ORIGIN, baseline.origin_country)),
                destination_country=baseline.destination_country,
                shipping_method=str(changes.get(AXIS_SHIPPING, baseline.shipping_method)),
                claim_trade_agreement=AXIS_TRADE_AGREEMENT in changes,
                fulfillment_option=fulfillment,
                classification_confidence=classification.confidence if classification else 1.0,
                changes=tuple((axis, _label(axis, changes[axis])) for axis in group),
                estimated_saving=None if per_unit is None else money(per_unit),
                estimated_annual_saving=None if per_unit is None else money(per_unit * units),
            )
            kept += 1
            if kept >= configuration.max_scenarios:
                logger.debug(
                    "Scenario cap %d reached for product %s (%d pruned)",
                    configuration.max_scenarios, product.product_id, pruned,
                )
                return

    logger.debug("Built %d candidates for product %s (%d pruned)", kept, product.product_id, pruned)
