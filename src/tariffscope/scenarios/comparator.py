"""Rank already-computed scenario results against each other."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Dict, List, Sequence

from tariffscope.scenarios.builder import (
    AXIS_CLASSIFICATION,
    AXIS_FULFILLMENT,
    AXIS_ORIGIN,
    AXIS_SHIPPING,
    AXIS_TRADE_AGREEMENT,
)
from tariffscope.scenarios.models import (
    ComparisonOptions,
    MultiScenarioComparison,
    ProductScenarioResult,
    RankedScenario,
    SavingsMatrix,
)

HIGH_SAVING_PER_UNIT = Decimal("1000")
WIDE_SPREAD_STDDEV = 5.0
LOW_CONFIDENCE = 0.8
MANY_SCENARIOS = 5

_MATRIX_FIELDS = {
    AXIS_SHIPPING: "by_shipping_method",
    AXIS_ORIGIN: "by_origin_country",
    AXIS_CLASSIFICATION: "by_classification",
    AXIS_TRADE_AGREEMENT: "by_trade_agreement",
    AXIS_FULFILLMENT: "by_fulfillment",
}


def _rank(scenarios: Sequence[ProductScenarioResult]) -> List[RankedScenario]:
    ordered = sorted(
        scenarios,
        key=lambda s: (
            -s.savings.total_savings_percentage,
            -s.savings.total_savings_per_unit,
            -s.confidence,
            s.id,
        ),
    )
    return [
        RankedScenario(
            rank=index,
            scenario_id=s.id,
            product_id=s.product_id,
            configuration_label=s.configuration_label,
            savings_percentage=s.savings.total_savings_percentage,
            savings_per_unit=s.savings.total_savings_per_unit,
            confidence=s.confidence,
            overall_risk=s.risk_assessment.overall_risk,
            changes=dict(s.changes),
        )
        for index, s in enumerate(ordered)
    ]


def build_savings_matrix(scenarios: Sequence[ProductScenarioResult]) -> SavingsMatrix:
    """Best per-unit saving observed for each value of each axis."""

    buckets: Dict[str, Dict[str, Decimal]] = {name: {} for name in _MATRIX_FIELDS.values()}
    for scenario in scenarios:
        saving = scenario.savings.total_savings_per_unit
        for axis, value in scenario.changes.items():
            field_name = _MATRIX_FIELDS.get(axis)
            if field_name is None:
                continue
            bucket = buckets[field_name]
            if value not in bucket or saving > bucket[value]:
                bucket[value] = saving
    return SavingsMatrix(**buckets)


def _best_entry(bucket: Dict[str, Decimal]):
    if not bucket:
        return None
    return max(sorted(bucket.items()), key=lambda item: item[1])


def _recommendations(ranked: List[RankedScenario], matrix: SavingsMatrix, stddev: float) -> List[str]:
    notes: List[str] = []
    best = ranked[0]
    if best.savings_per_unit > 0:
        notes.append(
            f"Adopt scenario {best.scenario_id} for {best.savings_percentage:.2f}% "
            f"({best.savings_per_unit:.2f} per unit) savings"
        )

    shipping = _best_entry(matrix.by_shipping_method)
    if shipping and shipping[1] > 0:
        notes.append(f"Consider {shipping[0]} shipping for {shipping[1]:.2f} savings per unit")
    origin = _best_entry(matrix.by_origin_country)
    if origin and origin[1] > 0:
        notes.append(f"Consider sourcing from {origin[0]} for {origin[1]:.2f} savings per unit")
    classification = _best_entry(matrix.by_classification)
    if classification and classification[1] > 0:
        notes.append(
            f"Review classification under {classification[0]} for {classification[1]:.2f} savings per unit"
        )
    agreement = _best_entry(matrix.by_trade_agreement)
    if agreement and agreement[1] > 0:
        notes.append(f"Claim available trade agreement preferences for up to {agreement[1]:.2f} per unit")
    fulfillment = _best_entry(matrix.by_fulfillment)
    if fulfillment and fulfillment[1] > 0:
        notes.append(f"Consider {fulfillment[0]} fulfillment for {fulfillment[1]:.2f} savings per unit")

    if len(ranked) > 1 and stddev > WIDE_SPREAD_STDDEV:
        notes.append("Savings vary widely across scenarios; validate cost assumptions before committing")
    return notes


def _risk_analysis(scenarios: Sequence[ProductScenarioResult]) -> List[str]:
    risks: List[str] = []
    if len(scenarios) > MANY_SCENARIOS:
        risks.append("High number of scenarios may indicate complex optimization requirements")
    if any(s.savings.total_savings_per_unit > HIGH_SAVING_PER_UNIT for s in scenarios):
        risks.append("High-savings scenarios require careful compliance review")
    high_risk = sum(1 for s in scenarios if s.risk_assessment.overall_risk == "high")
    if high_risk:
        risks.append(f"{high_risk} scenario(s) carry high overall implementation risk")
    low_confidence = sum(1 for s in scenarios if s.confidence < LOW_CONFIDENCE)
    if low_confidence:
        risks.append(f"{low_confidence} scenario(s) rely on rate lookups below {LOW_CONFIDENCE:.0%} confidence")
    return risks


def compare_multiple_scenarios(options: ComparisonOptions) -> MultiScenarioComparison:
    """Rank scenarios by savings percentage and summarize their spread.

    Variance is the population variance of the savings percentages.  A
    single scenario is both best and worst with zero variance.
    """
    scenarios = list(options.scenarios)
    ranked = _rank(scenarios)
    percentages = [r.savings_percentage for r in ranked]
    mean = sum(percentages) / len(percentages)
    variance = sum((p - mean) ** 2 for p in percentages) / len(percentages)
    matrix = build_savings_matrix(scenarios)

    return MultiScenarioComparison(
        best_scenario=ranked[0],
        worst_scenario=ranked[-1],
        ranked=ranked,
        mean_savings_percentage=mean,
        variance=variance,
        savings_matrix=matrix,
        recommendations=_recommendations(ranked, matrix, math.sqrt(variance)),
        risk_analysis=_risk_analysis(scenarios),
    )
