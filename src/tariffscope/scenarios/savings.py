"""Savings analysis engine.

Runs the cost model over the baseline and every candidate scenario of each
product, keeps the single best candidate per product and aggregates the
batch.  Per-product failures are recorded on the batch result and never
abort the batch; an invalid configuration is rejected before any product is
touched.

The per-product loop is the only place a running job can be suspended:
after each product the optional :class:`ProgressSink` is notified, and it
may raise to stop the loop (cancellation or pause).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from tariffscope.config import Settings, get_settings
from tariffscope.errors import (
    InvalidInputError,
    ProviderUnavailableError,
    RateLookupError,
    RateNotFoundError,
)
from tariffscope.observability import log_event
from tariffscope.scenarios.builder import (
    AXIS_CLASSIFICATION,
    AXIS_FULFILLMENT,
    AXIS_ORIGIN,
    AXIS_SHIPPING,
    AXIS_TRADE_AGREEMENT,
    CandidateScenario,
    baseline_candidate,
    build_scenarios,
)
from tariffscope.scenarios.catalog import ProductCatalog
from tariffscope.scenarios.cost_model import compute_landed_cost, chargeable_weight, default_shipping_option, money
from tariffscope.scenarios.models import (
    ZERO,
    BatchSavingsAnalysis,
    ImplementationRequirement,
    LandedCostBreakdown,
    PortfolioRecommendation,
    ProductFailure,
    ProductProfile,
    ProductScenarioResult,
    RateLookupResult,
    RiskAssessment,
    SavingsAnalysisSummary,
    SavingsBreakdown,
    ScenarioConfiguration,
    ShippingOption,
)
from tariffscope.scenarios.providers import RateProvider

logger = logging.getLogger(__name__)

QUICK_WIN_PERCENT = 5.0
QUICK_WIN_CONFIDENCE = 0.8
HIGH_IMPACT_PERCENT = 10.0
LONG_TERM_PERCENT = 15.0
HIGH_VALUE_PRODUCT = Decimal("1000")

_RISK_ORDER = ("low", "medium", "high")
_COMPLEXITY_RANK = {"low": 0, "medium": 1, "high": 2}
_HUNDRED = Decimal("100")

ShippingQuoter = Callable[[ProductProfile, str], ShippingOption]


@dataclass(frozen=True)
class _RequirementTemplate:
    type: str
    description: str
    estimated_cost: Decimal
    weeks: int
    time_required: str
    complexity: str

    def build(self) -> ImplementationRequirement:
        return ImplementationRequirement(
            type=self.type,
            description=self.description,
            estimated_cost=self.estimated_cost,
            time_required=self.time_required,
            complexity=self.complexity,
        )


REQUIREMENT_TEMPLATES: Dict[str, _RequirementTemplate] = {
    AXIS_CLASSIFICATION: _RequirementTemplate(
        "documentation", "Update product classification documentation",
        Decimal("500"), 2, "1-2 weeks", "low",
    ),
    AXIS_ORIGIN: _RequirementTemplate(
        "supplier_change", "Evaluate and qualify a supplier in the new origin country",
        Decimal("2000"), 12, "2-3 months", "high",
    ),
    AXIS_TRADE_AGREEMENT: _RequirementTemplate(
        "certification", "Obtain certificate of origin for preferential treatment",
        Decimal("1000"), 4, "3-4 weeks", "medium",
    ),
    AXIS_SHIPPING: _RequirementTemplate(
        "process_change", "Switch freight service level with the forwarder",
        Decimal("250"), 1, "1 week", "low",
    ),
    AXIS_FULFILLMENT: _RequirementTemplate(
        "process_change", "Move inventory to the alternate fulfillment program",
        Decimal("300"), 2, "1-2 weeks", "low",
    ),
}

LEGAL_REVIEW_TEMPLATE = _RequirementTemplate(
    "legal_review", "Legal review of the classification position",
    Decimal("1000"), 4, "2-4 weeks", "medium",
)
LEGAL_REVIEW_CONFIDENCE = 0.8

# Services with longer transit than standard.
_SLOW_SHIPPING = {"economy", "sea_freight"}


class ProgressSink(Protocol):
    """Receives one callback per processed product.

    Implementations may raise to stop the batch between two products.
    """

    def on_product_done(self, product_id: str, checkpoint: "BatchCheckpoint", total: int) -> None:
        ...


class BatchCheckpoint(BaseModel):
    """Partial batch state, enough to resume without redoing finished products."""

    processed_ids: List[str] = Field(default_factory=list)
    scenarios: List[ProductScenarioResult] = Field(default_factory=list)
    failures: List[ProductFailure] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
def compute_savings_breakdown(
    baseline: LandedCostBreakdown,
    optimized: LandedCostBreakdown,
    *,
    annual_units: int,
    implementation_cost: Decimal = ZERO,
    time_horizon_months: int = 12,
) -> SavingsBreakdown:
    """Savings of ``optimized`` over ``baseline``.

    ROI is net savings over the time horizon relative to the implementation
    cost, in percent; it is reported as 0 when there is no implementation
    cost to return on.  Payback is in months and None when nothing is saved.
    """
    duty = baseline.duty_amount - optimized.duty_amount
    vat = baseline.vat_amount - optimized.vat_amount
    shipping = baseline.shipping_cost - optimized.shipping_cost
    fulfillment = baseline.fulfillment_fees - optimized.fulfillment_fees
    other = (
        baseline.product_value - optimized.product_value
        + baseline.incidental_fees - optimized.incidental_fees
    )
    per_unit = duty + vat + shipping + fulfillment + other

    percentage = 0.0
    if baseline.total_landed_cost != 0:
        percentage = float(per_unit / baseline.total_landed_cost * _HUNDRED)

    annual = money(per_unit * Decimal(annual_units))
    horizon_savings = annual * Decimal(time_horizon_months) / Decimal(12)

    roi = 0.0
    if implementation_cost > 0:
        roi = float((horizon_savings - implementation_cost) / implementation_cost * _HUNDRED)

    payback: Optional[float] = None
    if annual > 0:
        payback = float(implementation_cost / (annual / Decimal(12)))

    return SavingsBreakdown(
        duty_reduction=duty,
        vat_reduction=vat,
        shipping_reduction=shipping,
        fulfillment_reduction=fulfillment,
        other_reduction=other,
        total_savings_per_unit=per_unit,
        total_savings_percentage=percentage,
        annual_savings=annual,
        roi=roi,
        payback_period_months=payback,
    )


def implementation_requirements(candidate: CandidateScenario) -> List[ImplementationRequirement]:
    requirements = [REQUIREMENT_TEMPLATES[axis].build() for axis in candidate.changed_axes]
    if AXIS_CLASSIFICATION in candidate.changed_axes and candidate.classification_confidence < LEGAL_REVIEW_CONFIDENCE:
        requirements.append(LEGAL_REVIEW_TEMPLATE.build())
    return requirements


def time_to_implement(candidate: CandidateScenario) -> str:
    templates = [REQUIREMENT_TEMPLATES[axis] for axis in candidate.changed_axes]
    if AXIS_CLASSIFICATION in candidate.changed_axes and candidate.classification_confidence < LEGAL_REVIEW_CONFIDENCE:
        templates.append(LEGAL_REVIEW_TEMPLATE)
    if not templates:
        return "immediate"
    return max(templates, key=lambda t: t.weeks).time_required


def overall_complexity(requirements: Sequence[ImplementationRequirement]) -> str:
    if not requirements:
        return "low"
    return max((req.complexity for req in requirements), key=_COMPLEXITY_RANK.__getitem__)


def _max_risk(*levels: str) -> str:
    return _RISK_ORDER[max(_RISK_ORDER.index(level) for level in levels)]


def assess_risks(candidate: CandidateScenario, product: ProductProfile) -> RiskAssessment:
    """Rule-based risk grading of one candidate."""

    axes = set(candidate.changed_axes)
    compliance = supplier = market = operational = "low"
    mitigations: List[str] = []

    if AXIS_CLASSIFICATION in axes:
        compliance = "medium" if candidate.classification_confidence < LEGAL_REVIEW_CONFIDENCE else "low"
        mitigations.append("Obtain a binding ruling before filing under the new heading")
    if AXIS_TRADE_AGREEMENT in axes:
        compliance = _max_risk(compliance, "medium")
        mitigations.append("Keep rules-of-origin evidence on file for verification audits")
    if AXIS_ORIGIN in axes:
        compliance = "high"
        supplier = "high"
        mitigations.append("Qualify a second supplier before moving volume")
    if AXIS_SHIPPING in axes:
        if candidate.shipping_method in _SLOW_SHIPPING:
            operational = "medium"
            mitigations.append("Raise safety stock to cover longer transit times")
    if AXIS_FULFILLMENT in axes:
        operational = _max_risk(operational, "medium")
        mitigations.append("Pilot the fulfillment change on a subset of inventory")
    if axes and product.value > HIGH_VALUE_PRODUCT:
        market = "medium"
        mitigations.append("Monitor market pricing for high-value lines")

    return RiskAssessment(
        compliance_risk=compliance,
        supplier_risk=supplier,
        market_risk=market,
        operational_risk=operational,
        overall_risk=_max_risk(compliance, supplier, market, operational),
        mitigation_strategies=mitigations,
    )


def _describe(candidate: CandidateScenario, product: ProductProfile) -> Tuple[str, str]:
    subject = product.title or product.product_id
    if candidate.is_baseline:
        return (f"Baseline for {subject}", "Current classification, origin, shipping and fulfillment")
    parts = []
    for axis, value in candidate.changes:
        if axis == AXIS_CLASSIFICATION:
            parts.append(f"reclassify under {value}")
        elif axis == AXIS_ORIGIN:
            parts.append(f"source from {value}")
        elif axis == AXIS_TRADE_AGREEMENT:
            parts.append("claim trade agreement preference")
        elif axis == AXIS_SHIPPING:
            parts.append(f"ship via {value}")
        elif axis == AXIS_FULFILLMENT:
            parts.append(f"fulfil through {value}")
    description = ", ".join(parts)
    return (f"{description[:1].upper()}{description[1:]} for {subject}", description)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
ProductLike = Union[ProductProfile, str, dict]


class SavingsAnalysisEngine:
    """Evaluates candidate scenarios and aggregates batch savings."""

    def __init__(
        self,
        rate_provider: RateProvider,
        catalog: Optional[ProductCatalog] = None,
        *,
        settings: Optional[Settings] = None,
        shipping_quoter: Optional[ShippingQuoter] = None,
    ) -> None:
        self.rate_provider = rate_provider
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.shipping_quoter = shipping_quoter

    # -- lookups ------------------------------------------------------------
    def _lookup(
        self,
        cache: Dict[Tuple[str, str, str], RateLookupResult],
        hs_code: str,
        origin: str,
        destination: str,
    ) -> RateLookupResult:
        key = (hs_code, origin, destination)
        if key in cache:
            return cache[key]
        attempts = max(1, self.settings.rate_lookup_attempts)
        for attempt in range(1, attempts + 1):
            try:
                result = self.rate_provider.lookup_rate(hs_code, origin, destination)
                break
            except ProviderUnavailableError:
                if attempt == attempts:
                    raise
                logger.info("Retrying rate lookup for %s %s->%s (attempt %d)", hs_code, origin, destination, attempt + 1)
        cache[key] = result
        return result

    def _shipping(self, product: ProductProfile, method: str) -> ShippingOption:
        if self.shipping_quoter is not None:
            return self.shipping_quoter(product, method)
        return default_shipping_option(method, chargeable_weight(product))

    def _annual_units(self, product: ProductProfile) -> int:
        return product.annual_units if product.annual_units is not None else self.settings.annual_units

    def _cost(
        self, product: ProductProfile, candidate: CandidateScenario, rate: RateLookupResult
    ) -> LandedCostBreakdown:
        return compute_landed_cost(
            product,
            rate,
            self._shipping(product, candidate.shipping_method),
            claim_trade_agreement=candidate.claim_trade_agreement,
            fulfillment_fee=candidate.fulfillment_option.fee if candidate.fulfillment_option else None,
            default_shipping_method=self.settings.default_shipping_method,
        )

    def _result(
        self,
        product: ProductProfile,
        candidate: CandidateScenario,
        baseline_cost: LandedCostBreakdown,
        optimized_cost: LandedCostBreakdown,
        confidence: float,
        configuration: ScenarioConfiguration,
        label: Optional[str],
    ) -> ProductScenarioResult:
        requirements = implementation_requirements(candidate)
        cost = sum((req.estimated_cost for req in requirements), ZERO)
        savings = compute_savings_breakdown(
            baseline_cost,
            optimized_cost,
            annual_units=self._annual_units(product),
            implementation_cost=cost,
            time_horizon_months=configuration.time_horizon_months,
        )
        name, description = _describe(candidate, product)
        prefix = f"{label}:" if label else ""
        return ProductScenarioResult(
            id=f"{prefix}{product.product_id}:{candidate.key}",
            product_id=product.product_id,
            name=name,
            description=description,
            changes=candidate.changes_dict(),
            baseline=baseline_cost,
            optimized=optimized_cost,
            savings=savings,
            confidence=confidence,
            risk_assessment=assess_risks(candidate, product),
            implementation_requirements=requirements,
            time_to_implement=time_to_implement(candidate),
            complexity=overall_complexity(requirements),
            configuration_label=label,
        )

    # -- single product -----------------------------------------------------
    def evaluate_candidates(
        self,
        product: ProductProfile,
        configuration: ScenarioConfiguration,
        *,
        label: Optional[str] = None,
    ) -> List[ProductScenarioResult]:
        """Every evaluated candidate for ``product``, baseline first.

        Raises the baseline lookup's error when the product cannot be costed
        at all.  Candidates whose own lookup finds no rate, or whose
        confidence falls below the configured threshold, are skipped.
        """
        cache: Dict[Tuple[str, str, str], RateLookupResult] = {}
        baseline = baseline_candidate(product, self.settings.default_shipping_method)
        baseline_rate = self._lookup(cache, baseline.hs_code, baseline.origin_country, baseline.destination_country)
        baseline_cost = self._cost(product, baseline, baseline_rate)

        results = [
            self._result(product, baseline, baseline_cost, baseline_cost, baseline_rate.confidence, configuration, label)
        ]
        for candidate in build_scenarios(
            product,
            configuration,
            baseline_rate=baseline_rate,
            annual_units=self._annual_units(product),
            default_shipping_method=self.settings.default_shipping_method,
        ):
            if candidate.is_baseline:
                continue
            try:
                rate = self._lookup(cache, candidate.hs_code, candidate.origin_country, candidate.destination_country)
            except RateNotFoundError:
                logger.debug("No rate for candidate %s of %s", candidate.key, product.product_id)
                continue
            confidence = min(baseline_rate.confidence, rate.confidence, candidate.classification_confidence)
            if confidence < configuration.confidence_threshold:
                continue
            optimized_cost = self._cost(product, candidate, rate)
            results.append(
                self._result(product, candidate, baseline_cost, optimized_cost, confidence, configuration, label)
            )
        return results

    def analyze_product(
        self,
        product: ProductProfile,
        configuration: ScenarioConfiguration,
        *,
        label: Optional[str] = None,
    ) -> ProductScenarioResult:
        """Best scenario for one product; the baseline itself when nothing saves money."""

        results = self.evaluate_candidates(product, configuration, label=label)
        baseline, candidates = results[0], results[1:]
        improving = [r for r in candidates if r.savings.total_savings_per_unit > 0]
        if not improving:
            return baseline
        # max() keeps the first of equal keys, i.e. the simpler candidate.
        return max(
            improving,
            key=lambda r: (
                r.savings.total_savings_per_unit,
                r.confidence,
                -_COMPLEXITY_RANK[r.complexity],
            ),
        )

    def landed_cost(
        self,
        product: ProductProfile,
        shipping_method: Optional[str] = None,
        *,
        claim_trade_agreement: bool = False,
    ) -> LandedCostBreakdown:
        """Landed cost of one unit under the product's current sourcing."""

        rate = self._lookup({}, product.hs_code, product.origin_country, product.destination_country)
        method = shipping_method or product.shipping_method or self.settings.default_shipping_method
        return compute_landed_cost(
            product,
            rate,
            self._shipping(product, method),
            claim_trade_agreement=claim_trade_agreement,
            default_shipping_method=self.settings.default_shipping_method,
        )

    # -- batches ------------------------------------------------------------
    def _resolve(self, product: ProductLike) -> ProductProfile:
        if isinstance(product, ProductProfile):
            return product
        if isinstance(product, dict):
            if "value" in product and "hs_code" in product:
                return ProductProfile.model_validate(product)
            product = product.get("id") or product.get("product_id") or ""
        if self.catalog is None:
            raise InvalidInputError(
                "A product catalog is required to analyze products by id",
                detail={"product_id": product},
            )
        return self.catalog.get_product(str(product))

    def _product_id(self, product: ProductLike) -> str:
        if isinstance(product, ProductProfile):
            return product.product_id
        if isinstance(product, dict):
            return str(product.get("product_id") or product.get("id") or "")
        return str(product)

    def analyze_batch(
        self,
        products: Iterable[ProductLike],
        configuration: ScenarioConfiguration,
        *,
        progress: Optional[ProgressSink] = None,
        checkpoint: Optional[BatchCheckpoint] = None,
        label: Optional[str] = None,
    ) -> BatchSavingsAnalysis:
        """Analyze products given as profiles, ids or plain dicts."""

        configuration.validate_semantics()
        items: List[ProductLike] = []
        seen_ids = set()
        for item in products:
            product_id = self._product_id(item)
            if product_id not in seen_ids:
                seen_ids.add(product_id)
                items.append(item)
        state = checkpoint.model_copy(deep=True) if checkpoint else BatchCheckpoint()
        done = set(state.processed_ids)
        total = len(items)

        for item in items:
            product_id = self._product_id(item)
            if product_id in done:
                continue
            try:
                product = self._resolve(item)
                state.scenarios.append(self.analyze_product(product, configuration, label=label))
            except (RateLookupError, ProviderUnavailableError, InvalidInputError) as exc:
                failure = ProductFailure(
                    product_id=product_id,
                    code=exc.code,
                    message=exc.message,
                    retryable=exc.retryable,
                )
                state.failures.append(failure)
                log_event(
                    "scenario.product_excluded",
                    level=logging.WARNING,
                    product_id=product_id,
                    code=exc.code,
                    error=exc.message,
                )
            state.processed_ids.append(product_id)
            done.add(product_id)
            if progress is not None:
                progress.on_product_done(product_id, state, total)

        return summarize_batch(total, state.scenarios, state.failures)

    def analyze_batch_savings(
        self,
        product_ids: Sequence[str],
        configuration: ScenarioConfiguration,
        *,
        progress: Optional[ProgressSink] = None,
        checkpoint: Optional[BatchCheckpoint] = None,
        label: Optional[str] = None,
    ) -> BatchSavingsAnalysis:
        """Analyze products by id through the catalog."""

        configuration.validate_semantics()
        if self.catalog is None:
            raise InvalidInputError("A product catalog is required to analyze products by id")
        return self.analyze_batch(
            list(product_ids), configuration, progress=progress, checkpoint=checkpoint, label=label
        )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------
def _is_quick_win(result: ProductScenarioResult) -> bool:
    return (
        result.savings.total_savings_percentage > QUICK_WIN_PERCENT
        and result.confidence >= QUICK_WIN_CONFIDENCE
        and all(req.complexity == "low" for req in result.implementation_requirements)
    )


def _is_long_term(result: ProductScenarioResult) -> bool:
    return result.complexity == "high" and result.savings.total_savings_percentage > LONG_TERM_PERCENT


def summarize_batch(
    total_products: int,
    scenarios: Sequence[ProductScenarioResult],
    failures: Sequence[ProductFailure] = (),
) -> BatchSavingsAnalysis:
    """Aggregate per-product results into a batch analysis."""

    total_current = sum((s.baseline.total_landed_cost for s in scenarios), ZERO)
    total_optimized = sum((s.optimized.total_landed_cost for s in scenarios), ZERO)
    total_savings = total_current - total_optimized
    percentage = float(total_savings / total_current * _HUNDRED) if total_current else 0.0
    average_roi = sum(s.savings.roi for s in scenarios) / len(scenarios) if scenarios else 0.0

    return BatchSavingsAnalysis(
        total_products=total_products,
        analyzed_products=len(scenarios),
        total_current_cost=total_current,
        total_optimized_cost=total_optimized,
        total_savings=total_savings,
        total_savings_percentage=percentage,
        average_roi=average_roi,
        scenarios=list(scenarios),
        failures=list(failures),
        summary=build_summary(scenarios),
        recommendations=build_portfolio_recommendations(scenarios),
    )


def build_summary(scenarios: Sequence[ProductScenarioResult]) -> SavingsAnalysisSummary:
    implementation_cost = sum((s.implementation_cost for s in scenarios), ZERO)
    annual = sum((s.savings.annual_savings for s in scenarios), ZERO)
    priority = sorted(
        (s for s in scenarios if not s.is_baseline),
        key=lambda s: (-s.savings.roi, -s.savings.annual_savings, s.id),
    )
    return SavingsAnalysisSummary(
        high_impact_scenarios=sum(
            1 for s in scenarios if s.savings.total_savings_percentage > HIGH_IMPACT_PERCENT
        ),
        quick_wins=sum(1 for s in scenarios if _is_quick_win(s)),
        long_term_opportunities=sum(1 for s in scenarios if _is_long_term(s)),
        total_implementation_cost=implementation_cost,
        total_annual_savings=annual,
        net_savings=annual - implementation_cost,
        priority_order=[s.id for s in priority],
    )


def _portfolio_entry(
    rec_id: str,
    rec_type: str,
    title: str,
    description: str,
    members: Sequence[ProductScenarioResult],
    timeframe: str,
    priority: str,
) -> PortfolioRecommendation:
    return PortfolioRecommendation(
        id=rec_id,
        type=rec_type,
        title=title,
        description=description,
        affected_products=[s.product_id for s in members],
        total_savings=sum((s.savings.annual_savings for s in members), ZERO),
        implementation_cost=sum((s.implementation_cost for s in members), ZERO),
        timeframe=timeframe,
        priority=priority,
    )


def build_portfolio_recommendations(
    scenarios: Sequence[ProductScenarioResult],
) -> List[PortfolioRecommendation]:
    recommendations: List[PortfolioRecommendation] = []

    quick = [s for s in scenarios if _is_quick_win(s)]
    if quick:
        recommendations.append(_portfolio_entry(
            "immediate_wins", "immediate", "Quick win optimizations",
            f"Implement {len(quick)} low-complexity optimizations for immediate savings",
            quick, "1-2 months", "high",
        ))

    reclassify = [s for s in scenarios if AXIS_CLASSIFICATION in s.changes]
    if reclassify:
        recommendations.append(_portfolio_entry(
            "classification_review", "short_term", "Product classification review",
            f"Review and optimize classifications for {len(reclassify)} products",
            reclassify, "2-3 months", "medium",
        ))

    resource = [s for s in scenarios if AXIS_ORIGIN in s.changes and s.savings.total_savings_per_unit > 0]
    if resource:
        recommendations.append(_portfolio_entry(
            "sourcing_strategy", "long_term", "Sourcing strategy review",
            f"Evaluate alternate origins for {len(resource)} products",
            resource, "6-12 months", "medium" if len(resource) < 3 else "high",
        ))

    return recommendations
