"""Data model for landed-cost scenarios, savings analysis and recommendations.

Monetary amounts are ``Decimal`` quantized to cents; ratios and scores are
floats.  Result models are frozen: a re-analysis produces new objects rather
than mutating existing ones.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from tariffscope.errors import InvalidInputError

AnalysisDepth = Literal["basic", "comprehensive", "exhaustive"]
RiskLevel = Literal["low", "medium", "high"]
Complexity = Literal["low", "medium", "high"]
RequirementType = Literal[
    "documentation", "certification", "supplier_change", "process_change", "legal_review"
]
RecommendationType = Literal["classification", "origin", "shipping", "fba", "trade_agreement"]
RecommendationPriority = Literal["low", "medium", "high", "critical"]
RecommendationStatus = Literal["pending", "accepted", "rejected", "implemented"]

ZERO = Decimal("0.00")

# Per-axis value caps by analysis depth; None means unbounded.
DEPTH_AXIS_LIMITS: Dict[str, Optional[int]] = {
    "basic": 2,
    "comprehensive": 4,
    "exhaustive": None,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------
class ScenarioConfiguration(BaseModel):
    """Variation space for one scenario run."""

    include_shipping_variations: bool = True
    include_origin_country_variations: bool = True
    include_classification_variations: bool = True
    include_trade_agreements: bool = True
    include_fulfillment_optimizations: bool = True
    time_horizon_months: int = 12
    confidence_threshold: float = 0.7
    min_saving_threshold: Decimal = Decimal("50")
    max_scenarios: int = 20
    analysis_depth: AnalysisDepth = "comprehensive"

    # Explicit axis values; None falls back to the product's own alternatives.
    shipping_methods: Optional[List[str]] = None
    origin_countries: Optional[List[str]] = None
    hs_code_alternatives: Optional[List[str]] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    def validate_semantics(self) -> "ScenarioConfiguration":
        """Raise :class:`InvalidInputError` for configurations no run can use."""

        if self.max_scenarios <= 0:
            raise InvalidInputError(
                f"max_scenarios must be positive, got {self.max_scenarios}",
                detail={"field": "max_scenarios"},
            )
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise InvalidInputError(
                "confidence_threshold must be within [0, 1]",
                detail={"field": "confidence_threshold"},
            )
        if self.time_horizon_months <= 0:
            raise InvalidInputError(
                "time_horizon_months must be positive",
                detail={"field": "time_horizon_months"},
            )
        if self.min_saving_threshold < 0:
            raise InvalidInputError(
                "min_saving_threshold must not be negative",
                detail={"field": "min_saving_threshold"},
            )
        return self

    @property
    def axis_limit(self) -> Optional[int]:
        return DEPTH_AXIS_LIMITS[self.analysis_depth]


class Dimensions(BaseModel):
    length_cm: float
    width_cm: float
    height_cm: float

    model_config = ConfigDict(extra="forbid", frozen=True)


class ClassificationAlternative(BaseModel):
    """Alternative HS code a product could defensibly be classified under."""

    hs_code: str
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)

    model_config = ConfigDict(extra="forbid", frozen=True)


class FulfillmentOption(BaseModel):
    name: str
    fee: Decimal

    model_config = ConfigDict(extra="forbid", frozen=True)


class ProductProfile(BaseModel):
    """Product attributes the cost model needs, plus its current sourcing."""

    product_id: str
    title: str = ""
    value: Decimal
    weight_kg: float = 1.0
    dimensions: Optional[Dimensions] = None
    hs_code: str
    origin_country: str
    destination_country: str = "US"
    shipping_method: Optional[str] = None
    fulfillment_fee: Decimal = ZERO
    other_fees: Decimal = ZERO
    selling_price: Optional[Decimal] = None
    annual_units: Optional[int] = None

    alternative_hs_codes: List[ClassificationAlternative] = Field(default_factory=list)
    alternative_origins: List[str] = Field(default_factory=list)
    fulfillment_options: List[FulfillmentOption] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)


class ShippingOption(BaseModel):
    """Freight offer for one shipping method."""

    method: str
    cost: Decimal
    insurance_rate_percent: float = 0.5
    transit_days: Optional[int] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class RateLookupResult(BaseModel):
    """What the rate/classification provider returns for one lookup."""

    hs_code: str
    origin_country: str
    destination_country: str
    duty_percent: float
    vat_percent: float = 0.0
    additional_fees: Decimal = ZERO
    broker_fee: Decimal = ZERO
    trade_agreement: Optional[str] = None
    preferential_duty_percent: Optional[float] = None
    vat_on_duty: bool = False
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    model_config = ConfigDict(extra="forbid", frozen=True)

    def effective_duty_percent(self, claim_agreement: bool) -> float:
        if claim_agreement and self.trade_agreement and self.preferential_duty_percent is not None:
            return self.preferential_duty_percent
        return self.duty_percent


# ---------------------------------------------------------------------------
# Cost and savings
# ---------------------------------------------------------------------------
class LandedCostBreakdown(BaseModel):
    product_value: Decimal
    duty_amount: Decimal
    vat_amount: Decimal
    shipping_cost: Decimal
    insurance_cost: Decimal
    fulfillment_fees: Decimal
    broker_fees: Decimal
    other_fees: Decimal
    total_landed_cost: Decimal
    profit_margin: Optional[float] = None
    selling_price: Optional[Decimal] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    def components_sum(self) -> Decimal:
        return (
            self.product_value
            + self.duty_amount
            + self.vat_amount
            + self.shipping_cost
            + self.insurance_cost
            + self.fulfillment_fees
            + self.broker_fees
            + self.other_fees
        )

    @property
    def incidental_fees(self) -> Decimal:
        """Insurance, broker and other fees, reported together as "other"."""

        return self.insurance_cost + self.broker_fees + self.other_fees


class SavingsBreakdown(BaseModel):
    duty_reduction: Decimal
    vat_reduction: Decimal
    shipping_reduction: Decimal
    fulfillment_reduction: Decimal
    other_reduction: Decimal
    total_savings_per_unit: Decimal
    total_savings_percentage: float
    annual_savings: Decimal
    roi: float
    payback_period_months: Optional[float] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class ImplementationRequirement(BaseModel):
    type: RequirementType
    description: str
    estimated_cost: Decimal
    time_required: str
    complexity: Complexity

    model_config = ConfigDict(extra="forbid", frozen=True)


class RiskAssessment(BaseModel):
    compliance_risk: RiskLevel = "low"
    supplier_risk: RiskLevel = "low"
    market_risk: RiskLevel = "low"
    operational_risk: RiskLevel = "low"
    overall_risk: RiskLevel = "low"
    mitigation_strategies: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)


class ProductScenarioResult(BaseModel):
    """One evaluated candidate scenario for one product."""

    id: str
    product_id: str
    name: str
    description: str
    changes: Dict[str, str] = Field(default_factory=dict)
    baseline: LandedCostBreakdown
    optimized: LandedCostBreakdown
    savings: SavingsBreakdown
    confidence: float = Field(ge=0.0, le=1.0)
    risk_assessment: RiskAssessment
    implementation_requirements: List[ImplementationRequirement] = Field(default_factory=list)
    time_to_implement: str
    complexity: Complexity = "low"
    configuration_label: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def implementation_cost(self) -> Decimal:
        return sum((req.estimated_cost for req in self.implementation_requirements), ZERO)

    @property
    def is_baseline(self) -> bool:
        return not self.changes


class ProductFailure(BaseModel):
    """A product excluded from a batch, with the reason."""

    product_id: str
    code: str
    message: str
    retryable: bool = False

    model_config = ConfigDict(extra="forbid", frozen=True)


class SavingsAnalysisSummary(BaseModel):
    high_impact_scenarios: int = 0
    quick_wins: int = 0
    long_term_opportunities: int = 0
    total_implementation_cost: Decimal = ZERO
    total_annual_savings: Decimal = ZERO
    net_savings: Decimal = ZERO
    priority_order: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)


class PortfolioRecommendation(BaseModel):
    id: str
    type: Literal["immediate", "short_term", "long_term"]
    title: str
    description: str
    affected_products: List[str]
    total_savings: Decimal
    implementation_cost: Decimal
    timeframe: str
    priority: Literal["low", "medium", "high"]

    model_config = ConfigDict(extra="forbid", frozen=True)


class BatchSavingsAnalysis(BaseModel):
    total_products: int
    analyzed_products: int
    total_current_cost: Decimal
    total_optimized_cost: Decimal
    total_savings: Decimal
    total_savings_percentage: float
    average_roi: float
    scenarios: List[ProductScenarioResult] = Field(default_factory=list)
    failures: List[ProductFailure] = Field(default_factory=list)
    summary: SavingsAnalysisSummary
    recommendations: List[PortfolioRecommendation] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------
class ComparisonOptions(BaseModel):
    """Already-computed scenario results to compare."""

    scenarios: List[ProductScenarioResult] = Field(..., min_length=1)
    name: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class RankedScenario(BaseModel):
    rank: int
    scenario_id: str
    product_id: str
    configuration_label: Optional[str] = None
    savings_percentage: float
    savings_per_unit: Decimal
    confidence: float
    overall_risk: RiskLevel
    changes: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid", frozen=True)


class SavingsMatrix(BaseModel):
    by_shipping_method: Dict[str, Decimal] = Field(default_factory=dict)
    by_origin_country: Dict[str, Decimal] = Field(default_factory=dict)
    by_classification: Dict[str, Decimal] = Field(default_factory=dict)
    by_trade_agreement: Dict[str, Decimal] = Field(default_factory=dict)
    by_fulfillment: Dict[str, Decimal] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid", frozen=True)


class MultiScenarioComparison(BaseModel):
    best_scenario: RankedScenario
    worst_scenario: RankedScenario
    ranked: List[RankedScenario]
    mean_savings_percentage: float
    variance: float
    savings_matrix: SavingsMatrix
    recommendations: List[str] = Field(default_factory=list)
    risk_analysis: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)


# ---------------------------------------------------------------------------
# Optimization recommendations
# ---------------------------------------------------------------------------
class FinancialImpact(BaseModel):
    savings_per_unit: Decimal
    annual_savings: Decimal
    implementation_cost: Decimal
    roi: float
    payback_period_months: Optional[float] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class OperationalImpact(BaseModel):
    complexity: Complexity
    resource_requirements: List[str] = Field(default_factory=list)
    timeline_weeks: int = 0
    dependencies: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)


class RiskImpact(BaseModel):
    compliance_risk: RiskLevel
    business_risk: RiskLevel
    mitigation_required: bool

    model_config = ConfigDict(extra="forbid", frozen=True)


class ImpactAnalysis(BaseModel):
    financial_impact: FinancialImpact
    operational_impact: OperationalImpact
    risk_impact: RiskImpact

    model_config = ConfigDict(extra="forbid", frozen=True)


class DocumentationPlan(BaseModel):
    required: bool = False
    documents: List[str] = Field(default_factory=list)
    estimated_hours: int = 0

    model_config = ConfigDict(extra="forbid", frozen=True)


class CertificationPlan(BaseModel):
    required: bool = False
    certifications: List[str] = Field(default_factory=list)
    estimated_cost: Decimal = ZERO
    timeline_weeks: int = 0

    model_config = ConfigDict(extra="forbid", frozen=True)


class SupplierChangePlan(BaseModel):
    required: bool = False
    changes: List[str] = Field(default_factory=list)
    risk_level: RiskLevel = "low"

    model_config = ConfigDict(extra="forbid", frozen=True)


class ProcessChangePlan(BaseModel):
    required: bool = False
    processes: List[str] = Field(default_factory=list)
    training_required: bool = False

    model_config = ConfigDict(extra="forbid", frozen=True)


class LegalReviewPlan(BaseModel):
    required: bool = False
    scope: List[str] = Field(default_factory=list)
    estimated_cost: Decimal = ZERO

    model_config = ConfigDict(extra="forbid", frozen=True)


class ImplementationPlan(BaseModel):
    documentation: DocumentationPlan = Field(default_factory=DocumentationPlan)
    certifications: CertificationPlan = Field(default_factory=CertificationPlan)
    supplier_changes: SupplierChangePlan = Field(default_factory=SupplierChangePlan)
    process_changes: ProcessChangePlan = Field(default_factory=ProcessChangePlan)
    legal_review: LegalReviewPlan = Field(default_factory=LegalReviewPlan)

    model_config = ConfigDict(extra="forbid", frozen=True)


class OptimizationRecommendation(BaseModel):
    id: str
    workspace_id: str
    scenario_id: Optional[str] = None
    product_id: Optional[str] = None
    recommendation_type: RecommendationType
    title: str
    description: str
    impact_analysis: ImpactAnalysis
    implementation_requirements: ImplementationPlan
    confidence_score: float = Field(ge=0.0, le=1.0)
    priority: RecommendationPriority
    status: RecommendationStatus = "pending"
    archived: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(extra="forbid", frozen=True)


# ---------------------------------------------------------------------------
# Scenario registry
# ---------------------------------------------------------------------------
ScenarioType = Literal["baseline", "optimization", "comparison", "what_if"]
ScenarioStatus = Literal["draft", "active", "archived", "completed"]
TemplateCategory = Literal["optimization", "comparison", "analysis"]
ComparisonType = Literal["side_by_side", "matrix", "timeline"]


class ScenarioGroup(BaseModel):
    id: str
    workspace_id: str
    name: str
    description: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(extra="forbid", frozen=True)


class ScenarioTemplate(BaseModel):
    id: str
    workspace_id: str
    name: str
    description: Optional[str] = None
    category: TemplateCategory = "optimization"
    configuration: ScenarioConfiguration = Field(default_factory=ScenarioConfiguration)
    is_public: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(extra="forbid", frozen=True)


class EnhancedScenario(BaseModel):
    """A named, saved scenario run: configuration, products and latest results.

    Groups and templates are referenced by id only.
    """

    id: str
    workspace_id: str
    group_id: Optional[str] = None
    template_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    scenario_type: ScenarioType = "optimization"
    status: ScenarioStatus = "draft"
    configuration: ScenarioConfiguration = Field(default_factory=ScenarioConfiguration)
    product_ids: List[str] = Field(default_factory=list)
    job_id: Optional[str] = None
    results: Optional[BatchSavingsAnalysis] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class ScenarioComparisonRecord(BaseModel):
    id: str
    workspace_id: str
    name: str
    description: Optional[str] = None
    scenario_ids: List[str] = Field(..., min_length=1)
    comparison_type: ComparisonType = "side_by_side"
    results: Optional[MultiScenarioComparison] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(extra="forbid", frozen=True)
