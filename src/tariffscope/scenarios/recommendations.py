"""Turn material scenario savings into persisted optimization recommendations.

A recommendation snapshots the impact analysis and implementation plan at
generation time.  Later rate changes never rewrite an existing
recommendation; a re-analysis generates new ones instead.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Union

from sqlalchemy.orm import sessionmaker

from tariffscope.config import Settings, get_settings
from tariffscope.db.models import OptimizationRecommendationRow
from tariffscope.db.session import session_scope
from tariffscope.errors import RecommendationNotFoundError, StateConflictError
from tariffscope.observability import log_event
from tariffscope.scenarios.builder import (
    AXIS_CLASSIFICATION,
    AXIS_FULFILLMENT,
    AXIS_ORIGIN,
    AXIS_SHIPPING,
    AXIS_TRADE_AGREEMENT,
)
from tariffscope.scenarios.models import (
    ZERO,
    BatchSavingsAnalysis,
    CertificationPlan,
    DocumentationPlan,
    FinancialImpact,
    ImpactAnalysis,
    ImplementationPlan,
    LegalReviewPlan,
    OperationalImpact,
    OptimizationRecommendation,
    ProcessChangePlan,
    ProductScenarioResult,
    RiskImpact,
    SupplierChangePlan,
)
from tariffscope.scenarios.savings import LEGAL_REVIEW_TEMPLATE, REQUIREMENT_TEMPLATES

logger = logging.getLogger(__name__)

# The most consequential change decides the recommendation type.
_TYPE_BY_AXIS = (
    (AXIS_ORIGIN, "origin"),
    (AXIS_CLASSIFICATION, "classification"),
    (AXIS_TRADE_AGREEMENT, "trade_agreement"),
    (AXIS_FULFILLMENT, "fba"),
    (AXIS_SHIPPING, "shipping"),
)

_TYPE_TITLES = {
    "origin": "Shift sourcing origin",
    "classification": "Reclassify product",
    "trade_agreement": "Claim trade agreement preference",
    "fba": "Change fulfillment program",
    "shipping": "Change shipping method",
}

_DEPENDENCIES = {
    AXIS_ORIGIN: "Qualified supplier in the new origin country",
    AXIS_CLASSIFICATION: "Customs broker sign-off on the new heading",
    AXIS_TRADE_AGREEMENT: "Supplier-issued certificate of origin",
    AXIS_FULFILLMENT: "Inbound capacity at the fulfillment program",
    AXIS_SHIPPING: "Forwarder contract for the new service level",
}

_HOURS_PER_DOCUMENT = 8
_RISK_ORDER = ("low", "medium", "high")

# Allowed manual status moves; anything else is a conflict.
STATUS_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"accepted", "rejected"}),
    "accepted": frozenset({"implemented"}),
    "rejected": frozenset(),
    "implemented": frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def recommendation_type_for(changes: Dict[str, str]) -> Optional[str]:
    for axis, rec_type in _TYPE_BY_AXIS:
        if axis in changes:
            return rec_type
    return None


def _impact_analysis(result: ProductScenarioResult) -> ImpactAnalysis:
    savings = result.savings
    risk = result.risk_assessment
    weeks = [REQUIREMENT_TEMPLATES[axis].weeks for axis in result.changes if axis in REQUIREMENT_TEMPLATES]
    if any(req.type == "legal_review" for req in result.implementation_requirements):
        weeks.append(LEGAL_REVIEW_TEMPLATE.weeks)
    business = max(
        (risk.supplier_risk, risk.market_risk, risk.operational_risk), key=_RISK_ORDER.index
    )
    return ImpactAnalysis(
        financial_impact=FinancialImpact(
            savings_per_unit=savings.total_savings_per_unit,
            annual_savings=savings.annual_savings,
            implementation_cost=result.implementation_cost,
            roi=savings.roi,
            payback_period_months=savings.payback_period_months,
        ),
        operational_impact=OperationalImpact(
            complexity=result.complexity,
            resource_requirements=[req.description for req in result.implementation_requirements],
            timeline_weeks=max(weeks, default=0),
            dependencies=[_DEPENDENCIES[axis] for axis in result.changes if axis in _DEPENDENCIES],
        ),
        risk_impact=RiskImpact(
            compliance_risk=risk.compliance_risk,
            business_risk=business,
            mitigation_required=risk.overall_risk != "low",
        ),
    )


def _implementation_plan(result: ProductScenarioResult) -> ImplementationPlan:
    changes = result.changes
    by_type: Dict[str, Decimal] = {}
    for req in result.implementation_requirements:
        by_type[req.type] = by_type.get(req.type, ZERO) + req.estimated_cost

    documents: List[str] = []
    if AXIS_CLASSIFICATION in changes:
        documents += ["Product specification sheet", f"Classification memo for {changes[AXIS_CLASSIFICATION]}"]
    if AXIS_TRADE_AGREEMENT in changes:
        documents.append("Rules-of-origin worksheet")
    if AXIS_ORIGIN in changes:
        documents.append(f"Supplier declaration for {changes[AXIS_ORIGIN]}")

    processes: List[str] = []
    if AXIS_SHIPPING in changes:
        processes.append(f"Book freight via {changes[AXIS_SHIPPING]}")
    if AXIS_FULFILLMENT in changes:
        processes.append(f"Route inventory to {changes[AXIS_FULFILLMENT]}")

    return ImplementationPlan(
        documentation=DocumentationPlan(
            required=bool(documents),
            documents=documents,
            estimated_hours=len(documents) * _HOURS_PER_DOCUMENT,
        ),
        certifications=CertificationPlan(
            required=AXIS_TRADE_AGREEMENT in changes,
            certifications=["Certificate of origin"] if AXIS_TRADE_AGREEMENT in changes else [],
            estimated_cost=by_type.get("certification", ZERO),
            timeline_weeks=REQUIREMENT_TEMPLATES[AXIS_TRADE_AGREEMENT].weeks if AXIS_TRADE_AGREEMENT in changes else 0,
        ),
        supplier_changes=SupplierChangePlan(
            required=AXIS_ORIGIN in changes,
            changes=[f"Move sourcing to {changes[AXIS_ORIGIN]}"] if AXIS_ORIGIN in changes else [],
            risk_level=result.risk_assessment.supplier_risk,
        ),
        process_changes=ProcessChangePlan(
            required=bool(processes),
            processes=processes,
            training_required=AXIS_FULFILLMENT in changes,
        ),
        legal_review=LegalReviewPlan(
            required="legal_review" in by_type,
            scope=[f"Classification position under {changes[AXIS_CLASSIFICATION]}"] if "legal_review" in by_type else [],
            estimated_cost=by_type.get("legal_review", ZERO),
        ),
    )


def generate_optimization_recommendations(
    scenario_id: Optional[str],
    analysis_results: Union[BatchSavingsAnalysis, Sequence[ProductScenarioResult]],
    *,
    workspace_id: str = "default",
    settings: Optional[Settings] = None,
) -> List[OptimizationRecommendation]:
    """One recommendation per scenario result with a material per-unit saving.

    A saving is material when it exceeds ``recommendation_min_saving``;
    it is ``high`` priority above ``recommendation_high_saving`` and
    ``medium`` otherwise.
    """
    settings = settings or get_settings()
    if isinstance(analysis_results, BatchSavingsAnalysis):
        results: Iterable[ProductScenarioResult] = analysis_results.scenarios
    else:
        results = analysis_results

    material = [
        r for r in results
        if not r.is_baseline and r.savings.total_savings_per_unit > settings.recommendation_min_saving
    ]
    material.sort(key=lambda r: (-r.savings.total_savings_per_unit, r.id))

    recommendations: List[OptimizationRecommendation] = []
    now = _utcnow()
    for result in material:
        rec_type = recommendation_type_for(result.changes)
        if rec_type is None:
            continue
        per_unit = result.savings.total_savings_per_unit
        priority = "high" if per_unit > settings.recommendation_high_saving else "medium"
        recommendations.append(
            OptimizationRecommendation(
                id=str(uuid.uuid4()),
                workspace_id=workspace_id,
                scenario_id=scenario_id,
                product_id=result.product_id,
                recommendation_type=rec_type,
                title=f"{_TYPE_TITLES[rec_type]} for {result.product_id}",
                description=(
                    f"{result.description}: saves {per_unit:.2f} per unit "
                    f"({result.savings.total_savings_percentage:.1f}%), "
                    f"{result.savings.annual_savings:.2f} per year"
                ),
                impact_analysis=_impact_analysis(result),
                implementation_requirements=_implementation_plan(result),
                confidence_score=result.confidence,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
        )

    log_event(
        "recommendation.generated",
        scenario_id=scenario_id,
        workspace_id=workspace_id,
        evaluated=len(material),
        generated=len(recommendations),
    )
    return recommendations


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
class RecommendationStore(Protocol):
    def save(self, recommendations: Sequence[OptimizationRecommendation]) -> None: ...

    def get(self, recommendation_id: str) -> OptimizationRecommendation: ...

    def list(self, **filters) -> List[OptimizationRecommendation]: ...

    def update_status(self, recommendation_id: str, status: str) -> OptimizationRecommendation: ...

    def archive(self, recommendation_id: str) -> OptimizationRecommendation: ...


_FILTER_FIELDS = ("workspace_id", "scenario_id", "product_id", "recommendation_type", "status", "priority")


def _check_transition(current: str, target: str, recommendation_id: str) -> None:
    if target not in STATUS_TRANSITIONS.get(current, frozenset()):
        raise StateConflictError(
            f"Cannot move recommendation {recommendation_id} from {current} to {target}",
            detail={"recommendation_id": recommendation_id, "status": current},
        )


class InMemoryRecommendationStore:
    """Thread-safe in-process recommendation collection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, OptimizationRecommendation] = {}

    def save(self, recommendations: Sequence[OptimizationRecommendation]) -> None:
        with self._lock:
            for rec in recommendations:
                self._records[rec.id] = rec

    def get(self, recommendation_id: str) -> OptimizationRecommendation:
        with self._lock:
            rec = self._records.get(recommendation_id)
        if rec is None:
            raise RecommendationNotFoundError(f"Unknown recommendation: {recommendation_id}")
        return rec

    def list(self, *, include_archived: bool = False, **filters) -> List[OptimizationRecommendation]:
        active = {k: v for k, v in filters.items() if k in _FILTER_FIELDS and v is not None}
        with self._lock:
            records = list(self._records.values())
        selected = [
            rec for rec in records
            if (include_archived or not rec.archived)
            and all(getattr(rec, key) == value for key, value in active.items())
        ]
        return sorted(selected, key=lambda rec: (rec.created_at, rec.id))

    def update_status(self, recommendation_id: str, status: str) -> OptimizationRecommendation:
        with self._lock:
            rec = self._records.get(recommendation_id)
            if rec is None:
                raise RecommendationNotFoundError(f"Unknown recommendation: {recommendation_id}")
            _check_transition(rec.status, status, recommendation_id)
            updated = rec.model_copy(update={"status": status, "updated_at": _utcnow()})
            self._records[recommendation_id] = updated
        logger.info("Recommendation %s moved %s -> %s", recommendation_id, rec.status, status)
        return updated

    def archive(self, recommendation_id: str) -> OptimizationRecommendation:
        with self._lock:
            rec = self._records.get(recommendation_id)
            if rec is None:
                raise RecommendationNotFoundError(f"Unknown recommendation: {recommendation_id}")
            updated = rec.model_copy(update={"archived": True, "updated_at": _utcnow()})
            self._records[recommendation_id] = updated
        return updated


def _to_row(rec: OptimizationRecommendation) -> OptimizationRecommendationRow:
    data = rec.model_dump(mode="json")
    return OptimizationRecommendationRow(
        id=rec.id,
        workspace_id=rec.workspace_id,
        scenario_id=rec.scenario_id,
        product_id=rec.product_id,
        recommendation_type=rec.recommendation_type,
        title=rec.title,
        description=rec.description,
        impact_analysis=data["impact_analysis"],
        implementation_requirements=data["implementation_requirements"],
        confidence_score=rec.confidence_score,
        priority=rec.priority,
        status=rec.status,
        archived=rec.archived,
        created_at=rec.created_at,
        updated_at=rec.updated_at,
    )


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _from_row(row: OptimizationRecommendationRow) -> OptimizationRecommendation:
    return OptimizationRecommendation(
        id=row.id,
        workspace_id=row.workspace_id,
        scenario_id=row.scenario_id,
        product_id=row.product_id,
        recommendation_type=row.recommendation_type,
        title=row.title,
        description=row.description,
        impact_analysis=ImpactAnalysis.model_validate(row.impact_analysis),
        implementation_requirements=ImplementationPlan.model_validate(row.implementation_requirements),
        confidence_score=row.confidence_score,
        priority=row.priority,
        status=row.status,
        archived=row.archived,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SqlRecommendationStore:
    """Recommendation collection backed by the ``optimization_recommendations`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.session_factory = session_factory

    def save(self, recommendations: Sequence[OptimizationRecommendation]) -> None:
        with session_scope(self.session_factory) as session:
            for rec in recommendations:
                session.merge(_to_row(rec))

    def get(self, recommendation_id: str) -> OptimizationRecommendation:
        with session_scope(self.session_factory) as session:
            row = session.get(OptimizationRecommendationRow, recommendation_id)
            if row is None:
                raise RecommendationNotFoundError(f"Unknown recommendation: {recommendation_id}")
            return _from_row(row)

    def list(self, *, include_archived: bool = False, **filters) -> List[OptimizationRecommendation]:
        active = {k: v for k, v in filters.items() if k in _FILTER_FIELDS and v is not None}
        with session_scope(self.session_factory) as session:
            query = session.query(OptimizationRecommendationRow).filter_by(**active)
            if not include_archived:
                query = query.filter(OptimizationRecommendationRow.archived.is_(False))
            rows = query.order_by(
                OptimizationRecommendationRow.created_at, OptimizationRecommendationRow.id
            ).all()
            return [_from_row(row) for row in rows]

    def update_status(self, recommendation_id: str, status: str) -> OptimizationRecommendation:
        with session_scope(self.session_factory) as session:
            row = session.get(OptimizationRecommendationRow, recommendation_id)
            if row is None:
                raise RecommendationNotFoundError(f"Unknown recommendation: {recommendation_id}")
            current = row.status
            _check_transition(current, status, recommendation_id)
            updated = (
                session.query(OptimizationRecommendationRow)
                .filter_by(id=recommendation_id, status=current)
                .update({"status": status, "updated_at": _utcnow()}, synchronize_session="fetch")
            )
            if updated != 1:
                raise StateConflictError(
                    f"Recommendation {recommendation_id} changed concurrently",
                    detail={"recommendation_id": recommendation_id},
                )
            session.refresh(row)
            return _from_row(row)

    def archive(self, recommendation_id: str) -> OptimizationRecommendation:
        with session_scope(self.session_factory) as session:
            row = session.get(OptimizationRecommendationRow, recommendation_id)
            if row is None:
                raise RecommendationNotFoundError(f"Unknown recommendation: {recommendation_id}")
            row.archived = True
            row.updated_at = _utcnow()
            session.flush()
            return _from_row(row)
