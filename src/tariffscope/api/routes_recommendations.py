"""Optimization recommendation read and review endpoints.

Recommendations are generated by ``scenario_analysis`` jobs (with
``generate_recommendations``) and ``recommendation_generation`` jobs; this
router only reads them and records the review decision.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from tariffscope.api.context_helpers import get_services
from tariffscope.api.security import require_api_key, workspace_id
from tariffscope.errors import RecommendationNotFoundError
from tariffscope.jobs.handlers import JobServices
from tariffscope.scenarios.models import (
    OptimizationRecommendation,
    RecommendationPriority,
    RecommendationStatus,
    RecommendationType,
)

router = APIRouter(prefix="/v1/recommendations", tags=["recommendations"])


class RecommendationStatusRequest(BaseModel):
    status: Literal["accepted", "rejected", "implemented"]

    model_config = ConfigDict(extra="forbid")


def _owned(services: JobServices, recommendation_id: str, workspace: str) -> OptimizationRecommendation:
    rec = services.recommendations.get(recommendation_id)
    if rec.workspace_id != workspace:
        raise RecommendationNotFoundError(f"Unknown recommendation: {recommendation_id}")
    return rec


@router.get("")
def list_recommendations(
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
    scenario_id: Optional[str] = Query(default=None),
    product_id: Optional[str] = Query(default=None),
    recommendation_type: Optional[RecommendationType] = Query(default=None, alias="type"),
    status: Optional[RecommendationStatus] = Query(default=None),
    priority: Optional[RecommendationPriority] = Query(default=None),
    include_archived: bool = Query(default=False),
) -> List[Dict[str, Any]]:
    recs = services.recommendations.list(
        workspace_id=workspace,
        scenario_id=scenario_id,
        product_id=product_id,
        recommendation_type=recommendation_type,
        status=status,
        priority=priority,
        include_archived=include_archived,
    )
    return [rec.model_dump(mode="json") for rec in recs]


@router.get("/{recommendation_id}")
def get_recommendation(
    recommendation_id: str,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    return _owned(services, recommendation_id, workspace).model_dump(mode="json")


@router.post("/{recommendation_id}/status")
def update_recommendation_status(
    recommendation_id: str,
    req: RecommendationStatusRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    _owned(services, recommendation_id, workspace)
    rec = services.recommendations.update_status(recommendation_id, req.status)
    return rec.model_dump(mode="json")


@router.post("/{recommendation_id}/archive")
def archive_recommendation(
    recommendation_id: str,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    _owned(services, recommendation_id, workspace)
    return services.recommendations.archive(recommendation_id).model_dump(mode="json")
