"""Synchronous scenario endpoints and the scenario registry.

Single-product landed cost and scenario evaluation are cheap enough to
answer inline; anything batch-shaped goes through ``/v1/jobs``.  Saved
scenarios are run by submitting a ``scenario_analysis`` job that writes its
results back onto the scenario.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from tariffscope.api.context_helpers import get_scheduler, get_services
from tariffscope.api.security import require_api_key, workspace_id
from tariffscope.errors import ScenarioNotFoundError
from tariffscope.jobs.handlers import JobServices
from tariffscope.jobs.models import JobPriority
from tariffscope.jobs.scheduler import JobScheduler
from tariffscope.scenarios.comparator import compare_multiple_scenarios
from tariffscope.scenarios.models import (
    ComparisonOptions,
    ComparisonType,
    EnhancedScenario,
    ProductProfile,
    ScenarioConfiguration,
    ScenarioStatus,
    ScenarioType,
    TemplateCategory,
)

router = APIRouter(prefix="/v1/scenarios", tags=["scenarios"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------
class LandedCostRequest(BaseModel):
    product: ProductProfile
    shipping_method: Optional[str] = None
    claim_trade_agreement: bool = False

    model_config = ConfigDict(extra="forbid")


class ProductAnalysisRequest(BaseModel):
    product: ProductProfile
    configuration: ScenarioConfiguration = Field(default_factory=ScenarioConfiguration)

    model_config = ConfigDict(extra="forbid")


class GroupCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class TemplateCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: TemplateCategory = "optimization"
    configuration: ScenarioConfiguration = Field(default_factory=ScenarioConfiguration)
    is_public: bool = False

    model_config = ConfigDict(extra="forbid")


class ScenarioCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    scenario_type: ScenarioType = "optimization"
    product_ids: List[str] = Field(default_factory=list)
    configuration: Optional[ScenarioConfiguration] = None
    group_id: Optional[str] = None
    template_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class ScenarioUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    configuration: Optional[ScenarioConfiguration] = None
    status: Optional[ScenarioStatus] = None

    model_config = ConfigDict(extra="forbid")


class ScenarioDuplicateRequest(BaseModel):
    name: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class ScenarioRunRequest(BaseModel):
    priority: JobPriority = JobPriority.MEDIUM
    generate_recommendations: bool = True

    model_config = ConfigDict(extra="forbid")


class ComparisonCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    scenario_ids: List[str] = Field(..., min_length=1)
    comparison_type: ComparisonType = "side_by_side"

    model_config = ConfigDict(extra="forbid")


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def _owned_scenario(services: JobServices, scenario_id: str, workspace: str) -> EnhancedScenario:
    scenario = services.registry.get_scenario(scenario_id)
    if scenario.workspace_id != workspace:
        raise ScenarioNotFoundError(f"Unknown scenario: {scenario_id}")
    return scenario


# ---------------------------------------------------------------------------
# Inline calculations
# ---------------------------------------------------------------------------
@router.post("/landed-cost")
def landed_cost(
    req: LandedCostRequest,
    api_key: str = Depends(require_api_key),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    breakdown = services.engine.landed_cost(
        req.product, req.shipping_method, claim_trade_agreement=req.claim_trade_agreement
    )
    return _dump(breakdown)


@router.post("/analyze-product")
def analyze_product(
    req: ProductAnalysisRequest,
    api_key: str = Depends(require_api_key),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    """Every candidate for one product, plus the one the engine would pick."""

    configuration = req.configuration.validate_semantics()
    candidates = services.engine.evaluate_candidates(req.product, configuration)
    best = services.engine.analyze_product(req.product, configuration)
    return {"best": _dump(best), "candidates": [_dump(c) for c in candidates]}


@router.post("/compare")
def compare(
    req: ComparisonOptions,
    api_key: str = Depends(require_api_key),
) -> Dict[str, Any]:
    return _dump(compare_multiple_scenarios(req))


# ---------------------------------------------------------------------------
# Groups and templates
# ---------------------------------------------------------------------------
@router.post("/groups", status_code=201)
def create_group(
    req: GroupCreateRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    return _dump(services.registry.create_group(workspace, req.name, req.description, req.metadata))


@router.get("/groups")
def list_groups(
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [_dump(g) for g in services.registry.list_groups(workspace)]


@router.delete("/groups/{group_id}", status_code=204)
def delete_group(
    group_id: str,
    api_key: str = Depends(require_api_key),
    services: JobServices = Depends(get_services),
) -> None:
    services.registry.delete_group(group_id)


@router.post("/templates", status_code=201)
def create_template(
    req: TemplateCreateRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    template = services.registry.create_template(
        workspace,
        req.name,
        req.configuration,
        category=req.category,
        description=req.description,
        is_public=req.is_public,
    )
    return _dump(template)


@router.get("/templates")
def list_templates(
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
    category: Optional[TemplateCategory] = Query(default=None),
) -> List[Dict[str, Any]]:
    return [_dump(t) for t in services.registry.list_templates(workspace, category)]


@router.delete("/templates/{template_id}", status_code=204)
def delete_template(
    template_id: str,
    api_key: str = Depends(require_api_key),
    services: JobServices = Depends(get_services),
) -> None:
    services.registry.delete_template(template_id)


# ---------------------------------------------------------------------------
# Comparisons
# ---------------------------------------------------------------------------
@router.post("/comparisons", status_code=201)
def create_comparison(
    req: ComparisonCreateRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    for scenario_id in req.scenario_ids:
        _owned_scenario(services, scenario_id, workspace)
    record = services.registry.create_comparison(
        workspace,
        req.name,
        req.scenario_ids,
        comparison_type=req.comparison_type,
        description=req.description,
    )
    return _dump(record)


@router.get("/comparisons/{comparison_id}")
def get_comparison(
    comparison_id: str,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    record = services.registry.get_comparison(comparison_id)
    if record.workspace_id != workspace:
        raise ScenarioNotFoundError(f"Unknown comparison: {comparison_id}")
    return _dump(record)


@router.post("/comparisons/{comparison_id}/run")
def run_comparison(
    comparison_id: str,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    record = services.registry.get_comparison(comparison_id)
    if record.workspace_id != workspace:
        raise ScenarioNotFoundError(f"Unknown comparison: {comparison_id}")
    return _dump(services.registry.run_comparison(comparison_id))


# ---------------------------------------------------------------------------
# Saved scenarios
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def create_scenario(
    req: ScenarioCreateRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    scenario = services.registry.create_scenario(
        workspace,
        req.name,
        product_ids=req.product_ids,
        configuration=req.configuration,
        scenario_type=req.scenario_type,
        description=req.description,
        group_id=req.group_id,
        template_id=req.template_id,
    )
    return _dump(scenario)


@router.get("")
def list_scenarios(
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
    group_id: Optional[str] = Query(default=None),
    status: Optional[ScenarioStatus] = Query(default=None),
    scenario_type: Optional[ScenarioType] = Query(default=None, alias="type"),
) -> List[Dict[str, Any]]:
    scenarios = services.registry.list_scenarios(
        workspace, group_id=group_id, status=status, scenario_type=scenario_type
    )
    return [_dump(s) for s in scenarios]


@router.get("/{scenario_id}")
def get_scenario(
    scenario_id: str,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    return _dump(_owned_scenario(services, scenario_id, workspace))


@router.patch("/{scenario_id}")
def update_scenario(
    scenario_id: str,
    req: ScenarioUpdateRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    _owned_scenario(services, scenario_id, workspace)
    scenario = services.registry.update_scenario(
        scenario_id,
        name=req.name,
        description=req.description,
        configuration=req.configuration,
        status=req.status,
    )
    return _dump(scenario)


@router.post("/{scenario_id}/archive")
def archive_scenario(
    scenario_id: str,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    _owned_scenario(services, scenario_id, workspace)
    return _dump(services.registry.archive_scenario(scenario_id))


@router.post("/{scenario_id}/restore")
def restore_scenario(
    scenario_id: str,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    _owned_scenario(services, scenario_id, workspace)
    return _dump(services.registry.restore_scenario(scenario_id))


@router.post("/{scenario_id}/duplicate", status_code=201)
def duplicate_scenario(
    scenario_id: str,
    req: ScenarioDuplicateRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    services: JobServices = Depends(get_services),
) -> Dict[str, Any]:
    _owned_scenario(services, scenario_id, workspace)
    return _dump(services.registry.duplicate_scenario(scenario_id, req.name))


@router.post("/{scenario_id}/run", status_code=202)
def run_scenario(
    scenario_id: str,
    req: ScenarioRunRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """Queue a ``scenario_analysis`` job over the scenario's products."""

    scenario = _owned_scenario(scheduler.services, scenario_id, workspace)
    job = scheduler.submit(
        "scenario_analysis",
        {
            "product_ids": scenario.product_ids,
            "configuration": scenario.configuration.model_dump(mode="json"),
            "scenario_id": scenario.id,
            "label": scenario.name,
            "generate_recommendations": req.generate_recommendations,
        },
        priority=req.priority,
        workspace_id=workspace,
    )
    scenario = scheduler.services.registry.attach_job(scenario.id, job.job_id)
    return {"job_id": job.job_id, "status": job.status.value, "scenario": _dump(scenario)}
