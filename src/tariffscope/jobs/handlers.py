"""Job-type handlers.

A handler receives the claimed job, its :class:`JobContext` and the shared
services, and returns the JSON-ready result payload.  Handlers run the
same way in the in-process scheduler and in Celery workers; a retry is a
plain re-invocation with the original parameters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from tariffscope.config import Settings, get_settings
from tariffscope.errors import InvalidInputError, ProviderUnavailableError
from tariffscope.jobs.context import JobContext
from tariffscope.jobs.models import Job
from tariffscope.scenarios.catalog import InMemoryProductCatalog, ProductCatalog
from tariffscope.scenarios.comparator import compare_multiple_scenarios
from tariffscope.scenarios.models import BatchSavingsAnalysis, ComparisonOptions
from tariffscope.scenarios.providers import RateProvider, build_rate_provider
from tariffscope.scenarios.recommendations import (
    InMemoryRecommendationStore,
    RecommendationStore,
    generate_optimization_recommendations,
)
from tariffscope.scenarios.registry import ScenarioRegistry
from tariffscope.scenarios.savings import BatchCheckpoint, SavingsAnalysisEngine

logger = logging.getLogger(__name__)


@dataclass
class JobServices:
    engine: SavingsAnalysisEngine
    recommendations: RecommendationStore = field(default_factory=InMemoryRecommendationStore)
    registry: ScenarioRegistry = field(default_factory=ScenarioRegistry)
    settings: Settings = field(default_factory=get_settings)


def build_services(
    settings: Optional[Settings] = None,
    *,
    rate_provider: Optional[RateProvider] = None,
    catalog: Optional[ProductCatalog] = None,
    recommendations: Optional[RecommendationStore] = None,
    registry: Optional[ScenarioRegistry] = None,
) -> JobServices:
    settings = settings or get_settings()
    if catalog is None and settings.catalog_path:
        catalog = InMemoryProductCatalog.from_json_file(settings.catalog_path)
    engine = SavingsAnalysisEngine(
        rate_provider or build_rate_provider(settings),
        catalog or InMemoryProductCatalog(),
        settings=settings,
    )
    return JobServices(
        engine=engine,
        recommendations=recommendations or InMemoryRecommendationStore(),
        registry=registry or ScenarioRegistry(),
        settings=settings,
    )


def _raise_if_provider_down(analysis: BatchSavingsAnalysis) -> None:
    """Escalate to a job-level retry when the provider failed every product."""

    failures = analysis.failures
    if analysis.analyzed_products == 0 and failures and all(f.retryable for f in failures):
        raise ProviderUnavailableError(
            f"Rate provider unavailable for all {len(failures)} products",
            detail={"failed_products": len(failures)},
        )


def run_scenario_analysis(job: Job, ctx: JobContext, services: JobServices) -> Dict[str, Any]:
    params = job.parameters
    ctx.checkpoint()
    analysis = services.engine.analyze_batch(
        params.product_items(),
        params.configuration,
        progress=ctx,
        checkpoint=ctx.restored_batch(),
        label=params.label,
    )
    _raise_if_provider_down(analysis)

    result: Dict[str, Any] = {"analysis": analysis.model_dump(mode="json")}
    if params.generate_recommendations:
        recommendations = generate_optimization_recommendations(
            params.scenario_id, analysis, workspace_id=job.workspace_id, settings=services.settings
        )
        services.recommendations.save(recommendations)
        result["recommendation_ids"] = [rec.id for rec in recommendations]
    if params.scenario_id is not None:
        services.registry.record_results(params.scenario_id, analysis)
    return result


class _ComparisonProgress:
    """Maps per-configuration batch progress onto the whole comparison."""

    def __init__(
        self,
        ctx: JobContext,
        done: Dict[str, BatchSavingsAnalysis],
        label: str,
        index: int,
        configurations: int,
    ) -> None:
        self.ctx = ctx
        self.done = done
        self.label = label
        self.index = index
        self.configurations = configurations

    def on_product_done(self, product_id: str, checkpoint: BatchCheckpoint, total: int) -> None:
        self.ctx.report(
            completed=self.index * total + len(checkpoint.processed_ids),
            total=self.configurations * total,
            failed=sum(len(a.failures) for a in self.done.values()) + len(checkpoint.failures),
            current_item=f"{self.label}:{product_id}",
            state={
                "completed": {label: a.model_dump(mode="json") for label, a in self.done.items()},
                "current_label": self.label,
                "batch": checkpoint.model_dump(mode="json"),
            },
        )


def run_scenario_comparison(job: Job, ctx: JobContext, services: JobServices) -> Dict[str, Any]:
    """Analyze the same products under each labelled configuration, then rank everything."""

    params = job.parameters
    ctx.checkpoint()
    restored = ctx.restored or {}
    done: Dict[str, BatchSavingsAnalysis] = {
        label: BatchSavingsAnalysis.model_validate(data)
        for label, data in (restored.get("completed") or {}).items()
    }
    items = params.product_items()
    total_configs = len(params.configurations)

    for index, named in enumerate(params.configurations):
        if named.label in done:
            continue
        resume = ctx.restored_batch() if restored.get("current_label") == named.label else None
        done[named.label] = services.engine.analyze_batch(
            items,
            named.configuration,
            progress=_ComparisonProgress(ctx, done, named.label, index, total_configs),
            checkpoint=resume,
            label=named.label,
        )

    scenarios = [s for named in params.configurations for s in done[named.label].scenarios]
    if not scenarios:
        for analysis in done.values():
            _raise_if_provider_down(analysis)
        raise InvalidInputError("No product could be analyzed under any configuration")

    comparison = compare_multiple_scenarios(ComparisonOptions(scenarios=scenarios, name=params.name))
    return {
        "analyses": {label: done[label].model_dump(mode="json") for label in (c.label for c in params.configurations)},
        "comparison": comparison.model_dump(mode="json"),
    }


def run_recommendation_generation(job: Job, ctx: JobContext, services: JobServices) -> Dict[str, Any]:
    params = job.parameters
    ctx.checkpoint()
    analysis: Optional[BatchSavingsAnalysis] = None
    if params.scenario_id is not None:
        scenario = services.registry.get_scenario(params.scenario_id)
        analysis = scenario.results
    if analysis is None:
        if not params.product_items():
            raise InvalidInputError(
                f"Scenario {params.scenario_id} has no results and no products were given",
                detail={"scenario_id": params.scenario_id},
            )
        analysis = services.engine.analyze_batch(
            params.product_items(),
            params.configuration,
            progress=ctx,
            checkpoint=ctx.restored_batch(),
        )
        _raise_if_provider_down(analysis)
    else:
        ctx.report(completed=1, total=1, current_item=params.scenario_id)

    recommendations = generate_optimization_recommendations(
        params.scenario_id, analysis, workspace_id=job.workspace_id, settings=services.settings
    )
    services.recommendations.save(recommendations)
    return {"recommendations": [rec.model_dump(mode="json") for rec in recommendations]}


JobHandler = Callable[[Job, JobContext, JobServices], Dict[str, Any]]

HANDLERS: Dict[str, JobHandler] = {
    "scenario_analysis": run_scenario_analysis,
    "scenario_comparison": run_scenario_comparison,
    "recommendation_generation": run_recommendation_generation,
}


def handler_for(job_type: str, handlers: Optional[Dict[str, JobHandler]] = None) -> JobHandler:
    table = handlers if handlers is not None else HANDLERS
    try:
        return table[job_type]
    except KeyError:
        raise InvalidInputError(
            f"Unknown job type: {job_type}", detail={"field": "type", "known": sorted(table)}
        ) from None


def known_job_types(handlers: Optional[Dict[str, JobHandler]] = None) -> List[str]:
    return sorted(handlers if handlers is not None else HANDLERS)
