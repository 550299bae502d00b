"""In-memory repository for saved scenarios, groups, templates and comparisons.

Every record is keyed by a UUID and refers to other records by id; deleting
a group or template detaches the scenarios that referenced it rather than
deleting them.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from tariffscope.errors import InvalidInputError, ScenarioNotFoundError, StateConflictError
from tariffscope.scenarios.comparator import compare_multiple_scenarios
from tariffscope.scenarios.models import (
    BatchSavingsAnalysis,
    ComparisonOptions,
    EnhancedScenario,
    ScenarioComparisonRecord,
    ScenarioConfiguration,
    ScenarioGroup,
    ScenarioTemplate,
)

_SCENARIO_TRANSITIONS = {
    "draft": {"active", "archived", "completed"},
    "active": {"archived", "completed"},
    "completed": {"active", "archived"},
    "archived": {"active"},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ScenarioRegistry:
    """Thread-safe store for the scenario-management collections."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._groups: Dict[str, ScenarioGroup] = {}
        self._templates: Dict[str, ScenarioTemplate] = {}
        self._scenarios: Dict[str, EnhancedScenario] = {}
        self._comparisons: Dict[str, ScenarioComparisonRecord] = {}

    # -- groups -------------------------------------------------------------
    def create_group(
        self,
        workspace_id: str,
        name: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ScenarioGroup:
        group = ScenarioGroup(
            id=_new_id(),
            workspace_id=workspace_id,
            name=name,
            description=description,
            metadata=metadata or {},
        )
        with self._lock:
            self._groups[group.id] = group
        return group

    def list_groups(self, workspace_id: str) -> List[ScenarioGroup]:
        with self._lock:
            groups = [g for g in self._groups.values() if g.workspace_id == workspace_id]
        return sorted(groups, key=lambda g: (g.created_at, g.id))

    def delete_group(self, group_id: str) -> None:
        with self._lock:
            if self._groups.pop(group_id, None) is None:
                raise ScenarioNotFoundError(f"Unknown scenario group: {group_id}")
            for scenario in list(self._scenarios.values()):
                if scenario.group_id == group_id:
                    self._scenarios[scenario.id] = scenario.model_copy(
                        update={"group_id": None, "updated_at": _utcnow()}
                    )

    # -- templates ----------------------------------------------------------
    def create_template(
        self,
        workspace_id: str,
        name: str,
        configuration: ScenarioConfiguration,
        *,
        category: str = "optimization",
        description: Optional[str] = None,
        is_public: bool = False,
    ) -> ScenarioTemplate:
        configuration.validate_semantics()
        template = ScenarioTemplate(
            id=_new_id(),
            workspace_id=workspace_id,
            name=name,
            description=description,
            category=category,
            configuration=configuration,
            is_public=is_public,
        )
        with self._lock:
            self._templates[template.id] = template
        return template

    def list_templates(self, workspace_id: str, category: Optional[str] = None) -> List[ScenarioTemplate]:
        """Templates owned by the workspace plus public templates of other workspaces."""

        with self._lock:
            templates = [
                t for t in self._templates.values()
                if (t.workspace_id == workspace_id or t.is_public)
                and (category is None or t.category == category)
            ]
        return sorted(templates, key=lambda t: (t.created_at, t.id))

    def delete_template(self, template_id: str) -> None:
        with self._lock:
            if self._templates.pop(template_id, None) is None:
                raise ScenarioNotFoundError(f"Unknown scenario template: {template_id}")
            for scenario in list(self._scenarios.values()):
                if scenario.template_id == template_id:
                    self._scenarios[scenario.id] = scenario.model_copy(
                        update={"template_id": None, "updated_at": _utcnow()}
                    )

    # -- scenarios ----------------------------------------------------------
    def create_scenario(
        self,
        workspace_id: str,
        name: str,
        *,
        product_ids: Sequence[str] = (),
        configuration: Optional[ScenarioConfiguration] = None,
        scenario_type: str = "optimization",
        description: Optional[str] = None,
        group_id: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> EnhancedScenario:
        """Save a new draft scenario.

        Without an explicit configuration the template's configuration is
        used, and without either the defaults apply.
        """
        with self._lock:
            if group_id is not None and group_id not in self._groups:
                raise InvalidInputError(f"Unknown scenario group: {group_id}", detail={"field": "group_id"})
            template = None
            if template_id is not None:
                template = self._templates.get(template_id)
                if template is None:
                    raise InvalidInputError(
                        f"Unknown scenario template: {template_id}", detail={"field": "template_id"}
                    )
            if configuration is None:
                configuration = template.configuration if template else ScenarioConfiguration()
            configuration.validate_semantics()
            scenario = EnhancedScenario(
                id=_new_id(),
                workspace_id=workspace_id,
                group_id=group_id,
                template_id=template_id,
                name=name,
                description=description,
                scenario_type=scenario_type,
                configuration=configuration,
                product_ids=list(dict.fromkeys(product_ids)),
            )
            self._scenarios[scenario.id] = scenario
        return scenario

    def get_scenario(self, scenario_id: str) -> EnhancedScenario:
        with self._lock:
            scenario = self._scenarios.get(scenario_id)
        if scenario is None:
            raise ScenarioNotFoundError(f"Unknown scenario: {scenario_id}")
        return scenario

    def list_scenarios(
        self,
        workspace_id: str,
        *,
        group_id: Optional[str] = None,
        status: Optional[str] = None,
        scenario_type: Optional[str] = None,
    ) -> List[EnhancedScenario]:
        with self._lock:
            scenarios = [
                s for s in self._scenarios.values()
                if s.workspace_id == workspace_id
                and (group_id is None or s.group_id == group_id)
                and (status is None or s.status == status)
                and (scenario_type is None or s.scenario_type == scenario_type)
            ]
        return sorted(scenarios, key=lambda s: (s.created_at, s.id))

    def _replace(self, scenario_id: str, **changes) -> EnhancedScenario:
        with self._lock:
            scenario = self.get_scenario(scenario_id)
            target = changes.get("status")
            if target is not None and target != scenario.status:
                if target not in _SCENARIO_TRANSITIONS[scenario.status]:
                    raise StateConflictError(
                        f"Cannot move scenario {scenario_id} from {scenario.status} to {target}",
                        detail={"scenario_id": scenario_id, "status": scenario.status},
                    )
            updated = scenario.model_copy(update={**changes, "updated_at": _utcnow()})
            self._scenarios[scenario_id] = updated
        return updated

    def update_scenario(
        self,
        scenario_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        configuration: Optional[ScenarioConfiguration] = None,
        status: Optional[str] = None,
    ) -> EnhancedScenario:
        changes = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if configuration is not None:
            changes["configuration"] = configuration.validate_semantics()
        if status is not None:
            changes["status"] = status
        return self._replace(scenario_id, **changes)

    def archive_scenario(self, scenario_id: str) -> EnhancedScenario:
        return self._replace(scenario_id, status="archived")

    def restore_scenario(self, scenario_id: str) -> EnhancedScenario:
        return self._replace(scenario_id, status="active")

    def duplicate_scenario(self, scenario_id: str, new_name: str) -> EnhancedScenario:
        source = self.get_scenario(scenario_id)
        return self.create_scenario(
            source.workspace_id,
            new_name,
            product_ids=source.product_ids,
            configuration=source.configuration,
            scenario_type=source.scenario_type,
            description=f"Copy of {source.name}",
            group_id=source.group_id if source.group_id in self._groups else None,
            template_id=source.template_id if source.template_id in self._templates else None,
        )

    def attach_job(self, scenario_id: str, job_id: str) -> EnhancedScenario:
        return self._replace(scenario_id, job_id=job_id, status="active")

    def record_results(self, scenario_id: str, results: BatchSavingsAnalysis) -> EnhancedScenario:
        return self._replace(scenario_id, results=results, status="completed", completed_at=_utcnow())

    # -- comparisons --------------------------------------------------------
    def create_comparison(
        self,
        workspace_id: str,
        name: str,
        scenario_ids: Sequence[str],
        *,
        comparison_type: str = "side_by_side",
        description: Optional[str] = None,
    ) -> ScenarioComparisonRecord:
        ids = list(dict.fromkeys(scenario_ids))
        with self._lock:
            missing = [sid for sid in ids if sid not in self._scenarios]
            if missing:
                raise InvalidInputError(
                    f"Unknown scenarios in comparison: {', '.join(missing)}",
                    detail={"field": "scenario_ids"},
                )
            record = ScenarioComparisonRecord(
                id=_new_id(),
                workspace_id=workspace_id,
                name=name,
                description=description,
                scenario_ids=ids,
                comparison_type=comparison_type,
            )
            self._comparisons[record.id] = record
        return record

    def get_comparison(self, comparison_id: str) -> ScenarioComparisonRecord:
        with self._lock:
            record = self._comparisons.get(comparison_id)
        if record is None:
            raise ScenarioNotFoundError(f"Unknown comparison: {comparison_id}")
        return record

    def run_comparison(self, comparison_id: str) -> ScenarioComparisonRecord:
        """Compare the per-product results of every completed scenario in the comparison."""

        record = self.get_comparison(comparison_id)
        results = []
        for scenario_id in record.scenario_ids:
            scenario = self.get_scenario(scenario_id)
            if scenario.results is None:
                raise StateConflictError(
                    f"Scenario {scenario_id} has no results to compare",
                    detail={"scenario_id": scenario_id, "status": scenario.status},
                )
            results.extend(scenario.results.scenarios)
        if not results:
            raise InvalidInputError("Scenarios in the comparison produced no results")
        comparison = compare_multiple_scenarios(ComparisonOptions(scenarios=results, name=record.name))
        with self._lock:
            updated = record.model_copy(update={"results": comparison, "updated_at": _utcnow()})
            self._comparisons[comparison_id] = updated
        return updated
