"""Background job records and their typed parameters.

``Job`` is a plain dataclass owned by a :class:`~tariffscope.jobs.store.JobStore`;
stores hand out copies, so a job object held by a caller is a snapshot.
Parameters are a tagged union on ``type`` and are validated at submission,
never inside a running job.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from tariffscope.errors import InvalidInputError
from tariffscope.scenarios.models import ProductProfile, ScenarioConfiguration


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DEAD_LETTER = "dead_letter"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.DEAD_LETTER})


class JobPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    def promoted(self) -> "JobPriority":
        """The next tier up; urgent stays urgent."""

        order = list(_PRIORITY_RANK)
        return order[min(self.rank + 1, len(order) - 1)]


_PRIORITY_RANK = {
    JobPriority.LOW: 0,
    JobPriority.MEDIUM: 1,
    JobPriority.HIGH: 2,
    JobPriority.URGENT: 3,
}


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------
class _ProductSelection(BaseModel):
    """Products given by catalog id, inline, or both."""

    product_ids: List[str] = Field(default_factory=list)
    products: List[ProductProfile] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _require_products(self):
        if not self.product_ids and not self.products:
            raise ValueError("at least one of product_ids or products is required")
        return self

    def product_items(self) -> List[Union[str, ProductProfile]]:
        return [*self.products, *self.product_ids]


class ScenarioAnalysisParameters(_ProductSelection):
    type: Literal["scenario_analysis"] = "scenario_analysis"
    configuration: ScenarioConfiguration = Field(default_factory=ScenarioConfiguration)
    scenario_id: Optional[str] = None
    label: Optional[str] = None
    generate_recommendations: bool = False


class NamedConfiguration(BaseModel):
    label: str = Field(..., min_length=1)
    configuration: ScenarioConfiguration = Field(default_factory=ScenarioConfiguration)

    model_config = ConfigDict(extra="forbid", frozen=True)


class ScenarioComparisonParameters(_ProductSelection):
    type: Literal["scenario_comparison"] = "scenario_comparison"
    configurations: List[NamedConfiguration] = Field(..., min_length=1)
    name: Optional[str] = None

    @model_validator(mode="after")
    def _unique_labels(self):
        labels = [c.label for c in self.configurations]
        if len(set(labels)) != len(labels):
            raise ValueError("configuration labels must be unique")
        return self


class RecommendationGenerationParameters(BaseModel):
    """Generate recommendations from a saved scenario's results or a fresh analysis."""

    type: Literal["recommendation_generation"] = "recommendation_generation"
    scenario_id: Optional[str] = None
    product_ids: List[str] = Field(default_factory=list)
    products: List[ProductProfile] = Field(default_factory=list)
    configuration: ScenarioConfiguration = Field(default_factory=ScenarioConfiguration)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _require_source(self):
        if self.scenario_id is None and not self.product_ids and not self.products:
            raise ValueError("either scenario_id or products are required")
        return self

    def product_items(self) -> List[Union[str, ProductProfile]]:
        return [*self.products, *self.product_ids]


JobParameters = Annotated[
    Union[
        ScenarioAnalysisParameters,
        ScenarioComparisonParameters,
        RecommendationGenerationParameters,
    ],
    Field(discriminator="type"),
]

JOB_TYPES = ("scenario_analysis", "scenario_comparison", "recommendation_generation")

_PARAMETERS_ADAPTER: TypeAdapter = TypeAdapter(JobParameters)


def parse_job_parameters(data: Any, job_type: Optional[str] = None):
    """Validate raw parameters into their typed variant.

    ``job_type`` fills in a missing ``type`` tag and must agree with a
    present one.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not isinstance(data, dict):
        raise InvalidInputError("Job parameters must be an object", detail={"field": "parameters"})
    payload = dict(data)
    if job_type is not None:
        tag = payload.setdefault("type", job_type)
        if tag != job_type:
            raise InvalidInputError(
                f"Parameters of type {tag!r} do not match job type {job_type!r}",
                detail={"field": "parameters.type"},
            )
    try:
        parameters = _PARAMETERS_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise InvalidInputError(
            "Invalid job parameters",
            detail={
                "field": "parameters",
                "errors": exc.errors(include_url=False, include_context=False, include_input=False),
            },
        ) from exc
    configurations = getattr(parameters, "configurations", None) or []
    for named in configurations:
        named.configuration.validate_semantics()
    if hasattr(parameters, "configuration"):
        parameters.configuration.validate_semantics()
    return parameters


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobProgressDetail:
    total: int = 0
    completed: int = 0
    failed: int = 0
    current_item: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "current_item": self.current_item,
        }


@dataclass
class Job:
    job_id: str
    job_type: str
    parameters: Any
    workspace_id: str = "default"
    status: JobStatus = JobStatus.PENDING
    priority: JobPriority = JobPriority.MEDIUM
    effective_priority: Optional[JobPriority] = None
    progress: float = 0.0
    progress_detail: JobProgressDetail = field(default_factory=JobProgressDetail)
    retry_count: int = 0
    max_retries: int = 3
    rerun_attempt: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utcnow)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    checkpoint: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.status = JobStatus(self.status)
        self.priority = JobPriority(self.priority)
        self.effective_priority = JobPriority(self.effective_priority or self.priority)

    def snapshot(self) -> "Job":
        return copy.deepcopy(self)

    def to_dict(self, include_result: bool = True) -> Dict[str, Any]:
        """JSON-ready view used by the API and the CLI."""

        data = {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "workspace_id": self.workspace_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "effective_priority": self.effective_priority.value,
            "progress": self.progress,
            "progress_detail": self.progress_detail.as_dict(),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "rerun_attempt": self.rerun_attempt,
            "error": self.error,
            "error_code": self.error_code,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat(),
            "parameters": self.parameters.model_dump(mode="json"),
            "metadata": dict(self.metadata),
        }
        if include_result:
            data["result"] = self.result
        return data
