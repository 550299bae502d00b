"""Background job submission and control.

  POST /v1/jobs                     → Submit a job, get job_id immediately
  GET  /v1/jobs                     → List jobs (status / type / priority filters)
  GET  /v1/jobs/stats               → Queue and status counts
  GET  /v1/jobs/{job_id}            → Poll one job
  POST /v1/jobs/{job_id}/control    → pause | resume | cancel | rerun

Control requests report whether the transition was accepted; the job's
outcome is read back through GET.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from tariffscope.api.context_helpers import get_scheduler
from tariffscope.api.security import require_api_key, workspace_id
from tariffscope.errors import JobNotFoundError, StateConflictError
from tariffscope.jobs.models import Job, JobPriority, JobStatus
from tariffscope.jobs.scheduler import JobScheduler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/jobs", tags=["jobs"])


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------
class JobSubmitRequest(BaseModel):
    type: Literal["scenario_analysis", "scenario_comparison", "recommendation_generation"]
    priority: JobPriority = JobPriority.MEDIUM
    parameters: Dict[str, Any] = Field(default_factory=dict)
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)

    model_config = ConfigDict(extra="forbid")


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str
    priority: str
    message: str

    model_config = ConfigDict(extra="forbid")


class JobControlRequest(BaseModel):
    action: Literal["pause", "resume", "cancel", "rerun"]

    model_config = ConfigDict(extra="forbid")


class JobControlResponse(BaseModel):
    job_id: str
    action: str
    success: bool
    status: str

    model_config = ConfigDict(extra="forbid")


def _owned(scheduler: JobScheduler, job_id: str, workspace: str) -> Job:
    job = scheduler.get_job(job_id)
    if job.workspace_id != workspace:
        raise JobNotFoundError(f"Unknown job: {job_id}", detail={"job_id": job_id})
    return job


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("", response_model=JobSubmitResponse, status_code=202)
def submit_job(
    req: JobSubmitRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> JobSubmitResponse:
    job = scheduler.submit(
        req.type,
        req.parameters,
        priority=req.priority,
        workspace_id=workspace,
        max_retries=req.max_retries,
    )
    return JobSubmitResponse(
        job_id=job.job_id,
        status=job.status.value,
        priority=job.priority.value,
        message=f"{req.type} job queued",
    )


@router.get("/stats")
def queue_stats(
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    return scheduler.queue_stats(workspace)


@router.get("")
def list_jobs(
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    scheduler: JobScheduler = Depends(get_scheduler),
    status: Optional[JobStatus] = Query(default=None),
    job_type: Optional[str] = Query(default=None, alias="type"),
    priority: Optional[JobPriority] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> List[Dict[str, Any]]:
    """List jobs without results; every entry carries ``error`` with ``retry_count``."""

    jobs = scheduler.list_jobs(
        workspace_id=workspace,
        status=status,
        job_type=job_type,
        priority=priority.value if priority else None,
        limit=limit,
    )
    return [job.to_dict(include_result=False) for job in jobs]


@router.get("/{job_id}")
def get_job(
    job_id: str,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    return _owned(scheduler, job_id, workspace).to_dict()


@router.post("/{job_id}/control", response_model=JobControlResponse)
def control_job(
    job_id: str,
    req: JobControlRequest,
    api_key: str = Depends(require_api_key),
    workspace: str = Depends(workspace_id),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> JobControlResponse:
    _owned(scheduler, job_id, workspace)
    operation = {
        "pause": scheduler.pause,
        "resume": scheduler.resume,
        "cancel": scheduler.cancel,
        "rerun": scheduler.rerun,
    }[req.action]
    try:
        job = operation(job_id)
    except StateConflictError as exc:
        return JSONResponse(
            status_code=409,
            content={"detail": {**exc.to_dict(), "job_id": job_id, "action": req.action, "success": False}},
        )
    return JobControlResponse(job_id=job_id, action=req.action, success=True, status=job.status.value)
