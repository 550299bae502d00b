"""Celery task that executes a persisted job.

``run_job`` claims the job twice over: a short Redis lock keeps duplicate
deliveries of the same message apart, and the ``pending -> running``
compare-and-swap on the ``jobs`` table keeps the job single-owner across
every executor sharing the database.  Execution is
:func:`~tariffscope.jobs.scheduler.execute_job`, the same lifecycle code
the in-process scheduler runs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tariffscope.caching.redis_client import RedisClient, get_redis_client
from tariffscope.config import get_settings
from tariffscope.db.session import get_session_factory
from tariffscope.errors import StateConflictError
from tariffscope.jobs.context import StoreControlToken
from tariffscope.jobs.handlers import JobServices, build_services
from tariffscope.jobs.models import Job, JobStatus
from tariffscope.jobs.scheduler import OWNER_KEY, RESUME_KEY, execute_job
from tariffscope.jobs.store import JobStore, SqlJobStore
from tariffscope.scenarios.providers import build_rate_provider
from tariffscope.scenarios.recommendations import SqlRecommendationStore
from tariffscope.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

_services: Optional[JobServices] = None


def get_worker_services() -> JobServices:
    """Services for worker processes: Redis-cached rates, SQL recommendations."""

    global _services
    if _services is None:
        settings = get_settings()
        _services = build_services(
            settings,
            rate_provider=build_rate_provider(settings, cache=get_redis_client()),
            recommendations=SqlRecommendationStore(get_session_factory()),
        )
    return _services


def claim_job(store: JobStore, job_id: str, task_id: Optional[str] = None) -> Optional[Job]:
    """Move a pending (or resume-requested paused) job to running; None if not claimable."""

    job = store.get(job_id)
    try:
        if job.status is JobStatus.PENDING:
            return store.transition(
                job_id,
                JobStatus.PENDING,
                JobStatus.RUNNING,
                started_at=datetime.now(timezone.utc),
                metadata={"celery_task_id": task_id, OWNER_KEY: f"celery:{task_id}"},
            )
        if job.status is JobStatus.PAUSED and job.metadata.get(RESUME_KEY):
            return store.transition(
                job_id,
                JobStatus.PAUSED,
                JobStatus.RUNNING,
                metadata={RESUME_KEY: None, "celery_task_id": task_id, OWNER_KEY: f"celery:{task_id}"},
            )
    except StateConflictError:
        logger.info("Job %s was claimed by another executor", job_id)
        return None
    logger.info("Job %s is %s; nothing to run", job_id, job.status.value)
    return None


def process_job(
    job_id: str,
    *,
    store: JobStore,
    services: JobServices,
    redis_client: RedisClient,
    task_id: Optional[str] = None,
) -> Dict[str, Any]:
    with redis_client.job_claim(job_id) as acquired:
        if not acquired:
            logger.info("Job %s is locked by another worker", job_id)
            return {"job_id": job_id, "status": "skipped"}
        job = claim_job(store, job_id, task_id)
        if job is None:
            return {"job_id": job_id, "status": "skipped"}
        outcome = execute_job(
            store, job, services, StoreControlToken(store, job_id), settings=services.settings
        )

    if outcome.retry_delay is not None:
        enqueue_job(outcome.job, countdown=outcome.retry_delay)
    elif outcome.job.status is JobStatus.PAUSED and store.get(job_id).metadata.get(RESUME_KEY):
        # resumed while the pause was being written
        enqueue_job(outcome.job)
    return {
        "job_id": job_id,
        "status": outcome.job.status.value,
        "retry_count": outcome.job.retry_count,
    }


@celery_app.task(bind=True, name="tariffscope.workers.tasks.run_job")
def run_job(self, job_id: str) -> Dict[str, Any]:
    """Execute one job from the shared job store."""

    return process_job(
        job_id,
        store=SqlJobStore(get_session_factory()),
        services=get_worker_services(),
        redis_client=get_redis_client(),
        task_id=self.request.id,
    )


def enqueue_job(job: Job, countdown: float = 0.0) -> str:
    """Send ``run_job`` for a persisted job; returns the Celery task id."""

    result = run_job.apply_async(
        (job.job_id,),
        countdown=countdown or None,
        priority=min(9, job.effective_priority.rank * 3),
    )
    logger.info("Dispatched job %s as task %s", job.job_id, result.id)
    return result.id
