"""Celery workers for distributed job execution."""

from tariffscope.workers.celery_app import celery_app
from tariffscope.workers.tasks import enqueue_job, run_job

__all__ = ["celery_app", "enqueue_job", "run_job"]
