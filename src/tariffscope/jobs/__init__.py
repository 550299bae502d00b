"""Background jobs: records, queue, store, scheduler and handlers."""

from tariffscope.jobs.models import Job, JobPriority, JobStatus, parse_job_parameters
from tariffscope.jobs.scheduler import JobScheduler, execute_job
from tariffscope.jobs.store import InMemoryJobStore, SqlJobStore

__all__ = [
    "InMemoryJobStore",
    "Job",
    "JobPriority",
    "JobScheduler",
    "JobStatus",
    "SqlJobStore",
    "execute_job",
    "parse_job_parameters",
]
