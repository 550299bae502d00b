"""Job lifecycle transitions.

``running -> pending`` is only used to recover jobs that were running when
the process stopped.  ``failed -> pending`` covers both automatic retries
and operator reruns; ``cancelled`` and ``dead_letter`` only leave through
an explicit rerun.
"""

from __future__ import annotations

from typing import Dict, FrozenSet

from tariffscope.errors import StateConflictError
from tariffscope.jobs.models import JobStatus

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
        JobStatus.PAUSED,
        JobStatus.PENDING,
    }),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING, JobStatus.DEAD_LETTER}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
    JobStatus.DEAD_LETTER: frozenset({JobStatus.PENDING}),
}

RERUNNABLE = frozenset({JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.DEAD_LETTER})


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    return JobStatus(new) in TRANSITIONS[JobStatus(current)]


def assert_transition(job_id: str, current: JobStatus, new: JobStatus) -> None:
    if not can_transition(current, new):
        raise StateConflictError(
            f"Job {job_id} cannot move from {JobStatus(current).value} to {JobStatus(new).value}",
            detail={"job_id": job_id, "status": JobStatus(current).value, "requested": JobStatus(new).value},
        )
