"""Job persistence with compare-and-swap state transitions.

Every status change names the status it expects to replace.  When the
stored status differs, the transition fails with
:class:`~tariffscope.errors.StateConflictError` and nothing is written,
which is what keeps two workers from claiming the same pending job.
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from sqlalchemy import case, func
from sqlalchemy.orm import sessionmaker

from tariffscope.db.models import JobRow
from tariffscope.db.session import session_scope
from tariffscope.errors import JobNotFoundError, StateConflictError
from tariffscope.jobs.models import Job, JobPriority, JobProgressDetail, JobStatus, parse_job_parameters
from tariffscope.jobs.state import assert_transition

StatusSpec = Union[JobStatus, str, Iterable[Union[JobStatus, str]]]

_JOB_FIELDS = {f.name for f in dataclasses.fields(Job)}
_IMMUTABLE_FIELDS = {"job_id", "job_type", "parameters", "workspace_id", "created_at", "status"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _expected(spec: StatusSpec) -> frozenset:
    if isinstance(spec, (JobStatus, str)):
        return frozenset({JobStatus(spec)})
    return frozenset(JobStatus(s) for s in spec)


def apply_changes(job: Job, changes: Dict[str, Any]) -> None:
    """Apply field changes to ``job`` in place.

    ``metadata`` is merged key by key; a ``None`` value removes the key.
    """
    for key, value in changes.items():
        if key not in _JOB_FIELDS or key in _IMMUTABLE_FIELDS:
            raise ValueError(f"Job field {key!r} cannot be updated")
        if key == "metadata":
            merged = dict(job.metadata)
            for meta_key, meta_value in value.items():
                if meta_value is None:
                    merged.pop(meta_key, None)
                else:
                    merged[meta_key] = meta_value
            job.metadata = merged
        elif key in ("priority", "effective_priority"):
            setattr(job, key, JobPriority(value))
        else:
            setattr(job, key, value)
    job.updated_at = _utcnow()


def _check_expected(job: Job, expected: frozenset, new: JobStatus) -> None:
    if job.status not in expected:
        raise StateConflictError(
            f"Job {job.job_id} is {job.status.value}, expected {', '.join(sorted(s.value for s in expected))}",
            detail={"job_id": job.job_id, "status": job.status.value, "requested": new.value},
        )
    assert_transition(job.job_id, job.status, new)


class JobStore(Protocol):
    def create(self, job: Job) -> str: ...

    def get(self, job_id: str) -> Job: ...

    def list(
        self,
        *,
        workspace_id: Optional[str] = None,
        status: Optional[StatusSpec] = None,
        job_type: Optional[str] = None,
        priority: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]: ...

    def count_by_status(self, workspace_id: Optional[str] = None) -> Dict[str, int]: ...

    def transition(self, job_id: str, expected: StatusSpec, new: JobStatus, **changes: Any) -> Job: ...

    def update_progress(
        self,
        job_id: str,
        progress: float,
        detail: JobProgressDetail,
        checkpoint: Optional[Dict[str, Any]] = None,
    ) -> Job: ...

    def update(self, job_id: str, **changes: Any) -> Job: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------
class InMemoryJobStore:
    """Thread-safe in-process job store; returns snapshots, never live records."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}

    def create(self, job: Job) -> str:
        with self._lock:
            if job.job_id in self._jobs:
                raise StateConflictError(f"Job {job.job_id} already exists", detail={"job_id": job.job_id})
            self._jobs[job.job_id] = job.snapshot()
        return job.job_id

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Unknown job: {job_id}", detail={"job_id": job_id})
        return job

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._require(job_id).snapshot()

    def list(
        self,
        *,
        workspace_id: Optional[str] = None,
        status: Optional[StatusSpec] = None,
        job_type: Optional[str] = None,
        priority: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        statuses = _expected(status) if status is not None else None
        with self._lock:
            jobs = [
                job.snapshot() for job in self._jobs.values()
                if (workspace_id is None or job.workspace_id == workspace_id)
                and (statuses is None or job.status in statuses)
                and (job_type is None or job.job_type == job_type)
                and (priority is None or job.priority == JobPriority(priority))
            ]
        jobs.sort(key=lambda j: (j.created_at, j.job_id), reverse=True)
        return jobs[:limit] if limit is not None else jobs

    def count_by_status(self, workspace_id: Optional[str] = None) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                if workspace_id is None or job.workspace_id == workspace_id:
                    counts[job.status.value] += 1
        return counts

    def transition(self, job_id: str, expected: StatusSpec, new: JobStatus, **changes: Any) -> Job:
        new = JobStatus(new)
        with self._lock:
            job = self._require(job_id)
            _check_expected(job, _expected(expected), new)
            updated = job.snapshot()
            apply_changes(updated, changes)
            updated.status = new
            self._jobs[job_id] = updated
            return updated.snapshot()

    def update_progress(
        self,
        job_id: str,
        progress: float,
        detail: JobProgressDetail,
        checkpoint: Optional[Dict[str, Any]] = None,
    ) -> Job:
        with self._lock:
            job = self._require(job_id)
            if job.status is not JobStatus.RUNNING:
                raise StateConflictError(
                    f"Job {job_id} is {job.status.value}; progress is only written while running",
                    detail={"job_id": job_id, "status": job.status.value},
                )
            job.progress = max(job.progress, progress)
            job.progress_detail = dataclasses.replace(detail)
            if checkpoint is not None:
                job.checkpoint = checkpoint
            job.updated_at = _utcnow()
            return job.snapshot()

    def update(self, job_id: str, **changes: Any) -> Job:
        with self._lock:
            job = self._require(job_id)
            apply_changes(job, changes)
            return job.snapshot()


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------
_COLUMN_FOR = {"metadata": "metadata_json"}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_values(job: Job, fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Column values for ``job``; limited to ``fields`` (plus ``updated_at``) when given."""

    values = {
        "workspace_id": job.workspace_id,
        "job_type": job.job_type,
        "status": job.status.value,
        "priority": job.priority.value,
        "effective_priority": job.effective_priority.value,
        "progress": job.progress,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "rerun_attempt": job.rerun_attempt,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "updated_at": job.updated_at,
        "parameters": job.parameters.model_dump(mode="json"),
        "metadata_json": dict(job.metadata),
        "progress_detail": job.progress_detail.as_dict(),
        "checkpoint": job.checkpoint,
        "result": job.result,
        "error": job.error,
        "error_code": job.error_code,
    }
    if fields is None:
        return values
    columns = {_COLUMN_FOR.get(name, name) for name in fields} | {"updated_at"}
    return {key: value for key, value in values.items() if key in columns}


def _from_row(row: JobRow) -> Job:
    detail = row.progress_detail or {}
    return Job(
        job_id=row.job_id,
        job_type=row.job_type,
        parameters=parse_job_parameters(row.parameters, row.job_type),
        workspace_id=row.workspace_id,
        status=JobStatus(row.status),
        priority=JobPriority(row.priority),
        effective_priority=JobPriority(row.effective_priority),
        progress=row.progress,
        progress_detail=JobProgressDetail(**detail),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        rerun_attempt=row.rerun_attempt,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        updated_at=_aware(row.updated_at) or _aware(row.created_at),
        result=row.result,
        error=row.error,
        error_code=row.error_code,
        checkpoint=row.checkpoint,
        metadata=dict(row.metadata_json or {}),
    )


class SqlJobStore:
    """Job store on the ``jobs`` table.

    Writes are conditional UPDATEs on the status that was read, so
    concurrent writers from several processes cannot both win.  Each write
    sets only the columns it changes; a progress write from a worker never
    rewrites the control flags an API process has just stored.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.session_factory = session_factory

    def create(self, job: Job) -> str:
        with session_scope(self.session_factory) as session:
            if session.get(JobRow, job.job_id) is not None:
                raise StateConflictError(f"Job {job.job_id} already exists", detail={"job_id": job.job_id})
            session.add(JobRow(job_id=job.job_id, **_row_values(job)))
        return job.job_id

    def _load(self, session, job_id: str) -> Job:
        row = session.get(JobRow, job_id)
        if row is None:
            raise JobNotFoundError(f"Unknown job: {job_id}", detail={"job_id": job_id})
        return _from_row(row)

    def _write(self, session, job: Job, previous_status: JobStatus, fields: Iterable[str]) -> None:
        count = (
            session.query(JobRow)
            .filter(JobRow.job_id == job.job_id, JobRow.status == previous_status.value)
            .update(_row_values(job, fields), synchronize_session=False)
        )
        if count != 1:
            raise StateConflictError(
                f"Job {job.job_id} changed concurrently",
                detail={"job_id": job.job_id, "status": previous_status.value},
            )

    def get(self, job_id: str) -> Job:
        with session_scope(self.session_factory) as session:
            return self._load(session, job_id)

    def list(
        self,
        *,
        workspace_id: Optional[str] = None,
        status: Optional[StatusSpec] = None,
        job_type: Optional[str] = None,
        priority: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        with session_scope(self.session_factory) as session:
            query = session.query(JobRow)
            if workspace_id is not None:
                query = query.filter(JobRow.workspace_id == workspace_id)
            if status is not None:
                query = query.filter(JobRow.status.in_([s.value for s in _expected(status)]))
            if job_type is not None:
                query = query.filter(JobRow.job_type == job_type)
            if priority is not None:
                query = query.filter(JobRow.priority == JobPriority(priority).value)
            query = query.order_by(JobRow.created_at.desc(), JobRow.job_id.desc())
            if limit is not None:
                query = query.limit(limit)
            return [_from_row(row) for row in query.all()]

    def count_by_status(self, workspace_id: Optional[str] = None) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with session_scope(self.session_factory) as session:
            query = session.query(JobRow.status, func.count(JobRow.job_id))
            if workspace_id is not None:
                query = query.filter(JobRow.workspace_id == workspace_id)
            for status, count in query.group_by(JobRow.status).all():
                counts[status] = count
        return counts

    def transition(self, job_id: str, expected: StatusSpec, new: JobStatus, **changes: Any) -> Job:
        new = JobStatus(new)
        with session_scope(self.session_factory) as session:
            job = self._load(session, job_id)
            previous = job.status
            _check_expected(job, _expected(expected), new)
            apply_changes(job, changes)
            job.status = new
            self._write(session, job, previous, set(changes) | {"status"})
            return job

    def update_progress(
        self,
        job_id: str,
        progress: float,
        detail: JobProgressDetail,
        checkpoint: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Single UPDATE of the progress columns; control flags in metadata are left alone."""

        values: Dict[str, Any] = {
            "progress": case((JobRow.progress > progress, JobRow.progress), else_=progress),
            "progress_detail": detail.as_dict(),
            "updated_at": _utcnow(),
        }
        if checkpoint is not None:
            values["checkpoint"] = checkpoint
        with session_scope(self.session_factory) as session:
            count = (
                session.query(JobRow)
                .filter(JobRow.job_id == job_id, JobRow.status == JobStatus.RUNNING.value)
                .update(values, synchronize_session=False)
            )
            job = self._load(session, job_id)
            if count != 1:
                raise StateConflictError(
                    f"Job {job_id} is {job.status.value}; progress is only written while running",
                    detail={"job_id": job_id, "status": job.status.value},
                )
            return job

    def update(self, job_id: str, **changes: Any) -> Job:
        with session_scope(self.session_factory) as session:
            job = self._load(session, job_id)
            apply_changes(job, changes)
            self._write(session, job, job.status, changes)
            return job
