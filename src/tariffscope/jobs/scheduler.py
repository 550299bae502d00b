"""In-process job scheduler.

``JobScheduler`` owns the pending queue and the set of running jobs; both
are guarded by one condition variable.  A job is admitted by a
compare-and-swap transition in the store, so the same store can be shared
with Celery workers without two executors claiming one job.

Execution itself (:func:`execute_job`) is a plain function so that the
Celery task in :mod:`tariffscope.workers.tasks` runs exactly the same
lifecycle code.  With a ``dispatch`` callable the scheduler runs nothing
itself: admitted jobs are handed to it (the Celery executor) instead of the
local queue.

A claimed job records its executor under ``metadata["owner"]``; its
``updated_at``, refreshed by every progress write, is the heartbeat that
:meth:`JobScheduler.restore` checks before taking a running job back.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from tariffscope.config import Settings, get_settings
from tariffscope.errors import (
    ConcurrencyLimitError,
    InvalidInputError,
    JobCancelled,
    JobPaused,
    StateConflictError,
    TariffScopeError,
)
from tariffscope.jobs.context import CONTROL_CANCEL, CONTROL_KEY, CONTROL_PAUSE, CancellationToken, JobContext
from tariffscope.jobs.handlers import HANDLERS, JobHandler, JobServices, build_services, handler_for
from tariffscope.jobs.models import Job, JobPriority, JobProgressDetail, JobStatus, parse_job_parameters
from tariffscope.jobs.queue import PriorityJobQueue
from tariffscope.jobs.state import RERUNNABLE
from tariffscope.jobs.store import InMemoryJobStore, JobStore
from tariffscope.observability import (
    bind_job_id,
    bind_run_id,
    current_run_id,
    log_event,
    reset_job_id,
    reset_run_id,
)

logger = logging.getLogger(__name__)

RESUME_KEY = "resume_requested"
ERROR_CODE_KEY = "error_code"
OWNER_KEY = "owner"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay(settings: Settings, retry_count: int) -> float:
    """Backoff before the next attempt: ``base * 2**retry_count`` capped."""

    return min(settings.retry_base_seconds * (2 ** retry_count), settings.retry_max_seconds)


@dataclass
class ExecutionOutcome:
    job: Job
    retry_delay: Optional[float] = None


# ---------------------------------------------------------------------------
# Single execution
# ---------------------------------------------------------------------------
def _record_failure(
    store: JobStore,
    job: Job,
    exc: BaseException,
    settings: Settings,
) -> ExecutionOutcome:
    code = getattr(exc, "code", "internal_error")
    retryable = getattr(exc, "retryable", True)
    attempts = job.retry_count + 1
    failed = store.transition(
        job.job_id,
        JobStatus.RUNNING,
        JobStatus.FAILED,
        retry_count=attempts,
        error=str(exc),
        error_code=code,
        metadata={ERROR_CODE_KEY: code, CONTROL_KEY: None},
    )
    log_event(
        "job.failed",
        level=logging.WARNING,
        job_id=job.job_id,
        error=str(exc),
        error_code=code,
        retry_count=attempts,
        max_retries=job.max_retries,
    )
    if not retryable:
        return ExecutionOutcome(failed)

    if attempts < job.max_retries:
        delay = retry_delay(settings, job.retry_count)
        pending = store.transition(
            job.job_id,
            JobStatus.FAILED,
            JobStatus.PENDING,
            progress=0.0,
            progress_detail=JobProgressDetail(),
            checkpoint=None,
        )
        log_event("job.retry_scheduled", job_id=job.job_id, retry_count=attempts, delay_seconds=delay)
        return ExecutionOutcome(pending, retry_delay=delay)

    dead = store.transition(job.job_id, JobStatus.FAILED, JobStatus.DEAD_LETTER, completed_at=_utcnow())
    log_event("job.dead_letter", level=logging.ERROR, job_id=job.job_id, retry_count=attempts)
    return ExecutionOutcome(dead)


def execute_job(
    store: JobStore,
    job: Job,
    services: JobServices,
    token: Optional[CancellationToken] = None,
    *,
    handlers: Optional[Dict[str, JobHandler]] = None,
    settings: Optional[Settings] = None,
) -> ExecutionOutcome:
    """Run a job that has already been claimed (status ``running``).

    The job always leaves ``running``: completed, paused, cancelled, or
    failed and then either back to pending for a retry or dead-lettered.
    """
    settings = settings or services.settings or get_settings()
    run_token = bind_run_id(job.metadata.get("run_id") or str(uuid.uuid4()))
    job_token = bind_job_id(job.job_id)
    ctx = JobContext(job.job_id, store, token, progress=job.progress, checkpoint=job.checkpoint)
    log_event(
        "job.started",
        job_id=job.job_id,
        job_type=job.job_type,
        retry_count=job.retry_count,
        rerun_attempt=job.rerun_attempt,
        resumed_from=job.progress,
    )
    try:
        handler = handler_for(job.job_type, handlers)
        result = handler(job, ctx, services)
    except JobCancelled:
        cancelled = store.transition(
            job.job_id,
            JobStatus.RUNNING,
            JobStatus.CANCELLED,
            completed_at=_utcnow(),
            metadata={CONTROL_KEY: None},
        )
        log_event("job.cancelled", job_id=job.job_id, progress=cancelled.progress)
        return ExecutionOutcome(cancelled)
    except JobPaused:
        paused = store.transition(
            job.job_id, JobStatus.RUNNING, JobStatus.PAUSED, metadata={CONTROL_KEY: None}
        )
        log_event("job.paused", job_id=job.job_id, progress=paused.progress)
        return ExecutionOutcome(paused)
    except TariffScopeError as exc:
        return _record_failure(store, job, exc, settings)
    except Exception as exc:
        logger.exception("Job %s raised an unexpected error", job.job_id)
        return _record_failure(store, job, exc, settings)
    else:
        completed = store.transition(
            job.job_id,
            JobStatus.RUNNING,
            JobStatus.COMPLETED,
            progress=100.0,
            result=result,
            error=None,
            error_code=None,
            completed_at=_utcnow(),
            metadata={CONTROL_KEY: None, ERROR_CODE_KEY: None, RESUME_KEY: None},
        )
        log_event("job.completed", job_id=job.job_id, retry_count=job.retry_count)
        return ExecutionOutcome(completed)
    finally:
        reset_job_id(job_token)
        reset_run_id(run_token)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------
class JobScheduler:
    """Bounded worker pool over a priority queue of pending jobs.

    Without :meth:`start` no threads run and jobs are executed on the
    caller's thread through :meth:`run_next` / :meth:`run_until_idle`;
    the concurrency bound applies either way.

    ``dispatch`` switches execution out of process: every admitted job is
    passed to it and no worker threads are started.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        services: Optional[JobServices] = None,
        *,
        settings: Optional[Settings] = None,
        handlers: Optional[Dict[str, JobHandler]] = None,
        clock: Callable[[], float] = time.monotonic,
        dispatch: Optional[Callable[[Job], Any]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or InMemoryJobStore()
        self.services = services or build_services(self.settings)
        self.handlers = handlers if handlers is not None else HANDLERS
        self.max_concurrent = self.settings.max_concurrent
        self.dispatch = dispatch
        self.owner_id = self.settings.worker_id or f"scheduler-{uuid.uuid4().hex[:12]}"
        self._queue = PriorityJobQueue(self.settings.starvation_seconds, clock)
        self._cond = threading.Condition()
        self._running: Dict[str, CancellationToken] = {}
        self._sequences: Dict[str, int] = {}
        self._counter = itertools.count()
        self._workers: List[threading.Thread] = []
        self._stopping = False

    # -- lifecycle ---------------------------------------------------------
    def start(self) -> int:
        """Restore persisted jobs and, for the local executor, start the worker threads."""

        restored = self.restore()
        if self.dispatch is not None:
            return restored
        with self._cond:
            self._stopping = False
            self._spawn_workers()
        return restored

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        for worker in self._workers:
            worker.join(timeout)
        self._workers = [w for w in self._workers if w.is_alive()]

    def _spawn_workers(self) -> None:
        self._workers = [w for w in self._workers if w.is_alive()]
        while len(self._workers) < self.max_concurrent:
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"tariffscope-worker-{len(self._workers)}",
                daemon=True,
            )
            self._workers.append(worker)
            worker.start()

    def set_max_concurrent(self, value: int) -> None:
        if value < 1:
            raise InvalidInputError("max_concurrent must be at least 1", detail={"field": "max_concurrent"})
        with self._cond:
            self.max_concurrent = value
            if self._workers and not self._stopping:
                self._spawn_workers()
            self._cond.notify_all()

    def _is_orphaned(self, job: Job, stale_before: datetime) -> bool:
        owner = job.metadata.get(OWNER_KEY)
        if owner is None or owner == self.owner_id:
            return True
        return job.updated_at < stale_before

    def restore(self) -> int:
        """Re-queue persisted work after a restart.

        Jobs left ``running`` by this owner, by no owner, or by an executor
        whose heartbeat is older than ``stale_job_seconds`` go back to
        ``pending`` and keep their checkpoint.  Running jobs another live
        executor holds are left alone.
        """
        stale_before = _utcnow() - timedelta(seconds=self.settings.stale_job_seconds)
        to_dispatch: List[Job] = []
        with self._cond:
            for job in self.store.list(status=JobStatus.RUNNING):
                if job.job_id in self._running:
                    continue
                if not self._is_orphaned(job, stale_before):
                    logger.debug("Job %s is held by %s", job.job_id, job.metadata.get(OWNER_KEY))
                    continue
                try:
                    self.store.transition(
                        job.job_id,
                        JobStatus.RUNNING,
                        JobStatus.PENDING,
                        metadata={CONTROL_KEY: None, OWNER_KEY: None},
                    )
                except StateConflictError:
                    logger.debug("Job %s left running before it could be recovered", job.job_id)
                    continue
                log_event(
                    "job.recovered",
                    job_id=job.job_id,
                    progress=job.progress,
                    previous_owner=job.metadata.get(OWNER_KEY),
                )

            waiting = [
                job for job in self.store.list(status=[JobStatus.PENDING, JobStatus.PAUSED])
                if job.status is JobStatus.PENDING or job.metadata.get(RESUME_KEY)
            ]
            waiting.sort(key=lambda j: (j.created_at, j.job_id))
            count = 0
            for job in waiting:
                if job.job_id in self._queue or job.job_id in self._running:
                    continue
                if self.dispatch is None:
                    self._enqueue(job)
                else:
                    to_dispatch.append(job)
                count += 1
            self._cond.notify_all()
        for job in to_dispatch:
            self._send(job)
        if count:
            log_event("scheduler.restored", jobs=count)
        return count

    # -- queue helpers (lock held) -----------------------------------------
    def _sequence_for(self, job_id: str) -> int:
        if job_id not in self._sequences:
            self._sequences[job_id] = next(self._counter)
        return self._sequences[job_id]

    def _enqueue(self, job: Job, delay: float = 0.0) -> None:
        self._queue.push(job.job_id, job.effective_priority, self._sequence_for(job.job_id), delay)

    def _send(self, job: Job) -> None:
        task_id = self.dispatch(job)
        log_event("job.dispatched", job_id=job.job_id, task_id=task_id)

    def _pending_count(self) -> int:
        if self.dispatch is None:
            return len(self._queue)
        return self.store.count_by_status()[JobStatus.PENDING.value]

    def _check_capacity(self) -> None:
        if self._pending_count() >= self.settings.queue_capacity:
            raise ConcurrencyLimitError(
                f"Job queue is full ({self.settings.queue_capacity} pending)",
                detail={"queue_capacity": self.settings.queue_capacity},
            )

    def _promote_starved(self) -> None:
        for entry, old in self._queue.promote_starved():
            self.store.update(entry.job_id, effective_priority=entry.priority)
            log_event(
                "job.promoted",
                job_id=entry.job_id,
                from_priority=old.value,
                to_priority=entry.priority.value,
            )

    def _claim_next(self) -> Optional[Tuple[Job, CancellationToken]]:
        if len(self._running) >= self.max_concurrent:
            return None
        self._promote_starved()
        while True:
            entry = self._queue.pop_ready()
            if entry is None:
                return None
            job = self.store.get(entry.job_id)
            try:
                if job.status is JobStatus.PENDING:
                    claimed = self.store.transition(
                        job.job_id,
                        JobStatus.PENDING,
                        JobStatus.RUNNING,
                        started_at=_utcnow(),
                        metadata={OWNER_KEY: self.owner_id},
                    )
                elif job.status is JobStatus.PAUSED and job.metadata.get(RESUME_KEY):
                    claimed = self.store.transition(
                        job.job_id,
                        JobStatus.PAUSED,
                        JobStatus.RUNNING,
                        metadata={RESUME_KEY: None, OWNER_KEY: self.owner_id},
                    )
                else:
                    logger.debug("Dropping stale queue entry for %s (%s)", job.job_id, job.status.value)
                    continue
            except StateConflictError:
                logger.debug("Job %s was claimed elsewhere", job.job_id)
                continue
            token = CancellationToken()
            self._running[claimed.job_id] = token
            return claimed, token

    def _finish(self, job_id: str, outcome: Optional[ExecutionOutcome]) -> None:
        with self._cond:
            self._running.pop(job_id, None)
            if outcome is not None:
                job = outcome.job
                if outcome.retry_delay is not None:
                    self._enqueue(job, delay=outcome.retry_delay)
                elif job.status is JobStatus.PAUSED:
                    current = self.store.get(job_id)
                    if current.metadata.get(RESUME_KEY):
                        self._enqueue(current)
                        log_event("job.resumed", job_id=job_id, progress=current.progress)
                elif job.status.is_terminal:
                    self._sequences.pop(job_id, None)
            self._cond.notify_all()

    def _execute(self, job: Job, token: CancellationToken) -> ExecutionOutcome:
        outcome = None
        try:
            outcome = execute_job(
                self.store, job, self.services, token, handlers=self.handlers, settings=self.settings
            )
        finally:
            self._finish(job.job_id, outcome)
        return outcome

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                claimed = None
                while not self._stopping:
                    claimed = self._claim_next()
                    if claimed is not None:
                        break
                    wait = self._queue.next_event_in()
                    self._cond.wait(timeout=None if wait is None else max(wait, 0.01))
                if self._stopping:
                    return
            job, token = claimed
            try:
                self._execute(job, token)
            except Exception:
                logger.exception("Worker failed while finishing job %s", job.job_id)

    # -- synchronous execution --------------------------------------------
    def run_next(self) -> Optional[Job]:
        """Claim and execute one ready job on the calling thread."""

        with self._cond:
            claimed = self._claim_next()
        if claimed is None:
            return None
        return self._execute(*claimed).job

    def run_until_idle(self, max_jobs: int = 10_000) -> List[Job]:
        executed = []
        for _ in range(max_jobs):
            job = self.run_next()
            if job is None:
                break
            executed.append(job)
        return executed

    # -- operations --------------------------------------------------------
    def submit(
        self,
        job_type: str,
        parameters: Any,
        *,
        priority: Any = JobPriority.MEDIUM,
        workspace_id: str = "default",
        max_retries: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Validate and queue a job; returns immediately with the pending job."""

        handler_for(job_type, self.handlers)
        params = parse_job_parameters(parameters, job_type)
        try:
            priority = JobPriority(priority)
        except ValueError:
            raise InvalidInputError(
                f"Unknown priority: {priority}",
                detail={"field": "priority", "allowed": [p.value for p in JobPriority]},
            ) from None
        job_metadata = dict(metadata or {})
        run_id = job_metadata.get("run_id") or current_run_id()
        if run_id is not None:
            job_metadata["run_id"] = run_id

        job = Job(
            job_id=str(uuid.uuid4()),
            job_type=job_type,
            parameters=params,
            workspace_id=workspace_id,
            priority=priority,
            max_retries=self.settings.max_retries if max_retries is None else max(0, max_retries),
            metadata=job_metadata,
        )
        with self._cond:
            self._check_capacity()
            self.store.create(job)
            if self.dispatch is None:
                self._enqueue(job)
            self._cond.notify_all()
        if self.dispatch is not None:
            self._send(job)
        log_event(
            "job.submitted",
            job_id=job.job_id,
            job_type=job_type,
            priority=priority.value,
            workspace_id=workspace_id,
        )
        return job

    def pause(self, job_id: str) -> Job:
        """Ask a running job to pause at its next checkpoint."""

        with self._cond:
            job = self.store.get(job_id)
            if job.status is not JobStatus.RUNNING:
                raise StateConflictError(
                    f"Job {job_id} is {job.status.value}; only running jobs can be paused",
                    detail={"job_id": job_id, "status": job.status.value, "requested": "pause"},
                )
            token = self._running.get(job_id)
            if token is not None:
                token.request_pause()
            job = self.store.update(job_id, metadata={CONTROL_KEY: CONTROL_PAUSE, RESUME_KEY: None})
        log_event("job.pause_requested", job_id=job_id, progress=job.progress)
        return job

    def resume(self, job_id: str) -> Job:
        """Re-queue a paused job, or withdraw a pause that has not taken effect yet."""

        send = False
        with self._cond:
            job = self.store.get(job_id)
            if job.status is JobStatus.PAUSED:
                job = self.store.update(job_id, metadata={RESUME_KEY: True})
                if self.dispatch is not None:
                    send = True
                elif job_id not in self._queue:
                    self._enqueue(job)
                self._cond.notify_all()
            elif job.status is JobStatus.RUNNING and job.metadata.get(CONTROL_KEY) == CONTROL_PAUSE:
                token = self._running.get(job_id)
                if token is not None:
                    token.clear_pause()
                job = self.store.update(job_id, metadata={CONTROL_KEY: None, RESUME_KEY: True})
            else:
                raise StateConflictError(
                    f"Job {job_id} is {job.status.value}; only paused jobs can be resumed",
                    detail={"job_id": job_id, "status": job.status.value, "requested": "resume"},
                )
        if send:
            self._send(job)
        log_event("job.resumed", job_id=job_id, progress=job.progress)
        return job

    def cancel(self, job_id: str) -> Job:
        """Cancel a waiting job now, or a running one at its next checkpoint."""

        with self._cond:
            job = self.store.get(job_id)
            if job.status in (JobStatus.PENDING, JobStatus.PAUSED):
                self._queue.remove(job_id)
                self._sequences.pop(job_id, None)
                job = self.store.transition(
                    job_id,
                    job.status,
                    JobStatus.CANCELLED,
                    completed_at=_utcnow(),
                    metadata={RESUME_KEY: None, CONTROL_KEY: None},
                )
                log_event("job.cancelled", job_id=job_id, progress=job.progress)
            elif job.status is JobStatus.RUNNING:
                token = self._running.get(job_id)
                if token is not None:
                    token.request_cancel()
                job = self.store.update(job_id, metadata={CONTROL_KEY: CONTROL_CANCEL})
                log_event("job.cancel_requested", job_id=job_id, progress=job.progress)
            else:
                raise StateConflictError(
                    f"Job {job_id} is {job.status.value} and cannot be cancelled",
                    detail={"job_id": job_id, "status": job.status.value, "requested": "cancel"},
                )
            self._cond.notify_all()
        return job

    def rerun(self, job_id: str) -> Job:
        """Operator re-entry of a failed, cancelled or dead-lettered job."""

        with self._cond:
            job = self.store.get(job_id)
            if job.status not in RERUNNABLE:
                raise StateConflictError(
                    f"Job {job_id} is {job.status.value}; only failed, cancelled or dead-letter jobs can be rerun",
                    detail={"job_id": job_id, "status": job.status.value, "requested": "rerun"},
                )
            self._check_capacity()
            job = self.store.transition(
                job_id,
                job.status,
                JobStatus.PENDING,
                retry_count=0,
                rerun_attempt=job.rerun_attempt + 1,
                effective_priority=job.priority,
                progress=0.0,
                progress_detail=JobProgressDetail(),
                checkpoint=None,
                result=None,
                error=None,
                error_code=None,
                started_at=None,
                completed_at=None,
                metadata={ERROR_CODE_KEY: None, CONTROL_KEY: None, RESUME_KEY: None},
            )
            self._sequences.pop(job_id, None)
            if self.dispatch is None:
                self._enqueue(job)
            self._cond.notify_all()
        if self.dispatch is not None:
            self._send(job)
        log_event("job.rerun", job_id=job_id, rerun_attempt=job.rerun_attempt)
        return job

    # -- queries -----------------------------------------------------------
    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def list_jobs(
        self,
        *,
        workspace_id: Optional[str] = None,
        status: Optional[Any] = None,
        job_type: Optional[str] = None,
        priority: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        return self.store.list(
            workspace_id=workspace_id, status=status, job_type=job_type, priority=priority, limit=limit
        )

    def queue_stats(self, workspace_id: Optional[str] = None) -> Dict[str, Any]:
        counts = self.store.count_by_status(workspace_id)
        with self._cond:
            queued = [entry.job_id for entry in self._queue.snapshot()]
            running_here = len(self._running)
        return {
            **counts,
            "queued": len(queued),
            "executing": running_here,
            "max_concurrent": self.max_concurrent,
            "queue_capacity": self.settings.queue_capacity,
        }

    def queued_job_ids(self) -> List[str]:
        with self._cond:
            return [entry.job_id for entry in self._queue.snapshot()]

    def running_job_ids(self) -> List[str]:
        with self._cond:
            return list(self._running)

    def wait_for(
        self,
        job_id: str,
        statuses: Iterable[Any],
        timeout: float = 10.0,
    ) -> Job:
        """Block until the job reaches one of ``statuses``; used by tests and the CLI."""

        wanted = {JobStatus(s) for s in statuses}
        deadline = time.monotonic() + timeout
        while True:
            job = self.store.get(job_id)
            if job.status in wanted:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"Job {job_id} is still {job.status.value} after {timeout}s")
            with self._cond:
                self._cond.wait(timeout=min(remaining, 0.05))
