"""Cooperative cancellation and progress reporting for a running job.

A running job is only ever interrupted at :meth:`JobContext.checkpoint`,
which the engine reaches once per processed product.  Control requests
(cancel, pause) are flags that the checkpoint turns into
:class:`~tariffscope.errors.JobCancelled` / :class:`~tariffscope.errors.JobPaused`.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from tariffscope.errors import JobCancelled, JobPaused
from tariffscope.jobs.models import JobProgressDetail
from tariffscope.observability import log_event
from tariffscope.scenarios.savings import BatchCheckpoint

CONTROL_KEY = "control"
CONTROL_CANCEL = "cancel"
CONTROL_PAUSE = "pause"


class CancellationToken:
    """In-process control flags for one job execution."""

    def __init__(self) -> None:
        self._cancel = threading.Event()
        self._pause = threading.Event()

    def request_cancel(self) -> None:
        self._cancel.set()

    def request_pause(self) -> None:
        self._pause.set()

    def clear_pause(self) -> None:
        self._pause.clear()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    @property
    def pause_requested(self) -> bool:
        return self._pause.is_set()


class StoreControlToken(CancellationToken):
    """Token that also honours control requests written to the job store.

    Used by out-of-process workers, where the API cannot reach the
    in-memory token of the executing process.
    """

    def __init__(self, store, job_id: str) -> None:
        super().__init__()
        self.store = store
        self.job_id = job_id

    def _control(self) -> Optional[str]:
        return self.store.get(self.job_id).metadata.get(CONTROL_KEY)

    @property
    def cancel_requested(self) -> bool:
        return super().cancel_requested or self._control() == CONTROL_CANCEL

    @property
    def pause_requested(self) -> bool:
        return super().pause_requested or self._control() == CONTROL_PAUSE


class JobContext:
    """Handed to job handlers; implements the engine's progress sink.

    Progress never moves backwards within an execution.  A resumed job
    starts from the progress and checkpoint it was paused at.
    """

    def __init__(
        self,
        job_id: str,
        store,
        token: Optional[CancellationToken] = None,
        *,
        progress: float = 0.0,
        checkpoint: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.job_id = job_id
        self.store = store
        self.token = token or CancellationToken()
        self.progress = progress
        self.restored = checkpoint

    def checkpoint(self) -> None:
        """Raise if a cancel or pause was requested; cancel wins."""

        if self.token.cancel_requested:
            raise JobCancelled(self.job_id)
        if self.token.pause_requested:
            raise JobPaused(self.job_id)

    def restored_batch(self, key: str = "batch") -> Optional[BatchCheckpoint]:
        if not self.restored or key not in self.restored:
            return None
        return BatchCheckpoint.model_validate(self.restored[key])

    def report(
        self,
        *,
        completed: int,
        total: int,
        failed: int = 0,
        current_item: Optional[str] = None,
        state: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Persist progress and checkpoint state, then honour control requests."""

        computed = 100.0 if total <= 0 else round(min(completed, total) / total * 100.0, 4)
        self.progress = max(self.progress, computed)
        detail = JobProgressDetail(total=total, completed=completed, failed=failed, current_item=current_item)
        self.store.update_progress(self.job_id, self.progress, detail, checkpoint=state)
        log_event(
            "job.progress",
            level=logging.DEBUG,
            job_id=self.job_id,
            progress=self.progress,
            completed=completed,
            total=total,
        )
        self.checkpoint()

    # ProgressSink
    def on_product_done(self, product_id: str, checkpoint: BatchCheckpoint, total: int) -> None:
        self.report(
            completed=len(checkpoint.processed_ids),
            total=total,
            failed=len(checkpoint.failures),
            current_item=product_id,
            state={"batch": checkpoint.model_dump(mode="json")},
        )
