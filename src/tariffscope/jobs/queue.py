"""Priority queue of pending job ids.

Ordering is ``urgent > high > medium > low`` and FIFO by submission
sequence within a tier.  Entries can carry a delay (retry backoff) and are
invisible until it elapses.  A ready entry that has waited longer than the
starvation threshold is promoted one tier and its waiting clock restarts,
so a job climbs at most one tier per threshold period.

The queue is not synchronized; the scheduler guards it with its own lock.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from tariffscope.jobs.models import JobPriority


@dataclass
class QueueEntry:
    job_id: str
    priority: JobPriority
    sequence: int
    enqueued_at: float
    available_at: float = 0.0

    def sort_key(self) -> Tuple[int, int]:
        return (-self.priority.rank, self.sequence)


class PriorityJobQueue:
    def __init__(
        self,
        starvation_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.starvation_seconds = starvation_seconds
        self.clock = clock
        self._entries: Dict[str, QueueEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._entries

    def push(self, job_id: str, priority: JobPriority, sequence: int, delay: float = 0.0) -> QueueEntry:
        now = self.clock()
        entry = QueueEntry(
            job_id=job_id,
            priority=JobPriority(priority),
            sequence=sequence,
            enqueued_at=now + max(delay, 0.0),
            available_at=now + max(delay, 0.0),
        )
        self._entries[job_id] = entry
        return entry

    def remove(self, job_id: str) -> bool:
        return self._entries.pop(job_id, None) is not None

    def _ready(self, now: float) -> List[QueueEntry]:
        return [entry for entry in self._entries.values() if entry.available_at <= now]

    def peek_ready(self) -> Optional[QueueEntry]:
        ready = self._ready(self.clock())
        if not ready:
            return None
        return min(ready, key=QueueEntry.sort_key)

    def pop_ready(self) -> Optional[QueueEntry]:
        entry = self.peek_ready()
        if entry is not None:
            del self._entries[entry.job_id]
        return entry

    def promote_starved(self) -> List[Tuple[QueueEntry, JobPriority]]:
        """Promote every starved ready entry one tier; returns (entry, old priority)."""

        if self.starvation_seconds <= 0:
            return []
        now = self.clock()
        promoted = []
        for entry in self._ready(now):
            if entry.priority is JobPriority.URGENT:
                continue
            if now - entry.enqueued_at >= self.starvation_seconds:
                old = entry.priority
                entry.priority = old.promoted()
                entry.enqueued_at = now
                promoted.append((entry, old))
        return promoted

    def next_event_in(self) -> Optional[float]:
        """Seconds until a delayed entry becomes ready or a ready one may starve."""

        if not self._entries:
            return None
        now = self.clock()
        waits = []
        for entry in self._entries.values():
            if entry.available_at > now:
                waits.append(entry.available_at - now)
            elif self.starvation_seconds > 0 and entry.priority is not JobPriority.URGENT:
                waits.append(max(0.0, entry.enqueued_at + self.starvation_seconds - now))
        return min(waits) if waits else None

    def snapshot(self) -> List[QueueEntry]:
        """Entries in the order they would be served if all were ready."""

        return sorted(self._entries.values(), key=QueueEntry.sort_key)
