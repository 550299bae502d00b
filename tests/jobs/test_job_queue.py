from __future__ import annotations

import pytest

from tariffscope.errors import StateConflictError
from tariffscope.jobs.models import JobPriority, JobStatus
from tariffscope.jobs.queue import PriorityJobQueue
from tariffscope.jobs.state import assert_transition, can_transition


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    "current, new",
    [
        (JobStatus.PENDING, JobStatus.RUNNING),
        (JobStatus.RUNNING, JobStatus.PAUSED),
        (JobStatus.PAUSED, JobStatus.RUNNING),
        (JobStatus.RUNNING, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.PENDING),
        (JobStatus.FAILED, JobStatus.DEAD_LETTER),
        (JobStatus.DEAD_LETTER, JobStatus.PENDING),
        (JobStatus.CANCELLED, JobStatus.PENDING),
    ],
)
def test_allowed_transitions(current, new):
    assert can_transition(current, new)


@pytest.mark.parametrize(
    "current, new",
    [
        (JobStatus.COMPLETED, JobStatus.PENDING),
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.PAUSED, JobStatus.COMPLETED),
        (JobStatus.FAILED, JobStatus.RUNNING),
        (JobStatus.DEAD_LETTER, JobStatus.RUNNING),
    ],
)
def test_rejected_transitions(current, new):
    assert not can_transition(current, new)
    with pytest.raises(StateConflictError):
        assert_transition("job-1", current, new)


def test_priority_order_then_fifo():
    queue = PriorityJobQueue(starvation_seconds=0)
    queue.push("low", JobPriority.LOW, 0)
    queue.push("medium-a", JobPriority.MEDIUM, 1)
    queue.push("urgent", JobPriority.URGENT, 2)
    queue.push("medium-b", JobPriority.MEDIUM, 3)
    queue.push("high", JobPriority.HIGH, 4)

    order = [queue.pop_ready().job_id for _ in range(len(queue))]

    assert order == ["urgent", "high", "medium-a", "medium-b", "low"]


def test_delayed_entries_become_ready_later():
    clock = FakeClock()
    queue = PriorityJobQueue(starvation_seconds=0, clock=clock)
    queue.push("retry", JobPriority.URGENT, 0, delay=5.0)
    queue.push("fresh", JobPriority.LOW, 1)

    assert queue.next_event_in() == pytest.approx(5.0)
    assert queue.pop_ready().job_id == "fresh"
    assert queue.pop_ready() is None

    clock.now = 5.0
    assert queue.pop_ready().job_id == "retry"


def test_starved_entry_climbs_one_tier_per_period():
    clock = FakeClock()
    queue = PriorityJobQueue(starvation_seconds=10, clock=clock)
    queue.push("old-low", JobPriority.LOW, 0)
    clock.now = 5.0
    queue.push("new-medium", JobPriority.MEDIUM, 1)

    clock.now = 10.0
    promoted = queue.promote_starved()

    assert [(entry.job_id, old) for entry, old in promoted] == [("old-low", JobPriority.LOW)]
    assert queue.peek_ready().job_id == "old-low"
    assert queue.promote_starved() == []

    clock.now = 20.0
    queue.promote_starved()
    assert {e.job_id: e.priority for e in queue.snapshot()} == {
        "old-low": JobPriority.HIGH,
        "new-medium": JobPriority.HIGH,
    }


def test_urgent_is_never_promoted():
    clock = FakeClock()
    queue = PriorityJobQueue(starvation_seconds=1, clock=clock)
    queue.push("u", JobPriority.URGENT, 0)
    clock.now = 100.0

    assert queue.promote_starved() == []


def test_remove_and_membership():
    queue = PriorityJobQueue()
    queue.push("a", JobPriority.MEDIUM, 0)

    assert "a" in queue
    assert queue.remove("a")
    assert not queue.remove("a")
    assert len(queue) == 0
