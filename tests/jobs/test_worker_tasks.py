from __future__ import annotations

import dataclasses
import json
from contextlib import contextmanager

import pytest

from tariffscope.api.app import build_scheduler, dispatch_to_celery
from tariffscope.caching.redis_client import RedisClient
from tariffscope.jobs.models import JobStatus
from tariffscope.jobs.scheduler import OWNER_KEY, RESUME_KEY, JobScheduler
from tariffscope.jobs.store import InMemoryJobStore
from tariffscope.workers import tasks
from tariffscope.workers.tasks import claim_job, process_job

PARAMS = {"product_ids": ["tee-001"]}


class FakeRedis:
    def __init__(self, acquired: bool = True) -> None:
        self.acquired = acquired
        self.claims = []

    @contextmanager
    def job_claim(self, job_id):
        self.claims.append(job_id)
        yield self.acquired


class FakeRedisConnection:
    """Just the commands the cache layer uses."""

    def __init__(self) -> None:
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    def scan_iter(self, match=None):
        prefix = (match or "").rstrip("*")
        return [key for key in list(self.data) if key.startswith(prefix)]

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0


def _submit(store, services, settings, **kwargs):
    return JobScheduler(store, services, settings=settings).submit("scenario_analysis", PARAMS, **kwargs)


def test_process_job_runs_pending_job(settings, services):
    store = InMemoryJobStore()
    job = _submit(store, services, settings)
    redis_client = FakeRedis()

    outcome = process_job(job.job_id, store=store, services=services, redis_client=redis_client, task_id="t-1")

    assert outcome == {"job_id": job.job_id, "status": "completed", "retry_count": 0}
    done = store.get(job.job_id)
    assert done.status is JobStatus.COMPLETED
    assert done.metadata["celery_task_id"] == "t-1"
    assert redis_client.claims == [job.job_id]


def test_locked_job_is_skipped(settings, services):
    store = InMemoryJobStore()
    job = _submit(store, services, settings)

    outcome = process_job(job.job_id, store=store, services=services, redis_client=FakeRedis(acquired=False))

    assert outcome["status"] == "skipped"
    assert store.get(job.job_id).status is JobStatus.PENDING


def test_finished_job_is_not_run_twice(settings, services):
    store = InMemoryJobStore()
    job = _submit(store, services, settings)
    process_job(job.job_id, store=store, services=services, redis_client=FakeRedis())

    again = process_job(job.job_id, store=store, services=services, redis_client=FakeRedis())

    assert again["status"] == "skipped"


def test_failed_attempt_is_redispatched_with_backoff(settings, services, rate_table, monkeypatch):
    rate_table.mark_unavailable("6109100010", "CN", "US")
    dispatched = []
    monkeypatch.setattr(tasks, "enqueue_job", lambda job, countdown=0.0: dispatched.append((job.job_id, countdown)))
    store = InMemoryJobStore()
    job = _submit(store, services, settings, max_retries=3)

    outcome = process_job(job.job_id, store=store, services=services, redis_client=FakeRedis())

    assert outcome["status"] == "pending"
    assert outcome["retry_count"] == 1
    assert dispatched == [(job.job_id, 0.0)]


def test_claim_resumes_paused_job_only_when_requested(settings, services):
    store = InMemoryJobStore()
    job = _submit(store, services, settings)
    store.transition(job.job_id, JobStatus.PENDING, JobStatus.RUNNING)
    store.transition(job.job_id, JobStatus.RUNNING, JobStatus.PAUSED)

    assert claim_job(store, job.job_id) is None

    store.update(job.job_id, metadata={RESUME_KEY: True})
    claimed = claim_job(store, job.job_id, task_id="t-2")

    assert claimed.status is JobStatus.RUNNING
    assert RESUME_KEY not in claimed.metadata
    assert claimed.metadata["celery_task_id"] == "t-2"


def test_redis_rate_cache_round_trip():
    connection = FakeRedisConnection()
    client = RedisClient(url="redis://unused", client=connection)

    client.set_rate("6109100010", "cn", "us", {"duty_percent": 16.5}, ttl=60)

    assert client.get_rate("6109100010", "CN", "US") == {"duty_percent": 16.5}
    assert connection.ttls == {"rate:6109100010:CN:US": 60}
    assert client.get_rate("6109100010", "VN", "US") is None

    connection.data["rate:bad:CN:US"] = "{not json"
    assert client.get_rate("bad", "CN", "US") is None
    assert client.invalidate_rates() == 2
    assert json.dumps(connection.data) == "{}"


def test_celery_executor_dispatches_each_submitted_job(settings, services, monkeypatch):
    sent = []

    def fake_enqueue(job, countdown=0.0):
        sent.append((job.job_id, countdown))
        return "task-7"

    monkeypatch.setattr(tasks, "enqueue_job", fake_enqueue)
    store = InMemoryJobStore()
    scheduler = JobScheduler(store, services, settings=settings, dispatch=dispatch_to_celery)

    job = scheduler.submit("scenario_analysis", PARAMS)

    assert sent == [(job.job_id, 0.0)]
    assert scheduler.queued_job_ids() == []

    outcome = process_job(job.job_id, store=store, services=services, redis_client=FakeRedis(), task_id="task-7")

    assert outcome["status"] == "completed"
    assert store.get(job.job_id).metadata[OWNER_KEY] == "celery:task-7"


def test_celery_executor_needs_the_shared_store(settings):
    with pytest.raises(ValueError):
        build_scheduler(dataclasses.replace(settings, executor="celery", job_store="memory"))
    with pytest.raises(ValueError):
        build_scheduler(dataclasses.replace(settings, executor="threads"))
