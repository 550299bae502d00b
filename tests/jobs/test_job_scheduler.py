from __future__ import annotations

import dataclasses
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from tariffscope.db.session import build_engine, build_session_factory, init_db
from tariffscope.errors import (
    ConcurrencyLimitError,
    InvalidInputError,
    ProviderUnavailableError,
    StateConflictError,
)
from tariffscope.jobs.handlers import run_scenario_analysis
from tariffscope.jobs.models import Job, JobStatus, parse_job_parameters
from tariffscope.jobs.scheduler import OWNER_KEY, JobScheduler, retry_delay
from tariffscope.jobs.store import InMemoryJobStore, SqlJobStore

PARAMS = {"product_ids": ["tee-001"]}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _scheduler(settings, services, handler=None, **kwargs) -> JobScheduler:
    handlers = {"scenario_analysis": handler} if handler is not None else None
    return JobScheduler(InMemoryJobStore(), services, settings=settings, handlers=handlers, **kwargs)


def test_submit_returns_pending_job(settings, services):
    scheduler = _scheduler(settings, services, lambda job, ctx, svc: {"ok": True})

    job = scheduler.submit("scenario_analysis", PARAMS, priority="high", workspace_id="acme")

    assert job.status is JobStatus.PENDING
    assert scheduler.get_job(job.job_id).workspace_id == "acme"
    assert scheduler.queued_job_ids() == [job.job_id]


@pytest.mark.parametrize(
    "job_type, parameters, priority",
    [
        ("nope", PARAMS, "medium"),
        ("scenario_analysis", {}, "medium"),
        ("scenario_analysis", {"product_ids": ["a"], "configuration": {"max_scenarios": 0}}, "medium"),
        ("scenario_analysis", PARAMS, "asap"),
    ],
)
def test_submit_rejects_invalid_jobs(settings, services, job_type, parameters, priority):
    scheduler = _scheduler(settings, services)

    with pytest.raises(InvalidInputError):
        scheduler.submit(job_type, parameters, priority=priority)
    assert scheduler.list_jobs() == []


def test_full_queue_rejects_new_jobs(settings, services):
    scheduler = _scheduler(dataclasses.replace(settings, queue_capacity=2), services)
    scheduler.submit("scenario_analysis", PARAMS)
    scheduler.submit("scenario_analysis", PARAMS)

    with pytest.raises(ConcurrencyLimitError):
        scheduler.submit("scenario_analysis", PARAMS)


def test_real_analysis_job_completes(settings, services, origin_only):
    scheduler = _scheduler(settings, services)
    job = scheduler.submit(
        "scenario_analysis",
        {"product_ids": ["tee-001", "mug-002"], "configuration": origin_only.model_dump(mode="json")},
    )

    scheduler.run_until_idle()

    done = scheduler.get_job(job.job_id)
    assert done.status is JobStatus.COMPLETED
    assert done.progress == 100.0
    assert done.progress_detail.completed == 2
    assert done.result["analysis"]["analyzed_products"] == 2
    assert done.started_at is not None and done.completed_at is not None


def test_retries_exhaust_into_dead_letter(settings, services):
    calls = []

    def always_down(job, ctx, svc):
        calls.append(job.retry_count)
        raise ProviderUnavailableError("rates offline")

    scheduler = _scheduler(settings, services, always_down)
    job = scheduler.submit("scenario_analysis", PARAMS, max_retries=3)

    scheduler.run_until_idle()

    dead = scheduler.get_job(job.job_id)
    assert calls == [0, 1, 2]
    assert dead.status is JobStatus.DEAD_LETTER
    assert dead.retry_count == 3
    assert dead.error_code == "provider_unavailable"
    assert dead.metadata["error_code"] == "provider_unavailable"


def test_zero_retries_dead_letters_after_first_failure(settings, services):
    def boom(job, ctx, svc):
        raise RuntimeError("unexpected")

    scheduler = _scheduler(settings, services, boom)
    job = scheduler.submit("scenario_analysis", PARAMS, max_retries=0)

    scheduler.run_until_idle()

    dead = scheduler.get_job(job.job_id)
    assert dead.status is JobStatus.DEAD_LETTER
    assert dead.retry_count == 1
    assert dead.error_code == "internal_error"


def test_invalid_input_is_not_retried(settings, services):
    calls = []

    def bad_input(job, ctx, svc):
        calls.append(1)
        raise InvalidInputError("bad product data")

    scheduler = _scheduler(settings, services, bad_input)
    job = scheduler.submit("scenario_analysis", PARAMS)

    scheduler.run_until_idle()

    failed = scheduler.get_job(job.job_id)
    assert len(calls) == 1
    assert failed.status is JobStatus.FAILED
    assert failed.error == "bad product data"
    assert failed.error_code == "invalid_input"


def test_retry_backoff_is_exponential_and_capped(settings):
    timed = dataclasses.replace(settings, retry_base_seconds=1.0, retry_max_seconds=5.0)

    assert [retry_delay(timed, n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_retry_waits_for_backoff(settings, services):
    clock = FakeClock()
    attempts = []

    def flaky(job, ctx, svc):
        attempts.append(job.retry_count)
        if len(attempts) == 1:
            raise ProviderUnavailableError("blip")
        return {"ok": True}

    scheduler = _scheduler(dataclasses.replace(settings, retry_base_seconds=2.0), services, flaky, clock=clock)
    job = scheduler.submit("scenario_analysis", PARAMS)

    scheduler.run_until_idle()
    assert scheduler.get_job(job.job_id).status is JobStatus.PENDING
    assert scheduler.get_job(job.job_id).retry_count == 1

    clock.now = 2.0
    scheduler.run_until_idle()
    assert scheduler.get_job(job.job_id).status is JobStatus.COMPLETED
    assert attempts == [0, 1]


def test_higher_priority_waits_for_running_job_then_goes_next(settings, services):
    order = []
    submitted = {}

    def handler(job, ctx, svc):
        order.append(job.parameters.label)
        if job.parameters.label == "medium":
            submitted["high"] = scheduler.submit("scenario_analysis", {**PARAMS, "label": "high"}, priority="high")
            assert scheduler.run_next() is None
            assert scheduler.get_job(submitted["high"].job_id).status is JobStatus.PENDING
        return {}

    scheduler = _scheduler(settings, services, handler)
    scheduler.submit("scenario_analysis", {**PARAMS, "label": "medium"}, priority="medium")
    scheduler.submit("scenario_analysis", {**PARAMS, "label": "low"}, priority="low")

    scheduler.run_until_idle()

    assert order == ["medium", "high", "low"]
    assert scheduler.get_job(submitted["high"].job_id).status is JobStatus.COMPLETED


def test_fifo_within_a_tier(settings, services):
    order = []
    scheduler = _scheduler(settings, services, lambda job, ctx, svc: order.append(job.parameters.label) or {})
    for label in ("first", "second", "third"):
        scheduler.submit("scenario_analysis", {**PARAMS, "label": label})

    scheduler.run_until_idle()

    assert order == ["first", "second", "third"]


def test_starved_job_is_promoted(settings, services):
    clock = FakeClock()
    order = []
    scheduler = _scheduler(
        dataclasses.replace(settings, starvation_seconds=10.0),
        services,
        lambda job, ctx, svc: order.append(job.parameters.label) or {},
        clock=clock,
    )
    old = scheduler.submit("scenario_analysis", {**PARAMS, "label": "old-low"}, priority="low")
    clock.now = 10.0
    scheduler.submit("scenario_analysis", {**PARAMS, "label": "new-medium"}, priority="medium")

    scheduler.run_until_idle()

    assert order == ["old-low", "new-medium"]
    assert scheduler.get_job(old.job_id).effective_priority.value == "medium"
    assert scheduler.get_job(old.job_id).priority.value == "low"


def test_cancel_pending_job(settings, services):
    calls = []
    scheduler = _scheduler(settings, services, lambda job, ctx, svc: calls.append(1) or {})
    job = scheduler.submit("scenario_analysis", PARAMS)

    assert scheduler.cancel(job.job_id).status is JobStatus.CANCELLED
    scheduler.run_until_idle()

    assert calls == []
    assert scheduler.queued_job_ids() == []
    with pytest.raises(StateConflictError):
        scheduler.cancel(job.job_id)


def test_cancel_running_job_at_next_checkpoint(settings, services):
    reached = []

    def handler(job, ctx, svc):
        ctx.report(completed=1, total=4, current_item="a")
        scheduler.cancel(job.job_id)
        reached.append("before")
        ctx.report(completed=2, total=4, current_item="b")
        reached.append("after")
        return {}

    scheduler = _scheduler(settings, services, handler)
    job = scheduler.submit("scenario_analysis", PARAMS)

    scheduler.run_until_idle()

    cancelled = scheduler.get_job(job.job_id)
    assert reached == ["before"]
    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.progress == 50.0
    assert "control" not in cancelled.metadata
    assert scheduler.running_job_ids() == []


class PausingProvider:
    """Rate provider that pauses a job while one product is being priced."""

    def __init__(self, inner, pause_on_hs: str) -> None:
        self.inner = inner
        self.pause_on_hs = pause_on_hs
        self.scheduler = None
        self.job_id = None
        self.lookups = []

    def lookup_rate(self, hs_code, origin, destination):
        self.lookups.append(hs_code)
        if hs_code == self.pause_on_hs and self.job_id is not None:
            self.scheduler.pause(self.job_id)
            self.job_id = None
        return self.inner.lookup_rate(hs_code, origin, destination)


def test_pause_and_resume_keep_exact_progress(settings, services, rate_table, products, baseline_only):
    from tariffscope.scenarios.models import RateLookupResult

    extra = [
        products[0].model_copy(update={"product_id": "tee-003", "hs_code": "6109.90.10"}),
        products[0].model_copy(update={"product_id": "tee-004", "hs_code": "6109.90.80"}),
    ]
    for product in extra:
        rate_table.add(
            RateLookupResult(hs_code=product.hs_code, origin_country="CN", destination_country="US", duty_percent=10.0)
        )
        services.engine.catalog.add(product)

    provider = PausingProvider(rate_table, pause_on_hs="6912.00.48.00")
    services.engine.rate_provider = provider
    scheduler = JobScheduler(InMemoryJobStore(), services, settings=settings)
    job = scheduler.submit(
        "scenario_analysis",
        {
            "product_ids": ["tee-001", "mug-002", "tee-003", "tee-004"],
            "configuration": baseline_only.model_dump(mode="json"),
        },
    )
    provider.scheduler, provider.job_id = scheduler, job.job_id

    scheduler.run_until_idle()

    paused = scheduler.get_job(job.job_id)
    assert paused.status is JobStatus.PAUSED
    assert paused.progress == 50.0
    assert paused.progress_detail.completed == 2
    assert paused.checkpoint["batch"]["processed_ids"] == ["tee-001", "mug-002"]
    assert scheduler.queued_job_ids() == []

    with pytest.raises(StateConflictError):
        scheduler.pause(job.job_id)

    scheduler.resume(job.job_id)
    scheduler.run_until_idle()

    done = scheduler.get_job(job.job_id)
    assert done.status is JobStatus.COMPLETED
    assert done.result["analysis"]["analyzed_products"] == 4
    assert provider.lookups.count("6109.10.00.10") == 1
    assert provider.lookups.count("6912.00.48.00") == 1
    assert "resume_requested" not in done.metadata


def test_resume_requires_paused_job(settings, services):
    scheduler = _scheduler(settings, services, lambda job, ctx, svc: {})
    job = scheduler.submit("scenario_analysis", PARAMS)

    with pytest.raises(StateConflictError):
        scheduler.resume(job.job_id)
    with pytest.raises(StateConflictError):
        scheduler.pause(job.job_id)


def test_resume_before_pause_takes_effect_withdraws_it(settings, services):
    def handler(job, ctx, svc):
        scheduler.pause(job.job_id)
        scheduler.resume(job.job_id)
        ctx.report(completed=1, total=1)
        return {"ok": True}

    scheduler = _scheduler(settings, services, handler)
    job = scheduler.submit("scenario_analysis", PARAMS)

    scheduler.run_until_idle()

    assert scheduler.get_job(job.job_id).status is JobStatus.COMPLETED


def test_rerun_resets_retry_state(settings, services):
    outcomes = [InvalidInputError("bad data"), None]

    def handler(job, ctx, svc):
        outcome = outcomes.pop(0)
        if outcome is not None:
            raise outcome
        return {"ok": True}

    scheduler = _scheduler(settings, services, handler)
    job = scheduler.submit("scenario_analysis", PARAMS)
    scheduler.run_until_idle()
    assert scheduler.get_job(job.job_id).status is JobStatus.FAILED

    rerun = scheduler.rerun(job.job_id)
    assert rerun.status is JobStatus.PENDING
    assert rerun.retry_count == 0
    assert rerun.rerun_attempt == 1
    assert rerun.error is None

    scheduler.run_until_idle()
    done = scheduler.get_job(job.job_id)
    assert done.status is JobStatus.COMPLETED
    assert done.result == {"ok": True}

    with pytest.raises(StateConflictError):
        scheduler.rerun(job.job_id)


def test_restore_requeues_interrupted_jobs(settings, services):
    store = InMemoryJobStore()
    params = parse_job_parameters(PARAMS, "scenario_analysis")
    interrupted = Job(
        job_id=str(uuid.uuid4()),
        job_type="scenario_analysis",
        parameters=params,
        status=JobStatus.RUNNING,
        progress=30.0,
        checkpoint={"batch": {"processed_ids": ["x"]}},
    )
    parked = Job(job_id=str(uuid.uuid4()), job_type="scenario_analysis", parameters=params, status=JobStatus.PAUSED)
    store.create(interrupted)
    store.create(parked)
    seen = []

    def handler(job, ctx, svc):
        seen.append((job.job_id, ctx.progress, ctx.restored))
        return {}

    scheduler = JobScheduler(store, services, settings=settings, handlers={"scenario_analysis": handler})

    assert scheduler.restore() == 1
    assert store.get(interrupted.job_id).status is JobStatus.PENDING

    scheduler.run_until_idle()

    assert seen == [(interrupted.job_id, 30.0, {"batch": {"processed_ids": ["x"]}})]
    assert store.get(parked.job_id).status is JobStatus.PAUSED


def test_provider_outage_for_every_product_retries_the_job(settings, services, rate_table):
    rate_table.mark_unavailable("6109100010", "CN", "US")
    scheduler = JobScheduler(InMemoryJobStore(), services, settings=settings)
    job = scheduler.submit("scenario_analysis", PARAMS, max_retries=2)

    scheduler.run_until_idle()

    dead = scheduler.get_job(job.job_id)
    assert dead.status is JobStatus.DEAD_LETTER
    assert dead.retry_count == 2
    assert dead.error_code == "provider_unavailable"


def test_analysis_job_can_generate_recommendations(settings, services, origin_only):
    services.settings = dataclasses.replace(settings, recommendation_min_saving=1, recommendation_high_saving=10)
    scheduler = JobScheduler(InMemoryJobStore(), services, settings=settings)
    job = scheduler.submit(
        "scenario_analysis",
        {
            "product_ids": ["tee-001"],
            "configuration": origin_only.model_dump(mode="json"),
            "generate_recommendations": True,
        },
        workspace_id="acme",
    )

    scheduler.run_until_idle()

    done = scheduler.get_job(job.job_id)
    assert len(done.result["recommendation_ids"]) == 1
    rec = services.recommendations.get(done.result["recommendation_ids"][0])
    assert rec.workspace_id == "acme"
    assert rec.priority == "high"


def test_comparison_job_ranks_every_configuration(settings, services, origin_only, baseline_only):
    scheduler = JobScheduler(InMemoryJobStore(), services, settings=settings)
    job = scheduler.submit(
        "scenario_comparison",
        {
            "product_ids": ["tee-001", "mug-002"],
            "configurations": [
                {"label": "as-is", "configuration": baseline_only.model_dump(mode="json")},
                {"label": "resource", "configuration": origin_only.model_dump(mode="json")},
            ],
            "name": "Sourcing review",
        },
    )

    scheduler.run_until_idle()

    result = scheduler.get_job(job.job_id).result
    assert set(result["analyses"]) == {"as-is", "resource"}
    best = result["comparison"]["best_scenario"]
    assert best["configuration_label"] == "resource"
    assert best["product_id"] == "tee-001"
    assert len(result["comparison"]["ranked"]) == 4


def test_recommendation_job_uses_saved_scenario_results(settings, services, origin_only):
    services.settings = dataclasses.replace(settings, recommendation_min_saving=1, recommendation_high_saving=10)
    scenario = services.registry.create_scenario("default", "Q3", product_ids=["tee-001"], configuration=origin_only)
    services.registry.record_results(scenario.id, services.engine.analyze_batch(["tee-001"], origin_only))
    scheduler = JobScheduler(InMemoryJobStore(), services, settings=settings)

    job = scheduler.submit("recommendation_generation", {"scenario_id": scenario.id})
    scheduler.run_until_idle()

    recs = scheduler.get_job(job.job_id).result["recommendations"]
    assert [r["scenario_id"] for r in recs] == [scenario.id]
    assert services.recommendations.list(scenario_id=scenario.id)[0].recommendation_type == "origin"


def test_scenario_run_records_results_on_the_scenario(settings, services, origin_only):
    scenario = services.registry.create_scenario("default", "Q3", product_ids=["tee-001"], configuration=origin_only)
    scheduler = JobScheduler(InMemoryJobStore(), services, settings=settings)
    scheduler.submit(
        "scenario_analysis",
        {
            "product_ids": scenario.product_ids,
            "configuration": origin_only.model_dump(mode="json"),
            "scenario_id": scenario.id,
        },
    )

    scheduler.run_until_idle()

    saved = services.registry.get_scenario(scenario.id)
    assert saved.status == "completed"
    assert saved.results.analyzed_products == 1


def test_worker_threads_run_submitted_jobs(settings, services):
    scheduler = _scheduler(dataclasses.replace(settings, max_concurrent=2), services, lambda job, ctx, svc: {"ok": True})
    scheduler.start()
    try:
        jobs = [scheduler.submit("scenario_analysis", PARAMS) for _ in range(3)]
        for job in jobs:
            done = scheduler.wait_for(job.job_id, [JobStatus.COMPLETED], timeout=5.0)
            assert done.result == {"ok": True}
    finally:
        scheduler.stop()

    assert scheduler.queue_stats()["completed"] == 3
    assert scheduler.queue_stats()["executing"] == 0


def _sql_store() -> SqlJobStore:
    engine = build_engine("sqlite://")
    init_db(engine)
    return SqlJobStore(build_session_factory(engine))


def test_scheduler_on_sql_store(settings, services):
    scheduler = JobScheduler(
        _sql_store(),
        services,
        settings=settings,
        handlers={"scenario_analysis": run_scenario_analysis},
    )
    job = scheduler.submit("scenario_analysis", PARAMS, priority="urgent")

    scheduler.run_until_idle()

    done = scheduler.get_job(job.job_id)
    assert done.status is JobStatus.COMPLETED
    assert done.result["analysis"]["analyzed_products"] == 1


def test_single_slot_never_runs_two_jobs_at_once(settings, services):
    lock = threading.Lock()
    counts = {"active": 0, "peak": 0}

    def handler(job, ctx, svc):
        with lock:
            counts["active"] += 1
            counts["peak"] = max(counts["peak"], counts["active"])
        time.sleep(0.01)
        with lock:
            counts["active"] -= 1
        return {"ok": True}

    scheduler = _scheduler(dataclasses.replace(settings, max_concurrent=1), services, handler)
    scheduler.start()
    stop_draining = threading.Event()

    def drain():
        while not stop_draining.is_set():
            if scheduler.run_next() is None:
                time.sleep(0.001)

    drainers = [threading.Thread(target=drain) for _ in range(3)]
    for thread in drainers:
        thread.start()
    try:
        jobs = [scheduler.submit("scenario_analysis", PARAMS) for _ in range(8)]
        for job in jobs:
            scheduler.wait_for(job.job_id, [JobStatus.COMPLETED], timeout=10.0)
    finally:
        stop_draining.set()
        for thread in drainers:
            thread.join(5.0)
        scheduler.stop()

    assert counts["peak"] == 1
    assert scheduler.queue_stats()["completed"] == 8


def test_restart_leaves_a_job_held_by_a_live_scheduler_alone(settings, services):
    store = _sql_store()
    other_calls = []
    observed = {}

    def other_handler(job, ctx, svc):
        other_calls.append(job.job_id)
        return {}

    def handler(job, ctx, svc):
        other = JobScheduler(store, services, settings=settings, handlers={"scenario_analysis": other_handler})
        observed["restored"] = other.restore()
        observed["status"] = store.get(job.job_id).status
        observed["other_ran"] = other.run_next()
        return {"ok": True}

    owner = JobScheduler(store, services, settings=settings, handlers={"scenario_analysis": handler})
    job = owner.submit("scenario_analysis", PARAMS)

    owner.run_next()

    assert observed == {"restored": 0, "status": JobStatus.RUNNING, "other_ran": None}
    assert other_calls == []
    done = store.get(job.job_id)
    assert done.status is JobStatus.COMPLETED
    assert done.metadata[OWNER_KEY] == owner.owner_id


def test_restore_takes_back_jobs_of_dead_or_same_owner(settings, services):
    store = _sql_store()
    params = parse_job_parameters(PARAMS, "scenario_analysis")
    now = datetime.now(timezone.utc)

    def running(owner, updated_at):
        job = Job(
            job_id=str(uuid.uuid4()),
            job_type="scenario_analysis",
            parameters=params,
            status=JobStatus.RUNNING,
            metadata={OWNER_KEY: owner},
            updated_at=updated_at,
        )
        store.create(job)
        return job.job_id

    dead = running("scheduler-gone", now - timedelta(hours=1))
    live = running("celery:t-9", now)
    mine = running("api-1", now)
    scheduler = JobScheduler(
        store,
        services,
        settings=dataclasses.replace(settings, worker_id="api-1", stale_job_seconds=60.0),
        handlers={"scenario_analysis": lambda job, ctx, svc: {}},
    )

    assert scheduler.restore() == 2

    assert store.get(dead).status is JobStatus.PENDING
    assert store.get(mine).status is JobStatus.PENDING
    assert store.get(live).status is JobStatus.RUNNING
    assert OWNER_KEY not in store.get(dead).metadata
    assert sorted(scheduler.queued_job_ids()) == sorted([dead, mine])


def test_dispatching_scheduler_hands_jobs_to_the_executor(settings, services):
    sent = []

    def dispatch(job):
        sent.append(job.job_id)
        return f"task-{len(sent)}"

    scheduler = _scheduler(
        dataclasses.replace(settings, queue_capacity=2), services, lambda job, ctx, svc: {}, dispatch=dispatch
    )

    assert scheduler.start() == 0
    job = scheduler.submit("scenario_analysis", PARAMS)

    assert sent == [job.job_id]
    assert scheduler.queued_job_ids() == []
    assert scheduler.run_next() is None

    scheduler.cancel(job.job_id)
    scheduler.rerun(job.job_id)
    assert sent == [job.job_id, job.job_id]

    parked = Job(
        job_id=str(uuid.uuid4()),
        job_type="scenario_analysis",
        parameters=parse_job_parameters(PARAMS, "scenario_analysis"),
        status=JobStatus.PAUSED,
    )
    scheduler.store.create(parked)
    scheduler.resume(parked.job_id)
    assert sent[-1] == parked.job_id

    scheduler.submit("scenario_analysis", PARAMS)
    with pytest.raises(ConcurrencyLimitError):
        scheduler.submit("scenario_analysis", PARAMS)
    scheduler.stop()
