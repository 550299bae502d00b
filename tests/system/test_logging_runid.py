from __future__ import annotations

import logging


def _payloads(caplog):
    return [getattr(record, "payload", None) for record in caplog.records if getattr(record, "payload", None)]


def test_runid_and_redaction(system_client, caplog):
    caplog.set_level(logging.INFO, logger="tariffscope")

    resp = system_client.post("/v1/jobs", json={"type": "scenario_analysis", "parameters": {"product_ids": ["tee-001"]}})
    assert resp.status_code == 202

    payloads = _payloads(caplog)
    run_ids = {p["run_id"] for p in payloads if p.get("run_id")}
    api_keys = {p["api_key"] for p in payloads if "api_key" in p}

    assert run_ids == {resp.headers["X-Run-ID"]}
    assert api_keys == {"syst***"}


def test_job_execution_logs_carry_the_submitting_run_id(system_client, scheduler, caplog):
    caplog.set_level(logging.INFO, logger="tariffscope")
    resp = system_client.post("/v1/jobs", json={"type": "scenario_analysis", "parameters": {"product_ids": ["tee-001"]}})
    run_id = resp.headers["X-Run-ID"]
    job_id = resp.json()["job_id"]

    assert scheduler.get_job(job_id).metadata["run_id"] == run_id

    caplog.clear()
    scheduler.run_until_idle()

    job_events = [p for p in _payloads(caplog) if p.get("job_id") == job_id]
    assert {p["run_id"] for p in job_events} == {run_id}
    assert [r.getMessage() for r in caplog.records if r.getMessage() in ("job.started", "job.completed")] == [
        "job.started",
        "job.completed",
    ]
