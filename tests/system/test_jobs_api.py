from __future__ import annotations

import dataclasses


def _submit(client, **overrides):
    payload = {"type": "scenario_analysis", "parameters": {"product_ids": ["tee-001", "mug-002"]}}
    payload.update(overrides)
    return client.post("/v1/jobs", json=payload)


def test_submit_returns_immediately_and_completes(system_client, scheduler, origin_only):
    parameters = {"product_ids": ["tee-001", "mug-002"], "configuration": origin_only.model_dump(mode="json")}
    response = _submit(system_client, priority="high", parameters=parameters)

    assert response.status_code == 202, response.text
    body = response.json()
    assert body["status"] == "pending"
    assert body["priority"] == "high"

    polled = system_client.get(f"/v1/jobs/{body['job_id']}").json()
    assert polled["status"] == "pending"
    assert polled["progress"] == 0.0

    scheduler.run_until_idle()

    done = system_client.get(f"/v1/jobs/{body['job_id']}").json()
    assert done["status"] == "completed"
    assert done["progress"] == 100.0
    assert done["result"]["analysis"]["analyzed_products"] == 2
    assert done["result"]["analysis"]["total_savings"] == "18.46"


def test_missing_or_unknown_api_key_is_rejected(system_client):
    assert system_client.get("/v1/jobs", headers={"X-API-Key": ""}).status_code == 401
    response = system_client.get("/v1/jobs", headers={"X-API-Key": "wrong"})
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "unauthorized"


def test_malformed_request_is_a_validation_error(system_client):
    response = system_client.post("/v1/jobs", json={"type": "mining", "parameters": {}})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "validation_error"
    assert any(f["path"] == "request.type" for f in detail["fields"])


def test_invalid_parameters_are_rejected_before_queueing(system_client, scheduler):
    response = _submit(system_client, parameters={"product_ids": []})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_input"
    assert scheduler.list_jobs() == []


def test_control_reports_success_and_conflicts(system_client):
    job_id = _submit(system_client).json()["job_id"]

    cancelled = system_client.post(f"/v1/jobs/{job_id}/control", json={"action": "cancel"})
    assert cancelled.status_code == 200
    assert cancelled.json() == {"job_id": job_id, "action": "cancel", "success": True, "status": "cancelled"}

    conflict = system_client.post(f"/v1/jobs/{job_id}/control", json={"action": "resume"})
    assert conflict.status_code == 409
    detail = conflict.json()["detail"]
    assert detail["success"] is False
    assert detail["code"] == "state_conflict"

    rerun = system_client.post(f"/v1/jobs/{job_id}/control", json={"action": "rerun"})
    assert rerun.json()["status"] == "pending"


def test_jobs_are_scoped_to_their_workspace(system_client):
    job_id = _submit(system_client).json()["job_id"]

    other = {"X-Workspace-ID": "globex"}
    assert system_client.get(f"/v1/jobs/{job_id}", headers=other).status_code == 404
    assert system_client.post(f"/v1/jobs/{job_id}/control", json={"action": "cancel"}, headers=other).status_code == 404
    assert system_client.get("/v1/jobs", headers=other).json() == []


def test_unknown_job_is_not_found(system_client):
    response = system_client.get("/v1/jobs/does-not-exist")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "job_not_found"


def test_list_filters_and_stats(system_client, scheduler):
    low = _submit(system_client, priority="low").json()["job_id"]
    urgent = _submit(system_client, priority="urgent").json()["job_id"]

    listed = system_client.get("/v1/jobs", params={"priority": "urgent"}).json()
    assert [j["job_id"] for j in listed] == [urgent]
    assert "result" not in listed[0]

    scheduler.run_next()
    stats = system_client.get("/v1/jobs/stats").json()
    assert stats["completed"] == 1
    assert stats["pending"] == 1
    assert stats["queued"] == 1
    assert scheduler.get_job(low).status.value == "pending"


def test_full_queue_is_too_many_requests(system_client, scheduler, settings):
    scheduler.settings = dataclasses.replace(settings, queue_capacity=1)
    assert _submit(system_client).status_code == 202

    response = _submit(system_client)

    assert response.status_code == 429
    assert response.json()["detail"]["code"] == "concurrency_limit"


def test_health_reports_queue(system_client):
    body = system_client.get("/health").json()

    assert body["status"] == "ok"
    assert body["max_concurrent"] == 1
