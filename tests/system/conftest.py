"""Shared fixtures for HTTP-level tests.

The client is created without entering its context manager, so the app's
lifespan never starts worker threads; tests drain the queue themselves
with ``scheduler.run_until_idle()``.
"""

import pytest
from fastapi.testclient import TestClient

from tariffscope.api.app import create_app
from tariffscope.api.security import set_rate_limit
from tariffscope.config import reset_settings
from tariffscope.jobs.scheduler import JobScheduler


@pytest.fixture()
def scheduler(monkeypatch, settings, services):
    monkeypatch.setenv("TSC_API_KEYS", "system-key,alt-key")
    reset_settings()
    set_rate_limit(1000)
    yield JobScheduler(services=services, settings=settings)
    reset_settings()


@pytest.fixture()
def system_client(scheduler) -> TestClient:
    return TestClient(create_app(scheduler=scheduler), headers={"X-API-Key": "system-key"})


@pytest.fixture()
def tee_payload(products):
    return products[0].model_dump(mode="json")
