from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tariffscope import __version__
from tariffscope.api.context_helpers import status_for
from tariffscope.api.routes_jobs import router as jobs_router
from tariffscope.api.routes_recommendations import router as recommendations_router
from tariffscope.api.routes_scenarios import router as scenarios_router
from tariffscope.config import Settings, get_settings
from tariffscope.errors import TariffScopeError
from tariffscope.jobs.handlers import build_services
from tariffscope.jobs.models import Job
from tariffscope.jobs.scheduler import JobScheduler
from tariffscope.jobs.store import SqlJobStore
from tariffscope.scenarios.recommendations import SqlRecommendationStore
from tariffscope.observability import (
    bind_run_id,
    log_event,
    new_run_id,
    redact_api_key,
    reset_run_id,
)
from tariffscope.workers import tasks as worker_tasks

logger = logging.getLogger(__name__)


def build_scheduler(settings: Settings) -> JobScheduler:
    """Scheduler for the API process.

    ``TSC_JOB_STORE=sql`` keeps jobs and recommendations in the database so
    they survive restarts and can be shared with Celery workers.
    ``TSC_EXECUTOR=celery`` sends every admitted job to the workers instead
    of running it on this process's threads.
    """
    if settings.executor not in ("local", "celery"):
        raise ValueError(f"Unknown TSC_EXECUTOR: {settings.executor}")
    if settings.executor == "celery" and settings.job_store != "sql":
        raise ValueError("TSC_EXECUTOR=celery requires TSC_JOB_STORE=sql")
    if settings.job_store != "sql":
        return JobScheduler(settings=settings)
    services = build_services(settings, recommendations=SqlRecommendationStore())
    dispatch = dispatch_to_celery if settings.executor == "celery" else None
    return JobScheduler(SqlJobStore(), services, settings=settings, dispatch=dispatch)


def dispatch_to_celery(job: Job) -> str:
    return worker_tasks.enqueue_job(job)


def _normalize_validation_errors(raw_errors: List[Dict[str, Any]]) -> Dict[str, Any]:
    fields: List[Dict[str, str]] = []
    for err in raw_errors:
        loc_parts = [str(part) for part in err.get("loc", []) if part != "body"]
        path = ".".join(["request", *loc_parts]) if loc_parts else "request"
        message = err.get("msg", "Invalid request")
        if message.lower().startswith("value error, "):
            message = message.split(", ", 1)[1]
        fields.append({"path": path, "message": message})
    return {"detail": {"message": "Invalid request", "code": "validation_error", "fields": fields}}


def create_app(scheduler: Optional[JobScheduler] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        restored = app.state.scheduler.start()
        logger.info("Scheduler started with %d workers, %d jobs restored", app.state.scheduler.max_concurrent, restored)
        yield
        app.state.scheduler.stop()

    app = FastAPI(title="tariffscope API", version=__version__, lifespan=lifespan)
    app.state.scheduler = scheduler or build_scheduler(settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(jobs_router)
    app.include_router(recommendations_router)
    app.include_router(scenarios_router)

    @app.middleware("http")
    async def attach_run_id(request: Request, call_next):
        run_id = new_run_id()
        token = bind_run_id(run_id)
        redacted_key = redact_api_key(request.headers.get("X-API-Key"))
        log_event("request.start", path=str(request.url.path), api_key=redacted_key)
        try:
            response = await call_next(request)
            response.headers["X-Run-ID"] = run_id
            return response
        finally:
            log_event("request.end", path=str(request.url.path), api_key=redacted_key)
            reset_run_id(token)

    @app.exception_handler(TariffScopeError)
    async def handle_domain_error(request: Request, exc: TariffScopeError):
        status = status_for(exc)
        if status >= 500:
            logger.error("Request to %s failed: %s", request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"detail": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=422, content=_normalize_validation_errors(exc.errors()))

    @app.get("/health", tags=["health"])
    def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__, **app.state.scheduler.queue_stats()}

    return app


app = create_app()
