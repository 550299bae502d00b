from __future__ import annotations

from fastapi import HTTPException, Request

from tariffscope.errors import (
    ConcurrencyLimitError,
    InvalidInputError,
    JobNotFoundError,
    ProviderUnavailableError,
    RateLookupError,
    RecommendationNotFoundError,
    ScenarioNotFoundError,
    StateConflictError,
    TariffScopeError,
)
from tariffscope.jobs.handlers import JobServices
from tariffscope.jobs.scheduler import JobScheduler

_STATUS_BY_ERROR = (
    (InvalidInputError, 400),
    (JobNotFoundError, 404),
    (RecommendationNotFoundError, 404),
    (ScenarioNotFoundError, 404),
    (StateConflictError, 409),
    (ConcurrencyLimitError, 429),
    (RateLookupError, 422),
    (ProviderUnavailableError, 503),
)


def status_for(exc: TariffScopeError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def http_error(exc: TariffScopeError) -> HTTPException:
    """Standardized HTTP error carrying the domain error's message and code."""

    return HTTPException(status_code=status_for(exc), detail=exc.to_dict())


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


def get_services(request: Request) -> JobServices:
    return request.app.state.scheduler.services
