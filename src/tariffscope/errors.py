"""Error taxonomy shared by the engine, the scheduler and the API.

Every error carries a stable ``code`` that is written into job metadata and
API error bodies, so clients can branch on it without parsing messages.
"""

from __future__ import annotations

from typing import Optional


class TariffScopeError(Exception):
    """Base class for all domain errors."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code, **self.detail}


class InvalidInputError(TariffScopeError):
    """Bad configuration or product data. Never retried."""

    code = "invalid_input"


class ProductNotFoundError(InvalidInputError):
    """A product id did not resolve to a known product."""

    code = "product_not_found"


class RateLookupError(TariffScopeError):
    """A per-product rate lookup failed."""

    code = "rate_lookup_failed"


class RateNotFoundError(RateLookupError):
    """The provider has no rate for the requested HS code / country pair."""

    code = "rate_not_found"


class ProviderUnavailableError(TariffScopeError):
    """The rate provider is unreachable or timed out. Transient."""

    code = "provider_unavailable"
    retryable = True


class ConcurrencyLimitError(TariffScopeError):
    """The pending queue is at capacity."""

    code = "concurrency_limit"


class StateConflictError(TariffScopeError):
    """A job or recommendation transition was attempted from an invalid state."""

    code = "state_conflict"


class JobNotFoundError(TariffScopeError):
    code = "job_not_found"


class RecommendationNotFoundError(TariffScopeError):
    code = "recommendation_not_found"


class ScenarioNotFoundError(TariffScopeError):
    code = "scenario_not_found"


class JobInterrupted(Exception):
    """Raised from a job checkpoint to unwind a running task cooperatively."""


class JobCancelled(JobInterrupted):
    pass


class JobPaused(JobInterrupted):
    pass
