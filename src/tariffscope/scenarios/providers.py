"""Rate/classification provider contract and the implementations we ship.

The engine only depends on :class:`RateProvider`.  Providers must raise
:class:`RateNotFoundError` when a rate does not exist (permanent for that
product) and :class:`ProviderUnavailableError` when the provider could not
answer (transient, retried).
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol, Tuple

import httpx
import redis
from pydantic import ValidationError

from tariffscope.config import Settings, get_settings
from tariffscope.errors import ProviderUnavailableError, RateLookupError, RateNotFoundError
from tariffscope.scenarios.models import RateLookupResult

logger = logging.getLogger(__name__)

RateKey = Tuple[str, str, str]

# Shortest HS prefix a lookup may fall back to (heading level).
_MIN_PREFIX_DIGITS = 4
_PREFIX_CONFIDENCE_DECAY = 0.9


def normalize_hs_code(hs_code: str) -> str:
    return "".join(ch for ch in (hs_code or "") if ch.isdigit())


class RateProvider(Protocol):
    def lookup_rate(
        self, hs_code: str, origin_country: str, destination_country: str
    ) -> RateLookupResult:
        ...


class StaticRateProvider:
    """In-memory rate table with HS prefix fallback.

    A lookup first tries the exact code, then progressively shorter prefixes
    down to the 4-digit heading.  Each fallback level multiplies the stored
    confidence by 0.9, since a heading-level rate is a weaker match than a
    subheading rate.
    """

    def __init__(self, rates: Iterable[RateLookupResult] = ()) -> None:
        self._rates: Dict[RateKey, RateLookupResult] = {}
        self._unavailable: set[RateKey] = set()
        self._lock = threading.Lock()
        for rate in rates:
            self.add(rate)

    def add(self, rate: RateLookupResult) -> None:
        key = (
            normalize_hs_code(rate.hs_code),
            rate.origin_country.upper(),
            rate.destination_country.upper(),
        )
        with self._lock:
            self._rates[key] = rate

    @classmethod
    def from_json_file(cls, path: Path | str) -> "StaticRateProvider":
        """Load rates from a JSON array, or an object with a ``rates`` array."""

        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("rates", [])
        return cls(RateLookupResult.model_validate(item) for item in data)

    def mark_unavailable(self, hs_code: str, origin_country: str, destination_country: str) -> None:
        """Make lookups for this key raise ProviderUnavailableError (outage simulation)."""

        with self._lock:
            self._unavailable.add(
                (normalize_hs_code(hs_code), origin_country.upper(), destination_country.upper())
            )

    def lookup_rate(
        self, hs_code: str, origin_country: str, destination_country: str
    ) -> RateLookupResult:
        digits = normalize_hs_code(hs_code)
        origin = (origin_country or "").upper()
        destination = (destination_country or "").upper()

        with self._lock:
            if (digits, origin, destination) in self._unavailable:
                raise ProviderUnavailableError(
                    f"Rate provider unavailable for {hs_code} {origin}->{destination}"
                )
            decay = 1.0
            candidate = digits
            while len(candidate) >= _MIN_PREFIX_DIGITS:
                found = self._rates.get((candidate, origin, destination))
                if found is not None:
                    if decay == 1.0:
                        return found
                    return found.model_copy(
                        update={"hs_code": hs_code, "confidence": round(found.confidence * decay, 6)}
                    )
                candidate = candidate[:-2] if len(candidate) > _MIN_PREFIX_DIGITS else ""
                decay *= _PREFIX_CONFIDENCE_DECAY

        raise RateNotFoundError(
            f"No rate for HS {hs_code} from {origin} to {destination}",
            detail={"hs_code": hs_code, "origin_country": origin, "destination_country": destination},
        )


class TimeoutRateProvider:
    """Bound every lookup of a wrapped provider by a wall-clock timeout.

    A timed-out call surfaces as ProviderUnavailableError; the underlying
    worker thread is abandoned, not interrupted.
    """

    def __init__(self, inner: RateProvider, timeout_seconds: float, max_workers: int = 8) -> None:
        self.inner = inner
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rate-lookup")

    def lookup_rate(
        self, hs_code: str, origin_country: str, destination_country: str
    ) -> RateLookupResult:
        future = self._executor.submit(
            self.inner.lookup_rate, hs_code, origin_country, destination_country
        )
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning(
                "Rate lookup timed out after %.2fs for %s %s->%s",
                self.timeout_seconds, hs_code, origin_country, destination_country,
            )
            raise ProviderUnavailableError(
                f"Rate lookup timed out after {self.timeout_seconds:.2f}s",
                detail={"hs_code": hs_code},
            ) from exc

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class HttpRateProvider:
    """Rate provider backed by a remote JSON API.

    ``GET {base_url}/rates?hs_code=&origin_country=&destination_country=``
    returning a :class:`RateLookupResult` body.  404 means the rate does not
    exist; timeouts, transport errors and 5xx mean the provider is unavailable.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 5.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        headers = {"X-API-Key": api_key} if api_key else {}
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout_seconds, headers=headers
        )

    def lookup_rate(
        self, hs_code: str, origin_country: str, destination_country: str
    ) -> RateLookupResult:
        params = {
            "hs_code": hs_code,
            "origin_country": origin_country,
            "destination_country": destination_country,
        }
        try:
            response = self._client.get("/rates", params=params)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(f"Rate provider timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Rate provider unreachable: {exc}") from exc

        if response.status_code == 404:
            raise RateNotFoundError(
                f"No rate for HS {hs_code} from {origin_country} to {destination_country}",
                detail={"hs_code": hs_code},
            )
        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderUnavailableError(
                f"Rate provider returned HTTP {response.status_code}",
                detail={"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise RateLookupError(
                f"Rate provider rejected lookup with HTTP {response.status_code}",
                detail={"status_code": response.status_code},
            )
        try:
            return RateLookupResult.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise RateLookupError(f"Malformed rate payload: {exc}") from exc

    def close(self) -> None:
        self._client.close()


class CachedRateProvider:
    """Read-through Redis cache in front of another provider.

    Only successful lookups are cached; misses and outages always reach the
    wrapped provider.  A cache that cannot be reached is skipped, so a Redis
    outage only costs the cache hit.
    """

    def __init__(self, inner: RateProvider, cache, ttl: int = 86400) -> None:
        self.inner = inner
        self.cache = cache
        self.ttl = ttl

    def lookup_rate(
        self, hs_code: str, origin_country: str, destination_country: str
    ) -> RateLookupResult:
        try:
            cached = self.cache.get_rate(hs_code, origin_country, destination_country)
        except redis.exceptions.RedisError as exc:
            logger.warning("Rate cache unavailable, looking up %s directly: %s", hs_code, exc)
            cached = None
        if cached is not None:
            try:
                return RateLookupResult.model_validate(cached)
            except ValidationError:
                logger.warning("Discarding malformed cached rate for %s", hs_code)
        result = self.inner.lookup_rate(hs_code, origin_country, destination_country)
        try:
            self.cache.set_rate(
                hs_code,
                origin_country,
                destination_country,
                result.model_dump(mode="json"),
                ttl=self.ttl,
            )
        except redis.exceptions.RedisError as exc:
            logger.warning("Could not cache rate for %s: %s", hs_code, exc)
        return result


def build_rate_provider(settings: Optional[Settings] = None, cache=None) -> RateProvider:
    """Provider configured from settings.

    ``TSC_RATE_PROVIDER_URL`` selects the HTTP provider, otherwise
    ``TSC_RATES_PATH`` loads a static table.  Local tables get the lookup
    timeout through :class:`TimeoutRateProvider`; the HTTP client applies
    its own.  A cache client wraps the result in :class:`CachedRateProvider`.
    """
    settings = settings or get_settings()
    provider: RateProvider
    if settings.rate_provider_url:
        provider = HttpRateProvider(
            settings.rate_provider_url,
            timeout_seconds=settings.rate_timeout_seconds,
            api_key=settings.rate_provider_api_key,
        )
    else:
        static = StaticRateProvider.from_json_file(settings.rates_path) if settings.rates_path else StaticRateProvider()
        provider = TimeoutRateProvider(static, settings.rate_timeout_seconds)
    if cache is not None and settings.rate_cache_ttl_seconds > 0:
        provider = CachedRateProvider(provider, cache, ttl=settings.rate_cache_ttl_seconds)
    return provider
