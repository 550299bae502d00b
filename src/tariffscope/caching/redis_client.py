"""Redis caching layer for rate lookups and job claims.

Shares rate lookups across workers and keeps two workers from executing
the same job at once.

Cache Keys:
- rate:{hs_code}:{origin}:{destination} → Serialized RateLookupResult (TTL: 24h)
- job:lock:{job_id} → Exclusive claim held while a worker runs the job
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

import redis
from redis.lock import Lock

from tariffscope.config import get_settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client for rate caching and distributed job locks."""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.url = url or get_settings().redis_url
        self._client = client or redis.from_url(
            self.url,
            decode_responses=True,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )

    # -------------------------------------------------------------------------
    # Rate lookup caching
    # -------------------------------------------------------------------------

    @staticmethod
    def rate_key(hs_code: str, origin_country: str, destination_country: str) -> str:
        return f"rate:{hs_code}:{origin_country.upper()}:{destination_country.upper()}"

    def get_rate(
        self, hs_code: str, origin_country: str, destination_country: str
    ) -> Optional[Dict[str, Any]]:
        """Retrieve a cached rate lookup.

        Returns:
            Cached result dict or None on a miss or unreadable entry
        """
        data = self._client.get(self.rate_key(hs_code, origin_country, destination_country))
        if data:
            try:
                return json.loads(data)
            except (json.JSONDecodeError, TypeError):
                return None
        return None

    def set_rate(
        self,
        hs_code: str,
        origin_country: str,
        destination_country: str,
        result: Dict[str, Any],
        ttl: int = 86400,
    ) -> None:
        """Cache a rate lookup (default TTL 24 hours)."""

        key = self.rate_key(hs_code, origin_country, destination_country)
        self._client.setex(key, ttl, json.dumps(result))

    def invalidate_rates(self) -> int:
        """Drop every cached rate, e.g. after a tariff schedule update."""

        removed = 0
        for key in self._client.scan_iter(match="rate:*"):
            removed += self._client.delete(key)
        return removed

    # -------------------------------------------------------------------------
    # Job claims
    # -------------------------------------------------------------------------

    @contextmanager
    def job_claim(self, job_id: str, timeout: int = 3600, blocking_timeout: float = 0.0):
        """Exclusive claim on a job for the duration of its execution.

        Usage:
            with redis_client.job_claim(job_id) as acquired:
                if acquired:
                    run(job)

        Yields:
            True if the claim was acquired, False if another worker holds it
        """
        lock = Lock(
            self._client,
            f"job:lock:{job_id}",
            timeout=timeout,
            blocking=blocking_timeout > 0,
            blocking_timeout=blocking_timeout or None,
        )
        acquired = False
        try:
            acquired = lock.acquire()
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except redis.exceptions.LockError:
                    logger.warning("Claim on job %s expired before release", job_id)

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            return self._client.ping()
        except redis.exceptions.ConnectionError:
            return False


_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """Get singleton Redis client."""

    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
