"""Redis-based rate caching and job-claim locking."""

from tariffscope.caching.redis_client import RedisClient, get_redis_client

__all__ = ["RedisClient", "get_redis_client"]
