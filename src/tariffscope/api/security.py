from __future__ import annotations

import os
import threading
import time
from typing import Dict, Optional, Tuple

from fastapi import Header, HTTPException, Request

from tariffscope.config import get_settings


def allowed_api_keys() -> frozenset[str]:
    """Configured API keys (``TSC_API_KEYS``), ``dev-key`` when unset."""

    return get_settings().api_keys


class RateLimiter:
    """Lightweight in-process rate limiter keyed by (api_key, route)."""

    def __init__(self, rate_per_minute: int = 60, window_seconds: int | None = None) -> None:
        self.rate_per_minute = max(1, rate_per_minute)
        self.window_seconds = max(1, window_seconds or int(os.getenv("TSC_RATE_WINDOW_SEC", "60")))
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], Tuple[int, int]] = {}

    def _current_window(self) -> int:
        return int(time.time() // self.window_seconds)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    def check(self, api_key: str, route: str) -> None:
        window = self._current_window()
        key = (api_key, route)
        with self._lock:
            count, active_window = self._counters.get(key, (0, window))
            if active_window != window:
                count = 0
                active_window = window

            if count >= self.rate_per_minute:
                raise HTTPException(
                    status_code=429,
                    detail={
                        "message": "Rate limit exceeded",
                        "code": "rate_limited",
                        "limit_per_minute": self.rate_per_minute,
                        "route": route,
                    },
                )

            self._counters[key] = (count + 1, active_window)


rate_limiter = RateLimiter(rate_per_minute=get_settings().rate_limit_per_minute)


def require_api_key(request: Request, x_api_key: Optional[str] = Header(None)) -> str:
    """Validate the provided API key and enforce per-route rate limits."""

    if not x_api_key:
        raise HTTPException(status_code=401, detail={"message": "Missing API key", "code": "unauthorized"})
    if x_api_key not in allowed_api_keys():
        raise HTTPException(status_code=401, detail={"message": "Invalid API key", "code": "unauthorized"})

    rate_limiter.check(x_api_key, request.url.path)
    return x_api_key


def workspace_id(x_workspace_id: Optional[str] = Header(None)) -> str:
    """Workspace scoping for every collection; ``default`` when the header is absent."""

    return (x_workspace_id or "default").strip() or "default"


def set_rate_limit(limit: int) -> None:
    """Utility hook for tests to reconfigure the limiter."""

    global rate_limiter
    rate_limiter = RateLimiter(rate_per_minute=max(1, int(limit)))
