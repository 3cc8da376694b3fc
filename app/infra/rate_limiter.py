# app/infra/rate_limiter.py
from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock
from typing import Optional

from fastapi import HTTPException, Request, status

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Sliding-window rate limiter keyed by an arbitrary string (client IP).

    Per-process only: with N replicas the effective limit is N x max_requests.
    Every ``sweep_every`` calls, keys with no request inside the window are
    dropped so the map stays bounded by recently active clients.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60, sweep_every: int = 1000):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.sweep_every = sweep_every
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._calls = 0
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._requests)

    def is_allowed(self, key: str, now: float | None = None) -> tuple[bool, Optional[int]]:
        """
        Record a request for ``key`` if it fits in the window.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = time.time() if now is None else now
        cutoff = now - self.window_seconds

        with self._lock:
            self._calls += 1
            if self._calls % self.sweep_every == 0:
                self._sweep(cutoff)

            recent = [ts for ts in self._requests[key] if ts > cutoff]
            self._requests[key] = recent

            if len(recent) >= self.max_requests:
                retry_after = int(min(recent) + self.window_seconds - now) + 1
                logger.warning(
                    "Rate limit exceeded",
                    extra={"count": len(recent), "limit": self.max_requests, "retry_after": retry_after},
                )
                return False, retry_after

            recent.append(now)
            return True, None

    def _sweep(self, cutoff: float) -> int:
        # Caller holds the lock
        stale = [k for k, ts in self._requests.items() if not ts or max(ts) <= cutoff]
        for key in stale:
            del self._requests[key]
        if stale:
            logger.debug(f"Rate limiter sweep: removed {len(stale)} keys")
        return len(stale)

    def cleanup(self, max_age_seconds: int = 3600, now: float | None = None) -> int:
        """Drop keys idle for longer than max_age_seconds; returns how many."""
        cutoff = (time.time() if now is None else now) - max_age_seconds

        with self._lock:
            removed = self._sweep(cutoff)

        if removed:
            logger.info(f"Rate limiter cleanup: removed {removed} keys")
        return removed


def client_ip(request: Request) -> str:
    """
    Caller IP.

    The first X-Forwarded-For hop is used only with TRUST_PROXY_HEADERS set,
    since clients can put anything in that header.
    """
    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitDependency:
    """FastAPI dependency that rejects over-limit callers with 429"""

    def __init__(self, limiter: InMemoryRateLimiter):
        self.limiter = limiter

    async def __call__(self, request: Request) -> None:
        allowed, retry_after = self.limiter.is_allowed(client_ip(request))
        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
