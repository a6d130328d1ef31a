"""Rate-limiting middleware -- sliding-window, per-tenant and per-IP.

Implements an in-memory sliding window counter with support for:
- Per-tenant keys (session-validated tenant header, webhook shop header,
  or the tenant id in a function-bridge path).
- Per-IP fallback when no tenant can be identified.
- Path-specific per-minute limits (webhooks, provisioning, bridge, OAuth).
- Burst allowance via a configurable multiplier.

.. warning:: **Single-replica limitation**

   Counters live in process memory: each replica enforces its own budget
   and a restart resets every counter.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gateway_core.domains import DEFAULT_DOMAIN_SUFFIX, normalize_tenant_domain

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware becomes a
            no-op pass-through.
        default_requests_per_minute: Baseline request budget per client
            within the sliding window.
        burst_multiplier: Multiplier applied to every per-minute limit.
        path_limits: Mapping of path patterns (``fnmatch`` glob syntax) to
            per-minute limits, checked in insertion order.
        exempt_paths: Paths that bypass rate limiting entirely.
        tenant_headers: Headers that identify the tenant, in lookup order.
        domain_suffix: Suffix used to normalize tenant-domain keys.
    """

    enabled: bool = True
    default_requests_per_minute: int = 60
    burst_multiplier: float = 1.5
    path_limits: dict[str, int] = {
        "/webhooks": 100,
        "/provision": 5,
        "/functions/*": 120,
        "/auth*": 20,
    }
    exempt_paths: set[str] = {"/health"}
    tenant_headers: tuple[str, ...] = ("X-Tenant-Domain", "X-Shop-Domain")
    domain_suffix: str = DEFAULT_DOMAIN_SUFFIX


# ---------------------------------------------------------------------------
# Sliding window counter
# ---------------------------------------------------------------------------

_WINDOW_SECONDS: float = 60.0
_CLEANUP_INTERVAL_SECONDS: float = 60.0


class SlidingWindowCounter:
    """Asyncio-safe sliding window request counter.

    Each client key maps to a :class:`~collections.deque` of monotonic
    timestamps.  :meth:`hit` prunes entries older than ``window_seconds``
    before appending the current timestamp, and at most once per cleanup
    interval sweeps keys that have gone idle.
    """

    def __init__(
        self,
        window_seconds: float = _WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._buckets: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()
        self._last_cleanup = clock()

    async def hit(self, key: str) -> int:
        """Record a request for *key* and return the count within the window."""
        now = self._clock()
        cutoff = now - self._window

        async with self._lock:
            if now - self._last_cleanup >= _CLEANUP_INTERVAL_SECONDS:
                self._sweep(cutoff)
                self._last_cleanup = now

            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            return len(bucket)

    async def time_until_reset(self, key: str) -> float:
        """Seconds until the oldest entry in *key*'s window expires."""
        now = self._clock()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            return max((bucket[0] + self._window) - now, 0.0)

    @property
    def tracked_keys(self) -> int:
        return len(self._buckets)

    def _sweep(self, cutoff: float) -> None:
        stale_keys = []
        for key, bucket in self._buckets.items():
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if not bucket:
                stale_keys.append(key)
        for key in stale_keys:
            del self._buckets[key]
        if stale_keys:
            logger.debug("Rate-limit cleanup removed %d stale keys", len(stale_keys))


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing per-client sliding-window rate limits.

    Client identification strategy:

    1. The first configured tenant header present (the session-validated
       ``X-Tenant-Domain`` or the platform's webhook shop header), as a
       normalized tenant domain.
    2. The tenant id segment of ``/functions/{tenant_id}``.
    3. Otherwise the client IP address.

    Every limited response carries ``X-RateLimit-Limit``,
    ``X-RateLimit-Remaining`` and ``X-RateLimit-Reset``.  Over-budget
    requests get ``429`` with ``Retry-After``; bridge paths keep their
    ``{"results": [...]}`` body shape, everything else uses the error
    envelope.
    """

    def __init__(
        self,
        app: Any,
        config: RateLimitConfig | None = None,
        counter: SlidingWindowCounter | None = None,
    ) -> None:
        super().__init__(app)
        self._config = config or RateLimitConfig()
        self._counter = counter or SlidingWindowCounter()
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, rpm=%d, burst=%.1fx)",
            self._config.enabled,
            self._config.default_requests_per_minute,
            self._config.burst_multiplier,
        )

    # -- Helpers -------------------------------------------------------------

    def _client_key(self, request: Request) -> str:
        for header in self._config.tenant_headers:
            value = request.headers.get(header)
            if value:
                domain = normalize_tenant_domain(value, self._config.domain_suffix)
                if domain:
                    return f"tenant:{domain}"
        path = request.url.path
        if path.startswith("/functions/"):
            tenant_id = path[len("/functions/") :].split("/", 1)[0]
            if tenant_id:
                return f"tenant:{tenant_id}"
        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    def _limit_for_path(self, path: str) -> int:
        """Return the per-minute limit for *path*; ``0`` means exempt."""
        if path in self._config.exempt_paths:
            return 0
        for pattern, limit in self._config.path_limits.items():
            if path == pattern or fnmatch.fnmatch(path, pattern):
                return limit
        return self._config.default_requests_per_minute

    @staticmethod
    def _rejection_body(path: str, retry_after: int) -> dict[str, Any]:
        message = "Rate limit exceeded. Try again later."
        if path.startswith("/functions/"):
            return {"results": [{"error": message}]}
        return {
            "success": False,
            "error": {
                "code": "RATE_LIMIT_EXCEEDED",
                "message": message,
                "statusCode": 429,
                "details": {"retryAfter": retry_after},
            },
            "timestamp": datetime.now(UTC).isoformat(),
        }

    # -- Dispatch ------------------------------------------------------------

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._config.enabled:
            return await call_next(request)

        path = request.url.path
        base_limit = self._limit_for_path(path)
        if base_limit == 0:
            return await call_next(request)

        burst_limit = int(base_limit * self._config.burst_multiplier)
        client_key = self._client_key(request)
        # One budget per client and limit tier.
        counter_key = f"{client_key}:{base_limit}"

        current_count = await self._counter.hit(counter_key)
        if current_count > burst_limit:
            retry_after = max(int(await self._counter.time_until_reset(counter_key)) + 1, 1)
            logger.warning(
                "Rate limit exceeded: key=%s path=%s count=%d limit=%d",
                client_key,
                path,
                current_count,
                burst_limit,
            )
            return JSONResponse(
                status_code=429,
                content=self._rejection_body(path, retry_after),
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(burst_limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after),
                },
            )

        response = await call_next(request)

        reset = max(int(await self._counter.time_until_reset(counter_key)) + 1, 1)
        response.headers["X-RateLimit-Limit"] = str(burst_limit)
        response.headers["X-RateLimit-Remaining"] = str(max(burst_limit - current_count, 0))
        response.headers["X-RateLimit-Reset"] = str(reset)
        return response
