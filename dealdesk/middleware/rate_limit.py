from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealdesk.context import get_correlation_id
from dealdesk.core.auth import bearer_token, decode_subject
from dealdesk.core.config import Settings, get_settings


LIMITED_PREFIXES = ("/api/deals", "/api/documents", "/api/onboarding")


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}
        self._last_sweep = time.monotonic()

    def take(self, user_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            if now - self._last_sweep >= window_seconds:
                self._evict_idle(now, window_seconds)

            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def _evict_idle(self, now: float, window_seconds: int) -> None:
        # A bucket idle for a full window has refilled and is equivalent to a new one.
        idle = [key for key, state in self._buckets.items() if now - state.last_refill >= window_seconds]
        for key in idle:
            del self._buckets[key]
        self._last_sweep = now

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith(LIMITED_PREFIXES) or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        route_group = _resolve_route_group(path)
        allowed, retry_after = _limiter.take(
            user_id=_resolve_user_id(request),
            route_group=route_group,
            capacity=_capacity_for(route_group, settings),
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": None,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 2:
        return "api"
    return parts[1]


def _capacity_for(route_group: str, settings: Settings) -> int:
    if route_group == "onboarding":
        return settings.rate_limit_onboarding_per_minute
    return settings.rate_limit_mutations_per_minute


def _resolve_user_id(request: Request) -> str:
    token = bearer_token(request)
    payload = decode_subject(token) if token else None
    if payload is None or payload.get("sub") is None:
        # Unauthenticated intake traffic is bucketed per client address.
        host = request.client.host if request.client else "unknown"
        return f"anonymous:{host}"
    return str(payload["sub"])


def reset_rate_limiter() -> None:
    _limiter.clear()
