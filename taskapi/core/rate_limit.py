"""
Rate Limiting
=============

Fixed-window, per-client rate limiting on top of the K/V store.

Per window the algorithm is::

    INCR   counter_key          # creates at 1 on first call
    TTL    counter_key          # -1 while no expiry is set
    EXPIRE counter_key window   # only when TTL reported -1
    allowed = count <= limit

Bursts of up to 2x limit across a window boundary are accepted; that is
the cost of a single counter.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from taskapi.config import Settings
from taskapi.core.errors import ErrorCodes
from taskapi.core.exceptions import UnavailableError
from taskapi.utils.helpers import Clock, utc_now

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Request classes with independent limits."""
    READ = "read"
    WRITE = "write"
    PREFETCH = "prefetch"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_in: int  # seconds until the window closes


# =============================================================================
# Counter stores
# =============================================================================

class CounterStore(Protocol):
    async def incr(self, key: str, window_seconds: int) -> int: ...

    async def ttl(self, key: str) -> int: ...


class RedisCounterStore:
    """
    Counters in Redis.

    INCR and TTL run in one MULTI/EXEC; the expiry is attached only when
    the counter has none, so a window is never extended. Works on servers
    without ``EXPIRE NX`` (Redis < 7).
    """

    def __init__(self, client: Redis, operation_timeout: float = 1.0):
        self.client = client
        self.operation_timeout = operation_timeout

    async def incr(self, key: str, window_seconds: int) -> int:
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = await asyncio.wait_for(pipe.execute(), timeout=self.operation_timeout)
        if ttl == -1:
            await asyncio.wait_for(
                self.client.expire(key, window_seconds), timeout=self.operation_timeout
            )
        return int(count)

    async def ttl(self, key: str) -> int:
        return await asyncio.wait_for(self.client.ttl(key), timeout=self.operation_timeout)


class InMemoryCounterStore:
    """Process-local counters, for development and tests."""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._counters: dict[str, tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()

    async def incr(self, key: str, window_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            count, expires_at = self._counters.get(key, (0, now))
            if expires_at <= now:
                count, expires_at = 0, now + timedelta(seconds=window_seconds)
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    async def ttl(self, key: str) -> int:
        async with self._lock:
            entry = self._counters.get(key)
            if entry is None:
                return -2
            remaining = (entry[1] - self._clock()).total_seconds()
            return max(math.ceil(remaining), 0)


# =============================================================================
# Limiters
# =============================================================================

class FixedWindowRateLimiter:
    """
    At most ``limit`` events per ``window_seconds`` for each key.

    Store failures are raised as ``UnavailableError``; the caller decides
    whether to fail open or closed.
    """

    def __init__(
        self,
        store: CounterStore,
        limit: int,
        window_seconds: int,
        name: str = "default",
    ):
        if limit <= 0:
            raise ValueError("limit must be greater than 0")
        if window_seconds <= 0:
            raise ValueError("window must be greater than 0")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.name = name

    def _key(self, identifier: str) -> str:
        return f"rate_limit:{self.name}:{identifier}:{self.window_seconds}"

    async def check(self, identifier: str) -> RateLimitResult:
        key = self._key(identifier)
        try:
            count = await self.store.incr(key, self.window_seconds)
            reset_in = await self.store.ttl(key)
        except (RedisError, asyncio.TimeoutError) as exc:
            raise UnavailableError(f"rate limiter store failure: {exc}") from exc

        if reset_in <= 0:
            reset_in = self.window_seconds
        return RateLimitResult(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(self.limit - count, 0),
            reset_in=reset_in,
        )

    async def allow(self, identifier: str) -> bool:
        """Simple check if request is allowed."""
        result = await self.check(identifier)
        return result.allowed


class RateLimiter:
    """
    One fixed-window limiter per operation type.

    Default limits (per client, per minute):
        - read: 100
        - write: 50
        - prefetch: 200
    """

    DEFAULT_LIMITS = {
        OperationType.READ: 100,
        OperationType.WRITE: 50,
        OperationType.PREFETCH: 200,
    }

    def __init__(
        self,
        store: CounterStore,
        limits: Optional[Mapping[OperationType, int]] = None,
        window_seconds: int = 60,
    ):
        merged = {**self.DEFAULT_LIMITS, **(limits or {})}
        self._limiters = {
            op: FixedWindowRateLimiter(store, limit, window_seconds, name=op.value)
            for op, limit in merged.items()
        }

    @classmethod
    def from_settings(cls, settings: Settings, store: CounterStore) -> "RateLimiter":
        return cls(
            store,
            limits={
                OperationType.READ: settings.RATE_LIMIT_READ,
                OperationType.WRITE: settings.RATE_LIMIT_WRITE,
                OperationType.PREFETCH: settings.RATE_LIMIT_PREFETCH,
            },
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        )

    def limit_for(self, operation: OperationType) -> int:
        return self._limiters[operation].limit

    async def check(self, identifier: str, operation: OperationType) -> RateLimitResult:
        return await self._limiters[operation].check(identifier)


def classify(method: str, headers: Mapping[str, str], query: Mapping[str, str]) -> OperationType:
    """Map a request onto the limit bucket it counts against."""
    if method.upper() != "GET":
        return OperationType.WRITE
    if headers.get("X-Purpose") == "prefetch" or query.get("prefetch"):
        return OperationType.PREFETCH
    return OperationType.READ


# =============================================================================
# Middleware
# =============================================================================

class RateLimitMiddleware:
    """
    Raw ASGI middleware enforcing ``app.state.rate_limiter`` per client IP.

    - exceeded: 429 with ``Retry-After`` / ``X-RateLimit-Reset``
    - store failure: 503 (fail closed) unless *fail_open*
    - no limiter configured: pass-through
    """

    def __init__(
        self,
        app: ASGIApp,
        fail_open: bool = False,
        exempt_paths: tuple[str, ...] = ("/health", "/"),
    ):
        self.app = app
        self.fail_open = fail_open
        self.exempt_paths = exempt_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        owner = scope.get("app")
        limiter: Optional[RateLimiter] = getattr(
            getattr(owner, "state", None), "rate_limiter", None
        )
        if limiter is None:
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        operation = classify(request.method, request.headers, request.query_params)
        identifier = request.client.host if request.client else "unknown"
        limit = limiter.limit_for(operation)

        try:
            result = await limiter.check(identifier, operation)
        except UnavailableError as exc:
            logger.error("Rate limiter unavailable: %s", exc)
            if self.fail_open:
                await self.app(scope, receive, send)
                return
            response = JSONResponse(
                status_code=503,
                content={
                    "success": False,
                    "error": {
                        "code": ErrorCodes.RATE_LIMITER_UNAVAILABLE,
                        "message": "Rate limiter error",
                    },
                },
                headers={"X-RateLimit-Limit": str(limit)},
            )
            await response(scope, receive, send)
            return

        if not result.allowed:
            retry_after = max(result.reset_in, 1)
            reset_at = int((utc_now() + timedelta(seconds=retry_after)).timestamp())
            response = JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": {
                        "code": ErrorCodes.RATE_LIMIT_EXCEEDED,
                        "message": f"Too many requests. Try again in {retry_after} seconds.",
                        "retry_after": retry_after,
                    },
                },
                headers={
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(reset_at),
                    "Retry-After": str(retry_after),
                },
            )
            await response(scope, receive, send)
            return

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers["X-RateLimit-Limit"] = str(result.limit)
                headers["X-RateLimit-Remaining"] = str(result.remaining)
            await send(message)

        await self.app(scope, receive, send_wrapper)
