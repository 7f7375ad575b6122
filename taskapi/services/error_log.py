"""
Error Log Sink
==============

Out-of-band sink for failures the caller never sees (cache invalidation,
cache writes). Records are ``{service, operation, error, timestamp,
metadata}``.

Backends:
    MemoryErrorLogger       list in process memory
    RedisErrorLogger        one hash per record at ``errorlog:<service>:<unix_ns>``
    NonBlockingErrorLogger  fire-and-forget wrapper around another logger
"""

import asyncio
import json
import logging
from typing import Any, Literal, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from taskapi.utils.helpers import Clock, format_datetime, to_unix_nanos, utc_now

logger = logging.getLogger(__name__)

ErrorLoggerKind = Literal["redis", "memory", "nonblocking"]


class ErrorLogger(Protocol):
    async def log_error(
        self,
        service: str,
        operation: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None: ...

    async def close(self) -> None: ...


def _record(
    service: str,
    operation: str,
    message: str,
    metadata: Optional[dict[str, Any]],
    clock: Clock,
) -> dict[str, Any]:
    return {
        "service": service,
        "operation": operation,
        "error": message,
        "timestamp": format_datetime(clock()),
        "metadata": dict(metadata or {}),
    }


class MemoryErrorLogger:
    """Keeps records in memory. Used in development and tests."""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._errors: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def log_error(
        self,
        service: str,
        operation: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        record = _record(service, operation, message, metadata, self._clock)
        async with self._lock:
            self._errors.append(record)

    async def get_errors(self) -> list[dict[str, Any]]:
        async with self._lock:
            return list(self._errors)

    async def close(self) -> None:
        return None


class RedisErrorLogger:
    """Writes each record as a Redis hash."""

    KEY_PREFIX = "errorlog"

    def __init__(self, client: Redis, clock: Clock = utc_now):
        self.client = client
        self._clock = clock
        self._last_ns = 0

    async def log_error(
        self,
        service: str,
        operation: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        now = self._clock()
        record = _record(service, operation, message, metadata, lambda: now)
        record["metadata"] = json.dumps(record["metadata"], default=str)
        # keys stay unique when the clock repeats or steps back
        self._last_ns = max(to_unix_nanos(now), self._last_ns + 1)
        key = f"{self.KEY_PREFIX}:{service}:{self._last_ns}"
        await self.client.hset(key, mapping=record)

    async def close(self) -> None:
        return None


class NonBlockingErrorLogger:
    """
    Schedules writes on the event loop and returns immediately.

    A failed write is reported through ``logging`` and dropped.
    ``close`` waits for writes still in flight.
    """

    def __init__(self, inner: ErrorLogger):
        self.inner = inner
        self._pending: set[asyncio.Task] = set()

    async def log_error(
        self,
        service: str,
        operation: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        task = asyncio.create_task(
            self._write(service, operation, message, metadata)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(
        self,
        service: str,
        operation: str,
        message: str,
        metadata: Optional[dict[str, Any]],
    ) -> None:
        try:
            await self.inner.log_error(service, operation, message, metadata)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "Failed to write error log %s.%s: %s", service, operation, exc
            )

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.inner.close()


def create_error_logger(
    kind: ErrorLoggerKind = "nonblocking",
    redis: Optional[Redis] = None,
) -> ErrorLogger:
    """
    Build the configured error logger.

    Args:
        kind: ``redis``, ``memory`` or ``nonblocking``
        redis: Client for the Redis-backed variants

    Returns:
        ErrorLogger instance
    """
    if kind == "redis":
        if redis is None:
            raise ValueError("redis error logger requires a Redis client")
        return RedisErrorLogger(redis)
    if kind == "memory":
        return MemoryErrorLogger()
    if kind == "nonblocking":
        inner: ErrorLogger = RedisErrorLogger(redis) if redis is not None else MemoryErrorLogger()
        return NonBlockingErrorLogger(inner)
    raise ValueError(f"unknown error logger: {kind}")
