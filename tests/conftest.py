"""
Shared Test Fixtures
====================

Everything runs in memory: no PostgreSQL or Redis is needed.
"""

import os

os.environ.setdefault("POSTGRES_PASSWORD", "test")
os.environ.setdefault("GOAPP_MODE", "testing")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("ERROR_LOGGER", "memory")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from taskapi.config import Settings
from taskapi.dependencies import get_task_repository
from taskapi.main import create_app
from taskapi.services.cache import InMemoryCache
from taskapi.services.error_log import MemoryErrorLogger
from taskapi.services.task_repository import InMemoryTaskRepository
from taskapi.services.task_service import TaskService


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        POSTGRES_PASSWORD="test",
        GOAPP_MODE="testing",
        CACHE_BACKEND="memory",
        ERROR_LOGGER="memory",
    )


@pytest.fixture
def cache(clock: FakeClock) -> InMemoryCache:
    return InMemoryCache(clock)


@pytest.fixture
def error_logger(clock: FakeClock) -> MemoryErrorLogger:
    return MemoryErrorLogger(clock)


@pytest.fixture
def repository(clock: FakeClock) -> InMemoryTaskRepository:
    return InMemoryTaskRepository(clock)


@pytest.fixture
def service(repository, cache, error_logger) -> TaskService:
    return TaskService(repository, cache, error_logger)


@pytest.fixture
def app(settings, cache, error_logger, repository):
    application = create_app(settings, cache=cache, error_logger=error_logger)
    application.dependency_overrides[get_task_repository] = lambda: repository
    return application


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
