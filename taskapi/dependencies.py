"""
Common Dependencies
===================

Shared dependencies used across the application.

Long-lived collaborators (settings, cache, error logger) live on
``app.state`` and are created by the application lifespan. Tests replace
the repository through ``app.dependency_overrides[get_task_repository]``.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taskapi.config import Settings
from taskapi.db.session import get_db
from taskapi.services.cache import CacheClient
from taskapi.services.error_log import ErrorLogger
from taskapi.services.task_repository import SQLAlchemyTaskRepository, TaskRepository
from taskapi.services.task_service import TaskService


def get_app_settings(request: Request) -> Settings:
    """Settings the running application was created with."""
    return request.app.state.settings


def get_cache(request: Request) -> CacheClient:
    return request.app.state.cache


def get_error_logger(request: Request) -> ErrorLogger:
    return request.app.state.error_logger


# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]


def get_task_repository(db: DBSession, settings: AppSettings) -> TaskRepository:
    """PostgreSQL-backed repository bound to the request's session."""
    return SQLAlchemyTaskRepository(db, operation_timeout=settings.DB_OPERATION_TIMEOUT)


def get_task_service(
    repository: Annotated[TaskRepository, Depends(get_task_repository)],
    cache: Annotated[CacheClient, Depends(get_cache)],
    error_logger: Annotated[ErrorLogger, Depends(get_error_logger)],
    settings: AppSettings,
) -> TaskService:
    return TaskService(
        repository,
        cache,
        error_logger,
        ttl=settings.CACHE_TTL_SECONDS,
    )


TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
