"""
Task Service
============

Business logic for task management.

Reads are look-aside cached: check the cache, fall back to the repository
on a miss, then write the result back with a tag (``tasks:list`` for list
variants, ``task:<id>`` for single tasks).

Writes go to the repository first. On success they invalidate the task's
own key, everything tagged ``tasks:list`` / ``task:<id>``, and every key
matching ``tasks_page_*`` / ``tasks_cursor_*``.

Cache failures never fail an operation. A failed cache read is logged and
treated as a miss. Failed writes and invalidations are logged and also
reported to the error logger.
"""

import logging
from typing import Any, Awaitable, Optional, TypeVar

from pydantic import ValidationError

from taskapi.core.exceptions import (
    CacheError,
    InternalError,
    NotFoundError,
    RepositoryError,
    TaskNotFoundError,
)
from taskapi.schemas.common import CursorQuery, PageQuery
from taskapi.schemas.task import (
    TaskCreate,
    TaskCursorPage,
    TaskPage,
    TaskRead,
    TaskUpdate,
)
from taskapi.services.cache import DEFAULT_TTL, CacheClient
from taskapi.services.cache_keys import TaskCacheKeys
from taskapi.services.error_log import ErrorLogger
from taskapi.services.task_repository import TaskRepository
from taskapi.utils.cursor import decode
from taskapi.utils.validators import (
    validate_cursor_query,
    validate_page_query,
    validate_title,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

SERVICE_NAME = "task_service"


class TaskService:
    """Service for task operations."""

    def __init__(
        self,
        repository: TaskRepository,
        cache: CacheClient,
        error_logger: ErrorLogger,
        ttl: int = DEFAULT_TTL,
    ):
        self.repository = repository
        self.cache = cache
        self.error_logger = error_logger
        self.ttl = ttl
        self.keys = TaskCacheKeys()

    # =========================================================================
    # Infrastructure helpers
    # =========================================================================

    async def _report(self, operation: str, message: str, metadata: dict[str, Any]) -> None:
        try:
            await self.error_logger.log_error(SERVICE_NAME, operation, message, metadata)
        except Exception as exc:
            logger.error("Error logger failed for %s: %s", operation, exc)

    async def _repo(self, operation: str, call: Awaitable[R]) -> R:
        """Await a repository call, translating its failures to service errors."""
        try:
            return await call
        except TaskNotFoundError as exc:
            raise NotFoundError(
                f"Task {exc.task_id} not found", task_id=exc.task_id
            ) from exc
        except RepositoryError as exc:
            logger.error("Task %s failed: %s", operation, exc)
            raise InternalError(f"task {operation} failed") from exc

    async def _cache_get(self, key: str) -> Optional[Any]:
        try:
            return await self.cache.get(key)
        except CacheError as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None

    async def _cache_put(self, key: str, value: Any, tag: str) -> None:
        try:
            await self.cache.set_with_tags(key, value, self.ttl, tag)
        except CacheError as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)
            await self._report("cache_set", str(exc), {"key": key})

    async def _invalidate(self, task_id: int, operation: str) -> None:
        """Drop every cached view the write may have changed."""
        steps = (
            ("delete", self.keys.for_task(task_id)),
            ("invalidate_by_tags", self.keys.LIST_TAG),
            ("delete_pattern", self.keys.PAGE_LIST_GLOB),
            ("delete_pattern", self.keys.CURSOR_LIST_GLOB),
        )
        for step, target in steps:
            try:
                if step == "delete":
                    await self.cache.delete(target)
                elif step == "invalidate_by_tags":
                    await self.cache.invalidate_by_tags(target, self.keys.task_tag(task_id))
                else:
                    await self.cache.delete_pattern(target)
            except CacheError as exc:
                logger.warning(
                    "Cache invalidation (%s %s) failed after %s: %s",
                    step, target, operation, exc,
                )
                await self._report(
                    f"{operation}.invalidate",
                    str(exc),
                    {"task_id": task_id, "step": step, "target": target},
                )

    # =========================================================================
    # Reads
    # =========================================================================

    async def list(self, cursor: str = "", limit: int = 0, order: str = "") -> TaskCursorPage:
        """
        One cursor page of tasks.

        Args:
            cursor: Opaque position from a previous page ("" for the start)
            limit: Page size (clamped to 1..100, default 10)
            order: "asc" or "desc" (default)

        Raises:
            InvalidArgumentError: If the cursor is malformed
        """
        query = validate_cursor_query(CursorQuery(cursor=cursor, limit=limit, order=order))
        position = decode(query.cursor)
        key = self.keys.for_cursor_list(query.cursor, query.limit, query.order)

        cached = await self._cache_get(key)
        if cached is not None:
            try:
                return TaskCursorPage.model_validate(cached)
            except ValidationError:
                logger.warning("Ignoring malformed cache entry %s", key)

        chunk = await self._repo(
            "list", self.repository.list_tasks(query.limit, position, query.order)
        )
        total = await self._repo("count", self.repository.get_total_count())
        page = TaskCursorPage(
            tasks=chunk.tasks,
            next_cursor=chunk.next_cursor,
            prev_cursor=chunk.prev_cursor,
            total_count=total,
            has_more=chunk.has_more,
        )
        await self._cache_put(key, page.model_dump(mode="json"), self.keys.LIST_TAG)
        return page

    async def list_by_page(self, page: int = 0, limit: int = 0, order: str = "") -> TaskPage:
        """One offset page of tasks plus the total number of live tasks."""
        query = validate_page_query(PageQuery(page=page, limit=limit, order=order))
        key = self.keys.for_page_list(query.page, query.limit, query.order)

        cached = await self._cache_get(key)
        if cached is not None:
            try:
                return TaskPage.model_validate(cached)
            except ValidationError:
                logger.warning("Ignoring malformed cache entry %s", key)

        tasks, total = await self._repo(
            "list_by_page",
            self.repository.list_by_page(query.page, query.limit, query.order),
        )
        result = TaskPage(tasks=tasks, total_count=total)
        await self._cache_put(key, result.model_dump(mode="json"), self.keys.LIST_TAG)
        return result

    async def list_by_id(self, task_id: int) -> TaskRead:
        """Get a single live task."""
        key = self.keys.for_task(task_id)

        cached = await self._cache_get(key)
        if cached is not None:
            try:
                return TaskRead.model_validate(cached)
            except ValidationError:
                logger.warning("Ignoring malformed cache entry %s", key)

        task = await self._repo("get_by_id", self.repository.get_by_id(task_id))
        if task is None:
            raise NotFoundError(f"Task {task_id} not found", task_id=task_id)

        await self._cache_put(key, task.model_dump(mode="json"), self.keys.task_tag(task_id))
        return task

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, data: TaskCreate) -> TaskRead:
        """Create a task. The title is stripped and must be 1..100 chars."""
        data = data.model_copy(update={"title": validate_title(data.title)})
        task = await self._repo("create", self.repository.create(data))
        await self._invalidate(task.id, "create")
        logger.info("Created task %s", task.id)
        return task

    async def update(self, task_id: int, changes: TaskUpdate) -> TaskRead:
        """
        Apply a partial update.

        The stored owner and creation time are always preserved.
        """
        if "title" in changes.model_fields_set:
            changes = changes.model_copy(update={"title": validate_title(changes.title)})
        task = await self._repo("update", self.repository.update(task_id, changes))
        await self._invalidate(task_id, "update")
        return task

    async def mark_as_done(self, task_id: int) -> TaskRead:
        """Set ``done`` to true. Marking a finished task again is a no-op."""
        task = await self._repo("mark_as_done", self.repository.mark_as_done(task_id))
        await self._invalidate(task_id, "mark_as_done")
        return task

    async def delete(self, task_id: int) -> None:
        """Soft-delete a task; deleting it again is a not-found error."""
        await self._repo("delete", self.repository.delete(task_id))
        await self._invalidate(task_id, "delete")
        logger.info("Deleted task %s", task_id)
