"""
Tasks API Endpoints
===================

Handles task CRUD operations and listing.

Reads carry an ``ETag`` computed over the returned tasks and answer
``304 Not Modified`` when ``If-None-Match`` matches it. Writes are marked
uncacheable.
"""

import math
from datetime import datetime
from typing import Iterable

from fastapi import APIRouter, Query, Request, Response, status

from taskapi.core.http_cache import (
    add_cache_control,
    generate_etag_from_tasks,
    is_not_modified,
    set_etag,
    set_last_modified,
)
from taskapi.dependencies import AppSettings, TaskServiceDep
from taskapi.schemas.common import BaseResponse, CursorQuery, PageQuery, PaginationMeta
from taskapi.schemas.task import TaskCreate, TaskListData, TaskRead, TaskUpdate
from taskapi.utils.helpers import utc_now
from taskapi.utils.validators import validate_cursor_query, validate_page_query

router = APIRouter()


def _last_modified(tasks: Iterable[TaskRead]) -> datetime:
    return max((t.updated_at for t in tasks), default=utc_now())


def _conditional(
    request: Request,
    response: Response,
    tasks: list[TaskRead],
    max_age: int,
) -> bool:
    """
    Set read caching headers on *response*.

    Returns True when the client's copy is current and a 304 should be sent.
    """
    tag = generate_etag_from_tasks(tasks)
    set_etag(response, tag)
    add_cache_control(response, is_mutating=False, max_age=max_age)
    if is_not_modified(request, tag):
        return True
    set_last_modified(response, _last_modified(tasks))
    return False


def _not_modified(response: Response) -> Response:
    return Response(
        status_code=status.HTTP_304_NOT_MODIFIED,
        headers=dict(response.headers),
    )


@router.get(
    "",
    response_model=BaseResponse[TaskListData],
)
async def list_tasks(
    request: Request,
    response: Response,
    service: TaskServiceDep,
    settings: AppSettings,
    cursor: str = Query(default=""),
    limit: int = Query(default=0),
    order: str = Query(default=""),
):
    """
    List tasks with cursor pagination.

    Pass ``nextCursor`` from the previous response to get the next page.
    """
    query = validate_cursor_query(CursorQuery(cursor=cursor, limit=limit, order=order))
    page = await service.list(query.cursor, query.limit, query.order)

    if _conditional(request, response, page.tasks, settings.HTTP_CACHE_MAX_AGE):
        return _not_modified(response)

    pagination = PaginationMeta(
        next_cursor=page.next_cursor,
        prev_cursor=page.prev_cursor,
        limit=query.limit,
        total_count=page.total_count,
        has_more=page.has_more,
        current_page=0,
        total_pages=math.ceil(page.total_count / query.limit),
        order=query.order,
        has_prev=bool(query.cursor),
        is_first_page=not query.cursor,
        is_last_page=not page.has_more,
    )
    return BaseResponse(data=TaskListData(tasks=page.tasks, pagination=pagination))


@router.get(
    "/page",
    response_model=BaseResponse[TaskListData],
)
async def list_tasks_by_page(
    request: Request,
    response: Response,
    service: TaskServiceDep,
    settings: AppSettings,
    page: int = Query(default=0),
    limit: int = Query(default=0),
    order: str = Query(default=""),
):
    """List tasks with page/limit pagination."""
    query = validate_page_query(PageQuery(page=page, limit=limit, order=order))
    result = await service.list_by_page(query.page, query.limit, query.order)

    if _conditional(request, response, result.tasks, settings.HTTP_CACHE_MAX_AGE):
        return _not_modified(response)

    total_pages = math.ceil(result.total_count / query.limit)
    pagination = PaginationMeta(
        limit=query.limit,
        total_count=result.total_count,
        has_more=query.page < total_pages,
        current_page=query.page,
        total_pages=total_pages,
        order=query.order,
        has_prev=query.page > 1,
        is_first_page=query.page == 1,
        is_last_page=query.page >= total_pages,
    )
    return BaseResponse(data=TaskListData(tasks=result.tasks, pagination=pagination))


@router.get(
    "/{task_id}",
    response_model=BaseResponse[TaskRead],
)
async def get_task(
    task_id: int,
    request: Request,
    response: Response,
    service: TaskServiceDep,
    settings: AppSettings,
):
    """Get a single task."""
    task = await service.list_by_id(task_id)

    if _conditional(request, response, [task], settings.HTTP_CACHE_MAX_AGE):
        return _not_modified(response)

    return BaseResponse(data=task)


@router.post(
    "",
    response_model=BaseResponse[TaskRead],
    status_code=status.HTTP_201_CREATED,
)
async def create_task(
    task_data: TaskCreate,
    response: Response,
    service: TaskServiceDep,
):
    """Create a new task."""
    task = await service.create(task_data)
    add_cache_control(response, is_mutating=True, max_age=0)
    return BaseResponse(data=task, message="Task created")


@router.patch(
    "/{task_id}",
    response_model=BaseResponse[TaskRead],
)
async def update_task(
    task_id: int,
    task_data: TaskUpdate,
    response: Response,
    service: TaskServiceDep,
):
    """Update a task. ``owner`` in the body is ignored."""
    task = await service.update(task_id, task_data)
    add_cache_control(response, is_mutating=True, max_age=0)
    return BaseResponse(data=task, message="Task updated")


@router.patch(
    "/{task_id}/done",
    response_model=BaseResponse[TaskRead],
)
async def mark_task_done(
    task_id: int,
    response: Response,
    service: TaskServiceDep,
):
    """Mark a task as done."""
    task = await service.mark_as_done(task_id)
    add_cache_control(response, is_mutating=True, max_age=0)
    return BaseResponse(data=task, message="Task marked as done")


@router.delete(
    "/{task_id}",
    response_model=BaseResponse[None],
)
async def delete_task(
    task_id: int,
    response: Response,
    service: TaskServiceDep,
):
    """Delete a task."""
    await service.delete(task_id)
    add_cache_control(response, is_mutating=True, max_age=0)
    return BaseResponse(message="Task deleted")
