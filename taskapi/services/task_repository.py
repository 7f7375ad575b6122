"""
Task Repository
===============

Persistence for tasks behind a small async contract.

Implementations:
    SQLAlchemyTaskRepository   PostgreSQL through an AsyncSession
    InMemoryTaskRepository     dict guarded by an asyncio.Lock (tests, dev)

Ordering is always ``(created_at, id)`` in the requested direction. Cursor
lists read ``limit + 1`` rows to detect a following page and use a strict
tuple comparison against the cursor position, so pages never overlap.
Soft-deleted rows are invisible to every read.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, TypeVar

from sqlalchemy import Select, func, select, tuple_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taskapi.core.exceptions import RepositoryError, TaskNotFoundError
from taskapi.models.task import Task
from taskapi.schemas.task import TaskCreate, TaskRead, TaskUpdate
from taskapi.utils.cursor import Cursor, CursorOptions, encode, new_cursor
from taskapi.utils.helpers import Clock, utc_now

logger = logging.getLogger(__name__)

R = TypeVar("R")

CURSOR_FIELD = "created_at"


@dataclass
class CursorSlice:
    """One cursor page as read from the store."""

    tasks: list[TaskRead] = field(default_factory=list)
    next_cursor: str = ""
    prev_cursor: str = ""
    has_more: bool = False


class TaskRepository(Protocol):
    async def create(self, data: TaskCreate) -> TaskRead: ...

    async def get_by_id(self, task_id: int) -> Optional[TaskRead]: ...

    async def list_tasks(self, limit: int, cursor: Cursor, order: str) -> CursorSlice: ...

    async def list_by_page(
        self, page: int, limit: int, order: str
    ) -> tuple[list[TaskRead], int]: ...

    async def update(self, task_id: int, changes: TaskUpdate) -> TaskRead: ...

    async def mark_as_done(self, task_id: int) -> TaskRead: ...

    async def delete(self, task_id: int) -> None: ...

    async def get_total_count(self) -> int: ...


# =============================================================================
# Shared helpers
# =============================================================================

def build_cursor_slice(
    rows: Sequence[TaskRead],
    limit: int,
    order: str,
    after_cursor: bool,
) -> CursorSlice:
    """
    Trim a ``limit + 1`` read down to one page and derive its cursors.

    ``next_cursor`` points at the last visible row when more rows follow;
    ``prev_cursor`` points at the first visible row when the page was
    reached through a cursor.
    """
    opts = CursorOptions(field=CURSOR_FIELD, direction=order.upper())
    has_more = len(rows) > limit
    tasks = list(rows[:limit])

    next_cursor = ""
    if has_more and tasks:
        last = tasks[-1]
        next_cursor = encode(new_cursor(last.id, last.created_at), opts)

    prev_cursor = ""
    if after_cursor and tasks:
        first = tasks[0]
        prev_cursor = encode(new_cursor(first.id, first.created_at), opts)

    return CursorSlice(
        tasks=tasks,
        next_cursor=next_cursor,
        prev_cursor=prev_cursor,
        has_more=has_more,
    )


def _changed_fields(changes: TaskUpdate) -> dict[str, Any]:
    """Fields an update applies. Owner never changes after creation."""
    data = changes.model_dump(exclude_unset=True, exclude={"owner"})
    return {
        name: value
        for name, value in data.items()
        if value is not None or name == "description"
    }


def _bump(previous: datetime, now: datetime) -> datetime:
    # updated_at never moves backwards, even if the clock does
    return now if now > previous else previous


# =============================================================================
# SQL statements
# =============================================================================

def _live():
    return Task.deleted_at.is_(None)


def _ordering(order: str) -> tuple:
    if order == "asc":
        return (Task.created_at.asc(), Task.id.asc())
    return (Task.created_at.desc(), Task.id.desc())


def cursor_list_statement(limit: int, cursor: Cursor, order: str) -> Select:
    """``SELECT`` for one cursor page, reading one extra row."""
    stmt = select(Task).where(_live())
    if not cursor.is_empty:
        position = tuple_(Task.created_at, Task.id)
        after = (cursor.timestamp, cursor.id)
        stmt = stmt.where(position > after if order == "asc" else position < after)
    return stmt.order_by(*_ordering(order)).limit(limit + 1)


def page_list_statement(page: int, limit: int, order: str) -> Select:
    """``SELECT`` for one offset page."""
    return (
        select(Task)
        .where(_live())
        .order_by(*_ordering(order))
        .offset((page - 1) * limit)
        .limit(limit)
    )


def count_statement() -> Select:
    return select(func.count()).select_from(Task).where(_live())


# =============================================================================
# SQLAlchemy implementation
# =============================================================================

class SQLAlchemyTaskRepository:
    """
    Task persistence on PostgreSQL.

    Every call is bounded by ``operation_timeout``. Timeouts and driver
    errors roll the session back and surface as ``RepositoryError``;
    a missing row surfaces as ``TaskNotFoundError``.
    """

    def __init__(
        self,
        session: AsyncSession,
        operation_timeout: float = 10.0,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.operation_timeout = operation_timeout
        self._clock = clock

    async def _run(self, name: str, operation: Callable[[], Awaitable[R]]) -> R:
        try:
            return await asyncio.wait_for(operation(), timeout=self.operation_timeout)
        except TaskNotFoundError:
            await self.session.rollback()
            raise
        except asyncio.TimeoutError as exc:
            await self.session.rollback()
            raise RepositoryError(f"{name} timed out") from exc
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("Task repository %s failed: %s", name, exc)
            raise RepositoryError(f"{name} failed") from exc

    async def create(self, data: TaskCreate) -> TaskRead:
        async def op() -> TaskRead:
            now = self._clock()
            task = Task(
                title=data.title,
                description=data.description,
                owner=data.owner,
                done=False,
                created_at=now,
                updated_at=now,
            )
            self.session.add(task)
            await self.session.flush()
            await self.session.commit()
            return TaskRead.model_validate(task)

        return await self._run("create", op)

    async def get_by_id(self, task_id: int) -> Optional[TaskRead]:
        async def op() -> Optional[TaskRead]:
            result = await self.session.execute(
                select(Task).where(Task.id == task_id, _live())
            )
            task = result.scalar_one_or_none()
            return TaskRead.model_validate(task) if task is not None else None

        return await self._run("get_by_id", op)

    async def list_tasks(self, limit: int, cursor: Cursor, order: str) -> CursorSlice:
        async def op() -> CursorSlice:
            result = await self.session.execute(cursor_list_statement(limit, cursor, order))
            rows = [TaskRead.model_validate(t) for t in result.scalars().all()]
            return build_cursor_slice(rows, limit, order, not cursor.is_empty)

        return await self._run("list", op)

    async def list_by_page(
        self, page: int, limit: int, order: str
    ) -> tuple[list[TaskRead], int]:
        async def op() -> tuple[list[TaskRead], int]:
            total = (await self.session.execute(count_statement())).scalar_one()
            result = await self.session.execute(page_list_statement(page, limit, order))
            return [TaskRead.model_validate(t) for t in result.scalars().all()], total

        return await self._run("list_by_page", op)

    async def _locked(self, task_id: int) -> Task:
        result = await self.session.execute(
            select(Task).where(Task.id == task_id, _live()).with_for_update()
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def update(self, task_id: int, changes: TaskUpdate) -> TaskRead:
        async def op() -> TaskRead:
            task = await self._locked(task_id)
            for name, value in _changed_fields(changes).items():
                setattr(task, name, value)
            task.updated_at = _bump(task.updated_at, self._clock())
            await self.session.commit()
            return TaskRead.model_validate(task)

        return await self._run("update", op)

    async def mark_as_done(self, task_id: int) -> TaskRead:
        async def op() -> TaskRead:
            task = await self._locked(task_id)
            task.done = True
            task.updated_at = _bump(task.updated_at, self._clock())
            await self.session.commit()
            return TaskRead.model_validate(task)

        return await self._run("mark_as_done", op)

    async def delete(self, task_id: int) -> None:
        async def op() -> None:
            now = self._clock()
            result = await self.session.execute(
                update(Task)
                .where(Task.id == task_id, _live())
                .values(deleted_at=now, updated_at=now)
            )
            if result.rowcount == 0:
                raise TaskNotFoundError(task_id)
            await self.session.commit()

        await self._run("delete", op)

    async def get_total_count(self) -> int:
        async def op() -> int:
            return (await self.session.execute(count_statement())).scalar_one()

        return await self._run("get_total_count", op)


# =============================================================================
# In-memory implementation
# =============================================================================

@dataclass
class _StoredTask:
    task: TaskRead
    deleted_at: Optional[datetime] = None


class InMemoryTaskRepository:
    """Same contract as the SQL repository, kept in a dict."""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._rows: dict[int, _StoredTask] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    def _live_sorted(self, order: str) -> list[TaskRead]:
        live = [row.task for row in self._rows.values() if row.deleted_at is None]
        live.sort(key=lambda t: (t.created_at, t.id), reverse=(order != "asc"))
        return live

    def _get_live(self, task_id: int) -> _StoredTask:
        row = self._rows.get(task_id)
        if row is None or row.deleted_at is not None:
            raise TaskNotFoundError(task_id)
        return row

    async def create(self, data: TaskCreate) -> TaskRead:
        async with self._lock:
            now = self._clock()
            task = TaskRead(
                id=next(self._ids),
                title=data.title,
                description=data.description,
                done=False,
                owner=data.owner,
                created_at=now,
                updated_at=now,
            )
            self._rows[task.id] = _StoredTask(task)
            return task

    async def get_by_id(self, task_id: int) -> Optional[TaskRead]:
        async with self._lock:
            row = self._rows.get(task_id)
            if row is None or row.deleted_at is not None:
                return None
            return row.task

    async def list_tasks(self, limit: int, cursor: Cursor, order: str) -> CursorSlice:
        async with self._lock:
            rows = self._live_sorted(order)

        if not cursor.is_empty:
            after = (cursor.timestamp, cursor.id)
            if order == "asc":
                rows = [t for t in rows if (t.created_at, t.id) > after]
            else:
                rows = [t for t in rows if (t.created_at, t.id) < after]
        return build_cursor_slice(rows[: limit + 1], limit, order, not cursor.is_empty)

    async def list_by_page(
        self, page: int, limit: int, order: str
    ) -> tuple[list[TaskRead], int]:
        async with self._lock:
            rows = self._live_sorted(order)
        offset = (page - 1) * limit
        return rows[offset:offset + limit], len(rows)

    async def update(self, task_id: int, changes: TaskUpdate) -> TaskRead:
        async with self._lock:
            row = self._get_live(task_id)
            fields = _changed_fields(changes)
            fields["updated_at"] = _bump(row.task.updated_at, self._clock())
            row.task = row.task.model_copy(update=fields)
            return row.task

    async def mark_as_done(self, task_id: int) -> TaskRead:
        async with self._lock:
            row = self._get_live(task_id)
            row.task = row.task.model_copy(
                update={"done": True, "updated_at": _bump(row.task.updated_at, self._clock())}
            )
            return row.task

    async def delete(self, task_id: int) -> None:
        async with self._lock:
            row = self._get_live(task_id)
            row.deleted_at = self._clock()

    async def get_total_count(self) -> int:
        async with self._lock:
            return sum(1 for row in self._rows.values() if row.deleted_at is None)
