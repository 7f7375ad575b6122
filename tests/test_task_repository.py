"""
Task Repository Tests
=====================

In-memory repository behavior, SQL statement shape, and the SQLAlchemy
repository's error handling against a mocked session.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from taskapi.core.exceptions import RepositoryError, TaskNotFoundError
from taskapi.models.task import Task
from taskapi.schemas.task import TaskCreate, TaskUpdate
from taskapi.services.task_repository import (
    SQLAlchemyTaskRepository,
    count_statement,
    cursor_list_statement,
    page_list_statement,
)
from taskapi.utils.cursor import Cursor, decode, new_cursor

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


async def _seed(repository, clock, count, owner=1):
    created = []
    for i in range(count):
        created.append(await repository.create(TaskCreate(title=f"task {i}", owner=owner)))
        clock.advance(1)
    return created


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _literal_sql(stmt) -> str:
    return str(
        stmt.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True})
    )


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------

class TestInMemoryCursorPaging:
    """Cursor pagination on InMemoryTaskRepository"""

    @pytest.mark.asyncio
    async def test_desc_pages_have_no_gaps_or_duplicates(self, repository, clock):
        await _seed(repository, clock, 10)

        seen, cursor = [], Cursor()
        pages = []
        while True:
            chunk = await repository.list_tasks(3, cursor, "desc")
            pages.append([t.id for t in chunk.tasks])
            seen.extend(t.id for t in chunk.tasks)
            if not chunk.next_cursor:
                break
            cursor = decode(chunk.next_cursor)

        assert pages == [[10, 9, 8], [7, 6, 5], [4, 3, 2], [1]]
        assert len(seen) == len(set(seen)) == 10

    @pytest.mark.asyncio
    async def test_asc_order(self, repository, clock):
        await _seed(repository, clock, 4)
        first = await repository.list_tasks(2, Cursor(), "asc")
        second = await repository.list_tasks(2, decode(first.next_cursor), "asc")

        assert [t.id for t in first.tasks] == [1, 2]
        assert [t.id for t in second.tasks] == [3, 4]
        assert second.next_cursor == ""
        assert second.has_more is False

    @pytest.mark.asyncio
    async def test_ties_on_created_at_break_by_id(self, repository):
        for i in range(4):
            await repository.create(TaskCreate(title=f"same time {i}"))

        first = await repository.list_tasks(2, Cursor(), "desc")
        second = await repository.list_tasks(2, decode(first.next_cursor), "desc")

        assert [t.id for t in first.tasks] == [4, 3]
        assert [t.id for t in second.tasks] == [2, 1]

    @pytest.mark.asyncio
    async def test_prev_cursor_only_after_a_cursor(self, repository, clock):
        await _seed(repository, clock, 5)
        first = await repository.list_tasks(2, Cursor(), "desc")
        second = await repository.list_tasks(2, decode(first.next_cursor), "desc")

        assert first.prev_cursor == ""
        assert decode(second.prev_cursor).id == second.tasks[0].id

    @pytest.mark.asyncio
    async def test_exact_multiple_has_no_next_cursor(self, repository, clock):
        await _seed(repository, clock, 3)
        chunk = await repository.list_tasks(3, Cursor(), "desc")
        assert chunk.has_more is False
        assert chunk.next_cursor == ""


class TestInMemoryWrites:
    """Writes on InMemoryTaskRepository"""

    @pytest.mark.asyncio
    async def test_create_assigns_ids_and_timestamps(self, repository, clock):
        task = await repository.create(TaskCreate(title="a", description="d", owner=7))
        assert task.id == 1
        assert task.done is False
        assert task.owner == 7
        assert task.created_at == task.updated_at == clock()

    @pytest.mark.asyncio
    async def test_update_preserves_owner_and_created_at(self, repository, clock):
        task = await repository.create(TaskCreate(title="a", owner=7))
        clock.advance(5)

        updated = await repository.update(task.id, TaskUpdate(title="x", owner=99))

        assert updated.owner == 7
        assert updated.title == "x"
        assert updated.created_at == task.created_at
        assert updated.updated_at > task.updated_at

    @pytest.mark.asyncio
    async def test_update_is_partial(self, repository):
        task = await repository.create(TaskCreate(title="a", description="keep"))
        updated = await repository.update(task.id, TaskUpdate(done=True))
        assert updated.description == "keep"
        assert updated.title == "a"
        assert updated.done is True

    @pytest.mark.asyncio
    async def test_updated_at_never_goes_backwards(self, repository, clock):
        task = await repository.create(TaskCreate(title="a"))
        clock.advance(-30)
        updated = await repository.mark_as_done(task.id)
        assert updated.updated_at == task.updated_at

    @pytest.mark.asyncio
    async def test_mark_as_done_is_idempotent(self, repository):
        task = await repository.create(TaskCreate(title="a"))
        assert (await repository.mark_as_done(task.id)).done is True
        assert (await repository.mark_as_done(task.id)).done is True

    @pytest.mark.asyncio
    async def test_soft_delete_hides_task(self, repository, clock):
        tasks = await _seed(repository, clock, 3)
        await repository.delete(tasks[1].id)

        assert await repository.get_by_id(tasks[1].id) is None
        assert await repository.get_total_count() == 2
        page, total = await repository.list_by_page(1, 10, "desc")
        assert [t.id for t in page] == [3, 1]
        assert total == 2

    @pytest.mark.asyncio
    async def test_second_delete_is_not_found(self, repository):
        task = await repository.create(TaskCreate(title="a"))
        await repository.delete(task.id)
        with pytest.raises(TaskNotFoundError):
            await repository.delete(task.id)

    @pytest.mark.asyncio
    async def test_missing_task_errors(self, repository):
        with pytest.raises(TaskNotFoundError):
            await repository.update(404, TaskUpdate(title="x"))
        with pytest.raises(TaskNotFoundError):
            await repository.mark_as_done(404)
        assert await repository.get_by_id(404) is None

    @pytest.mark.asyncio
    async def test_ids_are_not_reused(self, repository):
        first = await repository.create(TaskCreate(title="a"))
        await repository.delete(first.id)
        second = await repository.create(TaskCreate(title="b"))
        assert second.id == first.id + 1

    @pytest.mark.asyncio
    async def test_list_by_page_offsets(self, repository, clock):
        await _seed(repository, clock, 25)
        page, total = await repository.list_by_page(3, 10, "desc")
        assert total == 25
        assert [t.id for t in page] == [5, 4, 3, 2, 1]


# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

class TestStatements:
    """Shape of the generated SQL"""

    def test_first_cursor_page(self):
        sql = _sql(cursor_list_statement(10, Cursor(), "desc"))
        assert "tasks.deleted_at IS NULL" in sql
        assert "ORDER BY tasks.created_at DESC, tasks.id DESC" in sql
        assert "LIMIT" in sql
        assert "(tasks.created_at, tasks.id) <" not in sql

    def test_desc_keyset_predicate(self):
        sql = _sql(cursor_list_statement(10, new_cursor(5, T0), "desc"))
        assert "(tasks.created_at, tasks.id) <" in sql

    def test_asc_keyset_predicate(self):
        sql = _sql(cursor_list_statement(10, new_cursor(5, T0), "asc"))
        assert "(tasks.created_at, tasks.id) >" in sql
        assert "ORDER BY tasks.created_at ASC, tasks.id ASC" in sql

    def test_cursor_page_reads_one_extra_row(self):
        sql = _literal_sql(cursor_list_statement(10, Cursor(), "desc"))
        assert "LIMIT 11" in sql

    def test_page_statement(self):
        sql = _literal_sql(page_list_statement(3, 10, "asc"))
        assert "LIMIT 10" in sql
        assert "OFFSET 20" in sql

    def test_count_statement(self):
        sql = _sql(count_statement())
        assert "count(*)" in sql
        assert "tasks.deleted_at IS NULL" in sql


# ---------------------------------------------------------------------------
# SQLAlchemy repository
# ---------------------------------------------------------------------------

def _session():
    session = MagicMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.flush = AsyncMock()
    return session


def _stored_task(**overrides):
    fields = dict(
        id=1, title="a", description=None, done=False, owner=7,
        created_at=T0, updated_at=T0, deleted_at=None,
    )
    fields.update(overrides)
    return Task(**fields)


class TestSQLAlchemyRepository:
    """SQLAlchemyTaskRepository with a mocked AsyncSession"""

    @pytest.mark.asyncio
    async def test_create_commits(self):
        session = _session()
        added = []
        session.add = MagicMock(side_effect=added.append)
        session.flush = AsyncMock(side_effect=lambda: setattr(added[0], "id", 12))

        task = await SQLAlchemyTaskRepository(session, clock=lambda: T0).create(
            TaskCreate(title="a", owner=3)
        )

        assert task.id == 12
        assert task.owner == 3
        assert task.created_at == T0
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_locks_row_and_preserves_owner(self):
        session = _session()
        result = MagicMock()
        result.scalar_one_or_none.return_value = _stored_task()
        session.execute.return_value = result
        later = datetime(2024, 1, 2, tzinfo=timezone.utc)

        task = await SQLAlchemyTaskRepository(session, clock=lambda: later).update(
            1, TaskUpdate(title="x", owner=99)
        )

        assert task.owner == 7
        assert task.title == "x"
        assert task.updated_at == later
        stmt = session.execute.await_args.args[0]
        assert "FOR UPDATE" in _sql(stmt)
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_missing_row(self):
        session = _session()
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        session.execute.return_value = result

        with pytest.raises(TaskNotFoundError):
            await SQLAlchemyTaskRepository(session).update(1, TaskUpdate(title="x"))
        session.commit.assert_not_awaited()
        session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_missing_row(self):
        session = _session()
        session.execute.return_value = MagicMock(rowcount=0)

        with pytest.raises(TaskNotFoundError):
            await SQLAlchemyTaskRepository(session).delete(1)

    @pytest.mark.asyncio
    async def test_delete_commits(self):
        session = _session()
        session.execute.return_value = MagicMock(rowcount=1)

        await SQLAlchemyTaskRepository(session).delete(1)
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [SQLAlchemyError("boom"), OperationalError("SELECT 1", {}, Exception("gone"))],
    )
    async def test_driver_errors_become_repository_errors(self, error):
        session = _session()
        session.execute.side_effect = error

        with pytest.raises(RepositoryError) as exc_info:
            await SQLAlchemyTaskRepository(session).get_by_id(1)
        assert not isinstance(exc_info.value, TaskNotFoundError)
        session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_rolls_back(self):
        session = _session()

        async def slow_execute(*args, **kwargs):
            await asyncio.sleep(1)

        session.execute = slow_execute

        with pytest.raises(RepositoryError):
            await SQLAlchemyTaskRepository(session, operation_timeout=0.01).get_total_count()
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()
