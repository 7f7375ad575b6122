"""
Task Schemas
============

Pydantic schemas for task endpoints and service results.

Field names are snake_case in Python and in cached payloads; API
responses serialize the camelCase aliases.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from taskapi.schemas.common import PaginationMeta


# =============================================================================
# Request Schemas
# =============================================================================

class TaskCreate(BaseModel):
    """Request schema for creating a task."""

    title: str = Field(min_length=1)
    description: Optional[str] = None
    owner: int = Field(default=0, ge=0)


class TaskUpdate(BaseModel):
    """
    Request schema for updating a task.

    Only fields present in the request are applied. ``owner`` is accepted
    for compatibility but never changes the stored owner.
    """

    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    done: Optional[bool] = None
    owner: Optional[int] = Field(None, ge=0)


# =============================================================================
# Response Schemas
# =============================================================================

class TaskRead(BaseModel):
    """A stored task."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    title: str
    description: Optional[str] = None
    done: bool = False
    owner: int = 0
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")


class TaskCursorPage(BaseModel):
    """Result of a cursor-paged list."""

    tasks: list[TaskRead] = Field(default_factory=list)
    next_cursor: str = ""
    prev_cursor: str = ""
    total_count: int = 0
    has_more: bool = False


class TaskPage(BaseModel):
    """Result of an offset-paged list."""

    tasks: list[TaskRead] = Field(default_factory=list)
    total_count: int = 0


class TaskListData(BaseModel):
    """List payload returned to clients."""

    tasks: list[TaskRead]
    pagination: PaginationMeta
