"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from taskapi.schemas.common import (
    BaseResponse,
    CursorQuery,
    ErrorResponse,
    PageQuery,
    PaginationMeta,
)
from taskapi.schemas.task import TaskCreate, TaskRead, TaskUpdate

__all__ = [
    "BaseResponse",
    "CursorQuery",
    "ErrorResponse",
    "PageQuery",
    "PaginationMeta",
    "TaskCreate",
    "TaskRead",
    "TaskUpdate",
]
