"""
Common Schemas
==============

Shared Pydantic schemas used across the application.
"""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

DEFAULT_LIMIT = 10
MAX_LIMIT = 100
MAX_PAGE = 100
DEFAULT_ORDER = "desc"


class BaseResponse(BaseModel, Generic[T]):
    """Standard API response wrapper."""

    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Error detail structure."""

    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = False
    error: ErrorDetail


# =============================================================================
# Pagination
# =============================================================================

class CursorQuery(BaseModel):
    """Client-supplied cursor paging parameters (pre-normalization)."""

    model_config = ConfigDict(frozen=True)

    cursor: str = ""
    limit: int = 0
    order: str = ""


class PageQuery(BaseModel):
    """Client-supplied page paging parameters (pre-normalization)."""

    model_config = ConfigDict(frozen=True)

    page: int = 0
    limit: int = 0
    order: str = ""


class PaginationMeta(BaseModel):
    """Pagination metadata for list responses."""

    model_config = ConfigDict(populate_by_name=True)

    next_cursor: str = Field(default="", alias="nextCursor")
    prev_cursor: str = Field(default="", alias="prevCursor")
    limit: int
    total_count: int = Field(alias="totalCount")
    has_more: bool = Field(alias="hasMore")
    current_page: int = Field(alias="currentPage")
    total_pages: int = Field(alias="totalPages")
    order: str
    has_prev: bool = Field(alias="hasPrev")
    is_first_page: bool = Field(alias="isFirstPage")
    is_last_page: bool = Field(alias="isLastPage")
