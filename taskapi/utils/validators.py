"""
Validators
==========

Normalization of client-supplied paging parameters and task fields.

The pagination validators never reject input: out-of-range values are
clamped to defaults. They are idempotent, so
``validate_x(validate_x(q)) == validate_x(q)``.
"""

from typing import Optional

from taskapi.core.exceptions import InvalidArgumentError
from taskapi.models.task import TITLE_MAX_LENGTH
from taskapi.schemas.common import (
    DEFAULT_LIMIT,
    DEFAULT_ORDER,
    MAX_LIMIT,
    MAX_PAGE,
    CursorQuery,
    PageQuery,
)
_ORDERS = ("asc", "desc")


def _normalize_limit(limit: int) -> int:
    if limit <= 0:
        return DEFAULT_LIMIT
    if limit > MAX_LIMIT:
        return MAX_LIMIT
    return limit


def _normalize_order(order: Optional[str]) -> str:
    order = (order or "").lower()
    if order not in _ORDERS:
        return DEFAULT_ORDER
    return order


def validate_cursor_query(query: CursorQuery) -> CursorQuery:
    """
    Normalize cursor paging parameters.

    Rules:
    - limit <= 0 -> DEFAULT_LIMIT; limit > MAX_LIMIT -> MAX_LIMIT
    - order lower-cased; anything but asc/desc -> DEFAULT_ORDER
    - cursor trimmed
    """
    return CursorQuery(
        cursor=(query.cursor or "").strip(),
        limit=_normalize_limit(query.limit),
        order=_normalize_order(query.order),
    )


def validate_page_query(query: PageQuery) -> PageQuery:
    """Normalize page paging parameters (page clamped to 1..MAX_PAGE)."""
    page = query.page
    if page <= 0:
        page = 1
    if page > MAX_PAGE:
        page = MAX_PAGE

    return PageQuery(
        page=page,
        limit=_normalize_limit(query.limit),
        order=_normalize_order(query.order),
    )


def validate_title(title: Optional[str]) -> str:
    """
    Validate a task title.

    Returns:
        The stripped title

    Raises:
        InvalidArgumentError: If the title is empty or too long
    """
    stripped = (title or "").strip()
    if not stripped:
        raise InvalidArgumentError("Title is required", field="title")
    if len(stripped) > TITLE_MAX_LENGTH:
        raise InvalidArgumentError(
            f"Title must be at most {TITLE_MAX_LENGTH} characters",
            field="title",
        )
    return stripped
