"""
Cache Key Builders
==================

Deterministic, hierarchical cache key names.

Keys are built from a namespace prefix and alternating ``name, value``
segments joined by ``_``. Nothing is hashed or escaped: never feed
untrusted content straight into a key.
"""

from typing import Mapping

_SEPARATOR = "_"


class KeyGenerator:
    """Builds keys under a common prefix."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def build(self, *parts: str) -> str:
        """Join *parts* with ``_`` after the prefix."""
        if self.prefix:
            return _SEPARATOR.join((self.prefix, *parts))
        return _SEPARATOR.join(parts)

    def for_list(self, params: Mapping[str, object]) -> str:
        """
        Key for a list variant.

        Parameter names are sorted so the key does not depend on the
        order the caller supplied them in.
        """
        parts = [self.prefix] if self.prefix else []
        parts.append("list")
        for name in sorted(params):
            parts.append(f"{name}{_SEPARATOR}{params[name]}")
        return _SEPARATOR.join(parts)


class TaskCacheKeys:
    """Task-specific keys, tags and invalidation globs."""

    PREFIX = "tasks"
    LIST_TAG = "tasks:list"
    PAGE_LIST_GLOB = "tasks_page_*"
    CURSOR_LIST_GLOB = "tasks_cursor_*"

    def __init__(self) -> None:
        self.generator = KeyGenerator(self.PREFIX)

    def for_task(self, task_id: int) -> str:
        """Single task: ``tasks_id_<id>``."""
        return self.generator.build("id", str(task_id))

    def for_cursor_list(self, cursor: str, limit: int, order: str) -> str:
        """Cursor list: ``tasks_cursor_<cursor>_limit_<n>_order_<o>``."""
        return self.generator.build(
            "cursor", cursor, "limit", str(limit), "order", order
        )

    def for_page_list(self, page: int, limit: int, order: str) -> str:
        """Page list: ``tasks_page_<p>_limit_<n>_order_<o>``."""
        return self.generator.build(
            "page", str(page), "limit", str(limit), "order", order
        )

    @staticmethod
    def task_tag(task_id: int) -> str:
        """Tag grouping every cached entry for one task."""
        return f"task:{task_id}"
