"""
Task Models
===========

SQLAlchemy model for tasks.
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, Identity, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from taskapi.db.base import Base, SoftDeleteMixin, TimestampMixin

TITLE_MAX_LENGTH = 100


class Task(Base, TimestampMixin, SoftDeleteMixin):
    """
    A single to-do item.

    Rows are never physically deleted; ``deleted_at`` hides them from every
    read. ``(created_at, id)`` is the list order in both directions.
    """

    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=False),
        primary_key=True,
    )
    title: Mapped[str] = mapped_column(String(TITLE_MAX_LENGTH), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    done: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    owner: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        Index("ix_tasks_created_at_id", "created_at", "id"),
        Index("ix_tasks_deleted_at", "deleted_at"),
    )

    def __repr__(self) -> str:
        return f"<Task {self.id}: {self.title[:30]}>"
