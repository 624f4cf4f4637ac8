"""Mixins for common model patterns."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, ClassVar

from relkit.fields import ColumnInfo


class SoftDeleteMixin:
    """Mixin that adds soft delete functionality to models.

    Adds a nullable ``deleted_at`` column. Rows with ``deleted_at`` set are
    excluded from queries (and from eager-loaded relations) by default.

    Example:
        >>> class Article(Base, SoftDeleteMixin):
        ...     __tablename__ = "articles"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     title: Mapped[str]
        >>>
        >>> articles = await session.query(Article).get()              # live rows
        >>> everything = await session.query(Article).with_trashed().get()
        >>> deleted = await session.query(Article).only_trashed().get()
        >>>
        >>> await session.soft_delete(article)
        >>> await session.restore(article)
        >>> await session.force_delete(article)
    """

    __soft_delete__: ClassVar[bool] = True
    __deleted_at__: ClassVar[str] = "deleted_at"

    @classmethod
    def __mixin_columns__(cls) -> dict[str, ColumnInfo]:
        return {
            "deleted_at": ColumnInfo(
                name="deleted_at",
                python_type=datetime,
                nullable=True,
                index=True,
            )
        }

    @property
    def is_deleted(self) -> bool:
        """Check if this instance is soft-deleted."""
        return getattr(self, "deleted_at", None) is not None

    def mark_deleted(self) -> None:
        """Mark this instance as deleted (sets deleted_at to now)."""
        self.deleted_at = datetime.now(UTC)

    def mark_restored(self) -> None:
        """Restore a soft-deleted instance (clears deleted_at)."""
        self.deleted_at = None


class TimestampsMixin:
    """Maintains ``created_at`` on insert and ``updated_at`` on every write.

    Example:
        >>> class Post(Base, TimestampsMixin):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
    """

    __timestamps__: ClassVar[bool] = True

    @classmethod
    def __mixin_columns__(cls) -> dict[str, ColumnInfo]:
        return {
            "created_at": ColumnInfo(name="created_at", python_type=datetime, nullable=True),
            "updated_at": ColumnInfo(name="updated_at", python_type=datetime, nullable=True),
        }

    def touch_timestamps(self, *, creating: bool = False) -> dict[str, Any]:
        """Stamp the timestamp columns and return the values written."""
        now = datetime.now(UTC)
        stamped: dict[str, Any] = {"updated_at": now}
        if creating and getattr(self, "created_at", None) is None:
            stamped["created_at"] = now
        for key, value in stamped.items():
            setattr(self, key, value)
        return stamped
