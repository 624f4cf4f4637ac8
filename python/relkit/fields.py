"""Column and field definitions for ORM models."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Generic, TypeVar

from ulid import ULID

T = TypeVar("T")


class JSON:
    """Marker class for JSON/JSONB column types.

    Values are written as JSON text and decoded back into dict/list on load.
    Columns annotated ``Mapped[dict]`` or ``Mapped[list]`` are JSON
    automatically.

    Example:
        >>> class Product(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     attributes: Mapped[dict] = mapped_column(JSON)
    """


class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped column.

    Example:
        >>> class User(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str] = mapped_column(max_length=100)
        ...     age: Mapped[int | None] = mapped_column(nullable=True)
    """


@dataclass
class ForeignKey:
    """Defines a foreign key reference to another table.

    Args:
        target: The target column in format "table.column"
        ondelete: Action on delete (CASCADE, SET NULL, RESTRICT, NO ACTION)
        onupdate: Action on update (CASCADE, SET NULL, RESTRICT, NO ACTION)

    Example:
        >>> class Post(Base):
        ...     author_id: Mapped[int] = mapped_column(ForeignKey("authors.id"))
    """

    target: str
    ondelete: str | None = None
    onupdate: str | None = None

    @property
    def table(self) -> str:
        """Get the target table name."""
        return self.target.split(".")[0]

    @property
    def column(self) -> str:
        """Get the target column name."""
        parts = self.target.split(".")
        return parts[1] if len(parts) > 1 else "id"


@dataclass
class ColumnInfo:
    """Stores metadata about a database column."""

    name: str | None = None
    python_type: type | None = None
    primary_key: bool = False
    nullable: bool = False
    unique: bool = False
    index: bool = False
    default: Any = None
    max_length: int | None = None
    foreign_key: ForeignKey | None = None
    autoincrement: bool | None = None
    is_json: bool = False

    @property
    def key_type(self) -> str:
        """How primary-key values are produced: "uuid", "ulid", "auto" or "manual"."""
        if self.python_type is uuid.UUID:
            return "uuid"
        if self.python_type is ULID:
            return "ulid"
        if self.autoincrement:
            return "auto"
        return "manual"

    def new_key(self) -> Any:
        """Generate a client-side key for UUID/ULID primary keys."""
        if self.python_type is uuid.UUID:
            return uuid.uuid4()
        if self.python_type is ULID:
            return ULID()
        raise TypeError(f"Column {self.name!r} does not use generated keys")

    def cast(self, value: Any) -> Any:
        """Convert a value read from the database into the column's Python type."""
        if value is None:
            return None

        t = self.python_type
        if self.is_json or t is dict or t is list:
            if isinstance(value, (str, bytes, bytearray)):
                return json.loads(value)
            return value
        if t is None:
            return value

        if t is datetime:
            if isinstance(value, datetime):
                return value
            return datetime.fromisoformat(str(value))
        if t is date:
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            return date.fromisoformat(str(value)[:10])
        if t is time:
            return value if isinstance(value, time) else time.fromisoformat(str(value))
        if t is bool:
            return bool(value)
        if t is Decimal:
            return value if isinstance(value, Decimal) else Decimal(str(value))
        if t is uuid.UUID:
            if isinstance(value, uuid.UUID):
                return value
            if isinstance(value, (bytes, bytearray)):
                return uuid.UUID(bytes=bytes(value))
            return uuid.UUID(str(value))
        if t is ULID:
            if isinstance(value, ULID):
                return value
            if isinstance(value, uuid.UUID):
                return ULID.from_uuid(value)
            return ULID.from_str(str(value))
        if t in (int, float, str) and not isinstance(value, t):
            return t(value)
        return value


def mapped_column(
    type_or_fk: type | ForeignKey | None = None,
    /,
    *,
    primary_key: bool = False,
    nullable: bool = False,
    unique: bool = False,
    index: bool = False,
    default: Any = None,
    max_length: int | None = None,
    autoincrement: bool | None = None,
) -> Any:
    """Define a database column.

    Args:
        type_or_fk: Optional ForeignKey or JSON marker for this column
        primary_key: Whether this is a primary key column
        nullable: Whether NULL values are allowed
        unique: Whether values must be unique
        index: Whether the column is indexed
        default: Default value (can be callable)
        max_length: Maximum length for string columns
        autoincrement: Whether the database generates the key (integer PKs)

    Returns:
        A ColumnInfo descriptor

    Example:
        >>> id: Mapped[int] = mapped_column(primary_key=True)
        >>> id: Mapped[uuid.UUID] = mapped_column(primary_key=True)  # uuid4 on insert
        >>> author_id: Mapped[int] = mapped_column(ForeignKey("authors.id"))
        >>> settings: Mapped[dict] = mapped_column(JSON)
    """
    foreign_key = None
    is_json = False

    if isinstance(type_or_fk, ForeignKey):
        foreign_key = type_or_fk
    elif type_or_fk is JSON or (isinstance(type_or_fk, type) and issubclass(type_or_fk, JSON)):
        is_json = True

    # Primary keys are not nullable by default
    if primary_key:
        nullable = False
        if autoincrement is None:
            autoincrement = True

    return ColumnInfo(
        primary_key=primary_key,
        nullable=nullable,
        unique=unique,
        index=index,
        default=default,
        max_length=max_length,
        foreign_key=foreign_key,
        autoincrement=autoincrement,
        is_json=is_json,
    )
