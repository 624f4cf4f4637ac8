"""Declarative base for ORM models and per-instance attribute state."""

from __future__ import annotations

import copy
import inspect
import sys
import types
import typing
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any, ClassVar

from relkit.errors import MassAssignmentRejected, RelationNotLoaded

if TYPE_CHECKING:
    from relkit.fields import ColumnInfo
    from relkit.relationships import Relation


class ModelMeta(type):
    """Metaclass for ORM models that processes field definitions."""

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        # Skip processing for the Base class itself
        if name == "Base" and not bases:
            return cls

        from relkit.fields import ColumnInfo
        from relkit.registry import register_model
        from relkit.relationships import Relation

        tablename = namespace.get("__tablename__")
        if tablename is None:
            tablename = name.lower() + "s"
        cls.__tablename__ = tablename  # type: ignore[attr-defined]

        columns: dict[str, ColumnInfo] = {}
        relationships: dict[str, Relation] = {}

        # Columns inherited from parent models and mixins
        for klass in reversed(cls.__mro__[1:]):
            mixin_columns = vars(klass).get("__mixin_columns__")
            if mixin_columns is not None:
                for col_name, col in mixin_columns.__func__(cls).items():
                    columns[col_name] = col
            for col_name, col in vars(klass).get("__columns__", {}).items():
                columns[col_name] = replace(col)
            for rel_name, rel in vars(klass).get("__relationships__", {}).items():
                relationships[rel_name] = rel

        hints = _resolve_hints(cls)

        for attr_name, attr_value in list(namespace.items()):
            if attr_name.startswith("_"):
                continue
            if isinstance(attr_value, ColumnInfo):
                attr_value.name = attr_name
                hint = hints.get(attr_name)
                if hint is not None and not isinstance(hint, str):
                    python_type = _extract_mapped_type(hint)
                    attr_value.python_type = python_type
                    if python_type is dict or python_type is list:
                        attr_value.is_json = True
                columns[attr_name] = attr_value
                # Unset columns fall through to __getattr__ instead of the class attribute
                delattr(cls, attr_name)
            elif isinstance(attr_value, Relation):
                attr_value.bind(cls, attr_name)  # type: ignore[arg-type]
                relationships[attr_name] = attr_value
                delattr(cls, attr_name)

        # Mapped annotations without mapped_column() auto-generate a column
        for attr_name, hint in hints.items():
            if attr_name.startswith("_") or attr_name in columns or attr_name in relationships:
                continue
            if isinstance(hint, str):
                if hint.startswith("Mapped["):
                    columns[attr_name] = ColumnInfo(name=attr_name, nullable="None" in hint)
                continue
            if typing.get_origin(hint) is not _mapped():
                continue
            inner = typing.get_args(hint)[0] if typing.get_args(hint) else None
            python_type = _extract_mapped_type(hint)
            columns[attr_name] = ColumnInfo(
                name=attr_name,
                python_type=python_type,
                nullable=_is_optional(inner),
                is_json=(python_type is dict or python_type is list),
            )

        primary_key = None
        for col_name, col_info in columns.items():
            if col_info.primary_key:
                primary_key = col_name
                if col_info.key_type in ("uuid", "ulid"):
                    col_info.autoincrement = False
                break

        cls.__columns__ = columns  # type: ignore[attr-defined]
        cls.__relationships__ = relationships  # type: ignore[attr-defined]
        cls.__primary_key__ = primary_key  # type: ignore[attr-defined]

        register_model(cls)  # type: ignore[arg-type]
        return cls


def _mapped() -> type:
    from relkit.fields import Mapped

    return Mapped


def _resolve_hints(cls: type) -> dict[str, Any]:
    """Evaluate the model's annotations one at a time.

    Annotations that cannot be evaluated yet (forward references to models
    defined later) are kept as strings.
    """
    module = sys.modules.get(cls.__module__, None)
    globalns: dict[str, Any] = dict(getattr(module, "__dict__", {})) if module else {}
    globalns.setdefault("Mapped", _mapped())
    globalns.setdefault("Any", Any)
    globalns.setdefault("ClassVar", ClassVar)

    hints: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        if klass is object:
            continue
        try:
            annotations = inspect.get_annotations(klass)
        except NameError:
            continue
        for attr_name, annotation in annotations.items():
            if isinstance(annotation, str):
                try:
                    annotation = eval(annotation, globalns, dict(vars(klass)))
                except (NameError, AttributeError, TypeError, SyntaxError):
                    pass
            hints[attr_name] = annotation
    return hints


def _is_optional(hint: Any) -> bool:
    origin = typing.get_origin(hint)
    if origin is typing.Union or origin is types.UnionType:
        return type(None) in typing.get_args(hint)
    return False


def _extract_mapped_type(hint: Any) -> type | None:
    """Extract the inner type from Mapped[T] annotation."""
    origin = typing.get_origin(hint)
    if origin is not None:
        args = typing.get_args(hint)
        if args:
            # Handle Optional (Union with None)
            if origin is typing.Union or origin is types.UnionType:
                non_none = [a for a in args if a is not type(None)]
                if len(non_none) == 1:
                    return _extract_mapped_type(non_none[0])
                return None
            if origin is _mapped():
                return _extract_mapped_type(args[0])
            return origin if isinstance(origin, type) else None
    return hint if isinstance(hint, type) else None


class Base(metaclass=ModelMeta):
    """Base class for all ORM models.

    Example:
        >>> class User(Base):
        ...     __tablename__ = "users"
        ...     __fillable__ = ("name", "email")
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str] = mapped_column(max_length=100)
        ...     email: Mapped[str]
    """

    __tablename__: ClassVar[str]
    __columns__: ClassVar[dict[str, ColumnInfo]]
    __relationships__: ClassVar[dict[str, Relation]]
    __primary_key__: ClassVar[str | None]
    __fillable__: ClassVar[tuple[str, ...] | None] = None
    __guarded__: ClassVar[tuple[str, ...]] = ()

    # Instance attribute state
    _loaded_relationships: dict[str, Any]
    _session: Any
    _original: dict[str, Any]
    _changes: dict[str, Any]
    _extras: dict[str, Any]
    _exists: bool
    _strict: bool

    def __init__(self, **kwargs: Any) -> None:
        """Initialize a model instance with the given column values."""
        self._init_state()

        provided_keys = set(kwargs)
        for key, value in kwargs.items():
            if key in self.__columns__ or key in self.__relationships__:
                setattr(self, key, value)
            else:
                raise TypeError(f"Unknown column or relationship: {key}")

        # Set defaults only for columns that were not provided.
        for col_name, col_info in self.__columns__.items():
            if col_name in provided_keys:
                continue
            if col_info.default is not None:
                default = col_info.default() if callable(col_info.default) else col_info.default
                setattr(self, col_name, default)
            elif col_info.nullable:
                setattr(self, col_name, None)
            # Non-nullable columns without defaults (like generated keys) stay unset

    def _init_state(self) -> None:
        object.__setattr__(self, "_loaded_relationships", {})
        object.__setattr__(self, "_session", None)
        object.__setattr__(self, "_original", {})
        object.__setattr__(self, "_changes", {})
        object.__setattr__(self, "_extras", {})
        object.__setattr__(self, "_exists", False)
        object.__setattr__(self, "_strict", False)

    def __repr__(self) -> str:
        pk = self.__primary_key__
        if pk and pk in self.__dict__:
            return f"<{self.__class__.__name__} {pk}={self.__dict__[pk]!r}>"
        return f"<{self.__class__.__name__}>"

    def __setattr__(self, name: str, value: Any) -> None:
        if name in type(self).__relationships__:
            self._set_relationship(name, value)
            return
        object.__setattr__(self, name, value)

    def __getattr__(self, name: str) -> Any:
        """Handle access to relationships, unset columns and extra selected values."""
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        cls = type(self)
        if name in cls.__relationships__:
            loaded = self.__dict__.get("_loaded_relationships", {})
            if name in loaded:
                return loaded[name]
            raise RelationNotLoaded(cls, name)

        if name in cls.__columns__:
            return None

        extras = self.__dict__.get("_extras", {})
        if name in extras:
            return extras[name]

        raise AttributeError(f"'{cls.__name__}' object has no attribute '{name}'")

    # ========== Keys ==========

    def get_key(self) -> Any:
        """The primary-key value, or None before insert."""
        pk = self.__primary_key__
        return self.__dict__.get(pk) if pk else None

    @classmethod
    def get_morph_class(cls) -> str:
        """Discriminator stored in polymorphic type columns for this model."""
        from relkit.registry import registry

        return registry.morph_name(cls)

    @property
    def exists(self) -> bool:
        """Whether the instance was loaded from or saved to the database."""
        return self._exists

    # ========== Attribute state ==========

    def get_attributes(self) -> dict[str, Any]:
        """Current values of every column that has been set."""
        return {c: self.__dict__[c] for c in self.__columns__ if c in self.__dict__}

    def get_original(self, attr: str | None = None, default: Any = None) -> Any:
        """Value(s) as last loaded from or saved to the database."""
        if attr is None:
            return dict(self._original)
        return self._original.get(attr, default)

    def get_dirty(self) -> dict[str, Any]:
        """Columns changed since the instance was loaded or last saved."""
        dirty: dict[str, Any] = {}
        for col, value in self.get_attributes().items():
            if col not in self._original or self._original[col] != value:
                dirty[col] = value
        return dirty

    def is_dirty(self, *attrs: str) -> bool:
        dirty = self.get_dirty()
        if not attrs:
            return bool(dirty)
        return any(a in dirty for a in attrs)

    def is_clean(self, *attrs: str) -> bool:
        return not self.is_dirty(*attrs)

    def was_changed(self, *attrs: str) -> bool:
        """Whether the last save wrote any (or the given) columns."""
        if not attrs:
            return bool(self._changes)
        return any(a in self._changes for a in attrs)

    def get_changes(self) -> dict[str, Any]:
        return dict(self._changes)

    def sync_original(self) -> None:
        """Mark the current attribute values as persisted."""
        original = {}
        for col, value in self.get_attributes().items():
            # JSON values are mutable in place, so snapshot a copy
            original[col] = copy.deepcopy(value) if isinstance(value, (dict, list)) else value
        object.__setattr__(self, "_original", original)

    def sync_changes(self, changes: Mapping[str, Any]) -> None:
        object.__setattr__(self, "_changes", dict(changes))

    # ========== Mass assignment ==========

    @classmethod
    def fillable_columns(cls, allowed: Iterable[str] | None = None) -> set[str]:
        """Columns that may be mass-assigned.

        An explicit ``allowed`` list wins, then ``__fillable__``; otherwise
        every column except the primary key and ``__guarded__``.
        """
        if allowed is not None:
            return set(allowed)
        if cls.__fillable__ is not None:
            return set(cls.__fillable__)
        guarded = set(cls.__guarded__)
        if cls.__primary_key__:
            guarded.add(cls.__primary_key__)
        return set(cls.__columns__) - guarded

    def fill(self, attributes: Mapping[str, Any], *, allowed: Iterable[str] | None = None) -> Base:
        """Mass-assign attributes, rejecting any outside the allow-list.

        Example:
            >>> user.fill({"name": "Alice"})
            >>> user.fill({"is_admin": True})  # raises MassAssignmentRejected
        """
        fillable = self.fillable_columns(allowed)
        rejected = sorted(k for k in attributes if k not in fillable or k not in self.__columns__)
        if rejected:
            raise MassAssignmentRejected(type(self), rejected)
        for key, value in attributes.items():
            setattr(self, key, value)
        return self

    # ========== Relationships ==========

    def _set_relationship(self, name: str, value: Any, session: Any = None) -> None:
        """Set a loaded relationship value.

        For M2M relationships, wraps the value in ManyToManyCollection if session is provided.
        """
        loaded = self.__dict__.get("_loaded_relationships")
        if loaded is None:
            loaded = {}
            object.__setattr__(self, "_loaded_relationships", loaded)

        rel_info = type(self).__relationships__.get(name)
        session = session if session is not None else self.__dict__.get("_session")
        if rel_info is not None and rel_info.has_pivot and isinstance(value, list) and session is not None:
            from relkit.pivot import ManyToManyCollection

            value = ManyToManyCollection(self, name, session, value)

        loaded[name] = value

    def relation_loaded(self, name: str) -> bool:
        return name in self.__dict__.get("_loaded_relationships", {})

    def get_relation(self, name: str, default: Any = None) -> Any:
        return self.__dict__.get("_loaded_relationships", {}).get(name, default)

    def unset_relation(self, name: str) -> None:
        self.__dict__.get("_loaded_relationships", {}).pop(name, None)

    # ========== Serialization ==========

    def to_dict(self, include_relationships: bool = False) -> dict[str, Any]:
        """Convert model instance to a dictionary.

        With ``include_relationships`` loaded relations are nested. An entity
        that is already being serialized further up the graph (a back
        reference such as ``post.author``) is written as its primary key.
        """
        return self._to_dict(include_relationships, frozenset())

    def _to_dict(self, include_relationships: bool, ancestors: frozenset[int]) -> dict[str, Any]:
        result = self.get_attributes()
        if not include_relationships:
            return result

        ancestors = ancestors | {id(self)}

        def nested(item: Base | None) -> Any:
            if item is None:
                return None
            if id(item) in ancestors:
                return item.get_key()
            return item._to_dict(True, ancestors)

        for rel_name, rel_value in self._loaded_relationships.items():
            if isinstance(rel_value, list):
                result[rel_name] = [nested(item) for item in rel_value]
            else:
                result[rel_name] = nested(rel_value)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Base:
        """Create a model instance from a dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__columns__})

    @classmethod
    def _from_row(cls, data: Mapping[str, Any], session: Any = None) -> Base:
        """Build a persisted instance from a database row.

        Column values are cast to their declared types; any other selected
        values (aggregates, pivot or through keys) are kept as extras.
        """
        instance = object.__new__(cls)
        instance._init_state()
        object.__setattr__(instance, "_session", session)
        object.__setattr__(instance, "_exists", True)

        cols = cls.__columns__
        extras: dict[str, Any] = {}
        for key, value in data.items():
            col_info = cols.get(key)
            if col_info is None:
                extras[key] = value
            else:
                object.__setattr__(instance, key, col_info.cast(value))

        object.__setattr__(instance, "_extras", extras)
        instance.sync_original()
        return instance
