"""Relationship definitions for ORM models.

Each relation knows how to build the one query that loads it for a whole
batch of owners, and how to hand the results back to those owners.

Example:
    >>> class Author(Base):
    ...     id: Mapped[int] = mapped_column(primary_key=True)
    ...     posts: Mapped[list["Post"]] = has_many("Post")
    ...
    >>> class Post(Base):
    ...     id: Mapped[int] = mapped_column(primary_key=True)
    ...     author_id: Mapped[int] = mapped_column(ForeignKey("authors.id"))
    ...     author: Mapped[Author] = belongs_to("Author")
    ...     tags: Mapped[list["Tag"]] = belongs_to_many("Tag", "post_tags")
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from relkit.pivot import Pivot
from relkit.registry import registry

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.loading import IdentityMap
    from relkit.query import Query
    from relkit.session import AsyncSession

Constraint = Callable[["Query[Any]"], Any]

THROUGH_KEY = "relkit_through_key"


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _ordered(keys: Iterable[Any]) -> list[Any]:
    """Distinct non-null keys in a stable order, so identical batches compile identically."""
    unique = list(dict.fromkeys(k for k in keys if k is not None))
    try:
        return sorted(unique)
    except TypeError:
        return sorted(unique, key=repr)


@dataclass(frozen=True)
class RelationKeys:
    """Resolved key columns of a relation.

    ``foreign_key`` is the referencing column and ``local_key`` the column it
    references. Through relations add the intermediate hop; polymorphic
    relations add the discriminator column (and value, when fixed).
    """

    foreign_key: str
    local_key: str | None
    second_key: str | None = None
    second_local_key: str | None = None
    morph_type: str | None = None
    morph_class: str | None = None


@dataclass(frozen=True)
class PivotSpec:
    """Join-table layout of a many-to-many relation."""

    table: str
    foreign_pivot_key: str
    related_pivot_key: str
    parent_key: str
    related_key: str
    columns: tuple[str, ...] = ()
    timestamps: bool = False
    morph_type: str | None = None
    morph_class: str | None = None

    @property
    def selected_columns(self) -> list[str]:
        """Pivot columns carried onto related entities as ``entity.pivot``."""
        cols = [self.foreign_pivot_key, self.related_pivot_key, *self.columns]
        if self.morph_type:
            cols.append(self.morph_type)
        if self.timestamps:
            cols += ["created_at", "updated_at"]
        return list(dict.fromkeys(cols))


class Relation:
    """Base class for relationship descriptors.

    Key columns are resolved on first use (targets may be declared after the
    owner) and are immutable afterwards.
    """

    uselist: bool = False
    has_pivot: bool = False

    def __init__(self, target: str | type[Base] | None) -> None:
        self._target = target
        self.owner: type[Base] | None = None
        self.name: str | None = None
        self._related: type[Base] | None = None
        self._keys: RelationKeys | None = None

    def __repr__(self) -> str:
        owner = self.owner.__name__ if self.owner else "?"
        return f"<{type(self).__name__} {owner}.{self.name} -> {self._target!r}>"

    def bind(self, owner: type[Base], name: str) -> None:
        """Attach to the model class that declares the relation."""
        if self.owner is None:
            self.owner = owner
            self.name = name

    @property
    def related_model(self) -> type[Base] | None:
        if self._related is None:
            self._related = registry.resolve(self._target, self.owner)  # type: ignore[arg-type]
        return self._related

    @property
    def keys(self) -> RelationKeys:
        if self._keys is None:
            self._keys = self._resolve_keys()
        return self._keys

    def _require_owner(self) -> type[Base]:
        if self.owner is None:
            raise TypeError(f"{type(self).__name__} relation to {self._target!r} is not bound to a model")
        return self.owner

    def _require_related(self) -> type[Base]:
        related = self.related_model
        if related is None:
            raise TypeError(f"{type(self).__name__} relation {self.name!r} has no related model")
        return related

    def _resolve_keys(self) -> RelationKeys:
        raise NotImplementedError

    def _owner_key_name(self) -> str:
        """Attribute on the owner whose value selects related rows."""
        return self.keys.local_key  # type: ignore[return-value]

    def owner_keys(self, owners: Iterable[Base]) -> list[Any]:
        attr = self._owner_key_name()
        return _ordered(getattr(o, attr) for o in owners)

    def base_query(self, session: AsyncSession, keys: list[Any]) -> Query[Any]:
        """Query for the related rows of every owner in ``keys``."""
        raise NotImplementedError

    def match_key(self, entity: Base) -> Any:
        """Owner key a related entity belongs to."""
        raise NotImplementedError

    def query_for(self, session: AsyncSession, owner: Base) -> Query[Any]:
        """Query for a single owner's related rows; can be refined before running."""
        key = getattr(owner, self._owner_key_name())
        return self.base_query(session, [key] if key is not None else [])

    def empty(self) -> Any:
        return [] if self.uselist else None

    def assign_empty(self, owners: Iterable[Base], name: str) -> None:
        for owner in owners:
            owner._set_relationship(name, self.empty())

    def assign(self, owners: Iterable[Base], related: list[Base], name: str) -> None:
        """Distribute loaded entities to their owners."""
        groups: dict[Any, list[Base]] = {}
        for entity in related:
            groups.setdefault(self.match_key(entity), []).append(entity)
        attr = self._owner_key_name()
        for owner in owners:
            matched = groups.get(getattr(owner, attr), [])
            if self.uselist:
                owner._set_relationship(name, list(matched))
            else:
                owner._set_relationship(name, matched[0] if matched else None)

    async def eager_load(
        self,
        session: AsyncSession,
        owners: list[Base],
        name: str,
        *,
        constraint: Constraint | None = None,
        identity_map: IdentityMap | None = None,
        strict: bool = False,
    ) -> list[Base]:
        """Load the relation for every owner with one query; returns the loaded entities."""
        keys = self.owner_keys(owners)
        if not keys:
            self.assign_empty(owners, name)
            return []
        query = self.base_query(session, keys)
        query._identity_map = identity_map
        query._strict = strict
        if constraint is not None:
            query._apply_constraint(constraint)
        related = await query.get()
        self.assign(owners, related, name)
        return related


def _fk_column_to(model: type[Base], table: str) -> tuple[str, str] | None:
    """First column on ``model`` declared as ``ForeignKey("<table>.<col>")``."""
    for col_name, col_info in model.__columns__.items():
        if col_info.foreign_key and col_info.foreign_key.table == table:
            return col_name, col_info.foreign_key.column
    return None


# ========== One-to-one / one-to-many ==========


class HasMany(Relation):
    """The related model holds a foreign key to the owner."""

    uselist = True

    def __init__(self, target: str | type[Base], foreign_key: str | None = None, local_key: str | None = None) -> None:
        super().__init__(target)
        self._foreign_key = foreign_key
        self._local_key = local_key

    def _resolve_keys(self) -> RelationKeys:
        owner = self._require_owner()
        foreign_key = self._foreign_key
        if foreign_key is None:
            declared = _fk_column_to(self.related_model, owner.__tablename__)  # type: ignore[arg-type]
            foreign_key = declared[0] if declared else f"{_snake(owner.__name__)}_id"
        return RelationKeys(foreign_key, self._local_key or owner.__primary_key__)

    def base_query(self, session: AsyncSession, keys: list[Any]) -> Query[Any]:
        query = session.query(self.related_model)
        return query.where_in(f"{query.table_ref}.{self.keys.foreign_key}", keys)

    def match_key(self, entity: Base) -> Any:
        return getattr(entity, self.keys.foreign_key)


class HasOne(HasMany):
    uselist = False


class BelongsTo(Relation):
    """The owner holds a foreign key to the related model."""

    def __init__(self, target: str | type[Base], foreign_key: str | None = None, owner_key: str | None = None) -> None:
        super().__init__(target)
        self._foreign_key = foreign_key
        self._owner_key = owner_key

    def _resolve_keys(self) -> RelationKeys:
        owner, related = self._require_owner(), self._require_related()
        foreign_key, referenced = self._foreign_key, self._owner_key
        if foreign_key is None:
            declared = _fk_column_to(owner, related.__tablename__)
            if declared:
                foreign_key, referenced = declared[0], referenced or declared[1]
            else:
                foreign_key = f"{_snake(self.name or related.__name__)}_id"
        return RelationKeys(foreign_key, referenced or related.__primary_key__)

    def _owner_key_name(self) -> str:
        return self.keys.foreign_key

    def base_query(self, session: AsyncSession, keys: list[Any]) -> Query[Any]:
        query = session.query(self.related_model)
        return query.where_in(f"{query.table_ref}.{self.keys.local_key}", keys)

    def match_key(self, entity: Base) -> Any:
        return getattr(entity, self.keys.local_key)  # type: ignore[arg-type]


# ========== Many-to-many ==========


class BelongsToMany(Relation):
    """Linked through a join table; each related entity carries ``.pivot``."""

    uselist = True
    has_pivot = True

    def __init__(
        self,
        target: str | type[Base],
        table: str | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
        *,
        pivot_columns: Iterable[str] = (),
        with_timestamps: bool = False,
    ) -> None:
        super().__init__(target)
        self._table = table
        self._foreign_pivot_key = foreign_pivot_key
        self._related_pivot_key = related_pivot_key
        self._parent_key = parent_key
        self._related_key = related_key
        self._pivot_columns = tuple(pivot_columns)
        self._with_timestamps = with_timestamps
        self._pivot: PivotSpec | None = None

    @property
    def pivot(self) -> PivotSpec:
        if self._pivot is None:
            self._pivot = self._resolve_pivot()
        return self._pivot

    def _resolve_pivot(self) -> PivotSpec:
        owner, related = self._require_owner(), self._require_related()
        owner_snake, related_snake = _snake(owner.__name__), _snake(related.__name__)
        return PivotSpec(
            table=self._table or "_".join(sorted([owner_snake, related_snake])),
            foreign_pivot_key=self._foreign_pivot_key or f"{owner_snake}_id",
            related_pivot_key=self._related_pivot_key or f"{related_snake}_id",
            parent_key=self._parent_key or owner.__primary_key__,  # type: ignore[arg-type]
            related_key=self._related_key or related.__primary_key__,  # type: ignore[arg-type]
            columns=self._pivot_columns,
            timestamps=self._with_timestamps,
        )

    def _resolve_keys(self) -> RelationKeys:
        spec = self.pivot
        return RelationKeys(spec.foreign_pivot_key, spec.parent_key, morph_type=spec.morph_type, morph_class=spec.morph_class)

    def base_query(self, session: AsyncSession, keys: list[Any]) -> Query[Any]:
        spec = self.pivot
        query = session.query(self.related_model)
        target = query.table_ref
        query.join(spec.table, f"{spec.table}.{spec.related_pivot_key}", "=", f"{target}.{spec.related_key}")
        query.where_in(f"{spec.table}.{spec.foreign_pivot_key}", keys)
        if spec.morph_type:
            query.where(f"{spec.table}.{spec.morph_type}", spec.morph_class)
        query.select(f"{target}.*", *(f"{spec.table}.{c} as pivot_{c}" for c in spec.selected_columns))
        # One entity per pivot row, so each keeps its own pivot attributes
        query._identity = False
        return query

    def assign(self, owners: Iterable[Base], related: list[Base], name: str) -> None:
        spec = self.pivot
        key_column = self.owner.__columns__.get(spec.parent_key)  # type: ignore[union-attr]
        groups: dict[Any, list[Base]] = {}
        for entity in related:
            extras = entity.__dict__["_extras"]
            attributes = {c: extras.pop(f"pivot_{c}", None) for c in spec.selected_columns}
            if key_column is not None:
                attributes[spec.foreign_pivot_key] = key_column.cast(attributes[spec.foreign_pivot_key])
            object.__setattr__(entity, "pivot", Pivot(spec.table, attributes))
            groups.setdefault(attributes[spec.foreign_pivot_key], []).append(entity)
        for owner in owners:
            owner._set_relationship(name, list(groups.get(getattr(owner, spec.parent_key), [])))


class MorphToMany(BelongsToMany):
    """Many-to-many through a polymorphic join table.

    With ``inverse=True`` this is the "morphed by many" side: the owner is the
    fixed model (e.g. ``Tag``) and the target is one of the morphable models.

    Example:
        >>> class Post(Base):
        ...     tags: Mapped[list["Tag"]] = morph_to_many("Tag", "taggable")
        >>> class Tag(Base):
        ...     posts: Mapped[list[Post]] = morphed_by_many("Post", "taggable")
    """

    def __init__(
        self,
        target: str | type[Base],
        name: str,
        table: str | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
        *,
        inverse: bool = False,
        pivot_columns: Iterable[str] = (),
        with_timestamps: bool = False,
    ) -> None:
        super().__init__(
            target,
            table,
            foreign_pivot_key,
            related_pivot_key,
            parent_key,
            related_key,
            pivot_columns=pivot_columns,
            with_timestamps=with_timestamps,
        )
        self._morph_name = name
        self.inverse = inverse

    def _resolve_pivot(self) -> PivotSpec:
        owner, related = self._require_owner(), self._require_related()
        name = self._morph_name
        if self.inverse:
            foreign = self._foreign_pivot_key or f"{_snake(owner.__name__)}_id"
            other = self._related_pivot_key or f"{name}_id"
            morph_class = related.get_morph_class()
        else:
            foreign = self._foreign_pivot_key or f"{name}_id"
            other = self._related_pivot_key or f"{_snake(related.__name__)}_id"
            morph_class = owner.get_morph_class()
        return PivotSpec(
            table=self._table or f"{name}s",
            foreign_pivot_key=foreign,
            related_pivot_key=other,
            parent_key=self._parent_key or owner.__primary_key__,  # type: ignore[arg-type]
            related_key=self._related_key or related.__primary_key__,  # type: ignore[arg-type]
            columns=self._pivot_columns,
            timestamps=self._with_timestamps,
            morph_type=f"{name}_type",
            morph_class=morph_class,
        )


# ========== Through ==========


class HasManyThrough(Relation):
    """Reach distant rows through an intermediate model.

    Example:
        >>> class Country(Base):
        ...     posts: Mapped[list["Post"]] = has_many_through("Post", "User")
        ...     # countries.id <- users.country_id, users.id <- posts.user_id
    """

    uselist = True

    def __init__(
        self,
        target: str | type[Base],
        through: str | type[Base],
        first_key: str | None = None,
        second_key: str | None = None,
        local_key: str | None = None,
        second_local_key: str | None = None,
    ) -> None:
        super().__init__(target)
        self._through = through
        self._first_key = first_key
        self._second_key = second_key
        self._local_key = local_key
        self._second_local_key = second_local_key

    @property
    def through_model(self) -> type[Base]:
        return registry.resolve(self._through, self.owner)

    def _resolve_keys(self) -> RelationKeys:
        owner, related = self._require_owner(), self._require_related()
        through = self.through_model
        first_key, second_key = self._first_key, self._second_key
        if first_key is None:
            declared = _fk_column_to(through, owner.__tablename__)
            first_key = declared[0] if declared else f"{_snake(owner.__name__)}_id"
        if second_key is None:
            declared = _fk_column_to(related, through.__tablename__)
            second_key = declared[0] if declared else f"{_snake(through.__name__)}_id"
        return RelationKeys(
            foreign_key=first_key,
            local_key=self._local_key or owner.__primary_key__,
            second_key=second_key,
            second_local_key=self._second_local_key or through.__primary_key__,
        )

    def base_query(self, session: AsyncSession, keys: list[Any]) -> Query[Any]:
        k = self.keys
        through = self.through_model
        th = through.__tablename__
        query = session.query(self.related_model)
        target = query.table_ref
        query.join(th, f"{th}.{k.second_local_key}", "=", f"{target}.{k.second_key}")
        query.where_in(f"{th}.{k.foreign_key}", keys)
        if getattr(through, "__soft_delete__", False):
            query.where_null(f"{th}.{through.__deleted_at__}")  # type: ignore[attr-defined]
        query.select(f"{target}.*", f"{th}.{k.foreign_key} as {THROUGH_KEY}")
        query._identity = False
        return query

    def match_key(self, entity: Base) -> Any:
        value = entity.__dict__["_extras"].pop(THROUGH_KEY, None)
        column = self.owner.__columns__.get(self.keys.local_key)  # type: ignore[union-attr,arg-type]
        return column.cast(value) if column is not None else value


class HasOneThrough(HasManyThrough):
    uselist = False


# ========== Polymorphic ==========


class MorphMany(Relation):
    """The related model points back with a ``<name>_type``/``<name>_id`` pair.

    Example:
        >>> class Post(Base):
        ...     comments: Mapped[list["Comment"]] = morph_many("Comment", "commentable")
    """

    uselist = True

    def __init__(
        self,
        target: str | type[Base],
        name: str,
        type: str | None = None,
        id: str | None = None,
        local_key: str | None = None,
    ) -> None:
        super().__init__(target)
        self._morph_name = name
        self._type = type
        self._id = id
        self._local_key = local_key

    def _resolve_keys(self) -> RelationKeys:
        owner = self._require_owner()
        return RelationKeys(
            foreign_key=self._id or f"{self._morph_name}_id",
            local_key=self._local_key or owner.__primary_key__,
            morph_type=self._type or f"{self._morph_name}_type",
            morph_class=owner.get_morph_class(),
        )

    def base_query(self, session: AsyncSession, keys: list[Any]) -> Query[Any]:
        k = self.keys
        query = session.query(self.related_model)
        target = query.table_ref
        query.where(f"{target}.{k.morph_type}", k.morph_class)
        return query.where_in(f"{target}.{k.foreign_key}", keys)

    def match_key(self, entity: Base) -> Any:
        return getattr(entity, self.keys.foreign_key)


class MorphOne(MorphMany):
    uselist = False


class MorphTo(Relation):
    """Inverse of morph_one/morph_many: the owner stores the type and key.

    Eager loading issues one query per distinct stored type. A type that is not
    registered raises ``UnknownMorphType``.

    Example:
        >>> class Comment(Base):
        ...     commentable_type: Mapped[str]
        ...     commentable_id: Mapped[int]
        ...     commentable: Mapped[Any] = morph_to()
    """

    def __init__(self, name: str | None = None, type: str | None = None, id: str | None = None, owner_key: str | None = None) -> None:
        super().__init__(None)
        self._morph_name = name
        self._type = type
        self._id = id
        self._owner_key = owner_key

    @property
    def related_model(self) -> type[Base] | None:
        return None

    def _resolve_keys(self) -> RelationKeys:
        name = self._morph_name or self.name
        return RelationKeys(
            foreign_key=self._id or f"{name}_id",
            local_key=self._owner_key,
            morph_type=self._type or f"{name}_type",
        )

    def _owner_key_name(self) -> str:
        return self.keys.foreign_key

    def _resolve_morph_target(self, discriminator: str) -> tuple[type[Base], str]:
        model = registry.morph_model(discriminator)
        return model, self.keys.local_key or model.__primary_key__  # type: ignore[return-value]

    def query_for(self, session: AsyncSession, owner: Base) -> Query[Any]:
        model, key = self._resolve_morph_target(getattr(owner, self.keys.morph_type))  # type: ignore[arg-type]
        query = session.query(model)
        return query.where(f"{query.table_ref}.{key}", model.__columns__[key].cast(getattr(owner, self.keys.foreign_key)))

    async def eager_load(
        self,
        session: AsyncSession,
        owners: list[Base],
        name: str,
        *,
        constraint: Constraint | Mapping[Any, Constraint] | None = None,
        identity_map: IdentityMap | None = None,
        strict: bool = False,
    ) -> list[Base]:
        k = self.keys
        groups: dict[str, list[Base]] = {}
        for owner in owners:
            discriminator = getattr(owner, k.morph_type)  # type: ignore[arg-type]
            if discriminator is not None and getattr(owner, k.foreign_key) is not None:
                groups.setdefault(discriminator, []).append(owner)

        matches: dict[tuple[str, Any], Base] = {}
        loaded: list[Base] = []
        for discriminator in sorted(groups):
            model, key = self._resolve_morph_target(discriminator)
            cast = model.__columns__[key].cast
            query = session.query(model)
            query.where_in(f"{query.table_ref}.{key}", _ordered(cast(getattr(o, k.foreign_key)) for o in groups[discriminator]))
            query._identity_map = identity_map
            query._strict = strict
            per_type = constraint.get(model, constraint.get(discriminator)) if isinstance(constraint, Mapping) else constraint
            if per_type is not None:
                query._apply_constraint(per_type)
            for entity in await query.get():
                matches[(discriminator, getattr(entity, key))] = entity
                loaded.append(entity)

        for owner in owners:
            discriminator = getattr(owner, k.morph_type)  # type: ignore[arg-type]
            value = None
            if discriminator in groups:
                model, key = self._resolve_morph_target(discriminator)
                value = matches.get((discriminator, model.__columns__[key].cast(getattr(owner, k.foreign_key))))
            owner._set_relationship(name, value)
        return loaded


# ========== Declaration helpers ==========


def has_one(target: str | type[Base], foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """One related row holding a foreign key to this model."""
    return HasOne(target, foreign_key, local_key)


def has_many(target: str | type[Base], foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """Related rows holding a foreign key to this model.

    The foreign key defaults to a column declared with ``ForeignKey`` to this
    model's table, else ``<owner_snake_name>_id``.
    """
    return HasMany(target, foreign_key, local_key)


def belongs_to(target: str | type[Base], foreign_key: str | None = None, owner_key: str | None = None) -> Any:
    """The row this model's foreign key points to."""
    return BelongsTo(target, foreign_key, owner_key)


def belongs_to_many(
    target: str | type[Base],
    table: str | None = None,
    foreign_pivot_key: str | None = None,
    related_pivot_key: str | None = None,
    parent_key: str | None = None,
    related_key: str | None = None,
    *,
    pivot_columns: Iterable[str] = (),
    with_timestamps: bool = False,
) -> Any:
    """Many-to-many through a join table.

    Example:
        >>> roles: Mapped[list["Role"]] = belongs_to_many("Role", "role_user", pivot_columns=["granted_by"])
    """
    return BelongsToMany(
        target,
        table,
        foreign_pivot_key,
        related_pivot_key,
        parent_key,
        related_key,
        pivot_columns=pivot_columns,
        with_timestamps=with_timestamps,
    )


def has_one_through(target: str | type[Base], through: str | type[Base], first_key: str | None = None,
                    second_key: str | None = None, local_key: str | None = None,
                    second_local_key: str | None = None) -> Any:
    return HasOneThrough(target, through, first_key, second_key, local_key, second_local_key)


def has_many_through(target: str | type[Base], through: str | type[Base], first_key: str | None = None,
                     second_key: str | None = None, local_key: str | None = None,
                     second_local_key: str | None = None) -> Any:
    return HasManyThrough(target, through, first_key, second_key, local_key, second_local_key)


def morph_one(target: str | type[Base], name: str, type: str | None = None, id: str | None = None, local_key: str | None = None) -> Any:
    return MorphOne(target, name, type, id, local_key)


def morph_many(target: str | type[Base], name: str, type: str | None = None, id: str | None = None, local_key: str | None = None) -> Any:
    return MorphMany(target, name, type, id, local_key)


def morph_to(name: str | None = None, type: str | None = None, id: str | None = None, owner_key: str | None = None) -> Any:
    return MorphTo(name, type, id, owner_key)


def morph_to_many(target: str | type[Base], name: str, table: str | None = None, **kwargs: Any) -> Any:
    return MorphToMany(target, name, table, **kwargs)


def morphed_by_many(target: str | type[Base], name: str, table: str | None = None, **kwargs: Any) -> Any:
    return MorphToMany(target, name, table, inverse=True, **kwargs)


# ========== Loading options ==========


@dataclass(frozen=True)
class LoadOption:
    """Represents a relationship loading option for one dot-separated path."""

    strategy: str  # "selectin" or "noload"
    path: str
    constraint: Constraint | Mapping[Any, Constraint] | None = None

    @property
    def attr_name(self) -> str:
        """First segment of the path."""
        return self.path.split(".", 1)[0]

    def __repr__(self) -> str:
        return f"<LoadOption {self.strategy} {self.path}>"


def _path_of(attr: str | Relation) -> str:
    if isinstance(attr, Relation):
        return attr.name or ""
    return attr


def selectinload(attr: str | Relation, constraint: Constraint | Mapping[Any, Constraint] | None = None) -> LoadOption:
    """Eager load a relationship path using one SELECT ... IN query per segment.

    ``constraint`` refines the query for the last segment of the path.

    Example:
        >>> users = await session.query(User).options(selectinload("posts")).get()
        >>> users = await session.query(User).options(
        ...     selectinload("posts.comments", lambda q: q.where("approved", True))
        ... ).get()
    """
    return LoadOption("selectin", _path_of(attr), constraint)


def noload(attr: str | Relation) -> LoadOption:
    """Mark a relationship as loaded-empty without querying.

    Example:
        >>> users = await session.query(User).options(noload("posts")).get()
    """
    return LoadOption("noload", _path_of(attr))
