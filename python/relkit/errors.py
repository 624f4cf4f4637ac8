"""Exception types raised by relkit."""

from __future__ import annotations

from typing import Any


class RelkitError(Exception):
    """Base class for all relkit errors."""


class NotFound(RelkitError, LookupError):
    """A required record does not exist.

    Raised by the hard-failing lookups (``get_or_raise``, ``find_or_fail``,
    ``first_or_fail``). The nullable variants return ``None`` instead.
    """

    def __init__(self, model: type | str, key: Any = None) -> None:
        self.model = model
        self.key = key
        name = model if isinstance(model, str) else model.__name__
        if key is None:
            super().__init__(f"No {name} record matches the query")
        else:
            super().__init__(f"{name} with key={key!r} not found")


class MultipleRecordsFound(RelkitError):
    """A query expected to return at most one row returned more."""


class ConstraintViolation(RelkitError):
    """The database rejected a write because of a unique, foreign-key or NOT NULL constraint."""


class DeadlockOrSerializationConflict(RelkitError):
    """The database aborted the transaction because of a deadlock or a serialization failure.

    Transactions run through ``AsyncSession.transaction()`` retry on this
    error until their attempts are exhausted.
    """


class TransactionError(RelkitError):
    """Invalid transaction state transition (for example nested ``begin``)."""


class LazyAccessViolation(RelkitError):
    """A relation was lazily loaded while strict loading is enabled."""

    def __init__(self, model: type, relation: str) -> None:
        self.model = model
        self.relation = relation
        super().__init__(
            f"Attempted to lazy load '{relation}' on {model.__name__} while strict loading is on. "
            "Eager load it with with_() / selectinload() or call session.load()."
        )


class RelationNotLoaded(RelkitError, AttributeError):
    """A relation attribute was read before it was loaded."""

    def __init__(self, model: type, relation: str) -> None:
        self.model = model
        self.relation = relation
        super().__init__(
            f"Relationship '{relation}' on {model.__name__} is not loaded. "
            "Use with_() / selectinload(), session.load() or session.fetch_relation()."
        )


class InvalidRelationPath(RelkitError, ValueError):
    """An eager-load path names a relation the model does not declare."""

    def __init__(self, model: type, path: str, segment: str) -> None:
        self.model = model
        self.path = path
        self.segment = segment
        super().__init__(
            f"Call to undefined relationship '{segment}' on {model.__name__} (path '{path}')"
        )


class UnknownMorphType(RelkitError, LookupError):
    """A stored polymorphic discriminator does not map to a registered model."""

    def __init__(self, discriminator: str) -> None:
        self.discriminator = discriminator
        super().__init__(f"No model is registered for morph type {discriminator!r}")


class MassAssignmentRejected(RelkitError):
    """An attribute outside the mass-assignment allow-list was supplied."""

    def __init__(self, model: type, attributes: list[str]) -> None:
        self.model = model
        self.attributes = attributes
        joined = ", ".join(attributes)
        super().__init__(f"Add [{joined}] to the fillable attributes to allow mass assignment on {model.__name__}")
