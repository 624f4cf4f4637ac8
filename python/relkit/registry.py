"""Model registry used to resolve relationship targets and polymorphic types."""

from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING

from relkit.errors import UnknownMorphType

if TYPE_CHECKING:
    from relkit.base import Base


class ModelRegistry:
    """Maps table names, class names and morph discriminators to model classes.

    Populated while model classes are defined; read-only afterwards, so
    concurrent readers need no locking.
    """

    def __init__(self) -> None:
        self._models: dict[str, type[Base]] = {}
        self._morph_types: dict[str, type[Base]] = {}

    def register(self, model: type[Base]) -> None:
        """Register a model class for relationship resolution."""
        self._models[model.__tablename__] = model
        self._models[model.__name__] = model
        self._morph_types[self.morph_name(model)] = model

    def register_morph_map(self, mapping: Mapping[str, type[Base]]) -> None:
        """Pin discriminator strings to model classes.

        Example:
            >>> registry.register_morph_map({"post": Post, "video": Video})
        """
        for name, model in mapping.items():
            model.__morph_name__ = name
            self._morph_types[name] = model

    def get(self, name: str) -> type[Base] | None:
        """Get a model class by table name or class name."""
        return self._models.get(name)

    def resolve(self, target: str | type[Base], owner: type[Base] | None = None) -> type[Base]:
        """Resolve a relationship target given as a class or a name.

        Names are looked up in the owner's module first, then in the registry,
        so two modules may each define a ``User`` model.
        """
        if isinstance(target, type):
            return target
        if owner is not None:
            module = sys.modules.get(owner.__module__)
            candidate = getattr(module, target, None) if module else None
            if isinstance(candidate, type) and hasattr(candidate, "__columns__"):
                return candidate
        model = self.get(target)
        if model is None:
            raise LookupError(f"Unknown model {target!r}")
        return model

    def morph_name(self, model: type[Base]) -> str:
        """The discriminator stored for ``model`` in polymorphic type columns."""
        return getattr(model, "__morph_name__", None) or model.__name__

    def morph_model(self, discriminator: str) -> type[Base]:
        """Look up the model registered for a stored discriminator."""
        try:
            return self._morph_types[discriminator]
        except KeyError:
            raise UnknownMorphType(discriminator) from None

    def __contains__(self, name: str) -> bool:
        return name in self._models

    def __iter__(self) -> Iterator[type[Base]]:
        return iter(dict.fromkeys(self._models.values()))


registry = ModelRegistry()


def register_model(model_cls: type[Base]) -> None:
    registry.register(model_cls)


def get_model(name: str) -> type[Base] | None:
    return registry.get(name)


def register_morph_map(mapping: Mapping[str, type[Base]]) -> None:
    registry.register_morph_map(mapping)
