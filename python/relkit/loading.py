"""Eager loading: plan construction, row hydration and batched relation loads.

Loading an object graph costs one query for the root plus one query per
relation path segment (one per stored type for ``morph_to``), independent
of how many rows each level returns.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from relkit.errors import InvalidRelationPath
from relkit.relationships import LoadOption, MorphTo

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.session import AsyncSession

logger = logging.getLogger(__name__)


class IdentityMap:
    """One entity per (model, primary key) within a load.

    Entities reached through several paths of the same graph are the same
    object, so relations assigned through one path are visible from all.
    """

    def __init__(self) -> None:
        self._entities: dict[tuple[type, Any], Base] = {}

    def get(self, model: type[Base], key: Any) -> Base | None:
        return self._entities.get((model, key))

    def add(self, entity: Base) -> Base:
        """Store ``entity`` unless one with its key is already known; return the kept one."""
        key = entity.get_key()
        if key is None:
            return entity
        return self._entities.setdefault((type(entity), key), entity)

    def __contains__(self, item: tuple[type, Any]) -> bool:
        return item in self._entities

    def __len__(self) -> int:
        return len(self._entities)


class ResultHydrator:
    """Turns row dictionaries into model instances."""

    def __init__(
        self,
        model: type[Base],
        session: AsyncSession | None,
        identity_map: IdentityMap | None = None,
        *,
        dedupe: bool = True,
        strict: bool = False,
    ) -> None:
        self._model = model
        self._session = session
        self._identity_map = identity_map
        self._dedupe = dedupe
        self._strict = strict

    def hydrate(self, rows: Iterable[dict[str, Any]]) -> list[Base]:
        entities = []
        for row in rows:
            entity = self._model._from_row(row, self._session)
            if self._strict:
                object.__setattr__(entity, "_strict", True)
            if self._dedupe and self._identity_map is not None:
                entity = self._identity_map.add(entity)
            entities.append(entity)
        return entities


class LoadState(Enum):
    """Progress of a load plan.

    ROOT: root rows not yet hydrated. PENDING: a level's owner keys are being
    collected. BATCHED: the level's query is in flight. ASSIGNED: results
    have been handed to their owners. DONE: every path is loaded.
    """

    ROOT = "root"
    PENDING = "pending"
    BATCHED = "batched"
    ASSIGNED = "assigned"
    DONE = "done"


@dataclass
class PlanNode:
    """One relation segment of the load tree."""

    name: str
    path: str
    strategy: str = "selectin"
    constraint: Any = None
    children: dict[str, PlanNode] = field(default_factory=dict)


@dataclass
class LoadPlan:
    """Relation paths to load for a root model, as a tree.

    ``pending`` maps each path to the owner keys awaiting assignment while the
    plan runs.
    """

    model: type[Base]
    roots: dict[str, PlanNode] = field(default_factory=dict)
    state: LoadState = LoadState.ROOT
    pending: dict[str, list[Any]] = field(default_factory=dict)

    @classmethod
    def build(cls, model: type[Base], options: Iterable[LoadOption | str]) -> LoadPlan:
        """Merge load options into a tree, rejecting unknown relations up front.

        ``"a.b"`` implies loading ``"a"``. The constraint of an option applies
        to the last segment of its path. Segments past a ``morph_to`` are
        checked per concrete type while loading.
        """
        plan = cls(model)
        for option in options:
            if isinstance(option, str):
                option = LoadOption("selectin", option)
            plan.add(option)
        return plan

    def add(self, option: LoadOption) -> None:
        segments = [s for s in option.path.split(".") if s]
        if not segments:
            raise InvalidRelationPath(self.model, option.path, option.path)

        nodes = self.roots
        current: type[Base] | None = self.model
        for i, segment in enumerate(segments):
            if current is not None:
                relation = current.__relationships__.get(segment)
                if relation is None:
                    raise InvalidRelationPath(current, option.path, segment)
                current = None if isinstance(relation, MorphTo) else relation.related_model

            path = ".".join(segments[: i + 1])
            node = nodes.get(segment)
            if node is None:
                node = nodes[segment] = PlanNode(segment, path)
            if i == len(segments) - 1:
                node.strategy = option.strategy
                if option.constraint is not None:
                    node.constraint = option.constraint
            nodes = node.children

    def __bool__(self) -> bool:
        return bool(self.roots)


class EagerLoadPlanner:
    """Executes a :class:`LoadPlan` level by level (breadth first)."""

    def __init__(self, session: AsyncSession, identity_map: IdentityMap | None = None, *, strict: bool = False) -> None:
        self._session = session
        self._identity_map = identity_map if identity_map is not None else IdentityMap()
        self._strict = strict

    async def run(self, plan: LoadPlan, entities: list[Base], *, missing_only: bool = False) -> list[Base]:
        """Load every path of ``plan`` onto ``entities``.

        With ``missing_only`` relations already loaded on an owner are kept and
        only their nested paths are followed.
        """
        for entity in entities:
            self._identity_map.add(entity)

        level: list[tuple[list[Base], dict[str, PlanNode]]] = [(entities, plan.roots)]
        while level:
            next_level: list[tuple[list[Base], dict[str, PlanNode]]] = []
            for owners, nodes in level:
                for model, group in _by_model(owners).items():
                    for node in nodes.values():
                        related = await self._load_node(plan, model, group, node, missing_only)
                        if node.children and related:
                            next_level.append((related, node.children))
            level = next_level

        plan.state = LoadState.DONE
        return entities

    async def _load_node(
        self,
        plan: LoadPlan,
        model: type[Base],
        owners: list[Base],
        node: PlanNode,
        missing_only: bool,
    ) -> list[Base]:
        relation = model.__relationships__.get(node.name)
        if relation is None:
            raise InvalidRelationPath(model, node.path, node.name)

        plan.state = LoadState.PENDING
        todo = owners
        reused: list[Base] = []
        if missing_only:
            todo = [o for o in owners if not o.relation_loaded(node.name)]
            for owner in owners:
                if owner.relation_loaded(node.name):
                    reused.extend(_as_list(owner.get_relation(node.name)))

        if not todo:
            plan.state = LoadState.ASSIGNED
            return reused

        if node.strategy == "noload":
            relation.assign_empty(todo, node.name)
            plan.state = LoadState.ASSIGNED
            return reused

        plan.pending[node.path] = relation.owner_keys(todo)
        plan.state = LoadState.BATCHED
        logger.debug("eager loading %s.%s for %d owner(s)", model.__name__, node.path, len(todo))
        related = await relation.eager_load(
            self._session,
            todo,
            node.name,
            constraint=node.constraint,
            identity_map=self._identity_map,
            strict=self._strict,
        )
        plan.pending.pop(node.path, None)
        plan.state = LoadState.ASSIGNED
        return reused + related


def _by_model(entities: Iterable[Base]) -> dict[type[Base], list[Base]]:
    groups: dict[type[Base], list[Base]] = {}
    seen: set[int] = set()
    for entity in entities:
        if entity is None or id(entity) in seen:
            continue
        seen.add(id(entity))
        groups.setdefault(type(entity), []).append(entity)
    return groups


def _as_list(value: Any) -> list[Base]:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def as_load_options(relations: Iterable[Any]) -> list[LoadOption]:
    """Normalize ``with_()`` arguments: paths, ``{path: constraint}`` mappings or options."""
    options: list[LoadOption] = []
    for relation in relations:
        if isinstance(relation, LoadOption):
            options.append(relation)
        elif isinstance(relation, Mapping):
            options.extend(LoadOption("selectin", path, constraint) for path, constraint in relation.items())
        else:
            options.append(LoadOption("selectin", relation))
    return options
