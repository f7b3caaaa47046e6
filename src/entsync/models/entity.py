"""Sync entity base classes.

  * ``SyncEntity``             – base for all synchronised records
  * ``SyncProviderInterface``  – marker base for "this provider services X"

Relationships are declared with class-level mappings from property name to
the related entity class (or its class name, for forward references):

    class User(SyncEntity):
        one_to_many: ClassVar[dict] = {"tasks": "Task"}

        name: str = ""
        tasks: list[Task] | None = None
"""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Iterator

from pydantic import BaseModel, ConfigDict

from entsync.exceptions import SyncCircularReferenceError, SyncConfigurationError

from .enums import Conformity

if TYPE_CHECKING:
    from entsync.engine.context import SyncContext
    from entsync.engine.container import Container
    from entsync.engine.provider import SyncEntityProvider, SyncProvider
    from entsync.stores.sync_store import SyncStore


# ── Naming helpers ──────────────────────────────────────

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_WORD = re.compile(r"[^A-Za-z0-9]+")


def snake_case(value: str) -> str:
    """``userId`` / ``User-ID`` / ``UserGroup`` → ``user_id`` / ``user_id`` / ``user_group``."""
    value = _CAMEL_BOUNDARY.sub("_", value)
    return _NON_WORD.sub("_", value).strip("_").lower()


def pluralize(noun: str) -> str:
    if re.search(r"(s|x|z|ch|sh)$", noun):
        return noun + "es"
    if re.search(r"[^aeiou]y$", noun):
        return noun[:-1] + "ies"
    return noun + "s"


_ENTITY_CLASSES: dict[str, type[SyncEntity]] = {}


def resolve_entity_class(target: str | type, module: str | None = None) -> type[SyncEntity]:
    """Resolve a relationship target given as a class or a class name.

    Bare names are looked up in ``module`` first.
    """
    if isinstance(target, str):
        cls = _ENTITY_CLASSES.get(f"{module}.{target}") if module else None
        cls = cls or _ENTITY_CLASSES.get(target)
        if cls is None:
            raise SyncConfigurationError(f"Unknown entity class: {target}")
        return cls
    if not (isinstance(target, type) and issubclass(target, SyncEntity)):
        raise SyncConfigurationError(f"{target!r} is not a SyncEntity subclass")
    return target


def collapse(value: Any) -> Any:
    """Reduce a value to JSON-friendly data, replacing related entities with their IDs."""
    from entsync.engine.deferred import Deferred, DeferredRelationship

    if isinstance(value, SyncEntity):
        return value.id
    if isinstance(value, Deferred):
        if value.is_resolved:
            return collapse(value.value)
        # An unresolved relationship only knows its owner's ID
        return None if isinstance(value, DeferredRelationship) else value.identifier
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [collapse(v) for v in value]
    if isinstance(value, dict):
        return {k: collapse(v) for k, v in value.items()}
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _is_pending(value: Any) -> bool:
    from entsync.engine.deferred import Deferred

    return isinstance(value, Deferred) and not value.is_resolved


# ── Base Entity ─────────────────────────────────────────

class SyncEntity(BaseModel):
    """Base class for entities synced to and from backends.

    Entities compare by identity: the store guarantees one instance per
    (provider, entity type, id) within a run.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: int | str | None = None

    one_to_one: ClassVar[dict[str, str | type]] = {}
    one_to_many: ClassVar[dict[str, str | type]] = {}
    parent_property: ClassVar[str | None] = None
    children_property: ClassVar[str | None] = None
    plural_noun: ClassVar[str | None] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        _ENTITY_CLASSES[cls.__name__] = cls
        _ENTITY_CLASSES[f"{cls.__module__}.{cls.__qualname__}"] = cls

    __eq__ = object.__eq__
    __hash__ = object.__hash__

    def __repr_args__(self):
        related = set(self.one_to_one) | set(self.one_to_many)
        related.update(p for p in (self.parent_property, self.children_property) if p)
        for name, value in super().__repr_args__():
            yield name, collapse(value) if name in related else value

    # ── Naming ──────────────────────────────────────────

    @classmethod
    def noun(cls) -> str:
        return snake_case(cls.__name__)

    @classmethod
    def plural(cls) -> str:
        return cls.plural_noun or pluralize(cls.noun())

    @classmethod
    def qualified_name(cls) -> str:
        return f"{cls.__module__}.{cls.__qualname__}"

    def display_name(self) -> str:
        name = getattr(self, "name", None)
        if isinstance(name, str) and name:
            return name
        return f"{type(self).__name__}#{self.id}"

    # ── Construction from backend data ──────────────────

    @classmethod
    def provide(
        cls,
        data: dict[str, Any],
        provider: SyncProvider,
        context: SyncContext | None = None,
    ):
        """Create an entity (or update the registered one) from backend data."""
        context = context or provider.get_context()
        concrete = context.container.get_class(cls)
        constructor = provider.introspector.get(concrete).constructor
        create = constructor.get_create_from(strict=context.strict)
        return create(data, provider, context, service=cls)

    @classmethod
    def provide_list(
        cls,
        items: Any,
        provider: SyncProvider,
        conformity: Conformity = Conformity.NONE,
        context: SyncContext | None = None,
    ) -> Iterator[Any]:
        """Lazily create entities from an iterable of backend records."""
        context = (context or provider.get_context()).with_conformity(conformity)
        concrete = context.container.get_class(cls)
        constructor = provider.introspector.get(concrete).constructor
        create = None
        for item in items:
            if create is None or conformity is Conformity.NONE:
                create = (
                    constructor.get_create_from(strict=context.strict)
                    if conformity is Conformity.NONE
                    else constructor.get_create_from_signature(list(item), strict=context.strict)
                )
            yield create(item, provider, context, service=cls)

    @classmethod
    def with_default_provider(
        cls,
        container: Container,
        context: SyncContext | None = None,
    ) -> SyncEntityProvider:
        """Return an entity provider backed by the container's provider for this entity."""
        interface = SyncProviderInterface.for_entity(cls)
        if interface is None:
            raise SyncConfigurationError(f"No provider interface declared for {cls.__name__}")
        return container.get(interface).with_(cls, context)

    @classmethod
    def uri(cls, store: SyncStore, compact: bool = True) -> str | None:
        return store.get_entity_uri(cls, compact)

    # ── Serialisation ───────────────────────────────────

    def to_record(self) -> dict[str, Any]:
        """Serialise the entity with relationships collapsed to identifiers."""
        record = {name: collapse(getattr(self, name, None)) for name in type(self).model_fields}
        if self.model_extra:
            record.update({k: collapse(v) for k, v in self.model_extra.items()})
        return record

    # ── Hierarchy ───────────────────────────────────────

    def get_parent(self) -> SyncEntity | None:
        prop = self.parent_property
        return getattr(self, prop, None) if prop else None

    def get_children(self) -> list[SyncEntity]:
        prop = self.children_property
        value = getattr(self, prop, None) if prop else None
        return value if isinstance(value, list) else []

    def set_parent(self, parent: SyncEntity | None) -> None:
        if not self.parent_property or not self.children_property:
            raise SyncConfigurationError(f"{type(self).__name__} is not hierarchical")
        current = self.get_parent()
        if current is not parent:
            node = parent
            while isinstance(node, SyncEntity):
                if node is self:
                    raise SyncCircularReferenceError(
                        f"Circular hierarchy: {self.display_name()} cannot be a child of {parent.display_name()}"
                    )
                node = node.get_parent()
            if isinstance(current, SyncEntity) and not _is_pending(getattr(current, current.children_property, None)):
                siblings = current.get_children()
                setattr(current, current.children_property, [c for c in siblings if c is not self])
            setattr(self, self.parent_property, parent)
        # Pending children are replaced wholesale when they resolve
        if parent is not None and not _is_pending(getattr(parent, parent.children_property, None)):
            children = parent.get_children()
            if not any(c is self for c in children):
                setattr(parent, parent.children_property, [*children, self])

    def add_child(self, child: SyncEntity) -> None:
        child.set_parent(self)

    def depth(self) -> int:
        depth, node = 0, self.get_parent()
        while isinstance(node, SyncEntity):
            depth += 1
            node = node.get_parent()
        return depth


# ── Provider interfaces ─────────────────────────────────

class SyncProviderInterface:
    """Marker base for interfaces that declare which entity a provider services.

        class TaskProvider(SyncProviderInterface):
            entity = Task

    Concrete providers inherit from one interface per serviced entity.
    """
    entity: ClassVar[type[SyncEntity] | str | None] = None

    _interfaces: ClassVar[list[type[SyncProviderInterface]]] = []

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if cls.__dict__.get("entity") is not None:
            SyncProviderInterface._interfaces.append(cls)

    @classmethod
    def is_interface(cls, klass: type) -> bool:
        return (
            isinstance(klass, type)
            and issubclass(klass, SyncProviderInterface)
            and klass.__dict__.get("entity") is not None
        )

    @classmethod
    def serviced_entity(cls, interface: type) -> type[SyncEntity]:
        return resolve_entity_class(interface.__dict__["entity"], interface.__module__)

    @classmethod
    def for_entity(cls, entity: type[SyncEntity]) -> type[SyncProviderInterface] | None:
        """Return the first declared interface servicing ``entity`` or one of its bases."""
        for klass in entity.__mro__:
            for interface in SyncProviderInterface._interfaces:
                try:
                    if cls.serviced_entity(interface) is klass:
                        return interface
                except SyncConfigurationError:
                    continue
        return None
