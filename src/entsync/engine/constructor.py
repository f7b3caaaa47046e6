"""Signature-cached construction of entities from backend records.

Records with the same set of keys share one compiled closure: the work of
matching keys to fields, relationships and ``*_id`` conventions happens once
per layout, after which every record is a dictionary lookup away from its
closure.
"""

from __future__ import annotations

import re
import threading
from typing import TYPE_CHECKING, Any, Callable, Iterable

from entsync.engine.introspection import entity_to_provider
from entsync.exceptions import UnclaimedDataError
from entsync.logging import get_logger
from entsync.models.entity import SyncEntity, pluralize, snake_case
from entsync.models.enums import HydrationPolicy

if TYPE_CHECKING:
    from entsync.engine.context import SyncContext
    from entsync.engine.introspection import ClassInfo, Introspector
    from entsync.engine.provider import SyncProvider

log = get_logger("constructor")

_ID_SUFFIX = re.compile(r"^(.+)_id(s?)$")

Create = Callable[..., Any]
Resolver = Callable[[dict, SyncEntity, "SyncProvider | None", "SyncContext | None"], None]


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (int, str, float)) and not isinstance(value, bool)


def signature_of(keys: Iterable[str]) -> str:
    return "\0".join(sorted(keys))


class SignatureConstructor:
    """Builds and caches one creation closure per record signature.

        create = Task.provide  # uses this under the hood
        create = introspector.get(Task).constructor.get_create_from()
        task = create({"id": 5, "title": "Write"}, provider, ctx)
    """

    def __init__(self, info: ClassInfo, introspector: Introspector):
        self.info = info
        self.introspector = introspector
        self._closures: dict[tuple[str, bool], Create] = {}
        self._lock = threading.RLock()

    # ── Public API ──────────────────────────────────────

    def get_create_from(self, strict: bool = False) -> Create:
        """Return a function that creates an entity from any record layout."""

        def create(
            data: dict[str, Any],
            provider: SyncProvider | None = None,
            context: SyncContext | None = None,
            service: type | None = None,
        ) -> Any:
            closure = self._closure(tuple(data), strict)
            return closure(data, provider, context, service)

        return create

    def get_create_from_signature(self, keys: Iterable[str], strict: bool = False) -> Create:
        """Return the closure for one record layout, for batches known to share it."""
        return self._closure(tuple(keys), strict)

    def cached_signatures(self) -> list[tuple[str, bool]]:
        return list(self._closures)

    # ── Compilation ─────────────────────────────────────

    def _closure(self, keys: tuple[str, ...], strict: bool) -> Create:
        sig = signature_of(keys)
        closure = self._closures.get((sig, strict))
        if closure is not None:
            return closure
        with self._lock:
            closure = self._closures.get((sig, strict))
            if closure is None:
                closure = self._compile(keys, strict)
                self._closures[(sig, strict)] = closure
                # Nothing was discarded, so the same closure serves loose callers
                if strict:
                    self._closures.setdefault((sig, False), closure)
                log.debug(
                    "signature_compiled",
                    entity=self.info.cls.__name__,
                    keys=len(keys),
                    strict=strict,
                )
            return closure

    def _compile(self, keys: tuple[str, ...], strict: bool) -> Create:
        info = self.info
        concrete = info.cls

        # normalised key → record key
        normalised: dict[str, str] = {}
        # ``name`` and ``Name`` can't both be applied, so the later key is unclaimed
        collisions: list[str] = []
        for key in keys:
            nkey = snake_case(key)
            if nkey in normalised:
                collisions.append(key)
            else:
                normalised[nkey] = key

        relationship_props = {snake_case(p): p for p in info.relationships}
        params: dict[str, str] = {}
        properties: dict[str, str] = {}
        related: dict[str, tuple[str, bool, bool]] = {}  # property → (key, is_list, declared)
        unclaimed: list[tuple[str, str]] = []

        for nkey, key in normalised.items():
            if nkey in relationship_props:
                prop = relationship_props[nkey]
                related[prop] = (key, prop in info.one_to_many, True)
            elif nkey in info.parameters:
                params[info.parameters[nkey]] = key
            elif nkey in info.writable:
                properties[info.writable[nkey]] = key
            else:
                unclaimed.append((nkey, key))

        # ``assignee_id`` → ``assignee``, ``task_ids`` → ``task`` or ``tasks``
        leftover: list[str] = list(collisions)
        for nkey, key in unclaimed:
            match = _ID_SUFFIX.match(nkey)
            prop = None
            if match:
                base, is_list = match.group(1), bool(match.group(2))
                for candidate in ([base, pluralize(base)] if is_list else [base]):
                    name = info.writable.get(candidate)
                    if name and candidate not in normalised and name not in related:
                        prop = name
                        break
            if prop is None:
                leftover.append(key)
                continue
            relationships = info.one_to_many if is_list else info.one_to_one
            related[prop] = (key, is_list, prop in relationships)

        extras: list[str] = []
        if leftover:
            if strict:
                raise UnclaimedDataError(concrete, leftover)
            if info.extensible:
                extras = leftover
            else:
                log.debug("keys_discarded", entity=concrete.__name__, keys=leftover)

        id_key = params.get(info.id_property) if info.id_property else None

        resolvers: list[Resolver] = []
        for prop, (key, is_list, declared) in related.items():
            target = info.relationships.get(prop) if declared else None
            resolvers.append(self._relationship(key, prop, target, is_list))

        hydrators: list[Resolver] = []
        if id_key is not None:
            for prop, target in info.one_to_many.items():
                if prop not in related:
                    hydrators.append(self._hydrator(id_key, prop, target))

        def construct(data: dict[str, Any]) -> SyncEntity:
            values = {field: data[key] for field, key in params.items()}
            for key in extras:
                values[key] = data[key]
            entity = concrete(**values)
            for name, key in properties.items():
                setattr(entity, name, data[key])
            return entity

        def update(entity: SyncEntity, data: dict[str, Any]) -> SyncEntity:
            for field, key in params.items():
                setattr(entity, field, data[key])
            for name, key in properties.items():
                setattr(entity, name, data[key])
            for key in extras:
                setattr(entity, key, data[key])
            return entity

        def create(
            data: dict[str, Any],
            provider: SyncProvider | None,
            context: SyncContext | None,
            service: type | None = None,
        ) -> SyncEntity:
            entity_type = service or concrete
            entity_id = data[id_key] if id_key is not None else None

            if entity_id is None or provider is None:
                entity = construct(data)
                for resolve in resolvers:
                    resolve(data, entity, provider, context)
                return entity

            store = provider.store
            provider_id = provider.provider_id
            store.register_entity_type(entity_type)
            # One thread registers each key; the others update what it built
            with store.resolution_lock(provider_id, entity_type, entity_id):
                entity = store.get_entity(provider_id, entity_type, entity_id)
                is_new = entity is None
                if is_new:
                    entity = construct(data)
                    store.set_entity(provider_id, entity_type, entity_id, entity, persist=False)
                else:
                    update(entity, data)
            for resolve in resolvers:
                resolve(data, entity, provider, context)
            if is_new:
                for hydrate in hydrators:
                    hydrate(data, entity, provider, context)
            store.save_entity(provider_id, entity_type, entity_id, entity)
            return entity

        return create

    # ── Relationship closures ───────────────────────────

    def _relationship(self, key: str, prop: str, target: type[SyncEntity] | None, is_list: bool) -> Resolver:
        if target is None:
            def assign(data, entity, provider, context) -> None:
                setattr(entity, prop, data[key])
            return assign

        from entsync.engine.deferred import DeferredEntity, DeferredList

        is_parent = prop == self.info.parent_property
        is_children = prop == self.info.children_property

        def resolve(data, entity, provider, context) -> None:
            value = data[key]
            if (
                value is None
                or isinstance(value, list) != is_list
                or provider is None
                or context is None
            ):
                setattr(entity, prop, value)
                return

            if is_list:
                if not value:
                    setattr(entity, prop, [])
                    return
                if _is_scalar(value[0]):
                    DeferredList.defer(
                        provider,
                        context.push_with_recursion_check(entity),
                        target,
                        value,
                        entity,
                        prop,
                        callback=_add_children(entity, prop) if is_children else None,
                    )
                    return
                entities = list(target.provide_list(value, provider, context.conformity, context.push(entity)))
                if is_children:
                    _add_children(entity, prop)(entities)
                else:
                    setattr(entity, prop, entities)
                return

            if _is_scalar(value):
                DeferredEntity.defer(
                    provider,
                    context.push_with_recursion_check(entity),
                    target,
                    value,
                    entity,
                    prop,
                    callback=entity.set_parent if is_parent else None,
                )
                return

            related = target.provide(value, provider, context.push(entity))
            if is_parent:
                entity.set_parent(related)
            else:
                setattr(entity, prop, related)

        return resolve

    def _hydrator(self, id_key: str, prop: str, target: type[SyncEntity]) -> Resolver:
        """Fill an absent one-to-many relationship with a ``DeferredRelationship``."""
        from entsync.engine.deferred import DeferredRelationship

        interface = entity_to_provider(target)
        is_children = prop == self.info.children_property
        parent_property = self.info.parent_property

        def hydrate(data, entity, provider, context) -> None:
            if (
                context is None
                or interface is None
                or not isinstance(provider, interface)
                or data[id_key] is None
            ):
                return
            if context.get_hydration_policy(target) is HydrationPolicy.SUPPRESS:
                return
            owner_id = data[id_key]
            if is_children:
                filters = {parent_property: owner_id}
            else:
                filters = {type(entity).noun(): owner_id}
            DeferredRelationship.defer(
                provider,
                context.push_with_recursion_check(entity),
                target,
                owner_id,
                filters,
                entity,
                prop,
                callback=_add_children(entity, prop) if is_children else None,
            )

        return hydrate


def _add_children(entity: SyncEntity, prop: str) -> Callable[[list[SyncEntity]], None]:
    def add(children: list[SyncEntity]) -> None:
        setattr(entity, prop, [])
        for child in children:
            entity.add_child(child)
    return add
