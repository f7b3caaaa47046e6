"""Placeholders for related entities that haven't been fetched yet.

A placeholder is assigned to the owning entity's relationship property and
replaces itself with the real value when resolved:

    user.tasks                  # DeferredList([5, 9]), state UNRESOLVED
    user.tasks.resolve()        # one backend call, returns [Task(5), Task(9)]
    user.tasks                  # [Task(5), Task(9)]

States move UNRESOLVED → RESOLVING → RESOLVED. How eagerly that happens is
governed by the context's hydration policy for the related entity.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Callable

from entsync.engine.provider import record_not_found
from entsync.exceptions import SyncCircularReferenceError, SyncEntityNotFoundError
from entsync.logging import get_logger
from entsync.models.enums import DeferredState, HydrationPolicy, SyncOperation

if TYPE_CHECKING:
    from entsync.engine.context import SyncContext
    from entsync.engine.provider import SyncProvider
    from entsync.models.entity import SyncEntity

log = get_logger("deferred")


class Deferred:
    """Base placeholder. Subclasses implement ``_fetch``."""

    def __init__(
        self,
        provider: SyncProvider,
        context: SyncContext,
        entity_type: type[SyncEntity],
        identifier: Any,
        owner: Any = None,
        prop: str | None = None,
        callback: Callable[[Any], None] | None = None,
        policy: HydrationPolicy | None = None,
    ):
        self.provider = provider
        # Filters belong to the call that produced the owner, not to this fetch
        self.context = context.with_filters(None)
        self.entity_type = entity_type
        self.identifier = identifier
        self.owner = owner
        self.prop = prop
        self.callback = callback
        self.policy = policy or context.get_hydration_policy(entity_type)
        self.state = DeferredState.UNRESOLVED
        self.value: Any = None
        # Other threads wait here; the resolving thread re-enters and sees RESOLVING
        self._lock = threading.RLock()

    @property
    def is_resolved(self) -> bool:
        return self.state is DeferredState.RESOLVED

    def resolve(self, force: bool = False) -> Any:
        """Fetch the related value once and put it in place of this placeholder.

        Under ``SUPPRESS`` nothing is fetched unless ``force`` is set.
        """
        if self.state is DeferredState.RESOLVED:
            return self.value
        if self.policy is HydrationPolicy.SUPPRESS and not force:
            return None
        with self._lock:
            if self.state is DeferredState.RESOLVED:
                return self.value
            if self.state is DeferredState.RESOLVING:
                raise SyncCircularReferenceError(
                    f"Circular reference while resolving {self.entity_type.__name__} {self.identifier!r}"
                )
            self.state = DeferredState.RESOLVING
            try:
                value = self._fetch()
            except BaseException:
                self.state = DeferredState.UNRESOLVED
                raise
            # The store may already have applied the value when it was registered
            if self.state is not DeferredState.RESOLVED:
                self.replace(value)
            value = self.value
        log.debug(
            "deferred_resolved",
            kind=type(self).__name__,
            entity=self.entity_type.__name__,
            identifier=self.identifier,
        )
        return value

    def replace(self, value: Any) -> None:
        """Mark this placeholder resolved with ``value`` and apply it to its owner."""
        self.value = value
        self.state = DeferredState.RESOLVED
        if self.callback is not None:
            self.callback(value)
        elif self.owner is not None and self.prop and getattr(self.owner, self.prop, None) is self:
            setattr(self.owner, self.prop, value)

    def _install(self) -> None:
        if self.owner is not None and self.prop:
            setattr(self.owner, self.prop, self)

    def _maybe_resolve_eagerly(self) -> None:
        # An eager placeholder on a recursive chain behaves as lazy
        if self.policy is HydrationPolicy.EAGER and not self.context.recursion_detected:
            self.resolve()

    def _fetch(self) -> Any:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.entity_type.__name__}, {self.identifier!r}, {self.state.value})"


class DeferredEntity(Deferred):
    """A single related entity identified by ID."""

    @classmethod
    def defer(
        cls,
        provider: SyncProvider,
        context: SyncContext,
        entity_type: type[SyncEntity],
        identifier: Any,
        owner: Any = None,
        prop: str | None = None,
        callback: Callable[[Any], None] | None = None,
    ) -> DeferredEntity:
        deferred = cls(provider, context, entity_type, identifier, owner, prop, callback)
        deferred._install()
        store = provider.store
        existing = store.get_entity(provider.provider_id, entity_type, identifier)
        if existing is not None:
            deferred.replace(existing)
            return deferred
        store.defer_entity(provider.provider_id, entity_type, identifier, deferred)
        deferred._maybe_resolve_eagerly()
        return deferred

    def _fetch(self) -> Any:
        store = self.provider.store
        provider_id = self.provider.provider_id
        with store.resolution_lock(provider_id, self.entity_type, self.identifier):
            existing = store.get_entity(provider_id, self.entity_type, self.identifier)
            if existing is not None:
                return existing
            entity = self.provider.with_(self.entity_type, self.context).get(self.identifier)
        return entity


class DeferredList(Deferred):
    """A list of related entities identified by their IDs.

    Entities already in the store are reused. The rest are fetched with one
    READ_LIST call filtered by ``id`` where the provider supports it, or one
    READ per ID otherwise. IDs that can't be found are recorded as errors
    and left out of the result.
    """

    @classmethod
    def defer(
        cls,
        provider: SyncProvider,
        context: SyncContext,
        entity_type: type[SyncEntity],
        identifiers: list[Any],
        owner: Any = None,
        prop: str | None = None,
        callback: Callable[[Any], None] | None = None,
    ) -> DeferredList:
        deferred = cls(provider, context, entity_type, list(identifiers), owner, prop, callback)
        deferred._install()
        deferred._maybe_resolve_eagerly()
        return deferred

    def _fetch(self) -> list[Any]:
        store = self.provider.store
        provider_id = self.provider.provider_id
        found: dict[str, Any] = {}
        missing: list[Any] = []
        reported: set[str] = set()
        for entity_id in self.identifier:
            entity = store.get_entity(provider_id, self.entity_type, entity_id)
            if entity is None:
                missing.append(entity_id)
            else:
                found[str(entity_id)] = entity

        if missing:
            entity_provider = self.provider.with_(self.entity_type, self.context)
            if entity_provider.supports(SyncOperation.READ_LIST):
                for entity in entity_provider.get_list({"id": missing}):
                    found.setdefault(str(entity.id), entity)
            else:
                for entity_id in missing:
                    try:
                        found[str(entity_id)] = entity_provider.get(entity_id)
                    except SyncEntityNotFoundError:
                        reported.add(str(entity_id))

        entities = []
        for entity_id in self.identifier:
            entity = found.get(str(entity_id))
            if entity is None:
                log.warning("deferred_member_missing", entity=self.entity_type.__name__, id=entity_id)
                if str(entity_id) not in reported:
                    record_not_found(self.provider, self.entity_type, entity_id)
                continue
            entities.append(entity)
        return entities


class DeferredRelationship(Deferred):
    """The "many" side of a one-to-many relationship, fetched with a filter.

    ``identifier`` is the owning entity's ID; ``filters`` are applied to the
    READ_LIST call for the related entity.
    """

    def __init__(self, *args: Any, filters: dict[str, Any] | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.filters = dict(filters or {})

    @classmethod
    def defer(
        cls,
        provider: SyncProvider,
        context: SyncContext,
        entity_type: type[SyncEntity],
        owner_id: Any,
        filters: dict[str, Any],
        owner: Any = None,
        prop: str | None = None,
        callback: Callable[[Any], None] | None = None,
    ) -> DeferredRelationship:
        deferred = cls(provider, context, entity_type, owner_id, owner, prop, callback, filters=filters)
        deferred._install()
        deferred._maybe_resolve_eagerly()
        return deferred

    def _fetch(self) -> list[Any]:
        entity_provider = self.provider.with_(self.entity_type, self.context)
        return list(entity_provider.get_list(self.filters))
