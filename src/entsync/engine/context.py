"""Immutable per-call-chain state threaded through sync operations."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

from entsync.exceptions import SyncCircularReferenceError
from entsync.models.enums import Conformity, HydrationPolicy

if TYPE_CHECKING:
    from entsync.engine.container import Container
    from entsync.models.entity import SyncEntity

_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class SyncContext:
    """The context within which entities are provided.

    Every ``with_*`` / ``push*`` method returns a new context, or this one if
    nothing would change.
    """
    container: Container
    filters: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    stack: tuple[SyncEntity, ...] = ()
    parent: SyncEntity | None = None
    conformity: Conformity = Conformity.NONE
    hydration_policy: HydrationPolicy = HydrationPolicy.LAZY
    entity_hydration: Mapping[type, HydrationPolicy] = field(default_factory=lambda: _EMPTY)
    strict: bool = False
    recursion_detected: bool = False

    def _maybe_replace(self, **changes: Any) -> SyncContext:
        if all(getattr(self, k) is v or getattr(self, k) == v for k, v in changes.items()):
            return self
        return replace(self, **changes)

    # ── Entity stack ────────────────────────────────────

    def push(self, entity: SyncEntity) -> SyncContext:
        return replace(self, stack=(*self.stack, entity), recursion_detected=False)

    def push_with_recursion_check(self, entity: SyncEntity) -> SyncContext:
        """Push ``entity`` and flag the result if it was already on the stack."""
        seen = any(e is entity for e in self.stack)
        return replace(self, stack=(*self.stack, entity), recursion_detected=seen)

    def maybe_raise_recursion(self) -> None:
        if self.recursion_detected and self.stack:
            entity = self.stack[-1]
            raise SyncCircularReferenceError(
                f"Circular reference detected: {type(entity).__name__} {entity.id!r}"
            )

    def last_entity(self) -> SyncEntity | None:
        return self.stack[-1] if self.stack else None

    # ── Mutators ────────────────────────────────────────

    def with_container(self, container: Container) -> SyncContext:
        return self._maybe_replace(container=container)

    def with_parent(self, parent: SyncEntity | None) -> SyncContext:
        return self._maybe_replace(parent=parent)

    def with_conformity(self, conformity: Conformity) -> SyncContext:
        return self._maybe_replace(conformity=conformity)

    def with_strict(self, strict: bool = True) -> SyncContext:
        return self._maybe_replace(strict=strict)

    def with_hydration_policy(
        self,
        policy: HydrationPolicy,
        entity: type | None = None,
    ) -> SyncContext:
        """Apply ``policy`` to every relationship, or only to ``entity`` relationships."""
        if entity is None:
            return self._maybe_replace(hydration_policy=policy, entity_hydration=_EMPTY)
        overrides = dict(self.entity_hydration)
        overrides[entity] = policy
        return self._maybe_replace(entity_hydration=MappingProxyType(overrides))

    def with_filter(self, key: str, value: Any) -> SyncContext:
        if key in self.filters and self.filters[key] == value:
            return self
        filters = dict(self.filters)
        filters[key] = value
        return replace(self, filters=MappingProxyType(filters))

    def with_filters(self, filters: Mapping[str, Any] | None) -> SyncContext:
        if not filters:
            return self._maybe_replace(filters=_EMPTY) if self.filters else self
        return self._maybe_replace(filters=MappingProxyType(dict(filters)))

    # ── Accessors ───────────────────────────────────────

    def get_filter(self, key: str, default: Any = None) -> Any:
        return self.filters.get(key, default)

    def get_hydration_policy(self, entity: type | None = None) -> HydrationPolicy:
        if entity is not None:
            for klass in entity.__mro__:
                if klass in self.entity_hydration:
                    return self.entity_hydration[klass]
        return self.hydration_policy
