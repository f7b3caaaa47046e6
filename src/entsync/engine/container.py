"""Minimal service container used to resolve providers, stores and entity classes."""

from __future__ import annotations

import threading
from typing import Any, Callable

from entsync.logging import get_logger

log = get_logger("container")


class Container:
    """Given a type, produce or reuse an instance.

    Usage:
        app = Container()
        app.instance(SyncStore, SyncStore())
        app.provider(AcmeProvider)
        provider = app.get(UserProvider)     # interface → AcmeProvider singleton
    """

    def __init__(self, parent: Container | None = None, bindings: dict[type, type] | None = None):
        self._parent = parent
        self._bindings: dict[type, type | Callable[..., Any]] = dict(bindings or {})
        self._singletons: set[type] = set()
        self._instances: dict[type, Any] = {}
        self._lock = threading.RLock()

    # ── Registration ────────────────────────────────────

    def bind(self, abstract: type, concrete: type | Callable[..., Any]) -> Container:
        self._bindings[abstract] = concrete
        return self

    def singleton(self, abstract: type, concrete: type | Callable[..., Any] | None = None) -> Container:
        self._bindings[abstract] = concrete or abstract
        self._singletons.add(abstract)
        return self

    def instance(self, abstract: type, instance: Any) -> Container:
        self._instances[abstract] = instance
        return self

    def provider(self, provider_cls: type) -> Container:
        """Register a sync provider as a singleton for itself and each interface it services."""
        from entsync.stores.sync_store import SyncStore

        def factory(container: Container, *args: Any) -> Any:
            root = container._root()
            existing = root._instances.get(provider_cls)
            if existing is None:
                existing = provider_cls(root, root.get(SyncStore), *args)
                root._instances[provider_cls] = existing
            return existing

        self.bind(provider_cls, factory)
        for service in provider_cls.get_services():
            self.bind(service, factory)
        log.debug("provider_bound", provider=provider_cls.__name__)
        return self

    # ── Resolution ──────────────────────────────────────

    def has(self, abstract: type) -> bool:
        if abstract in self._instances or abstract in self._bindings:
            return True
        return self._parent.has(abstract) if self._parent else False

    def get_class(self, abstract: type) -> type:
        """Return the class ``abstract`` resolves to, following class bindings only."""
        concrete = self._bindings.get(abstract)
        if isinstance(concrete, type):
            return concrete
        if self._parent is not None:
            return self._parent.get_class(abstract)
        return abstract

    def get(self, abstract: type, *args: Any) -> Any:
        with self._lock:
            if abstract in self._instances:
                return self._instances[abstract]
            concrete = self._bindings.get(abstract)
            if concrete is None and self._parent is not None and self._parent.has(abstract):
                return self._parent.get(abstract, *args)
            if concrete is None:
                concrete = abstract
            if isinstance(concrete, type):
                instance = concrete(*args)
            else:
                instance = concrete(self, *args)
            if abstract in self._singletons:
                self._instances[abstract] = instance
            return instance

    def in_context_of(self, provider_cls: type) -> Container:
        """Return a child container applying the provider's contextual entity bindings."""
        bindings = getattr(provider_cls, "get_contextual_bindings", None)
        bindings = bindings() if bindings else {}
        if not bindings:
            return self
        return Container(parent=self, bindings=bindings)

    def _root(self) -> Container:
        return self._parent._root() if self._parent else self
