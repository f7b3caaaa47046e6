"""Sync providers – backend adapters that create, read, update and delete entities.

A concrete provider subclasses ``SyncProvider`` (or ``HttpSyncProvider``)
and one ``SyncProviderInterface`` per serviced entity:

    class UserProvider(SyncProviderInterface):
        entity = User

    class AcmeProvider(HttpSyncProvider, UserProvider):
        def get_backend_identifier(self):
            return ["https://api.test"]

Operations are reached through ``provider.with_(User, ctx)`` or, by
convention, ``provider.get_user(ctx, 1)`` / ``provider.get_users(ctx)``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Mapping

from entsync.config import get_settings
from entsync.engine.context import SyncContext
from entsync.engine.definition import HttpSyncDefinition, SyncDefinition
from entsync.engine.introspection import Introspector, default_introspector, is_list_operation, method_key
from entsync.engine.pipeline import Pipeline
from entsync.exceptions import (
    SyncEntityNotFoundError,
    SyncOperationNotImplementedError,
    UndefinedMethodError,
)
from entsync.http import HttpClient, ResponseCache
from entsync.logging import get_logger
from entsync.models.entity import SyncEntity, SyncProviderInterface
from entsync.models.enums import SyncErrorType, SyncOperation
from entsync.models.errors import SyncError

if TYPE_CHECKING:
    import httpx

    from entsync.engine.container import Container
    from entsync.engine.resolver import SyncEntityFuzzyResolver, SyncEntityResolver
    from entsync.stores.sync_store import SyncStore

log = get_logger("provider")


# ── Base provider ───────────────────────────────────────

class SyncProvider(ABC):
    """Base class for providers. Registers with the store on construction."""

    _is_framework_class = True

    introspector: Introspector = default_introspector

    def __init__(self, container: Container, store: SyncStore):
        self.container = container
        self.store = store
        self._provider_id: int | None = None
        self._backend_hash: str | None = None
        self._definitions: dict[type, SyncDefinition] = {}
        self._magic: dict[str, Callable[..., Any]] = {}
        store.register_provider(self)

    @abstractmethod
    def get_backend_identifier(self) -> list[Any]:
        """Values that distinguish this backend from others served by the same class."""

    def get_definition(self, entity: type[SyncEntity]) -> SyncDefinition:
        """Describe how ``entity`` is synced. Override to add paths, pipelines or overrides."""
        return SyncDefinition(entity, self)

    # ── Identity ────────────────────────────────────────

    def set_provider_id(self, provider_id: int, backend_hash: str) -> None:
        self._provider_id = provider_id
        self._backend_hash = backend_hash

    @property
    def provider_id(self) -> int:
        if self._provider_id is None:
            raise RuntimeError(f"{type(self).__name__} is not registered with a sync store")
        return self._provider_id

    @property
    def backend_hash(self) -> str:
        if self._backend_hash is None:
            self._backend_hash = self.compute_backend_hash()
        return self._backend_hash

    def compute_backend_hash(self) -> str:
        payload = [f"{type(self).__module__}.{type(self).__qualname__}", self.get_backend_identifier()]
        return hashlib.sha256(json.dumps(payload, default=str).encode()).hexdigest()

    # ── Services ────────────────────────────────────────

    @classmethod
    def get_services(cls) -> list[type]:
        """Provider interfaces this class can be resolved as."""
        return [k for k in cls.__mro__ if SyncProviderInterface.is_interface(k)]

    @classmethod
    def get_contextual_bindings(cls) -> dict[type, type]:
        """Entity classes to substitute while this provider is in use."""
        return {}

    # ── Operations ──────────────────────────────────────

    def get_context(self, container: Container | None = None) -> SyncContext:
        settings = get_settings()
        return SyncContext(
            container=container or self.container,
            hydration_policy=settings.hydration_policy,
            strict=settings.strict_signatures,
        )

    def definition_for(self, entity: type[SyncEntity]) -> SyncDefinition:
        definition = self._definitions.get(entity)
        if definition is None:
            definition = self._definitions[entity] = self.get_definition(entity)
        return definition

    def with_(self, entity: type[SyncEntity], context: SyncContext | Container | None = None) -> SyncEntityProvider:
        """Return an entity provider that performs operations on ``entity`` here."""
        if context is None:
            context = self.get_context()
        elif not isinstance(context, SyncContext):
            context = self.get_context(context)
        context.maybe_raise_recursion()
        container = context.container.in_context_of(type(self))
        return SyncEntityProvider(entity, self, context.with_container(container))

    def check_heartbeat(self, ttl: int = 300) -> SyncProvider:
        """Raise if the backend is unreachable. The default does nothing."""
        log.debug("heartbeat_not_implemented", provider=type(self).__name__)
        return self

    def is_valid_identifier(self, entity_id: Any, entity: type[SyncEntity]) -> bool:
        return isinstance(entity_id, (int, str)) and not isinstance(entity_id, bool)

    def pipeline_from(self, entity: type[SyncEntity]) -> Pipeline:
        return Pipeline()

    def pipeline_to(self, entity: type[SyncEntity]) -> Pipeline:
        return Pipeline()

    def describe(self) -> str:
        return f"{type(self).__name__} [#{self._provider_id}]"

    # ── Conventional method names ───────────────────────

    def __getattr__(self, name: str) -> Callable[..., Any]:
        if name.startswith("_"):
            raise AttributeError(name)
        magic = self.__dict__.get("_magic")
        if magic is None:
            raise AttributeError(name)
        key = method_key(name)
        closure = magic.get(key)
        if closure is not None:
            return closure
        info = self.introspector.get(type(self))
        declared = info.operation_methods.get(key)
        if declared is not None and declared != name:
            return getattr(self, declared)
        target = info.magic_methods.get(key)
        if target is None:
            raise UndefinedMethodError(f"{type(self).__name__}.{name}() is not defined")
        operation, entity = target

        def closure(ctx: SyncContext | None = None, *args: Any) -> Any:
            return self.with_(entity, ctx).run(operation, *args)

        magic[key] = closure
        return closure


# ── Entity provider ─────────────────────────────────────

class SyncEntityProvider:
    """Performs operations on one entity type through one provider."""

    def __init__(self, entity: type[SyncEntity], provider: SyncProvider, context: SyncContext):
        self.entity = entity
        self.provider = provider
        self.context = context
        self.definition = provider.definition_for(entity)

    def __repr__(self) -> str:
        return f"SyncEntityProvider({self.entity.__name__}, {type(self.provider).__name__})"

    def supports(self, operation: SyncOperation) -> bool:
        return self.definition.get_operation_closure(operation) is not None

    def run(self, operation: SyncOperation, *args: Any) -> Any:
        return perform_operation(self.provider, self.entity, operation, self.context, *args)

    def create(self, entity: SyncEntity, *args: Any) -> SyncEntity:
        return self.run(SyncOperation.CREATE, entity, *args)

    def get(self, entity_id: Any = None, *args: Any) -> SyncEntity:
        return self.run(SyncOperation.READ, entity_id, *args)

    def update(self, entity: SyncEntity, *args: Any) -> SyncEntity:
        return self.run(SyncOperation.UPDATE, entity, *args)

    def delete(self, entity: SyncEntity, *args: Any) -> SyncEntity:
        return self.run(SyncOperation.DELETE, entity, *args)

    def create_list(self, entities: Iterable[SyncEntity], *args: Any) -> Iterator[SyncEntity]:
        return self.run(SyncOperation.CREATE_LIST, entities, *args)

    def get_list(self, filters: Mapping[str, Any] | None = None, *args: Any) -> Iterator[SyncEntity]:
        context = self.context
        for key, value in (filters or {}).items():
            context = context.with_filter(key, value)
        return perform_operation(self.provider, self.entity, SyncOperation.READ_LIST, context, *args)

    def update_list(self, entities: Iterable[SyncEntity], *args: Any) -> Iterator[SyncEntity]:
        return self.run(SyncOperation.UPDATE_LIST, entities, *args)

    def delete_list(self, entities: Iterable[SyncEntity], *args: Any) -> Iterator[SyncEntity]:
        return self.run(SyncOperation.DELETE_LIST, entities, *args)

    def get_resolver(self, name_property: str = "name") -> SyncEntityResolver:
        from entsync.engine.resolver import SyncEntityResolver

        return SyncEntityResolver(self, name_property)

    def get_fuzzy_resolver(self, name_property: str = "name", threshold: float = 0.8) -> SyncEntityFuzzyResolver:
        from entsync.engine.resolver import SyncEntityFuzzyResolver

        return SyncEntityFuzzyResolver(self, name_property, threshold)


# ── Entry point ─────────────────────────────────────────

def perform_operation(
    provider: SyncProvider,
    entity_type: type[SyncEntity],
    operation: SyncOperation,
    context: SyncContext | None,
    *args: Any,
) -> Any:
    """Run ``operation`` on ``entity_type`` through ``provider``.

    List operations return a lazy iterator; errors raised by the backend
    surface while it is consumed. Single-entity reads raise
    ``SyncEntityNotFoundError`` when nothing comes back.
    """
    operation = SyncOperation(operation)
    context = context or provider.get_context()
    closure = provider.definition_for(entity_type).get_operation_closure(operation)
    if closure is None:
        provider.store.record_error(SyncError(
            error_type=SyncErrorType.ENTITY_NOT_SUPPORTED,
            message="{} does not support {} for {}",
            values=[type(provider).__name__, operation.name, entity_type.__name__],
            level=logging.ERROR,
            entity=entity_type.qualified_name(),
            provider=type(provider).__name__,
        ), deduplicate=True)
        raise SyncOperationNotImplementedError(provider, entity_type, operation)

    log.debug("operation_started", provider=type(provider).__name__, entity=entity_type.__name__, operation=operation.name)
    if is_list_operation(operation):
        return _stream(provider, entity_type, operation, closure, context, args)
    try:
        result = closure(context, *args)
    except Exception:
        # Local changes the backend didn't accept
        if operation is SyncOperation.UPDATE and args:
            _save_state(provider, entity_type, args[0], dirty=True)
        raise
    if result is None and operation is SyncOperation.READ:
        entity_id = args[0] if args else None
        record_not_found(provider, entity_type, entity_id)
        raise SyncEntityNotFoundError(entity_type, entity_id, provider)
    if operation is SyncOperation.DELETE:
        deleted = result if isinstance(result, SyncEntity) else (args[0] if args else None)
        _save_state(provider, entity_type, deleted, deleted=True)
    return result


def _stream(
    provider: SyncProvider,
    entity_type: type[SyncEntity],
    operation: SyncOperation,
    closure: Callable[..., Any],
    context: SyncContext,
    args: tuple[Any, ...],
) -> Iterator[Any]:
    result = closure(context, *args)
    if result is not None:
        for entity in result:
            if operation is SyncOperation.DELETE_LIST:
                _save_state(provider, entity_type, entity, deleted=True)
            yield entity
    if operation is SyncOperation.READ_LIST:
        provider.store.touch_entity_type(provider.provider_id, entity_type, synced=True)


def _save_state(provider: SyncProvider, entity_type: type[SyncEntity], entity: Any, **flags: bool) -> None:
    if isinstance(entity, SyncEntity) and entity.id is not None:
        provider.store.save_entity(provider.provider_id, entity_type, entity.id, entity, **flags)


def record_not_found(provider: SyncProvider, entity_type: type[SyncEntity], entity_id: Any) -> None:
    provider.store.record_error(SyncError(
        error_type=SyncErrorType.ENTITY_NOT_FOUND,
        message="{} not found: {}",
        values=[entity_type.__name__, entity_id],
        level=logging.ERROR,
        entity=entity_type.qualified_name(),
        entity_name=f"{entity_type.__name__}#{entity_id}",
        provider=type(provider).__name__,
    ), deduplicate=True)


# ── HTTP provider ───────────────────────────────────────

class HttpSyncProvider(SyncProvider):
    """A provider whose backend is an HTTP API.

    Set ``http_transport`` (e.g. ``httpx.MockTransport``) to route requests
    somewhere other than the network.
    """

    _is_framework_class = True

    http_transport: httpx.BaseTransport | None = None

    _PRIVATE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie", "x-api-key"})

    def __init__(self, container: Container, store: SyncStore):
        super().__init__(container, store)
        self.response_cache = ResponseCache()

    @abstractmethod
    def get_base_url(self, path: str | None = None) -> str:
        """Base URL of the API, e.g. ``https://api.test``."""

    def get_headers(self, path: str | None = None) -> dict[str, str]:
        return {}

    def get_cache_expiry(self, path: str | None = None) -> int | None:
        """Seconds to cache responses for. ``None`` disables caching, ``0`` caches forever."""
        return None

    def get_cache_key_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        """Headers that distinguish cached responses. Credentials are left out."""
        return {k: v for k, v in headers.items() if k.lower() not in self._PRIVATE_HEADERS}

    def prepare_client(self, client: HttpClient) -> HttpClient:
        return client

    def get_http_definition(self, entity: type[SyncEntity]) -> HttpSyncDefinition:
        return HttpSyncDefinition(entity, self)

    def get_definition(self, entity: type[SyncEntity]) -> SyncDefinition:
        return self.get_http_definition(entity)

    def get_endpoint_url(self, path: str) -> str:
        return self.get_base_url(path).rstrip("/") + path

    def get_client(self, path: str, expiry: int | None = -1) -> HttpClient:
        """Return a client bound to ``path``.

        A negative ``expiry`` uses ``get_cache_expiry(path)``.
        """
        if expiry is not None and expiry < 0:
            expiry = self.get_cache_expiry(path)
        headers = self.get_headers(path)
        client = HttpClient(
            self.get_endpoint_url(path),
            headers,
            cache=self.response_cache if expiry is not None else None,
            expiry=expiry,
            cache_key_headers=self.get_cache_key_headers(headers),
            transport=self.http_transport,
        )
        return self.prepare_client(client)

    def describe(self) -> str:
        return f"{type(self).__name__} [#{self._provider_id}] {self.get_base_url()}"
