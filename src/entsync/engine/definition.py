"""Operation definitions – how a provider performs each operation on an entity.

``get_operation_closure(op)`` resolves, once per operation:

  1. an override supplied with the definition
  2. a method the provider declares for the operation (``get_user`` …)
  3. a generic implementation (HTTP definitions, when a path is configured)
  4. nothing – the operation is unsupported

Every closure is called as ``closure(ctx, *args)``.
"""

from __future__ import annotations

import functools
import re
import threading
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping
from urllib.parse import quote

from entsync.engine.pipeline import Pipeline
from entsync.exceptions import HttpRequestError, SyncConfigurationError
from entsync.http import extract_records
from entsync.logging import get_logger
from entsync.models.entity import SyncEntity, collapse
from entsync.models.enums import Conformity, HttpMethod, SyncOperation

if TYPE_CHECKING:
    from entsync.engine.context import SyncContext
    from entsync.engine.provider import HttpSyncProvider, SyncProvider
    from entsync.http import Pager

log = get_logger("definition")

Closure = Callable[..., Any]
Override = Callable[..., Any]


class SyncDefinition:
    """Operations an entity supports through one provider.

    ``overrides`` map operations to callables invoked as
    ``override(definition, operation, ctx, *args)``; they win over anything
    the provider declares.
    """

    def __init__(
        self,
        entity: type[SyncEntity],
        provider: SyncProvider,
        operations: Iterable[SyncOperation] = (),
        conformity: Conformity = Conformity.NONE,
        overrides: Mapping[SyncOperation, Override] | None = None,
        pipeline_from_backend: Pipeline | None = None,
        pipeline_to_backend: Pipeline | None = None,
        read_from_list: bool = False,
    ):
        self.entity = entity
        self.provider = provider
        self.overrides = {SyncOperation(op): fn for op, fn in (overrides or {}).items()}
        self.operations = frozenset(SyncOperation(op) for op in operations) | frozenset(self.overrides)
        self.conformity = conformity
        self.pipeline_from_backend = pipeline_from_backend or provider.pipeline_from(entity)
        self.pipeline_to_backend = pipeline_to_backend or provider.pipeline_to(entity)
        self.read_from_list = read_from_list
        self._closures: dict[SyncOperation, Closure | None] = {}
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.entity.__name__}, {type(self.provider).__name__})"

    def get_operation_closure(self, operation: SyncOperation) -> Closure | None:
        operation = SyncOperation(operation)
        if operation in self._closures:
            return self._closures[operation]
        with self._lock:
            if operation not in self._closures:
                self._closures[operation] = self._resolve(operation)
            return self._closures[operation]

    def _resolve(self, operation: SyncOperation) -> Closure | None:
        override = self.overrides.get(operation)
        if override is not None:
            log.debug("operation_resolved", entity=self.entity.__name__, operation=operation.name, source="override")
            return functools.partial(override, self, operation)

        info = self.provider.introspector.get(type(self.provider))
        method = info.get_operation_method(self.entity, operation)
        if method is not None:
            log.debug("operation_resolved", entity=self.entity.__name__, operation=operation.name, source=method)
            return getattr(self.provider, method)

        if operation in self.operations:
            closure = self._generic_closure(operation)
            if closure is not None:
                log.debug("operation_resolved", entity=self.entity.__name__, operation=operation.name, source="generic")
                return closure

        if operation is SyncOperation.READ and self.read_from_list:
            list_closure = self.get_operation_closure(SyncOperation.READ_LIST)
            if list_closure is not None:
                return _read_from_list(list_closure)

        return None

    def _generic_closure(self, operation: SyncOperation) -> Closure | None:
        return None

    # ── Pipelines ───────────────────────────────────────

    def pipeline_to_entity(self) -> Pipeline:
        """Backend record → entity: the configured stages, then construction."""
        return self.pipeline_from_backend.then(self._create_entity)

    def _create_entity(self, record: dict[str, Any], ctx: SyncContext, *args: Any) -> SyncEntity:
        concrete = ctx.container.get_class(self.entity)
        constructor = self.provider.introspector.get(concrete).constructor
        if self.conformity is Conformity.NONE:
            create = constructor.get_create_from(strict=ctx.strict)
        else:
            create = constructor.get_create_from_signature(list(record), strict=ctx.strict)
        return create(record, self.provider, ctx, self.entity)


def _read_from_list(list_closure: Closure) -> Closure:
    def read(ctx: SyncContext, entity_id: Any = None, *args: Any) -> SyncEntity | None:
        for entity in list_closure(ctx.with_filter("id", entity_id), *args):
            if entity_id is None or str(entity.id) == str(entity_id):
                return entity
        return None
    return read


# ── HTTP ────────────────────────────────────────────────

DEFAULT_METHOD_MAP: dict[SyncOperation, HttpMethod] = {
    SyncOperation.CREATE: HttpMethod.POST,
    SyncOperation.READ: HttpMethod.GET,
    SyncOperation.UPDATE: HttpMethod.PUT,
    SyncOperation.DELETE: HttpMethod.DELETE,
    SyncOperation.CREATE_LIST: HttpMethod.POST,
    SyncOperation.READ_LIST: HttpMethod.GET,
    SyncOperation.UPDATE_LIST: HttpMethod.PUT,
    SyncOperation.DELETE_LIST: HttpMethod.DELETE,
}

_ID_PLACEHOLDER = re.compile(r":id\b|\{id\}")
_ID_SEGMENT = re.compile(r"/(?::id\b|\{id\})")


class HttpSyncDefinition(SyncDefinition):
    """A definition whose generic operations are HTTP calls against ``path``.

        HttpSyncDefinition(
            User, provider,
            operations=[SyncOperation.READ, SyncOperation.READ_LIST],
            path="/users",
        )

    ``data_key`` names the list inside an enveloped collection response
    (``{"data": [...]}``). ``expiry`` of ``-1`` defers to the provider's cache expiry, ``None``
    disables response caching and ``0`` caches indefinitely. Context filters
    are sent as query parameters on reads, and a 404 on a single read counts
    as "not found".
    """

    provider: HttpSyncProvider

    def __init__(
        self,
        entity: type[SyncEntity],
        provider: HttpSyncProvider,
        operations: Iterable[SyncOperation] = (),
        path: str | None = None,
        query: Mapping[str, Any] | None = None,
        pager: Pager | None = None,
        data_key: str | None = None,
        expiry: int | None = -1,
        method_map: Mapping[SyncOperation, HttpMethod] | None = None,
        **kwargs: Any,
    ):
        super().__init__(entity, provider, operations, **kwargs)
        self.path = path
        self.query = dict(query or {})
        self.pager = pager
        self.data_key = data_key
        self.expiry = expiry
        self.method_map = dict(method_map or DEFAULT_METHOD_MAP)

    def get_path(self, entity_id: Any = None) -> str:
        if self.path is None:
            raise SyncConfigurationError(f"No path for {self.entity.__name__}")
        if entity_id is None:
            return _ID_SEGMENT.sub("", self.path)
        segment = quote(str(entity_id), safe="")
        if _ID_PLACEHOLDER.search(self.path):
            return _ID_PLACEHOLDER.sub(segment, self.path)
        return f"{self.path.rstrip('/')}/{segment}"

    def _generic_closure(self, operation: SyncOperation) -> Closure | None:
        if self.path is None:
            return None
        method = self.method_map.get(operation)
        if method is None:
            raise SyncConfigurationError(f"No HTTP method mapped to {operation.name}")
        method = HttpMethod(method).value
        to_entity = self.pipeline_to_entity()

        def query(ctx: SyncContext) -> dict[str, Any]:
            return {**self.query, **{k: collapse(v) for k, v in ctx.filters.items()}}

        def write(ctx: SyncContext, entity: SyncEntity, *args: Any) -> SyncEntity | None:
            payload = self.pipeline_to_backend.send(entity.to_record(), ctx, *args)
            entity_id = None if operation in (SyncOperation.CREATE, SyncOperation.CREATE_LIST) else entity.id
            with self.provider.get_client(self.get_path(entity_id), self.expiry) as client:
                body = client.request(method, payload)
            # Backends often reply to a delete with an empty body
            if body is None:
                return entity
            return to_entity.send(body, ctx, *args)

        if operation is SyncOperation.READ:
            def read(ctx: SyncContext, entity_id: Any = None, *args: Any) -> SyncEntity | None:
                with self.provider.get_client(self.get_path(entity_id), self.expiry) as client:
                    try:
                        body = client.get(query(ctx) or None)
                    except HttpRequestError as exc:
                        if exc.status_code != 404:
                            raise
                        body = None
                if body is None:
                    return None
                return to_entity.send(body, ctx, *args)
            return read

        if operation is SyncOperation.READ_LIST:
            def read_list(ctx: SyncContext, *args: Any):
                with self.provider.get_client(self.get_path(), self.expiry) as client:
                    if self.pager is not None:
                        records = client.get_paged(query(ctx), self.pager)
                    else:
                        records = extract_records(client.get(query(ctx)), self.data_key)
                    yield from to_entity.stream(records, ctx, *args)
            return read_list

        if operation in (SyncOperation.CREATE, SyncOperation.UPDATE, SyncOperation.DELETE):
            return write

        def write_list(ctx: SyncContext, entities: Iterable[SyncEntity], *args: Any):
            for entity in entities:
                yield write(ctx, entity, *args)

        return write_list
