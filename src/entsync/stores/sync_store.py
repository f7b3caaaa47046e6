"""Run-scoped bookkeeping for sync operations.

The store tracks providers, entity types, namespaces and the entities seen
during a run, and aggregates the run's sync errors. A run is started by the
first call that needs one, never by construction alone, and is finalized
exactly once: by ``close()``, or with exit status 1 when the store is
garbage-collected or the interpreter exits without closing it.
"""

from __future__ import annotations

import json
import re
import threading
import uuid
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator, Sequence

from sqlalchemy import Engine, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from entsync.config import get_settings
from entsync.exceptions import (
    ProviderAlreadyRegisteredError,
    StoreClosedError,
    SyncConfigurationError,
)
from entsync.logging import get_logger, log_at
from entsync.models.entity import SyncEntity
from entsync.models.errors import SyncError, SyncErrorCollection
from entsync.stores.database import create_store_engine, get_session_factory
from entsync.stores.tables import (
    SyncEntityNamespaceRow,
    SyncEntityRow,
    SyncEntityTypeRow,
    SyncEntityTypeStateRow,
    SyncProviderRow,
    SyncRunRow,
)

if TYPE_CHECKING:
    from entsync.engine.deferred import DeferredEntity
    from entsync.engine.provider import SyncProvider

log = get_logger("sync_store")

_PREFIX = re.compile(r"^[a-z][-a-z0-9+.]*$")


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class _RunState:
    """Everything needed to finalize a run, without a reference to the store."""

    def __init__(self, session_factory: sessionmaker[Session], command: str, arguments: Sequence[str]):
        self.session_factory = session_factory
        self.command = command
        self.arguments = list(arguments)
        self.run_id: int | None = None
        self.run_uuid: str | None = None
        self.errors = SyncErrorCollection()
        self.error_count = 0
        self.warning_count = 0
        self.closed = False
        self.lock = threading.RLock()


def _finalize_run(state: _RunState, exit_status: int) -> None:
    with state.lock:
        if state.closed:
            return
        state.closed = True
        if state.run_id is None:
            return
        with state.session_factory.begin() as session:
            session.execute(
                update(SyncRunRow)
                .where(SyncRunRow.run_id == state.run_id)
                .values(
                    finished_at=_now(),
                    exit_status=exit_status,
                    error_count=state.error_count,
                    warning_count=state.warning_count,
                    errors=state.errors.to_list(),
                )
            )
        log.info(
            "run_closed",
            run_uuid=state.run_uuid,
            exit_status=exit_status,
            errors=state.error_count,
            warnings=state.warning_count,
        )


class SyncStore:
    """Tracks the state of entities and providers for one sync run.

    Usage:
        store = SyncStore("sync.db", command="sync-users")
        provider = AcmeProvider(container, store)   # registers itself
        ...
        store.close(0)
    """

    def __init__(
        self,
        filename: str | None = None,
        command: str | None = None,
        arguments: Sequence[str] = (),
        engine: Engine | None = None,
    ):
        settings = get_settings()
        self.filename = filename or settings.database_path
        self.engine = engine or create_store_engine(self.filename)
        self._state = _RunState(
            get_session_factory(self.engine),
            command if command is not None else settings.command_name,
            arguments,
        )
        self._lock = self._state.lock
        self._finalizer = weakref.finalize(self, _finalize_run, self._state, 1)

        self._providers: dict[int, SyncProvider] = {}
        self._providers_by_hash: dict[str, SyncProvider] = {}
        self._entity_types: dict[type, int] = {}
        self._entity_type_state: set[tuple[int, int]] = set()
        self._entities: dict[tuple[int, type, str], SyncEntity] = {}
        self._deferred: dict[tuple[int, type, str], list[DeferredEntity]] = {}
        self._resolution_locks: dict[tuple[int, type, str], threading.RLock] = {}
        self._pending_namespaces: dict[str, tuple[str, str]] = {}
        # (prefix, base URI, lower-cased module namespace), longest namespace first
        self._namespaces: list[tuple[str, str, str]] = []

    # ── Lifecycle ───────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return not self._state.closed

    @property
    def has_run(self) -> bool:
        return self._state.run_id is not None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        # Threads share one SQLite connection for in-memory stores
        with self._lock, self._state.session_factory.begin() as session:
            yield session

    def _check(self) -> None:
        """Start a run if one hasn't been started yet."""
        state = self._state
        if state.closed:
            raise StoreClosedError("Sync store is closed")
        if state.run_id is not None:
            return
        with self._lock:
            if state.run_id is not None:
                return
            run_uuid = str(uuid.uuid4())
            with self._session() as session:
                row = SyncRunRow(
                    run_uuid=run_uuid,
                    run_command=state.command,
                    run_arguments=state.arguments,
                    started_at=_now(),
                )
                session.add(row)
                session.flush()
                state.run_id = row.run_id
            state.run_uuid = run_uuid
            log.info("run_started", run_id=state.run_id, run_uuid=run_uuid, command=state.command)

            for prefix, (base_uri, namespace) in self._pending_namespaces.items():
                self._upsert_namespace(prefix, base_uri, namespace)
            self._pending_namespaces.clear()
            self._reload_namespaces()

    @property
    def run_id(self) -> int:
        self._check()
        return self._state.run_id  # type: ignore[return-value]

    @property
    def run_uuid(self) -> str:
        self._check()
        return self._state.run_uuid  # type: ignore[return-value]

    def close(self, exit_status: int = 0) -> None:
        """Finalize the run. Safe to call more than once."""
        if self._state.closed:
            return
        self._finalizer.detach()
        _finalize_run(self._state, exit_status)

    def __enter__(self) -> SyncStore:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close(0 if exc_type is None else 1)

    # ── Providers ───────────────────────────────────────

    def register_provider(self, provider: SyncProvider) -> int:
        """Assign ``provider`` its ID, reusing the ID of the same backend from earlier runs."""
        if self._state.closed:
            raise StoreClosedError("Sync store is closed")
        provider_class = f"{type(provider).__module__}.{type(provider).__qualname__}"
        backend_hash = provider.compute_backend_hash()
        with self._lock:
            if backend_hash in self._providers_by_hash:
                raise ProviderAlreadyRegisteredError(f"Provider already registered: {provider_class}")
            now = _now()
            with self._session() as session:
                session.execute(
                    sqlite_insert(SyncProviderRow)
                    .values(provider_hash=backend_hash, provider_class=provider_class, added_at=now, last_seen=now)
                    .on_conflict_do_update(index_elements=["provider_hash"], set_={"last_seen": now})
                )
                provider_id = session.scalar(
                    select(SyncProviderRow.provider_id).where(SyncProviderRow.provider_hash == backend_hash)
                )
            if provider_id is None:
                raise RuntimeError("Error retrieving provider ID")
            provider.set_provider_id(provider_id, backend_hash)
            self._providers[provider_id] = provider
            self._providers_by_hash[backend_hash] = provider
        log.info("provider_registered", provider=provider_class, provider_id=provider_id)
        return provider_id

    def get_provider(self, key: int | str) -> SyncProvider | None:
        """Look up a registered provider by ID or backend hash."""
        if isinstance(key, int):
            return self._providers.get(key)
        return self._providers_by_hash.get(key)

    def get_provider_id(self, provider: SyncProvider) -> int | None:
        registered = self._providers_by_hash.get(provider.backend_hash)
        return registered.provider_id if registered is provider else None

    @property
    def providers(self) -> list[SyncProvider]:
        return list(self._providers.values())

    def check_heartbeats(self, ttl: int = 300) -> SyncStore:
        """Raise the first error a registered provider reports for its backend."""
        for provider_id, provider in list(self._providers.items()):
            name = f"{type(provider).__name__} [#{provider_id}]"
            try:
                provider.check_heartbeat(ttl)
            except NotImplementedError:
                log.info("heartbeat_not_supported", provider=name)
                continue
            except Exception:
                log.error("heartbeat_failed", provider=name)
                raise
            log.info("heartbeat_ok", provider=name)
        return self

    # ── Entity types ────────────────────────────────────

    def register_entity_type(self, entity: type) -> int:
        entity_type_id = self._entity_types.get(entity)
        if entity_type_id is not None:
            return entity_type_id
        if not (isinstance(entity, type) and issubclass(entity, SyncEntity)):
            raise SyncConfigurationError(f"Not a subclass of SyncEntity: {entity!r}")
        self._check()
        name = entity.qualified_name()
        with self._lock:
            entity_type_id = self._entity_types.get(entity)
            if entity_type_id is not None:
                return entity_type_id
            now = _now()
            with self._session() as session:
                session.execute(
                    sqlite_insert(SyncEntityTypeRow)
                    .values(entity_type_class=name, added_at=now, last_seen=now)
                    .on_conflict_do_update(index_elements=["entity_type_class"], set_={"last_seen": now})
                )
                entity_type_id = session.scalar(
                    select(SyncEntityTypeRow.entity_type_id).where(SyncEntityTypeRow.entity_type_class == name)
                )
            if entity_type_id is None:
                raise RuntimeError("Error retrieving entity type ID")
            self._entity_types[entity] = entity_type_id
        log.debug("entity_type_registered", entity=name, entity_type_id=entity_type_id)
        return entity_type_id

    def get_entity_type_id(self, entity: type) -> int:
        return self.register_entity_type(entity)

    def touch_entity_type(self, provider_id: int, entity: type, synced: bool = False) -> None:
        """Record that ``entity`` was seen (or fully synced) through a provider."""
        entity_type_id = self.register_entity_type(entity)
        now = _now()
        values: dict[str, Any] = {"last_seen": now}
        if synced:
            values["last_sync"] = now
        with self._session() as session:
            session.execute(
                sqlite_insert(SyncEntityTypeStateRow)
                .values(provider_id=provider_id, entity_type_id=entity_type_id, **values)
                .on_conflict_do_update(index_elements=["provider_id", "entity_type_id"], set_=values)
            )
        self._entity_type_state.add((provider_id, entity_type_id))

    # ── Namespaces ──────────────────────────────────────

    def register_namespace(self, prefix: str, base_uri: str, namespace: str) -> SyncStore:
        """Map entities under the module ``namespace`` to URIs under ``base_uri``.

        ``prefix`` names the namespace in compact URIs, e.g. ``acme:User``.
        """
        prefix = prefix.lower()
        if not _PREFIX.match(prefix):
            raise SyncConfigurationError(f"Invalid namespace prefix: {prefix}")
        base_uri = base_uri.rstrip("/") + "/"
        namespace = namespace.strip(".") + "."
        with self._lock:
            # Namespaces alone don't start a run
            if self._state.run_id is None:
                self._pending_namespaces[prefix] = (base_uri, namespace)
                return self
            self._upsert_namespace(prefix, base_uri, namespace)
            self._reload_namespaces()
        return self

    def _upsert_namespace(self, prefix: str, base_uri: str, namespace: str) -> None:
        now = _now()
        with self._session() as session:
            session.execute(
                sqlite_insert(SyncEntityNamespaceRow)
                .values(
                    entity_namespace_prefix=prefix,
                    base_uri=base_uri,
                    module_namespace=namespace,
                    added_at=now,
                    last_seen=now,
                )
                .on_conflict_do_update(
                    index_elements=["entity_namespace_prefix"],
                    set_={"base_uri": base_uri, "module_namespace": namespace, "last_seen": now},
                )
            )
        log.debug("namespace_registered", prefix=prefix, base_uri=base_uri, namespace=namespace)

    def _reload_namespaces(self) -> None:
        with self._session() as session:
            rows = session.execute(
                select(
                    SyncEntityNamespaceRow.entity_namespace_prefix,
                    SyncEntityNamespaceRow.base_uri,
                    SyncEntityNamespaceRow.module_namespace,
                )
            ).all()
        self._namespaces = sorted(
            ((prefix, base_uri, namespace.lower()) for prefix, base_uri, namespace in rows),
            key=lambda row: len(row[2]),
            reverse=True,
        )

    def _match_namespace(self, entity: type) -> tuple[str, str, str] | None:
        if not (isinstance(entity, type) and issubclass(entity, SyncEntity)):
            raise SyncConfigurationError(f"Not a subclass of SyncEntity: {entity!r}")
        self._check()
        name = entity.qualified_name().lower()
        for row in self._namespaces:
            if name.startswith(row[2]):
                return row
        return None

    def get_entity_namespace(self, entity: type, uri: bool = False) -> str | None:
        """Return the prefix (or base URI) of the longest namespace containing ``entity``."""
        row = self._match_namespace(entity)
        if row is None:
            return None
        return row[1] if uri else row[0]

    def get_entity_uri(self, entity: type, compact: bool = True) -> str | None:
        row = self._match_namespace(entity)
        if row is None:
            return None
        prefix, base_uri, namespace = row
        path = entity.qualified_name()[len(namespace):].replace(".", "/")
        return f"{prefix}:{path}" if compact else f"{base_uri}{path}"

    def namespaces(self) -> list[dict[str, str]]:
        self._check()
        return [{"prefix": p, "base_uri": u, "namespace": n} for p, u, n in self._namespaces]

    # ── Entities ────────────────────────────────────────

    @staticmethod
    def _key(provider_id: int, entity: type, entity_id: Any) -> tuple[int, type, str]:
        return provider_id, entity, str(entity_id)

    def get_entity(self, provider_id: int, entity: type, entity_id: Any) -> SyncEntity | None:
        return self._entities.get(self._key(provider_id, entity, entity_id))

    def set_entity(
        self,
        provider_id: int,
        entity: type,
        entity_id: Any,
        instance: SyncEntity,
        persist: bool = True,
    ) -> SyncStore:
        """Register ``instance`` as the entity for its key and resolve anything waiting for it.

        With ``persist=False`` the ``sync_entity`` row is left for a later
        ``save_entity`` call, once the instance is complete.
        """
        key = self._key(provider_id, entity, entity_id)
        entity_type_id = self.register_entity_type(entity)
        with self._lock:
            if key in self._entities and self._entities[key] is not instance:
                raise SyncConfigurationError(
                    f"{entity.__name__} {entity_id!r} is already registered for provider #{provider_id}"
                )
            self._entities[key] = instance
            deferred = self._deferred.pop(key, [])
        if persist:
            self.save_entity(provider_id, entity, entity_id, instance)
        if (provider_id, entity_type_id) not in self._entity_type_state:
            self.touch_entity_type(provider_id, entity)
        for placeholder in deferred:
            if not placeholder.is_resolved:
                placeholder.replace(instance)
        return self

    def save_entity(
        self,
        provider_id: int,
        entity: type,
        entity_id: Any,
        instance: SyncEntity,
        *,
        deleted: bool = False,
        dirty: bool = False,
    ) -> SyncStore:
        """Upsert the serialized ``instance`` and its flags into ``sync_entity``.

        ``dirty`` marks local state the backend hasn't accepted, so
        ``last_sync`` only moves for clean writes.
        """
        entity_type_id = self.register_entity_type(entity)
        now = _now()
        data = json.loads(json.dumps(instance.to_record(), default=str))
        values: dict[str, Any] = {
            "last_seen": now,
            "entity_data": data,
            "is_deleted": deleted,
            "is_dirty": dirty,
        }
        if not dirty:
            values["last_sync"] = now
        with self._session() as session:
            session.execute(
                sqlite_insert(SyncEntityRow)
                .values(
                    provider_id=provider_id,
                    entity_type_id=entity_type_id,
                    entity_id=str(entity_id),
                    added_at=now,
                    **values,
                )
                .on_conflict_do_update(
                    index_elements=["provider_id", "entity_type_id", "entity_id"],
                    set_=values,
                )
            )
        return self

    def defer_entity(self, provider_id: int, entity: type, entity_id: Any, deferred: DeferredEntity) -> SyncStore:
        """Hold ``deferred`` until an entity with its key is registered."""
        key = self._key(provider_id, entity, entity_id)
        with self._lock:
            existing = self._entities.get(key)
            if existing is None:
                self._deferred.setdefault(key, []).append(deferred)
                return self
        deferred.replace(existing)
        return self

    @contextmanager
    def resolution_lock(self, provider_id: int, entity: type, entity_id: Any) -> Iterator[None]:
        """Serialize resolution of one (provider, entity type, ID) reference."""
        key = self._key(provider_id, entity, entity_id)
        with self._lock:
            lock = self._resolution_locks.setdefault(key, threading.RLock())
        with lock:
            yield

    def entity_count(self) -> int:
        return len(self._entities)

    # ── Errors ──────────────────────────────────────────

    def record_error(self, error: SyncError, deduplicate: bool = False) -> SyncStore:
        """Add ``error`` to the run's error log.

        With ``deduplicate`` set, a repeat of an error already in the log
        increments its count instead of being added again.
        """
        self._check()
        with self._lock:
            seen = self._state.errors.get(error) if deduplicate else None
            if seen is not None:
                seen.count += 1
            else:
                self._state.errors.add(error)
                if error.is_error:
                    self._state.error_count += 1
                elif error.is_warning:
                    self._state.warning_count += 1
        log_at(
            log,
            error.level,
            "sync_error_recorded",
            error_type=error.error_type.name,
            message=error.format_message(),
            repeat=seen is not None,
        )
        return self

    def get_errors(self) -> SyncErrorCollection:
        with self._lock:
            return self._state.errors.copy()

    @property
    def error_count(self) -> int:
        return self._state.error_count

    @property
    def warning_count(self) -> int:
        return self._state.warning_count


# ── Run log queries ─────────────────────────────────────

def _run_summary(row: SyncRunRow) -> dict[str, Any]:
    return {
        "run_id": row.run_id,
        "run_uuid": row.run_uuid,
        "command": row.run_command,
        "arguments": row.run_arguments,
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "finished_at": row.finished_at.isoformat() if row.finished_at else None,
        "exit_status": row.exit_status,
        "error_count": row.error_count,
        "warning_count": row.warning_count,
    }


def list_runs(engine: Engine, limit: int = 20) -> list[dict[str, Any]]:
    with get_session_factory(engine)() as session:
        rows = session.scalars(select(SyncRunRow).order_by(SyncRunRow.run_id.desc()).limit(limit)).all()
        return [_run_summary(r) for r in rows]


def get_run(engine: Engine, run_uuid: str) -> dict[str, Any] | None:
    with get_session_factory(engine)() as session:
        row = session.scalar(select(SyncRunRow).where(SyncRunRow.run_uuid == run_uuid))
        if row is None:
            return None
        return {**_run_summary(row), "errors": row.errors or []}


def list_namespaces(engine: Engine) -> list[dict[str, Any]]:
    with get_session_factory(engine)() as session:
        rows = session.scalars(
            select(SyncEntityNamespaceRow).order_by(SyncEntityNamespaceRow.entity_namespace_prefix)
        ).all()
        return [
            {
                "prefix": r.entity_namespace_prefix,
                "base_uri": r.base_uri,
                "namespace": r.module_namespace,
                "last_seen": r.last_seen.isoformat() if r.last_seen else None,
            }
            for r in rows
        ]
