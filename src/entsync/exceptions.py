"""Exception hierarchy for the sync engine."""

from __future__ import annotations

from typing import Any


class EntsyncError(Exception):
    """Base class for all entsync errors."""


# ── Configuration errors (raised at introspection time) ──

class SyncConfigurationError(EntsyncError):
    """An entity or provider class is declared in a way the engine can't use."""


class ProviderAlreadyRegisteredError(EntsyncError):
    """The same provider backend was registered twice in one store session."""


# ── Resolution errors ───────────────────────────────────

class SyncResolutionError(EntsyncError):
    """Base class for errors raised while producing or resolving entities."""


class SyncOperationNotImplementedError(SyncResolutionError):
    """The provider doesn't implement the requested operation for the entity."""

    def __init__(self, provider: Any, entity: type, operation: Any):
        self.provider = provider
        self.entity = entity
        self.operation = operation
        super().__init__(
            f"{type(provider).__name__} does not support {operation.name} for {entity.__name__}"
        )


class SyncEntityNotFoundError(SyncResolutionError):
    """No entity matching the requested identifier was returned."""

    def __init__(self, entity: type, entity_id: Any, provider: Any = None):
        self.entity = entity
        self.entity_id = entity_id
        self.provider = provider
        super().__init__(f"{entity.__name__} not found: {entity_id!r}")


class SyncCircularReferenceError(SyncResolutionError):
    """An entity graph or hierarchy refers back to an entity being resolved."""


class UnclaimedDataError(SyncResolutionError, ValueError):
    """Strict construction received data that would be discarded."""

    def __init__(self, entity: type, keys: list[str]):
        self.entity = entity
        self.keys = keys
        super().__init__(f"Unable to apply data to {entity.__name__}: {', '.join(keys)}")


class UndefinedMethodError(EntsyncError, AttributeError):
    """A provider method name doesn't map to any declared or dispatched operation."""


# ── Store errors ────────────────────────────────────────

class StoreClosedError(EntsyncError):
    """The sync store has already been closed."""


# ── Transport errors ────────────────────────────────────

class HttpRequestError(EntsyncError):
    """An HTTP request returned an error status."""

    def __init__(self, method: str, url: str, status_code: int, body: str = ""):
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body
        super().__init__(f"{method} {url} returned HTTP {status_code}")
