"""Shared enumerations used across the entire system."""

from __future__ import annotations

from enum import Enum, IntEnum


# ── Sync Operations ──────────────────────────────────────
class SyncOperation(IntEnum):
    CREATE = 1
    READ = 2
    UPDATE = 4
    DELETE = 8
    CREATE_LIST = 16
    READ_LIST = 32
    UPDATE_LIST = 64
    DELETE_LIST = 128


LIST_OPERATIONS = frozenset({
    SyncOperation.CREATE_LIST,
    SyncOperation.READ_LIST,
    SyncOperation.UPDATE_LIST,
    SyncOperation.DELETE_LIST,
})

READ_OPERATIONS = frozenset({SyncOperation.READ, SyncOperation.READ_LIST})


# ── Hydration ────────────────────────────────────────────
class HydrationPolicy(str, Enum):
    """When a deferred relationship is resolved."""
    SUPPRESS = "suppress"   # never resolved unless forced
    LAZY = "lazy"           # resolved on first read
    EAGER = "eager"         # resolved while the owning entity is constructed


class DeferredState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"


# ── Key Conformity ───────────────────────────────────────
class Conformity(IntEnum):
    """How consistently a batch of records shares one field layout."""
    NONE = 0        # every record may differ
    PARTIAL = 1     # records share keys, possibly in a different order
    COMPLETE = 2    # records share keys in the same order


# ── Sync Errors ──────────────────────────────────────────
class SyncErrorType(str, Enum):
    ENTITY_NOT_FOUND = "entity_not_found"           # nothing matched the criteria
    ENTITY_NOT_UNIQUE = "entity_not_unique"         # the same entity appears more than once
    ENTITY_NOT_EXPECTED = "entity_not_expected"     # should not exist, or has no counterpart
    ENTITY_NOT_SUPPORTED = "entity_not_supported"   # provider doesn't implement the operation
    HIERARCHY_IS_CIRCULAR = "hierarchy_is_circular"


# ── HTTP ─────────────────────────────────────────────────
class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
