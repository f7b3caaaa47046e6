"""Sync error records and the per-run collection that de-duplicates them."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Iterator

from pydantic import BaseModel, Field

from .enums import SyncErrorType


class SyncError(BaseModel):
    """An error that occurred during a sync operation.

    ``message`` is a ``str.format`` template applied to ``values``. Errors
    with identical content share a hash, which is how a run's error log is
    de-duplicated.
    """
    error_type: SyncErrorType
    message: str
    values: list[Any] = Field(default_factory=list)
    level: int = logging.ERROR
    entity: str | None = None
    entity_name: str | None = None
    provider: str | None = None
    count: int = 1

    @property
    def content_hash(self) -> str:
        payload = self.model_dump(mode="json", exclude={"count"})
        return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()

    @property
    def is_error(self) -> bool:
        return self.level >= logging.ERROR

    @property
    def is_warning(self) -> bool:
        return logging.WARNING <= self.level < logging.ERROR

    def format_message(self) -> str:
        try:
            return self.message.format(*self.values)
        except (IndexError, KeyError):
            return self.message

    def summary(self) -> str:
        parts = [self.error_type.name, self.format_message()]
        if self.entity_name or self.entity:
            parts.append(f"entity={self.entity_name or self.entity}")
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.count > 1:
            parts.append(f"x{self.count}")
        return " ".join(parts)


class SyncErrorCollection:
    """Ordered sync errors, indexed by content hash."""

    def __init__(self) -> None:
        self._errors: list[SyncError] = []
        self._by_hash: dict[str, SyncError] = {}

    def add(self, error: SyncError) -> None:
        self._errors.append(error)
        self._by_hash.setdefault(error.content_hash, error)

    def get(self, error: SyncError) -> SyncError | None:
        """Return a previously added error with the same content, if any."""
        return self._by_hash.get(error.content_hash)

    def copy(self) -> SyncErrorCollection:
        clone = SyncErrorCollection()
        for error in self._errors:
            clone.add(error.model_copy())
        return clone

    def error_count(self) -> int:
        return sum(1 for e in self._errors if e.is_error)

    def warning_count(self) -> int:
        return sum(1 for e in self._errors if e.is_warning)

    def to_list(self) -> list[dict[str, Any]]:
        return [e.model_dump(mode="json") for e in self._errors]

    def to_json(self) -> str:
        return json.dumps(self.to_list())

    def __iter__(self) -> Iterator[SyncError]:
        return iter(self._errors)

    def __len__(self) -> int:
        return len(self._errors)

    def __bool__(self) -> bool:
        return bool(self._errors)
