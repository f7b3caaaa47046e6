"""Resolve names to entities through an entity provider.

  * ``SyncEntityResolver``       – exact match, filtered by the backend
  * ``SyncEntityFuzzyResolver``  – best similarity match over the full list
"""

from __future__ import annotations

import logging
import re
from difflib import SequenceMatcher
from typing import TYPE_CHECKING

from entsync.logging import get_logger
from entsync.models.enums import SyncErrorType
from entsync.models.errors import SyncError

if TYPE_CHECKING:
    from entsync.engine.provider import SyncEntityProvider
    from entsync.models.entity import SyncEntity

log = get_logger("resolver")


# ── Similarity helpers ──────────────────────────────────

def _normalize(name: str) -> str:
    """Lower-case, strip, collapse whitespace."""
    return re.sub(r"\s+", " ", name.strip().lower())


def _token_overlap(a: str, b: str) -> float:
    """Jaccard similarity over word tokens."""
    ta = set(_normalize(a).split())
    tb = set(_normalize(b).split())
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def name_similarity(a: str, b: str) -> float:
    """Max of token overlap and ``SequenceMatcher`` ratio."""
    return max(_token_overlap(a, b), SequenceMatcher(None, _normalize(a), _normalize(b)).ratio())


# ── Resolvers ───────────────────────────────────────────

class SyncEntityResolver:
    """Ask the backend for entities named ``name`` and return the first exact match."""

    def __init__(self, entity_provider: SyncEntityProvider, name_property: str = "name"):
        self.entity_provider = entity_provider
        self.name_property = name_property

    def get_by_name(self, name: str) -> SyncEntity | None:
        for entity in self.entity_provider.get_list({self.name_property: name}):
            if getattr(entity, self.name_property, None) == name:
                return entity
        return None


class SyncEntityFuzzyResolver:
    """Match names against every entity the provider returns.

    The list is fetched once, on first use. Names scoring below
    ``threshold`` don't match; equal best scores from different entities are
    recorded as ``ENTITY_NOT_UNIQUE`` and the first is returned.
    """

    def __init__(
        self,
        entity_provider: SyncEntityProvider,
        name_property: str = "name",
        threshold: float = 0.8,
    ):
        self.entity_provider = entity_provider
        self.name_property = name_property
        self.threshold = threshold
        self._entities: list[tuple[str, SyncEntity]] | None = None

    def _load(self) -> list[tuple[str, SyncEntity]]:
        if self._entities is None:
            self._entities = [
                (name, entity)
                for entity in self.entity_provider.get_list()
                if isinstance(name := getattr(entity, self.name_property, None), str) and name
            ]
            log.debug("fuzzy_resolver_loaded", entity=self.entity_provider.entity.__name__, count=len(self._entities))
        return self._entities

    def get_by_name(self, name: str) -> SyncEntity | None:
        match, _ = self.get_by_name_with_score(name)
        return match

    def get_by_name_with_score(self, name: str) -> tuple[SyncEntity | None, float]:
        best: list[SyncEntity] = []
        best_score = 0.0
        for candidate, entity in self._load():
            score = name_similarity(name, candidate)
            if score < self.threshold or score < best_score:
                continue
            if score > best_score:
                best, best_score = [], score
            if not any(e is entity for e in best):
                best.append(entity)

        if not best:
            return None, 0.0
        if len(best) > 1:
            entity_type = self.entity_provider.entity
            self.entity_provider.provider.store.record_error(SyncError(
                error_type=SyncErrorType.ENTITY_NOT_UNIQUE,
                message="{} name matches more than one entity: {}",
                values=[entity_type.__name__, name],
                level=logging.WARNING,
                entity=entity_type.qualified_name(),
                provider=type(self.entity_provider.provider).__name__,
            ), deduplicate=True)
        return best[0], best_score
