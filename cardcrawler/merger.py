from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Set

from .models import (
    CrawlState,
    Record,
    WorkCoordinate,
    compose_description,
    normalize_attribution,
)

logger = logging.getLogger(__name__)


def _name_key(name: str) -> str:
    return str(name or "").strip().lower()


class Merger:
    """Identity index over the state's records and its completed coordinates.

    Only resolved records count as known: an unresolved sentinel record is
    replaced in place when a later fetch resolves the same identity.
    """

    def __init__(self, state: CrawlState) -> None:
        self.state = state
        self._index: Dict[str, int] = {}
        self._resolved: Set[str] = set()
        self.rebuild()

    def rebuild(self) -> None:
        unique: List[Record] = []
        self._index = {}
        self._resolved = set()
        for record in self.state.records:
            position = self._index.get(record.identity)
            if position is None:
                self._index[record.identity] = len(unique)
                unique.append(record)
            elif record.is_resolved and not unique[position].is_resolved:
                unique[position] = record
        self.state.records = unique
        self._resolved = {r.identity for r in unique if r.is_resolved}

    def is_known(self, identity: str) -> bool:
        return identity in self._resolved

    def is_complete(self, coordinate: WorkCoordinate) -> bool:
        return coordinate in self.state.completed

    def merge(self, records: Iterable[Record]) -> List[Record]:
        """Append records with unseen identities; returns what was added or upgraded."""
        added: List[Record] = []
        for record in records:
            position = self._index.get(record.identity)
            if position is None:
                self._index[record.identity] = len(self.state.records)
                self.state.records.append(record)
            elif record.is_resolved and record.identity not in self._resolved:
                self.state.records[position] = record
            else:
                continue
            if record.is_resolved:
                self._resolved.add(record.identity)
            added.append(record)
        return added

    def mark_complete(self, coordinate: WorkCoordinate) -> bool:
        if coordinate in self.state.completed:
            return False
        self.state.completed.add(coordinate)
        return True

    def category_map(self) -> Dict[str, str]:
        mapping: Dict[str, str] = {}
        for record in self.state.records:
            if not record.is_resolved:
                continue
            key = _name_key(record.display_name)
            if key and key not in mapping:
                mapping[key] = record.category
        return mapping

    def backfill_categories(self) -> int:
        """Fill unresolved categories from resolved records sharing the display name."""
        mapping = self.category_map()
        filled = 0
        for record in self.state.records:
            if record.is_resolved:
                continue
            category = mapping.get(_name_key(record.display_name))
            if not category:
                continue
            record.category = category
            record.composite_description = compose_description(record.display_name, category)
            self._resolved.add(record.identity)
            filled += 1
        if filled:
            logger.info("backfilled category for %d records", filled)
        return filled

    def sweep_unresolved(self) -> Set[WorkCoordinate]:
        """Drop unresolved records and reopen their coordinates for a re-scan."""
        reopened: Set[WorkCoordinate] = set()
        kept: List[Record] = []
        for record in self.state.records:
            if record.is_resolved:
                kept.append(record)
                continue
            reopened.add(record.coordinate)
        removed = len(self.state.records) - len(kept)
        self.state.records = kept
        self.state.completed -= reopened
        self.rebuild()
        if removed:
            logger.info("removed %d unresolved records, %d pages queued for re-scan", removed, len(reopened))
        return reopened

    def normalize_records(self) -> None:
        for record in self.state.records:
            record.attribution_name = normalize_attribution(record.attribution_name)
            if not record.composite_description.strip():
                record.composite_description = compose_description(record.display_name, record.category)
