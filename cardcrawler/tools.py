"""Batch maintenance over the persisted crawl document.

- clean: drop unresolved records and reopen their pages
- organize: merge every document in the output directory into one sorted file
- recover: list readable documents; optionally restore the best one
- search: keyword lookup across records
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import CorruptState
from .merger import Merger
from .models import (
    CrawlState,
    Record,
    partition_rank,
    sorted_coordinates,
    state_from_document,
    state_to_document,
    utc_now_iso,
)
from .store import PersistentStore, read_document, write_json_atomic

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ("display_name", "category", "attribution_name", "composite_description")


def clean(store: PersistentStore) -> Dict[str, Any]:
    state = store.load()
    merger = Merger(state)
    before = len(state.records)
    backfilled = merger.backfill_categories()
    reopened = merger.sweep_unresolved()
    store.save(state)
    return {
        "records_before": before,
        "records_after": len(state.records),
        "backfilled": backfilled,
        "removed": before - len(state.records),
        "reopened_pages": [c.key for c in sorted_coordinates(reopened, store.partition_order)],
    }


def _organize_sources(store: PersistentStore) -> List[Path]:
    folder = store.path.parent
    sources = [store.path, store.backup_path]
    if folder.exists():
        for candidate in sorted(folder.glob("*.json")):
            if candidate in sources or "before_organize" in candidate.name or candidate.name.startswith("."):
                continue
            sources.append(candidate)
    return [p for p in sources if p.exists()]


def _organize_key(record: Record, order: Dict[str, int]) -> Tuple[Any, ...]:
    return (
        record.page_index,
        partition_rank(record.partition, order),
        record.category.lower(),
        record.display_name.lower(),
    )


def organize(store: PersistentStore) -> Dict[str, Any]:
    """Merge, dedupe, backfill, sort and number every record in the output directory."""
    merged = CrawlState()
    merger = Merger(merged)
    used: List[str] = []
    for source in _organize_sources(store):
        try:
            state = state_from_document(read_document(source), store.default_partition)
        except (CorruptState, ValueError) as exc:
            logger.warning("organize: skipping %s (%s)", source.name, exc)
            continue
        merger.merge(state.records)
        merged.completed |= state.completed
        merged.stats.attempts = max(merged.stats.attempts, state.stats.attempts)
        merged.stats.successes = max(merged.stats.successes, state.stats.successes)
        used.append(source.name)
    if not used:
        raise CorruptState(str(store.path), "no readable document to organize")

    merger.normalize_records()
    backfilled = merger.backfill_categories()
    dropped = merger.sweep_unresolved()

    if store.path.exists():
        shutil.copyfile(store.path, store.path.with_name(f"{store.path.stem}.before_organize.json"))

    order = store.partition_order
    records = sorted(merged.records, key=lambda r: _organize_key(r, order))
    partition_counts: Dict[str, int] = {}
    for index, record in enumerate(records, start=1):
        record.extra["id"] = f"{index:05d}"
        partition_counts[record.partition] = partition_counts.get(record.partition, 0) + 1

    merged.last_checkpoint_at = utc_now_iso()
    document = state_to_document(merged, order)
    document["records"] = [r.to_dict() for r in records]
    document["metadata"] = {
        "organized": True,
        "totalCategories": len({r.category for r in records}),
        "partitionBreakdown": partition_counts,
        "pageRange": f"{records[0].page_index}-{records[-1].page_index}" if records else "0-0",
    }
    write_json_atomic(store.path, document)
    return {
        "sources": used,
        "total_records": len(records),
        "backfilled": backfilled,
        "reopened_pages": len(dropped),
        "metadata": document["metadata"],
    }


@dataclass
class Candidate:
    path: Path
    readable: bool
    records: int = 0
    completed: int = 0
    last_updated: str = ""
    size_bytes: int = 0
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "readable": self.readable,
            "records": self.records,
            "completed": self.completed,
            "last_updated": self.last_updated,
            "size_mb": round(self.size_bytes / 1024 / 1024, 2),
            "error": self.error,
        }


def inspect_documents(store: PersistentStore) -> List[Candidate]:
    found: List[Candidate] = []
    for path in store.candidates():
        size = path.stat().st_size
        try:
            state = state_from_document(read_document(path), store.default_partition)
        except (CorruptState, ValueError) as exc:
            found.append(Candidate(path, False, size_bytes=size, error=str(exc)))
            continue
        found.append(
            Candidate(
                path,
                True,
                records=len(state.records),
                completed=len(state.completed),
                last_updated=state.last_checkpoint_at,
                size_bytes=size,
            )
        )
    return found


def recover(store: PersistentStore, restore: bool = False) -> Dict[str, Any]:
    """Report every candidate document; with ``restore`` copy the best one over the primary."""
    candidates = inspect_documents(store)
    readable = [c for c in candidates if c.readable]
    best: Optional[Candidate] = None
    if readable:
        best = max(readable, key=lambda c: (c.records, c.completed, c.last_updated))
    report: Dict[str, Any] = {
        "candidates": [c.to_dict() for c in candidates],
        "best": str(best.path) if best else "",
        "restored": False,
    }
    if restore and best is not None and best.path != store.path:
        payload = read_document(best.path)
        write_json_atomic(store.path, payload)
        report["restored"] = True
        logger.info("restored %s over %s", best.path.name, store.path.name)
    return report


def _matches(record: Record, needle: str) -> bool:
    return any(needle in str(getattr(record, name, "")).lower() for name in SEARCH_FIELDS)


def search(
    records: Iterable[Record],
    keyword: str,
    partition: Optional[str] = None,
    limit: int = 0,
) -> List[Record]:
    needle = str(keyword or "").strip().lower()
    hits: List[Record] = []
    for record in records:
        if partition and record.partition != str(partition):
            continue
        if needle and not _matches(record, needle):
            continue
        hits.append(record)
        if limit and len(hits) >= limit:
            break
    return hits


def export_records(records: Iterable[Record], path: Path, keyword: str = "") -> int:
    rows = [r.to_dict() for r in records]
    write_json_atomic(
        Path(path),
        {"keyword": keyword, "exportedAt": utc_now_iso(), "count": len(rows), "records": rows},
    )
    return len(rows)


def dump(report: Dict[str, Any]) -> str:
    return json.dumps(report, ensure_ascii=False, indent=2)
