from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

UNRESOLVED = "unresolved"
ANONYMOUS = "Anonymous"

# Values older documents used for an unclassified card.
LEGACY_UNRESOLVED = {"", "unknown anime", UNRESOLVED}
PLACEHOLDER_ATTRIBUTIONS = {"", "official", "unknown creator", "unknown"}
PLACEHOLDER_ATTRIBUTION_FRAGMENTS = ("people who want", "requested by")

# new field name -> older names, first match wins
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "identity": ("identity", "imageUrl", "image_url"),
    "detailRef": ("detailRef", "detailUrl", "detail_url"),
    "displayName": ("displayName", "cardName", "name"),
    "category": ("category", "animeName"),
    "attributionName": ("attributionName", "creator", "creatorName"),
    "compositeDescription": ("compositeDescription", "description"),
    "partition": ("partition", "tier"),
    "pageIndex": ("pageIndex", "page"),
    "fetchedAt": ("fetchedAt", "scrapedAt", "scraped_at"),
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def normalize_attribution(value: Any) -> str:
    text = " ".join(str(value or "").split())
    lowered = text.lower()
    if lowered in PLACEHOLDER_ATTRIBUTIONS:
        return ANONYMOUS
    if any(fragment in lowered for fragment in PLACEHOLDER_ATTRIBUTION_FRAGMENTS):
        return ANONYMOUS
    return text


def is_unresolved_category(value: Any) -> bool:
    return str(value or "").strip().lower() in LEGACY_UNRESOLVED


def compose_description(display_name: str, category: str) -> str:
    return f"{display_name} from {category}"


@dataclass(frozen=True)
class WorkCoordinate:
    partition: str
    page_index: int

    @property
    def key(self) -> str:
        return f"{self.partition}-{self.page_index}"

    @classmethod
    def parse(cls, value: Any, default_partition: str = "1") -> "WorkCoordinate":
        """Parse ``"<partition>-<page>"``; a bare page number maps to the default partition."""
        raw = str(value or "").strip()
        if not raw:
            raise ValueError("empty coordinate")
        if raw.isdigit():
            return cls(default_partition, int(raw))
        partition, sep, page = raw.rpartition("-")
        if not sep or not partition:
            raise ValueError(f"bad coordinate: {value!r}")
        return cls(partition, int(page))

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class CandidateItem:
    identity: str
    detail_ref: str
    display_name: str


@dataclass
class Record:
    identity: str
    detail_ref: str
    display_name: str
    category: str
    attribution_name: str
    composite_description: str
    partition: str
    page_index: int
    fetched_at: str = field(default_factory=utc_now_iso)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def coordinate(self) -> WorkCoordinate:
        return WorkCoordinate(self.partition, self.page_index)

    @property
    def is_resolved(self) -> bool:
        return not is_unresolved_category(self.category)

    @classmethod
    def from_candidate(
        cls,
        item: CandidateItem,
        coordinate: WorkCoordinate,
        category: str,
        attribution_name: str,
    ) -> "Record":
        return cls(
            identity=item.identity,
            detail_ref=item.detail_ref,
            display_name=item.display_name,
            category=category,
            attribution_name=attribution_name,
            composite_description=compose_description(item.display_name, category),
            partition=coordinate.partition,
            page_index=coordinate.page_index,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "identity": self.identity,
                "detailRef": self.detail_ref,
                "displayName": self.display_name,
                "category": self.category,
                "attributionName": self.attribution_name,
                "compositeDescription": self.composite_description,
                "partition": self.partition,
                "pageIndex": self.page_index,
                "fetchedAt": self.fetched_at,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], default_partition: str = "1") -> Optional["Record"]:
        """Build a record from current or legacy field names; None without an identity."""
        values: Dict[str, Any] = {}
        consumed: Set[str] = set()
        for name, aliases in FIELD_ALIASES.items():
            for alias in aliases:
                if alias in payload and payload[alias] not in (None, ""):
                    values[name] = payload[alias]
                    break
            consumed.update(aliases)
        identity = str(values.get("identity") or "").strip()
        if not identity:
            return None
        display_name = str(values.get("displayName") or "Unknown Character").strip()
        category = str(values.get("category") or "").strip()
        if is_unresolved_category(category):
            category = UNRESOLVED
        try:
            page_index = int(values.get("pageIndex") or 0)
        except (TypeError, ValueError):
            page_index = 0
        description = str(values.get("compositeDescription") or "").strip()
        if not description:
            description = compose_description(display_name, category)
        return cls(
            identity=identity,
            detail_ref=str(values.get("detailRef") or "").strip(),
            display_name=display_name,
            category=category,
            attribution_name=normalize_attribution(values.get("attributionName")),
            composite_description=description,
            partition=str(values.get("partition") or default_partition),
            page_index=page_index,
            fetched_at=str(values.get("fetchedAt") or utc_now_iso()),
            extra={k: v for k, v in payload.items() if k not in consumed},
        )


@dataclass
class CrawlStats:
    attempts: int = 0
    successes: int = 0

    @property
    def success_rate(self) -> float:
        if self.attempts <= 0:
            return 0.0
        return self.successes / self.attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successRate": round(self.success_rate, 4),
            "totalAttempts": self.attempts,
            "successfulAttempts": self.successes,
        }


@dataclass
class CrawlState:
    records: List[Record] = field(default_factory=list)
    completed: Set[WorkCoordinate] = field(default_factory=set)
    last_checkpoint_at: str = ""
    stats: CrawlStats = field(default_factory=CrawlStats)


def partition_rank(partition: str, order: Dict[str, int]) -> Tuple[int, str]:
    return (order.get(str(partition), len(order)), str(partition))


def coordinate_sort_key(coordinate: WorkCoordinate, order: Dict[str, int]) -> Tuple[Any, ...]:
    return (partition_rank(coordinate.partition, order), coordinate.page_index)


def record_sort_key(record: Record, order: Dict[str, int]) -> Tuple[Any, ...]:
    return (
        partition_rank(record.partition, order),
        record.category.lower(),
        record.display_name.lower(),
    )


def sorted_coordinates(coordinates: Iterable[WorkCoordinate], order: Dict[str, int]) -> List[WorkCoordinate]:
    return sorted(coordinates, key=lambda c: coordinate_sort_key(c, order))


def state_to_document(state: CrawlState, order: Dict[str, int]) -> Dict[str, Any]:
    records = sorted(state.records, key=lambda r: record_sort_key(r, order))
    return {
        "totalRecords": len(records),
        "completedCoordinates": [c.key for c in sorted_coordinates(state.completed, order)],
        "records": [r.to_dict() for r in records],
        "lastUpdated": state.last_checkpoint_at or utc_now_iso(),
        "stats": state.stats.to_dict(),
    }


def state_from_document(payload: Any, default_partition: str = "1") -> CrawlState:
    """Rebuild state from a parsed document; raises ValueError when it is not one."""
    if isinstance(payload, list):
        payload = {"records": payload}
    if not isinstance(payload, dict):
        raise ValueError("document is not a JSON object")
    raw_records = payload.get("records")
    if raw_records is None:
        raw_records = payload.get("cards")
    if raw_records is None:
        raise ValueError("document has no records")
    if not isinstance(raw_records, list):
        raise ValueError("records is not a list")

    records: List[Record] = []
    for row in raw_records:
        if not isinstance(row, dict):
            continue
        record = Record.from_dict(row, default_partition)
        if record is not None:
            records.append(record)

    completed: Set[WorkCoordinate] = set()
    raw_completed = payload.get("completedCoordinates")
    if raw_completed is None:
        raw_completed = payload.get("processedPages") or []
    for value in raw_completed:
        try:
            completed.add(WorkCoordinate.parse(value, default_partition))
        except ValueError:
            continue

    stats = CrawlStats()
    raw_stats = payload.get("stats")
    if isinstance(raw_stats, dict):
        try:
            stats.attempts = int(raw_stats.get("totalAttempts") or 0)
            stats.successes = int(raw_stats.get("successfulAttempts") or 0)
        except (TypeError, ValueError):
            stats = CrawlStats()

    return CrawlState(
        records=records,
        completed=completed,
        last_checkpoint_at=str(payload.get("lastUpdated") or ""),
        stats=stats,
    )
