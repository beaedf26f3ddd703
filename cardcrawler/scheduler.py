"""Crawl orchestration.

The scheduler walks partition x page coordinates, scans listing pages on a
page pool, fans new candidates out to a separate item pool, and folds every
result back into the crawl state on its own thread. Worker tasks only return
values; they never touch ``CrawlState``.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

import requests

from .breaker import CircuitBreaker
from .errors import CorruptState, Fatal, NetworkDown, PoolExhausted
from .fetcher import DetailFetcher, FetchOutcome
from .merger import Merger
from .models import CandidateItem, CrawlState, WorkCoordinate
from .renderer import RendererPool, WaitPolicy
from .scanner import ListPageScanner, ScanResult
from .store import PersistentStore

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.5


@dataclass
class PageBatch:
    coordinate: WorkCoordinate
    total: int
    pending: int
    failures: int = 0
    added: int = 0


@dataclass
class RunSummary:
    pages_completed: int = 0
    pages_left_pending: int = 0
    partitions_ended: List[str] = field(default_factory=list)
    records_added: int = 0
    items_dropped: int = 0
    items_unresolved_kept: int = 0
    breaker_trips: int = 0
    checkpoints: int = 0
    interrupted: bool = False
    finished: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pages_completed": self.pages_completed,
            "pages_left_pending": self.pages_left_pending,
            "partitions_ended": list(self.partitions_ended),
            "records_added": self.records_added,
            "items_dropped": self.items_dropped,
            "items_unresolved_kept": self.items_unresolved_kept,
            "breaker_trips": self.breaker_trips,
            "checkpoints": self.checkpoints,
            "interrupted": self.interrupted,
            "finished": self.finished,
        }


def probe_connectivity(url: str, timeout: float = 10.0) -> bool:
    if not url:
        return True
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        logger.info("connectivity probe failed: %s", exc)
        return False
    return response.status_code < 500


class CrawlScheduler:
    def __init__(
        self,
        config: Any,
        store: PersistentStore,
        scan_pool: Any,
        detail_pool: Any,
        scanner: Optional[ListPageScanner] = None,
        fetcher: Optional[DetailFetcher] = None,
        breaker: Optional[CircuitBreaker] = None,
        notifier: Any = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Any]] = None,
        probe: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._stop = threading.Event()
        # waits end early once a stop is requested
        sleep = sleep or self._stop.wait
        self.config = config
        self.store = store
        self.scan_pool = scan_pool
        self.detail_pool = detail_pool
        self.page_concurrency = int(config.get("page_concurrency"))
        self.item_concurrency = int(config.get("item_concurrency"))
        self.failure_ratio = float(config.get("completion_failure_ratio"))
        self.page_rounds = max(0, int(config.get("page_rounds", 2)))
        self.lenient = bool(config.get("lenient_unresolved"))
        self.delay_range = (float(config.get("request_delay_min")), float(config.get("request_delay_max")))
        self.scanner = scanner or ListPageScanner(
            url_for=lambda c: config.list_url(c.partition, c.page_index),
            wait_policy=WaitPolicy(
                timeout=float(config.get("list_timeout_seconds")),
                settle=float(config.get("list_settle_seconds")),
            ),
            attempts=int(config.get("scan_attempts")),
            backoff_seconds=float(config.get("scan_backoff_seconds")),
            diagnostics_dir=Path(str(config.get("output_dir"))) / str(config.get("diagnostics_dir")),
            sleep=sleep,
        )
        self.fetcher = fetcher or DetailFetcher(
            wait_policy=WaitPolicy(
                timeout=float(config.get("detail_timeout_seconds")),
                settle=float(config.get("detail_settle_seconds")),
            ),
            ready_timeout=float(config.get("detail_wait_seconds")),
            max_attempts=int(config.get("max_attempts")),
            backoff_seconds=float(config.get("retry_backoff_seconds")),
            backoff_mode=str(config.get("retry_backoff_mode")),
            lenient=self.lenient,
            require_attribution=bool(config.get("require_attribution")),
            sleep=sleep,
        )
        self.breaker = breaker or CircuitBreaker(
            consecutive_threshold=int(config.get("breaker_consecutive_failures")),
            success_floor=float(config.get("breaker_success_floor")),
            window=int(config.get("breaker_window")),
            cooldown_seconds=float(config.get("breaker_cooldown_seconds")),
            network_down_cooldown_seconds=float(config.get("network_down_cooldown_seconds")),
        )
        self.notifier = notifier
        self._clock = clock
        self._sleep = sleep
        probe_url = str(config.get("connectivity_probe_url") or "")
        self._probe = probe or (lambda: probe_connectivity(probe_url))

        self.state: CrawlState = CrawlState()
        self.merger: Optional[Merger] = None
        self.summary = RunSummary()
        self.dispatch_log: List[Tuple[float, str]] = []

        self._cursors: Dict[str, int] = {}
        self._ended: Set[str] = set()
        self._fixed: Optional[Deque[WorkCoordinate]] = None
        self._retry: Deque[WorkCoordinate] = deque()
        self._rounds: Dict[WorkCoordinate, int] = {}
        self._scans: Dict[Future, WorkCoordinate] = {}
        self._items: Dict[Future, Tuple[PageBatch, CandidateItem]] = {}
        self._backlog: Deque[Tuple[PageBatch, CandidateItem]] = deque()
        self._active_pages: Set[WorkCoordinate] = set()
        self._inflight_identities: Set[str] = set()
        self._suspended_until = 0.0
        self._probe_on_resume = False
        self._probe_failures = 0

    @classmethod
    def from_config(cls, config: Any, notifier: Any = None) -> "CrawlScheduler":
        store = PersistentStore.from_config(config)
        common = dict(
            headless=bool(config.get("headless")),
            engine=str(config.get("browser_engine")),
            recycle_after=int(config.get("recycle_after")),
            acquire_timeout=float(config.get("pool_acquire_timeout")),
        )
        # Listing pages must load images: candidate identities are image URLs.
        scan_pool = RendererPool(
            int(config.get("page_concurrency")),
            block_images=False,
            timeout=float(config.get("list_timeout_seconds")),
            name="scan",
            **common,
        )
        detail_pool = RendererPool(
            int(config.get("item_concurrency")),
            block_images=True,
            timeout=float(config.get("detail_timeout_seconds")),
            name="detail",
            **common,
        )
        return cls(config, store, scan_pool, detail_pool, notifier=notifier)

    # -- state ---------------------------------------------------------

    def load_state(self) -> CrawlState:
        state, source = self.store.load_with_fallback(
            start_empty_on_corruption=bool(self.config.get("start_empty_on_corruption"))
        )
        if source is not None:
            logger.info("resuming from %s: %d records, %d pages done", source, len(state.records), len(state.completed))
        return state

    def _prepare(self, state: CrawlState) -> None:
        self.state = state
        self.merger = Merger(state)
        self.merger.normalize_records()
        self.merger.backfill_categories()
        if not self.lenient:
            self.merger.sweep_unresolved()

    def checkpoint(self, reason: str = "") -> bool:
        try:
            saved = self.store.save(self.state)
        except OSError as exc:
            logger.error("checkpoint failed (%s): %s", reason, exc)
            return False
        if saved:
            self.summary.checkpoints += 1
            logger.debug("checkpoint (%s): %d records", reason, len(self.state.records))
            if self.notifier is not None:
                self.notifier.on_checkpoint(self.store.path)
        return saved

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # -- coordinates -----------------------------------------------------

    def _next_coordinate(self) -> Optional[WorkCoordinate]:
        if self._fixed is not None:
            while self._fixed:
                coordinate = self._fixed.popleft()
                if self._eligible(coordinate):
                    return coordinate
        else:
            for partition in self.config.partitions:
                if partition in self._ended:
                    continue
                last = self.config.last_page(partition)
                page = self._cursors.get(partition, int(self.config.get("start_page") or 1))
                while page <= last:
                    coordinate = WorkCoordinate(partition, page)
                    page += 1
                    self._cursors[partition] = page
                    if self._eligible(coordinate):
                        return coordinate
                self._cursors[partition] = page
        while self._retry:
            coordinate = self._retry.popleft()
            if self._eligible(coordinate):
                return coordinate
        return None

    def _eligible(self, coordinate: WorkCoordinate) -> bool:
        if self.merger.is_complete(coordinate):
            return False
        return coordinate not in self._active_pages

    def _leave_pending(self, coordinate: WorkCoordinate, reason: str) -> None:
        rounds = self._rounds.get(coordinate, 0)
        if rounds < self.page_rounds:
            self._rounds[coordinate] = rounds + 1
            self._retry.append(coordinate)
            logger.info("[%s] pending (%s), re-queued %d/%d", coordinate, reason, rounds + 1, self.page_rounds)
        else:
            self.summary.pages_left_pending += 1
            logger.warning("[%s] pending (%s), left for a later run", coordinate, reason)

    # -- worker tasks (no shared state) ----------------------------------

    def _pace(self) -> None:
        low, high = self.delay_range
        if high > 0:
            self._sleep(random.uniform(low, high))

    def _scan_task(self, coordinate: WorkCoordinate) -> ScanResult:
        self._pace()
        return self.scanner.scan_with_retry(coordinate, self.scan_pool)

    def _fetch_task(self, item: CandidateItem, coordinate: WorkCoordinate) -> FetchOutcome:
        self._pace()
        session = self.detail_pool.acquire_session()
        discard = False
        try:
            return self.fetcher.fetch(item, coordinate, session)
        except NetworkDown:
            discard = True
            raise
        finally:
            self.detail_pool.release_session(session, discard=discard)

    # -- dispatch --------------------------------------------------------

    def _suspended(self) -> bool:
        if self._suspended_until <= 0:
            return False
        if self._clock() < self._suspended_until:
            return True
        if self._probe_on_resume:
            if not self._probe() and self._probe_failures < 5:
                self._probe_failures += 1
                self._suspended_until = self._clock() + self.breaker.network_down_cooldown_seconds
                logger.warning("connectivity still down, extending cooldown")
                return True
            self._probe_on_resume = False
            self._probe_failures = 0
        self._suspended_until = 0.0
        logger.info("cooldown over, resuming dispatch")
        return False

    def _suspend(self, network_down: bool) -> None:
        if self._suspended_until > 0 and self._clock() < self._suspended_until:
            self.breaker.consecutive_failures = 0
            return
        cooldown = self.breaker.trip(network_down=network_down)
        self.summary.breaker_trips += 1
        self.checkpoint("breaker")
        self._suspended_until = self._clock() + cooldown
        self._probe_on_resume = network_down

    def _dispatch(self, pages: ThreadPoolExecutor, items: ThreadPoolExecutor) -> None:
        while self._backlog and len(self._items) < self.item_concurrency:
            batch, item = self._backlog.popleft()
            self._inflight_identities.add(item.identity)
            future = items.submit(self._fetch_task, item, batch.coordinate)
            self._items[future] = (batch, item)
            self.dispatch_log.append((self._clock(), f"item:{item.identity}"))
        backlog_cap = self.item_concurrency * 4
        while len(self._scans) < self.page_concurrency and len(self._backlog) <= backlog_cap:
            coordinate = self._next_coordinate()
            if coordinate is None:
                break
            self._active_pages.add(coordinate)
            future = pages.submit(self._scan_task, coordinate)
            self._scans[future] = coordinate
            self.dispatch_log.append((self._clock(), f"page:{coordinate}"))

    # -- folding results ---------------------------------------------------

    def _on_scan_done(self, future: Future) -> None:
        coordinate = self._scans.pop(future)
        try:
            result: ScanResult = future.result()
        except NetworkDown as exc:
            logger.warning("[%s] %s", coordinate, exc)
            self._active_pages.discard(coordinate)
            self._retry.appendleft(coordinate)
            self._suspend(network_down=True)
            return
        except PoolExhausted as exc:
            logger.warning("[%s] %s", coordinate, exc)
            self._active_pages.discard(coordinate)
            self._retry.appendleft(coordinate)
            return

        if result.is_partition_end:
            self._ended.add(coordinate.partition)
            self.summary.partitions_ended.append(coordinate.partition)
            self._active_pages.discard(coordinate)
            logger.info("[%s] end of partition %s", coordinate, coordinate.partition)
            if self.checkpoint("partition-end-records"):
                self.merger.mark_complete(coordinate)
                self.summary.pages_completed += 1
                self.checkpoint("partition-end")
            return
        if result.is_transient_failure:
            self._active_pages.discard(coordinate)
            self._leave_pending(coordinate, result.error or "empty page")
            return

        fresh = [
            item for item in result.items
            if not self.merger.is_known(item.identity) and item.identity not in self._inflight_identities
        ]
        logger.info(
            "[tier %s p%d] %d candidates, %d new (%s)",
            coordinate.partition, coordinate.page_index, len(result.items), len(fresh), result.strategy,
        )
        batch = PageBatch(coordinate, total=len(result.items), pending=len(fresh))
        if not fresh:
            self._finalize(batch)
            return
        for item in fresh:
            self._inflight_identities.add(item.identity)
            self._backlog.append((batch, item))

    def _on_item_done(self, future: Future) -> None:
        batch, item = self._items.pop(future)
        self._inflight_identities.discard(item.identity)
        try:
            outcome: FetchOutcome = future.result()
        except NetworkDown as exc:
            logger.warning("   %s: %s", item.display_name, exc)
            self._inflight_identities.add(item.identity)
            self._backlog.appendleft((batch, item))
            self._suspend(network_down=True)
            return
        except PoolExhausted as exc:
            logger.warning("   %s: %s", item.display_name, exc)
            self._inflight_identities.add(item.identity)
            self._backlog.appendleft((batch, item))
            return

        self.breaker.record(outcome.resolved)
        self.state.stats.attempts += outcome.attempts
        if outcome.resolved:
            self.state.stats.successes += 1
        else:
            batch.failures += 1
            if outcome.record is None:
                self.summary.items_dropped += 1
            else:
                self.summary.items_unresolved_kept += 1
        if outcome.record is not None:
            added = self.merger.merge([outcome.record])
            batch.added += len(added)
            self.summary.records_added += sum(1 for r in added if r.is_resolved)
        batch.pending -= 1
        if self.breaker.should_trip():
            self._suspend(network_down=False)
        if batch.pending <= 0:
            self._finalize(batch)

    def passes_quality_gate(self, batch: PageBatch) -> bool:
        if batch.total <= 0:
            return True
        return (batch.failures / batch.total) < self.failure_ratio

    def _finalize(self, batch: PageBatch) -> None:
        coordinate = batch.coordinate
        self._active_pages.discard(coordinate)
        saved = self.checkpoint("page-records") if batch.added else True
        if not self.passes_quality_gate(batch):
            self._leave_pending(coordinate, f"{batch.failures}/{batch.total} items failed")
            return
        if not saved:
            self._leave_pending(coordinate, "records not persisted")
            return
        if self.merger.mark_complete(coordinate):
            self.summary.pages_completed += 1
        self.checkpoint("page-complete")
        logger.info("[%s] complete, %d records total", coordinate, len(self.state.records))

    # -- main loop ---------------------------------------------------------

    def _idle(self) -> bool:
        return not self._scans and not self._items and not self._backlog

    def run(
        self,
        state: Optional[CrawlState] = None,
        coordinates: Optional[Iterable[WorkCoordinate]] = None,
    ) -> RunSummary:
        """Crawl until every partition is done, the work list is empty, or a stop is requested."""
        self._prepare(state if state is not None else self.load_state())
        if coordinates is not None:
            self._fixed = deque(coordinates)
        pages = ThreadPoolExecutor(max_workers=self.page_concurrency, thread_name_prefix="scan")
        items = ThreadPoolExecutor(max_workers=self.item_concurrency, thread_name_prefix="item")
        try:
            while not self._stop.is_set():
                suspended = self._suspended()
                if not suspended:
                    self._dispatch(pages, items)
                in_flight = list(self._scans) + list(self._items)
                if not in_flight:
                    if suspended:
                        self._sleep(max(0.0, self._suspended_until - self._clock()))
                        continue
                    if self._backlog:
                        continue
                    self.summary.finished = True
                    break
                done, _ = wait(in_flight, timeout=POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    if future in self._scans:
                        self._on_scan_done(future)
                    else:
                        self._on_item_done(future)
        except (CorruptState, Fatal):
            self.checkpoint("fatal")
            raise
        except Exception as exc:
            logger.exception("unexpected failure, saving before exit")
            self.checkpoint("fatal")
            raise Fatal(str(exc)) from exc
        finally:
            interrupted = self._stop.is_set()
            pages.shutdown(wait=not interrupted, cancel_futures=interrupted)
            items.shutdown(wait=not interrupted, cancel_futures=interrupted)

        self.summary.interrupted = self._stop.is_set()
        if self.summary.finished:
            self.merger.backfill_categories()
        self.checkpoint("final")
        return self.summary

    def shutdown(self, grace: float = 5.0) -> None:
        for pool in (self.scan_pool, self.detail_pool):
            pool.shutdown(grace=grace)

    def report(self) -> Dict[str, Any]:
        return build_report(self.state, self.config, self.summary)


def build_report(state: CrawlState, config: Any, summary: Optional[RunSummary] = None) -> Dict[str, Any]:
    partitions: Dict[str, Any] = {}
    done_by_partition: Dict[str, int] = {}
    for coordinate in state.completed:
        done_by_partition[coordinate.partition] = done_by_partition.get(coordinate.partition, 0) + 1
    total_done = 0
    total_pages = 0
    for partition in config.partitions:
        last = config.last_page(partition)
        first = int(config.get("start_page") or 1)
        span = max(0, last - first + 1)
        done = done_by_partition.get(partition, 0)
        total_done += done
        total_pages += span
        partitions[partition] = {
            "completed_pages": done,
            "page_span": span,
            "completion_pct": round(100.0 * done / span, 2) if span else 0.0,
            "records": sum(1 for r in state.records if r.partition == partition),
        }
    report: Dict[str, Any] = {
        "total_records": len(state.records),
        "unresolved_records": sum(1 for r in state.records if not r.is_resolved),
        "completed_coordinates": len(state.completed),
        "completion_pct": round(100.0 * total_done / total_pages, 2) if total_pages else 0.0,
        "success_rate": round(state.stats.success_rate, 4),
        "total_attempts": state.stats.attempts,
        "successful_attempts": state.stats.successes,
        "last_updated": state.last_checkpoint_at,
        "partitions": partitions,
    }
    if summary is not None:
        report["run"] = summary.to_dict()
    return report
