from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from .errors import NavigationError, NetworkDown
from .extract import (
    DEFAULT_STRATEGIES,
    NO_RESULTS_MARKERS,
    Strategy,
    has_no_results_marker,
    select_best,
)
from .models import CandidateItem, WorkCoordinate
from .renderer import WaitPolicy

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    coordinate: WorkCoordinate
    items: List[CandidateItem] = field(default_factory=list)
    is_partition_end: bool = False
    strategy: str = ""
    error: str = ""

    @property
    def is_transient_failure(self) -> bool:
        return not self.items and not self.is_partition_end


class ListPageScanner:
    """Loads one listing page and returns the best strategy's candidates."""

    def __init__(
        self,
        url_for: Callable[[WorkCoordinate], str],
        strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
        wait_policy: WaitPolicy = WaitPolicy(timeout=60.0, settle=4.0),
        attempts: int = 3,
        backoff_seconds: float = 5.0,
        diagnostics_dir: Optional[Path] = None,
        no_results_markers: Sequence[str] = NO_RESULTS_MARKERS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url_for = url_for
        self.strategies = tuple(strategies)
        self.wait_policy = wait_policy
        self.attempts = max(1, int(attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.diagnostics_dir = diagnostics_dir
        self.no_results_markers = tuple(no_results_markers)
        self._sleep = sleep

    def scan(self, coordinate: WorkCoordinate, session: Any) -> ScanResult:
        """Single attempt. NavigationError propagates to the caller."""
        session.navigate(self.url_for(coordinate), self.wait_policy)
        items, index = session.extract(lambda doc: select_best(doc, self.strategies))
        strategy = getattr(self.strategies[index], "__name__", str(index)) if index >= 0 else ""
        if items:
            return ScanResult(coordinate, items=items, strategy=strategy)
        if session.extract(lambda doc: has_no_results_marker(doc, self.no_results_markers)):
            return ScanResult(coordinate, is_partition_end=True, strategy=strategy)
        return ScanResult(coordinate, strategy=strategy, error="no candidates and no end marker")

    def scan_with_retry(self, coordinate: WorkCoordinate, pool: Any) -> ScanResult:
        """Retry transient failures with backoff; a transport failure raises NetworkDown."""
        result = ScanResult(coordinate, error="not attempted")
        for attempt in range(1, self.attempts + 1):
            session = pool.acquire_session()
            discard = False
            try:
                result = self.scan(coordinate, session)
                if not result.is_transient_failure:
                    return result
                logger.info("[%s] empty page, attempt %d/%d", coordinate, attempt, self.attempts)
                if attempt == self.attempts:
                    self._capture_diagnostic(coordinate, session)
            except NavigationError as exc:
                if exc.is_transport_failure:
                    raise NetworkDown(exc.url, exc.reason) from exc
                logger.info("[%s] load failed (%s), attempt %d/%d", coordinate, exc.reason, attempt, self.attempts)
                result = ScanResult(coordinate, error=exc.reason)
                discard = True
            finally:
                pool.release_session(session, discard=discard)
            if attempt < self.attempts and self.backoff_seconds:
                self._sleep(self.backoff_seconds)
        logger.warning("[%s] left pending: %s", coordinate, result.error)
        return result

    def _capture_diagnostic(self, coordinate: WorkCoordinate, session: Any) -> None:
        if self.diagnostics_dir is None:
            return
        target = Path(self.diagnostics_dir) / f"error-{coordinate.partition}-p{coordinate.page_index}"
        try:
            session.save_diagnostic(target)
        except (OSError, NavigationError) as exc:
            logger.debug("diagnostic capture failed for %s: %s", coordinate, exc)
