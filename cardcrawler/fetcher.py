from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from .errors import ClassificationUnresolved, NavigationError, NetworkDown
from .extract import detail_ready, extract_attribution, extract_category
from .models import (
    ANONYMOUS,
    UNRESOLVED,
    CandidateItem,
    Record,
    WorkCoordinate,
    normalize_attribution,
)
from .renderer import WaitPolicy

logger = logging.getLogger(__name__)


@dataclass
class FetchOutcome:
    item: CandidateItem
    coordinate: WorkCoordinate
    record: Optional[Record]
    attempts: int
    resolved: bool
    error: str = ""


class DetailFetcher:
    """Enriches one candidate from its detail page with a bounded retry loop."""

    def __init__(
        self,
        wait_policy: WaitPolicy = WaitPolicy(timeout=30.0, settle=2.5),
        ready_timeout: float = 15.0,
        max_attempts: int = 3,
        backoff_seconds: float = 2.5,
        backoff_mode: str = "linear",
        lenient: bool = False,
        require_attribution: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.wait_policy = wait_policy
        self.ready_timeout = float(ready_timeout)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.backoff_mode = backoff_mode if backoff_mode in ("linear", "fixed") else "linear"
        self.lenient = lenient
        self.require_attribution = require_attribution
        self._sleep = sleep

    def backoff_for(self, attempt: int) -> float:
        if self.backoff_mode == "fixed":
            return self.backoff_seconds
        return self.backoff_seconds * attempt

    def classify(self, item: CandidateItem, category: str, attribution: str) -> Tuple[str, str]:
        """Validate extracted fields; raises ClassificationUnresolved when one is missing."""
        category = " ".join(str(category or "").split())
        if not category or category.lower() in ("unknown anime", UNRESOLVED):
            raise ClassificationUnresolved(item.identity, "category")
        attribution = " ".join(str(attribution or "").split())
        if not attribution:
            if self.require_attribution:
                raise ClassificationUnresolved(item.identity, "attribution")
            return category, ANONYMOUS
        return category, normalize_attribution(attribution)

    def fetch_once(self, item: CandidateItem, coordinate: WorkCoordinate, session: Any) -> Record:
        session.navigate(item.detail_ref, self.wait_policy)
        session.wait_for(detail_ready, self.ready_timeout)
        category, attribution = session.extract(
            lambda doc: (extract_category(doc), extract_attribution(doc))
        )
        category, attribution = self.classify(item, category, attribution)
        return Record.from_candidate(item, coordinate, category, attribution)

    def fetch(self, item: CandidateItem, coordinate: WorkCoordinate, session: Any) -> FetchOutcome:
        """Retry up to ``max_attempts``; transport failures escalate as NetworkDown."""
        error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                record = self.fetch_once(item, coordinate, session)
                logger.info("   [%s] %s (%s)", record.attribution_name, record.display_name, record.category)
                return FetchOutcome(item, coordinate, record, attempt, resolved=True)
            except NavigationError as exc:
                if exc.is_transport_failure:
                    raise NetworkDown(exc.url, exc.reason) from exc
                error = exc.reason
            except ClassificationUnresolved as exc:
                error = str(exc)
            if attempt < self.max_attempts:
                logger.debug("   retry %d/%d for %s: %s", attempt, self.max_attempts, item.display_name, error)
                self._sleep(self.backoff_for(attempt))

        if self.lenient:
            logger.info("   [unresolved] %s kept with sentinel (%s)", item.display_name, error)
            record = Record.from_candidate(item, coordinate, UNRESOLVED, ANONYMOUS)
            return FetchOutcome(item, coordinate, record, self.max_attempts, resolved=False, error=error)
        logger.info("   skipping %s after %d attempts (%s)", item.display_name, self.max_attempts, error)
        return FetchOutcome(item, coordinate, None, self.max_attempts, resolved=False, error=error)
